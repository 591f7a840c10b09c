"""
Tests d'intégration pour core-healthcard-review.

Ces tests utilisent de vrais services Docker (PostgreSQL, Redis) sur des ports exotiques
pour éviter les conflits avec les services de développement. Ils sont ignorés
lorsque les services ne répondent pas.

Usage:
    docker-compose -f docker-compose.test.yaml up -d
    pytest -m integration
    docker-compose -f docker-compose.test.yaml down -v
"""
