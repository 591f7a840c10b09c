"""Mappers entre modèles SQLAlchemy et objets valeur du ledger."""

from app.infrastructure.persistence.mappers.ledger_mapper import (
    LedgerMapper,
    infer_legacy_issue_type,
)

__all__ = ["LedgerMapper", "infer_legacy_issue_type"]
