"""
Façade du système d'événements - core-healthcard-review.

Backend: Redis Pub/Sub (app/core/events_redis.py).

Usage:
    from app.core.events import publish, subscribe, lifespan

    await publish("healthcard.application.status_changed", {"application_id": 42})

    @subscribe("payments.outcome")
    async def handle_payment_outcome(payload: dict):
        ...
"""

from app.core.events_redis import dispatch, lifespan, publish, subscribe

# Sujets publiés par le moteur
APPLICATION_CREATED = "healthcard.application.created"
APPLICATION_STATUS_CHANGED = "healthcard.application.status_changed"
RENEWAL_CREATED = "healthcard.renewal.created"
CARD_ISSUED = "healthcard.card.issued"
NOTIFICATIONS_COMPOSED = "healthcard.notifications.composed"

__all__ = [
    "APPLICATION_CREATED",
    "APPLICATION_STATUS_CHANGED",
    "CARD_ISSUED",
    "NOTIFICATIONS_COMPOSED",
    "RENEWAL_CREATED",
    "dispatch",
    "lifespan",
    "publish",
    "subscribe",
]
