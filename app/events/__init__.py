"""Handlers des flux consommés (enregistrés à l'import via @subscribe)."""

from app.events.workflow_handlers import attendance_outcome_handler, payment_outcome_handler

__all__ = ["attendance_outcome_handler", "payment_outcome_handler"]
