"""Handlers des flux externes: issue de paiement et présence à l'orientation."""

from app.core.config import settings
from app.core.events import subscribe
from app.events.base import BaseEventHandler
from app.infrastructure.persistence.store import WorkflowStore
from app.schemas.application import AttendanceOutcomeEvent, PaymentOutcomeEvent
from app.services import application_service


class PaymentOutcomeHandler(BaseEventHandler[PaymentOutcomeEvent]):
    payload_model = PaymentOutcomeEvent

    async def handle_event(self, store: WorkflowStore, event: PaymentOutcomeEvent):
        application = await application_service.apply_payment_outcome(store, event)
        self.logger.info(
            f"Paiement '{event.outcome}' appliqué à la demande {event.application_id} "
            f"(statut: {application.application_status.value})"
        )


class AttendanceOutcomeHandler(BaseEventHandler[AttendanceOutcomeEvent]):
    payload_model = AttendanceOutcomeEvent

    async def handle_event(self, store: WorkflowStore, event: AttendanceOutcomeEvent):
        application = await application_service.apply_attendance_outcome(store, event)
        self.logger.info(
            f"Orientation '{event.outcome}' appliquée à la demande {event.application_id} "
            f"(statut: {application.application_status.value})"
        )


payment_outcome_handler = PaymentOutcomeHandler(settings.PAYMENT_OUTCOME_SUBJECT)
attendance_outcome_handler = AttendanceOutcomeHandler(settings.ORIENTATION_ATTENDANCE_SUBJECT)

subscribe(settings.PAYMENT_OUTCOME_SUBJECT)(payment_outcome_handler.on_event)
subscribe(settings.ORIENTATION_ATTENDANCE_SUBJECT)(attendance_outcome_handler.on_event)
