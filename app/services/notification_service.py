"""Composition du contenu des notifications de renvoi.

Le moteur ne livre rien: il produit titre, message et URL d'action, puis
marque les entrees notifiees dans les deux tables du ledger. La livraison
(push, SMS, email) revient a l'appelant.
"""

import logging

from opentelemetry import trace

from app.core.events import NOTIFICATIONS_COMPOSED, publish
from app.infrastructure.persistence.store import WorkflowStore
from app.models.application import Application, ApplicationStatus
from app.schemas.referral import MAX_DOCUMENT_ATTEMPTS, LedgerEntry, NotificationPayload
from app.services.application_service import get_application_or_404, utcnow

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def _issues_block(entry: LedgerEntry) -> str:
    if not entry.specific_issues:
        return ""
    return "\n\nSpecific issues:\n" + "\n".join(f"• {issue}" for issue in entry.specific_issues)


def _attempt_warning(attempt_number: int) -> str:
    if attempt_number >= MAX_DOCUMENT_ATTEMPTS:
        return (
            f"\n\nFINAL ATTEMPT: This is attempt {attempt_number} of {MAX_DOCUMENT_ATTEMPTS}. "
            "If this document is flagged again, your application will be permanently closed "
            "and you will need to create a new application."
        )
    if attempt_number == MAX_DOCUMENT_ATTEMPTS - 1:
        remaining = MAX_DOCUMENT_ATTEMPTS - attempt_number
        return (
            f"\n\nWarning: This is attempt {attempt_number} of {MAX_DOCUMENT_ATTEMPTS}. "
            f"You have {remaining} attempt remaining before your application is permanently closed."
        )
    return f"\n\nThis is attempt {attempt_number} of {MAX_DOCUMENT_ATTEMPTS}."


def compose_referral_notification(
    application: Application, entry: LedgerEntry, document_name: str
) -> NotificationPayload:
    """Construit le contenu d'une notification pour un renvoi logique."""
    if entry.issue_type == "medical_referral":
        title = "Medical Finding Detected"
        doctor = f"\n\nPlease consult {entry.doctor_name}" if entry.doctor_name else ""
        clinic = f" at {entry.clinic_address}" if entry.doctor_name and entry.clinic_address else ""
        message = (
            f"Your {document_name} requires medical follow-up.\n\n"
            f"{entry.referral_reason}{_issues_block(entry)}{doctor}{clinic}"
            "\n\nAfter your consultation, submit the medical clearance to continue your application."
            f"{_attempt_warning(entry.attempt_number)}"
        )
        notification_type = "document_referred_medical"
        action_url = f"/applications/{application.id}/medical-referral"
    else:
        title = "Document Needs Correction"
        message = (
            f"Your {document_name} needs to be corrected and resubmitted.\n\n"
            f"{entry.referral_reason}{_issues_block(entry)}"
            f"{_attempt_warning(entry.attempt_number)}"
        )
        notification_type = "document_needs_correction"
        action_url = f"/applications/{application.id}/resubmit/{entry.document_type_id}"

    return NotificationPayload(
        user_id=application.user_id,
        application_id=application.id,
        document_type_id=entry.document_type_id,
        ledger_entry_id=entry.entry_id,
        attempt_number=entry.attempt_number,
        notification_type=notification_type,
        title=title,
        message=message,
        action_url=action_url,
    )


def compose_closure_notification(application: Application) -> NotificationPayload:
    """Notification de fermeture definitive, distincte d'un rejet."""
    reason = application.closure_reason or "A document was flagged too many times."
    return NotificationPayload(
        user_id=application.user_id,
        application_id=application.id,
        notification_type="application_permanently_closed",
        title="Application Permanently Closed",
        message=(
            f"{reason}\n\nThis application can no longer be resubmitted. "
            "Please create a new application to apply for a health card."
        ),
        action_url="/applications/new",
    )


async def compose_and_mark_notifications(
    store: WorkflowStore, application_id: int
) -> list[NotificationPayload]:
    """
    Compose les notifications en attente d'une demande et les marque envoyees.

    Pattern:
    1. Lire les entrees non notifiees (fusion des deux tables, une par document)
    2. Composer une notification par renvoi logique
    3. Ajouter la notification de fermeture definitive si elle n'a jamais ete faite
    4. Marquer notifie dans les deux tables, puis commit

    Un second appel sans nouveau verdict retourne une liste vide.

    Raises:
        NotFoundError: Demande introuvable
    """
    with tracer.start_as_current_span("compose_and_mark_notifications") as span:
        span.set_attribute("application.id", application_id)

        application = await get_application_or_404(store, application_id, for_update=True)
        pending = await store.ledger.get_pending_notifications(application_id)
        names = {dt.id: dt.name for dt in await store.applications.list_document_types()}

        payloads = [
            compose_referral_notification(
                application, entry, names.get(entry.document_type_id, "document")
            )
            for entry in pending
        ]

        now = utcnow()
        if (
            ApplicationStatus(application.application_status) == ApplicationStatus.PERMANENTLY_CLOSED
            and application.closure_notified_at is None
        ):
            payloads.append(compose_closure_notification(application))
            application.closure_notified_at = now

        if not payloads:
            span.set_attribute("notifications.count", 0)
            return []

        marked = await store.ledger.mark_notified(
            application_id, [entry.document_type_id for entry in pending], now
        )
        await store.commit()

        span.set_attribute("notifications.count", len(payloads))
        span.set_attribute("ledger.rows_marked", marked)
        logger.info(
            f"{len(payloads)} notification(s) composee(s) pour la demande {application_id} "
            f"({marked} ligne(s) marquee(s))"
        )

        # Lignes deja marquees: les payloads sont retournes meme si Redis echoue
        try:
            await publish(
                NOTIFICATIONS_COMPOSED,
                {
                    "application_id": application_id,
                    "notification_types": [p.notification_type for p in payloads],
                    "timestamp": now.isoformat(),
                },
            )
        except Exception as e:
            span.record_exception(e)
            logger.error(
                f"Echec de publication de {NOTIFICATIONS_COMPOSED} "
                f"pour la demande {application_id}: {e}"
            )
        return payloads
