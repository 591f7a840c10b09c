"""Service metier du cycle de vie des demandes cote demandeur.

Ce module couvre:
- la creation d'un brouillon et des emplacements de pieces requises
- le depot d'une piece et la soumission
- la nouvelle soumission apres un renvoi (ou le controle medical)
- l'annulation par le demandeur
- les issues consommees (paiement, orientation)

Chaque operation valide tout avant de muter, puis commit; les evenements
ne sont publies qu'apres un commit reussi.
"""

import logging
from datetime import UTC, datetime

from opentelemetry import trace

from app.core.events import APPLICATION_CREATED, APPLICATION_STATUS_CHANGED, publish
from app.core.exceptions import ForbiddenError, NotFoundError, PreconditionFailedError
from app.core.security import User
from app.infrastructure.persistence.ledger_repository import compute_attempt_states
from app.infrastructure.persistence.store import WorkflowStore
from app.models.application import Application, ApplicationStatus
from app.models.document import DocumentReviewStatus, DocumentUpload
from app.schemas.application import (
    ApplicationCreate,
    AttendanceOutcomeEvent,
    DocumentUploadRequest,
    PaymentOutcomeEvent,
)
from app.schemas.referral import ReferralHistoryItem, ResubmitRequest
from app.services.application_state import (
    OUTSTANDING_DOCUMENT_STATUSES,
    WorkflowEvent,
    derive_review_status,
    ensure_not_terminal,
    transition,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def utcnow() -> datetime:
    return datetime.now(UTC)


async def publish_status_change(
    application: Application,
    previous_status: ApplicationStatus,
    event: WorkflowEvent,
    actor_id: str | None = None,
) -> None:
    """Publie une transition validee (a appeler apres commit)."""
    new_status = ApplicationStatus(application.application_status)
    if new_status == previous_status:
        return
    await publish(
        APPLICATION_STATUS_CHANGED,
        {
            "application_id": application.id,
            "user_id": application.user_id,
            "previous_status": previous_status.value,
            "new_status": new_status.value,
            "event": event.value,
            "actor_id": actor_id,
            "timestamp": utcnow().isoformat(),
        },
    )


async def get_application_or_404(
    store: WorkflowStore, application_id: int, for_update: bool = False
) -> Application:
    application = await store.applications.get(application_id, for_update=for_update)
    if application is None:
        raise NotFoundError(
            detail=f"Application {application_id} not found",
            resource_type="application",
            resource_id=str(application_id),
        )
    return application


def ensure_owner(user: User, application: Application) -> None:
    if not user.is_owner(application.user_id):
        raise ForbiddenError(detail="Only the applicant can perform this action")


async def create_document_slots(store: WorkflowStore, application: Application) -> list[DocumentUpload]:
    """Cree un emplacement Missing par piece requise (selon le drapeau agent de securite)."""
    slots = []
    for document_type in await store.applications.list_document_types():
        if not document_type.is_required_for(application.security_guard):
            continue
        slot = DocumentUpload(
            application_id=application.id,
            document_type_id=document_type.id,
            review_status=DocumentReviewStatus.MISSING,
        )
        await store.applications.add_document(slot)
        slots.append(slot)
    return slots


async def create_application(
    store: WorkflowStore, user: User, application_data: ApplicationCreate
) -> Application:
    """
    Cree une nouvelle demande au statut Draft.

    Args:
        store: Unite de travail
        user: Demandeur authentifie
        application_data: Donnees personnelles et categorie d'emploi

    Returns:
        La demande creee
    """
    with tracer.start_as_current_span("create_application") as span:
        span.set_attribute("user.id", user.user_id)

        application = Application(
            user_id=user.user_id,
            application_type="New",
            application_status=ApplicationStatus.DRAFT,
            is_renewal=False,
            renewal_count=0,
            **application_data.model_dump(),
        )
        await store.applications.add(application)
        slots = await create_document_slots(store, application)
        await store.commit()

        span.set_attribute("application.id", application.id)
        span.set_attribute("application.required_documents", len(slots))
        logger.info(f"Demande {application.id} creee ({len(slots)} pieces requises)")

        await publish(
            APPLICATION_CREATED,
            {
                "application_id": application.id,
                "user_id": user.user_id,
                "application_type": "New",
                "timestamp": utcnow().isoformat(),
            },
        )
        return application


async def get_application_detail(
    store: WorkflowStore, application_id: int, user: User
) -> tuple[Application, list[DocumentUpload]]:
    """Demande et pieces, accessibles au demandeur ou a un agent."""
    application = await get_application_or_404(store, application_id)
    user.verify_access(application.user_id)
    documents = await store.applications.list_documents(application_id)
    return application, documents


async def upload_document(
    store: WorkflowStore,
    application_id: int,
    document_type_id: int,
    user: User,
    upload: DocumentUploadRequest,
) -> DocumentUpload:
    """
    Enregistre la reference d'une piece deposee sur un brouillon.

    Raises:
        NotFoundError: Demande ou emplacement de piece introuvable
        PreconditionFailedError: Demande deja soumise (utiliser la resoumission)
    """
    with tracer.start_as_current_span("upload_document") as span:
        span.set_attribute("application.id", application_id)
        span.set_attribute("document.type_id", document_type_id)

        application = await get_application_or_404(store, application_id)
        ensure_owner(user, application)
        if ApplicationStatus(application.application_status) != ApplicationStatus.DRAFT:
            raise PreconditionFailedError(
                detail="Documents can only be uploaded while the application is a draft",
                reason="not_draft",
            )

        document = await store.applications.get_document(application_id, document_type_id)
        if document is None:
            document_type = await store.applications.get_document_type(document_type_id)
            if document_type is None:
                raise NotFoundError(
                    detail=f"Document type {document_type_id} not found",
                    resource_type="document_type",
                    resource_id=str(document_type_id),
                )
            document = DocumentUpload(application_id=application_id, document_type_id=document_type_id)
            await store.applications.add_document(document)

        document.file_reference = upload.file_reference
        document.original_filename = upload.original_filename
        document.uploaded_at = utcnow()
        document.review_status = DocumentReviewStatus.PENDING
        await store.commit()
        return document


async def submit_application(store: WorkflowStore, application_id: int, user: User) -> Application:
    """
    Soumet un brouillon: Draft -> Submitted.

    Raises:
        PreconditionFailedError: Piece requise manquante ou statut invalide
    """
    with tracer.start_as_current_span("submit_application") as span:
        span.set_attribute("application.id", application_id)

        application = await get_application_or_404(store, application_id, for_update=True)
        ensure_owner(user, application)

        documents = await store.applications.list_documents(application_id)
        missing = [
            d.document_type_id
            for d in documents
            if DocumentReviewStatus(d.review_status) == DocumentReviewStatus.MISSING
        ]
        if missing:
            raise PreconditionFailedError(
                detail=f"{len(missing)} required document(s) missing",
                reason="missing_documents",
                document_type_ids=missing,
            )

        previous = transition(application, WorkflowEvent.SUBMIT)
        application.submitted_at = utcnow()
        await store.commit()

        await publish_status_change(application, previous, WorkflowEvent.SUBMIT, user.user_id)
        return application


async def resubmit_document(
    store: WorkflowStore,
    application_id: int,
    document_type_id: int,
    user: User,
    resubmission: ResubmitRequest,
) -> Application:
    """
    Nouvelle soumission d'une piece signalee (ou resultat du controle medical).

    Pattern:
    1. Verrouiller la piece et verifier qu'un renvoi est en cours
    2. Marquer le renvoi remplace dans les deux tables du ledger
    3. Repasser la piece en Pending
    4. Deriver le statut (retour en verification si plus rien n'est en attente)

    Raises:
        NotFoundError: Demande ou piece introuvable
        PreconditionFailedError: Aucun renvoi en cours pour cette piece
    """
    with tracer.start_as_current_span("resubmit_document") as span:
        span.set_attribute("application.id", application_id)
        span.set_attribute("document.type_id", document_type_id)

        application = await get_application_or_404(store, application_id, for_update=True)
        ensure_owner(user, application)
        ensure_not_terminal(application)

        document = await store.applications.get_document(
            application_id, document_type_id, for_update=True
        )
        if document is None:
            raise NotFoundError(
                detail=f"Document {document_type_id} not found for application {application_id}",
                resource_type="document",
                resource_id=str(document_type_id),
            )

        attempt_state = await store.ledger.get_attempt_state(application_id, document_type_id)
        if (
            DocumentReviewStatus(document.review_status) not in OUTSTANDING_DOCUMENT_STATUSES
            or not attempt_state.has_unresolved
        ):
            raise PreconditionFailedError(
                detail="This document has no pending referral or was already resubmitted",
                reason="no_unresolved_referral",
            )

        now = utcnow()
        await store.ledger.mark_replaced(application_id, document_type_id, now)
        document.file_reference = resubmission.file_reference
        document.original_filename = resubmission.original_filename
        document.uploaded_at = now
        document.review_status = DocumentReviewStatus.PENDING
        document.reviewed_at = None
        document.reviewed_by = None

        documents = await store.applications.list_documents(application_id)
        previous = transition(
            application,
            WorkflowEvent.DOCUMENT_RESUBMITTED,
            derive_review_status(application, documents),
        )
        await store.commit()

        span.set_attribute("document.attempt_number", attempt_state.count)
        span.add_event("Piece resoumise")
        await publish_status_change(
            application, previous, WorkflowEvent.DOCUMENT_RESUBMITTED, user.user_id
        )
        return application


async def cancel_application(
    store: WorkflowStore, application_id: int, user: User, reason: str | None = None
) -> Application:
    """
    Annulation par le demandeur depuis tout statut non terminal.

    Les renvois non resolus restent dans le ledger tels quels (historique).
    """
    with tracer.start_as_current_span("cancel_application") as span:
        span.set_attribute("application.id", application_id)

        application = await get_application_or_404(store, application_id, for_update=True)
        ensure_owner(user, application)

        previous = transition(application, WorkflowEvent.CANCEL)
        application.cancelled_at = utcnow()
        if reason:
            application.admin_remarks = reason
        await store.commit()

        await publish_status_change(application, previous, WorkflowEvent.CANCEL, user.user_id)
        return application


async def apply_payment_outcome(store: WorkflowStore, outcome: PaymentOutcomeEvent) -> Application:
    """
    Applique une issue de paiement recue du collaborateur de paiement.

    Un paiement recu pendant la verification documentaire est seulement
    memorise: la transition vers For Payment Validation aura lieu quand
    toutes les pieces seront approuvees.
    """
    with tracer.start_as_current_span("apply_payment_outcome") as span:
        span.set_attribute("application.id", outcome.application_id)
        span.set_attribute("payment.outcome", outcome.outcome)

        application = await get_application_or_404(store, outcome.application_id, for_update=True)
        ensure_not_terminal(application)
        status = ApplicationStatus(application.application_status)
        previous = status
        event = WorkflowEvent.PAYMENT_SUBMITTED

        if outcome.outcome == "submitted":
            if application.payment_status == "Validated":
                raise PreconditionFailedError(
                    detail="Payment already validated", reason="payment_already_validated"
                )
            application.payment_status = "Submitted"
            application.payment_reference = outcome.reference_number
            if status == ApplicationStatus.PENDING_PAYMENT:
                previous = transition(application, WorkflowEvent.PAYMENT_SUBMITTED)
        else:
            event = WorkflowEvent.PAYMENT_FAILED
            application.payment_status = "Failed"
            if status == ApplicationStatus.FOR_PAYMENT_VALIDATION:
                previous = transition(application, WorkflowEvent.PAYMENT_FAILED)

        await store.commit()
        await publish_status_change(application, previous, event)
        return application


_ATTENDANCE_EVENTS = {
    "scheduled": WorkflowEvent.ORIENTATION_SCHEDULED,
    "checked_in": WorkflowEvent.ORIENTATION_CHECKED_IN,
    "validated": WorkflowEvent.ATTENDANCE_VALIDATED,
    "missed": WorkflowEvent.ORIENTATION_MISSED,
}


async def apply_attendance_outcome(
    store: WorkflowStore, outcome: AttendanceOutcomeEvent
) -> Application:
    """Applique une issue d'orientation (planifiee, presence, validation, absence)."""
    with tracer.start_as_current_span("apply_attendance_outcome") as span:
        span.set_attribute("application.id", outcome.application_id)
        span.set_attribute("orientation.outcome", outcome.outcome)

        application = await get_application_or_404(store, outcome.application_id, for_update=True)
        event = _ATTENDANCE_EVENTS[outcome.outcome]
        previous = transition(application, event)
        if event == WorkflowEvent.ATTENDANCE_VALIDATED:
            application.orientation_completed_at = utcnow()
        await store.commit()

        await publish_status_change(application, previous, event)
        return application


async def get_referral_history(
    store: WorkflowStore, application_id: int, user: User
) -> list[ReferralHistoryItem]:
    """Historique fusionne des renvois avec le badge de tentative par document."""
    with tracer.start_as_current_span("get_referral_history") as span:
        span.set_attribute("application.id", application_id)

        application = await get_application_or_404(store, application_id)
        user.verify_access(application.user_id)

        entries = await store.ledger.get_merged_referrals(application_id)
        states = compute_attempt_states(entries)
        names = {dt.id: dt.name for dt in await store.applications.list_document_types()}

        return [
            ReferralHistoryItem(
                document_type_id=entry.document_type_id,
                document_name=names.get(entry.document_type_id, "Document"),
                issue_type=entry.issue_type,
                attempt_number=entry.attempt_number,
                remaining_attempts=states[entry.document_type_id].remaining,
                referral_reason=entry.referral_reason,
                specific_issues=list(entry.specific_issues),
                doctor_name=entry.doctor_name,
                clinic_address=entry.clinic_address,
                referred_at=entry.referred_at,
                was_replaced=entry.was_replaced,
                replaced_at=entry.replaced_at,
            )
            for entry in entries
        ]
