"""Machine à états des demandes de carte sanitaire.

Chaque transition est déclenchée par exactement un événement externe
(verdict, issue de paiement, issue d'orientation, annulation). La table
TRANSITIONS énumère, pour chaque couple (statut, événement), les statuts
cibles admis; tout autre couple échoue avec PreconditionFailedError.
Aucune transition n'est déduite du temps écoulé.
"""

import logging
from enum import Enum

from opentelemetry import trace

from app.core.exceptions import PreconditionFailedError
from app.models.application import Application, ApplicationStatus
from app.models.document import DocumentReviewStatus, DocumentUpload

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

S = ApplicationStatus


class WorkflowEvent(str, Enum):
    SUBMIT = "submit"
    START_DOCUMENT_VERIFICATION = "start_document_verification"
    DOCUMENT_FLAGGED = "document_flagged"
    DOCUMENT_REFERRED = "document_referred"
    DOCUMENT_APPROVED = "document_approved"
    DOCUMENT_RESUBMITTED = "document_resubmitted"
    PAYMENT_SUBMITTED = "payment_submitted"
    PAYMENT_VALIDATED = "payment_validated"
    PAYMENT_FAILED = "payment_failed"
    ORIENTATION_SCHEDULED = "orientation_scheduled"
    ORIENTATION_CHECKED_IN = "orientation_checked_in"
    ATTENDANCE_VALIDATED = "attendance_validated"
    ORIENTATION_MISSED = "orientation_missed"
    APPROVE = "approve"
    REJECT = "reject"
    CANCEL = "cancel"
    CLOSE_PERMANENTLY = "close_permanently"


TERMINAL_STATUSES = frozenset({S.APPROVED, S.REJECTED, S.CANCELLED, S.PERMANENTLY_CLOSED})

# Statuts où un agent peut (re)rendre un verdict sur une pièce
REVIEWABLE_STATUSES = frozenset(
    {
        S.FOR_DOCUMENT_VERIFICATION,
        S.DOCUMENTS_NEED_REVISION,
        S.REFERRED_FOR_MEDICAL_MANAGEMENT,
        S.UNDER_REVIEW,
    }
)

# Statuts où une décision finale peut être demandée
FINALIZABLE_STATUSES = REVIEWABLE_STATUSES

# Pièces dont le verdict défavorable attend une action du demandeur
OUTSTANDING_DOCUMENT_STATUSES = frozenset(
    {DocumentReviewStatus.REJECTED, DocumentReviewStatus.REFERRED}
)

# Statuts d'issue d'un passage en revue documentaire
_AFTER_DOCUMENT_REVIEW = (
    S.FOR_DOCUMENT_VERIFICATION,
    S.DOCUMENTS_NEED_REVISION,
    S.REFERRED_FOR_MEDICAL_MANAGEMENT,
    S.PENDING_PAYMENT,
    S.FOR_PAYMENT_VALIDATION,
    S.FOR_ORIENTATION,
    S.UNDER_REVIEW,
)

TRANSITIONS: dict[tuple[ApplicationStatus, WorkflowEvent], tuple[ApplicationStatus, ...]] = {
    (S.DRAFT, WorkflowEvent.SUBMIT): (S.SUBMITTED,),
    (S.SUBMITTED, WorkflowEvent.START_DOCUMENT_VERIFICATION): (S.FOR_DOCUMENT_VERIFICATION,),
    # Verdicts défavorables: le renvoi médical prime sur le problème documentaire
    **{
        (status, WorkflowEvent.DOCUMENT_FLAGGED): (
            S.DOCUMENTS_NEED_REVISION,
            S.REFERRED_FOR_MEDICAL_MANAGEMENT,
        )
        for status in REVIEWABLE_STATUSES
    },
    **{
        (status, WorkflowEvent.DOCUMENT_REFERRED): (S.REFERRED_FOR_MEDICAL_MANAGEMENT,)
        for status in REVIEWABLE_STATUSES
    },
    **{
        (status, WorkflowEvent.DOCUMENT_APPROVED): _AFTER_DOCUMENT_REVIEW
        for status in REVIEWABLE_STATUSES
    },
    (S.DOCUMENTS_NEED_REVISION, WorkflowEvent.DOCUMENT_RESUBMITTED): (
        S.FOR_DOCUMENT_VERIFICATION,
        S.DOCUMENTS_NEED_REVISION,
        S.REFERRED_FOR_MEDICAL_MANAGEMENT,
    ),
    (S.REFERRED_FOR_MEDICAL_MANAGEMENT, WorkflowEvent.DOCUMENT_RESUBMITTED): (
        S.FOR_DOCUMENT_VERIFICATION,
        S.DOCUMENTS_NEED_REVISION,
        S.REFERRED_FOR_MEDICAL_MANAGEMENT,
    ),
    # Paiement
    (S.PENDING_PAYMENT, WorkflowEvent.PAYMENT_SUBMITTED): (S.FOR_PAYMENT_VALIDATION,),
    (S.FOR_PAYMENT_VALIDATION, WorkflowEvent.PAYMENT_VALIDATED): (S.FOR_ORIENTATION, S.UNDER_REVIEW),
    (S.FOR_PAYMENT_VALIDATION, WorkflowEvent.PAYMENT_FAILED): (S.PENDING_PAYMENT,),
    # Orientation
    (S.FOR_ORIENTATION, WorkflowEvent.ORIENTATION_SCHEDULED): (S.SCHEDULED,),
    (S.SCHEDULED, WorkflowEvent.ORIENTATION_CHECKED_IN): (S.FOR_ATTENDANCE_VALIDATION,),
    (S.FOR_ATTENDANCE_VALIDATION, WorkflowEvent.ATTENDANCE_VALIDATED): (S.UNDER_REVIEW,),
    (S.SCHEDULED, WorkflowEvent.ORIENTATION_MISSED): (S.FOR_ORIENTATION,),
    (S.FOR_ATTENDANCE_VALIDATION, WorkflowEvent.ORIENTATION_MISSED): (S.FOR_ORIENTATION,),
    # Décision finale
    (S.UNDER_REVIEW, WorkflowEvent.APPROVE): (S.APPROVED,),
    **{(status, WorkflowEvent.REJECT): (S.REJECTED,) for status in FINALIZABLE_STATUSES},
    # Sorties latérales
    **{
        (status, WorkflowEvent.CANCEL): (S.CANCELLED,)
        for status in ApplicationStatus
        if status not in TERMINAL_STATUSES
    },
    **{
        (status, WorkflowEvent.CLOSE_PERMANENTLY): (S.PERMANENTLY_CLOSED,)
        for status in REVIEWABLE_STATUSES
    },
}


def allowed_targets(status: ApplicationStatus, event: WorkflowEvent) -> tuple[ApplicationStatus, ...]:
    return TRANSITIONS.get((ApplicationStatus(status), event), ())


def next_status(
    status: ApplicationStatus,
    event: WorkflowEvent,
    target: ApplicationStatus | None = None,
) -> ApplicationStatus:
    """
    Résout le statut cible d'un événement.

    Args:
        status: Statut courant
        event: Événement externe
        target: Cible choisie lorsque l'événement en admet plusieurs

    Raises:
        PreconditionFailedError: Si la transition n'est pas admise
    """
    targets = allowed_targets(status, event)
    if not targets:
        raise PreconditionFailedError(
            detail=f"Cannot apply '{event.value}' to an application in status '{ApplicationStatus(status).value}'",
            reason="invalid_transition",
        )
    if target is None:
        if len(targets) > 1:
            raise PreconditionFailedError(
                detail=f"Event '{event.value}' requires an explicit target status",
                reason="ambiguous_transition",
            )
        return targets[0]
    if target not in targets:
        raise PreconditionFailedError(
            detail=(
                f"Transition from '{ApplicationStatus(status).value}' to "
                f"'{ApplicationStatus(target).value}' is not allowed on '{event.value}'"
            ),
            reason="invalid_transition",
        )
    return ApplicationStatus(target)


def transition(
    application: Application,
    event: WorkflowEvent,
    target: ApplicationStatus | None = None,
) -> ApplicationStatus:
    """
    Applique une transition validée à la demande (sans commit).

    Returns:
        Le statut précédent
    """
    with tracer.start_as_current_span("application.transition") as span:
        previous = ApplicationStatus(application.application_status)
        new = next_status(previous, event, target)
        span.set_attribute("application.id", application.id or 0)
        span.set_attribute("application.previous_status", previous.value)
        span.set_attribute("application.new_status", new.value)
        span.set_attribute("workflow.event", event.value)
        application.application_status = new
        if new != previous:
            logger.info(
                f"Demande {application.id}: {previous.value} -> {new.value} ({event.value})"
            )
        return previous


def status_after_documents_verified(application: Application) -> ApplicationStatus:
    """Statut atteint lorsque toutes les pièces sont approuvées."""
    if application.payment_status == "Validated":
        if application.requires_orientation and application.orientation_completed_at is None:
            return S.FOR_ORIENTATION
        return S.UNDER_REVIEW
    if application.payment_status == "Submitted":
        return S.FOR_PAYMENT_VALIDATION
    return S.PENDING_PAYMENT


def derive_review_status(
    application: Application, documents: list[DocumentUpload]
) -> ApplicationStatus:
    """
    Statut de revue dérivé de l'état des pièces.

    Priorité: renvoi médical en cours, puis problème documentaire, puis
    toutes pièces approuvées, sinon vérification documentaire en cours.
    """
    statuses = {DocumentReviewStatus(document.review_status) for document in documents}
    if DocumentReviewStatus.REFERRED in statuses:
        return S.REFERRED_FOR_MEDICAL_MANAGEMENT
    if DocumentReviewStatus.REJECTED in statuses:
        return S.DOCUMENTS_NEED_REVISION
    if documents and statuses == {DocumentReviewStatus.APPROVED}:
        return status_after_documents_verified(application)
    return S.FOR_DOCUMENT_VERIFICATION


def ensure_not_terminal(application: Application) -> None:
    if ApplicationStatus(application.application_status) in TERMINAL_STATUSES:
        raise PreconditionFailedError(
            detail=f"Application is closed ({ApplicationStatus(application.application_status).value})",
            reason="terminal_status",
        )
