"""Moteur de decision des agents de revue.

Ce module implemente:
- record_verdict: verdict sur une piece, escalade des tentatives, statut derive
- finalize_application: approbation ou rejet definitif, emission de la carte
- begin_document_verification et validate_payment (actions d'agent)

Concurrence: la piece est verrouillee (SELECT ... FOR UPDATE) puis le nombre
de tentatives est relu dans les deux tables juste avant l'ecriture. La
contrainte unique (demande, document, tentative) de la table courante fait
echouer un second ecrivain concurrent, converti en PreconditionFailedError.
"""

import logging
from datetime import timedelta

from opentelemetry import trace
from sqlalchemy.exc import IntegrityError

from app.core.config import settings
from app.core.events import CARD_ISSUED, publish
from app.core.exceptions import NotFoundError, PreconditionFailedError
from app.core.security import User, ensure_reviewer
from app.infrastructure.persistence.mappers import LedgerMapper
from app.infrastructure.persistence.store import WorkflowStore
from app.models.application import Application, ApplicationStatus, HealthCard
from app.models.document import DocumentReviewStatus
from app.schemas.application import PaymentValidationRequest
from app.schemas.referral import (
    MAX_DOCUMENT_ATTEMPTS,
    FinalizeRequest,
    VerdictRequest,
    VerdictResult,
)
from app.services.application_service import (
    get_application_or_404,
    publish_status_change,
    utcnow,
)
from app.services.application_state import (
    FINALIZABLE_STATUSES,
    OUTSTANDING_DOCUMENT_STATUSES,
    REVIEWABLE_STATUSES,
    WorkflowEvent,
    derive_review_status,
    status_after_documents_verified,
    transition,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def _closure_reason(document_name: str) -> str:
    return (
        f"{document_name} was flagged {MAX_DOCUMENT_ATTEMPTS} times. "
        "This application is permanently closed; please create a new application."
    )


async def begin_document_verification(
    store: WorkflowStore, application_id: int, reviewer: User
) -> Application:
    """Prise en charge d'une demande soumise: Submitted -> For Document Verification."""
    ensure_reviewer(reviewer)
    with tracer.start_as_current_span("begin_document_verification") as span:
        span.set_attribute("application.id", application_id)
        application = await get_application_or_404(store, application_id, for_update=True)
        previous = transition(application, WorkflowEvent.START_DOCUMENT_VERIFICATION)
        await store.commit()
        await publish_status_change(
            application, previous, WorkflowEvent.START_DOCUMENT_VERIFICATION, reviewer.user_id
        )
        return application


async def record_verdict(
    store: WorkflowStore,
    application_id: int,
    document_type_id: int,
    verdict: VerdictRequest,
    reviewer: User,
) -> VerdictResult:
    """
    Enregistre le verdict d'un agent sur une piece.

    - approve: resout le renvoi en cours (deux tables), sans incrementer
    - reject / refer: nouvelle entree du ledger avec tentative = precedente + 1;
      si la tentative depasserait 3, la demande est fermee definitivement
      et aucune entree n'est ecrite

    Args:
        store: Unite de travail
        application_id: ID de la demande
        document_type_id: ID du type de document
        verdict: Decision et details du renvoi
        reviewer: Agent authentifie (admin ou inspecteur)

    Returns:
        VerdictResult avec le nouveau statut et l'id de l'entree creee

    Raises:
        ForbiddenError: L'appelant n'a pas de role de revue
        NotFoundError: Demande, type de document ou piece introuvable
        PreconditionFailedError: Renvoi non resolu deja present, nombre de
            tentatives perime, statut ne permettant pas de verdict
    """
    ensure_reviewer(reviewer)

    with tracer.start_as_current_span("record_verdict") as span:
        span.set_attribute("application.id", application_id)
        span.set_attribute("document.type_id", document_type_id)
        span.set_attribute("verdict.decision", verdict.decision)
        span.set_attribute("reviewer.id", reviewer.user_id)

        try:
            result, application, previous, event = await _apply_verdict(
                store, application_id, document_type_id, verdict, reviewer
            )
            await store.commit()
        except IntegrityError as e:
            await store.rollback()
            logger.warning(
                f"Verdict concurrent rejete pour demande {application_id}, document {document_type_id}: {e}"
            )
            span.add_event("Conflit d'ecriture concurrente")
            raise PreconditionFailedError(
                detail="Another verdict was recorded for this document concurrently. Reload and retry.",
                reason="concurrent_verdict",
            ) from e
        except Exception:
            await store.rollback()
            raise

        span.set_attribute("application.new_status", result.new_application_status.value)
        span.set_attribute("document.attempt_number", result.attempt_number)
        if result.permanently_closed:
            span.add_event("Demande fermee definitivement")

        await publish_status_change(application, previous, event, reviewer.user_id)
        return result


async def _apply_verdict(
    store: WorkflowStore,
    application_id: int,
    document_type_id: int,
    verdict: VerdictRequest,
    reviewer: User,
) -> tuple[VerdictResult, Application, ApplicationStatus, WorkflowEvent]:
    application = await get_application_or_404(store, application_id, for_update=True)

    document_type = await store.applications.get_document_type(document_type_id)
    if document_type is None:
        raise NotFoundError(
            detail=f"Document type {document_type_id} not found",
            resource_type="document_type",
            resource_id=str(document_type_id),
        )

    document = await store.applications.get_document(
        application_id, document_type_id, for_update=True
    )
    if document is None:
        raise NotFoundError(
            detail=f"{document_type.name} not found for application {application_id}",
            resource_type="document",
            resource_id=str(document_type_id),
        )

    status = ApplicationStatus(application.application_status)
    if status not in REVIEWABLE_STATUSES:
        raise PreconditionFailedError(
            detail=f"Documents cannot be reviewed while the application is '{status.value}'",
            reason="not_reviewable",
        )
    if DocumentReviewStatus(document.review_status) == DocumentReviewStatus.MISSING:
        raise PreconditionFailedError(
            detail=f"{document_type.name} has not been uploaded yet", reason="document_missing"
        )

    # Relecture du compteur fusionne juste avant l'ecriture
    attempt_state = await store.ledger.get_attempt_state(application_id, document_type_id)
    if (
        verdict.expected_attempt_number is not None
        and verdict.expected_attempt_number != attempt_state.count
    ):
        raise PreconditionFailedError(
            detail=(
                f"Attempt count changed (expected {verdict.expected_attempt_number}, "
                f"found {attempt_state.count}). Reload and retry."
            ),
            reason="stale_attempt_count",
            current_attempt_number=attempt_state.count,
        )

    now = utcnow()

    if verdict.decision == "approve":
        await store.ledger.mark_replaced(application_id, document_type_id, now)
        document.review_status = DocumentReviewStatus.APPROVED
        document.reviewed_by = reviewer.user_id
        document.reviewed_at = now
        document.admin_remarks = verdict.remarks

        documents = await store.applications.list_documents(application_id)
        event = WorkflowEvent.DOCUMENT_APPROVED
        previous = transition(application, event, derive_review_status(application, documents))
        return (
            VerdictResult(
                new_application_status=application.application_status,
                document_status=DocumentReviewStatus.APPROVED,
                attempt_number=attempt_state.count,
                remaining_attempts=attempt_state.remaining,
            ),
            application,
            previous,
            event,
        )

    # Verdict defavorable
    if (
        DocumentReviewStatus(document.review_status) in OUTSTANDING_DOCUMENT_STATUSES
        or attempt_state.has_unresolved
    ):
        raise PreconditionFailedError(
            detail=f"{document_type.name} already has an unresolved referral awaiting the applicant",
            reason="unresolved_referral",
        )

    new_document_status = (
        DocumentReviewStatus.REFERRED
        if verdict.issue_type == "medical_referral"
        else DocumentReviewStatus.REJECTED
    )
    document.review_status = new_document_status
    document.reviewed_by = reviewer.user_id
    document.reviewed_at = now
    document.admin_remarks = verdict.remarks or verdict.referral_reason

    if attempt_state.is_exhausted:
        # Quatrieme verdict defavorable: fermeture, pas de tentative 4
        event = WorkflowEvent.CLOSE_PERMANENTLY
        previous = transition(application, event)
        application.closed_at = now
        application.closure_reason = _closure_reason(document_type.name)
        application.decided_by = reviewer.user_id
        logger.warning(
            f"Demande {application_id} fermee definitivement: "
            f"{document_type.name} epuise ({attempt_state.count} tentatives)"
        )
        return (
            VerdictResult(
                new_application_status=ApplicationStatus.PERMANENTLY_CLOSED,
                document_status=new_document_status,
                attempt_number=attempt_state.count,
                remaining_attempts=0,
                permanently_closed=True,
            ),
            application,
            previous,
            event,
        )

    attempt_number = attempt_state.count + 1
    entry = await store.ledger.add_referral(
        LedgerMapper.to_current(
            verdict,
            application_id=application_id,
            document_type_id=document_type_id,
            document_upload_id=document.id,
            attempt_number=attempt_number,
            reviewer_id=reviewer.user_id,
            referred_at=now,
        )
    )

    documents = await store.applications.list_documents(application_id)
    event = (
        WorkflowEvent.DOCUMENT_REFERRED
        if verdict.issue_type == "medical_referral"
        else WorkflowEvent.DOCUMENT_FLAGGED
    )
    previous = transition(application, event, derive_review_status(application, documents))
    logger.info(
        f"Renvoi {verdict.issue_type} enregistre: demande {application_id}, "
        f"{document_type.name}, tentative {attempt_number}/{MAX_DOCUMENT_ATTEMPTS}"
    )
    return (
        VerdictResult(
            new_application_status=application.application_status,
            document_status=new_document_status,
            ledger_entry_id=entry.entry_id,
            attempt_number=attempt_number,
            remaining_attempts=MAX_DOCUMENT_ATTEMPTS - attempt_number,
        ),
        application,
        previous,
        event,
    )


async def validate_payment(
    store: WorkflowStore,
    application_id: int,
    reviewer: User,
    validation: PaymentValidationRequest,
) -> Application:
    """
    Validation du paiement par un agent.

    Paiement valide: For Orientation si la categorie l'exige, sinon Under Review.
    Paiement invalide: retour en Pending Payment.
    """
    ensure_reviewer(reviewer)
    with tracer.start_as_current_span("validate_payment") as span:
        span.set_attribute("application.id", application_id)
        span.set_attribute("payment.is_valid", validation.is_valid)

        application = await get_application_or_404(store, application_id, for_update=True)
        if validation.is_valid:
            event = WorkflowEvent.PAYMENT_VALIDATED
            application.payment_status = "Validated"
            target = status_after_documents_verified(application)
            previous = transition(application, event, target)
        else:
            event = WorkflowEvent.PAYMENT_FAILED
            previous = transition(application, event)
            application.payment_status = "Failed"
        if validation.remarks:
            application.admin_remarks = validation.remarks
        await store.commit()

        await publish_status_change(application, previous, event, reviewer.user_id)
        return application


def _registration_number(application: Application, issued_at) -> str:
    return f"{settings.HEALTH_CARD_NUMBER_PREFIX}-{issued_at:%Y}-{application.id:06d}"


async def finalize_application(
    store: WorkflowStore,
    application_id: int,
    decision: FinalizeRequest,
    reviewer: User,
) -> Application:
    """
    Decision finale sur une demande.

    Les verifications portent sur l'etat courant des pieces, relu ici: les
    verdicts ont pu etre revises depuis la revue initiale.

    - toutes les pieces doivent avoir un verdict terminal (ni Missing ni Pending)
    - Approved: statut Under Review, toutes pieces approuvees, aucun renvoi non
      resolu dans le ledger; emet la carte sanitaire
    - Rejected: au moins une piece Rejected ou Referred

    Raises:
        ForbiddenError: L'appelant n'a pas de role de revue
        NotFoundError: Demande introuvable
        PreconditionFailedError: Revue incomplete ou decision incoherente
    """
    ensure_reviewer(reviewer)

    with tracer.start_as_current_span("finalize_application") as span:
        span.set_attribute("application.id", application_id)
        span.set_attribute("finalize.decision", decision.decision)

        application = await get_application_or_404(store, application_id, for_update=True)
        status = ApplicationStatus(application.application_status)
        if status not in FINALIZABLE_STATUSES:
            raise PreconditionFailedError(
                detail=f"Application cannot be finalized while '{status.value}'",
                reason="not_finalizable",
            )

        documents = await store.applications.list_documents(application_id)
        if not documents:
            raise PreconditionFailedError(
                detail="Application has no documents to review", reason="incomplete_review"
            )
        unreviewed = [
            d.document_type_id
            for d in documents
            if DocumentReviewStatus(d.review_status)
            in (DocumentReviewStatus.MISSING, DocumentReviewStatus.PENDING)
        ]
        if unreviewed:
            raise PreconditionFailedError(
                detail=f"{len(unreviewed)} document(s) still missing or awaiting review",
                reason="incomplete_review",
                document_type_ids=unreviewed,
            )

        now = utcnow()
        card = None
        if decision.decision == "Approved":
            if await store.ledger.has_unresolved_referrals(application_id):
                raise PreconditionFailedError(
                    detail="Application has unresolved referrals", reason="unresolved_referral"
                )
            if any(
                DocumentReviewStatus(d.review_status) != DocumentReviewStatus.APPROVED
                for d in documents
            ):
                raise PreconditionFailedError(
                    detail="All documents must be approved", reason="documents_not_approved"
                )
            event = WorkflowEvent.APPROVE
            previous = transition(application, event)
            application.approved_at = now
            card = HealthCard(
                application_id=application.id,
                registration_number=_registration_number(application, now),
                issued_date=now,
                expiry_date=now + timedelta(days=settings.HEALTH_CARD_VALIDITY_DAYS),
                status="active",
            )
            await store.applications.add_health_card(card)
        else:
            flagged = [
                d
                for d in documents
                if DocumentReviewStatus(d.review_status) in OUTSTANDING_DOCUMENT_STATUSES
            ]
            if not flagged:
                raise PreconditionFailedError(
                    detail="A rejection requires at least one rejected or referred document",
                    reason="no_rejected_documents",
                )
            event = WorkflowEvent.REJECT
            previous = transition(application, event)
            application.rejected_at = now
            application.rejection_category = decision.rejection_category

        application.admin_remarks = decision.remarks or application.admin_remarks
        application.decided_by = reviewer.user_id
        await store.commit()

        logger.info(f"Demande {application_id} finalisee: {decision.decision}")
        await publish_status_change(application, previous, event, reviewer.user_id)
        if card is not None:
            await publish(
                CARD_ISSUED,
                {
                    "application_id": application.id,
                    "health_card_id": card.id,
                    "registration_number": card.registration_number,
                    "expiry_date": card.expiry_date.isoformat(),
                },
            )
        return application
