"""Éligibilité au renouvellement d'une carte sanitaire.

evaluate() est une fonction pure: même historique, même carte et même
instant donnent le même résultat. Elle est appelée par la lecture
(GET /renewals/eligibility) et par la garde d'écriture (création du
renouvellement), qui ne peuvent donc jamais diverger.
"""

import logging
import math
from collections.abc import Sequence
from datetime import UTC, datetime

from opentelemetry import trace
from sqlalchemy.exc import IntegrityError

from app.core.events import RENEWAL_CREATED, publish
from app.core.exceptions import PreconditionFailedError
from app.core.security import User
from app.infrastructure.persistence.store import WorkflowStore
from app.models.application import Application, ApplicationStatus, HealthCard
from app.schemas.application import ApplicationResponse, HealthCardResponse
from app.schemas.renewal import EligibilityResult, RenewalCreate
from app.services.application_service import create_document_slots

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

RENEWAL_WINDOW_DAYS = 30
MILLISECONDS_PER_DAY = 86_400_000

# Demandes "en cours": bloquent tout renouvellement
UNRESOLVED_STATUSES = frozenset(
    {
        ApplicationStatus.SUBMITTED,
        ApplicationStatus.FOR_DOCUMENT_VERIFICATION,
        ApplicationStatus.FOR_PAYMENT_VALIDATION,
        ApplicationStatus.FOR_ORIENTATION,
        ApplicationStatus.SCHEDULED,
        ApplicationStatus.FOR_ATTENDANCE_VALIDATION,
        ApplicationStatus.UNDER_REVIEW,
        ApplicationStatus.DOCUMENTS_NEED_REVISION,
        ApplicationStatus.PENDING_PAYMENT,
        ApplicationStatus.REFERRED_FOR_MEDICAL_MANAGEMENT,
    }
)

REASON_NO_HISTORY = "No previous application found. Please apply for a new health card."
REASON_IN_PROGRESS = (
    "You have an application in progress. Please complete or cancel it before renewing."
)
REASON_RENEWAL_IN_PROGRESS = (
    "A renewal application is already in progress. Please wait for it to be processed."
)
REASON_NO_APPROVED = "No approved application found. Please apply for a new health card."
REASON_NO_CARD = "No health card found for your approved application. Please contact support."
REASON_NOT_YET = (
    "Your health card is still valid for {days} days. "
    "Renewal is available within " + str(RENEWAL_WINDOW_DAYS) + " days of expiry."
)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def days_until_expiry(expiry_date: datetime, now: datetime) -> int:
    """ceil((expiry - now) / 1 jour), calculé en millisecondes."""
    delta = _as_utc(expiry_date) - _as_utc(now)
    milliseconds = delta.days * MILLISECONDS_PER_DAY + delta.seconds * 1000 + delta.microseconds // 1000
    return math.ceil(milliseconds / MILLISECONDS_PER_DAY)


def _approved_sort_key(application: Application) -> float:
    if application.approved_at is None:
        return 0.0
    return _as_utc(application.approved_at).timestamp()


def select_latest_approved(applications: Sequence[Application]) -> Application | None:
    """Demande approuvée la plus récente (approved_at absent = 0)."""
    approved = [
        application
        for application in applications
        if application.deleted_at is None
        and ApplicationStatus(application.application_status) == ApplicationStatus.APPROVED
    ]
    if not approved:
        return None
    return max(approved, key=_approved_sort_key)


def evaluate(
    applications: Sequence[Application],
    card: HealthCard | None,
    now: datetime | None = None,
) -> EligibilityResult:
    """
    Évalue l'éligibilité au renouvellement.

    Règles appliquées dans l'ordre, la première en échec donne la raison:
    1. aucun historique
    2. demande en cours (message spécifique si c'est un renouvellement)
    3. aucune demande approuvée
    4. aucune carte pour la dernière demande approuvée
    5. carte valide pour plus de 30 jours

    Args:
        applications: Historique des demandes de l'utilisateur
        card: Carte de la dernière demande approuvée (voir select_latest_approved)
        now: Instant de référence (défaut: maintenant, UTC)
    """
    now = now or datetime.now(UTC)
    history = [application for application in applications if application.deleted_at is None]

    if not history:
        return EligibilityResult(is_eligible=False, reason=REASON_NO_HISTORY)

    unresolved = [
        application
        for application in history
        if ApplicationStatus(application.application_status) in UNRESOLVED_STATUSES
    ]
    if unresolved:
        if any(application.application_type == "Renew" for application in unresolved):
            return EligibilityResult(is_eligible=False, reason=REASON_RENEWAL_IN_PROGRESS)
        return EligibilityResult(is_eligible=False, reason=REASON_IN_PROGRESS)

    latest_approved = select_latest_approved(history)
    if latest_approved is None:
        return EligibilityResult(is_eligible=False, reason=REASON_NO_APPROVED)

    if card is None or card.application_id != latest_approved.id:
        return EligibilityResult(is_eligible=False, reason=REASON_NO_CARD)

    days = days_until_expiry(card.expiry_date, now)
    if days > RENEWAL_WINDOW_DAYS:
        return EligibilityResult(
            is_eligible=False,
            reason=REASON_NOT_YET.format(days=days),
            days_until_expiry=days,
        )

    return EligibilityResult(
        is_eligible=True,
        eligible_application=ApplicationResponse.model_validate(latest_approved),
        eligible_card=HealthCardResponse.model_validate(card),
        days_until_expiry=days,
    )


async def _load_history(
    store: WorkflowStore, user_id: str, lock: bool = False
) -> tuple[list[Application], HealthCard | None]:
    """
    Historique de l'utilisateur et carte de sa derniere demande approuvee.

    Avec lock=True, la carte est verrouillee (FOR UPDATE) puis l'historique
    est relu: une creation concurrente deja commitee est alors visible.
    """
    applications = await store.applications.list_for_user(user_id)
    latest_approved = select_latest_approved(applications)
    card = None
    if latest_approved is not None:
        card = await store.applications.get_card_for_application(latest_approved.id)
    if lock and card is not None:
        card = await store.applications.get_health_card(card.id, for_update=True)
        applications = await store.applications.list_for_user(user_id)
    return applications, card


async def get_renewal_eligibility(
    store: WorkflowStore, user_id: str, now: datetime | None = None
) -> EligibilityResult:
    """Lecture de l'éligibilité (sans effet de bord)."""
    with tracer.start_as_current_span("get_renewal_eligibility") as span:
        span.set_attribute("user.id", user_id)
        applications, card = await _load_history(store, user_id)
        result = evaluate(applications, card, now)
        span.set_attribute("renewal.is_eligible", result.is_eligible)
        return result


async def create_renewal_application(
    store: WorkflowStore,
    user: User,
    renewal_data: RenewalCreate,
    now: datetime | None = None,
) -> Application:
    """
    Crée une demande de renouvellement (brouillon).

    L'éligibilité est réévaluée ici même si le client a déjà affiché un
    écran "éligible": c'est la garde contre une demande créée entre-temps.
    La carte est verrouillée pendant l'évaluation; l'index unique partiel
    uq_applications_open_renewal rejette un second renouvellement ouvert.

    Raises:
        PreconditionFailedError: Si l'utilisateur n'est pas éligible, si la
            carte indiquée n'est pas la carte éligible ou si un autre
            renouvellement de la carte a été créé en parallèle
    """
    with tracer.start_as_current_span("create_renewal_application") as span:
        span.set_attribute("user.id", user.user_id)
        span.set_attribute("renewal.previous_health_card_id", renewal_data.previous_health_card_id)

        applications, card = await _load_history(store, user.user_id, lock=True)
        result = evaluate(applications, card, now)
        if not result.is_eligible:
            span.add_event("Renouvellement refusé", {"reason": result.reason or ""})
            raise PreconditionFailedError(detail=result.reason, reason="renewal_not_eligible")

        if result.eligible_card.id != renewal_data.previous_health_card_id:
            raise PreconditionFailedError(
                detail="The selected health card is not eligible for renewal",
                reason="health_card_mismatch",
            )

        # Brouillon déjà ouvert sur la même carte: création idempotente
        existing_draft = next(
            (
                a
                for a in applications
                if a.application_type == "Renew"
                and ApplicationStatus(a.application_status) == ApplicationStatus.DRAFT
                and a.previous_health_card_id == card.id
            ),
            None,
        )
        if existing_draft is not None:
            span.add_event("Brouillon de renouvellement existant réutilisé")
            return existing_draft

        previous = next(a for a in applications if a.id == result.eligible_application.id)
        renewal = Application(
            user_id=user.user_id,
            application_type="Renew",
            application_status=ApplicationStatus.DRAFT,
            job_category=previous.job_category,
            requires_orientation=previous.requires_orientation,
            security_guard=previous.security_guard,
            is_renewal=True,
            renewal_count=(previous.renewal_count or 0) + 1,
            previous_health_card_id=card.id,
            first_name=previous.first_name,
            middle_name=previous.middle_name,
            last_name=previous.last_name,
            suffix=previous.suffix,
            age=renewal_data.age if renewal_data.age is not None else previous.age,
            gender=previous.gender,
            nationality=previous.nationality,
            civil_status=renewal_data.civil_status or previous.civil_status,
            organization=renewal_data.organization or previous.organization,
            position=renewal_data.position or previous.position,
        )
        try:
            await store.applications.add(renewal)
            await create_document_slots(store, renewal)
            await store.commit()
        except IntegrityError as e:
            await store.rollback()
            logger.warning(
                f"Renouvellement concurrent rejete pour la carte {card.id} ({user.user_id}): {e}"
            )
            span.add_event("Conflit de renouvellement concurrent")
            raise PreconditionFailedError(
                detail=REASON_RENEWAL_IN_PROGRESS, reason="renewal_in_progress"
            ) from e

        span.set_attribute("application.id", renewal.id)
        span.add_event("Renouvellement créé")
        logger.info(
            f"Renouvellement {renewal.id} créé pour {user.user_id} "
            f"(carte {card.id}, renouvellement n°{renewal.renewal_count})"
        )

        await publish(
            RENEWAL_CREATED,
            {
                "application_id": renewal.id,
                "user_id": user.user_id,
                "previous_health_card_id": card.id,
                "renewal_count": renewal.renewal_count,
                "timestamp": datetime.now(UTC).isoformat(),
            },
        )
        return renewal
