"""
Tests d'intégration PostgreSQL pour core-healthcard-review.

Ces tests utilisent un vrai PostgreSQL sur le port 5433 (docker-compose.test.yaml).
Ils vérifient les garanties portées par le schéma: index partiel unique des
renvois non résolus, unicité (demande, document, tentative) et fusion
courante/legacy sur de vraies lignes.
"""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.security import User
from app.infrastructure.persistence.store import WorkflowStore
from app.models.application import Application, ApplicationStatus, HealthCard
from app.models.document import DocumentReviewStatus, DocumentType, DocumentUpload
from app.models.referral import DocumentReferralHistory, DocumentRejectionHistory
from app.schemas.referral import VerdictRequest
from app.services import review_service

VALID_ID = 1
CHEST_XRAY = 2

REVIEWER = User(sub="inspector-1", realm_access={"roles": ["inspector"]})


async def seed_application(session: AsyncSession) -> Application:
    """Catalogue minimal et demande en vérification documentaire."""
    session.add_all(
        [
            DocumentType(id=VALID_ID, name="Valid Government ID", field_identifier="validId"),
            DocumentType(
                id=CHEST_XRAY, name="Chest X-ray", field_identifier="chestXray", is_medical=True
            ),
        ]
    )
    application = Application(
        user_id="applicant-1",
        application_type="New",
        application_status=ApplicationStatus.FOR_DOCUMENT_VERIFICATION,
        job_category="Food Handler",
        first_name="Maria",
        last_name="Santos",
    )
    session.add(application)
    await session.flush()
    for document_type_id in (VALID_ID, CHEST_XRAY):
        session.add(
            DocumentUpload(
                application_id=application.id,
                document_type_id=document_type_id,
                review_status=DocumentReviewStatus.PENDING,
                file_reference=f"storage/{application.id}/{document_type_id}",
            )
        )
    await session.commit()
    return application


def referral_row(application_id: int, attempt: int, **fields) -> DocumentReferralHistory:
    values = {
        "issue_type": "document_issue",
        "document_issue_category": "blurry_photo",
        "referral_reason": "Photo is blurry",
        "referred_by": "inspector-1",
        "referred_at": datetime(2026, 3, 1, tzinfo=UTC),
        **fields,
    }
    return DocumentReferralHistory(
        application_id=application_id,
        document_type_id=VALID_ID,
        attempt_number=attempt,
        **values,
    )


@pytest.mark.integration
@pytest.mark.asyncio
async def test_create_application_defaults(db_session: AsyncSession):
    """Test valeurs par défaut et horodatages serveur d'une demande."""
    application = await seed_application(db_session)
    await db_session.refresh(application)

    assert application.id is not None
    assert application.renewal_count == 0
    assert application.is_renewal is False
    assert application.created_at is not None
    assert ApplicationStatus(application.application_status) == (
        ApplicationStatus.FOR_DOCUMENT_VERIFICATION
    )


@pytest.mark.integration
@pytest.mark.asyncio
async def test_single_unresolved_referral_per_document(db_session: AsyncSession):
    """L'index partiel interdit deux renvois non résolus pour un même document."""
    application = await seed_application(db_session)
    db_session.add(referral_row(application.id, attempt=1))
    await db_session.commit()

    db_session.add(referral_row(application.id, attempt=2))
    with pytest.raises(IntegrityError):
        await db_session.commit()
    await db_session.rollback()


@pytest.mark.integration
@pytest.mark.asyncio
async def test_resolved_referral_allows_next_attempt(db_session: AsyncSession):
    """Après résolution, la tentative suivante peut être enregistrée."""
    application = await seed_application(db_session)
    db_session.add(referral_row(application.id, attempt=1))
    await db_session.commit()

    store = WorkflowStore(db_session)
    await store.ledger.mark_replaced(application.id, VALID_ID, datetime.now(UTC))
    db_session.add(referral_row(application.id, attempt=2))
    await db_session.commit()

    state = await store.ledger.get_attempt_state(application.id, VALID_ID)
    assert state.count == 2
    assert state.source_table == "current"
    assert state.has_unresolved is True


@pytest.mark.integration
@pytest.mark.asyncio
async def test_attempt_number_out_of_range(db_session: AsyncSession):
    """La contrainte CHECK borne attempt_number entre 1 et 3."""
    application = await seed_application(db_session)
    db_session.add(referral_row(application.id, attempt=4))

    with pytest.raises(IntegrityError):
        await db_session.commit()
    await db_session.rollback()


def renewal_row(card_id: int, status: ApplicationStatus) -> Application:
    return Application(
        user_id="applicant-1",
        application_type="Renew",
        application_status=status,
        job_category="Food Handler",
        is_renewal=True,
        renewal_count=1,
        previous_health_card_id=card_id,
        first_name="Maria",
        last_name="Santos",
    )


@pytest.mark.integration
@pytest.mark.asyncio
async def test_single_open_renewal_per_card(db_session: AsyncSession):
    """L'index partiel interdit deux renouvellements ouverts de la même carte."""
    application = await seed_application(db_session)
    issued = datetime(2025, 6, 1, tzinfo=UTC)
    card = HealthCard(
        application_id=application.id,
        registration_number=f"HC-2025-{application.id:06d}",
        issued_date=issued,
        expiry_date=issued + timedelta(days=365),
    )
    db_session.add(card)
    await db_session.commit()

    # Un renouvellement annulé ne compte pas
    db_session.add(renewal_row(card.id, ApplicationStatus.CANCELLED))
    db_session.add(renewal_row(card.id, ApplicationStatus.DRAFT))
    await db_session.commit()

    db_session.add(renewal_row(card.id, ApplicationStatus.DRAFT))
    with pytest.raises(IntegrityError):
        await db_session.commit()
    await db_session.rollback()


@pytest.mark.integration
@pytest.mark.asyncio
async def test_concurrent_sessions_same_attempt(session_maker):
    """Deux agents écrivant la même tentative: un seul insert réussit."""
    async with session_maker() as setup:
        application = await seed_application(setup)

    async with session_maker() as first, session_maker() as second:
        await WorkflowStore(first).ledger.add_referral(referral_row(application.id, attempt=1))
        await first.commit()

        with pytest.raises(IntegrityError):
            await WorkflowStore(second).ledger.add_referral(
                referral_row(application.id, attempt=1)
            )
        await second.rollback()


@pytest.mark.integration
@pytest.mark.asyncio
async def test_legacy_rows_continue_attempt_count(db_session: AsyncSession):
    """Un document présent uniquement en legacy poursuit son compteur."""
    application = await seed_application(db_session)
    db_session.add(
        DocumentRejectionHistory(
            application_id=application.id,
            document_type_id=CHEST_XRAY,
            rejection_reason="Abnormal findings",
            doctor_name="Dr. Reyes",
            attempt_number=1,
            rejected_at=datetime(2025, 1, 10, tzinfo=UTC),
            was_replaced=True,
            notification_sent=True,
        )
    )
    await db_session.commit()

    store = WorkflowStore(db_session)
    entries = await store.ledger.get_merged_referrals(application.id)
    assert [(e.source, e.issue_type) for e in entries] == [("legacy", "medical_referral")]

    with (
        patch("app.services.application_service.publish", new_callable=AsyncMock),
        patch("app.services.review_service.publish", new_callable=AsyncMock),
    ):
        result = await review_service.record_verdict(
            store,
            application.id,
            CHEST_XRAY,
            VerdictRequest(
                decision="refer",
                referral_reason="Shadow persists",
                medical_referral_category="abnormal_xray",
                doctor_name="Dr. Reyes",
            ),
            REVIEWER,
        )

    assert result.attempt_number == 2
    assert result.new_application_status == (
        ApplicationStatus.REFERRED_FOR_MEDICAL_MANAGEMENT
    )
    rows = (
        await db_session.execute(
            select(DocumentReferralHistory).where(
                DocumentReferralHistory.application_id == application.id
            )
        )
    ).scalars().all()
    assert [(r.document_type_id, r.attempt_number) for r in rows] == [(CHEST_XRAY, 2)]


@pytest.mark.integration
@pytest.mark.asyncio
async def test_mark_notified_touches_both_tables(db_session: AsyncSession):
    """Le marquage "notifié" s'applique aux deux représentations."""
    application = await seed_application(db_session)
    db_session.add(referral_row(application.id, attempt=1))
    db_session.add(
        DocumentRejectionHistory(
            application_id=application.id,
            document_type_id=VALID_ID,
            rejection_reason="Old rejection",
            attempt_number=1,
            rejected_at=datetime(2025, 1, 10, tzinfo=UTC),
            was_replaced=True,
        )
    )
    await db_session.commit()

    store = WorkflowStore(db_session)
    updated = await store.ledger.mark_notified(application.id, [VALID_ID], datetime.now(UTC))
    await db_session.commit()

    assert updated == 2
    assert await store.ledger.get_pending_notifications(application.id) == []
