"""Tests unitaires du moteur de décision (verdicts et décision finale)."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest

from app.core.exceptions import ForbiddenError, NotFoundError, PreconditionFailedError
from app.models.application import ApplicationStatus
from app.models.document import DocumentReviewStatus
from app.schemas.application import PaymentValidationRequest
from app.schemas.referral import FinalizeRequest, VerdictRequest
from app.services import review_service
from tests.conftest import CHEST_XRAY, URINALYSIS, VALID_ID

S = ApplicationStatus
D = DocumentReviewStatus


def reject(**fields) -> VerdictRequest:
    return VerdictRequest(
        decision="reject",
        referral_reason=fields.pop("referral_reason", "Photo is blurry"),
        document_issue_category=fields.pop("document_issue_category", "blurry_photo"),
        **fields,
    )


def refer(**fields) -> VerdictRequest:
    return VerdictRequest(
        decision="refer",
        referral_reason=fields.pop("referral_reason", "Shadow on the left lung"),
        medical_referral_category=fields.pop("medical_referral_category", "abnormal_xray"),
        doctor_name=fields.pop("doctor_name", "Dr. Reyes"),
        clinic_address=fields.pop("clinic_address", "City Health Office"),
        **fields,
    )


APPROVE = VerdictRequest(decision="approve")


@pytest.fixture(autouse=True)
def mock_publish():
    """Publication Redis neutralisée, inspectable par les tests."""
    with (
        patch("app.services.application_service.publish", new_callable=AsyncMock) as status_pub,
        patch("app.services.review_service.publish", new_callable=AsyncMock) as card_pub,
    ):
        yield status_pub, card_pub


# =============================================================================
# Validation des verdicts
# =============================================================================


class TestVerdictRequestValidation:
    """Tests des champs exigés selon la décision."""

    def test_reject_requires_reason(self):
        with pytest.raises(ValueError, match="referral_reason is required"):
            VerdictRequest(decision="reject", document_issue_category="blurry_photo")

    def test_refer_requires_doctor_name(self):
        with pytest.raises(ValueError, match="doctor_name is required"):
            VerdictRequest(
                decision="refer",
                referral_reason="Abnormal result",
                medical_referral_category="abnormal_xray",
            )

    def test_reject_requires_document_issue_category(self):
        with pytest.raises(ValueError, match="document_issue_category is required"):
            VerdictRequest(decision="reject", referral_reason="Blurry")

    def test_issue_type_from_decision(self):
        assert reject().issue_type == "document_issue"
        assert refer().issue_type == "medical_referral"
        assert APPROVE.issue_type is None


# =============================================================================
# record_verdict
# =============================================================================


class TestRecordVerdict:
    """Tests du verdict sur une pièce."""

    async def test_first_rejection_creates_attempt_one(self, store, make_application, reviewer):
        application = make_application()

        result = await review_service.record_verdict(
            store, application.id, VALID_ID, reject(), reviewer
        )

        assert result.attempt_number == 1
        assert result.remaining_attempts == 2
        assert result.document_status == D.REJECTED
        assert result.new_application_status == S.DOCUMENTS_NEED_REVISION
        assert result.ledger_entry_id is not None
        assert store.commits == 1

        row = store.ledger.current_rows[0]
        assert row.issue_type == "document_issue"
        assert row.referred_by == "inspector-1"
        assert row.document_upload_id == store.applications.documents[(application.id, VALID_ID)].id

    async def test_medical_referral_sets_referred_status(self, store, make_application, reviewer):
        application = make_application()

        result = await review_service.record_verdict(
            store, application.id, CHEST_XRAY, refer(), reviewer
        )

        assert result.document_status == D.REFERRED
        assert application.application_status == S.REFERRED_FOR_MEDICAL_MANAGEMENT
        assert store.ledger.current_rows[0].doctor_name == "Dr. Reyes"

    async def test_medical_referral_outranks_document_issue(self, store, make_application, reviewer):
        """Une pièce renvoyée en médical prime sur une pièce à corriger."""
        application = make_application()
        await review_service.record_verdict(store, application.id, VALID_ID, reject(), reviewer)

        await review_service.record_verdict(store, application.id, CHEST_XRAY, refer(), reviewer)
        assert application.application_status == S.REFERRED_FOR_MEDICAL_MANAGEMENT

    async def test_attempt_continues_from_legacy_table(self, store, make_application, reviewer):
        """Le compteur tient compte des lignes écrites par l'ancien système."""
        application = make_application()
        store.ledger.add_legacy(
            application_id=application.id,
            document_type_id=VALID_ID,
            rejection_reason="Expired",
            attempt_number=1,
            was_replaced=True,
        )

        result = await review_service.record_verdict(
            store, application.id, VALID_ID, reject(), reviewer
        )

        assert result.attempt_number == 2
        assert store.ledger.current_rows[0].attempt_number == 2

    async def test_unresolved_referral_blocks_new_adverse_verdict(
        self, store, make_application, reviewer
    ):
        application = make_application()
        await review_service.record_verdict(store, application.id, VALID_ID, reject(), reviewer)

        with pytest.raises(PreconditionFailedError) as exc_info:
            await review_service.record_verdict(store, application.id, VALID_ID, reject(), reviewer)

        assert exc_info.value.reason == "unresolved_referral"
        assert len(store.ledger.current_rows) == 1
        assert store.rollbacks == 1

    async def test_unresolved_legacy_row_blocks_adverse_verdict(
        self, store, make_application, reviewer
    ):
        application = make_application()
        store.ledger.add_legacy(
            application_id=application.id, document_type_id=VALID_ID, rejection_reason="Blurry"
        )

        with pytest.raises(PreconditionFailedError) as exc_info:
            await review_service.record_verdict(store, application.id, VALID_ID, reject(), reviewer)

        assert exc_info.value.reason == "unresolved_referral"

    async def test_approve_resolves_referral_without_incrementing(
        self, store, make_application, reviewer
    ):
        application = make_application(documents={VALID_ID: D.REJECTED, CHEST_XRAY: D.APPROVED})
        row = store.ledger.add_current(
            application_id=application.id, document_type_id=VALID_ID, attempt_number=1
        )

        result = await review_service.record_verdict(
            store, application.id, VALID_ID, APPROVE, reviewer
        )

        assert row.was_replaced is True
        assert result.attempt_number == 1
        assert result.ledger_entry_id is None
        assert len(store.ledger.current_rows) == 1

    async def test_last_approval_moves_to_pending_payment(self, store, make_application, reviewer):
        application = make_application(
            documents={VALID_ID: D.APPROVED, CHEST_XRAY: D.APPROVED, URINALYSIS: D.PENDING}
        )

        result = await review_service.record_verdict(
            store, application.id, URINALYSIS, APPROVE, reviewer
        )

        assert result.new_application_status == S.PENDING_PAYMENT

    async def test_last_approval_with_submitted_payment(self, store, make_application, reviewer):
        application = make_application(
            documents={VALID_ID: D.APPROVED, CHEST_XRAY: D.PENDING}, payment_status="Submitted"
        )

        await review_service.record_verdict(store, application.id, CHEST_XRAY, APPROVE, reviewer)

        assert application.application_status == S.FOR_PAYMENT_VALIDATION

    async def test_stale_expected_attempt_number(self, store, make_application, reviewer):
        """L'agent a vu 0 tentative mais une autre écriture en a ajouté une."""
        application = make_application(documents={VALID_ID: D.PENDING})
        store.ledger.add_current(
            application_id=application.id,
            document_type_id=VALID_ID,
            attempt_number=1,
            was_replaced=True,
        )

        with pytest.raises(PreconditionFailedError) as exc_info:
            await review_service.record_verdict(
                store, application.id, VALID_ID, reject(expected_attempt_number=0), reviewer
            )

        assert exc_info.value.reason == "stale_attempt_count"

    async def test_concurrent_insert_is_converted_to_precondition_failure(
        self, store, make_application, reviewer
    ):
        """Violation de la contrainte unique (demande, document, tentative)."""
        application = make_application()
        original_add = store.ledger.add_referral

        async def racing_add(row):
            # Un autre agent écrit la même tentative juste avant nous
            store.ledger.add_current(
                application_id=row.application_id,
                document_type_id=row.document_type_id,
                attempt_number=row.attempt_number,
            )
            return await original_add(row)

        store.ledger.add_referral = racing_add

        with pytest.raises(PreconditionFailedError) as exc_info:
            await review_service.record_verdict(store, application.id, VALID_ID, reject(), reviewer)

        assert exc_info.value.reason == "concurrent_verdict"
        assert store.rollbacks == 1
        assert store.commits == 0

    async def test_applicant_cannot_record_verdict(self, store, make_application, applicant):
        application = make_application()

        with pytest.raises(ForbiddenError):
            await review_service.record_verdict(
                store, application.id, VALID_ID, reject(), applicant
            )

        assert store.ledger.current_rows == []

    async def test_admin_client_role_is_accepted(self, store, make_application, admin):
        application = make_application()

        result = await review_service.record_verdict(
            store, application.id, VALID_ID, reject(), admin
        )

        assert result.attempt_number == 1

    async def test_unknown_application(self, store, reviewer):
        with pytest.raises(NotFoundError):
            await review_service.record_verdict(store, 404, VALID_ID, reject(), reviewer)

    async def test_unknown_document_type(self, store, make_application, reviewer):
        application = make_application()

        with pytest.raises(NotFoundError):
            await review_service.record_verdict(store, application.id, 999, reject(), reviewer)

    async def test_missing_document_cannot_be_reviewed(self, store, make_application, reviewer):
        application = make_application(documents={VALID_ID: D.MISSING})

        with pytest.raises(PreconditionFailedError) as exc_info:
            await review_service.record_verdict(store, application.id, VALID_ID, reject(), reviewer)

        assert exc_info.value.reason == "document_missing"

    async def test_verdict_outside_review_statuses(self, store, make_application, reviewer):
        application = make_application(status=S.PENDING_PAYMENT)

        with pytest.raises(PreconditionFailedError) as exc_info:
            await review_service.record_verdict(store, application.id, VALID_ID, reject(), reviewer)

        assert exc_info.value.reason == "not_reviewable"

    async def test_status_change_published_after_commit(
        self, store, make_application, reviewer, mock_publish
    ):
        status_pub, _ = mock_publish
        application = make_application()

        await review_service.record_verdict(store, application.id, VALID_ID, reject(), reviewer)

        status_pub.assert_awaited_once()
        subject, payload = status_pub.await_args.args
        assert subject == "healthcard.application.status_changed"
        assert payload["previous_status"] == "For Document Verification"
        assert payload["new_status"] == "Documents Need Revision"
        assert payload["event"] == "document_flagged"


class TestAttemptEscalation:
    """Tests de l'escalade des tentatives jusqu'à la fermeture définitive."""

    async def _resubmit(self, store, application, document_type_id):
        """Simule la nouvelle soumission du demandeur."""
        await store.ledger.mark_replaced(
            application.id, document_type_id, datetime.now(UTC)
        )
        store.applications.documents[(application.id, document_type_id)].review_status = D.PENDING
        application.application_status = S.FOR_DOCUMENT_VERIFICATION

    async def test_attempts_are_strictly_increasing(self, store, make_application, reviewer):
        application = make_application()
        attempts = []
        for _ in range(3):
            result = await review_service.record_verdict(
                store, application.id, VALID_ID, reject(), reviewer
            )
            attempts.append(result.attempt_number)
            await self._resubmit(store, application, VALID_ID)

        assert attempts == [1, 2, 3]
        assert [r.attempt_number for r in store.ledger.current_rows] == [1, 2, 3]

    async def test_fourth_adverse_verdict_closes_permanently(
        self, store, make_application, reviewer
    ):
        application = make_application()
        for _ in range(3):
            await review_service.record_verdict(store, application.id, VALID_ID, reject(), reviewer)
            await self._resubmit(store, application, VALID_ID)

        result = await review_service.record_verdict(
            store, application.id, VALID_ID, refer(), reviewer
        )

        assert result.permanently_closed is True
        assert result.new_application_status == S.PERMANENTLY_CLOSED
        assert result.remaining_attempts == 0
        assert application.application_status == S.PERMANENTLY_CLOSED
        assert application.closed_at is not None
        assert "Valid Government ID" in application.closure_reason
        # Aucune tentative 4 n'est écrite
        assert max(r.attempt_number for r in store.ledger.current_rows) == 3

    async def test_third_attempt_counted_across_tables(self, store, make_application, reviewer):
        """Deux tentatives legacy puis une courante: le verdict suivant ferme la demande."""
        application = make_application()
        for attempt in (1, 2):
            store.ledger.add_legacy(
                application_id=application.id,
                document_type_id=VALID_ID,
                rejection_reason="Blurry",
                attempt_number=attempt,
                was_replaced=True,
            )

        result = await review_service.record_verdict(
            store, application.id, VALID_ID, reject(), reviewer
        )
        assert result.attempt_number == 3

        await self._resubmit(store, application, VALID_ID)
        result = await review_service.record_verdict(
            store, application.id, VALID_ID, reject(), reviewer
        )
        assert result.permanently_closed is True

    async def test_closed_application_accepts_no_more_verdicts(
        self, store, make_application, reviewer
    ):
        application = make_application(status=S.PERMANENTLY_CLOSED)

        with pytest.raises(PreconditionFailedError):
            await review_service.record_verdict(store, application.id, CHEST_XRAY, APPROVE, reviewer)


# =============================================================================
# Actions d'agent: prise en charge, paiement
# =============================================================================


class TestReviewerActions:
    async def test_begin_document_verification(self, store, make_application, reviewer):
        application = make_application(status=S.SUBMITTED)

        await review_service.begin_document_verification(store, application.id, reviewer)

        assert application.application_status == S.FOR_DOCUMENT_VERIFICATION

    async def test_begin_requires_submitted_status(self, store, make_application, reviewer):
        application = make_application(status=S.DRAFT)

        with pytest.raises(PreconditionFailedError):
            await review_service.begin_document_verification(store, application.id, reviewer)

    async def test_valid_payment_with_orientation(self, store, make_application, reviewer):
        application = make_application(
            status=S.FOR_PAYMENT_VALIDATION, payment_status="Submitted", requires_orientation=True
        )

        await review_service.validate_payment(
            store, application.id, reviewer, PaymentValidationRequest(is_valid=True)
        )

        assert application.payment_status == "Validated"
        assert application.application_status == S.FOR_ORIENTATION

    async def test_valid_payment_without_orientation(self, store, make_application, reviewer):
        application = make_application(status=S.FOR_PAYMENT_VALIDATION, payment_status="Submitted")

        await review_service.validate_payment(
            store, application.id, reviewer, PaymentValidationRequest(is_valid=True)
        )

        assert application.application_status == S.UNDER_REVIEW

    async def test_invalid_payment_returns_to_pending(self, store, make_application, reviewer):
        application = make_application(status=S.FOR_PAYMENT_VALIDATION, payment_status="Submitted")

        await review_service.validate_payment(
            store,
            application.id,
            reviewer,
            PaymentValidationRequest(is_valid=False, remarks="Receipt unreadable"),
        )

        assert application.application_status == S.PENDING_PAYMENT
        assert application.payment_status == "Failed"
        assert application.admin_remarks == "Receipt unreadable"


# =============================================================================
# finalize_application
# =============================================================================


class TestFinalizeApplication:
    """Tests de la décision finale."""

    async def test_approval_issues_health_card(
        self, store, make_application, reviewer, mock_publish
    ):
        _, card_pub = mock_publish
        application = make_application(
            status=S.UNDER_REVIEW,
            documents={VALID_ID: D.APPROVED, CHEST_XRAY: D.APPROVED, URINALYSIS: D.APPROVED},
            payment_status="Validated",
        )

        before = datetime.now(UTC)
        await review_service.finalize_application(
            store, application.id, FinalizeRequest(decision="Approved"), reviewer
        )

        assert application.application_status == S.APPROVED
        assert application.approved_at >= before
        assert application.decided_by == "inspector-1"

        card = await store.applications.get_card_for_application(application.id)
        assert card is not None
        assert card.registration_number == f"HC-{card.issued_date:%Y}-{application.id:06d}"
        assert card.expiry_date - card.issued_date == timedelta(days=365)
        card_pub.assert_awaited_once()
        assert card_pub.await_args.args[0] == "healthcard.card.issued"

    async def test_approval_requires_under_review(self, store, make_application, reviewer):
        application = make_application(
            status=S.FOR_DOCUMENT_VERIFICATION,
            documents={VALID_ID: D.APPROVED, CHEST_XRAY: D.APPROVED},
        )

        with pytest.raises(PreconditionFailedError) as exc_info:
            await review_service.finalize_application(
                store, application.id, FinalizeRequest(decision="Approved"), reviewer
            )

        assert exc_info.value.reason == "invalid_transition"

    async def test_pending_document_blocks_finalization(self, store, make_application, reviewer):
        application = make_application(
            status=S.UNDER_REVIEW, documents={VALID_ID: D.APPROVED, CHEST_XRAY: D.PENDING}
        )

        with pytest.raises(PreconditionFailedError) as exc_info:
            await review_service.finalize_application(
                store, application.id, FinalizeRequest(decision="Approved"), reviewer
            )

        assert exc_info.value.reason == "incomplete_review"

    async def test_unresolved_referral_blocks_approval(self, store, make_application, reviewer):
        application = make_application(
            status=S.UNDER_REVIEW, documents={VALID_ID: D.APPROVED, CHEST_XRAY: D.APPROVED}
        )
        store.ledger.add_legacy(
            application_id=application.id, document_type_id=VALID_ID, rejection_reason="Blurry"
        )

        with pytest.raises(PreconditionFailedError) as exc_info:
            await review_service.finalize_application(
                store, application.id, FinalizeRequest(decision="Approved"), reviewer
            )

        assert exc_info.value.reason == "unresolved_referral"
        assert application.application_status == S.UNDER_REVIEW

    async def test_rejection_requires_flagged_document(self, store, make_application, reviewer):
        application = make_application(
            status=S.UNDER_REVIEW, documents={VALID_ID: D.APPROVED, CHEST_XRAY: D.APPROVED}
        )

        with pytest.raises(PreconditionFailedError) as exc_info:
            await review_service.finalize_application(
                store,
                application.id,
                FinalizeRequest(decision="Rejected", rejection_category="other"),
                reviewer,
            )

        assert exc_info.value.reason == "no_rejected_documents"

    async def test_rejection_records_category(self, store, make_application, reviewer):
        application = make_application(
            status=S.DOCUMENTS_NEED_REVISION,
            documents={VALID_ID: D.REJECTED, CHEST_XRAY: D.APPROVED},
        )

        await review_service.finalize_application(
            store,
            application.id,
            FinalizeRequest(decision="Rejected", rejection_category="fraud_suspected"),
            reviewer,
        )

        assert application.application_status == S.REJECTED
        assert application.rejection_category == "fraud_suspected"
        assert application.rejected_at is not None

    def test_rejection_category_is_mandatory(self):
        with pytest.raises(ValueError, match="rejection_category is required"):
            FinalizeRequest(decision="Rejected")

    async def test_applicant_cannot_finalize(self, store, make_application, applicant):
        application = make_application(status=S.UNDER_REVIEW)

        with pytest.raises(ForbiddenError):
            await review_service.finalize_application(
                store, application.id, FinalizeRequest(decision="Approved"), applicant
            )
