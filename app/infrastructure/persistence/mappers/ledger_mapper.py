"""Mapper entre les lignes du ledger (deux tables) et LedgerEntry.

C'est le seul endroit où le type de renvoi d'une ligne legacy est déduit:
doctor_name renseigné => medical_referral, sinon document_issue. Au-dessus de
la couche repository, seul LedgerEntry.issue_type est lu.
"""

from datetime import datetime

from app.models.referral import DocumentReferralHistory, DocumentRejectionHistory, IssueType
from app.schemas.referral import LedgerEntry, VerdictRequest


def infer_legacy_issue_type(doctor_name: str | None) -> IssueType:
    """Déduit le type de renvoi d'une ligne legacy."""
    if doctor_name and doctor_name.strip():
        return "medical_referral"
    return "document_issue"


class LedgerMapper:
    """Conversion unidirectionnelle lignes SQL -> LedgerEntry, et verdict -> ligne courante."""

    @staticmethod
    def from_current(row: DocumentReferralHistory) -> LedgerEntry:
        return LedgerEntry(
            entry_id=row.id,
            source="current",
            application_id=row.application_id,
            document_type_id=row.document_type_id,
            issue_type=row.issue_type,
            attempt_number=row.attempt_number,
            referral_reason=row.referral_reason,
            specific_issues=tuple(row.specific_issues or ()),
            doctor_name=row.doctor_name,
            clinic_address=row.clinic_address,
            referred_by=row.referred_by,
            referred_at=row.referred_at,
            was_replaced=bool(row.was_replaced),
            replaced_at=row.replaced_at,
            notification_sent=bool(row.notification_sent),
            notification_sent_at=row.notification_sent_at,
        )

    @staticmethod
    def from_legacy(row: DocumentRejectionHistory) -> LedgerEntry:
        return LedgerEntry(
            entry_id=row.id,
            source="legacy",
            application_id=row.application_id,
            document_type_id=row.document_type_id,
            issue_type=infer_legacy_issue_type(row.doctor_name),
            attempt_number=row.attempt_number or 1,
            referral_reason=row.rejection_reason,
            specific_issues=tuple(row.specific_issues or ()),
            doctor_name=row.doctor_name,
            clinic_address=row.clinic_address,
            referred_by=row.rejected_by,
            referred_at=row.rejected_at,
            was_replaced=bool(row.was_replaced),
            replaced_at=row.replaced_at,
            notification_sent=bool(row.notification_sent),
            notification_sent_at=row.notification_sent_at,
        )

    @staticmethod
    def to_current(
        verdict: VerdictRequest,
        *,
        application_id: int,
        document_type_id: int,
        document_upload_id: int | None,
        attempt_number: int,
        reviewer_id: str,
        referred_at: datetime,
    ) -> DocumentReferralHistory:
        """Construit la ligne courante d'un verdict défavorable."""
        is_medical = verdict.issue_type == "medical_referral"
        return DocumentReferralHistory(
            application_id=application_id,
            document_type_id=document_type_id,
            document_upload_id=document_upload_id,
            issue_type=verdict.issue_type,
            medical_referral_category=verdict.medical_referral_category if is_medical else None,
            document_issue_category=None if is_medical else verdict.document_issue_category,
            attempt_number=attempt_number,
            referral_reason=verdict.referral_reason,
            specific_issues=list(verdict.specific_issues),
            doctor_name=verdict.doctor_name if is_medical else None,
            clinic_address=verdict.clinic_address if is_medical else None,
            referred_by=reviewer_id,
            referred_at=referred_at,
            was_replaced=False,
            replaced_at=None,
            notification_sent=False,
            notification_sent_at=None,
        )
