"""Schémas du ledger des renvois, des verdicts et des notifications."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from app.models.application import ApplicationStatus
from app.models.document import DocumentReviewStatus
from app.models.referral import DocumentIssueCategory, IssueType, MedicalReferralCategory
from app.schemas.utils import AttemptCount, FileReference, NonEmptyStr, Remarks

# Nombre maximal de cycles de revue par document dans une demande
MAX_DOCUMENT_ATTEMPTS = 3

LedgerSource = Literal["current", "legacy"]


class LedgerEntry(BaseModel):
    """Entrée logique du ledger, indépendante de la table d'origine."""

    model_config = ConfigDict(frozen=True)

    entry_id: int
    source: LedgerSource
    application_id: int
    document_type_id: int
    issue_type: IssueType
    attempt_number: int
    referral_reason: str
    specific_issues: tuple[str, ...] = ()
    doctor_name: str | None = None
    clinic_address: str | None = None
    referred_by: str | None = None
    referred_at: datetime | None = None
    was_replaced: bool = False
    replaced_at: datetime | None = None
    notification_sent: bool = False
    notification_sent_at: datetime | None = None

    @property
    def is_unresolved(self) -> bool:
        return not self.was_replaced


class AttemptState(BaseModel):
    """Compteur de tentatives d'un document, calculé une fois par requête."""

    model_config = ConfigDict(frozen=True)

    document_type_id: int
    count: int = 0
    source_table: LedgerSource | None = None
    unresolved_entry_id: int | None = None

    @property
    def has_unresolved(self) -> bool:
        return self.unresolved_entry_id is not None

    @property
    def remaining(self) -> int:
        return max(MAX_DOCUMENT_ATTEMPTS - self.count, 0)

    @property
    def is_exhausted(self) -> bool:
        return self.count >= MAX_DOCUMENT_ATTEMPTS


class VerdictRequest(BaseModel):
    """Verdict d'un agent sur un document.

    - approve: valide la pièce, résout le renvoi en cours
    - reject: problème documentaire (document_issue), nouvelle soumission attendue
    - refer: constat médical (medical_referral), consultation attendue
    """

    decision: Literal["approve", "reject", "refer"]
    referral_reason: str | None = Field(None, max_length=2000)
    specific_issues: list[NonEmptyStr] = Field(default_factory=list, max_length=20)
    medical_referral_category: MedicalReferralCategory | None = None
    document_issue_category: DocumentIssueCategory | None = None
    doctor_name: str | None = Field(None, max_length=255)
    clinic_address: str | None = Field(None, max_length=1000)
    remarks: Remarks | None = None
    expected_attempt_number: AttemptCount | None = Field(
        None,
        description="Nombre de tentatives vu par l'agent; un écart signale une écriture concurrente",
    )

    @field_validator("referral_reason", "doctor_name", "clinic_address")
    @classmethod
    def blank_to_none(cls, v: str | None) -> str | None:
        if v is not None and not v.strip():
            return None
        return v.strip() if v else v

    @model_validator(mode="after")
    def check_issue_details(self) -> "VerdictRequest":
        if self.decision == "approve":
            return self
        if not self.referral_reason:
            raise ValueError("referral_reason is required when flagging or referring a document")
        if self.decision == "refer":
            if not self.medical_referral_category:
                raise ValueError("medical_referral_category is required for medical referrals")
            if not self.doctor_name:
                raise ValueError("doctor_name is required for medical referrals")
        elif not self.document_issue_category:
            raise ValueError("document_issue_category is required for document issues")
        return self

    @property
    def issue_type(self) -> IssueType | None:
        if self.decision == "refer":
            return "medical_referral"
        if self.decision == "reject":
            return "document_issue"
        return None


class VerdictResult(BaseModel):
    new_application_status: ApplicationStatus
    document_status: DocumentReviewStatus
    ledger_entry_id: int | None = None
    attempt_number: int = 0
    remaining_attempts: int = MAX_DOCUMENT_ATTEMPTS
    permanently_closed: bool = False


class ResubmitRequest(BaseModel):
    """Nouvelle pièce (ou résultat de contrôle médical) après un renvoi."""

    file_reference: FileReference
    original_filename: str | None = Field(None, max_length=255)


class FinalizeRequest(BaseModel):
    decision: Literal["Approved", "Rejected"]
    rejection_category: (
        Literal[
            "fraud_suspected",
            "incomplete_information",
            "does_not_meet_requirements",
            "duplicate_application",
            "other",
        ]
        | None
    ) = None
    remarks: Remarks | None = None

    @model_validator(mode="after")
    def check_rejection_category(self) -> "FinalizeRequest":
        if self.decision == "Rejected" and self.rejection_category is None:
            raise ValueError("rejection_category is required for a final rejection")
        return self


class ReferralHistoryItem(BaseModel):
    """Ligne d'historique affichée au demandeur (badge de tentative)."""

    document_type_id: int
    document_name: str
    issue_type: IssueType
    attempt_number: int
    max_attempts: int = MAX_DOCUMENT_ATTEMPTS
    remaining_attempts: int
    referral_reason: str
    specific_issues: list[str] = Field(default_factory=list)
    doctor_name: str | None = None
    clinic_address: str | None = None
    referred_at: datetime | None = None
    was_replaced: bool
    replaced_at: datetime | None = None


NotificationType = Literal[
    "document_referred_medical",
    "document_needs_correction",
    "application_permanently_closed",
]


class NotificationPayload(BaseModel):
    """Contenu et routage d'une notification; l'envoi est fait par l'appelant."""

    user_id: str
    application_id: int
    document_type_id: int | None = None
    ledger_entry_id: int | None = None
    attempt_number: int | None = None
    notification_type: NotificationType
    title: str
    message: str
    action_url: str
