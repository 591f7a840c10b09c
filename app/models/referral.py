"""Historique des verdicts defavorables par document (ledger des renvois).

Deux representations physiques coexistent pendant la migration:

- document_referral_history (courante): issue_type explicite
- document_rejection_history (legacy): pas d'issue_type, le type est deduit
  de la presence de doctor_name

Ces modeles ne sont manipules que par ReferralLedgerRepository, qui fusionne
les deux tables. Aucun code metier ne lit une table seule.
"""

from datetime import datetime
from typing import Literal

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base

IssueType = Literal["medical_referral", "document_issue"]

MedicalReferralCategory = Literal[
    "abnormal_xray",
    "elevated_urinalysis",
    "positive_stool",
    "positive_drug_test",
    "neuro_exam_failed",
    "hepatitis_consultation",
    "other_medical_concern",
]

DocumentIssueCategory = Literal[
    "invalid_id",
    "expired_id",
    "blurry_photo",
    "wrong_format",
    "missing_info",
    "quality_issue",
    "wrong_document",
    "expired_document",
    "incomplete_document",
    "invalid_document",
    "format_issue",
    "other",
]


class DocumentReferralHistory(Base):
    """Table courante du ledger: une ligne par (demande, document, tentative)."""

    __tablename__ = "document_referral_history"
    __table_args__ = (
        UniqueConstraint(
            "application_id",
            "document_type_id",
            "attempt_number",
            name="uq_document_referral_history_attempt",
        ),
        CheckConstraint("attempt_number BETWEEN 1 AND 3", name="attempt_number_range"),
        # Au plus un renvoi non resolu par document
        Index(
            "uq_document_referral_history_unresolved",
            "application_id",
            "document_type_id",
            unique=True,
            postgresql_where=text("was_replaced = false"),
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    application_id: Mapped[int] = mapped_column(
        ForeignKey("applications.id"), nullable=False, index=True
    )
    document_type_id: Mapped[int] = mapped_column(ForeignKey("document_types.id"), nullable=False)
    document_upload_id: Mapped[int | None] = mapped_column(
        ForeignKey("document_uploads.id"), nullable=True
    )
    issue_type: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        comment="medical_referral ou document_issue",
    )
    medical_referral_category: Mapped[str | None] = mapped_column(String(50), nullable=True)
    document_issue_category: Mapped[str | None] = mapped_column(String(50), nullable=True)
    attempt_number: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Cycle de revue du document dans la demande (1 a 3)",
    )
    referral_reason: Mapped[str] = mapped_column(Text, nullable=False)
    specific_issues: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    doctor_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    clinic_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    referred_by: Mapped[str] = mapped_column(String(255), nullable=False)
    referred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    was_replaced: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    replaced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    notification_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notification_sent_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    def __repr__(self) -> str:
        return (
            f"<DocumentReferralHistory(application_id={self.application_id}, "
            f"document_type_id={self.document_type_id}, attempt={self.attempt_number})>"
        )


class DocumentRejectionHistory(Base):
    """Table legacy du ledger, lue et marquee mais plus jamais alimentee."""

    __tablename__ = "document_rejection_history"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    application_id: Mapped[int] = mapped_column(
        ForeignKey("applications.id"), nullable=False, index=True
    )
    document_type_id: Mapped[int] = mapped_column(ForeignKey("document_types.id"), nullable=False)
    rejection_reason: Mapped[str] = mapped_column(Text, nullable=False)
    specific_issues: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    doctor_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    clinic_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    rejected_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    rejected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    was_replaced: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    replaced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    notification_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notification_sent_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    def __repr__(self) -> str:
        return (
            f"<DocumentRejectionHistory(application_id={self.application_id}, "
            f"document_type_id={self.document_type_id}, attempt={self.attempt_number})>"
        )
