"""Catalogue des types de documents et pieces deposees par demande."""

from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base
from app.models.application import enum_column


class DocumentReviewStatus(str, Enum):
    """Verdict courant d'une piece."""

    MISSING = "Missing"
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    REFERRED = "Referred"


class DocumentType(Base):
    """Type de document exige (piece d'identite, radio thoracique, ...)."""

    __tablename__ = "document_types"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    field_identifier: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    is_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    security_guard_only: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        comment="Exige uniquement pour les agents de securite",
    )
    is_medical: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        comment="Resultat d'examen (peut donner lieu a un renvoi medical)",
    )
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def is_required_for(self, security_guard: bool) -> bool:
        if self.security_guard_only:
            return security_guard
        return self.is_required

    def __repr__(self) -> str:
        return f"<DocumentType(id={self.id}, name={self.name})>"


class DocumentUpload(Base):
    """Piece d'une demande; une ligne par (demande, type de document)."""

    __tablename__ = "document_uploads"
    __table_args__ = (UniqueConstraint("application_id", "document_type_id"),)

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    application_id: Mapped[int] = mapped_column(
        ForeignKey("applications.id"), nullable=False, index=True
    )
    document_type_id: Mapped[int] = mapped_column(ForeignKey("document_types.id"), nullable=False)
    review_status: Mapped[DocumentReviewStatus] = mapped_column(
        enum_column(DocumentReviewStatus, "document_review_status"),
        nullable=False,
        default=DocumentReviewStatus.MISSING,
    )
    file_reference: Mapped[str | None] = mapped_column(
        String(500),
        nullable=True,
        comment="Reference opaque vers le stockage de fichiers externe",
    )
    original_filename: Mapped[str | None] = mapped_column(String(255), nullable=True)
    uploaded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reviewed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    admin_remarks: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<DocumentUpload(application_id={self.application_id}, "
            f"document_type_id={self.document_type_id}, status={self.review_status})>"
        )
