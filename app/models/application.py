"""Modeles des demandes de carte sanitaire et des cartes emises.

Le champ application_status est la source de verite unique sur la position
d'une demande dans le pipeline. Il n'est modifie que par le moteur de revue
et par les handlers d'issue de paiement / d'orientation.
"""

from datetime import datetime
from enum import Enum
from typing import Literal

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text, func, text
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base

ApplicationType = Literal["New", "Renew"]
PaymentStatus = Literal["Submitted", "Validated", "Failed"]
HealthCardStatus = Literal["active", "expired", "revoked"]


class ApplicationStatus(str, Enum):
    """Etats du cycle de vie d'une demande."""

    DRAFT = "Draft"
    SUBMITTED = "Submitted"
    FOR_DOCUMENT_VERIFICATION = "For Document Verification"
    DOCUMENTS_NEED_REVISION = "Documents Need Revision"
    REFERRED_FOR_MEDICAL_MANAGEMENT = "Referred for Medical Management"
    PENDING_PAYMENT = "Pending Payment"
    FOR_PAYMENT_VALIDATION = "For Payment Validation"
    FOR_ORIENTATION = "For Orientation"
    SCHEDULED = "Scheduled"
    FOR_ATTENDANCE_VALIDATION = "For Attendance Validation"
    UNDER_REVIEW = "Under Review"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    CANCELLED = "Cancelled"
    PERMANENTLY_CLOSED = "Permanently Closed"


# Renouvellement ouvert: au plus un par carte remplacee
OPEN_RENEWAL_WHERE = (
    "application_type = 'Renew' AND deleted_at IS NULL AND application_status NOT IN "
    "('Approved', 'Rejected', 'Cancelled', 'Permanently Closed')"
)


def enum_column(enum_cls: type[Enum], name: str) -> SAEnum:
    """Colonne VARCHAR stockant la valeur (et non le nom) du membre."""
    return SAEnum(
        enum_cls,
        name=name,
        native_enum=False,
        length=64,
        values_callable=lambda members: [member.value for member in members],
        validate_strings=True,
    )


class Application(Base):
    """Demande de carte sanitaire (nouvelle ou renouvellement)."""

    __tablename__ = "applications"
    __table_args__ = (
        Index(
            "uq_applications_open_renewal",
            "previous_health_card_id",
            unique=True,
            postgresql_where=text(OPEN_RENEWAL_WHERE),
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    user_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
        comment="UUID Keycloak du demandeur",
    )
    application_type: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        default="New",
        comment="New ou Renew",
    )
    application_status: Mapped[ApplicationStatus] = mapped_column(
        enum_column(ApplicationStatus, "application_status"),
        nullable=False,
        default=ApplicationStatus.DRAFT,
        index=True,
        comment="Position de la demande dans le pipeline",
    )

    # Categorie d'emploi
    job_category: Mapped[str] = mapped_column(String(100), nullable=False)
    requires_orientation: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        comment="Orientation obligatoire (manipulateurs d'aliments)",
    )
    security_guard: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        comment="Agent de securite (ensemble de documents specifique)",
    )

    # Renouvellement
    is_renewal: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    renewal_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    previous_health_card_id: Mapped[int | None] = mapped_column(
        ForeignKey("health_cards.id", use_alter=True),
        nullable=True,
        comment="Carte remplacee par ce renouvellement",
    )

    # Informations personnelles
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    middle_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    suffix: Mapped[str | None] = mapped_column(String(20), nullable=True)
    age: Mapped[int | None] = mapped_column(Integer, nullable=True)
    gender: Mapped[str | None] = mapped_column(String(20), nullable=True)
    nationality: Mapped[str | None] = mapped_column(String(100), nullable=True)
    civil_status: Mapped[str | None] = mapped_column(String(50), nullable=True)
    organization: Mapped[str | None] = mapped_column(String(255), nullable=True)
    position: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Paiement et orientation (issues consommees)
    payment_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    payment_reference: Mapped[str | None] = mapped_column(String(100), nullable=True)
    orientation_completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Decision
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_category: Mapped[str | None] = mapped_column(String(50), nullable=True)
    admin_remarks: Mapped[str | None] = mapped_column(Text, nullable=True)
    decided_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Sorties laterales
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    closure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    closure_notified_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Audit
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )
    deleted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        index=True,
        comment="Soft delete: exclue de l'eligibilite et des listes",
    )

    @property
    def full_name(self) -> str:
        parts = [self.first_name, self.middle_name, self.last_name, self.suffix]
        return " ".join(part for part in parts if part)

    def __repr__(self) -> str:
        return (
            f"<Application(id={self.id}, type={self.application_type}, "
            f"status={self.application_status})>"
        )


class HealthCard(Base):
    """Carte sanitaire emise a l'approbation d'une demande."""

    __tablename__ = "health_cards"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    application_id: Mapped[int] = mapped_column(
        ForeignKey("applications.id"),
        unique=True,
        nullable=False,
        comment="Demande approuvee ayant donne lieu a la carte",
    )
    registration_number: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    issued_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expiry_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<HealthCard(id={self.id}, number={self.registration_number})>"
