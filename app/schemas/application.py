"""Schémas Pydantic pour les demandes de carte sanitaire.

Les messages destinés au demandeur sont en anglais (application mobile);
la documentation interne reste en français.
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from app.models.application import ApplicationStatus
from app.models.document import DocumentReviewStatus
from app.schemas.utils import (
    AgeYears,
    ApplicationId,
    FileReference,
    NonEmptyStr,
    PersonName,
    Remarks,
)


class PersonalInformation(BaseModel):
    """Champs personnels copiés tels quels lors d'un renouvellement."""

    first_name: PersonName = Field(..., examples=["Maria"])
    middle_name: PersonName | None = None
    last_name: PersonName = Field(..., examples=["Santos"])
    suffix: str | None = Field(None, max_length=20)
    age: AgeYears | None = None
    gender: Literal["Male", "Female", "Other"] | None = None
    nationality: str | None = Field(None, max_length=100)
    civil_status: str | None = Field(None, max_length=50)
    organization: str | None = Field(None, max_length=255)
    position: str | None = Field(None, max_length=255)


class ApplicationCreate(PersonalInformation):
    """Création d'une nouvelle demande (brouillon)."""

    job_category: NonEmptyStr = Field(..., description="Catégorie d'emploi", examples=["Food Handler"])
    requires_orientation: bool = Field(
        default=False, description="Orientation obligatoire pour la catégorie d'emploi"
    )
    security_guard: bool = Field(
        default=False, description="Agent de sécurité (documents supplémentaires)"
    )


class DocumentUploadRequest(BaseModel):
    """Référence d'un fichier déjà stocké par le collaborateur de stockage."""

    file_reference: FileReference
    original_filename: str | None = Field(None, max_length=255)


class DocumentResponse(BaseModel):
    id: int
    document_type_id: int
    review_status: DocumentReviewStatus
    file_reference: str | None = None
    original_filename: str | None = None
    uploaded_at: datetime | None = None
    reviewed_at: datetime | None = None
    admin_remarks: str | None = None

    model_config = {"from_attributes": True}


class HealthCardResponse(BaseModel):
    id: int
    application_id: int
    registration_number: str
    issued_date: datetime
    expiry_date: datetime
    status: str

    model_config = {"from_attributes": True}


class ApplicationResponse(BaseModel):
    """Vue d'une demande."""

    id: int
    user_id: str
    application_type: Literal["New", "Renew"]
    application_status: ApplicationStatus
    job_category: str
    requires_orientation: bool
    security_guard: bool
    is_renewal: bool
    renewal_count: int
    previous_health_card_id: int | None = None
    first_name: str
    middle_name: str | None = None
    last_name: str
    suffix: str | None = None
    age: int | None = None
    gender: str | None = None
    nationality: str | None = None
    civil_status: str | None = None
    organization: str | None = None
    position: str | None = None
    payment_status: str | None = None
    submitted_at: datetime | None = None
    approved_at: datetime | None = None
    rejected_at: datetime | None = None
    rejection_category: str | None = None
    cancelled_at: datetime | None = None
    closed_at: datetime | None = None
    closure_reason: str | None = None

    model_config = {"from_attributes": True}


class ApplicationDetailResponse(ApplicationResponse):
    documents: list[DocumentResponse] = Field(default_factory=list)
    health_card: HealthCardResponse | None = None


class CancelRequest(BaseModel):
    reason: Remarks | None = None


class PaymentValidationRequest(BaseModel):
    """Validation du paiement par un agent."""

    is_valid: bool
    remarks: Remarks | None = None


class PaymentOutcomeEvent(BaseModel):
    """Issue de paiement reçue du collaborateur de paiement."""

    application_id: ApplicationId
    outcome: Literal["submitted", "failed"]
    reference_number: str | None = Field(None, max_length=100)


class AttendanceOutcomeEvent(BaseModel):
    """Issue d'orientation reçue du collaborateur de planification."""

    application_id: ApplicationId
    outcome: Literal["scheduled", "checked_in", "validated", "missed"]
