"""Schémas de l'éligibilité au renouvellement."""

from pydantic import BaseModel, Field

from app.schemas.application import ApplicationResponse, HealthCardResponse
from app.schemas.utils import AgeYears, HealthCardId


class EligibilityResult(BaseModel):
    """Résultat de la chaîne de règles; reason est renvoyé tel quel au demandeur."""

    is_eligible: bool
    reason: str | None = None
    eligible_application: ApplicationResponse | None = None
    eligible_card: HealthCardResponse | None = None
    days_until_expiry: int | None = None


class RenewalCreate(BaseModel):
    """Création d'un renouvellement à partir de la carte éligible.

    Les champs optionnels remplacent les valeurs copiées de la demande
    précédente (changement d'employeur ou de situation).
    """

    previous_health_card_id: HealthCardId
    organization: str | None = Field(None, max_length=255)
    position: str | None = Field(None, max_length=255)
    civil_status: str | None = Field(None, max_length=50)
    age: AgeYears | None = None
