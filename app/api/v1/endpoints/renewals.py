"""Endpoints API du renouvellement de carte sanitaire."""

from fastapi import APIRouter, Depends, status

from app.core.dependencies import get_workflow_store
from app.core.security import User, get_current_user
from app.infrastructure.persistence.store import WorkflowStore
from app.schemas.application import ApplicationResponse
from app.schemas.renewal import EligibilityResult, RenewalCreate
from app.schemas.responses import auth_responses, workflow_responses
from app.services import eligibility_service

router = APIRouter()


@router.get(
    "/eligibility",
    response_model=EligibilityResult,
    summary="Éligibilité au renouvellement",
    description="Évalue si l'utilisateur courant peut renouveler sa carte (lecture seule)",
    responses=auth_responses(),
)
async def get_renewal_eligibility(
    store: WorkflowStore = Depends(get_workflow_store),
    current_user: User = Depends(get_current_user),
) -> EligibilityResult:
    return await eligibility_service.get_renewal_eligibility(store=store, user_id=current_user.user_id)


@router.post(
    "",
    response_model=ApplicationResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Créer un renouvellement",
    description="Réévalue l'éligibilité puis crée la demande de renouvellement (Draft)",
    responses=workflow_responses(),
)
async def create_renewal(
    renewal: RenewalCreate,
    store: WorkflowStore = Depends(get_workflow_store),
    current_user: User = Depends(get_current_user),
) -> ApplicationResponse:
    application = await eligibility_service.create_renewal_application(
        store=store, user=current_user, renewal_data=renewal
    )
    return ApplicationResponse.model_validate(application)
