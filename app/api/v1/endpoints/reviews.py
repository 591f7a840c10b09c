"""Endpoints API des agents de revue (admin, inspecteur).

Les rôles sont vérifiés par la dépendance get_current_reviewer puis de
nouveau par le moteur de décision.
"""

from fastapi import APIRouter, Depends

from app.core.dependencies import get_workflow_store
from app.core.security import User, get_current_reviewer
from app.infrastructure.persistence.store import WorkflowStore
from app.schemas.application import ApplicationResponse, PaymentValidationRequest
from app.schemas.referral import (
    FinalizeRequest,
    NotificationPayload,
    VerdictRequest,
    VerdictResult,
)
from app.schemas.responses import read_responses, workflow_responses
from app.services import notification_service, review_service

router = APIRouter()


@router.post(
    "/applications/{application_id}/verification",
    response_model=ApplicationResponse,
    summary="Démarrer la vérification documentaire",
    responses=workflow_responses(),
)
async def begin_document_verification(
    application_id: int,
    store: WorkflowStore = Depends(get_workflow_store),
    reviewer: User = Depends(get_current_reviewer),
) -> ApplicationResponse:
    application = await review_service.begin_document_verification(
        store=store, application_id=application_id, reviewer=reviewer
    )
    return ApplicationResponse.model_validate(application)


@router.post(
    "/applications/{application_id}/documents/{document_type_id}/verdict",
    response_model=VerdictResult,
    summary="Rendre un verdict sur une pièce",
    description=(
        "approve, reject (problème documentaire) ou refer (renvoi médical). "
        "Au-delà de 3 tentatives la demande est fermée définitivement."
    ),
    responses=workflow_responses(),
)
async def record_verdict(
    application_id: int,
    document_type_id: int,
    verdict: VerdictRequest,
    store: WorkflowStore = Depends(get_workflow_store),
    reviewer: User = Depends(get_current_reviewer),
) -> VerdictResult:
    return await review_service.record_verdict(
        store=store,
        application_id=application_id,
        document_type_id=document_type_id,
        verdict=verdict,
        reviewer=reviewer,
    )


@router.post(
    "/applications/{application_id}/payment-validation",
    response_model=ApplicationResponse,
    summary="Valider le paiement",
    responses=workflow_responses(),
)
async def validate_payment(
    application_id: int,
    validation: PaymentValidationRequest,
    store: WorkflowStore = Depends(get_workflow_store),
    reviewer: User = Depends(get_current_reviewer),
) -> ApplicationResponse:
    application = await review_service.validate_payment(
        store=store, application_id=application_id, reviewer=reviewer, validation=validation
    )
    return ApplicationResponse.model_validate(application)


@router.post(
    "/applications/{application_id}/finalize",
    response_model=ApplicationResponse,
    summary="Décision finale",
    description="Approuve (émet la carte) ou rejette définitivement la demande",
    responses=workflow_responses(),
)
async def finalize_application(
    application_id: int,
    decision: FinalizeRequest,
    store: WorkflowStore = Depends(get_workflow_store),
    reviewer: User = Depends(get_current_reviewer),
) -> ApplicationResponse:
    application = await review_service.finalize_application(
        store=store, application_id=application_id, decision=decision, reviewer=reviewer
    )
    return ApplicationResponse.model_validate(application)


@router.post(
    "/applications/{application_id}/notifications",
    response_model=list[NotificationPayload],
    summary="Composer les notifications de renvoi",
    description="Retourne les notifications à livrer et les marque envoyées (deux tables du ledger)",
    responses=read_responses(),
)
async def compose_notifications(
    application_id: int,
    store: WorkflowStore = Depends(get_workflow_store),
    reviewer: User = Depends(get_current_reviewer),
) -> list[NotificationPayload]:
    return await notification_service.compose_and_mark_notifications(
        store=store, application_id=application_id
    )
