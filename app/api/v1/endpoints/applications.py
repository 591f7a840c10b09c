"""Endpoints API des demandes côté demandeur.

Création du brouillon, dépôt des pièces, soumission, nouvelle soumission
après renvoi, annulation et historique des renvois.
"""

from fastapi import APIRouter, Depends, status

from app.core.dependencies import get_workflow_store
from app.core.security import User, get_current_user
from app.infrastructure.persistence.store import WorkflowStore
from app.schemas.application import (
    ApplicationCreate,
    ApplicationDetailResponse,
    ApplicationResponse,
    CancelRequest,
    DocumentResponse,
    DocumentUploadRequest,
    HealthCardResponse,
)
from app.schemas.referral import ReferralHistoryItem, ResubmitRequest
from app.schemas.responses import create_responses, read_responses, workflow_responses
from app.services import application_service

router = APIRouter()


@router.post(
    "",
    response_model=ApplicationResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Créer une demande",
    description="Crée une nouvelle demande de carte sanitaire au statut Draft",
    responses=create_responses(),
)
async def create_application(
    application: ApplicationCreate,
    store: WorkflowStore = Depends(get_workflow_store),
    current_user: User = Depends(get_current_user),
) -> ApplicationResponse:
    created = await application_service.create_application(
        store=store, user=current_user, application_data=application
    )
    return ApplicationResponse.model_validate(created)


@router.get(
    "/{application_id}",
    response_model=ApplicationDetailResponse,
    summary="Récupérer une demande",
    description="Demande, pièces et carte émise (demandeur ou agent de revue)",
    responses=read_responses(),
)
async def get_application(
    application_id: int,
    store: WorkflowStore = Depends(get_workflow_store),
    current_user: User = Depends(get_current_user),
) -> ApplicationDetailResponse:
    application, documents = await application_service.get_application_detail(
        store=store, application_id=application_id, user=current_user
    )
    card = await store.applications.get_card_for_application(application_id)
    return ApplicationDetailResponse(
        **ApplicationResponse.model_validate(application).model_dump(),
        documents=[DocumentResponse.model_validate(d) for d in documents],
        health_card=HealthCardResponse.model_validate(card) if card else None,
    )


@router.put(
    "/{application_id}/documents/{document_type_id}",
    response_model=DocumentResponse,
    summary="Déposer une pièce",
    description="Enregistre la référence d'un fichier stocké pour une pièce du brouillon",
    responses=workflow_responses(),
)
async def upload_document(
    application_id: int,
    document_type_id: int,
    upload: DocumentUploadRequest,
    store: WorkflowStore = Depends(get_workflow_store),
    current_user: User = Depends(get_current_user),
) -> DocumentResponse:
    document = await application_service.upload_document(
        store=store,
        application_id=application_id,
        document_type_id=document_type_id,
        user=current_user,
        upload=upload,
    )
    return DocumentResponse.model_validate(document)


@router.post(
    "/{application_id}/submit",
    response_model=ApplicationResponse,
    summary="Soumettre une demande",
    responses=workflow_responses(),
)
async def submit_application(
    application_id: int,
    store: WorkflowStore = Depends(get_workflow_store),
    current_user: User = Depends(get_current_user),
) -> ApplicationResponse:
    application = await application_service.submit_application(
        store=store, application_id=application_id, user=current_user
    )
    return ApplicationResponse.model_validate(application)


@router.post(
    "/{application_id}/documents/{document_type_id}/resubmit",
    response_model=ApplicationResponse,
    summary="Resoumettre une pièce signalée",
    description="Nouvelle pièce ou résultat de contrôle médical après un renvoi",
    responses=workflow_responses(),
)
async def resubmit_document(
    application_id: int,
    document_type_id: int,
    resubmission: ResubmitRequest,
    store: WorkflowStore = Depends(get_workflow_store),
    current_user: User = Depends(get_current_user),
) -> ApplicationResponse:
    application = await application_service.resubmit_document(
        store=store,
        application_id=application_id,
        document_type_id=document_type_id,
        user=current_user,
        resubmission=resubmission,
    )
    return ApplicationResponse.model_validate(application)


@router.post(
    "/{application_id}/cancel",
    response_model=ApplicationResponse,
    summary="Annuler une demande",
    description="Annulation par le demandeur depuis tout statut non terminal",
    responses=workflow_responses(),
)
async def cancel_application(
    application_id: int,
    cancel: CancelRequest | None = None,
    store: WorkflowStore = Depends(get_workflow_store),
    current_user: User = Depends(get_current_user),
) -> ApplicationResponse:
    application = await application_service.cancel_application(
        store=store,
        application_id=application_id,
        user=current_user,
        reason=cancel.reason if cancel else None,
    )
    return ApplicationResponse.model_validate(application)


@router.get(
    "/{application_id}/referrals",
    response_model=list[ReferralHistoryItem],
    summary="Historique des renvois",
    description="Renvois fusionnés (tables courante et legacy) avec le badge de tentative",
    responses=read_responses(),
)
async def get_referral_history(
    application_id: int,
    store: WorkflowStore = Depends(get_workflow_store),
    current_user: User = Depends(get_current_user),
) -> list[ReferralHistoryItem]:
    return await application_service.get_referral_history(
        store=store, application_id=application_id, user=current_user
    )
