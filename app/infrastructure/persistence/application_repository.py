"""Repository des demandes, pièces, cartes et du catalogue de documents."""

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.application import Application, HealthCard
from app.models.document import DocumentType, DocumentUpload

logger = logging.getLogger(__name__)


class ApplicationRepository:
    """Accès aux demandes; les demandes soft-deleted ne sont jamais retournées."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # Demandes

    async def get(self, application_id: int, for_update: bool = False) -> Application | None:
        query = select(Application).where(
            Application.id == application_id,
            Application.deleted_at.is_(None),
        )
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def list_for_user(self, user_id: str) -> list[Application]:
        result = await self.session.execute(
            select(Application)
            .where(Application.user_id == user_id, Application.deleted_at.is_(None))
            .order_by(Application.id)
        )
        return list(result.scalars().all())

    async def add(self, application: Application) -> Application:
        self.session.add(application)
        await self.session.flush()
        return application

    # Catalogue

    async def get_document_type(self, document_type_id: int) -> DocumentType | None:
        return await self.session.get(DocumentType, document_type_id)

    async def list_document_types(self) -> list[DocumentType]:
        result = await self.session.execute(
            select(DocumentType).order_by(DocumentType.sort_order, DocumentType.id)
        )
        return list(result.scalars().all())

    # Pièces

    async def get_document(
        self, application_id: int, document_type_id: int, for_update: bool = False
    ) -> DocumentUpload | None:
        query = select(DocumentUpload).where(
            DocumentUpload.application_id == application_id,
            DocumentUpload.document_type_id == document_type_id,
        )
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def list_documents(self, application_id: int) -> list[DocumentUpload]:
        result = await self.session.execute(
            select(DocumentUpload)
            .where(DocumentUpload.application_id == application_id)
            .order_by(DocumentUpload.document_type_id)
        )
        return list(result.scalars().all())

    async def add_document(self, document: DocumentUpload) -> DocumentUpload:
        self.session.add(document)
        await self.session.flush()
        return document

    # Cartes

    async def get_health_card(
        self, health_card_id: int, for_update: bool = False
    ) -> HealthCard | None:
        return await self.session.get(HealthCard, health_card_id, with_for_update=for_update)

    async def get_card_for_application(self, application_id: int) -> HealthCard | None:
        result = await self.session.execute(
            select(HealthCard).where(HealthCard.application_id == application_id)
        )
        return result.scalar_one_or_none()

    async def add_health_card(self, card: HealthCard) -> HealthCard:
        self.session.add(card)
        await self.session.flush()
        return card
