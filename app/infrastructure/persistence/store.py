"""Unité de travail du moteur de revue.

Une requête = une transaction: les services valident tout, mutent, puis
appellent commit(). En cas d'erreur, rollback() annule toute mutation
partielle (verdict et transition sont atomiques).
"""

from sqlalchemy.ext.asyncio import AsyncSession

from app.infrastructure.persistence.application_repository import ApplicationRepository
from app.infrastructure.persistence.ledger_repository import ReferralLedgerRepository


class WorkflowStore:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.applications = ApplicationRepository(session)
        self.ledger = ReferralLedgerRepository(session)

    async def commit(self) -> None:
        await self.session.commit()

    async def rollback(self) -> None:
        await self.session.rollback()
