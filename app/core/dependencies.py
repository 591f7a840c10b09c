"""Dependances FastAPI pour l'injection des repositories."""

from collections.abc import AsyncGenerator

from app.core.database import async_session_maker
from app.infrastructure.persistence.store import WorkflowStore


async def get_workflow_store() -> AsyncGenerator[WorkflowStore, None]:
    """
    Fournit l'unite de travail de la requete.

    La session est fermee en fin de requete; toute transaction non commitee
    par le service est annulee a la fermeture.
    """
    async with async_session_maker() as session:
        yield WorkflowStore(session)
