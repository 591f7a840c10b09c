"""Classe de base pour les handlers des flux consommés via Redis."""

import logging
from abc import ABC, abstractmethod
from typing import Any, Generic, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PayloadValidationError

from app.core.database import async_session_maker
from app.core.exceptions import NotFoundError, PreconditionFailedError
from app.infrastructure.persistence.store import WorkflowStore

PayloadT = TypeVar("PayloadT", bound=BaseModel)


class BaseEventHandler(ABC, Generic[PayloadT]):
    """Handler typé: valide le payload puis l'applique dans sa propre transaction."""

    payload_model: type[PayloadT]

    def __init__(self, subject: str):
        self.subject = subject
        self.logger = logging.getLogger(f"{__name__}.{subject}")

    @abstractmethod
    async def handle_event(self, store: WorkflowStore, event: PayloadT):
        """Applique l'événement validé.

        Args:
            store: Unité de travail dédiée à l'événement
            event: Payload validé
        """

    async def handle_error(self, error: Exception, payload: dict[str, Any]):
        """Journalise une erreur de traitement sans interrompre la consommation."""
        if isinstance(error, PayloadValidationError):
            self.logger.error(f"Payload invalide sur {self.subject}: {error.errors()}")
        elif isinstance(error, (NotFoundError, PreconditionFailedError)):
            # Événement hors séquence ou demande inconnue: l'état courant fait foi
            self.logger.warning(
                f"Événement ignoré sur {self.subject}: {error.problem_detail.detail} ({payload})"
            )
        else:
            self.logger.error(
                f"Erreur lors du traitement de {self.subject}: {error}", exc_info=True
            )

    async def on_event(self, payload: dict[str, Any]):
        """Point d'entrée enregistré auprès de @subscribe()."""
        self.logger.debug(f"Événement reçu sur {self.subject}: {payload}")
        try:
            event = self.payload_model.model_validate(payload)
            async with async_session_maker() as session:
                await self.handle_event(WorkflowStore(session), event)
        except Exception as e:
            await self.handle_error(e, payload)
