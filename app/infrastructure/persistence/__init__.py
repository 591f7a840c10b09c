"""Persistance PostgreSQL du workflow (repositories et unité de travail)."""

from app.infrastructure.persistence.application_repository import ApplicationRepository
from app.infrastructure.persistence.ledger_repository import ReferralLedgerRepository
from app.infrastructure.persistence.store import WorkflowStore

__all__ = ["ApplicationRepository", "ReferralLedgerRepository", "WorkflowStore"]
