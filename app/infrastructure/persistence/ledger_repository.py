"""Repository du ledger des renvois (tables courante et legacy).

Les deux tables forment une seule ressource logique:

- toute lecture qui alimente une décision passe par get_merged_referrals(),
  qui déduplique par document en préférant la table courante
- tout marquage "notifié" ou "remplacé" est appliqué aux deux tables
- les nouvelles entrées ne sont écrites que dans la table courante

Les méthodes d'accès brut (list_current, list_legacy, add_referral,
mark_notified, mark_replaced) sont les seules à toucher SQL; la fusion est
calculée au-dessus, une seule fois pour tous les appelants.
"""

import logging
from collections import defaultdict
from collections.abc import Iterable
from datetime import datetime

from opentelemetry import trace
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.infrastructure.persistence.mappers import LedgerMapper
from app.models.referral import DocumentReferralHistory, DocumentRejectionHistory
from app.schemas.referral import AttemptState, LedgerEntry

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def merge_referrals(
    current: Iterable[LedgerEntry], legacy: Iterable[LedgerEntry]
) -> list[LedgerEntry]:
    """
    Fusionne les entrées des deux tables.

    Pour chaque document_type_id, les entrées courantes font foi dès qu'il en
    existe au moins une; sinon les entrées legacy sont retenues.

    Returns:
        Entrées triées par (document_type_id, attempt_number)
    """
    current = list(current)
    documents_in_current = {entry.document_type_id for entry in current}
    merged = current + [
        entry for entry in legacy if entry.document_type_id not in documents_in_current
    ]
    return sorted(merged, key=lambda e: (e.document_type_id, e.attempt_number, e.entry_id))


def compute_attempt_state(document_type_id: int, entries: Iterable[LedgerEntry]) -> AttemptState:
    """Calcule l'AttemptState d'un document à partir d'entrées déjà fusionnées."""
    document_entries = [e for e in entries if e.document_type_id == document_type_id]
    if not document_entries:
        return AttemptState(document_type_id=document_type_id)

    latest = max(document_entries, key=lambda e: (e.attempt_number, e.entry_id))
    unresolved = [e for e in document_entries if e.is_unresolved]
    return AttemptState(
        document_type_id=document_type_id,
        count=latest.attempt_number,
        source_table=latest.source,
        unresolved_entry_id=max(unresolved, key=lambda e: e.attempt_number).entry_id
        if unresolved
        else None,
    )


def compute_attempt_states(entries: Iterable[LedgerEntry]) -> dict[int, AttemptState]:
    """AttemptState de chaque document présent dans le ledger."""
    entries = list(entries)
    return {
        document_type_id: compute_attempt_state(document_type_id, entries)
        for document_type_id in sorted({e.document_type_id for e in entries})
    }


def select_pending_notifications(entries: Iterable[LedgerEntry]) -> list[LedgerEntry]:
    """
    Retourne un renvoi logique à notifier par document.

    Seule la tentative la plus récente non notifiée d'un document est
    retenue; les tentatives plus anciennes restées non notifiées sont
    couvertes par le marquage global du document.
    """
    by_document: dict[int, list[LedgerEntry]] = defaultdict(list)
    for entry in entries:
        if not entry.notification_sent:
            by_document[entry.document_type_id].append(entry)
    return [
        max(pending, key=lambda e: (e.attempt_number, e.entry_id))
        for _, pending in sorted(by_document.items())
    ]


class ReferralLedgerRepository:
    """Accès au ledger; fusion des deux tables pour toute lecture métier."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # ------------------------------------------------------------------
    # Accès brut
    # ------------------------------------------------------------------

    async def list_current(
        self, application_id: int, document_type_id: int | None = None
    ) -> list[LedgerEntry]:
        query = select(DocumentReferralHistory).where(
            DocumentReferralHistory.application_id == application_id
        )
        if document_type_id is not None:
            query = query.where(DocumentReferralHistory.document_type_id == document_type_id)
        result = await self.session.execute(query)
        return [LedgerMapper.from_current(row) for row in result.scalars().all()]

    async def list_legacy(
        self, application_id: int, document_type_id: int | None = None
    ) -> list[LedgerEntry]:
        query = select(DocumentRejectionHistory).where(
            DocumentRejectionHistory.application_id == application_id
        )
        if document_type_id is not None:
            query = query.where(DocumentRejectionHistory.document_type_id == document_type_id)
        result = await self.session.execute(query)
        return [LedgerMapper.from_legacy(row) for row in result.scalars().all()]

    async def add_referral(self, row: DocumentReferralHistory) -> LedgerEntry:
        """Ajoute une entrée à la table courante (flush pour obtenir l'id)."""
        self.session.add(row)
        await self.session.flush()
        return LedgerMapper.from_current(row)

    async def mark_notified(
        self, application_id: int, document_type_ids: Iterable[int], sent_at: datetime
    ) -> int:
        """Marque notifiées toutes les entrées en attente des documents, dans les deux tables."""
        document_type_ids = list(document_type_ids)
        if not document_type_ids:
            return 0
        updated = 0
        for model in (DocumentReferralHistory, DocumentRejectionHistory):
            result = await self.session.execute(
                update(model)
                .where(
                    model.application_id == application_id,
                    model.document_type_id.in_(document_type_ids),
                    model.notification_sent.is_(False),
                )
                .values(notification_sent=True, notification_sent_at=sent_at)
            )
            updated += result.rowcount or 0
        return updated

    async def mark_replaced(
        self, application_id: int, document_type_id: int, replaced_at: datetime
    ) -> int:
        """Résout le renvoi en cours d'un document, dans les deux tables."""
        updated = 0
        for model in (DocumentReferralHistory, DocumentRejectionHistory):
            result = await self.session.execute(
                update(model)
                .where(
                    model.application_id == application_id,
                    model.document_type_id == document_type_id,
                    model.was_replaced.is_(False),
                )
                .values(was_replaced=True, replaced_at=replaced_at)
            )
            updated += result.rowcount or 0
        return updated

    # ------------------------------------------------------------------
    # Lectures fusionnées
    # ------------------------------------------------------------------

    async def get_merged_referrals(
        self, application_id: int, document_type_id: int | None = None
    ) -> list[LedgerEntry]:
        """Entrées du ledger d'une demande, dédupliquées par document (table courante prioritaire)."""
        with tracer.start_as_current_span("ledger.get_merged_referrals") as span:
            span.set_attribute("application.id", application_id)
            current = await self.list_current(application_id, document_type_id)
            legacy = await self.list_legacy(application_id, document_type_id)
            merged = merge_referrals(current, legacy)
            span.set_attribute("ledger.current_count", len(current))
            span.set_attribute("ledger.legacy_count", len(legacy))
            span.set_attribute("ledger.merged_count", len(merged))
            return merged

    async def get_attempt_state(self, application_id: int, document_type_id: int) -> AttemptState:
        entries = await self.get_merged_referrals(application_id, document_type_id)
        return compute_attempt_state(document_type_id, entries)

    async def get_attempt_states(self, application_id: int) -> dict[int, AttemptState]:
        entries = await self.get_merged_referrals(application_id)
        return compute_attempt_states(entries)

    async def has_unresolved_referrals(self, application_id: int) -> bool:
        entries = await self.get_merged_referrals(application_id)
        return any(entry.is_unresolved for entry in entries)

    async def get_pending_notifications(self, application_id: int) -> list[LedgerEntry]:
        entries = await self.get_merged_referrals(application_id)
        return select_pending_notifications(entries)
