"""
Fixtures partagées des tests unitaires.

Les services reçoivent un WorkflowStore; les tests leur passent un
FakeWorkflowStore en mémoire. Le FakeLedgerRepository hérite du vrai
ReferralLedgerRepository et ne remplace que l'accès brut aux deux tables:
la fusion, le calcul des tentatives et la sélection des notifications
sont donc ceux du code de production.
"""

import itertools
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from app.core.security import User
from app.infrastructure.persistence.ledger_repository import ReferralLedgerRepository
from app.infrastructure.persistence.mappers import LedgerMapper
from app.models.application import Application, ApplicationStatus, HealthCard
from app.models.document import DocumentReviewStatus, DocumentType, DocumentUpload
from app.models.referral import DocumentReferralHistory, DocumentRejectionHistory

# =============================================================================
# Catalogue de documents
# =============================================================================

VALID_ID = 1
CHEST_XRAY = 2
URINALYSIS = 3
DRUG_TEST = 4

DOCUMENT_CATALOG = [
    # (id, name, is_required, security_guard_only, is_medical)
    (VALID_ID, "Valid Government ID", True, False, False),
    (CHEST_XRAY, "Chest X-ray", True, False, True),
    (URINALYSIS, "Urinalysis", True, False, True),
    (DRUG_TEST, "Drug Test", False, True, True),
]

TERMINAL_RENEWAL_STATUSES = frozenset(
    {
        ApplicationStatus.APPROVED,
        ApplicationStatus.REJECTED,
        ApplicationStatus.CANCELLED,
        ApplicationStatus.PERMANENTLY_CLOSED,
    }
)


# =============================================================================
# Repositories en mémoire
# =============================================================================


class FakeApplicationRepository:
    """Même interface qu'ApplicationRepository, stockage en dictionnaires."""

    def __init__(self):
        self.applications: dict[int, Application] = {}
        self.document_types: dict[int, DocumentType] = {}
        self.documents: dict[tuple[int, int], DocumentUpload] = {}
        self.cards: dict[int, HealthCard] = {}
        self._ids = itertools.count(1)

    async def get(self, application_id: int, for_update: bool = False) -> Application | None:
        application = self.applications.get(application_id)
        if application is None or application.deleted_at is not None:
            return None
        return application

    async def list_for_user(self, user_id: str) -> list[Application]:
        return [
            a
            for _, a in sorted(self.applications.items())
            if a.user_id == user_id and a.deleted_at is None
        ]

    async def add(self, application: Application) -> Application:
        # Index unique partiel: un seul renouvellement ouvert par carte
        if application.application_type == "Renew" and any(
            a.application_type == "Renew"
            and a.previous_health_card_id == application.previous_health_card_id
            and a.deleted_at is None
            and ApplicationStatus(a.application_status) not in TERMINAL_RENEWAL_STATUSES
            for a in self.applications.values()
        ):
            raise IntegrityError("INSERT INTO applications", {}, Exception("duplicate key"))
        if application.id is None:
            application.id = next(self._ids)
        self.applications[application.id] = application
        return application

    async def get_document_type(self, document_type_id: int) -> DocumentType | None:
        return self.document_types.get(document_type_id)

    async def list_document_types(self) -> list[DocumentType]:
        return sorted(self.document_types.values(), key=lambda d: (d.sort_order, d.id))

    async def get_document(
        self, application_id: int, document_type_id: int, for_update: bool = False
    ) -> DocumentUpload | None:
        return self.documents.get((application_id, document_type_id))

    async def list_documents(self, application_id: int) -> list[DocumentUpload]:
        return [d for (app_id, _), d in sorted(self.documents.items()) if app_id == application_id]

    async def add_document(self, document: DocumentUpload) -> DocumentUpload:
        if document.id is None:
            document.id = next(self._ids)
        self.documents[(document.application_id, document.document_type_id)] = document
        return document

    async def get_health_card(
        self, health_card_id: int, for_update: bool = False
    ) -> HealthCard | None:
        return self.cards.get(health_card_id)

    async def get_card_for_application(self, application_id: int) -> HealthCard | None:
        return next((c for c in self.cards.values() if c.application_id == application_id), None)

    async def add_health_card(self, card: HealthCard) -> HealthCard:
        if card.id is None:
            card.id = next(self._ids)
        self.cards[card.id] = card
        return card


class FakeLedgerRepository(ReferralLedgerRepository):
    """Ledger en mémoire: seules les méthodes d'accès brut sont remplacées."""

    def __init__(self):
        super().__init__(session=None)
        self.current_rows: list[DocumentReferralHistory] = []
        self.legacy_rows: list[DocumentRejectionHistory] = []
        self._ids = itertools.count(1000)

    @staticmethod
    def _matches(row, application_id, document_type_id) -> bool:
        return row.application_id == application_id and (
            document_type_id is None or row.document_type_id == document_type_id
        )

    async def list_current(self, application_id, document_type_id=None):
        return [
            LedgerMapper.from_current(r)
            for r in self.current_rows
            if self._matches(r, application_id, document_type_id)
        ]

    async def list_legacy(self, application_id, document_type_id=None):
        return [
            LedgerMapper.from_legacy(r)
            for r in self.legacy_rows
            if self._matches(r, application_id, document_type_id)
        ]

    async def add_referral(self, row: DocumentReferralHistory):
        # Contrainte unique (demande, document, tentative) de la table courante
        for existing in self.current_rows:
            if (
                existing.application_id == row.application_id
                and existing.document_type_id == row.document_type_id
                and existing.attempt_number == row.attempt_number
            ):
                raise IntegrityError(
                    "INSERT INTO document_referral_history", {}, Exception("duplicate key")
                )
        row.id = next(self._ids)
        self.current_rows.append(row)
        return LedgerMapper.from_current(row)

    async def mark_notified(self, application_id, document_type_ids, sent_at):
        document_type_ids = set(document_type_ids)
        updated = 0
        for row in [*self.current_rows, *self.legacy_rows]:
            if (
                row.application_id == application_id
                and row.document_type_id in document_type_ids
                and not row.notification_sent
            ):
                row.notification_sent = True
                row.notification_sent_at = sent_at
                updated += 1
        return updated

    async def mark_replaced(self, application_id, document_type_id, replaced_at):
        updated = 0
        for row in [*self.current_rows, *self.legacy_rows]:
            if (
                row.application_id == application_id
                and row.document_type_id == document_type_id
                and not row.was_replaced
            ):
                row.was_replaced = True
                row.replaced_at = replaced_at
                updated += 1
        return updated

    def add_legacy(self, **fields) -> DocumentRejectionHistory:
        """Insère une ligne legacy (écrite par l'ancien système)."""
        values = {
            "specific_issues": [],
            "doctor_name": None,
            "clinic_address": None,
            "attempt_number": 1,
            "rejected_by": "legacy-admin",
            "rejected_at": datetime(2025, 1, 10, tzinfo=UTC),
            "was_replaced": False,
            "replaced_at": None,
            "notification_sent": False,
            "notification_sent_at": None,
            **fields,
        }
        row = DocumentRejectionHistory(id=next(self._ids), **values)
        self.legacy_rows.append(row)
        return row

    def add_current(self, **fields) -> DocumentReferralHistory:
        """Insère directement une ligne courante (état préexistant)."""
        values = {
            "issue_type": "document_issue",
            "medical_referral_category": None,
            "document_issue_category": "blurry_photo",
            "referral_reason": "Photo is blurry",
            "specific_issues": [],
            "doctor_name": None,
            "clinic_address": None,
            "referred_by": "inspector-1",
            "referred_at": datetime(2026, 3, 1, tzinfo=UTC),
            "was_replaced": False,
            "replaced_at": None,
            "notification_sent": False,
            "notification_sent_at": None,
            "document_upload_id": None,
            **fields,
        }
        row = DocumentReferralHistory(id=next(self._ids), **values)
        self.current_rows.append(row)
        return row


class FakeWorkflowStore:
    """Unité de travail en mémoire; compte les commits et rollbacks."""

    def __init__(self):
        self.applications = FakeApplicationRepository()
        self.ledger = FakeLedgerRepository()
        self.commits = 0
        self.rollbacks = 0

    async def commit(self) -> None:
        self.commits += 1

    async def rollback(self) -> None:
        self.rollbacks += 1


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def store() -> FakeWorkflowStore:
    """Store en mémoire avec le catalogue de documents."""
    fake = FakeWorkflowStore()
    for sort_order, (doc_id, name, is_required, guard_only, is_medical) in enumerate(
        DOCUMENT_CATALOG
    ):
        fake.applications.document_types[doc_id] = DocumentType(
            id=doc_id,
            name=name,
            field_identifier=f"doc{doc_id}",
            is_required=is_required,
            security_guard_only=guard_only,
            is_medical=is_medical,
            sort_order=sort_order,
        )
    return fake


@pytest.fixture
def applicant() -> User:
    return User(sub="applicant-1", email="maria.santos@example.com", realm_access={"roles": []})


@pytest.fixture
def other_applicant() -> User:
    return User(sub="applicant-2", realm_access={"roles": []})


@pytest.fixture
def reviewer() -> User:
    """Inspecteur (rôle realm)."""
    return User(sub="inspector-1", realm_access={"roles": ["inspector"]})


@pytest.fixture
def admin() -> User:
    """Administrateur (rôle client)."""
    return User(
        sub="admin-1",
        resource_access={"core-healthcard-review": {"roles": ["admin"]}},
    )


@pytest.fixture
def make_application(store):
    """
    Fabrique de demandes persistées dans le store en mémoire.

    Args (de la fabrique):
        status: Statut initial
        documents: {document_type_id: DocumentReviewStatus} (défaut: pièces requises Pending)
        **fields: Surcharges des champs de la demande
    """

    def _make(
        status: ApplicationStatus = ApplicationStatus.FOR_DOCUMENT_VERIFICATION,
        documents: dict[int, DocumentReviewStatus] | None = None,
        **fields,
    ) -> Application:
        values = {
            "user_id": "applicant-1",
            "application_type": "New",
            "job_category": "Food Handler",
            "requires_orientation": False,
            "security_guard": False,
            "is_renewal": False,
            "renewal_count": 0,
            "previous_health_card_id": None,
            "first_name": "Maria",
            "middle_name": None,
            "last_name": "Santos",
            "suffix": None,
            "age": 29,
            "gender": "Female",
            "nationality": "Filipino",
            "civil_status": "Single",
            "organization": "Davao Food Corp",
            "position": "Cook",
            "payment_status": None,
            "payment_reference": None,
            "orientation_completed_at": None,
            "submitted_at": datetime(2026, 3, 1, tzinfo=UTC),
            "approved_at": None,
            "rejected_at": None,
            "rejection_category": None,
            "admin_remarks": None,
            "decided_by": None,
            "cancelled_at": None,
            "closed_at": None,
            "closure_reason": None,
            "closure_notified_at": None,
            "deleted_at": None,
            **fields,
        }
        application = Application(application_status=status, **values)
        application.id = next(store.applications._ids)
        store.applications.applications[application.id] = application

        if documents is None:
            documents = {
                VALID_ID: DocumentReviewStatus.PENDING,
                CHEST_XRAY: DocumentReviewStatus.PENDING,
                URINALYSIS: DocumentReviewStatus.PENDING,
            }
        for doc_id, review_status in documents.items():
            document = DocumentUpload(
                application_id=application.id,
                document_type_id=doc_id,
                review_status=review_status,
                file_reference=None
                if review_status == DocumentReviewStatus.MISSING
                else f"storage/{application.id}/{doc_id}",
                original_filename=None,
                uploaded_at=None,
                reviewed_by=None,
                reviewed_at=None,
                admin_remarks=None,
            )
            document.id = next(store.applications._ids)
            store.applications.documents[(application.id, doc_id)] = document
        return application

    return _make


@pytest.fixture
def make_card(store):
    """Fabrique de cartes sanitaires pour une demande approuvée."""

    def _make(application: Application, expiry_date: datetime) -> HealthCard:
        card = HealthCard(
            application_id=application.id,
            registration_number=f"HC-2025-{application.id:06d}",
            issued_date=expiry_date - timedelta(days=365),
            expiry_date=expiry_date,
            status="active",
        )
        card.id = next(store.applications._ids)
        store.applications.cards[card.id] = card
        return card

    return _make
