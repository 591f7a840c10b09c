"""Create health card review tables

Revision ID: a1c4e7d2b9f0
Revises:
Create Date: 2026-10-19 09:12:31.104522

Tables créées:
- document_types: catalogue des pièces (pré-rempli)
- applications / health_cards: demandes et cartes émises (FK circulaire)
- document_uploads: une pièce par (demande, type de document)
- document_referral_history: ledger courant des renvois
- document_rejection_history: ledger legacy (lecture et marquage seulement)
"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "a1c4e7d2b9f0"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


DOCUMENT_TYPES = [
    # (name, field_identifier, description, is_required, security_guard_only, is_medical, sort_order)
    ("Valid Government ID", "validId", "Any valid government-issued ID", True, False, False, 1),
    ("2x2 ID Picture", "picture", "Recent colored 2x2 ID picture", True, False, False, 2),
    ("Chest X-ray", "chestXrayId", "Recent chest X-ray result", True, False, True, 3),
    ("Urinalysis", "urinalysisId", "Complete urinalysis test", True, False, True, 4),
    ("Stool Examination", "stoolId", "Stool examination result", True, False, True, 5),
    ("Cedula", "cedulaId", "Community Tax Certificate", True, False, False, 6),
    ("Drug Test", "drugTestId", "Drug test result (for Security Guards)", False, True, True, 7),
    (
        "Neuropsychiatric Test",
        "neuroExamId",
        "Neuropsychiatric evaluation (for Security Guards)",
        False,
        True,
        True,
        8,
    ),
    (
        "Hepatitis B Antibody Test",
        "hepatitisBId",
        "Hepatitis B surface antibody test result",
        False,
        False,
        True,
        9,
    ),
]


def _ledger_flags() -> list[sa.Column]:
    return [
        sa.Column("was_replaced", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("replaced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notification_sent", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("notification_sent_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    document_types = op.create_table(
        "document_types",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("field_identifier", sa.String(50), nullable=False),
        sa.Column("is_required", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column(
            "security_guard_only",
            sa.Boolean(),
            nullable=False,
            server_default="false",
            comment="Exige uniquement pour les agents de securite",
        ),
        sa.Column(
            "is_medical",
            sa.Boolean(),
            nullable=False,
            server_default="false",
            comment="Resultat d'examen (peut donner lieu a un renvoi medical)",
        ),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("id", name="pk_document_types"),
        sa.UniqueConstraint("field_identifier", name="uq_document_types_field_identifier"),
    )
    op.create_index("ix_document_types_id", "document_types", ["id"])

    op.create_table(
        "applications",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(255), nullable=False, comment="UUID Keycloak du demandeur"),
        sa.Column("application_type", sa.String(10), nullable=False, comment="New ou Renew"),
        sa.Column(
            "application_status",
            sa.String(64),
            nullable=False,
            comment="Position de la demande dans le pipeline",
        ),
        sa.Column("job_category", sa.String(100), nullable=False),
        sa.Column(
            "requires_orientation",
            sa.Boolean(),
            nullable=False,
            server_default="false",
            comment="Orientation obligatoire (manipulateurs d'aliments)",
        ),
        sa.Column(
            "security_guard",
            sa.Boolean(),
            nullable=False,
            server_default="false",
            comment="Agent de securite (ensemble de documents specifique)",
        ),
        sa.Column("is_renewal", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("renewal_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "previous_health_card_id",
            sa.Integer(),
            nullable=True,
            comment="Carte remplacee par ce renouvellement",
        ),
        sa.Column("first_name", sa.String(100), nullable=False),
        sa.Column("middle_name", sa.String(100), nullable=True),
        sa.Column("last_name", sa.String(100), nullable=False),
        sa.Column("suffix", sa.String(20), nullable=True),
        sa.Column("age", sa.Integer(), nullable=True),
        sa.Column("gender", sa.String(20), nullable=True),
        sa.Column("nationality", sa.String(100), nullable=True),
        sa.Column("civil_status", sa.String(50), nullable=True),
        sa.Column("organization", sa.String(255), nullable=True),
        sa.Column("position", sa.String(255), nullable=True),
        sa.Column("payment_status", sa.String(20), nullable=True),
        sa.Column("payment_reference", sa.String(100), nullable=True),
        sa.Column("orientation_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejection_category", sa.String(50), nullable=True),
        sa.Column("admin_remarks", sa.Text(), nullable=True),
        sa.Column("decided_by", sa.String(255), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("closure_reason", sa.Text(), nullable=True),
        sa.Column("closure_notified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")
        ),
        sa.Column(
            "deleted_at",
            sa.DateTime(timezone=True),
            nullable=True,
            comment="Soft delete: exclue de l'eligibilite et des listes",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_applications"),
    )
    op.create_index("ix_applications_id", "applications", ["id"])
    op.create_index("ix_applications_user_id", "applications", ["user_id"])
    op.create_index("ix_applications_application_status", "applications", ["application_status"])
    op.create_index("ix_applications_approved_at", "applications", ["approved_at"])
    op.create_index("ix_applications_deleted_at", "applications", ["deleted_at"])

    op.create_table(
        "health_cards",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column(
            "application_id",
            sa.Integer(),
            nullable=False,
            comment="Demande approuvee ayant donne lieu a la carte",
        ),
        sa.Column("registration_number", sa.String(50), nullable=False),
        sa.Column("issued_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expiry_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")
        ),
        sa.ForeignKeyConstraint(
            ["application_id"],
            ["applications.id"],
            name="fk_health_cards_application_id_applications",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_health_cards"),
        sa.UniqueConstraint("application_id", name="uq_health_cards_application_id"),
        sa.UniqueConstraint("registration_number", name="uq_health_cards_registration_number"),
    )
    op.create_index("ix_health_cards_id", "health_cards", ["id"])

    # FK circulaire applications -> health_cards (créée après les deux tables)
    op.create_foreign_key(
        "fk_applications_previous_health_card_id_health_cards",
        "applications",
        "health_cards",
        ["previous_health_card_id"],
        ["id"],
    )
    # Au plus un renouvellement ouvert par carte
    op.create_index(
        "uq_applications_open_renewal",
        "applications",
        ["previous_health_card_id"],
        unique=True,
        postgresql_where=sa.text(
            "application_type = 'Renew' AND deleted_at IS NULL AND application_status NOT IN "
            "('Approved', 'Rejected', 'Cancelled', 'Permanently Closed')"
        ),
    )

    op.create_table(
        "document_uploads",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("application_id", sa.Integer(), nullable=False),
        sa.Column("document_type_id", sa.Integer(), nullable=False),
        sa.Column("review_status", sa.String(64), nullable=False, server_default="Missing"),
        sa.Column(
            "file_reference",
            sa.String(500),
            nullable=True,
            comment="Reference opaque vers le stockage de fichiers externe",
        ),
        sa.Column("original_filename", sa.String(255), nullable=True),
        sa.Column("uploaded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reviewed_by", sa.String(255), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("admin_remarks", sa.Text(), nullable=True),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")
        ),
        sa.ForeignKeyConstraint(
            ["application_id"],
            ["applications.id"],
            name="fk_document_uploads_application_id_applications",
        ),
        sa.ForeignKeyConstraint(
            ["document_type_id"],
            ["document_types.id"],
            name="fk_document_uploads_document_type_id_document_types",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_document_uploads"),
        sa.UniqueConstraint(
            "application_id", "document_type_id", name="uq_document_uploads_application_id"
        ),
    )
    op.create_index("ix_document_uploads_id", "document_uploads", ["id"])
    op.create_index("ix_document_uploads_application_id", "document_uploads", ["application_id"])

    op.create_table(
        "document_referral_history",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("application_id", sa.Integer(), nullable=False),
        sa.Column("document_type_id", sa.Integer(), nullable=False),
        sa.Column("document_upload_id", sa.Integer(), nullable=True),
        sa.Column(
            "issue_type", sa.String(30), nullable=False, comment="medical_referral ou document_issue"
        ),
        sa.Column("medical_referral_category", sa.String(50), nullable=True),
        sa.Column("document_issue_category", sa.String(50), nullable=True),
        sa.Column(
            "attempt_number",
            sa.Integer(),
            nullable=False,
            comment="Cycle de revue du document dans la demande (1 a 3)",
        ),
        sa.Column("referral_reason", sa.Text(), nullable=False),
        sa.Column("specific_issues", sa.JSON(), nullable=False),
        sa.Column("doctor_name", sa.String(255), nullable=True),
        sa.Column("clinic_address", sa.Text(), nullable=True),
        sa.Column("referred_by", sa.String(255), nullable=False),
        sa.Column("referred_at", sa.DateTime(timezone=True), nullable=False),
        *_ledger_flags(),
        sa.ForeignKeyConstraint(
            ["application_id"],
            ["applications.id"],
            name="fk_document_referral_history_application_id_applications",
        ),
        sa.ForeignKeyConstraint(
            ["document_type_id"],
            ["document_types.id"],
            name="fk_document_referral_history_document_type_id_document_types",
        ),
        sa.ForeignKeyConstraint(
            ["document_upload_id"],
            ["document_uploads.id"],
            name="fk_document_referral_history_document_upload_id_document_uploads",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_document_referral_history"),
        sa.UniqueConstraint(
            "application_id",
            "document_type_id",
            "attempt_number",
            name="uq_document_referral_history_attempt",
        ),
        sa.CheckConstraint(
            "attempt_number BETWEEN 1 AND 3",
            name="ck_document_referral_history_attempt_number_range",
        ),
    )
    op.create_index("ix_document_referral_history_id", "document_referral_history", ["id"])
    op.create_index(
        "ix_document_referral_history_application_id",
        "document_referral_history",
        ["application_id"],
    )
    op.create_index(
        "uq_document_referral_history_unresolved",
        "document_referral_history",
        ["application_id", "document_type_id"],
        unique=True,
        postgresql_where=sa.text("was_replaced = false"),
    )

    op.create_table(
        "document_rejection_history",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("application_id", sa.Integer(), nullable=False),
        sa.Column("document_type_id", sa.Integer(), nullable=False),
        sa.Column("rejection_reason", sa.Text(), nullable=False),
        sa.Column("specific_issues", sa.JSON(), nullable=False),
        sa.Column("doctor_name", sa.String(255), nullable=True),
        sa.Column("clinic_address", sa.Text(), nullable=True),
        sa.Column("attempt_number", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("rejected_by", sa.String(255), nullable=True),
        sa.Column("rejected_at", sa.DateTime(timezone=True), nullable=False),
        *_ledger_flags(),
        sa.ForeignKeyConstraint(
            ["application_id"],
            ["applications.id"],
            name="fk_document_rejection_history_application_id_applications",
        ),
        sa.ForeignKeyConstraint(
            ["document_type_id"],
            ["document_types.id"],
            name="fk_document_rejection_history_document_type_id_document_types",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_document_rejection_history"),
    )
    op.create_index("ix_document_rejection_history_id", "document_rejection_history", ["id"])
    op.create_index(
        "ix_document_rejection_history_application_id",
        "document_rejection_history",
        ["application_id"],
    )

    op.bulk_insert(
        document_types,
        [
            {
                "name": name,
                "field_identifier": field_identifier,
                "description": description,
                "is_required": is_required,
                "security_guard_only": security_guard_only,
                "is_medical": is_medical,
                "sort_order": sort_order,
            }
            for (
                name,
                field_identifier,
                description,
                is_required,
                security_guard_only,
                is_medical,
                sort_order,
            ) in DOCUMENT_TYPES
        ],
    )


def downgrade() -> None:
    op.drop_table("document_rejection_history")
    op.drop_index("uq_document_referral_history_unresolved", table_name="document_referral_history")
    op.drop_table("document_referral_history")
    op.drop_table("document_uploads")
    op.drop_index("uq_applications_open_renewal", table_name="applications")
    op.drop_constraint(
        "fk_applications_previous_health_card_id_health_cards", "applications", type_="foreignkey"
    )
    op.drop_table("health_cards")
    op.drop_table("applications")
    op.drop_table("document_types")
