"""initial records schema

Revision ID: 5a1e0c7d2b90
Revises:
Create Date: 2026-10-12 09:41:07.512204

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = "5a1e0c7d2b90"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    bind = op.get_bind()
    insp = inspect(bind)
    existing_tables = set(insp.get_table_names())

    def _has_index(table: str, name: str) -> bool:
        return any(ix.get("name") == name for ix in inspect(op.get_bind()).get_indexes(table))

    # ---------- platform: users / RBAC / audit ----------
    if "users" not in existing_tables:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("email", sa.String(length=320), nullable=False),
            sa.Column("name", sa.String(length=255), nullable=True),
            sa.Column("identification", sa.String(length=64), nullable=True),
            sa.Column("job_title", sa.String(length=128), nullable=True),
            sa.Column("password_hash", sa.String(length=255), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
            sa.UniqueConstraint("email", name="uq_users_email"),
        )

    if "roles" not in existing_tables:
        op.create_table(
            "roles",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("key", sa.String(length=64), nullable=False),
            sa.Column("name", sa.String(length=128), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
            sa.UniqueConstraint("key", name="uq_roles_key"),
        )

    if "permissions" not in existing_tables:
        op.create_table(
            "permissions",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("key", sa.String(length=128), nullable=False),
            sa.Column("name", sa.String(length=128), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
            sa.UniqueConstraint("key", name="uq_permissions_key"),
        )

    if "user_roles" not in existing_tables:
        op.create_table(
            "user_roles",
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("role_id", sa.Integer(), nullable=False),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["role_id"], ["roles.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("user_id", "role_id"),
        )

    if "role_permissions" not in existing_tables:
        op.create_table(
            "role_permissions",
            sa.Column("role_id", sa.Integer(), nullable=False),
            sa.Column("permission_id", sa.Integer(), nullable=False),
            sa.ForeignKeyConstraint(["role_id"], ["roles.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["permission_id"], ["permissions.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("role_id", "permission_id"),
        )

    if "audit_events" not in existing_tables:
        op.create_table(
            "audit_events",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
            sa.Column("request_id", sa.String(length=64), nullable=True),
            sa.Column("client_ip", sa.String(length=64), nullable=True),
            sa.Column("actor_user_id", sa.Integer(), nullable=True),
            sa.Column("actor_user_email", sa.String(length=320), nullable=True),
            sa.Column("action", sa.String(length=128), nullable=False),
            sa.Column("entity_type", sa.String(length=128), nullable=True),
            sa.Column("entity_id", sa.String(length=128), nullable=True),
            sa.Column("reason", sa.String(length=512), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.ForeignKeyConstraint(["actor_user_id"], ["users.id"], ondelete="SET NULL"),
        )
        existing_tables.add("audit_events")

    # ---------- CCD / TRD ----------
    if "classification_charts" not in existing_tables:
        op.create_table(
            "classification_charts",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("code", sa.String(length=64), nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("version", sa.String(length=16), nullable=False),
            sa.Column("status", sa.String(length=16), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
            sa.Column("created_by_user_id", sa.Integer(), nullable=True),
            sa.ForeignKeyConstraint(["created_by_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.UniqueConstraint("code", name="uq_classification_charts_code"),
        )

    if "classification_nodes" not in existing_tables:
        op.create_table(
            "classification_nodes",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("chart_id", sa.Integer(), nullable=False),
            sa.Column("parent_id", sa.Integer(), nullable=True),
            sa.Column("code", sa.String(length=64), nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("level_type", sa.String(length=16), nullable=False),
            sa.Column("depth", sa.Integer(), nullable=False),
            sa.Column("path", sa.String(length=1024), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
            sa.ForeignKeyConstraint(["chart_id"], ["classification_charts.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["parent_id"], ["classification_nodes.id"], ondelete="RESTRICT"),
            sa.UniqueConstraint("chart_id", "code", name="uq_classification_node_code"),
            sa.CheckConstraint(
                "level_type IN ('fondo','seccion','subseccion','serie','subserie')",
                name="ck_classification_nodes_level_type",
            ),
        )
        existing_tables.add("classification_nodes")

    if "retention_schedules" not in existing_tables:
        op.create_table(
            "retention_schedules",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("code", sa.String(length=64), nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("version", sa.String(length=16), nullable=False),
            sa.Column("is_current", sa.Boolean(), nullable=False),
            sa.Column("approved_at", sa.DateTime(timezone=False), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
            sa.Column("created_by_user_id", sa.Integer(), nullable=True),
            sa.ForeignKeyConstraint(["created_by_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.UniqueConstraint("code", name="uq_retention_schedules_code"),
        )

    if "retention_entries" not in existing_tables:
        op.create_table(
            "retention_entries",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("schedule_id", sa.Integer(), nullable=False),
            sa.Column("node_id", sa.Integer(), nullable=False),
            sa.Column("ag_years", sa.Integer(), nullable=False),
            sa.Column("ac_years", sa.Integer(), nullable=False),
            sa.Column("disposition", sa.String(length=2), nullable=False),
            sa.Column("support_physical", sa.Boolean(), nullable=False),
            sa.Column("support_electronic", sa.Boolean(), nullable=False),
            sa.Column("support_hybrid", sa.Boolean(), nullable=False),
            sa.Column("procedure", sa.Text(), nullable=True),
            sa.Column("observations", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=False), nullable=False),
            sa.Column("created_by_user_id", sa.Integer(), nullable=True),
            sa.Column("updated_by_user_id", sa.Integer(), nullable=True),
            sa.ForeignKeyConstraint(["schedule_id"], ["retention_schedules.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["node_id"], ["classification_nodes.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["created_by_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["updated_by_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.UniqueConstraint("schedule_id", "node_id", name="uq_retention_schedule_node"),
            sa.CheckConstraint("ag_years >= 0 AND ac_years >= 0", name="ck_retention_entries_years"),
            sa.CheckConstraint("disposition IN ('CT','E','D','S','M')", name="ck_retention_entries_disposition"),
            sa.CheckConstraint(
                "support_physical OR support_electronic OR support_hybrid",
                name="ck_retention_entries_support",
            ),
        )

    # ---------- case files / documents ----------
    if "case_files" not in existing_tables:
        op.create_table(
            "case_files",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("code", sa.String(length=64), nullable=False),
            sa.Column("title", sa.String(length=255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("classification_node_id", sa.Integer(), nullable=True),
            sa.Column("status", sa.String(length=16), nullable=False),
            sa.Column("opened_at", sa.DateTime(timezone=False), nullable=False),
            sa.Column("closed_at", sa.DateTime(timezone=False), nullable=True),
            sa.Column("created_by_user_id", sa.Integer(), nullable=True),
            sa.ForeignKeyConstraint(["classification_node_id"], ["classification_nodes.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["created_by_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.UniqueConstraint("code", name="uq_case_files_code"),
            sa.CheckConstraint("status IN ('abierto','cerrado')", name="ck_case_files_status"),
        )

    if "documents" not in existing_tables:
        op.create_table(
            "documents",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("code", sa.String(length=64), nullable=False),
            sa.Column("title", sa.String(length=255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("typology", sa.String(length=128), nullable=True),
            sa.Column("case_file_id", sa.Integer(), nullable=False),
            sa.Column("support_type", sa.String(length=16), nullable=False),
            sa.Column("confidentiality", sa.String(length=16), nullable=False),
            sa.Column("state", sa.String(length=16), nullable=False),
            sa.Column("signature_status", sa.String(length=16), nullable=False),
            sa.Column("created_by_user_id", sa.Integer(), nullable=False),
            sa.Column("modified_by_user_id", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
            sa.Column("modified_at", sa.DateTime(timezone=False), nullable=False),
            sa.Column("lock_version", sa.Integer(), nullable=False),
            sa.ForeignKeyConstraint(["case_file_id"], ["case_files.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["created_by_user_id"], ["users.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["modified_by_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.UniqueConstraint("code", name="uq_documents_code"),
            sa.CheckConstraint(
                "state IN ('borrador','pendiente','aprobado','activo','archivado','obsoleto')",
                name="ck_documents_state",
            ),
            sa.CheckConstraint(
                "signature_status IN ('sin_firmar','firmado','firma_invalida')",
                name="ck_documents_signature_status",
            ),
            sa.CheckConstraint("support_type IN ('fisico','electronico','hibrido')", name="ck_documents_support_type"),
        )
        existing_tables.add("documents")

    if "document_versions" not in existing_tables:
        op.create_table(
            "document_versions",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("document_id", sa.Integer(), nullable=False),
            sa.Column("label", sa.String(length=16), nullable=False),
            sa.Column("storage_key", sa.String(length=512), nullable=False),
            sa.Column("filename", sa.String(length=255), nullable=False),
            sa.Column("content_type", sa.String(length=128), nullable=False),
            sa.Column("sha256", sa.String(length=64), nullable=False),
            sa.Column("size_bytes", sa.Integer(), nullable=False),
            sa.Column("notes", sa.String(length=512), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
            sa.Column("created_by_user_id", sa.Integer(), nullable=False),
            sa.ForeignKeyConstraint(["document_id"], ["documents.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["created_by_user_id"], ["users.id"], ondelete="RESTRICT"),
            sa.UniqueConstraint("document_id", "label", name="uq_document_version_label"),
        )
        existing_tables.add("document_versions")

    if "digital_signatures" not in existing_tables:
        op.create_table(
            "digital_signatures",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("document_id", sa.Integer(), nullable=False),
            sa.Column("version_id", sa.Integer(), nullable=False),
            sa.Column("signer_user_id", sa.Integer(), nullable=False),
            sa.Column("signer_email", sa.String(length=320), nullable=False),
            sa.Column("reason", sa.String(length=512), nullable=False),
            sa.Column("signature_type", sa.String(length=16), nullable=False),
            sa.Column("hash_algorithm", sa.String(length=16), nullable=False),
            sa.Column("content_sha256", sa.String(length=64), nullable=False),
            sa.Column("seal", sa.String(length=64), nullable=False),
            sa.Column("signed_at", sa.DateTime(timezone=False), nullable=False),
            sa.Column("signer_info_json", sa.Text(), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.ForeignKeyConstraint(["document_id"], ["documents.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["version_id"], ["document_versions.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["signer_user_id"], ["users.id"], ondelete="RESTRICT"),
            sa.UniqueConstraint("document_id", "signer_user_id", name="uq_digital_signature_document_signer"),
        )
        existing_tables.add("digital_signatures")

    # Indexes (idempotent)
    for table, idx_name, cols in (
        ("audit_events", "idx_audit_events_created_at", ["created_at"]),
        ("audit_events", "idx_audit_events_entity", ["entity_type", "entity_id"]),
        ("classification_nodes", "idx_classification_nodes_parent_id", ["parent_id"]),
        ("documents", "idx_documents_case_file_id", ["case_file_id"]),
        ("documents", "idx_documents_state", ["state"]),
        ("document_versions", "idx_document_versions_document_id", ["document_id"]),
        ("digital_signatures", "idx_digital_signatures_document_id", ["document_id"]),
    ):
        if table in existing_tables and not _has_index(table, idx_name):
            op.create_index(idx_name, table, cols)


def downgrade() -> None:
    """Downgrade schema."""
    for table in (
        "digital_signatures",
        "document_versions",
        "documents",
        "case_files",
        "retention_entries",
        "retention_schedules",
        "classification_nodes",
        "classification_charts",
        "audit_events",
        "role_permissions",
        "user_roles",
        "permissions",
        "roles",
        "users",
    ):
        op.drop_table(table)
