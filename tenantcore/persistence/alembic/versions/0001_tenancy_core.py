"""tenancy core: tenants, principals, crm entities, audit log

Revision ID: 0001_tenancy_core
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_tenancy_core"
down_revision = None
branch_labels = None
depends_on = None


def _json() -> sa.types.TypeEngine:
    return sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("slug", sa.String(100), nullable=False),
        sa.Column("settings", _json(), nullable=True),
        sa.Column("subscription_tier", sa.String(50), server_default="basic", nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("slug", name="tenants_slug_key"),
        sa.CheckConstraint("length(name) >= 2", name="tenants_name_length"),
    )
    op.create_index("idx_tenants_subscription", "tenants", ["subscription_tier"])

    op.create_table(
        "tenant_users",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "tenant_id",
            sa.String(),
            sa.ForeignKey("tenants.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("first_name", sa.String(100), nullable=True),
        sa.Column("last_name", sa.String(100), nullable=True),
        sa.Column("role", sa.String(50), server_default="user", nullable=False),
        sa.Column("permissions", _json(), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("email", "tenant_id", name="tenant_users_email_tenant_unique"),
        sa.CheckConstraint(
            "role IN ('admin', 'manager', 'user', 'viewer')", name="tenant_users_role_valid"
        ),
    )
    op.create_index("ix_tenant_users_tenant_id", "tenant_users", ["tenant_id"])
    op.create_index("idx_tenant_users_role", "tenant_users", ["tenant_id", "role"])

    op.create_table(
        "contacts",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "tenant_id",
            sa.String(),
            sa.ForeignKey("tenants.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("first_name", sa.String(100), nullable=True),
        sa.Column("last_name", sa.String(100), nullable=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("phone", sa.String(50), nullable=True),
        sa.Column("company", sa.String(255), nullable=True),
        sa.Column("job_title", sa.String(255), nullable=True),
        sa.Column("custom_fields", _json(), nullable=True),
        sa.Column("source", sa.String(100), nullable=True),
        sa.Column("tags", _json(), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column(
            "created_by",
            sa.String(),
            sa.ForeignKey("tenant_users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        *_timestamps(),
        sa.CheckConstraint(
            "first_name IS NOT NULL OR last_name IS NOT NULL OR company IS NOT NULL",
            name="contacts_name_required",
        ),
    )
    op.create_index("ix_contacts_tenant_id", "contacts", ["tenant_id"])
    op.create_index("idx_contacts_email", "contacts", ["tenant_id", "email"])
    op.create_index("idx_contacts_name", "contacts", ["tenant_id", "first_name", "last_name"])
    op.create_index("idx_contacts_company", "contacts", ["tenant_id", "company"])
    op.create_index("idx_contacts_created_at", "contacts", ["tenant_id", "created_at"])

    op.create_table(
        "leads",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "tenant_id",
            sa.String(),
            sa.ForeignKey("tenants.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "contact_id",
            sa.String(),
            sa.ForeignKey("contacts.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("stage", sa.String(100), server_default="new", nullable=False),
        sa.Column("value", sa.Numeric(12, 2), nullable=True),
        sa.Column("currency", sa.String(3), server_default="USD", nullable=False),
        sa.Column("probability", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("custom_fields", _json(), nullable=True),
        sa.Column("expected_close_date", sa.Date(), nullable=True),
        sa.Column("actual_close_date", sa.Date(), nullable=True),
        sa.Column(
            "assigned_to",
            sa.String(),
            sa.ForeignKey("tenant_users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("source", sa.String(100), nullable=True),
        sa.Column("tags", _json(), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column(
            "created_by",
            sa.String(),
            sa.ForeignKey("tenant_users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        *_timestamps(),
        sa.CheckConstraint(
            "stage IN ('new', 'qualified', 'proposal', 'negotiation', 'won', 'lost')",
            name="leads_stage_valid",
        ),
        sa.CheckConstraint(
            "probability >= 0 AND probability <= 100", name="leads_probability_range"
        ),
        sa.CheckConstraint("value IS NULL OR value >= 0", name="leads_value_positive"),
    )
    op.create_index("ix_leads_tenant_id", "leads", ["tenant_id"])
    op.create_index("ix_leads_contact_id", "leads", ["contact_id"])
    op.create_index("ix_leads_assigned_to", "leads", ["assigned_to"])
    op.create_index("idx_leads_stage", "leads", ["tenant_id", "stage"])
    op.create_index("idx_leads_close_date", "leads", ["tenant_id", "expected_close_date"])
    op.create_index("idx_leads_created_at", "leads", ["tenant_id", "created_at"])

    op.create_table(
        "activities",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "tenant_id",
            sa.String(),
            sa.ForeignKey("tenants.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "contact_id",
            sa.String(),
            sa.ForeignKey("contacts.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column(
            "lead_id",
            sa.String(),
            sa.ForeignKey("leads.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("type", sa.String(100), nullable=False),
        sa.Column("subject", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("duration_minutes", sa.Integer(), nullable=True),
        sa.Column("custom_fields", _json(), nullable=True),
        sa.Column(
            "performed_by",
            sa.String(),
            sa.ForeignKey("tenant_users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("is_completed", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "type IN ('call', 'email', 'meeting', 'task', 'note', 'follow_up')",
            name="activities_type_valid",
        ),
        sa.CheckConstraint(
            "duration_minutes IS NULL OR duration_minutes > 0",
            name="activities_duration_positive",
        ),
        sa.CheckConstraint(
            "(is_completed = false AND completed_at IS NULL) OR "
            "(is_completed = true AND completed_at IS NOT NULL)",
            name="activities_completed_logic",
        ),
    )
    op.create_index("ix_activities_tenant_id", "activities", ["tenant_id"])
    op.create_index("ix_activities_contact_id", "activities", ["contact_id"])
    op.create_index("ix_activities_lead_id", "activities", ["lead_id"])
    op.create_index("ix_activities_performed_by", "activities", ["performed_by"])
    op.create_index("idx_activities_type", "activities", ["tenant_id", "type"])
    op.create_index("idx_activities_created_at", "activities", ["tenant_id", "created_at"])

    # Append-only audit trail for context switches and every gateway mutation.
    op.create_table(
        "activity_log",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("table_name", sa.String(100), nullable=True),
        sa.Column("record_id", sa.String(), nullable=True),
        sa.Column("old_values", _json(), nullable=True),
        sa.Column("new_values", _json(), nullable=True),
        sa.Column("details", _json(), nullable=True),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_activity_log_user_tenant", "activity_log", ["user_id", "tenant_id"])
    op.create_index("idx_activity_log_created_at", "activity_log", ["created_at"])
    op.create_index("idx_activity_log_action", "activity_log", ["tenant_id", "action"])


def downgrade() -> None:
    op.drop_index("idx_activity_log_action", table_name="activity_log")
    op.drop_index("idx_activity_log_created_at", table_name="activity_log")
    op.drop_index("idx_activity_log_user_tenant", table_name="activity_log")
    op.drop_table("activity_log")

    for name in (
        "idx_activities_created_at",
        "idx_activities_type",
        "ix_activities_performed_by",
        "ix_activities_lead_id",
        "ix_activities_contact_id",
        "ix_activities_tenant_id",
    ):
        op.drop_index(name, table_name="activities")
    op.drop_table("activities")

    for name in (
        "idx_leads_created_at",
        "idx_leads_close_date",
        "idx_leads_stage",
        "ix_leads_assigned_to",
        "ix_leads_contact_id",
        "ix_leads_tenant_id",
    ):
        op.drop_index(name, table_name="leads")
    op.drop_table("leads")

    for name in (
        "idx_contacts_created_at",
        "idx_contacts_company",
        "idx_contacts_name",
        "idx_contacts_email",
        "ix_contacts_tenant_id",
    ):
        op.drop_index(name, table_name="contacts")
    op.drop_table("contacts")

    op.drop_index("idx_tenant_users_role", table_name="tenant_users")
    op.drop_index("ix_tenant_users_tenant_id", table_name="tenant_users")
    op.drop_table("tenant_users")

    op.drop_index("idx_tenants_subscription", table_name="tenants")
    op.drop_table("tenants")
