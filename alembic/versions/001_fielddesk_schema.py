"""fielddesk schema: tickets, assignments, envelopes, one-time codes

Revision ID: 001
Revises:
Create Date: 2026-10-16
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def _ts(name: str, *, nullable: bool = True, server_default: bool = False) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=nullable,
        server_default=sa.func.now() if server_default else None,
    )


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("username", sa.String(100), nullable=False),
        sa.Column("password_hash", sa.String(255), nullable=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("role", sa.String(50), nullable=False),
        sa.Column("phone", sa.String(20), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("token_version", sa.Integer(), nullable=False, server_default="0"),
        _ts("created_at", server_default=True),
        sa.CheckConstraint(
            "role IN ('superadmin', 'admin', 'user', 'technician', 'system')",
            name="chk_user_role",
        ),
    )
    op.create_index("ix_users_username", "users", ["username"], unique=True)
    op.create_index("ix_users_role", "users", ["role"])
    op.create_index("ix_users_phone", "users", ["phone"])

    op.create_table(
        "customers",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("phone", sa.String(20), nullable=True),
        sa.Column("address", sa.Text(), nullable=True),
        _ts("created_at", server_default=True),
    )

    op.create_table(
        "technicians",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), sa.ForeignKey("users.id"), nullable=True, unique=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("phone", sa.String(20), nullable=False, unique=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_available", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("created_at", server_default=True),
        _ts("updated_at", server_default=True),
    )
    op.create_index("ix_technicians_is_active", "technicians", ["is_active"])

    op.create_table(
        "tickets",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("ticket_number", sa.String(40), nullable=False),
        sa.Column("category", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="OPEN"),
        sa.Column("approval", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("customer_id", sa.Uuid(), sa.ForeignKey("customers.id"), nullable=False),
        sa.Column("creator_id", sa.Uuid(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("address", sa.Text(), nullable=False),
        sa.Column("details", sa.Text(), nullable=True),
        _ts("scheduled_at"),
        sa.Column("assignee_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("approved_by_id", sa.Uuid(), sa.ForeignKey("users.id"), nullable=True),
        _ts("approved_at"),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        _ts("completed_at"),
        sa.Column(
            "completed_by_technician_id",
            sa.Uuid(),
            sa.ForeignKey("technicians.id"),
            nullable=True,
        ),
        sa.Column("evidence_ref", sa.String(500), nullable=True),
        sa.Column("completion_notes", sa.Text(), nullable=True),
        _ts("created_at", server_default=True),
        _ts("updated_at", server_default=True),
        sa.CheckConstraint("category IN ('INSTALL', 'REPAIR')", name="chk_ticket_category"),
        sa.CheckConstraint(
            "status IN ('OPEN', 'ASSIGNED', 'IN_PROGRESS', 'COMPLETED', 'CANCELLED')",
            name="chk_ticket_status",
        ),
        sa.CheckConstraint("approval IN ('PENDING', 'APPROVED', 'REJECTED')", name="chk_ticket_approval"),
        sa.CheckConstraint("assignee_count >= 0", name="chk_ticket_assignee_count"),
    )
    op.create_index("ix_tickets_ticket_number", "tickets", ["ticket_number"], unique=True)
    op.create_index("ix_tickets_category", "tickets", ["category"])
    op.create_index("ix_tickets_status", "tickets", ["status"])
    op.create_index("ix_tickets_approval", "tickets", ["approval"])
    op.create_index("ix_tickets_customer_id", "tickets", ["customer_id"])
    op.create_index("ix_tickets_created_at", "tickets", ["created_at"])

    op.create_table(
        "assignments",
        sa.Column(
            "ticket_id",
            sa.Uuid(),
            sa.ForeignKey("tickets.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("technician_id", sa.Uuid(), sa.ForeignKey("technicians.id"), primary_key=True),
        sa.Column("role", sa.String(20), nullable=False, server_default="PRIMARY"),
        _ts("assigned_at", nullable=False, server_default=True),
        _ts("accepted_at"),
        sa.CheckConstraint("role IN ('PRIMARY', 'SECONDARY')", name="chk_assignment_role"),
    )

    op.create_table(
        "envelopes",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("channel", sa.String(20), nullable=False, server_default="whatsapp"),
        sa.Column("kind", sa.String(50), nullable=False),
        sa.Column("recipient_address", sa.String(100), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        _ts("next_attempt_at"),
        _ts("last_attempt_at"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("ticket_id", sa.Uuid(), nullable=True),
        _ts("created_at", nullable=False, server_default=True),
        _ts("sent_at"),
        _ts("failed_at"),
        sa.CheckConstraint("status IN ('PENDING', 'SENT', 'FAILED')", name="chk_envelope_status"),
        sa.CheckConstraint("attempts >= 0", name="chk_envelope_attempts"),
    )
    op.create_index("idx_envelopes_status_created", "envelopes", ["status", "created_at"])
    op.create_index("ix_envelopes_ticket_id", "envelopes", ["ticket_id"])
    op.create_index("ix_envelopes_created_at", "envelopes", ["created_at"])

    op.create_table(
        "one_time_codes",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("subject_address", sa.String(100), nullable=False),
        sa.Column("purpose", sa.String(30), nullable=False),
        sa.Column("code_hash", sa.String(128), nullable=False),
        _ts("expires_at", nullable=False),
        _ts("consumed_at"),
        _ts("superseded_at"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        _ts("created_at", nullable=False, server_default=True),
        sa.CheckConstraint("purpose IN ('REGISTER', 'RESET_PASSWORD')", name="chk_code_purpose"),
    )
    op.create_index("idx_codes_subject_purpose", "one_time_codes", ["subject_address", "purpose"])

    op.create_table(
        "ticket_activities",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("ticket_id", sa.Uuid(), nullable=False),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("actor_id", sa.Uuid(), nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
        _ts("created_at", nullable=False, server_default=True),
    )
    op.create_index("ix_ticket_activities_ticket_id", "ticket_activities", ["ticket_id"])


def downgrade() -> None:
    op.drop_table("ticket_activities")
    op.drop_table("one_time_codes")
    op.drop_table("envelopes")
    op.drop_table("assignments")
    op.drop_table("tickets")
    op.drop_table("technicians")
    op.drop_table("customers")
    op.drop_table("users")
