"""Create invoices, chase_emails and app_config tables

Revision ID: 20261018_chaser_schema
Revises:
Create Date: 2026-10-18 09:00:00
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "20261018_chaser_schema"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

DEFAULT_APP_CONFIG = {
    "chase_enabled": "true",
    "max_chase_count": "4",
    "chase_interval_tiers": "10:24,7:48,5:72",
}


def upgrade() -> None:
    op.create_table(
        "invoices",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("external_id", sa.String(255), nullable=False),
        sa.Column("customer_email", sa.String(320), nullable=False),
        sa.Column("customer_name", sa.String(255)),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="USD"),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="unpaid"),
        sa.Column("payment_link", sa.Text()),
        sa.Column("overdue_days", sa.Integer()),
        sa.Column("last_chase_at", sa.DateTime(timezone=True)),
        sa.Column("chase_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("chase_paused", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("chase_claim", sa.String(64)),
        sa.Column("chase_claimed_at", sa.DateTime(timezone=True)),
        sa.Column("paid_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("external_id", name="uq_invoices_external_id"),
        sa.CheckConstraint(
            "status IN ('unpaid', 'overdue', 'paid', 'cancelled')", name="ck_invoices_status"
        ),
        sa.CheckConstraint("chase_count >= 0", name="ck_invoices_chase_count"),
    )
    op.create_index("ix_invoices_status_due_date", "invoices", ["status", "due_date"])

    op.create_table(
        "chase_emails",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "invoice_id",
            sa.Integer(),
            sa.ForeignKey("invoices.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("overdue_day", sa.Integer(), nullable=False),
        sa.Column("subject_line", sa.Text(), nullable=False, server_default=""),
        sa.Column("generated_text", sa.Text(), nullable=False, server_default=""),
        sa.Column("sent_to", sa.String(320)),
        sa.Column("delivery_id", sa.String(255)),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("error", sa.Text()),
        sa.Column("sent_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "status IN ('pending', 'sent', 'failed', 'cancelled')",
            name="ck_chase_emails_status",
        ),
    )
    op.create_index(
        "ix_chase_emails_invoice_id_status", "chase_emails", ["invoice_id", "status"]
    )

    app_config = op.create_table(
        "app_config",
        sa.Column("key", sa.String(128), primary_key=True),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.bulk_insert(
        app_config,
        [{"key": key, "value": value} for key, value in DEFAULT_APP_CONFIG.items()],
    )


def downgrade() -> None:
    op.drop_table("app_config")
    op.drop_index("ix_chase_emails_invoice_id_status", table_name="chase_emails")
    op.drop_table("chase_emails")
    op.drop_index("ix_invoices_status_due_date", table_name="invoices")
    op.drop_table("invoices")
