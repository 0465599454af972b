"""
Initial family budget schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 09:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("(CURRENT_TIMESTAMP)")),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.text("(CURRENT_TIMESTAMP)")),
    ]


def upgrade() -> None:
    person_role = sa.Enum("parent", "child", name="person_role")
    alert_mode = sa.Enum("all", "weekly", "threshold", name="alert_mode")
    billing_cycle = sa.Enum("monthly", "yearly", "weekly", name="billing_cycle")

    op.create_table(
        "person",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("role", person_role, nullable=False),
        sa.Column("phone_number", sa.String(length=20), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "notificationsetting",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("person_id", sa.Integer(), sa.ForeignKey("person.id", ondelete="CASCADE"), nullable=False, unique=True),
        sa.Column("alert_mode", alert_mode, nullable=False, server_default="all"),
        sa.Column("threshold_amount", sa.Numeric(10, 2), nullable=False, server_default="25.00"),
        sa.Column("weekly_summary_day", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
    )

    op.create_table(
        "devicetoken",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("person_id", sa.Integer(), sa.ForeignKey("person.id", ondelete="CASCADE"), nullable=False),
        sa.Column("token", sa.String(length=255), nullable=False, unique=True),
        sa.Column("platform", sa.String(length=20), nullable=False, server_default="ios"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    op.create_table(
        "linkedcard",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("person_id", sa.Integer(), sa.ForeignKey("person.id", ondelete="CASCADE"), nullable=False),
        sa.Column("aggregator_account_id", sa.String(length=255), nullable=False, unique=True),
        sa.Column("access_token", sa.String(length=255), nullable=True),
        sa.Column("mask", sa.String(length=4), nullable=True),
        sa.Column("nickname", sa.String(length=100), nullable=True),
        sa.Column("sync_cursor", sa.Text(), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "transaction",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("card_id", sa.Integer(), sa.ForeignKey("linkedcard.id", ondelete="CASCADE"), nullable=False),
        sa.Column("external_id", sa.String(length=255), nullable=False, unique=True),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("is_refund", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("merchant_name", sa.String(length=255), nullable=True),
        sa.Column("category", sa.String(length=100), nullable=True),
        sa.Column("occurred_on", sa.Date(), nullable=False),
        sa.Column("is_recurring", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_food_delivery", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("(CURRENT_TIMESTAMP)")),
    )
    op.create_index("ix_transaction_occurred_on", "transaction", ["occurred_on"])
    op.create_index("ix_transaction_card_id", "transaction", ["card_id"])

    op.create_table(
        "spendinglimit",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("person_id", sa.Integer(), sa.ForeignKey("person.id", ondelete="CASCADE"), nullable=False, unique=True),
        sa.Column("monthly_limit", sa.Numeric(10, 2), nullable=False),
        sa.Column("reset_day", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("current_spend", sa.Numeric(10, 2), nullable=False, server_default="0.00"),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.text("(CURRENT_TIMESTAMP)")),
    )

    op.create_table(
        "subscription",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("person_id", sa.Integer(), sa.ForeignKey("person.id", ondelete="CASCADE"), nullable=False),
        sa.Column("merchant_name", sa.String(length=255), nullable=False),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("billing_cycle", billing_cycle, nullable=False, server_default="monthly"),
        sa.Column("next_renewal_date", sa.Date(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index("ix_subscription_next_renewal", "subscription", ["next_renewal_date"])
    op.create_index(
        "uq_subscription_person_merchant",
        "subscription",
        ["person_id", sa.text("lower(merchant_name)")],
        unique=True,
    )

    op.create_table(
        "alertledgerentry",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("recipient_id", sa.Integer(), sa.ForeignKey("person.id", ondelete="CASCADE"), nullable=False),
        sa.Column("reference_id", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(length=50), nullable=False),
        sa.Column("sent_at", sa.DateTime(), nullable=False, server_default=sa.text("(CURRENT_TIMESTAMP)")),
        sa.UniqueConstraint("recipient_id", "reference_id", "kind", name="uq_alert_ledger_triple"),
    )
    op.create_index("ix_alert_ledger_reference", "alertledgerentry", ["reference_id"])


def downgrade() -> None:
    op.drop_table("alertledgerentry")
    op.drop_index("uq_subscription_person_merchant", table_name="subscription")
    op.drop_table("subscription")
    op.drop_table("spendinglimit")
    op.drop_table("transaction")
    op.drop_table("linkedcard")
    op.drop_table("devicetoken")
    op.drop_table("notificationsetting")
    op.drop_table("person")

    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        for name in ("billing_cycle", "alert_mode", "person_role"):
            sa.Enum(name=name).drop(bind, checkfirst=True)
