"""Create customer, campaign, send ledger, metrics, and promo code tables."""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "20261016_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


UUID = postgresql.UUID(as_uuid=True)

CAMPAIGN_TYPE = postgresql.ENUM(
    "one_time", "scheduled", "recurring", "ab_test", name="campaign_type_enum", create_type=False
)
CAMPAIGN_STATUS = postgresql.ENUM(
    "draft", "scheduled", "sending", "sent", "cancelled", "paused", name="campaign_status_enum", create_type=False
)
CAMPAIGN_CHANNEL = postgresql.ENUM(
    "push", "whatsapp", "email", "sms", name="campaign_channel_enum", create_type=False
)
CAMPAIGN_SEND_STATUS = postgresql.ENUM(
    "pending", "sent", "delivered", "failed", "bounced", name="campaign_send_status_enum", create_type=False
)
CAMPAIGN_AUDIT_ACTION = postgresql.ENUM(
    "created",
    "edited",
    "scheduled",
    "unscheduled",
    "sending",
    "sent",
    "cancelled",
    "paused",
    "resumed",
    "preview",
    name="campaign_audit_action_enum",
    create_type=False,
)
PROMO_DISCOUNT_TYPE = postgresql.ENUM(
    "percentage", "fixed_amount", name="promo_discount_type_enum", create_type=False
)
PROMO_ORDER_TYPE = postgresql.ENUM(
    "all", "eats_only", "delivery_only", name="promo_order_type_enum", create_type=False
)

ENUMS = (
    CAMPAIGN_TYPE,
    CAMPAIGN_STATUS,
    CAMPAIGN_CHANNEL,
    CAMPAIGN_SEND_STATUS,
    CAMPAIGN_AUDIT_ACTION,
    PROMO_DISCOUNT_TYPE,
    PROMO_ORDER_TYPE,
)


def upgrade() -> None:
    bind = op.get_bind()
    for enum in ENUMS:
        enum.create(bind, checkfirst=True)

    op.create_table(
        "customers",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("restaurant_id", UUID, nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("phone", sa.String(), nullable=True),
        sa.Column("last_visit_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("total_points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("consent_push", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("consent_whatsapp", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("consent_email", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("consent_sms", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("consent_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_customers_restaurant_id", "customers", ["restaurant_id"])
    op.create_index("ix_customers_restaurant_last_visit", "customers", ["restaurant_id", "last_visit_at"])
    op.create_index("ix_customers_restaurant_points", "customers", ["restaurant_id", "total_points"])

    op.create_table(
        "customer_tags",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("restaurant_id", UUID, nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("color", sa.String(), nullable=False, server_default="#3B82F6"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_customer_tags_restaurant_id", "customer_tags", ["restaurant_id"])

    op.create_table(
        "customer_tag_assignments",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("customer_id", UUID, sa.ForeignKey("customers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("tag_id", UUID, sa.ForeignKey("customer_tags.id", ondelete="CASCADE"), nullable=False),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("customer_id", "tag_id", name="uq_customer_tag_assignments_customer_tag"),
    )
    op.create_index("ix_customer_tag_assignments_customer_id", "customer_tag_assignments", ["customer_id"])
    op.create_index("ix_customer_tag_assignments_tag_id", "customer_tag_assignments", ["tag_id"])

    op.create_table(
        "campaigns",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("restaurant_id", UUID, nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("type", CAMPAIGN_TYPE, nullable=False),
        sa.Column("status", CAMPAIGN_STATUS, nullable=False, server_default="draft"),
        sa.Column("primary_channel", CAMPAIGN_CHANNEL, nullable=False),
        sa.Column("fallback_channel", CAMPAIGN_CHANNEL, nullable=True),
        sa.Column("audience_type", sa.String(), nullable=False),
        sa.Column("audience_filter", sa.JSON(), nullable=False),
        sa.Column("estimated_audience_size", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("recurring_config", sa.JSON(), nullable=True),
        sa.Column("ab_test_config", sa.JSON(), nullable=True),
        sa.Column("created_by", sa.String(255), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_campaigns_restaurant_id", "campaigns", ["restaurant_id"])
    op.create_index("ix_campaigns_status", "campaigns", ["status"])
    op.create_index("ix_campaigns_scheduled_at", "campaigns", ["scheduled_at"])

    op.create_table(
        "campaign_messages",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("campaign_id", UUID, sa.ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False),
        sa.Column("channel", CAMPAIGN_CHANNEL, nullable=False),
        sa.Column("subject", sa.String(), nullable=True),
        sa.Column("message_template", sa.Text(), nullable=False),
        sa.Column("variables", sa.JSON(), nullable=False),
        sa.Column("ab_variant", sa.String(1), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_campaign_messages_campaign_id", "campaign_messages", ["campaign_id"])

    op.create_table(
        "campaign_sends",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("campaign_id", UUID, sa.ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False),
        sa.Column("customer_id", UUID, sa.ForeignKey("customers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("channel_used", CAMPAIGN_CHANNEL, nullable=False),
        sa.Column("status", CAMPAIGN_SEND_STATUS, nullable=False, server_default="pending"),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("opened_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("clicked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("promo_code_assigned", sa.String(), nullable=True),
        sa.Column("ab_variant", sa.String(1), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("campaign_id", "customer_id", name="uq_campaign_sends_campaign_customer"),
    )
    op.create_index("ix_campaign_sends_campaign_id", "campaign_sends", ["campaign_id"])
    op.create_index("ix_campaign_sends_customer_id", "campaign_sends", ["customer_id"])
    op.create_index("ix_campaign_sends_status", "campaign_sends", ["status"])

    op.create_table(
        "campaign_metrics",
        sa.Column("id", UUID, primary_key=True),
        sa.Column(
            "campaign_id",
            UUID,
            sa.ForeignKey("campaigns.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("total_targeted", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_sent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_delivered", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_bounced", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_opened", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_clicked", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_redemptions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_discount_given", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("total_revenue_generated", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("delivery_rate", sa.Float(), nullable=False, server_default="0"),
        sa.Column("open_rate", sa.Float(), nullable=False, server_default="0"),
        sa.Column("click_rate", sa.Float(), nullable=False, server_default="0"),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "campaign_audit_log",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("campaign_id", UUID, sa.ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False),
        sa.Column("action", CAMPAIGN_AUDIT_ACTION, nullable=False),
        sa.Column("performed_by", sa.String(255), nullable=True),
        sa.Column("from_status", sa.String(32), nullable=True),
        sa.Column("to_status", sa.String(32), nullable=True),
        sa.Column("changes", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_campaign_audit_log_campaign_id", "campaign_audit_log", ["campaign_id"])

    op.create_table(
        "promo_codes",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("campaign_id", UUID, sa.ForeignKey("campaigns.id", ondelete="SET NULL"), nullable=True),
        sa.Column("restaurant_id", UUID, nullable=False),
        sa.Column("code", sa.String(), nullable=False),
        sa.Column("discount_type", PROMO_DISCOUNT_TYPE, nullable=False),
        sa.Column("discount_value", sa.Numeric(10, 2), nullable=False),
        sa.Column("min_spend", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("max_uses", sa.Integer(), nullable=True),
        sa.Column("max_uses_per_customer", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("total_uses", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("order_type", PROMO_ORDER_TYPE, nullable=False, server_default="all"),
        sa.Column("valid_from", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("restaurant_id", "code", name="uq_promo_codes_restaurant_code"),
        sa.CheckConstraint("total_uses >= 0", name="ck_promo_codes_total_uses_non_negative"),
        sa.CheckConstraint("max_uses_per_customer >= 1", name="ck_promo_codes_per_customer_positive"),
    )
    op.create_index("ix_promo_codes_campaign_id", "promo_codes", ["campaign_id"])
    op.create_index("ix_promo_codes_restaurant_id", "promo_codes", ["restaurant_id"])
    op.create_index("ix_promo_codes_validity", "promo_codes", ["is_active", "valid_from", "valid_until"])

    op.create_table(
        "promo_code_redemptions",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("promo_code_id", UUID, sa.ForeignKey("promo_codes.id", ondelete="CASCADE"), nullable=False),
        sa.Column("customer_id", UUID, sa.ForeignKey("customers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("restaurant_id", UUID, nullable=False),
        sa.Column("order_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("discount_applied", sa.Numeric(10, 2), nullable=False),
        sa.Column("order_reference", sa.String(), nullable=True),
        sa.Column("redeemed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_promo_code_redemptions_promo_code_id", "promo_code_redemptions", ["promo_code_id"])
    op.create_index("ix_promo_code_redemptions_customer_id", "promo_code_redemptions", ["customer_id"])
    op.create_index(
        "ix_promo_code_redemptions_code_customer",
        "promo_code_redemptions",
        ["promo_code_id", "customer_id"],
    )


def downgrade() -> None:
    op.drop_table("promo_code_redemptions")
    op.drop_table("promo_codes")
    op.drop_table("campaign_audit_log")
    op.drop_table("campaign_metrics")
    op.drop_table("campaign_sends")
    op.drop_table("campaign_messages")
    op.drop_table("campaigns")
    op.drop_table("customer_tag_assignments")
    op.drop_table("customer_tags")
    op.drop_table("customers")

    bind = op.get_bind()
    for enum in reversed(ENUMS):
        enum.drop(bind, checkfirst=True)
