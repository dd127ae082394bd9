"""Coupon catalog, redemption ledger and guest conversions.

Revision ID: 20261019_01
Revises:
Create Date: 2026-10-19
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "20261019_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    coupon_tier = sa.Enum("STANDARD", "PREMIUM", name="coupon_tier")
    conversion_status = sa.Enum("PENDING", "CONVERTED", name="guest_conversion_status")

    op.create_table(
        "coupons",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("title", sa.String(), nullable=True),
        sa.Column("venue_ids", sa.JSON(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("tier", coupon_tier, nullable=False, server_default="STANDARD"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "redemption_records",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("dedup_key", sa.String(), nullable=False),
        sa.Column("promotion_id", sa.String(), nullable=False),
        sa.Column("venue_id", sa.String(), nullable=False),
        sa.Column("member_id", sa.String(), nullable=True),
        sa.Column("guest_email", sa.String(), nullable=True),
        sa.Column("bill_reference", sa.String(), nullable=False),
        sa.Column("staff_id", sa.String(), nullable=False),
        sa.Column(
            "tier",
            postgresql.ENUM("STANDARD", "PREMIUM", name="coupon_tier", create_type=False),
            nullable=False,
        ),
        sa.Column("redeemed_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("dedup_key", name="uq_redemption_records_dedup_key"),
        sa.CheckConstraint(
            "(member_id IS NULL) <> (guest_email IS NULL)",
            name="ck_redemption_records_single_identity",
        ),
    )
    op.create_index("ix_redemption_records_promotion_id", "redemption_records", ["promotion_id"])
    op.create_index("ix_redemption_records_venue_id", "redemption_records", ["venue_id"])
    op.create_index("ix_redemption_records_member_id", "redemption_records", ["member_id"])
    op.create_index("ix_redemption_records_guest_email", "redemption_records", ["guest_email"])
    op.create_index("ix_redemption_records_staff_id", "redemption_records", ["staff_id"])

    op.create_table(
        "guest_conversions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("guest_email", sa.String(), nullable=False),
        sa.Column("staff_id", sa.String(), nullable=False),
        sa.Column("venue_id", sa.String(), nullable=False),
        sa.Column("status", conversion_status, nullable=False, server_default="PENDING"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("converted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_guest_conversions_guest_email", "guest_conversions", ["guest_email"])
    op.create_index("ix_guest_conversions_staff_id", "guest_conversions", ["staff_id"])


def downgrade() -> None:
    op.drop_index("ix_guest_conversions_staff_id", table_name="guest_conversions")
    op.drop_index("ix_guest_conversions_guest_email", table_name="guest_conversions")
    op.drop_table("guest_conversions")
    for column in ("staff_id", "guest_email", "member_id", "venue_id", "promotion_id"):
        op.drop_index(f"ix_redemption_records_{column}", table_name="redemption_records")
    op.drop_table("redemption_records")
    op.drop_table("coupons")
    sa.Enum(name="guest_conversion_status").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="coupon_tier").drop(op.get_bind(), checkfirst=True)
