"""Initial reservation schema

Revision ID: 0001_initial
Revises:
Create Date: 2025-01-06
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None

OCCUPYING_STATUSES = "status IN ('active', 'pending_etransfer', 'etransfer_sent', 'pending_approval')"


def upgrade() -> None:
    profile_role = postgresql.ENUM("student", "parent", "coach", "admin", name="profilerole", create_type=False)
    profile_role.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "profiles",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(length=255), unique=True),
        sa.Column("display_name", sa.String(length=255)),
        sa.Column("role", profile_role, server_default="student"),
        sa.Column("timezone", sa.String(length=64), server_default="America/Vancouver"),
        sa.Column("locale", sa.String(length=8), server_default="en"),
        sa.Column("notification_preferences", sa.JSON()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "guardian_links",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("parent_id", sa.Integer(), sa.ForeignKey("profiles.id", ondelete="CASCADE"), index=True),
        sa.Column("student_id", sa.Integer(), sa.ForeignKey("profiles.id", ondelete="CASCADE"), index=True),
        sa.UniqueConstraint("parent_id", "student_id", name="uq_guardian_link_parent_student"),
    )

    op.create_table(
        "terms",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.false()),
    )

    op.create_table(
        "classes",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("term_id", sa.Integer(), sa.ForeignKey("terms.id", ondelete="CASCADE"), index=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("schedule_day", sa.String(length=3), nullable=False),
        sa.Column("schedule_start_time", sa.Time(), nullable=False),
        sa.Column("schedule_end_time", sa.Time(), nullable=False),
        sa.Column("timezone", sa.String(length=64), server_default="America/Vancouver"),
        sa.Column("max_students", sa.Integer(), nullable=False),
        sa.Column("price", sa.Numeric(10, 2), server_default="0"),
        sa.Column("zoom_link", sa.String(length=512)),
        sa.CheckConstraint("max_students > 0", name="ck_class_max_students_positive"),
    )

    reservation_status = postgresql.ENUM(
        "pending_etransfer",
        "etransfer_sent",
        "pending_approval",
        "active",
        "etransfer_lapsed",
        "dropped",
        "cancelled",
        name="reservationstatus",
        create_type=False,
    )
    reservation_status.create(op.get_bind(), checkfirst=True)
    payment_method = postgresql.ENUM("card", "etransfer", "already_paid", name="paymentmethod", create_type=False)
    payment_method.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "reservations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("student_id", sa.Integer(), sa.ForeignKey("profiles.id", ondelete="CASCADE"), index=True),
        sa.Column("class_id", sa.Integer(), sa.ForeignKey("classes.id", ondelete="CASCADE")),
        sa.Column("status", reservation_status, nullable=False),
        sa.Column("payment_method", payment_method, nullable=False),
        sa.Column("batch_token", sa.String(length=64)),
        sa.Column("hold_expires_at", sa.DateTime(timezone=True)),
        sa.Column("payment_reference", sa.String(length=64), index=True),
        sa.Column("etransfer_sent_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
        sa.Column("resolved_at", sa.DateTime(timezone=True)),
        sa.Column("resolved_by", sa.String(length=64)),
        sa.Column("resolution_reason", sa.String(length=255)),
    )
    op.create_index(
        "uq_reservation_student_class_occupying",
        "reservations",
        ["student_id", "class_id"],
        unique=True,
        postgresql_where=sa.text(OCCUPYING_STATUSES),
        sqlite_where=sa.text(OCCUPYING_STATUSES),
    )
    op.create_index("ix_reservation_class_status", "reservations", ["class_id", "status"])
    op.create_index("ix_reservation_batch_token", "reservations", ["batch_token"])

    op.create_table(
        "notification_log",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("recipient_id", sa.Integer(), nullable=False),
        sa.Column("notification_type", sa.String(length=64), nullable=False),
        sa.Column("reference_id", sa.String(length=255), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint(
            "recipient_id",
            "notification_type",
            "reference_id",
            name="uq_notification_log_key",
        ),
    )

    op.create_table(
        "referral_credits",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("referrer_id", sa.Integer(), sa.ForeignKey("profiles.id", ondelete="CASCADE"), index=True),
        sa.Column("amount", sa.Numeric(10, 2)),
        sa.Column("code", sa.String(length=32), nullable=False, unique=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    referral_status = postgresql.ENUM(
        "pending", "registered", "converted", "credited", name="referralstatus", create_type=False
    )
    referral_status.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "referrals",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("referrer_id", sa.Integer(), sa.ForeignKey("profiles.id", ondelete="CASCADE"), index=True),
        sa.Column(
            "referred_student_id",
            sa.Integer(),
            sa.ForeignKey("profiles.id", ondelete="CASCADE"),
            index=True,
        ),
        sa.Column("status", referral_status, server_default="pending"),
        sa.Column("credit_amount", sa.Numeric(10, 2)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("converted_at", sa.DateTime(timezone=True)),
        sa.Column("credited_at", sa.DateTime(timezone=True)),
        sa.Column("credit_id", sa.Integer(), sa.ForeignKey("referral_credits.id")),
    )

    payment_status = postgresql.ENUM("pending", "paid", "failed", "canceled", name="paymentstatus", create_type=False)
    payment_status.create(op.get_bind(), checkfirst=True)
    payment_provider = postgresql.ENUM("stub", "http", name="paymentprovider", create_type=False)
    payment_provider.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "payments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("student_id", sa.Integer(), sa.ForeignKey("profiles.id", ondelete="CASCADE")),
        sa.Column("class_ids", sa.JSON()),
        sa.Column("amount", sa.Numeric(10, 2)),
        sa.Column("currency", sa.CHAR(length=3), server_default="CAD"),
        sa.Column("provider", payment_provider),
        sa.Column("order_id", sa.String(length=64), index=True),
        sa.Column("provider_payment_id", sa.String(length=128)),
        sa.Column("confirmation_url", sa.String(length=512)),
        sa.Column("status", payment_status, server_default="pending"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("order_id", name="uq_payment_order_id"),
    )

    actor_type = postgresql.ENUM("user", "admin", "system", name="actortype", create_type=False)
    actor_type.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("actor_type", actor_type),
        sa.Column("actor_id", sa.Integer()),
        sa.Column("action", sa.String(length=255), index=True),
        sa.Column("subject", sa.String(length=64), index=True),
        sa.Column("payload", sa.JSON()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("audit_logs")
    op.drop_table("payments")
    op.drop_table("referrals")
    op.drop_table("referral_credits")
    op.drop_table("notification_log")
    op.drop_index("ix_reservation_batch_token", table_name="reservations")
    op.drop_index("ix_reservation_class_status", table_name="reservations")
    op.drop_index("uq_reservation_student_class_occupying", table_name="reservations")
    op.drop_table("reservations")
    op.drop_table("classes")
    op.drop_table("terms")
    op.drop_table("guardian_links")
    op.drop_table("profiles")
    for enum_name in (
        "actortype",
        "paymentprovider",
        "paymentstatus",
        "referralstatus",
        "paymentmethod",
        "reservationstatus",
        "profilerole",
    ):
        postgresql.ENUM(name=enum_name).drop(op.get_bind(), checkfirst=True)
