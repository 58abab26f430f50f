"""Manager override authority schema

Revision ID: 20261019_override_authority
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_override_authority"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("username", sa.String(64), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("first_name", sa.String(80), nullable=True),
        sa.Column("last_name", sa.String(80), nullable=True),
        sa.Column("password_hash", sa.String(255), nullable=False),
        sa.Column("role", sa.String(32), nullable=False, server_default="cashier"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("username", name="uq_users_username"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("users", schema=None) as batch_op:
        batch_op.create_index("ix_users_username", ["username"], unique=False)

    op.create_table(
        "session_tokens",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("token_hash", sa.String(64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("last_used_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_revoked", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_reason", sa.String(255), nullable=True),
        sa.Column("user_agent", sa.String(512), nullable=True),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("session_tokens", schema=None) as batch_op:
        batch_op.create_index("ix_session_tokens_user_id", ["user_id"], unique=False)
        batch_op.create_index("ix_session_tokens_token_hash", ["token_hash"], unique=True)

    op.create_table(
        "override_thresholds",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("override_type", sa.String(32), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("channel", sa.String(16), nullable=True),
        sa.Column("category_id", sa.Integer(), nullable=True),
        sa.Column("threshold_value", sa.Numeric(12, 4), nullable=True),
        sa.Column("default_approval_level", sa.String(32), nullable=False, server_default="manager"),
        sa.Column("require_reason", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("reason_min_length", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("valid_from", sa.DateTime(timezone=True), nullable=True),
        sa.Column("valid_to", sa.DateTime(timezone=True), nullable=True),
        sa.Column("active_start_time", sa.Time(), nullable=True),
        sa.Column("active_end_time", sa.Time(), nullable=True),
        sa.Column("active_days", sa.JSON(), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False, server_default=sa.text("100")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_by", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.ForeignKeyConstraint(["created_by"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("override_thresholds", schema=None) as batch_op:
        batch_op.create_index("ix_override_thresholds_override_type", ["override_type"], unique=False)
        batch_op.create_index("ix_override_thresholds_is_active", ["is_active"], unique=False)
        batch_op.create_index("ix_override_thresholds_scope", ["override_type", "channel", "category_id"], unique=False)

    op.create_table(
        "threshold_approval_levels",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("threshold_id", sa.Integer(), nullable=False),
        sa.Column("approval_level", sa.String(32), nullable=False),
        sa.Column("max_value", sa.Numeric(12, 4), nullable=True),
        sa.Column("is_unlimited", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("description", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.ForeignKeyConstraint(["threshold_id"], ["override_thresholds.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("threshold_id", "approval_level", name="uq_threshold_approval_level"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("threshold_approval_levels", schema=None) as batch_op:
        batch_op.create_index("ix_threshold_approval_levels_threshold_id", ["threshold_id"], unique=False)

    op.create_table(
        "override_threshold_exceptions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("threshold_id", sa.Integer(), nullable=False),
        sa.Column("exception_type", sa.String(32), nullable=False),
        sa.Column("product_id", sa.Integer(), nullable=True),
        sa.Column("category_id", sa.Integer(), nullable=True),
        sa.Column("customer_id", sa.Integer(), nullable=True),
        sa.Column("customer_tier", sa.String(50), nullable=True),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("is_exempt", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("created_by", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.ForeignKeyConstraint(["threshold_id"], ["override_thresholds.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["created_by"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("override_threshold_exceptions", schema=None) as batch_op:
        batch_op.create_index("ix_override_threshold_exceptions_threshold_id", ["threshold_id"], unique=False)

    op.create_table(
        "manager_pins",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("pin_hash", sa.String(255), nullable=False),
        sa.Column("approval_level", sa.String(32), nullable=False, server_default="manager"),
        sa.Column("max_daily_overrides", sa.Integer(), nullable=True),
        sa.Column("override_count_today", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_override_date", sa.Date(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("valid_from", sa.DateTime(timezone=True), nullable=True),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["created_by"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("manager_pins", schema=None) as batch_op:
        batch_op.create_index("ix_manager_pins_user_id", ["user_id"], unique=False)
        batch_op.create_index("ix_manager_pins_approval_level", ["approval_level"], unique=False)
        batch_op.create_index("ix_manager_pins_user_active", ["user_id", "is_active"], unique=False)

    op.create_table(
        "override_requests",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("request_code", sa.String(20), nullable=False),
        sa.Column("override_type", sa.String(32), nullable=False),
        sa.Column("threshold_id", sa.Integer(), nullable=True),
        sa.Column("required_level", sa.String(32), nullable=False, server_default="manager"),
        sa.Column("transaction_id", sa.Integer(), nullable=True),
        sa.Column("quotation_id", sa.Integer(), nullable=True),
        sa.Column("shift_id", sa.Integer(), nullable=True),
        sa.Column("register_id", sa.Integer(), nullable=True),
        sa.Column("requested_by", sa.Integer(), nullable=False),
        sa.Column("requested_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("original_value", sa.Numeric(12, 4), nullable=True),
        sa.Column("requested_value", sa.Numeric(12, 4), nullable=True),
        sa.Column("product_id", sa.Integer(), nullable=True),
        sa.Column("product_name", sa.String(255), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("resolved_by", sa.Integer(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolution_reason", sa.Text(), nullable=True),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.ForeignKeyConstraint(["threshold_id"], ["override_thresholds.id"]),
        sa.ForeignKeyConstraint(["requested_by"], ["users.id"]),
        sa.ForeignKeyConstraint(["resolved_by"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("override_requests", schema=None) as batch_op:
        batch_op.create_index("ix_override_requests_request_code", ["request_code"], unique=True)
        batch_op.create_index("ix_override_requests_transaction_id", ["transaction_id"], unique=False)
        batch_op.create_index("ix_override_requests_shift_id", ["shift_id"], unique=False)
        batch_op.create_index("ix_override_requests_register_id", ["register_id"], unique=False)
        batch_op.create_index("ix_override_requests_requested_by", ["requested_by"], unique=False)
        batch_op.create_index("ix_override_requests_status", ["status"], unique=False)
        batch_op.create_index("ix_override_requests_status_expires", ["status", "expires_at"], unique=False)

    op.create_table(
        "override_log",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("request_id", sa.Integer(), nullable=True),
        sa.Column("override_type", sa.String(32), nullable=False),
        sa.Column("threshold_id", sa.Integer(), nullable=True),
        sa.Column("transaction_id", sa.Integer(), nullable=True),
        sa.Column("quotation_id", sa.Integer(), nullable=True),
        sa.Column("shift_id", sa.Integer(), nullable=True),
        sa.Column("register_id", sa.Integer(), nullable=True),
        sa.Column("cashier_id", sa.Integer(), nullable=True),
        sa.Column("approved_by", sa.Integer(), nullable=True),
        sa.Column("approval_level", sa.String(32), nullable=True),
        sa.Column("original_value", sa.Numeric(12, 4), nullable=True),
        sa.Column("override_value", sa.Numeric(12, 4), nullable=True),
        sa.Column("difference_value", sa.Numeric(12, 4), nullable=True),
        sa.Column("difference_percent", sa.Numeric(8, 4), nullable=True),
        sa.Column("product_id", sa.Integer(), nullable=True),
        sa.Column("product_name", sa.String(255), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("was_approved", sa.Boolean(), nullable=False),
        sa.Column("denial_reason", sa.Text(), nullable=True),
        sa.Column("verification_method", sa.String(32), nullable=False, server_default="pin"),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("user_agent", sa.String(512), nullable=True),
        sa.Column("device_id", sa.String(100), nullable=True),
        sa.Column("threshold_snapshot", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.ForeignKeyConstraint(["request_id"], ["override_requests.id"]),
        sa.ForeignKeyConstraint(["threshold_id"], ["override_thresholds.id"]),
        sa.ForeignKeyConstraint(["cashier_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["approved_by"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("override_log", schema=None) as batch_op:
        batch_op.create_index("ix_override_log_override_type", ["override_type"], unique=False)
        batch_op.create_index("ix_override_log_cashier_id", ["cashier_id"], unique=False)
        batch_op.create_index("ix_override_log_approved_by", ["approved_by"], unique=False)
        batch_op.create_index("ix_override_log_was_approved", ["was_approved"], unique=False)
        batch_op.create_index("ix_override_log_created_at", ["created_at"], unique=False)
        batch_op.create_index("ix_override_log_audit", ["created_at", "override_type", "was_approved"], unique=False)
        batch_op.create_index("ix_override_log_request", ["request_id", "id"], unique=False)

    op.create_table(
        "pin_attempt_counters",
        sa.Column("origin", sa.String(128), nullable=False),
        sa.Column("failure_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("window_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("locked_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("origin"),
    )


def downgrade():
    op.drop_table("pin_attempt_counters")
    op.drop_table("override_log")
    op.drop_table("override_requests")
    op.drop_table("manager_pins")
    op.drop_table("override_threshold_exceptions")
    op.drop_table("threshold_approval_levels")
    op.drop_table("override_thresholds")
    op.drop_table("session_tokens")
    op.drop_table("users")
