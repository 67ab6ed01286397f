"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-09-02
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def _inspector():
    from sqlalchemy import inspect as sa_inspect
    return sa_inspect(op.get_bind())


def upgrade() -> None:
    if op.get_bind().dialect.name == "postgresql":
        op.execute(sa.text("ALTER TABLE alembic_version ALTER COLUMN version_num TYPE VARCHAR(64)"))

    inspector = _inspector()
    existing_tables = set(inspector.get_table_names())

    def existing_indexes(table: str) -> set[str]:
        if table not in existing_tables:
            return set()
        return {idx["name"] for idx in inspector.get_indexes(table)}

    if "users" not in existing_tables:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("name", sa.String(), nullable=False),
            sa.Column("surname", sa.String(), nullable=False),
            sa.Column("student_id", sa.String(), nullable=False),
            sa.Column("email", sa.String(), nullable=False),
            sa.Column("pseudonym", sa.String(), nullable=True),
            sa.Column("faculty", sa.String(), nullable=True),
            sa.Column("wallet_address", sa.String(), nullable=True),
            sa.Column("password", sa.String(), nullable=False),
            sa.Column("role", sa.String(), nullable=False, server_default="student"),
            sa.Column("status", sa.String(), nullable=False, server_default="active"),
            sa.Column("token_balance", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
            sa.CheckConstraint("token_balance >= 0", name="ck_users_token_balance_non_negative"),
        )
    idxs = existing_indexes("users")
    if "ix_users_id" not in idxs:
        op.create_index("ix_users_id", "users", ["id"])
    if "ix_users_student_id" not in idxs:
        op.create_index("ix_users_student_id", "users", ["student_id"], unique=True)
    if "ix_users_email" not in idxs:
        op.create_index("ix_users_email", "users", ["email"], unique=True)
    if "ix_users_wallet_address" not in idxs:
        op.create_index("ix_users_wallet_address", "users", ["wallet_address"])
    if "ix_users_role" not in idxs:
        op.create_index("ix_users_role", "users", ["role"])

    if "activities" not in existing_tables:
        op.create_table(
            "activities",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("title", sa.String(), nullable=False),
            sa.Column("description", sa.Text(), nullable=False),
            sa.Column("tokens", sa.Integer(), nullable=False),
            sa.Column("date", sa.DateTime(timezone=True), nullable=False),
            sa.Column("location", sa.String(), nullable=False),
            sa.Column("status", sa.String(), nullable=False, server_default="open"),
            sa.Column("max_participants", sa.Integer(), nullable=True),
            sa.Column("created_by", sa.Integer(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
        )
    idxs = existing_indexes("activities")
    if "ix_activities_id" not in idxs:
        op.create_index("ix_activities_id", "activities", ["id"])
    if "ix_activities_status" not in idxs:
        op.create_index("ix_activities_status", "activities", ["status"])
    if "ix_activities_created_by" not in idxs:
        op.create_index("ix_activities_created_by", "activities", ["created_by"])

    if "registrations" not in existing_tables:
        op.create_table(
            "registrations",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("activity_id", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(), nullable=False, server_default="registered"),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
            sa.UniqueConstraint("user_id", "activity_id", name="uq_registrations_user_activity"),
        )
    idxs = existing_indexes("registrations")
    if "ix_registrations_id" not in idxs:
        op.create_index("ix_registrations_id", "registrations", ["id"])
    if "ix_registrations_user_id" not in idxs:
        op.create_index("ix_registrations_user_id", "registrations", ["user_id"])
    if "ix_registrations_activity_id" not in idxs:
        op.create_index("ix_registrations_activity_id", "registrations", ["activity_id"])
    if "ix_registrations_status" not in idxs:
        op.create_index("ix_registrations_status", "registrations", ["status"])

    if "rewards" not in existing_tables:
        op.create_table(
            "rewards",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("title", sa.String(), nullable=False),
            sa.Column("description", sa.Text(), nullable=False),
            sa.Column("token_cost", sa.Integer(), nullable=False),
            sa.Column("quantity", sa.Integer(), nullable=True),
            sa.Column("status", sa.String(), nullable=False, server_default="available"),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
            sa.CheckConstraint("quantity IS NULL OR quantity >= 0", name="ck_rewards_quantity_non_negative"),
        )
    idxs = existing_indexes("rewards")
    if "ix_rewards_id" not in idxs:
        op.create_index("ix_rewards_id", "rewards", ["id"])
    if "ix_rewards_status" not in idxs:
        op.create_index("ix_rewards_status", "rewards", ["status"])

    if "transactions" not in existing_tables:
        op.create_table(
            "transactions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("activity_id", sa.Integer(), nullable=True),
            sa.Column("reward_id", sa.Integer(), nullable=True),
            sa.Column("amount", sa.Integer(), nullable=False),
            sa.Column("type", sa.String(), nullable=False),
            sa.Column("tx_hash", sa.String(), nullable=True),
            sa.Column("description", sa.String(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
        )
    idxs = existing_indexes("transactions")
    if "ix_transactions_id" not in idxs:
        op.create_index("ix_transactions_id", "transactions", ["id"])
    if "ix_transactions_user_id" not in idxs:
        op.create_index("ix_transactions_user_id", "transactions", ["user_id"])
    if "ix_transactions_activity_id" not in idxs:
        op.create_index("ix_transactions_activity_id", "transactions", ["activity_id"])
    if "ix_transactions_reward_id" not in idxs:
        op.create_index("ix_transactions_reward_id", "transactions", ["reward_id"])
    if "ix_transactions_type" not in idxs:
        op.create_index("ix_transactions_type", "transactions", ["type"])
    if "ix_transactions_tx_hash" not in idxs:
        op.create_index("ix_transactions_tx_hash", "transactions", ["tx_hash"])


def downgrade() -> None:
    op.drop_table("transactions")
    op.drop_table("rewards")
    op.drop_table("registrations")
    op.drop_table("activities")
    op.drop_table("users")
