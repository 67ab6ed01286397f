"""mint batches and ledger batch reference

Revision ID: 0002_mint_batches
Revises: 0001_init
Create Date: 2026-09-16
"""

from alembic import op
import sqlalchemy as sa


revision = "0002_mint_batches"
down_revision = "0001_init"
branch_labels = None
depends_on = None


def upgrade() -> None:
    from sqlalchemy import inspect as sa_inspect
    inspector = sa_inspect(op.get_bind())
    existing_tables = set(inspector.get_table_names())

    if "mint_batches" not in existing_tables:
        op.create_table(
            "mint_batches",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("idempotency_key", sa.String(), nullable=False),
            sa.Column("activity_id", sa.Integer(), nullable=False),
            sa.Column("user_ids", sa.JSON(), nullable=False),
            sa.Column("amount_per_account", sa.Integer(), nullable=False),
            sa.Column("note", sa.String(), nullable=True),
            sa.Column("status", sa.String(), nullable=False),
            sa.Column("tx_hash", sa.String(), nullable=True),
            sa.Column("error", sa.Text(), nullable=True),
            sa.Column("attempts", sa.Integer(), nullable=True),
            sa.Column("created_by", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
        )
        op.create_index("ix_mint_batches_id", "mint_batches", ["id"])
        op.create_index("ix_mint_batches_idempotency_key", "mint_batches", ["idempotency_key"], unique=True)
        op.create_index("ix_mint_batches_activity_id", "mint_batches", ["activity_id"])
        op.create_index("ix_mint_batches_status", "mint_batches", ["status"])
        op.create_index("ix_mint_batches_tx_hash", "mint_batches", ["tx_hash"])
        op.create_index("ix_mint_batches_created_by", "mint_batches", ["created_by"])

    existing_cols = {col["name"] for col in inspector.get_columns("transactions")}
    existing_idxs = {idx["name"] for idx in inspector.get_indexes("transactions")}
    existing_uqs = {uq["name"] for uq in inspector.get_unique_constraints("transactions")}

    with op.batch_alter_table("transactions") as batch_op:
        if "mint_batch_id" not in existing_cols:
            batch_op.add_column(sa.Column("mint_batch_id", sa.Integer(), nullable=True))
        if "ix_transactions_mint_batch_id" not in existing_idxs:
            batch_op.create_index("ix_transactions_mint_batch_id", ["mint_batch_id"])
        if "uq_transactions_batch_user" not in existing_uqs:
            batch_op.create_unique_constraint("uq_transactions_batch_user", ["mint_batch_id", "user_id"])


def downgrade() -> None:
    with op.batch_alter_table("transactions") as batch_op:
        batch_op.drop_constraint("uq_transactions_batch_user", type_="unique")
        batch_op.drop_index("ix_transactions_mint_batch_id")
        batch_op.drop_column("mint_batch_id")

    op.drop_table("mint_batches")
