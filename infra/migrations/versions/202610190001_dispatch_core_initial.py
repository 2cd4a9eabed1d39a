"""dispatch core tables

Revision ID: 202610190001
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "202610190001"
down_revision = None
branch_labels = None
depends_on = None

TASK_TABLES = ("delivery_orders", "repair_orders")
TASK_INDEXED_COLUMNS = ("tenant_id", "restaurant_id", "status", "assigned_worker_id", "created_at", "updated_at")


def _task_columns() -> list[sa.Column]:
    return [
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("restaurant_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("assigned_worker_id", sa.String(), nullable=True),
        sa.Column("context_data", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    ]


def upgrade() -> None:
    op.create_table(
        "delivery_orders",
        *_task_columns(),
        sa.Column("product_type", sa.String(), nullable=True),
    )
    op.create_index("ix_delivery_orders_product_type", "delivery_orders", ["product_type"])

    op.create_table(
        "repair_orders",
        *_task_columns(),
        sa.Column("service_type", sa.String(), nullable=True),
    )
    op.create_index("ix_repair_orders_service_type", "repair_orders", ["service_type"])

    for table in TASK_TABLES:
        for column in TASK_INDEXED_COLUMNS:
            op.create_index(f"ix_{table}_{column}", table, [column])

    op.create_table(
        "workers",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("skills", sa.JSON(), nullable=False),
        sa.Column("product_types", sa.JSON(), nullable=False),
        sa.Column("location", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_workers_tenant_id", "workers", ["tenant_id"])
    op.create_index("ix_workers_status", "workers", ["status"])
    op.create_index("ix_workers_created_at", "workers", ["created_at"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("target_type", sa.String(), nullable=True),
        sa.Column("target_id", sa.String(), nullable=True),
        sa.Column("task_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_logs_tenant_id", "audit_logs", ["tenant_id"])
    op.create_index("ix_audit_logs_actor_id", "audit_logs", ["actor_id"])
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])
    op.create_index("ix_audit_logs_target_id", "audit_logs", ["target_id"])
    op.create_index("ix_audit_logs_task_id", "audit_logs", ["task_id"])
    op.create_index("ix_audit_logs_created_at", "audit_logs", ["created_at"])


def downgrade() -> None:
    for column in ("created_at", "task_id", "target_id", "action", "actor_id", "tenant_id"):
        op.drop_index(f"ix_audit_logs_{column}", table_name="audit_logs")
    op.drop_table("audit_logs")

    for column in ("created_at", "status", "tenant_id"):
        op.drop_index(f"ix_workers_{column}", table_name="workers")
    op.drop_table("workers")

    for table in TASK_TABLES:
        for column in TASK_INDEXED_COLUMNS:
            op.drop_index(f"ix_{table}_{column}", table_name=table)
    op.drop_index("ix_repair_orders_service_type", table_name="repair_orders")
    op.drop_table("repair_orders")
    op.drop_index("ix_delivery_orders_product_type", table_name="delivery_orders")
    op.drop_table("delivery_orders")
