"""create workforce employee and allocation tables

Revision ID: 202610190003
Revises: 202610190002
Create Date: 2026-10-19 00:03:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190003"
down_revision: str | None = "202610190002"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "workforce_employee",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("user_id", sa.String(length=64), nullable=True),
        sa.Column("capacity_hours_per_week", sa.Numeric(5, 2), nullable=False, server_default="40"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_workforce_employee_tenant_id"), "workforce_employee", ["tenant_id"], unique=False)

    op.create_table(
        "workforce_employee_allocation",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("employee_id", sa.Uuid(), nullable=False),
        sa.Column("target_type", sa.String(length=16), nullable=False),
        sa.Column("target_id", sa.Uuid(), nullable=False),
        sa.Column("allocation_percentage", sa.Numeric(5, 2), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=True),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("target_type IN ('project', 'task')", name="ck_workforce_allocation_target_type"),
        sa.ForeignKeyConstraint(["employee_id"], ["workforce_employee.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_workforce_allocation_employee_dates",
        "workforce_employee_allocation",
        ["employee_id", "start_date", "end_date"],
        unique=False,
    )
    op.create_index(
        "ix_workforce_allocation_target",
        "workforce_employee_allocation",
        ["target_type", "target_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_workforce_allocation_target", table_name="workforce_employee_allocation")
    op.drop_index("ix_workforce_allocation_employee_dates", table_name="workforce_employee_allocation")
    op.drop_table("workforce_employee_allocation")
    op.drop_index(op.f("ix_workforce_employee_tenant_id"), table_name="workforce_employee")
    op.drop_table("workforce_employee")
