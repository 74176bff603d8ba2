"""projects and rollouts

Revision ID: 0001
Revises:
Create Date: 2026-10-19 09:00:00
"""
from alembic import op
import sqlalchemy as sa

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "projects",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_projects_id", "projects", ["id"])

    op.create_table(
        "rollouts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("project_id", sa.Integer(), sa.ForeignKey("projects.id"), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("image", sa.String(length=512), nullable=False),
        sa.Column("tag", sa.String(length=128), nullable=False),
        sa.Column("digest", sa.String(length=71), nullable=True),
        sa.Column("replicas", sa.Integer(), nullable=False),
        sa.Column("env", sa.JSON(), nullable=False),
        sa.Column("secrets", sa.JSON(), nullable=False),
        sa.Column("ports", sa.JSON(), nullable=False),
        sa.Column("resources", sa.JSON(), nullable=False),
        sa.Column("auto_update", sa.Boolean(), nullable=False),
        sa.Column("auto_update_policy", sa.String(length=20), nullable=False),
        sa.Column("auto_update_pattern", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_rollouts_id", "rollouts", ["id"])
    op.create_index("ix_rollouts_project_id", "rollouts", ["project_id"])
    op.create_index("ix_rollouts_auto_update", "rollouts", ["auto_update"])


def downgrade() -> None:
    op.drop_index("ix_rollouts_auto_update", table_name="rollouts")
    op.drop_index("ix_rollouts_project_id", table_name="rollouts")
    op.drop_index("ix_rollouts_id", table_name="rollouts")
    op.drop_table("rollouts")
    op.drop_index("ix_projects_id", table_name="projects")
    op.drop_table("projects")
