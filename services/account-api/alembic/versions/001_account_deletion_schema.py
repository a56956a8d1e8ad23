"""account_deletion_schema

Revision ID: 001_account_deletion
Revises:
Create Date: 2026-10-18 09:12:31.000000

"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "001_account_deletion"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Document store
    op.create_table(
        "documents",
        sa.Column("path", sa.String(length=1024), nullable=False),
        sa.Column("collection", sa.String(length=128), nullable=False),
        sa.Column("parent_path", sa.String(length=1024), nullable=False),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("path"),
    )
    op.create_index(
        op.f("ix_documents_parent_path"), "documents", ["parent_path"], unique=False
    )
    op.create_index(
        "ix_documents_collection_path",
        "documents",
        ["collection", "path"],
        unique=False,
    )

    # Authentication identities
    op.create_table(
        "identities",
        sa.Column("uid", sa.String(length=128), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("provider", sa.String(length=50), nullable=False),
        sa.Column("provider_subject", sa.String(length=255), nullable=True),
        sa.Column("display_name", sa.String(length=255), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.Column("last_sign_in_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sessions_revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("uid"),
    )
    op.create_index(op.f("ix_identities_email"), "identities", ["email"], unique=True)
    op.create_index(
        op.f("ix_identities_provider_subject"),
        "identities",
        ["provider_subject"],
        unique=False,
    )

    # Account deletion jobs (kept after completion as audit records)
    op.create_table(
        "deletion_jobs",
        sa.Column("owner_id", sa.String(length=128), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False),
        sa.Column("worker_id", sa.String(length=255), nullable=True),
        sa.Column("lease_token", sa.String(length=64), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_completed_phase", sa.Integer(), nullable=True),
        sa.Column("deleted_counts", sa.JSON(), nullable=False),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("owner_id"),
    )
    op.create_index(
        op.f("ix_deletion_jobs_status"), "deletion_jobs", ["status"], unique=False
    )
    op.create_index(
        op.f("ix_deletion_jobs_lease_expires_at"),
        "deletion_jobs",
        ["lease_expires_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index(
        op.f("ix_deletion_jobs_lease_expires_at"), table_name="deletion_jobs"
    )
    op.drop_index(op.f("ix_deletion_jobs_status"), table_name="deletion_jobs")
    op.drop_table("deletion_jobs")
    op.drop_index(op.f("ix_identities_provider_subject"), table_name="identities")
    op.drop_index(op.f("ix_identities_email"), table_name="identities")
    op.drop_table("identities")
    op.drop_index("ix_documents_collection_path", table_name="documents")
    op.drop_index(op.f("ix_documents_parent_path"), table_name="documents")
    op.drop_table("documents")
