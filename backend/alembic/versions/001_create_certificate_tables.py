"""Create certificate, verification log and audit log tables

Revision ID: 001
Revises: None
Create Date: 2026-10-19 00:00:00.000000+00:00

What:  Initial schema: certificates plus the two append-only logs.
How:   Generic column types so the revision matches certverify/models
       on PostgreSQL; UUIDs are generated by the application.

Rollback: downgrade() drops all three tables (destructive).
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "certificates",
        sa.Column("id", sa.Uuid(), nullable=False),
        # Public code printed on the certificate; unique constraint backs the collision retry
        sa.Column(
            "certificate_id",
            sa.String(50),
            nullable=False,
            comment="Public certificate code, e.g. CERT-7K2M9QXA",
        ),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("recipient_id", sa.String(64), nullable=False),
        sa.Column("issuer_id", sa.String(64), nullable=False),
        sa.Column("template_id", sa.String(64), nullable=False),
        # ACTIVE | REVOKED; EXPIRED is derived from expiry_date at read time
        sa.Column(
            "status",
            sa.String(16),
            nullable=False,
            server_default=sa.text("'ACTIVE'"),
            comment="Stored lifecycle state: ACTIVE or REVOKED",
        ),
        sa.Column("issue_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expiry_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("hash", sa.String(64), nullable=False, comment="SHA-256 of the canonical payload"),
        sa.Column("signature", sa.String(64), nullable=False, comment="HMAC-SHA256 of the hash"),
        sa.Column("revocation_reason", sa.Text(), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_by", sa.String(64), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("certificate_id"),
    )
    # Listing is scoped by recipient (students) and issuer (staff)
    op.create_index("idx_certificates_recipient", "certificates", ["recipient_id"])
    op.create_index("idx_certificates_issuer", "certificates", ["issuer_id"])
    op.create_index("idx_certificates_status", "certificates", ["status"])

    op.create_table(
        "verification_logs",
        sa.Column("id", sa.Uuid(), nullable=False),
        # Kept even when no certificate matched the supplied code
        sa.Column("certificate_code", sa.String(50), nullable=False),
        sa.Column("certificate_pk", sa.Uuid(), nullable=True),
        sa.Column("caller_ip", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.String(512), nullable=True),
        sa.Column("is_valid", sa.Boolean(), nullable=False),
        sa.Column("reason", sa.String(32), nullable=True),
        sa.Column(
            "verified_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(["certificate_pk"], ["certificates.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    # "Last 10 verifications" on the certificate detail view
    op.create_index(
        "idx_verification_logs_certificate",
        "verification_logs",
        ["certificate_pk", "verified_at"],
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("action", sa.String(16), nullable=False),
        sa.Column("entity_type", sa.String(32), nullable=False),
        sa.Column("entity_id", sa.String(64), nullable=False),
        sa.Column("actor_id", sa.String(64), nullable=False),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_audit_logs_entity", "audit_logs", ["entity_type", "entity_id"])


def downgrade() -> None:
    """Drops all three tables. Audit history is lost; take a dump first."""
    op.drop_index("idx_audit_logs_entity", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("idx_verification_logs_certificate", table_name="verification_logs")
    op.drop_table("verification_logs")
    op.drop_index("idx_certificates_status", table_name="certificates")
    op.drop_index("idx_certificates_issuer", table_name="certificates")
    op.drop_index("idx_certificates_recipient", table_name="certificates")
    op.drop_table("certificates")
