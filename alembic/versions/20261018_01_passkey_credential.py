"""
Passkey credential table.

- One row per registered authenticator per user.
- Unique index on the base64url credential id.
- Composite (user_ref, revoked_at) index for "active credentials of a user".
"""

from alembic import op
import sqlalchemy as sa

# Revision identifiers, used by Alembic.
revision = "20261018_01_passkey_credential"
down_revision = None
branch_labels = None
depends_on = None

BigIntPK = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def upgrade() -> None:
    op.create_table(
        "passkey_credential",
        sa.Column("id", BigIntPK, primary_key=True, autoincrement=True),
        sa.Column("user_ref", sa.BigInteger(), nullable=False),
        sa.Column("credential_id", sa.String(length=1024), nullable=False),
        sa.Column("public_key", sa.LargeBinary(), nullable=False),
        sa.Column("algorithm", sa.Integer(), nullable=False),
        sa.Column("sign_count", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("user_handle", sa.String(length=128), nullable=False, server_default=""),
        sa.Column("aaguid", sa.String(length=36), nullable=False, server_default=""),
        sa.Column("transports", sa.String(length=255), nullable=True),
        sa.Column("label", sa.String(length=128), nullable=False, server_default="Passkey"),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_by", sa.BigInteger(), nullable=True),
        sa.Column("flagged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_passkey_credential")),
    )
    op.create_index(op.f("ix_passkey_credential_user_ref"), "passkey_credential", ["user_ref"], unique=False)
    op.create_index("uq_passkey_credential_credential_id", "passkey_credential", ["credential_id"], unique=True)
    op.create_index("ix_passkey_credential_user_active", "passkey_credential", ["user_ref", "revoked_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_passkey_credential_user_active", table_name="passkey_credential")
    op.drop_index("uq_passkey_credential_credential_id", table_name="passkey_credential")
    op.drop_index(op.f("ix_passkey_credential_user_ref"), table_name="passkey_credential")
    op.drop_table("passkey_credential")
