"""Label store baseline: labels, posts, profiles, blobs, profile blobs, failures, cursors."""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql


# Revision identifiers, used by Alembic.
revision = "0001_label_store"
down_revision = None
branch_labels = None
depends_on = None


JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _captured_at() -> sa.Column:
    return sa.Column("captured_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())


def upgrade() -> None:
    op.create_table(
        "labels",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("uri", sa.Text(), nullable=False),
        sa.Column("cid", sa.Text(), nullable=True),
        sa.Column("val", sa.String(length=128), nullable=False),
        sa.Column("neg", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("cts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("exp", sa.DateTime(timezone=True), nullable=True),
        sa.Column("src", sa.Text(), nullable=False),
        _captured_at(),
        sa.UniqueConstraint("uri", "val", "cts", name="ux_labels_uri_val_cts"),
    )
    op.create_index("ix_labels_uri", "labels", ["uri"])
    op.create_index("ix_labels_val", "labels", ["val"])
    op.create_index("ix_labels_cts", "labels", ["cts"])

    op.create_table(
        "posts",
        sa.Column("uri", sa.Text(), primary_key=True),
        sa.Column("did", sa.Text(), nullable=False),
        sa.Column("text", sa.Text(), nullable=True),
        sa.Column("facets", JSON_TYPE, nullable=True),
        sa.Column("embeds", JSON_TYPE, nullable=True),
        sa.Column("langs", JSON_TYPE, nullable=True),
        sa.Column("tags", JSON_TYPE, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_reply", sa.Boolean(), nullable=False, server_default=sa.false()),
        _captured_at(),
    )
    op.create_index("ix_posts_did", "posts", ["did"])

    op.create_table(
        "profiles",
        sa.Column("did", sa.Text(), primary_key=True),
        sa.Column("handle", sa.Text(), nullable=True),
        sa.Column("display_name", sa.Text(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("avatar_cid", sa.Text(), nullable=True),
        sa.Column("banner_cid", sa.Text(), nullable=True),
        sa.Column("hydration_passes", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        _captured_at(),
    )
    op.create_index("ix_profiles_handle", "profiles", ["handle"])

    for table, owner_columns, prefix in (
        (
            "blobs",
            [sa.Column("post_uri", sa.Text(), sa.ForeignKey("posts.uri", ondelete="CASCADE"), nullable=False)],
            "ix_blobs",
        ),
        (
            "profile_blobs",
            [
                sa.Column("did", sa.Text(), sa.ForeignKey("profiles.did", ondelete="CASCADE"), nullable=False),
                sa.Column("blob_type", sa.String(length=16), nullable=False),
            ],
            "ix_profile_blobs",
        ),
    ):
        key = [c.name for c in owner_columns] + ["blob_cid"]
        op.create_table(
            table,
            *owner_columns,
            sa.Column("blob_cid", sa.Text(), nullable=False),
            sa.Column("sha256", sa.String(length=64), nullable=False),
            sa.Column("sha256_scope", sa.String(length=16), nullable=False, server_default="full"),
            sa.Column("phash", sa.String(length=16), nullable=True),
            sa.Column("storage_path", sa.Text(), nullable=True),
            sa.Column("mimetype", sa.Text(), nullable=True),
            _captured_at(),
            sa.PrimaryKeyConstraint(*key, name=f"pk_{table}"),
        )
        op.create_index(f"{prefix}_cid", table, ["blob_cid"])
        op.create_index(f"{prefix}_sha256", table, ["sha256"])
        op.create_index(f"{prefix}_phash", table, ["phash"])

    op.create_table(
        "hydration_failures",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("kind", sa.String(length=16), nullable=False),
        sa.Column("subject", sa.Text(), nullable=False),
        sa.Column("identifier", sa.Text(), nullable=True),
        sa.Column("reason", sa.String(length=32), nullable=False),
        sa.Column("detail", sa.Text(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_hydration_failures_subject", "hydration_failures", ["subject"])

    op.create_table(
        "stream_cursors",
        sa.Column("endpoint", sa.Text(), primary_key=True),
        sa.Column("seq", sa.BigInteger(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("stream_cursors")
    op.drop_index("ix_hydration_failures_subject", table_name="hydration_failures")
    op.drop_table("hydration_failures")
    op.drop_table("profile_blobs")
    op.drop_table("blobs")
    op.drop_index("ix_profiles_handle", table_name="profiles")
    op.drop_table("profiles")
    op.drop_index("ix_posts_did", table_name="posts")
    op.drop_table("posts")
    op.drop_table("labels")
