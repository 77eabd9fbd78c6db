"""create check-in, follow, profile, address and processing log tables

Revision ID: 20261018_000001
Revises:
Create Date: 2026-10-18 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261018_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "checkins",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("uri", sa.String(), nullable=False),
        sa.Column("author_did", sa.String(), nullable=False),
        sa.Column("author_handle", sa.String(), nullable=True),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("created_at", sa.String(), nullable=False),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("address_ref_uri", sa.String(), nullable=True),
        sa.Column("address_ref_cid", sa.String(), nullable=True),
        sa.Column("cached_address_name", sa.String(), nullable=True),
        sa.Column("cached_address_street", sa.String(), nullable=True),
        sa.Column("cached_address_locality", sa.String(), nullable=True),
        sa.Column("cached_address_region", sa.String(), nullable=True),
        sa.Column("cached_address_country", sa.String(), nullable=True),
        sa.Column("cached_address_postal_code", sa.String(), nullable=True),
        sa.Column("cached_address_full", sa.JSON(), nullable=True),
        sa.Column("address_resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("indexed_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("uri"),
    )
    op.create_index(op.f("ix_checkins_author_did"), "checkins", ["author_did"], unique=False)
    op.create_index(op.f("ix_checkins_created_at"), "checkins", ["created_at"], unique=False)
    op.create_index("ix_checkins_location", "checkins", ["latitude", "longitude"], unique=False)

    op.create_table(
        "address_cache",
        sa.Column("uri", sa.String(), nullable=False),
        sa.Column("cid", sa.String(), nullable=True),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("street", sa.String(), nullable=True),
        sa.Column("locality", sa.String(), nullable=True),
        sa.Column("region", sa.String(), nullable=True),
        sa.Column("country", sa.String(), nullable=True),
        sa.Column("postal_code", sa.String(), nullable=True),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("full_data", sa.JSON(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("uri"),
    )

    op.create_table(
        "user_follows",
        sa.Column("follower_did", sa.String(), nullable=False),
        sa.Column("following_did", sa.String(), nullable=False),
        sa.Column("created_at", sa.String(), nullable=True),
        sa.Column("synced_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.PrimaryKeyConstraint("follower_did", "following_did"),
    )
    op.create_index(op.f("ix_user_follows_follower_did"), "user_follows", ["follower_did"], unique=False)

    op.create_table(
        "profile_cache",
        sa.Column("did", sa.String(), nullable=False),
        sa.Column("handle", sa.String(), nullable=True),
        sa.Column("display_name", sa.String(), nullable=True),
        sa.Column("avatar", sa.String(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("fetched_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.PrimaryKeyConstraint("did"),
    )
    op.create_index(op.f("ix_profile_cache_fetched_at"), "profile_cache", ["fetched_at"], unique=False)

    op.create_table(
        "processing_log",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("run_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("events_processed", sa.Integer(), nullable=False),
        sa.Column("stream_events", sa.Integer(), nullable=False),
        sa.Column("fallback_events", sa.Integer(), nullable=False),
        sa.Column("errors", sa.Integer(), nullable=False),
        sa.Column("duration_ms", sa.Integer(), nullable=False),
        sa.Column("cursor", sa.BigInteger(), nullable=True),
        sa.Column("error_messages", sa.JSON(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_processing_log_run_at"), "processing_log", ["run_at"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_processing_log_run_at"), table_name="processing_log")
    op.drop_table("processing_log")
    op.drop_index(op.f("ix_profile_cache_fetched_at"), table_name="profile_cache")
    op.drop_table("profile_cache")
    op.drop_index(op.f("ix_user_follows_follower_did"), table_name="user_follows")
    op.drop_table("user_follows")
    op.drop_table("address_cache")
    op.drop_index("ix_checkins_location", table_name="checkins")
    op.drop_index(op.f("ix_checkins_created_at"), table_name="checkins")
    op.drop_index(op.f("ix_checkins_author_did"), table_name="checkins")
    op.drop_table("checkins")
