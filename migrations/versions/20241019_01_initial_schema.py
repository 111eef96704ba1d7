"""Initial schema for voters, polls, candidates and ballots."""
from __future__ import annotations

from collections.abc import Iterable

import sqlalchemy as sa
from alembic import op

revision = "20241019_01"
down_revision = None
branch_labels = None
depends_on: Iterable[str] | None = None


def _drop_enum(name: str) -> None:
    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        op.execute(sa.text(f"DROP TYPE IF EXISTS {name}"))


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:  # noqa: D401
    """Create voting tables and constraints."""

    poll_status = sa.Enum("ACTIVE", "CLOSED", name="poll_status")
    ballot_state = sa.Enum(
        "NOT_CAST",
        "PENDING_PAYMENT",
        "PENDING_APPROVAL",
        "APPROVED",
        "REJECTED",
        name="ballot_state",
    )

    op.create_table(
        "voters",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("display_id", sa.String(length=64), nullable=False),
        sa.Column("hashed_password", sa.String(length=255), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("email", name="uq_voters_email"),
    )

    op.create_table(
        "admins",
        sa.Column("voter_id", sa.String(length=36), primary_key=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["voter_id"], ["voters.id"], ondelete="CASCADE"),
    )

    op.create_table(
        "polls",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("status", poll_status, nullable=False, server_default="ACTIVE"),
        sa.Column("created_by", sa.String(length=36)),
        *_timestamps(),
        sa.ForeignKeyConstraint(["created_by"], ["voters.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_polls_status", "polls", ["status"])

    op.create_table(
        "candidates",
        sa.Column("poll_id", sa.String(length=36), primary_key=True),
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("image_url", sa.String(length=2048), nullable=False),
        sa.Column("image_path", sa.String(length=1024), nullable=False),
        sa.Column("approved_votes", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.ForeignKeyConstraint(["poll_id"], ["polls.id"], ondelete="CASCADE"),
        sa.CheckConstraint("approved_votes >= 0", name="ck_candidates_approved_votes_non_negative"),
    )
    op.create_index("ix_candidates_poll_id", "candidates", ["poll_id"])

    op.create_table(
        "ballots",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("voter_id", sa.String(length=36), nullable=False),
        sa.Column("poll_id", sa.String(length=36), nullable=False),
        sa.Column("candidate_id", sa.String(length=64), nullable=False),
        sa.Column("state", ballot_state, nullable=False, server_default="PENDING_PAYMENT"),
        sa.Column("cast_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("proof_url", sa.String(length=2048)),
        sa.Column("proof_path", sa.String(length=1024)),
        sa.Column("reviewed_by", sa.String(length=36)),
        *_timestamps(),
        sa.ForeignKeyConstraint(["voter_id"], ["voters.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["poll_id"], ["polls.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(
            ["poll_id", "candidate_id"],
            ["candidates.poll_id", "candidates.id"],
            ondelete="CASCADE",
            name="fk_ballots_candidate",
        ),
        sa.UniqueConstraint("voter_id", "poll_id", name="uq_ballots_voter_poll"),
    )
    op.create_index("ix_ballots_state_cast_at", "ballots", ["state", "cast_at"])
    op.create_index("ix_ballots_poll_id", "ballots", ["poll_id"])


def downgrade() -> None:  # noqa: D401
    """Drop all voting tables."""

    op.drop_index("ix_ballots_poll_id", table_name="ballots")
    op.drop_index("ix_ballots_state_cast_at", table_name="ballots")
    op.drop_table("ballots")

    op.drop_index("ix_candidates_poll_id", table_name="candidates")
    op.drop_table("candidates")

    op.drop_index("ix_polls_status", table_name="polls")
    op.drop_table("polls")

    op.drop_table("admins")
    op.drop_table("voters")

    for enum_name in ["ballot_state", "poll_status"]:
        _drop_enum(enum_name)
