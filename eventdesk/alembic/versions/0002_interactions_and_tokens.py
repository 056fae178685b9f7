"""Add registration tokens, event tags and attendee interactions."""

from __future__ import annotations

import secrets

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0002_interactions"
down_revision = "0001_initial"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute("DROP TABLE IF EXISTS _alembic_tmp_registrations")
    with op.batch_alter_table("registrations") as batch_op:
        batch_op.add_column(
            sa.Column("registration_token", sa.String(length=64), nullable=True)
        )

    bind = op.get_bind()
    registrations = sa.table(
        "registrations",
        sa.column("id", sa.String),
        sa.column("registration_token", sa.String),
    )
    for (registration_id,) in bind.execute(sa.select(registrations.c.id)).all():
        bind.execute(
            registrations.update()
            .where(registrations.c.id == registration_id)
            .values(registration_token=secrets.token_urlsafe(32))
        )

    with op.batch_alter_table("registrations") as batch_op:
        batch_op.alter_column(
            "registration_token", existing_type=sa.String(length=64), nullable=False
        )
        batch_op.create_index(
            "ix_registrations_registration_token", ["registration_token"], unique=True
        )

    op.create_table(
        "event_tags",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("event_id", sa.String(length=36), nullable=False),
        sa.Column("tag", sa.String(length=50), nullable=False),
        sa.ForeignKeyConstraint(["event_id"], ["events.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("event_id", "tag", name="uq_event_tags_event_tag"),
    )
    op.create_index("ix_event_tags_tag", "event_tags", ["tag"])

    op.create_table(
        "interactions",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("event_id", sa.String(length=36), nullable=False),
        sa.Column("participant_id", sa.String(length=36), nullable=True),
        sa.Column("user_id", sa.String(length=64), nullable=True),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("content", sa.Text(), nullable=True),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.String(length=255), nullable=True),
        sa.Column(
            "is_moderated",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column("moderated_by", sa.String(length=64), nullable=True),
        sa.Column("moderated_at", sa.DateTime(), nullable=True),
        sa.Column("moderation_reason", sa.String(length=200), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("last_modified", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["event_id"], ["events.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["participant_id"], ["participants.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_interactions_participant_id", "interactions", ["participant_id"]
    )
    op.create_index("ix_interactions_user_id", "interactions", ["user_id"])
    op.create_index("ix_interactions_event_type", "interactions", ["event_id", "type"])
    op.create_index(
        "ix_interactions_event_created", "interactions", ["event_id", "created_at"]
    )
    op.create_index(
        "ix_interactions_event_moderated",
        "interactions",
        ["event_id", "is_moderated"],
    )


def downgrade() -> None:
    op.drop_table("interactions")
    op.drop_table("event_tags")
    with op.batch_alter_table("registrations") as batch_op:
        batch_op.drop_index("ix_registrations_registration_token")
        batch_op.drop_column("registration_token")
