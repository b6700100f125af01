"""Create chat thread/participant/message tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "chat_threads",
        sa.Column("thread_id", sa.String(length=64), nullable=False),
        sa.Column("subject_ref", sa.String(length=128), nullable=True),
        sa.Column("pair_key", sa.String(length=400), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("unlocked_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("thread_id"),
        sa.UniqueConstraint("pair_key"),
    )
    op.create_index("ix_chat_threads_subject_ref", "chat_threads", ["subject_ref"], unique=False)

    op.create_table(
        "chat_participants",
        sa.Column("participant_id", sa.Integer(), nullable=False, autoincrement=True),
        sa.Column("thread_id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.ForeignKeyConstraint(["thread_id"], ["chat_threads.thread_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("participant_id"),
        sa.UniqueConstraint("thread_id", "user_id", name="uq_chat_participants_thread_user"),
    )
    op.create_index("ix_chat_participants_thread_id", "chat_participants", ["thread_id"], unique=False)
    op.create_index("ix_chat_participants_user_id", "chat_participants", ["user_id"], unique=False)

    op.create_table(
        "chat_messages",
        sa.Column("sequence", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), nullable=False, autoincrement=True),
        sa.Column("message_id", sa.String(length=64), nullable=False),
        sa.Column("thread_id", sa.String(length=64), nullable=False),
        sa.Column("sender_id", sa.String(length=128), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["thread_id"], ["chat_threads.thread_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("sequence"),
        sa.UniqueConstraint("message_id"),
    )
    op.create_index(
        "ix_chat_messages_thread_order",
        "chat_messages",
        ["thread_id", "sent_at", "sequence"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_chat_messages_thread_order", table_name="chat_messages")
    op.drop_table("chat_messages")

    op.drop_index("ix_chat_participants_user_id", table_name="chat_participants")
    op.drop_index("ix_chat_participants_thread_id", table_name="chat_participants")
    op.drop_table("chat_participants")

    op.drop_index("ix_chat_threads_subject_ref", table_name="chat_threads")
    op.drop_table("chat_threads")
