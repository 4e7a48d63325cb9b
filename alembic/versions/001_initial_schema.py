"""Initial schema

Revision ID: 001
Revises: 
Create Date: 2026-10-17 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table('likes',
                    sa.Column('id', sa.Integer(), nullable=False),
                    sa.Column('liker_id', sa.String(length=64), nullable=False),
                    sa.Column('liked_id', sa.String(length=64), nullable=False),
                    sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
                    sa.PrimaryKeyConstraint('id'),
                    sa.UniqueConstraint('liker_id', 'liked_id', name='uq_like_pair'),
                    sa.CheckConstraint('liker_id <> liked_id', name='ck_like_not_self'),
                    )
    op.create_index(op.f('ix_likes_id'), 'likes', ['id'], unique=False)
    op.create_index(op.f('ix_likes_liker_id'), 'likes', ['liker_id'], unique=False)
    op.create_index(op.f('ix_likes_liked_id'), 'likes', ['liked_id'], unique=False)

    # One row per unordered pair: user_a sorts before user_b
    op.create_table('matches',
                    sa.Column('id', sa.Integer(), nullable=False),
                    sa.Column('user_a', sa.String(length=64), nullable=False),
                    sa.Column('user_b', sa.String(length=64), nullable=False),
                    sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
                    sa.PrimaryKeyConstraint('id'),
                    sa.UniqueConstraint('user_a', 'user_b', name='uq_match_pair'),
                    sa.CheckConstraint('user_a < user_b', name='ck_match_pair_order'),
                    )
    op.create_index(op.f('ix_matches_id'), 'matches', ['id'], unique=False)
    op.create_index(op.f('ix_matches_user_a'), 'matches', ['user_a'], unique=False)
    op.create_index(op.f('ix_matches_user_b'), 'matches', ['user_b'], unique=False)

    op.create_table('messages',
                    sa.Column('id', sa.Integer(), nullable=False),
                    sa.Column('match_id', sa.Integer(), nullable=False),
                    sa.Column('sender_id', sa.String(length=64), nullable=False),
                    sa.Column('body', sa.Text(), nullable=False),
                    sa.Column('client_key', sa.String(length=64), nullable=True),
                    sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
                    sa.ForeignKeyConstraint(['match_id'], ['matches.id'], ),
                    sa.PrimaryKeyConstraint('id'),
                    sa.UniqueConstraint('match_id', 'sender_id', 'client_key',
                                        name='uq_message_client_key'),
                    )
    op.create_index(op.f('ix_messages_id'), 'messages', ['id'], unique=False)
    op.create_index(op.f('ix_messages_match_id'), 'messages', ['match_id'], unique=False)
    op.create_index(op.f('ix_messages_sender_id'), 'messages', ['sender_id'], unique=False)
    op.create_index('ix_messages_match_order', 'messages',
                    ['match_id', 'created_at', 'id'], unique=False)

    op.create_table('read_watermarks',
                    sa.Column('id', sa.Integer(), nullable=False),
                    sa.Column('user_id', sa.String(length=64), nullable=False),
                    sa.Column('match_id', sa.Integer(), nullable=False),
                    sa.Column('last_read_at', sa.DateTime(timezone=True), nullable=False),
                    sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
                    sa.ForeignKeyConstraint(['match_id'], ['matches.id'], ),
                    sa.PrimaryKeyConstraint('id'),
                    sa.UniqueConstraint('user_id', 'match_id', name='uq_read_watermark'),
                    )
    op.create_index(op.f('ix_read_watermarks_id'), 'read_watermarks', ['id'], unique=False)
    op.create_index(op.f('ix_read_watermarks_user_id'), 'read_watermarks', ['user_id'], unique=False)
    op.create_index(op.f('ix_read_watermarks_match_id'), 'read_watermarks', ['match_id'], unique=False)


def downgrade() -> None:
    op.drop_index(op.f('ix_read_watermarks_match_id'), table_name='read_watermarks')
    op.drop_index(op.f('ix_read_watermarks_user_id'), table_name='read_watermarks')
    op.drop_index(op.f('ix_read_watermarks_id'), table_name='read_watermarks')
    op.drop_table('read_watermarks')
    op.drop_index('ix_messages_match_order', table_name='messages')
    op.drop_index(op.f('ix_messages_sender_id'), table_name='messages')
    op.drop_index(op.f('ix_messages_match_id'), table_name='messages')
    op.drop_index(op.f('ix_messages_id'), table_name='messages')
    op.drop_table('messages')
    op.drop_index(op.f('ix_matches_user_b'), table_name='matches')
    op.drop_index(op.f('ix_matches_user_a'), table_name='matches')
    op.drop_index(op.f('ix_matches_id'), table_name='matches')
    op.drop_table('matches')
    op.drop_index(op.f('ix_likes_liked_id'), table_name='likes')
    op.drop_index(op.f('ix_likes_liker_id'), table_name='likes')
    op.drop_index(op.f('ix_likes_id'), table_name='likes')
    op.drop_table('likes')
