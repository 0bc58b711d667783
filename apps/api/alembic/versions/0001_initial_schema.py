"""Initial schema - users, tickets, chat, viewers and notifications

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-17

Portable column types only, so the same migration runs on PostgreSQL and
SQLite. Append-only logs (status history, messages) use integer identity
keys so ids follow commit order.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001_initial_schema'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

SequenceId = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def _timestamp(name: str, nullable: bool = False, server_default: bool = True) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=nullable,
        server_default=sa.func.now() if server_default else None,
    )


def upgrade() -> None:
    """Create helpdesk tables."""

    # ==========================================================================
    # People
    # ==========================================================================
    op.create_table(
        'departments',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(120), nullable=False),
        _timestamp('created_at'),
        sa.PrimaryKeyConstraint('id', name='pk_departments'),
        sa.UniqueConstraint('name', name='uq_departments_name'),
    )

    op.create_table(
        'users',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('full_name', sa.String(255), nullable=False),
        sa.Column('avatar_url', sa.String(500), nullable=True),
        sa.Column('role', sa.String(30), nullable=False, server_default='support_user'),
        sa.Column('department_id', sa.Uuid(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('token_version', sa.Integer(), nullable=False, server_default='1'),
        _timestamp('created_at'),
        sa.PrimaryKeyConstraint('id', name='pk_users'),
        sa.UniqueConstraint('email', name='uq_users_email'),
        sa.ForeignKeyConstraint(
            ['department_id'], ['departments.id'],
            name='fk_users_department_id_departments', ondelete='SET NULL',
        ),
    )

    # ==========================================================================
    # Tickets
    # ==========================================================================
    op.create_table(
        'tickets',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('number', sa.Integer(), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='open'),
        sa.Column('priority', sa.String(20), nullable=False, server_default='medium'),
        sa.Column('created_by', sa.Uuid(), nullable=True),
        sa.Column('assigned_to', sa.Uuid(), nullable=True),
        sa.Column('department_id', sa.Uuid(), nullable=True),
        _timestamp('created_at'),
        _timestamp('updated_at'),
        _timestamp('resolved_at', nullable=True, server_default=False),
        _timestamp('closed_at', nullable=True, server_default=False),
        sa.PrimaryKeyConstraint('id', name='pk_tickets'),
        sa.UniqueConstraint('number', name='uq_tickets_number'),
        sa.ForeignKeyConstraint(
            ['created_by'], ['users.id'],
            name='fk_tickets_created_by_users', ondelete='SET NULL',
        ),
        sa.ForeignKeyConstraint(
            ['assigned_to'], ['users.id'],
            name='fk_tickets_assigned_to_users', ondelete='SET NULL',
        ),
        sa.ForeignKeyConstraint(
            ['department_id'], ['departments.id'],
            name='fk_tickets_department_id_departments', ondelete='SET NULL',
        ),
    )
    op.create_index('idx_tickets_status', 'tickets', ['status', 'updated_at'])
    op.create_index('idx_tickets_assignee', 'tickets', ['assigned_to', 'status'])
    op.create_index('idx_tickets_creator', 'tickets', ['created_by', 'created_at'])

    op.create_table(
        'ticket_status_history',
        sa.Column('id', SequenceId, nullable=False, autoincrement=True),
        sa.Column('ticket_id', sa.Uuid(), nullable=False),
        sa.Column('old_status', sa.String(20), nullable=True),
        sa.Column('new_status', sa.String(20), nullable=False),
        sa.Column('changed_by', sa.Uuid(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        _timestamp('created_at'),
        sa.PrimaryKeyConstraint('id', name='pk_ticket_status_history'),
        sa.ForeignKeyConstraint(
            ['ticket_id'], ['tickets.id'],
            name='fk_ticket_status_history_ticket_id_tickets', ondelete='CASCADE',
        ),
        sa.ForeignKeyConstraint(
            ['changed_by'], ['users.id'],
            name='fk_ticket_status_history_changed_by_users', ondelete='SET NULL',
        ),
    )
    op.create_index('idx_ticket_history_ticket', 'ticket_status_history', ['ticket_id', 'id'])

    # ==========================================================================
    # Chat
    # ==========================================================================
    op.create_table(
        'ticket_messages',
        sa.Column('id', SequenceId, nullable=False, autoincrement=True),
        sa.Column('ticket_id', sa.Uuid(), nullable=False),
        sa.Column('sender_id', sa.Uuid(), nullable=True),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('is_system_message', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('voice_note_ref', sa.String(500), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='sent'),
        _timestamp('created_at'),
        _timestamp('delivered_at', nullable=True, server_default=False),
        _timestamp('read_at', nullable=True, server_default=False),
        sa.PrimaryKeyConstraint('id', name='pk_ticket_messages'),
        sa.ForeignKeyConstraint(
            ['ticket_id'], ['tickets.id'],
            name='fk_ticket_messages_ticket_id_tickets', ondelete='CASCADE',
        ),
        sa.ForeignKeyConstraint(
            ['sender_id'], ['users.id'],
            name='fk_ticket_messages_sender_id_users', ondelete='SET NULL',
        ),
    )
    op.create_index('idx_ticket_messages_ticket', 'ticket_messages', ['ticket_id', 'created_at'])
    op.create_index('idx_ticket_messages_unread', 'ticket_messages', ['ticket_id', 'status'])

    op.create_table(
        'ticket_attachments',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('ticket_id', sa.Uuid(), nullable=False),
        sa.Column('message_id', SequenceId, nullable=True),
        sa.Column('file_name', sa.String(255), nullable=False),
        sa.Column('file_path', sa.String(500), nullable=False),
        sa.Column('file_size', sa.BigInteger(), nullable=False),
        sa.Column('file_type', sa.String(120), nullable=False),
        sa.Column('uploaded_by', sa.Uuid(), nullable=True),
        _timestamp('created_at'),
        sa.PrimaryKeyConstraint('id', name='pk_ticket_attachments'),
        sa.ForeignKeyConstraint(
            ['ticket_id'], ['tickets.id'],
            name='fk_ticket_attachments_ticket_id_tickets', ondelete='CASCADE',
        ),
        sa.ForeignKeyConstraint(
            ['message_id'], ['ticket_messages.id'],
            name='fk_ticket_attachments_message_id_ticket_messages', ondelete='SET NULL',
        ),
        sa.ForeignKeyConstraint(
            ['uploaded_by'], ['users.id'],
            name='fk_ticket_attachments_uploaded_by_users', ondelete='SET NULL',
        ),
    )
    op.create_index(
        'idx_ticket_attachments_ticket', 'ticket_attachments', ['ticket_id', 'created_at']
    )

    # ==========================================================================
    # Viewers and surveys
    # ==========================================================================
    op.create_table(
        'ticket_viewers',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('ticket_id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        _timestamp('last_seen', server_default=False),
        sa.PrimaryKeyConstraint('id', name='pk_ticket_viewers'),
        sa.UniqueConstraint('ticket_id', 'user_id', name='uq_ticket_viewers_ticket_id_user_id'),
        sa.ForeignKeyConstraint(
            ['ticket_id'], ['tickets.id'],
            name='fk_ticket_viewers_ticket_id_tickets', ondelete='CASCADE',
        ),
        sa.ForeignKeyConstraint(
            ['user_id'], ['users.id'],
            name='fk_ticket_viewers_user_id_users', ondelete='CASCADE',
        ),
    )
    op.create_index('idx_ticket_viewers_seen', 'ticket_viewers', ['ticket_id', 'last_seen'])

    op.create_table(
        'satisfaction_surveys',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('ticket_id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('rating', sa.SmallInteger(), nullable=False),
        sa.Column('comment', sa.Text(), nullable=True),
        _timestamp('created_at'),
        sa.PrimaryKeyConstraint('id', name='pk_satisfaction_surveys'),
        sa.UniqueConstraint(
            'ticket_id', 'user_id', name='uq_satisfaction_surveys_ticket_id_user_id'
        ),
        sa.ForeignKeyConstraint(
            ['ticket_id'], ['tickets.id'],
            name='fk_satisfaction_surveys_ticket_id_tickets', ondelete='CASCADE',
        ),
        sa.ForeignKeyConstraint(
            ['user_id'], ['users.id'],
            name='fk_satisfaction_surveys_user_id_users', ondelete='CASCADE',
        ),
    )

    # ==========================================================================
    # Notifications
    # ==========================================================================
    op.create_table(
        'notifications',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('type', sa.String(20), nullable=False, server_default='info'),
        sa.Column('ticket_id', sa.Uuid(), nullable=True),
        sa.Column('is_read', sa.Boolean(), nullable=False, server_default=sa.false()),
        _timestamp('created_at'),
        sa.PrimaryKeyConstraint('id', name='pk_notifications'),
        sa.ForeignKeyConstraint(
            ['user_id'], ['users.id'],
            name='fk_notifications_user_id_users', ondelete='CASCADE',
        ),
        sa.ForeignKeyConstraint(
            ['ticket_id'], ['tickets.id'],
            name='fk_notifications_ticket_id_tickets', ondelete='CASCADE',
        ),
    )
    op.create_index(
        'idx_notif_user_unread', 'notifications', ['user_id', 'is_read', 'created_at']
    )


def downgrade() -> None:
    """Drop helpdesk tables."""
    op.drop_table('notifications')
    op.drop_table('satisfaction_surveys')
    op.drop_table('ticket_viewers')
    op.drop_table('ticket_attachments')
    op.drop_table('ticket_messages')
    op.drop_table('ticket_status_history')
    op.drop_table('tickets')
    op.drop_table('users')
    op.drop_table('departments')
