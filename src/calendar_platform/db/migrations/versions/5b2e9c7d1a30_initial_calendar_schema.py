"""Initial calendar schema

Revision ID: 5b2e9c7d1a30
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '5b2e9c7d1a30'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


# Enum types are created once up front; columns never create them
context_type_enum = postgresql.ENUM(
    'PERSONAL', 'BUSINESS', 'HOUSEHOLD', name='context_type_enum', create_type=False
)
context_role_enum = postgresql.ENUM(
    'OWNER', 'ADMIN', 'MEMBER', 'VIEWER', name='context_role_enum', create_type=False
)
attendee_response_enum = postgresql.ENUM(
    'NEEDS_ACTION', 'ACCEPTED', 'DECLINED', 'TENTATIVE',
    name='attendee_response_enum',
    create_type=False,
)
reminder_method_enum = postgresql.ENUM(
    'APP', 'EMAIL', name='reminder_method_enum', create_type=False
)

ENUMS = (
    context_type_enum,
    context_role_enum,
    attendee_response_enum,
    reminder_method_enum,
)


def upgrade() -> None:
    bind = op.get_bind()
    for enum in ENUMS:
        enum.create(bind, checkfirst=True)

    op.create_table(
        'calendar_context_members',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('context_type', context_type_enum, nullable=False),
        sa.Column('context_id', sa.String(length=255), nullable=False),
        sa.Column('user_id', sa.String(length=255), nullable=False),
        sa.Column('role', context_role_enum, nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint(
            'context_type', 'context_id', 'user_id', name='uq_context_member'
        ),
    )
    op.create_index(
        'ix_context_member_user', 'calendar_context_members', ['user_id'], unique=False
    )

    op.create_table(
        'calendars',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('color', sa.String(length=32), nullable=True),
        sa.Column('context_type', context_type_enum, nullable=False),
        sa.Column('context_id', sa.String(length=255), nullable=False),
        sa.Column('is_primary', sa.Boolean(), server_default='false', nullable=False),
        sa.Column('is_system', sa.Boolean(), server_default='false', nullable=False),
        sa.Column('is_deletable', sa.Boolean(), server_default='true', nullable=False),
        sa.Column(
            'default_reminder_minutes', sa.Integer(), server_default='0', nullable=False
        ),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        'ix_calendar_context', 'calendars', ['context_type', 'context_id'], unique=False
    )

    op.create_table(
        'calendar_events',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('calendar_id', sa.String(length=64), nullable=False),
        sa.Column('title', sa.String(length=500), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('location', sa.String(length=1000), nullable=True),
        sa.Column('online_meeting_link', sa.String(length=1000), nullable=True),
        sa.Column('start_at', sa.DateTime(), nullable=False),
        sa.Column('end_at', sa.DateTime(), nullable=False),
        sa.Column('all_day', sa.Boolean(), server_default='false', nullable=False),
        sa.Column('timezone', sa.String(length=100), server_default='UTC', nullable=False),
        sa.Column('recurrence_rule', sa.String(length=500), nullable=True),
        sa.Column('recurrence_end_at', sa.DateTime(), nullable=True),
        sa.Column('parent_event_id', sa.String(length=64), nullable=True),
        sa.Column('occurrence_start_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled', sa.Boolean(), server_default='false', nullable=False),
        sa.Column('created_by_id', sa.String(length=255), nullable=True),
        sa.Column('version', sa.Integer(), server_default='1', nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['calendar_id'], ['calendars.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(
            ['parent_event_id'], ['calendar_events.id'], ondelete='CASCADE'
        ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint(
            'parent_event_id', 'occurrence_start_at', name='uq_event_occurrence'
        ),
    )
    op.create_index('ix_event_calendar', 'calendar_events', ['calendar_id'], unique=False)
    op.create_index('ix_event_start', 'calendar_events', ['start_at'], unique=False)
    op.create_index('ix_event_end', 'calendar_events', ['end_at'], unique=False)
    op.create_index('ix_event_parent', 'calendar_events', ['parent_event_id'], unique=False)

    op.create_table(
        'calendar_event_attendees',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('event_id', sa.String(length=64), nullable=False),
        sa.Column('user_id', sa.String(length=255), nullable=True),
        sa.Column('email', sa.String(length=320), nullable=True),
        sa.Column('response', attendee_response_enum, nullable=False),
        sa.Column('responded_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['event_id'], ['calendar_events.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('event_id', 'user_id', name='uq_event_attendee_user'),
        sa.UniqueConstraint('event_id', 'email', name='uq_event_attendee_email'),
    )
    op.create_index(
        'ix_attendee_event', 'calendar_event_attendees', ['event_id'], unique=False
    )

    op.create_table(
        'calendar_event_reminders',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('event_id', sa.String(length=64), nullable=False),
        sa.Column('minutes_before', sa.Integer(), nullable=False),
        sa.Column('method', reminder_method_enum, nullable=False),
        sa.ForeignKeyConstraint(['event_id'], ['calendar_events.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        'ix_reminder_event', 'calendar_event_reminders', ['event_id'], unique=False
    )

    op.create_table(
        'calendar_event_comments',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('event_id', sa.String(length=64), nullable=False),
        sa.Column('user_id', sa.String(length=255), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['event_id'], ['calendar_events.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        'ix_comment_event', 'calendar_event_comments', ['event_id'], unique=False
    )


def downgrade() -> None:
    op.drop_index('ix_comment_event', table_name='calendar_event_comments')
    op.drop_table('calendar_event_comments')
    op.drop_index('ix_reminder_event', table_name='calendar_event_reminders')
    op.drop_table('calendar_event_reminders')
    op.drop_index('ix_attendee_event', table_name='calendar_event_attendees')
    op.drop_table('calendar_event_attendees')
    op.drop_index('ix_event_parent', table_name='calendar_events')
    op.drop_index('ix_event_end', table_name='calendar_events')
    op.drop_index('ix_event_start', table_name='calendar_events')
    op.drop_index('ix_event_calendar', table_name='calendar_events')
    op.drop_table('calendar_events')
    op.drop_index('ix_calendar_context', table_name='calendars')
    op.drop_table('calendars')
    op.drop_index('ix_context_member_user', table_name='calendar_context_members')
    op.drop_table('calendar_context_members')

    bind = op.get_bind()
    for enum in reversed(ENUMS):
        enum.drop(bind, checkfirst=True)
