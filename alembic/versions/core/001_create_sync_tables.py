"""create_sync_tables

Revision ID: core_001
Revises:
Create Date: 2026-01-01 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "core_001"
down_revision = None
branch_labels = ("core",)
depends_on = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE IF NOT EXISTS users (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            email TEXT,
            sync_horizon_months INTEGER NOT NULL DEFAULT 1
                CHECK (sync_horizon_months BETWEEN 1 AND 24),
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS calendars (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id UUID NOT NULL REFERENCES users (id) ON DELETE CASCADE,
            name TEXT NOT NULL,
            color TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS connections (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id UUID NOT NULL REFERENCES users (id) ON DELETE CASCADE,
            provider TEXT NOT NULL,
            refresh_token TEXT NOT NULL,
            access_token TEXT,
            access_token_expires_at TIMESTAMPTZ,
            metadata JSONB NOT NULL DEFAULT '{}',
            latest_sync_run_id TEXT,
            last_sync_error TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT uq_connections_user_provider UNIQUE (user_id, provider)
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS external_calendars (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            connection_id UUID NOT NULL REFERENCES connections (id) ON DELETE CASCADE,
            remote_calendar_id TEXT NOT NULL,
            local_calendar_id UUID NOT NULL REFERENCES calendars (id),
            name TEXT NOT NULL,
            color TEXT,
            sync_cursor TEXT NOT NULL DEFAULT '',
            channel_id TEXT,
            channel_secret TEXT,
            channel_resource_id TEXT,
            channel_expires_at TIMESTAMPTZ,
            last_sync_error TEXT,
            latest_sync_run_id TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT uq_external_calendars_remote UNIQUE (connection_id, remote_calendar_id),
            CONSTRAINT uq_external_calendars_channel UNIQUE (channel_id)
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_external_calendars_channel_expiry
        ON external_calendars (channel_expires_at)
        WHERE channel_id IS NOT NULL
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS events (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id UUID NOT NULL REFERENCES users (id) ON DELETE CASCADE,
            calendar_id UUID REFERENCES calendars (id) ON DELETE SET NULL,
            kind TEXT NOT NULL DEFAULT 'event' CHECK (kind IN ('event', 'task')),
            title TEXT NOT NULL,
            description TEXT,
            location TEXT,
            start_at TIMESTAMPTZ NOT NULL,
            end_at TIMESTAMPTZ NOT NULL,
            all_day BOOLEAN NOT NULL DEFAULT false,
            time_zone TEXT,
            busy TEXT NOT NULL DEFAULT 'free',
            visibility TEXT NOT NULL DEFAULT 'public',
            color TEXT,
            creator_email TEXT,
            organizer_email TEXT,
            guests_can_modify BOOLEAN,
            external_provider TEXT,
            external_calendar_id TEXT,
            external_event_id TEXT,
            is_editable BOOLEAN,
            recurring_event_id TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT ck_events_mirror_all_or_nothing CHECK (
                (external_provider IS NULL AND external_calendar_id IS NULL
                    AND external_event_id IS NULL AND is_editable IS NULL
                    AND recurring_event_id IS NULL)
                OR (external_provider IS NOT NULL AND external_calendar_id IS NOT NULL
                    AND external_event_id IS NOT NULL AND is_editable IS NOT NULL)
            ),
            CONSTRAINT uq_events_mirror_key
                UNIQUE (external_provider, external_calendar_id, external_event_id)
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_events_user_start
        ON events (user_id, start_at)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS task_items (
            connection_id UUID NOT NULL REFERENCES connections (id) ON DELETE CASCADE,
            external_id TEXT NOT NULL,
            user_id UUID NOT NULL REFERENCES users (id) ON DELETE CASCADE,
            identifier TEXT,
            title TEXT NOT NULL,
            url TEXT,
            state TEXT NOT NULL,
            priority INTEGER,
            due_date TEXT,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            PRIMARY KEY (connection_id, external_id)
        )
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS task_items")
    op.execute("DROP TABLE IF EXISTS events")
    op.execute("DROP TABLE IF EXISTS external_calendars")
    op.execute("DROP TABLE IF EXISTS connections")
    op.execute("DROP TABLE IF EXISTS calendars")
    op.execute("DROP TABLE IF EXISTS users")
