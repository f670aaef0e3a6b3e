"""create calendar mirror tables

Revision ID: calendar_001
Revises:
Create Date: 2026-10-18 00:00:00.000000

Creates:
- calendar_providers: OAuth-linked provider accounts
- calendar_sources: linked provider calendars, with the per-source sync claim
- calendar_subscriptions: append-only push-channel leases
- calendar_items: mirrored events keyed by (source_id, event_id)
"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "calendar_001"
down_revision = None
branch_labels = ("calendar",)
depends_on = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_providers (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id TEXT NOT NULL,
            kind TEXT NOT NULL,
            identifier TEXT NOT NULL,
            access_token TEXT NOT NULL,
            refresh_token TEXT NOT NULL,
            token_expiry TIMESTAMPTZ NOT NULL,
            needs_reauth BOOLEAN NOT NULL DEFAULT false,
            last_auth_error TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_calendar_providers_user
        ON calendar_providers (user_id)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_sources (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            provider_id UUID NOT NULL REFERENCES calendar_providers (id) ON DELETE CASCADE,
            calendar_id TEXT NOT NULL,
            name TEXT NOT NULL,
            color TEXT NOT NULL DEFAULT '4285f4',
            last_sync TIMESTAMPTZ,
            sync_token TEXT,
            sync_status TEXT NOT NULL DEFAULT 'never_synced',
            last_sync_error TEXT,
            sync_claimed_at TIMESTAMPTZ,
            sync_claim_owner TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT calendar_sources_provider_calendar_key UNIQUE (provider_id, calendar_id),
            CONSTRAINT calendar_sources_color_check CHECK (color ~ '^[0-9a-f]{6}$'),
            CONSTRAINT calendar_sources_sync_status_check
                CHECK (sync_status IN ('never_synced', 'syncing', 'synced', 'failed'))
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_subscriptions (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            source_id UUID NOT NULL REFERENCES calendar_sources (id) ON DELETE CASCADE,
            channel_id TEXT NOT NULL,
            verifier TEXT NOT NULL,
            resource_id TEXT,
            expires_at TIMESTAMPTZ NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT calendar_subscriptions_channel_id_key UNIQUE (channel_id)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_calendar_subscriptions_source_expiry
        ON calendar_subscriptions (source_id, expires_at DESC)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_items (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            source_id UUID NOT NULL REFERENCES calendar_sources (id) ON DELETE CASCADE,
            event_id TEXT NOT NULL,
            title TEXT NOT NULL,
            start_date DATE,
            start_time TIMESTAMPTZ,
            end_date DATE,
            end_time TIMESTAMPTZ,
            html_link TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT calendar_items_source_event_key UNIQUE (source_id, event_id),
            CONSTRAINT calendar_items_start_check
                CHECK ((start_date IS NULL) <> (start_time IS NULL)),
            CONSTRAINT calendar_items_end_check
                CHECK ((end_date IS NULL) <> (end_time IS NULL))
        )
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS calendar_items")
    op.execute("DROP TABLE IF EXISTS calendar_subscriptions")
    op.execute("DROP TABLE IF EXISTS calendar_sources")
    op.execute("DROP TABLE IF EXISTS calendar_providers")
