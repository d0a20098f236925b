"""create documents table and change notification trigger

Revision ID: core_001
Revises:
Create Date: 2026-10-01 00:00:00.000000

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
        CREATE TABLE IF NOT EXISTS documents (
            user_id TEXT NOT NULL,
            collection TEXT NOT NULL,
            doc_id TEXT NOT NULL,
            value JSONB NOT NULL DEFAULT '{}',
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            PRIMARY KEY (user_id, collection, doc_id)
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_documents_updated_at
        ON documents (user_id, collection, updated_at DESC)
    """)

    op.execute("""
        CREATE OR REPLACE FUNCTION daypulse_notify_document_change() RETURNS trigger AS $$
        DECLARE
            changed documents%ROWTYPE;
        BEGIN
            IF TG_OP = 'DELETE' THEN
                changed := OLD;
            ELSE
                changed := NEW;
            END IF;
            PERFORM pg_notify(
                'daypulse_documents',
                json_build_object(
                    'user_id', changed.user_id,
                    'collection', changed.collection,
                    'doc_id', changed.doc_id,
                    'op', TG_OP
                )::text
            );
            RETURN NULL;
        END;
        $$ LANGUAGE plpgsql
    """)

    op.execute("DROP TRIGGER IF EXISTS trg_documents_notify ON documents")
    op.execute("""
        CREATE TRIGGER trg_documents_notify
        AFTER INSERT OR UPDATE OR DELETE ON documents
        FOR EACH ROW EXECUTE FUNCTION daypulse_notify_document_change()
    """)


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_documents_notify ON documents")
    op.execute("DROP FUNCTION IF EXISTS daypulse_notify_document_change()")
    op.execute("DROP INDEX IF EXISTS idx_documents_updated_at")
    op.execute("DROP TABLE IF EXISTS documents")
