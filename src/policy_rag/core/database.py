"""PostgreSQL access for documents and their embedding records."""

import os

import asyncpg
from loguru import logger

CONNECT_TIMEOUT_SECONDS = 10

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS documents (
        document_id TEXT PRIMARY KEY,
        name TEXT NOT NULL DEFAULT '',
        organization_id TEXT NOT NULL DEFAULT 'default_org',
        type TEXT,
        content TEXT NOT NULL DEFAULT '',
        uploaded_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP,
        embedding_status TEXT NOT NULL DEFAULT 'not_started',
        embedded_at TIMESTAMP WITH TIME ZONE
    );
    """,
    """
    CREATE INDEX IF NOT EXISTS documents_organization_idx
    ON documents (organization_id);
    """,
    # float8[] round-trips exactly; similarity is computed by the retriever.
    """
    CREATE TABLE IF NOT EXISTS document_embeddings (
        document_id TEXT NOT NULL,
        chunk_index INTEGER NOT NULL,
        content TEXT NOT NULL,
        embedding DOUBLE PRECISION[] NOT NULL,
        model TEXT NOT NULL,
        created_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY (document_id, chunk_index)
    );
    """,
)


def connection_settings() -> dict:
    """Read connection parameters from POSTGRES_* environment variables.

    POSTGRES_DSN, when set, takes precedence over the individual variables.
    """
    dsn = os.environ.get("POSTGRES_DSN")
    if dsn:
        return {"dsn": dsn}
    return {
        "user": os.environ.get("POSTGRES_USER", "postgres"),
        "password": os.environ.get("POSTGRES_PASSWORD", "postgres"),
        "database": os.environ.get("POSTGRES_DB", "policy_rag"),
        "host": os.environ.get("POSTGRES_HOST", "localhost"),
        "port": int(os.environ.get("POSTGRES_PORT", "5432")),
    }


async def get_db_connection() -> asyncpg.Connection:
    """Open a new connection; callers close it when done."""
    settings = connection_settings()
    try:
        return await asyncpg.connect(timeout=CONNECT_TIMEOUT_SECONDS, **settings)
    except (OSError, asyncpg.PostgresError) as e:
        logger.error("Failed to connect to {}: {}", settings.get("host", "dsn"), e)
        raise


async def init_db() -> None:
    """Create the documents and document_embeddings tables if missing."""
    conn = await get_db_connection()
    try:
        async with conn.transaction():
            for statement in SCHEMA:
                await conn.execute(statement)
        logger.info("Database schema is ready")
    except asyncpg.PostgresError as e:
        logger.error("Database initialization failed: {}", e)
        raise
    finally:
        await conn.close()
