"""
Cache database schema definitions.
"""
import sqlite3
import logging

CURRENT_SCHEMA_VERSION = 1

def init_schema(conn: sqlite3.Connection):
    """
    Applies the cache schema to the database.
    Idempotent: safe to run on every save.
    """
    with conn:
        # 1. Version Tracking (For future migrations)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY
            );
        """)

        cur = conn.cursor()
        cur.execute("SELECT version FROM schema_version")
        if not cur.fetchone():
            conn.execute("INSERT INTO schema_version (version) VALUES (?)", (CURRENT_SCHEMA_VERSION,))

        # 2. Video Records
        # NULL duration/size means "never resolved", 0 duration means "probe failed"
        conn.execute("""
        CREATE TABLE IF NOT EXISTS videos (
            path            TEXT PRIMARY KEY,
            duration_sec    REAL,
            size_bytes      INTEGER
        );
        """)

    logging.debug("Cache schema initialized.")
