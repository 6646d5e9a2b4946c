"""
Database manager for PostgreSQL operations
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import asyncpg

from .models import ConnectionEventRecord, decode_record

logger = logging.getLogger(__name__)


class DatabaseManager:
    """Manages PostgreSQL storage for the discovery cache and connection history"""

    def __init__(self, config: Dict):
        self.config = config
        self.pool = None
        self.db_host = config['database']['host']
        self.db_port = config['database']['port']
        self.db_name = config['database']['database']
        self.db_user = config['database']['username']
        self.db_password = config['database']['password']

    async def initialize(self):
        """Initialize database connection pool and schema"""
        try:
            self.pool = await asyncpg.create_pool(
                host=self.db_host,
                port=self.db_port,
                database=self.db_name,
                user=self.db_user,
                password=self.db_password,
                min_size=1,
                max_size=10,
                command_timeout=10
            )

            logger.info("Database connection pool created")

            await self.create_schema()
            logger.info("Database schema initialized")

        except Exception as e:
            logger.error(f"Database initialization failed: {e}")
            raise

    async def create_schema(self):
        """Create database tables if they don't exist"""
        schema_sql = """
        -- One row per cached device IP; record holds the camelCase cache entry
        CREATE TABLE IF NOT EXISTS discovery_cache (
            ip TEXT PRIMARY KEY,
            record JSONB NOT NULL,
            updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS connection_events (
            id BIGSERIAL PRIMARY KEY,
            camera_id TEXT NOT NULL,
            ts TIMESTAMPTZ NOT NULL,
            source TEXT NOT NULL,
            state TEXT NOT NULL,
            previous_state TEXT,
            protocol TEXT,
            outcome TEXT,
            message TEXT,
            attempt INTEGER
        );

        CREATE INDEX IF NOT EXISTS idx_connection_events_camera_ts
        ON connection_events(camera_id, ts DESC);
        """

        async with self.pool.acquire() as conn:
            await conn.execute(schema_sql)

    # ---------- discovery cache ----------

    async def load_discovery_cache(self) -> Dict[str, Any]:
        """Return {ip: record}; errors propagate so the cache can start empty"""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("SELECT ip, record FROM discovery_cache")
        records = {}
        for row in rows:
            try:
                records[row['ip']] = decode_record(row['record'])
            except (TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable cache row for {row['ip']}: {e}")
        return records

    async def save_discovery_cache(self, records: Dict[str, Dict[str, Any]]) -> None:
        """Replace the table contents with the given snapshot in one transaction"""
        now = datetime.now(timezone.utc)
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                if records:
                    await conn.execute(
                        "DELETE FROM discovery_cache WHERE NOT (ip = ANY($1::text[]))", list(records)
                    )
                    await conn.executemany("""
                        INSERT INTO discovery_cache (ip, record, updated_at)
                        VALUES ($1, $2::jsonb, $3)
                        ON CONFLICT (ip) DO UPDATE SET
                            record = EXCLUDED.record,
                            updated_at = EXCLUDED.updated_at
                    """, [(ip, json.dumps(record), now) for ip, record in records.items()])
                else:
                    await conn.execute("DELETE FROM discovery_cache")

    # ---------- connection events ----------

    async def record_connection_event(self, event: ConnectionEventRecord) -> bool:
        try:
            async with self.pool.acquire() as conn:
                await conn.execute("""
                    INSERT INTO connection_events (
                        camera_id, ts, source, state, previous_state, protocol, outcome, message, attempt
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                """,
                event.camera_id, event.ts, event.source, event.state, event.previous_state,
                event.protocol, event.outcome, event.message, event.attempt
                )
            return True
        except Exception as e:
            logger.error(f"Failed to record connection event for {event.camera_id}: {e}")
            return False

    async def get_connection_events(self, camera_id: Optional[str] = None,
                                    limit: int = 100) -> List[ConnectionEventRecord]:
        try:
            async with self.pool.acquire() as conn:
                if camera_id:
                    rows = await conn.fetch("""
                        SELECT * FROM connection_events
                        WHERE camera_id = $1
                        ORDER BY ts DESC LIMIT $2
                    """, camera_id, limit)
                else:
                    rows = await conn.fetch("""
                        SELECT * FROM connection_events
                        ORDER BY ts DESC LIMIT $1
                    """, limit)

            return [
                ConnectionEventRecord(
                    camera_id=row['camera_id'],
                    ts=row['ts'],
                    source=row['source'],
                    state=row['state'],
                    previous_state=row['previous_state'],
                    protocol=row['protocol'],
                    outcome=row['outcome'],
                    message=row['message'],
                    attempt=row['attempt']
                )
                for row in rows
            ]
        except Exception as e:
            logger.error(f"Failed to get connection events: {e}")
            return []

    async def cleanup_old_events(self, retention_days: int = 30) -> int:
        try:
            async with self.pool.acquire() as conn:
                deleted = await conn.fetchval("""
                    WITH deleted AS (
                        DELETE FROM connection_events
                        WHERE ts < NOW() - make_interval(days => $1)
                        RETURNING 1
                    ) SELECT COUNT(*) FROM deleted
                """, retention_days)
            logger.info(f"Cleanup: {deleted} connection events")
            return deleted or 0
        except Exception as e:
            logger.error(f"Connection event cleanup failed: {e}")
            return 0

    async def close(self):
        """Close database connection pool"""
        if self.pool:
            await self.pool.close()
            logger.info("Database connection pool closed")
