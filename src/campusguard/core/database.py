"""
Database Infrastructure for CampusGuard

Provides SQLite database management, connection pooling, migrations,
and transaction management for all CampusGuard services.
"""

import sqlite3
import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from dataclasses import dataclass
from datetime import datetime


@dataclass
class Migration:
    """Database migration definition"""
    version: int
    name: str
    sql: str
    rollback_sql: Optional[str] = None


class DatabaseError(Exception):
    """Database-related errors"""
    pass


class ConnectionPool:
    """Simple SQLite connection pool"""

    def __init__(self, database_path: str, max_connections: int = 10):
        self.database_path = database_path
        self.max_connections = max_connections
        self.connections = []
        self.in_use = set()
        self.lock = threading.Lock()
        self.logger = logging.getLogger(__name__)

    def get_connection(self) -> sqlite3.Connection:
        """Get a connection from the pool"""
        with self.lock:
            for conn in self.connections:
                if conn not in self.in_use:
                    self.in_use.add(conn)
                    return conn

            if len(self.connections) < self.max_connections:
                conn = sqlite3.connect(
                    self.database_path,
                    check_same_thread=False,
                    timeout=30.0
                )
                conn.row_factory = sqlite3.Row
                conn.execute("PRAGMA foreign_keys = ON")
                conn.execute("PRAGMA journal_mode = WAL")
                self.connections.append(conn)
                self.in_use.add(conn)
                return conn

            raise DatabaseError("Connection pool exhausted")

    def return_connection(self, conn: sqlite3.Connection):
        """Return a connection to the pool"""
        with self.lock:
            if conn in self.in_use:
                self.in_use.remove(conn)

    def close_all(self):
        """Close all connections in the pool"""
        with self.lock:
            for conn in self.connections:
                try:
                    conn.close()
                except Exception as e:
                    self.logger.warning(f"Error closing connection: {e}")
            self.connections.clear()
            self.in_use.clear()


class DatabaseManager:
    """
    Manages SQLite database operations, migrations, and connection pooling
    """

    def __init__(self, database_path: str, max_connections: int = 10):
        self.database_path = Path(database_path)
        self.logger = logging.getLogger(__name__)
        self.migrations = self._get_migrations()

        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        self.pool = ConnectionPool(str(self.database_path), max_connections)

        self._initialize_database()

    @contextmanager
    def get_connection(self):
        """Context manager for database connections"""
        conn = None
        try:
            conn = self.pool.get_connection()
            yield conn
        except Exception:
            if conn:
                conn.rollback()
            raise
        finally:
            if conn:
                self.pool.return_connection(conn)

    @contextmanager
    def transaction(self):
        """Context manager for database transactions"""
        with self.get_connection() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def _initialize_database(self):
        """Initialize database with schema and migrations"""
        self.logger.info(f"Initializing database at {self.database_path}")

        with self.get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS migrations (
                    version INTEGER PRIMARY KEY,
                    name TEXT NOT NULL,
                    applied_at DATETIME DEFAULT CURRENT_TIMESTAMP
                )
            """)
            conn.commit()

        self._run_migrations()

    def _get_migrations(self) -> List[Migration]:
        """Get all database migrations"""
        return [
            Migration(
                version=1,
                name="initial_schema",
                sql="""
                -- Identity records (owned by the account service, read here)
                CREATE TABLE accounts (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    role TEXT NOT NULL DEFAULT 'student',
                    email TEXT,
                    phone TEXT,
                    push_token TEXT,
                    active BOOLEAN DEFAULT TRUE,
                    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
                );

                -- Monitored journeys and live-location shares
                CREATE TABLE safety_sessions (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    mode TEXT NOT NULL,
                    destination TEXT,
                    status TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL,
                    check_in_interval_seconds INTEGER,
                    last_check_in_at TEXT,
                    next_check_in_at TEXT,
                    current_location TEXT, -- JSON object
                    location_history TEXT NOT NULL DEFAULT '[]', -- JSON array
                    max_history_points INTEGER NOT NULL,
                    sharing_grants TEXT NOT NULL DEFAULT '[]', -- JSON array
                    ended_at TEXT,
                    version INTEGER NOT NULL DEFAULT 1,
                    updated_at TEXT
                );

                -- One non-terminal session per owner, enforced on insert
                CREATE UNIQUE INDEX idx_safety_sessions_one_open
                    ON safety_sessions (owner_id)
                    WHERE status IN ('active', 'check_in_due');

                CREATE TABLE check_ins (
                    id TEXT PRIMARY KEY,
                    session_id TEXT NOT NULL,
                    scheduled_at TEXT NOT NULL,
                    responded_at TEXT,
                    response TEXT NOT NULL DEFAULT 'pending',
                    location TEXT, -- JSON object
                    FOREIGN KEY (session_id) REFERENCES safety_sessions (id)
                );

                -- At most one open prompt per session
                CREATE UNIQUE INDEX idx_check_ins_one_pending
                    ON check_ins (session_id)
                    WHERE response = 'pending';

                CREATE TABLE sos_alerts (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    session_id TEXT,
                    message TEXT,
                    location TEXT, -- JSON object
                    severity TEXT NOT NULL,
                    triggered_by TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    acknowledged_by TEXT,
                    acknowledged_at TEXT,
                    resolved_by TEXT,
                    resolved_at TEXT,
                    resolution TEXT
                );

                CREATE TABLE notification_jobs (
                    id TEXT PRIMARY KEY,
                    recipient_id TEXT NOT NULL,
                    session_id TEXT,
                    alert_id TEXT,
                    event_key TEXT,
                    payload TEXT NOT NULL, -- JSON object
                    channels TEXT NOT NULL, -- JSON array
                    channel_results TEXT NOT NULL DEFAULT '{}', -- JSON object
                    created_at TEXT NOT NULL,
                    completed_at TEXT
                );

                -- Processed transitions guard for escalation fan-out
                CREATE TABLE processed_events (
                    session_id TEXT NOT NULL,
                    transition_id TEXT NOT NULL,
                    processed_at TEXT NOT NULL,
                    PRIMARY KEY (session_id, transition_id)
                );

                CREATE TABLE in_app_notifications (
                    id TEXT PRIMARY KEY,
                    recipient_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    message TEXT NOT NULL,
                    type TEXT NOT NULL,
                    priority TEXT NOT NULL,
                    data TEXT, -- JSON object
                    read_at TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE INDEX idx_accounts_role ON accounts (role);
                CREATE INDEX idx_safety_sessions_status ON safety_sessions (status);
                CREATE INDEX idx_safety_sessions_next_check_in ON safety_sessions (next_check_in_at);
                CREATE INDEX idx_check_ins_session ON check_ins (session_id);
                CREATE INDEX idx_sos_alerts_status ON sos_alerts (status, created_at);
                CREATE INDEX idx_notification_jobs_session ON notification_jobs (session_id);
                CREATE INDEX idx_in_app_recipient ON in_app_notifications (recipient_id);
                """
            )
        ]

    def _run_migrations(self):
        """Run pending database migrations"""
        with self.get_connection() as conn:
            cursor = conn.execute("SELECT MAX(version) FROM migrations")
            result = cursor.fetchone()
            current_version = result[0] if result[0] is not None else 0

            for migration in self.migrations:
                if migration.version > current_version:
                    self.logger.info(f"Running migration {migration.version}: {migration.name}")

                    try:
                        conn.executescript(migration.sql)
                        conn.execute(
                            "INSERT INTO migrations (version, name) VALUES (?, ?)",
                            (migration.version, migration.name)
                        )
                        conn.commit()
                        self.logger.info(f"Migration {migration.version} completed successfully")

                    except Exception as e:
                        conn.rollback()
                        self.logger.error(f"Migration {migration.version} failed: {e}")
                        raise DatabaseError(f"Migration failed: {e}")

    def execute_query(self, query: str, params: Tuple = ()) -> List[sqlite3.Row]:
        """Execute a SELECT query and return results"""
        with self.get_connection() as conn:
            cursor = conn.execute(query, params)
            return cursor.fetchall()

    def execute_update(self, query: str, params: Tuple = ()) -> int:
        """Execute an INSERT/UPDATE/DELETE query and return affected rows"""
        with self.transaction() as conn:
            cursor = conn.execute(query, params)
            return cursor.rowcount

    def execute_many(self, query: str, params_list: List[Tuple]) -> int:
        """Execute a query with multiple parameter sets"""
        with self.transaction() as conn:
            cursor = conn.executemany(query, params_list)
            return cursor.rowcount

    def get_stats(self) -> Dict[str, Any]:
        """Get database statistics"""
        stats = {}

        tables = [
            'accounts', 'safety_sessions', 'check_ins', 'sos_alerts',
            'notification_jobs', 'processed_events', 'in_app_notifications'
        ]

        for table in tables:
            try:
                rows = self.execute_query(f"SELECT COUNT(*) FROM {table}")
                stats[table] = rows[0][0] if rows else 0
            except sqlite3.Error:
                stats[table] = 0

        if self.database_path.exists():
            stats['database_size_bytes'] = self.database_path.stat().st_size
        else:
            stats['database_size_bytes'] = 0

        stats['collected_at'] = datetime.now().isoformat()
        return stats

    def close(self):
        """Close all database connections"""
        self.pool.close_all()


# Global database manager instance (initialized by the application)
db_manager: Optional[DatabaseManager] = None


def initialize_database(database_path: str, max_connections: int = 10) -> DatabaseManager:
    """Initialize the global database manager"""
    global db_manager
    db_manager = DatabaseManager(database_path, max_connections)
    return db_manager
