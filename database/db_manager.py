import os
import sqlite3
import threading
from contextlib import contextmanager


class DatabaseManager:
    def __init__(self, db_name='sonora.db', db_dir='database', timeout=10.0):
        # Ensure the database directory exists
        os.makedirs(db_dir, exist_ok=True)
        self.db_name = os.path.join(db_dir, db_name)
        self.timeout = timeout
        self.conn = None
        self._lock = threading.RLock()
        self._depth = 0
        self.connect()
        self.create_tables()

    def connect(self):
        # Autocommit mode; transactions are opened explicitly in transaction()
        self.conn = sqlite3.connect(
            self.db_name,
            timeout=self.timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        self.conn.execute("PRAGMA foreign_keys = ON")
        self.cursor = self.conn.cursor()

    def disconnect(self):
        if self.conn:
            self.conn.close()
            self.conn = None

    def ensure_connection(self):
        try:
            self.conn.execute("SELECT 1")
        except (AttributeError, sqlite3.ProgrammingError, sqlite3.OperationalError):
            self.connect()

    @contextmanager
    def transaction(self):
        """
        Run a block inside one write transaction. Nested calls join the
        outermost transaction, so a store operation can take part in a
        larger engine commit.
        """
        with self._lock:
            self.ensure_connection()
            outermost = self._depth == 0
            if outermost:
                self.conn.execute("BEGIN IMMEDIATE")
            self._depth += 1
            try:
                yield self.conn.cursor()
            except BaseException:
                self._depth -= 1
                if outermost:
                    self.conn.execute("ROLLBACK")
                raise
            else:
                self._depth -= 1
                if outermost:
                    self.conn.execute("COMMIT")

    def query(self, sql, params=()):
        with self._lock:
            self.ensure_connection()
            return self.conn.execute(sql, params).fetchall()

    def create_tables(self):
        # Pool rows: one per item id per pool scope/category
        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS pool_entries (
            pool_scope TEXT NOT NULL,
            category TEXT NOT NULL,
            item_id TEXT NOT NULL,
            title TEXT NOT NULL,
            artist TEXT NOT NULL,
            release_year INTEGER,
            cover_ref TEXT,
            added_by TEXT NOT NULL,
            added_at TEXT NOT NULL,
            PRIMARY KEY (pool_scope, category, item_id)
        )"""
        )
        # Ranked sequences, one per ranking scope/category/year
        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS ranked_entries (
            ranking_scope TEXT NOT NULL,
            category TEXT NOT NULL,
            year INTEGER NOT NULL,
            rank INTEGER NOT NULL,
            album_id TEXT NOT NULL,
            title TEXT NOT NULL,
            artist TEXT NOT NULL,
            release_year INTEGER,
            cover_ref TEXT,
            PRIMARY KEY (ranking_scope, category, year, album_id),
            UNIQUE (ranking_scope, category, year, rank)
        )"""
        )
        # RankingScope metadata (authorship, timestamps)
        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS ranking_scopes (
            ranking_scope TEXT NOT NULL,
            year INTEGER NOT NULL,
            user_id TEXT NOT NULL,
            group_id TEXT,
            username TEXT,
            avatar_ref TEXT,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (ranking_scope, year)
        )"""
        )
        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS groups (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            code TEXT NOT NULL UNIQUE,
            owner_id TEXT NOT NULL,
            created_at TEXT NOT NULL
        )"""
        )
        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS group_members (
            group_id TEXT NOT NULL,
            user_id TEXT NOT NULL,
            joined_at TEXT NOT NULL,
            PRIMARY KEY (group_id, user_id),
            FOREIGN KEY(group_id) REFERENCES groups(id) ON DELETE CASCADE
        )"""
        )
        self.conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_ranking_scopes_year ON ranking_scopes(year)"
        )
