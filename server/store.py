"""Task mirror storage for the APTAN agent backend.

SQLite-backed document store: one row per ledger task plus a singleton
sync checkpoint in its own table. Upserts are field-level and never
regress `completed` or `cancelled`.
"""

import sqlite3
import threading
import time

# Columns a caller may set through upsert(). task_id is the key.
TASK_FIELDS = (
    "creator", "agent", "description", "reward", "deadline",
    "completed", "cancelled", "solution",
    "tx_hash", "block_number",
    "completed_tx_hash", "completed_block_number", "completed_at",
    "cancelled_by", "refund_amount", "cancelled_tx_hash", "cancelled_block_number", "cancelled_at",
    "solution_error", "transaction_error", "failed_tx_hash", "attempted_at", "attempted_by",
    "source", "created_at", "synced_at",
)

_BOOL_FIELDS = ("completed", "cancelled", "transaction_error")

# Flags only ever move false -> true
_MONOTONIC_FIELDS = ("completed", "cancelled")


class TaskStore:
    """SQLite-backed task documents and sync checkpoint."""

    def __init__(self, db_path: str = ":memory:"):
        self.db = sqlite3.connect(db_path, check_same_thread=False)
        self.db.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self):
        # Enable WAL mode for safe concurrent reads during writes
        self.db.execute("PRAGMA journal_mode=WAL")
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS tasks (
                task_id INTEGER PRIMARY KEY,
                creator TEXT,
                agent TEXT,
                description TEXT NOT NULL DEFAULT '',
                reward TEXT NOT NULL DEFAULT '0',
                deadline INTEGER NOT NULL DEFAULT 0,
                completed INTEGER NOT NULL DEFAULT 0,
                cancelled INTEGER NOT NULL DEFAULT 0,
                solution TEXT,
                tx_hash TEXT,
                block_number INTEGER,
                completed_tx_hash TEXT,
                completed_block_number INTEGER,
                completed_at REAL,
                cancelled_by TEXT,
                refund_amount TEXT,
                cancelled_tx_hash TEXT,
                cancelled_block_number INTEGER,
                cancelled_at REAL,
                solution_error TEXT,
                transaction_error INTEGER NOT NULL DEFAULT 0,
                failed_tx_hash TEXT,
                attempted_at REAL,
                attempted_by TEXT,
                source TEXT NOT NULL DEFAULT 'chain',
                created_at REAL NOT NULL,
                synced_at REAL,
                updated_at REAL NOT NULL
            )
        """)
        self.db.execute("CREATE INDEX IF NOT EXISTS idx_completed ON tasks(completed)")
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS sync_state (
                id TEXT PRIMARY KEY,
                last_synced_block INTEGER NOT NULL,
                contract_address TEXT NOT NULL,
                last_sync_time REAL NOT NULL
            )
        """)
        self.db.commit()

    # --- Tasks ---

    def get(self, task_id: int) -> dict | None:
        row = self.db.execute("SELECT * FROM tasks WHERE task_id = ?", (int(task_id),)).fetchone()
        if not row:
            return None
        return self._row_to_dict(row)

    def list(self, limit: int | None = None) -> list[dict]:
        """All tasks, newest first."""
        query = "SELECT * FROM tasks ORDER BY created_at DESC, task_id DESC"
        params: tuple = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (limit,)
        return [self._row_to_dict(r) for r in self.db.execute(query, params).fetchall()]

    def insert(self, task_id: int, fields: dict) -> bool:
        """Insert a new task. Returns False if the id already exists."""
        columns, values = self._columns(fields)
        now = time.time()
        if "created_at" not in columns:
            columns.append("created_at")
            values.append(now)
        columns += ["task_id", "updated_at"]
        values += [int(task_id), now]
        placeholders = ", ".join("?" for _ in columns)
        with self._lock:
            try:
                self.db.execute(
                    f"INSERT INTO tasks ({', '.join(columns)}) VALUES ({placeholders})", values,
                )
            except sqlite3.IntegrityError:
                return False
            self.db.commit()
        return True

    def upsert(self, task_id: int, fields: dict) -> dict:
        """Create or merge fields into a task document. Returns the merged document."""
        columns, values = self._columns(fields)
        now = time.time()
        insert_columns = list(columns)
        insert_values = list(values)
        if "created_at" not in insert_columns:
            insert_columns.append("created_at")
            insert_values.append(now)
        insert_columns += ["task_id", "updated_at"]
        insert_values += [int(task_id), now]

        updates = []
        for col in columns:
            if col in _MONOTONIC_FIELDS:
                updates.append(f"{col} = MAX(tasks.{col}, excluded.{col})")
            else:
                updates.append(f"{col} = excluded.{col}")
        updates.append("updated_at = excluded.updated_at")

        placeholders = ", ".join("?" for _ in insert_columns)
        with self._lock:
            self.db.execute(
                f"INSERT INTO tasks ({', '.join(insert_columns)}) VALUES ({placeholders}) "
                f"ON CONFLICT(task_id) DO UPDATE SET {', '.join(updates)}",
                insert_values,
            )
            self.db.commit()
        return self.get(task_id)

    def record_diagnostic(self, task_id: int, fields: dict) -> bool:
        """Write error diagnostics onto a task that is still pending.

        Completed or cancelled rows are left untouched. Returns True if written.
        """
        columns, values = self._columns(fields)
        now = time.time()
        insert_columns = columns + ["created_at", "task_id", "updated_at"]
        insert_values = values + [now, int(task_id), now]
        updates = [f"{col} = excluded.{col}" for col in columns]
        updates.append("updated_at = excluded.updated_at")
        placeholders = ", ".join("?" for _ in insert_columns)
        with self._lock:
            cur = self.db.execute(
                f"INSERT INTO tasks ({', '.join(insert_columns)}) VALUES ({placeholders}) "
                f"ON CONFLICT(task_id) DO UPDATE SET {', '.join(updates)} "
                f"WHERE tasks.completed = 0 AND tasks.cancelled = 0",
                insert_values,
            )
            self.db.commit()
        return cur.rowcount > 0

    def count(self) -> int:
        return self.db.execute("SELECT COUNT(*) FROM tasks").fetchone()[0]

    # --- Sync checkpoint ---

    def get_sync_state(self) -> dict | None:
        row = self.db.execute("SELECT * FROM sync_state LIMIT 1").fetchone()
        if not row:
            return None
        return dict(row)

    def save_sync_state(self, state_id: str, last_synced_block: int, contract_address: str):
        with self._lock:
            self.db.execute(
                """INSERT INTO sync_state (id, last_synced_block, contract_address, last_sync_time)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                     last_synced_block = excluded.last_synced_block,
                     contract_address = excluded.contract_address,
                     last_sync_time = excluded.last_sync_time""",
                (state_id, int(last_synced_block), contract_address, time.time()),
            )
            self.db.commit()

    # --- Helpers ---

    @staticmethod
    def _columns(fields: dict):
        columns, values = [], []
        for key, value in fields.items():
            if key not in TASK_FIELDS:
                raise ValueError(f"Unknown task field: {key}")
            if key in _BOOL_FIELDS:
                value = 1 if value else 0
            columns.append(key)
            values.append(value)
        return columns, values

    def _row_to_dict(self, row) -> dict:
        doc = dict(row)
        for key in _BOOL_FIELDS:
            doc[key] = bool(doc[key])
        return doc

    def close(self):
        self.db.close()
