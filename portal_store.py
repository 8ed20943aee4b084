# ==========================================================
# CLUB PORTAL — DOCUMENT STORE
# Members, logs, history and sheets over SQLite or Postgres
# ==========================================================

import os
import sqlite3
import secrets
import time
from collections.abc import Mapping
from datetime import datetime

from errors import MissingIndexError, NotFoundError, StoreError

# Hosted document stores cap a batch at 500 writes; stay under it.
BATCH_LIMIT = 450

ACTIVITY_NAMES = (
    "agility",
    "obedience",
    "rally",
    "flyball",
    "freestyle",
    "conformation",
    "earthdog",
)

# Column defaults for every table reachable through WriteBatch.set().
TABLES = {
    "members": {
        "id": None,
        "provenance": "registered",
        "email": "",
        "legacy_key": None,
        "first_name": "",
        "last_name": "",
        "first_name2": "",
        "last_name2": "",
        "membership_type": "Regular",
        "role": "member",
        "phone": "",
        "cell_phone": "",
        "work_phone": "",
        "address": "",
        "city": "",
        "state": "",
        "zip": "",
        "joined_date": "",
        "breeds": "",
        "occupation": "",
        "interests": "",
        "agility": 0,
        "obedience": 0,
        "rally": 0,
        "flyball": 0,
        "freestyle": 0,
        "conformation": 0,
        "earthdog": 0,
        "is_active": 1,
        "imported_at": "",
        "updated_at": "",
    },
    "logs": {
        "id": None,
        "member_id": "",
        "date": "",
        "activity": "",
        "hours": 0.0,
        "status": "approved",
        "apply_to_next_year": 0,
        "source_sheet_id": None,
        "submitted_at": "",
        "imported_at": "",
    },
    "volunteer_sheets": {
        "id": None,
        "sheet_code": "",
        "sheet_date": "",
        "event": "",
        "image_ref": "",
        "image_url": "",
        "status": "processing",
        "uploaded_at": "",
    },
    "users": {
        "id": None,
        "email": "",
        "password_hash": "",
        "created_at": "",
    },
}

# name -> (table, column); logs_for_sheet() refuses to run without it.
REQUIRED_INDEXES = {
    "idx_logs_source_sheet": ("logs", "source_sheet_id"),
}


def now_iso():
    return datetime.now().isoformat(timespec="seconds")


def new_id():
    return secrets.token_hex(10)


class RowCompat(Mapping):
    def __init__(self, columns, values):
        self._columns = tuple(columns)
        self._values = tuple(values)
        self._data = {k: v for k, v in zip(self._columns, self._values)}

    def __getitem__(self, key):
        if isinstance(key, int):
            return self._values[key]
        return self._data[key]

    def __iter__(self):
        return iter(self._data)

    def __len__(self):
        return len(self._data)


def _replace_qmarks_with_percent_s(sql):
    out = []
    in_single_quote = False
    i = 0
    while i < len(sql):
        ch = sql[i]
        if ch == "'":
            out.append(ch)
            if in_single_quote and i + 1 < len(sql) and sql[i + 1] == "'":
                out.append(sql[i + 1])
                i += 1
            else:
                in_single_quote = not in_single_quote
        elif ch == "?" and not in_single_quote:
            out.append("%s")
        else:
            out.append(ch)
        i += 1
    return "".join(out)


class PostgresCursorCompat:
    def __init__(self, raw_cursor):
        self._cur = raw_cursor

    def _columns(self):
        return [d.name if hasattr(d, "name") else d[0] for d in (self._cur.description or [])]

    def execute(self, sql, args=()):
        self._cur.execute(_replace_qmarks_with_percent_s(sql), tuple(args or ()))
        return self

    def fetchone(self):
        row = self._cur.fetchone()
        if row is None:
            return None
        return RowCompat(self._columns(), row)

    def fetchall(self):
        rows = self._cur.fetchall()
        if not rows:
            return []
        cols = self._columns()
        return [RowCompat(cols, row) for row in rows]

    @property
    def rowcount(self):
        return self._cur.rowcount

    def close(self):
        self._cur.close()


class PostgresConnectionCompat:
    def __init__(self, raw_conn):
        self._conn = raw_conn

    def cursor(self):
        return PostgresCursorCompat(self._conn.cursor())

    def execute(self, sql, args=()):
        return self.cursor().execute(sql, args)

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    def close(self):
        self._conn.close()


def _connect_postgres(settings):
    import psycopg
    return PostgresConnectionCompat(psycopg.connect(settings.database_url))


def _connect_sqlite(settings):
    os.makedirs(os.path.dirname(os.path.abspath(settings.db_file)), exist_ok=True)
    timeout_ms = settings.sqlite_busy_timeout_ms
    conn = sqlite3.connect(settings.db_file, timeout=max(5, timeout_ms // 1000))
    conn.execute(f"PRAGMA busy_timeout = {timeout_ms}")
    conn.row_factory = sqlite3.Row
    return conn


def open_store(settings):
    if settings.using_postgres:
        return PortalStore(_connect_postgres(settings), "postgres")
    return PortalStore(_connect_sqlite(settings), "sqlite")


def _schema_statements(backend):
    pg = backend == "postgres"
    real = "DOUBLE PRECISION" if pg else "REAL"
    serial = "BIGSERIAL PRIMARY KEY" if pg else "INTEGER PRIMARY KEY AUTOINCREMENT"
    activity_cols = "\n".join(f"            {name} INTEGER NOT NULL DEFAULT 0," for name in ACTIVITY_NAMES)
    statements = [
        f"""
        CREATE TABLE IF NOT EXISTS members (
            id TEXT PRIMARY KEY,
            provenance TEXT NOT NULL DEFAULT 'registered',
            email TEXT NOT NULL DEFAULT '',
            legacy_key INTEGER,
            first_name TEXT NOT NULL DEFAULT '',
            last_name TEXT NOT NULL DEFAULT '',
            first_name2 TEXT NOT NULL DEFAULT '',
            last_name2 TEXT NOT NULL DEFAULT '',
            membership_type TEXT NOT NULL DEFAULT 'Regular',
            role TEXT NOT NULL DEFAULT 'member',
            phone TEXT NOT NULL DEFAULT '',
            cell_phone TEXT NOT NULL DEFAULT '',
            work_phone TEXT NOT NULL DEFAULT '',
            address TEXT NOT NULL DEFAULT '',
            city TEXT NOT NULL DEFAULT '',
            state TEXT NOT NULL DEFAULT '',
            zip TEXT NOT NULL DEFAULT '',
            joined_date TEXT NOT NULL DEFAULT '',
            breeds TEXT NOT NULL DEFAULT '',
            occupation TEXT NOT NULL DEFAULT '',
            interests TEXT NOT NULL DEFAULT '',
{activity_cols}
            is_active INTEGER NOT NULL DEFAULT 1,
            imported_at TEXT NOT NULL DEFAULT '',
            updated_at TEXT NOT NULL DEFAULT ''
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS logs (
            id TEXT PRIMARY KEY,
            member_id TEXT NOT NULL,
            date TEXT NOT NULL DEFAULT '',
            activity TEXT NOT NULL DEFAULT '',
            hours {real} NOT NULL DEFAULT 0,
            status TEXT NOT NULL DEFAULT 'approved',
            apply_to_next_year INTEGER NOT NULL DEFAULT 0,
            source_sheet_id TEXT,
            submitted_at TEXT NOT NULL DEFAULT '',
            imported_at TEXT NOT NULL DEFAULT ''
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS log_history (
            id {serial},
            log_id TEXT NOT NULL,
            changed_at TEXT NOT NULL,
            changed_by TEXT NOT NULL DEFAULT '',
            old_date TEXT NOT NULL DEFAULT '',
            old_activity TEXT NOT NULL DEFAULT '',
            old_hours {real} NOT NULL DEFAULT 0
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS volunteer_sheets (
            id TEXT PRIMARY KEY,
            sheet_code TEXT NOT NULL,
            sheet_date TEXT NOT NULL DEFAULT '',
            event TEXT NOT NULL DEFAULT '',
            image_ref TEXT NOT NULL DEFAULT '',
            image_url TEXT NOT NULL DEFAULT '',
            status TEXT NOT NULL DEFAULT 'processing',
            uploaded_at TEXT NOT NULL DEFAULT ''
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS users (
            id TEXT PRIMARY KEY,
            email TEXT NOT NULL UNIQUE,
            password_hash TEXT NOT NULL,
            created_at TEXT NOT NULL DEFAULT ''
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS password_resets (
            token TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            expires_at TEXT NOT NULL,
            used INTEGER NOT NULL DEFAULT 0
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS audit_logs (
            id {serial},
            created_at TEXT NOT NULL,
            user_id TEXT,
            username TEXT NOT NULL DEFAULT '',
            action TEXT NOT NULL,
            entity_type TEXT NOT NULL DEFAULT '',
            entity_id TEXT NOT NULL DEFAULT '',
            status TEXT NOT NULL DEFAULT 'ok',
            details TEXT NOT NULL DEFAULT ''
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS login_attempts (
            ip_key TEXT PRIMARY KEY,
            count INTEGER NOT NULL DEFAULT 0,
            window_start {real} NOT NULL DEFAULT 0,
            locked_until {real} NOT NULL DEFAULT 0,
            updated_at {real} NOT NULL DEFAULT 0
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_members_email ON members (email)",
        "CREATE INDEX IF NOT EXISTS idx_members_legacy_key ON members (legacy_key)",
        "CREATE INDEX IF NOT EXISTS idx_logs_member ON logs (member_id)",
        "CREATE INDEX IF NOT EXISTS idx_logs_status ON logs (status)",
        "CREATE INDEX IF NOT EXISTS idx_logs_source_sheet ON logs (source_sheet_id)",
        "CREATE INDEX IF NOT EXISTS idx_log_history_log ON log_history (log_id)",
        "CREATE UNIQUE INDEX IF NOT EXISTS uniq_sheet_code ON volunteer_sheets (sheet_code)",
        "CREATE INDEX IF NOT EXISTS idx_audit_logs_created_at ON audit_logs (created_at DESC)",
    ]
    if pg:
        statements += [
            """
            CREATE OR REPLACE FUNCTION log_history_block_update() RETURNS trigger AS $$
            BEGIN
                RAISE EXCEPTION 'log_history is append-only';
            END;
            $$ LANGUAGE plpgsql
            """,
            "DROP TRIGGER IF EXISTS log_history_no_update ON log_history",
            """
            CREATE TRIGGER log_history_no_update
            BEFORE UPDATE ON log_history
            FOR EACH ROW EXECUTE FUNCTION log_history_block_update()
            """,
        ]
    else:
        statements.append("""
            CREATE TRIGGER IF NOT EXISTS log_history_no_update
            BEFORE UPDATE ON log_history
            BEGIN
                SELECT RAISE(ABORT, 'log_history is append-only');
            END
        """)
    return statements


# Statement modes inside one queued operation.
_ALWAYS = "always"
_UPDATE = "update"
_IF_MISSING = "if_missing"
_MUST_UPDATE = "must_update"


class WriteBatch:
    """Queued writes applied in one transaction by commit().

    Each queued operation may expand to several statements (deleting a log
    also deletes its history) but counts once against BATCH_LIMIT.
    """

    def __init__(self, store):
        self._store = store
        self._ops = []

    def __len__(self):
        return len(self._ops)

    def _columns(self, table, data):
        defaults = TABLES.get(table)
        if defaults is None:
            raise ValueError(f"Unknown table: {table}")
        unknown = set(data) - set(defaults)
        if unknown:
            raise ValueError(f"Unknown column(s) for {table}: {', '.join(sorted(unknown))}")
        return {k: v for k, v in data.items() if k != "id"}

    @staticmethod
    def _insert_sql(table, values, conflict):
        cols = ["id"] + list(values)
        placeholders = ", ".join(["?"] * len(cols))
        return f"INSERT INTO {table} ({', '.join(cols)}) VALUES ({placeholders}) ON CONFLICT(id) {conflict}"

    @staticmethod
    def _update_sql(table, values):
        assignments = ", ".join(f"{c}=?" for c in values)
        return f"UPDATE {table} SET {assignments} WHERE id=?"

    def set(self, table, doc_id, data, merge=False):
        """Replace the row, or with merge=True change only the given columns.

        A merge on a missing id inserts a full row built from the column
        defaults, so it needs the same required columns as a replace.
        """
        values = self._columns(table, data)
        full = {k: v for k, v in TABLES[table].items() if k != "id"}
        full.update(values)

        if not merge:
            updates = ", ".join(f"{c}=excluded.{c}" for c in full)
            sql = self._insert_sql(table, full, f"DO UPDATE SET {updates}")
            self._ops.append([(sql, (doc_id, *full.values()), _ALWAYS)])
            return self

        statements = []
        if values:
            statements.append((self._update_sql(table, values), (*values.values(), doc_id), _UPDATE))
        statements.append((
            self._insert_sql(table, full, "DO NOTHING"),
            (doc_id, *full.values()),
            _IF_MISSING,
        ))
        self._ops.append(statements)
        return self

    def update(self, table, doc_id, data):
        """Change columns of an existing row; commit() raises NotFoundError if it is gone."""
        values = self._columns(table, data)
        if not values:
            raise ValueError(f"Nothing to update for {table} {doc_id}")
        self._ops.append([(
            self._update_sql(table, values),
            (*values.values(), doc_id),
            _MUST_UPDATE,
        )])
        return self

    def delete(self, table, doc_id):
        if table not in TABLES:
            raise ValueError(f"Unknown table: {table}")
        statements = []
        if table == "logs":
            statements.append(("DELETE FROM log_history WHERE log_id=?", (doc_id,), _ALWAYS))
        statements.append((f"DELETE FROM {table} WHERE id=?", (doc_id,), _ALWAYS))
        self._ops.append(statements)
        return self

    def append_history(self, log_id, snapshot):
        self._ops.append([(
            """
            INSERT INTO log_history (log_id, changed_at, changed_by, old_date, old_activity, old_hours)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                log_id,
                snapshot["changed_at"],
                snapshot.get("changed_by") or "",
                snapshot.get("old_date") or "",
                snapshot.get("old_activity") or "",
                float(snapshot.get("old_hours") or 0),
            ),
            _ALWAYS,
        )])
        return self

    def _apply(self, conn, statements):
        updated = 0
        for sql, args, mode in statements:
            if mode == _IF_MISSING and updated:
                continue
            cur = conn.execute(sql, args)
            if mode in (_UPDATE, _MUST_UPDATE):
                updated = cur.rowcount or 0
            if mode == _MUST_UPDATE and not updated:
                # args end with the row id
                raise NotFoundError(f"Row {args[-1]} no longer exists.")

    def commit(self):
        if not self._ops:
            return 0
        conn = self._store.conn
        try:
            for statements in self._ops:
                self._apply(conn, statements)
            conn.commit()
        except NotFoundError:
            conn.rollback()
            raise
        except Exception as exc:
            conn.rollback()
            raise StoreError(f"Batch write failed: {exc}") from exc
        written = len(self._ops)
        self._ops = []
        return written


class PortalStore:
    def __init__(self, conn, backend="sqlite"):
        self.conn = conn
        self.backend = backend

    # ---------- lifecycle ----------

    def init_schema(self):
        cur = self.conn.cursor()
        if self.backend == "sqlite":
            cur.execute("PRAGMA journal_mode=WAL")
        for statement in _schema_statements(self.backend):
            cur.execute(statement)
        self.conn.commit()

    def close(self):
        self.conn.close()

    def batch(self):
        return WriteBatch(self)

    # ---------- raw access for app-level tables ----------

    def execute(self, sql, args=()):
        try:
            return self.conn.execute(sql, args)
        except Exception as exc:
            raise StoreError(str(exc)) from exc

    def commit(self):
        self.conn.commit()

    def rollback(self):
        self.conn.rollback()

    def _all(self, sql, args=()):
        return [dict(r) for r in self.execute(sql, args).fetchall()]

    def _one(self, sql, args=()):
        row = self.execute(sql, args).fetchone()
        return dict(row) if row else None

    def has_index(self, index_name):
        if self.backend == "postgres":
            sql = "SELECT indexname AS name FROM pg_indexes WHERE indexname=?"
        else:
            sql = "SELECT name FROM sqlite_master WHERE type='index' AND name=?"
        return self._one(sql, (index_name,)) is not None

    def _require_index(self, index_name):
        if not self.has_index(index_name):
            table, column = REQUIRED_INDEXES[index_name]
            raise MissingIndexError(index_name, table, column)

    def count(self, table):
        if table not in TABLES and table not in {"log_history", "audit_logs"}:
            raise ValueError(f"Unknown table: {table}")
        return int(self.execute(f"SELECT COUNT(*) AS c FROM {table}").fetchone()["c"] or 0)

    # ---------- members ----------

    def get_member(self, member_id):
        if not member_id:
            return None
        return self._one("SELECT * FROM members WHERE id=?", (member_id,))

    def find_members(self, email=None, provenance=None, legacy_key=None):
        clauses = []
        args = []
        if email is not None:
            clauses.append("lower(email)=?")
            args.append(email.strip().lower())
        if provenance is not None:
            clauses.append("provenance=?")
            args.append(provenance)
        if legacy_key is not None:
            clauses.append("legacy_key=?")
            args.append(int(legacy_key))
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return self._all(f"SELECT * FROM members{where} ORDER BY id", tuple(args))

    def list_members(self, provenance=None):
        if provenance:
            return self._all(
                "SELECT * FROM members WHERE provenance=? ORDER BY last_name, first_name, id",
                (provenance,),
            )
        return self._all("SELECT * FROM members ORDER BY last_name, first_name, id")

    # ---------- logs ----------

    def get_log(self, log_id):
        if not log_id:
            return None
        return self._one("SELECT * FROM logs WHERE id=?", (log_id,))

    def logs_for_member(self, member_id):
        return self._all(
            "SELECT * FROM logs WHERE member_id=? ORDER BY date DESC, id",
            (member_id,),
        )

    def logs_for_members(self, member_ids):
        ids = list(member_ids)
        if not ids:
            return []
        placeholders = ", ".join(["?"] * len(ids))
        return self._all(
            f"SELECT * FROM logs WHERE member_id IN ({placeholders}) ORDER BY member_id, date, id",
            tuple(ids),
        )

    def list_logs(self):
        return self._all("SELECT * FROM logs ORDER BY date DESC, id")

    def logs_with_status(self, status):
        return self._all(
            "SELECT * FROM logs WHERE status=? ORDER BY date, id",
            (status,),
        )

    def logs_for_sheet(self, sheet_code):
        self._require_index("idx_logs_source_sheet")
        return self._all(
            "SELECT * FROM logs WHERE source_sheet_id=? ORDER BY id",
            (sheet_code,),
        )

    def history_for_log(self, log_id):
        return self._all(
            """
            SELECT changed_at, changed_by, old_date, old_activity, old_hours
            FROM log_history
            WHERE log_id=?
            ORDER BY id
            """,
            (log_id,),
        )

    # ---------- sheets ----------

    def get_sheet(self, sheet_id):
        if not sheet_id:
            return None
        return self._one("SELECT * FROM volunteer_sheets WHERE id=?", (sheet_id,))

    def find_sheet_by_code(self, sheet_code):
        code = (sheet_code or "").strip()
        if not code:
            return None
        if not code.startswith("#"):
            code = f"#{code}"
        return self._one("SELECT * FROM volunteer_sheets WHERE sheet_code=?", (code,))

    def list_sheets(self):
        return self._all("SELECT * FROM volunteer_sheets ORDER BY sheet_date DESC, id")

    # ---------- users ----------

    def get_user(self, user_id):
        if not user_id:
            return None
        return self._one("SELECT * FROM users WHERE id=?", (user_id,))

    def find_user_by_email(self, email):
        return self._one(
            "SELECT * FROM users WHERE email=?",
            ((email or "").strip().lower(),),
        )


def init_db(settings, max_retries=8):
    for attempt in range(1, max_retries + 1):
        store = None
        try:
            store = open_store(settings)
            store.init_schema()
            return
        except Exception as exc:
            msg = str(exc).lower()
            retryable_sqlite = (not settings.using_postgres) and isinstance(exc, sqlite3.OperationalError) and "locked" in msg
            retryable_pg = settings.using_postgres and ("could not connect" in msg or "connection refused" in msg or "timeout" in msg)
            if (retryable_sqlite or retryable_pg) and attempt < max_retries:
                print(f"⚠️ DB init retry ({attempt}/{max_retries}): {exc}")
                time.sleep(1.5)
                continue
            raise
        finally:
            if store is not None:
                store.close()
