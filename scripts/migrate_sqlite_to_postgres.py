#!/usr/bin/env python3
"""
Copy a Club Portal SQLite database into Postgres.

Usage:
  python scripts/migrate_sqlite_to_postgres.py \
    --sqlite data/db/clubportal.db \
    --postgres-url "$DATABASE_URL" \
    --truncate-first
"""

import argparse
import os
import sqlite3
import sys
from pathlib import Path
from typing import Iterable, Sequence

import psycopg

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from portal_store import PortalStore, PostgresConnectionCompat  # noqa: E402

DEFAULT_SQLITE_PATH = ROOT / "data" / "db" / "clubportal.db"

# table -> conflict column; parents before children
TABLE_KEYS = {
    "users": "id",
    "members": "id",
    "logs": "id",
    "log_history": "id",
    "volunteer_sheets": "id",
    "password_resets": "token",
    "audit_logs": "id",
    "login_attempts": "ip_key",
}

# Rows here are never updated, only inserted.
INSERT_ONLY = {"log_history"}
SERIAL_TABLES = ("log_history", "audit_logs")


def create_schema(pg):
    PortalStore(PostgresConnectionCompat(pg), "postgres").init_schema()


def sqlite_table_columns(conn, table_name: str) -> list[str]:
    rows = conn.execute(f"PRAGMA table_info({table_name})").fetchall()
    return [row[1] for row in rows]


def postgres_table_columns(pg, table_name: str) -> list[str]:
    with pg.cursor() as cur:
        cur.execute("""
            SELECT column_name
            FROM information_schema.columns
            WHERE table_schema='public' AND table_name=%s
            ORDER BY ordinal_position
        """, (table_name,))
        return [r[0] for r in cur.fetchall()]


def fetch_sqlite_rows(conn, table_name: str, columns: Sequence[str], key: str):
    conn.row_factory = sqlite3.Row
    sql = f"SELECT {', '.join(columns)} FROM {table_name} ORDER BY {key}"
    return conn.execute(sql).fetchall()


def truncate_tables(pg, table_names: Iterable[str]):
    with pg.cursor() as cur:
        cur.execute(
            "TRUNCATE TABLE " + ", ".join(table_names) + " RESTART IDENTITY CASCADE"
        )
    pg.commit()


def upsert_rows(pg, table_name: str, columns: Sequence[str], rows, key: str):
    if not rows:
        return 0
    placeholders = ", ".join(["%s"] * len(columns))
    col_list = ", ".join(columns)
    updates = ", ".join([f"{c}=EXCLUDED.{c}" for c in columns if c != key])
    if table_name in INSERT_ONLY or not updates:
        conflict = "DO NOTHING"
    else:
        conflict = f"DO UPDATE SET {updates}"
    sql = f"""
        INSERT INTO {table_name} ({col_list})
        VALUES ({placeholders})
        ON CONFLICT ({key}) {conflict}
    """
    payload = [tuple(row[c] for c in columns) for row in rows]
    with pg.cursor() as cur:
        cur.executemany(sql, payload)
    pg.commit()
    return len(payload)


def sync_sequence(pg, table_name: str):
    with pg.cursor() as cur:
        cur.execute("SELECT pg_get_serial_sequence(%s, 'id')", (table_name,))
        seq_row = cur.fetchone()
        if not seq_row or not seq_row[0]:
            return
        cur.execute(f"SELECT COALESCE(MAX(id), 1) FROM {table_name}")
        max_id = cur.fetchone()[0]
        cur.execute("SELECT setval(%s, %s, true)", (seq_row[0], max_id))
    pg.commit()


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--sqlite", default=str(DEFAULT_SQLITE_PATH), help="Path to sqlite db file")
    parser.add_argument(
        "--postgres-url",
        default=os.environ.get("DATABASE_URL", ""),
        help="Postgres connection URL (defaults to DATABASE_URL)",
    )
    parser.add_argument("--truncate-first", action="store_true", help="Clear destination tables before copying")
    args = parser.parse_args()

    if not args.postgres_url.strip():
        raise SystemExit("Missing --postgres-url and DATABASE_URL not set.")
    if not Path(args.sqlite).exists():
        raise SystemExit(f"❌ SQLite file not found: {args.sqlite}")

    sqlite_conn = sqlite3.connect(args.sqlite)
    pg_conn = psycopg.connect(args.postgres_url)

    try:
        create_schema(pg_conn)

        if args.truncate_first:
            truncate_tables(pg_conn, reversed(list(TABLE_KEYS)))

        total_rows = 0
        for table_name, key in TABLE_KEYS.items():
            src_cols = sqlite_table_columns(sqlite_conn, table_name)
            if not src_cols:
                print(f"⚠️ {table_name}: missing in sqlite, skipped")
                continue
            dst_cols = postgres_table_columns(pg_conn, table_name)
            cols = [c for c in src_cols if c in dst_cols]
            rows = fetch_sqlite_rows(sqlite_conn, table_name, cols, key)
            written = upsert_rows(pg_conn, table_name, cols, rows, key)
            if table_name in SERIAL_TABLES:
                sync_sequence(pg_conn, table_name)
            total_rows += written
            print(f"{table_name}: {written} row(s)")

        print(f"\n🎉 Migration complete. Total rows copied: {total_rows}")
    finally:
        sqlite_conn.close()
        pg_conn.close()


if __name__ == "__main__":
    main()
