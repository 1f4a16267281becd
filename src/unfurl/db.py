from __future__ import annotations

import os
import sqlite3

from .migrations import apply_migrations


def connect_db(path: str) -> sqlite3.Connection:
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    conn = sqlite3.connect(path, timeout=5.0, check_same_thread=False)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.execute("PRAGMA foreign_keys=ON")
    apply_migrations(conn)
    return conn


def ping(conn: sqlite3.Connection) -> bool:
    row = conn.execute("SELECT 1").fetchone()
    return bool(row and row[0] == 1)
