"""
Agent Runtime - Database Backend Tests

Tests the abstraction layer against SQLite (always available).
The same interface contract applies to PostgreSQL.
"""

import os
import sqlite3
import sys
import tempfile
import threading
import unittest
from unittest import mock

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from engine.db import DatabaseBackend, SQLiteBackend, _safe_dsn, create_backend


class TestSQLiteBackendBasics(unittest.TestCase):
    """Core operations through the abstraction layer."""

    def setUp(self):
        self.db = SQLiteBackend(path=":memory:")
        self.db.executescript("""
            CREATE TABLE IF NOT EXISTS items (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL UNIQUE,
                status TEXT NOT NULL DEFAULT 'RUNNING'
            );
        """)

    def tearDown(self):
        self.db.close()

    def test_insert_and_fetch(self):
        self.db.execute("INSERT INTO items (name) VALUES (?)", ("alpha",))
        row = self.db.fetchone("SELECT * FROM items WHERE name = ?", ("alpha",))
        self.assertEqual(row["status"], "RUNNING")
        self.assertIsNone(self.db.fetchone("SELECT * FROM items WHERE name = ?", ("nope",)))
        self.assertEqual(len(self.db.fetchall("SELECT * FROM items")), 1)

    def test_guarded_update_rowcount(self):
        self.db.execute("INSERT INTO items (name) VALUES (?)", ("alpha",))
        sql = "UPDATE items SET status = ? WHERE name = ? AND status = ?"
        first = self.db.execute(sql, ("STOPPED", "alpha", "RUNNING"))
        second = self.db.execute(sql, ("FAILED", "alpha", "RUNNING"))
        self.assertEqual(first.rowcount, 1)
        self.assertEqual(second.rowcount, 0)

    def test_integrity_error_classified(self):
        self.db.execute("INSERT INTO items (name) VALUES (?)", ("alpha",))
        with self.assertRaises(self.db.integrity_errors):
            self.db.execute("INSERT INTO items (name) VALUES (?)", ("alpha",))
        self.assertIn(sqlite3.OperationalError, self.db.transient_errors)

    def test_transaction_rollback(self):
        with self.assertRaises(RuntimeError):
            with self.db.transaction():
                self.db.execute("INSERT INTO items (name) VALUES (?)", ("beta",))
                raise RuntimeError("abort")
        self.assertEqual(self.db.fetchall("SELECT * FROM items"), [])

    def test_nested_transaction_joins(self):
        with self.db.transaction():
            self.db.execute("INSERT INTO items (name) VALUES (?)", ("a",))
            with self.db.transaction():
                self.db.execute("INSERT INTO items (name) VALUES (?)", ("b",))
        self.assertEqual(len(self.db.fetchall("SELECT * FROM items")), 2)

    def test_backend_type(self):
        self.assertEqual(self.db.backend_type, "sqlite")
        self.assertEqual(self.db.translate_sql("SELECT ?"), "SELECT ?")


class TestSQLiteFileBackend(unittest.TestCase):
    def test_concurrent_writers(self):
        with tempfile.TemporaryDirectory() as tmp:
            db = SQLiteBackend(path=os.path.join(tmp, "runtime.db"))
            db.executescript("CREATE TABLE n (v INTEGER)")

            def writer(k):
                for i in range(20):
                    with db.transaction():
                        db.execute("INSERT INTO n (v) VALUES (?)", (k * 100 + i,))

            threads = [threading.Thread(target=writer, args=(k,)) for k in range(4)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()
            self.assertEqual(db.fetchone("SELECT COUNT(*) AS c FROM n")["c"], 80)
            db.close()


class TestFactory(unittest.TestCase):
    def test_sqlite_default(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            db = create_backend(path=":memory:")
        self.assertIsInstance(db, SQLiteBackend)
        db.close()

    def test_postgres_requires_dsn(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            with self.assertRaises(ValueError):
                create_backend("postgres")

    def test_unknown_backend(self):
        with self.assertRaises(ValueError):
            create_backend("oracle")

    def test_abstract_interface(self):
        with self.assertRaises(NotImplementedError):
            DatabaseBackend().execute("SELECT 1")


class TestSafeDsn(unittest.TestCase):
    def test_password_masked(self):
        self.assertEqual(_safe_dsn("postgresql://qa:s3cret@db:5432/agents"),
                         "postgresql://qa:****@db:5432/agents")

    def test_no_password(self):
        self.assertEqual(_safe_dsn("postgresql://db/agents"), "postgresql://db/agents")


if __name__ == "__main__":
    unittest.main()
