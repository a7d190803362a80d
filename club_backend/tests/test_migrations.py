import os
import tempfile
import unittest
from datetime import datetime
from unittest.mock import patch

from sqlalchemy import MetaData, create_engine, inspect, text
from sqlalchemy.exc import SQLAlchemyError

from club_backend.db import (
    MIGRATIONS,
    FilePayload,
    ResultRow,
    SqlContentStore,
    create_db_engine,
)
from club_backend.migrations import MigrationError, needs_migration, run_migrations

LEGACY_RESULTS_DDL = """
CREATE TABLE results (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    category VARCHAR(50) NOT NULL,
    year VARCHAR(10) NOT NULL,
    image_path VARCHAR(255) NOT NULL,
    description TEXT,
    created_at TIMESTAMP,
    updated_at TIMESTAMP,
    UNIQUE (category, year)
)
"""

LEGACY_DOCUMENTS_DDL = """
CREATE TABLE documents (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title VARCHAR(255) NOT NULL,
    category VARCHAR(50) NOT NULL,
    file_path VARCHAR(255) NOT NULL,
    description TEXT,
    created_at TIMESTAMP,
    updated_at TIMESTAMP
)
"""

JPEG_BYTES = b"\xff\xd8\xff\xe0" + bytes(range(256))
PDF_BYTES = b"%PDF-1.4\n" + bytes(range(256))


class LegacyLayoutMigrationTests(unittest.TestCase):
    """Runs against a temporary SQLite file seeded with the path-based layout."""

    def setUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.upload_root = os.path.join(tmp.name, "public")
        self.database_url = f"sqlite+pysqlite:///{os.path.join(tmp.name, 'club.db')}"

        self._write_upload("assets/results/tablica.jpg", JPEG_BYTES)
        self._write_upload("assets/documents/statut.pdf", PDF_BYTES)

        engine = create_engine(self.database_url)
        with engine.begin() as conn:
            conn.exec_driver_sql(LEGACY_RESULTS_DDL)
            conn.exec_driver_sql(LEGACY_DOCUMENTS_DDL)
            conn.exec_driver_sql(
                "INSERT INTO results (category, year, image_path, description, created_at, updated_at) "
                "VALUES ('mini-odbojka', '2024', 'assets/results/tablica.jpg', 'Prvo mjesto', "
                "'2023-05-01 10:00:00', '2023-05-02 11:00:00')"
            )
            conn.exec_driver_sql(
                "INSERT INTO results (category, year, image_path, description, created_at, updated_at) "
                "VALUES ('djevojcice', '2023', 'assets/results/gone.jpg', 'Lost', "
                "'2023-05-01 10:00:00', '2023-05-01 10:00:00')"
            )
            conn.exec_driver_sql(
                "INSERT INTO documents (title, category, file_path, description, created_at, updated_at) "
                "VALUES ('Statut kluba', 'statut', '/assets/documents/statut.pdf', NULL, "
                "'2022-01-01 09:00:00', '2022-01-01 09:00:00')"
            )
        engine.dispose()

    def _write_upload(self, relative_path: str, data: bytes) -> None:
        path = os.path.join(self.upload_root, relative_path)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "wb") as f:
            f.write(data)

    def _open_store(self) -> SqlContentStore:
        store = SqlContentStore(self.database_url, legacy_upload_root=self.upload_root)
        self.addCleanup(store.close)
        return store

    def _columns(self, table: str) -> set[str]:
        engine = create_engine(self.database_url)
        try:
            return {col["name"] for col in inspect(engine).get_columns(table)}
        finally:
            engine.dispose()

    def test_readable_files_are_inlined(self):
        store = self._open_store()

        columns = self._columns("results")
        self.assertIn("image_data", columns)
        self.assertNotIn("image_path", columns)

        results = store.list_results()
        self.assertEqual(len(results), 1)
        record = results[0]
        self.assertEqual(record.id, 1)
        self.assertEqual(record.category, "mini-odbojka")
        self.assertEqual(record.description, "Prvo mjesto")
        self.assertEqual(record.image_filename, "tablica.jpg")
        self.assertEqual(record.image_mimetype, "image/jpeg")
        self.assertEqual(
            record.created_at.replace(tzinfo=None), datetime(2023, 5, 1, 10, 0)
        )
        self.assertEqual(store.get_result_image(1).data, JPEG_BYTES)

    def test_rows_with_missing_files_are_dropped(self):
        store = self._open_store()
        self.assertIsNone(store.get_result_by_key("djevojcice", "2023"))

    def test_documents_are_inlined(self):
        store = self._open_store()

        self.assertNotIn("file_path", self._columns("documents"))
        documents = store.list_documents()
        self.assertEqual(len(documents), 1)
        self.assertEqual(documents[0].title, "Statut kluba")
        self.assertEqual(documents[0].file_mimetype, "application/pdf")
        self.assertEqual(store.get_document_file(documents[0].id).data, PDF_BYTES)

    def test_migrated_table_keeps_unique_key_and_accepts_new_rows(self):
        store = self._open_store()

        payload = FilePayload(data=b"new", filename="n.png", mimetype="image/png")
        replaced = store.save_result("mini-odbojka", "2024", payload, "Updated")
        self.assertEqual(replaced.id, 1)
        self.assertEqual(len(store.list_results()), 1)

        added = store.save_result("mlade-kadetkinje", "2024", payload)
        self.assertNotEqual(added.id, 1)
        self.assertEqual(len(store.list_results()), 2)

    def test_second_run_is_a_noop(self):
        store = self._open_store()
        before = store.list_results()

        engine = create_db_engine(self.database_url)
        self.addCleanup(engine.dispose)
        for migration in MIGRATIONS:
            self.assertFalse(needs_migration(engine, migration))
        self.assertEqual(
            run_migrations(engine, MIGRATIONS, legacy_upload_root=self.upload_root), []
        )

        reopened = self._open_store()
        self.assertEqual(reopened.list_results(), before)
        self.assertEqual(reopened.get_result_image(1).data, JPEG_BYTES)

    def test_first_run_reports_applied_migrations(self):
        engine = create_db_engine(self.database_url)
        self.addCleanup(engine.dispose)
        applied = run_migrations(
            engine, MIGRATIONS, legacy_upload_root=self.upload_root
        )
        self.assertEqual(
            applied, ["0001_results_inline_image", "0002_documents_inline_file"]
        )

    def test_io_failure_aborts_and_leaves_legacy_table(self):
        with patch(
            "club_backend.migrations._read_legacy_file",
            side_effect=PermissionError("denied"),
        ):
            with self.assertRaises(MigrationError):
                SqlContentStore(self.database_url, legacy_upload_root=self.upload_root)

        self.assertIn("image_path", self._columns("results"))
        engine = create_engine(self.database_url)
        try:
            self.assertFalse(inspect(engine).has_table("results_new"))
            with engine.connect() as conn:
                count = conn.execute(text("SELECT COUNT(*) FROM results")).scalar()
            self.assertEqual(count, 2)
        finally:
            engine.dispose()

    def test_leftover_staging_table_is_replaced(self):
        engine = create_engine(self.database_url)
        with engine.begin() as conn:
            conn.exec_driver_sql("CREATE TABLE results_new (junk INTEGER)")
        engine.dispose()

        store = self._open_store()
        self.assertEqual(len(store.list_results()), 1)
        self.assertIn("image_data", self._columns("results"))

    def test_new_ids_follow_every_legacy_id(self):
        engine = create_engine(self.database_url)
        with engine.begin() as conn:
            conn.exec_driver_sql(
                "INSERT INTO results (category, year, image_path, created_at, updated_at) "
                "VALUES ('kadetkinje', '2022', 'assets/results/tablica.jpg', "
                "'2022-05-01 10:00:00', '2022-05-01 10:00:00')"
            )
            conn.exec_driver_sql("DELETE FROM results WHERE category = 'kadetkinje'")
        engine.dispose()

        store = self._open_store()
        payload = FilePayload(data=b"new", filename="n.png", mimetype="image/png")
        added = store.save_result("juniorke", "2025", payload)
        # Legacy ids: 1 carried over, 2 dropped for its missing file, 3 deleted.
        self.assertGreater(added.id, 3)
        self.assertIsNone(store.get_result_image(2))

    def test_failure_inside_swap_rolls_back_every_step(self):
        with patch(
            "club_backend.migrations._rename_table",
            side_effect=SQLAlchemyError("rename failed"),
        ):
            with self.assertRaises(MigrationError):
                SqlContentStore(self.database_url, legacy_upload_root=self.upload_root)

        self.assertIn("image_path", self._columns("results"))
        engine = create_db_engine(self.database_url)
        try:
            self.assertFalse(inspect(engine).has_table("results_new"))
            self.assertTrue(needs_migration(engine, MIGRATIONS[0]))
            with engine.connect() as conn:
                count = conn.execute(text("SELECT COUNT(*) FROM results")).scalar()
            self.assertEqual(count, 2)
        finally:
            engine.dispose()

        store = self._open_store()
        self.assertEqual(store.get_result_image(1).data, JPEG_BYTES)


class InterruptedSwapTests(unittest.TestCase):
    def setUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.database_url = f"sqlite+pysqlite:///{os.path.join(tmp.name, 'club.db')}"

    def test_staging_table_is_renamed_into_place(self):
        engine = create_engine(self.database_url)
        staging = ResultRow.__table__.to_metadata(MetaData(), name="results_new")
        staging.create(engine)
        with engine.begin() as conn:
            conn.execute(
                staging.insert().values(
                    category="mini-odbojka",
                    year="2024",
                    image_data=b"kept",
                    image_filename="kept.png",
                    image_mimetype="image/png",
                )
            )
        engine.dispose()

        store = SqlContentStore(self.database_url)
        self.addCleanup(store.close)
        record = store.get_result_by_key("mini-odbojka", "2024")
        self.assertIsNotNone(record)
        self.assertEqual(store.get_result_image(record.id).data, b"kept")


class FreshDatabaseTests(unittest.TestCase):
    def test_empty_database_needs_no_migration(self):
        engine = create_db_engine("sqlite+pysqlite:///:memory:")
        self.addCleanup(engine.dispose)
        for migration in MIGRATIONS:
            self.assertFalse(needs_migration(engine, migration))
        self.assertEqual(run_migrations(engine, MIGRATIONS), [])


if __name__ == "__main__":
    unittest.main()
