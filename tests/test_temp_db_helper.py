import os
import tempfile
import unittest

from tests.helpers.temp_db import TempDbSandbox, assert_safe_temp_db_path, open_sqlite_temp_connection


class TempDbHelperTest(unittest.TestCase):
    def test_temp_db_create_and_cleanup(self) -> None:
        sandbox = TempDbSandbox(prefix="temp_db_sanity")
        db_path = sandbox.db_path
        temp_dir = sandbox.temp_dir

        self.assertTrue(os.path.exists(temp_dir))
        self.assertTrue(db_path.startswith(tempfile.gettempdir()))

        conn = open_sqlite_temp_connection(db_path)
        try:
            conn.execute("CREATE TABLE IF NOT EXISTS sanity (id INTEGER PRIMARY KEY, value TEXT)")
            conn.execute("INSERT INTO sanity (value) VALUES ('ok')")
            row = conn.execute("SELECT COUNT(*) FROM sanity").fetchone()
            self.assertEqual(int(row[0]), 1)
        finally:
            conn.close()

        sandbox.cleanup()
        self.assertFalse(os.path.exists(db_path))
        self.assertFalse(os.path.exists(temp_dir))

    def test_disallow_workspace_paths(self) -> None:
        workspace_db = os.path.join(os.getcwd(), "storefront_sync_test.db")
        with self.assertRaises(ValueError):
            assert_safe_temp_db_path(workspace_db)

    def test_make_config_points_at_sandbox(self) -> None:
        sandbox = TempDbSandbox(prefix="temp_db_config")
        try:
            TempConfig = sandbox.make_config(object, TESTING=True)
            self.assertEqual(TempConfig.DB_PATH, sandbox.db_path)
            self.assertEqual(TempConfig.DATABASE_DIR, sandbox.temp_dir)
            self.assertFalse(TempConfig.SYNC_SCHEDULER_ENABLED)
            self.assertFalse(TempConfig.DB_AUTO_INIT)
            self.assertTrue(TempConfig.TESTING)
        finally:
            sandbox.cleanup()

    def test_table_names_lists_created_tables(self) -> None:
        sandbox = TempDbSandbox(prefix="temp_db_tables")
        try:
            self.assertEqual(sandbox.table_names(), set())
            conn = open_sqlite_temp_connection(sandbox.db_path)
            conn.execute("CREATE TABLE jobs (id INTEGER PRIMARY KEY)")
            conn.close()
            self.assertEqual(sandbox.table_names(), {"jobs"})
        finally:
            sandbox.cleanup()


if __name__ == "__main__":
    unittest.main()
