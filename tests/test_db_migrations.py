import os
import unittest

from app import create_app
from app.config import Config
from app.db import close_db
from app.db_migrations import to_sqlalchemy_url
from tests.helpers.temp_db import TempDbSandbox


class DbMigrationsTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="storefront_migrations")
        self.db_path = self._temp_db.db_path
        self._prev_env = os.environ.get("FLASK_ENV")
        os.environ["FLASK_ENV"] = "development"

    def tearDown(self) -> None:
        if self._prev_env is None:
            os.environ.pop("FLASK_ENV", None)
        else:
            os.environ["FLASK_ENV"] = self._prev_env
        self._temp_db.cleanup()

    def _build_app(self, *, testing: bool, db_auto_init: bool):
        temp_config = self._temp_db.make_config(
            Config,
            TESTING=testing,
            DB_AUTO_INIT=db_auto_init,
            SYNC_SCHEDULER_ENABLED=False,
            LOG_JSON=False,
        )
        return create_app(temp_config)

    def test_schema_not_created_by_default(self) -> None:
        app = self._build_app(testing=False, db_auto_init=False)
        with app.app_context():
            close_db()

        self.assertNotIn("jobs", self._temp_db.table_names())

    def test_schema_created_with_explicit_dev_flag(self) -> None:
        app = self._build_app(testing=False, db_auto_init=True)
        with app.app_context():
            close_db()

        for table in ("products", "customers", "orders", "order_items", "sync_runs", "jobs", "erp_invoice_lines"):
            self.assertIn(table, self._temp_db.table_names(), table)

    def test_flask_db_upgrade_and_downgrade(self) -> None:
        app = self._build_app(testing=False, db_auto_init=False)
        runner = app.test_cli_runner()

        upgrade_result = runner.invoke(args=["db", "upgrade"])
        self.assertEqual(upgrade_result.exit_code, 0, msg=upgrade_result.output)
        self.assertIn("jobs", self._temp_db.table_names())
        self.assertIn("erp_invoice_lines", self._temp_db.table_names())

        step_back = runner.invoke(args=["db", "downgrade"])
        self.assertEqual(step_back.exit_code, 0, msg=step_back.output)
        self.assertNotIn("erp_invoice_lines", self._temp_db.table_names())
        self.assertIn("jobs", self._temp_db.table_names())

        downgrade_result = runner.invoke(args=["db", "downgrade", "base"])
        self.assertEqual(downgrade_result.exit_code, 0, msg=downgrade_result.output)
        self.assertNotIn("jobs", self._temp_db.table_names())

        reupgrade_result = runner.invoke(args=["db", "upgrade"])
        self.assertEqual(reupgrade_result.exit_code, 0, msg=reupgrade_result.output)
        self.assertIn("sync_runs", self._temp_db.table_names())

    def test_stamp_marks_auto_initialized_schema(self) -> None:
        app = self._build_app(testing=False, db_auto_init=True)
        runner = app.test_cli_runner()

        result = runner.invoke(args=["db", "stamp"])

        self.assertEqual(result.exit_code, 0, msg=result.output)
        self.assertIn("alembic_version", self._temp_db.table_names())
        upgrade_result = runner.invoke(args=["db", "upgrade"])
        self.assertEqual(upgrade_result.exit_code, 0, msg=upgrade_result.output)

    def test_sqlalchemy_url_normalization(self) -> None:
        self.assertEqual(to_sqlalchemy_url("postgres://u:p@h/db"), "postgresql://u:p@h/db")
        self.assertTrue(to_sqlalchemy_url(self.db_path).startswith("sqlite:///"))
        with self.assertRaises(RuntimeError):
            to_sqlalchemy_url("")


if __name__ == "__main__":
    unittest.main()
