import os
import sys

BASE_DIR = os.path.dirname(os.path.dirname(__file__))
if BASE_DIR not in sys.path:
    sys.path.insert(0, BASE_DIR)

from app import create_app
from app.contexts.erp.interfaces.workers.runtime import get_gateway
from app.contexts.sync.engine import ReconciliationEngine
from app.db import get_db, init_db


app = create_app()


if __name__ == "__main__":
    with app.app_context():
        init_db()
        if os.environ.get("SYNC_ON_INIT", "0").strip().lower() in {"1", "true", "yes", "on"}:
            engine = ReconciliationEngine(get_db(), get_gateway(app))
            for kind in ("items", "contacts"):
                result = engine.reconcile(kind, None, triggered_by="init_db")
                print(f"{kind}: {result.status} {result.counts()}")
    print("Database initialized.")
