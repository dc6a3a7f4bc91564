import os


def _bool_env(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _int_env(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


class Config:
    BASE_DIR = os.path.dirname(os.path.dirname(__file__))
    DATABASE_URL = os.environ.get("DATABASE_URL")
    DATABASE_DIR = None if DATABASE_URL else os.path.join(BASE_DIR, "database")
    DB_PATH = DATABASE_URL or os.path.join(DATABASE_DIR, "storefront_sync.db")
    DB_AUTO_INIT = _bool_env("DB_AUTO_INIT", True)

    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-storefront-sync")
    LOG_JSON = _bool_env("LOG_JSON", True)
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Operator surface (/api/admin/*)
    AUTH_ENABLED = _bool_env("AUTH_ENABLED", True)
    OPERATOR_API_TOKEN = os.environ.get("OPERATOR_API_TOKEN")
    RATE_LIMIT_ENABLED = _bool_env("RATE_LIMIT_ENABLED", True)
    RATE_LIMIT_WINDOW_SECONDS = _int_env("RATE_LIMIT_WINDOW_SECONDS", 60)
    RATE_LIMIT_MAX_REQUESTS = _int_env("RATE_LIMIT_MAX_REQUESTS", 300)

    # ERP adapter
    ERP_MODE = os.environ.get("ERP_MODE", "zoho")
    ERP_CLIENT_ID = os.environ.get("ERP_CLIENT_ID")
    ERP_CLIENT_SECRET = os.environ.get("ERP_CLIENT_SECRET")
    ERP_REFRESH_TOKEN = os.environ.get("ERP_REFRESH_TOKEN")
    ERP_ORGANIZATION_ID = os.environ.get("ERP_ORGANIZATION_ID")
    ERP_ACCOUNTS_URL = os.environ.get("ERP_ACCOUNTS_URL", "https://accounts.zoho.com/oauth/v2/token")
    ERP_INVENTORY_BASE_URL = os.environ.get("ERP_INVENTORY_BASE_URL", "https://www.zohoapis.com/inventory/v1")
    ERP_BOOKS_BASE_URL = os.environ.get("ERP_BOOKS_BASE_URL", "https://www.zohoapis.com/books/v3")
    ERP_TIMEOUT_SECONDS = _int_env("ERP_TIMEOUT_SECONDS", 20)
    ERP_PAGE_SIZE = _int_env("ERP_PAGE_SIZE", 200)
    ERP_TOKEN_REFRESH_MARGIN_SECONDS = _int_env("ERP_TOKEN_REFRESH_MARGIN_SECONDS", 60)
    ERP_SIMULATOR_SEED = _int_env("ERP_SIMULATOR_SEED", 42)
    ERP_CIRCUIT_ENABLED = _bool_env("ERP_CIRCUIT_ENABLED", True)
    ERP_CIRCUIT_ERROR_RATE_THRESHOLD = _float_env("ERP_CIRCUIT_ERROR_RATE_THRESHOLD", 0.6)
    ERP_CIRCUIT_MIN_SAMPLES = _int_env("ERP_CIRCUIT_MIN_SAMPLES", 5)
    ERP_CIRCUIT_WINDOW_SECONDS = _int_env("ERP_CIRCUIT_WINDOW_SECONDS", 120)
    ERP_CIRCUIT_OPEN_SECONDS = _int_env("ERP_CIRCUIT_OPEN_SECONDS", 30)
    ERP_CIRCUIT_HALF_OPEN_MAX_CALLS = _int_env("ERP_CIRCUIT_HALF_OPEN_MAX_CALLS", 1)

    # Orchestrator
    SYNC_SCHEDULER_ENABLED = _bool_env("SYNC_SCHEDULER_ENABLED", True)
    SYNC_MODE = os.environ.get("SYNC_MODE", "webhook")
    SYNC_TIMEZONE = os.environ.get("SYNC_TIMEZONE", "America/New_York")
    SYNC_BUSINESS_HOURS_START = _int_env("SYNC_BUSINESS_HOURS_START", 8)
    SYNC_BUSINESS_HOURS_END = _int_env("SYNC_BUSINESS_HOURS_END", 18)
    SYNC_BUSINESS_HOURS_INTERVAL_MINUTES = _int_env("SYNC_BUSINESS_HOURS_INTERVAL_MINUTES", 120)
    SYNC_OFF_HOURS_INTERVAL_MINUTES = _int_env("SYNC_OFF_HOURS_INTERVAL_MINUTES", 360)
    SYNC_DAILY_HOUR = _int_env("SYNC_DAILY_HOUR", 3)
    SYNC_WEEKLY_WEEKDAY = _int_env("SYNC_WEEKLY_WEEKDAY", 6)
    SYNC_WEEKLY_HOUR = _int_env("SYNC_WEEKLY_HOUR", 2)
    CUSTOMER_SYNC_INTERVAL_MINUTES = _int_env("CUSTOMER_SYNC_INTERVAL_MINUTES", 60)
    CUSTOMER_SYNC_RECHECK_MINUTES = _int_env("CUSTOMER_SYNC_RECHECK_MINUTES", 60)
    SYNC_RUN_ON_STARTUP = _bool_env("SYNC_RUN_ON_STARTUP", False)
    SYNC_RUN_MAX_SECONDS = _int_env("SYNC_RUN_MAX_SECONDS", 900)
    SYNC_PAGE_MAX_RETRIES = _int_env("SYNC_PAGE_MAX_RETRIES", 3)
    SYNC_MANUAL_LOCK_TIMEOUT_SECONDS = _int_env("SYNC_MANUAL_LOCK_TIMEOUT_SECONDS", 5)
    SYNC_ERROR_MESSAGES_LIMIT = _int_env("SYNC_ERROR_MESSAGES_LIMIT", 100)

    # Job queue
    JOB_QUEUE_DRAIN_INTERVAL_SECONDS = _int_env("JOB_QUEUE_DRAIN_INTERVAL_SECONDS", 60)
    JOB_QUEUE_BATCH_SIZE = _int_env("JOB_QUEUE_BATCH_SIZE", 25)
    JOB_QUEUE_MAX_ATTEMPTS = _int_env("JOB_QUEUE_MAX_ATTEMPTS", 3)
    JOB_QUEUE_BACKOFF_SECONDS = _int_env("JOB_QUEUE_BACKOFF_SECONDS", 30)
    JOB_QUEUE_MAX_BACKOFF_SECONDS = _int_env("JOB_QUEUE_MAX_BACKOFF_SECONDS", 600)
    JOB_QUEUE_BACKOFF_JITTER_RATIO = _float_env("JOB_QUEUE_BACKOFF_JITTER_RATIO", 0.25)
    JOB_QUEUE_DEFER_SECONDS = _int_env("JOB_QUEUE_DEFER_SECONDS", 60)
    JOB_PROCESSING_TIMEOUT_SECONDS = _int_env("JOB_PROCESSING_TIMEOUT_SECONDS", 300)
    JOB_QUEUE_CRITICAL_AGE_SECONDS = _int_env("JOB_QUEUE_CRITICAL_AGE_SECONDS", 900)
    JOB_QUEUE_CRITICAL_PENDING_JOBS = _int_env("JOB_QUEUE_CRITICAL_PENDING_JOBS", 50)

    # Webhooks
    WEBHOOK_SECRET = os.environ.get("WEBHOOK_SECRET")
    WEBHOOK_ALLOW_UNSIGNED = _bool_env("WEBHOOK_ALLOW_UNSIGNED", False)
    WEBHOOK_PROCESS_INLINE = _bool_env("WEBHOOK_PROCESS_INLINE", False)
    WEBHOOK_MAX_WORKERS = _int_env("WEBHOOK_MAX_WORKERS", 4)
    WEBHOOK_EVENT_LOG_CAPACITY = _int_env("WEBHOOK_EVENT_LOG_CAPACITY", 50)
    ERP_CALL_LOG_CAPACITY = _int_env("ERP_CALL_LOG_CAPACITY", 200)

    def __init__(self):
        env = os.environ.get("FLASK_ENV", "development").lower()
        if env == "production" and not self.DATABASE_URL:
            raise RuntimeError("DATABASE_URL is required in production.")
        if env == "production" and self.SECRET_KEY == "dev-secret-storefront-sync":
            raise RuntimeError("SECRET_KEY must be set in production.")
        if env == "production" and self.AUTH_ENABLED and not self.OPERATOR_API_TOKEN:
            raise RuntimeError("OPERATOR_API_TOKEN must be set in production.")
