import os


def _env_bool(name: str, default: str = "false") -> bool:
    return (os.getenv(name, default) or "").strip().lower() in ("1", "true", "yes", "on")


class BaseConfig:
    # Secrets (env in prod; dev/test may use defaults)
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-not-secure")
    APP_ENV = os.environ.get("APP_ENV", "development")

    # Tenant storage. A "{company_code}" placeholder selects one database per tenant;
    # without it every tenant shares one database with prefixed tables.
    TENANT_DATABASE_URL = os.environ.get("TENANT_DATABASE_URL", "sqlite:///instance/tenants.db")
    STORAGE_TIMEOUT_SECONDS = float(os.environ.get("STORAGE_TIMEOUT_SECONDS", "10"))

    # Linked-pair writes share one transaction when enabled
    FEEDBACK_TRANSACTIONAL_LINKED_WRITES = _env_bool("FEEDBACK_TRANSACTIONAL_LINKED_WRITES")
    FEEDBACK_DEFAULT_PAGE_SIZE = int(os.environ.get("FEEDBACK_DEFAULT_PAGE_SIZE", "10"))
    FEEDBACK_MAX_PAGE_SIZE = int(os.environ.get("FEEDBACK_MAX_PAGE_SIZE", "100"))

    # Supplied by the auth layer in front of this service
    COMPANY_CODE_HEADER = os.environ.get("COMPANY_CODE_HEADER", "X-Company-Code")
    USER_ID_HEADER = os.environ.get("USER_ID_HEADER", "X-User-Id")

    # Logging / misc
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    SENTRY_DSN = os.environ.get("SENTRY_DSN")

    # Flask-Limiter default: off globally; prefer per-route limits
    RATELIMIT_DEFAULT = None
    BULK_RATE_LIMIT = os.environ.get("BULK_RATE_LIMIT", "30 per minute")


class DevelopmentConfig(BaseConfig):
    DEBUG = True
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "DEBUG")


class ProductionConfig(BaseConfig):
    DEBUG = False
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "WARNING")
    # Required at startup; validated in create_app()
    SECRET_KEY = os.environ.get("SECRET_KEY")
    TENANT_DATABASE_URL = os.environ.get("TENANT_DATABASE_URL")


class TestingConfig(BaseConfig):
    TESTING = True
    DEBUG = True
    TENANT_DATABASE_URL = os.environ.get("TEST_TENANT_DATABASE_URL", "sqlite://")
    RATELIMIT_ENABLED = False


_ENV_MAP = {
    "development": DevelopmentConfig,
    "staging": ProductionConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
}


def get_config():
    env = os.environ.get("APP_ENV", "development").lower()
    return _ENV_MAP.get(env, DevelopmentConfig)
