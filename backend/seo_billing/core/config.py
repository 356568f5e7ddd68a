# seo_billing/core/config.py
import os
from urllib.parse import quote_plus

from dotenv import load_dotenv


def str_to_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def parse_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


def merge_unique(items: list[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for v in items:
        if v in seen:
            continue
        seen.add(v)
        out.append(v)
    return out


class Settings:
    def __init__(self) -> None:
        # Only load .env for local/dev. In prod, env vars come from the service config.
        self.ENV = os.getenv("ENV", "dev").strip().lower()  # dev | prod
        if self.ENV != "prod":
            load_dotenv()

        # ----------------------------
        # Database
        # ----------------------------
        self.DATABASE_URL = os.getenv("DATABASE_URL", "").strip()
        self.DB_HOST = os.getenv("DB_HOST", "")
        self.DB_PORT = os.getenv("DB_PORT", "5432")
        self.DB_NAME = os.getenv("DB_NAME", "")
        self.DB_APP_USER = os.getenv("DB_APP_USER", "")
        self.DB_APP_PASSWORD = os.getenv("DB_APP_PASSWORD", "")
        self.DB_MIGRATOR_USER = os.getenv("DB_MIGRATOR_USER", "")
        self.DB_MIGRATOR_PASSWORD = os.getenv("DB_MIGRATOR_PASSWORD", "")
        self.DB_SSLMODE = os.getenv("DB_SSLMODE", "require").strip().lower()

        # ----------------------------
        # CORS
        # ----------------------------
        dev_defaults = [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ]

        cors_from_env = parse_csv(os.getenv("CORS_ORIGINS"))
        if self.ENV == "prod":
            self.CORS_ORIGINS = merge_unique(cors_from_env)
        else:
            self.CORS_ORIGINS = merge_unique(cors_from_env + dev_defaults)

        # ----------------------------
        # Shopify app credentials / Admin API
        # ----------------------------
        self.SHOPIFY_API_KEY = os.getenv("SHOPIFY_API_KEY", "")
        self.SHOPIFY_API_SECRET = os.getenv("SHOPIFY_API_SECRET", "")
        self.SHOPIFY_API_VERSION = os.getenv("SHOPIFY_API_VERSION", "2025-01").strip()
        self.SHOPIFY_GRAPHQL_TIMEOUT_SECONDS = float(os.getenv("SHOPIFY_GRAPHQL_TIMEOUT_SECONDS", "30"))
        # Session tokens are short lived; allow a little clock skew between Shopify and us.
        self.SESSION_TOKEN_LEEWAY_SECONDS = int(os.getenv("SESSION_TOKEN_LEEWAY_SECONDS", "10"))

        # ----------------------------
        # Billing / credits
        # ----------------------------
        self.DEFAULT_FREE_CREDITS = int(os.getenv("DEFAULT_FREE_CREDITS", "10"))
        self.SUBSCRIPTION_PERIOD_DAYS = int(os.getenv("SUBSCRIPTION_PERIOD_DAYS", "30"))
        self.DISCOUNT_CODE_MAX_LENGTH = int(os.getenv("DISCOUNT_CODE_MAX_LENGTH", "50"))

        # ----------------------------
        # Admin tooling (plan overrides, discount code management)
        # ----------------------------
        self.ADMIN_API_TOKEN = os.getenv("ADMIN_API_TOKEN", "")

        # ----------------------------
        # Rate limiting
        # ----------------------------
        self.RATE_LIMIT_ENABLED = str_to_bool(os.getenv("RATE_LIMIT_ENABLED", "true"), default=True)
        self.REDEEM_RATE_LIMIT_MAX_ATTEMPTS = int(os.getenv("REDEEM_RATE_LIMIT_MAX_ATTEMPTS", "5"))
        self.REDEEM_RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("REDEEM_RATE_LIMIT_WINDOW_SECONDS", "600"))

        # Final: fail fast in prod
        self._validate_prod()

    def _validate_prod(self) -> None:
        if self.ENV != "prod":
            return

        missing: list[str] = []

        if not self.SHOPIFY_API_KEY:
            missing.append("SHOPIFY_API_KEY")
        if not self.SHOPIFY_API_SECRET:
            missing.append("SHOPIFY_API_SECRET")
        if not self.DATABASE_URL:
            if not self.DB_HOST:
                missing.append("DB_HOST")
            if not self.DB_NAME:
                missing.append("DB_NAME")
            if not self.DB_APP_USER:
                missing.append("DB_APP_USER")
            if not self.DB_APP_PASSWORD:
                missing.append("DB_APP_PASSWORD")
            if self.DB_SSLMODE != "require":
                raise RuntimeError("DB_SSLMODE must be 'require' in prod")

        if self.ADMIN_API_TOKEN and len(self.ADMIN_API_TOKEN) < 32:
            raise RuntimeError("ADMIN_API_TOKEN must be at least 32 characters in prod")

        if not self.CORS_ORIGINS:
            missing.append("CORS_ORIGINS")

        cors_joined = ",".join(self.CORS_ORIGINS)
        if "localhost" in cors_joined or "127.0.0.1" in cors_joined:
            raise RuntimeError("CORS_ORIGINS contains localhost/dev origins in prod")

        if missing:
            raise RuntimeError(f"Missing required prod env vars: {', '.join(missing)}")

    @property
    def is_prod(self) -> bool:
        return self.ENV == "prod"

    def _build_database_url(self, user: str, password: str) -> str:
        encoded_password = quote_plus(password)
        return (
            f"postgresql+psycopg2://{user}:{encoded_password}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
            f"?sslmode={self.DB_SSLMODE}"
        )

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return self._build_database_url(self.DB_APP_USER, self.DB_APP_PASSWORD)

    @property
    def migrations_database_url(self) -> str:
        if self.DB_MIGRATOR_USER and self.DB_MIGRATOR_PASSWORD:
            return self._build_database_url(self.DB_MIGRATOR_USER, self.DB_MIGRATOR_PASSWORD)
        return self.database_url


settings = Settings()
