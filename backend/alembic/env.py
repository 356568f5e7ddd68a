from logging.config import fileConfig

from sqlalchemy import create_engine, pool

from alembic import context

from seo_billing.core.config import settings
from seo_billing.core.base import Base

from seo_billing.models.user import User  # noqa: F401
from seo_billing.models.subscription import Subscription  # noqa: F401
from seo_billing.models.credit import CreditGrant  # noqa: F401
from seo_billing.models.discount_code import DiscountCode, DiscountCodeRedemption  # noqa: F401
from seo_billing.models.rate_limit import RateLimit  # noqa: F401
from seo_billing.models.shopify_webhook_event import ShopifyWebhookEvent  # noqa: F401
from seo_billing.models.shopify_session import ShopifySession  # noqa: F401

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# Migrations run with the DDL-capable migrator credentials when they are configured.
migrations_url = settings.migrations_database_url

# ConfigParser treats "%" as interpolation markers; escape them for the .ini writer.
config.set_main_option("sqlalchemy.url", migrations_url.replace("%", "%%"))

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    """Emit SQL to stdout without a live connection."""
    context.configure(
        url=migrations_url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = create_engine(
        migrations_url,
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection, target_metadata=target_metadata
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
