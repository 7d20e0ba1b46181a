"""Alembic environment: DATABASE_URL from the secrets provider, metadata from apps.api.db.models."""
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from apps.api.db.models import Base
from apps.shared.config import DATABASE_URL_DEFAULT
from apps.shared.secrets import get_secret

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# configparser interpolation: escape % in passwords
config.set_main_option("sqlalchemy.url", get_secret("DATABASE_URL", DATABASE_URL_DEFAULT).replace("%", "%%"))
target_metadata = Base.metadata


def run_migrations_offline() -> None:
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
