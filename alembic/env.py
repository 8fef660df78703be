import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from companyos.core.config import get_settings
from companyos.core.database import Base
from companyos.crm import models as crm_models  # noqa: F401
from companyos.directory import models as directory_models  # noqa: F401
from companyos.notifications import models as notification_models  # noqa: F401
from companyos.ops import models as ops_models  # noqa: F401

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _database_url(default: str | None) -> str:
    return os.getenv("DATABASE_URL") or default or get_settings().database_url


def run_migrations_offline() -> None:
    url = _database_url(config.get_main_option("sqlalchemy.url"))
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    section = config.get_section(config.config_ini_section, {})
    section["sqlalchemy.url"] = _database_url(section.get("sqlalchemy.url"))
    connectable = engine_from_config(
        section,
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
