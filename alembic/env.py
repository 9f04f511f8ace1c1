"""Alembic environment for the notification pipeline tables."""

import os
import sys
from logging.config import fileConfig
from pathlib import Path

from alembic import context
from dotenv import load_dotenv
from sqlalchemy import create_engine, pool

project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

# Same precedence as main.py: .env.local wins over .env
load_dotenv(project_root / ".env.local")
load_dotenv(project_root / ".env")

from school_notify.database import get_sync_database_url, is_configured
from school_notify.tables import include_in_migrations, metadata

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = metadata


def get_url() -> str:
    if not is_configured():
        raise RuntimeError(
            "DATABASE_URL is not set; add it to .env.local or the environment before migrating"
        )
    return get_sync_database_url()


def run_migrations_offline() -> None:
    """Emit SQL for the notification tables without a database connection."""
    context.configure(
        url=get_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        include_object=include_in_migrations,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = create_engine(
        get_url(),
        poolclass=pool.NullPool,
        connect_args={"connect_timeout": int(os.environ.get("MIGRATION_CONNECT_TIMEOUT", "10"))},
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            include_object=include_in_migrations,
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
