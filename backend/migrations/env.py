"""
Alembic Environment Configuration

- Reads DATABASE_URL from the environment (.env via python-dotenv)
- Imports the automation ORM models for autogenerate support
- Skips the read-only collaborator tables (leads, projects, users,
  tenant_messaging_configs), which are owned by the CRM schema
"""
import os
import sys
from logging.config import fileConfig

from sqlalchemy import engine_from_config, pool
from alembic import context
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Add the backend directory to Python path so lead_engine is importable
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from lead_engine.shared.db.base import Base
from lead_engine.modules.automation import models  # noqa: F401  (registers every table on Base.metadata)

config = context.config

DATABASE_URL = os.environ.get("DATABASE_URL")
if DATABASE_URL:
    # Alembic needs a SYNC driver: asyncpg URL -> psycopg2 URL
    SYNC_DATABASE_URL = DATABASE_URL.replace(
        "postgresql+asyncpg://",
        "postgresql+psycopg2://"
    ).replace(
        "postgresql://",
        "postgresql+psycopg2://"
    )
    config.set_main_option("sqlalchemy.url", SYNC_DATABASE_URL)
else:
    raise ValueError("DATABASE_URL environment variable is not set!")

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def include_object(obj, name, type_, reflected, compare_to):
    """Leave tables marked skip_autogenerate (collaborator tables) alone."""
    if type_ == "table" and obj.info.get("skip_autogenerate", False):
        return False
    return True


def run_migrations_offline() -> None:
    """Generate SQL scripts without connecting to the database."""
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        include_object=include_object,
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
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            include_object=include_object,
            compare_type=True,
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
