# Bountyline schema migrations (PostgreSQL backend only).
# SQLite databases are bootstrapped from db.SQLITE_SCHEMA and never migrated.
#
#   alembic upgrade head              apply against BOUNTYLINE_POSTGRES_DSN
#   alembic upgrade head --sql        render the DDL without a server

import os
import sys
from logging.config import fileConfig

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from alembic import context
from dotenv import load_dotenv
from sqlalchemy import create_engine

load_dotenv(os.path.join(ROOT, ".env"))

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)


def _database_url():
    url = (os.environ.get("BOUNTYLINE_POSTGRES_DSN")
           or os.environ.get("DATABASE_URL")
           or config.get_main_option("sqlalchemy.url"))
    if url and url.startswith(("postgres://", "postgresql://")):
        url = "postgresql+psycopg://" + url.split("://", 1)[1]
    return url


def migrate_offline(url):
    context.configure(url=url, target_metadata=None, literal_binds=True,
                      dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()


def migrate_online(url):
    engine = create_engine(url)
    try:
        with engine.connect() as conn:
            context.configure(connection=conn, target_metadata=None)
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()


if context.is_offline_mode():
    migrate_offline(_database_url())
else:
    migrate_online(_database_url())
