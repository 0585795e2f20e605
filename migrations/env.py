from sqlalchemy import engine_from_config
from sqlalchemy import pool

from alembic import context

import sys
from pathlib import Path

# Add the project root directory to the Python path
sys.path.append(str(Path(__file__).parents[1]))

# this is the Alembic Config object
config = context.config

# Set up logging manually
import logging
logging.basicConfig(
    format='%(levelname)-5.5s [%(name)s] %(message)s',
    level=logging.INFO
)
logger = logging.getLogger('alembic.env')

try:
    # Import the Flask application
    from fundraising.app import app, db
    logger.info("Successfully imported Flask app and db")
except Exception as e:
    logger.error(f"Failed to import Flask app: {str(e)}")
    raise

with app.app_context():
    db_url = app.config['SQLALCHEMY_DATABASE_URI']

    # Migrations need a file, not an in-memory database
    if db_url.startswith('sqlite:'):
        from sqlalchemy.engine import url as sa_url
        url = sa_url.make_url(db_url)
        if not url.database or url.database == ':memory:':
            db_url = 'sqlite:///fundraising.db'
            logger.info("Using SQLite database")

    config.set_main_option('sqlalchemy.url', db_url)

target_metadata = db.metadata


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode."""
    logger.info("Running offline migrations")
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode."""
    logger.info("Running online migrations")

    engine_config = config.get_section(config.config_ini_section, {})
    engine_config['sqlalchemy.url'] = config.get_main_option('sqlalchemy.url')

    connectable = engine_from_config(
        engine_config,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            compare_server_default=True,
            transaction_per_migration=True,
            render_as_batch=True,  # SQLite compatibility
        )

        with context.begin_transaction():
            try:
                context.run_migrations()
                logger.info("Migrations completed successfully")
            except Exception as e:
                logger.error(f"Error during migrations: {str(e)}")
                raise


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
