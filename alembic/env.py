from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, make_url, pool

from rendezvous.config import settings
from rendezvous.models import Base


config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata

# Migrations run on the sync drivers of the two supported backends
SYNC_DRIVERS = {
    "sqlite": "sqlite+pysqlite",
    "postgresql": "postgresql+psycopg",
}


def sync_database_url(database_url: str) -> str:
    url = make_url(database_url)
    backend = url.get_backend_name()
    if backend not in SYNC_DRIVERS:
        raise ValueError(f"Unsupported database backend for migrations: {backend}")
    return url.set(drivername=SYNC_DRIVERS[backend]).render_as_string(hide_password=False)


config.set_main_option(
    "sqlalchemy.url", sync_database_url(settings.database_url).replace("%", "%%"))


def run_migrations_offline() -> None:
    """Emit the migration SQL without connecting."""
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
