import os
from sqlalchemy import engine_from_config, pool
from alembic import context
from campusmart.db.session import Base
import campusmart.db.models  # noqa

config = context.config
target_metadata = Base.metadata

VERSION_TABLE = "alembic_version_market"

def run_migrations_offline():
    url = os.getenv("POSTGRES_DSN")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        version_table=VERSION_TABLE,
        compare_type=True
    )
    with context.begin_transaction():
        context.run_migrations()

def run_migrations_online():
    connectable = engine_from_config(
        {"sqlalchemy.url": os.getenv("POSTGRES_DSN")},
        prefix="sqlalchemy.",
        poolclass=pool.NullPool
    )
    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            version_table=VERSION_TABLE,
            compare_type=True
        )
        with context.begin_transaction():
            context.run_migrations()

if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
