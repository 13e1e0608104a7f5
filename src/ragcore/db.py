from functools import lru_cache

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine


@lru_cache
def get_engine(database_url: str) -> Engine:
    engine = create_engine(database_url, pool_pre_ping=True)

    if engine.dialect.name == "sqlite":

        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, _connection_record) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys = ON")
            cursor.close()

    return engine


def sqlite_url(db_path: str) -> str:
    return f"sqlite+pysqlite:///{db_path}"
