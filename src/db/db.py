from __future__ import annotations

from typing import Any

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from db.models import Base


def create_engine_from_url(url: str, *, timeout: float = 5.0, echo: bool = False) -> Engine:
    """Create an engine whose connections never wait on the database longer than ``timeout``."""
    connect_args: dict[str, Any] = {}
    if url.startswith("sqlite"):
        connect_args = {"timeout": timeout, "check_same_thread": False}
    elif url.startswith("postgresql"):
        connect_args = {"connect_timeout": max(1, int(timeout))}

    engine = create_engine(url, echo=echo, connect_args=connect_args, pool_pre_ping=True)

    if engine.dialect.name == "postgresql":
        statement_timeout_ms = int(timeout * 1000)

        @event.listens_for(engine, "connect")
        def _set_statement_timeout(dbapi_connection: Any, connection_record: Any) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute(f"SET statement_timeout = {statement_timeout_ms}")
            cursor.close()

    return engine


def init_db(engine: Engine) -> sessionmaker[Session]:
    Base.metadata.create_all(engine)
    return sessionmaker(engine, expire_on_commit=False)
