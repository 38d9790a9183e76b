"""
Инициализация базы данных и сессий SQLAlchemy.

Назначение:
- Создание engine
- Контекстный менеджер для сессий
- Единая точка доступа к БД для API и воркеров
"""

from __future__ import annotations

from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from counseling_engine.common.config import get_settings


# =============================================================================
# ENGINE / SESSION FACTORY
# =============================================================================
def _build_engine(dsn: str) -> Engine:
    connect_args: dict = {}
    if dsn.startswith("sqlite"):
        # Воркеры и тесты ходят в SQLite из нескольких потоков
        connect_args = {"check_same_thread": False, "timeout": 30}
    eng = create_engine(
        dsn,
        pool_pre_ping=get_settings().db_pool_pre_ping,
        connect_args=connect_args,
    )
    if dsn.startswith("sqlite"):
        _serialize_sqlite_writes(eng)
    return eng


def _serialize_sqlite_writes(eng: Engine) -> None:
    """
    pysqlite начинает транзакцию лениво, и два писателя могут получить
    "database is locked" вместо ожидания. Берём RESERVED-блокировку сразу.
    """

    @event.listens_for(eng, "connect")
    def _on_connect(dbapi_conn, _record) -> None:
        dbapi_conn.isolation_level = None

    @event.listens_for(eng, "begin")
    def _on_begin(conn) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


engine = _build_engine(get_settings().database_dsn)

SessionLocal = sessionmaker(
    bind=engine,
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
)


# =============================================================================
# CONTEXT MANAGER
# =============================================================================
@contextmanager
def db_session() -> Session:
    """
    Контекстный менеджер для работы с БД.

    Использование:
        with db_session() as session:
            session.add(...)
    """
    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_schema() -> None:
    """
    Создать таблицы по ORM-метаданным (dev/тесты; в prod через alembic).
    """
    from counseling_engine.storage.models import Base

    Base.metadata.create_all(engine)
