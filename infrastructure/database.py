"""
数据库引擎与会话工厂

进程级别的 engine/AsyncSessionLocal 供 API 使用；Celery 任务在每次 asyncio.run
内通过 build_engine 自建引擎（连接池绑定创建它的事件循环）。
"""
from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from core.config import settings
from infrastructure.models import Base


# 同步驱动名 -> 异步驱动名
_ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "sqlite": "sqlite+aiosqlite",
}


def _build_async_url(database_url: str) -> str:
    """未指定驱动时补全为异步驱动"""
    url = make_url(database_url)
    if "+" in url.drivername:
        return database_url
    try:
        return str(url.set(drivername=_ASYNC_DRIVERS[url.drivername]))
    except KeyError:
        raise ValueError(f"不支持的数据库驱动: {url.drivername}. 请使用 async 驱动或更新 DATABASE__URL") from None


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """创建异步引擎；SQLite 需要显式 BEGIN 才能正确支持 SAVEPOINT"""
    async_url = _build_async_url(database_url)
    engine = create_async_engine(async_url, echo=echo)

    if make_url(async_url).get_backend_name() == "sqlite":
        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_connect(dbapi_connection, connection_record):
            # 关闭驱动自带的隐式事务，由下面的 begin 事件接管
            dbapi_connection.isolation_level = None

        @event.listens_for(engine.sync_engine, "begin")
        def _sqlite_begin(conn):
            conn.exec_driver_sql("BEGIN")

    return engine


engine = build_engine(settings.database.url, echo=settings.database.echo)

AsyncSessionLocal = async_sessionmaker(bind=engine, expire_on_commit=False)


async def create_tables(bind: AsyncEngine = engine) -> None:
    """按模型建表（开发环境与测试使用，生产走 Alembic）"""
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
