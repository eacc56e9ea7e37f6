"""
数据库管理器

基于 SQLModel 提供统一的数据库操作接口，使用线程池处理异步操作。
"""

import asyncio
from collections.abc import Callable, Iterator
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, TypeVar

from sqlalchemy import DateTime, text
from sqlalchemy.types import TypeDecorator
from sqlmodel import Session, SQLModel, create_engine
from sqlmodel.pool import StaticPool

from stepline.framework.shared.exceptions import DatabaseError, SteplineError

T = TypeVar("T")


class UTCDateTime(TypeDecorator):
    """始终以 UTC 感知时间读写的 DateTime 列类型"""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        # SQLite 不保存时区信息
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class DatabaseManager:
    """数据库管理器"""

    def __init__(self, database_url: str = "sqlite:///./data/stepline.db", **kwargs):
        self.database_url = database_url
        self.engine = None
        self._is_sqlite = database_url.startswith("sqlite")
        # SQLite 只允许单写者，串行化所有操作
        self._executor = ThreadPoolExecutor(
            max_workers=1 if self._is_sqlite else 10,
            thread_name_prefix="stepline-db",
        )
        self._init_engine(**kwargs)

    def _init_engine(self, **kwargs):
        """初始化数据库引擎"""
        if self._is_sqlite:
            config: dict[str, Any] = {
                "echo": False,
                "connect_args": {"check_same_thread": False, "timeout": 30.0},
            }
            if ":memory:" in self.database_url:
                config["poolclass"] = StaticPool
            else:
                # 确保数据目录存在
                db_path = Path(self.database_url.split(":///", 1)[-1])
                db_path.parent.mkdir(parents=True, exist_ok=True)
        else:
            config = {
                "echo": False,
                "pool_pre_ping": True,
                "pool_recycle": 3600,
                "pool_size": 10,
                "max_overflow": 20,
                "pool_timeout": 30,
            }

        config.update(kwargs)
        self.engine = create_engine(self.database_url, **config)

    def create_tables(self):
        """创建所有表"""
        # 注册表模型
        import stepline.domain.pipeline.models  # noqa: F401

        try:
            SQLModel.metadata.create_all(self.engine)
        except Exception as e:
            raise DatabaseError(f"创建数据库表失败: {e}", "create_tables") from e

    @contextmanager
    def get_session(self) -> Iterator[Session]:
        """获取数据库会话（成功提交，异常回滚）"""
        session = Session(self.engine, expire_on_commit=False)
        try:
            yield session
            session.commit()
        except SteplineError:
            session.rollback()
            raise
        except Exception as e:
            session.rollback()
            raise DatabaseError(f"数据库操作失败: {e}", "session_operation") from e
        finally:
            session.close()

    async def run_sync(self, func: Callable[..., T], *args: Any) -> T:
        """在数据库线程池中执行同步函数"""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, func, *args)

    async def run_in_session(self, func: Callable[[Session], T]) -> T:
        """在单个事务中执行 func(session)"""
        def _call() -> T:
            with self.get_session() as session:
                return func(session)

        return await self.run_sync(_call)

    async def get_by_id(
        self, model_class: type[SQLModel], record_id: Any
    ) -> SQLModel | None:
        """根据ID获取记录"""
        return await self.run_in_session(lambda session: session.get(model_class, record_id))

    async def create(self, record: SQLModel) -> SQLModel:
        """创建记录"""
        def _create(session: Session) -> SQLModel:
            session.add(record)
            session.flush()
            session.refresh(record)
            return record

        return await self.run_in_session(_create)

    async def update(
        self,
        model_class: type[SQLModel],
        record_id: Any,
        update_data: dict[str, Any],
    ) -> SQLModel | None:
        """更新记录"""
        def _update(session: Session) -> SQLModel | None:
            record = session.get(model_class, record_id)
            if not record:
                return None

            for key, value in update_data.items():
                setattr(record, key, value)

            session.add(record)
            session.flush()
            session.refresh(record)
            return record

        return await self.run_in_session(_update)

    async def ping(self) -> bool:
        """检查数据库连通性"""
        def _ping(session: Session) -> bool:
            session.connection().execute(text("SELECT 1"))
            return True

        try:
            return await self.run_in_session(_ping)
        except DatabaseError:
            return False

    async def close(self):
        """关闭数据库连接"""
        if self.engine:
            self.engine.dispose()
        self._executor.shutdown(wait=True)

    async def __aenter__(self):
        """异步上下文管理器入口"""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """异步上下文管理器出口"""
        await self.close()


async def init_database(database_url: str) -> DatabaseManager:
    """创建数据库管理器并建表"""
    db_manager = DatabaseManager(database_url)
    await db_manager.run_sync(db_manager.create_tables)
    return db_manager
