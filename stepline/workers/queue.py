"""
运行队列

任务只携带 run_id；任务 ID 固定为 run:<run_id>，重复入队会被 arq 合并。
自动重试关闭（worker max_tries = 1），重试只在步骤级进行。
已完成/失败任务的历史按数量上限保留，被挤出的结果键随之删除。
"""

from abc import ABC, abstractmethod
from typing import Any

from arq import ArqRedis, create_pool
from arq.connections import RedisSettings
from arq.constants import health_check_key_suffix, result_key_prefix

from stepline.framework.shared.exceptions import QueueError
from stepline.framework.shared.logging import get_logger
from stepline.workers.serialization import job_deserializer, job_serializer

logger = get_logger(__name__)

EXECUTE_RUN_FUNCTION = "execute_run"


def run_job_id(run_id: str) -> str:
    """运行对应的任务 ID"""
    return f"run:{run_id}"


class RunQueue(ABC):
    """运行队列接口"""

    @abstractmethod
    async def init(self) -> None:
        """建立连接"""

    @abstractmethod
    async def close(self) -> None:
        """释放连接"""

    @abstractmethod
    async def enqueue_run(self, run_id: str) -> str:
        """
        投递运行

        Returns:
            str: 任务 ID

        Raises:
            QueueError: 投递失败
        """

    @abstractmethod
    async def record_outcome(self, job_id: str, success: bool) -> None:
        """记录任务结果并裁剪历史"""

    @abstractmethod
    async def health(self) -> dict[str, Any]:
        """队列深度与工作进程存活状态"""


class ArqRunQueue(RunQueue):
    """基于 arq 的运行队列"""

    def __init__(
        self,
        redis_settings: RedisSettings | None = None,
        queue_name: str = "stepline:pipeline-runs",
        keep_completed: int = 1000,
        keep_failed: int = 5000,
        pool: ArqRedis | None = None,
    ):
        self.redis_settings = redis_settings or RedisSettings()
        self.queue_name = queue_name
        self.keep_completed = keep_completed
        self.keep_failed = keep_failed
        self._pool = pool
        # 由外部注入的连接池（如 worker ctx['redis']）不由本对象关闭
        self._owns_pool = pool is None

    @classmethod
    def from_settings(cls, settings, pool: ArqRedis | None = None) -> "ArqRunQueue":
        return cls(
            redis_settings=settings.get_redis_settings(),
            queue_name=settings.ARQ_QUEUE_NAME,
            keep_completed=settings.QUEUE_KEEP_COMPLETED,
            keep_failed=settings.QUEUE_KEEP_FAILED,
            pool=pool,
        )

    @property
    def completed_key(self) -> str:
        return f"{self.queue_name}:completed"

    @property
    def failed_key(self) -> str:
        return f"{self.queue_name}:failed"

    @property
    def pool(self) -> ArqRedis:
        if self._pool is None:
            raise QueueError("运行队列未初始化", self.queue_name, "pool")
        return self._pool

    async def init(self) -> None:
        """建立连接池"""
        if self._pool is not None:
            return
        try:
            self._pool = await create_pool(
                self.redis_settings,
                job_serializer=job_serializer,
                job_deserializer=job_deserializer,
                default_queue_name=self.queue_name,
            )
        except Exception as e:
            raise QueueError(f"连接 Redis 失败: {e}", self.queue_name, "init") from e
        self._owns_pool = True
        logger.info("运行队列已连接", queue_name=self.queue_name)

    async def close(self) -> None:
        """关闭连接池"""
        if self._pool is not None and self._owns_pool:
            await self._pool.aclose()
        self._pool = None

    async def enqueue_run(self, run_id: str) -> str:
        """投递运行（同一 run_id 只会存在一个任务）"""
        job_id = run_job_id(run_id)
        try:
            job = await self.pool.enqueue_job(
                EXECUTE_RUN_FUNCTION,
                run_id,
                _job_id=job_id,
                _queue_name=self.queue_name,
            )
        except QueueError:
            raise
        except Exception as e:
            raise QueueError(f"运行入队失败: {e}", self.queue_name, "enqueue") from e

        if job is None:
            logger.info("运行已在队列中，忽略重复入队", run_id=run_id, job_id=job_id)
        else:
            logger.info("运行已入队", run_id=run_id, job_id=job_id)
        return job_id

    async def record_outcome(self, job_id: str, success: bool) -> None:
        """记录任务结果，超出上限的旧结果被删除"""
        key, keep = (
            (self.completed_key, self.keep_completed)
            if success
            else (self.failed_key, self.keep_failed)
        )

        await self.pool.lpush(key, job_id)
        evicted = await self.pool.lrange(key, keep, -1)
        if not evicted:
            return

        await self.pool.ltrim(key, 0, keep - 1)
        result_keys = [
            result_key_prefix + (item.decode() if isinstance(item, bytes) else item)
            for item in evicted
        ]
        await self.pool.delete(*result_keys)
        logger.debug("已清理旧任务结果", key=key, evicted=len(result_keys))

    async def health(self) -> dict[str, Any]:
        """队列深度与工作进程存活状态"""
        try:
            depth = await self.pool.zcard(self.queue_name)
            heartbeat = await self.pool.get(self.queue_name + health_check_key_suffix)
        except QueueError:
            raise
        except Exception as e:
            logger.error("队列健康检查失败", error=str(e))
            return {"healthy": False, "queue_name": self.queue_name, "error": str(e)}

        if isinstance(heartbeat, bytes):
            heartbeat = heartbeat.decode()
        return {
            "healthy": True,
            "queue_name": self.queue_name,
            "queue_depth": int(depth),
            "worker_alive": heartbeat is not None,
            "worker_heartbeat": heartbeat,
        }
