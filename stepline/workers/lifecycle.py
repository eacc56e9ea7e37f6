"""
Arq 生命周期钩子

启动时构建数据库、网关、队列、额度核算、执行器与调度器并放入 ctx；
关闭时按相反顺序释放。
"""

import time
from typing import Any

import psutil
from loguru import logger

from stepline.domain.billing.credits import CreditAccountant
from stepline.framework.adapters.llm_adapter import build_adapters
from stepline.framework.shared.config import Settings, get_settings
from stepline.framework.shared.secrets import SecretCipher
from stepline.framework.storage.database import init_database
from stepline.framework.storage.pipeline_gateway import PipelineGateway
from stepline.workers.executor import StepExecutor
from stepline.workers.operations import OperationRegistry
from stepline.workers.queue import ArqRunQueue
from stepline.workers.scheduler import Scheduler


async def build_services(ctx: dict[str, Any], settings: Settings | None = None) -> dict[str, Any]:
    """构建工作进程依赖的服务并写入 ctx"""
    settings = settings or get_settings()

    db_manager = await init_database(settings.DATABASE_URL)
    gateway = PipelineGateway(db_manager)
    queue = ArqRunQueue.from_settings(settings, pool=ctx.get("redis"))
    await queue.init()

    accountant = CreditAccountant.from_settings(gateway, settings)
    adapters = build_adapters(settings)
    operations = OperationRegistry.default(adapters)
    cipher = SecretCipher.from_settings(settings)

    ctx.update({
        "settings": settings,
        "db_manager": db_manager,
        "gateway": gateway,
        "queue": queue,
        "accountant": accountant,
        "llm_adapters": adapters,
        "executor": StepExecutor(gateway, accountant, operations, cipher),
        "scheduler": Scheduler.from_settings(gateway, queue, accountant, settings),
    })
    return ctx


async def close_services(ctx: dict[str, Any]) -> None:
    """释放 ctx 中的服务"""
    for adapter in ctx.pop("llm_adapters", {}).values():
        await adapter.close()
    if queue := ctx.pop("queue", None):
        await queue.close()
    if db_manager := ctx.pop("db_manager", None):
        await db_manager.close()


async def on_startup(ctx: dict[str, Any]) -> None:
    """工作者启动时的初始化"""
    logger.info("🚀 Arq 工作者启动中...")

    ctx["start_time"] = time.time()
    ctx["job_stats"] = {"successful": 0, "failed": 0}
    await build_services(ctx)

    settings = ctx["settings"]
    problems = settings.validate_config()
    for problem in problems:
        logger.warning(f"⚠️ 配置问题: {problem}")

    logger.info(f"✅ Arq 工作者启动完成 - 队列: {settings.ARQ_QUEUE_NAME}, 并发: {settings.WORKER_MAX_JOBS}")


async def on_shutdown(ctx: dict[str, Any]) -> None:
    """工作者关闭时的清理"""
    logger.info("🛑 Arq 工作者正在关闭...")

    uptime = time.time() - ctx.get("start_time", time.time())
    stats = ctx.get("job_stats", {})
    logger.info(
        f"📊 工作者运行统计: 运行 {uptime:.0f}s, "
        f"成功 {stats.get('successful', 0)}, 失败 {stats.get('failed', 0)}"
    )

    await close_services(ctx)
    logger.info("✅ Arq 工作者已关闭")


async def on_job_start(ctx: dict[str, Any]) -> None:
    """任务开始前的钩子"""
    job_id = ctx.get("job_id")
    ctx[f"job_start_time_{job_id}"] = time.time()
    logger.debug(f"📋 开始执行任务: {job_id}")


async def on_job_end(ctx: dict[str, Any]) -> None:
    """任务完成后的钩子"""
    job_id = ctx.get("job_id")
    start_time = ctx.pop(f"job_start_time_{job_id}", None)
    execution_time = (time.time() - start_time) if start_time else 0

    memory_mb = psutil.Process().memory_info().rss / 1024 / 1024
    logger.info(f"✅ 任务结束: {job_id}, 耗时: {execution_time:.2f}s, 内存: {memory_mb:.1f}MB")

