"""
Pipeline 相关的 Arq 任务

- execute_run: 执行一次运行（任务只携带 run_id）
- scheduler_tick: 调度器 cron 任务
"""

from typing import Any

from redis.exceptions import RedisError

from stepline.framework.shared.exceptions import SteplineError
from stepline.framework.shared.logging import get_logger
from stepline.workers.queue import run_job_id

logger = get_logger(__name__)


async def execute_run(ctx: dict[str, Any], run_id: str) -> dict[str, Any]:
    """
    执行流水线运行

    Args:
        ctx: Arq 上下文（包含 executor 和 queue）
        run_id: 运行 ID

    Returns:
        运行执行结果
    """
    executor = ctx["executor"]
    outcome = await executor.execute(run_id)

    if not outcome.discarded:
        # 任务 ctx 是 worker ctx 的浅拷贝，统计写入共享字典
        stats = ctx.setdefault("job_stats", {})
        counter = "successful" if outcome.success else "failed"
        stats[counter] = stats.get(counter, 0) + 1

        job_id = ctx.get("job_id") or run_job_id(run_id)
        try:
            await ctx["queue"].record_outcome(job_id, outcome.success)
        except (SteplineError, RedisError) as e:
            # 结果记录失败不影响运行状态
            logger.warning("记录任务结果失败", job_id=job_id, error=str(e))

    return outcome.to_dict()


async def scheduler_tick(ctx: dict[str, Any]) -> dict[str, Any]:
    """
    执行一次调度扫描

    Args:
        ctx: Arq 上下文（包含 scheduler）

    Returns:
        扫描结果统计
    """
    report = await ctx["scheduler"].tick()
    return report.to_dict()
