"""
Arq 工作者设置

- execute_run: 执行运行，关闭自动重试（max_tries = 1），重试只在步骤级进行
- scheduler_tick: 按固定间隔触发的调度 cron 任务，unique 保证多工作进程下每个时刻只执行一次
- 并发运行数由 WORKER_MAX_JOBS 控制（默认 5）
"""

from arq import cron, func

from stepline.framework.shared.config import get_settings
from stepline.workers.lifecycle import on_job_end, on_job_start, on_shutdown, on_startup
from stepline.workers.queue import EXECUTE_RUN_FUNCTION
from stepline.workers.serialization import job_deserializer, job_serializer
from stepline.workers.tasks.pipeline import execute_run, scheduler_tick

_settings = get_settings()


class WorkerSettings:
    """Arq 工作者配置"""

    redis_settings = _settings.get_redis_settings()
    queue_name = _settings.ARQ_QUEUE_NAME

    job_serializer = job_serializer
    job_deserializer = job_deserializer

    functions = [
        func(execute_run, name=EXECUTE_RUN_FUNCTION, max_tries=1),
    ]

    cron_jobs = [
        cron(
            scheduler_tick,
            name="scheduler_tick",
            second=_settings.scheduler_cron_seconds(),
            unique=True,
            run_at_startup=True,
            max_tries=1,
        ),
    ]

    # 并发设置
    max_jobs = _settings.WORKER_MAX_JOBS
    job_timeout = _settings.WORKER_JOB_TIMEOUT
    keep_result = 3600  # 结果保存时间（秒），数量上限由 record_outcome 裁剪
    max_tries = 1

    health_check_interval = 30
    log_results = True

    # 生命周期钩子
    on_startup = on_startup
    on_shutdown = on_shutdown
    on_job_start = on_job_start
    on_job_end = on_job_end
