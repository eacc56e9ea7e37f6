"""
CLI 主入口

基于 Typer 实现：
- 命令分组（db / worker / scheduler / users / pipelines / runs / schedules / health）
- 校验错误以问题列表形式输出
- Rich 控制台输出
"""

import asyncio
import json
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import typer
from loguru import logger
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from rich.traceback import install as install_traceback

from stepline.domain.billing.credits import CreditAccountant
from stepline.domain.pipeline.models import Plan, TriggerType
from stepline.framework.orchestrators.run_service import RunService, ScheduleInput
from stepline.framework.shared.config import Settings, get_settings
from stepline.framework.shared.exceptions import SteplineError, ValidationError
from stepline.framework.shared.secrets import SecretCipher
from stepline.framework.storage.database import DatabaseManager, init_database
from stepline.framework.storage.pipeline_gateway import PipelineGateway
from stepline.workers.queue import ArqRunQueue
from stepline.workers.scheduler import Scheduler

# 初始化 Rich
console = Console()
install_traceback()

# 创建主应用
app = typer.Typer(
    name="stepline",
    help="多步骤 LLM 流水线运行编排",
    rich_markup_mode="markdown",
    pretty_exceptions_enable=True,
)

# 子命令应用
db_app = typer.Typer(name="db", help="数据库管理")
worker_app = typer.Typer(name="worker", help="Arq 工作进程")
scheduler_app = typer.Typer(name="scheduler", help="定时调度")
users_app = typer.Typer(name="users", help="用户与额度")
pipelines_app = typer.Typer(name="pipelines", help="流水线管理")
runs_app = typer.Typer(name="runs", help="运行管理")
schedules_app = typer.Typer(name="schedules", help="定时计划管理")

app.add_typer(db_app)
app.add_typer(worker_app)
app.add_typer(scheduler_app)
app.add_typer(users_app)
app.add_typer(pipelines_app)
app.add_typer(runs_app)
app.add_typer(schedules_app)


def setup_logging(verbose: int = 0) -> None:
    """设置日志配置"""
    logger.remove()

    log_level = "DEBUG" if verbose > 0 else "INFO"
    logger.add(
        RichHandler(console=console, markup=True, rich_tracebacks=True),
        level=log_level,
        format="{message}",
    )

    log_file = Path("logs/stepline.log")
    log_file.parent.mkdir(exist_ok=True)
    logger.add(
        log_file,
        level="DEBUG",
        rotation="10 MB",
        retention="1 week",
        compression="zip",
        backtrace=True,
        diagnose=False,
    )


# 定义命令选项常量
VERBOSE_OPTION = typer.Option(0, "--verbose", "-v", count=True, help="增加输出详细程度")
USER_OPTION = typer.Option(..., "--user", "-u", help="用户 ID")
DEFINITION_ARG = typer.Argument(..., help="流水线定义 JSON 文件路径")
PIPELINE_ARG = typer.Argument(..., help="流水线 ID")
RUN_ARG = typer.Argument(..., help="运行 ID")
SCHEDULE_ARG = typer.Argument(..., help="计划 ID")
INPUT_OPTION = typer.Option(None, "--input", "-i", help="输入 JSON（字符串或 @文件路径）")


@app.callback()
def main_callback(ctx: typer.Context, verbose: int = VERBOSE_OPTION) -> None:
    """主回调函数，处理全局选项"""
    setup_logging(verbose)
    logger.debug(f"命令: {' '.join(sys.argv)}")
    ctx.obj = {"verbose": verbose, "settings": get_settings()}


@dataclass
class Services:
    """CLI 命令使用的服务集合"""

    db_manager: DatabaseManager
    gateway: PipelineGateway
    accountant: CreditAccountant
    queue: ArqRunQueue
    run_service: RunService


@asynccontextmanager
async def open_services(settings: Settings, connect_queue: bool = True) -> AsyncIterator[Services]:
    """构建服务，退出时释放连接"""
    db_manager = await init_database(settings.DATABASE_URL)
    gateway = PipelineGateway(db_manager)
    accountant = CreditAccountant.from_settings(gateway, settings)
    queue = ArqRunQueue.from_settings(settings)
    try:
        if connect_queue:
            await queue.init()
        yield Services(
            db_manager=db_manager,
            gateway=gateway,
            accountant=accountant,
            queue=queue,
            run_service=RunService(
                gateway, queue, accountant, db_manager, SecretCipher.from_settings(settings)
            ),
        )
    finally:
        await queue.close()
        await db_manager.close()


def run_command(coro) -> Any:
    """执行异步命令，业务错误转换为非零退出码"""
    try:
        return asyncio.run(coro)
    except ValidationError as e:
        console.print(f"[red]❌[/red] {e.message}")
        for issue in e.issues:
            console.print(f"  • {issue['field']}: {issue['message']}")
        raise typer.Exit(code=1) from e
    except SteplineError as e:
        logger.error(f"{e.error_code}: {e.message}")
        console.print(f"[red]❌[/red] {e.message}")
        raise typer.Exit(code=1) from e


def load_json_file(path: Path) -> dict[str, Any]:
    """读取 JSON 文件"""
    if not path.exists():
        console.print(f"[red]❌[/red] 文件不存在: {path}")
        raise typer.BadParameter(f"文件不存在: {path}")
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def parse_input(value: str | None) -> dict[str, Any]:
    """解析 --input 参数"""
    if not value:
        return {}
    if value.startswith("@"):
        return load_json_file(Path(value[1:]))
    try:
        data = json.loads(value)
    except json.JSONDecodeError as e:
        raise typer.BadParameter(f"输入不是合法 JSON: {e}") from e
    if not isinstance(data, dict):
        raise typer.BadParameter("输入必须是 JSON 对象")
    return data


def print_json(data: Any) -> None:
    console.print_json(json.dumps(data, ensure_ascii=False, default=str))


@app.command()
def version() -> None:
    """显示版本信息"""
    from stepline import __description__, __version__

    console.print(f"[bold]stepline[/bold] {__version__}")
    console.print(__description__)


# 数据库命令
@db_app.command("init")
def db_init(ctx: typer.Context) -> None:
    """创建数据库表"""
    settings: Settings = ctx.obj["settings"]

    async def _init() -> None:
        db_manager = await init_database(settings.DATABASE_URL)
        await db_manager.close()

    run_command(_init())
    console.print(f"[green]✅[/green] 数据库已初始化: {settings.DATABASE_URL}")


# 工作进程命令
@worker_app.command("run")
def worker_run(ctx: typer.Context) -> None:
    """启动 Arq 工作进程（包含调度 cron 任务）"""
    from arq import run_worker

    from stepline.workers.settings import WorkerSettings

    settings: Settings = ctx.obj["settings"]
    problems = settings.validate_config()
    if problems:
        for problem in problems:
            console.print(f"[red]❌[/red] 配置问题: {problem}")
        raise typer.Exit(code=1)

    logger.info(f"🚀 启动工作进程，队列: {settings.ARQ_QUEUE_NAME}")
    run_worker(WorkerSettings)


# 调度命令
@scheduler_app.command("tick")
def scheduler_tick(ctx: typer.Context) -> None:
    """立即执行一次调度扫描"""
    settings: Settings = ctx.obj["settings"]

    async def _tick() -> dict[str, Any]:
        async with open_services(settings) as services:
            scheduler = Scheduler.from_settings(
                services.gateway, services.queue, services.accountant, settings
            )
            report = await scheduler.tick()
            return report.to_dict()

    report = run_command(_tick())
    console.print(
        f"[green]✅[/green] 扫描 {report['scanned']} 个计划，触发 {len(report['triggered'])} 次运行"
    )
    if report["errors"] or report["disabled"] or report["enqueue_failed"]:
        console.print(
            f"[yellow]⚠️[/yellow] 停用 {report['disabled']}，入队失败 {report['enqueue_failed']}，"
            f"错误 {report['errors']}"
        )


# 用户命令
@users_app.command("create")
def users_create(
    ctx: typer.Context,
    email: str = typer.Option(None, "--email", help="用户邮箱"),
    plan: Plan = typer.Option(Plan.FREE, "--plan", help="订阅计划"),
    credits: int = typer.Option(None, "--credits", help="初始额度（默认为计划额度）"),
) -> None:
    """创建用户"""
    settings: Settings = ctx.obj["settings"]

    async def _create():
        async with open_services(settings, connect_queue=False) as services:
            return await services.run_service.create_user(email=email, plan=plan, credits=credits)

    user = run_command(_create())
    console.print(f"[green]✅[/green] 用户已创建: {user.id} ({user.plan}, {user.credits_remaining} 额度)")


@users_app.command("balance")
def users_balance(ctx: typer.Context, user_id: str = typer.Argument(..., help="用户 ID")) -> None:
    """查看用户余额"""
    settings: Settings = ctx.obj["settings"]

    async def _balance() -> dict[str, Any]:
        async with open_services(settings, connect_queue=False) as services:
            return await services.run_service.get_user_balance(user_id)

    print_json(run_command(_balance()))


@users_app.command("secret-set")
def users_secret_set(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="用户 ID"),
    name: str = typer.Argument(..., help="密钥名称（模板中以 env.<名称> 引用）"),
    value: str = typer.Option(..., "--value", prompt=True, hide_input=True, help="密钥值"),
) -> None:
    """加密保存用户密钥"""
    settings: Settings = ctx.obj["settings"]

    async def _set() -> None:
        async with open_services(settings, connect_queue=False) as services:
            await services.run_service.set_user_secret(user_id, name, value)

    run_command(_set())
    console.print(f"[green]✅[/green] 密钥已保存: {name}")


@users_app.command("secret-delete")
def users_secret_delete(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="用户 ID"),
    name: str = typer.Argument(..., help="密钥名称"),
) -> None:
    """删除用户密钥"""
    settings: Settings = ctx.obj["settings"]

    async def _delete() -> bool:
        async with open_services(settings, connect_queue=False) as services:
            return await services.run_service.delete_user_secret(user_id, name)

    if run_command(_delete()):
        console.print(f"[green]✅[/green] 密钥已删除: {name}")
    else:
        console.print(f"[yellow]⚠️[/yellow] 密钥不存在: {name}")


@users_app.command("secrets")
def users_secrets(ctx: typer.Context, user_id: str = typer.Argument(..., help="用户 ID")) -> None:
    """列出用户密钥名称"""
    settings: Settings = ctx.obj["settings"]

    async def _list() -> list[str]:
        async with open_services(settings, connect_queue=False) as services:
            return await services.run_service.list_user_secret_names(user_id)

    for name in run_command(_list()):
        console.print(f"  • {name}")


# 流水线命令
@pipelines_app.command("create")
def pipelines_create(
    ctx: typer.Context,
    definition_file: Path = DEFINITION_ARG,
    user_id: str = USER_OPTION,
) -> None:
    """从 JSON 定义创建流水线"""
    settings: Settings = ctx.obj["settings"]
    document = load_json_file(definition_file)

    async def _create():
        async with open_services(settings, connect_queue=False) as services:
            return await services.run_service.create_pipeline(user_id, document)

    pipeline, pipeline_version = run_command(_create())
    console.print(
        f"[green]✅[/green] 流水线已创建: {pipeline.id} (版本 {pipeline_version.version})"
    )


@pipelines_app.command("publish")
def pipelines_publish(
    ctx: typer.Context,
    pipeline_id: str = PIPELINE_ARG,
    definition_file: Path = DEFINITION_ARG,
    user_id: str = USER_OPTION,
) -> None:
    """发布流水线新版本"""
    settings: Settings = ctx.obj["settings"]
    document = load_json_file(definition_file)

    async def _publish():
        async with open_services(settings, connect_queue=False) as services:
            return await services.run_service.publish_version(user_id, pipeline_id, document)

    pipeline_version = run_command(_publish())
    console.print(f"[green]✅[/green] 已发布版本 {pipeline_version.version}")


# 运行命令
@runs_app.command("trigger")
def runs_trigger(
    ctx: typer.Context,
    pipeline_id: str = PIPELINE_ARG,
    user_id: str = USER_OPTION,
    input_data: str = INPUT_OPTION,
) -> None:
    """校验输入并投递一次手动运行"""
    settings: Settings = ctx.obj["settings"]
    raw_input = parse_input(input_data)

    async def _trigger():
        async with open_services(settings) as services:
            return await services.run_service.trigger_run(
                user_id, pipeline_id, raw_input, TriggerType.MANUAL
            )

    run = run_command(_trigger())
    console.print(f"[green]✅[/green] 运行已入队: {run.id}")


@runs_app.command("cancel")
def runs_cancel(ctx: typer.Context, run_id: str = RUN_ARG) -> None:
    """取消运行"""
    settings: Settings = ctx.obj["settings"]

    async def _cancel():
        async with open_services(settings, connect_queue=False) as services:
            return await services.run_service.cancel_run(run_id)

    run = run_command(_cancel())
    if run.cancel_requested_at and run.status == "running":
        console.print("[yellow]⏳[/yellow] 已请求取消，将在当前步骤结束后生效")
    else:
        console.print(f"运行状态: {run.status}")


@runs_app.command("show")
def runs_show(ctx: typer.Context, run_id: str = RUN_ARG) -> None:
    """显示运行及其步骤"""
    settings: Settings = ctx.obj["settings"]

    async def _show():
        async with open_services(settings, connect_queue=False) as services:
            run = await services.run_service.get_run(run_id)
            steps = await services.run_service.get_run_steps(run_id)
            return run, steps

    run, steps = run_command(_show())

    console.print(f"[bold]运行 {run.id}[/bold]")
    console.print(f"  • 状态: {run.status}")
    console.print(f"  • 触发方式: {run.trigger_type}")
    console.print(f"  • 消耗额度: {run.credits_consumed}")
    if run.error:
        console.print(f"  • 错误: [red]{run.error}[/red]")

    table = Table(title="步骤执行")
    table.add_column("#", justify="right")
    table.add_column("步骤")
    table.add_column("状态")
    table.add_column("尝试", justify="right")
    table.add_column("令牌(入/出)", justify="right")
    table.add_column("额度", justify="right")
    table.add_column("耗时(ms)", justify="right")
    for step in steps:
        table.add_row(
            str(step.step_index),
            step.step_id,
            step.status,
            str(step.attempt_count),
            f"{step.tokens_in}/{step.tokens_out}",
            str(step.cost_credits),
            str(step.duration_ms or ""),
        )
    console.print(table)

    if run.output_data is not None:
        console.print("[bold]输出:[/bold]")
        print_json(run.output_data)


# 计划命令
@schedules_app.command("create")
def schedules_create(
    ctx: typer.Context,
    pipeline_id: str = PIPELINE_ARG,
    user_id: str = USER_OPTION,
    name: str = typer.Option(..., "--name", help="计划名称"),
    cron_expression: str = typer.Option(..., "--cron", help="五段式 cron 表达式"),
    timezone_name: str = typer.Option("UTC", "--timezone", help="IANA 时区"),
    input_data: str = INPUT_OPTION,
    disabled: bool = typer.Option(False, "--disabled", help="创建后不启用"),
) -> None:
    """创建定时计划"""
    settings: Settings = ctx.obj["settings"]
    schedule_input = ScheduleInput(
        name=name,
        cron_expression=cron_expression,
        timezone=timezone_name,
        input_data=parse_input(input_data),
        enabled=not disabled,
    )

    async def _create():
        async with open_services(settings, connect_queue=False) as services:
            return await services.run_service.create_schedule(user_id, pipeline_id, schedule_input)

    schedule = run_command(_create())
    console.print(
        f"[green]✅[/green] 计划已创建: {schedule.id} (下次运行 {schedule.next_run_at.isoformat()})"
    )


def _set_schedule_enabled(settings: Settings, schedule_id: str, enabled: bool):
    async def _update():
        async with open_services(settings, connect_queue=False) as services:
            return await services.run_service.set_schedule_enabled(schedule_id, enabled)

    return run_command(_update())


@schedules_app.command("enable")
def schedules_enable(ctx: typer.Context, schedule_id: str = SCHEDULE_ARG) -> None:
    """启用计划（从当前时间重新计算下次运行）"""
    schedule = _set_schedule_enabled(ctx.obj["settings"], schedule_id, True)
    console.print(f"[green]✅[/green] 计划已启用，下次运行 {schedule.next_run_at.isoformat()}")


@schedules_app.command("disable")
def schedules_disable(ctx: typer.Context, schedule_id: str = SCHEDULE_ARG) -> None:
    """停用计划"""
    _set_schedule_enabled(ctx.obj["settings"], schedule_id, False)
    console.print("[green]✅[/green] 计划已停用")


# 健康检查
@app.command()
def health(ctx: typer.Context) -> None:
    """队列、工作进程与数据库健康状态"""
    settings: Settings = ctx.obj["settings"]

    async def _health() -> dict[str, Any]:
        async with open_services(settings) as services:
            return await services.run_service.health()

    result = run_command(_health())
    queue = result["queue"]
    status_icon = "✅" if result["status"] == "healthy" else "❌"

    console.print(f"[bold]系统健康状态:[/bold] {status_icon} {result['status']}")
    console.print(f"  • 时间: {result['timestamp']}")
    console.print(f"  • 队列: {queue.get('queue_name')} 深度 {queue.get('queue_depth', '-')}")
    console.print(f"  • 工作进程: {'✅ 存活' if queue.get('worker_alive') else '❌ 无心跳'}")
    console.print(f"  • 数据库: {'✅' if result['database']['healthy'] else '❌'}")
    console.print(f"  • 内存: {result['process']['memory_rss_mb']} MB")

    if result["status"] != "healthy":
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
