"""
assetmigf 包的命令行入口点，使用 Typer 实现命令行界面
"""
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

import typer
from loguru import logger
from rich.console import Console
from rich.prompt import Confirm
from rich.table import Table

from .config import DEFAULT_CONFIG_NAME, MigrationConfig, dump_default_config
from .core.checkpoint import cleanup_checkpoint_dir, latest_checkpoint, list_checkpoint_files
from .core.errors import MigrationError
from .core.lock import force_cleanup as force_cleanup_locks, list_locks
from .core.models import MigrationOptions, RunStatus
from .runtime import MigrationRuntime
from .ui.reporter import MigrationReporter


def setup_logger(app_name="app", project_root=None, console_output=True):
    """配置 Loguru 日志系统

    Args:
        app_name: 应用名称，用于日志目录
        project_root: 项目根目录，默认为当前工作目录
        console_output: 是否输出到控制台，默认为True

    Returns:
        tuple: (logger, config_info)
    """
    if project_root is None:
        project_root = Path.cwd()

    logger.remove()

    if console_output:
        logger.add(
            sys.stdout,
            level="INFO",
            format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level.icon} {level: <8}</level> | <cyan>{name}:{function}:{line}</cyan> - <level>{message}</level>"
        )

    current_time = datetime.now()
    date_str = current_time.strftime("%Y-%m-%d")
    hour_str = current_time.strftime("%H")
    minute_str = current_time.strftime("%M%S")

    log_dir = os.path.join(project_root, "logs", app_name, date_str, hour_str)
    os.makedirs(log_dir, exist_ok=True)
    log_file = os.path.join(log_dir, f"{minute_str}.log")

    logger.add(
        log_file,
        level="DEBUG",
        rotation="10 MB",
        retention="30 days",
        compression="zip",
        encoding="utf-8",
        format="{time:YYYY-MM-DD HH:mm:ss} | {elapsed} | {level.icon} {level: <8} | {name}:{function}:{line} - {message}",
        enqueue=True,
    )

    config_info = {
        'log_file': log_file,
    }

    logger.info(f"日志系统已初始化，应用名称: {app_name}")
    return logger, config_info


app = typer.Typer(help="资产迁移编排工具 - 分阶段整理资产记录和文件，支持断点恢复与回滚")

console = Console()

ConfigOption = typer.Option(None, "--config", "-c", help=f"配置文件路径，默认读取当前目录下的 {DEFAULT_CONFIG_NAME}")


@app.callback()
def callback(quiet: bool = typer.Option(False, "--quiet", "-q", help="不在控制台输出日志")):
    setup_logger(app_name="assetmigf", console_output=not quiet)


def _runtime(config: Optional[Path]) -> MigrationRuntime:
    return MigrationRuntime(MigrationConfig.load(config), reporter=MigrationReporter(console))


def _command_line() -> str:
    return " ".join(["assetmigf", *sys.argv[1:]])


@app.command()
def migrate(
    migration_id: Optional[str] = typer.Argument(None, help="迁移 ID，默认按时间生成"),
    dry_run: bool = typer.Option(False, "--dry-run", help="只清点分析，不做修改"),
    yes: bool = typer.Option(False, "--yes", "-y", help="自动确认所有提示"),
    skip_backup: bool = typer.Option(False, "--skip-backup", help="跳过数据库备份"),
    skip_inline_detection: bool = typer.Option(False, "--skip-inline-detection", help="跳过内嵌图片检测"),
    skip_lock: bool = typer.Option(False, "--skip-lock", help="不使用运行锁"),
    config: Optional[Path] = ConfigOption,
):
    """开始一次新的迁移"""
    migration_id = migration_id or datetime.now().strftime("mig_%Y%m%d_%H%M%S")
    options = MigrationOptions(
        dry_run=dry_run,
        yes=yes,
        skip_backup=skip_backup,
        skip_inline_detection=skip_inline_detection,
        skip_lock=skip_lock,
    )
    with _runtime(config) as runtime:
        code = runtime.orchestrator(migration_id, options, command=_command_line()).execute()
    raise typer.Exit(code=code)


@app.command()
def resume(
    migration_id: Optional[str] = typer.Argument(None, help="迁移 ID，默认使用最近的检查点"),
    checkpoint_id: Optional[str] = typer.Option(None, "--checkpoint-id", help="从指定的完整检查点恢复"),
    yes: bool = typer.Option(False, "--yes", "-y", help="自动确认所有提示"),
    skip_lock: bool = typer.Option(False, "--skip-lock", help="不使用运行锁"),
    config: Optional[Path] = ConfigOption,
):
    """从检查点恢复迁移"""
    with _runtime(config) as runtime:
        if not migration_id:
            migration_id = checkpoint_id
        if not migration_id:
            latest = latest_checkpoint(runtime.config.checkpoint_dir)
            if latest is None:
                console.print("[red]没有找到可恢复的检查点[/red]")
                raise typer.Exit(code=1)
            migration_id = latest['migration_id']
            logger.info(f"使用最近的检查点: {migration_id}")

        options = MigrationOptions(yes=yes, skip_lock=skip_lock, resume=True, checkpoint_id=checkpoint_id)
        code = runtime.orchestrator(migration_id, options, command=_command_line()).execute()
    raise typer.Exit(code=code)


@app.command()
def rollback(
    migration_id: str = typer.Argument(..., help="要回滚的迁移 ID"),
    method: str = typer.Option("changeset", "--method", "-m", help="database: 恢复数据库备份；changeset: 按变更日志逐条回滚"),
    phases: Optional[str] = typer.Option(None, "--phases", "-p", help="逗号分隔的阶段名"),
    mode: str = typer.Option("from", "--mode", help="from: 指定阶段及之后；only: 仅指定阶段"),
    dry_run: bool = typer.Option(False, "--dry-run", help="只显示将要回滚的内容"),
    yes: bool = typer.Option(False, "--yes", "-y", help="跳过确认"),
    config: Optional[Path] = ConfigOption,
):
    """回滚一次迁移"""
    if method not in ("database", "changeset"):
        console.print(f"[red]不支持的回滚方式: {method}[/red]")
        raise typer.Exit(code=1)

    with _runtime(config) as runtime:
        engine = runtime.rollback_engine()
        try:
            if method == "changeset" and not dry_run:
                summary = engine.get_phases_summary(migration_id)
                for phase, entry in summary.items():
                    console.print(f"  {phase}: {entry['count']} 条变更")

            if not dry_run and not yes and not Confirm.ask(f"确认回滚迁移 {migration_id}？", default=False):
                console.print("[yellow]用户取消操作[/yellow]")
                raise typer.Exit(code=0)

            if method == "database":
                report = engine.rollback_via_database(migration_id, dry_run=dry_run)
            else:
                report = engine.rollback(migration_id, phases=phases, mode=mode, dry_run=dry_run)
        except MigrationError as e:
            logger.error(f"回滚失败: {e}")
            console.print(f"[red]回滚失败: {e}[/red]")
            raise typer.Exit(code=1)

        runtime.reporter.rollback_report(report)
        if report.get('errors'):
            raise typer.Exit(code=1)


@app.command()
def status(
    migration_id: Optional[str] = typer.Argument(None, help="迁移 ID，默认显示最近一次"),
    config: Optional[Path] = ConfigOption,
):
    """显示迁移状态、运行锁和检查点"""
    with _runtime(config) as runtime:
        store = runtime.state_store
        state = store.get_state(migration_id) if migration_id else store.get_latest_migration()
        if state is None:
            console.print("[yellow]没有迁移记录[/yellow]")
        else:
            table = Table(title=f"迁移 {state['migration_id']}")
            table.add_column("字段", style="cyan")
            table.add_column("值", style="green")
            for key in ("phase", "status", "pid", "processed_count", "total_count",
                        "current_batch", "error_message", "started_at", "last_updated_at", "completed_at"):
                table.add_row(key, str(state.get(key) if state.get(key) is not None else "-"))
            if state['status'] == RunStatus.RUNNING.value:
                alive = store.is_process_running(state.get('pid'))
                table.add_row("process_alive", "是" if alive else "否")
            console.print(table)

        locks = list_locks(runtime.config.state_db)
        for lock in locks:
            expires = datetime.fromtimestamp(lock['expires_at']).isoformat(timespec='seconds')
            console.print(f"运行锁: {lock['migration_id']} ({lock['owner']})，过期时间 {expires}")

        rows = store.list_checkpoints(migration_id, limit=10)
        if rows:
            table = Table(title="最近的检查点")
            table.add_column("迁移", style="cyan")
            table.add_column("阶段", style="green")
            table.add_column("时间")
            table.add_column("已处理", justify="right")
            for row in rows:
                table.add_row(row['migration_id'], row['phase'], row['timestamp'], str(row['processed_count']))
            console.print(table)


@app.command()
def checkpoints(config: Optional[Path] = ConfigOption):
    """列出本地检查点文件"""
    with _runtime(config) as runtime:
        items = list_checkpoint_files(runtime.config.checkpoint_dir)
        if not items:
            console.print("[yellow]没有检查点[/yellow]")
            return
        table = Table(title="检查点")
        table.add_column("迁移", style="cyan")
        table.add_column("阶段", style="green")
        table.add_column("状态")
        table.add_column("时间")
        table.add_column("已处理", justify="right")
        for item in items:
            table.add_row(item['id'], str(item['phase']), str(item['status']), str(item['timestamp']), str(item['processed']))
        console.print(table)


@app.command()
def cleanup(
    hours: Optional[float] = typer.Option(None, "--hours", help="删除早于该小时数的检查点，默认使用配置"),
    config: Optional[Path] = ConfigOption,
):
    """清理过期检查点和迁移状态"""
    with _runtime(config) as runtime:
        max_age = hours if hours is not None else runtime.config.checkpoint_retention_hours
        removed = cleanup_checkpoint_dir(runtime.config.checkpoint_dir, max_age)
        states = runtime.state_store.cleanup_old_states(runtime.config.state_retention_days)
        console.print(f"[green]已删除 {removed} 个检查点文件，{states} 条迁移状态[/green]")


@app.command("force-cleanup")
def force_cleanup(
    yes: bool = typer.Option(False, "--yes", "-y", help="跳过确认"),
    config: Optional[Path] = ConfigOption,
):
    """强制释放运行锁，并把进程已退出的运行标记为失败"""
    with _runtime(config) as runtime:
        if not yes and not Confirm.ask("确认强制清除运行锁？请先确认没有迁移进程在运行", default=False):
            console.print("[yellow]用户取消操作[/yellow]")
            raise typer.Exit(code=0)

        removed = force_cleanup_locks(runtime.config.state_db)
        stale = 0
        for state in runtime.state_store.get_running_migrations():
            if not state['process_alive']:
                runtime.state_store.update_status(state['migration_id'], RunStatus.FAILED.value, "进程已退出")
                stale += 1
        console.print(f"[green]已清除 {removed} 个运行锁，标记 {stale} 个失效运行为失败[/green]")


@app.command("init-config")
def init_config(path: Path = typer.Argument(Path(DEFAULT_CONFIG_NAME), help="输出路径")):
    """生成默认配置文件"""
    if path.exists() and not Confirm.ask(f"{path} 已存在，是否覆盖？", default=False):
        raise typer.Exit(code=0)
    path.write_text(dump_default_config(), encoding='utf-8')
    console.print(f"[green]已生成配置文件: {path}[/green]")


def main():
    """主函数"""
    app()


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        logger.error("操作已中断")
