"""
迁移过程的控制台输出与确认
"""
import time
from contextlib import contextmanager
from typing import Any, Dict

from rich.console import Console
from rich.progress import BarColumn, Progress, TaskProgressColumn, TextColumn, TimeElapsedColumn
from rich.prompt import Confirm
from rich.table import Table

PHASE_TITLES = {
    "preparation": "准备",
    "optimised_root": "迁移优化根目录",
    "discovery": "清点与分析",
    "link_inline": "关联内嵌图片",
    "safe_duplicates": "合并同位置重复记录",
    "resolve_duplicates": "处理重复资产",
    "fix_links": "修复失效链接",
    "consolidate": "整合到目标卷",
    "quarantine": "隔离未使用文件",
    "temp_cleanup": "清理衍生文件",
    "cleanup": "最终校验",
    "update_subfolder": "更新目标子目录",
    "complete": "完成",
}


class MigrationReporter:
    """迁移报告输出"""

    def __init__(self, console: Console = None):
        self.console = console or Console()

    def header(self, migration_id: str, options) -> None:
        self.console.rule(f"[bold cyan]资产迁移 {migration_id}[/bold cyan]")
        if options.dry_run:
            self.console.print("[yellow]演练模式：只做清点和分析，不会修改任何数据[/yellow]")
        if options.skip_backup:
            self.console.print("[yellow]警告：已跳过数据库备份，将无法使用数据库方式回滚[/yellow]")
        if options.skip_lock:
            self.console.print("[yellow]警告：未使用运行锁，请确认没有其他迁移在运行[/yellow]")
        if options.skip_inline_detection:
            self.console.print("[dim]已跳过内嵌图片检测[/dim]")

    def resume_summary(self, run, source: str) -> None:
        self.console.rule(f"[bold cyan]恢复迁移 {run.migration_id}[/bold cyan]")
        self.console.print(f"来源: {'快速状态' if source == 'quick' else '完整检查点'}")
        self.console.print(f"阶段: [green]{run.phase}[/green]")
        self.console.print(f"已处理: {run.processed_count}")
        self.console.print(f"恢复次数: {run.stats.get('resume_count', 0)}")

    def phase(self, phase: str) -> None:
        self.console.print(f"\n[bold blue]▶ {PHASE_TITLES.get(phase, phase)}[/bold blue] [dim]({phase})[/dim]")

    def skip(self, phase: str, reason: str) -> None:
        self.console.print(f"[dim]跳过 {PHASE_TITLES.get(phase, phase)}: {reason}[/dim]")

    def analysis(self, summary: Dict[str, Any]) -> None:
        table = Table(title="清点结果")
        table.add_column("项目", style="cyan")
        table.add_column("数量", style="green", justify="right")
        for key, value in summary.items():
            table.add_row(key, str(value))
        self.console.print(table)

    def dry_run_plan(self, plan: Dict[str, int]) -> None:
        table = Table(title="计划执行的操作")
        table.add_column("阶段", style="cyan")
        table.add_column("条目", style="green", justify="right")
        for phase, count in plan.items():
            table.add_row(PHASE_TITLES.get(phase, phase), str(count))
        self.console.print(table)
        self.console.print("[yellow]演练结束，未做任何修改[/yellow]")

    def confirm(self, message: str) -> bool:
        return Confirm.ask(message, default=False, console=self.console)

    @contextmanager
    def progress(self, phase: str, total: int):
        """阶段进度条，返回推进函数"""
        with Progress(
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            TimeElapsedColumn(),
            console=self.console,
            transient=True,
        ) as progress:
            task = progress.add_task(PHASE_TITLES.get(phase, phase), total=total)
            yield lambda: progress.advance(task)

    def verification(self, result: Dict[str, Any]) -> None:
        missing = result.get('missing_files') or []
        style = "yellow" if missing else "green"
        self.console.print(
            f"[{style}]校验: 资产 {result.get('assets', 0)}，缺少文件 {len(missing)}[/{style}]"
        )

    def final_report(self, run, retry_stats: Dict[str, Any]) -> None:
        elapsed = time.time() - run.stats.get('start_time', time.time())
        table = Table(title=f"迁移完成 {run.migration_id}")
        table.add_column("统计", style="cyan")
        table.add_column("值", style="green", justify="right")
        table.add_row("已处理条目", str(run.processed_count))
        table.add_row("移动文件", str(run.stats.get('files_moved', 0)))
        table.add_row("隔离文件", str(run.stats.get('files_quarantined', 0)))
        table.add_row("错误", str(run.stats.get('errors', 0)))
        table.add_row("重试", str(retry_stats.get('total_retries', 0)))
        table.add_row("需重试的操作", str(retry_stats.get('operations_retried', 0)))
        table.add_row("检查点", str(run.stats.get('checkpoints_saved', 0)))
        table.add_row("恢复次数", str(run.stats.get('resume_count', 0)))
        table.add_row("耗时", f"{elapsed:.1f}s")
        self.console.print(table)

    def cancelled(self, migration_id: str) -> None:
        self.console.print("[yellow]用户取消操作[/yellow]")
        self.console.print(f"已保存检查点，可执行 [bold]assetmigf resume {migration_id}[/bold] 继续")

    def lock_contention(self) -> None:
        self.console.print("[red]另一个迁移正在运行[/red]")
        self.console.print("如确认没有迁移进程在运行，可执行 [bold]assetmigf force-cleanup[/bold]")

    def fatal(self, error: BaseException, migration_id: str, checkpoint_saved: bool = True) -> None:
        self.console.print(f"\n[bold red]迁移失败: {error}[/bold red]")
        if checkpoint_saved:
            self.console.print("[green]已保存检查点，进度不会丢失[/green]")
        else:
            self.console.print("[red]检查点保存失败，请查看日志[/red]")
        self.console.print(f"继续迁移: [bold]assetmigf resume {migration_id}[/bold]")
        self.console.print(f"回滚迁移: [bold]assetmigf rollback {migration_id}[/bold]")

    def rollback_report(self, report: Dict[str, Any]) -> None:
        table = Table(title="回滚" + ("演练" if report.get('dry_run') else "结果"))
        table.add_column("项目", style="cyan")
        table.add_column("值", style="green")
        for key, value in report.items():
            if isinstance(value, dict):
                value = ", ".join(f"{k}={v}" for k, v in value.items()) or "-"
            elif isinstance(value, list):
                value = ", ".join(str(v) for v in value) or "-"
            table.add_row(key, str(value))
        self.console.print(table)

