"""迁移编排器

按固定顺序驱动各阶段，负责运行锁、检查点、变更日志、确认点和断点恢复。
所有协作者都通过构造函数注入。
"""

import os
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from .errors import (
    ErrorKind,
    LockAcquireError,
    MigrationCancelled,
    MigrationError,
    UnknownPhaseError,
)
from .models import (
    ChangeType,
    EARLY_PHASES,
    MigrationOptions,
    MigrationRun,
    Phase,
    RunStatus,
    TERMINAL_PHASES,
    WorkItem,
)
from .rollback import backup_filename
from ..services.interfaces import MigrationServices

# 完成阶段之前的固定顺序
PHASE_SEQUENCE: List[str] = [
    Phase.PREPARATION.value,
    Phase.OPTIMISED_ROOT.value,
    Phase.DISCOVERY.value,
    Phase.LINK_INLINE.value,
    Phase.SAFE_DUPLICATES.value,
    Phase.RESOLVE_DUPLICATES.value,
    Phase.FIX_LINKS.value,
    Phase.CONSOLIDATE.value,
    Phase.QUARANTINE.value,
    Phase.TEMP_CLEANUP.value,
    Phase.CLEANUP.value,
    Phase.UPDATE_SUBFOLDER.value,
]

# 由 services.work_items/apply 直接驱动的阶段
BATCHED_PHASES = [
    Phase.OPTIMISED_ROOT.value,
    Phase.LINK_INLINE.value,
    Phase.RESOLVE_DUPLICATES.value,
    Phase.FIX_LINKS.value,
    Phase.CONSOLIDATE.value,
    Phase.QUARANTINE.value,
    Phase.TEMP_CLEANUP.value,
    Phase.UPDATE_SUBFOLDER.value,
]

MOVE_TYPES = {ChangeType.MOVED_ASSET.value, ChangeType.MOVED_FROM_OPTIMISED_ROOT.value}
QUARANTINE_TYPES = {ChangeType.QUARANTINED_UNUSED_ASSET.value, ChangeType.QUARANTINED_ORPHANED_FILE.value}


class MigrationOrchestrator:
    """迁移状态机"""

    def __init__(
        self,
        migration_id: str,
        services: MigrationServices,
        checkpoints,
        changelog,
        retry,
        reporter,
        lock=None,
        duplicate_store=None,
        state_store=None,
        options: Optional[MigrationOptions] = None,
        backup_dir: Optional[Path] = None,
        batch_size: int = 100,
        checkpoint_every: int = 1,
        lock_acquire_timeout: float = 3,
        lock_refresh_interval: float = 60,
        checkpoint_retention_hours: float = 72,
        state_retention_days: int = 7,
        command: str = "",
    ):
        self.migration_id = migration_id
        self.services = services
        self.checkpoints = checkpoints
        self.changelog = changelog
        self.retry = retry
        self.reporter = reporter
        self.lock = lock
        self.duplicate_store = duplicate_store
        self.state_store = state_store
        self.options = options or MigrationOptions()
        self.backup_dir = Path(backup_dir) if backup_dir else None
        self.batch_size = max(1, batch_size)
        self.checkpoint_every = max(1, checkpoint_every)
        self.lock_acquire_timeout = lock_acquire_timeout
        self.lock_refresh_interval = lock_refresh_interval
        self.checkpoint_retention_hours = checkpoint_retention_hours
        self.state_retention_days = state_retention_days
        self.command = command

        self.run: Optional[MigrationRun] = None
        self.analysis: Dict[str, Any] = {}
        self.phase_data: Dict[str, Any] = {}
        self._handlers: Dict[str, Callable[[], None]] = {
            Phase.PREPARATION.value: self._phase_preparation,
            Phase.DISCOVERY.value: self._phase_discovery,
            Phase.SAFE_DUPLICATES.value: self._phase_safe_duplicates,
            Phase.QUARANTINE.value: self._phase_quarantine,
            Phase.CLEANUP.value: self._phase_cleanup,
        }

    # ------------------------------------------------------------------
    # 入口
    # ------------------------------------------------------------------

    def execute(self) -> int:
        """执行迁移（新运行或恢复），返回退出码"""
        try:
            if self.options.resume:
                return self._resume()
            return self._run_fresh()
        except LockAcquireError as e:
            logger.error(f"无法获取运行锁: {e}")
            self.reporter.lock_contention()
            return 1
        except MigrationCancelled:
            self._save_checkpoint_quietly(RunStatus.PAUSED.value)
            self.reporter.cancelled(self.migration_id)
            return 0
        except Exception as e:
            return self._handle_fatal(e)
        finally:
            if self.lock is not None and self.lock.is_held:
                self.lock.release()

    def _acquire_lock(self, is_resume: bool) -> None:
        if self.options.skip_lock or self.lock is None:
            logger.warning("未使用运行锁")
            return
        if not self.lock.acquire(timeout=self.lock_acquire_timeout, is_resume=is_resume):
            raise LockAcquireError(f"迁移锁被占用: {self.migration_id}")

    def _confirm(self, message: str) -> bool:
        # 提示前先落盘，等待期间进程被终止也不会丢失变更
        self.changelog.flush()
        if self.options.yes:
            logger.info(f"自动确认: {message}")
            return True
        return self.reporter.confirm(message)

    def _run_fresh(self) -> int:
        self.run = MigrationRun(self.migration_id)
        self.reporter.header(self.migration_id, self.options)
        self._acquire_lock(is_resume=False)

        self.checkpoints.register_migration_start(os.getpid(), self.command)
        self.checkpoints.save_quick_state(self._quick_state())
        logger.info(f"开始迁移: {self.migration_id}")

        self._run_phases(Phase.PREPARATION.value, until=Phase.DISCOVERY.value)

        if self.options.dry_run:
            self.reporter.dry_run_plan(self._plan())
            self.run.status = RunStatus.PAUSED.value
            self._save_checkpoint()
            return 0

        if not self._confirm("清点完成，是否开始执行迁移？"):
            raise MigrationCancelled("用户在清点后取消")

        self._run_phases(Phase.LINK_INLINE.value)
        return self._finish()

    def _resume(self) -> int:
        if self.options.checkpoint_id:
            state = self.checkpoints.load_latest_checkpoint(self.options.checkpoint_id)
            source = 'full'
        else:
            state = self.checkpoints.load_quick_state()
            source = 'quick'
        if not state:
            raise MigrationError(f"未找到可恢复的检查点: {self.migration_id}", ErrorKind.NOT_FOUND)
        if state.get('migration_id') != self.migration_id:
            raise MigrationError(
                f"invalid checkpoint: 属于迁移 {state.get('migration_id')}，而不是 {self.migration_id}",
                ErrorKind.INVALID,
            )

        full = state if source == 'full' else self.checkpoints.load_latest_checkpoint(self.migration_id)
        self.phase_data = dict((full or {}).get('phase_data') or {})

        self.run = MigrationRun(
            self.migration_id,
            phase=state.get('phase') or Phase.INITIALIZING.value,
            batch=state.get('batch') or 0,
            processed_ids=list(state.get('processed_ids') or []),
        )
        self.run.stats.update(state.get('stats') or {})
        if full and full.get('started_at'):
            self.run.started_at = full['started_at']
        self.run.bump('resume_count')

        self.reporter.resume_summary(self.run, source)
        self._acquire_lock(is_resume=True)
        logger.info(
            f"从{'快速状态' if source == 'quick' else '完整检查点'}恢复: 阶段 {self.run.phase}，"
            f"已处理 {self.run.processed_count}"
        )

        if not self._confirm(f"从阶段 {self.run.phase} 继续迁移？"):
            raise MigrationCancelled("用户取消恢复")

        phase = self.run.phase
        if phase in EARLY_PHASES:
            logger.info(f"阶段 {phase} 从头重新开始")
            self._run_phases(Phase.PREPARATION.value)
        elif phase == Phase.COMPLETE.value:
            self._phase_cleanup()
        elif phase in TERMINAL_PHASES:
            self._run_phases(phase)
        elif phase in PHASE_SEQUENCE:
            self._rebuild_context()
            self._run_phases(phase)
        else:
            raise UnknownPhaseError(f"检查点中的阶段无法识别: {phase}")
        return self._finish()

    def _rebuild_context(self) -> None:
        """恢复中段阶段前重建卷信息和清点分析，不重复执行阶段本身"""
        logger.info("重建迁移上下文")
        self.services.prepare()
        assets = self.services.build_asset_inventory()
        files = self.services.build_file_inventory()
        self.analysis = self.services.analyze(assets, files)
        if self.duplicate_store is not None:
            counts = self.duplicate_store.counts_by_status()
            logger.info(f"已从暂存表恢复重复分组: {counts}")

    # ------------------------------------------------------------------
    # 阶段调度
    # ------------------------------------------------------------------

    def _run_phases(self, start: str, until: Optional[str] = None) -> None:
        index = PHASE_SEQUENCE.index(start)
        for phase in PHASE_SEQUENCE[index:]:
            reason = self._skip_reason(phase)
            if reason:
                logger.info(f"跳过阶段 {phase}: {reason}")
                self.reporter.skip(phase, reason)
            else:
                self._enter_phase(phase)
                handler = self._handlers.get(phase)
                if handler is not None:
                    handler()
                else:
                    self._run_service_phase(phase)
                self._save_checkpoint()
            if phase == until:
                break

    def _skip_reason(self, phase: str) -> Optional[str]:
        if phase == Phase.OPTIMISED_ROOT.value:
            if self.options.dry_run:
                return "演练模式"
            if not self.services.has_optimised_root():
                return "未配置优化根目录"
        if phase == Phase.LINK_INLINE.value and self.options.skip_inline_detection:
            return "已跳过内嵌图片检测"
        if phase == Phase.SAFE_DUPLICATES.value and self.duplicate_store is None:
            return "没有重复分组暂存表"
        return None

    def _enter_phase(self, phase: str) -> None:
        self.changelog.set_phase(phase)
        self.run.phase = phase
        self.run.batch = 0
        self.reporter.phase(phase)
        logger.info(f"进入阶段: {phase}")
        self._save_checkpoint()

    def _run_service_phase(self, phase: str) -> None:
        items = self.services.work_items(phase, self.analysis)
        self._run_batched(phase, items, lambda item: self.services.apply(phase, item))

    def _run_batched(
        self,
        phase: str,
        items: List[WorkItem],
        handler: Callable[[WorkItem], Optional[List[Dict[str, Any]]]],
    ) -> int:
        """分批处理条目

        已处理过的条目直接跳过；每个条目经重试层执行，其变更写入日志后才记为已处理；
        每 checkpoint_every 批保存一次检查点。

        Returns:
            int: 本次处理的条目数
        """
        pending = [item for item in items if not self.run.is_processed(f"{phase}:{item.id}")]
        skipped = len(items) - len(pending)
        if skipped:
            logger.info(f"阶段 {phase} 跳过已处理的 {skipped} 个条目")
        if not pending:
            return 0

        with self.reporter.progress(phase, len(pending)) as advance:
            for start in range(0, len(pending), self.batch_size):
                for item in pending[start:start + self.batch_size]:
                    if self.lock is not None:
                        self.lock.heartbeat(self.lock_refresh_interval)
                    key = f"{phase}:{item.id}"
                    changes = self.retry.retry_operation(lambda item=item: handler(item), key)
                    for change in changes or []:
                        self._log_change(change)
                    self.run.mark_processed(key)
                    advance()

                self.run.batch += 1
                self.run.stats['retries'] = self.retry.total_retries
                if self.run.batch % self.checkpoint_every == 0:
                    # 检查点记录的进度不能超过已落盘的变更日志
                    self.changelog.flush()
                    self._save_checkpoint()

        self.changelog.flush()
        logger.info(f"阶段 {phase} 处理完成: {len(pending)} 个条目")
        return len(pending)

    def _log_change(self, change: Dict[str, Any]) -> None:
        self.changelog.log_change(change)
        if change['type'] in MOVE_TYPES:
            self.run.bump('files_moved')
        elif change['type'] in QUARANTINE_TYPES:
            self.run.bump('files_quarantined')

    def _plan(self) -> Dict[str, int]:
        plan = {}
        for phase in BATCHED_PHASES:
            if phase == Phase.OPTIMISED_ROOT.value or self._skip_reason(phase):
                continue
            plan[phase] = len(self.services.work_items(phase, self.analysis))
        if self.duplicate_store is not None:
            plan[Phase.SAFE_DUPLICATES.value] = len(self.services.duplicate_groups(self.analysis))
        return plan

    # ------------------------------------------------------------------
    # 阶段实现
    # ------------------------------------------------------------------

    def _phase_preparation(self) -> None:
        self.phase_data['preparation'] = self.services.prepare()
        if self.options.skip_backup or self.options.dry_run or self.backup_dir is None:
            logger.info("跳过数据库备份")
            return
        path = self.backup_dir / backup_filename(self.migration_id)
        if path.exists():
            logger.info(f"数据库备份已存在，保留迁移前的版本: {path.name}")
            return
        self.phase_data['backup'] = self.retry.retry_operation(
            lambda: self.services.create_backup(path), f"{Phase.PREPARATION.value}:backup"
        )

    def _phase_discovery(self) -> None:
        assets = self.services.build_asset_inventory()
        files = self.services.build_file_inventory()
        self.analysis = self.services.analyze(assets, files)
        summary = self.analysis.get('summary') or {}
        self.phase_data['discovery'] = summary
        self.reporter.analysis(summary)

    def _phase_safe_duplicates(self) -> None:
        """同位置重复记录：暂存 -> 选主记录 -> 删除多余记录并校验"""
        store = self.duplicate_store
        inserted = store.save_groups(self.services.duplicate_groups(self.analysis))
        logger.info(f"重复分组暂存: 新增 {inserted}，当前 {store.counts_by_status()}")

        for group in store.load_groups('pending'):
            self._heartbeat()
            data = self.retry.retry_operation(
                lambda group=group: self.services.stage_duplicate_group(group),
                f"safe_duplicates:stage:{group['file_key']}",
            )
            store.update(group['file_key'], 'staged', data=data)

        for group in store.load_groups('staged'):
            self._heartbeat()
            primary = self.services.choose_primary(group)
            store.update(group['file_key'], 'analyzed', primary_asset_id=primary)

        def clean(item: WorkItem) -> List[Dict[str, Any]]:
            group = item.payload
            # 主记录的文件不可用时不删除任何记录，留给 fix_links 处理
            if not self.services.verify_duplicate_group(group):
                logger.warning(f"重复分组 {group['file_key']} 的主记录文件不可用，跳过清理")
                store.update(group['file_key'], 'skipped')
                return []
            changes = self.services.clean_duplicate_group(group)
            if not self.services.verify_duplicate_group(group):
                for change in changes:
                    self._log_change(change)
                self.changelog.flush()
                raise MigrationError(
                    f"constraint violation: 重复分组 {group['file_key']} 清理后主记录不可用",
                    ErrorKind.CONSTRAINT,
                )
            store.update(group['file_key'], 'cleaned')
            return changes

        items = [WorkItem(group['file_key'], group) for group in store.load_groups('analyzed')]
        self._run_batched(Phase.SAFE_DUPLICATES.value, items, clean)
        self.phase_data['safe_duplicates'] = store.counts_by_status()

    def _phase_quarantine(self) -> None:
        items = self.services.work_items(Phase.QUARANTINE.value, self.analysis)
        pending = [i for i in items if not self.run.is_processed(f"{Phase.QUARANTINE.value}:{i.id}")]
        if pending and not self._confirm(f"即将隔离 {len(pending)} 个未使用的资产和文件，是否继续？"):
            logger.warning("用户跳过隔离阶段")
            self.reporter.skip(Phase.QUARANTINE.value, "用户取消")
            return
        self._run_batched(
            Phase.QUARANTINE.value, items, lambda item: self.services.apply(Phase.QUARANTINE.value, item)
        )

    def _phase_cleanup(self) -> None:
        result = self.services.verify()
        self.phase_data['verification'] = result
        self.reporter.verification(result)

    def _heartbeat(self) -> None:
        if self.lock is not None:
            self.lock.heartbeat(self.lock_refresh_interval)

    # ------------------------------------------------------------------
    # 检查点与结束
    # ------------------------------------------------------------------

    def _quick_state(self) -> Dict[str, Any]:
        return {
            'migration_id': self.migration_id,
            'phase': self.run.phase,
            'status': self.run.status,
            'batch': self.run.batch,
            'processed_ids': list(self.run.processed_ids),
            'stats': dict(self.run.stats),
            'error': self.run.error,
        }

    def _save_checkpoint(self, extra: Optional[Dict[str, Any]] = None) -> None:
        self.run.bump('checkpoints_saved')
        self.run.last_updated_at = datetime.now().isoformat()
        data = self.run.to_dict()
        data['phase_data'] = self.phase_data
        if extra:
            data.update(extra)
        self.checkpoints.save_checkpoint(data)

    def _save_checkpoint_quietly(self, status: str) -> None:
        if self.run is None:
            return
        self.run.status = status
        try:
            self._save_checkpoint()
            self.changelog.flush()
        except Exception as e:
            logger.error(f"保存检查点失败: {e}")

    def _finish(self) -> int:
        self.changelog.set_phase(Phase.COMPLETE.value)
        self.run.phase = Phase.COMPLETE.value
        self.run.status = RunStatus.COMPLETED.value
        self.run.completed_at = datetime.now().isoformat()
        self.run.stats['retries'] = self.retry.total_retries
        self._save_checkpoint()
        self.changelog.flush()
        self.checkpoints.mark_migration_completed()

        logger.success(f"迁移完成: {self.migration_id}")
        self.reporter.final_report(self.run, self.retry.get_retry_stats())

        removed = self.checkpoints.cleanup_old_checkpoints(self.checkpoint_retention_hours)
        if removed:
            logger.info(f"已清理 {removed} 个过期检查点")
        if self.state_store is not None:
            self.state_store.cleanup_old_states(self.state_retention_days)
        return 0

    def _handle_fatal(self, error: BaseException) -> int:
        """致命错误：先保存检查点，再输出日志并标记失败"""
        message = str(error)
        saved = False
        if self.run is not None:
            self.run.bump('errors')
            self.run.status = RunStatus.FAILED.value
            self.run.error = message
            try:
                self._save_checkpoint({
                    'error': message,
                    'error_type': type(error).__name__,
                    'can_resume': True,
                    'interrupted_at': datetime.now().isoformat(),
                })
                saved = True
            except Exception as save_error:
                logger.critical(f"无法保存失败检查点: {save_error}；原始错误: {message}")

            try:
                self.changelog.flush()
            except Exception as flush_error:
                logger.error(f"变更日志写入失败: {flush_error}")

        logger.opt(exception=error).error(f"迁移失败: {message}")

        if self.run is not None:
            try:
                self.checkpoints.mark_migration_failed(message)
            except Exception as mark_error:
                logger.error(f"无法标记迁移失败状态: {mark_error}")

        self.reporter.fatal(error, self.migration_id, checkpoint_saved=saved)
        return 1
