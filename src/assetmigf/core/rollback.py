"""回滚引擎

两种方式：
1. 数据库恢复：校验并执行迁移前的完整 SQL 备份
2. 逐条回滚：按变更日志倒序逆转每一条变更，可按阶段筛选
"""

import math
import re
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from loguru import logger

from .changelog import ChangeLogManager
from .checkpoint import validate_migration_id
from .errors import BackupVerificationError, ErrorKind, MigrationError
from .models import ChangeType, PHASE_ORDER

STATEMENT_RE = re.compile(r"^\s*(CREATE|INSERT|UPDATE|DELETE|DROP|ALTER|USE)\b", re.IGNORECASE)
TABLE_RE = re.compile(
    r"^\s*(?:CREATE\s+TABLE(?:\s+IF\s+NOT\s+EXISTS)?|INSERT\s+INTO)\s+[\"`\[]?(\w+)",
    re.IGNORECASE,
)
SUSPICIOUS_PATTERNS = [
    "INTO OUTFILE",
    "LOAD_FILE",
    "INTO DUMPFILE",
    "EVAL(",
    "EXEC(",
    "SYSTEM(",
]
HEADER_LINES = 100
SCAN_BYTES = 8192
SECONDS_PER_CHANGE = 0.1
SECONDS_PER_MB = 0.5


def backup_filename(migration_id: str) -> str:
    return f"migration_{migration_id}_db_backup.sql"


def _format_estimate(seconds: float) -> str:
    minutes = math.ceil(seconds / 60)
    return f"~{minutes} minutes" if minutes > 1 else "< 1 minute"


class RollbackEngine:
    """回滚引擎"""

    def __init__(self, repository, volumes: Dict[str, Any], changelog_dir: Path, backup_dir: Path):
        """
        Args:
            repository: ContentRepository 实现
            volumes: 卷句柄到 StorageAdapter 的映射
            changelog_dir: 变更日志目录
            backup_dir: 数据库备份目录
        """
        self.repository = repository
        self.volumes = volumes
        self.changelog_dir = Path(changelog_dir)
        self.backup_dir = Path(backup_dir)
        self._handlers: Dict[str, Callable[[Dict[str, Any]], bool]] = {
            ChangeType.INLINE_IMAGE_LINKED.value: self._reverse_inline_link,
            ChangeType.MOVED_ASSET.value: self._reverse_move,
            ChangeType.FIXED_BROKEN_LINK.value: self._reverse_broken_link_fix,
            ChangeType.QUARANTINED_UNUSED_ASSET.value: self._reverse_move,
            ChangeType.QUARANTINED_ORPHANED_FILE.value: self._reverse_orphan_quarantine,
            ChangeType.MOVED_FROM_OPTIMISED_ROOT.value: self._reverse_move,
            ChangeType.UPDATED_ASSET_PATH.value: self._reverse_asset_path,
            ChangeType.DELETED_DUPLICATE_ASSET.value: self._reverse_duplicate_delete,
            ChangeType.FILESYSTEM_UPDATE.value: self._reverse_filesystem_update,
            ChangeType.DELETED_TRANSFORM.value: self._noop,
            ChangeType.BROKEN_LINK_NOT_FIXED.value: self._noop,
        }

    # ------------------------------------------------------------------
    # 数据库恢复
    # ------------------------------------------------------------------

    def rollback_via_database(self, migration_id: str, dry_run: bool = False) -> Dict[str, Any]:
        validate_migration_id(migration_id)
        backup_file = self.backup_dir / backup_filename(migration_id)
        if not backup_file.exists():
            raise MigrationError(f"数据库备份不存在: {backup_file}", ErrorKind.NOT_FOUND)

        # 演练模式同样校验，避免报告一个无法使用的备份
        tables = self.verify_backup_file(backup_file)
        size = backup_file.stat().st_size
        size_mb = round(size / 1024 / 1024, 2)
        report = {
            'method': 'database_restore',
            'backup_file': str(backup_file),
            'backup_size': f"{size_mb} MB",
            'size_mb': size_mb,
            'tables': tables,
        }

        if dry_run:
            report['dry_run'] = True
            report['estimated_time'] = _format_estimate(size_mb * SECONDS_PER_MB)
            return report

        sql = backup_file.read_text(encoding='utf-8')
        logger.info(f"开始数据库恢复: {backup_file.name} ({size_mb} MB)")
        self.repository.set_foreign_keys(False)
        try:
            self.repository.execute_script(sql)
        except Exception as e:
            raise MigrationError(f"数据库恢复失败: {e}") from e
        finally:
            self.repository.set_foreign_keys(True)

        self.repository.invalidate_caches()
        logger.success(f"数据库恢复完成: {len(tables)} 张表")
        report['success'] = True
        report['tables_restored'] = tables
        return report

    def verify_backup_file(self, backup_file: Path) -> List[str]:
        """校验备份文件完整性和安全性

        Returns:
            List[str]: 备份中涉及的表名
        """
        base = self.backup_dir.resolve()
        resolved = Path(backup_file).resolve()
        try:
            resolved.relative_to(base)
        except ValueError:
            raise BackupVerificationError(f"备份文件不在备份目录内: {backup_file}")

        if resolved.suffix.lower() != ".sql":
            raise BackupVerificationError(f"备份文件扩展名不是 .sql: {resolved.name}")
        if resolved.stat().st_size == 0:
            raise BackupVerificationError(f"备份文件为空: {resolved.name}")

        with open(resolved, 'rb') as f:
            head = f.read(SCAN_BYTES).decode('utf-8', errors='replace').upper()
        for pattern in SUSPICIOUS_PATTERNS:
            if pattern in head:
                raise BackupVerificationError(f"备份文件包含可疑操作: {pattern}")

        tables: List[str] = []
        has_statement = False
        with open(resolved, 'r', encoding='utf-8', errors='replace') as f:
            for line_no, line in enumerate(f, 1):
                if line_no <= HEADER_LINES and STATEMENT_RE.match(line):
                    has_statement = True
                match = TABLE_RE.match(line)
                if match and match.group(1) not in tables:
                    tables.append(match.group(1))
        if not has_statement:
            raise BackupVerificationError(f"备份文件前 {HEADER_LINES} 行没有可识别的 SQL 语句")
        return tables

    # ------------------------------------------------------------------
    # 逐条回滚
    # ------------------------------------------------------------------

    def rollback(
        self,
        migration_id: str,
        phases: Optional[Union[str, Iterable[str]]] = None,
        mode: str = "from",
        dry_run: bool = False,
    ) -> Dict[str, Any]:
        """按变更日志倒序逆转变更

        Args:
            migration_id: 迁移 ID
            phases: 阶段名或阶段列表，为空时回滚全部
            mode: "only" 只回滚指定阶段；"from" 回滚指定阶段及其后的所有阶段
            dry_run: 只统计，不执行

        Returns:
            Dict: 回滚统计，演练模式下为报告
        """
        changes = ChangeLogManager(self.changelog_dir, migration_id).load_changes()
        if not changes:
            raise MigrationError(f"未找到迁移 {migration_id} 的变更记录", ErrorKind.NOT_FOUND)

        if phases:
            selected = self._select_phases(phases, mode)
            changes = [c for c in changes if c.get('phase') in selected]
            logger.info(f"按阶段筛选 ({mode}): {sorted(selected)}，共 {len(changes)} 条变更")

        if dry_run:
            return self._dry_run_report(changes)

        stats: Dict[str, Any] = {
            'total': len(changes),
            'reversed': 0,
            'skipped': 0,
            'errors': 0,
            'unknown': 0,
            'by_type': {},
        }

        for change in reversed(changes):
            change_type = change.get('type')
            handler = self._handlers.get(change_type)
            if handler is None:
                logger.warning(f"未知的变更类型，跳过: {change_type} (序号 {change.get('sequence')})")
                stats['unknown'] += 1
                continue
            try:
                if handler(change):
                    stats['reversed'] += 1
                    stats['by_type'][change_type] = stats['by_type'].get(change_type, 0) + 1
                else:
                    stats['skipped'] += 1
            except Exception as e:
                stats['errors'] += 1
                logger.error(f"回滚变更失败 {change_type} (序号 {change.get('sequence')}): {e}")

        self.repository.invalidate_caches()
        logger.info(
            f"回滚完成: 逆转 {stats['reversed']}，跳过 {stats['skipped']}，"
            f"失败 {stats['errors']}，未知 {stats['unknown']}"
        )
        return stats

    def _select_phases(self, phases: Union[str, Iterable[str]], mode: str) -> set:
        if isinstance(phases, str):
            phases = [p.strip() for p in phases.split(',') if p.strip()]
        phases = list(phases)

        if mode == "only":
            return set(phases)
        if mode != "from":
            raise MigrationError(f"invalid rollback mode: {mode}", ErrorKind.INVALID)

        unknown = [p for p in phases if p not in PHASE_ORDER]
        if unknown:
            raise MigrationError(f"invalid phase: {', '.join(unknown)}", ErrorKind.INVALID)
        start = min(PHASE_ORDER.index(p) for p in phases)
        return set(PHASE_ORDER[start:])

    def _dry_run_report(self, changes: List[Dict[str, Any]]) -> Dict[str, Any]:
        by_type: Dict[str, int] = {}
        by_phase: Dict[str, int] = {}
        for change in changes:
            change_type = change.get('type', 'unknown')
            phase = change.get('phase', 'unknown')
            by_type[change_type] = by_type.get(change_type, 0) + 1
            by_phase[phase] = by_phase.get(phase, 0) + 1
        return {
            'dry_run': True,
            'method': 'change_by_change',
            'total_operations': len(changes),
            'by_type': by_type,
            'by_phase': by_phase,
            'estimated_time': _format_estimate(len(changes) * SECONDS_PER_CHANGE),
        }

    def get_phases_summary(self, migration_id: str) -> Dict[str, Dict[str, Any]]:
        """按阶段汇总变更数量，顺序与迁移阶段一致"""
        changes = ChangeLogManager(self.changelog_dir, migration_id).load_changes()
        summary: Dict[str, Dict[str, Any]] = {}
        for change in changes:
            phase = change.get('phase', 'unknown')
            entry = summary.setdefault(phase, {'count': 0, 'by_type': {}})
            entry['count'] += 1
            change_type = change.get('type', 'unknown')
            entry['by_type'][change_type] = entry['by_type'].get(change_type, 0) + 1

        def order(phase: str) -> int:
            return PHASE_ORDER.index(phase) if phase in PHASE_ORDER else len(PHASE_ORDER)

        return {phase: summary[phase] for phase in sorted(summary, key=order)}

    # ------------------------------------------------------------------
    # 各类变更的逆操作，返回 False 表示跳过
    # ------------------------------------------------------------------

    def _volume(self, handle: str):
        if handle not in self.volumes:
            raise MigrationError(f"volume not found: {handle}", ErrorKind.NOT_FOUND)
        return self.volumes[handle]

    def _transfer(self, src_volume: str, src_path: str, dst_volume: str, dst_path: str) -> None:
        if src_volume == dst_volume:
            self._volume(src_volume).move(src_path, dst_path)
            return
        src = self._volume(src_volume)
        dst = self._volume(dst_volume)
        dst.write(dst_path, src.read(src_path))
        src.delete(src_path)

    def _reverse_inline_link(self, change: Dict[str, Any]) -> bool:
        self.repository.update_field(
            change['table'], change['record_id'], change['field'], change['original_content']
        )
        return True

    def _reverse_move(self, change: Dict[str, Any]) -> bool:
        self.repository.move_asset(change['asset_id'], change['from_volume'], change['from_folder'])
        if change.get('from_path') and change.get('to_path'):
            self._transfer(change['to_volume'], change['to_path'], change['from_volume'], change['from_path'])
        return True

    def _reverse_broken_link_fix(self, change: Dict[str, Any]) -> bool:
        if not change.get('original_volume'):
            logger.warning(f"缺少原始位置信息，无法回滚链接修复: 资产 {change.get('asset_id')}")
            return False
        self.repository.move_asset(
            change['asset_id'], change['original_volume'], change.get('original_folder', '')
        )
        return True

    def _reverse_orphan_quarantine(self, change: Dict[str, Any]) -> bool:
        quarantine = self._volume(change['quarantine_volume'])
        source = self._volume(change['source_volume'])
        source.write(change['source_path'], quarantine.read(change['quarantine_path']))
        quarantine.delete(change['quarantine_path'])
        return True

    def _reverse_asset_path(self, change: Dict[str, Any]) -> bool:
        self.repository.move_asset(change['asset_id'], change['old_volume'], change['old_folder'])
        return True

    def _reverse_duplicate_delete(self, change: Dict[str, Any]) -> bool:
        self.repository.restore_asset(change['asset_id'])
        relation_ids = change.get('relation_ids') or []
        if relation_ids:
            self.repository.repoint_relations(relation_ids, change['asset_id'])
        return True

    def _reverse_filesystem_update(self, change: Dict[str, Any]) -> bool:
        self.repository.set_volume_subfolder(change['volume'], change.get('old_subfolder') or "")
        return True

    def _noop(self, change: Dict[str, Any]) -> bool:
        # 衍生文件由系统自动重新生成，链接未修复本身没有改动
        logger.info(f"无需回滚: {change.get('type')}")
        return False
