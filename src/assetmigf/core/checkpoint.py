"""检查点存储

两级检查点：
- {migration_id}.json        完整检查点，原子替换写入
- {migration_id}.state.json  快速状态，仅包含恢复所需的最小字段

快速状态由完整检查点派生，processed_ids 始终是完整检查点的子集。
"""

import json
import os
import re
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from loguru import logger

from .errors import PathTraversalError
from .models import RunStatus

CHECKPOINT_VERSION = 1
FULL_SUFFIX = ".json"
QUICK_SUFFIX = ".state.json"
MIGRATION_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")

QUICK_STATE_FIELDS = (
    'migration_id', 'phase', 'status', 'batch', 'processed_ids', 'stats', 'error', 'timestamp',
)


def validate_migration_id(migration_id: str) -> str:
    if not isinstance(migration_id, str) or not MIGRATION_ID_RE.match(migration_id):
        raise PathTraversalError(f"非法的迁移 ID: {migration_id!r}")
    return migration_id


def is_full_checkpoint(path: Path) -> bool:
    return path.name.endswith(FULL_SUFFIX) and not path.name.endswith(QUICK_SUFFIX)


def _atomic_write_json(path: Path, data: Dict[str, Any]) -> None:
    tmp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    try:
        with open(tmp_path, 'w', encoding='utf-8') as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


def latest_checkpoint(checkpoint_dir: Path) -> Optional[Dict[str, Any]]:
    """返回目录中修改时间最新的完整检查点，排除快速状态文件"""
    candidates = [p for p in Path(checkpoint_dir).glob(f"*{FULL_SUFFIX}") if is_full_checkpoint(p)]
    if not candidates:
        return None
    path = max(candidates, key=lambda p: p.stat().st_mtime_ns)
    with open(path, 'r', encoding='utf-8') as f:
        return json.load(f)


def list_checkpoint_files(checkpoint_dir: Path) -> List[Dict[str, Any]]:
    result = []
    for path in Path(checkpoint_dir).glob(f"*{FULL_SUFFIX}"):
        if not is_full_checkpoint(path):
            continue
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"无法读取检查点 {path.name}: {e}")
            continue
        result.append({
            'id': data.get('migration_id', path.stem),
            'phase': data.get('phase'),
            'status': data.get('status'),
            'timestamp': data.get('timestamp'),
            'processed': len(data.get('processed_ids') or []),
            'file': path.name,
            'mtime': path.stat().st_mtime,
        })
    result.sort(key=lambda item: item['mtime'], reverse=True)
    return result


def cleanup_checkpoint_dir(checkpoint_dir: Path, max_age_hours: float = 72, now: Optional[float] = None) -> int:
    """删除修改时间早于截止时间的检查点文件

    单个文件删除失败只记录并计数，不中断清理。

    Returns:
        int: 删除的文件数
    """
    cutoff = (now if now is not None else time.time()) - max_age_hours * 3600
    removed = 0
    failed = 0
    for path in Path(checkpoint_dir).glob(f"*{FULL_SUFFIX}"):
        try:
            if path.stat().st_mtime >= cutoff:
                continue
            path.unlink()
            removed += 1
            logger.debug(f"已删除过期检查点: {path.name}")
        except OSError as e:
            failed += 1
            logger.warning(f"删除检查点失败 {path.name}: {e}")

    if removed or failed:
        logger.info(f"检查点清理完成: 删除 {removed} 个，失败 {failed} 个")
    return removed


class CheckpointManager:
    """检查点管理器"""

    def __init__(self, checkpoint_dir: Path, migration_id: str, state_store=None):
        """
        Args:
            checkpoint_dir: 检查点目录
            migration_id: 迁移 ID，只允许字母数字、下划线和连字符
            state_store: 可选的 MigrationStateStore，用于镜像摘要
        """
        self.migration_id = validate_migration_id(migration_id)
        self.checkpoint_dir = Path(checkpoint_dir)
        self.checkpoint_dir.mkdir(parents=True, exist_ok=True)
        self.base_dir = self.checkpoint_dir.resolve()
        self.state_store = state_store

    def _safe_path(self, filename: str) -> Path:
        """解析路径并确认仍在检查点目录内"""
        path = (self.base_dir / filename).resolve()
        try:
            path.relative_to(self.base_dir)
        except ValueError:
            raise PathTraversalError(f"路径越出检查点目录: {filename}")
        if path.parent != self.base_dir:
            raise PathTraversalError(f"路径越出检查点目录: {filename}")
        return path

    def _full_path(self, migration_id: Optional[str] = None) -> Path:
        migration_id = validate_migration_id(migration_id or self.migration_id)
        return self._safe_path(f"{migration_id}{FULL_SUFFIX}")

    def _quick_path(self, migration_id: Optional[str] = None) -> Path:
        migration_id = validate_migration_id(migration_id or self.migration_id)
        return self._safe_path(f"{migration_id}{QUICK_SUFFIX}")

    def save_checkpoint(self, data: Dict[str, Any]) -> bool:
        """写入完整检查点，再派生快速状态并镜像到状态存储

        完整检查点写入失败会抛出异常；后两步失败只记录日志。
        """
        checkpoint = dict(data)
        checkpoint['migration_id'] = self.migration_id
        checkpoint['checkpoint_version'] = CHECKPOINT_VERSION
        checkpoint['timestamp'] = datetime.now().isoformat()
        checkpoint.setdefault('created_at', checkpoint['timestamp'])
        checkpoint.setdefault('processed_ids', [])

        path = self._full_path()
        _atomic_write_json(path, checkpoint)
        logger.debug(
            f"检查点已保存: {path.name} (阶段 {checkpoint.get('phase')}, "
            f"已处理 {len(checkpoint['processed_ids'])})"
        )

        try:
            self.save_quick_state(self._derive_quick_state(checkpoint))
        except Exception as e:
            logger.warning(f"快速状态写入失败: {e}")

        if self.state_store is not None:
            try:
                self._mirror(checkpoint, path)
            except Exception as e:
                logger.warning(f"检查点镜像到状态存储失败: {e}")

        return True

    def _derive_quick_state(self, checkpoint: Dict[str, Any]) -> Dict[str, Any]:
        return {key: checkpoint.get(key) for key in QUICK_STATE_FIELDS}

    def _mirror(self, checkpoint: Dict[str, Any], path: Path) -> None:
        processed = checkpoint.get('processed_ids') or []
        self.state_store.save_state({
            'migration_id': self.migration_id,
            'phase': checkpoint.get('phase'),
            'status': checkpoint.get('status', RunStatus.RUNNING.value),
            'pid': checkpoint.get('pid'),
            'batch': checkpoint.get('batch', 0),
            'processed_ids': processed,
            'processed_count': len(processed),
            'stats': checkpoint.get('stats'),
            'error': checkpoint.get('error'),
            'checkpoint_file': path.name,
        })
        self.state_store.record_checkpoint(
            checkpoint_id=f"{self.migration_id}-{checkpoint['timestamp']}",
            migration_id=self.migration_id,
            phase=checkpoint.get('phase'),
            processed_count=len(processed),
        )

    def save_quick_state(self, data: Dict[str, Any]) -> None:
        state = dict(data)
        state['migration_id'] = self.migration_id
        state.setdefault('timestamp', datetime.now().isoformat())
        _atomic_write_json(self._quick_path(), state)

    def load_quick_state(self) -> Optional[Dict[str, Any]]:
        path = self._quick_path()
        if not path.exists():
            return None
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"读取快速状态失败: {e}")
            return None

    def load_latest_checkpoint(self, migration_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """加载完整检查点

        Args:
            migration_id: 指定 ID；为空时返回目录中修改时间最新的完整检查点
        """
        if not migration_id:
            return latest_checkpoint(self.base_dir)
        path = self._full_path(migration_id)
        if not path.exists():
            return None
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)

    def list_checkpoints(self) -> List[Dict[str, Any]]:
        return list_checkpoint_files(self.base_dir)

    def cleanup_old_checkpoints(self, max_age_hours: float = 72, now: Optional[float] = None) -> int:
        return cleanup_checkpoint_dir(self.base_dir, max_age_hours, now)

    def update_processed_ids(self, ids: Iterable[str]) -> None:
        """合并已处理 ID，先写完整检查点再派生快速状态"""
        checkpoint = self.load_latest_checkpoint(self.migration_id) or {
            'phase': 'initializing',
            'status': RunStatus.RUNNING.value,
            'processed_ids': [],
        }
        processed = list(checkpoint.get('processed_ids') or [])
        seen = set(processed)
        for item_id in ids:
            if item_id not in seen:
                seen.add(item_id)
                processed.append(item_id)
        checkpoint['processed_ids'] = processed
        self.save_checkpoint(checkpoint)

    def register_migration_start(self, pid: int, command: str = "", total_count: int = 0) -> None:
        if self.state_store is None:
            return
        self.state_store.save_state({
            'migration_id': self.migration_id,
            'phase': 'initializing',
            'status': RunStatus.RUNNING.value,
            'pid': pid,
            'command': command,
            'total_count': total_count,
            'started_at': datetime.now().isoformat(),
        })

    def mark_migration_completed(self) -> None:
        if self.state_store is not None:
            self.state_store.update_status(self.migration_id, RunStatus.COMPLETED.value)

    def mark_migration_failed(self, message: str) -> None:
        if self.state_store is not None:
            self.state_store.update_status(self.migration_id, RunStatus.FAILED.value, message)

    def get_migration_state(self) -> Optional[Dict[str, Any]]:
        if self.state_store is None:
            return None
        return self.state_store.get_state(self.migration_id)
