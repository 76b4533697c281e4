"""
数据模型定义
"""
import os
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set


class Phase(str, Enum):
    """迁移阶段（固定顺序）"""
    INITIALIZING = "initializing"
    PREPARATION = "preparation"
    OPTIMISED_ROOT = "optimised_root"
    DISCOVERY = "discovery"
    LINK_INLINE = "link_inline"
    SAFE_DUPLICATES = "safe_duplicates"
    RESOLVE_DUPLICATES = "resolve_duplicates"
    FIX_LINKS = "fix_links"
    CONSOLIDATE = "consolidate"
    QUARANTINE = "quarantine"
    TEMP_CLEANUP = "temp_cleanup"
    CLEANUP = "cleanup"
    UPDATE_SUBFOLDER = "update_subfolder"
    COMPLETE = "complete"


# 回滚 "from" 模式使用的阶段顺序
PHASE_ORDER: List[str] = [
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
    Phase.COMPLETE.value,
]

# 恢复时从头重跑的阶段
EARLY_PHASES = {
    Phase.INITIALIZING.value,
    Phase.PREPARATION.value,
    Phase.OPTIMISED_ROOT.value,
    Phase.DISCOVERY.value,
}

# 恢复时只需重新校验的阶段
TERMINAL_PHASES = {Phase.CLEANUP.value, Phase.COMPLETE.value}


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"


class ChangeType(str, Enum):
    """变更日志条目类型"""
    INLINE_IMAGE_LINKED = "inline_image_linked"
    MOVED_ASSET = "moved_asset"
    FIXED_BROKEN_LINK = "fixed_broken_link"
    QUARANTINED_UNUSED_ASSET = "quarantined_unused_asset"
    QUARANTINED_ORPHANED_FILE = "quarantined_orphaned_file"
    MOVED_FROM_OPTIMISED_ROOT = "moved_from_optimised_root"
    UPDATED_ASSET_PATH = "updated_asset_path"
    DELETED_DUPLICATE_ASSET = "deleted_duplicate_asset"
    FILESYSTEM_UPDATE = "filesystem_update"
    DELETED_TRANSFORM = "deleted_transform"
    BROKEN_LINK_NOT_FIXED = "broken_link_not_fixed"


def _default_stats() -> Dict[str, Any]:
    return {
        'files_moved': 0,
        'files_quarantined': 0,
        'errors': 0,
        'retries': 0,
        'checkpoints_saved': 0,
        'resume_count': 0,
        'start_time': time.time(),
    }


@dataclass
class MigrationOptions:
    """迁移运行选项"""
    dry_run: bool = False
    yes: bool = False
    skip_backup: bool = False
    skip_inline_detection: bool = False
    skip_lock: bool = False
    resume: bool = False
    checkpoint_id: Optional[str] = None


@dataclass
class MigrationRun:
    """一次迁移运行的内存状态

    processed_ids 只增不减；顺序列表用于持久化，集合用于快速查重。
    """
    migration_id: str
    phase: str = Phase.INITIALIZING.value
    status: str = RunStatus.RUNNING.value
    pid: int = field(default_factory=os.getpid)
    batch: int = 0
    processed_ids: List[str] = field(default_factory=list)
    stats: Dict[str, Any] = field(default_factory=_default_stats)
    error: Optional[str] = None
    started_at: str = field(default_factory=lambda: datetime.now().isoformat())
    last_updated_at: Optional[str] = None
    completed_at: Optional[str] = None
    _processed_set: Set[str] = field(default_factory=set, repr=False)

    def __post_init__(self):
        self._processed_set = set(self.processed_ids)

    def is_processed(self, item_id: str) -> bool:
        return item_id in self._processed_set

    def mark_processed(self, item_id: str) -> None:
        if item_id not in self._processed_set:
            self._processed_set.add(item_id)
            self.processed_ids.append(item_id)

    @property
    def processed_count(self) -> int:
        return len(self.processed_ids)

    def bump(self, name: str, amount: int = 1) -> None:
        self.stats[name] = self.stats.get(name, 0) + amount

    def to_dict(self) -> Dict[str, Any]:
        return {
            'migration_id': self.migration_id,
            'phase': self.phase,
            'status': self.status,
            'pid': self.pid,
            'batch': self.batch,
            'processed_ids': list(self.processed_ids),
            'stats': dict(self.stats),
            'error': self.error,
            'started_at': self.started_at,
            'last_updated_at': self.last_updated_at,
            'completed_at': self.completed_at,
        }


@dataclass
class WorkItem:
    """阶段内待处理的单个条目"""
    id: str
    payload: Dict[str, Any] = field(default_factory=dict)
