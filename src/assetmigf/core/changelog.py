"""变更日志

每个迁移一个 JSONL 文件，条目按写入顺序追加，带序号、时间戳和写入时的阶段。
内存缓冲满 flush_every 条或显式 flush() 时落盘。
"""

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from loguru import logger

from .checkpoint import validate_migration_id
from .models import Phase


class ChangeLogManager:
    """变更日志管理器"""

    def __init__(self, changelog_dir: Path, migration_id: str, flush_every: int = 5):
        self.migration_id = validate_migration_id(migration_id)
        self.changelog_dir = Path(changelog_dir)
        self.changelog_dir.mkdir(parents=True, exist_ok=True)
        self.flush_every = max(1, flush_every)
        self.current_phase = Phase.INITIALIZING.value
        self.buffer: List[Dict[str, Any]] = []
        self.sequence = self._count_lines(self.log_path)

    @property
    def log_path(self) -> Path:
        return self._path_for(self.migration_id)

    def _path_for(self, migration_id: str) -> Path:
        return self.changelog_dir / f"{validate_migration_id(migration_id)}.jsonl"

    @staticmethod
    def _count_lines(path: Path) -> int:
        if not path.exists():
            return 0
        with open(path, 'r', encoding='utf-8') as f:
            return sum(1 for line in f if line.strip())

    def set_phase(self, phase: str) -> None:
        """切换当前阶段，切换前把上一阶段的缓冲写盘"""
        self.flush()
        self.current_phase = phase.value if isinstance(phase, Phase) else phase

    def log_change(self, change: Dict[str, Any]) -> Dict[str, Any]:
        if 'type' not in change:
            raise ValueError("变更条目缺少 type 字段")
        self.sequence += 1
        entry = dict(change)
        entry['sequence'] = self.sequence
        entry['timestamp'] = datetime.now().isoformat()
        entry['phase'] = self.current_phase
        self.buffer.append(entry)
        if len(self.buffer) >= self.flush_every:
            self.flush()
        return entry

    def flush(self) -> int:
        """把缓冲中的条目追加到日志文件

        Returns:
            int: 写入的条目数
        """
        if not self.buffer:
            return 0
        with open(self.log_path, 'a', encoding='utf-8') as f:
            for entry in self.buffer:
                f.write(json.dumps(entry, ensure_ascii=False) + "\n")
        count = len(self.buffer)
        self.buffer = []
        logger.debug(f"变更日志已写入 {count} 条 ({self.current_phase})")
        return count

    def load_changes(self, migration_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """按写入顺序读取已落盘的变更，损坏的行会被跳过"""
        path = self._path_for(migration_id or self.migration_id)
        if not path.exists():
            return []
        changes = []
        with open(path, 'r', encoding='utf-8') as f:
            for line_no, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    changes.append(json.loads(line))
                except json.JSONDecodeError as e:
                    logger.warning(f"跳过损坏的变更日志行 {path.name}:{line_no}: {e}")
        return changes

    def list_migrations(self) -> List[Dict[str, Any]]:
        result = []
        for path in sorted(self.changelog_dir.glob("*.jsonl")):
            result.append({
                'migration_id': path.stem,
                'changes': self._count_lines(path),
                'timestamp': datetime.fromtimestamp(path.stat().st_mtime).isoformat(),
            })
        result.sort(key=lambda item: item['timestamp'], reverse=True)
        return result

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.flush()
        return False
