"""
迁移配置

默认值以模块级字典给出，可由 YAML 文件覆盖；ASSETMIGF_ENV 选择
environments 下的环境段再覆盖一次。
"""
import copy
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from loguru import logger

ENV_VAR = "ASSETMIGF_ENV"
DEFAULT_CONFIG_NAME = "assetmigf.yaml"

DEFAULT_CONFIG: Dict[str, Any] = {
    "migration": {
        "batchSize": 100,
        "checkpointEveryBatches": 1,
        "changelogFlushEvery": 5,
        "maxRetries": 3,
        "retryDelay": 1.0,
        "checkpointRetentionHours": 72,
        "stateRetentionDays": 7,
        "lockTimeoutSeconds": 43200,
        "lockAcquireTimeoutSeconds": 3,
        "lockRefreshIntervalSeconds": 60,
    },
    "paths": {
        # checkpoints/ changelogs/ backups/ migration.db content.db 都放在这里
        "storage": "storage/migration",
    },
    "volumes": {
        "source": "source",
        "target": "target",
        "quarantine": "quarantine",
        "optimisedRoot": None,
        "targetSubfolder": "",
        "roots": {},
    },
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


class MigrationConfig:
    """迁移配置访问器"""

    def __init__(self, data: Optional[Dict[str, Any]] = None, base_dir: Optional[Path] = None):
        self.data = _deep_merge(copy.deepcopy(DEFAULT_CONFIG), data or {})
        self.base_dir = Path(base_dir) if base_dir else Path.cwd()

    @classmethod
    def load(cls, path: Optional[Path] = None, env: Optional[str] = None) -> "MigrationConfig":
        """从 YAML 文件加载配置

        Args:
            path: 配置文件路径，为空时尝试当前目录下的 assetmigf.yaml
            env: 环境名，为空时读取 ASSETMIGF_ENV
        """
        path = Path(path) if path else Path.cwd() / DEFAULT_CONFIG_NAME
        data: Dict[str, Any] = {}
        if path.exists():
            with open(path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
            logger.debug(f"已加载配置文件: {path}")
        else:
            logger.debug(f"配置文件不存在，使用默认配置: {path}")

        env = env or os.environ.get(ENV_VAR)
        environments = data.pop("environments", {}) or {}
        if env:
            if env in environments:
                _deep_merge(data, environments[env])
                logger.info(f"使用环境配置: {env}")
            else:
                logger.warning(f"未找到环境配置: {env}")

        return cls(data, base_dir=path.parent)

    def get(self, dotted: str, default: Any = None) -> Any:
        node: Any = self.data
        for part in dotted.split('.'):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def _path(self, value: str) -> Path:
        path = Path(value)
        if not path.is_absolute():
            path = self.base_dir / path
        return path

    @property
    def storage_dir(self) -> Path:
        return self._path(self.get("paths.storage"))

    @property
    def checkpoint_dir(self) -> Path:
        return self.storage_dir / "checkpoints"

    @property
    def changelog_dir(self) -> Path:
        return self.storage_dir / "changelogs"

    @property
    def backup_dir(self) -> Path:
        return self.storage_dir / "backups"

    @property
    def state_db(self) -> Path:
        return self.storage_dir / "migration.db"

    @property
    def content_db(self) -> Path:
        return self.storage_dir / "content.db"

    def volume_roots(self) -> Dict[str, Path]:
        """卷句柄到目录的映射"""
        roots = {
            handle: self._path(value)
            for handle, value in (self.get("volumes.roots") or {}).items()
        }
        for key in ("source", "target", "quarantine", "optimisedRoot"):
            handle = self.get(f"volumes.{key}")
            if handle and handle not in roots:
                roots[handle] = self.storage_dir / "volumes" / handle
        return roots

    @property
    def batch_size(self) -> int:
        return int(self.get("migration.batchSize", 100))

    @property
    def checkpoint_every_batches(self) -> int:
        return max(1, int(self.get("migration.checkpointEveryBatches", 1)))

    @property
    def changelog_flush_every(self) -> int:
        return int(self.get("migration.changelogFlushEvery", 5))

    @property
    def max_retries(self) -> int:
        return int(self.get("migration.maxRetries", 3))

    @property
    def retry_delay(self) -> float:
        return float(self.get("migration.retryDelay", 1.0))

    @property
    def checkpoint_retention_hours(self) -> int:
        return int(self.get("migration.checkpointRetentionHours", 72))

    @property
    def state_retention_days(self) -> int:
        return int(self.get("migration.stateRetentionDays", 7))

    @property
    def lock_timeout(self) -> int:
        return int(self.get("migration.lockTimeoutSeconds", 43200))

    @property
    def lock_acquire_timeout(self) -> int:
        return int(self.get("migration.lockAcquireTimeoutSeconds", 3))

    @property
    def lock_refresh_interval(self) -> int:
        return int(self.get("migration.lockRefreshIntervalSeconds", 60))


def dump_default_config() -> str:
    return yaml.dump(DEFAULT_CONFIG, default_flow_style=False, allow_unicode=True, sort_keys=False)
