"""
迁移引擎核心：运行锁、重试、检查点、变更日志、回滚和编排器
"""

from .changelog import ChangeLogManager
from .checkpoint import CheckpointManager
from .errors import ErrorKind, MigrationError
from .lock import MigrationLock
from .orchestrator import MigrationOrchestrator
from .retry import ErrorRecoveryManager
from .rollback import RollbackEngine
from .state_store import MigrationStateStore

__all__ = [
    "ChangeLogManager",
    "CheckpointManager",
    "ErrorKind",
    "ErrorRecoveryManager",
    "MigrationError",
    "MigrationLock",
    "MigrationOrchestrator",
    "MigrationStateStore",
    "RollbackEngine",
]
