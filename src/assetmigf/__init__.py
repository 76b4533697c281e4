"""
assetmigf - 资产迁移编排工具

按固定阶段顺序整理资产记录和文件，支持断点恢复、运行锁和基于变更日志的回滚。
"""

from .config import MigrationConfig
from .core.models import MigrationOptions, MigrationRun, Phase, RunStatus
from .core.orchestrator import MigrationOrchestrator
from .core.rollback import RollbackEngine
from .runtime import MigrationRuntime

__version__ = "0.1.0"
__all__ = [
    "MigrationConfig",
    "MigrationOptions",
    "MigrationRun",
    "MigrationOrchestrator",
    "MigrationRuntime",
    "Phase",
    "RollbackEngine",
    "RunStatus",
]
