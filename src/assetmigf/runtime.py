"""
按配置组装迁移所需的各个组件
"""
from typing import Dict, Optional

from .config import MigrationConfig
from .core.changelog import ChangeLogManager
from .core.checkpoint import CheckpointManager
from .core.duplicates import DuplicateGroupStore
from .core.lock import MigrationLock
from .core.models import MigrationOptions
from .core.orchestrator import MigrationOrchestrator
from .core.retry import ErrorRecoveryManager
from .core.rollback import RollbackEngine
from .core.state_store import MigrationStateStore
from .services.local_services import LocalMigrationServices
from .services.local_storage import LocalStorage
from .services.sqlite_repository import SqliteContentRepository
from .ui.reporter import MigrationReporter


class MigrationRuntime:
    """一次命令执行期间共享的组件"""

    def __init__(self, config: MigrationConfig, reporter: Optional[MigrationReporter] = None):
        self.config = config
        self.reporter = reporter or MigrationReporter()
        self.state_store = MigrationStateStore(config.state_db)
        self.repository = SqliteContentRepository(config.content_db)
        self.volumes: Dict[str, LocalStorage] = {
            handle: LocalStorage(handle, root) for handle, root in config.volume_roots().items()
        }

    def services(self) -> LocalMigrationServices:
        return LocalMigrationServices(
            self.repository,
            self.volumes,
            source=self.config.get("volumes.source"),
            target=self.config.get("volumes.target"),
            quarantine=self.config.get("volumes.quarantine"),
            optimised_root=self.config.get("volumes.optimisedRoot"),
            target_subfolder=self.config.get("volumes.targetSubfolder") or "",
        )

    def checkpoints(self, migration_id: str) -> CheckpointManager:
        return CheckpointManager(self.config.checkpoint_dir, migration_id, state_store=self.state_store)

    def changelog(self, migration_id: str) -> ChangeLogManager:
        return ChangeLogManager(
            self.config.changelog_dir, migration_id, flush_every=self.config.changelog_flush_every
        )

    def lock(self, migration_id: str) -> MigrationLock:
        return MigrationLock(self.config.state_db, migration_id, ttl=self.config.lock_timeout)

    def rollback_engine(self) -> RollbackEngine:
        return RollbackEngine(
            self.repository, self.volumes, self.config.changelog_dir, self.config.backup_dir
        )

    def orchestrator(self, migration_id: str, options: MigrationOptions, command: str = "") -> MigrationOrchestrator:
        return MigrationOrchestrator(
            migration_id,
            services=self.services(),
            checkpoints=self.checkpoints(migration_id),
            changelog=self.changelog(migration_id),
            retry=ErrorRecoveryManager(self.config.max_retries, self.config.retry_delay),
            reporter=self.reporter,
            lock=None if options.skip_lock else self.lock(migration_id),
            duplicate_store=DuplicateGroupStore(self.config.state_db, migration_id),
            state_store=self.state_store,
            options=options,
            backup_dir=self.config.backup_dir,
            batch_size=self.config.batch_size,
            checkpoint_every=self.config.checkpoint_every_batches,
            lock_acquire_timeout=self.config.lock_acquire_timeout,
            lock_refresh_interval=self.config.lock_refresh_interval,
            checkpoint_retention_hours=self.config.checkpoint_retention_hours,
            state_retention_days=self.config.state_retention_days,
            command=command,
        )

    def close(self) -> None:
        self.repository.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
