"""
迁移编排器测试，使用内存中的假服务
"""
import json
from pathlib import Path
from unittest.mock import Mock, patch

import pytest

from assetmigf.core.changelog import ChangeLogManager
from assetmigf.core.checkpoint import CheckpointManager
from assetmigf.core.duplicates import DuplicateGroupStore
from assetmigf.core.lock import MigrationLock, list_locks
from assetmigf.core.models import MigrationOptions, WorkItem
from assetmigf.core.orchestrator import MigrationOrchestrator
from assetmigf.core.retry import ErrorRecoveryManager
from assetmigf.core.state_store import MigrationStateStore


class FakeServices:
    """按阶段返回预设条目的服务，记录所有调用"""

    def __init__(self, items=None, fail_on=None, error=None, duplicates=None, unavailable=()):
        self.items = items or {}
        self.fail_on = fail_on
        self.error = error
        self.duplicates = duplicates or {}
        self.unavailable = set(unavailable)
        self.applied = []
        self.prepared = 0
        self.backups = []
        self.cleaned_groups = []

    def prepare(self):
        self.prepared += 1
        return {'volumes': ['source', 'target']}

    def has_optimised_root(self):
        return False

    def build_asset_inventory(self):
        return []

    def build_file_inventory(self):
        return []

    def analyze(self, assets, files):
        return {'summary': {'assets': 0, 'files': 0}}

    def work_items(self, phase, analysis):
        return [WorkItem(item_id) for item_id in self.items.get(phase, [])]

    def apply(self, phase, item):
        if self.fail_on == (phase, item.id):
            raise self.error
        self.applied.append((phase, item.id))
        change_type = "moved_asset" if phase == "consolidate" else "updated_asset_path"
        return [{'type': change_type, 'asset_id': item.id}]

    def duplicate_groups(self, analysis):
        return self.duplicates

    def stage_duplicate_group(self, group):
        return {'assets': group['asset_ids']}

    def choose_primary(self, group):
        return max(group['asset_ids'])

    def clean_duplicate_group(self, group):
        self.cleaned_groups.append(group['file_key'])
        return [
            {'type': 'deleted_duplicate_asset', 'asset_id': a, 'kept_asset_id': group['primary_asset_id']}
            for a in group['asset_ids'] if a != group['primary_asset_id']
        ]

    def verify_duplicate_group(self, group):
        return group['file_key'] not in self.unavailable

    def create_backup(self, path):
        self.backups.append(Path(path))
        Path(path).write_text("CREATE TABLE assets (id INTEGER);\n", encoding='utf-8')
        return {'tables': ['assets']}

    def verify(self):
        return {'assets': 0, 'missing_files': 0}


@pytest.fixture
def store(tmp_path):
    return MigrationStateStore(tmp_path / "migration.db")


@pytest.fixture
def build(tmp_path, store, quiet_reporter):
    """构造编排器，未指定的协作者使用真实实现"""
    sleeps = []

    def factory(services, migration_id="mig_001", options=None, duplicate_store=None, **kwargs):
        kwargs.setdefault('batch_size', 2)
        kwargs.setdefault('lock_acquire_timeout', 0)
        return MigrationOrchestrator(
            migration_id,
            services=services,
            checkpoints=CheckpointManager(tmp_path / "checkpoints", migration_id, state_store=store),
            changelog=ChangeLogManager(tmp_path / "changelogs", migration_id),
            retry=ErrorRecoveryManager(max_retries=2, base_delay=1.0, sleep=sleeps.append),
            reporter=quiet_reporter,
            lock=MigrationLock(tmp_path / "migration.db", migration_id),
            duplicate_store=duplicate_store,
            state_store=store,
            options=options or MigrationOptions(yes=True),
            backup_dir=tmp_path / "backups",
            **kwargs,
        )

    factory.sleeps = sleeps
    (tmp_path / "backups").mkdir()
    return factory


def read_checkpoint(tmp_path, migration_id="mig_001"):
    with open(tmp_path / "checkpoints" / f"{migration_id}.json", encoding='utf-8') as f:
        return json.load(f)


ITEMS = {
    'link_inline': ['i1', 'i2'],
    'fix_links': ['f1'],
    'consolidate': ['c1', 'c2', 'c3'],
    'quarantine': ['q1'],
}


class TestFreshRun:
    """测试完整运行"""

    def test_runs_all_phases_in_order(self, build, tmp_path, store):
        services = FakeServices(ITEMS)
        code = build(services).execute()

        assert code == 0
        assert services.applied == [
            ('link_inline', 'i1'), ('link_inline', 'i2'),
            ('fix_links', 'f1'),
            ('consolidate', 'c1'), ('consolidate', 'c2'), ('consolidate', 'c3'),
            ('quarantine', 'q1'),
        ]
        assert services.backups == [tmp_path / "backups" / "migration_mig_001_db_backup.sql"]

        checkpoint = read_checkpoint(tmp_path)
        assert checkpoint['phase'] == 'complete'
        assert checkpoint['status'] == 'completed'
        assert 'consolidate:c3' in checkpoint['processed_ids']
        assert checkpoint['stats']['files_moved'] == 3
        assert checkpoint['phase_data']['verification'] == {'assets': 0, 'missing_files': 0}

        assert store.get_state("mig_001")['status'] == 'completed'
        assert list_locks(tmp_path / "migration.db") == []

    def test_changes_are_logged_with_phase(self, build, tmp_path):
        build(FakeServices(ITEMS)).execute()
        changes = ChangeLogManager(tmp_path / "changelogs", "mig_001").load_changes()
        assert [c['sequence'] for c in changes] == list(range(1, 8))
        assert [c['phase'] for c in changes][:3] == ['link_inline', 'link_inline', 'fix_links']

    def test_existing_backup_is_kept(self, build, tmp_path):
        backup = tmp_path / "backups" / "migration_mig_001_db_backup.sql"
        backup.write_text("-- before\n", encoding='utf-8')
        services = FakeServices(ITEMS)
        build(services).execute()
        assert services.backups == []
        assert backup.read_text(encoding='utf-8') == "-- before\n"

    def test_checkpoint_after_every_batch(self, build):
        orchestrator = build(FakeServices(ITEMS))
        with patch.object(
            orchestrator.checkpoints, 'save_checkpoint', wraps=orchestrator.checkpoints.save_checkpoint
        ) as spy:
            orchestrator.execute()
        batches = [c.args[0]['batch'] for c in spy.call_args_list if c.args[0]['phase'] == 'consolidate']
        # 进入阶段一次，两批各一次，阶段结束一次
        assert batches == [0, 1, 2, 2]

    def test_skip_inline_detection(self, build):
        services = FakeServices(ITEMS)
        build(services, options=MigrationOptions(yes=True, skip_inline_detection=True)).execute()
        assert not [a for a in services.applied if a[0] == 'link_inline']

    def test_safe_duplicates_walk_statuses(self, build, tmp_path):
        services = FakeServices(duplicates={'source:d.jpg': [4, 5]})
        dup_store = DuplicateGroupStore(tmp_path / "migration.db", "mig_001")
        code = build(services, duplicate_store=dup_store).execute()

        assert code == 0
        assert services.cleaned_groups == ['source:d.jpg']
        group = dup_store.load_groups()[0]
        assert group['status'] == 'cleaned'
        assert group['primary_asset_id'] == 5
        assert group['data'] == {'assets': [4, 5]}
        assert 'safe_duplicates:source:d.jpg' in read_checkpoint(tmp_path)['processed_ids']

    def test_unavailable_primary_skips_group(self, build, tmp_path):
        services = FakeServices(duplicates={'source:x.jpg': [1, 2]}, unavailable={'source:x.jpg'})
        dup_store = DuplicateGroupStore(tmp_path / "migration.db", "mig_001")
        code = build(services, duplicate_store=dup_store).execute()

        assert code == 0
        assert services.cleaned_groups == []
        assert dup_store.load_groups()[0]['status'] == 'skipped'
        changes = ChangeLogManager(tmp_path / "changelogs", "mig_001").load_changes()
        assert not [c for c in changes if c['type'] == 'deleted_duplicate_asset']
        assert 'safe_duplicates:source:x.jpg' in read_checkpoint(tmp_path)['processed_ids']

    def test_failed_verification_still_logs_deletions(self, build, tmp_path):
        services = FakeServices(duplicates={'source:d.jpg': [4, 5]})
        services.verify_duplicate_group = Mock(side_effect=[True, False])
        dup_store = DuplicateGroupStore(tmp_path / "migration.db", "mig_001")
        code = build(services, duplicate_store=dup_store).execute()

        assert code == 1
        changes = ChangeLogManager(tmp_path / "changelogs", "mig_001").load_changes()
        deleted = [c for c in changes if c['type'] == 'deleted_duplicate_asset']
        assert [(c['asset_id'], c['phase']) for c in deleted] == [(4, 'safe_duplicates')]
        assert read_checkpoint(tmp_path)['error_type'] == 'MigrationError'
        assert dup_store.load_groups()[0]['status'] == 'analyzed'


class TestConfirmationGates:
    """测试确认点"""

    def test_dry_run_changes_nothing(self, build, tmp_path):
        services = FakeServices(ITEMS)
        code = build(services, options=MigrationOptions(dry_run=True)).execute()
        assert code == 0
        assert services.applied == []
        assert services.backups == []
        checkpoint = read_checkpoint(tmp_path)
        assert checkpoint['phase'] == 'discovery'
        assert checkpoint['status'] == 'paused'

    def test_declined_after_discovery_pauses(self, build, tmp_path, quiet_reporter):
        quiet_reporter.confirm = Mock(return_value=False)
        services = FakeServices(ITEMS)
        code = build(services, options=MigrationOptions()).execute()
        assert code == 0
        assert services.applied == []
        assert read_checkpoint(tmp_path)['status'] == 'paused'
        assert list_locks(tmp_path / "migration.db") == []

    def test_declined_quarantine_skips_phase(self, build, tmp_path, quiet_reporter):
        quiet_reporter.confirm = Mock(side_effect=[True, False])
        services = FakeServices(ITEMS)
        code = build(services, options=MigrationOptions()).execute()
        assert code == 0
        assert ('quarantine', 'q1') not in services.applied
        assert ('consolidate', 'c3') in services.applied
        assert read_checkpoint(tmp_path)['status'] == 'completed'


class TestFailures:
    """测试错误处理"""

    def test_retryable_error_exhausts_and_fails(self, build, tmp_path, store):
        services = FakeServices(ITEMS, fail_on=('fix_links', 'f1'), error=ConnectionError("connection reset"))
        orchestrator = build(services)
        code = orchestrator.execute()

        assert code == 1
        assert build.sleeps == [1.0, 2.0]
        checkpoint = read_checkpoint(tmp_path)
        assert checkpoint['phase'] == 'fix_links'
        assert checkpoint['status'] == 'failed'
        assert 'connection reset' in checkpoint['error']
        assert checkpoint['error_type'] == 'RetryExhaustedError'
        assert checkpoint['can_resume'] is True
        assert checkpoint['stats']['errors'] == 1
        assert 'link_inline:i2' in checkpoint['processed_ids']

        assert list_locks(tmp_path / "migration.db") == []
        state = store.get_state("mig_001")
        assert state['status'] == 'failed'
        assert 'connection reset' in state['error_message']

    def test_fatal_error_is_not_retried(self, build, tmp_path):
        services = FakeServices(ITEMS, fail_on=('consolidate', 'c2'), error=FileNotFoundError("c2.jpg"))
        code = build(services).execute()
        assert code == 1
        assert build.sleeps == []
        checkpoint = read_checkpoint(tmp_path)
        assert checkpoint['error_type'] == 'FileNotFoundError'
        assert 'consolidate:c1' in checkpoint['processed_ids']

    def test_lock_contention(self, build, tmp_path):
        other = MigrationLock(tmp_path / "migration.db", "mig_other")
        assert other.acquire(timeout=0)
        services = FakeServices(ITEMS)
        code = build(services).execute()
        assert code == 1
        assert services.prepared == 0
        assert [lock['migration_id'] for lock in list_locks(tmp_path / "migration.db")] == ["mig_other"]
        assert not (tmp_path / "checkpoints" / "mig_001.json").exists()

    def test_interrupted_run_keeps_log_in_step_with_checkpoint(self, build, tmp_path):
        services = FakeServices(ITEMS, fail_on=('consolidate', 'c3'), error=KeyboardInterrupt())
        with pytest.raises(KeyboardInterrupt):
            build(services).execute()

        checkpoint = read_checkpoint(tmp_path)
        done = [i for i in checkpoint['processed_ids'] if i.startswith('consolidate:')]
        assert done == ['consolidate:c1', 'consolidate:c2']
        changes = ChangeLogManager(tmp_path / "changelogs", "mig_001").load_changes()
        assert [c['asset_id'] for c in changes if c['phase'] == 'consolidate'] == ['c1', 'c2']
        assert list_locks(tmp_path / "migration.db") == []


class TestResume:
    """测试断点恢复"""

    def test_resume_from_quick_state_only(self, build, tmp_path):
        failing = FakeServices(ITEMS, fail_on=('consolidate', 'c2'), error=FileNotFoundError("c2.jpg"))
        assert build(failing).execute() == 1

        # 完整检查点丢失，只剩快速状态；上次的锁也未释放
        (tmp_path / "checkpoints" / "mig_001.json").unlink()
        stale = MigrationLock(tmp_path / "migration.db", "mig_001")
        assert stale.acquire(timeout=0)

        services = FakeServices(ITEMS)
        code = build(services, options=MigrationOptions(yes=True, resume=True)).execute()

        assert code == 0
        assert services.applied == [('consolidate', 'c2'), ('consolidate', 'c3'), ('quarantine', 'q1')]
        assert services.prepared == 1
        checkpoint = read_checkpoint(tmp_path)
        assert checkpoint['status'] == 'completed'
        assert checkpoint['stats']['resume_count'] == 1
        assert checkpoint['stats']['files_moved'] == 3
        assert checkpoint['processed_ids'][:3] == ['link_inline:i1', 'link_inline:i2', 'fix_links:f1']
        assert list_locks(tmp_path / "migration.db") == []

    def test_resume_from_named_full_checkpoint(self, build, tmp_path):
        failing = FakeServices(ITEMS, fail_on=('fix_links', 'f1'), error=PermissionError("denied"))
        assert build(failing).execute() == 1

        services = FakeServices(ITEMS)
        options = MigrationOptions(yes=True, resume=True, checkpoint_id="mig_001")
        assert build(services, options=options).execute() == 0
        assert services.applied[0] == ('fix_links', 'f1')
        assert 'discovery' in read_checkpoint(tmp_path)['phase_data']

    def test_resume_after_complete_only_verifies(self, build, tmp_path):
        assert build(FakeServices(ITEMS)).execute() == 0
        services = FakeServices(ITEMS)
        assert build(services, options=MigrationOptions(yes=True, resume=True)).execute() == 0
        assert services.applied == []
        assert read_checkpoint(tmp_path)['stats']['resume_count'] == 1

    def test_resume_early_phase_restarts(self, build, tmp_path):
        assert build(FakeServices(ITEMS), options=MigrationOptions(dry_run=True)).execute() == 0
        services = FakeServices(ITEMS)
        assert build(services, options=MigrationOptions(yes=True, resume=True)).execute() == 0
        assert services.applied[0] == ('link_inline', 'i1')
        assert len(services.backups) == 1

    def test_unknown_phase(self, build, tmp_path):
        CheckpointManager(tmp_path / "checkpoints", "mig_001").save_quick_state({'phase': 'teleport'})
        code = build(FakeServices(ITEMS), options=MigrationOptions(yes=True, resume=True)).execute()
        assert code == 1
        assert read_checkpoint(tmp_path)['error_type'] == 'UnknownPhaseError'

    def test_missing_checkpoint(self, build, tmp_path):
        code = build(FakeServices(ITEMS), options=MigrationOptions(yes=True, resume=True)).execute()
        assert code == 1
        assert not (tmp_path / "checkpoints" / "mig_001.json").exists()

    def test_checkpoint_of_other_migration(self, build, tmp_path):
        assert build(FakeServices(ITEMS), migration_id="mig_other").execute() == 0
        options = MigrationOptions(yes=True, resume=True, checkpoint_id="mig_other")
        services = FakeServices(ITEMS)
        assert build(services, options=options).execute() == 1
        assert services.applied == []
