"""
回滚引擎测试
"""
from unittest.mock import Mock, call

import pytest
from loguru import logger

from assetmigf.core.changelog import ChangeLogManager
from assetmigf.core.errors import BackupVerificationError, MigrationError
from assetmigf.core.rollback import RollbackEngine, backup_filename
from assetmigf.services.sqlite_repository import SqliteContentRepository


@pytest.fixture
def dirs(tmp_path):
    changelog_dir = tmp_path / "changelogs"
    backup_dir = tmp_path / "backups"
    backup_dir.mkdir()
    return changelog_dir, backup_dir


@pytest.fixture
def repository():
    return Mock()


@pytest.fixture
def engine(repository, dirs):
    changelog_dir, backup_dir = dirs
    return RollbackEngine(repository, {}, changelog_dir, backup_dir)


@pytest.fixture
def warnings():
    messages = []
    handler_id = logger.add(lambda m: messages.append(m.record["message"]), level="WARNING")
    yield messages
    logger.remove(handler_id)


def write_changes(changelog_dir, migration_id, phased_changes):
    log = ChangeLogManager(changelog_dir, migration_id)
    for phase, change in phased_changes:
        if log.current_phase != phase:
            log.set_phase(phase)
        log.log_change(change)
    log.flush()


def path_change(asset_id, old_volume="source"):
    return {
        "type": "updated_asset_path",
        "asset_id": asset_id,
        "old_volume": old_volume,
        "old_folder": "",
        "new_volume": "target",
        "new_folder": "",
    }


class TestChangeByChange:
    """测试逐条回滚"""

    @pytest.fixture
    def phased(self, dirs):
        changelog_dir, _ = dirs
        write_changes(changelog_dir, "mig_001", [
            ("link_inline", path_change(1)),
            ("fix_links", path_change(2)),
            ("consolidate", path_change(3)),
            ("consolidate", path_change(4)),
            ("quarantine", path_change(5)),
        ])

    def test_reverses_in_reverse_order(self, engine, repository, phased):
        stats = engine.rollback("mig_001")
        assert stats["reversed"] == 5
        assert [c.args[0] for c in repository.move_asset.call_args_list] == [5, 4, 3, 2, 1]
        repository.invalidate_caches.assert_called_once()

    def test_mode_only(self, engine, repository, phased):
        engine.rollback("mig_001", phases=["consolidate"], mode="only")
        assert [c.args[0] for c in repository.move_asset.call_args_list] == [4, 3]

    def test_mode_from(self, engine, repository, phased):
        """from 模式包含指定阶段及之后的所有阶段"""
        engine.rollback("mig_001", phases="fix_links", mode="from")
        assert [c.args[0] for c in repository.move_asset.call_args_list] == [5, 4, 3, 2]

    def test_invalid_mode_and_phase(self, engine, phased):
        with pytest.raises(MigrationError):
            engine.rollback("mig_001", phases=["consolidate"], mode="after")
        with pytest.raises(MigrationError):
            engine.rollback("mig_001", phases=["nonsense"], mode="from")

    def test_no_changes_raises(self, engine):
        with pytest.raises(MigrationError):
            engine.rollback("mig_missing")

    def test_failure_does_not_abort(self, engine, repository, phased):
        """单条失败只计数，其余继续"""
        repository.move_asset.side_effect = [None, RuntimeError("db gone"), None, None, None]
        stats = engine.rollback("mig_001")
        assert stats["errors"] == 1
        assert stats["reversed"] == 4
        assert repository.move_asset.call_count == 5

    def test_unknown_type_is_warned(self, engine, repository, dirs, warnings):
        changelog_dir, _ = dirs
        write_changes(changelog_dir, "mig_002", [
            ("consolidate", path_change(1)),
            ("consolidate", {"type": "teleported_asset", "asset_id": 2}),
        ])
        stats = engine.rollback("mig_002")
        assert stats["unknown"] == 1
        assert stats["reversed"] == 1
        assert any("teleported_asset" in m for m in warnings)

    def test_noop_types_are_skipped(self, engine, repository, dirs):
        changelog_dir, _ = dirs
        write_changes(changelog_dir, "mig_003", [
            ("temp_cleanup", {"type": "deleted_transform", "volume": "target", "path": "_transforms/a.jpg"}),
            ("fix_links", {"type": "broken_link_not_fixed", "asset_id": 9}),
        ])
        stats = engine.rollback("mig_003")
        assert stats["skipped"] == 2
        assert stats["errors"] == 0

    def test_broken_link_fix_without_origin_is_skipped(self, engine, repository, dirs, warnings):
        changelog_dir, _ = dirs
        write_changes(changelog_dir, "mig_004", [
            ("fix_links", {"type": "fixed_broken_link", "asset_id": 3, "new_volume": "target"}),
        ])
        stats = engine.rollback("mig_004")
        assert stats["skipped"] == 1
        repository.move_asset.assert_not_called()
        assert warnings

    def test_duplicate_delete_reversal(self, engine, repository, dirs):
        changelog_dir, _ = dirs
        write_changes(changelog_dir, "mig_005", [
            ("safe_duplicates", {"type": "deleted_duplicate_asset", "asset_id": 7, "kept_asset_id": 6, "relation_ids": [11, 12]}),
            ("update_subfolder", {"type": "filesystem_update", "volume": "target", "old_subfolder": "", "new_subfolder": "images"}),
        ])
        engine.rollback("mig_005")
        assert repository.method_calls[:3] == [
            call.set_volume_subfolder("target", ""),
            call.restore_asset(7),
            call.repoint_relations([11, 12], 7),
        ]

    def test_dry_run_reports_without_mutation(self, engine, repository, phased):
        report = engine.rollback("mig_001", dry_run=True)
        assert report["dry_run"] is True
        assert report["total_operations"] == 5
        assert report["by_type"] == {"updated_asset_path": 5}
        assert report["by_phase"] == {"link_inline": 1, "fix_links": 1, "consolidate": 2, "quarantine": 1}
        assert report["estimated_time"] == "< 1 minute"
        assert repository.method_calls == []

    def test_phases_summary_in_phase_order(self, engine, phased):
        summary = engine.get_phases_summary("mig_001")
        assert list(summary) == ["link_inline", "fix_links", "consolidate", "quarantine"]
        assert summary["consolidate"]["count"] == 2


class TestDatabaseRollback:
    """测试数据库恢复"""

    def write_backup(self, backup_dir, migration_id, content, size=None):
        path = backup_dir / backup_filename(migration_id)
        data = content.encode("utf-8")
        if size is not None:
            filler = b"-- padding\n"
            data += filler * ((size - len(data)) // len(filler))
            data += b"-" * (size - len(data))
        path.write_bytes(data)
        return path

    def test_dry_run_with_10mb_backup(self, engine, repository, dirs):
        _, backup_dir = dirs
        path = self.write_backup(
            backup_dir,
            "mig_001",
            "CREATE TABLE assets (id INTEGER PRIMARY KEY);\n"
            'INSERT INTO "assets" VALUES(1);\n'
            "CREATE TABLE relations (id INTEGER PRIMARY KEY);\n",
            size=10 * 1024 * 1024,
        )
        report = engine.rollback_via_database("mig_001", dry_run=True)
        assert report["backup_file"] == str(path)
        assert report["size_mb"] == 10.0
        assert report["backup_size"] == "10.0 MB"
        assert report["tables"] == ["assets", "relations"]
        assert "estimated_time" in report
        assert repository.method_calls == []

    def test_missing_backup(self, engine):
        with pytest.raises(MigrationError):
            engine.rollback_via_database("mig_none", dry_run=True)

    @pytest.mark.parametrize("content", [
        "CREATE TABLE a (x TEXT);\nSELECT LOAD_FILE('/etc/passwd');\n",
        "CREATE TABLE a (x TEXT);\nSELECT * FROM a INTO OUTFILE '/tmp/x';\n",
        "CREATE TABLE a (x TEXT);\n-- system('rm -rf /')\n",
    ])
    def test_suspicious_backup_rejected(self, engine, repository, dirs, content):
        _, backup_dir = dirs
        self.write_backup(backup_dir, "mig_bad", content)
        with pytest.raises(BackupVerificationError):
            engine.rollback_via_database("mig_bad")
        repository.execute_script.assert_not_called()

    def test_backup_without_statements_rejected(self, engine, dirs):
        _, backup_dir = dirs
        self.write_backup(backup_dir, "mig_text", "just some notes\n")
        with pytest.raises(BackupVerificationError):
            engine.rollback_via_database("mig_text", dry_run=True)

    def test_empty_backup_rejected(self, engine, dirs):
        _, backup_dir = dirs
        self.write_backup(backup_dir, "mig_empty", "")
        with pytest.raises(BackupVerificationError):
            engine.rollback_via_database("mig_empty")

    def test_foreign_keys_restored_on_failure(self, engine, repository, dirs):
        _, backup_dir = dirs
        self.write_backup(backup_dir, "mig_001", "CREATE TABLE a (x TEXT);\n")
        repository.execute_script.side_effect = RuntimeError("syntax error")
        with pytest.raises(MigrationError):
            engine.rollback_via_database("mig_001")
        assert repository.set_foreign_keys.call_args_list == [call(False), call(True)]
        repository.invalidate_caches.assert_not_called()

    def test_restores_real_database(self, tmp_path, dirs):
        """备份后修改内容，恢复后回到备份时的状态"""
        changelog_dir, backup_dir = dirs
        with SqliteContentRepository(tmp_path / "content.db") as repo:
            asset_id = repo.add_asset("a.jpg", "source")
            repo.add_relation(1, asset_id)
            repo.dump_backup(backup_dir / backup_filename("mig_001"))

            repo.move_asset(asset_id, "target", "images")
            repo.delete_asset(asset_id)

            engine = RollbackEngine(repo, {}, changelog_dir, backup_dir)
            report = engine.rollback_via_database("mig_001")
            assert report["success"] is True
            assert "assets" in report["tables_restored"]
            asset = repo.get_asset(asset_id)
            assert asset["volume"] == "source"
            assert asset["folder"] == ""
            assert len(repo.find_relations(asset_id)) == 1
