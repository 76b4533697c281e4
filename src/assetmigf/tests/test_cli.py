"""
命令行测试
"""
import pytest
import yaml
from typer.testing import CliRunner

from assetmigf.__main__ import app
from assetmigf.config import DEFAULT_CONFIG

runner = CliRunner()


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    """在临时目录中运行，并写入不等待的配置"""
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("ASSETMIGF_ENV", raising=False)
    (tmp_path / "assetmigf.yaml").write_text(yaml.dump({
        'migration': {'retryDelay': 0, 'lockAcquireTimeoutSeconds': 0},
    }), encoding='utf-8')
    return tmp_path


def invoke(*args):
    return runner.invoke(app, ["--quiet", *args])


class TestCommands:
    """测试各个子命令"""

    def test_init_config(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        result = invoke("init-config", "custom.yaml")
        assert result.exit_code == 0
        with open(tmp_path / "custom.yaml", encoding='utf-8') as f:
            assert yaml.safe_load(f) == DEFAULT_CONFIG

    def test_status_without_runs(self, workdir):
        result = invoke("status")
        assert result.exit_code == 0
        assert "没有迁移记录" in result.output

    def test_migrate_then_status(self, workdir):
        result = invoke("migrate", "mig_cli", "--yes")
        assert result.exit_code == 0, result.output
        assert (workdir / "storage" / "migration" / "checkpoints" / "mig_cli.json").exists()
        assert (workdir / "storage" / "migration" / "backups" / "migration_mig_cli_db_backup.sql").exists()

        result = invoke("status", "mig_cli")
        assert result.exit_code == 0
        assert "completed" in result.output

        result = invoke("checkpoints")
        assert "mig_cli" in result.output

    def test_migrate_with_config_option(self, workdir):
        config = workdir / "other.yaml"
        config.write_text(yaml.dump({
            'paths': {'storage': 'elsewhere'},
            'migration': {'retryDelay': 0, 'lockAcquireTimeoutSeconds': 0},
        }), encoding='utf-8')
        result = invoke("migrate", "mig_cfg", "--yes", "--skip-backup", "--config", str(config))
        assert result.exit_code == 0, result.output
        assert (workdir / "elsewhere" / "checkpoints" / "mig_cfg.json").exists()
        assert not (workdir / "elsewhere" / "backups" / "migration_mig_cfg_db_backup.sql").exists()

    def test_dry_run(self, workdir):
        result = invoke("migrate", "mig_dry", "--dry-run")
        assert result.exit_code == 0, result.output
        assert not (workdir / "storage" / "migration" / "backups" / "migration_mig_dry_db_backup.sql").exists()

    def test_resume_without_checkpoint(self, workdir):
        result = invoke("resume")
        assert result.exit_code == 1
        assert "没有找到可恢复的检查点" in result.output

    def test_resume_latest(self, workdir):
        assert invoke("migrate", "mig_cli", "--dry-run").exit_code == 0
        result = invoke("resume", "--yes")
        assert result.exit_code == 0, result.output

    def test_rollback_invalid_method(self, workdir):
        result = invoke("rollback", "mig_cli", "--method", "magic")
        assert result.exit_code == 1

    def test_rollback_without_changes(self, workdir):
        assert invoke("migrate", "mig_cli", "--yes").exit_code == 0
        result = invoke("rollback", "mig_cli", "--yes")
        assert result.exit_code == 1

    def test_database_rollback_dry_run(self, workdir):
        assert invoke("migrate", "mig_cli", "--yes").exit_code == 0
        result = invoke("rollback", "mig_cli", "--method", "database", "--dry-run")
        assert result.exit_code == 0, result.output

    def test_force_cleanup(self, workdir):
        result = invoke("force-cleanup", "--yes")
        assert result.exit_code == 0
        assert "已清除 0 个运行锁" in result.output
