"""
测试公共夹具
"""
import io

import pytest
from rich.console import Console

from assetmigf.config import MigrationConfig
from assetmigf.runtime import MigrationRuntime
from assetmigf.ui.reporter import MigrationReporter


@pytest.fixture
def config(tmp_path):
    """指向临时目录的配置"""
    return MigrationConfig(
        {
            "paths": {"storage": str(tmp_path / "storage")},
            "migration": {"retryDelay": 0, "lockAcquireTimeoutSeconds": 0},
            "volumes": {
                "source": "source",
                "target": "target",
                "quarantine": "quarantine",
                "targetSubfolder": "images",
            },
        },
        base_dir=tmp_path,
    )


@pytest.fixture
def quiet_reporter():
    """输出到内存的报告器"""
    return MigrationReporter(Console(file=io.StringIO(), width=120))


@pytest.fixture
def runtime(config, quiet_reporter):
    rt = MigrationRuntime(config, reporter=quiet_reporter)
    yield rt
    rt.close()


@pytest.fixture
def seeded(runtime):
    """写入一组覆盖各阶段的资产、关联、内容和文件

    Returns:
        tuple: (runtime, ids)
    """
    repo = runtime.repository
    source = runtime.volumes["source"]
    target = runtime.volumes["target"]

    ids = {}
    ids["a"] = repo.add_asset("a.jpg", "source", "", checksum="aaa")
    source.write("a.jpg", b"A")
    repo.add_relation(1, ids["a"])

    # 未被引用，应被隔离
    ids["b"] = repo.add_asset("b.jpg", "source", "", checksum="bbb")
    source.write("b.jpg", b"B")

    # 仅在富文本中以 <img> 引用
    ids["c"] = repo.add_asset("c.jpg", "source", "news", checksum="ccc")
    source.write("news/c.jpg", b"C")
    ids["content"] = repo.add_content(2, "body", '<p><img src="/uploads/news/c.jpg"></p>')

    # 同一位置的两条记录，d2 有关联
    ids["d1"] = repo.add_asset("d.jpg", "source", "", checksum="ddd")
    ids["d2"] = repo.add_asset("d.jpg", "source", "", checksum="ddd")
    source.write("d.jpg", b"D")
    repo.add_relation(3, ids["d2"])

    # 文件不在记录所指位置，而在目标卷 misc/ 下
    ids["m"] = repo.add_asset("m.jpg", "source", "", checksum="mmm")
    target.write("misc/m.jpg", b"M")
    repo.add_relation(4, ids["m"])

    # 与 a 内容相同的另一份
    ids["copy"] = repo.add_asset("a-copy.jpg", "source", "", checksum="aaa")
    source.write("a-copy.jpg", b"A")

    source.write("old/orphan.jpg", b"O")
    target.write("_transforms/200x200/a.jpg", b"T")

    return runtime, ids
