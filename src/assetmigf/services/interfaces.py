"""
迁移引擎依赖的协作者接口

引擎只依赖这些协议，具体实现（本地目录、SQLite 内容库或其他后端）在构造时注入。
"""
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from ..core.models import WorkItem


class StorageAdapter(Protocol):
    """按稳定路径寻址的存储卷"""

    handle: str

    def read(self, path: str) -> bytes: ...

    def write(self, path: str, data: bytes) -> None: ...

    def delete(self, path: str) -> None: ...

    def exists(self, path: str) -> bool: ...

    def move(self, src: str, dst: str) -> None: ...

    def list_files(self, prefix: str = "") -> List[str]: ...


class ContentRepository(Protocol):
    """内容库：资产记录、关联关系和富文本内容"""

    def find_assets(self, **criteria: Any) -> List[Dict[str, Any]]: ...

    def get_asset(self, asset_id: int, include_deleted: bool = False) -> Optional[Dict[str, Any]]: ...

    def move_asset(self, asset_id: int, volume: str, folder: str) -> None: ...

    def update_field(self, table: str, record_id: int, column: str, value: Any) -> None: ...

    def delete_asset(self, asset_id: int) -> None: ...

    def restore_asset(self, asset_id: int) -> None: ...

    def find_relations(self, asset_id: Optional[int] = None) -> List[Dict[str, Any]]: ...

    def repoint_relations(self, relation_ids: List[int], asset_id: int) -> int: ...

    def list_content(self) -> List[Dict[str, Any]]: ...

    def get_volume_subfolder(self, handle: str) -> str: ...

    def set_volume_subfolder(self, handle: str, subfolder: str) -> None: ...

    def set_foreign_keys(self, enabled: bool) -> None: ...

    def execute_script(self, sql: str) -> None: ...

    def invalidate_caches(self) -> None: ...

    def dump_backup(self, path: Path) -> List[str]: ...


class MigrationServices(Protocol):
    """清点分析服务与各阶段的业务处理

    apply() 对单个条目执行一个阶段的变更，返回可用于回滚的变更条目列表。
    """

    def prepare(self) -> Dict[str, Any]: ...

    def has_optimised_root(self) -> bool: ...

    def build_asset_inventory(self) -> List[Dict[str, Any]]: ...

    def build_file_inventory(self) -> List[Dict[str, Any]]: ...

    def analyze(self, assets: List[Dict[str, Any]], files: List[Dict[str, Any]]) -> Dict[str, Any]: ...

    def work_items(self, phase: str, analysis: Dict[str, Any]) -> List[WorkItem]: ...

    def apply(self, phase: str, item: WorkItem) -> List[Dict[str, Any]]: ...

    def duplicate_groups(self, analysis: Dict[str, Any]) -> Dict[str, List[int]]: ...

    def stage_duplicate_group(self, group: Dict[str, Any]) -> Dict[str, Any]: ...

    def choose_primary(self, group: Dict[str, Any]) -> int: ...

    def clean_duplicate_group(self, group: Dict[str, Any]) -> List[Dict[str, Any]]: ...

    def verify_duplicate_group(self, group: Dict[str, Any]) -> bool: ...

    def create_backup(self, path: Path) -> Dict[str, Any]: ...

    def verify(self) -> Dict[str, Any]: ...
