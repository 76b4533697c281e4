"""
协作者接口与本地参考实现
"""

from .local_services import LocalMigrationServices
from .local_storage import LocalStorage
from .sqlite_repository import SqliteContentRepository

__all__ = ["LocalMigrationServices", "LocalStorage", "SqliteContentRepository"]
