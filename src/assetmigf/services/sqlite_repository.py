"""SQLite 内容库

保存资产记录、条目与资产的关联、富文本内容以及卷设置。
"""

import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from loguru import logger

from ..core.errors import ErrorKind, MigrationError

CONTENT_TABLES = ["assets", "relations", "content", "volume_settings"]

# update_field 允许修改的列
UPDATABLE_FIELDS = {
    "content": {"body"},
    "assets": {"filename", "volume", "folder"},
}

ASSET_COLUMNS = {"id", "filename", "volume", "folder", "checksum", "deleted"}


class SqliteContentRepository:
    """内容库的 SQLite 实现"""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.db_path))
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self._subfolder_cache: Dict[str, str] = {}
        self._init_tables()

    def _init_tables(self) -> None:
        cursor = self.conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS assets (
                id INTEGER PRIMARY KEY,
                filename TEXT NOT NULL,
                volume TEXT NOT NULL,
                folder TEXT NOT NULL DEFAULT '',
                size INTEGER DEFAULT 0,
                checksum TEXT,
                deleted INTEGER DEFAULT 0,
                date_deleted TEXT
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS relations (
                id INTEGER PRIMARY KEY,
                entry_id INTEGER NOT NULL,
                asset_id INTEGER NOT NULL,
                field TEXT DEFAULT 'images',
                FOREIGN KEY (asset_id) REFERENCES assets(id)
            )
        """)

        # 富文本字段，内嵌图片以 <img src> 或 {asset:ID} 引用
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS content (
                id INTEGER PRIMARY KEY,
                entry_id INTEGER NOT NULL,
                field TEXT NOT NULL,
                body TEXT
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS volume_settings (
                handle TEXT PRIMARY KEY,
                subfolder TEXT DEFAULT ''
            )
        """)

        self.conn.commit()

    # 写入辅助，用于导入数据和测试
    def add_asset(self, filename: str, volume: str, folder: str = "", size: int = 0,
                  checksum: Optional[str] = None) -> int:
        cursor = self.conn.execute(
            "INSERT INTO assets (filename, volume, folder, size, checksum) VALUES (?, ?, ?, ?, ?)",
            (filename, volume, folder, size, checksum),
        )
        self.conn.commit()
        return cursor.lastrowid

    def add_relation(self, entry_id: int, asset_id: int, field: str = "images") -> int:
        cursor = self.conn.execute(
            "INSERT INTO relations (entry_id, asset_id, field) VALUES (?, ?, ?)",
            (entry_id, asset_id, field),
        )
        self.conn.commit()
        return cursor.lastrowid

    def add_content(self, entry_id: int, field: str, body: str) -> int:
        cursor = self.conn.execute(
            "INSERT INTO content (entry_id, field, body) VALUES (?, ?, ?)",
            (entry_id, field, body),
        )
        self.conn.commit()
        return cursor.lastrowid

    def find_assets(self, include_deleted: bool = False, **criteria: Any) -> List[Dict[str, Any]]:
        unknown = set(criteria) - ASSET_COLUMNS
        if unknown:
            raise MigrationError(f"invalid asset criteria: {', '.join(sorted(unknown))}", ErrorKind.INVALID)
        clauses = [f"{column} = ?" for column in criteria]
        params = list(criteria.values())
        if not include_deleted and "deleted" not in criteria:
            clauses.append("deleted = 0")
        query = "SELECT * FROM assets"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY id"
        return [dict(row) for row in self.conn.execute(query, params).fetchall()]

    def get_asset(self, asset_id: int, include_deleted: bool = False) -> Optional[Dict[str, Any]]:
        row = self.conn.execute("SELECT * FROM assets WHERE id = ?", (asset_id,)).fetchone()
        if row is None or (row["deleted"] and not include_deleted):
            return None
        return dict(row)

    def move_asset(self, asset_id: int, volume: str, folder: str) -> None:
        cursor = self.conn.execute(
            "UPDATE assets SET volume = ?, folder = ? WHERE id = ?", (volume, folder, asset_id)
        )
        self.conn.commit()
        if cursor.rowcount == 0:
            raise MigrationError(f"asset not found: {asset_id}", ErrorKind.NOT_FOUND)

    def update_field(self, table: str, record_id: int, column: str, value: Any) -> None:
        if column not in UPDATABLE_FIELDS.get(table, set()):
            raise MigrationError(f"invalid field: {table}.{column}", ErrorKind.INVALID)
        cursor = self.conn.execute(f"UPDATE {table} SET {column} = ? WHERE id = ?", (value, record_id))
        self.conn.commit()
        if cursor.rowcount == 0:
            raise MigrationError(f"{table} record not found: {record_id}", ErrorKind.NOT_FOUND)

    def delete_asset(self, asset_id: int) -> None:
        """软删除，记录保留以便恢复"""
        self.conn.execute(
            "UPDATE assets SET deleted = 1, date_deleted = ? WHERE id = ?",
            (datetime.now().isoformat(), asset_id),
        )
        self.conn.commit()

    def restore_asset(self, asset_id: int) -> None:
        cursor = self.conn.execute(
            "UPDATE assets SET deleted = 0, date_deleted = NULL WHERE id = ?", (asset_id,)
        )
        self.conn.commit()
        if cursor.rowcount == 0:
            raise MigrationError(f"asset not found: {asset_id}", ErrorKind.NOT_FOUND)

    def find_relations(self, asset_id: Optional[int] = None) -> List[Dict[str, Any]]:
        if asset_id is None:
            rows = self.conn.execute("SELECT * FROM relations ORDER BY id").fetchall()
        else:
            rows = self.conn.execute(
                "SELECT * FROM relations WHERE asset_id = ? ORDER BY id", (asset_id,)
            ).fetchall()
        return [dict(row) for row in rows]

    def repoint_relations(self, relation_ids: List[int], asset_id: int) -> int:
        if not relation_ids:
            return 0
        placeholders = ", ".join("?" for _ in relation_ids)
        cursor = self.conn.execute(
            f"UPDATE relations SET asset_id = ? WHERE id IN ({placeholders})",
            (asset_id, *relation_ids),
        )
        self.conn.commit()
        return cursor.rowcount

    def list_content(self) -> List[Dict[str, Any]]:
        return [dict(row) for row in self.conn.execute("SELECT * FROM content ORDER BY id").fetchall()]

    def get_volume_subfolder(self, handle: str) -> str:
        if handle not in self._subfolder_cache:
            row = self.conn.execute(
                "SELECT subfolder FROM volume_settings WHERE handle = ?", (handle,)
            ).fetchone()
            self._subfolder_cache[handle] = row["subfolder"] if row else ""
        return self._subfolder_cache[handle]

    def set_volume_subfolder(self, handle: str, subfolder: str) -> None:
        self.conn.execute(
            "INSERT OR REPLACE INTO volume_settings (handle, subfolder) VALUES (?, ?)",
            (handle, subfolder),
        )
        self.conn.commit()
        self._subfolder_cache.pop(handle, None)

    def set_foreign_keys(self, enabled: bool) -> None:
        self.conn.commit()
        self.conn.execute(f"PRAGMA foreign_keys = {'ON' if enabled else 'OFF'}")

    def execute_script(self, sql: str) -> None:
        self.conn.executescript(sql)
        self.conn.commit()

    def invalidate_caches(self) -> None:
        self._subfolder_cache.clear()
        logger.debug("内容库缓存已清除")

    def dump_backup(self, path: Path) -> List[str]:
        """导出内容表的完整 SQL 备份

        Returns:
            List[str]: 备份的表名
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            f.write(f"-- assetmigf content backup {datetime.now().isoformat()}\n")
            for table in CONTENT_TABLES:
                f.write(f"DROP TABLE IF EXISTS {table};\n")
            for line in self.conn.iterdump():
                f.write(f"{line}\n")
        logger.info(f"内容库备份已写入: {path}")
        return list(CONTENT_TABLES)

    def close(self) -> None:
        self.conn.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
