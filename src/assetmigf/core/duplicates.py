"""重复文件分组的暂存表

safe_duplicates 阶段把分组落到 SQLite，按状态推进：
pending -> staged -> analyzed -> cleaned
主记录文件不可用的分组停在 skipped，记录保持不动。
中断后从表里恢复，已推进过的分组不会重做。
"""

import json
import sqlite3
from contextlib import closing
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from loguru import logger

STATUS_ORDER = ["pending", "staged", "analyzed", "cleaned", "skipped"]


class DuplicateGroupStore:
    """重复分组持久化"""

    def __init__(self, db_path: Path, migration_id: str):
        self.db_path = Path(db_path)
        self.migration_id = migration_id
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_tables()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=5)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_tables(self) -> None:
        with closing(self._connect()) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS migration_file_duplicates (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    migration_id TEXT NOT NULL,
                    file_key TEXT NOT NULL,
                    asset_ids TEXT NOT NULL,
                    primary_asset_id INTEGER,
                    status TEXT NOT NULL DEFAULT 'pending',
                    data TEXT,
                    processed_at TEXT,
                    UNIQUE(migration_id, file_key)
                )
            """)
            conn.commit()

    def save_groups(self, groups: Dict[str, List[int]]) -> int:
        """写入分组，已存在的分组保持原状态

        Returns:
            int: 新写入的分组数
        """
        inserted = 0
        with closing(self._connect()) as conn:
            for file_key, asset_ids in groups.items():
                cursor = conn.execute(
                    """INSERT OR IGNORE INTO migration_file_duplicates
                       (migration_id, file_key, asset_ids) VALUES (?, ?, ?)""",
                    (self.migration_id, file_key, json.dumps(sorted(asset_ids))),
                )
                inserted += cursor.rowcount
            conn.commit()
        logger.debug(f"重复分组已保存: 新增 {inserted}/{len(groups)}")
        return inserted

    def load_groups(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        query = "SELECT * FROM migration_file_duplicates WHERE migration_id = ?"
        params: list = [self.migration_id]
        if status:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY id"
        with closing(self._connect()) as conn:
            rows = conn.execute(query, params).fetchall()
        groups = []
        for row in rows:
            group = dict(row)
            group['asset_ids'] = json.loads(group['asset_ids'])
            group['data'] = json.loads(group['data']) if group['data'] else {}
            groups.append(group)
        return groups

    def update(self, file_key: str, status: str, primary_asset_id: Optional[int] = None,
               data: Optional[Dict[str, Any]] = None) -> None:
        if status not in STATUS_ORDER:
            raise ValueError(f"invalid duplicate status: {status}")
        with closing(self._connect()) as conn:
            conn.execute(
                """UPDATE migration_file_duplicates
                   SET status = ?, primary_asset_id = COALESCE(?, primary_asset_id),
                       data = COALESCE(?, data), processed_at = ?
                   WHERE migration_id = ? AND file_key = ?""",
                (
                    status,
                    primary_asset_id,
                    json.dumps(data, ensure_ascii=False) if data is not None else None,
                    datetime.now().isoformat(),
                    self.migration_id,
                    file_key,
                ),
            )
            conn.commit()

    def counts_by_status(self) -> Dict[str, int]:
        with closing(self._connect()) as conn:
            rows = conn.execute(
                """SELECT status, COUNT(*) AS n FROM migration_file_duplicates
                   WHERE migration_id = ? GROUP BY status""",
                (self.migration_id,),
            ).fetchall()
        counts = {status: 0 for status in STATUS_ORDER}
        counts.update({row['status']: row['n'] for row in rows})
        return counts
