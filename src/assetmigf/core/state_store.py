"""迁移状态存储

把运行状态和检查点摘要写入 SQLite，供面板等外部观察者轮询，
不必读取迁移进程的本地文件。
"""

import json
import sqlite3
from contextlib import closing
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

import psutil
from loguru import logger

from .models import RunStatus

TERMINAL_STATUSES = (RunStatus.COMPLETED.value, RunStatus.FAILED.value)


class MigrationStateStore:
    """运行状态持久化"""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_tables()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=5)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_tables(self) -> None:
        with closing(self._connect()) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS migration_state (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    migration_id TEXT NOT NULL UNIQUE,
                    session_id TEXT,
                    phase TEXT NOT NULL,
                    status TEXT NOT NULL,
                    pid INTEGER,
                    command TEXT,
                    processed_count INTEGER DEFAULT 0,
                    total_count INTEGER DEFAULT 0,
                    current_batch INTEGER DEFAULT 0,
                    processed_ids TEXT,
                    stats TEXT,
                    error_message TEXT,
                    checkpoint_file TEXT,
                    started_at TEXT,
                    last_updated_at TEXT,
                    completed_at TEXT
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS migration_checkpoints (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    checkpoint_id TEXT NOT NULL,
                    migration_id TEXT NOT NULL,
                    phase TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    processed_count INTEGER DEFAULT 0
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_state_status
                ON migration_state(status)
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_checkpoints_migration
                ON migration_checkpoints(migration_id)
            """)
            conn.commit()

    def save_state(self, state: Dict[str, Any]) -> None:
        """插入或更新一条运行状态

        Args:
            state: 至少包含 migration_id、phase、status
        """
        now = datetime.now().isoformat()
        processed_ids = state.get('processed_ids')
        stats = state.get('stats')
        values = {
            'migration_id': state['migration_id'],
            'session_id': state.get('session_id'),
            'phase': state.get('phase', 'initializing'),
            'status': state.get('status', RunStatus.RUNNING.value),
            'pid': state.get('pid'),
            'command': state.get('command'),
            'processed_count': state.get(
                'processed_count', len(processed_ids) if processed_ids is not None else 0
            ),
            'total_count': state.get('total_count', 0),
            'current_batch': state.get('batch', state.get('current_batch', 0)),
            'processed_ids': json.dumps(processed_ids) if processed_ids is not None else None,
            'stats': json.dumps(stats, ensure_ascii=False) if stats is not None else None,
            'error_message': state.get('error'),
            'checkpoint_file': state.get('checkpoint_file'),
            'started_at': state.get('started_at') or now,
            'last_updated_at': now,
        }

        columns = list(values)
        # 已有行只覆盖非空字段，started_at 保持首次写入的值
        updates = ", ".join(
            f"{col} = COALESCE(excluded.{col}, {col})"
            for col in columns
            if col not in ('migration_id', 'started_at')
        )
        with closing(self._connect()) as conn:
            conn.execute(
                f"""INSERT INTO migration_state ({", ".join(columns)})
                    VALUES ({", ".join("?" for _ in columns)})
                    ON CONFLICT(migration_id) DO UPDATE SET {updates}""",
                [values[col] for col in columns],
            )
            conn.commit()

    def get_state(self, migration_id: str) -> Optional[Dict[str, Any]]:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT * FROM migration_state WHERE migration_id = ?", (migration_id,)
            ).fetchone()
        return self._row_to_dict(row) if row else None

    def get_running_migrations(self) -> List[Dict[str, Any]]:
        """返回状态为 running 的迁移，并标出进程是否仍然存活"""
        with closing(self._connect()) as conn:
            rows = conn.execute(
                "SELECT * FROM migration_state WHERE status = ? ORDER BY last_updated_at DESC",
                (RunStatus.RUNNING.value,),
            ).fetchall()
        result = []
        for row in rows:
            state = self._row_to_dict(row)
            state['process_alive'] = self.is_process_running(state.get('pid'))
            result.append(state)
        return result

    def get_latest_migration(self) -> Optional[Dict[str, Any]]:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT * FROM migration_state ORDER BY last_updated_at DESC, id DESC LIMIT 1"
            ).fetchone()
        return self._row_to_dict(row) if row else None

    def update_status(self, migration_id: str, status: str, error_message: Optional[str] = None) -> None:
        now = datetime.now().isoformat()
        completed_at = now if status in TERMINAL_STATUSES else None
        with closing(self._connect()) as conn:
            conn.execute(
                """UPDATE migration_state
                   SET status = ?, error_message = COALESCE(?, error_message),
                       last_updated_at = ?, completed_at = COALESCE(?, completed_at)
                   WHERE migration_id = ?""",
                (status, error_message, now, completed_at, migration_id),
            )
            conn.commit()

    def record_checkpoint(self, checkpoint_id: str, migration_id: str, phase: str, processed_count: int) -> None:
        with closing(self._connect()) as conn:
            conn.execute(
                """INSERT INTO migration_checkpoints
                   (checkpoint_id, migration_id, phase, timestamp, processed_count)
                   VALUES (?, ?, ?, ?, ?)""",
                (checkpoint_id, migration_id, phase, datetime.now().isoformat(), processed_count),
            )
            conn.commit()

    def list_checkpoints(self, migration_id: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        query = "SELECT checkpoint_id, migration_id, phase, timestamp, processed_count FROM migration_checkpoints"
        params: list = []
        if migration_id:
            query += " WHERE migration_id = ?"
            params.append(migration_id)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        with closing(self._connect()) as conn:
            rows = conn.execute(query, params).fetchall()
        return [dict(row) for row in rows]

    def cleanup_old_states(self, older_than_days: int = 7) -> int:
        """清理保留期之外已结束的状态记录和检查点摘要"""
        cutoff = (datetime.now() - timedelta(days=older_than_days)).isoformat()
        with closing(self._connect()) as conn:
            old_ids = [
                row['migration_id']
                for row in conn.execute(
                    f"""SELECT migration_id FROM migration_state
                        WHERE status IN ({", ".join("?" for _ in TERMINAL_STATUSES)})
                        AND last_updated_at < ?""",
                    (*TERMINAL_STATUSES, cutoff),
                ).fetchall()
            ]
            for migration_id in old_ids:
                conn.execute("DELETE FROM migration_checkpoints WHERE migration_id = ?", (migration_id,))
                conn.execute("DELETE FROM migration_state WHERE migration_id = ?", (migration_id,))
            conn.commit()
        if old_ids:
            logger.info(f"已清理 {len(old_ids)} 条过期迁移状态")
        return len(old_ids)

    @staticmethod
    def is_process_running(pid: Optional[int]) -> bool:
        if not pid:
            return False
        try:
            return psutil.pid_exists(int(pid))
        except (ValueError, psutil.Error):
            return False

    @staticmethod
    def _row_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
        state = dict(row)
        state['processed_ids'] = json.loads(state['processed_ids']) if state.get('processed_ids') else []
        state['stats'] = json.loads(state['stats']) if state.get('stats') else {}
        return state
