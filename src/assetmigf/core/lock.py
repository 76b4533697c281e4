"""运行锁

用 SQLite 中固定名称的一行记录保证同一时间只有一个迁移在运行。
锁带过期时间，持有者需定期刷新；同一迁移在恢复模式下可以重新获取自己的锁。
"""

import os
import socket
import sqlite3
import time
from contextlib import closing, contextmanager
from pathlib import Path
from typing import Callable, Dict, List, Optional

from loguru import logger

from .errors import LockAcquireError

LOCK_NAME = "migration_lock"
DEFAULT_TTL = 43200  # 12 小时
DEFAULT_REFRESH_INTERVAL = 60


def _connect(db_path: Path) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    # 手动管理事务，BEGIN IMMEDIATE 保证写者串行
    return sqlite3.connect(str(db_path), timeout=5, isolation_level=None)


def ensure_lock_table(db_path: Path) -> None:
    with closing(_connect(db_path)) as conn:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS migration_locks (
                name TEXT PRIMARY KEY,
                migration_id TEXT NOT NULL,
                owner TEXT NOT NULL,
                acquired_at REAL NOT NULL,
                expires_at REAL NOT NULL
            )
        """)


class MigrationLock:
    """迁移运行锁"""

    def __init__(
        self,
        db_path: Path,
        migration_id: str,
        ttl: int = DEFAULT_TTL,
        poll_interval: float = 0.5,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db_path = Path(db_path)
        self.migration_id = migration_id
        self.ttl = ttl
        self.poll_interval = poll_interval
        self.owner = f"{socket.gethostname()}:{os.getpid()}"
        self._clock = clock
        self._sleep = sleep
        self.is_held = False
        self._last_refresh = 0.0

    def acquire(self, timeout: float = 3, is_resume: bool = False) -> bool:
        """获取锁

        Args:
            timeout: 最长等待秒数
            is_resume: 恢复模式，允许重新获取同一迁移 ID 持有的锁

        Returns:
            bool: 是否获取成功
        """
        deadline = self._clock() + timeout
        while True:
            try:
                if self._try_acquire(is_resume):
                    self.is_held = True
                    self._last_refresh = self._clock()
                    logger.info(f"已获取迁移锁: {self.migration_id}")
                    return True
            except sqlite3.IntegrityError:
                # 并发插入冲突，下一轮重试
                logger.debug("迁移锁插入冲突，重试")
            except sqlite3.OperationalError as e:
                message = str(e).lower()
                if "no such table" in message:
                    ensure_lock_table(self.db_path)
                    continue
                if "locked" not in message:
                    raise
                logger.debug(f"数据库繁忙，重试: {e}")

            if self._clock() >= deadline:
                holder = self.get_current()
                if holder:
                    logger.warning(
                        f"无法获取迁移锁，当前持有者: {holder['migration_id']} ({holder['owner']})"
                    )
                return False
            self._sleep(self.poll_interval)

    def _try_acquire(self, is_resume: bool) -> bool:
        now = self._clock()
        with closing(_connect(self.db_path)) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                swept = conn.execute(
                    "DELETE FROM migration_locks WHERE expires_at < ?", (now,)
                ).rowcount
                if swept:
                    logger.info(f"已清除 {swept} 个过期的迁移锁")

                row = conn.execute(
                    "SELECT migration_id FROM migration_locks WHERE name = ?",
                    (LOCK_NAME,),
                ).fetchone()

                if row is None:
                    conn.execute(
                        """INSERT INTO migration_locks
                           (name, migration_id, owner, acquired_at, expires_at)
                           VALUES (?, ?, ?, ?, ?)""",
                        (LOCK_NAME, self.migration_id, self.owner, now, now + self.ttl),
                    )
                    conn.execute("COMMIT")
                    return True

                if row[0] == self.migration_id and is_resume:
                    conn.execute(
                        """UPDATE migration_locks SET owner = ?, expires_at = ?
                           WHERE name = ? AND migration_id = ?""",
                        (self.owner, now + self.ttl, LOCK_NAME, self.migration_id),
                    )
                    conn.execute("COMMIT")
                    logger.info(f"恢复模式下重新获取迁移锁: {self.migration_id}")
                    return True

                conn.execute("ROLLBACK")
                return False
            except Exception:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise

    def refresh(self) -> bool:
        """延长锁的过期时间"""
        now = self._clock()
        try:
            with closing(_connect(self.db_path)) as conn:
                updated = conn.execute(
                    """UPDATE migration_locks SET expires_at = ?
                       WHERE name = ? AND migration_id = ?""",
                    (now + self.ttl, LOCK_NAME, self.migration_id),
                ).rowcount
        except sqlite3.OperationalError as e:
            logger.warning(f"刷新迁移锁失败: {e}")
            return False

        if updated:
            self._last_refresh = now
            return True
        logger.warning(f"刷新迁移锁失败，锁已不属于 {self.migration_id}")
        return False

    def heartbeat(self, interval: float = DEFAULT_REFRESH_INTERVAL) -> bool:
        """按间隔节流地刷新锁，长循环中每个条目都可以调用"""
        if not self.is_held:
            return False
        if self._clock() - self._last_refresh < interval:
            return True
        return self.refresh()

    def release(self) -> None:
        """释放当前迁移持有的锁"""
        try:
            with closing(_connect(self.db_path)) as conn:
                conn.execute(
                    "DELETE FROM migration_locks WHERE name = ? AND migration_id = ?",
                    (LOCK_NAME, self.migration_id),
                )
        except sqlite3.OperationalError as e:
            if "no such table" not in str(e).lower():
                raise
        if self.is_held:
            logger.info(f"已释放迁移锁: {self.migration_id}")
        self.is_held = False

    @contextmanager
    def held(self, timeout: float = 3, is_resume: bool = False):
        """在作用域内持有锁，任何退出路径都会释放"""
        if not self.acquire(timeout=timeout, is_resume=is_resume):
            raise LockAcquireError("另一个迁移正在运行，如确认无进程在运行可执行 force-cleanup")
        try:
            yield self
        finally:
            self.release()

    def get_current(self) -> Optional[Dict]:
        locks = list_locks(self.db_path)
        return locks[0] if locks else None


def list_locks(db_path: Path) -> List[Dict]:
    """列出当前所有锁记录"""
    try:
        with closing(_connect(Path(db_path))) as conn:
            conn.row_factory = sqlite3.Row
            rows = conn.execute(
                "SELECT name, migration_id, owner, acquired_at, expires_at FROM migration_locks"
            ).fetchall()
    except sqlite3.OperationalError:
        return []
    return [dict(row) for row in rows]


def force_cleanup(db_path: Path) -> int:
    """强制删除所有锁记录，返回删除数量"""
    try:
        with closing(_connect(Path(db_path))) as conn:
            removed = conn.execute("DELETE FROM migration_locks").rowcount
    except sqlite3.OperationalError:
        return 0
    logger.warning(f"已强制清除 {removed} 个迁移锁")
    return removed
