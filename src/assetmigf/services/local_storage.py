"""
本地目录存储卷
"""
import shutil
from pathlib import Path
from typing import List

from ..core.errors import PathTraversalError


class LocalStorage:
    """以本地目录作为存储卷，路径使用 / 分隔的相对路径"""

    def __init__(self, handle: str, root: Path):
        self.handle = handle
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._base = self.root.resolve()

    def _resolve(self, path: str) -> Path:
        target = (self._base / path.lstrip("/")).resolve()
        try:
            target.relative_to(self._base)
        except ValueError:
            raise PathTraversalError(f"路径越出存储卷 {self.handle}: {path}")
        return target

    def read(self, path: str) -> bytes:
        return self._resolve(path).read_bytes()

    def write(self, path: str, data: bytes) -> None:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

    def delete(self, path: str) -> None:
        self._resolve(path).unlink()

    def exists(self, path: str) -> bool:
        return self._resolve(path).is_file()

    def move(self, src: str, dst: str) -> None:
        source = self._resolve(src)
        target = self._resolve(dst)
        if not source.exists():
            raise FileNotFoundError(f"源文件不存在: {self.handle}:{src}")
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(source), str(target))

    def list_files(self, prefix: str = "") -> List[str]:
        start = self._resolve(prefix) if prefix else self._base
        if not start.exists():
            return []
        return sorted(
            p.relative_to(self._base).as_posix()
            for p in start.rglob("*")
            if p.is_file()
        )

    def __repr__(self):
        return f"LocalStorage({self.handle!r}, {str(self.root)!r})"
