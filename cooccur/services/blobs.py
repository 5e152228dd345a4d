"""
Filesystem-backed blob store for raw uploads and generated CSVs.

Keys look like "<owner>/<job_id>.csv"; each store is a directory under
BLOB_DIR.
"""
import logging
import time
from pathlib import Path
from typing import Callable, List

logger = logging.getLogger(__name__)


class BlobNotFound(Exception):
    pass


class BlobStore:
    """One named store, e.g. "uploads" or "outputs"."""

    def __init__(self, root, name: str):
        self.name = name
        self.root = Path(root) / name
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"Blob key escapes store: {key}")
        return path

    def put_bytes(self, key: str, data: bytes) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_bytes(data)
        tmp.replace(path)

    def put_text(self, key: str, text: str, bom: bool = False) -> None:
        # BOM so Excel opens UTF-8 correctly
        self.put_bytes(key, (("\ufeff" if bom else "") + text).encode("utf-8"))

    def get_bytes(self, key: str) -> bytes:
        path = self._path(key)
        if not path.exists():
            raise BlobNotFound(f"{self.name}/{key}")
        return path.read_bytes()

    def get_text(self, key: str) -> str:
        return self.get_bytes(key).decode("utf-8-sig")

    def exists(self, key: str) -> bool:
        return self._path(key).exists()

    def delete(self, key: str) -> None:
        path = self._path(key)
        if path.exists():
            path.unlink()

    def list_keys(self) -> List[str]:
        return sorted(
            str(p.relative_to(self.root)).replace("\\", "/")
            for p in self.root.rglob("*")
            if p.is_file() and not p.name.endswith(".tmp")
        )

    def clear(self) -> int:
        """Delete every blob; returns how many were removed."""
        keys = self.list_keys()
        for key in keys:
            self.delete(key)
        return len(keys)


def read_text_with_retry(
    store: BlobStore,
    key: str,
    tries: int = 5,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    """
    Read a blob that may not be visible yet.

    Backoff starts at 0.2s and grows by 0.25s per attempt, capped at 5s.
    """
    last_error = None
    delay = 0.2
    for attempt in range(tries):
        try:
            text = store.get_text(key)
            if text:
                return text
            last_error = BlobNotFound(f"Blob empty: {store.name}/{key}")
        except BlobNotFound as e:
            last_error = e
        if attempt < tries - 1:
            logger.info(f"Blob {key} not ready (attempt {attempt + 1}/{tries}), sleeping {delay:.2f}s")
            sleep(delay)
            delay = min(delay + 0.25, 5.0)
    raise BlobNotFound(f"Timed out waiting for blob {store.name}/{key}: {last_error}")
