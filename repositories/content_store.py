import hashlib
import json
import os
import shutil
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any, List, Sequence, Union

from core import constants
from core.logger import get_logger

logger = get_logger(__name__)

PathLike = Union[str, Path]


class PathKind(str, Enum):
    FILE = "file"
    DIRECTORY = "directory"
    MISSING = "missing"


class ContentStore:
    """
    Local filesystem primitives used by every stage touching disk.
    All paths are resolved to absolute form before use.
    """

    @staticmethod
    def resolve(path: PathLike) -> Path:
        return Path(path).expanduser().resolve()

    def exists(self, path: PathLike) -> PathKind:
        p = self.resolve(path)
        if p.is_file():
            return PathKind.FILE
        if p.is_dir():
            return PathKind.DIRECTORY
        return PathKind.MISSING

    def is_file(self, path: PathLike) -> bool:
        return self.exists(path) == PathKind.FILE

    def ensure_dir(self, path: PathLike) -> Path:
        """Creates the directory and its parents. Idempotent."""
        p = self.resolve(path)
        p.mkdir(parents=True, exist_ok=True)
        return p

    def write_atomically(self, path: PathLike, data: bytes) -> Path:
        """Writes to a sibling temp file, then replaces the target in one step."""
        p = self.resolve(path)
        self.ensure_dir(p.parent)
        fd, tmp_name = tempfile.mkstemp(dir=p.parent, prefix=f".{p.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, p)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        return p

    def write_json(self, path: PathLike, data: Any) -> Path:
        payload = json.dumps(data, ensure_ascii=False, indent=2, default=str)
        return self.write_atomically(path, payload.encode("utf-8"))

    def read_json(self, path: PathLike) -> Any:
        with open(self.resolve(path), "r", encoding="utf-8") as f:
            return json.load(f)

    def remove(self, path: PathLike) -> bool:
        """
        Removes a file or a directory tree.
        Returns False when nothing existed at the path.
        """
        p = self.resolve(path)
        kind = self.exists(p)
        if kind == PathKind.MISSING:
            return False
        if kind == PathKind.DIRECTORY:
            shutil.rmtree(p)
        else:
            try:
                p.unlink()
            except FileNotFoundError:
                return False
        logger.debug(f"[STORE] Removed {p}")
        return True

    def move(self, src: PathLike, dst: PathLike) -> Path:
        """Moves src to dst, creating dst's parent and replacing an existing dst."""
        s, d = self.resolve(src), self.resolve(dst)
        self.ensure_dir(d.parent)
        if self.exists(d) == PathKind.DIRECTORY:
            shutil.rmtree(d)
        shutil.move(str(s), str(d))
        logger.debug(f"[STORE] Moved {s} -> {d}")
        return d

    @staticmethod
    def hash(data: bytes) -> bytes:
        return hashlib.new(constants.HASH_ALGORITHM, data).digest()

    @staticmethod
    def new_hasher():
        return hashlib.new(constants.HASH_ALGORITHM)

    def file_hash(self, path: PathLike) -> bytes:
        hasher = self.new_hasher()
        with open(self.resolve(path), "rb") as f:
            for chunk in iter(lambda: f.read(constants.HASH_READ_CHUNK), b""):
                hasher.update(chunk)
        return hasher.digest()

    def verify_hash(self, path: PathLike, expected: Union[bytes, Sequence[int]]) -> bool:
        """True when the file exists and its digest equals `expected`."""
        if not self.is_file(path):
            return False
        return self.file_hash(path) == bytes(expected)

    def list_dir(self, path: PathLike, dirs_only: bool = False, numeric_only: bool = False) -> List[str]:
        """
        Lists entry names of a directory (empty list when it does not exist).
        numeric_only keeps names that are 0 or a positive integer without leading zeros.
        """
        p = self.resolve(path)
        if not p.is_dir():
            return []
        names = []
        for entry in sorted(p.iterdir()):
            if dirs_only and not entry.is_dir():
                continue
            if numeric_only and not (entry.name == "0" or (entry.name.isdigit() and entry.name[0] != "0")):
                continue
            names.append(entry.name)
        return names
