# tenderly/services/file_storage.py
import hashlib
import logging
import os
import time
from dataclasses import dataclass
from functools import lru_cache

from ..config import get_settings

logger = logging.getLogger(__name__)

DRAFTS_FOLDER = "prescription-drafts"
SIGNED_FOLDER = "prescription-signed"


@dataclass
class StoredFile:
    key: str
    url: str
    path: str
    sha256: str
    size: int


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class FileStorage:
    """Local-disk object storage. Keys are ``{folder}/{ms}-{file_name}``."""

    def __init__(self, root_dir: str, base_url: str = "/files"):
        self.root_dir = root_dir
        self.base_url = base_url.rstrip("/")

    def _path(self, key: str) -> str:
        path = os.path.normpath(os.path.join(self.root_dir, key))
        if not path.startswith(os.path.normpath(self.root_dir)):
            raise ValueError(f"Storage key escapes the storage root: {key}")
        return path

    def upload(self, data: bytes, file_name: str, folder: str) -> StoredFile:
        safe_name = os.path.basename(file_name).replace(" ", "_")
        key = f"{folder}/{int(time.time() * 1000)}-{safe_name}"
        path = self._path(key)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "wb") as f:
            f.write(data)
        logger.info(f"Stored {len(data)} bytes at {key}")
        return StoredFile(key=key, url=f"{self.base_url}/{key}", path=path, sha256=sha256_hex(data), size=len(data))

    def key_for_url(self, url: str) -> str:
        prefix = f"{self.base_url}/"
        return url[len(prefix):] if url.startswith(prefix) else url

    def read(self, key: str) -> bytes:
        path = self._path(key)
        if not os.path.exists(path):
            raise FileNotFoundError(key)
        with open(path, "rb") as f:
            return f.read()

    def delete(self, key: str) -> None:
        """Best effort; a missing file is only logged."""
        try:
            os.remove(self._path(key))
        except OSError as e:
            logger.warning(f"Could not delete stored file {key}: {e}")


@lru_cache()
def get_file_storage() -> FileStorage:
    settings = get_settings()
    return FileStorage(settings.storage_dir, settings.storage_base_url)
