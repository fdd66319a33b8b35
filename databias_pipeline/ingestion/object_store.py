"""Object storage access.

``LocalObjectStore`` keeps each bucket as a directory under
OBJECT_STORE_ROOT. Locators returned by ``put_object`` have the form
``local://<bucket>/<key>``.
"""
import os
from typing import Optional, Protocol, Tuple

from ..core.config import settings
from ..core.errors import NotFoundError, TransientIOError, ValidationError
from ..core.logger import get_logger

logger = get_logger(__name__)


class ObjectStore(Protocol):
    def get_object(self, bucket: str, key: str) -> bytes: ...

    def put_object(self, bucket: str, key: str, data: bytes) -> str: ...


class LocalObjectStore:
    def __init__(self, root: Optional[str] = None):
        self.root = os.path.abspath(root or settings.OBJECT_STORE_ROOT)

    def _path(self, bucket: str, key: str) -> str:
        if not bucket or not key:
            raise ValidationError("Object bucket and key are required")
        base = os.path.join(self.root, bucket)
        path = os.path.abspath(os.path.join(base, key))
        if not path.startswith(os.path.abspath(base) + os.sep):
            raise ValidationError(f"Object key escapes bucket: {key}")
        return path

    def get_object(self, bucket: str, key: str) -> bytes:
        path = self._path(bucket, key)
        try:
            with open(path, "rb") as f:
                return f.read()
        except FileNotFoundError as e:
            raise NotFoundError(f"Object not found: {bucket}/{key}", cause=e) from e
        except OSError as e:
            raise TransientIOError(f"Failed to read object {bucket}/{key}: {e}", cause=e) from e

    def put_object(self, bucket: str, key: str, data: bytes) -> str:
        """Write (or overwrite) an object and return its locator."""
        path = self._path(bucket, key)
        tmp_path = f"{path}.tmp"
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(tmp_path, "wb") as f:
                f.write(data)
            os.replace(tmp_path, path)
        except OSError as e:
            raise TransientIOError(f"Failed to write object {bucket}/{key}: {e}", cause=e) from e
        logger.debug("object_stored", bucket=bucket, key=key, size=len(data))
        return f"local://{bucket}/{key}"


def parse_locator(locator: str) -> Tuple[str, str]:
    """Split a ``local://<bucket>/<key>`` locator into bucket and key."""
    scheme, sep, rest = locator.partition("://")
    bucket, _, key = rest.partition("/")
    if scheme != "local" or not sep or not bucket or not key:
        raise ValidationError(f"Unsupported object locator: {locator}")
    return bucket, key
