"""
Attachment lifecycle: orphaned-file cleanup and read-side URLs.

File fields (FieldKind.FILE / FILES) hold storage ids. When an update
replaces them or a hard delete removes the document, the ids no longer
referenced are deleted from storage. Cleanup is best-effort: a storage
failure is logged as file:cleanup_failed and never raised, since the
document mutation has already succeeded.

Invariants:
    - Only fields present in the incoming patch are considered on update
    - Ids still referenced by the patch are never deleted
    - Deletes run sequentially, one failure does not stop the rest
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, runtime_checkable

from .schema.types import FieldKind, TableDef

logger = logging.getLogger(__name__)


@runtime_checkable
class FileStorage(Protocol):
    """Attachment storage consumed by the engine."""

    async def store(self, data: bytes, content_type: str = "application/octet-stream") -> str:
        ...

    async def delete(self, storage_id: str) -> None:
        ...

    async def get_url(self, storage_id: str) -> Optional[str]:
        ...


class InMemoryFileStorage:
    """Dict-backed storage for tests and development."""

    def __init__(self) -> None:
        self.files: Dict[str, bytes] = {}
        self.fail_deletes: set[str] = set()

    async def store(self, data: bytes, content_type: str = "application/octet-stream") -> str:
        storage_id = uuid.uuid4().hex
        self.files[storage_id] = data
        return storage_id

    async def delete(self, storage_id: str) -> None:
        if storage_id in self.fail_deletes:
            raise OSError(f"Simulated delete failure for {storage_id}")
        self.files.pop(storage_id, None)

    async def get_url(self, storage_id: str) -> Optional[str]:
        if storage_id not in self.files:
            return None
        return f"memory://{storage_id}"


class LocalFileStorage:
    """Files on local disk, served through HMAC-signed, expiring URLs.

    Example:
        >>> storage = LocalFileStorage("/var/lib/lazycrud/files", "https://cdn.example", b"secret")
        >>> storage_id = await storage.store(b"...")
        >>> await storage.get_url(storage_id)
        'https://cdn.example/<id>?expires=...&sig=...'
    """

    def __init__(
        self,
        root: str,
        base_url: str,
        secret: bytes,
        url_ttl_seconds: int = 3600,
    ) -> None:
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")
        self._secret = secret
        self.url_ttl_seconds = url_ttl_seconds

    def _path(self, storage_id: str) -> Path:
        safe_id = "".join(c for c in storage_id if c.isalnum())
        return self.root / safe_id

    async def store(self, data: bytes, content_type: str = "application/octet-stream") -> str:
        storage_id = uuid.uuid4().hex
        self.root.mkdir(parents=True, exist_ok=True)
        self._path(storage_id).write_bytes(data)
        return storage_id

    async def delete(self, storage_id: str) -> None:
        self._path(storage_id).unlink(missing_ok=True)

    def sign(self, storage_id: str, expires: int) -> str:
        message = f"{storage_id}:{expires}".encode("utf-8")
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def verify(self, storage_id: str, expires: int, signature: str) -> bool:
        if expires < int(time.time()):
            return False
        return hmac.compare_digest(self.sign(storage_id, expires), signature)

    async def get_url(self, storage_id: str) -> Optional[str]:
        if not self._path(storage_id).exists():
            return None
        expires = int(time.time()) + self.url_ttl_seconds
        return f"{self.base_url}/{storage_id}?expires={expires}&sig={self.sign(storage_id, expires)}"


@dataclass(frozen=True)
class FileField:
    name: str
    multiple: bool


def detect_files(table: TableDef) -> List[FileField]:
    """File-holding fields of a table."""
    return [FileField(f.name, f.kind == FieldKind.FILES) for f in table.file_fields]


def _ids(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [v for v in value if isinstance(v, str)]


async def clean_files(
    storage: Optional[FileStorage],
    doc: Mapping[str, Any],
    file_fields: Sequence[FileField],
    next_patch: Optional[Mapping[str, Any]] = None,
) -> List[str]:
    """Delete files doc references that next_patch drops.

    With next_patch None (hard delete) every referenced file goes.

    Returns:
        Storage ids whose delete was attempted
    """
    if storage is None or not file_fields:
        return []
    doomed: List[str] = []
    for f in file_fields:
        previous = _ids(doc.get(f.name))
        if not previous:
            continue
        if next_patch is None:
            doomed.extend(previous)
            continue
        if f.name not in next_patch:
            continue
        kept = set(_ids(next_patch[f.name]))
        doomed.extend(i for i in previous if i not in kept)

    for storage_id in doomed:
        try:
            await storage.delete(storage_id)
        except Exception as exc:
            logger.warning(
                "file:cleanup_failed",
                extra={"storage_id": storage_id, "error": str(exc)},
            )
    return doomed


async def add_urls(
    storage: Optional[FileStorage],
    doc: Dict[str, Any],
    file_fields: Sequence[FileField],
) -> Dict[str, Any]:
    """Add <field>_url / <field>_urls for each populated file field."""
    if storage is None or not file_fields:
        return doc
    for f in file_fields:
        value = doc.get(f.name)
        if value is None:
            continue
        if f.multiple:
            doc[f"{f.name}_urls"] = [await storage.get_url(i) for i in _ids(value)]
        else:
            doc[f"{f.name}_url"] = await storage.get_url(value)
    return doc
