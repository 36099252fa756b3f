"""Per-tenant credential persistence."""

from __future__ import annotations

import json
import os
import re
import shutil
from pathlib import Path
from typing import Any

from loguru import logger

from groupcast.session.errors import InvalidTenantId, StorageError

_TENANT_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")
CREDENTIALS_FILE = "creds.json"


def validate_tenant_id(tenant_id: str) -> str:
    """Return the tenant id if it is safe to use as a directory name."""
    if not isinstance(tenant_id, str) or not _TENANT_ID_RE.match(tenant_id) or ".." in tenant_id:
        raise InvalidTenantId(f"Invalid tenant id: {tenant_id!r}")
    return tenant_id


class CredentialStore:
    """
    Stores one opaque credential blob per tenant.

    Layout: ``<base_dir>/<tenant_id>/creds.json``. The blob is whatever the
    messaging client hands back (a JSON-serialisable dict); the store never
    looks inside it. Removing a tenant directory is equivalent to ``clear``.
    """

    def __init__(self, base_dir: Path):
        self.base_dir = Path(base_dir).expanduser()
        try:
            self.base_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create auth directory {self.base_dir}: {e}") from e

    def tenant_dir(self, tenant_id: str) -> Path:
        return self.base_dir / validate_tenant_id(tenant_id)

    def load(self, tenant_id: str) -> dict[str, Any] | None:
        """Load the credential blob, or None when the tenant has none stored."""
        path = self.tenant_dir(tenant_id) / CREDENTIALS_FILE
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"Cannot read credentials for {tenant_id}: {e}") from e
        if not isinstance(data, dict):
            raise StorageError(f"Credentials for {tenant_id} are not an object")
        return data

    def save(self, tenant_id: str, blob: dict[str, Any]) -> None:
        """Write the blob atomically (temp file + rename)."""
        directory = self.tenant_dir(tenant_id)
        path = directory / CREDENTIALS_FILE
        tmp = directory / f".{CREDENTIALS_FILE}.tmp"
        try:
            directory.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(blob, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp, path)
        except (OSError, TypeError, ValueError) as e:
            tmp.unlink(missing_ok=True)
            raise StorageError(f"Cannot write credentials for {tenant_id}: {e}") from e

    def clear(self, tenant_id: str) -> None:
        """Delete everything stored for the tenant. No-op if absent."""
        directory = self.tenant_dir(tenant_id)
        if not directory.exists():
            return
        try:
            shutil.rmtree(directory)
        except FileNotFoundError:
            return
        except OSError as e:
            raise StorageError(f"Cannot clear credentials for {tenant_id}: {e}") from e
        logger.info(f"Credentials cleared for {tenant_id}")

    def exists(self, tenant_id: str) -> bool:
        return (self.tenant_dir(tenant_id) / CREDENTIALS_FILE).exists()

    def list_tenants(self) -> list[str]:
        """Tenant ids that have a directory under the base dir."""
        try:
            entries = sorted(self.base_dir.iterdir())
        except OSError as e:
            raise StorageError(f"Cannot list {self.base_dir}: {e}") from e
        return [
            entry.name
            for entry in entries
            if entry.is_dir() and _TENANT_ID_RE.match(entry.name)
        ]
