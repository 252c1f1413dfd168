"""Archive sinks — where archived partitions are copied to.

A sink stores an opaque payload per (chain, partition) and can read it
back so the partition manager can compare digests before marking the
partition archived.
"""

from __future__ import annotations

import asyncio
import gzip
import logging
import os
import re
from abc import ABC, abstractmethod
from pathlib import Path

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]")


class ArchiveSink(ABC):
    """Write-once storage for archived partitions."""

    @abstractmethod
    async def write(self, chain_id: str, partition_id: str, payload: bytes) -> str:
        """Store ``payload`` and return its location."""

    @abstractmethod
    async def read(self, location: str) -> bytes:
        """Return the payload previously stored at ``location``."""

    @abstractmethod
    async def locate(self, chain_id: str, partition_id: str) -> str | None:
        """Location of an existing copy of the partition, or None."""


class FileArchiveSink(ArchiveSink):
    """Gzip-compressed JSON Lines files under a base directory.

    Layout: ``<base_dir>/<chain_id>/<partition_id>.jsonl.gz``. Files are
    written to a temporary name and renamed into place, so a crashed
    archival never leaves a truncated file under the final name. An
    existing archive file is never overwritten.
    """

    def __init__(self, base_dir: str | Path) -> None:
        self._base_dir = Path(base_dir)

    def path_for(self, chain_id: str, partition_id: str) -> Path:
        return self._base_dir / _UNSAFE.sub("_", chain_id) / f"{_UNSAFE.sub('_', partition_id)}.jsonl.gz"

    async def write(self, chain_id: str, partition_id: str, payload: bytes) -> str:
        path = self.path_for(chain_id, partition_id)
        await asyncio.to_thread(self._write_file, path, payload)
        logger.info("Archived %d bytes for %s/%s to %s", len(payload), chain_id, partition_id, path)
        return str(path)

    async def read(self, location: str) -> bytes:
        return await asyncio.to_thread(self._read_file, Path(location))

    async def locate(self, chain_id: str, partition_id: str) -> str | None:
        path = self.path_for(chain_id, partition_id)
        exists = await asyncio.to_thread(path.exists)
        return str(path) if exists else None

    @staticmethod
    def _write_file(path: Path, payload: bytes) -> None:
        if path.exists():
            raise FileExistsError(f"Archive file already exists: {path}")
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        with gzip.open(tmp, "wb") as fh:
            fh.write(payload)
        os.replace(tmp, path)

    @staticmethod
    def _read_file(path: Path) -> bytes:
        with gzip.open(path, "rb") as fh:
            return fh.read()
