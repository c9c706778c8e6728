"""
Archive storage - where gzip snapshots of the registry end up

FileSystemArchiveStorage keeps files under GIB_ARCHIVE_BASE_PATH, in
per-category subfolders:

    {base}/einvoice/einvoice_users_2026-10-18_031500.xml.gz
    {base}/edespatch/edespatch_users_2026-10-18_031500.xml.gz

File names are always relative to the base path; anything resolving outside
it is rejected with ArchiveStorageError.
"""

import logging
import os
import shutil
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import BinaryIO, List, Optional
from zoneinfo import ZoneInfo

from constants import REGISTRY_TIME_ZONE
from services.gib_errors import ArchiveStorageError

logger = logging.getLogger(__name__)


ARCHIVE_SUFFIXES = ('.xml.gz', '.zip')


@dataclass
class ArchiveFileInfo:
    file_name: str
    size_bytes: int
    created_at: datetime

    def to_dict(self) -> dict:
        return {
            'file_name': self.file_name,
            'size_bytes': self.size_bytes,
            'created_at': self.created_at.isoformat(),
        }


class FileSystemArchiveStorage:

    def __init__(self, base_path: str):
        self.base_path = Path(base_path).resolve()

    def _safe_path(self, file_name: str) -> Path:
        if not file_name or os.path.isabs(file_name):
            raise ArchiveStorageError(f"Invalid archive file name: {file_name!r}")
        path = (self.base_path / file_name).resolve()
        if path != self.base_path and self.base_path not in path.parents:
            raise ArchiveStorageError(f"Archive path escapes base directory: {file_name!r}")
        return path

    def save(self, file_name: str, source: BinaryIO) -> int:
        """Copy a readable binary stream into the archive. Returns bytes written."""
        path = self._safe_path(file_name)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'wb') as out:
            shutil.copyfileobj(source, out)
        size = path.stat().st_size
        logger.info(f"Archive saved: {file_name} ({size:,} bytes)")
        return size

    def open(self, file_name: str) -> BinaryIO:
        path = self._safe_path(file_name)
        if not path.is_file():
            raise FileNotFoundError(file_name)
        return open(path, 'rb')

    def list(self, prefix: Optional[str] = None) -> List[ArchiveFileInfo]:
        """Archive files, newest first."""
        if not self.base_path.exists():
            return []

        files = []
        for path in self.base_path.rglob('*'):
            if not path.is_file() or not path.name.endswith(ARCHIVE_SUFFIXES):
                continue
            relative = path.relative_to(self.base_path).as_posix()
            if prefix and not relative.startswith(prefix):
                continue
            stat = path.stat()
            files.append(ArchiveFileInfo(
                file_name=relative,
                size_bytes=stat.st_size,
                created_at=datetime.fromtimestamp(stat.st_mtime, ZoneInfo(REGISTRY_TIME_ZONE)).replace(tzinfo=None),
            ))

        files.sort(key=lambda f: f.created_at, reverse=True)
        return files

    def delete(self, file_name: str) -> bool:
        path = self._safe_path(file_name)
        if not path.exists():
            return False
        path.unlink()
        logger.info(f"Archive deleted: {file_name}")
        return True
