from __future__ import annotations

import errno
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path
from uuid import UUID

from loguru import logger
from pydantic import BaseModel

from capture_store.errors import (
    CaptureStoreError,
    InsufficientSpaceError,
    NotFoundError,
    PermissionDeniedError,
    StorageError,
)
from capture_store.models import Session
from capture_store.storage.base import Storage
from capture_store.storage.serialization import (
    FileFormat,
    decode_session,
    decode_sessions,
    encode_session,
    encode_sessions,
)


class FileStorageConfig(BaseModel):
    base_directory: Path = Path("sessions")
    file_format: FileFormat = FileFormat.JSON
    max_sessions: int = 10000
    auto_cleanup: bool = True
    retention_period: timedelta = timedelta(days=30)


@contextmanager
def _os_errors(path: Path) -> Iterator[None]:
    """Translate filesystem failures into storage errors."""
    try:
        yield
    except FileNotFoundError as exc:
        raise NotFoundError(str(path)) from exc
    except PermissionError as exc:
        raise PermissionDeniedError(str(path)) from exc
    except OSError as exc:
        if exc.errno == errno.ENOSPC:
            raise InsufficientSpaceError(str(path)) from exc
        raise StorageError(f"{path}: {exc}") from exc


class FileStorage(Storage):
    """One file per session, named ``<uuid>.<ext>`` in ``base_directory``."""

    def __init__(self, config: FileStorageConfig | None = None) -> None:
        super().__init__(worker_name="file-storage")
        self.config = config or FileStorageConfig()
        self.base_directory = Path(self.config.base_directory)
        with _os_errors(self.base_directory):
            self.base_directory.mkdir(parents=True, exist_ok=True)

    @property
    def file_format(self) -> FileFormat:
        return self.config.file_format

    def path_for(self, session_id: UUID) -> Path:
        return self.base_directory / f"{session_id}.{self.file_format.extension}"

    # -- extras -------------------------------------------------------------

    async def cleanup(self) -> int:
        """Apply the retention policy now and return how many files were removed."""
        return await self._run(self._cleanup)

    async def export(
        self,
        sessions: list[Session],
        path: Path | str,
        file_format: FileFormat = FileFormat.JSON,
    ) -> None:
        """Write ``sessions`` to one document at ``path``."""
        await self._run(self._export, list(sessions), Path(path), FileFormat(file_format))

    async def import_sessions(
        self, path: Path | str, file_format: FileFormat = FileFormat.JSON
    ) -> list[Session]:
        """Read a document written by :meth:`export`. Nothing is stored."""
        return await self._run(self._import, Path(path), FileFormat(file_format))

    # -- worker-side primitives ---------------------------------------------

    def _session_files(self) -> list[Path]:
        suffix = f".{self.file_format.extension}"
        with _os_errors(self.base_directory):
            return [
                p
                for p in self.base_directory.iterdir()
                if p.suffix == suffix and not p.name.startswith(".") and p.is_file()
            ]

    def _write(self, session: Session) -> None:
        path = self.path_for(session.id)
        data = encode_session(session, self.file_format)
        with _os_errors(path):
            path.write_bytes(data)

    def _save(self, sessions: list[Session]) -> None:
        for session in sessions:
            self._write(session)
        logger.debug("Saved {} session(s) to {}", len(sessions), self.base_directory)
        if self.config.auto_cleanup:
            try:
                self._cleanup()
            except CaptureStoreError as exc:
                logger.warning("Retention cleanup failed: {}", exc)

    def _load(self, session_id: UUID) -> Session | None:
        path = self.path_for(session_id)
        if not path.exists():
            return None
        with _os_errors(path):
            data = path.read_bytes()
        return decode_session(data, self.file_format)

    def _load_all(self) -> list[Session]:
        sessions = []
        for path in self._session_files():
            try:
                with _os_errors(path):
                    data = path.read_bytes()
                sessions.append(decode_session(data, self.file_format))
            except CaptureStoreError as exc:
                logger.warning("Skipping unreadable session file {}: {}", path.name, exc)
        sessions.sort(key=lambda s: s.start_time, reverse=True)
        return sessions

    def _delete(self, session_id: UUID) -> bool:
        path = self.path_for(session_id)
        if not path.exists():
            return False
        with _os_errors(path):
            path.unlink()
        return True

    def _delete_all(self) -> None:
        for path in self._session_files():
            with _os_errors(path):
                path.unlink(missing_ok=True)

    def _count(self) -> int:
        return len(self._session_files())

    def _storage_size(self) -> int:
        total = 0
        for path in self._session_files():
            with _os_errors(path):
                total += path.stat().st_size
        return total

    def _cleanup(self) -> int:
        removed = 0
        cutoff = time.time() - self.config.retention_period.total_seconds()

        remaining: list[tuple[float, Path]] = []
        for path in self._session_files():
            with _os_errors(path):
                modified = path.stat().st_mtime
                if modified < cutoff:
                    path.unlink(missing_ok=True)
                    removed += 1
                else:
                    remaining.append((modified, path))

        excess = len(remaining) - self.config.max_sessions
        if excess > 0:
            remaining.sort(key=lambda entry: entry[0])
            for _, path in remaining[:excess]:
                with _os_errors(path):
                    path.unlink(missing_ok=True)
                removed += 1

        if removed:
            logger.info("Retention removed {} session file(s) from {}", removed, self.base_directory)
        return removed

    def _export(self, sessions: list[Session], path: Path, file_format: FileFormat) -> None:
        data = encode_sessions(sessions, file_format)
        with _os_errors(path):
            path.write_bytes(data)
        logger.info("Exported {} session(s) to {}", len(sessions), path)

    def _import(self, path: Path, file_format: FileFormat) -> list[Session]:
        with _os_errors(path):
            data = path.read_bytes()
        return decode_sessions(data, file_format)

    def __repr__(self) -> str:
        return f"FileStorage({str(self.base_directory)!r}, {self.file_format.value})"
