"""
FTP source: listing and downloading supplier CSV exports.

ftplib is blocking, so every FTP conversation runs in a worker thread via
asyncio.to_thread. Each listing and each download opens a fresh connection
and closes it before returning; the supplier servers reset idle sessions,
so nothing is pooled.
"""

import asyncio
import fnmatch
import ftplib
import os
import socket
import tempfile
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, Callable, List, Optional
import logging

from core.config import settings
from core.exceptions import (
    AuthenticationError,
    FTPExtractionError,
    NetworkError,
    SyncError,
)
from ingestion.extractors.base import FileDescriptor, RowChunk, SourceExtractor
from ingestion.resilience.backoff import BackoffPolicy, retry_async
from ingestion.transformers.csv_reader import CSVChunkReader
from schemas.integration import FTPConfig

logger = logging.getLogger(__name__)


class FTPExtractor(SourceExtractor):
    """
    List and stream files from one FTP directory.

    Attributes:
        config: Validated FTP settings (password held as SecretStr)
        chunk_rows: Rows per chunk handed to the orchestrator
        timeout: Per-operation socket timeout in seconds
        policy: Backoff policy applied to downloads
    """

    source_type = "ftp"

    def __init__(
        self,
        config: FTPConfig,
        chunk_rows: int = None,
        timeout: float = None,
        policy: Optional[BackoffPolicy] = None,
        download_dir: Optional[str] = None,
        ftp_factory: Optional[Callable[..., ftplib.FTP]] = None,
    ):
        self.config = config
        self.chunk_rows = chunk_rows or settings.READ_CHUNK_ROWS
        self.timeout = timeout or settings.FTP_TIMEOUT_SECONDS
        self.policy = policy or BackoffPolicy.from_settings()
        self.download_dir = download_dir
        self._ftp_factory = ftp_factory

    # ------------------------------------------------------------------
    # Connection handling (runs in worker threads)
    # ------------------------------------------------------------------

    def _connect(self) -> ftplib.FTP:
        if self._ftp_factory is not None:
            ftp = self._ftp_factory(timeout=self.timeout)
        elif self.config.secure:
            ftp = ftplib.FTP_TLS(timeout=self.timeout)
        else:
            ftp = ftplib.FTP(timeout=self.timeout)

        try:
            ftp.connect(self.config.host.strip(), self.config.port)
            ftp.login(self.config.username.strip(), self.config.password.get_secret_value())
            if isinstance(ftp, ftplib.FTP_TLS):
                ftp.prot_p()
            if self.config.remote_path and self.config.remote_path != "/":
                ftp.cwd(self.config.remote_path)
        except Exception:
            self._disconnect(ftp)
            raise
        return ftp

    @staticmethod
    def _disconnect(ftp: ftplib.FTP):
        try:
            ftp.quit()
        except Exception:
            ftp.close()

    def _translate(self, exc: Exception, operation: str, file_name: str = None) -> SyncError:
        """Map ftplib / socket failures onto the pipeline's exception taxonomy."""
        context = {
            "host": self.config.host,
            "remote_path": self.config.remote_path,
            "operation": operation,
        }
        if file_name:
            context["file_name"] = file_name

        if isinstance(exc, ftplib.error_perm):
            if str(exc).startswith("530"):
                return AuthenticationError(
                    f"FTP login rejected by {self.config.host}",
                    context=context,
                    original_exception=exc
                )
            return FTPExtractionError(
                f"FTP {operation} refused: {exc}",
                context=context,
                original_exception=exc
            )
        if isinstance(exc, (ftplib.error_temp, OSError, EOFError, socket.timeout)):
            return NetworkError(
                f"FTP {operation} failed: {type(exc).__name__}: {exc}",
                context=context,
                original_exception=exc
            )
        return FTPExtractionError(
            f"Unexpected FTP error during {operation}",
            context=context,
            original_exception=exc
        )

    def _matches(self, name: str) -> bool:
        pattern = (self.config.file_pattern or "*.csv").lower()
        return fnmatch.fnmatch(name.lower(), pattern)

    def _list_sync(self) -> List[FileDescriptor]:
        ftp = self._connect()
        try:
            files = []
            try:
                for name, facts in ftp.mlsd(facts=["type", "size", "modify"]):
                    if facts.get("type", "file") != "file" or not self._matches(name):
                        continue
                    files.append(FileDescriptor(
                        name=name,
                        size=int(facts["size"]) if facts.get("size", "").isdigit() else None,
                        modified=_parse_mlsd_time(facts.get("modify")),
                    ))
            except ftplib.error_perm:
                # Server without MLSD support
                files = []
                for name in ftp.nlst():
                    name = name.rsplit("/", 1)[-1]
                    if not self._matches(name):
                        continue
                    try:
                        size = ftp.size(name)
                    except ftplib.error_perm:
                        size = None
                    files.append(FileDescriptor(name=name, size=size))
            return sorted(files, key=lambda f: f.name)
        finally:
            self._disconnect(ftp)

    def _download_sync(self, name: str, destination: Path) -> int:
        ftp = self._connect()
        try:
            with open(destination, "wb") as fh:
                ftp.retrbinary(f"RETR {name}", fh.write, blocksize=64 * 1024)
            return destination.stat().st_size
        finally:
            self._disconnect(ftp)

    # ------------------------------------------------------------------
    # SourceExtractor interface
    # ------------------------------------------------------------------

    async def list_files(self) -> List[FileDescriptor]:
        try:
            files = await asyncio.to_thread(self._list_sync)
        except Exception as e:
            raise self._translate(e, "list")
        logger.info(
            f"Found {len(files)} files matching {self.config.file_pattern!r} "
            f"on {self.config.host}{self.config.remote_path}"
        )
        return files

    async def download(self, descriptor: FileDescriptor) -> Path:
        """
        Download one file to a local temporary file.

        Returns:
            Path of the temporary file (the caller deletes it)
        """
        fd, tmp_name = tempfile.mkstemp(
            prefix="sync-", suffix=f"-{Path(descriptor.name).name}", dir=self.download_dir
        )
        os.close(fd)
        path = Path(tmp_name)
        try:
            size = await asyncio.to_thread(self._download_sync, descriptor.name, path)
        except Exception as e:
            path.unlink(missing_ok=True)
            raise self._translate(e, "download", descriptor.name)
        logger.info(f"Downloaded {descriptor.name} ({size / (1024 * 1024):.1f}MB)")
        return path

    async def iter_row_chunks(self, descriptor: FileDescriptor) -> AsyncIterator[RowChunk]:
        path = await retry_async(
            self.download,
            descriptor,
            policy=self.policy,
            operation=f"download {descriptor.name}",
        )
        chunks = iter(CSVChunkReader(path, chunk_rows=self.chunk_rows))
        try:
            while True:
                chunk = await asyncio.to_thread(next, chunks, None)
                if chunk is None:
                    break
                yield chunk
        finally:
            chunks.close()
            path.unlink(missing_ok=True)


def _parse_mlsd_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.strptime(value[:14], "%Y%m%d%H%M%S")
    except ValueError:
        return None
