"""Backup archive access and last-resort restoration of the audit store.

Restores follow copy → verify → swap: the backup is copied next to the live
database, checked with ``PRAGMA integrity_check``, and only then swapped in
with an atomic rename.  The pre-restore database is preserved in the backup
directory as ``corrupted_<timestamp>.sqlite`` for forensic inspection.
"""

import asyncio
import hashlib
import logging
import os
import shutil
import sqlite3
from datetime import UTC, datetime
from pathlib import Path

from audit_recovery.monitor.errors import RestoreFailure
from audit_recovery.monitor.interfaces import AuditStore, BackupArchive
from audit_recovery.monitor.models import HEALTH_CHECK_NAMES, BackupManifestEntry, HealthStatus
from audit_recovery.store.history import carry_over_history

logger = logging.getLogger(__name__)

FORENSIC_PREFIX = "corrupted_"
CHECKSUM_SUFFIX = ".sha256"
_CHUNK_SIZE = 1024 * 1024


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as fh:
        for chunk in iter(lambda: fh.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _read_checksum_sidecar(path: Path) -> str | None:
    """Read a ``sha256sum``-style sidecar (``<hex>  <filename>``) if present."""
    sidecar = path.with_name(path.name + CHECKSUM_SUFFIX)
    if not sidecar.is_file():
        return None
    content = sidecar.read_text(encoding="utf-8").strip()
    return content.split()[0].lower() if content else None


def _integrity_ok(db_file: Path) -> bool:
    try:
        conn = sqlite3.connect(f"file:{db_file}?mode=ro", uri=True)
        try:
            rows = conn.execute("PRAGMA integrity_check").fetchall()
        finally:
            conn.close()
    except sqlite3.Error:
        logger.warning("Could not open %s as a SQLite database", db_file)
        return False
    return [str(r[0]) for r in rows] == ["ok"]


class FileBackupArchive:
    """Backup archive backed by a directory of SQLite dump files."""

    def __init__(self, backup_dir: str, db_path: str, patterns: tuple[str, ...] = ("*.sqlite", "*.db", "*.bak")) -> None:
        self.backup_dir = Path(backup_dir)
        self.db_path = Path(db_path)
        self.patterns = patterns

    def list(self) -> list[BackupManifestEntry]:
        if not self.backup_dir.is_dir():
            logger.warning("Backup directory %s does not exist", self.backup_dir)
            return []
        seen: set[Path] = set()
        entries: list[BackupManifestEntry] = []
        for pattern in self.patterns:
            for path in self.backup_dir.glob(pattern):
                if path in seen or not path.is_file() or path.name.startswith(FORENSIC_PREFIX):
                    continue
                seen.add(path)
                stat = path.stat()
                entries.append(
                    BackupManifestEntry(
                        path=str(path),
                        created_at=datetime.fromtimestamp(stat.st_mtime, tz=UTC),
                        size_bytes=stat.st_size,
                        checksum=_read_checksum_sidecar(path),
                    )
                )
        return entries

    def is_viable(self, entry: BackupManifestEntry) -> bool:
        """Existence, readability and (when a sidecar exists) checksum check."""
        path = Path(entry.path)
        if not path.is_file() or not os.access(path, os.R_OK) or path.stat().st_size == 0:
            return False
        if entry.checksum is not None and sha256_file(path) != entry.checksum:
            logger.warning("Checksum mismatch for backup %s", path)
            return False
        return True

    def restore(self, entry: BackupManifestEntry) -> None:
        """Copy, verify, then swap the backup into place. The store must be disconnected."""
        staging = self.db_path.with_name(self.db_path.name + ".restore-tmp")
        shutil.copy2(entry.path, staging)
        if not _integrity_ok(staging):
            staging.unlink(missing_ok=True)
            msg = f"Backup {entry.path} failed integrity verification"
            raise RestoreFailure(msg)

        # The incident that triggered the restore must stay in the remediation log.
        carry_over_history(self.db_path, staging)

        stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S%fZ")
        if self.db_path.exists():
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            forensic = self.backup_dir / f"{FORENSIC_PREFIX}{stamp}.sqlite"
            shutil.copy2(self.db_path, forensic)
            logger.info("Pre-restore database preserved at %s", forensic)
        # Journal files of the old database must not be replayed onto the restored one.
        for suffix in ("-wal", "-shm"):
            journal = self.db_path.with_name(self.db_path.name + suffix)
            if journal.exists():
                shutil.move(journal, self.backup_dir / f"{FORENSIC_PREFIX}{stamp}.sqlite{suffix}")

        os.replace(staging, self.db_path)
        logger.info("Restored %s from backup %s", self.db_path, entry.path)


class BackupRestoreCoordinator:
    def __init__(self, archive: BackupArchive, store: AuditStore) -> None:
        self.archive = archive
        self.store = store

    def find_latest_backup(self) -> BackupManifestEntry | None:
        """Newest viable backup; identical timestamps prefer the larger dump."""
        viable: list[BackupManifestEntry] = []
        for entry in self.archive.list():
            if self.archive.is_viable(entry):
                viable.append(entry)
            else:
                logger.warning("Skipping non-viable backup %s", entry.path)
        if not viable:
            return None
        return max(viable, key=lambda e: (e.created_at, e.size_bytes))

    async def restore_latest(self) -> BackupManifestEntry:
        entry = await asyncio.to_thread(self.find_latest_backup)
        if entry is None:
            self._log_failure("No viable backup available for restore", None)
            msg = "No viable backup found"
            raise RestoreFailure(msg)
        await self.restore_from_backup(entry)
        return entry

    async def restore_from_backup(self, entry: BackupManifestEntry) -> None:
        """Single restore attempt followed by the full health-check set.

        Raises:
            RestoreFailure: If the restore fails or the restored store is still unhealthy.
        """
        logger.warning("Restoring audit store from backup %s", entry.path)
        try:
            await asyncio.to_thread(self.store.close)
            await asyncio.to_thread(self.archive.restore, entry)
            await asyncio.to_thread(self.store.reset_connections)
            results = [await asyncio.to_thread(self.store.health_check, name) for name in HEALTH_CHECK_NAMES]
        except RestoreFailure as exc:
            self._log_failure(str(exc), entry)
            raise
        except (OSError, sqlite3.Error) as exc:
            self._log_failure(f"Restore failed: {exc}", entry)
            raise RestoreFailure(str(exc)) from exc

        unhealthy = [r for r in results if r.status == HealthStatus.UNHEALTHY]
        if unhealthy:
            detail = ", ".join(f"{r.name}: {r.message or 'unhealthy'}" for r in unhealthy)
            self._log_failure(f"Store still unhealthy after restore ({detail})", entry)
            msg = f"Post-restore health check failed: {detail}"
            raise RestoreFailure(msg)
        logger.info("Audit store restored from %s and healthy", entry.path)

    @staticmethod
    def _log_failure(message: str, entry: BackupManifestEntry | None) -> None:
        # Surfaced to operators through the critical alert for the anomaly being remediated.
        logger.critical(
            "Backup restore failed, manual intervention required: %s (backup=%s)",
            message,
            entry.path if entry else None,
        )
