"""
HOMESERVER Update Management System
Copyright (C) 2024 HOMESERVER LLC

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

"""
Download and verification of plan entries into the staging area.

Bytes are streamed to ``<name>.part`` and hashed on the way in. Only a file
whose checksum and size match the catalog is renamed to its staged name, so
anything found under a staged name has already been verified. That is what
makes a retry after cancellation cheap: verified files are reused.
"""

import hashlib
import os
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from ..errors import Canceled, IntegrityError, NetworkError, UpdaterError
from .collection import FileRecord, InstallPlan, StagingEntry
from .index import compute_file_sha256, debug_log, log_message
from .sources import IndexSource
from .state_manager import StateManager

PART_SUFFIX = ".part"


class CancellationToken:
    """Session-wide cooperative cancellation flag."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def canceled(self) -> bool:
        return self._event.is_set()

    def raise_if_canceled(self, message: str = "Canceled") -> None:
        if self._event.is_set():
            raise Canceled(message)

    def wait(self, timeout: float) -> bool:
        """Sleep up to timeout seconds; True if canceled meanwhile."""
        return self._event.wait(timeout)


class ProgressSink:
    """Receives progress and outcome notifications. Owned by the shell."""

    def stage(self, name: str, done: int, total: int) -> None:
        pass

    def warn(self, message: str) -> None:
        pass

    def finished(self, outcome: str, message: str = "") -> None:
        pass


class LoggingProgressSink(ProgressSink):
    """Reports through the updater log, one line per 10% step."""

    def __init__(self):
        self._last_step: Dict[str, int] = {}

    def stage(self, name: str, done: int, total: int) -> None:
        if total <= 0:
            return
        step = min(10, int(done * 10 / total))
        if self._last_step.get(name) == step:
            return
        self._last_step[name] = step
        log_message(f"{name}: {done}/{total} bytes ({step * 10}%)")

    def warn(self, message: str) -> None:
        log_message(message, "WARNING")

    def finished(self, outcome: str, message: str = "") -> None:
        level = "INFO" if outcome == "success" else "ERROR"
        log_message(f"Update {outcome}" + (f": {message}" if message else ""), level)


class _ProgressTracker:
    """Aggregates per-file byte counts into monotonic session progress."""

    def __init__(self, sink: ProgressSink, total: int, stage_name: str = "download"):
        self.sink = sink
        self.total = total
        self.stage_name = stage_name
        self._lock = threading.Lock()
        self._per_file: Dict[str, int] = {}
        self._reported = 0

    def advance(self, path: str, done_for_file: int) -> None:
        with self._lock:
            if done_for_file <= self._per_file.get(path, 0):
                return
            self._per_file[path] = done_for_file
            done = min(self.total, sum(self._per_file.values()))
            if done < self._reported:
                return
            self._reported = done
            self.sink.stage(self.stage_name, done, self.total)


@dataclass
class FetchReport:
    staged: Dict[str, StagingEntry] = field(default_factory=dict)
    failed: Dict[str, UpdaterError] = field(default_factory=dict)
    reused: int = 0
    downloaded: int = 0

    @property
    def ok(self) -> bool:
        return not self.failed


class Downloader:
    """Fetches plan entries into staging through a bounded worker pool."""

    def __init__(self, root, source: IndexSource, max_workers: int = 4,
                 token: Optional[CancellationToken] = None, state: Optional[StateManager] = None,
                 retries: int = 1, retry_backoff: float = 0.5):
        self.root = Path(root)
        self.source = source
        self.max_workers = max(1, int(max_workers))
        self.retries = max(0, int(retries))
        self.retry_backoff = retry_backoff
        self.token = token or CancellationToken()
        self.state = state or StateManager(self.root)
        self.staging_dir = self.state.staging_dir

    def staging_path(self, path: str) -> Path:
        return self.staging_dir.joinpath(*path.split("/"))

    def verified_staging(self, record: FileRecord) -> Optional[StagingEntry]:
        """Return the staged entry for record if its bytes are already verified."""
        target = self.staging_path(record.path)
        if not target.is_file():
            return None
        if target.stat().st_size == record.remote_size and compute_file_sha256(target) == record.remote_checksum:
            return StagingEntry(record.path, target, record.remote_checksum, record.remote_size, record.remote_version)
        log_message(f"Discarding stale staged copy of {record.path}", "WARNING")
        target.unlink()
        return None

    def _fetch_one(self, record: FileRecord, progress: _ProgressTracker) -> StagingEntry:
        self.token.raise_if_canceled()
        target = self.staging_path(record.path)
        part = target.with_name(target.name + PART_SUFFIX)
        part.parent.mkdir(parents=True, exist_ok=True)

        hasher = hashlib.sha256()
        size = 0
        stream = self.source.open_file(record.path)
        try:
            with open(part, "wb") as out:
                for chunk in stream:
                    self.token.raise_if_canceled()
                    size += len(chunk)
                    if size > record.remote_size:
                        raise IntegrityError(record.path, f"received more than the expected {record.remote_size} bytes")
                    out.write(chunk)
                    hasher.update(chunk)
                    progress.advance(record.path, size)
            digest = hasher.hexdigest()
            if size != record.remote_size:
                raise IntegrityError(record.path, f"size mismatch (expected {record.remote_size}, got {size})")
            if digest != record.remote_checksum:
                raise IntegrityError(record.path, f"checksum mismatch (expected {record.remote_checksum[:12]}, got {digest[:12]})")
            os.replace(part, target)
        except BaseException:
            if part.exists():
                part.unlink()
            raise
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                close()

        debug_log(f"Verified {record.path} ({size} bytes)")
        return StagingEntry(record.path, target, digest, size, record.remote_version)

    def _fetch_with_retry(self, record: FileRecord, progress: _ProgressTracker) -> StagingEntry:
        """Restart an interrupted transfer from scratch, up to ``retries`` times."""
        attempt = 0
        while True:
            try:
                return self._fetch_one(record, progress)
            except NetworkError as e:
                if attempt >= self.retries:
                    raise
                attempt += 1
                delay = self.retry_backoff * (2 ** (attempt - 1))
                log_message(f"Transfer of {record.path} failed ({e}); retry {attempt}/{self.retries} "
                            f"in {delay:.1f}s", "WARNING")
                if self.token.wait(delay):
                    raise Canceled(f"Canceled while retrying {record.path}")

    def fetch(self, plan: InstallPlan, sink: Optional[ProgressSink] = None) -> FetchReport:
        """
        Download every plan entry that is not installed yet.

        Args:
            plan: install plan (conflicts already adjudicated)
            sink: progress sink

        Returns:
            FetchReport: verified staging entries and per-file failures

        Raises:
            Canceled: if the token fired; verified entries stay in staging
        """
        sink = sink or ProgressSink()
        report = FetchReport()
        records = []
        for entry in plan:
            record = plan.collection.get(entry.path)
            if record is None or not entry.available:
                continue
            if record.local_checksum == record.remote_checksum:
                continue
            records.append(record)

        progress = _ProgressTracker(sink, sum(r.remote_size for r in records))
        pending = []
        for record in records:
            staged = self.verified_staging(record)
            if staged is not None:
                report.staged[record.path] = staged
                report.reused += 1
                progress.advance(record.path, record.remote_size)
            else:
                pending.append(record)

        if report.reused:
            log_message(f"Reusing {report.reused} verified file(s) from staging")
        if not pending:
            return report

        log_message(f"Downloading {len(pending)} file(s) from {self.source.describe()}")
        canceled = False
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = {executor.submit(self._fetch_with_retry, record, progress): record.path for record in pending}
            for future in as_completed(futures):
                path = futures[future]
                try:
                    report.staged[path] = future.result()
                    report.downloaded += 1
                except Canceled:
                    canceled = True
                except (IntegrityError, NetworkError) as e:
                    log_message(f"Download of {path} failed: {e}", "ERROR")
                    report.failed[path] = e
                except OSError as e:
                    log_message(f"Could not stage {path}: {e}", "ERROR")
                    report.failed[path] = NetworkError(f"{path}: {e}")

        if canceled or self.token.canceled:
            raise Canceled(f"Download canceled; {len(report.staged)} verified file(s) kept in staging")
        return report
