"""Selection of the binary log files whose events may fall in a time window."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Optional

from .config import BinlogFile, Config
from .replication import BinlogSyncer, BinlogSyncerConfig, EventHeader

log = logging.getLogger(__name__)

SERVER_ID = 100
START_POSITION = 4
PROBE_TIMEOUT = 1.0
MAX_HEAD_EVENTS = 50
MAX_TAIL_SAMPLES = 50
MAX_RETRIES = 10
RETRY_DELAY = 0.1
WIDE_RANGE = timedelta(hours=24)
SEARCH_BUFFER = timedelta(hours=6)

_UINT32 = 0xFFFFFFFF
_FMT = "%Y-%m-%d %H:%M:%S"


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _stamp(seconds: int) -> Optional[datetime]:
    return datetime.fromtimestamp(seconds, timezone.utc) if seconds > 0 else None


def _show(moment: Optional[datetime]) -> str:
    return moment.strftime(_FMT) if moment is not None else "-"


def _crosses_boundary(header: EventHeader, size: int) -> bool:
    limit = size & _UINT32
    if header.log_pos <= 0 or header.event_size <= 0 or header.log_pos <= limit:
        return False
    return ((header.log_pos - header.event_size) & _UINT32) > limit


@dataclass(frozen=True)
class FileTimeRange:
    """First and last event times observed in a binary log file."""

    file_name: str
    size: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None


@dataclass(frozen=True)
class _SearchResult:
    file: BinlogFile
    time_range: Optional[FileTimeRange]
    index: int
    error: Optional[Exception] = None


class BinlogTimeFinder:
    """Probes binary log files and keeps those that overlap the configured window."""

    def __init__(
        self,
        config: Config,
        syncer_factory: Callable[[BinlogSyncerConfig], Any] = BinlogSyncer,
        retry_delay: float = RETRY_DELAY,
    ) -> None:
        self.config = config
        self._syncer_factory = syncer_factory
        self.retry_delay = retry_delay

    def _log(self, message: str) -> None:
        if self.config.verbose:
            log.debug(message)

    def _new_syncer(self, server_id: int) -> Any:
        cfg = self.config
        return self._syncer_factory(
            BinlogSyncerConfig(
                server_id=server_id,
                host=cfg.host,
                user=cfg.user,
                password=cfg.password,
                port=cfg.port,
            )
        )

    @staticmethod
    def _close(syncer: Any) -> None:
        try:
            syncer.close()
        except Exception:
            pass

    def find_target_files_efficient(self, files: Iterable[BinlogFile]) -> list[BinlogFile]:
        """Probe files one by one, oldest first, stopping once past the window."""
        ordered = sorted(files, key=lambda f: f.name)
        if not ordered:
            raise ValueError("no binary log files")
        self._log(f"Searching {len(ordered)} binary log files for the time range")
        end_time = _as_utc(self.config.end_time)

        targets: list[BinlogFile] = []
        for number, file in enumerate(ordered, start=1):
            self._log(f"Checking file {number}/{len(ordered)}: {file.name}")
            syncer = self._new_syncer(SERVER_ID)
            try:
                time_range = self.get_file_time_range(syncer, file)
            except ConnectionError as exc:
                self._log(f"Time range of {file.name} unavailable: {exc} (skipped)")
                continue
            finally:
                self._close(syncer)

            self._log(
                f"File {file.name}: {_show(time_range.start_time)} ~ "
                f"{_show(time_range.end_time)}"
            )
            if self.is_file_in_time_range(time_range):
                targets.append(file)
                self._log(f"File {file.name} is in the time range")
            else:
                self._log(f"File {file.name} is outside the time range (skipped)")

            if time_range.start_time is not None and time_range.start_time > end_time:
                self._log(f"File {file.name} starts after the end time; stopping")
                break

        self._log(f"Selected {len(targets)} files: {', '.join(f.name for f in targets)}")
        return targets

    def find_target_files_concurrent(self, files: Iterable[BinlogFile]) -> list[BinlogFile]:
        """Probe all files with a pool of workers and keep those in the window."""
        ordered = sorted(files, key=lambda f: f.name)
        if not ordered:
            raise ValueError("no binary log files")
        worker_count = max(1, min(self.config.workers, len(ordered)))
        self._log(
            f"Searching {len(ordered)} binary log files with {worker_count} workers"
        )

        pending = list(enumerate(ordered))
        results: list[_SearchResult] = []
        lock = threading.Lock()

        def work(worker_id: int) -> None:
            while True:
                with lock:
                    if not pending:
                        return
                    index, file = pending.pop(0)
                self._log(f"Worker {worker_id} checking file {index + 1}: {file.name}")
                result = self._probe_with_retries(worker_id, index, file)
                with lock:
                    results.append(result)

        with ThreadPoolExecutor(max_workers=worker_count) as pool:
            list(pool.map(work, range(1, worker_count + 1)))

        return self._select(results)

    def _probe_with_retries(self, worker_id: int, index: int, file: BinlogFile) -> _SearchResult:
        syncer = self._new_syncer(SERVER_ID + worker_id)
        error: Optional[Exception] = None
        try:
            for attempt in range(1, MAX_RETRIES + 1):
                try:
                    time_range = self.get_file_time_range(syncer, file)
                except ConnectionError as exc:
                    error = exc
                    if attempt < MAX_RETRIES:
                        self._log(
                            f"Worker {worker_id} retrying {file.name} "
                            f"({attempt}/{MAX_RETRIES}): {exc}"
                        )
                        time.sleep(self.retry_delay)
                    continue
                return _SearchResult(file, time_range, index)
        finally:
            self._close(syncer)
        return _SearchResult(file, None, index, error)

    def _select(self, results: list[_SearchResult]) -> list[BinlogFile]:
        probed = []
        for result in results:
            if result.error is not None or result.time_range is None:
                self._log(
                    f"Time range of {result.file.name} unavailable: {result.error} (skipped)"
                )
                continue
            probed.append(result)
        self._log(f"Time ranges determined for {len(probed)} files")
        probed.sort(key=lambda r: r.file.name)
        self._log(
            f"Search range: {_show(_as_utc(self.config.start_time))} ~ "
            f"{_show(_as_utc(self.config.end_time))}"
        )

        targets: list[BinlogFile] = []
        for result in probed:
            time_range = result.time_range
            self._log(
                f"File {result.file.name}: {_show(time_range.start_time)} ~ "
                f"{_show(time_range.end_time)}"
            )
            if self.is_file_in_time_range(time_range):
                targets.append(result.file)
                self._log(f"File {result.file.name} is in the time range")
            else:
                self._log(f"File {result.file.name} is outside the time range (skipped)")

        self._log(f"Selected {len(targets)} files: {', '.join(f.name for f in targets)}")
        return targets

    def find_target_files_parallel(self, files: Iterable[BinlogFile]) -> list[BinlogFile]:
        """Use the sequential search for one worker, the pooled search otherwise."""
        if self.config.workers <= 1:
            self._log("One worker configured; searching sequentially")
            return self.find_target_files_efficient(files)
        self._log(f"Searching in parallel with {self.config.workers} workers")
        return self.find_target_files_concurrent(files)

    def get_file_time_range(self, syncer: Any, file: BinlogFile) -> FileTimeRange:
        """Sample the head of a file's event stream to estimate its time range."""
        time_range = FileTimeRange(file.name, file.size)
        try:
            streamer = syncer.start_sync(file.name, START_POSITION)
        except (OSError, RuntimeError) as exc:
            raise ConnectionError(f"starting stream for {file.name} failed: {exc}") from exc

        def finish(first: int, last: int) -> FileTimeRange:
            return replace(time_range, start_time=_stamp(first), end_time=_stamp(last))

        deadline = time.monotonic() + PROBE_TIMEOUT
        first = last = 0

        count = 0
        while count < MAX_HEAD_EVENTS:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return finish(first, 0)
            try:
                header = streamer.get_event(remaining).header
            except Exception:
                return finish(first, last if first else 0)
            if _crosses_boundary(header, file.size):
                self._log(
                    f"File {file.name} boundary reached (LogPos: {header.log_pos}, "
                    f"EventSize: {header.event_size}, FileSize: {file.size})"
                )
                continue
            if header.timestamp > 0:
                first = first or header.timestamp
                last = header.timestamp
            count += 1

        samples = 0
        while samples < MAX_TAIL_SAMPLES:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return finish(first, last)
            try:
                header = streamer.get_event(remaining).header
            except Exception:
                return finish(first, last)
            if _crosses_boundary(header, file.size):
                self._log(
                    f"File {file.name} boundary reached while sampling "
                    f"(LogPos: {header.log_pos}, EventSize: {header.event_size}, "
                    f"FileSize: {file.size})"
                )
                continue
            if header.timestamp > 0:
                last = header.timestamp
                samples += 1

        return finish(first, last)

    def is_file_in_time_range(self, file_range: FileTimeRange) -> bool:
        """Decide whether a file may hold events of the window, widened by six hours."""
        start, end = file_range.start_time, file_range.end_time
        if start is None and end is None:
            self._log(f"File {file_range.file_name}: no time information, included")
            return True

        # A known end with an unknown start spans an unbounded range.
        if start is None or (end is not None and end - start > WIDE_RANGE):
            self._log(f"File {file_range.file_name}: wide time range, included")
            return True

        search_start = _as_utc(self.config.start_time) - SEARCH_BUFFER
        search_end = _as_utc(self.config.end_time) + SEARCH_BUFFER

        if end is not None and end < search_start:
            self._log(
                f"File {file_range.file_name}: ends ({_show(end)}) before "
                f"search start ({_show(search_start)})"
            )
            return False
        if start > search_end:
            self._log(
                f"File {file_range.file_name}: starts ({_show(start)}) after "
                f"search end ({_show(search_end)})"
            )
            return False

        self._log(f"File {file_range.file_name}: overlaps the time range, included")
        return True