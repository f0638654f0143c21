"""End-to-end analysis: list binary logs, pick files, extract and report SQL."""

from __future__ import annotations

import logging
import re
import sys
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from typing import Any, Callable, Iterable, Optional, TextIO

import pymysql
from tqdm import tqdm

from .config import BinlogFile, Config, SQLEvent
from .extractor import SQLExtractor
from .finder import BinlogTimeFinder
from .replication import BinlogSyncer, BinlogSyncerConfig

log = logging.getLogger(__name__)

PROGRESS_TOTAL = 200
FILE_PROGRESS_STEPS = 150
UNKNOWN_FILE_NUMBER = 999999
GREEN = "\033[32m"
RESET = "\033[0m"

_TIME_FMT = "%Y-%m-%d %H:%M:%S"
_HEADER_TIME_FMT = "%y%m%d %H:%M:%S"
_INTEGER = re.compile(r"[+-]?[0-9]+")


class AnalysisError(Exception):
    """Raised when a step of the analysis cannot complete."""


def _fmt(moment: datetime) -> str:
    return moment.strftime(_TIME_FMT)


def extract_file_number(filename: str) -> int:
    """Return the sequence number of a binary log name, e.g. ``x.000012`` gives 12."""
    parts = filename.split(".")
    if len(parts) >= 2:
        digits = parts[-1].lstrip("0") or "0"
        if _INTEGER.fullmatch(digits):
            return int(digits)
    return UNKNOWN_FILE_NUMBER


def select_original_event(events: Iterable[SQLEvent]) -> SQLEvent:
    """Pick the event with the lowest position, preferring the newest file on ties."""
    events = list(events)
    if not events:
        raise ValueError("no events to choose from")
    original = min(events, key=lambda event: event.position)
    candidates = [event for event in events if event.position == original.position]
    if len(candidates) > 1:
        best = 0
        for event in candidates:
            number = extract_file_number(event.filename)
            if number > best:
                best, original = number, event
    return original


def _quiet_close(resource: Any) -> None:
    try:
        resource.close()
    except Exception:
        pass


class BinlogAnalyzer:
    """Finds and reports the SQL statements executed within a time window."""

    def __init__(
        self,
        config: Config,
        connection_factory: Callable[..., Any] = pymysql.connect,
        syncer_factory: Callable[[BinlogSyncerConfig], Any] = BinlogSyncer,
    ) -> None:
        self.config = config
        self._connection_factory = connection_factory
        self._syncer_factory = syncer_factory
        self._conn: Optional[Any] = None

    def __enter__(self) -> "BinlogAnalyzer":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self._disconnect()

    def _connect(self) -> None:
        cfg = self.config
        password = cfg.password
        try:
            conn = self._connection_factory(
                host=cfg.host, port=cfg.port, user=cfg.user, password=password
            )
            conn.ping(reconnect=False)
        except (pymysql.MySQLError, OSError) as exc:
            raise AnalysisError(f"MySQL connection failed: {exc}") from exc
        self._conn = conn

    def _disconnect(self) -> None:
        conn, self._conn = self._conn, None
        if conn is not None:
            _quiet_close(conn)

    @staticmethod
    def _advance(bar: Optional[tqdm], steps: int, description: str) -> None:
        if bar is not None and steps > 0:
            bar.set_description(description, refresh=False)
            bar.update(steps)

    def _stage(self, bar: Optional[tqdm], steps: int, message: str) -> None:
        if bar is None:
            print(message)
        else:
            self._advance(bar, steps, message)

    def analyze(self) -> list[SQLEvent]:
        """Run the whole analysis and return the unique events in time order."""
        cfg = self.config
        if cfg.verbose:
            print(f"Analysis started: {_fmt(cfg.start_time)} ~ {_fmt(cfg.end_time)}")
            print(f"Connecting to MySQL server... {cfg.host}:{cfg.port}")
        bar = None
        if not cfg.verbose:
            bar = tqdm(
                total=PROGRESS_TOTAL,
                desc="Progress",
                bar_format="{l_bar}{bar:50}{r_bar}",
                file=sys.stderr,
            )
        try:
            self._advance(bar, 6, "Connecting to MySQL...")
            self._connect()
            try:
                return self._analyze_connected(bar)
            finally:
                self._disconnect()
        finally:
            if bar is not None:
                bar.close()

    def _analyze_connected(self, bar: Optional[tqdm]) -> list[SQLEvent]:
        cfg = self.config
        self._stage(bar, 4, "MySQL connected")
        self._stage(bar, 10, "Searching binary log files...")

        try:
            files = self.get_binlog_files()
        except (pymysql.MySQLError, OSError) as exc:
            raise AnalysisError(f"listing binary log files failed: {exc}") from exc
        if cfg.verbose:
            print(f"Found {len(files)} binary log files.")
            print(f"File search settings - Workers: {cfg.workers}")

        finder = BinlogTimeFinder(cfg, syncer_factory=self._syncer_factory)
        try:
            targets = finder.find_target_files_parallel(files)
        except ValueError as exc:
            raise AnalysisError(f"finding target files failed: {exc}") from exc
        self._stage(bar, 10, "File search complete")

        if not targets:
            print(
                f"\n\nNo binary log files found for the given time range "
                f"({_fmt(cfg.start_time)} ~ {_fmt(cfg.end_time)})"
            )
            return []

        if cfg.verbose:
            print(f"Files to analyse: {len(targets)} (in processing order)")
            for number, file in enumerate(targets, start=1):
                print(f"  {number}. {file.name} (size: {file.size} bytes)")
            all_events = self._extract_sequential(targets)
        else:
            all_events = self._extract_parallel(targets, bar)

        if not all_events:
            print("\n\nNo SQL events matched the given conditions.")
            return []

        if bar is not None:
            current = 30 + FILE_PROGRESS_STEPS // len(targets) * len(targets)
            remaining = PROGRESS_TOTAL - current
            if remaining > 0:
                half = remaining // 2
                self._advance(bar, half, f"Organising results... ({len(all_events)} events in total)")
                self._advance(bar, remaining - half, "Analysis complete")
                print()
        else:
            print(f"Organising results... ({len(all_events)} events in total)")

        unique, duplicates = self.remove_duplicate_events(all_events)
        if cfg.verbose:
            print(
                f"Before deduplication: {len(all_events)} events, "
                f"after deduplication: {len(unique)} events"
            )
            print("Analysis complete")
        elif bar is not None:
            bar.close()

        print()
        ordered = self.output_results(unique)

        print(f"\n>> Found {len(ordered)} unique SQL events.")
        if duplicates > 0:
            print(
                f">> Duplicates removed: {len(all_events)} -> {len(ordered)} "
                f"({duplicates} duplicate events removed)"
            )
        else:
            print(f">> Duplicates removed: {len(all_events)} -> {len(ordered)} (no duplicates)")
        return ordered

    def _extract_sequential(self, targets: list[BinlogFile]) -> list[SQLEvent]:
        collected: list[SQLEvent] = []
        with SQLExtractor(self.config, self._syncer_factory) as extractor:
            for number, file in enumerate(targets, start=1):
                print(f"Processing file: {file.name} ({number}/{len(targets)})")
                try:
                    events = extractor.extract_from_single_file(file)
                except ConnectionError as exc:
                    print(f"Processing of {file.name} failed: {exc} (continuing)")
                    continue
                collected.extend(events)
                print(f"File done: {file.name} ({len(events)} events)")
        return collected

    def _extract_parallel(self, targets: list[BinlogFile], bar: Optional[tqdm]) -> list[SQLEvent]:
        cfg = self.config
        total = len(targets)
        per_file = max(FILE_PROGRESS_STEPS // total, 2)
        worker_count = max(1, min(cfg.workers, total))

        def work(file: BinlogFile) -> list[SQLEvent]:
            with SQLExtractor(cfg, self._syncer_factory) as extractor:
                return extractor.extract_from_single_file(file)

        collected: list[SQLEvent] = []
        with ThreadPoolExecutor(max_workers=worker_count) as pool:
            futures = [pool.submit(work, file) for file in targets]
            for done, future in enumerate(as_completed(futures), start=1):
                try:
                    events = future.result()
                except ConnectionError:
                    self._advance(bar, per_file, f"File failed: {done}/{total}")
                    continue
                collected.extend(events)
                self._advance(
                    bar, per_file, f"File done: {done}/{total} ({len(events)} events)"
                )
        return collected

    def get_binlog_files(self) -> list[BinlogFile]:
        """List the server's binary log files with their sizes."""
        if self._conn is None:
            self._connect()
        with self._conn.cursor() as cursor:
            cursor.execute("SHOW BINARY LOGS")
            column_count = len(cursor.description or ())
            rows = cursor.fetchall()

        files = []
        for row in rows:
            if column_count < 2:
                raise AnalysisError(
                    f"unexpected column count in SHOW BINARY LOGS result: {column_count}"
                )
            name, size = row[0], row[1]
            if isinstance(name, (bytes, bytearray)):
                name = bytes(name).decode("utf-8", errors="replace")
            files.append(BinlogFile(name=str(name), size=int(size)))
        return files

    def output_results(
        self, events: Iterable[SQLEvent], stream: Optional[TextIO] = None
    ) -> list[SQLEvent]:
        """Write the report in time order to ``stream``, the output file or stdout."""
        cfg = self.config
        ordered = sorted(events, key=lambda event: event.timestamp)

        print(GREEN, end="")
        if stream is not None:
            self._write_report(ordered, stream)
        elif cfg.output_file:
            try:
                handle = open(cfg.output_file, "w", encoding="utf-8")
            except OSError as exc:
                print(RESET, end="")
                raise AnalysisError(f"failed to create output file: {exc}") from exc
            with handle:
                self._write_report(ordered, handle)
        else:
            self._write_report(ordered, sys.stdout)
        print(RESET, end="")

        log.info("Analysis complete: %d SQL events", len(ordered))
        if cfg.output_file and stream is None:
            log.info("Results saved to %s", cfg.output_file)
        return ordered

    def _write_report(self, events: list[SQLEvent], out: TextIO) -> None:
        cfg = self.config
        out.write("# Binary Log Analysis Results\n")
        out.write(f"# Time Range: {_fmt(cfg.start_time)} ~ {_fmt(cfg.end_time)}\n")
        out.write(f"# Total Events: {len(events)}\n\n")
        for event in events:
            out.write(f"# at {event.position}\n")
            out.write(
                f"#{event.timestamp.strftime(_HEADER_TIME_FMT)} server id "
                f"{event.server_id}  end_log_pos {event.position}\n"
            )
            out.write(f"# Binary Log File: {event.filename}\n")
            if event.database:
                out.write(f"use {event.database};\n")
            out.write(f"{event.sql};\n\n")

    def remove_duplicate_events(self, events: Iterable[SQLEvent]) -> tuple[list[SQLEvent], int]:
        """Collapse events sharing position and timestamp; return them and the count dropped."""
        groups: dict[tuple, list[SQLEvent]] = {}
        for event in events:
            groups.setdefault((event.position, event.timestamp), []).append(event)

        unique: list[SQLEvent] = []
        duplicates = 0
        for group in groups.values():
            if len(group) == 1:
                unique.append(group[0])
                continue
            original = select_original_event(group)
            unique.append(original)
            duplicates += len(group) - 1
            if self.config.verbose:
                log.debug(
                    "Duplicate events removed: pos=%d, time=%s, original=%s, removed=%d",
                    original.position, original.timestamp, original.filename, len(group) - 1,
                )
        return unique, duplicates