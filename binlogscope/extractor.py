"""Recovery of SQL statements from binary log events."""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

from .config import BinlogFile, Config, SQLEvent
from .replication import (
    BinlogEvent,
    BinlogSyncer,
    BinlogSyncerConfig,
    EventHeader,
    EventType,
    QueryEvent,
    RowsEvent,
)
from .values import format_value, values_equal

SERVER_ID = 100
START_POSITION = 4
EXTRACT_TIMEOUT = 60.0
MAX_EVENTS = 1_000_000

_SKIP_PREFIXES = (
    "begin",
    "commit",
    "rollback",
    "set timestamp",
    "set autocommit",
    "# at ",
    "#",
    "/*!",
)

_ROW_KINDS = {
    EventType.WRITE_ROWS_EVENT_V1: "INSERT",
    EventType.WRITE_ROWS_EVENT_V2: "INSERT",
    EventType.UPDATE_ROWS_EVENT_V1: "UPDATE",
    EventType.UPDATE_ROWS_EVENT_V2: "UPDATE",
    EventType.DELETE_ROWS_EVENT_V1: "DELETE",
    EventType.DELETE_ROWS_EVENT_V2: "DELETE",
}

_UINT32 = 0xFFFFFFFF


def skip_query(query: str) -> bool:
    """Return True for empty, transaction-control and other housekeeping queries."""
    text = query.lower().strip()
    return not text or text.startswith(_SKIP_PREFIXES)


def _table_parts(rows_event: RowsEvent) -> tuple[str, str]:
    table = rows_event.table
    if table is None:
        return "", ""
    return table.schema, table.table


def _qualified_name(rows_event: RowsEvent) -> str:
    schema, table = _table_parts(rows_event)
    return f"{schema}.{table}" if schema else table


def _more_rows(count: int) -> str:
    return f" /* and {count - 1} more rows */" if count > 1 else ""


def format_insert_event(rows_event: RowsEvent) -> str:
    """Summarise a write-rows event as an INSERT statement."""
    rows = rows_event.rows
    if rows and rows[0]:
        values = ", ".join(format_value(val) for val in rows[0])
        value_text = f"({values})" + _more_rows(len(rows))
    else:
        value_text = "(...)"
    return f"INSERT INTO {_qualified_name(rows_event)} VALUES {value_text}"


def format_update_event(rows_event: RowsEvent) -> str:
    """Summarise an update-rows event, showing the first row's changed columns."""
    rows = rows_event.rows
    row_count = len(rows) // 2
    if row_count > 0 and len(rows) >= 2:
        before, after = rows[0], rows[1]
        changes = [
            f"col_{number}={format_value(new)} (was {format_value(old)})"
            for number, (old, new) in enumerate(zip(before, after), start=1)
            if not values_equal(old, new)
        ]
        info = ", ".join(changes) if changes else "/* no visible changes */"
        info += _more_rows(row_count)
    else:
        info = "..."
    return f"UPDATE {_qualified_name(rows_event)} SET {info}"


def format_delete_event(rows_event: RowsEvent) -> str:
    """Summarise a delete-rows event, using the first row's non-NULL values."""
    rows = rows_event.rows
    if rows and rows[0]:
        conditions = [
            f"col_{number}={format_value(val)}"
            for number, val in enumerate(rows[0], start=1)
            if val is not None
        ]
        if len(conditions) > 3:
            where = " AND ".join(conditions[:3]) + " /* ... */"
        elif conditions:
            where = " AND ".join(conditions)
        else:
            where = "/* all columns NULL */"
        where += _more_rows(len(rows))
    else:
        where = "..."
    return f"DELETE FROM {_qualified_name(rows_event)} WHERE {where}"


_FORMATTERS = {
    "INSERT": format_insert_event,
    "UPDATE": format_update_event,
    "DELETE": format_delete_event,
}


def _epoch(moment: datetime) -> float:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.timestamp()


def _beyond_file(header: EventHeader, size: int) -> bool:
    limit = size & _UINT32
    if header.log_pos <= 0 or header.event_size <= 0:
        return False
    if header.log_pos <= limit:
        return False
    return ((header.log_pos - header.event_size) & _UINT32) > limit


def _quiet_close(syncer: Any) -> None:
    try:
        syncer.close()
    except Exception:
        pass


class SQLExtractor:
    """Streams binary log files and turns their events into SQL summaries."""

    def __init__(
        self,
        config: Config,
        syncer_factory: Callable[[BinlogSyncerConfig], Any] = BinlogSyncer,
    ) -> None:
        self.config = config
        self._syncer_factory = syncer_factory
        self.syncer: Optional[Any] = syncer_factory(self._syncer_config())

    def _syncer_config(self) -> BinlogSyncerConfig:
        cfg = self.config
        return BinlogSyncerConfig(
            server_id=SERVER_ID,
            host=cfg.host,
            user=cfg.user,
            password=cfg.password,
            port=cfg.port,
        )

    def _log(self, message: str) -> None:
        if self.config.verbose:
            print(message)

    def close(self) -> None:
        """Release the extractor's replication client."""
        syncer, self.syncer = self.syncer, None
        if syncer is not None:
            _quiet_close(syncer)

    def __enter__(self) -> "SQLExtractor":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def extract_sql_events(self, files: Iterable[BinlogFile]) -> list[SQLEvent]:
        """Extract events from each file in turn, skipping files that fail."""
        files = list(files)
        collected: list[SQLEvent] = []
        for number, file in enumerate(files, start=1):
            self._log(f"Analysing file: {file.name} ({number}/{len(files)})")
            try:
                events = self.extract_from_single_file(file)
            except ConnectionError as exc:
                self._log(f"Analysis of {file.name} failed: {exc} (continuing)")
                continue
            collected.extend(events)
            self._log(f"Extracted {len(events)} events from {file.name}")
        return collected

    def extract_from_single_file(self, file: BinlogFile) -> list[SQLEvent]:
        """Extract the SQL events of one file that fall in the configured time range."""
        syncer = self._syncer_factory(self._syncer_config())
        try:
            try:
                streamer = syncer.start_sync(file.name, START_POSITION)
            except (OSError, RuntimeError) as exc:
                raise ConnectionError(
                    f"starting stream for {file.name} failed: {exc}"
                ) from exc
            return self._collect(streamer, file)
        finally:
            _quiet_close(syncer)

    def _collect(self, streamer: Any, file: BinlogFile) -> list[SQLEvent]:
        events: list[SQLEvent] = []
        start = _epoch(self.config.start_time)
        end = _epoch(self.config.end_time)
        deadline = time.monotonic() + EXTRACT_TIMEOUT
        processed = 0
        seen = 0

        while processed < MAX_EVENTS:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self._log(f"Processing of {file.name} timed out ({EXTRACT_TIMEOUT:.0f}s)")
                return events
            try:
                event = streamer.get_event(remaining)
            except Exception:
                self._log(
                    f"{file.name}: finished reading events "
                    f"({seen} events read, {len(events)} matched)"
                )
                return events

            seen += 1
            header = event.header
            if _beyond_file(header, file.size):
                self._log(
                    f"{file.name}: reached file boundary, stopping "
                    f"(LogPos: {header.log_pos}, EventSize: {header.event_size}, "
                    f"FileSize: {file.size})"
                )
                return events

            if header.timestamp < start:
                continue
            if header.timestamp > end:
                self._log(
                    f"\n> {file.name}: past end time "
                    f"({seen} events read, {len(events)} matched)"
                )
                return events

            sql_event = self.convert_to_sql_event(event, file.name)
            if sql_event is not None:
                events.append(sql_event)
            processed += 1

        self._log(
            f"{file.name}: reached maximum event count ({MAX_EVENTS}) "
            f"({seen} events read, {len(events)} matched)"
        )
        return events

    def convert_to_sql_event(self, event: BinlogEvent, filename: str) -> Optional[SQLEvent]:
        """Turn a query or rows event into an SQLEvent; other events give None."""
        header = event.header
        timestamp = datetime.fromtimestamp(header.timestamp, timezone.utc)
        body = event.event

        if isinstance(body, QueryEvent):
            if skip_query(body.query):
                return None
            return SQLEvent(
                timestamp=timestamp,
                event_type="QUERY",
                database=body.schema,
                sql=body.query,
                server_id=header.server_id,
                position=header.log_pos,
                filename=filename,
            )

        if isinstance(body, RowsEvent):
            kind = _ROW_KINDS.get(header.event_type)
            if kind is None:
                return None
            schema, _ = _table_parts(body)
            return SQLEvent(
                timestamp=timestamp,
                event_type=kind,
                database=schema,
                sql=_FORMATTERS[kind](body),
                server_id=header.server_id,
                position=header.log_pos,
                filename=filename,
            )

        return None