"""A minimal binary log replication client and event decoder."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import IntEnum
from typing import Any, Optional

import pymysql

HEADER_SIZE = 19
_CHECKSUM_SIZE = 4
_COM_BINLOG_DUMP = 0x12
_COM_REGISTER_SLAVE = 0x15


class EventType(IntEnum):
    UNKNOWN_EVENT = 0
    START_EVENT_V3 = 1
    QUERY_EVENT = 2
    STOP_EVENT = 3
    ROTATE_EVENT = 4
    INTVAR_EVENT = 5
    FORMAT_DESCRIPTION_EVENT = 15
    XID_EVENT = 16
    TABLE_MAP_EVENT = 19
    WRITE_ROWS_EVENT_V1 = 23
    UPDATE_ROWS_EVENT_V1 = 24
    DELETE_ROWS_EVENT_V1 = 25
    HEARTBEAT_EVENT = 27
    WRITE_ROWS_EVENT_V2 = 30
    UPDATE_ROWS_EVENT_V2 = 31
    DELETE_ROWS_EVENT_V2 = 32
    GTID_EVENT = 33
    ANONYMOUS_GTID_EVENT = 34
    PREVIOUS_GTIDS_EVENT = 35


_ROWS_V1 = {
    EventType.WRITE_ROWS_EVENT_V1,
    EventType.UPDATE_ROWS_EVENT_V1,
    EventType.DELETE_ROWS_EVENT_V1,
}
_ROWS_V2 = {
    EventType.WRITE_ROWS_EVENT_V2,
    EventType.UPDATE_ROWS_EVENT_V2,
    EventType.DELETE_ROWS_EVENT_V2,
}
_UPDATES = {EventType.UPDATE_ROWS_EVENT_V1, EventType.UPDATE_ROWS_EVENT_V2}

# Column types
_DECIMAL, _TINY, _SHORT, _LONG, _FLOAT, _DOUBLE, _NULL = 0, 1, 2, 3, 4, 5, 6
_TIMESTAMP, _LONGLONG, _INT24, _DATE, _TIME, _DATETIME = 7, 8, 9, 10, 11, 12
_YEAR, _NEWDATE, _VARCHAR, _BIT = 13, 14, 15, 16
_TIMESTAMP2, _DATETIME2, _TIME2 = 17, 18, 19
_JSON, _NEWDECIMAL, _ENUM, _SET = 245, 246, 247, 248
_TINY_BLOB, _MEDIUM_BLOB, _LONG_BLOB, _BLOB = 249, 250, 251, 252
_VAR_STRING, _STRING, _GEOMETRY = 253, 254, 255

_ONE_BYTE_META = {_FLOAT, _DOUBLE, _BLOB, _GEOMETRY, _JSON, _TIMESTAMP2, _DATETIME2, _TIME2,
                  _TINY_BLOB, _MEDIUM_BLOB, _LONG_BLOB}
_TWO_BYTE_RAW_META = {_NEWDECIMAL, _BIT, _STRING, _ENUM, _SET}
_INT_SIZES = {_TINY: 1, _SHORT: 2, _INT24: 3, _LONG: 4, _LONGLONG: 8}
_DIG_BYTES = (0, 1, 1, 2, 2, 3, 3, 4, 4, 4)


class _Reader:
    def __init__(self, data: bytes) -> None:
        self._data = bytes(data)
        self.pos = 0

    def remaining(self) -> int:
        return len(self._data) - self.pos

    def read(self, n: int) -> bytes:
        if n < 0 or self.pos + n > len(self._data):
            raise ValueError("truncated event data")
        chunk = self._data[self.pos:self.pos + n]
        self.pos += n
        return chunk

    def rest(self) -> bytes:
        return self.read(self.remaining())

    def uint(self, n: int) -> int:
        return int.from_bytes(self.read(n), "little")

    def sint(self, n: int) -> int:
        return int.from_bytes(self.read(n), "little", signed=True)

    def uint_be(self, n: int) -> int:
        return int.from_bytes(self.read(n), "big")

    def lenenc(self) -> int:
        first = self.uint(1)
        if first < 0xFB:
            return first
        if first == 0xFC:
            return self.uint(2)
        if first == 0xFD:
            return self.uint(3)
        if first == 0xFE:
            return self.uint(8)
        raise ValueError("invalid length-encoded integer")


def _text(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace")


@dataclass(frozen=True)
class EventHeader:
    timestamp: int
    event_type: int
    server_id: int
    event_size: int
    log_pos: int
    flags: int


@dataclass(frozen=True)
class QueryEvent:
    slave_proxy_id: int
    execution_time: int
    error_code: int
    schema: str
    query: str


@dataclass(frozen=True)
class TableMapEvent:
    table_id: int
    schema: str
    table: str
    column_types: tuple
    column_meta: tuple
    null_bitmap: bytes = b""


@dataclass
class RowsEvent:
    """Row changes; for updates, rows alternate before and after images."""

    table_id: int
    flags: int
    column_count: int
    table: Optional[TableMapEvent]
    rows: list = field(default_factory=list)


@dataclass(frozen=True)
class BinlogEvent:
    header: EventHeader
    event: Any
    raw: bytes = b""


def parse_header(data: bytes) -> EventHeader:
    """Decode the 19-byte common event header."""
    if len(data) < HEADER_SIZE:
        raise ValueError(f"event header needs {HEADER_SIZE} bytes, got {len(data)}")
    return EventHeader(*struct.unpack_from("<IBIIIH", data))


def _parse_query(r: _Reader) -> QueryEvent:
    proxy_id = r.uint(4)
    exec_time = r.uint(4)
    schema_len = r.uint(1)
    error_code = r.uint(2)
    status_len = r.uint(2)
    r.read(status_len)
    schema = _text(r.read(schema_len))
    r.read(1)
    return QueryEvent(proxy_id, exec_time, error_code, schema, _text(r.rest()))


def _parse_meta(types: bytes, meta: _Reader) -> tuple:
    result = []
    for col_type in types:
        if col_type in _ONE_BYTE_META:
            result.append(meta.uint(1))
        elif col_type in (_VARCHAR, _VAR_STRING):
            result.append(meta.uint(2))
        elif col_type in _TWO_BYTE_RAW_META:
            raw = meta.read(2)
            result.append((raw[0], raw[1]))
        else:
            result.append(0)
    return tuple(result)


def _parse_table_map(r: _Reader) -> TableMapEvent:
    table_id = r.uint(6)
    r.read(2)
    schema = _text(r.read(r.uint(1)))
    r.read(1)
    table = _text(r.read(r.uint(1)))
    r.read(1)
    count = r.lenenc()
    types = r.read(count)
    meta = _parse_meta(types, _Reader(r.read(r.lenenc())))
    bitmap_len = (count + 7) // 8
    nulls = r.read(bitmap_len) if r.remaining() >= bitmap_len else b""
    return TableMapEvent(table_id, schema, table, tuple(types), meta, nulls)


def _decode_decimal(r: _Reader, precision: int, scale: int) -> Decimal:
    integral = precision - scale
    uncomp_int, comp_int = divmod(integral, 9)
    uncomp_frac, comp_frac = divmod(scale, 9)
    size = uncomp_int * 4 + _DIG_BYTES[comp_int] + uncomp_frac * 4 + _DIG_BYTES[comp_frac]
    raw = bytearray(r.read(size))
    positive = bool(raw[0] & 0x80)
    raw[0] ^= 0x80
    if not positive:
        raw = bytearray(b ^ 0xFF for b in raw)
    chunk = _Reader(bytes(raw))
    int_part = ""
    if comp_int:
        int_part += str(chunk.uint_be(_DIG_BYTES[comp_int]))
    for _ in range(uncomp_int):
        int_part += "%09d" % chunk.uint_be(4)
    frac_part = ""
    for _ in range(uncomp_frac):
        frac_part += "%09d" % chunk.uint_be(4)
    if comp_frac:
        frac_part += str(chunk.uint_be(_DIG_BYTES[comp_frac])).zfill(comp_frac)
    text = (int_part.lstrip("0") or "0") + (f".{frac_part}" if frac_part else "")
    return Decimal(("" if positive else "-") + text)


def _read_fraction(r: _Reader, fsp: int) -> int:
    size = (fsp + 1) // 2
    if not size:
        return 0
    value = r.uint_be(size)
    return value * {1: 10000, 2: 100, 3: 1}[size]


def _make_datetime(y, mo, d, h, mi, s, us=0):
    try:
        return datetime(y, mo, d, h, mi, s, us)
    except ValueError:
        return "%04d-%02d-%02d %02d:%02d:%02d" % (y, mo, d, h, mi, s)


def _read_string_column(r: _Reader, meta: tuple) -> Any:
    b0, b1 = meta
    if b0 & 0x30 != 0x30:
        length = b1 | (((b0 & 0x30) ^ 0x30) << 4)
        real_type = b0 | 0x30
    else:
        length, real_type = b1, b0
    if real_type in (_ENUM, _SET):
        return r.uint(length)
    return _text(r.read(r.uint(1 if length < 256 else 2)))


def _read_value(r: _Reader, col_type: int, meta: Any) -> Any:
    if col_type in _INT_SIZES:
        return r.sint(_INT_SIZES[col_type])
    if col_type == _FLOAT:
        return struct.unpack("<f", r.read(4))[0]
    if col_type == _DOUBLE:
        return struct.unpack("<d", r.read(8))[0]
    if col_type == _NULL:
        return None
    if col_type == _YEAR:
        year = r.uint(1)
        return year + 1900 if year else 0
    if col_type == _NEWDECIMAL:
        return _decode_decimal(r, meta[0], meta[1])
    if col_type in (_VARCHAR, _VAR_STRING):
        return _text(r.read(r.uint(1 if meta < 256 else 2)))
    if col_type in (_STRING, _ENUM, _SET):
        return _read_string_column(r, meta)
    if col_type in (_BLOB, _GEOMETRY, _JSON, _TINY_BLOB, _MEDIUM_BLOB, _LONG_BLOB):
        return r.read(r.uint(meta or 4))
    if col_type == _BIT:
        bits, nbytes = meta
        return r.uint_be((nbytes * 8 + bits + 7) // 8)
    if col_type == _TIMESTAMP:
        return r.uint(4)
    if col_type == _TIMESTAMP2:
        secs = r.uint_be(4)
        micros = _read_fraction(r, meta)
        if secs == 0:
            return "0000-00-00 00:00:00"
        moment = datetime.fromtimestamp(secs, timezone.utc).replace(tzinfo=None)
        return moment.replace(microsecond=micros)
    if col_type == _DATETIME:
        value = r.uint(8)
        d, t = divmod(value, 1000000)
        return _make_datetime(d // 10000, d // 100 % 100, d % 100,
                              t // 10000, t // 100 % 100, t % 100)
    if col_type == _DATETIME2:
        value = r.uint_be(5) - 0x8000000000
        micros = _read_fraction(r, meta)
        ymd, hms = value >> 17, value & ((1 << 17) - 1)
        year, month = divmod(ymd >> 5, 13)
        return _make_datetime(year, month, ymd & 31,
                              hms >> 12, (hms >> 6) & 63, hms & 63, micros)
    if col_type in (_DATE, _NEWDATE):
        value = r.uint(3)
        return "%04d-%02d-%02d" % (value >> 9, (value >> 5) & 15, value & 31)
    if col_type == _TIME:
        value = r.sint(3)
        sign = "-" if value < 0 else ""
        value = abs(value)
        return "%s%02d:%02d:%02d" % (sign, value // 10000, value // 100 % 100, value % 100)
    if col_type == _TIME2:
        value = r.uint_be(3) - 0x800000
        _read_fraction(r, meta)
        sign = "-" if value < 0 else ""
        value = abs(value)
        return "%s%02d:%02d:%02d" % (sign, (value >> 12) & 0x3FF, (value >> 6) & 63, value & 63)
    raise ValueError(f"unsupported column type {col_type}")


def _present_columns(bitmap: bytes, count: int) -> list:
    return [i for i in range(count) if bitmap[i // 8] & (1 << (i % 8))]


def _read_row(r: _Reader, table: TableMapEvent, count: int, present: list) -> list:
    nulls = r.read((len(present) + 7) // 8)
    row: list = [None] * count
    for bit, column in enumerate(present):
        if nulls[bit // 8] & (1 << (bit % 8)):
            continue
        row[column] = _read_value(r, table.column_types[column], table.column_meta[column])
    return row


def _parse_rows(r: _Reader, event_type: int, tables: dict) -> RowsEvent:
    table_id = r.uint(6)
    flags = r.uint(2)
    if event_type in _ROWS_V2:
        extra = r.uint(2)
        r.read(max(extra - 2, 0))
    count = r.lenenc()
    bitmap_len = (count + 7) // 8
    first = _present_columns(r.read(bitmap_len), count)
    is_update = event_type in _UPDATES
    second = _present_columns(r.read(bitmap_len), count) if is_update else first
    table = tables.get(table_id)
    if table is None:
        raise ValueError(f"no table map for table id {table_id}")
    rows = []
    while r.remaining() > 0:
        rows.append(_read_row(r, table, count, first))
        if is_update:
            rows.append(_read_row(r, table, count, second))
    return RowsEvent(table_id, flags, count, table, rows)


def parse_event(data: bytes, tables: dict) -> BinlogEvent:
    """Decode one event (without checksum); table maps are recorded in ``tables``."""
    header = parse_header(data)
    body = _Reader(data[HEADER_SIZE:])
    event: Any = None
    kind = header.event_type
    if kind == EventType.QUERY_EVENT:
        event = _parse_query(body)
    elif kind == EventType.TABLE_MAP_EVENT:
        event = _parse_table_map(body)
        tables[event.table_id] = event
    elif kind in _ROWS_V1 or kind in _ROWS_V2:
        event = _parse_rows(body, kind, tables)
    return BinlogEvent(header, event, bytes(data))


@dataclass(frozen=True)
class BinlogSyncerConfig:
    server_id: int
    host: str
    user: str
    password: str
    port: int = 3306
    flavor: str = "mysql"
    connect_timeout: float = 10.0


class BinlogStreamer:
    """Reads events from an open replication connection."""

    def __init__(self, connection: Any, checksum: bool) -> None:
        self._connection = connection
        self._checksum = checksum
        self._tables: dict = {}

    def get_event(self, timeout: Optional[float] = None) -> BinlogEvent:
        """Return the next event; raise EOFError at the end of the stream."""
        sock = getattr(self._connection, "_sock", None)
        if sock is None:
            raise ConnectionError("replication stream is closed")
        self._connection._read_timeout = timeout
        sock.settimeout(timeout)
        try:
            packet = self._connection._read_packet()
        except pymysql.MySQLError as exc:
            raise ConnectionError(f"reading binary log failed: {exc}") from exc
        if packet.is_eof_packet():
            raise EOFError("end of binary log stream")
        body = packet.get_all_data()[1:]
        if self._checksum:
            body = body[:-_CHECKSUM_SIZE]
        return parse_event(body, self._tables)


class BinlogSyncer:
    """Opens a replication connection and requests a binary log dump."""

    def __init__(self, config: BinlogSyncerConfig) -> None:
        self.config = config
        self._connection: Any = None

    def start_sync(self, name: str, position: int = 4) -> BinlogStreamer:
        if self._connection is not None:
            raise RuntimeError("sync already started")
        cfg = self.config
        password = cfg.password
        try:
            self._connection = pymysql.connect(
                host=cfg.host, port=cfg.port, user=cfg.user, password=password,
                connect_timeout=cfg.connect_timeout, autocommit=True,
            )
        except pymysql.MySQLError as exc:
            raise ConnectionError(f"connecting to {cfg.host}:{cfg.port} failed: {exc}") from exc
        try:
            checksum = self._prepare_checksum()
            self._register()
            payload = struct.pack("<IHI", position, 0, cfg.server_id) + name.encode()
            self._connection._execute_command(_COM_BINLOG_DUMP, payload)
        except pymysql.MySQLError as exc:
            self.close()
            raise ConnectionError(f"starting binary log dump failed: {exc}") from exc
        return BinlogStreamer(self._connection, checksum)

    def _prepare_checksum(self) -> bool:
        with self._connection.cursor() as cursor:
            cursor.execute("SHOW GLOBAL VARIABLES LIKE 'BINLOG_CHECKSUM'")
            row = cursor.fetchone()
            enabled = bool(row) and str(row[1]).upper() not in ("", "NONE")
            if enabled:
                cursor.execute("SET @master_binlog_checksum = @@global.binlog_checksum")
        return enabled

    def _register(self) -> None:
        payload = struct.pack("<IBBBHII", self.config.server_id, 0, 0, 0, self.config.port, 0, 0)
        self._connection._execute_command(_COM_REGISTER_SLAVE, payload)
        self._connection._read_packet()

    def close(self) -> None:
        connection, self._connection = self._connection, None
        if connection is None:
            return
        try:
            connection.close()
        except Exception:
            pass