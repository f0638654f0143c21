from datetime import datetime, timezone

import pytest

from binlogscope.config import BinlogFile, Config
from binlogscope.extractor import (
    SQLExtractor,
    format_delete_event,
    format_insert_event,
    format_update_event,
    skip_query,
)
from binlogscope.replication import (
    BinlogEvent,
    EventHeader,
    EventType,
    QueryEvent,
    RowsEvent,
    TableMapEvent,
)

START = datetime(2024, 1, 1, 0, 0, 0)
END = datetime(2024, 1, 1, 1, 0, 0)
START_TS = int(START.replace(tzinfo=timezone.utc).timestamp())
END_TS = int(END.replace(tzinfo=timezone.utc).timestamp())


def make_config(verbose=False):
    password = "password"
    return Config(
        host="localhost",
        user="user",
        password=password,
        start_time=START,
        end_time=END,
        verbose=verbose,
    )


def table(schema="db", name="t"):
    return TableMapEvent(1, schema, name, (3, 15), (0, 255))


def rows_event(rows, schema="db"):
    return RowsEvent(1, 0, 2, table(schema), rows)


def header(ts, kind=EventType.QUERY_EVENT, log_pos=100, size=50):
    return EventHeader(ts, int(kind), 7, size, log_pos, 0)


def query(ts, sql, log_pos=100, schema="db"):
    return BinlogEvent(header(ts, log_pos=log_pos), QueryEvent(1, 0, 0, schema, sql))


class FakeStreamer:
    def __init__(self, events):
        self._events = list(events)

    def get_event(self, timeout=None):
        if not self._events:
            raise EOFError("end")
        return self._events.pop(0)


class FakeSyncer:
    def __init__(self, events, fail=False):
        self.events = events
        self.fail = fail
        self.closed = False
        self.started = []

    def start_sync(self, name, position=4):
        self.started.append((name, position))
        if self.fail:
            raise ConnectionError("refused")
        return FakeStreamer(self.events)

    def close(self):
        self.closed = True


def factory_for(events, fail_names=()):
    created = []

    def factory(cfg):
        syncer = FakeSyncer(events)
        created.append(syncer)
        original = syncer.start_sync

        def start_sync(name, position=4):
            if name in fail_names:
                raise ConnectionError("refused")
            return original(name, position)

        syncer.start_sync = start_sync
        return syncer

    return factory, created


@pytest.mark.parametrize(
    "sql",
    ["BEGIN", "  commit ", "", "ROLLBACK", "/*!40101 SET x */", "# at 4", "SET TIMESTAMP=1"],
)
def test_skip_query_skips_housekeeping(sql):
    assert skip_query(sql) is True


@pytest.mark.parametrize("sql", ["INSERT INTO t VALUES (1)", "update t set a=1", "SET NAMES utf8"])
def test_skip_query_keeps_statements(sql):
    assert skip_query(sql) is False


def test_format_insert_single_row():
    assert format_insert_event(rows_event([[1, "a"]])) == "INSERT INTO db.t VALUES (1, 'a')"


def test_format_insert_more_rows_and_no_schema():
    text = format_insert_event(rows_event([[1, "a"], [2, "b"], [3, "c"]], schema=""))
    assert text.startswith("INSERT INTO t VALUES (1, 'a')")
    assert text.endswith(" /* and 2 more rows */")


def test_format_insert_empty():
    assert format_insert_event(rows_event([])) == "INSERT INTO db.t VALUES (...)"


def test_format_update_changes():
    text = format_update_event(rows_event([[1, "a"], [1, "b"]]))
    assert text == "UPDATE db.t SET col_2='b' (was 'a')"


def test_format_update_no_changes_and_more_rows():
    text = format_update_event(rows_event([[1, "a"], [1, "a"], [2, "x"], [2, "y"]]))
    assert text == "UPDATE db.t SET /* no visible changes */ /* and 1 more rows */"


def test_format_update_without_pairs():
    assert format_update_event(rows_event([[1, "a"]])) == "UPDATE db.t SET ..."


def test_format_delete_skips_nulls():
    text = format_delete_event(rows_event([[1, None, "x"]]))
    assert text == "DELETE FROM db.t WHERE col_1=1 AND col_3='x'"


def test_format_delete_truncates_conditions():
    text = format_delete_event(rows_event([[1, 2, 3, 4, 5]]))
    assert text == "DELETE FROM db.t WHERE col_1=1 AND col_2=2 AND col_3=3 /* ... */"


def test_format_delete_all_null():
    text = format_delete_event(rows_event([[None, None], [None, None]]))
    assert text == "DELETE FROM db.t WHERE /* all columns NULL */ /* and 1 more rows */"


def test_convert_query_event():
    factory, _ = factory_for([])
    extractor = SQLExtractor(make_config(), factory)
    event = extractor.convert_to_sql_event(query(START_TS, "DELETE FROM x", log_pos=321), "bin.000001")
    assert event.event_type == "QUERY"
    assert event.sql == "DELETE FROM x"
    assert event.database == "db"
    assert event.position == 321
    assert event.server_id == 7
    assert event.filename == "bin.000001"
    assert event.timestamp == START.replace(tzinfo=timezone.utc)


def test_convert_skips_begin_and_other_events():
    factory, _ = factory_for([])
    extractor = SQLExtractor(make_config(), factory)
    assert extractor.convert_to_sql_event(query(START_TS, "BEGIN"), "f") is None
    other = BinlogEvent(header(START_TS, kind=EventType.XID_EVENT), None)
    assert extractor.convert_to_sql_event(other, "f") is None


@pytest.mark.parametrize(
    "kind, expected",
    [
        (EventType.WRITE_ROWS_EVENT_V2, "INSERT"),
        (EventType.UPDATE_ROWS_EVENT_V1, "UPDATE"),
        (EventType.DELETE_ROWS_EVENT_V2, "DELETE"),
    ],
)
def test_convert_rows_event(kind, expected):
    factory, _ = factory_for([])
    extractor = SQLExtractor(make_config(), factory)
    event = BinlogEvent(header(START_TS, kind=kind), rows_event([[1, "a"], [1, "b"]]))
    result = extractor.convert_to_sql_event(event, "f")
    assert result.event_type == expected
    assert result.sql.startswith(expected)
    assert result.database == "db"


def test_extract_filters_by_time_window():
    events = [
        query(START_TS - 10, "INSERT INTO early VALUES (1)"),
        query(START_TS, "BEGIN"),
        query(START_TS + 5, "INSERT INTO inside VALUES (1)", log_pos=200),
        query(END_TS + 1, "INSERT INTO late VALUES (1)"),
        query(START_TS + 6, "INSERT INTO never VALUES (1)"),
    ]
    factory, created = factory_for(events)
    extractor = SQLExtractor(make_config(), factory)
    result = extractor.extract_from_single_file(BinlogFile("bin.000001", 10_000))
    assert [e.sql for e in result] == ["INSERT INTO inside VALUES (1)"]
    assert created[-1].closed is True
    assert created[-1].started == [("bin.000001", 4)]


def test_extract_stops_at_file_boundary():
    events = [
        query(START_TS + 1, "INSERT INTO a VALUES (1)", log_pos=100),
        query(START_TS + 2, "INSERT INTO b VALUES (1)", log_pos=500),
    ]
    factory, _ = factory_for(events)
    extractor = SQLExtractor(make_config(), factory)
    result = extractor.extract_from_single_file(BinlogFile("bin.000001", 200))
    assert [e.sql for e in result] == ["INSERT INTO a VALUES (1)"]


def test_extract_start_failure_raises():
    factory, _ = factory_for([], fail_names=("bin.000002",))
    extractor = SQLExtractor(make_config(), factory)
    with pytest.raises(ConnectionError):
        extractor.extract_from_single_file(BinlogFile("bin.000002", 100))


def test_extract_sql_events_skips_failed_files():
    events = [query(START_TS + 1, "INSERT INTO a VALUES (1)")]
    factory, _ = factory_for(events, fail_names=("bin.000002",))
    extractor = SQLExtractor(make_config(), factory)
    files = [BinlogFile("bin.000001", 10_000), BinlogFile("bin.000002", 10_000)]
    result = extractor.extract_sql_events(files)
    assert len(result) == 1
    assert result[0].filename == "bin.000001"


def test_close_releases_syncer():
    factory, created = factory_for([])
    extractor = SQLExtractor(make_config(), factory)
    first = created[0]
    extractor.close()
    assert extractor.syncer is None
    assert first.closed is True
    extractor.close()
    assert extractor.syncer is None