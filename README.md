# binlogscope

binlogscope connects to a MySQL or Aurora MySQL server over the replication
protocol. It reads the server's binary logs and lists the SQL statements and
row changes that were recorded between two points in time.

It helps you answer questions like "what changed in the database between
14:00 and 14:05?" without downloading and decoding the log files yourself.

## Installation

```
pip install .
```

## Usage

```
binlogscope --host db.example.com --user user --password password \
    --start-time "2024-05-01 14:00:00" --end-time "2024-05-01 14:05:00"
```

Both times are read as UTC and use the form `YYYY-MM-DD HH:MM:SS`. The start
time cannot be later than the end time. The command exits with status 1 when
a time cannot be parsed, when the start is after the end, or when the
analysis fails (for example when the server cannot be reached).

| Option | Short | Default | Meaning |
|---|---|---|---|
| `--host` | `-H` | required | MySQL host address |
| `--port` | `-P` | 3306 | MySQL port |
| `--user` | `-u` | required | MySQL user |
| `--password` | `-p` | required | MySQL password |
| `--start-time` | `-s` | required | Start of the time window |
| `--end-time` | `-e` | required | End of the time window |
| `--output` | `-o` | stdout | File to write the results to |
| `--verbose` | `-v` | off | Print step-by-step details and debug logging in place of the progress bar |
| `--workers` | `-w` | 3 | Number of workers used to probe and read files |

Without `--verbose`, a progress bar is drawn on standard error and the files
are read in parallel by up to `--workers` threads. With `--verbose`, the
files are read one after another and each step is printed. With one worker
or fewer, the file search is sequential as well.

The account needs the privileges to run `SHOW BINARY LOGS` and to request a
binary log dump (`REPLICATION CLIENT` and `REPLICATION SLAVE`). The client
registers with the server as a replica with server id 100 and above, so
these ids should not be in use by real replicas. The server must log in row
or mixed format for row changes to appear.

## What it does

1. It runs `SHOW BINARY LOGS` to list the log files on the server.
2. It samples the start of each file, for at most about a second, to
   estimate the time span that file covers. A file is kept when its span
   falls within the requested window widened by six hours on each side. A
   file is also kept when its span is unknown or longer than a day. Probes
   that fail are retried up to ten times in the parallel search; files that
   still cannot be probed are skipped.
3. It streams each kept file for up to 60 seconds and collects the events
   that fall inside the window:
   - query events, except empty queries, `BEGIN`, `COMMIT`, `ROLLBACK`,
     `SET TIMESTAMP`, `SET AUTOCOMMIT`, and those starting with `#` or `/*!`;
   - insert, update and delete row events, summarised as SQL-like text such
     as `INSERT INTO shop.orders VALUES (1, 'abc')` or
     `UPDATE shop.orders SET col_2='new' (was 'old')`. Only the first row of
     an event is shown, with a `/* and N more rows */` note for the rest.
     Text values longer than 50 bytes are shortened.
4. When the same event shows up in more than one file, only one copy is
   kept. Duplicates are matched on end position and timestamp; among them
   the copy from the highest-numbered file is kept. The final list is
   sorted by time.

The results look like this:

```
# Binary Log Analysis Results
# Time Range: 2024-05-01 14:00:00 ~ 2024-05-01 14:05:00
# Total Events: 1

# at 1234
#240501 14:01:07 server id 1  end_log_pos 1234
# Binary Log File: mysql-bin-changelog.000012
use shop;
INSERT INTO shop.orders VALUES (1, 'abc');
```

## Using it from Python

```python
from datetime import datetime, timezone

from binlogscope.analyzer import BinlogAnalyzer
from binlogscope.config import Config

password = "password"
config = Config(
    host="localhost",
    port=3306,
    user="user",
    password=password,
    start_time=datetime(2024, 5, 1, 14, 0, tzinfo=timezone.utc),
    end_time=datetime(2024, 5, 1, 14, 5, tzinfo=timezone.utc),
    verbose=True,
    workers=3,
)
events = BinlogAnalyzer(config).analyze()
```

`analyze()` prints the report and returns the unique `SQLEvent` records in
time order. It raises `binlogscope.analyzer.AnalysisError` when a step
cannot complete.

The building blocks can be used on their own as well:

- `binlogscope.finder.BinlogTimeFinder` picks the files to read;
- `binlogscope.extractor.SQLExtractor` pulls events out of a file, and
  `format_insert_event`, `format_update_event` and `format_delete_event`
  in the same module render row events;
- `binlogscope.replication` holds the replication client
  (`BinlogSyncer`, `BinlogStreamer`) and the event decoder
  (`parse_header`, `parse_event`);
- `binlogscope.values.format_value` renders column values.

## Limitations

- It only reads binary logs from a running server over the replication
  protocol; it does not read binary log files from disk.
- Row changes show column numbers (`col_1`, `col_2`, ...), not column names.
- Columns of a type the decoder does not know end the reading of that file.

## Running the tests

```
pip install ".[test]"
pytest
```