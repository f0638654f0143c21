"""Settings and record types shared by the analyzer components."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

DEFAULT_PORT = 3306
DEFAULT_WORKERS = 3


@dataclass(frozen=True)
class Config:
    """Connection and analysis settings."""

    host: str
    user: str
    password: str
    start_time: datetime
    end_time: datetime
    port: int = DEFAULT_PORT
    output_file: str = ""
    verbose: bool = False
    workers: int = DEFAULT_WORKERS


@dataclass(frozen=True)
class BinlogFile:
    """A binary log file as listed by the server."""

    name: str
    size: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None


@dataclass(frozen=True)
class SQLEvent:
    """One SQL statement recovered from a binary log."""

    timestamp: datetime
    event_type: str
    database: str
    sql: str
    server_id: int
    position: int
    filename: str