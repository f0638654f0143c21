"""Find the SQL statements recorded in MySQL binary logs within a time window."""

__version__ = "0.1.0"