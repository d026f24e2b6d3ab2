"""pgwr - PostgreSQL Workload Replay."""

__version__ = "0.1.0"
