"""SQL Server operations toolkit: query console server and backup/restore CLI."""

__version__ = "1.0.0"
