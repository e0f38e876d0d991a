import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

DEFAULT_DRIVER = "ODBC Driver 17 for SQL Server"
DEFAULT_INVENTORY_DATABASE = "SQLServerInventory"
DEFAULT_WEB_ROOT = Path(__file__).parent / "static"

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _env_int(environ: Mapping[str, str], name: str, default: int) -> int:
    value = environ.get(name)
    if value is None or value == "":
        return default
    return int(value)


def _env_bool(environ: Mapping[str, str], name: str, default: bool) -> bool:
    value = environ.get(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


@dataclass(frozen=True)
class ConnectionSettings:
    """Driver-level options shared by every connection the toolkit opens."""
    driver: str = DEFAULT_DRIVER
    encrypt: bool = False
    trust_server_certificate: bool = True
    login_timeout: int = 15
    username: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)

    @property
    def integrated(self) -> bool:
        return not self.username


@dataclass(frozen=True)
class ConsoleConfig:
    """Query console settings, loaded once at startup and never mutated."""
    inventory_server: str
    inventory_database: str = DEFAULT_INVENTORY_DATABASE
    connection: ConnectionSettings = field(default_factory=ConnectionSettings)
    query_timeout: int = 30
    restore_timeout: int = 3600
    host: str = "127.0.0.1"
    port: int = 3000
    web_root: Path = DEFAULT_WEB_ROOT
    log_level: str = "INFO"
    log_file: Optional[str] = None


def load_connection_settings(environ: Optional[Mapping[str, str]] = None) -> ConnectionSettings:
    environ = os.environ if environ is None else environ
    return ConnectionSettings(
        driver=environ.get("SQL_DRIVER") or DEFAULT_DRIVER,
        encrypt=_env_bool(environ, "SQL_ENCRYPT", False),
        trust_server_certificate=_env_bool(environ, "SQL_TRUST_CERT", True),
        login_timeout=_env_int(environ, "SQL_LOGIN_TIMEOUT", 15),
        username=environ.get("SQL_USER") or None,
        password=environ.get("SQL_PASSWORD") or None,
    )


def load_config(environ: Optional[Mapping[str, str]] = None) -> ConsoleConfig:
    """Build the console configuration from environment variables.

    Raises:
        RuntimeError: if INVENTORY_SERVER is missing or a timeout is not positive.
    """
    environ = os.environ if environ is None else environ

    inventory_server = environ.get("INVENTORY_SERVER")
    if not inventory_server:
        raise RuntimeError("Missing INVENTORY_SERVER environment variable")

    query_timeout = _env_int(environ, "CONSOLE_QUERY_TIMEOUT", 30)
    restore_timeout = _env_int(environ, "CONSOLE_RESTORE_TIMEOUT", 3600)
    if query_timeout <= 0 or restore_timeout <= 0:
        raise RuntimeError("CONSOLE_QUERY_TIMEOUT and CONSOLE_RESTORE_TIMEOUT must be positive")

    web_root = environ.get("CONSOLE_WEB_ROOT")

    return ConsoleConfig(
        inventory_server=inventory_server,
        inventory_database=environ.get("INVENTORY_DATABASE") or DEFAULT_INVENTORY_DATABASE,
        connection=load_connection_settings(environ),
        query_timeout=query_timeout,
        restore_timeout=restore_timeout,
        host=environ.get("CONSOLE_HOST") or "127.0.0.1",
        port=_env_int(environ, "CONSOLE_PORT", 3000),
        web_root=Path(web_root) if web_root else DEFAULT_WEB_ROOT,
        log_level=(environ.get("CONSOLE_LOG_LEVEL") or "INFO").upper(),
        log_file=environ.get("CONSOLE_LOG_FILE") or None,
    )


def configure_logging(level: str = "INFO", log_file: Optional[str] = None, stream=None) -> None:
    """Configure root logging for an entry point.

    Logs go to ``log_file`` when given, otherwise to ``stream`` (stderr by default).
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    if log_file:
        logging.basicConfig(level=log_level, format=LOG_FORMAT, filename=log_file, filemode="a", force=True)
    else:
        logging.basicConfig(level=log_level, format=LOG_FORMAT, stream=stream or sys.stderr, force=True)
