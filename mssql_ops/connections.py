"""Per-request SQL Server connections.

Every console request and every CLI operation opens its own connection through
:class:`ConnectionFactory` and closes it before returning. There is no pool.
"""

import logging
import re
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterator, List, Optional, Sequence

from .config import ConnectionSettings

logger = logging.getLogger(__name__)

CREDENTIAL_INTEGRATED = "integrated"
CREDENTIAL_SQL = "sql"

_DIAG_HEADER = re.compile(r"\[(?P<state>[0-9A-Z]{5})\]\s*\((?P<code>-?\d+)\)")
_DRIVER_PREFIX = re.compile(r"^(?:\s*\[[^\]]*\])+\s*")
_NATIVE_CODE = re.compile(r"\s*\((?P<code>-?\d+)\)(?:\s*\(SQL\w+\))?")
_NEXT_RECORD = re.compile(r";\s*(?=\[)")


def _odbc_value(value: str) -> str:
    if any(ch in value for ch in ";{}") or value != value.strip():
        return "{" + value.replace("}", "}}") + "}"
    return value


def _clean_text(text: str) -> str:
    return _DRIVER_PREFIX.sub("", text).strip()


@dataclass(frozen=True)
class ConnectionDescriptor:
    server: str
    database: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)

    @property
    def credential_mode(self) -> str:
        return CREDENTIAL_SQL if self.username else CREDENTIAL_INTEGRATED

    def connection_string(self, settings: ConnectionSettings) -> str:
        parts = [f"DRIVER={{{settings.driver}}}", f"SERVER={_odbc_value(self.server)}"]
        if self.database:
            parts.append(f"DATABASE={_odbc_value(self.database)}")
        if self.credential_mode == CREDENTIAL_SQL:
            parts.append(f"UID={_odbc_value(self.username)}")
            parts.append(f"PWD={_odbc_value(self.password or '')}")
        else:
            parts.append("Trusted_Connection=yes")
        parts.append(f"Encrypt={'yes' if settings.encrypt else 'no'}")
        parts.append(f"TrustServerCertificate={'yes' if settings.trust_server_certificate else 'no'}")
        return ";".join(parts)


class DatabaseError(Exception):
    """A driver error reduced to its SQLSTATE, native error code and message text."""

    def __init__(self, text: str, sqlstate: Optional[str] = None, code: Optional[int] = None):
        super().__init__(text)
        self.text = text
        self.sqlstate = sqlstate
        self.code = code

    @classmethod
    def from_driver(cls, exc: BaseException) -> "DatabaseError":
        args = getattr(exc, "args", ())
        sqlstate = str(args[0]) if len(args) > 1 else None
        raw = str(args[-1]) if args else str(exc)
        # pyodbc joins diagnostic records with "; ", only the first is reported
        first = _NEXT_RECORD.split(raw, maxsplit=1)[0]
        code = None
        matches = list(_NATIVE_CODE.finditer(first))
        if matches:
            code = int(matches[-1].group("code"))
            first = first[:matches[-1].start()]
        text = _clean_text(first) or raw
        return cls(text, sqlstate=sqlstate, code=code)

    @property
    def is_timeout(self) -> bool:
        return self.sqlstate in {"HYT00", "HYT01"}


class ConnectionFailed(DatabaseError):
    """The target server could not be reached or refused the login."""


class SessionModeError(RuntimeError):
    """Raised when a session mode is entered while another one is active."""


@dataclass(frozen=True)
class InfoMessage:
    """An informational message emitted by the engine (PRINT, low-severity RAISERROR, ...)."""
    sqlstate: str
    code: int
    text: str

    @property
    def severity(self) -> int:
        # The driver does not expose the engine severity, SQLSTATE class 00/01
        # is how informational messages are reported.
        return 10 if self.sqlstate[:2] in {"00", "01"} else 16

    @property
    def is_error(self) -> bool:
        return self.severity > 10

    @classmethod
    def from_driver(cls, message: Any) -> "InfoMessage":
        if isinstance(message, (tuple, list)) and len(message) >= 2:
            header, text = str(message[0]), str(message[1])
        else:
            header, text = "", str(message)
        match = _DIAG_HEADER.search(header)
        if match:
            return cls(match.group("state"), int(match.group("code")), _clean_text(text))
        return cls("01000", 0, _clean_text(text))


MessageListener = Callable[[InfoMessage], None]


class MessageCollector:
    """Listener that keeps every message it receives, in order."""

    def __init__(self):
        self.messages: List[InfoMessage] = []

    def __call__(self, message: InfoMessage) -> None:
        self.messages.append(message)

    @property
    def texts(self) -> List[str]:
        return [m.text for m in self.messages]

    @property
    def errors(self) -> List[InfoMessage]:
        return [m for m in self.messages if m.is_error]


class SessionMode(Enum):
    DEFAULT = None
    PARSE_ONLY = "PARSEONLY"
    SHOWPLAN_XML = "SHOWPLAN_XML"


@dataclass
class StatementResult:
    columns: Optional[List[str]]
    rows: List[Sequence[Any]]
    rowcount: int

    @property
    def has_result_set(self) -> bool:
        return self.columns is not None


class ConsoleConnection:
    """A single driver connection with session-mode tracking and message listeners."""

    def __init__(self, raw: Any, driver_error: type, descriptor: ConnectionDescriptor):
        self._raw = raw
        self._driver_error = driver_error
        self.descriptor = descriptor
        self._listeners: List[MessageListener] = []
        self._mode = SessionMode.DEFAULT
        self._closed = False

    def __enter__(self) -> "ConsoleConnection":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def mode(self) -> SessionMode:
        return self._mode

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def timeout(self) -> int:
        return self._raw.timeout

    @timeout.setter
    def timeout(self, seconds: int) -> None:
        self._raw.timeout = seconds

    def add_listener(self, listener: MessageListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: MessageListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @contextmanager
    def listening(self, listener: MessageListener) -> Iterator[MessageListener]:
        self.add_listener(listener)
        try:
            yield listener
        finally:
            self.remove_listener(listener)

    def _publish(self, cursor: Any) -> None:
        raw_messages = getattr(cursor, "messages", None) or ()
        for raw_message in list(raw_messages):
            message = InfoMessage.from_driver(raw_message)
            for listener in list(self._listeners):
                listener(message)

    def execute(self, sql: str, params: Optional[Sequence[Any]] = None) -> StatementResult:
        """Run a batch, drain every result set and return the first one with columns.

        Messages from every result set are delivered to the registered listeners.

        Raises:
            DatabaseError: on any driver error, including errors raised while
                advancing to a later result set.
        """
        if self._closed:
            raise DatabaseError("Connection is closed.")

        if logger.isEnabledFor(logging.DEBUG):
            query_str = sql if len(sql) <= 1000 else sql[:1000] + "..."
            logger.debug(f"Executing SQL on {self.descriptor.server}: {query_str} | Params: {params}")

        cursor = self._raw.cursor()
        try:
            if params:
                cursor.execute(sql, params)
            else:
                cursor.execute(sql)

            columns: Optional[List[str]] = None
            rows: List[Sequence[Any]] = []
            rowcount = cursor.rowcount
            while True:
                self._publish(cursor)
                if columns is None and cursor.description:
                    columns = [d[0] for d in cursor.description]
                    rows = list(cursor.fetchall())
                    rowcount = len(rows)
                if not cursor.nextset():
                    break
            return StatementResult(columns, rows, rowcount)
        except self._driver_error as exc:
            self._publish(cursor)
            raise DatabaseError.from_driver(exc) from exc
        finally:
            try:
                cursor.close()
            except self._driver_error as exc:
                logger.debug(f"Ignoring error while closing cursor: {exc}")

    def scalar(self, sql: str, params: Optional[Sequence[Any]] = None) -> Any:
        result = self.execute(sql, params)
        if not result.rows:
            return None
        return result.rows[0][0]

    def _set_option(self, mode: SessionMode, enabled: bool) -> None:
        self.execute(f"SET {mode.value} {'ON' if enabled else 'OFF'}")

    @contextmanager
    def session_mode(self, mode: SessionMode) -> Iterator["ConsoleConnection"]:
        """Switch the session into ``mode`` for the duration of the block.

        The option is always switched off again on exit. When that fails the
        connection is closed, so it can never be used again in a non-default mode.
        """
        if mode is SessionMode.DEFAULT:
            raise SessionModeError("DEFAULT is not an enterable session mode")
        if self._mode is not SessionMode.DEFAULT:
            raise SessionModeError(
                f"Cannot enter {mode.name} while the connection is in {self._mode.name} mode"
            )

        self._set_option(mode, True)
        self._mode = mode
        try:
            yield self
        finally:
            try:
                self._set_option(mode, False)
                self._mode = SessionMode.DEFAULT
            except DatabaseError as exc:
                logger.error(f"Failed to switch off {mode.value} on {self.descriptor.server}: {exc.text}; closing connection")
                self.close()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._listeners.clear()
        try:
            self._raw.close()
        except self._driver_error as exc:
            logger.warning(f"Error closing connection to {self.descriptor.server}: {exc}")


class ConnectionFactory:
    """Builds descriptors and opens one :class:`ConsoleConnection` per call.

    ``driver`` is any module exposing ``connect`` and ``Error`` the way pyodbc
    does; pyodbc itself is imported on first use when none is given.
    """

    def __init__(self, settings: ConnectionSettings, driver: Any = None):
        self.settings = settings
        self._driver = driver

    @property
    def driver(self) -> Any:
        if self._driver is None:
            import pyodbc
            self._driver = pyodbc
        return self._driver

    def descriptor(self, server: str, database: Optional[str] = None) -> ConnectionDescriptor:
        return ConnectionDescriptor(
            server=server,
            database=database or None,
            username=self.settings.username,
            password=self.settings.password,
        )

    def open(self, descriptor: ConnectionDescriptor, timeout: Optional[int] = None) -> ConsoleConnection:
        driver = self.driver
        try:
            raw = driver.connect(
                descriptor.connection_string(self.settings),
                autocommit=True,
                timeout=self.settings.login_timeout,
            )
        except driver.Error as exc:
            logger.error(f"Connection to {descriptor.server} failed: {exc}")
            raise ConnectionFailed.from_driver(exc) from exc

        if timeout:
            raw.timeout = timeout
        logger.debug(
            f"Opened connection to {descriptor.server} "
            f"(database={descriptor.database or 'default'}, auth={descriptor.credential_mode})"
        )
        return ConsoleConnection(raw, driver.Error, descriptor)

    @contextmanager
    def connect(self, descriptor: ConnectionDescriptor, timeout: Optional[int] = None) -> Iterator[ConsoleConnection]:
        connection = self.open(descriptor, timeout)
        try:
            yield connection
        finally:
            connection.close()
