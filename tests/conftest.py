import os
import re
import sys

import pytest

# Add parent directory to path to import mssql_ops without installing it
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from mssql_ops.config import ConnectionSettings, ConsoleConfig
from mssql_ops.connections import ConnectionFactory


class FakeDriverError(Exception):
    """Mimics pyodbc.Error: args are (sqlstate, formatted message)."""


def driver_error(sqlstate, text, code=0):
    return FakeDriverError(
        sqlstate,
        f"[{sqlstate}] [Microsoft][ODBC Driver 17 for SQL Server][SQL Server]{text} ({code}) (SQLExecDirectW)",
    )


def info(text, sqlstate="01000", code=0):
    """A cursor.messages entry as pyodbc reports it."""
    return (f"[{sqlstate}] ({code})", f"[Microsoft][ODBC Driver 17 for SQL Server][SQL Server]{text}")


class FakeResultSet:
    def __init__(self, columns=None, rows=None, messages=None, rowcount=None):
        self.columns = columns
        self.rows = [tuple(r) for r in (rows or [])]
        self.messages = list(messages or [])
        if rowcount is None:
            rowcount = len(self.rows) if columns else -1
        self.rowcount = rowcount


class FakeCursor:
    def __init__(self, connection):
        self.connection = connection
        self._sets = []
        self._index = 0
        self.closed = False

    @property
    def _current(self):
        if self._index < len(self._sets):
            return self._sets[self._index]
        return None

    def execute(self, sql, *params):
        if len(params) == 1 and isinstance(params[0], (list, tuple)):
            params = tuple(params[0])
        self.connection.executed.append((sql, params))
        outcome = self.connection.driver.resolve(sql, params)
        if isinstance(outcome, BaseException):
            raise outcome
        self._sets = list(outcome) or [FakeResultSet()]
        self._index = 0
        return self

    @property
    def description(self):
        current = self._current
        if current is None or current.columns is None:
            return None
        return [(name, str, None, None, None, None, True) for name in current.columns]

    @property
    def rowcount(self):
        current = self._current
        return current.rowcount if current else -1

    @property
    def messages(self):
        current = self._current
        return current.messages if current else []

    def fetchall(self):
        return list(self._current.rows)

    def fetchone(self):
        rows = self._current.rows
        return rows[0] if rows else None

    def nextset(self):
        self._index += 1
        return self._index < len(self._sets)

    def close(self):
        self.closed = True


class FakeConnection:
    def __init__(self, driver, connection_string, kwargs):
        self.driver = driver
        self.connection_string = connection_string
        self.kwargs = kwargs
        self.timeout = 0
        self.closed = False
        self.executed = []

    def cursor(self):
        return FakeCursor(self)

    def close(self):
        self.closed = True

    @property
    def statements(self):
        return [sql for sql, _ in self.executed]


class FakeDriver:
    """Stands in for the pyodbc module: ``connect`` plus ``Error``.

    Statements are answered by the most recently registered rule whose
    pattern matches; anything unmatched returns a single empty result.
    """

    Error = FakeDriverError

    def __init__(self):
        self.rules = []
        self.connections = []
        self.connect_error = None

    def on(self, pattern, *result_sets):
        self.rules.append((re.compile(pattern, re.IGNORECASE | re.DOTALL), list(result_sets)))
        return self

    def fail(self, pattern, error):
        self.rules.append((re.compile(pattern, re.IGNORECASE | re.DOTALL), error))
        return self

    def respond(self, pattern, responder):
        """Answer matching statements with ``responder(sql, params)``."""
        self.rules.append((re.compile(pattern, re.IGNORECASE | re.DOTALL), responder))
        return self

    def resolve(self, sql, params):
        for pattern, outcome in reversed(self.rules):
            if pattern.search(sql):
                if callable(outcome):
                    return outcome(sql, params)
                return outcome
        return []

    def connect(self, connection_string, **kwargs):
        if self.connect_error is not None:
            raise self.connect_error
        connection = FakeConnection(self, connection_string, kwargs)
        self.connections.append(connection)
        return connection

    @property
    def statements(self):
        return [sql for conn in self.connections for sql, _ in conn.executed]


@pytest.fixture
def driver():
    return FakeDriver()


@pytest.fixture
def settings():
    return ConnectionSettings(driver="ODBC Driver 17 for SQL Server")


@pytest.fixture
def config(settings):
    return ConsoleConfig(
        inventory_server="inv01",
        inventory_database="SQLServerInventory",
        connection=settings,
        query_timeout=30,
        restore_timeout=3600,
    )


@pytest.fixture
def factory(settings, driver):
    return ConnectionFactory(settings, driver=driver)


def label_server(driver, label):
    """Make the inventory lookup return ``label`` (None means not registered)."""
    rows = [] if label is None else [(label,)]
    driver.on(r"vw_InstanceOverview", FakeResultSet(["EnvironmentName"], rows))


def label_servers(driver, labels):
    """Inventory lookup answering per host from the ``labels`` mapping."""
    def lookup(sql, params):
        label = labels.get(params[0])
        return [FakeResultSet(["EnvironmentName"], [] if label is None else [(label,)])]
    driver.respond(r"vw_InstanceOverview", lookup)
