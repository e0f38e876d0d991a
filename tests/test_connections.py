import pytest

from conftest import FakeResultSet, driver_error, info

from mssql_ops.config import ConnectionSettings
from mssql_ops.connections import (
    ConnectionDescriptor,
    ConnectionFailed,
    DatabaseError,
    InfoMessage,
    MessageCollector,
    SessionMode,
    SessionModeError,
)


class TestConnectionString:
    def test_integrated(self, settings):
        descriptor = ConnectionDescriptor("sql01\\APP", "Sales")
        conn_str = descriptor.connection_string(settings)
        assert descriptor.credential_mode == "integrated"
        assert conn_str == (
            "DRIVER={ODBC Driver 17 for SQL Server};SERVER=sql01\\APP;DATABASE=Sales;"
            "Trusted_Connection=yes;Encrypt=no;TrustServerCertificate=yes"
        )

    def test_sql_login_escapes_values(self, settings):
        descriptor = ConnectionDescriptor("sql01", None, "app", "p;w}d")
        conn_str = descriptor.connection_string(settings)
        assert descriptor.credential_mode == "sql"
        assert "DATABASE" not in conn_str
        assert "UID=app;PWD={p;w}}d}" in conn_str
        assert "Trusted_Connection" not in conn_str

    def test_factory_descriptor_takes_configured_credentials(self, driver):
        from mssql_ops.connections import ConnectionFactory
        factory = ConnectionFactory(ConnectionSettings(username="ops", password="pw"), driver=driver)
        descriptor = factory.descriptor("sql01", "")
        assert descriptor.database is None
        assert descriptor.username == "ops"
        assert "pw" not in repr(descriptor)


class TestDatabaseError:
    def test_from_driver_strips_prefixes(self):
        error = DatabaseError.from_driver(driver_error("42S02", "Invalid object name 'dbo.Missing'.", 208))
        assert error.sqlstate == "42S02"
        assert error.code == 208
        assert error.text == "Invalid object name 'dbo.Missing'."
        assert not error.is_timeout

    def test_only_first_record(self):
        exc = Exception(
            "08001",
            "[08001] [Microsoft][ODBC Driver 17 for SQL Server]TCP Provider: No such host is known. (11001) "
            "(SQLDriverConnect); [08001] [Microsoft][ODBC Driver 17 for SQL Server]Login timeout expired (0)",
        )
        error = DatabaseError.from_driver(exc)
        assert error.text == "TCP Provider: No such host is known."
        assert error.code == 11001

    def test_timeout(self):
        error = DatabaseError.from_driver(driver_error("HYT00", "Query timeout expired"))
        assert error.is_timeout


class TestInfoMessage:
    def test_informational(self):
        message = InfoMessage.from_driver(info("Processed 10 pages.", code=4035))
        assert message == InfoMessage("01000", 4035, "Processed 10 pages.")
        assert message.severity == 10
        assert not message.is_error

    def test_error_class(self):
        message = InfoMessage.from_driver(info("boom", sqlstate="42000", code=50000))
        assert message.severity == 16
        assert message.is_error

    def test_unparseable_header(self):
        message = InfoMessage.from_driver("plain text")
        assert message.sqlstate == "01000"
        assert message.text == "plain text"


class TestConsoleConnection:
    def test_open_passes_driver_options(self, factory, driver):
        conn = factory.open(factory.descriptor("sql01", "Sales"), timeout=30)
        raw = driver.connections[0]
        assert raw.kwargs == {"autocommit": True, "timeout": 15}
        assert raw.timeout == 30
        assert "DATABASE=Sales" in raw.connection_string
        conn.close()
        assert raw.closed

    def test_connect_failure(self, factory, driver):
        driver.connect_error = driver_error("08001", "Login failed for user 'x'.", 18456)
        with pytest.raises(ConnectionFailed) as excinfo:
            factory.open(factory.descriptor("sql01"))
        assert excinfo.value.code == 18456

    def test_connect_closes_on_exit(self, factory, driver):
        with factory.connect(factory.descriptor("sql01")) as conn:
            pass
        assert conn.closed
        assert driver.connections[0].closed

    def test_execute_returns_first_result_set_with_columns(self, factory, driver):
        driver.on(
            r"^SELECT",
            FakeResultSet(rowcount=3, messages=[info("first")]),
            FakeResultSet(["a", "b"], [(1, 2), (3, 4)]),
            FakeResultSet(["c"], [(5,)], messages=[info("last")]),
        )
        collector = MessageCollector()
        with factory.connect(factory.descriptor("sql01")) as conn:
            with conn.listening(collector):
                result = conn.execute("SELECT 1")
        assert result.columns == ["a", "b"]
        assert result.rows == [(1, 2), (3, 4)]
        assert result.rowcount == 2
        assert collector.texts == ["first", "last"]

    def test_execute_without_result_set(self, factory, driver):
        driver.on(r"^UPDATE", FakeResultSet(rowcount=4))
        with factory.connect(factory.descriptor("sql01")) as conn:
            result = conn.execute("UPDATE t SET x = 1")
        assert not result.has_result_set
        assert result.rowcount == 4

    def test_execute_passes_parameters(self, factory, driver):
        driver.on(r"DB_ID", FakeResultSet(["id"], [(7,)]))
        with factory.connect(factory.descriptor("sql01")) as conn:
            assert conn.scalar("SELECT DB_ID(?)", ("Sales",)) == 7
        assert driver.connections[0].executed == [("SELECT DB_ID(?)", ("Sales",))]

    def test_execute_translates_driver_errors(self, factory, driver):
        driver.fail(r"Nope", driver_error("42S02", "Invalid object name 'Nope'.", 208))
        with factory.connect(factory.descriptor("sql01")) as conn:
            with pytest.raises(DatabaseError) as excinfo:
                conn.execute("SELECT * FROM Nope")
        assert excinfo.value.code == 208

    def test_execute_on_closed_connection(self, factory):
        conn = factory.open(factory.descriptor("sql01"))
        conn.close()
        conn.close()
        with pytest.raises(DatabaseError, match="closed"):
            conn.execute("SELECT 1")

    def test_removed_listener_gets_nothing(self, factory, driver):
        driver.on(r"PRINT", FakeResultSet(messages=[info("hi")]))
        collector = MessageCollector()
        with factory.connect(factory.descriptor("sql01")) as conn:
            conn.add_listener(collector)
            conn.remove_listener(collector)
            conn.execute("PRINT 'hi'")
        assert collector.messages == []


class TestSessionMode:
    def test_mode_switched_on_and_off(self, factory, driver):
        with factory.connect(factory.descriptor("sql01")) as conn:
            with conn.session_mode(SessionMode.PARSE_ONLY):
                assert conn.mode is SessionMode.PARSE_ONLY
                conn.execute("SELECT 1")
            assert conn.mode is SessionMode.DEFAULT
        assert driver.statements == ["SET PARSEONLY ON", "SELECT 1", "SET PARSEONLY OFF"]

    def test_mode_reverted_when_block_raises(self, factory, driver):
        driver.fail(r"^SELECT", driver_error("42000", "Incorrect syntax near 'FROM'.", 102))
        with factory.connect(factory.descriptor("sql01")) as conn:
            with pytest.raises(DatabaseError):
                with conn.session_mode(SessionMode.SHOWPLAN_XML):
                    conn.execute("SELECT FROM")
            assert conn.mode is SessionMode.DEFAULT
            assert not conn.closed
        assert driver.statements[-1] == "SET SHOWPLAN_XML OFF"

    def test_failed_revert_closes_connection(self, factory, driver):
        driver.fail(r"SET PARSEONLY OFF", driver_error("08S01", "Communication link failure"))
        with factory.connect(factory.descriptor("sql01")) as conn:
            with conn.session_mode(SessionMode.PARSE_ONLY):
                pass
            assert conn.closed
            with pytest.raises(DatabaseError):
                conn.execute("SELECT 1")

    def test_modes_do_not_nest(self, factory):
        with factory.connect(factory.descriptor("sql01")) as conn:
            with conn.session_mode(SessionMode.PARSE_ONLY):
                with pytest.raises(SessionModeError):
                    with conn.session_mode(SessionMode.SHOWPLAN_XML):
                        pass
            assert conn.mode is SessionMode.DEFAULT
