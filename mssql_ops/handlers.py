"""Query console request handling.

The dispatcher validates the action, applies the production guard and owns the
connection lifecycle; the handlers below only ever see an open connection and
turn the outcome of one statement into a response dictionary.
"""

import hashlib
import logging
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .config import ConsoleConfig
from .connections import (
    ConnectionFactory,
    ConnectionFailed,
    ConsoleConnection,
    DatabaseError,
    MessageCollector,
    SessionMode,
)
from .environment import PRODUCTION_BLOCKED_MESSAGE, EnvironmentClassifier
from .sql_text import extract_referenced_object, is_restore_statement

logger = logging.getLogger(__name__)

ACTIONS = ("execute", "parse", "plan")
OBJECT_TYPES = ("databases", "tables", "views", "columns")

OBJECT_NOT_FOUND = "Table or view does not exist: {}"
SYNTAX_VALID = "Query syntax is valid."
RESTORE_COMPLETED = "Restore completed successfully."
PLAN_GENERATED = "Execution plan generated successfully."
NO_PLAN_RETURNED = "No execution plan was returned."
PLAN_MISSING_ELEMENTS = "Invalid execution plan: missing required elements"

SHOWPLAN_NAMESPACE = "http://schemas.microsoft.com/sqlserver/2004/07/showplan"
_PLAN_ROOT = f"{{{SHOWPLAN_NAMESPACE}}}ShowPlanXML"
_PLAN_STATEMENT_TAGS = ("StmtSimple", "StmtCond", "StmtCursor")

_INVALID_OBJECT = re.compile(r"Invalid object name '([^']+)'", re.IGNORECASE)

_OBJECT_QUERIES = {
    "databases": """
        SELECT name
        FROM sys.databases
        WHERE state_desc = 'ONLINE'
        ORDER BY name
    """,
    "tables": """
        SELECT TABLE_SCHEMA AS [schema], TABLE_NAME AS name
        FROM INFORMATION_SCHEMA.TABLES
        WHERE TABLE_TYPE = 'BASE TABLE'
        ORDER BY TABLE_SCHEMA, TABLE_NAME
    """,
    "views": """
        SELECT TABLE_SCHEMA AS [schema], TABLE_NAME AS name
        FROM INFORMATION_SCHEMA.VIEWS
        ORDER BY TABLE_SCHEMA, TABLE_NAME
    """,
    "columns": """
        SELECT TABLE_SCHEMA AS [schema], TABLE_NAME AS [table], COLUMN_NAME AS name, DATA_TYPE AS dataType
        FROM INFORMATION_SCHEMA.COLUMNS
        {where}
        ORDER BY TABLE_SCHEMA, TABLE_NAME, ORDINAL_POSITION
    """,
}


class RequestError(ValueError):
    """The request body is missing fields or has fields of the wrong type."""


@dataclass(frozen=True)
class QueryRequest:
    server: str
    query: str
    action: str
    database: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "QueryRequest":
        values = {}
        for key in ("serverName", "query", "action", "database"):
            value = payload.get(key)
            if value is not None and not isinstance(value, str):
                raise RequestError(f"'{key}' must be a string")
            values[key] = value
        return cls(
            server=(values["serverName"] or "").strip(),
            query=values["query"] or "",
            action=(values["action"] or "").strip().lower(),
            database=(values["database"] or "").strip() or None,
        )


def classify_error(error: DatabaseError, timeout: Optional[int] = None) -> str:
    """Map a driver error to the message shown in the console."""
    if error.is_timeout:
        return f"Query timed out after {timeout} seconds." if timeout else "Query timed out."
    match = _INVALID_OBJECT.search(error.text)
    if match:
        return OBJECT_NOT_FOUND.format(match.group(1))
    if error.code:
        return f"SQL error {error.code}: {error.text}"
    return error.text


def column_names(columns: Sequence[Optional[str]]) -> List[str]:
    names: List[str] = []
    seen: Dict[str, int] = {}
    for index, name in enumerate(columns, start=1):
        name = name or f"Column{index}"
        if name in seen:
            seen[name] += 1
            name = f"{name}_{seen[name]}"
        else:
            seen[name] = 1
        names.append(name)
    return names


def rows_to_dicts(columns: Sequence[Optional[str]], rows: Sequence[Sequence[Any]]) -> List[Dict[str, Any]]:
    names = column_names(columns)
    return [dict(zip(names, row)) for row in rows]


def validate_plan(plan_xml: str) -> Optional[str]:
    """Return an error message when ``plan_xml`` is not a usable ShowPlan document."""
    try:
        root = ET.fromstring(plan_xml)
    except ET.ParseError as exc:
        return f"Invalid execution plan XML: {exc}"
    if root.tag != _PLAN_ROOT:
        return PLAN_MISSING_ELEMENTS
    for tag in _PLAN_STATEMENT_TAGS:
        if root.find(f".//{{{SHOWPLAN_NAMESPACE}}}{tag}") is not None:
            return None
    return PLAN_MISSING_ELEMENTS


class ExecutionHandler:
    def __init__(self, config: ConsoleConfig):
        self._config = config

    def handle(self, conn: ConsoleConnection, sql: str) -> Dict[str, Any]:
        if is_restore_statement(sql):
            return self._restore(conn, sql)

        # Best effort only: a miss here just means the engine reports the error instead.
        name = extract_referenced_object(sql)
        if name:
            try:
                exists = conn.scalar("SELECT OBJECT_ID(?)", (name,)) is not None
            except DatabaseError as exc:
                return {"error": classify_error(exc, self._config.query_timeout), "results": []}
            if not exists:
                logger.info(f"Rejected query referencing missing object {name}")
                return {"error": OBJECT_NOT_FOUND.format(name), "results": []}

        collector = MessageCollector()
        try:
            with conn.listening(collector):
                result = conn.execute(sql)
        except DatabaseError as exc:
            response: Dict[str, Any] = {"error": classify_error(exc, self._config.query_timeout), "results": []}
            if collector.messages:
                response["messages"] = collector.texts
            return response

        errors = collector.errors
        if errors:
            return {"error": errors[0].text, "results": [], "messages": collector.texts}

        if not result.has_result_set:
            if result.rowcount >= 0:
                message = f"Query executed successfully. {result.rowcount} rows affected."
            else:
                message = "Query executed successfully."
            return {"results": [], "messages": collector.texts, "message": message}

        rows = rows_to_dicts(result.columns, result.rows)
        if rows:
            message = f"Query executed successfully. Returned {len(rows)} rows."
        else:
            message = "Query executed successfully. No results returned."
        return {"results": rows, "messages": collector.texts, "message": message}

    def _restore(self, conn: ConsoleConnection, sql: str) -> Dict[str, Any]:
        conn.timeout = self._config.restore_timeout
        collector = MessageCollector()
        logger.info(f"Running RESTORE on {conn.descriptor.server} with timeout {self._config.restore_timeout}s")
        try:
            with conn.listening(collector):
                conn.execute(sql)
        except DatabaseError as exc:
            response: Dict[str, Any] = {"error": classify_error(exc, self._config.restore_timeout), "results": []}
            if collector.messages:
                response["messages"] = collector.texts
            return response
        return {"results": [], "messages": collector.texts, "message": RESTORE_COMPLETED}


class ParseHandler:
    def check(self, conn: ConsoleConnection, sql: str) -> Optional[DatabaseError]:
        """Compile ``sql`` with PARSEONLY and return the syntax error, if any."""
        with conn.session_mode(SessionMode.PARSE_ONLY):
            try:
                conn.execute(sql)
            except DatabaseError as exc:
                return exc
        return None

    def handle(self, conn: ConsoleConnection, sql: str) -> Dict[str, Any]:
        error = self.check(conn, sql)
        if error is not None:
            return {"error": error.text}
        return {"message": SYNTAX_VALID}


class PlanHandler:
    def __init__(self, parser: ParseHandler, config: ConsoleConfig):
        self._parser = parser
        self._config = config

    def handle(self, conn: ConsoleConnection, sql: str) -> Dict[str, Any]:
        error = self._parser.check(conn, sql)
        if error is not None:
            return {"error": error.text}

        try:
            with conn.session_mode(SessionMode.SHOWPLAN_XML):
                result = conn.execute(sql)
        except DatabaseError as exc:
            return {"error": classify_error(exc, self._config.query_timeout)}

        if not result.rows or result.rows[0][0] is None:
            return {"error": NO_PLAN_RETURNED}

        plan = result.rows[0][0]
        if isinstance(plan, bytes):
            plan = plan.decode("utf-8")
        plan = str(plan)

        problem = validate_plan(plan)
        if problem:
            logger.warning(f"Rejected execution plan from {conn.descriptor.server}: {problem}")
            return {"error": problem}
        return {"plan": plan, "message": PLAN_GENERATED}


class QueryDispatcher:
    """Routes an execute/parse/plan request to its handler behind the production guard."""

    def __init__(self, config: ConsoleConfig, factory: ConnectionFactory, classifier: EnvironmentClassifier):
        self._config = config
        self._factory = factory
        self._classifier = classifier
        parser = ParseHandler()
        self._handlers = {
            "execute": ExecutionHandler(config),
            "parse": parser,
            "plan": PlanHandler(parser, config),
        }

    def dispatch(self, request: QueryRequest) -> Dict[str, Any]:
        handler = self._handlers.get(request.action)
        if handler is None:
            return {"error": f"Invalid action: {request.action or '(none)'}"}
        if not request.server:
            return {"error": "Server name is required"}
        if not request.query.strip():
            return {"error": "Query is required"}

        sql_fingerprint = hashlib.sha256(request.query.encode("utf-8")).hexdigest()
        logger.info(
            f"{request.action} requested on {request.server}. "
            f"sql_len={len(request.query)} sql_sha256={sql_fingerprint}"
        )

        # The label can change between this check and execution; that race is accepted.
        lookup = self._classifier.classify(request.server)
        if lookup.failed:
            return {"error": f"Environment lookup failed: {lookup.error}"}
        if lookup.is_production:
            logger.warning(f"BLOCKED {request.action} on production instance {request.server}")
            return {"error": PRODUCTION_BLOCKED_MESSAGE}

        descriptor = self._factory.descriptor(request.server, request.database)
        try:
            with self._factory.connect(descriptor, timeout=self._config.query_timeout) as conn:
                return handler.handle(conn, request.query)
        except ConnectionFailed as exc:
            return {"error": f"Unable to connect to server '{request.server}': {exc.text}"}
        except DatabaseError as exc:
            return {"error": classify_error(exc, self._config.query_timeout)}


class DatabaseObjectsHandler:
    """Lists databases, tables, views and columns for editor completion."""

    def __init__(self, config: ConsoleConfig, factory: ConnectionFactory):
        self._config = config
        self._factory = factory

    def list_objects(self, server: str, object_type: str, context: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        if object_type not in OBJECT_TYPES:
            return {"error": f"Invalid object type: {object_type}"}
        if not server:
            return {"error": "Server name is required"}

        context = context or {}
        database = context.get("database") if object_type != "databases" else None
        sql = _OBJECT_QUERIES[object_type]
        params: tuple = ()
        if object_type == "columns":
            table = context.get("table")
            if table:
                schema, _, name = str(table).rpartition(".")
                if schema:
                    sql = sql.format(where="WHERE TABLE_SCHEMA = ? AND TABLE_NAME = ?")
                    params = (schema.strip("[]"), name.strip("[]"))
                else:
                    sql = sql.format(where="WHERE TABLE_NAME = ?")
                    params = (name.strip("[]"),)
            else:
                sql = sql.format(where="")

        descriptor = self._factory.descriptor(server, database)
        try:
            with self._factory.connect(descriptor, timeout=self._config.query_timeout) as conn:
                result = conn.execute(sql, params or None)
        except ConnectionFailed as exc:
            return {"error": f"Unable to connect to server '{server}': {exc.text}"}
        except DatabaseError as exc:
            return {"error": classify_error(exc, self._config.query_timeout)}

        objects = rows_to_dicts(result.columns or [], result.rows)
        logger.debug(f"Listed {len(objects)} {object_type} on {server}")
        return {"objects": objects}
