"""Lightweight T-SQL text inspection.

None of this is a parser. The helpers strip comments and string literals and
then apply simple patterns, so they can miss objects referenced through joins,
subqueries, synonyms or unusual formatting. Callers treat a miss as "nothing
to check", never as a proof that the statement is safe.
"""

import re
from typing import Optional, Set

_SINGLE_QUOTED = re.compile(r"N?'(?:''|[^'])*'", re.IGNORECASE)
_DOUBLE_QUOTED = re.compile(r'"(?:[^"]|"")*"')
_LINE_COMMENT = re.compile(r"--[^\n]*")
_BLOCK_COMMENT = re.compile(r"/\*[\s\S]*?\*/")

_RESTORE = re.compile(r"^\s*RESTORE\b", re.IGNORECASE)

_IDENTIFIER_PART = r'(?:\[(?:[^\]]|\]\])+\]|"(?:[^"]|"")+"|[#@\w]+)'
_FROM_OBJECT = re.compile(
    r"\bFROM\s+(" + _IDENTIFIER_PART + r"(?:\s*\.\s*(?:" + _IDENTIFIER_PART + r")?)*)",
    re.IGNORECASE,
)

_CTE_START = re.compile(r"^\s*;?\s*WITH\b", re.IGNORECASE)
_CTE_NAME = re.compile(
    r"(?:\bWITH|,)\s*(" + _IDENTIFIER_PART + r")\s*(?:\([^()]*\))?\s*AS\s*\(",
    re.IGNORECASE,
)


def _unquote(identifier: str) -> str:
    if identifier[:1] in "[\"" and len(identifier) > 1:
        return identifier[1:-1]
    return identifier


def _cte_names(text: str) -> Set[str]:
    """Names defined by a leading WITH list, lowercased and unquoted."""
    if not _CTE_START.match(text):
        return set()
    return {_unquote(m.group(1)).lower() for m in _CTE_NAME.finditer(text)}


def strip_comments(sql: str) -> str:
    s = _BLOCK_COMMENT.sub(" ", sql)
    return _LINE_COMMENT.sub(" ", s)


def strip_sql_noise(sql: str) -> str:
    s = strip_comments(sql)
    s = _SINGLE_QUOTED.sub(" ", s)
    s = _DOUBLE_QUOTED.sub(" ", s)
    return s


def is_restore_statement(sql: str) -> bool:
    """True when the first keyword of the batch is RESTORE."""
    return bool(_RESTORE.match(strip_comments(sql)))


def extract_referenced_object(sql: str) -> Optional[str]:
    """Return the object named by the first FROM clause, if it looks checkable.

    Temp tables, table variables, CTE names, linked-server names and anything
    called like a function (``FROM OPENJSON(...)``, ``FROM dbo.fn(...)``) are
    skipped.
    """
    # Quoted identifiers are kept: blanking them would shift the match onto
    # the next keyword.
    text = _SINGLE_QUOTED.sub(" ", strip_comments(sql))
    match = _FROM_OBJECT.search(text)
    if not match:
        return None
    name = re.sub(r"\s*\.\s*", ".", match.group(1)).strip()
    if name[0] in "#@":
        return None
    # four-part names point at a linked server, OBJECT_ID cannot resolve them
    if len(re.findall(_IDENTIFIER_PART, name)) > 3:
        return None
    if text[match.end():].lstrip().startswith("("):
        return None
    if "." not in name and _unquote(name).lower() in _cte_names(text):
        return None
    return name


def quote_name(name: str) -> str:
    return "[" + name.replace("]", "]]") + "]"


def quote_literal(value: str) -> str:
    return "N'" + value.replace("'", "''") + "'"
