"""Classify SQL text as projecting (returns rows) or side-effecting."""

from __future__ import annotations

from enum import Enum
import logging
import re

from sqlglot import exp, parse_one
from sqlglot.errors import ParseError, TokenError

LOG = logging.getLogger(__name__)

DIALECT = "postgres"


class StatementKind(str, Enum):
    """Execution path chosen for a statement."""

    PROJECTING = "projecting"
    SIDE_EFFECTING = "side_effecting"


PROJECTING_KEYWORDS = frozenset(
    {"SELECT", "WITH", "SHOW", "DESCRIBE", "DESC", "EXPLAIN", "FETCH", "VALUES", "TABLE"}
)

SIDE_EFFECTING_KEYWORDS = frozenset(
    {
        # DDL
        "CREATE", "ALTER", "DROP", "TRUNCATE", "COMMENT", "RENAME",
        # DML
        "INSERT", "UPDATE", "DELETE", "MERGE", "UPSERT", "IMPORT", "EXPORT", "COPY",
        # access control
        "GRANT", "REVOKE",
        # session and transaction control
        "SET", "RESET", "BEGIN", "START", "COMMIT", "ROLLBACK", "SAVEPOINT", "RELEASE",
        "OPEN", "CLOSE", "DISCARD", "LOCK", "DO",
        # maintenance
        "VACUUM", "ANALYZE", "REINDEX", "CLUSTER", "REFRESH",
    }
)

# Statements where a top-level ``INTO <target>`` creates a new object.
_MATERIALIZING_LEADS = frozenset({"SELECT", "WITH"})

_LEXEMES = re.compile(
    r"""
    (?P<string>'(?:[^']|'')*'|"(?:[^"]|"")*")
    | (?P<line>--[^\n]*)
    | (?P<block>/\*.*?\*/)
    """,
    re.DOTALL | re.VERBOSE,
)
_LEADING_NOISE = re.compile(r"^[\s;(]+")
_FIRST_WORD = re.compile(r"^([A-Za-z]+)")
_INTO = re.compile(r"\bINTO\b", re.IGNORECASE)
_TERMINATORS = re.compile(r"[;\s]+$")
_CEILING = re.compile(r"\bLIMIT\b|\bFETCH\s+(?:FIRST|NEXT)\b", re.IGNORECASE)
_SELECT_SHAPED = (exp.Select, exp.Union, exp.Intersect, exp.Except)


def classify_statement(sql: str) -> StatementKind:
    """Return the execution path for ``sql``.

    Unknown leading keywords default to `StatementKind.PROJECTING`; the
    executor can recover from a missing result set but not from rows routed
    down the no-result path.
    """

    cleaned = _LEADING_NOISE.sub("", strip_comments(sql))
    keyword = leading_keyword(cleaned)
    if keyword is None:
        return StatementKind.PROJECTING
    if keyword in SIDE_EFFECTING_KEYWORDS:
        return StatementKind.SIDE_EFFECTING
    if keyword in _MATERIALIZING_LEADS and _INTO.search(blank_strings(cleaned)):
        return StatementKind.SIDE_EFFECTING
    if keyword in PROJECTING_KEYWORDS:
        return StatementKind.PROJECTING
    LOG.debug("Unknown leading keyword, using the result path", extra={"keyword": keyword})
    return StatementKind.PROJECTING


def strip_comments(sql: str) -> str:
    """Remove ``--`` and ``/* */`` comments, leaving string literals intact."""

    def _replace(match: re.Match[str]) -> str:
        if match.group("string") is not None:
            return match.group("string")
        return "" if match.group("line") is not None else " "

    return _LEXEMES.sub(_replace, sql)


def blank_strings(sql: str) -> str:
    """Replace string literals with empty quotes so keywords inside them are ignored."""

    def _replace(match: re.Match[str]) -> str:
        if match.group("string") is not None:
            return "''"
        return "" if match.group("line") is not None else " "

    return _LEXEMES.sub(_replace, sql)


def leading_keyword(sql: str) -> str | None:
    match = _FIRST_WORD.match(sql.lstrip())
    if not match:
        return None
    return match.group(1).upper()


def normalize_statement(sql: str) -> str:
    """Trim whitespace, trailing statement terminators and trailing comments."""

    statement = sql.strip()
    while True:
        trimmed = _TERMINATORS.sub("", statement)
        cut = _trailing_comment_start(trimmed)
        if cut is not None:
            trimmed = trimmed[:cut].rstrip()
        if trimmed == statement:
            return statement
        statement = trimmed


def has_row_ceiling(sql: str) -> bool:
    """Whether the top-level query already declares LIMIT or FETCH FIRST."""

    tree = _parse(sql)
    if not isinstance(tree, _SELECT_SHAPED):
        return bool(_CEILING.search(blank_strings(sql)))
    return tree.args.get("limit") is not None or tree.args.get("fetch") is not None


def apply_row_ceiling(sql: str, max_rows: int) -> str:
    """Append ``LIMIT max_rows`` to SELECT-shaped queries without a ceiling."""

    if max_rows <= 0 or has_row_ceiling(sql) or not _accepts_limit(sql):
        return sql
    last_line = sql.rsplit("\n", 1)[-1]
    # A trailing line comment would swallow the clause.
    separator = "\n" if strip_comments(last_line) != last_line else " "
    return f"{sql}{separator}LIMIT {max_rows}"


def _accepts_limit(sql: str) -> bool:
    tree = _parse(sql)
    if isinstance(tree, _SELECT_SHAPED):
        return True
    # Parsed DML or DDL (e.g. a CTE feeding an UPDATE) never takes a LIMIT.
    if tree is not None and not isinstance(tree, exp.Command):
        return False
    keyword = leading_keyword(_LEADING_NOISE.sub("", strip_comments(sql)))
    return keyword in {"SELECT", "WITH"}


def _trailing_comment_start(sql: str) -> int | None:
    lexemes = list(_LEXEMES.finditer(sql))
    if not lexemes:
        return None
    last = lexemes[-1]
    if last.group("string") is not None or sql[last.end() :].strip():
        return None
    return last.start()


def _parse(sql: str) -> exp.Expression | None:
    try:
        return parse_one(sql, read=DIALECT)
    except (ParseError, TokenError):
        return None


__all__ = [
    "PROJECTING_KEYWORDS",
    "SIDE_EFFECTING_KEYWORDS",
    "StatementKind",
    "apply_row_ceiling",
    "blank_strings",
    "classify_statement",
    "has_row_ceiling",
    "leading_keyword",
    "normalize_statement",
    "strip_comments",
]
