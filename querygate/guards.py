"""
Statement Safety Guards for QueryGate

Query text arrives from users, so every statement is checked before any
adapter or connection is touched.

SQL CHECKS (in order):
----------------------
1. Reject empty text
2. Sanitize: blank out comments and quoted literals so their contents can
   never trigger (or hide from) the checks below
3. Exactly one non-empty statement after splitting on ';'
4. First keyword must be a read statement (SELECT, WITH, SHOW, DESCRIBE,
   DESC, EXPLAIN, ANALYZE)
5. No denylisted keyword as a whole token anywhere in the statement

DOCUMENT CHECKS (MongoDB):
--------------------------
1. Reject empty text
2. Exactly one operation
3. Must parse as the find/aggregate shorthand
4. No write or server-side-code operators ($out, $merge, $where, ...)

This is a lexical screen, not a parser. Adapters also open read-only
sessions where the engine supports them.
"""

import logging
import re
from typing import List, Optional

from querygate.adapters.base import SAFE_IDENTIFIER, QueryParseError
from querygate.adapters.mongodb_adapter import (
    DocumentQuery,
    find_forbidden_operator,
    parse_document_query,
)
from querygate.errors import query_rejected

logger = logging.getLogger(__name__)


# =============================================================================
# RULES
# =============================================================================

ALLOWED_FIRST_KEYWORDS = frozenset({"select", "with", "show", "describe", "desc", "explain", "analyze"})

FORBIDDEN_KEYWORDS = (
    "drop", "truncate", "delete", "update", "insert",
    "alter", "create", "grant", "revoke",
)

_FORBIDDEN_PATTERN = re.compile(r"\b(" + "|".join(FORBIDDEN_KEYWORDS) + r")\b", re.IGNORECASE)
_FIRST_WORD = re.compile(r"^([A-Za-z]+)")
_DOLLAR_TAG = re.compile(r"\$([A-Za-z_][A-Za-z0-9_]*)?\$")
_IDENT_CHAR = re.compile(r"[A-Za-z0-9_$]")

_PLACEHOLDER = " ? "


def _preview(text: str, limit: int = 120) -> str:
    flat = " ".join(text.split())
    return flat if len(flat) <= limit else flat[:limit] + "..."


# =============================================================================
# SANITIZER
# =============================================================================

def _end_of_quoted(text: str, start: int, quote: str, backslash_escapes: bool) -> int:
    """Index just past the literal opened at `start` (doubled quotes escape)."""
    i = start + 1
    n = len(text)
    while i < n:
        ch = text[i]
        if backslash_escapes and ch == "\\":
            i += 2
            continue
        if ch == quote:
            if i + 1 < n and text[i + 1] == quote:
                i += 2
                continue
            return i + 1
        i += 1
    return n


def _follows_identifier(text: str, i: int) -> bool:
    return i > 0 and _IDENT_CHAR.match(text[i - 1]) is not None


def _is_escape_string(text: str, i: int) -> bool:
    """True when the quote at `i` opens a PostgreSQL E'...' literal."""
    return i > 0 and text[i - 1] in "Ee" and not _follows_identifier(text, i - 1)


def sanitize_sql(text: str, dialect: str = "postgresql") -> str:
    """
    Blank out comments and quoted literals.

    Handles `--` and `/* */` comments, `#` comments for MySQL, and '...',
    "...", `...` and $tag$...$tag$ literals. Backslashes escape inside MySQL
    strings and PostgreSQL E'...' strings. A `$` inside an identifier
    (a$b) never opens a dollar quote. Unterminated comments and literals run
    to the end of the text.
    """
    mysql = dialect == "mysql"
    out = []
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        nxt = text[i + 1] if i + 1 < n else ""

        if (ch == "-" and nxt == "-") or (ch == "#" and mysql):
            newline = text.find("\n", i)
            i = n if newline == -1 else newline
            out.append(" ")
        elif ch == "/" and nxt == "*":
            end = text.find("*/", i + 2)
            i = n if end == -1 else end + 2
            out.append(" ")
        elif ch in ("'", '"', "`"):
            if mysql:
                escapes = ch != "`"
            else:
                escapes = ch == "'" and _is_escape_string(text, i)
            i = _end_of_quoted(text, i, ch, backslash_escapes=escapes)
            out.append(_PLACEHOLDER)
        elif ch == "$" and not mysql and not _follows_identifier(text, i):
            tag = _DOLLAR_TAG.match(text, i)
            if tag:
                closing = text.find(tag.group(0), tag.end())
                i = n if closing == -1 else closing + len(tag.group(0))
                out.append(_PLACEHOLDER)
            else:
                out.append(ch)
                i += 1
        else:
            out.append(ch)
            i += 1
    return "".join(out)


def split_statements(sanitized: str) -> List[str]:
    """Non-empty statements of already sanitized text."""
    return [part.strip() for part in sanitized.split(";") if part.strip()]


def first_keyword(statement: str) -> Optional[str]:
    match = _FIRST_WORD.match(statement.lstrip("( \t\r\n"))
    return match.group(1).lower() if match else None


# =============================================================================
# VALIDATORS
# =============================================================================

def validate_sql_statement(text: str, dialect: str = "postgresql") -> str:
    """
    Check that text is a single read-only SQL statement.

    Returns:
        The sanitized statement

    Raises:
        QueryValidationError: With details.rule naming the failed check
    """
    if not text or not text.strip():
        raise query_rejected("empty", "Query text is empty")

    statements = split_statements(sanitize_sql(text, dialect))
    if not statements:
        raise query_rejected("empty", "Query text contains no statement")
    if len(statements) > 1:
        logger.warning(f"Rejected multi-statement query ({len(statements)} statements): {_preview(text)}")
        raise query_rejected(
            "multi_statement",
            "Only one statement per request is allowed",
            statements=len(statements),
        )

    statement = statements[0]
    keyword = first_keyword(statement)
    if keyword not in ALLOWED_FIRST_KEYWORDS:
        logger.warning(f"Rejected non-read statement starting with {keyword!r}: {_preview(text)}")
        raise query_rejected(
            "forbidden_statement",
            f"Statement type '{(keyword or '').upper()}' is not allowed",
            keyword=(keyword or "").upper(),
            allowed=sorted(k.upper() for k in ALLOWED_FIRST_KEYWORDS),
        )

    forbidden = _FORBIDDEN_PATTERN.search(statement)
    if forbidden:
        word = forbidden.group(1).upper()
        logger.warning(f"Rejected statement containing {word}: {_preview(text)}")
        raise query_rejected(
            "forbidden_keyword",
            f"Statement contains forbidden keyword '{word}'",
            keyword=word,
        )

    return statement


def validate_document_query(text: str) -> DocumentQuery:
    """
    Check that text is a single read-only MongoDB operation.

    Returns:
        The parsed operation

    Raises:
        QueryValidationError: With details.rule naming the failed check
    """
    if not text or not text.strip():
        raise query_rejected("empty", "Query text is empty")

    # JSON strings can contain ';', so split on the sanitized form
    sanitized = sanitize_sql(text, dialect="mongodb")
    if len(split_statements(sanitized)) > 1:
        logger.warning(f"Rejected multi-operation document query: {_preview(text)}")
        raise query_rejected("multi_statement", "Only one operation per request is allowed")

    try:
        parsed = parse_document_query(text)
    except QueryParseError as e:
        raise query_rejected("document_shorthand", str(e))

    operator = find_forbidden_operator(parsed.filter if parsed.operation == "find" else parsed.pipeline)
    if operator:
        logger.warning(f"Rejected document query using {operator}: {_preview(text)}")
        raise query_rejected(
            "forbidden_operator",
            f"Operator '{operator}' is not allowed",
            operator=operator,
        )
    return parsed


def validate_query(text: str, engine: str) -> None:
    """Run the checks that apply to the engine behind a source."""
    if engine == "mongodb":
        validate_document_query(text)
    else:
        validate_sql_statement(text, dialect=engine)


def validate_identifier(name: Optional[str], kind: str = "identifier") -> str:
    """
    Check a schema/table/collection name passed through to catalog calls.

    Raises:
        QueryValidationError: If the name is not [A-Za-z0-9_]+
    """
    if not name or not SAFE_IDENTIFIER.match(name):
        raise query_rejected(
            "invalid_identifier",
            f"Invalid {kind}: {name!r}",
            kind=kind,
        )
    return name
