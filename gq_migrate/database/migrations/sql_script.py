"""
Splitting of SQL migration scripts into individual statements.

The pysqlite driver executes one statement per call, so a script such as
``1_auth.sql`` has to be cut on top-level semicolons. Comments are
dropped, quoted text is preserved as-is, and ``CREATE TRIGGER`` bodies are
kept whole until their closing ``END;``.
"""

import re
from dataclasses import dataclass, field
from typing import List

_TRIGGER_RE = re.compile(r"^\s*CREATE\s+(TEMP\s+|TEMPORARY\s+)?TRIGGER\b", re.IGNORECASE)
_ENDS_WITH_END_RE = re.compile(r"\bEND\s*$", re.IGNORECASE)
_FK_PRAGMA_RE = re.compile(r"^PRAGMA\s+foreign_keys\s*=\s*(\w+)$", re.IGNORECASE)
_FK_CHECK_RE = re.compile(r"^PRAGMA\s+foreign_key_check(\s*\(.*\))?$", re.IGNORECASE)

_QUOTES = {"'": "'", '"': '"', "`": "`", "[": "]"}


def split_statements(script: str) -> List[str]:
    """Split ``script`` into statements, without comments or trailing semicolons."""
    statements: List[str] = []
    current: List[str] = []
    i = 0
    length = len(script)

    def flush():
        statement = "".join(current).strip()
        if statement:
            statements.append(statement)
        current.clear()

    while i < length:
        char = script[i]

        if char == "-" and script.startswith("--", i):
            end = script.find("\n", i)
            i = length if end == -1 else end
            continue

        if char == "/" and script.startswith("/*", i):
            end = script.find("*/", i + 2)
            i = length if end == -1 else end + 2
            current.append(" ")
            continue

        if char in _QUOTES:
            closing = _QUOTES[char]
            j = i + 1
            while j < length:
                if script[j] == closing:
                    # doubled quote is an escaped quote
                    if closing != "]" and j + 1 < length and script[j + 1] == closing:
                        j += 2
                        continue
                    break
                j += 1
            current.append(script[i : j + 1])
            i = j + 1
            continue

        if char == ";":
            text_so_far = "".join(current)
            if _TRIGGER_RE.match(text_so_far) and not _ENDS_WITH_END_RE.search(text_so_far.rstrip()):
                current.append(char)
            else:
                flush()
            i += 1
            continue

        current.append(char)
        i += 1

    flush()
    return statements


@dataclass
class ParsedScript:
    """Statements of a SQL unit with the foreign-key pragmas hoisted out."""

    statements: List[str] = field(default_factory=list)
    disable_foreign_keys: bool = False


def parse_script(script: str) -> ParsedScript:
    """Split a script and lift ``PRAGMA foreign_keys``/``foreign_key_check`` out of the body.

    SQLite ignores ``PRAGMA foreign_keys`` inside a transaction, so the runner
    toggles enforcement around the unit's transaction instead, and it runs
    ``foreign_key_check`` before every commit.
    """
    parsed = ParsedScript()
    for statement in split_statements(script):
        flat = " ".join(statement.split())
        pragma = _FK_PRAGMA_RE.match(flat)
        if pragma:
            if pragma.group(1).upper() in ("OFF", "0", "FALSE", "NO"):
                parsed.disable_foreign_keys = True
            continue
        if _FK_CHECK_RE.match(flat):
            continue
        parsed.statements.append(statement)
    return parsed
