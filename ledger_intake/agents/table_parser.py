"""
Parser for the LLM's table output (TOON).

The model is asked for a fenced ```toon block in one of two shapes:

Single action - key: value lines, optionally with the parameters nested
under a `params:` header:

    action: spend
    params:
      account: Bank
      amount: 120k
      counterparty: McDo

Bulk rows - a header naming the row count and columns, then one
comma-separated line per row:

    rows[2]{idx,counterparty,tag,note,confidence}:
      0,PVOIL Ha Noi,Transport,Fuel,0.9
      1,"Nguyen Van A",,Rent for May,

DESIGN DECISION: The parser is strict. Anything that does not match the
shape raises TableParseError; the agent turns that into a failed
extraction instead of guessing at what the model meant.
"""

import csv
import re
from typing import Optional


class TableParseError(ValueError):
    """The model output is not a well-formed table."""
    pass


FENCE_PATTERN = re.compile(r"```(?:toon|json)?[ \t]*\n(.*?)```", re.DOTALL)
ROWS_HEADER_PATTERN = re.compile(r"^(\w+)\[(\d+)\]\{([^}]*)\}:?$")

# Header lines that only group the keys below them
SECTION_KEYS = frozenset({"params"})


def extract_block(text: str) -> str:
    """The first fenced block, or the whole text when there is none."""
    match = FENCE_PATTERN.search(text)
    return (match.group(1) if match else text).strip()


def _normalize_key(key: str) -> str:
    return re.sub(r"[\s\-]+", "_", key.strip().lower())


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return value[1:-1]
    return value


def parse_action_table(text: str) -> dict[str, str]:
    """
    Parse a single-action table into a flat dict of string values.

    Keys are lower-cased with spaces and hyphens turned into underscores.
    Value typing is left to the validator.

    Raises:
        TableParseError: malformed line, duplicate key or no verb.
    """
    block = extract_block(text)
    if not block:
        raise TableParseError("Empty response")

    params: dict[str, str] = {}
    for line_number, raw_line in enumerate(block.splitlines(), start=1):
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if ":" not in line:
            raise TableParseError(f"Line {line_number} is not 'key: value': {line[:60]!r}")

        key, value = line.split(":", 1)
        key = _normalize_key(key)
        value = _unquote(value)
        if not key:
            raise TableParseError(f"Line {line_number} has an empty key")
        if key in SECTION_KEYS and not value:
            continue
        if key in params:
            raise TableParseError(f"Duplicate key '{key}'")
        params[key] = value

    if not params.get("action") and not params.get("verb"):
        raise TableParseError("No action verb in table")
    return params


def parse_row_table(text: str, expected_columns: Optional[list[str]] = None) -> list[dict[str, str]]:
    """
    Parse a `name[N]{col,...}:` table into one dict per row.

    Raises:
        TableParseError: missing header, column count mismatch on any row,
            or a row count different from N.
    """
    block = extract_block(text)
    lines = [line.strip() for line in block.splitlines() if line.strip()]
    if not lines:
        raise TableParseError("Empty response")

    header = ROWS_HEADER_PATTERN.match(lines[0])
    if header is None:
        raise TableParseError(f"Missing rows header: {lines[0][:60]!r}")

    declared_count = int(header.group(2))
    columns = [_normalize_key(c) for c in header.group(3).split(",") if c.strip()]
    if not columns:
        raise TableParseError("Rows header declares no columns")
    if expected_columns is not None and columns != expected_columns:
        raise TableParseError(f"Unexpected columns {columns}, wanted {expected_columns}")

    rows = []
    for values in csv.reader(lines[1:], skipinitialspace=True):
        if len(values) != len(columns):
            raise TableParseError(
                f"Row {len(rows)} has {len(values)} values for {len(columns)} columns"
            )
        rows.append({col: value.strip() for col, value in zip(columns, values)})

    if len(rows) != declared_count:
        raise TableParseError(f"Header declares {declared_count} rows, found {len(rows)}")
    return rows
