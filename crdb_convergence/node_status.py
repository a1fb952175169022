"""
Parser for `cockroach node status --decommission --format=csv`.

The first row is a header naming the columns; the columns this package reads
are positional, so the header is checked before any record is produced.
"""

import csv
import io
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterator, List

from .errors import NodeStatusParseError

ID_COLUMN = 0
ADDRESS_COLUMN = 1
IS_LIVE_COLUMN = 8
REPLICAS_COLUMN = 9
IS_DECOMMISSIONING_COLUMN = 10

EXPECTED_HEADER: Dict[int, FrozenSet[str]] = {
    ID_COLUMN: frozenset({"id"}),
    ADDRESS_COLUMN: frozenset({"address"}),
    IS_LIVE_COLUMN: frozenset({"is_live"}),
    REPLICAS_COLUMN: frozenset({"gossiped_replicas", "replicas"}),
    IS_DECOMMISSIONING_COLUMN: frozenset({"is_decommissioning"}),
}

MAX_UINT32 = 2 ** 32 - 1
MAX_UINT64 = 2 ** 64 - 1


@dataclass(frozen=True)
class NodeStatusRecord:
    id: int
    address: str
    is_live: bool
    replica_count: int
    is_decommissioning: bool


def validate_header(header: List[str]) -> None:
    for index, names in EXPECTED_HEADER.items():
        if index >= len(header):
            raise NodeStatusParseError(
                f"node status header has {len(header)} columns, expected column {index} "
                f"to be {'/'.join(sorted(names))}"
            )
        actual = header[index].strip()
        if actual not in names:
            raise NodeStatusParseError(
                f"node status column {index} is {actual!r}, expected {'/'.join(sorted(names))}; "
                "the cockroach output format may have changed"
            )


def _parse_uint(value: str, field: str, upper: int, line: int) -> int:
    text = value.strip()
    if not (text.isascii() and text.isdigit()):
        raise NodeStatusParseError(f"line {line}: {field} {value!r} is not a number")
    number = int(text)
    if number > upper:
        raise NodeStatusParseError(f"line {line}: {field} {value!r} is out of range")
    return number


def _parse_bool(value: str) -> bool:
    return value.strip().lower() == "true"


def parse_node_status(raw: str) -> Iterator[NodeStatusRecord]:
    """
    Lazily yield one NodeStatusRecord per data row of *raw*.

    The generator is single-pass; re-parsing needs the raw text again.
    Raises NodeStatusParseError on a missing or unexpected header, a short
    row, or a non-numeric id/replica count.
    """
    reader = csv.reader(io.StringIO(raw))
    header = next(reader, None)
    if header is None:
        raise NodeStatusParseError("node status output is empty")
    validate_header(header)

    for row in reader:
        if not row or all(not cell.strip() for cell in row):
            continue
        line = reader.line_num
        if len(row) <= IS_DECOMMISSIONING_COLUMN:
            raise NodeStatusParseError(
                f"line {line}: expected at least {IS_DECOMMISSIONING_COLUMN + 1} columns, got {len(row)}"
            )
        yield NodeStatusRecord(
            id=_parse_uint(row[ID_COLUMN], "node id", MAX_UINT32, line),
            address=row[ADDRESS_COLUMN],
            is_live=_parse_bool(row[IS_LIVE_COLUMN]),
            replica_count=_parse_uint(row[REPLICAS_COLUMN], "replica count", MAX_UINT64, line),
            is_decommissioning=_parse_bool(row[IS_DECOMMISSIONING_COLUMN]),
        )
