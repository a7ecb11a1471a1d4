from __future__ import annotations

import csv
import io
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .importer import cell_text, parse_number
from .records import DEFAULT_POINTS, DEFAULT_RANK, METADATA_DRIVER_ID, SchemaDescriptor, dump_payload

logger = logging.getLogger(__name__)


@dataclass
class Column:
    key: str
    label: str
    sortable: bool = False
    dynamic: bool = False


DEFAULT_COLUMNS = [
    Column("rank", "排名", sortable=True),
    Column("name", "车手姓名", sortable=True),
    Column("team", "车队"),
    Column("car", "车型"),
    Column("bestLap", "最快圈速", sortable=True),
    Column("points", "积分", sortable=True),
]

SAFETY_COLUMNS = [
    Column("rank", "排名", sortable=True),
    Column("name", "车手姓名", sortable=True),
    Column("safetyScore", "安全分", sortable=True),
    Column("podiums", "登台数", sortable=True),
    Column("finishedRaces", "完赛数", sortable=True),
    Column("points", "积分", sortable=True),
]


@dataclass
class DriverRow:
    """A stored ranking as the table view sees it."""

    id: str
    rank: int
    name: str
    points: int
    team: str = "-"
    car: str = "-"
    best_lap: str = "-"
    safety_score: int = 0
    podiums: int = 0
    finished_races: int = 0
    total_races: int = 0
    raw_data: Dict[str, Any] = field(default_factory=dict)

    def attribute(self, key: str) -> Tuple[bool, Any]:
        attributes = {
            "id": self.id,
            "rank": self.rank,
            "name": self.name,
            "points": self.points,
            "team": self.team,
            "car": self.car,
            "bestLap": self.best_lap,
            "safetyScore": self.safety_score,
            "podiums": self.podiums,
            "finishedRaces": self.finished_races,
            "totalRaces": self.total_races,
        }
        if key in attributes:
            return True, attributes[key]
        return False, None


def _decode_raw_data(row: Dict[str, Any]) -> Dict[str, Any]:
    raw = row.get("display_races")
    if not raw:
        return {}
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Ignoring unreadable row data for ranking %s", row.get("id"))
        return {}
    return payload if isinstance(payload, dict) else {}


def load_round_table(rows: Sequence[Dict[str, Any]]) -> Tuple[Optional[List[Column]], List[DriverRow]]:
    """Split a round's stored rows into its column layout and its drivers.

    The layout is ``None`` when the round has no readable ``__METADATA__`` row.
    """

    columns: Optional[List[Column]] = None
    drivers: List[DriverRow] = []
    for row in rows:
        if row.get("driver_id") == METADATA_DRIVER_ID:
            descriptor = SchemaDescriptor.from_row(row)
            if descriptor is None:
                logger.warning("Ignoring unreadable column layout for round %s", row.get("round_id"))
                continue
            columns = [Column(key=name, label=name, sortable=True, dynamic=True) for name in descriptor.columns]
            continue

        drivers.append(
            DriverRow(
                id=str(row.get("id")),
                rank=row.get("rank") if row.get("rank") is not None else DEFAULT_RANK,
                name=str(row.get("driver_id") or ""),
                points=row.get("points") if row.get("points") is not None else DEFAULT_POINTS,
                car=row.get("tier") or "-",
                safety_score=row.get("safety_score") or 0,
                podiums=row.get("podiums") or 0,
                finished_races=row.get("finished_races") or 0,
                total_races=row.get("total_races") or 0,
                raw_data=_decode_raw_data(row),
            )
        )
    return columns, drivers


def columns_for(dynamic_columns: Optional[List[Column]], series_name: str | None = None) -> List[Column]:
    if dynamic_columns:
        return dynamic_columns
    if series_name and "安全" in series_name:
        return SAFETY_COLUMNS
    return DEFAULT_COLUMNS


def cell_value(row: DriverRow, column: Column | str) -> Any:
    """Value shown in a cell: imported columns read the row's original data."""

    if isinstance(column, Column):
        key = column.key
        if column.dynamic:
            return row.raw_data.get(key)
    else:
        key = column
    found, value = row.attribute(key)
    if found:
        return value
    return row.raw_data.get(key)


def filter_rows(rows: Sequence[DriverRow], query: str | None) -> List[DriverRow]:
    if not query:
        return list(rows)
    needle = query.lower()
    matched = []
    for row in rows:
        haystack = [row.name, row.team, row.car] + [cell_text(value) for value in row.raw_data.values()]
        if any(needle in text.lower() for text in haystack):
            matched.append(row)
    return matched


def sort_rows(rows: Sequence[DriverRow], key: str | None, descending: bool = False) -> List[DriverRow]:
    """Sort by a column key; rows without a comparable value stay at the end."""

    if not key:
        return list(rows)

    present = []
    missing = []
    for row in rows:
        value = cell_value(row, key)
        if value is None:
            missing.append(row)
        else:
            present.append((value, row))

    def _sort_key(item: Tuple[Any, DriverRow]) -> Tuple[int, Any]:
        value = item[0]
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return (0, value)
        return (1, cell_text(value))

    present.sort(key=_sort_key, reverse=descending)
    return [row for _, row in present] + missing


def export_csv(rows: Sequence[DriverRow], columns: Sequence[Column]) -> str:
    """Render rows as CSV text with a UTF-8 BOM so spreadsheet apps detect it."""

    if not rows:
        raise ValueError("No data to export")

    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow([column.label for column in columns])
    for row in rows:
        writer.writerow([cell_text(cell_value(row, column)) for column in columns])
    return "\ufeff" + buffer.getvalue().rstrip("\n")


def apply_driver_edit(raw_data: Dict[str, Any]) -> Dict[str, Any]:
    """Storage changes for an edited driver: new rank, points and row data."""

    def _first_number(keys: Sequence[str], default: int) -> int:
        for key in keys:
            number = parse_number(raw_data.get(key))
            if number:
                return int(number)
        return default

    return {
        "rank": _first_number(("rank", "Rank", "RANK"), DEFAULT_RANK),
        "points": _first_number(("points", "Points", "POINTS"), DEFAULT_POINTS),
        "display_races": dump_payload(raw_data),
    }
