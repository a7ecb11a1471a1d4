from __future__ import annotations

import datetime as dt
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

METADATA_DRIVER_ID = "__METADATA__"
DEFAULT_RANK = 999
DEFAULT_POINTS = 0


def _json_default(value: Any) -> Any:
    if isinstance(value, (dt.datetime, dt.date, dt.time)):
        return value.isoformat()
    if isinstance(value, dt.timedelta):
        return value.total_seconds()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def dump_payload(payload: Any) -> str:
    """Serialize a row or schema payload for the ``display_races`` column."""

    return json.dumps(payload, ensure_ascii=False, default=_json_default)


@dataclass
class RankingRecord:
    """One driver's ranking within a round.

    ``raw_payload`` is the spreadsheet row exactly as decoded. The essential
    fields are derived from it for indexing and sorting only.
    """

    round_id: str
    driver_id: str
    rank: int = DEFAULT_RANK
    points: int = DEFAULT_POINTS
    raw_payload: Dict[str, Any] = field(default_factory=dict)
    created_at: str = ""

    def to_row(self) -> Dict[str, Any]:
        return {
            "round_id": self.round_id,
            "driver_id": self.driver_id,
            "rank": self.rank,
            "points": self.points,
            "tier": None,
            "safety_score": 0,
            "podiums": 0,
            "finished_races": 0,
            "total_races": 0,
            "display_races": dump_payload(self.raw_payload),
            "created_at": self.created_at,
        }


@dataclass
class SchemaDescriptor:
    """Column layout of a round, stored as a synthetic ranking row."""

    round_id: str
    columns: List[str] = field(default_factory=list)
    created_at: str = ""

    def to_row(self) -> Dict[str, Any]:
        return {
            "round_id": self.round_id,
            "driver_id": METADATA_DRIVER_ID,
            "rank": 0,
            "points": 0,
            "tier": None,
            "safety_score": 0,
            "podiums": 0,
            "finished_races": 0,
            "total_races": 0,
            "display_races": dump_payload({"columns": self.columns}),
            "created_at": self.created_at,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> Optional["SchemaDescriptor"]:
        if row.get("driver_id") != METADATA_DRIVER_ID:
            return None
        try:
            payload = json.loads(row.get("display_races") or "")
        except (TypeError, ValueError):
            return None
        columns = payload.get("columns") if isinstance(payload, dict) else None
        if not isinstance(columns, list):
            return None
        return cls(
            round_id=str(row.get("round_id") or ""),
            columns=[str(column) for column in columns],
            created_at=str(row.get("created_at") or ""),
        )


@dataclass
class SheetPreview:
    headers: List[str]
    rows: List[Dict[str, Any]]
    total_rows: int


@dataclass
class ImportResult:
    round_id: str
    columns: List[str]
    imported: int
    renamed: Dict[str, str] = field(default_factory=dict)
