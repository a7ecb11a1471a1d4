from __future__ import annotations

from typing import Any, Dict, Iterable, Optional

from .records import METADATA_DRIVER_ID


def driver_stats(index_rows: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    """Driver pool statistics across the given ranking rows.

    A driver is "new" when they only appear in the most recently imported
    round; everyone else counts as returning. The latest round is the one
    holding the newest ``created_at``.
    """

    rows = [row for row in index_rows if row.get("driver_id") != METADATA_DRIVER_ID]
    if not rows:
        return {"totalDrivers": 0, "newDrivers": 0, "oldDrivers": 0, "trend": 0, "lastUpdate": None}

    round_latest: Dict[str, str] = {}
    last_update: Optional[str] = None
    for row in rows:
        created_at = str(row.get("created_at") or "")
        round_id = str(row.get("round_id") or "")
        if round_id not in round_latest or created_at > round_latest[round_id]:
            round_latest[round_id] = created_at
        if last_update is None or created_at > last_update:
            last_update = created_at

    latest_round = max(round_latest, key=lambda key: round_latest[key])

    in_latest: set[str] = set()
    in_previous: set[str] = set()
    for row in rows:
        driver_id = str(row.get("driver_id"))
        if str(row.get("round_id") or "") == latest_round:
            in_latest.add(driver_id)
        else:
            in_previous.add(driver_id)

    total = len(in_latest | in_previous)
    new_count = len(in_latest - in_previous)
    return {
        "totalDrivers": total,
        "newDrivers": new_count,
        "oldDrivers": total - new_count,
        "trend": round(new_count / total * 100) if total else 0,
        "lastUpdate": last_update or None,
    }
