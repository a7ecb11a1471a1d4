from ranking_core.overview import driver_stats
from ranking_core.records import METADATA_DRIVER_ID


def _row(driver_id: str, round_id: str, created_at: str) -> dict:
    return {"driver_id": driver_id, "round_id": round_id, "created_at": created_at}


def test_driver_stats_counts_new_and_returning_drivers() -> None:
    rows = [
        _row(METADATA_DRIVER_ID, "R1", "2025-03-01T10:00:00Z"),
        _row("Alice", "R1", "2025-03-01T10:00:00Z"),
        _row("Bob", "R1", "2025-03-01T10:00:00Z"),
        _row(METADATA_DRIVER_ID, "R2", "2025-04-01T10:00:00Z"),
        _row("Alice", "R2", "2025-04-01T10:00:00Z"),
        _row("Cara", "R2", "2025-04-01T10:00:00Z"),
        _row("Dan", "R2", "2025-04-01T10:00:00Z"),
    ]

    stats = driver_stats(rows)

    assert stats == {
        "totalDrivers": 4,
        "newDrivers": 2,
        "oldDrivers": 2,
        "trend": 50,
        "lastUpdate": "2025-04-01T10:00:00Z",
    }


def test_driver_stats_for_single_round_treats_everyone_as_new() -> None:
    stats = driver_stats([_row("Alice", "R1", "2025-03-01T10:00:00Z"), _row("Bob", "R1", "2025-03-01T10:00:00Z")])

    assert stats["totalDrivers"] == 2
    assert stats["newDrivers"] == 2
    assert stats["oldDrivers"] == 0
    assert stats["trend"] == 100


def test_driver_stats_without_rankings() -> None:
    assert driver_stats([_row(METADATA_DRIVER_ID, "R1", "2025-03-01T10:00:00Z")]) == {
        "totalDrivers": 0,
        "newDrivers": 0,
        "oldDrivers": 0,
        "trend": 0,
        "lastUpdate": None,
    }
