"""Bulk import of a round's rankings from an uploaded spreadsheet.

The uploaded sheet may carry any column headers. Its header row becomes the
round's column layout (stored as a ``__METADATA__`` row) and every data row is
stored verbatim alongside a few essential fields used for sorting. Importing
always replaces the round's previous rankings as a whole.
"""

from __future__ import annotations

import csv
import datetime as dt
import io
import logging
import math
import random
import string
import threading
import weakref
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from openpyxl import load_workbook

from .errors import DecodeError, EmptyFileError, NoDataRowsError, PersistenceError, ValidationError
from .records import (
    DEFAULT_POINTS,
    DEFAULT_RANK,
    ImportResult,
    RankingRecord,
    SchemaDescriptor,
    SheetPreview,
)

logger = logging.getLogger(__name__)

PREVIEW_LIMIT = 20
UNKNOWN_DRIVER = "Unknown"

# Header spellings recognised as essential fields. Matching is case-sensitive
# on the trimmed header text.
ESSENTIAL_FIELDS: Dict[str, str] = {
    "排名": "rank",
    "Rank": "rank",
    "RANK": "rank",
    "车手": "driver_id",
    "车手姓名": "driver_id",
    "车手ID": "driver_id",
    "姓名": "driver_id",
    "Driver": "driver_id",
    "Name": "driver_id",
    "积分": "points",
    "Points": "points",
    "POINTS": "points",
}

# Entries disappear once no import holds the round's lock.
_round_locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()
_round_locks_master = threading.Lock()


def _get_round_lock(round_id: str) -> threading.Lock:
    with _round_locks_master:
        lock = _round_locks.get(round_id)
        if lock is None:
            lock = threading.Lock()
            _round_locks[round_id] = lock
        return lock


def random_suffix(length: int = 9) -> str:
    alphabet = string.ascii_lowercase + string.digits
    return "".join(random.choices(alphabet, k=length))


# ---------------------------------------------------------------------------
# Step 1: decoding


def cell_text(value: Any) -> str:
    """Render a decoded cell the way it reads in the sheet."""

    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dt.datetime, dt.date, dt.time)):
        return value.isoformat()
    return str(value)


def _is_empty(value: Any) -> bool:
    return value is None or value == ""


def _read_sheet_rows(content: bytes, filename: str | None) -> List[Tuple[Any, ...]]:
    if content[:2] == b"PK":
        try:
            workbook = load_workbook(io.BytesIO(content), data_only=True, read_only=True)
        except Exception as exc:
            raise DecodeError(f"Failed to parse workbook: {exc}") from exc
        try:
            if not workbook.worksheets:
                return []
            return [tuple(row) for row in workbook.worksheets[0].iter_rows(values_only=True)]
        finally:
            workbook.close()

    if filename and filename.lower().endswith(".xls"):
        raise DecodeError("Legacy .xls workbooks are not supported; save the file as .xlsx or .csv")

    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise DecodeError(f"Failed to parse file: {exc}") from exc
    try:
        return [tuple(row) for row in csv.reader(io.StringIO(text))]
    except csv.Error as exc:
        raise DecodeError(f"Failed to parse CSV: {exc}") from exc


def _header_columns(cells: Sequence[Any]) -> List[Tuple[int, str]]:
    columns: List[Tuple[int, str]] = []
    used: set[str] = set()
    for index, cell in enumerate(cells):
        header = cell_text(cell)
        if not header.strip():
            continue
        if header in used:
            counter = 1
            while f"{header}_{counter}" in used:
                counter += 1
            header = f"{header}_{counter}"
        used.add(header)
        columns.append((index, header))
    return columns


def decode_sheet(content: bytes, filename: str | None = None) -> Tuple[List[str], List[Dict[str, Any]]]:
    """Decode an upload into its significant headers and data rows.

    Only the first worksheet of a workbook is read. Each data row maps header
    text to the decoded cell value; empty cells and blank rows are left out.
    """

    raw_rows = [row for row in _read_sheet_rows(content, filename) if not all(_is_empty(cell) for cell in row)]
    if not raw_rows:
        raise EmptyFileError("The uploaded file is empty")

    columns = _header_columns(raw_rows[0])
    headers = [header for _, header in columns]

    rows: List[Dict[str, Any]] = []
    for raw in raw_rows[1:]:
        row = {
            header: raw[index]
            for index, header in columns
            if index < len(raw) and not _is_empty(raw[index])
        }
        if row:
            rows.append(row)

    if not rows:
        raise NoDataRowsError("No data rows found below the header row")

    return headers, rows


# ---------------------------------------------------------------------------
# Step 2: essential fields


@dataclass
class Essentials:
    driver_id: str
    rank: int
    points: int


def parse_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, (dt.date, dt.time, dt.timedelta)):
        return None
    if isinstance(value, (bool, int, float)):
        number = float(value)
    else:
        text = str(value).strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    if not math.isfinite(number):
        return None
    return number


def derive_essentials(
    row: Dict[str, Any],
    suffix_factory: Callable[[], str] = random_suffix,
) -> Essentials:
    """Resolve rank, driver and points from a row's recognised headers."""

    rank = DEFAULT_RANK
    points = DEFAULT_POINTS
    driver_id = UNKNOWN_DRIVER

    for key, value in row.items():
        role = ESSENTIAL_FIELDS.get(key.strip())
        if role == "rank":
            number = parse_number(value)
            # A zero rank is as meaningless as a missing one.
            rank = int(number) if number else DEFAULT_RANK
        elif role == "points":
            number = parse_number(value)
            points = int(number) if number is not None else DEFAULT_POINTS
        elif role == "driver_id":
            driver_id = cell_text(value)

    if driver_id == UNKNOWN_DRIVER:
        driver_id = f"{UNKNOWN_DRIVER}_{suffix_factory()}"

    return Essentials(driver_id=driver_id, rank=rank, points=points)


# ---------------------------------------------------------------------------
# Steps 3 and 4: deduplication and batch assembly


def deduplicate(records: Iterable[RankingRecord]) -> Tuple[List[RankingRecord], Dict[str, str]]:
    """Make driver identities unique by suffixing ``_1``, ``_2``, ... on collision.

    Returns the records in encounter order and a map of new identity to the
    identity it collided with.
    """

    unique: Dict[str, RankingRecord] = {}
    renamed: Dict[str, str] = {}
    for record in records:
        if record.driver_id not in unique:
            unique[record.driver_id] = record
            continue
        counter = 1
        new_id = f"{record.driver_id}_{counter}"
        while new_id in unique:
            counter += 1
            new_id = f"{record.driver_id}_{counter}"
        renamed[new_id] = record.driver_id
        record.driver_id = new_id
        unique[new_id] = record
    return list(unique.values()), renamed


def build_batch(
    round_id: str,
    headers: List[str],
    rows: List[Dict[str, Any]],
    created_at: str,
    suffix_factory: Callable[[], str] = random_suffix,
) -> Tuple[SchemaDescriptor, List[RankingRecord], Dict[str, str]]:
    records = []
    for row in rows:
        essentials = derive_essentials(row, suffix_factory)
        records.append(
            RankingRecord(
                round_id=round_id,
                driver_id=essentials.driver_id,
                rank=essentials.rank,
                points=essentials.points,
                raw_payload=dict(row),
                created_at=created_at,
            )
        )
    unique_records, renamed = deduplicate(records)
    descriptor = SchemaDescriptor(round_id=round_id, columns=list(headers), created_at=created_at)
    return descriptor, unique_records, renamed


# ---------------------------------------------------------------------------
# Step 5: replacement


class RankingImporter:
    """Replaces a round's rankings with the content of an uploaded sheet."""

    def __init__(self, store: Any, suffix_factory: Callable[[], str] = random_suffix) -> None:
        self.store = store
        self.suffix_factory = suffix_factory

    def preview(self, content: bytes, filename: str | None = None, limit: int = PREVIEW_LIMIT) -> SheetPreview:
        headers, rows = decode_sheet(content, filename)
        return SheetPreview(headers=headers, rows=rows[:limit], total_rows=len(rows))

    def import_rankings(
        self,
        content: bytes,
        round_id: str | None,
        filename: str | None = None,
        *,
        round_name: str | None = None,
        tournament_name: str | None = None,
    ) -> ImportResult:
        round_key = (round_id or "").strip()
        if not round_key:
            raise ValidationError("No target round selected")

        headers, rows = decode_sheet(content, filename)
        created_at = dt.datetime.now(dt.UTC).isoformat().replace("+00:00", "Z")
        descriptor, records, renamed = build_batch(round_key, headers, rows, created_at, self.suffix_factory)
        if renamed:
            logger.info("Renamed %d duplicate driver identities in round %s", len(renamed), round_key)

        batch = [descriptor.to_row()] + [record.to_row() for record in records]
        with _get_round_lock(round_key):
            logger.info("Replacing rankings for round %s with %d rows", round_key, len(records))
            self._replace(round_key, batch)

        try:
            self.store.add_log(
                "导入数据",
                f"在赛程 [{round_name or round_key}] 中导入了新数据",
                tournament_name,
            )
        except Exception:
            logger.exception("Failed to record import of round %s in the operation log", round_key)
        return ImportResult(round_id=round_key, columns=list(headers), imported=len(records), renamed=renamed)

    def _replace(self, round_id: str, batch: List[Dict[str, Any]]) -> None:
        try:
            previous = self.store.fetch_rankings(round_id)
        except RuntimeError as exc:
            raise PersistenceError(f"Failed to read existing rankings: {exc}", stage="snapshot") from exc

        try:
            self.store.delete_rankings(round_id)
        except RuntimeError as exc:
            raise PersistenceError(f"Failed to delete existing rankings: {exc}", stage="delete") from exc

        try:
            self.store.insert_rankings(batch)
        except RuntimeError as exc:
            restored = self._restore(round_id, previous)
            outcome = "previous rankings restored" if restored else "round left without rankings"
            raise PersistenceError(
                f"Failed to insert rankings ({outcome}): {exc}",
                stage="insert",
                restored=restored,
            ) from exc

    def _restore(self, round_id: str, previous: List[Dict[str, Any]]) -> bool:
        if not previous:
            return True
        rows = [{key: value for key, value in row.items() if key != "id"} for row in previous]
        try:
            self.store.insert_rankings(rows)
        except RuntimeError:
            logger.exception("Failed to restore %d previous rankings for round %s", len(rows), round_id)
            return False
        logger.info("Restored %d previous rankings for round %s after failed import", len(rows), round_id)
        return True
