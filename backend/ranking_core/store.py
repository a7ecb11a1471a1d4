from __future__ import annotations

import datetime as dt
import json
import logging
import os
import threading
import uuid
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import httpx

from .records import METADATA_DRIVER_ID

logger = logging.getLogger(__name__)

LOG_HISTORY_LIMIT = 50
# PostgREST caps unpaged reads at the server's max-rows setting.
SUPABASE_PAGE_SIZE = 1000


class DataStore:
    """Series, rounds, rankings and operation log backed by Supabase.

    When Supabase is not configured the same operations run against JSON files
    in ``data_dir`` so the service stays usable offline.
    """

    def __init__(self, data_dir: Path | None = None) -> None:
        self.data_dir = data_dir or (Path(__file__).parent.parent / "data")

        # Supabase configuration
        self.supabase_url = os.getenv("SUPABASE_URL", "")
        self.supabase_key = (
            os.getenv("SUPABASE_SERVICE_ROLE_KEY")
            or os.getenv("SUPABASE_SERVICE_KEY")
            or os.getenv("SUPABASE_ANON_KEY")
            or ""
        )
        self.supabase_schema = os.getenv("SUPABASE_SCHEMA", "public")
        self.supabase_series_table = os.getenv("SUPABASE_SERIES_TABLE", "series")
        self.supabase_rounds_table = os.getenv("SUPABASE_ROUNDS_TABLE", "rounds")
        self.supabase_rankings_table = os.getenv("SUPABASE_RANKINGS_TABLE", "rankings")
        self.supabase_logs_table = os.getenv("SUPABASE_LOGS_TABLE", "logs")
        self.local_series_path = self.data_dir / "series_local.json"
        self.local_rounds_path = self.data_dir / "rounds_local.json"
        self.local_rankings_path = self.data_dir / "rankings_local.json"
        self.local_logs_path = self.data_dir / "logs_local.json"
        # Guards read-modify-write cycles on the local JSON files. Reentrant
        # because deleting a series cascades into rounds and rankings.
        self._local_lock = threading.RLock()

    @property
    def remote(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)

    # ------------------------------------------------------------------
    # Series helpers

    def fetch_series(self) -> List[Dict[str, Any]]:
        if not self.remote:
            rows = self._read_list(self.local_series_path)
            return sorted((row for row in rows if isinstance(row, dict)), key=lambda row: row.get("created_at") or "")

        try:
            rows = self._supabase_request(
                "GET",
                self.supabase_series_table,
                params={"select": "id,name,description,created_at", "order": "created_at.asc"},
            )
        except httpx.HTTPError as exc:
            raise RuntimeError(f"Failed to fetch series: {exc}") from exc
        return [row for row in rows or [] if isinstance(row, dict)]

    def create_series(self, name: str, description: str | None = None) -> Dict[str, Any]:
        title = (name or "").strip()
        if not title:
            raise ValueError("Series name is required")
        record = {
            "id": str(uuid.uuid4()),
            "name": title,
            "description": description,
            "created_at": self._utc_now_iso(),
        }

        if not self.remote:
            with self._local_lock:
                rows = self._read_list(self.local_series_path)
                rows.append(record)
                self._write_json_file(self.local_series_path, rows)
            return record

        payload = {"id": record["id"], "name": title, "description": description}
        try:
            rows = self._supabase_request(
                "POST",
                self.supabase_series_table,
                params={"select": "id,name,description,created_at"},
                payload=payload,
                prefer="return=representation",
            )
        except httpx.HTTPStatusError as exc:
            self._raise_rejection("create series", exc)
        except httpx.HTTPError as exc:
            raise RuntimeError(f"Failed to create series: {exc}") from exc
        return self._first_row(rows, record)

    def rename_series(self, series_id: str, name: str) -> Dict[str, Any]:
        title = (name or "").strip()
        if not title:
            raise ValueError("Series name is required")

        if not self.remote:
            with self._local_lock:
                rows = self._read_list(self.local_series_path)
                for row in rows:
                    if isinstance(row, dict) and row.get("id") == series_id:
                        row["name"] = title
                        self._write_json_file(self.local_series_path, rows)
                        return row
            raise ValueError("Series not found")

        try:
            rows = self._supabase_request(
                "PATCH",
                self.supabase_series_table,
                params={"id": f"eq.{series_id}", "select": "id,name,description,created_at"},
                payload={"name": title},
                prefer="return=representation",
            )
        except httpx.HTTPStatusError as exc:
            self._raise_rejection("rename series", exc)
        except httpx.HTTPError as exc:
            raise RuntimeError(f"Failed to rename series: {exc}") from exc
        if not rows:
            raise ValueError("Series not found")
        return rows[0]

    def delete_series(self, series_id: str) -> None:
        if not self.remote:
            with self._local_lock:
                rows = self._read_list(self.local_series_path)
                remaining = [row for row in rows if isinstance(row, dict) and row.get("id") != series_id]
                if len(remaining) == len(rows):
                    raise ValueError("Series not found")
                self._write_json_file(self.local_series_path, remaining)
                for round_row in self.fetch_rounds(series_id):
                    self.delete_round(round_row["id"])
            return

        # Rounds and rankings go with the series through foreign key cascades.
        try:
            self._supabase_request("DELETE", self.supabase_series_table, params={"id": f"eq.{series_id}"})
        except httpx.HTTPStatusError as exc:
            self._raise_rejection("delete series", exc)
        except httpx.HTTPError as exc:
            raise RuntimeError(f"Failed to delete series: {exc}") from exc

    # ------------------------------------------------------------------
    # Round helpers

    def fetch_rounds(self, series_id: str | None = None) -> List[Dict[str, Any]]:
        if not self.remote:
            rows = [row for row in self._read_list(self.local_rounds_path) if isinstance(row, dict)]
            if series_id is not None:
                rows = [row for row in rows if row.get("series_id") == series_id]
            return sorted(rows, key=lambda row: row.get("sequence") or 0)

        params = {"select": "*", "order": "sequence.asc"}
        if series_id is not None:
            params["series_id"] = f"eq.{series_id}"
        try:
            rows = self._supabase_request("GET", self.supabase_rounds_table, params=params)
        except httpx.HTTPError as exc:
            raise RuntimeError(f"Failed to fetch rounds: {exc}") from exc
        return [row for row in rows or [] if isinstance(row, dict)]

    def fetch_round(self, round_id: str) -> Optional[Dict[str, Any]]:
        for row in self.fetch_rounds():
            if row.get("id") == round_id:
                return row
        return None

    def create_round(self, series_id: str, name: str) -> Dict[str, Any]:
        title = (name or "").strip()
        if not title:
            raise ValueError("Round name is required")
        if not any(row.get("id") == series_id for row in self.fetch_series()):
            raise ValueError("Series not found")

        record = {
            "id": str(uuid.uuid4()),
            "series_id": series_id,
            "name": title,
            "sequence": 0,
            "start_date": None,
            "end_date": None,
            "created_at": self._utc_now_iso(),
        }

        if not self.remote:
            with self._local_lock:
                rows = self._read_list(self.local_rounds_path)
                record["sequence"] = (
                    sum(1 for row in rows if isinstance(row, dict) and row.get("series_id") == series_id) + 1
                )
                rows.append(record)
                self._write_json_file(self.local_rounds_path, rows)
            return record

        record["sequence"] = len(self.fetch_rounds(series_id)) + 1

        payload = {key: record[key] for key in ("id", "series_id", "name", "sequence")}
        try:
            rows = self._supabase_request(
                "POST",
                self.supabase_rounds_table,
                params={"select": "*"},
                payload=payload,
                prefer="return=representation",
            )
        except httpx.HTTPStatusError as exc:
            self._raise_rejection("create round", exc)
        except httpx.HTTPError as exc:
            raise RuntimeError(f"Failed to create round: {exc}") from exc
        return self._first_row(rows, record)

    def rename_round(self, round_id: str, name: str) -> Dict[str, Any]:
        title = (name or "").strip()
        if not title:
            raise ValueError("Round name is required")

        if not self.remote:
            with self._local_lock:
                rows = self._read_list(self.local_rounds_path)
                for row in rows:
                    if isinstance(row, dict) and row.get("id") == round_id:
                        row["name"] = title
                        self._write_json_file(self.local_rounds_path, rows)
                        return row
            raise ValueError("Round not found")

        try:
            rows = self._supabase_request(
                "PATCH",
                self.supabase_rounds_table,
                params={"id": f"eq.{round_id}", "select": "*"},
                payload={"name": title},
                prefer="return=representation",
            )
        except httpx.HTTPStatusError as exc:
            self._raise_rejection("rename round", exc)
        except httpx.HTTPError as exc:
            raise RuntimeError(f"Failed to rename round: {exc}") from exc
        if not rows:
            raise ValueError("Round not found")
        return rows[0]

    def delete_round(self, round_id: str) -> None:
        if not self.remote:
            with self._local_lock:
                rows = self._read_list(self.local_rounds_path)
                remaining = [row for row in rows if isinstance(row, dict) and row.get("id") != round_id]
                if len(remaining) == len(rows):
                    raise ValueError("Round not found")
                self._write_json_file(self.local_rounds_path, remaining)
                self.delete_rankings(round_id)
            return

        try:
            self._supabase_request("DELETE", self.supabase_rounds_table, params={"id": f"eq.{round_id}"})
        except httpx.HTTPStatusError as exc:
            self._raise_rejection("delete round", exc)
        except httpx.HTTPError as exc:
            raise RuntimeError(f"Failed to delete round: {exc}") from exc

    def fetch_tournaments(self) -> List[Dict[str, Any]]:
        """Series with their rounds nested in sequence order."""

        rounds = self.fetch_rounds()
        tournaments = []
        for series in self.fetch_series():
            tournaments.append(
                {
                    "id": series.get("id"),
                    "name": series.get("name") or "",
                    "rounds": [
                        {"id": row.get("id"), "name": row.get("name") or ""}
                        for row in rounds
                        if row.get("series_id") == series.get("id")
                    ],
                }
            )
        return tournaments

    # ------------------------------------------------------------------
    # Ranking helpers

    def fetch_rankings(self, round_id: str) -> List[Dict[str, Any]]:
        if not self.remote:
            rows = [
                row
                for row in self._read_list(self.local_rankings_path)
                if isinstance(row, dict) and row.get("round_id") == round_id
            ]
            return sorted(rows, key=lambda row: (row.get("rank") or 0, row.get("id") or 0))

        rankings: List[Dict[str, Any]] = []
        offset = 0
        while True:
            try:
                rows = self._supabase_request(
                    "GET",
                    self.supabase_rankings_table,
                    params={
                        "select": "*",
                        "round_id": f"eq.{round_id}",
                        "order": "rank.asc,id.asc",
                        "limit": SUPABASE_PAGE_SIZE,
                        "offset": offset,
                    },
                )
            except httpx.HTTPError as exc:
                raise RuntimeError(f"Failed to fetch rankings: {self._describe(exc)}") from exc
            page = rows or []
            rankings.extend(row for row in page if isinstance(row, dict))
            if len(page) < SUPABASE_PAGE_SIZE:
                return rankings
            offset += len(page)

    def delete_rankings(self, round_id: str) -> None:
        """Delete every ranking row of a round, including its column layout."""

        if not self.remote:
            with self._local_lock:
                rows = self._read_list(self.local_rankings_path)
                remaining = [row for row in rows if isinstance(row, dict) and row.get("round_id") != round_id]
                self._write_json_file(self.local_rankings_path, remaining)
            return

        try:
            self._supabase_request(
                "DELETE",
                self.supabase_rankings_table,
                params={"round_id": f"eq.{round_id}"},
                prefer="return=minimal",
            )
        except httpx.HTTPError as exc:
            raise RuntimeError(f"Failed to delete rankings: {self._describe(exc)}") from exc

    def insert_rankings(self, records: List[Dict[str, Any]]) -> None:
        """Insert ranking rows in a single request.

        The whole batch is rejected when any ``(round_id, driver_id)`` pair is
        already taken.
        """

        if not records:
            return

        if not self.remote:
            with self._local_lock:
                rows = self._read_list(self.local_rankings_path)
                taken = {(row.get("round_id"), row.get("driver_id")) for row in rows if isinstance(row, dict)}
                next_id = max((row.get("id") or 0 for row in rows if isinstance(row, dict)), default=0) + 1
                additions = []
                for record in records:
                    key = (record.get("round_id"), record.get("driver_id"))
                    if key in taken:
                        raise RuntimeError(
                            f"Failed to insert rankings: duplicate driver '{key[1]}' in round '{key[0]}'"
                        )
                    taken.add(key)
                    additions.append({**record, "id": next_id})
                    next_id += 1
                self._write_json_file(self.local_rankings_path, rows + additions)
            return

        try:
            self._supabase_request(
                "POST",
                self.supabase_rankings_table,
                payload=records,
                prefer="return=minimal",
            )
        except httpx.HTTPError as exc:
            raise RuntimeError(f"Failed to insert rankings: {self._describe(exc)}") from exc

    def update_ranking(self, ranking_id: int | str, changes: Dict[str, Any]) -> Dict[str, Any]:
        if not self.remote:
            with self._local_lock:
                rows = self._read_list(self.local_rankings_path)
                for row in rows:
                    if isinstance(row, dict) and str(row.get("id")) == str(ranking_id):
                        if row.get("driver_id") == METADATA_DRIVER_ID:
                            break
                        row.update(changes)
                        self._write_json_file(self.local_rankings_path, rows)
                        return row
            raise ValueError("Ranking not found")

        try:
            rows = self._supabase_request(
                "PATCH",
                self.supabase_rankings_table,
                params={
                    "id": f"eq.{ranking_id}",
                    "driver_id": f"neq.{METADATA_DRIVER_ID}",
                    "select": "*",
                },
                payload=changes,
                prefer="return=representation",
            )
        except httpx.HTTPStatusError as exc:
            self._raise_rejection("update ranking", exc)
        except httpx.HTTPError as exc:
            raise RuntimeError(f"Failed to update ranking: {exc}") from exc
        if not rows:
            raise ValueError("Ranking not found")
        return rows[0]

    def fetch_ranking_index(self, round_ids: Iterable[str] | None = None) -> List[Dict[str, Any]]:
        """Lightweight ``driver_id, created_at, round_id`` rows for statistics."""

        wanted = set(round_ids) if round_ids is not None else None
        if not self.remote:
            rows = [row for row in self._read_list(self.local_rankings_path) if isinstance(row, dict)]
            if wanted is not None:
                rows = [row for row in rows if row.get("round_id") in wanted]
            rows.sort(key=lambda row: row.get("created_at") or "")
            return [
                {"driver_id": row.get("driver_id"), "created_at": row.get("created_at"), "round_id": row.get("round_id")}
                for row in rows
            ]

        if wanted is not None and not wanted:
            return []
        params = {"select": "driver_id,created_at,round_id", "order": "created_at.asc"}
        if wanted is not None:
            params["round_id"] = f"in.({','.join(sorted(wanted))})"
        try:
            rows = self._supabase_request("GET", self.supabase_rankings_table, params=params)
        except httpx.HTTPError as exc:
            raise RuntimeError(f"Failed to fetch ranking index: {exc}") from exc
        return [row for row in rows or [] if isinstance(row, dict)]

    # ------------------------------------------------------------------
    # Operation log

    def add_log(self, action: str, details: str, tournament_name: str | None = None) -> None:
        """Record an operation. Best-effort: failures are logged, never raised."""

        record = {"action": action, "details": details, "tournament_name": tournament_name}

        if not self.remote:
            entry = {"id": str(uuid.uuid4()), "created_at": self._utc_now_iso(), **record}
            try:
                with self._local_lock:
                    rows = self._read_list(self.local_logs_path)
                    self._write_json_file(self.local_logs_path, ([entry] + rows)[:LOG_HISTORY_LIMIT])
            except RuntimeError as exc:
                logger.warning("Failed to write operation log locally (%s)", exc)
            return

        try:
            self._supabase_request("POST", self.supabase_logs_table, payload=record, prefer="return=minimal")
        except httpx.HTTPError as exc:
            logger.warning("Supabase operation log write failed (%s)", self._describe(exc))

    def fetch_logs(self, limit: int = LOG_HISTORY_LIMIT) -> List[Dict[str, Any]]:
        if not self.remote:
            rows = [row for row in self._read_list(self.local_logs_path) if isinstance(row, dict)]
            return rows[:limit]

        try:
            rows = self._supabase_request(
                "GET",
                self.supabase_logs_table,
                params={"select": "*", "order": "created_at.desc", "limit": limit},
            )
        except httpx.HTTPError as exc:
            raise RuntimeError(f"Failed to fetch logs: {exc}") from exc
        return [row for row in rows or [] if isinstance(row, dict)]

    # ---- internal Supabase helpers -------------------------------------------------

    def _supabase_endpoint(self, table: str) -> str:
        return f"{self.supabase_url.rstrip('/')}/rest/v1/{table}"

    def _supabase_headers(self, prefer: str | None = None, include_content_profile: bool = True) -> Dict[str, str]:
        headers = {
            "apikey": self.supabase_key,
            "Authorization": f"Bearer {self.supabase_key}",
            "Accept": "application/json",
        }
        if include_content_profile and self.supabase_schema and self.supabase_schema != "public":
            headers["Content-Profile"] = self.supabase_schema
        if self.supabase_schema and self.supabase_schema != "public":
            headers["Accept-Profile"] = self.supabase_schema
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def _supabase_request(
        self,
        method: str,
        table: str,
        params: Dict[str, Any] | None = None,
        payload: Any = None,
        prefer: str | None = None,
    ) -> Any:
        endpoint = self._supabase_endpoint(table)
        headers = self._supabase_headers(prefer, include_content_profile=method != "GET")
        if payload is not None:
            headers["Content-Type"] = "application/json"

        with httpx.Client(timeout=10.0) as client:
            if method == "GET":
                response = client.get(endpoint, params=params, headers=headers)
            elif method == "POST":
                response = client.post(endpoint, params=params, json=payload, headers=headers)
            elif method == "PATCH":
                response = client.patch(endpoint, params=params, json=payload, headers=headers)
            elif method == "DELETE":
                response = client.delete(endpoint, params=params, headers=headers)
            else:
                raise ValueError(f"Unsupported method {method}")
            response.raise_for_status()

        if not response.content:
            return None
        return response.json()

    def _raise_rejection(self, action: str, exc: httpx.HTTPStatusError) -> None:
        status_code = exc.response.status_code if exc.response is not None else None
        detail = self._extract_supabase_detail(exc.response)
        if status_code is not None and 400 <= status_code < 500:
            raise ValueError(detail or f"Supabase rejected {action} ({status_code})") from exc
        raise RuntimeError(f"Failed to {action}: {detail or exc}") from exc

    def _describe(self, exc: httpx.HTTPError) -> str:
        if isinstance(exc, httpx.HTTPStatusError):
            detail = self._extract_supabase_detail(exc.response)
            if detail:
                return f"{detail} (HTTP {exc.response.status_code})"
        return str(exc)

    @staticmethod
    def _first_row(rows: Any, default: Dict[str, Any]) -> Dict[str, Any]:
        if isinstance(rows, list) and rows and isinstance(rows[0], dict):
            return rows[0]
        if isinstance(rows, dict):
            return rows
        return default

    def _extract_supabase_detail(self, response: httpx.Response | None) -> str | None:
        if response is None:
            return None
        try:
            payload = response.json()
        except ValueError:
            text = (response.text or "").strip()
            return text or None

        if isinstance(payload, list) and payload:
            payload = payload[0]
        if isinstance(payload, dict):
            for key in ("message", "detail", "error", "hint", "code"):
                value = payload.get(key)
                if isinstance(value, str) and value.strip():
                    return value.strip()
        return None

    # ---- local JSON fallback -------------------------------------------------------

    def _read_json_file(self, path: Path, default: Any) -> Any:
        try:
            with self._local_lock:
                if not path.exists():
                    return default
                with path.open("r", encoding="utf-8") as handle:
                    return json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Falling back to default for %s due to read error: %s", path, exc)
            return default

    def _read_list(self, path: Path) -> List[Any]:
        rows = self._read_json_file(path, [])
        if not isinstance(rows, list):
            logger.warning("Ignoring unexpected content in %s; expected a JSON list", path)
            return []
        return rows

    def _write_json_file(self, path: Path, data: Any) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("w", encoding="utf-8") as handle:
                json.dump(data, handle, indent=2, ensure_ascii=False)
        except OSError as exc:
            raise RuntimeError(f"Failed to write local data store {path}") from exc

    @staticmethod
    def _utc_now_iso() -> str:
        return dt.datetime.now(dt.UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")
