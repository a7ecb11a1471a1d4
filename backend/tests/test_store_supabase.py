from __future__ import annotations

import io
from typing import Any, Dict, List

import httpx
import pytest
from openpyxl import Workbook

from ranking_core import DataStore, PersistenceError, RankingImporter
from ranking_core import store as store_module
from ranking_core.records import METADATA_DRIVER_ID


class _FakeSupabase:
    """In-memory stand-in for the PostgREST tables the store talks to."""

    def __init__(self) -> None:
        self.tables: Dict[str, List[Dict[str, Any]]] = {"rankings": [], "logs": []}
        self.calls: List[Dict[str, Any]] = []
        self.reject_inserts = 0
        self.next_id = 1

    def handle(self, method: str, url: str, params: Dict[str, Any] | None, payload: Any, headers: Dict[str, str]) -> httpx.Response:
        table = url.rsplit("/", 1)[-1]
        params = dict(params or {})
        self.calls.append({"method": method, "table": table, "params": params, "payload": payload, "headers": headers})
        request = httpx.Request(method, url)
        rows = self.tables.setdefault(table, [])

        if method == "GET":
            matched = [row for row in rows if self._matches(row, params)]
            offset = int(params.get("offset") or 0)
            limit = params.get("limit")
            matched = matched[offset:] if limit is None else matched[offset:offset + int(limit)]
            return httpx.Response(200, json=matched, request=request)

        if method == "DELETE":
            self.tables[table] = [row for row in rows if not self._matches(row, params)]
            return httpx.Response(204, request=request)

        if method == "POST":
            batch = payload if isinstance(payload, list) else [payload]
            if table == "rankings":
                if self.reject_inserts:
                    self.reject_inserts -= 1
                    return httpx.Response(503, json={"message": "service unavailable"}, request=request)
                taken = {(row["round_id"], row["driver_id"]) for row in rows}
                for record in batch:
                    key = (record["round_id"], record["driver_id"])
                    if key in taken:
                        return httpx.Response(
                            409,
                            json={"code": "23505", "message": "duplicate key value violates unique constraint"},
                            request=request,
                        )
                    taken.add(key)
            for record in batch:
                rows.append({**record, "id": self.next_id})
                self.next_id += 1
            return httpx.Response(201, request=request)

        return httpx.Response(405, request=request)

    @staticmethod
    def _matches(row: Dict[str, Any], params: Dict[str, Any]) -> bool:
        for key, value in params.items():
            if key in {"select", "order", "limit", "offset"}:
                continue
            if isinstance(value, str) and value.startswith("eq.") and str(row.get(key)) != value[3:]:
                return False
        return True


class _FakeClient:
    backend: _FakeSupabase

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        pass

    def __enter__(self) -> "_FakeClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        return None

    def get(self, url: str, params: Dict[str, Any] | None = None, headers: Dict[str, str] | None = None) -> httpx.Response:
        return self.backend.handle("GET", url, params, None, headers or {})

    def post(self, url: str, params: Dict[str, Any] | None = None, json: Any = None, headers: Dict[str, str] | None = None) -> httpx.Response:
        return self.backend.handle("POST", url, params, json, headers or {})

    def patch(self, url: str, params: Dict[str, Any] | None = None, json: Any = None, headers: Dict[str, str] | None = None) -> httpx.Response:
        return self.backend.handle("PATCH", url, params, json, headers or {})

    def delete(self, url: str, params: Dict[str, Any] | None = None, headers: Dict[str, str] | None = None) -> httpx.Response:
        return self.backend.handle("DELETE", url, params, None, headers or {})


@pytest.fixture(autouse=True)
def reset_env(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("SUPABASE_SERVICE_KEY", raising=False)
    monkeypatch.delenv("SUPABASE_ANON_KEY", raising=False)
    monkeypatch.delenv("SUPABASE_SCHEMA", raising=False)
    monkeypatch.delenv("SUPABASE_RANKINGS_TABLE", raising=False)
    monkeypatch.setenv("SUPABASE_URL", "https://example.supabase.co")
    monkeypatch.setenv("SUPABASE_SERVICE_ROLE_KEY", "test-key")
    yield


@pytest.fixture
def backend(monkeypatch: pytest.MonkeyPatch) -> _FakeSupabase:
    fake = _FakeSupabase()
    client_class = type("_BoundClient", (_FakeClient,), {"backend": fake})
    monkeypatch.setattr(store_module.httpx, "Client", client_class)
    return fake


def _workbook_bytes(rows: List[List[Any]]) -> bytes:
    workbook = Workbook()
    sheet = workbook.active
    for row in rows:
        sheet.append(row)
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def _ranking_calls(backend: _FakeSupabase, method: str) -> List[Dict[str, Any]]:
    return [call for call in backend.calls if call["table"] == "rankings" and call["method"] == method]


def test_import_deletes_round_then_inserts_single_batch(backend: _FakeSupabase) -> None:
    importer = RankingImporter(DataStore())

    importer.import_rankings(_workbook_bytes([["Rank", "Name"], [1, "Alice"], [2, "Bob"]]), "R1")

    deletes = _ranking_calls(backend, "DELETE")
    inserts = _ranking_calls(backend, "POST")
    assert len(deletes) == 1
    assert deletes[0]["params"] == {"round_id": "eq.R1"}
    assert len(inserts) == 1
    assert inserts[0]["headers"]["Prefer"] == "return=minimal"
    assert inserts[0]["headers"]["Authorization"] == "Bearer test-key"
    assert [row["driver_id"] for row in inserts[0]["payload"]] == [METADATA_DRIVER_ID, "Alice", "Bob"]

    stored = [row["driver_id"] for row in backend.tables["rankings"]]
    assert stored == [METADATA_DRIVER_ID, "Alice", "Bob"]
    assert backend.tables["logs"][0]["action"] == "导入数据"


def test_reimport_replaces_rows_in_remote_table(backend: _FakeSupabase) -> None:
    importer = RankingImporter(DataStore())
    backend.tables["rankings"].append(
        {"id": 900, "round_id": "R2", "driver_id": "Other", "rank": 1, "points": 0, "display_races": "{}"}
    )

    importer.import_rankings(_workbook_bytes([["Name"], ["Alice"], ["Bob"]]), "R1")
    importer.import_rankings(_workbook_bytes([["Name"], ["Cara"]]), "R1")

    round_one = [row["driver_id"] for row in backend.tables["rankings"] if row["round_id"] == "R1"]
    assert round_one == [METADATA_DRIVER_ID, "Cara"]
    assert [row["driver_id"] for row in backend.tables["rankings"] if row["round_id"] == "R2"] == ["Other"]


def test_rejected_insert_restores_snapshot(backend: _FakeSupabase) -> None:
    importer = RankingImporter(DataStore())
    importer.import_rankings(_workbook_bytes([["Name"], ["Alice"]]), "R1")
    backend.reject_inserts = 1

    with pytest.raises(PersistenceError) as excinfo:
        importer.import_rankings(_workbook_bytes([["Name"], ["Cara"]]), "R1")

    assert excinfo.value.stage == "insert"
    assert excinfo.value.restored is True
    assert "service unavailable" in str(excinfo.value)
    restored = [row["driver_id"] for row in backend.tables["rankings"] if row["round_id"] == "R1"]
    assert restored == [METADATA_DRIVER_ID, "Alice"]
    restore_call = _ranking_calls(backend, "POST")[-1]
    assert all("id" not in row for row in restore_call["payload"])


def test_unique_violation_surfaces_as_runtime_error(backend: _FakeSupabase) -> None:
    store = DataStore()
    store.insert_rankings([{"round_id": "R1", "driver_id": "Alice"}])

    with pytest.raises(RuntimeError) as excinfo:
        store.insert_rankings([{"round_id": "R1", "driver_id": "Alice"}])

    assert "duplicate key value" in str(excinfo.value)
    assert "409" in str(excinfo.value)


def test_log_write_failure_is_swallowed(backend: _FakeSupabase, monkeypatch: pytest.MonkeyPatch) -> None:
    def _refuse(method: str, url: str, params: Any, payload: Any, headers: Dict[str, str]) -> httpx.Response:
        return httpx.Response(500, json={"message": "boom"}, request=httpx.Request(method, url))

    monkeypatch.setattr(backend, "handle", _refuse)

    DataStore().add_log("新建赛事", "创建了新赛事: Spring Cup", "Spring Cup")


def test_schema_headers_follow_configuration(backend: _FakeSupabase, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SUPABASE_SCHEMA", "league")

    DataStore().fetch_rankings("R1")

    call = _ranking_calls(backend, "GET")[0]
    assert call["headers"]["Accept-Profile"] == "league"
    assert "Content-Profile" not in call["headers"]
    assert call["params"]["round_id"] == "eq.R1"
    assert call["params"]["order"] == "rank.asc,id.asc"


def test_fetch_rankings_pages_past_row_cap(backend: _FakeSupabase, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(store_module, "SUPABASE_PAGE_SIZE", 2)
    backend.tables["rankings"].extend(
        {"id": index, "round_id": "R1", "driver_id": f"Driver {index}", "rank": index} for index in range(1, 6)
    )

    rows = DataStore().fetch_rankings("R1")

    assert [row["driver_id"] for row in rows] == [f"Driver {index}" for index in range(1, 6)]
    assert [call["params"]["offset"] for call in _ranking_calls(backend, "GET")] == [0, 2, 4]


def test_restore_puts_back_rounds_larger_than_one_page(
    backend: _FakeSupabase,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(store_module, "SUPABASE_PAGE_SIZE", 2)
    importer = RankingImporter(DataStore())
    importer.import_rankings(_workbook_bytes([["Name"], ["Alice"], ["Bob"], ["Cara"], ["Dan"]]), "R1")
    backend.reject_inserts = 1

    with pytest.raises(PersistenceError) as excinfo:
        importer.import_rankings(_workbook_bytes([["Name"], ["Eve"]]), "R1")

    assert excinfo.value.restored is True
    restored = [row["driver_id"] for row in backend.tables["rankings"] if row["round_id"] == "R1"]
    assert restored == [METADATA_DRIVER_ID, "Alice", "Bob", "Cara", "Dan"]
