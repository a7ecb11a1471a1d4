from __future__ import annotations

import datetime as dt
import logging
import os
from functools import lru_cache
from typing import Any, Dict, List, Optional, Tuple

import httpx
from fastapi import APIRouter, Depends, FastAPI, File, Header, HTTPException, Query, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from pydantic import BaseModel, ConfigDict, Field

from ranking_core import DataStore, PersistenceError, RankingImporter
from ranking_core.overview import driver_stats
from ranking_core.table import (
    Column,
    DriverRow,
    apply_driver_edit,
    columns_for,
    export_csv,
    filter_rows,
    load_round_table,
    sort_rows,
)

app = FastAPI(title="League Ranking Admin API", version="1.0.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

logger = logging.getLogger(__name__)


class SeriesCreatePayload(BaseModel):
    name: str
    description: Optional[str] = None


class RenamePayload(BaseModel):
    name: str


class SeriesResponseModel(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    created_at: Optional[str] = Field(default=None, alias="createdAt")

    model_config = ConfigDict(populate_by_name=True)


class RoundResponseModel(BaseModel):
    id: str
    series_id: str = Field(alias="seriesId")
    name: str
    sequence: int = 0
    created_at: Optional[str] = Field(default=None, alias="createdAt")

    model_config = ConfigDict(populate_by_name=True)


class RoundSummaryModel(BaseModel):
    id: str
    name: str


class TournamentModel(BaseModel):
    id: str
    name: str
    rounds: List[RoundSummaryModel]


class TournamentListResponse(BaseModel):
    tournaments: List[TournamentModel]


class ColumnModel(BaseModel):
    key: str
    label: str
    sortable: bool = False


class DriverModel(BaseModel):
    id: str
    rank: int
    name: str
    team: str
    car: str
    best_lap: str = Field(alias="bestLap")
    points: int
    safety_score: int = Field(alias="safetyScore")
    podiums: int
    finished_races: int = Field(alias="finishedRaces")
    total_races: int = Field(alias="totalRaces")
    raw_data: Dict[str, Any] = Field(alias="rawData")

    model_config = ConfigDict(populate_by_name=True)


class RoundRankingsResponse(BaseModel):
    round_id: str = Field(alias="roundId")
    columns: List[ColumnModel]
    has_layout: bool = Field(alias="hasLayout")
    drivers: List[DriverModel]

    model_config = ConfigDict(populate_by_name=True)


class DriverEditPayload(BaseModel):
    raw_data: Dict[str, Any] = Field(alias="rawData")

    model_config = ConfigDict(populate_by_name=True)


class ImportPreviewResponse(BaseModel):
    headers: List[str]
    rows: List[Dict[str, Any]]
    total_rows: int = Field(alias="totalRows")

    model_config = ConfigDict(populate_by_name=True)


class ImportResponse(BaseModel):
    round_id: str = Field(alias="roundId")
    columns: List[str]
    imported: int
    renamed: Dict[str, str]

    model_config = ConfigDict(populate_by_name=True)


class OverviewResponse(BaseModel):
    tournament_count: int = Field(alias="tournamentCount")
    round_count: int = Field(alias="roundCount")
    total_drivers: int = Field(alias="totalDrivers")
    new_drivers: int = Field(alias="newDrivers")
    old_drivers: int = Field(alias="oldDrivers")
    trend: int
    last_update: Optional[str] = Field(default=None, alias="lastUpdate")

    model_config = ConfigDict(populate_by_name=True)


class LogEntryModel(BaseModel):
    id: Optional[str] = None
    action: str
    details: Optional[str] = None
    tournament_name: Optional[str] = Field(default=None, alias="tournamentName")
    created_at: Optional[str] = Field(default=None, alias="createdAt")

    model_config = ConfigDict(populate_by_name=True)


class LogListResponse(BaseModel):
    logs: List[LogEntryModel]


@lru_cache(maxsize=1)
def store() -> DataStore:
    return DataStore()


def require_user(authorization: str = Header(default="")) -> Dict[str, Any]:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Authorization token is required")

    token = authorization.split(" ", 1)[1].strip()
    if not token:
        raise HTTPException(status_code=401, detail="Authorization token is required")

    supabase_url = os.getenv("SUPABASE_URL", "").rstrip("/")
    supabase_anon_key = os.getenv("SUPABASE_ANON_KEY") or os.getenv("SUPABASE_SERVICE_KEY")
    if not supabase_url or not supabase_anon_key:
        raise HTTPException(status_code=500, detail="Supabase configuration is incomplete")

    endpoint = f"{supabase_url}/auth/v1/user"
    headers = {
        "Authorization": f"Bearer {token}",
        "apikey": supabase_anon_key,
    }

    try:
        with httpx.Client(timeout=10.0) as client:
            response = client.get(endpoint, headers=headers)
            response.raise_for_status()
            payload = response.json()
    except httpx.HTTPStatusError as exc:
        status = exc.response.status_code if exc.response is not None else 502
        if status in (401, 403):
            raise HTTPException(status_code=401, detail="Invalid authentication token") from exc
        raise HTTPException(status_code=502, detail="Failed to verify authentication token") from exc
    except httpx.HTTPError as exc:
        raise HTTPException(status_code=502, detail="Failed to verify authentication token") from exc

    user_id = str(payload.get("id") or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid authentication token")

    payload["id"] = user_id
    return payload


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, ValueError):
        status = 404 if str(exc).endswith("not found") else 400
        return HTTPException(status_code=status, detail=str(exc))
    return HTTPException(status_code=502, detail=str(exc))


def _round_context(round_id: str) -> Tuple[Dict[str, Any], Optional[Dict[str, Any]]]:
    try:
        round_row = store().fetch_round(round_id)
        if round_row is None:
            raise HTTPException(status_code=404, detail="Round not found")
        series = next(
            (row for row in store().fetch_series() if row.get("id") == round_row.get("series_id")),
            None,
        )
    except RuntimeError as exc:
        raise _http_error(exc) from exc
    return round_row, series


def _column_model(column: Column) -> ColumnModel:
    return ColumnModel(key=column.key, label=column.label, sortable=column.sortable)


def _driver_model(row: DriverRow) -> DriverModel:
    return DriverModel(
        id=row.id,
        rank=row.rank,
        name=row.name,
        team=row.team,
        car=row.car,
        bestLap=row.best_lap,
        points=row.points,
        safetyScore=row.safety_score,
        podiums=row.podiums,
        finishedRaces=row.finished_races,
        totalRaces=row.total_races,
        rawData=row.raw_data,
    )


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


admin = APIRouter(dependencies=[Depends(require_user)])


@admin.get("/tournaments", response_model=TournamentListResponse)
def list_tournaments():
    try:
        tournaments = store().fetch_tournaments()
    except RuntimeError as exc:
        raise _http_error(exc) from exc
    return TournamentListResponse(tournaments=[TournamentModel(**item) for item in tournaments])


@admin.post("/series", response_model=SeriesResponseModel, status_code=201)
def create_series(payload: SeriesCreatePayload):
    try:
        record = store().create_series(payload.name, payload.description)
    except (ValueError, RuntimeError) as exc:
        raise _http_error(exc) from exc
    store().add_log("新建赛事", f"创建了新赛事: {record['name']}", record["name"])
    return SeriesResponseModel(**record)


@admin.patch("/series/{series_id}", response_model=SeriesResponseModel)
def rename_series(series_id: str, payload: RenamePayload):
    try:
        record = store().rename_series(series_id, payload.name)
    except (ValueError, RuntimeError) as exc:
        raise _http_error(exc) from exc
    store().add_log("重命名赛事", f"将赛事重命名为: {record['name']}", record["name"])
    return SeriesResponseModel(**record)


@admin.delete("/series/{series_id}", status_code=204)
def delete_series(series_id: str):
    try:
        store().delete_series(series_id)
    except (ValueError, RuntimeError) as exc:
        raise _http_error(exc) from exc
    store().add_log("删除赛事", f"删除了赛事ID: {series_id}")
    return Response(status_code=204)


@admin.post("/series/{series_id}/rounds", response_model=RoundResponseModel, status_code=201)
def create_round(series_id: str, payload: RenamePayload):
    try:
        record = store().create_round(series_id, payload.name)
        series_name = next(
            (row.get("name") for row in store().fetch_series() if row.get("id") == series_id),
            None,
        )
    except (ValueError, RuntimeError) as exc:
        raise _http_error(exc) from exc
    store().add_log("新建赛程", f"在赛事 [{series_name}] 中创建了新赛程: {record['name']}", series_name)
    return RoundResponseModel(**record)


@admin.patch("/rounds/{round_id}", response_model=RoundResponseModel)
def rename_round(round_id: str, payload: RenamePayload):
    try:
        record = store().rename_round(round_id, payload.name)
    except (ValueError, RuntimeError) as exc:
        raise _http_error(exc) from exc
    store().add_log("重命名赛程", f"将赛程重命名为: {record['name']}")
    return RoundResponseModel(**record)


@admin.delete("/rounds/{round_id}", status_code=204)
def delete_round(round_id: str):
    try:
        store().delete_round(round_id)
    except (ValueError, RuntimeError) as exc:
        raise _http_error(exc) from exc
    store().add_log("删除赛程", f"删除了赛程ID: {round_id}")
    return Response(status_code=204)


@admin.get("/rounds/{round_id}/rankings", response_model=RoundRankingsResponse)
def round_rankings(
    round_id: str,
    q: Optional[str] = Query(default=None),
    sort: Optional[str] = Query(default=None),
    desc: bool = Query(default=False),
):
    _, series = _round_context(round_id)
    try:
        layout, drivers = load_round_table(store().fetch_rankings(round_id))
    except RuntimeError as exc:
        raise _http_error(exc) from exc
    columns = columns_for(layout, (series or {}).get("name"))
    drivers = sort_rows(filter_rows(drivers, q), sort, desc)
    return RoundRankingsResponse(
        roundId=round_id,
        columns=[_column_model(column) for column in columns],
        hasLayout=layout is not None,
        drivers=[_driver_model(row) for row in drivers],
    )


@admin.get("/rounds/{round_id}/rankings.csv")
def export_round_rankings(
    round_id: str,
    q: Optional[str] = Query(default=None),
    sort: Optional[str] = Query(default=None),
    desc: bool = Query(default=False),
):
    _, series = _round_context(round_id)
    try:
        layout, drivers = load_round_table(store().fetch_rankings(round_id))
        content = export_csv(
            sort_rows(filter_rows(drivers, q), sort, desc),
            columns_for(layout, (series or {}).get("name")),
        )
    except (ValueError, RuntimeError) as exc:
        raise _http_error(exc) from exc
    filename = f"export_{dt.date.today().isoformat()}.csv"
    return Response(
        content=content.encode("utf-8"),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@admin.delete("/rounds/{round_id}/rankings", status_code=204)
def clear_round_rankings(round_id: str):
    round_row, series = _round_context(round_id)
    try:
        store().delete_rankings(round_id)
    except RuntimeError as exc:
        raise _http_error(exc) from exc
    store().add_log(
        "清空数据",
        f"清空了赛程 [{round_row.get('name')}] 的所有排名数据",
        (series or {}).get("name"),
    )
    return Response(status_code=204)


@admin.patch("/rankings/{ranking_id}", response_model=DriverModel)
def edit_driver(ranking_id: str, payload: DriverEditPayload):
    try:
        row = store().update_ranking(ranking_id, apply_driver_edit(payload.raw_data))
    except (ValueError, RuntimeError) as exc:
        raise _http_error(exc) from exc
    store().add_log("更新车手", f"更新了车手 [{row.get('driver_id')}] 的数据")
    _, drivers = load_round_table([row])
    return _driver_model(drivers[0])


@admin.post("/imports/preview", response_model=ImportPreviewResponse)
def preview_import(file: UploadFile = File(...)):
    content = file.file.read()
    try:
        preview = RankingImporter(store()).preview(content, file.filename)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return ImportPreviewResponse(
        headers=preview.headers,
        rows=jsonable_encoder(preview.rows),
        totalRows=preview.total_rows,
    )


@admin.post("/imports", response_model=ImportResponse)
def import_rankings(
    file: UploadFile = File(...),
    round_id: Optional[str] = Query(default=None, alias="roundId"),
):
    round_row: Dict[str, Any] = {}
    series: Optional[Dict[str, Any]] = None
    if round_id and round_id.strip():
        round_row, series = _round_context(round_id.strip())

    content = file.file.read()
    try:
        result = RankingImporter(store()).import_rankings(
            content,
            round_id,
            file.filename,
            round_name=round_row.get("name"),
            tournament_name=(series or {}).get("name"),
        )
    except PersistenceError as exc:
        logger.error("Ranking import for round %s failed at %s: %s", round_id, exc.stage, exc)
        raise _http_error(exc) from exc
    except ValueError as exc:
        raise _http_error(exc) from exc
    return ImportResponse(
        roundId=result.round_id,
        columns=result.columns,
        imported=result.imported,
        renamed=result.renamed,
    )


@admin.get("/overview", response_model=OverviewResponse)
def overview(series_id: Optional[str] = Query(default=None, alias="seriesId")):
    try:
        tournaments = store().fetch_tournaments()
        if series_id:
            tournaments = [item for item in tournaments if item["id"] == series_id]
            round_ids = [round_item["id"] for item in tournaments for round_item in item["rounds"]]
            index = store().fetch_ranking_index(round_ids)
        else:
            index = store().fetch_ranking_index()
    except RuntimeError as exc:
        raise _http_error(exc) from exc

    stats = driver_stats(index)
    return OverviewResponse(
        tournamentCount=len(tournaments),
        roundCount=sum(len(item["rounds"]) for item in tournaments),
        **stats,
    )


@admin.get("/logs", response_model=LogListResponse)
def list_logs(limit: int = Query(default=50, ge=1, le=200)):
    try:
        logs = store().fetch_logs(limit)
    except RuntimeError as exc:
        raise _http_error(exc) from exc
    return LogListResponse(
        logs=[
            LogEntryModel(
                id=str(item["id"]) if item.get("id") is not None else None,
                action=str(item.get("action") or ""),
                details=item.get("details"),
                tournamentName=item.get("tournament_name"),
                createdAt=item.get("created_at"),
            )
            for item in logs
        ]
    )


app.include_router(admin)
