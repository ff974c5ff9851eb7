"""
Logs API Routes

Query, summarise, clear and export the in-process log buffer.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response

from chatrelay.core.log_aggregator import LogEntry, LogFilter, LogLevel, LogStats, LogTrendPoint
from chatrelay.core.runtime import Runtime, get_runtime

router = APIRouter()


@router.get("/", response_model=List[LogEntry])
def get_logs(
    level: Optional[LogLevel] = None,
    keyword: Optional[str] = None,
    start_time: Optional[int] = None,
    end_time: Optional[int] = None,
    offset: int = Query(0, ge=0),
    limit: Optional[int] = Query(None, ge=1),
    runtime: Runtime = Depends(get_runtime),
):
    return runtime.logs.query(LogFilter(
        level=level,
        keyword=keyword,
        start_time=start_time,
        end_time=end_time,
        offset=offset,
        limit=limit,
    ))


@router.get("/stats", response_model=LogStats)
def get_log_stats(runtime: Runtime = Depends(get_runtime)):
    return runtime.logs.stats()


@router.get("/trend", response_model=List[LogTrendPoint])
def get_log_trend(
    days: int = Query(7, ge=1, le=90),
    account_id: Optional[str] = None,
    runtime: Runtime = Depends(get_runtime),
):
    if account_id is not None:
        runtime.pool.get_account(account_id)
    return runtime.logs.trend(days, account_id=account_id)


@router.get("/export")
def export_logs(format: str = "json", runtime: Runtime = Depends(get_runtime)):
    try:
        content = runtime.logs.export(format)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    media_type = "application/json" if format == "json" else "text/plain"
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="chatrelay-logs.{format}"'},
    )


@router.delete("/")
def clear_logs(runtime: Runtime = Depends(get_runtime)):
    runtime.logs.clear()
    return {"ok": True}


@router.get("/{entry_id}", response_model=LogEntry)
def get_log_entry(entry_id: str, runtime: Runtime = Depends(get_runtime)):
    entry = runtime.logs.get(entry_id)
    if entry is None:
        raise HTTPException(status_code=404, detail="Log entry not found")
    return entry
