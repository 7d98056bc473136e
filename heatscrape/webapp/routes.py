"""FastAPI routes for scheduler status and control."""

from fastapi import APIRouter, Request
from pydantic import BaseModel

from ..scheduler import DistributedScheduler, ScheduleMode

router = APIRouter(prefix="/api")


class ModeRequest(BaseModel):
    mode: ScheduleMode


def get_scheduler(request: Request) -> DistributedScheduler:
    return request.app.state.scheduler


@router.get("/scheduler/status")
async def scheduler_status(request: Request):
    """Current scheduler state and the next few scrapes."""
    return get_scheduler(request).get_status()


@router.get("/scheduler/shadow-stats")
async def shadow_stats(request: Request):
    """Shadow mode distribution statistics."""
    return get_scheduler(request).get_shadow_stats()


@router.get("/scheduler/preview")
async def schedule_preview(request: Request, limit: int = 50):
    """Next run times for all scrapable suppliers, soonest first."""
    sources = request.app.state.db.get_scrapable_sources()
    preview = get_scheduler(request).preview_schedule(sources)
    return {
        "total": len(preview),
        "schedule": [
            {**item, "next_run": item["next_run"].isoformat()} for item in preview[:limit]
        ],
    }


@router.post("/scheduler/mode")
async def set_scheduler_mode(request: Request, payload: ModeRequest):
    """Switch between shadow and active mode."""
    scheduler = get_scheduler(request)
    mode = scheduler.set_mode(payload.mode)
    return {"mode": mode.value}


@router.get("/backoff/stats")
async def backoff_stats(request: Request):
    """Supplier counts per scrape status."""
    return get_scheduler(request).backoff.get_backoff_stats()
