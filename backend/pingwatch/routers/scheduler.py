"""Scheduler control API - the boundary used by the monitor CRUD service.

The CRUD service owns monitor definitions. After it creates, updates or
deletes a monitor it notifies this API so the schedule follows.
"""
from fastapi import APIRouter, Depends, HTTPException, Request, Response

from ..schemas.scheduler import ScheduleInfo, SchedulerStatus
from ..services.scheduler import SchedulerService

router = APIRouter(prefix="/api/scheduler", tags=["scheduler"])


def get_scheduler(request: Request) -> SchedulerService:
    """Dependency returning the scheduler owned by the application."""
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Scheduler not running")
    return scheduler


@router.get("/status", response_model=SchedulerStatus)
async def get_status(scheduler: SchedulerService = Depends(get_scheduler)):
    """Scheduler metrics and monitor counts by state."""
    return scheduler.get_status()


@router.put("/monitors/{monitor_id}", response_model=ScheduleInfo)
async def monitor_changed(monitor_id: int, scheduler: SchedulerService = Depends(get_scheduler)):
    """A monitor was created or updated: reload it from the registry and reschedule."""
    monitor = await scheduler.registry.get(monitor_id)
    if monitor is None:
        scheduler.on_monitor_deleted(monitor_id)
        raise HTTPException(status_code=404, detail="Monitor not found")

    scheduler.on_monitor_updated(monitor)
    return scheduler.get_schedule(monitor_id)


@router.delete("/monitors/{monitor_id}", status_code=204)
async def monitor_deleted(monitor_id: int, scheduler: SchedulerService = Depends(get_scheduler)):
    """A monitor was deleted: cancel its schedule. Idempotent."""
    scheduler.on_monitor_deleted(monitor_id)
    return Response(status_code=204)


@router.get("/monitors/{monitor_id}", response_model=ScheduleInfo)
async def get_monitor_schedule(monitor_id: int, scheduler: SchedulerService = Depends(get_scheduler)):
    """Schedule state and health of a monitor.

    uptime_percent covers only the most recent retained check log entries.
    """
    info = scheduler.get_schedule(monitor_id)
    if info is None:
        raise HTTPException(status_code=404, detail="Monitor not scheduled")

    info.health = await scheduler.registry.get_health(monitor_id)
    return info


@router.post("/monitors/{monitor_id}/check", status_code=202, response_model=ScheduleInfo)
async def trigger_check(monitor_id: int, scheduler: SchedulerService = Depends(get_scheduler)):
    """Run a check now. 409 if the monitor is parked or already being checked."""
    if monitor_id not in scheduler.state:
        raise HTTPException(status_code=404, detail="Monitor not scheduled")
    if not scheduler.trigger(monitor_id):
        raise HTTPException(status_code=409, detail="Monitor is parked or a check is already in progress")
    return scheduler.get_schedule(monitor_id)
