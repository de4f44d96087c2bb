import hmac
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.config import Settings, get_settings
from app.database import get_db
from app.dependencies import get_reminder_scheduler
from app.logging_config import get_logger
from app.schemas.reminder import ReminderRunSummary
from app.services.reminder_service import ReminderScheduler

logger = get_logger("reminders")

router = APIRouter()


def _provided_secret(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization") or ""
    if auth_header.startswith("Bearer "):
        return auth_header[len("Bearer "):].strip()
    return request.headers.get("X-Internal-Cron-Secret") or request.query_params.get("secret")


def _require_cron_secret(request: Request, settings: Settings) -> None:
    expected = settings.internal_cron_secret
    if not expected:
        if settings.is_production:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
        return
    provided = _provided_secret(request) or ""
    if not hmac.compare_digest(provided.encode(), expected.encode()):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


@router.api_route("/internal/reminders/process", methods=["GET", "POST"], response_model=ReminderRunSummary)
async def process_reminders(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    scheduler: ReminderScheduler = Depends(get_reminder_scheduler),
):
    """Send due reminder jobs (one bounded batch)."""
    _require_cron_secret(request, settings)
    summary = await run_in_threadpool(scheduler.process_due, db)
    return ReminderRunSummary(**summary)
