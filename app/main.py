import os

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from app.config import settings
from app.database import get_db
from app.logging_config import setup_logging
from app.models import Client, Lead, Message, ReminderJob
from app.routers import leads, reminders, webhook

setup_logging(settings.log_level)

app = FastAPI(
    title="LeadOS Engine",
    description="WhatsApp lead qualification engine: deterministic flows, escalation and reminders",
    version="0.1.0",
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook.router)
app.include_router(reminders.router)
app.include_router(leads.router)


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/db-check")
def db_check(db: Session = Depends(get_db)):
    return {
        "status": "ok",
        "clients": db.query(Client).count(),
        "leads": db.query(Lead).count(),
        "messages": db.query(Message).count(),
        "reminder_jobs": db.query(ReminderJob).count(),
    }
