from fastapi import Depends, FastAPI
from sqlalchemy import text
from sqlalchemy.orm import Session

from crm_automation.config import settings
from crm_automation.database import get_db, init_db
from crm_automation.logging_config import get_logger, setup_logging
from crm_automation.routers import automation, conversations, followups, webhook

setup_logging(settings.log_level)
logger = get_logger("main")

app = FastAPI(
    title="CRM Automation",
    description="Lead-engagement automation core: rules, qualification state, idempotent sends, follow-ups",
    version="0.1.0",
)

app.include_router(webhook.router)
app.include_router(automation.router)
app.include_router(followups.router)
app.include_router(conversations.router)


@app.on_event("startup")
def create_tables() -> None:
    if settings.auto_create_tables:
        init_db()
        logger.info("Database tables ensured")


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/db-check")
def db_check(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return {"status": "ok"}
