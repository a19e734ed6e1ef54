"""ASGI entrypoint wiring the billing webhook, store and expiration sweep."""
from __future__ import annotations

import logging

import psycopg2
from dotenv import load_dotenv
from fastapi import FastAPI

from subledger import app_context
from subledger.app.routes.billing import router as billing_router
from subledger.app.services.billing import get_billing_config
from subledger.sweeps import shutdown_sweep_scheduler, start_sweep_scheduler

load_dotenv()

logger = logging.getLogger("subledger")

CONFIG = get_billing_config()


def get_conn():
    return psycopg2.connect(**CONFIG.db)


app_context.configure(get_conn=get_conn)

if not CONFIG.webhook_secret:
    logger.warning("WEBHOOK_SECRET is not set; every webhook delivery will be rejected")

app = FastAPI(title="Subledger Billing API")

app.include_router(billing_router)


@app.on_event("startup")
def start_background_sweep() -> None:
    start_sweep_scheduler(CONFIG)


@app.on_event("shutdown")
def stop_background_sweep() -> None:
    shutdown_sweep_scheduler()

# run: uvicorn subledger.main:app --host 127.0.0.1 --port 8000 --reload
