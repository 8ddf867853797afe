import logging
import sys
import time
import uuid

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from sales_ledger.config import settings
from sales_ledger.routers import connections, sales
from sales_ledger.utils.logger import logger

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s :: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
    force=True,
)

app = FastAPI(title="Sales Ledger API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    max_age=3600,
)


@app.middleware("http")
async def request_logger(request: Request, call_next):
    rid = uuid.uuid4().hex[:8]
    request.state.rid = rid
    started = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception:
        logger.exception(f"{request.method} {request.url.path} failed rid={rid}")
        response = JSONResponse({"error": "internal_error", "rid": rid}, status_code=500)
    elapsed_ms = (time.perf_counter() - started) * 1000
    logger.info(f"{request.method} {request.url.path} {response.status_code} {elapsed_ms:.0f}ms rid={rid}")
    response.headers["X-Request-ID"] = rid
    return response


app.include_router(sales.router)
app.include_router(connections.router)


@app.on_event("startup")
async def startup_event():
    if settings.DATABASE_URL.startswith("sqlite"):
        # Local runs skip Alembic; create the tables directly.
        from sales_ledger.models_sqlalchemy import Base, engine
        from sales_ledger.models_sqlalchemy import models  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Using SQLite database - tables created if missing")
    else:
        logger.info("Using PostgreSQL database - schema is managed by Alembic")
    logger.info("Sales Ledger API started")


@app.get("/")
async def root():
    return {"message": "Sales Ledger API", "version": "1.0.0"}


@app.get("/health")
async def health_check():
    return {"status": "healthy"}
