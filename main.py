import os
import time
import uuid
from contextlib import asynccontextmanager

import structlog
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from pymongo.errors import PyMongoError
from structlog.contextvars import bind_contextvars, clear_contextvars

import config
import database
from errors import register_error_handlers
from logging_config import configure_logging
from routers import auth, contracts, factory, farmer, farmer_contracts, hhm, listings, orders, public, users, worker

configure_logging()
log = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        try:
            database.ensure_indexes(database.db)
        except PyMongoError as e:
            log.warning("index_setup_failed", error=str(e))
    yield
    if database.client is not None:
        database.client.close()


app = FastAPI(title="CaneHub API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    clear_contextvars()
    request_id = request.headers.get("x-request-id") or uuid.uuid4().hex[:12]
    bind_contextvars(request_id=request_id)
    started = time.perf_counter()
    response = await call_next(request)
    log.info(
        "request",
        method=request.method,
        path=request.url.path,
        status=response.status_code,
        duration_ms=round((time.perf_counter() - started) * 1000, 1),
    )
    response.headers["x-request-id"] = request_id
    return response


for module in (auth, users, listings, orders, farmer, hhm, worker, factory, contracts, farmer_contracts, public):
    app.include_router(module.router)


# Root and health
@app.get("/")
def read_root():
    return {"success": True, "message": "CaneHub API running"}


@app.get("/api/health")
def health(db=Depends(database.get_db)):
    response = {"success": True, "backend": "running", "database": "unavailable"}
    try:
        db.command("ping")
        response["database"] = "connected"
    except PyMongoError as e:
        response["database"] = f"error: {str(e)[:80]}"
    return response


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port, log_config=None)
