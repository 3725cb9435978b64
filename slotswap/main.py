import asyncio
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from routers import events, realtime, swaps
from slotswap.config import LOG_LEVEL
from slotswap.db import init_db
from slotswap.exceptions import AppException, ConsistencyException
from slotswap.realtime import hub

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if os.getenv("SKIP_DB_INIT") != "1":
        init_db()
    hub.bind_loop(asyncio.get_running_loop())
    logger.info("Application starting up...")
    yield
    logger.info("Application shutting down...")


app = FastAPI(title="SlotSwap API", version="0.1.0", lifespan=lifespan)

app.include_router(events.router, prefix="/api/events", tags=["events"])
app.include_router(swaps.router, prefix="/api", tags=["swaps"])
app.include_router(realtime.router, tags=["realtime"])


@app.exception_handler(AppException)
async def app_exception_handler(request: Request, exc: AppException):
    if isinstance(exc, ConsistencyException):
        logger.error(f"Internal consistency fault on {request.method} {request.url.path}: {exc.message} {exc.details}")
        return JSONResponse(status_code=exc.status_code, content={"error": "Internal server error"})
    if exc.status_code >= 409:
        logger.warning(f"{request.method} {request.url.path} -> {exc.status_code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Report body validation failures as 400 with a single readable message."""
    errors = exc.errors()
    message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    message = message.removeprefix("Value error, ")
    logger.warning(f"Validation error for {request.url.path}: {message}")
    return JSONResponse(status_code=400, content={"error": message})


@app.get("/")
def root():
    return {"ok": True, "service": "slotswap-api"}
