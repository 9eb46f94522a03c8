"""FastAPI application for the physician master calendar."""
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from . import __version__
from .database import engine, Base
from .errors import SchedulingError
from .routers import audit, calendar, cfte, fiscal_years, preferences, reports, rules, trades

logger = logging.getLogger(__name__)

# Create tables
Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="Rotation Scheduler",
    description="Physician master calendar assignment and trade negotiation",
    version=__version__,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Allow all origins in development
    allow_credentials=False,  # Must be False when allow_origins is "*"
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["*"],
)


@app.exception_handler(SchedulingError)
def scheduling_error_handler(request: Request, exc: SchedulingError):
    logger.warning("%s %s -> %d %s: %s", request.method, request.url.path,
                   exc.status_code, type(exc).__name__, exc.message)
    return JSONResponse(status_code=exc.status_code,
                        content={"detail": exc.message, "error": type(exc).__name__})


@app.exception_handler(IntegrityError)
def integrity_error_handler(request: Request, exc: IntegrityError):
    logger.warning("%s %s -> 409 IntegrityError: %s", request.method, request.url.path, exc.orig)
    return JSONResponse(status_code=409,
                        content={"detail": "Conflicting write; reload and try again", "error": "ConflictError"})


app.include_router(fiscal_years.router, prefix="/api/fiscal-years", tags=["fiscal-years"])
app.include_router(preferences.router, prefix="/api/preferences", tags=["preferences"])
app.include_router(cfte.router, prefix="/api/cfte", tags=["cfte"])
app.include_router(calendar.router, prefix="/api/calendar", tags=["calendar"])
app.include_router(trades.router, prefix="/api/trades", tags=["trades"])
app.include_router(rules.router, prefix="/api/rotation-rules", tags=["rotation-rules"])
app.include_router(reports.router, prefix="/api/reports", tags=["reports"])
app.include_router(audit.router, prefix="/api/audit", tags=["audit"])


@app.get("/")
def root():
    return {"message": "Rotation Scheduler API", "docs": "/docs"}
