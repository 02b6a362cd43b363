import asyncio
import logging
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from starlette.middleware.sessions import SessionMiddleware

import catalog
from admin import router as admin_router
from auth import router as auth_router
from catalog import CatalogProvider
from courses import router as courses_router
from db import Base, SessionLocal, engine
from entitlements import sweep_stale_purchases
from errors import LMSError
from logger import configure_logging, new_request_id
from models import Subject
from payments import release_checkout
from payments import router as payments_router
from settings import (
    LOG_LEVEL,
    PENDING_SWEEP_INTERVAL_SECONDS,
    SECRET_KEY,
    SEED_DEMO_DATA,
    SESSION_HTTPS_ONLY,
)

configure_logging(LOG_LEVEL)
logger = logging.getLogger("lms.main")


# --- Demo data (seed) ---
DEMO_MONTHS = ("January", "February", "March")
DEMO_VIDEOS = (
    ("Introduction to Web Development", "UB1O30fR-EE", "1:41:33"),
    ("Advanced React Concepts", "f687hBjwFcM", "2:25:39"),
    ("CSS Grid and Flexbox Mastery", "rg7Fvvl3taU", "1:11:21"),
)


def seed_demo_data(db) -> bool:
    if db.query(Subject).count():
        return False
    subject = catalog.create_subject(db, "Web Development", "Monthly web development course cards")
    for month in DEMO_MONTHS:
        card = catalog.create_course_card(db, subject.id, f"{month} 2025", price=2500)
        for title, media_ref, duration in DEMO_VIDEOS:
            catalog.add_video(db, card.id, title, media_ref=media_ref, duration=duration)
    catalog.create_course_card(db, subject.id, "Free Preview", price=0, is_free=True)
    logger.info("seed.done subject=%s", subject.id)
    return True


def sweep_once(session_factory=SessionLocal) -> int:
    db = session_factory()
    try:
        return sweep_stale_purchases(db, release=release_checkout)
    finally:
        db.close()


async def sweep_periodically(interval: float, session_factory=SessionLocal) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await run_in_threadpool(sweep_once, session_factory)
        except Exception:
            logger.exception("purchase.sweep.failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        if SEED_DEMO_DATA:
            seed_demo_data(db)
    finally:
        db.close()
    sweep_once()
    sweeper = None
    if PENDING_SWEEP_INTERVAL_SECONDS > 0:
        sweeper = asyncio.create_task(sweep_periodically(PENDING_SWEEP_INTERVAL_SECONDS))
    yield
    if sweeper is not None:
        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper


# --- App ---
app = FastAPI(title="LMS entitlements", lifespan=lifespan)
app.state.catalog = CatalogProvider()

# --- Sessions ---
app.add_middleware(
    SessionMiddleware,
    secret_key=SECRET_KEY,
    session_cookie="lms_session",
    same_site="lax",
    https_only=SESSION_HTTPS_ONLY,
)


@app.middleware("http")
async def request_id(request: Request, call_next):
    rid = new_request_id(request.headers.get("x-request-id"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = rid
    return response


@app.exception_handler(LMSError)
async def lms_error_handler(request: Request, exc: LMSError):
    if exc.status_code >= 500:
        logger.warning("request.failed path=%s error=%s detail=%s", request.url.path, exc.code, exc.message)
    return JSONResponse({"detail": exc.message, "error": exc.code}, status_code=exc.status_code)


# --- Routes ---
app.include_router(auth_router)
app.include_router(courses_router)
app.include_router(payments_router)
app.include_router(admin_router)


@app.get("/")
def home():
    return {"status": "ok"}
