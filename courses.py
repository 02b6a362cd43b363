# courses.py
import asyncio
import logging

from fastapi import APIRouter, Depends, Request, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from access import evaluate
from auth import get_current_user, require_user
from catalog import get_subject, get_video, load_course_cards, load_progress, load_subjects
from db import get_db
from entitlements import list_completed_purchases, play_video
from errors import NotFound
from live_view import (
    LiveViewProjector,
    cards_by_subject,
    current_month_card,
    find_card,
    project,
    video_with_progress,
    view_payload,
)

router = APIRouter()
logger = logging.getLogger("lms.courses")


def build_view(db: Session, user_id: str | None):
    progress = load_progress(db, user_id) if user_id else []
    purchased = list_completed_purchases(db, user_id) if user_id else set()
    return project(load_subjects(db), load_course_cards(db), progress, purchased)


@router.get("/courses")
def courses_index(request: Request, db: Session = Depends(get_db)):
    user = get_current_user(request, db)
    return view_payload(build_view(db, user.id if user else None))


@router.get("/subjects/{subject_id}/courses")
def subject_courses(subject_id: str, request: Request, db: Session = Depends(get_db)):
    get_subject(db, subject_id)
    user = get_current_user(request, db)
    view = build_view(db, user.id if user else None)
    return {"subject_id": subject_id, "cards": cards_by_subject(view, subject_id)}


@router.get("/courses/current")
def current_course(request: Request, db: Session = Depends(get_db)):
    user = get_current_user(request, db)
    return {"card": current_month_card(build_view(db, user.id if user else None).cards)}


@router.get("/videos/{video_id}")
def video_detail(video_id: str, request: Request, db: Session = Depends(get_db)):
    user = require_user(request, db)
    view = build_view(db, user.id)
    video = video_with_progress(view, video_id)
    if video is None:
        raise NotFound("Video", video_id)
    card = find_card(view, video.course_card_id)
    decision = evaluate(video, card, video, view.purchased)
    return {
        "video": video,
        "can_play": decision.allowed,
        "reason": decision.reason,
        "plays_left": decision.plays_left,
    }


@router.post("/videos/{video_id}/play")
def play(video_id: str, request: Request, db: Session = Depends(get_db)):
    user = require_user(request, db)
    progress = play_video(db, user.id, video_id)
    max_plays = get_video(db, video_id).max_plays
    return {
        "video_id": video_id,
        "plays_used": progress.plays_used,
        "max_plays": max_plays,
        "plays_left": max_plays - progress.plays_used,
    }


# === LIVE VIEW ===
def _offer(queue: asyncio.Queue, item) -> None:
    # only the newest view matters; drop the oldest when the client lags
    if queue.full():
        queue.get_nowait()
    queue.put_nowait(item)


async def _pump(websocket: WebSocket, queue: asyncio.Queue) -> None:
    while True:
        view = await queue.get()
        await websocket.send_json(view_payload(view))


async def _stop(sender: asyncio.Task) -> None:
    """Cancel the sender and collect its outcome, including a failed send."""
    sender.cancel()
    try:
        await sender
    except asyncio.CancelledError:
        pass
    except Exception:
        logger.warning("ws.send_failed", exc_info=True)


@router.websocket("/ws/courses")
async def live_courses(websocket: WebSocket):
    await websocket.accept()
    user_id = websocket.session.get("user_id")
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue(maxsize=16)

    projector = LiveViewProjector(
        websocket.app.state.catalog,
        user_id,
        on_change=lambda view: loop.call_soon_threadsafe(_offer, queue, view),
    )
    await run_in_threadpool(projector.start)
    sender = asyncio.create_task(_pump(websocket, queue))
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        await _stop(sender)
        projector.close()
