# admin.py
from fastapi import APIRouter, Depends, Form, Request
from sqlalchemy.orm import Session

import catalog
import entitlements
from auth import require_admin
from db import get_db
from payments import release_checkout
from settings import DEFAULT_MAX_PLAYS

router = APIRouter(prefix="/admin")


def _subject(s):
    return {"id": s.id, "name": s.name, "description": s.description}


def _card(c):
    return {
        "id": c.id,
        "subject_id": c.subject_id,
        "name": c.name,
        "description": c.description,
        "price": c.price,
        "is_free": c.is_free,
    }


def _video(v):
    return {
        "id": v.id,
        "course_card_id": v.course_card_id,
        "title": v.title,
        "description": v.description,
        "media_ref": v.media_ref,
        "duration": v.duration,
        "max_plays": v.max_plays,
    }


# === SUBJECTS ===
@router.post("/subjects", status_code=201)
def create_subject(
    request: Request,
    name: str = Form(...),
    description: str | None = Form(None),
    db: Session = Depends(get_db),
):
    require_admin(request, db)
    return _subject(catalog.create_subject(db, name, description))


@router.put("/subjects/{subject_id}")
def update_subject(
    subject_id: str,
    request: Request,
    name: str | None = Form(None),
    description: str | None = Form(None),
    db: Session = Depends(get_db),
):
    require_admin(request, db)
    return _subject(catalog.update_subject(db, subject_id, name=name, description=description))


@router.delete("/subjects/{subject_id}")
def delete_subject(subject_id: str, request: Request, db: Session = Depends(get_db)):
    require_admin(request, db)
    entitlements.delete_subject(db, subject_id)
    return {"status": "ok", "deleted": subject_id}


# === COURSE CARDS ===
@router.post("/subjects/{subject_id}/cards", status_code=201)
def create_card(
    subject_id: str,
    request: Request,
    name: str = Form(...),
    price: int = Form(0),
    is_free: bool = Form(False),
    description: str | None = Form(None),
    db: Session = Depends(get_db),
):
    require_admin(request, db)
    return _card(catalog.create_course_card(db, subject_id, name, price, is_free, description))


@router.put("/cards/{card_id}")
def update_card(
    card_id: str,
    request: Request,
    name: str | None = Form(None),
    price: int | None = Form(None),
    is_free: bool | None = Form(None),
    description: str | None = Form(None),
    subject_id: str | None = Form(None),
    db: Session = Depends(get_db),
):
    require_admin(request, db)
    card = catalog.update_course_card(
        db, card_id, name=name, price=price, is_free=is_free, description=description, subject_id=subject_id
    )
    return _card(card)


@router.delete("/cards/{card_id}")
def delete_card(card_id: str, request: Request, db: Session = Depends(get_db)):
    require_admin(request, db)
    entitlements.delete_course_card(db, card_id)
    return {"status": "ok", "deleted": card_id}


# === VIDEOS ===
@router.post("/cards/{card_id}/videos", status_code=201)
def add_video(
    card_id: str,
    request: Request,
    title: str = Form(...),
    description: str = Form(""),
    media_ref: str | None = Form(None),
    duration: str = Form(""),
    max_plays: int = Form(DEFAULT_MAX_PLAYS),
    db: Session = Depends(get_db),
):
    require_admin(request, db)
    return _video(catalog.add_video(db, card_id, title, description, media_ref, duration, max_plays))


@router.put("/videos/{video_id}")
def update_video(
    video_id: str,
    request: Request,
    title: str | None = Form(None),
    description: str | None = Form(None),
    media_ref: str | None = Form(None),
    duration: str | None = Form(None),
    max_plays: int | None = Form(None),
    db: Session = Depends(get_db),
):
    require_admin(request, db)
    video = catalog.update_video(
        db, video_id, title=title, description=description, media_ref=media_ref, duration=duration, max_plays=max_plays
    )
    return _video(video)


@router.delete("/videos/{video_id}")
def delete_video(video_id: str, request: Request, db: Session = Depends(get_db)):
    require_admin(request, db)
    entitlements.delete_video(db, video_id)
    return {"status": "ok", "deleted": video_id}


# === PURCHASES ===
@router.post("/purchases/sweep")
def sweep_purchases(request: Request, db: Session = Depends(get_db)):
    """Fail pending purchases whose checkout was abandoned."""
    require_admin(request, db)
    return {"status": "ok", "failed": entitlements.sweep_stale_purchases(db, release=release_checkout)}
