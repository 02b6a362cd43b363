# auth.py
import logging

from fastapi import APIRouter, Depends, Form, Request, status
from fastapi.responses import JSONResponse, RedirectResponse
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from db import get_db
from errors import Forbidden, Unauthorized
from models import User
from settings import ADMIN_EMAIL

router = APIRouter()
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
logger = logging.getLogger("lms.auth")


def hash_password(p: str) -> str:
    return pwd_context.hash(p)


def verify_password(p: str, hp: str) -> bool:
    return pwd_context.verify(p, hp)


def get_current_user(request: Request, db: Session) -> User | None:
    uid = request.session.get("user_id")
    return db.get(User, uid) if uid else None


def require_user(request: Request, db: Session) -> User:
    user = get_current_user(request, db)
    if user is None:
        raise Unauthorized("Login required")
    return user


def require_admin(request: Request, db: Session) -> User:
    user = require_user(request, db)
    if not user.is_admin:
        logger.warning("admin.denied user=%s path=%s", user.id, request.url.path)
        raise Forbidden("Administrator rights required")
    return user


def user_payload(user: User) -> dict:
    return {"id": user.id, "email": user.email, "name": user.name, "is_admin": user.is_admin}


# === LOGIN ===
@router.post("/login")
def login(request: Request, email: str = Form(...), password: str = Form(...), db: Session = Depends(get_db)):
    user = db.query(User).filter(User.email == email.lower()).first()
    if not user or not verify_password(password, user.hashed_password):
        raise Unauthorized("Invalid email or password")
    request.session["user_id"] = user.id
    return RedirectResponse(url="/courses", status_code=status.HTTP_302_FOUND)


# === REGISTER ===
@router.post("/register")
def register(
    request: Request,
    email: str = Form(...),
    password: str = Form(...),
    name: str = Form(""),
    db: Session = Depends(get_db),
):
    email = email.lower()
    exists = db.query(User).filter(User.email == email).first()
    if exists:
        return JSONResponse({"detail": "Email already registered", "error": "conflict"}, status_code=409)
    user = User(
        email=email,
        name=name or email.split("@")[0],
        hashed_password=hash_password(password),
        is_admin=email == ADMIN_EMAIL,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info("user.registered id=%s admin=%s", user.id, user.is_admin)
    request.session["user_id"] = user.id
    return RedirectResponse(url="/courses", status_code=status.HTTP_302_FOUND)


# === LOGOUT ===
@router.get("/logout")
def logout(request: Request):
    request.session.clear()
    return RedirectResponse(url="/", status_code=status.HTTP_302_FOUND)


@router.get("/me")
def me(request: Request, db: Session = Depends(get_db)):
    return user_payload(require_user(request, db))
