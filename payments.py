# payments.py
import logging
from dataclasses import dataclass

import stripe
from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from auth import require_user
from catalog import get_course_card
from db import get_db
from entitlements import attach_checkout_session, get_purchase_by_order, list_completed_purchases
from errors import PaymentError
from models import CourseCard, Purchase, PurchaseStatus, User
from reconciler import reconcile_dismiss, reconcile_error, reconcile_success, start_purchase
from settings import APP_DOMAIN, PAYMENT_CURRENCY, STRIPE_SECRET_KEY

router = APIRouter()
logger = logging.getLogger("lms.payments")

stripe.api_key = STRIPE_SECRET_KEY


@dataclass(frozen=True)
class PaymentRequest:
    order_id: str
    amount: int
    currency: str
    items: str
    payer_name: str
    payer_email: str
    return_url: str
    cancel_url: str


def build_payment_request(card: CourseCard, user: User, order_id: str) -> PaymentRequest:
    return PaymentRequest(
        order_id=order_id,
        amount=card.price,
        currency=PAYMENT_CURRENCY,
        items=card.name,
        payer_name=user.name,
        payer_email=user.email,
        return_url=f"{APP_DOMAIN}/payment/success?order_id={order_id}&session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{APP_DOMAIN}/payment/cancel?order_id={order_id}",
    )


@dataclass(frozen=True)
class Checkout:
    session_id: str
    url: str


def create_checkout(req: PaymentRequest) -> Checkout:
    """Open a Stripe Checkout session for ``req``."""
    try:
        session = stripe.checkout.Session.create(
            payment_method_types=["card"],
            mode="payment",
            client_reference_id=req.order_id,
            customer_email=req.payer_email,
            metadata={"order_id": req.order_id, "payer_name": req.payer_name},
            line_items=[{
                "price_data": {
                    "currency": req.currency,
                    "product_data": {"name": req.items},
                    "unit_amount": req.amount * 100,
                },
                "quantity": 1,
            }],
            success_url=req.return_url,
            cancel_url=req.cancel_url,
        )
    except stripe.StripeError as e:
        raise PaymentError(f"Checkout could not be started: {e.user_message or e}") from e
    return Checkout(session.id, session.url)


def confirm_checkout(session_id: str, order_id: str) -> str:
    """Check with Stripe that ``session_id`` paid for ``order_id``; return the payment reference."""
    try:
        session = stripe.checkout.Session.retrieve(session_id)
    except stripe.StripeError as e:
        raise PaymentError(f"Payment could not be verified: {e.user_message or e}") from e
    if session.client_reference_id != order_id:
        raise PaymentError(f"Checkout session does not belong to order '{order_id}'")
    if session.payment_status != "paid":
        raise PaymentError(f"Order '{order_id}' is not paid")
    return session.payment_intent or session.id


def expire_checkout(session_id: str) -> bool:
    """Close an open Checkout session so it can no longer be paid.

    Returns False when the session was already completed, i.e. the order is paid.
    """
    try:
        session = stripe.checkout.Session.retrieve(session_id)
        if session.status == "open":
            session = stripe.checkout.Session.expire(session_id)
    except stripe.StripeError as e:
        raise PaymentError(f"Checkout session could not be closed: {e.user_message or e}") from e
    return session.status != "complete"


def release_checkout(purchase: Purchase) -> bool:
    """Sweep hook: expire the purchase's checkout; False keeps a paid or unreachable one pending."""
    if not purchase.checkout_session_id:
        return True
    try:
        return expire_checkout(purchase.checkout_session_id)
    except PaymentError as e:
        logger.warning("checkout.expire_failed order=%s detail=%s", purchase.order_id, e.message)
        return False


def _complete(db: Session, user: User, order_id: str, session_id: str) -> dict:
    payment_ref = confirm_checkout(session_id, order_id)
    result = reconcile_success(db, user.id, order_id, payment_ref)
    return {
        "status": "completed",
        "order_id": result.order_id,
        "purchase_id": result.purchase_id,
        "course_card_id": result.course_card_id,
        "already_completed": not result.changed,
    }


# === PAYMENTS ===
@router.post("/course/{card_id}/buy")
def buy_course(card_id: str, request: Request, db: Session = Depends(get_db)):
    user = require_user(request, db)
    card = get_course_card(db, card_id)
    if card.is_free or card.id in list_completed_purchases(db, user.id):
        return RedirectResponse(url="/courses", status_code=303)

    purchase = start_purchase(db, user.id, card.id)
    req = build_payment_request(card, user, purchase.order_id)
    try:
        checkout = create_checkout(req)
    except PaymentError as e:
        reconcile_error(db, user.id, purchase.order_id, e.message)
    attach_checkout_session(db, purchase.id, checkout.session_id)
    logger.info("checkout.started order=%s user=%s card=%s", purchase.order_id, user.id, card.id)
    return RedirectResponse(checkout.url, status_code=303)


@router.get("/payment/success")
def payment_success(order_id: str, session_id: str, request: Request, db: Session = Depends(get_db)):
    user = require_user(request, db)
    return _complete(db, user, order_id, session_id)


@router.get("/payment/cancel")
def payment_cancel(request: Request, order_id: str | None = None, db: Session = Depends(get_db)):
    user = require_user(request, db)
    purchase = get_purchase_by_order(db, order_id) if order_id else None
    if (
        purchase is not None
        and purchase.user_id == user.id
        and purchase.status == PurchaseStatus.PENDING
        and purchase.checkout_session_id
        and not expire_checkout(purchase.checkout_session_id)
    ):
        # paid before the user came back through the cancel link
        logger.info("checkout.cancel_after_payment order=%s", order_id)
        return _complete(db, user, order_id, purchase.checkout_session_id)
    result = reconcile_dismiss(db, user.id, order_id)
    return {"status": "cancelled", "order_id": order_id, "purchase_status": result.status.value if result else None}


@router.post("/payment/error")
def payment_error(
    request: Request,
    order_id: str | None = Form(None),
    message: str = Form(""),
    db: Session = Depends(get_db),
):
    user = require_user(request, db)
    reconcile_error(db, user.id, order_id, message)
