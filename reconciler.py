# reconciler.py
"""Turns payment-provider callbacks into purchase state.

Order ids look like ``ORDER_1700000000000_<courseCardId>``: prefix, epoch
milliseconds, card id. They are minted when checkout starts, together with a
pending ``Purchase`` that carries the same order id, and the order id is the
dedup key for every callback afterwards:

- success completes the purchase once; replays find it completed and no-op
- dismiss fails a still-pending purchase, or does nothing
- error fails a still-pending purchase and re-raises as ``PaymentError``

Anything that does not parse, or that disagrees with the stored purchase
(other user, other card), is rejected rather than guessed at.
"""
import logging
import re
import time
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from entitlements import (
    create_purchase,
    get_purchase_by_order,
    list_completed_purchases,
    set_purchase_status,
)
from errors import InvalidOrderId, NotFound, PaymentError, ValidationError
from models import CourseCard, Purchase, PurchaseStatus
from settings import ORDER_PREFIX

logger = logging.getLogger("lms.reconciler")

_ORDER_ATTEMPTS = 5

_ORDER_RE = re.compile(r"^(?P<prefix>[A-Za-z]+)_(?P<ts>\d{1,16})_(?P<card>[A-Za-z0-9-]+)$")


@dataclass(frozen=True)
class OrderRef:
    prefix: str
    timestamp_ms: int
    course_card_id: str


@dataclass(frozen=True)
class Reconciliation:
    order_id: str
    purchase_id: str
    course_card_id: str
    status: PurchaseStatus
    changed: bool


def new_order_id(course_card_id: str, now_ms: Optional[int] = None, prefix: str = ORDER_PREFIX) -> str:
    now_ms = int(time.time() * 1000) if now_ms is None else now_ms
    order_id = f"{prefix}_{now_ms}_{course_card_id}"
    # card ids that do not survive the round trip would make the callback unreadable
    parse_order_id(order_id, prefix=prefix)
    return order_id


def parse_order_id(order_id: Optional[str], prefix: str = ORDER_PREFIX) -> OrderRef:
    m = _ORDER_RE.match(order_id or "")
    if not m or m.group("prefix") != prefix:
        raise InvalidOrderId(order_id or "")
    return OrderRef(m.group("prefix"), int(m.group("ts")), m.group("card"))


def _check_owner(purchase: Purchase, user_id: str, ref: OrderRef) -> None:
    if purchase.user_id != user_id:
        logger.warning("reconcile.owner_mismatch order=%s user=%s", purchase.order_id, user_id)
        raise PaymentError(f"Order '{purchase.order_id}' does not belong to this user")
    if purchase.course_card_id != ref.course_card_id:
        logger.warning("reconcile.card_mismatch order=%s card=%s", purchase.order_id, ref.course_card_id)
        raise PaymentError(f"Order '{purchase.order_id}' does not match course card '{ref.course_card_id}'")


def start_purchase(db: Session, user_id: str, course_card_id: str, now_ms: Optional[int] = None) -> Purchase:
    """Mint an order id and its pending purchase before redirecting to the provider."""
    card = db.get(CourseCard, course_card_id)
    if card is None:
        raise NotFound("CourseCard", course_card_id)
    if card.is_free:
        raise ValidationError(f"Course card '{card.id}' is free")
    if card.id in list_completed_purchases(db, user_id):
        raise ValidationError(f"Course card '{card.id}' is already purchased")
    now_ms = int(time.time() * 1000) if now_ms is None else now_ms
    # two checkouts for one card in the same millisecond would share an order id
    for attempt in range(_ORDER_ATTEMPTS):
        order_id = new_order_id(card.id, now_ms + attempt)
        try:
            purchase_id = create_purchase(db, user_id, card.id, card.price, order_id)
        except IntegrityError:
            continue
        return db.get(Purchase, purchase_id)
    raise PaymentError(f"No free order id for course card '{card.id}'")


def reconcile_success(db: Session, user_id: str, order_id: str, payment_ref: Optional[str] = None) -> Reconciliation:
    """Complete the purchase behind ``order_id``. Safe to call any number of times.

    The caller is expected to have verified the payment with the provider.
    """
    ref = parse_order_id(order_id)
    purchase = get_purchase_by_order(db, order_id)
    if purchase is None:
        card = db.get(CourseCard, ref.course_card_id)
        if card is None:
            raise NotFound("CourseCard", ref.course_card_id)
        try:
            create_purchase(db, user_id, card.id, card.price, order_id, payment_ref)
        except IntegrityError:
            # a concurrent replay of the same callback inserted it first
            pass
        purchase = get_purchase_by_order(db, order_id)
    _check_owner(purchase, user_id, ref)

    changed = set_purchase_status(db, purchase.id, PurchaseStatus.COMPLETED, payment_ref)
    if not changed:
        logger.info("reconcile.replay order=%s purchase=%s", order_id, purchase.id)
    return Reconciliation(order_id, purchase.id, ref.course_card_id, PurchaseStatus.COMPLETED, changed)


def _fail_pending(db: Session, user_id: str, order_id: str) -> Optional[Reconciliation]:
    ref = parse_order_id(order_id)
    purchase = get_purchase_by_order(db, order_id)
    if purchase is None:
        return None
    _check_owner(purchase, user_id, ref)
    if purchase.status != PurchaseStatus.PENDING:
        return Reconciliation(order_id, purchase.id, ref.course_card_id, purchase.status, False)
    changed = set_purchase_status(db, purchase.id, PurchaseStatus.FAILED)
    return Reconciliation(order_id, purchase.id, ref.course_card_id, PurchaseStatus.FAILED, changed)


def reconcile_dismiss(db: Session, user_id: str, order_id: Optional[str] = None) -> Optional[Reconciliation]:
    """User closed the checkout; nothing is granted and a retry starts a new order."""
    if not order_id:
        return None
    result = _fail_pending(db, user_id, order_id)
    logger.info("reconcile.dismissed order=%s", order_id)
    return result


def reconcile_error(db: Session, user_id: str, order_id: Optional[str], message: str) -> None:
    """Record a provider failure against the order, then raise it to the caller."""
    logger.warning("reconcile.provider_error order=%s message=%s", order_id, message)
    if order_id:
        try:
            _fail_pending(db, user_id, order_id)
        except InvalidOrderId:
            logger.warning("reconcile.provider_error.unreadable_order order=%s", order_id)
    raise PaymentError(message or "Payment provider error")
