from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from models.rental_models import Product, Rental
from services.errors import (
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationFailedError,
)
from services.payment_service import verify_payment_signature
from services.persistence import commit_changes, flush_changes, log_audit
from services.product_service import get_active_product, serialize_product


RENTAL_LOGGER = logging.getLogger("rentonway.rentals")

RENTAL_NUMBER_PREFIX = "RENT"
ACTIVE_VIEW_STATES = ("active", "return_scheduled")
COMPLETED_VIEW_STATES = ("completed", "returned")
STATE_TRANSITIONS = {
    "active": {"cancelled", "return_scheduled"},
    "return_scheduled": {"returned"},
    "returned": {"completed"},
    "completed": set(),
    "cancelled": set(),
}
_CENT = Decimal("0.01")
_MAX_NUMBER_ATTEMPTS = 10


@dataclass(frozen=True)
class RentalStatusChange:
    """A rental status write requested by another workflow."""

    rental_id: int
    target_status: str
    reason: str


def generate_public_number(db: Session, model, column, prefix: str) -> str:
    for _ in range(_MAX_NUMBER_ATTEMPTS):
        candidate = f"{prefix}-{uuid.uuid4().hex[:8].upper()}"
        existing = db.execute(select(model).where(column == candidate)).scalars().first()
        if not existing:
            return candidate
    raise RuntimeError(f"Could not allocate a unique {prefix} number.")


def generate_rental_number(db: Session) -> str:
    return generate_public_number(db, Rental, Rental.RentalNumber, RENTAL_NUMBER_PREFIX)


def _money(value) -> Decimal:
    return Decimal(str(value or 0)).quantize(_CENT, rounding=ROUND_HALF_UP)


def compute_rental_charges(product: Product, start_date: date, end_date: date) -> dict:
    rental_days = (end_date - start_date).days
    if rental_days < 1:
        rental_days = 1
    rental_price = _money(product.DailyRentalPrice) * rental_days
    security_deposit = _money(product.SecurityDeposit)
    return {
        "totalDays": rental_days,
        "rentalPrice": rental_price,
        "securityDeposit": security_deposit,
        "totalAmount": rental_price + security_deposit,
    }


def _check_quoted_charges(charges: dict, quoted: dict | None) -> None:
    for key, value in (quoted or {}).items():
        if value is None or key not in charges:
            continue
        if key == "totalDays":
            if int(value) != charges[key]:
                raise ValidationFailedError("totalDays does not match the rental period.")
            continue
        if abs(_money(value) - charges[key]) > _CENT:
            raise ValidationFailedError(f"{key} does not match the product price.")


def normalize_state(raw: str | None) -> str:
    return (raw or "").strip().lower()


def transition_rental_status(rental: Rental, target_state: str) -> bool:
    current = normalize_state(rental.Status)
    target = normalize_state(target_state)
    if target == current:
        return False
    if current not in STATE_TRANSITIONS or target not in STATE_TRANSITIONS[current]:
        raise InvalidStateError(f"Invalid rental state transition: {current} -> {target}")
    rental.Status = target
    rental.UpdatedDate = datetime.now()
    return True


def apply_rental_status_changes(db: Session, changes: list[RentalStatusChange], actor_id: int | None = None) -> None:
    for change in changes:
        rental = db.get(Rental, change.rental_id)
        if not rental:
            raise NotFoundError("Rental not found")
        previous = rental.Status
        if transition_rental_status(rental, change.target_status):
            log_audit(
                db,
                "Rental",
                rental.RentalID,
                "RentalStatusChangeRequested",
                f"{previous} -> {rental.Status}: {change.reason}",
                user_id=actor_id,
            )
            RENTAL_LOGGER.info(
                "Rental status changed rental=%s from=%s to=%s reason=%s",
                rental.RentalNumber,
                previous,
                rental.Status,
                change.reason,
            )


def create_rental(
    db: Session,
    *,
    customer_id: int,
    product_id: int,
    start_date: date,
    end_date: date,
    payment_id: str,
    payment_order_id: str | None,
    payment_signature: str | None,
    quoted: dict | None = None,
) -> Rental:
    if end_date < start_date:
        raise ValidationFailedError("endDate must be on or after startDate.")
    if not (payment_id or "").strip():
        raise ValidationFailedError("paymentId is required.")

    product = get_active_product(db, product_id)
    charges = compute_rental_charges(product, start_date, end_date)
    _check_quoted_charges(charges, quoted)

    if not verify_payment_signature(payment_order_id, payment_id, payment_signature):
        RENTAL_LOGGER.warning("Rental rejected user=%s product=%s reason=payment_unverified", customer_id, product_id)
        raise ValidationFailedError("Payment verification failed: Invalid signature")

    rental = Rental(
        RentalNumber=generate_rental_number(db),
        UserID=customer_id,
        ProductID=product.ProductID,
        StartDate=start_date,
        EndDate=end_date,
        TotalDays=charges["totalDays"],
        RentalPrice=charges["rentalPrice"],
        SecurityDeposit=charges["securityDeposit"],
        TotalAmount=charges["totalAmount"],
        PaymentID=payment_id.strip(),
        PaymentOrderID=payment_order_id,
        Status="active",
        CreatedDate=datetime.now(),
        UpdatedDate=datetime.now(),
    )
    db.add(rental)
    flush_changes(db, "Rental could not be created. Retry the request.")
    log_audit(db, "Rental", rental.RentalID, "CreateRental", f"{rental.RentalNumber} for product {product.ProductID}", user_id=customer_id)
    commit_changes(db, "Rental could not be created. Retry the request.")
    RENTAL_LOGGER.info("Rental created rental=%s user=%s product=%s", rental.RentalNumber, customer_id, product.ProductID)
    return rental


def _rental_statement():
    return select(Rental).options(selectinload(Rental.Product))


def get_rental(db: Session, rental_ref: int | str) -> Rental:
    ref = str(rental_ref or "").strip().upper()
    if ref.startswith(f"{RENTAL_NUMBER_PREFIX}-"):
        stmt = _rental_statement().where(Rental.RentalNumber == ref)
    elif ref.isdigit():
        stmt = _rental_statement().where(Rental.RentalID == int(ref))
    else:
        raise NotFoundError("Rental not found")
    rental = db.execute(stmt).scalars().first()
    if not rental:
        raise NotFoundError("Rental not found")
    return rental


def get_rental_for_owner(db: Session, rental_ref: int | str, caller_id: int) -> Rental:
    rental = get_rental(db, rental_ref)
    if int(rental.UserID) != int(caller_id):
        RENTAL_LOGGER.warning("Rental access denied rental=%s caller=%s", rental.RentalNumber, caller_id)
        raise ForbiddenError("Unauthorized")
    return rental


def list_rentals_for_user(db: Session, caller_id: int, view: str | None = None) -> list[Rental]:
    stmt = _rental_statement().where(Rental.UserID == caller_id)
    if view == "active":
        stmt = stmt.where(Rental.Status.in_(ACTIVE_VIEW_STATES)).order_by(Rental.EndDate.asc(), Rental.RentalID.asc())
    elif view == "completed":
        stmt = stmt.where(Rental.Status.in_(COMPLETED_VIEW_STATES)).order_by(Rental.EndDate.desc(), Rental.RentalID.desc())
    elif view is None:
        stmt = stmt.order_by(Rental.CreatedDate.desc(), Rental.RentalID.desc())
    else:
        raise ValidationFailedError("view must be active or completed.")
    return db.execute(stmt).scalars().all()


def cancel_rental(db: Session, rental_ref: int | str, caller_id: int) -> Rental:
    rental = get_rental_for_owner(db, rental_ref, caller_id)
    if normalize_state(rental.Status) != "active":
        RENTAL_LOGGER.warning("Rental cancel rejected rental=%s status=%s", rental.RentalNumber, rental.Status)
        raise InvalidStateError("Rental cannot be cancelled")
    transition_rental_status(rental, "cancelled")
    log_audit(db, "Rental", rental.RentalID, "Cancel", "Rental cancelled by customer", user_id=caller_id)
    commit_changes(db)
    RENTAL_LOGGER.info("Rental cancelled rental=%s user=%s", rental.RentalNumber, caller_id)
    return rental


def serialize_rental(rental: Rental, include_product: bool = True) -> dict:
    return {
        "id": rental.RentalID,
        "rentalId": rental.RentalNumber,
        "user": rental.UserID,
        "product": serialize_product(rental.Product) if include_product else rental.ProductID,
        "startDate": rental.StartDate,
        "endDate": rental.EndDate,
        "totalDays": rental.TotalDays,
        "rentalPrice": float(rental.RentalPrice or 0),
        "securityDeposit": float(rental.SecurityDeposit or 0),
        "totalAmount": float(rental.TotalAmount or 0),
        "paymentId": rental.PaymentID,
        "status": rental.Status,
        "createdAt": rental.CreatedDate,
        "updatedAt": rental.UpdatedDate,
    }
