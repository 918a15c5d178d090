from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session, selectinload

from models.rental_models import INSPECTION_CONDITIONS, QUALITY_ISSUES, RETURN_STATUSES, TIME_SLOTS, Return
from services.errors import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    RentalWorkflowError,
    ValidationFailedError,
)
from services.persistence import commit_changes, flush_changes, log_audit
from services.product_service import serialize_product
from services.rental_service import (
    RentalStatusChange,
    apply_rental_status_changes,
    generate_public_number,
    get_rental_for_owner,
    serialize_rental,
)
from services.storage_service import upload_image


RETURN_LOGGER = logging.getLogger("rentonway.returns")

RETURN_NUMBER_PREFIX = "RET"
RETURN_UPLOAD_FOLDER = "returns"
MAX_INSPECTION_IMAGES = int(os.environ.get("MAX_INSPECTION_IMAGES") or "5")
MAX_INSPECTION_IMAGE_BYTES = int(os.environ.get("MAX_INSPECTION_IMAGE_BYTES") or str(5 * 1024 * 1024))
HANDLED_STATES = ("picked_up", "inspected", "completed")
STATE_TRANSITIONS = {
    "scheduled": {"picked_up"},
    "picked_up": {"inspected"},
    "inspected": {"completed"},
    "completed": set(),
}
# Rental writes requested by each return transition.
RENTAL_CASCADE = {
    "picked_up": "returned",
    "completed": "completed",
}


@dataclass(frozen=True)
class InspectionImage:
    filename: str | None
    content_type: str | None
    data: bytes


def generate_return_number(db: Session) -> str:
    return generate_public_number(db, Return, Return.ReturnNumber, RETURN_NUMBER_PREFIX)


def _parse_json_list(raw: str | None) -> list:
    if not raw:
        return []
    try:
        parsed = json.loads(raw)
    except (ValueError, json.JSONDecodeError):
        return []
    return parsed if isinstance(parsed, list) else []


def normalize_state(raw: str | None) -> str:
    return (raw or "").strip().lower()


def transition_return_status(return_item: Return, target_state: str) -> bool:
    current = normalize_state(return_item.Status)
    target = normalize_state(target_state)
    if target == current:
        return False
    if current not in STATE_TRANSITIONS or target not in STATE_TRANSITIONS[current]:
        raise InvalidStateError(f"Invalid return state transition: {current} -> {target}")
    return_item.Status = target
    return_item.UpdatedDate = datetime.now()
    return True


def _cascade_for(return_item: Return, target_state: str) -> list[RentalStatusChange]:
    rental_target = RENTAL_CASCADE.get(target_state)
    if not rental_target:
        return []
    return [
        RentalStatusChange(
            rental_id=return_item.RentalID,
            target_status=rental_target,
            reason=f"Return {return_item.ReturnNumber} {target_state}",
        )
    ]


def _cascade(db: Session, changes: list[RentalStatusChange], actor_id: int) -> None:
    try:
        apply_rental_status_changes(db, changes, actor_id=actor_id)
    except RentalWorkflowError:
        db.rollback()
        raise


def _return_statement():
    return select(Return).options(
        selectinload(Return.Product),
        selectinload(Return.Rental),
    )


def get_return(db: Session, return_ref: int | str) -> Return:
    ref = str(return_ref or "").strip().upper()
    if ref.startswith(f"{RETURN_NUMBER_PREFIX}-"):
        stmt = _return_statement().where(Return.ReturnNumber == ref)
    elif ref.isdigit():
        stmt = _return_statement().where(Return.ReturnID == int(ref))
    else:
        raise NotFoundError("Return not found")
    return_item = db.execute(stmt).scalars().first()
    if not return_item:
        raise NotFoundError("Return not found")
    return return_item


def _require_assigned_partner(return_item: Return, partner_id: int) -> None:
    if return_item.DeliveryPartnerID is None or int(return_item.DeliveryPartnerID) != int(partner_id):
        RETURN_LOGGER.warning(
            "Return access denied return=%s caller=%s assignee=%s",
            return_item.ReturnNumber,
            partner_id,
            return_item.DeliveryPartnerID,
        )
        raise ForbiddenError("Return is not assigned to you")


def _existing_return_id(db: Session, rental_id: int) -> int | None:
    return db.execute(select(Return.ReturnID).where(Return.RentalID == rental_id)).scalars().first()


def schedule_return(
    db: Session,
    *,
    customer_id: int,
    rental_ref: int | str,
    pickup_date: date | None,
    time_slot: str,
    notes: str | None = None,
) -> Return:
    rental = get_rental_for_owner(db, rental_ref, customer_id)

    if _existing_return_id(db, rental.RentalID) is not None:
        RETURN_LOGGER.warning("Duplicate return rejected rental=%s", rental.RentalNumber)
        raise ConflictError("Return already scheduled for this rental")
    if normalize_state(rental.Status) != "active":
        raise InvalidStateError("Only active rentals can be scheduled for return")
    if pickup_date is None:
        raise ValidationFailedError("pickupDate is required.")
    if time_slot not in TIME_SLOTS:
        raise ValidationFailedError(f"timeSlot must be one of: {', '.join(TIME_SLOTS)}")

    return_item = Return(
        ReturnNumber=generate_return_number(db),
        RentalID=rental.RentalID,
        UserID=rental.UserID,
        ProductID=rental.ProductID,
        PickupDate=pickup_date,
        TimeSlot=time_slot,
        AdditionalNotes=(notes or "").strip() or None,
        Status="scheduled",
        CreatedDate=datetime.now(),
        UpdatedDate=datetime.now(),
    )
    db.add(return_item)
    flush_changes(db, "Return already scheduled for this rental")

    _cascade(
        db,
        [
            RentalStatusChange(
                rental_id=rental.RentalID,
                target_status="return_scheduled",
                reason=f"Return {return_item.ReturnNumber} scheduled",
            )
        ],
        customer_id,
    )
    log_audit(
        db,
        "Return",
        return_item.ReturnID,
        "ScheduleReturn",
        f"{return_item.ReturnNumber} for {rental.RentalNumber} on {pickup_date} {time_slot}",
        user_id=customer_id,
    )
    commit_changes(db, "Return already scheduled for this rental")
    RETURN_LOGGER.info("Return scheduled return=%s rental=%s", return_item.ReturnNumber, rental.RentalNumber)
    return return_item


def list_user_returns(db: Session, customer_id: int) -> list[Return]:
    stmt = (
        _return_statement()
        .where(Return.UserID == customer_id)
        .order_by(Return.CreatedDate.desc(), Return.ReturnID.desc())
    )
    return db.execute(stmt).scalars().all()


def list_pending_returns(db: Session, partner_id: int) -> list[Return]:
    stmt = (
        _return_statement()
        .where(Return.Status == "scheduled")
        .where(or_(Return.DeliveryPartnerID.is_(None), Return.DeliveryPartnerID == partner_id))
        .order_by(Return.PickupDate.asc(), Return.ReturnID.asc())
    )
    return db.execute(stmt).scalars().all()


def list_completed_returns(db: Session, partner_id: int) -> list[Return]:
    stmt = (
        _return_statement()
        .where(Return.DeliveryPartnerID == partner_id)
        .where(Return.Status.in_(HANDLED_STATES))
        .order_by(Return.UpdatedDate.desc(), Return.ReturnID.desc())
    )
    return db.execute(stmt).scalars().all()


def assign_return(db: Session, return_ref: int | str, partner_id: int) -> Return:
    return_item = get_return(db, return_ref)
    if return_item.DeliveryPartnerID is not None:
        if int(return_item.DeliveryPartnerID) == int(partner_id):
            return return_item
        raise ConflictError("Return already assigned to another delivery partner")

    # Claim only while unassigned; a concurrent claim leaves zero rows updated.
    result = db.execute(
        update(Return)
        .where(Return.ReturnID == return_item.ReturnID)
        .where(Return.DeliveryPartnerID.is_(None))
        .values(
            DeliveryPartnerID=partner_id,
            Version=Return.Version + 1,
            UpdatedDate=datetime.now(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        RETURN_LOGGER.warning("Return claim lost return=%s caller=%s", return_item.ReturnNumber, partner_id)
        raise ConflictError("Return already assigned to another delivery partner")

    log_audit(db, "Return", return_item.ReturnID, "AssignReturn", f"Assigned to {partner_id}", user_id=partner_id)
    commit_changes(db)
    db.refresh(return_item)
    RETURN_LOGGER.info("Return assigned return=%s partner=%s", return_item.ReturnNumber, partner_id)
    return return_item


def _complete(db: Session, return_item: Return, partner_id: int) -> Return:
    if not return_item.InspectionCondition:
        raise InvalidStateError("Inspection must be completed before finalizing return")
    changed = transition_return_status(return_item, "completed")
    return_item.UpdatedDate = datetime.now()
    if changed:
        _cascade(db, _cascade_for(return_item, "completed"), partner_id)
    log_audit(db, "Return", return_item.ReturnID, "CompleteReturn", "Return completed", user_id=partner_id)
    commit_changes(db)
    RETURN_LOGGER.info("Return completed return=%s partner=%s", return_item.ReturnNumber, partner_id)
    return return_item


def update_return_status(db: Session, return_ref: int | str, partner_id: int, new_status: str) -> Return:
    return_item = get_return(db, return_ref)
    _require_assigned_partner(return_item, partner_id)

    target = normalize_state(new_status)
    if target not in RETURN_STATUSES:
        raise ValidationFailedError(f"status must be one of: {', '.join(RETURN_STATUSES)}")

    if target == "completed":
        return _complete(db, return_item, partner_id)
    if target == "inspected" and not return_item.InspectionCondition:
        raise InvalidStateError("Inspection must be submitted before marking a return inspected")

    previous = return_item.Status
    changed = transition_return_status(return_item, target)
    return_item.UpdatedDate = datetime.now()
    if changed:
        _cascade(db, _cascade_for(return_item, target), partner_id)
    log_audit(db, "Return", return_item.ReturnID, "UpdateReturnStatus", f"{previous} -> {target}", user_id=partner_id)
    commit_changes(db)
    RETURN_LOGGER.info("Return status updated return=%s from=%s to=%s", return_item.ReturnNumber, previous, target)
    return return_item


def normalize_quality_issues(raw_issues: list[str] | None) -> list[str]:
    issues: list[str] = []
    for raw in raw_issues or []:
        for part in str(raw or "").split(","):
            issue = part.strip().lower()
            if not issue:
                continue
            if issue not in QUALITY_ISSUES:
                raise ValidationFailedError(f"Unknown quality issue: {issue}")
            if issue not in issues:
                issues.append(issue)
    return issues


def validate_inspection_images(images: list[InspectionImage]) -> None:
    if len(images) > MAX_INSPECTION_IMAGES:
        raise ValidationFailedError(f"At most {MAX_INSPECTION_IMAGES} images can be uploaded.")
    for image in images:
        if not (image.content_type or "").lower().startswith("image/"):
            raise ValidationFailedError("Only image files are allowed")
        if len(image.data) > MAX_INSPECTION_IMAGE_BYTES:
            raise ValidationFailedError("Image exceeds the maximum allowed size.")


def submit_inspection(
    db: Session,
    return_ref: int | str,
    partner_id: int,
    *,
    condition: str,
    quality_issues: list[str] | None = None,
    comments: str | None = None,
    images: list[InspectionImage] | None = None,
    uploader: Callable[[bytes, str, str | None], str] = upload_image,
) -> Return:
    return_item = get_return(db, return_ref)
    _require_assigned_partner(return_item, partner_id)

    if normalize_state(return_item.Status) not in {"picked_up", "inspected"}:
        raise InvalidStateError("Return must be picked up before inspection")
    normalized_condition = normalize_state(condition)
    if normalized_condition not in INSPECTION_CONDITIONS:
        raise ValidationFailedError(f"condition must be one of: {', '.join(INSPECTION_CONDITIONS)}")
    issues = normalize_quality_issues(quality_issues)
    image_list = list(images or [])
    validate_inspection_images(image_list)

    # Any failed upload aborts the submission; already stored files are kept.
    image_urls = [uploader(image.data, RETURN_UPLOAD_FOLDER, image.filename) for image in image_list]

    return_item.InspectionCondition = normalized_condition
    return_item.InspectionQualityIssues = json.dumps(issues)
    return_item.InspectionComments = (comments or "").strip() or None
    return_item.InspectionImages = json.dumps(image_urls)
    return_item.InspectedAt = datetime.now()
    transition_return_status(return_item, "inspected")
    return_item.UpdatedDate = datetime.now()
    log_audit(
        db,
        "Return",
        return_item.ReturnID,
        "SubmitInspection",
        f"condition={normalized_condition} issues={','.join(issues) or '-'} images={len(image_urls)}",
        user_id=partner_id,
    )
    commit_changes(db)
    RETURN_LOGGER.info("Inspection submitted return=%s condition=%s", return_item.ReturnNumber, normalized_condition)
    return return_item


def complete_return(db: Session, return_ref: int | str, partner_id: int) -> Return:
    return_item = get_return(db, return_ref)
    _require_assigned_partner(return_item, partner_id)
    return _complete(db, return_item, partner_id)


def serialize_inspection(return_item: Return) -> dict | None:
    if not return_item.InspectionCondition:
        return None
    return {
        "condition": return_item.InspectionCondition,
        "qualityIssues": _parse_json_list(return_item.InspectionQualityIssues),
        "comments": return_item.InspectionComments,
        "images": _parse_json_list(return_item.InspectionImages),
        "inspectedAt": return_item.InspectedAt,
    }


def serialize_return(return_item: Return) -> dict:
    return {
        "id": return_item.ReturnID,
        "returnId": return_item.ReturnNumber,
        "rental": serialize_rental(return_item.Rental, include_product=False),
        "user": return_item.UserID,
        "product": serialize_product(return_item.Product),
        "pickupDate": return_item.PickupDate,
        "timeSlot": return_item.TimeSlot,
        "additionalNotes": return_item.AdditionalNotes,
        "status": return_item.Status,
        "deliveryPartner": return_item.DeliveryPartnerID,
        "inspection": serialize_inspection(return_item),
        "createdAt": return_item.CreatedDate,
        "updatedAt": return_item.UpdatedDate,
    }
