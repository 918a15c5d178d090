import logging
import os

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy import text
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

load_dotenv()

from db.deps import get_rental_db
from schemas.payments import PaymentVerificationDto
from schemas.products import ProductCreateDto
from schemas.rentals import CreateRentalDto
from schemas.returns import ReturnStatusUpdateDto, ScheduleReturnDto
from services.errors import RentalWorkflowError, UnauthorizedError
from services.identity_service import ROLE_DELIVERY_PARTNER, ROLE_RETAILER, get_session
from services.payment_service import verify_payment_signature
from services.product_service import create_product, get_active_product, list_products, serialize_product
from services.rental_service import (
    cancel_rental,
    create_rental,
    get_rental_for_owner,
    list_rentals_for_user,
    serialize_rental,
)
from services.return_service import (
    MAX_INSPECTION_IMAGE_BYTES,
    InspectionImage,
    assign_return,
    complete_return,
    list_completed_returns,
    list_pending_returns,
    list_user_returns,
    schedule_return,
    serialize_return,
    submit_inspection,
    update_return_status,
)
from services.storage_service import UPLOADS_BASE_URL, UPLOADS_DIR, upload_image

app = FastAPI(title="RentOnWay Rentals API")


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:5173,http://localhost:5173",
)
_CORS_ALLOW_CREDENTIALS = str(os.environ.get("CORS_ALLOW_CREDENTIALS", "true")).strip().lower() in {"1", "true", "yes", "on"}
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials; force safe behavior.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"]
)

AUTH_LOGGER = logging.getLogger("rentonway.auth")
APP_LOGGER = logging.getLogger("rentonway.app")


def _failure(status_code: int, message: str, headers: dict | None = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message}, headers=headers)


def _ok(data=None, message: str | None = None, count: int | None = None) -> dict:
    body: dict = {"success": True}
    if message:
        body["message"] = message
    if count is not None:
        body["count"] = count
    if data is not None:
        body["data"] = data
    return body


@app.exception_handler(RentalWorkflowError)
def handle_workflow_error(request: Request, exc: RentalWorkflowError):
    return _failure(exc.status_code, exc.message)


@app.exception_handler(StarletteHTTPException)
def handle_http_error(request: Request, exc: StarletteHTTPException):
    return _failure(exc.status_code, str(exc.detail), headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
def handle_request_validation_error(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if not errors:
        return _failure(400, "Invalid request.")
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path"))
    message = first.get("msg") or "Invalid value"
    return _failure(400, f"{location}: {message}" if location else message)


@app.exception_handler(Exception)
def handle_unexpected_error(request: Request, exc: Exception):
    APP_LOGGER.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _failure(500, "Server error")


def _extract_bearer_token(authorization: str | None, session_token: str | None) -> str | None:
    raw = (authorization or "").strip()
    if raw.lower().startswith("bearer "):
        return raw.split(" ", 1)[1].strip() or None
    return (session_token or "").strip() or None


def require_caller(
    request: Request,
    authorization: str | None = Header(None),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
) -> dict:
    token = _extract_bearer_token(authorization, x_session_token)
    if not token:
        raise UnauthorizedError("Not authorized, no token")
    session = get_session(token)
    if not session:
        AUTH_LOGGER.warning("Token rejected path=%s", request.url.path)
        raise UnauthorizedError("Not authorized, token failed")
    return session


def require_role(*roles: str):
    def _dependency(caller: dict = Depends(require_caller)) -> dict:
        if caller.get("role") not in roles:
            AUTH_LOGGER.warning("Role rejected caller=%s role=%s required=%s", caller.get("id"), caller.get("role"), ",".join(roles))
            raise HTTPException(
                status_code=403,
                detail=f"User role {caller.get('role')} is not authorized to access this route",
            )
        return caller

    return _dependency


require_delivery_partner = require_role(ROLE_DELIVERY_PARTNER)
require_retailer = require_role(ROLE_RETAILER)


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_rental_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


@app.get("/api/auth/me")
def auth_me(caller: dict = Depends(require_caller)):
    return _ok({"id": caller["id"], "role": caller["role"]})


@app.get("/api/products")
def get_products(category: str | None = Query(None), db: Session = Depends(get_rental_db)):
    products = list_products(db, category)
    return _ok([serialize_product(product) for product in products], count=len(products))


@app.get("/api/products/{product_id}")
def get_product(product_id: int, db: Session = Depends(get_rental_db)):
    return _ok(serialize_product(get_active_product(db, product_id)))


@app.post("/api/products", status_code=201)
def add_product(
    payload: ProductCreateDto,
    db: Session = Depends(get_rental_db),
    caller: dict = Depends(require_retailer),
):
    product = create_product(
        db,
        retailer_id=caller["id"],
        name=payload.name,
        daily_rental_price=payload.dailyRentalPrice,
        security_deposit=payload.securityDeposit,
        category=payload.category,
        description=payload.description,
        image_path=payload.imagePath,
    )
    return _ok(serialize_product(product), message="Product created successfully")


@app.post("/api/payments/verify")
def verify_payment(payload: PaymentVerificationDto, caller: dict = Depends(require_caller)):
    if not payload.orderId or not payload.paymentId or not payload.signature:
        raise HTTPException(status_code=400, detail="Payment verification failed: Missing required parameters")
    if not verify_payment_signature(payload.orderId, payload.paymentId, payload.signature):
        raise HTTPException(status_code=400, detail="Payment verification failed: Invalid signature")
    return _ok(
        {"paymentId": payload.paymentId, "orderId": payload.orderId, "verified": True},
        message="Payment verified successfully",
    )


@app.post("/api/rentals", status_code=201)
def add_rental(
    payload: CreateRentalDto,
    db: Session = Depends(get_rental_db),
    caller: dict = Depends(require_caller),
):
    rental = create_rental(
        db,
        customer_id=caller["id"],
        product_id=payload.productId,
        start_date=payload.startDate,
        end_date=payload.endDate,
        payment_id=payload.paymentId,
        payment_order_id=payload.paymentOrderId,
        payment_signature=payload.paymentSignature,
        quoted=payload.quoted_charges(),
    )
    return _ok(serialize_rental(rental), message="Rental created successfully")


@app.get("/api/rentals")
def get_user_rentals(db: Session = Depends(get_rental_db), caller: dict = Depends(require_caller)):
    rentals = list_rentals_for_user(db, caller["id"])
    return _ok([serialize_rental(rental) for rental in rentals], count=len(rentals))


@app.get("/api/rentals/active")
def get_active_rentals(db: Session = Depends(get_rental_db), caller: dict = Depends(require_caller)):
    rentals = list_rentals_for_user(db, caller["id"], "active")
    return _ok([serialize_rental(rental) for rental in rentals], count=len(rentals))


@app.get("/api/rentals/completed")
def get_completed_rentals(db: Session = Depends(get_rental_db), caller: dict = Depends(require_caller)):
    rentals = list_rentals_for_user(db, caller["id"], "completed")
    return _ok([serialize_rental(rental) for rental in rentals], count=len(rentals))


@app.get("/api/rentals/{rental_ref}")
def get_rental(rental_ref: str, db: Session = Depends(get_rental_db), caller: dict = Depends(require_caller)):
    return _ok(serialize_rental(get_rental_for_owner(db, rental_ref, caller["id"])))


@app.put("/api/rentals/{rental_ref}/cancel")
def cancel_user_rental(rental_ref: str, db: Session = Depends(get_rental_db), caller: dict = Depends(require_caller)):
    rental = cancel_rental(db, rental_ref, caller["id"])
    return _ok(serialize_rental(rental), message="Rental cancelled successfully")


@app.post("/api/returns/schedule", status_code=201)
def schedule_user_return(
    payload: ScheduleReturnDto,
    db: Session = Depends(get_rental_db),
    caller: dict = Depends(require_caller),
):
    return_item = schedule_return(
        db,
        customer_id=caller["id"],
        rental_ref=payload.rentalId,
        pickup_date=payload.pickupDate,
        time_slot=payload.timeSlot,
        notes=payload.additionalNotes,
    )
    return _ok(
        {
            "returnId": return_item.ReturnNumber,
            "pickupDate": return_item.PickupDate,
            "timeSlot": return_item.TimeSlot,
        },
        message="Return scheduled successfully",
    )


@app.get("/api/returns/user")
def get_user_returns(db: Session = Depends(get_rental_db), caller: dict = Depends(require_caller)):
    returns = list_user_returns(db, caller["id"])
    return _ok([serialize_return(item) for item in returns], count=len(returns))


@app.get("/api/returns/pending")
def get_pending_returns(db: Session = Depends(get_rental_db), caller: dict = Depends(require_delivery_partner)):
    returns = list_pending_returns(db, caller["id"])
    return _ok([serialize_return(item) for item in returns], count=len(returns))


@app.get("/api/returns/completed")
def get_completed_returns(db: Session = Depends(get_rental_db), caller: dict = Depends(require_delivery_partner)):
    returns = list_completed_returns(db, caller["id"])
    return _ok([serialize_return(item) for item in returns], count=len(returns))


@app.put("/api/returns/{return_ref}/assign")
def assign_partner_return(
    return_ref: str,
    db: Session = Depends(get_rental_db),
    caller: dict = Depends(require_delivery_partner),
):
    return_item = assign_return(db, return_ref, caller["id"])
    return _ok(serialize_return(return_item), message="Return assigned successfully")


@app.put("/api/returns/{return_ref}/status")
def update_partner_return_status(
    return_ref: str,
    payload: ReturnStatusUpdateDto,
    db: Session = Depends(get_rental_db),
    caller: dict = Depends(require_delivery_partner),
):
    return_item = update_return_status(db, return_ref, caller["id"], payload.status)
    return _ok(serialize_return(return_item), message="Return status updated successfully")


@app.post("/api/returns/{return_ref}/inspection")
def submit_return_inspection(
    return_ref: str,
    condition: str = Form(...),
    qualityIssues: list[str] | None = Form(None),
    comments: str | None = Form(None),
    images: list[UploadFile] | None = File(None),
    db: Session = Depends(get_rental_db),
    caller: dict = Depends(require_delivery_partner),
):
    inspection_images = [
        InspectionImage(
            filename=upload.filename,
            content_type=upload.content_type,
            data=upload.file.read(MAX_INSPECTION_IMAGE_BYTES + 1),
        )
        for upload in images or []
    ]
    return_item = submit_inspection(
        db,
        return_ref,
        caller["id"],
        condition=condition,
        quality_issues=qualityIssues,
        comments=comments,
        images=inspection_images,
        uploader=upload_image,
    )
    return _ok(serialize_return(return_item), message="Inspection submitted successfully")


@app.put("/api/returns/{return_ref}/complete")
def complete_partner_return(
    return_ref: str,
    db: Session = Depends(get_rental_db),
    caller: dict = Depends(require_delivery_partner),
):
    return_item = complete_return(db, return_ref, caller["id"])
    return _ok(serialize_return(return_item), message="Return completed successfully")


if UPLOADS_BASE_URL.startswith("/"):
    UPLOADS_DIR.mkdir(parents=True, exist_ok=True)
    app.mount(UPLOADS_BASE_URL, StaticFiles(directory=str(UPLOADS_DIR)), name="uploads")
