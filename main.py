import os
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from http import HTTPStatus
from typing import List, Optional, Any, Dict

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, Field
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

import checkout
import dashboard
import notifications
import payfast
from auth import get_current_user, require_admin, require_staff
from config import Config, setup_logging
from database import ensure_indexes, find_by_id, get_db, now_utc, oid, to_str_id
from errors import ServiceError, TransientStoreError, ValidationError
from schemas import PaymentMethod, Product, PurchaseType, Voucher

setup_logging()
logger = logging.getLogger(__name__)


# -----------------------------
# Pydantic Schemas (API layer)
# -----------------------------
class ProductIn(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    category: Optional[str] = None
    image: Optional[str] = None
    price: float = Field(..., ge=0)
    stockQuantity: int = Field(0, ge=0)
    tags: List[str] = []


class ProductOut(BaseModel):
    id: str
    name: str
    description: str = ""
    category: Optional[str] = None
    image: Optional[str] = None
    price: float
    stockQuantity: int = 0
    inStock: bool
    tags: List[str] = []


class OrderItemIn(BaseModel):
    product: str
    quantity: int = Field(..., ge=1)


class OrderCreate(BaseModel):
    items: List[OrderItemIn] = Field(..., min_length=1)
    voucherCode: Optional[str] = None
    shippingAddress: Optional[str] = None
    paymentMethod: PaymentMethod = "card"
    processedBy: Optional[str] = None


class StatusUpdate(BaseModel):
    status: str


class BookingCreate(BaseModel):
    service: str
    date: str
    time: str
    staff: Optional[str] = None
    specialRequests: str = ""


class AssignStaff(BaseModel):
    staffId: str


class GiftOrderCreate(BaseModel):
    giftPackage: str
    recipientName: str
    recipientEmail: str
    message: str = ""
    deliveryDate: str
    assignedStaff: Optional[str] = None


class VoucherUpdate(BaseModel):
    discount: Optional[float] = Field(None, ge=0)
    type: Optional[str] = None
    maxUses: Optional[int] = Field(None, ge=1)
    validUntil: Optional[datetime] = None
    isActive: Optional[bool] = None
    assignedTo: Optional[str] = None
    description: Optional[str] = None


class VoucherCheck(BaseModel):
    code: str
    total: float = Field(..., ge=0)
    staffId: Optional[str] = None


class PurchaseRequest(BaseModel):
    type: PurchaseType
    totalAmount: float = 0.0
    items: List[Dict[str, Any]] = []
    bookingData: Dict[str, Any] = {}
    giftData: Dict[str, Any] = {}
    staffId: Optional[str] = None
    voucherCode: Optional[str] = None
    shippingAddress: Optional[str] = None
    customerId: Optional[str] = None


# -----------------------------
# FastAPI App
# -----------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        ensure_indexes(get_db())
    except PyMongoError as e:
        logger.warning(f"Could not ensure indexes at startup: {e}")
    yield


app = FastAPI(title="Tassel Group API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=Config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message, "error": exc.error})


@app.exception_handler(PyMongoError)
async def store_error_handler(request: Request, exc: PyMongoError):
    logger.error(f"Database error on {request.method} {request.url.path}: {exc}")
    err = TransientStoreError()
    return JSONResponse(status_code=err.status_code, content={"message": err.message, "error": err.error})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"message": exc.detail, "error": HTTPStatus(exc.status_code).phrase.lower().replace(" ", "_")},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    return JSONResponse(
        status_code=400,
        content={"message": f"Validation error: {field} {first.get('msg', '')}".strip(), "error": ValidationError.error},
    )


@app.get("/")
def root():
    return {"message": "Tassel Group API", "driver": "mongodb", "db": Config.DATABASE_NAME}


@app.get("/health")
def health(db: Database = Depends(get_db)):
    try:
        db.command("ping")
        return {"status": "ok", "timestamp": now_utc().isoformat()}
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


# -----------------------------
# Helpers
# -----------------------------

def _user_ref(user: Dict[str, Any]) -> str:
    return str(user["_id"])


def _listing(db: Database, collection: str, filt: Dict[str, Any]) -> List[Dict[str, Any]]:
    cursor = db[collection].find(filt).sort("createdAt", DESCENDING)
    return [to_str_id(d) for d in cursor]


def _schedule_emails(background_tasks: BackgroundTasks, user: Dict[str, Any], kind: str, reference: str, amount: float, record: Dict[str, Any]) -> None:
    background_tasks.add_task(notifications.send_confirmation_emails, user, kind, reference, amount, record)


# -----------------------------
# Products
# -----------------------------
@app.get("/products", response_model=List[ProductOut])
def list_products(
    q: Optional[str] = Query(None, description="Search by name or tag"),
    category: Optional[str] = None,
    inStock: Optional[bool] = None,
    limit: int = 50,
    offset: int = 0,
    db: Database = Depends(get_db),
):
    filt: Dict[str, Any] = {}
    if q:
        filt["$or"] = [
            {"name": {"$regex": q, "$options": "i"}},
            {"tags": {"$regex": q, "$options": "i"}},
        ]
    if category:
        filt["category"] = category
    if inStock is not None:
        filt["inStock"] = inStock

    cursor = db["product"].find(filt).sort("name", 1).skip(offset).limit(limit)
    return [ProductOut(**to_str_id(d)) for d in cursor]


@app.get("/products/{product_id}", response_model=ProductOut)
def get_product(product_id: str, db: Database = Depends(get_db)):
    d = find_by_id(db, "product", product_id)
    if not d:
        raise HTTPException(status_code=404, detail="Product not found")
    return ProductOut(**to_str_id(d))


@app.post("/products", response_model=ProductOut, status_code=201)
def create_product(payload: ProductIn, db: Database = Depends(get_db), admin: Dict[str, Any] = Depends(require_admin)):
    now = now_utc()
    doc = checkout.build_document(Product, **payload.model_dump(), inStock=payload.stockQuantity > 0, createdAt=now, updatedAt=now)
    res = db["product"].insert_one(doc)
    return get_product(str(res.inserted_id), db)


@app.put("/products/{product_id}", response_model=ProductOut)
def update_product(product_id: str, payload: ProductIn, db: Database = Depends(get_db), admin: Dict[str, Any] = Depends(require_admin)):
    _id = oid(product_id)
    if not _id:
        raise HTTPException(status_code=404, detail="Product not found")
    doc = checkout.build_document(Product, **payload.model_dump(), inStock=payload.stockQuantity > 0, updatedAt=now_utc())
    doc.pop("createdAt")
    res = db["product"].update_one({"_id": _id}, {"$set": doc})
    if res.matched_count == 0:
        raise HTTPException(status_code=404, detail="Product not found")
    return get_product(product_id, db)


@app.delete("/products/{product_id}")
def delete_product(product_id: str, db: Database = Depends(get_db), admin: Dict[str, Any] = Depends(require_admin)):
    _id = oid(product_id)
    if not _id:
        raise HTTPException(status_code=404, detail="Product not found")
    res = db["product"].delete_one({"_id": _id})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Product not found")
    return {"message": "deleted"}


# -----------------------------
# Orders
# -----------------------------
@app.get("/orders")
def list_orders(db: Database = Depends(get_db), user: Dict[str, Any] = Depends(require_staff)):
    filt = {} if user.get("role") == "admin" else {"processedBy": _user_ref(user)}
    return _listing(db, "order", filt)


@app.get("/orders/my-orders")
def my_orders(db: Database = Depends(get_db), user: Dict[str, Any] = Depends(get_current_user)):
    return _listing(db, "order", {"user": _user_ref(user)})


@app.get("/orders/public-stats")
def order_public_stats(db: Database = Depends(get_db)):
    return dashboard.compute_order_public_stats(db)


@app.post("/orders", status_code=201)
def create_order(payload: OrderCreate, db: Database = Depends(get_db), user: Dict[str, Any] = Depends(get_current_user)):
    logger.info(f"Order creation request: user={_user_ref(user)} items={len(payload.items)} processedBy={payload.processedBy}")
    order = checkout.create_order(
        db,
        user,
        [item.model_dump() for item in payload.items],
        voucher_code=payload.voucherCode,
        shipping_address=payload.shippingAddress,
        payment_method=payload.paymentMethod,
        processed_by=payload.processedBy,
    )
    return to_str_id(order)


@app.api_route("/orders/{order_id}/status", methods=["PUT", "PATCH"])
def update_order_status(order_id: str, payload: StatusUpdate, db: Database = Depends(get_db), user: Dict[str, Any] = Depends(require_staff)):
    return to_str_id(checkout.update_order_status(db, order_id, payload.status))


# -----------------------------
# Bookings
# -----------------------------
@app.post("/bookings", status_code=201)
def create_booking(payload: BookingCreate, db: Database = Depends(get_db), user: Dict[str, Any] = Depends(get_current_user)):
    booking = checkout.create_booking(db, user, payload.model_dump())
    return to_str_id(booking)


@app.get("/bookings/my-bookings")
def my_bookings(db: Database = Depends(get_db), user: Dict[str, Any] = Depends(get_current_user)):
    return _listing(db, "booking", {"user": _user_ref(user)})


@app.get("/bookings")
def list_bookings(db: Database = Depends(get_db), user: Dict[str, Any] = Depends(require_staff)):
    filt = {} if user.get("role") == "admin" else {"staff": _user_ref(user)}
    return _listing(db, "booking", filt)


@app.patch("/bookings/{booking_id}/status")
def update_booking_status(booking_id: str, payload: StatusUpdate, db: Database = Depends(get_db), user: Dict[str, Any] = Depends(require_staff)):
    return {"success": True, "booking": to_str_id(checkout.update_booking_status(db, booking_id, payload.status))}


@app.patch("/bookings/{booking_id}/assign-staff")
def assign_booking_staff(booking_id: str, payload: AssignStaff, db: Database = Depends(get_db), admin: Dict[str, Any] = Depends(require_admin)):
    booking = checkout.assign_booking_staff(db, booking_id, payload.staffId)
    return {"success": True, "booking": to_str_id(booking)}


# -----------------------------
# Gift orders
# -----------------------------
@app.post("/gift-orders", status_code=201)
def create_gift_order(payload: GiftOrderCreate, db: Database = Depends(get_db), user: Dict[str, Any] = Depends(get_current_user)):
    gift_order = checkout.create_gift_order(db, user, payload.model_dump(), staff_id=payload.assignedStaff)
    return to_str_id(gift_order)


@app.get("/gift-orders/my-gift-orders")
def my_gift_orders(db: Database = Depends(get_db), user: Dict[str, Any] = Depends(get_current_user)):
    return _listing(db, "giftorder", {"user": _user_ref(user)})


@app.get("/gift-orders")
def list_gift_orders(db: Database = Depends(get_db), user: Dict[str, Any] = Depends(require_staff)):
    filt = {} if user.get("role") == "admin" else {"assignedStaff": _user_ref(user)}
    return _listing(db, "giftorder", filt)


@app.put("/gift-orders/{gift_order_id}/status")
def update_gift_order_status(gift_order_id: str, payload: StatusUpdate, db: Database = Depends(get_db), user: Dict[str, Any] = Depends(require_staff)):
    return to_str_id(checkout.update_gift_order_status(db, gift_order_id, payload.status))


# -----------------------------
# Vouchers
# -----------------------------

def _check_voucher_fields(doc: Dict[str, Any]) -> None:
    if doc.get("type") not in (None, "percentage", "fixed"):
        raise ValidationError("Voucher type must be percentage or fixed")
    if doc.get("type") == "percentage" and float(doc.get("discount") or 0) > 100:
        raise ValidationError("Percentage discount cannot exceed 100%")
    if doc.get("validUntil") is not None and checkout.as_utc(doc["validUntil"]) <= now_utc():
        raise ValidationError("Voucher expiration date must be in the future")


@app.get("/vouchers")
def list_vouchers(db: Database = Depends(get_db), admin: Dict[str, Any] = Depends(require_admin)):
    return _listing(db, "voucher", {})


@app.get("/vouchers/my-vouchers")
def my_vouchers(db: Database = Depends(get_db), user: Dict[str, Any] = Depends(require_staff)):
    return _listing(db, "voucher", {"assignedTo": _user_ref(user)})


@app.post("/vouchers", status_code=201)
def create_voucher(payload: Voucher, db: Database = Depends(get_db), admin: Dict[str, Any] = Depends(require_admin)):
    now = now_utc()
    doc = payload.model_dump()
    doc.update({"code": checkout.normalize_code(payload.code), "used": 0, "createdAt": now, "updatedAt": now})
    _check_voucher_fields(doc)
    try:
        db["voucher"].insert_one(doc)
    except DuplicateKeyError:
        raise ValidationError("Voucher code already exists", "duplicate_code")
    return to_str_id(doc)


@app.put("/vouchers/{voucher_id}")
def update_voucher(voucher_id: str, payload: VoucherUpdate, db: Database = Depends(get_db), admin: Dict[str, Any] = Depends(require_admin)):
    current = find_by_id(db, "voucher", voucher_id)
    if not current:
        raise HTTPException(status_code=404, detail="Voucher not found")
    changes = payload.model_dump(exclude_unset=True)
    _check_voucher_fields({**current, **changes, "validUntil": changes.get("validUntil")})
    changes["updatedAt"] = now_utc()
    updated = db["voucher"].find_one_and_update({"_id": current["_id"]}, {"$set": changes}, return_document=ReturnDocument.AFTER)
    return to_str_id(updated)


@app.delete("/vouchers/{voucher_id}")
def delete_voucher(voucher_id: str, db: Database = Depends(get_db), admin: Dict[str, Any] = Depends(require_admin)):
    _id = oid(voucher_id)
    res = db["voucher"].delete_one({"_id": _id}) if _id else None
    if not res or res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Voucher not found")
    return {"message": "Voucher deleted successfully"}


@app.post("/vouchers/validate")
def validate_voucher(payload: VoucherCheck, db: Database = Depends(get_db), user: Dict[str, Any] = Depends(get_current_user)):
    voucher = checkout.find_voucher(db, payload.code)
    checkout.check_voucher(voucher, payload.staffId)
    discount = checkout.calculate_discount(voucher, payload.total)
    return {
        "valid": True,
        "code": voucher["code"],
        "discount": discount,
        "finalTotal": round(payload.total - discount, 2),
        "remainingUses": int(voucher["maxUses"]) - int(voucher.get("used") or 0),
    }


# -----------------------------
# Payment (Payfast)
# -----------------------------
@app.post("/payment/initiate")
def initiate_payment(payload: PurchaseRequest, db: Database = Depends(get_db), user: Dict[str, Any] = Depends(get_current_user)):
    return payfast.initiate(
        db,
        user,
        payload.type,
        payload.totalAmount,
        items=payload.items,
        booking_data=payload.bookingData,
        gift_data=payload.giftData,
        staff_id=payload.staffId,
        voucher_code=payload.voucherCode,
    )


@app.post("/payment/notify")
async def payment_notify(request: Request, background_tasks: BackgroundTasks, db: Database = Depends(get_db)):
    form = await request.form()
    itn = {key: value for key, value in form.items()}
    result = await run_in_threadpool(payfast.handle_notification, db, itn)
    if result.get("record") is not None:
        _schedule_emails(background_tasks, result["user"], result["type"], result["reference"], result["amount"], result["record"])
    return {"message": "ITN processed successfully", "status": result["status"], "duplicate": result["duplicate"]}


@app.post("/payment/manual-order")
def manual_order(payload: PurchaseRequest, background_tasks: BackgroundTasks, db: Database = Depends(get_db), staff: Dict[str, Any] = Depends(require_staff)):
    # phone and walk-in sales: recorded by staff, optionally against a customer account
    customer = staff
    if payload.customerId:
        customer = find_by_id(db, "user", payload.customerId)
        if not customer:
            raise HTTPException(status_code=404, detail="Customer not found")
    logger.info(f"Manual order received: type={payload.type} customer={_user_ref(customer)} staff={_user_ref(staff)} amount={payload.totalAmount}")
    result = payfast.handle_manual_order(
        db,
        customer,
        payload.type,
        payload.model_dump(include={"items", "bookingData", "giftData", "voucherCode", "shippingAddress"}),
        staff_id=payload.staffId or _user_ref(staff),
    )
    record = result["record"]
    _schedule_emails(background_tasks, customer, payload.type, result["reference"], dashboard.record_amount(record), record)
    return {
        "success": True,
        "message": "Order placed successfully. Confirmation email sent.",
        "order": {"reference": result["reference"], "type": result["type"], "record": to_str_id(record)},
    }


@app.get("/payment/success")
def payment_success(m_payment_id: Optional[str] = None, payment_status: Optional[str] = None, db: Database = Depends(get_db)):
    transaction = payfast.get_transaction(db, m_payment_id) if m_payment_id else None
    state = transaction.get("status") if transaction else None
    if payment_status == payfast.PAYMENT_STATUS_COMPLETE or state in ("notified", "completed"):
        return RedirectResponse(f"{Config.FRONTEND_URL}/?payment=success&reference={m_payment_id}")
    if state == "initiated":
        return RedirectResponse(f"{Config.FRONTEND_URL}/?payment=processing&reference={m_payment_id}")
    return RedirectResponse(f"{Config.FRONTEND_URL}/?payment=cancelled")


@app.get("/payment/cancel")
def payment_cancel(m_payment_id: Optional[str] = None, db: Database = Depends(get_db)):
    if m_payment_id:
        payfast.cancel(db, m_payment_id)
    return RedirectResponse(f"{Config.FRONTEND_URL}/?payment=cancelled")


# -----------------------------
# Dashboard
# -----------------------------
@app.get("/dashboard/admin")
def admin_dashboard(db: Database = Depends(get_db), admin: Dict[str, Any] = Depends(require_admin)):
    logger.info(f"Loading admin dashboard for {admin.get('name')}")
    return dashboard.compute_admin_stats(dashboard.load_snapshot(db))


@app.get("/dashboard/staff")
def staff_dashboard(db: Database = Depends(get_db), user: Dict[str, Any] = Depends(require_staff)):
    return dashboard.compute_staff_stats(dashboard.load_snapshot(db), _user_ref(user))


@app.get("/dashboard/public-stats")
def public_stats(db: Database = Depends(get_db)):
    return dashboard.compute_public_stats(db)


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
