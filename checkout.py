"""
Order workflow engine.

Turns a cart, a booking request or a gift request into one persisted
document. Every payment path (direct checkout, Payfast ITN, manual order)
goes through ``finalize_purchase`` so the construction logic exists once.

Stock and voucher counters are shared between concurrent requests. They are
only changed with conditional updates: a stock decrement matches only while
``stockQuantity >= quantity`` and a voucher redemption is a compare-and-swap
on the ``used`` value that was read. When a later step fails, the steps that
already went through are undone before the error propagates, so an order is
either stored with all of its side effects or not at all.
"""
import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError as SchemaValidationError
from pymongo import ReturnDocument
from pymongo.database import Database

import schemas
from database import find_by_id, now_utc, oid
from errors import InsufficientStockError, NotFoundError, ValidationError, VoucherExhaustedError

logger = logging.getLogger(__name__)

VOUCHER_REDEEM_ATTEMPTS = 5


# -----------------------------
# Helpers
# -----------------------------

def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value: Any, field: str) -> datetime:
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, str) and value.strip():
        try:
            return as_utc(datetime.fromisoformat(value.strip().replace("Z", "+00:00")))
        except ValueError:
            raise ValidationError(f"{field} is not a valid date")
    raise ValidationError(f"{field} is required")


def start_of_today() -> datetime:
    return now_utc().replace(hour=0, minute=0, second=0, microsecond=0)


def build_document(model: type, **fields: Any) -> Dict[str, Any]:
    try:
        return model(**fields).model_dump()
    except SchemaValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise ValidationError(f"Invalid {location or model.__name__}: {first.get('msg')}")


def _user_id(user: Dict[str, Any]) -> str:
    return str(user.get("_id") or user.get("id"))


# -----------------------------
# Stock
# -----------------------------

def _sync_in_stock(db: Database, product_id: Any) -> None:
    _id = oid(product_id)
    db["product"].update_one({"_id": _id, "stockQuantity": {"$lte": 0}, "inStock": {"$ne": False}}, {"$set": {"inStock": False}})
    db["product"].update_one({"_id": _id, "stockQuantity": {"$gt": 0}, "inStock": {"$ne": True}}, {"$set": {"inStock": True}})


def reserve_stock(db: Database, product_id: Any, quantity: int) -> bool:
    result = db["product"].update_one(
        {"_id": oid(product_id), "stockQuantity": {"$gte": quantity}, "inStock": {"$ne": False}},
        {"$inc": {"stockQuantity": -quantity}, "$set": {"updatedAt": now_utc()}},
    )
    if result.modified_count != 1:
        return False
    _sync_in_stock(db, product_id)
    return True


def release_stock(db: Database, product_id: Any, quantity: int) -> None:
    db["product"].update_one(
        {"_id": oid(product_id)},
        {"$inc": {"stockQuantity": quantity}, "$set": {"updatedAt": now_utc()}},
    )
    _sync_in_stock(db, product_id)


# -----------------------------
# Vouchers
# -----------------------------

def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def find_voucher(db: Database, code: str) -> Dict[str, Any]:
    voucher = db["voucher"].find_one({"code": normalize_code(code)})
    if not voucher:
        raise NotFoundError(f"Voucher {normalize_code(code)} not found")
    return voucher


def check_voucher(voucher: Dict[str, Any], staff_id: Optional[str] = None) -> None:
    """Raise unless the voucher can be redeemed right now (by ``staff_id`` when given)."""
    if int(voucher.get("used") or 0) >= int(voucher.get("maxUses") or 0):
        raise VoucherExhaustedError("Voucher has reached maximum usage limit")
    if not voucher.get("isActive", False):
        raise VoucherExhaustedError("Voucher is not active")
    try:
        valid_until = parse_datetime(voucher.get("validUntil"), "validUntil")
    except ValidationError:
        valid_until = None
    if valid_until is None or valid_until < now_utc():
        raise VoucherExhaustedError("Voucher has expired")
    assigned_to = voucher.get("assignedTo")
    if staff_id and assigned_to and str(assigned_to) != str(staff_id):
        raise ValidationError("Voucher is not valid for this staff member")


def calculate_discount(voucher: Dict[str, Any], total: float) -> float:
    value = float(voucher.get("discount") or 0)
    if voucher.get("type") == "percentage":
        amount = total * (value / 100.0)
    else:
        amount = value
    return round(max(0.0, min(amount, total)), 2)


def redeem_voucher(db: Database, code: str, staff_id: Optional[str] = None) -> Dict[str, Any]:
    for _ in range(VOUCHER_REDEEM_ATTEMPTS):
        voucher = find_voucher(db, code)
        check_voucher(voucher, staff_id)
        used = int(voucher.get("used") or 0)
        changes: Dict[str, Any] = {"used": used + 1, "updatedAt": now_utc()}
        if used + 1 >= int(voucher["maxUses"]):
            changes["isActive"] = False
        result = db["voucher"].update_one(
            {"_id": voucher["_id"], "used": voucher.get("used"), "isActive": True},
            {"$set": changes},
        )
        if result.modified_count == 1:
            voucher.update(changes)
            return voucher
        logger.info(f"Voucher {voucher['code']} changed while redeeming, retrying")
    raise VoucherExhaustedError("Voucher is in high demand, please try again")


def release_voucher(db: Database, voucher: Dict[str, Any]) -> None:
    """Undo one redemption of ``voucher``, as returned by ``redeem_voucher``."""
    changes: Dict[str, Any] = {"updatedAt": now_utc()}
    # reopen only when this redemption was the one that closed it
    if int(voucher.get("used") or 0) >= int(voucher.get("maxUses") or 0):
        changes["isActive"] = True
    db["voucher"].update_one(
        {"_id": voucher["_id"], "used": {"$gt": 0}},
        {"$inc": {"used": -1}, "$set": changes},
    )


# -----------------------------
# Orders
# -----------------------------

def _requested_quantities(items: List[Dict[str, Any]]) -> Dict[str, int]:
    requested: Dict[str, int] = {}
    for item in items:
        product_id = str(item.get("product") or item.get("productId") or "")
        if not product_id:
            raise ValidationError("Each item must reference a product")
        try:
            quantity = int(item.get("quantity", 0))
        except (TypeError, ValueError):
            raise ValidationError("Item quantity must be a whole number")
        if quantity < 1:
            raise ValidationError("Item quantity must be at least 1")
        requested[product_id] = requested.get(product_id, 0) + quantity
    return requested


def _price_items(db: Database, items: List[Dict[str, Any]]) -> Tuple[List[Dict[str, Any]], float]:
    order_items = []
    total = 0.0
    for product_id, quantity in _requested_quantities(items).items():
        product = find_by_id(db, "product", product_id)
        if not product:
            raise NotFoundError(f"Product {product_id} not found")
        if product.get("inStock") is False or int(product.get("stockQuantity") or 0) < quantity:
            raise InsufficientStockError(f"Insufficient stock for {product.get('name', product_id)}")
        # price snapshot, later catalog changes must not touch this order
        price = float(product.get("price") or 0)
        total += price * quantity
        order_items.append({
            "product": str(product["_id"]),
            "name": product.get("name", ""),
            "quantity": quantity,
            "price": price,
        })
    return order_items, round(total, 2)


def create_order(
    db: Database,
    user: Dict[str, Any],
    items: List[Dict[str, Any]],
    voucher_code: Optional[str] = None,
    shipping_address: Optional[str] = None,
    payment_method: str = "card",
    processed_by: Optional[str] = None,
    payment_status: str = "pending",
    payment_reference: str = "",
) -> Dict[str, Any]:
    if not items:
        raise ValidationError("Order must have at least one item")

    order_items, total = _price_items(db, items)

    voucher = None
    discount = 0.0
    if voucher_code:
        voucher = find_voucher(db, voucher_code)
        check_voucher(voucher, processed_by)
        discount = calculate_discount(voucher, total)

    now = now_utc()
    doc = build_document(
        schemas.Order,
        user=_user_id(user),
        items=order_items,
        total=total,
        discount=discount,
        finalTotal=round(total - discount, 2),
        voucher=str(voucher["_id"]) if voucher else None,
        shippingAddress=shipping_address or user.get("address") or "Not specified",
        paymentMethod=payment_method,
        paymentStatus=payment_status,
        paymentReference=payment_reference,
        processedBy=processed_by,
        createdAt=now,
        updatedAt=now,
    )

    reserved: List[Dict[str, Any]] = []
    redeemed = None
    try:
        for line in order_items:
            if not reserve_stock(db, line["product"], line["quantity"]):
                raise InsufficientStockError(f"Insufficient stock for {line['name'] or line['product']}")
            reserved.append(line)
        if voucher:
            redeemed = redeem_voucher(db, voucher_code, processed_by)
            doc["discount"] = calculate_discount(redeemed, total)
            doc["finalTotal"] = round(total - doc["discount"], 2)
        db["order"].insert_one(doc)
    except Exception:
        for line in reserved:
            release_stock(db, line["product"], line["quantity"])
        if redeemed:
            release_voucher(db, redeemed)
        raise

    logger.info(f"Order {doc['_id']} created for user {doc['user']}: total={total} discount={doc['discount']} final={doc['finalTotal']}")
    return doc


def update_order_status(db: Database, order_id: str, status: str) -> Dict[str, Any]:
    if status not in schemas.ORDER_STATUSES:
        raise ValidationError(f"Invalid order status: {status}")
    _id = oid(order_id)
    if not _id:
        raise NotFoundError("Order not found")

    previous = db["order"].find_one_and_update(
        {"_id": _id, "status": {"$ne": "cancelled"}},
        {"$set": {"status": status, "updatedAt": now_utc()}},
        return_document=ReturnDocument.BEFORE,
    )
    if previous is None:
        if db["order"].find_one({"_id": _id}) is None:
            raise NotFoundError("Order not found")
        if status != "cancelled":
            raise ValidationError("Cancelled orders cannot be reopened")
    elif status == "cancelled":
        for item in previous.get("items", []):
            release_stock(db, item["product"], int(item.get("quantity") or 0))
        logger.info(f"Order {order_id} cancelled, stock restored")
    return db["order"].find_one({"_id": _id})


# -----------------------------
# Bookings & gift orders
# -----------------------------

def create_booking(
    db: Database,
    user: Dict[str, Any],
    booking_data: Dict[str, Any],
    staff_id: Optional[str] = None,
    status: str = "pending",
    payment_status: str = "pending",
    payment_method: str = "card",
    payment_reference: str = "",
) -> Dict[str, Any]:
    service_id = booking_data.get("service") or booking_data.get("serviceId")
    if not service_id:
        raise ValidationError("Service ID is required")
    if not booking_data.get("date"):
        raise ValidationError("Date is required")
    if not booking_data.get("time"):
        raise ValidationError("Time is required")

    service = find_by_id(db, "service", service_id)
    if not service:
        raise NotFoundError("Service not found")

    booking_date = parse_datetime(booking_data["date"], "Date")
    if booking_date < start_of_today():
        raise ValidationError("Booking date cannot be in the past")

    now = now_utc()
    doc = build_document(
        schemas.Booking,
        user=_user_id(user),
        service=str(service["_id"]),
        serviceName=service.get("name", ""),
        staff=staff_id or booking_data.get("staff") or booking_data.get("assignedStaff") or None,
        date=booking_date,
        time=str(booking_data["time"]),
        duration=str(service.get("duration") or ""),
        specialRequests=booking_data.get("specialRequests") or "",
        price=float(service.get("price") or 0),
        status=status,
        paymentStatus=payment_status,
        paymentMethod=payment_method,
        paymentReference=payment_reference,
        createdAt=now,
        updatedAt=now,
    )
    db["booking"].insert_one(doc)
    logger.info(f"Booking {doc['_id']} created for user {doc['user']} ({doc['serviceName']})")
    return doc


def create_gift_order(
    db: Database,
    user: Dict[str, Any],
    gift_data: Dict[str, Any],
    staff_id: Optional[str] = None,
    status: str = "pending",
    payment_status: str = "pending",
    payment_method: str = "card",
    payment_reference: str = "",
) -> Dict[str, Any]:
    package_id = gift_data.get("giftPackage") or gift_data.get("giftId")
    if not package_id:
        raise ValidationError("Gift package ID is required")
    for field, label in (("recipientName", "Recipient name"), ("recipientEmail", "Recipient email"), ("deliveryDate", "Delivery date")):
        if not gift_data.get(field):
            raise ValidationError(f"{label} is required")

    package = find_by_id(db, "giftpackage", package_id)
    if not package:
        raise NotFoundError("Gift package not found")

    now = now_utc()
    doc = build_document(
        schemas.GiftOrder,
        user=_user_id(user),
        giftPackage=str(package["_id"]),
        packageName=package.get("name", ""),
        recipientName=str(gift_data["recipientName"]).strip(),
        recipientEmail=str(gift_data["recipientEmail"]).strip().lower(),
        message=(gift_data.get("message") or "").strip(),
        deliveryDate=parse_datetime(gift_data["deliveryDate"], "Delivery date"),
        price=float(package.get("basePrice") or package.get("price") or 0),
        assignedStaff=staff_id or gift_data.get("assignedStaff") or None,
        status=status,
        paymentStatus=payment_status,
        paymentMethod=payment_method,
        paymentReference=payment_reference,
        createdAt=now,
        updatedAt=now,
    )
    db["giftorder"].insert_one(doc)
    logger.info(f"Gift order {doc['_id']} created for user {doc['user']} ({doc['packageName']})")
    return doc


def _set_status(db: Database, collection: str, doc_id: str, status: str, allowed: tuple, label: str) -> Dict[str, Any]:
    if status not in allowed:
        raise ValidationError(f"Invalid {label} status: {status}")
    _id = oid(doc_id)
    updated = db[collection].find_one_and_update(
        {"_id": _id},
        {"$set": {"status": status, "updatedAt": now_utc()}},
        return_document=ReturnDocument.AFTER,
    ) if _id else None
    if not updated:
        raise NotFoundError(f"{label.capitalize()} not found")
    return updated


def update_booking_status(db: Database, booking_id: str, status: str) -> Dict[str, Any]:
    return _set_status(db, "booking", booking_id, status, schemas.BOOKING_STATUSES, "booking")


def update_gift_order_status(db: Database, gift_order_id: str, status: str) -> Dict[str, Any]:
    return _set_status(db, "giftorder", gift_order_id, status, schemas.GIFT_ORDER_STATUSES, "gift order")


def assign_booking_staff(db: Database, booking_id: str, staff_id: str) -> Dict[str, Any]:
    staff = find_by_id(db, "user", staff_id)
    if not staff or staff.get("role") not in ("staff", "admin"):
        raise ValidationError("Invalid staff member selected. Please select a staff member.")
    _id = oid(booking_id)
    booking = db["booking"].find_one_and_update(
        {"_id": _id},
        {"$set": {"staff": str(staff["_id"]), "status": "confirmed", "updatedAt": now_utc()}},
        return_document=ReturnDocument.AFTER,
    ) if _id else None
    if not booking:
        raise NotFoundError("Booking not found")
    logger.info(f"Staff {staff.get('name')} assigned to booking {booking_id}")
    return booking


# -----------------------------
# Single entry point for every payment path
# -----------------------------

def finalize_purchase(
    db: Database,
    kind: str,
    user: Dict[str, Any],
    payload: Dict[str, Any],
    payment_method: str,
    payment_status: str,
    payment_reference: str = "",
    staff_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Create the order, booking or gift order described by ``payload``.

    ``payload`` carries ``items`` / ``voucherCode`` / ``shippingAddress`` for
    orders, ``bookingData`` for bookings and ``giftData`` for gifts, plus an
    optional ``staffId`` credited with the sale.
    """
    staff_id = staff_id or payload.get("staffId") or None
    # paid bookings and gifts are confirmed straight away
    status = "confirmed" if payment_status == "completed" else "pending"

    if kind == "order":
        return create_order(
            db,
            user,
            payload.get("items") or [],
            voucher_code=payload.get("voucherCode"),
            shipping_address=payload.get("shippingAddress"),
            payment_method=payment_method,
            processed_by=staff_id,
            payment_status=payment_status,
            payment_reference=payment_reference,
        )
    if kind == "booking":
        return create_booking(
            db, user, payload.get("bookingData") or {}, staff_id=staff_id, status=status,
            payment_status=payment_status, payment_method=payment_method, payment_reference=payment_reference,
        )
    if kind == "gift":
        return create_gift_order(
            db, user, payload.get("giftData") or {}, staff_id=staff_id, status=status,
            payment_status=payment_status, payment_method=payment_method, payment_reference=payment_reference,
        )
    raise ValidationError("Invalid order type")


PURCHASE_COLLECTIONS = {"order": "order", "booking": "booking", "gift": "giftorder"}


def quote_purchase(db: Database, kind: str, payload: Dict[str, Any], staff_id: Optional[str] = None) -> float:
    """Amount ``finalize_purchase`` would charge for ``payload`` at current catalog prices."""
    staff_id = staff_id or payload.get("staffId") or None

    if kind == "order":
        items = payload.get("items") or []
        if not items:
            raise ValidationError("Order must have at least one item")
        _, total = _price_items(db, items)
        discount = 0.0
        if payload.get("voucherCode"):
            voucher = find_voucher(db, payload["voucherCode"])
            check_voucher(voucher, staff_id)
            discount = calculate_discount(voucher, total)
        return round(total - discount, 2)
    if kind == "booking":
        booking_data = payload.get("bookingData") or {}
        service_id = booking_data.get("service") or booking_data.get("serviceId")
        if not service_id:
            raise ValidationError("Service ID is required")
        service = find_by_id(db, "service", service_id)
        if not service:
            raise NotFoundError("Service not found")
        return round(float(service.get("price") or 0), 2)
    if kind == "gift":
        gift_data = payload.get("giftData") or {}
        package_id = gift_data.get("giftPackage") or gift_data.get("giftId")
        if not package_id:
            raise ValidationError("Gift package ID is required")
        package = find_by_id(db, "giftpackage", package_id)
        if not package:
            raise NotFoundError("Gift package not found")
        return round(float(package.get("basePrice") or package.get("price") or 0), 2)
    raise ValidationError("Invalid order type")


def void_purchase(db: Database, kind: str, record: Dict[str, Any]) -> None:
    """Remove a record created by ``finalize_purchase`` and return what it took."""
    if kind == "order":
        for item in record.get("items", []):
            release_stock(db, item["product"], int(item.get("quantity") or 0))
        voucher = find_by_id(db, "voucher", record.get("voucher"))
        if voucher:
            release_voucher(db, voucher)
    db[PURCHASE_COLLECTIONS[kind]].delete_one({"_id": record["_id"]})
    logger.info(f"Voided {kind} {record['_id']}")
