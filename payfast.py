"""
Payfast payment gateway adapter.

A payment attempt is stored in the ``payment`` collection under its merchant
reference (``m_payment_id``) and moves through these states::

    initiated -> notified -> completed
                          \\-> failed
    initiated -> cancelled

The purchase itself (order, booking or gift order) only exists once Payfast
reports the payment COMPLETE through an ITN. Claiming the reference with a
conditional update is what keeps a re-delivered ITN from creating a second
record.
"""
import hashlib
import hmac
import json
import logging
import re
import time
from typing import Any, Dict, List, Optional
from urllib.parse import quote_plus

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import schemas
from checkout import build_document, finalize_purchase, quote_purchase, void_purchase
from config import Config
from dashboard import record_amount
from database import find_by_id, now_utc
from errors import ServiceError, SignatureMismatchError, TransientStoreError, ValidationError

logger = logging.getLogger(__name__)

PAYMENT_STATUS_COMPLETE = "COMPLETE"
CUSTOM_FIELD_LIMIT = 255
AMOUNT_TOLERANCE = 0.01
REFERENCE_ATTEMPTS = 3


# -----------------------------
# Signature
# -----------------------------

def generate_signature(data: Dict[str, Any], passphrase: str = "") -> str:
    """MD5 over the non-empty fields sorted by key, urlencoded with ``+`` for spaces."""
    pf_output = "&".join(
        f"{key}={quote_plus(str(data[key]).strip())}"
        for key in sorted(data)
        if data[key] is not None and str(data[key]) != ""
    )
    if passphrase:
        pf_output += f"&passphrase={quote_plus(passphrase.strip())}"
    return hashlib.md5(pf_output.encode("utf-8")).hexdigest()


def verify_signature(data: Dict[str, Any], passphrase: str = "") -> bool:
    fields = {k: v for k, v in data.items() if k != "signature"}
    expected = generate_signature(fields, passphrase)
    return hmac.compare_digest(expected, str(data.get("signature") or ""))


# -----------------------------
# Helpers
# -----------------------------

def format_phone_number(phone: Optional[str]) -> str:
    """Normalise a South African number to 27XXXXXXXXX, or '' when unrecognised."""
    if not phone:
        return ""
    cleaned = re.sub(r"\D", "", phone)
    if cleaned.startswith("27") and len(cleaned) == 11:
        return cleaned
    if cleaned.startswith("0") and len(cleaned) == 10:
        return "27" + cleaned[1:]
    if len(cleaned) == 9 and not cleaned.startswith("0"):
        return "27" + cleaned
    logger.debug(f"Phone number format not recognized, skipping: {cleaned}")
    return ""


def merchant_reference(user_id: str, timestamp_ms: Optional[int] = None) -> str:
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    return f"TG{timestamp_ms}{str(user_id)[-4:]}"


def _numeric_user_tag(user_id: str) -> int:
    digits = re.sub(r"\D", "", str(user_id))
    return int(digits[-9:]) if digits else 0


def _compact(pending: Dict[str, Any]) -> str:
    encoded = json.dumps(pending, separators=(",", ":"), default=str)
    # Payfast truncates custom strings; the stored transaction is the full copy
    return encoded if len(encoded) <= CUSTOM_FIELD_LIMIT else ""


def _parse_amount(value: Any) -> Optional[float]:
    try:
        return round(float(value), 2)
    except (TypeError, ValueError):
        return None


def _pending_items(items: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    pending = []
    for item in items or []:
        pending.append({
            "product": str(item.get("product") or item.get("productId") or ""),
            "quantity": item.get("quantity", 1),
        })
    return pending


def _set_state(db: Database, reference: str, state: str, expected: str, **fields: Any) -> None:
    db["payment"].update_one(
        {"_id": reference, "status": expected},
        {"$set": {"status": state, "updatedAt": now_utc(), **fields}},
    )


# -----------------------------
# Outbound
# -----------------------------

def initiate(
    db: Database,
    user: Dict[str, Any],
    kind: str,
    total_amount: Any,
    items: Optional[List[Dict[str, Any]]] = None,
    booking_data: Optional[Dict[str, Any]] = None,
    gift_data: Optional[Dict[str, Any]] = None,
    staff_id: Optional[str] = None,
    voucher_code: Optional[str] = None,
) -> Dict[str, Any]:
    amount = _parse_amount(total_amount)
    if kind not in schemas.PURCHASE_TYPES or amount is None or amount <= 0:
        raise ValidationError("Valid type and total amount are required")

    user_id = str(user["_id"])
    pending = {
        "userId": user_id,
        "items": _pending_items(items),
        "bookingData": booking_data or {},
        "giftData": gift_data or {},
        "staffId": staff_id,
        "voucherCode": voucher_code,
    }
    expected = quote_purchase(db, kind, pending)
    if abs(amount - expected) > AMOUNT_TOLERANCE:
        logger.warning(f"Payment for user {user_id} rejected: client total {amount} but current price is {expected}")
        raise ValidationError(f"Total amount does not match current price of R {expected:.2f}")

    now = now_utc()
    timestamp_ms = int(time.time() * 1000)
    for attempt in range(REFERENCE_ATTEMPTS):
        reference = merchant_reference(user_id, timestamp_ms + attempt)
        transaction = build_document(
            schemas.PaymentTransaction,
            reference=reference, type=kind, amount=expected, user=user_id,
            payload=pending, createdAt=now, updatedAt=now,
        )
        transaction["_id"] = transaction.pop("reference")
        try:
            db["payment"].insert_one(transaction)
            break
        except DuplicateKeyError:
            logger.info(f"Merchant reference {reference} already taken, retrying")
    else:
        raise TransientStoreError("Could not allocate a payment reference")

    names = (user.get("name") or "").split()
    data: Dict[str, Any] = {
        "merchant_id": Config.PAYFAST_MERCHANT_ID,
        "merchant_key": Config.PAYFAST_MERCHANT_KEY,
        "return_url": f"{Config.BACKEND_URL}/payment/success",
        "cancel_url": f"{Config.BACKEND_URL}/payment/cancel",
        "notify_url": f"{Config.BACKEND_URL}/payment/notify",
        "name_first": (names[0] if names else "Customer")[:100],
        "name_last": (" ".join(names[1:]) or "User")[:100],
        "email_address": (user.get("email") or "")[:100],
        "m_payment_id": reference,
        "amount": f"{expected:.2f}",
        "item_name": f"Tassel Group {kind.capitalize()}"[:100],
        "item_description": f"Payment for {kind} order"[:255],
        "custom_int1": _numeric_user_tag(user_id),
        "custom_str1": kind,
        "custom_str2": _compact(pending),
        "email_confirmation": 1,
        "confirmation_address": Config.BUSINESS_EMAIL,
    }
    cell_number = format_phone_number(user.get("phone"))
    if cell_number:
        data["cell_number"] = cell_number

    data = {k: v for k, v in data.items() if v is not None and v != ""}
    data["signature"] = generate_signature(data, Config.PAYFAST_PASSPHRASE)

    logger.info(f"Payment {reference} initiated: type={kind} amount={data['amount']} user={user_id}")
    return {
        "success": True,
        "payfastUrl": Config.PAYFAST_URL,
        "data": data,
        "merchantReference": reference,
    }


def cancel(db: Database, reference: str) -> bool:
    result = db["payment"].update_one(
        {"_id": reference, "status": "initiated"},
        {"$set": {"status": "cancelled", "updatedAt": now_utc()}},
    )
    if result.modified_count:
        logger.info(f"Payment {reference} cancelled by payer")
    return bool(result.modified_count)


def get_transaction(db: Database, reference: str) -> Optional[Dict[str, Any]]:
    return db["payment"].find_one({"_id": reference})


# -----------------------------
# Inbound (ITN)
# -----------------------------

def _claim_unknown(db: Database, reference: str, itn: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Claim a reference we have no initiation record for, using the custom fields."""
    try:
        pending = json.loads(itn.get("custom_str2") or "{}")
    except ValueError:
        raise ValidationError("Payment custom data is not readable")
    if not isinstance(pending, dict) or not pending.get("userId"):
        raise ValidationError("Payment custom data does not identify a customer")

    now = now_utc()
    transaction = build_document(
        schemas.PaymentTransaction,
        reference=reference, type=itn.get("custom_str1"), amount=_parse_amount(itn.get("amount_gross")),
        user=str(pending["userId"]), payload=pending, status="notified", createdAt=now, updatedAt=now,
    )
    transaction["_id"] = transaction.pop("reference")
    try:
        db["payment"].insert_one(transaction)
    except DuplicateKeyError:
        return None
    logger.warning(f"ITN for unknown reference {reference}, recovered from custom fields")
    return transaction


def _release_claim(db: Database, reference: str) -> None:
    _set_state(db, reference, "initiated", expected="notified")


def handle_notification(db: Database, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Verify an ITN and create the purchase it pays for, at most once per reference.

    A purchase whose price differs from ``amount_gross`` is voided and the
    payment marked failed.

    Returns a result dict; ``record`` is only set when this call created the
    purchase. Raises ``SignatureMismatchError`` before touching the database
    when the payload is not signed with our passphrase.
    """
    itn = dict(payload)
    if not verify_signature(itn, Config.PAYFAST_PASSPHRASE):
        logger.warning(f"ITN signature verification failed for reference {itn.get('m_payment_id')!r}")
        raise SignatureMismatchError("Signature verification failed")

    reference = str(itn.get("m_payment_id") or "")
    if not reference:
        raise ValidationError("Missing merchant reference")
    payment_status = str(itn.get("payment_status") or "")
    result: Dict[str, Any] = {"reference": reference, "duplicate": False, "record": None}

    if payment_status != PAYMENT_STATUS_COMPLETE:
        state = "cancelled" if payment_status == "CANCELLED" else "failed"
        _set_state(db, reference, state, expected="initiated", error=f"Gateway reported {payment_status or 'no status'}")
        logger.info(f"Payment {reference} not completed: {payment_status}")
        return {**result, "status": state}

    transaction = db["payment"].find_one_and_update(
        {"_id": reference, "status": "initiated"},
        {"$set": {"status": "notified", "updatedAt": now_utc()}},
        return_document=ReturnDocument.AFTER,
    )
    if transaction is None:
        existing = get_transaction(db, reference)
        if existing is None:
            transaction = _claim_unknown(db, reference, itn)
        if transaction is None:
            existing = existing or get_transaction(db, reference) or {}
            state = existing.get("status", "notified")
            logger.info(f"Duplicate ITN for {reference} ignored (state {state})")
            return {**result, "duplicate": True, "status": state}

    amount_gross = _parse_amount(itn.get("amount_gross"))
    expected_amount = float(transaction.get("amount") or 0)
    if amount_gross is None or abs(amount_gross - expected_amount) > AMOUNT_TOLERANCE:
        logger.warning(f"Payment {reference} amount mismatch: expected {expected_amount}, gateway reported {itn.get('amount_gross')}")
        _set_state(db, reference, "failed", expected="notified", error="Amount mismatch")
        return {**result, "status": "failed"}

    user = find_by_id(db, "user", transaction["user"])
    if not user:
        logger.warning(f"Payment {reference}: user {transaction['user']} not found, recording against the id only")
        user = {"_id": transaction["user"], "name": "Customer", "email": "", "address": ""}

    try:
        record = finalize_purchase(
            db,
            transaction["type"],
            user,
            transaction.get("payload") or {},
            payment_method="payfast",
            payment_status="completed",
            payment_reference=reference,
        )
    except TransientStoreError:
        _release_claim(db, reference)
        raise
    except ServiceError as e:
        # business rule failure, a re-delivery would fail the same way
        logger.error(f"Payment {reference} could not be fulfilled: {e.message}")
        _set_state(db, reference, "failed", expected="notified", error=e.message)
        return {**result, "status": "failed", "error": e.message}
    except Exception:
        logger.error(f"Unexpected error fulfilling payment {reference}", exc_info=True)
        _release_claim(db, reference)
        raise

    charged = record_amount(record)
    if abs(charged - amount_gross) > AMOUNT_TOLERANCE:
        logger.warning(f"Payment {reference} underpaid: {transaction['type']} costs {charged}, gateway reported {amount_gross}")
        void_purchase(db, transaction["type"], record)
        _set_state(db, reference, "failed", expected="notified", error="Amount does not cover purchase")
        return {**result, "status": "failed", "error": "Amount does not cover purchase"}

    _set_state(db, reference, "completed", expected="notified", recordId=str(record["_id"]))
    logger.info(f"Payment {reference} completed: {transaction['type']} {record['_id']}")
    return {
        **result,
        "status": "completed",
        "type": transaction["type"],
        "amount": amount_gross,
        "user": user,
        "record": record,
    }


# -----------------------------
# Manual (offline) purchases
# -----------------------------

def handle_manual_order(
    db: Database,
    user: Dict[str, Any],
    kind: str,
    payload: Dict[str, Any],
    staff_id: Optional[str] = None,
) -> Dict[str, Any]:
    if kind not in schemas.PURCHASE_TYPES:
        raise ValidationError("Invalid order type")
    record = finalize_purchase(
        db, kind, user, payload,
        payment_method="manual",
        payment_status="manual",
        staff_id=staff_id,
    )
    logger.info(f"Manual {kind} {record['_id']} placed for user {user.get('_id')}")
    return {"reference": str(record["_id"]), "type": kind, "record": record}
