"""
Revenue aggregation for the admin and staff dashboards.

Nothing is materialised: every call fetches a snapshot of the collections
(``load_snapshot``) and reduces it with pure functions. The ``compute_*``
functions never mutate the snapshot, so the same snapshot always produces the
same report. Malformed records count as zero instead of failing the report.
"""
import re
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from bson import ObjectId
from pymongo.database import Database

from config import Config
from database import now_utc, to_str_id

ORDER_REVENUE_STATUSES = ("paid", "pending", "delivered", "completed")
BOOKING_REVENUE_STATUSES = ("completed", "confirmed")
GIFT_ORDER_REVENUE_STATUSES = ("completed", "delivered", "paid")

# historical field names, newest first
AMOUNT_FIELDS = ("finalTotal", "total", "totalAmount", "price")

MONTH_WINDOW = 6
MONTH_NAMES = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")

KINDS = ("orders", "bookings", "giftOrders")
STAFF_FIELDS = {"orders": "processedBy", "bookings": "staff", "giftOrders": "assignedStaff"}
COUNT_KEYS = {"orders": "totalOrders", "bookings": "totalBookings", "giftOrders": "totalGiftOrders"}

RECENT_LIMIT = 5
POPULAR_SERVICES_LIMIT = 5

Snapshot = Dict[str, List[Dict[str, Any]]]


def load_snapshot(db: Database) -> Snapshot:
    return {
        "users": list(db["user"].find({}, {"password": 0})),
        "products": list(db["product"].find({})),
        "services": list(db["service"].find({})),
        "bookings": list(db["booking"].find({})),
        "orders": list(db["order"].find({})),
        "giftOrders": list(db["giftorder"].find({})),
        "vouchers": list(db["voucher"].find({})),
    }


# -----------------------------
# Record helpers
# -----------------------------

def record_amount(doc: Dict[str, Any]) -> float:
    for field in AMOUNT_FIELDS:
        value = doc.get(field)
        if value is None or isinstance(value, bool):
            continue
        try:
            return float(value)
        except (TypeError, ValueError):
            continue
    return 0.0


def ref(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    if isinstance(value, dict):
        return ref(value.get("_id") or value.get("id"))
    return str(value)


def _as_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    if not isinstance(value, datetime):
        return None
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value.astimezone(timezone.utc)


def created_at(doc: Dict[str, Any]) -> Optional[datetime]:
    stamp = _as_datetime(doc.get("createdAt"))
    if stamp is None and isinstance(doc.get("_id"), ObjectId):
        stamp = doc["_id"].generation_time
    return stamp


def _newest(docs: Iterable[Dict[str, Any]], limit: int = RECENT_LIMIT) -> List[Dict[str, Any]]:
    oldest = datetime.min.replace(tzinfo=timezone.utc)
    ordered = sorted(docs, key=lambda d: created_at(d) or oldest, reverse=True)
    return [to_str_id(d) for d in ordered[:limit]]


def _duration_minutes(duration: Any) -> int:
    text = str(duration or "")
    match = re.search(r"(\d+)", text)
    if not match:
        return 0
    minutes = int(match.group(1))
    if re.search(r"\bh(ou)?rs?\b|\bhour", text, re.IGNORECASE):
        minutes *= 60
    return minutes


# -----------------------------
# Eligibility
# -----------------------------

def order_revenue_statuses(count_pending: Optional[bool] = None) -> Tuple[str, ...]:
    if count_pending is None:
        count_pending = Config.REVENUE_COUNT_PENDING_ORDERS
    if count_pending:
        return ORDER_REVENUE_STATUSES
    return tuple(s for s in ORDER_REVENUE_STATUSES if s != "pending")


def eligible_records(snapshot: Snapshot, count_pending: Optional[bool] = None) -> Snapshot:
    statuses = {
        "orders": order_revenue_statuses(count_pending),
        "bookings": BOOKING_REVENUE_STATUSES,
        "giftOrders": GIFT_ORDER_REVENUE_STATUSES,
    }
    return {
        kind: [d for d in snapshot.get(kind, []) if d.get("status") in statuses[kind]]
        for kind in KINDS
    }


def revenue(docs: Iterable[Dict[str, Any]]) -> float:
    return round(sum(record_amount(d) for d in docs), 2)


# -----------------------------
# Reductions
# -----------------------------

def trailing_months(now: datetime, count: int = MONTH_WINDOW) -> List[Tuple[int, int]]:
    year, month = now.year, now.month
    months = []
    for _ in range(count):
        months.append((year, month))
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    return list(reversed(months))


def monthly_revenue(eligible: Snapshot, now: datetime) -> List[Dict[str, Any]]:
    months = trailing_months(now)
    buckets = {key: {kind: 0.0 for kind in KINDS} for key in months}
    for kind in KINDS:
        for doc in eligible[kind]:
            stamp = created_at(doc)
            if stamp is None:
                continue
            bucket = buckets.get((stamp.year, stamp.month))
            if bucket is not None:
                bucket[kind] += record_amount(doc)

    result = []
    for year, month in months:
        breakdown = {kind: round(value, 2) for kind, value in buckets[(year, month)].items()}
        result.append({
            "month": month,
            "year": year,
            "monthName": f"{MONTH_NAMES[month - 1]} {year}",
            "revenue": round(sum(buckets[(year, month)].values()), 2),
            "breakdown": breakdown,
        })
    return result


def staff_performance(users: List[Dict[str, Any]], eligible: Snapshot) -> List[Dict[str, Any]]:
    performance = []
    for user in users:
        if user.get("role") not in ("staff", "admin"):
            continue
        staff_id = ref(user.get("_id"))
        entry: Dict[str, Any] = {
            "id": staff_id,
            "name": user.get("name"),
            "email": user.get("email"),
            "role": user.get("role"),
        }
        total = 0.0
        for kind in KINDS:
            credited = [d for d in eligible[kind] if ref(d.get(STAFF_FIELDS[kind])) == staff_id]
            entry[COUNT_KEYS[kind]] = len(credited)
            total += sum(record_amount(d) for d in credited)
        entry["totalSales"] = sum(entry[COUNT_KEYS[kind]] for kind in KINDS)
        entry["totalRevenue"] = round(total, 2)
        performance.append(entry)
    performance.sort(key=lambda e: e["totalRevenue"], reverse=True)
    return performance


def popular_services(bookings: List[Dict[str, Any]], services: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    names = {ref(s.get("_id")): s.get("name") for s in services}
    counts: Counter = Counter()
    for booking in bookings:
        service = booking.get("service")
        name = booking.get("serviceName") or names.get(ref(service))
        if not name and isinstance(service, dict):
            name = service.get("name")
        if name:
            counts[name] += 1
    return [{"name": name, "count": count} for name, count in counts.most_common(POPULAR_SERVICES_LIMIT)]


def compute_admin_stats(snapshot: Snapshot, now: Optional[datetime] = None, count_pending: Optional[bool] = None) -> Dict[str, Any]:
    now = now or now_utc()
    eligible = eligible_records(snapshot, count_pending)
    breakdown = {kind: revenue(eligible[kind]) for kind in KINDS}
    bookings = snapshot.get("bookings", [])
    orders = snapshot.get("orders", [])

    return {
        "stats": {
            "totalUsers": len(snapshot.get("users", [])),
            "totalProducts": len(snapshot.get("products", [])),
            "totalServices": len(snapshot.get("services", [])),
            "totalBookings": len(bookings),
            "totalOrders": len(orders),
            "totalGiftOrders": len(snapshot.get("giftOrders", [])),
            "totalVouchers": len(snapshot.get("vouchers", [])),
            "totalRevenue": round(sum(breakdown.values()), 2),
            "revenueBreakdown": breakdown,
        },
        "monthlyRevenue": monthly_revenue(eligible, now),
        "recentBookings": _newest(bookings),
        "recentOrders": _newest(orders),
        "staffPerformance": staff_performance(snapshot.get("users", []), eligible),
        "popularServices": popular_services(bookings, snapshot.get("services", [])),
    }


def compute_staff_stats(snapshot: Snapshot, staff_id: str, now: Optional[datetime] = None, count_pending: Optional[bool] = None) -> Dict[str, Any]:
    now = now or now_utc()
    staff_id = str(staff_id)
    credited = {
        kind: [d for d in snapshot.get(kind, []) if ref(d.get(STAFF_FIELDS[kind])) == staff_id]
        for kind in KINDS
    }
    eligible = eligible_records(credited, count_pending)
    earned = sum(revenue(eligible[kind]) for kind in KINDS)

    clients = {ref(d.get("user")) for kind in KINDS for d in credited[kind]} - {None}
    minutes = sum(_duration_minutes(b.get("duration")) for b in credited["bookings"] if b.get("status") != "cancelled")

    upcoming = []
    for booking in credited["bookings"]:
        when = _as_datetime(booking.get("date"))
        if when is not None and when >= now and booking.get("status") in ("pending", "confirmed"):
            upcoming.append((when, booking))
    upcoming.sort(key=lambda pair: pair[0])

    return {
        "success": True,
        "stats": {
            "totalSales": sum(len(credited[kind]) for kind in KINDS),
            "totalClients": len(clients),
            "totalHours": round(minutes / 60),
            "totalRevenue": round(earned, 2),
            "totalCommission": round(earned * Config.STAFF_COMMISSION_RATE, 2),
        },
        "upcomingAppointments": [to_str_id(b) for _, b in upcoming[:RECENT_LIMIT]],
        "recentSales": _newest(credited["orders"] + credited["giftOrders"]),
        "myVouchers": [to_str_id(v) for v in snapshot.get("vouchers", []) if ref(v.get("assignedTo")) == staff_id],
    }


def compute_public_stats(db: Database) -> Dict[str, Any]:
    return {
        "success": True,
        "stats": {
            "totalUsers": db["user"].count_documents({}),
            "totalProducts": db["product"].count_documents({}),
            "totalServices": db["service"].count_documents({}),
        },
    }


def compute_order_public_stats(db: Database) -> Dict[str, Any]:
    orders = list(db["order"].find({}, {"status": 1, "finalTotal": 1, "total": 1, "totalAmount": 1}))
    return {
        "totalOrders": len(orders),
        "totalRevenue": revenue(eligible_records({"orders": orders})["orders"]),
    }
