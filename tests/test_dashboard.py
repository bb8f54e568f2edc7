import copy
from datetime import datetime, timedelta, timezone

from bson import ObjectId

import dashboard

NOW = datetime(2025, 3, 15, 12, 0, tzinfo=timezone.utc)
STAFF_ID = ObjectId()
OTHER_STAFF_ID = ObjectId()


def _order(amount, status="completed", when=NOW, **extra):
    return {"_id": ObjectId(), "user": "c1", "finalTotal": amount, "total": amount, "status": status, "createdAt": when, **extra}


def _snapshot():
    return {
        "users": [
            {"_id": STAFF_ID, "name": "Lerato", "email": "lerato@tassel.co.za", "role": "staff"},
            {"_id": OTHER_STAFF_ID, "name": "Sipho", "email": "sipho@tassel.co.za", "role": "staff"},
            {"_id": ObjectId(), "name": "Thandi", "email": "thandi@example.com", "role": "customer"},
        ],
        "products": [{"_id": ObjectId(), "name": "Argan Hair Oil"}],
        "services": [{"_id": ObjectId(), "name": "Massage"}],
        "orders": [
            _order(200.0, processedBy=str(STAFF_ID)),
            _order(80.0, status="pending"),
            _order(999.0, status="cancelled"),
            _order(150.0, when=datetime(2025, 1, 10, tzinfo=timezone.utc), processedBy=str(OTHER_STAFF_ID)),
        ],
        "bookings": [
            {"_id": ObjectId(), "user": "c2", "serviceName": "Massage", "price": 450.0, "status": "confirmed", "staff": str(STAFF_ID),
             "duration": "90 min", "date": NOW + timedelta(days=2), "createdAt": NOW},
            {"_id": ObjectId(), "user": "c3", "serviceName": "Massage", "price": 450.0, "status": "pending", "createdAt": NOW},
            {"_id": ObjectId(), "user": "c3", "serviceName": "Facial", "price": 300.0, "status": "completed", "createdAt": NOW},
        ],
        "giftOrders": [
            {"_id": ObjectId(), "user": "c4", "price": 1200.0, "status": "delivered", "assignedStaff": str(STAFF_ID), "createdAt": NOW},
            {"_id": ObjectId(), "user": "c4", "price": 500.0, "status": "pending", "createdAt": NOW},
        ],
        "vouchers": [{"_id": ObjectId(), "code": "LERATO5", "assignedTo": str(STAFF_ID)}],
    }


def test_admin_stats_totals():
    stats = dashboard.compute_admin_stats(_snapshot(), now=NOW, count_pending=True)["stats"]

    assert stats["revenueBreakdown"] == {"orders": 430.0, "bookings": 750.0, "giftOrders": 1200.0}
    assert stats["totalRevenue"] == 2380.0
    assert stats["totalOrders"] == 4
    assert stats["totalUsers"] == 3


def test_pending_orders_can_be_excluded():
    stats = dashboard.compute_admin_stats(_snapshot(), now=NOW, count_pending=False)["stats"]

    assert stats["revenueBreakdown"]["orders"] == 350.0


def test_admin_stats_is_pure():
    snapshot = _snapshot()
    before = copy.deepcopy(snapshot)

    first = dashboard.compute_admin_stats(snapshot, now=NOW, count_pending=True)
    second = dashboard.compute_admin_stats(snapshot, now=NOW, count_pending=True)

    assert first == second
    assert snapshot == before


def test_new_completed_order_adds_exactly_its_amount():
    snapshot = _snapshot()
    before = dashboard.compute_admin_stats(snapshot, now=NOW, count_pending=True)

    snapshot["orders"].append(_order(123.45))
    after = dashboard.compute_admin_stats(snapshot, now=NOW, count_pending=True)

    assert round(after["stats"]["totalRevenue"] - before["stats"]["totalRevenue"], 2) == 123.45
    assert round(after["monthlyRevenue"][-1]["revenue"] - before["monthlyRevenue"][-1]["revenue"], 2) == 123.45
    assert after["monthlyRevenue"][:-1] == before["monthlyRevenue"][:-1]


def test_monthly_revenue_window():
    months = dashboard.compute_admin_stats(_snapshot(), now=NOW, count_pending=True)["monthlyRevenue"]

    assert [m["monthName"] for m in months] == ["Oct 2024", "Nov 2024", "Dec 2024", "Jan 2025", "Feb 2025", "Mar 2025"]
    assert months[3]["revenue"] == 150.0
    assert months[5]["breakdown"]["bookings"] == 750.0
    assert months[0]["revenue"] == 0


def test_trailing_months_cross_year():
    assert dashboard.trailing_months(datetime(2025, 2, 1), 3) == [(2024, 12), (2025, 1), (2025, 2)]


def test_staff_performance_ranking():
    performance = dashboard.compute_admin_stats(_snapshot(), now=NOW, count_pending=True)["staffPerformance"]

    assert [p["name"] for p in performance] == ["Lerato", "Sipho"]
    lerato = performance[0]
    assert lerato["totalOrders"] == 1
    assert lerato["totalBookings"] == 1
    assert lerato["totalGiftOrders"] == 1
    assert lerato["totalSales"] == 3
    assert lerato["totalRevenue"] == 1850.0


def test_popular_services():
    popular = dashboard.compute_admin_stats(_snapshot(), now=NOW)["popularServices"]

    assert popular[0] == {"name": "Massage", "count": 2}


def test_malformed_records_count_as_zero():
    snapshot = _snapshot()
    snapshot["orders"] = [
        {"_id": ObjectId(), "status": "completed", "finalTotal": "abc"},
        {"_id": ObjectId(), "status": "completed", "totalAmount": "40"},
        {"_id": ObjectId(), "status": "completed"},
    ]

    stats = dashboard.compute_admin_stats(snapshot, now=NOW)["stats"]

    assert stats["revenueBreakdown"]["orders"] == 40.0


def test_record_amount_fallbacks():
    assert dashboard.record_amount({"finalTotal": 90, "total": 100}) == 90.0
    assert dashboard.record_amount({"totalAmount": "55.5"}) == 55.5
    assert dashboard.record_amount({"price": 300}) == 300.0
    assert dashboard.record_amount({}) == 0.0


def test_staff_stats():
    result = dashboard.compute_staff_stats(_snapshot(), str(STAFF_ID), now=NOW, count_pending=True)

    stats = result["stats"]
    assert stats["totalSales"] == 3
    assert stats["totalClients"] == 3
    assert stats["totalRevenue"] == 1850.0
    assert stats["totalCommission"] == round(1850.0 * dashboard.Config.STAFF_COMMISSION_RATE, 2)
    assert stats["totalHours"] == 2
    assert len(result["upcomingAppointments"]) == 1
    assert [v["code"] for v in result["myVouchers"]] == ["LERATO5"]


def test_staff_stats_for_unknown_staff():
    result = dashboard.compute_staff_stats(_snapshot(), str(ObjectId()), now=NOW)

    assert result["stats"]["totalRevenue"] == 0
    assert result["upcomingAppointments"] == []
