"""Read-only reports over the sales ledger.

Every query is scoped to one user and optionally to one platform and a
reporting window of ``days_back`` days (``None`` means all time). Nothing in
here writes to the database.
"""

from __future__ import annotations

import math
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import distinct, func
from sqlalchemy.orm import Query, Session

from sales_ledger.config import settings
from sales_ledger.models_sqlalchemy.models import Sale

FREQUENT_BUYER = "Frequent Buyer"
HIGH_VALUE = "High Value"
REGULAR = "Regular"

ALL = "all"

_revenue = func.sum(Sale.price * Sale.quantity)
# Order ids are only unique within a platform.
_order_key = Sale.platform + ":" + Sale.order_id


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored as UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _money(value: Optional[float]) -> float:
    return round(float(value or 0.0), 2)


def window_start(days_back: Optional[int], now: Optional[datetime] = None) -> Optional[datetime]:
    if days_back is None:
        return None
    now = now or datetime.now(timezone.utc)
    return now - timedelta(days=int(days_back))


def _scoped(
    query: Query,
    user_id: str,
    platform: Optional[str] = None,
    since: Optional[datetime] = None,
) -> Query:
    query = query.filter(Sale.user_id == user_id)
    if platform and platform != ALL:
        query = query.filter(Sale.platform == platform)
    if since is not None:
        query = query.filter(Sale.sale_date >= since)
    return query


def trend_series(
    db: Session,
    user_id: str,
    *,
    platform: Optional[str] = None,
    days_back: Optional[int] = 30,
) -> List[Dict[str, Any]]:
    """Revenue and distinct order count per calendar day (UTC), oldest first."""
    rows = (
        _scoped(
            db.query(Sale.sale_date, Sale.platform, Sale.order_id, Sale.price, Sale.quantity),
            user_id,
            platform,
            window_start(days_back),
        )
        .order_by(Sale.sale_date.asc())
        .all()
    )
    days: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
    for sale_date, sale_platform, order_id, price, quantity in rows:
        day = _utc(sale_date).date().isoformat()
        bucket = days.setdefault(day, {"revenue": 0.0, "orders": set()})
        bucket["revenue"] += (price or 0.0) * (quantity or 0)
        bucket["orders"].add((sale_platform, order_id))
    return [
        {"date": day, "revenue": _money(bucket["revenue"]), "orders": len(bucket["orders"])}
        for day, bucket in days.items()
    ]


def platform_breakdown(
    db: Session,
    user_id: str,
    *,
    platform: Optional[str] = None,
    days_back: Optional[int] = 30,
) -> List[Dict[str, Any]]:
    rows = (
        _scoped(
            db.query(Sale.platform, _revenue.label("revenue"), func.count(Sale.id).label("sales")),
            user_id,
            platform,
            window_start(days_back),
        )
        .group_by(Sale.platform)
        .order_by(_revenue.desc())
        .all()
    )
    return [{"platform": row.platform, "revenue": _money(row.revenue), "sales": int(row.sales)} for row in rows]


def top_products(
    db: Session,
    user_id: str,
    *,
    platform: Optional[str] = None,
    days_back: Optional[int] = 30,
    limit: int = 10,
) -> List[Dict[str, Any]]:
    rows = (
        _scoped(
            db.query(
                Sale.item_title,
                Sale.platform,
                func.sum(Sale.quantity).label("sales"),
                _revenue.label("revenue"),
            ),
            user_id,
            platform,
            window_start(days_back),
        )
        .group_by(Sale.item_title, Sale.platform)
        .order_by(_revenue.desc())
        .limit(limit)
        .all()
    )
    return [
        {
            "name": row.item_title,
            "platform": row.platform,
            "sales": int(row.sales or 0),
            "revenue": _money(row.revenue),
        }
        for row in rows
    ]


@dataclass
class CustomerAggregate:
    buyer_name: str
    buyer_email: Optional[str]
    order_count: int
    total_spent: float
    first_order: Optional[datetime]
    last_order: Optional[datetime]

    @property
    def avg_order_value(self) -> float:
        return self.total_spent / self.order_count if self.order_count else 0.0

    def to_dict(self, high_value_threshold: Optional[float] = None) -> Dict[str, Any]:
        return {
            "buyer_name": self.buyer_name,
            "buyer_email": self.buyer_email,
            "order_count": self.order_count,
            "total_spent": _money(self.total_spent),
            "first_order": self.first_order.isoformat() if self.first_order else None,
            "last_order": self.last_order.isoformat() if self.last_order else None,
            "avg_order_value": _money(self.avg_order_value),
            "customer_type": classify_customer(self, high_value_threshold),
        }


def classify_customer(customer: CustomerAggregate, high_value_threshold: Optional[float] = None) -> str:
    threshold = settings.HIGH_VALUE_THRESHOLD if high_value_threshold is None else high_value_threshold
    if customer.order_count >= 2:
        return FREQUENT_BUYER
    if customer.total_spent >= threshold:
        return HIGH_VALUE
    return REGULAR


def customer_aggregates(
    db: Session,
    user_id: str,
    *,
    platform: Optional[str] = None,
    days_back: Optional[int] = None,
) -> List[CustomerAggregate]:
    """Group sales by buyer; sales without a buyer name are left out.

    Sorted by total spent, biggest first.
    """
    total_spent = _revenue.label("total_spent")
    rows = (
        _scoped(
            db.query(
                Sale.buyer_email,
                Sale.buyer_name,
                func.count(distinct(_order_key)).label("order_count"),
                total_spent,
                func.min(Sale.sale_date).label("first_order"),
                func.max(Sale.sale_date).label("last_order"),
            ),
            user_id,
            platform,
            window_start(days_back),
        )
        .filter(Sale.buyer_name.isnot(None), Sale.buyer_name != "")
        .group_by(Sale.buyer_email, Sale.buyer_name)
        .order_by(_revenue.desc())
        .all()
    )
    return [
        CustomerAggregate(
            buyer_name=row.buyer_name,
            buyer_email=row.buyer_email,
            order_count=int(row.order_count),
            total_spent=float(row.total_spent or 0.0),
            first_order=_utc(row.first_order),
            last_order=_utc(row.last_order),
        )
        for row in rows
    ]


def customer_metrics(
    customers: List[CustomerAggregate],
    *,
    days_back: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Window metrics over customer aggregates built from the user's full history.

    A customer counts toward the window when they bought anything inside it,
    and is new when their first purchase ever is inside it. All-time reports
    use ``NEW_CUSTOMER_LOOKBACK_DAYS`` for the "new" cutoff.
    """
    now = now or datetime.now(timezone.utc)
    since = window_start(days_back, now)
    new_since = since or window_start(settings.NEW_CUSTOMER_LOOKBACK_DAYS, now)

    active = [c for c in customers if since is None or (c.last_order is not None and c.last_order >= since)]
    total = len(active)
    returning = sum(1 for c in active if c.order_count > 1)
    new = sum(1 for c in active if c.first_order is not None and c.first_order >= new_since)
    avg_value = sum(c.total_spent for c in active) / total if total else 0.0

    return {
        "newCustomers": new,
        "returningCustomers": returning,
        "totalCustomers": total,
        "avgCustomerValue": _money(avg_value),
        "repeatRate": int(math.floor(returning / total * 100 + 0.5)) if total else 0,
    }


def analytics_report(
    db: Session,
    user_id: str,
    *,
    platform: Optional[str] = None,
    days_back: Optional[int] = 30,
    top_limit: int = 10,
) -> Dict[str, Any]:
    trend = trend_series(db, user_id, platform=platform, days_back=days_back)
    customers = customer_aggregates(db, user_id, platform=platform)
    return {
        "revenueTrend": trend,
        "platformBreakdown": platform_breakdown(db, user_id, platform=platform, days_back=days_back),
        "topProducts": top_products(db, user_id, platform=platform, days_back=days_back, limit=top_limit),
        "customerMetrics": customer_metrics(customers, days_back=days_back),
    }


def customer_report(
    db: Session,
    user_id: str,
    *,
    platform: Optional[str] = None,
    days_back: Optional[int] = None,
    limit: int = 50,
    high_value_threshold: Optional[float] = None,
) -> Dict[str, Any]:
    customers = customer_aggregates(db, user_id, platform=platform, days_back=days_back)
    types = [classify_customer(c, high_value_threshold) for c in customers]
    total_customers = len(customers)
    total_revenue = sum(c.total_spent for c in customers)
    return {
        "customers": [c.to_dict(high_value_threshold) for c in customers[:limit]],
        "summary": {
            "totalCustomers": total_customers,
            "totalRevenue": _money(total_revenue),
            "avgLTV": _money(total_revenue / total_customers) if total_customers else 0.0,
            "frequentBuyers": types.count(FREQUENT_BUYER),
            "highValueCustomers": types.count(HIGH_VALUE),
        },
    }


def list_sales(
    db: Session,
    user_id: str,
    *,
    platform: Optional[str] = None,
    status: Optional[str] = None,
    days_back: Optional[int] = None,
    page: int = 1,
    limit: int = 50,
) -> Dict[str, Any]:
    page = max(1, int(page))
    limit = max(1, int(limit))
    query = _scoped(db.query(Sale), user_id, platform, window_start(days_back))
    if status and status != ALL:
        query = query.filter(Sale.normalized_status == status)

    total = query.count()
    sales = (
        query.order_by(Sale.sale_date.desc(), Sale.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {
        "sales": [sale.to_dict() for sale in sales],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if total else 0,
        },
    }


def sales_stats(
    db: Session,
    user_id: str,
    *,
    platform: Optional[str] = None,
    days_back: Optional[int] = 30,
) -> Dict[str, Any]:
    orders, revenue = _scoped(
        db.query(func.count(distinct(_order_key)), _revenue),
        user_id,
        platform,
        window_start(days_back),
    ).one()
    orders = int(orders or 0)
    revenue = float(revenue or 0.0)
    by_status = (
        _scoped(
            db.query(Sale.normalized_status, func.count(distinct(_order_key))),
            user_id,
            platform,
            window_start(days_back),
        )
        .group_by(Sale.normalized_status)
        .all()
    )
    return {
        "total_sales": orders,
        "total_revenue": _money(revenue),
        "avg_order_value": _money(revenue / orders) if orders else 0.0,
        "daily_data": trend_series(db, user_id, platform=platform, days_back=days_back),
        "platform_data": platform_breakdown(db, user_id, platform=platform, days_back=days_back),
        "status_breakdown": {status: int(count) for status, count in by_status},
    }
