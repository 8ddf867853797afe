import os

# Must be set before sales_ledger.config is imported anywhere.
os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from sales_ledger.models.raw_orders import RawOrder
from sales_ledger.models_sqlalchemy import Base
from sales_ledger.models_sqlalchemy.models import ApiCredential
from sales_ledger.utils.logger import platform_logger


@pytest.fixture
def session_factory():
    """Fresh in-memory database per test, shared across sessions via StaticPool."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(autouse=True)
def _clear_platform_logs():
    platform_logger.clear_logs()
    yield
    platform_logger.clear_logs()


@pytest.fixture
def add_credential(session_factory):
    def _add(user_id="user-1", platform="swell", **fields):
        defaults = {
            "store_id": f"{platform}-store",
            "store_name": f"{platform.title()} Store",
            "secret_key": "secret",
            "access_token": "token",
            "refresh_token": "refresh",
            "is_active": True,
        }
        defaults.update(fields)
        db = session_factory()
        try:
            row = ApiCredential(user_id=user_id, platform=platform, **defaults)
            db.add(row)
            db.commit()
            return row.id
        finally:
            db.close()

    return _add


def make_order(
    order_id="1001",
    items=None,
    shipping_total=0.0,
    status="complete",
    buyer_name="Ann Buyer",
    buyer_email="ann@example.com",
    created_at=None,
    **extra,
) -> RawOrder:
    if items is None:
        items = [{"item_id": f"{order_id}-A", "title": "Widget", "unit_price": 5.0, "quantity": 1}]
    return RawOrder.model_validate(
        {
            "order_id": order_id,
            "shipping_total": shipping_total,
            "status": status,
            "buyer": {"name": buyer_name, "email": buyer_email},
            "created_at": created_at or datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc),
            "items": items,
            **extra,
        }
    )
