from sqlalchemy import Column, Integer, String, Float, DateTime, Text, Boolean, Index, JSON, UniqueConstraint
from sqlalchemy.sql import func
import enum

from . import Base


class Platform(str, enum.Enum):
    swell = "swell"
    ebay = "ebay"
    etsy = "etsy"
    amazon = "amazon"


class NormalizedStatus(str, enum.Enum):
    completed = "completed"
    pending = "pending"
    cancelled = "cancelled"
    refunded = "refunded"
    unknown = "unknown"


class SyncOutcome(str, enum.Enum):
    success = "success"
    partial = "partial"
    error = "error"


class ApiCredential(Base):
    """Per-user marketplace connection.

    Rows are soft-deleted (``is_active = False``) on disconnect and their
    tokens are refreshed in place when they expire.
    """

    __tablename__ = "api_credentials"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    platform = Column(String(32), nullable=False)
    store_id = Column(String(255), nullable=True)
    store_name = Column(String(255), nullable=True)
    store_url = Column(String(512), nullable=True)
    public_key = Column(Text, nullable=True)
    secret_key = Column(Text, nullable=True)
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("user_id", "platform", name="uq_api_credentials_user_platform"),
    )


class Sale(Base):
    """One sold line item, keyed by (user_id, platform, order_id, item_id).

    ``price`` is per unit and already includes the item's share of the order
    shipping charge.
    """

    __tablename__ = "sales"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False)
    platform = Column(String(32), nullable=False)
    order_id = Column(String(128), nullable=False)
    item_id = Column(String(255), nullable=False)
    item_title = Column(Text, nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    price = Column(Float, nullable=False)
    currency = Column(String(8), nullable=False, default="USD")
    buyer_name = Column(String(255), nullable=True)
    buyer_email = Column(String(255), nullable=True)
    sale_date = Column(DateTime(timezone=True), nullable=False)
    status = Column(String(64), nullable=True)
    normalized_status = Column(String(16), nullable=False, default=NormalizedStatus.unknown.value)
    shipping_address = Column(Text, nullable=True)
    tracking_number = Column(String(128), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("user_id", "platform", "order_id", "item_id", name="uq_sales_identity"),
        Index("idx_sales_user_date", "user_id", "sale_date"),
        Index("idx_sales_user_platform", "user_id", "platform"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "platform": self.platform,
            "order_id": self.order_id,
            "item_id": self.item_id,
            "item_title": self.item_title,
            "quantity": self.quantity,
            "price": self.price,
            "currency": self.currency,
            "buyer_name": self.buyer_name,
            "buyer_email": self.buyer_email,
            "sale_date": self.sale_date.isoformat() if self.sale_date else None,
            "status": self.status,
            "normalized_status": self.normalized_status,
            "shipping_address": self.shipping_address,
            "tracking_number": self.tracking_number,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class SyncRun(Base):
    """Audit entry for one platform within one sync invocation. Insert-only."""

    __tablename__ = "sync_runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    platform = Column(String(32), nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=False)
    finished_at = Column(DateTime(timezone=True), nullable=True)
    items_synced = Column(Integer, nullable=False, default=0)
    outcome = Column(String(16), nullable=False)  # success, partial, error
    error_detail = Column(Text, nullable=True)
    warnings = Column(JSON, nullable=True)

    __table_args__ = (
        Index("idx_sync_runs_user_started", "user_id", "started_at"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "platform": self.platform,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "items_synced": self.items_synced,
            "outcome": self.outcome,
            "error_detail": self.error_detail,
            "warnings": self.warnings or [],
        }
