from __future__ import annotations

import uuid

from sqlalchemy.orm import validates

from ..extensions import db
from ..services.stage_pipeline import get_pipeline, new_tracking_token
from stagetrack.time_utils import to_utc_z, utcnow


def _new_id() -> str:
    return uuid.uuid4().hex


def _require_stage(key: str, value, *, nullable: bool):
    if value is None:
        if nullable:
            return None
        raise ValueError(f"{key} is required")
    stage = get_pipeline().normalize(value)
    if stage is None:
        raise ValueError(f"{key} {value!r} is not a pipeline stage")
    return stage


class Account(db.Model):
    """Customer account that orders belong to."""
    __tablename__ = "accounts"

    id = db.Column(db.String(32), primary_key=True, default=_new_id)
    name = db.Column(db.String(255), nullable=False)
    contact_email = db.Column(db.String(255), nullable=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "contact_email": self.contact_email,
            "created_at": to_utc_z(self.created_at),
        }


class Order(db.Model):
    """
    Aggregate root for one customer machine order.

    INVARIANTS:
    - current_stage is always a pipeline member
    - is_locked freezes descriptive fields (see lock_service); stage moves,
      measurements, archive state and the docs link stay editable
    - never deleted while locked

    version_id is the optimistic concurrency column; concurrent writers to
    is_locked or current_stage fail with StaleDataError and are retried.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_stage_created", "current_stage", "created_at"),
    )

    id = db.Column(db.String(32), primary_key=True, default=_new_id)
    account_id = db.Column(db.String(32), db.ForeignKey("accounts.id"), nullable=False, index=True)

    po_number = db.Column(db.String(120), nullable=True)
    sales_rep = db.Column(db.String(120), nullable=True)
    shipping_address = db.Column(db.Text, nullable=True)
    shipping_method = db.Column(db.String(120), nullable=True)

    current_stage = db.Column(db.String(32), nullable=False, index=True)

    is_locked = db.Column(db.Boolean, nullable=False, default=False)
    locked_at = db.Column(db.DateTime(timezone=True), nullable=True)
    locked_by = db.Column(db.String(120), nullable=True)

    eta_date = db.Column(db.DateTime(timezone=True), nullable=True)
    customer_docs_link = db.Column(db.String(1024), nullable=True)
    tracking_token = db.Column(db.String(64), nullable=False, unique=True, default=new_tracking_token)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    account = db.relationship("Account", backref=db.backref("orders", lazy=True))
    items = db.relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.created_at",
        lazy=True,
    )
    status_events = db.relationship(
        "StatusEvent",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="StatusEvent.created_at",
        lazy=True,
    )

    __mapper_args__ = {"version_id_col": version_id}

    @validates("current_stage")
    def _validate_stage(self, key, value):
        return _require_stage(key, value, nullable=False)

    def __repr__(self) -> str:
        return f"<Order id={self.id} stage={self.current_stage} locked={self.is_locked}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "account_name": self.account.name if self.account else None,
            "po_number": self.po_number,
            "sales_rep": self.sales_rep,
            "shipping_address": self.shipping_address,
            "shipping_method": self.shipping_method,
            "current_stage": self.current_stage,
            "is_locked": self.is_locked,
            "locked_at": to_utc_z(self.locked_at),
            "locked_by": self.locked_by,
            "eta_date": to_utc_z(self.eta_date),
            "customer_docs_link": self.customer_docs_link,
            "tracking_token": self.tracking_token,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }


class OrderItem(db.Model):
    """
    One machine (line item) on an order.

    current_stage is an optional override; when empty the item is at its
    order's stage (see stage_pipeline.effective_stage).
    """
    __tablename__ = "order_items"

    id = db.Column(db.String(32), primary_key=True, default=_new_id)
    order_id = db.Column(db.String(32), db.ForeignKey("orders.id"), nullable=False, index=True)

    product_code = db.Column(db.String(255), nullable=False)
    qty = db.Column(db.Integer, nullable=False, default=1)
    serial_number = db.Column(db.String(120), nullable=True)
    model_number = db.Column(db.String(120), nullable=True)
    voltage = db.Column(db.String(64), nullable=True)
    laser_wattage = db.Column(db.String(64), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    # Procurement (admin only)
    item_price = db.Column(db.Numeric(12, 2), nullable=True)
    private_item_note = db.Column(db.Text, nullable=True)
    is_ordered = db.Column(db.Boolean, nullable=False, default=False)
    ordered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    ordered_by = db.Column(db.String(120), nullable=True)

    # Measurements
    height = db.Column(db.Float, nullable=True)
    width = db.Column(db.Float, nullable=True)
    length = db.Column(db.Float, nullable=True)
    weight = db.Column(db.Float, nullable=True)
    measurement_unit = db.Column(db.String(16), nullable=True)
    weight_unit = db.Column(db.String(16), nullable=True)
    measured_at = db.Column(db.DateTime(timezone=True), nullable=True)
    measured_by = db.Column(db.String(120), nullable=True)

    current_stage = db.Column(db.String(32), nullable=True)
    archived_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    order = db.relationship("Order", back_populates="items")
    status_events = db.relationship(
        "StatusEvent",
        back_populates="item",
        cascade="all, delete-orphan",
        order_by="StatusEvent.created_at",
        lazy=True,
    )

    @validates("current_stage")
    def _validate_stage(self, key, value):
        return _require_stage(key, value, nullable=True)

    def to_dict(self, *, include_private: bool = False) -> dict:
        data = {
            "id": self.id,
            "order_id": self.order_id,
            "product_code": self.product_code,
            "qty": self.qty,
            "serial_number": self.serial_number,
            "model_number": self.model_number,
            "voltage": self.voltage,
            "laser_wattage": self.laser_wattage,
            "notes": self.notes,
            "is_ordered": self.is_ordered,
            "ordered_at": to_utc_z(self.ordered_at),
            "ordered_by": self.ordered_by,
            "height": self.height,
            "width": self.width,
            "length": self.length,
            "weight": self.weight,
            "measurement_unit": self.measurement_unit,
            "weight_unit": self.weight_unit,
            "measured_at": to_utc_z(self.measured_at),
            "measured_by": self.measured_by,
            "current_stage": self.current_stage,
            "effective_stage": get_pipeline().effective_stage(self, self.order),
            "archived_at": to_utc_z(self.archived_at),
            "created_at": to_utc_z(self.created_at),
        }
        if include_private:
            data["item_price"] = str(self.item_price) if self.item_price is not None else None
            data["private_item_note"] = self.private_item_note
        return data


class StatusEvent(db.Model):
    """
    "Entity reached stage S at time T".

    Scoped to an order (order_item_id is NULL) or to one of its items.
    IMMUTABLE: append-only; time-in-stage is derived from the newest event
    for the entity's current stage.
    """
    __tablename__ = "status_events"
    __table_args__ = (
        db.Index("ix_status_events_order_stage", "order_id", "stage", "created_at"),
        db.Index("ix_status_events_item_stage", "order_item_id", "stage", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.String(32), db.ForeignKey("orders.id"), nullable=False)
    order_item_id = db.Column(db.String(32), db.ForeignKey("order_items.id"), nullable=True)

    stage = db.Column(db.String(32), nullable=False)
    note = db.Column(db.Text, nullable=True)

    performed_by_user_id = db.Column(db.Integer, nullable=True)
    performed_by_name = db.Column(db.String(120), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    order = db.relationship("Order", back_populates="status_events")
    item = db.relationship("OrderItem", back_populates="status_events")

    @validates("stage")
    def _validate_stage(self, key, value):
        return _require_stage(key, value, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "order_item_id": self.order_item_id,
            "stage": self.stage,
            "note": self.note,
            "performed_by_user_id": self.performed_by_user_id,
            "performed_by_name": self.performed_by_name,
            "created_at": to_utc_z(self.created_at),
        }
