# cardmarket/models.py
from __future__ import annotations

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text

from .db import Base


class User(Base):
    __tablename__ = "users"
    id = Column(String(64), primary_key=True)
    display_name = Column(String, nullable=True)
    username = Column(String, nullable=True)
    email = Column(String, unique=True, index=True, nullable=True)


class OrderRow(Base):
    __tablename__ = "orders"
    id = Column(String(64), primary_key=True)
    buyer_id = Column(String(64), nullable=False, index=True)
    seller_id = Column(String(64), nullable=False, index=True)
    listing_id = Column(String(64), nullable=False)
    listing_title = Column(String, nullable=False, default="")
    amount_cents = Column(Integer, nullable=False)
    is_pickup = Column(Boolean, nullable=False, default=False)

    status = Column(String(32), nullable=False, default="pending")  # pending | paid | awaiting_shipping | shipped | completed | cancelled
    payment_status = Column(String(32), nullable=False, default="awaiting_payment")
    payment_confirmed_at = Column(DateTime(timezone=True), nullable=True)

    # Active pickup credential (all four set or all null)
    pickup_code = Column(String(6), nullable=True, index=True)
    pickup_token = Column(String(128), nullable=True, index=True)
    pickup_code_created_at = Column(DateTime(timezone=True), nullable=True)
    pickup_code_expires_at = Column(DateTime(timezone=True), nullable=True)

    seller_pickup_initiated = Column(Boolean, nullable=False, default=False)
    seller_pickup_initiated_at = Column(DateTime(timezone=True), nullable=True)
    pickup_completed = Column(Boolean, nullable=False, default=False)
    pickup_completed_at = Column(DateTime(timezone=True), nullable=True)
    redeemed_pickup_code = Column(String(6), nullable=True, index=True)
    redeemed_pickup_token = Column(String(128), nullable=True, index=True)

    has_dispute = Column(Boolean, nullable=False, default=False)
    refund_status = Column(String(32), nullable=False, default="none")  # none | requested | processing | resolved
    refund_reason = Column(Text, nullable=True)
    refund_requested_at = Column(DateTime(timezone=True), nullable=True)
    review_submitted = Column(Boolean, nullable=False, default=False)

    completed_at = Column(DateTime(timezone=True), nullable=True)
    completed_by = Column(String(64), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_by = Column(String(64), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    auto_completion_eligible_at = Column(DateTime(timezone=True), nullable=True)


class Notification(Base):
    __tablename__ = "notifications"
    id = Column(Integer, primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    kind = Column(String(32), nullable=False)
    title = Column(String, nullable=False, default="")
    payload_json = Column(Text, default="{}")
    read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
