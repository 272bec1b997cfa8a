from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    BigInteger,
    String,
    Text,
    UniqueConstraint,
    Index,
)
from sqlalchemy.orm import Mapped, mapped_column

from .db import Base, utcnow


class Role(Base):
    __tablename__ = "roles"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(50), unique=True)
    description: Mapped[Optional[str]] = mapped_column(String(255), default=None)


class User(Base):
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(120))
    email: Mapped[str] = mapped_column(String(255), unique=True)
    phone_number: Mapped[Optional[str]] = mapped_column(String(32), index=True, default=None)
    password: Mapped[Optional[str]] = mapped_column(String(255), default=None)  # bcrypt; null for Google-only accounts
    google_id: Mapped[Optional[str]] = mapped_column(String(64), unique=True, default=None)
    avatar_url: Mapped[Optional[str]] = mapped_column(String(512), default=None)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    email_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    gender: Mapped[Optional[str]] = mapped_column(String(16), default=None)  # male|female|other
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class UserRole(Base):
    __tablename__ = "user_roles"
    __table_args__ = (UniqueConstraint("user_id", "role_id", name="uq_user_roles_user_role"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    role_id: Mapped[int] = mapped_column(ForeignKey("roles.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class Customer(Base):
    __tablename__ = "customers"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), unique=True)
    customer_type_id: Mapped[Optional[int]] = mapped_column(ForeignKey("customer_types.id", ondelete="SET NULL"), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class Provider(Base):
    __tablename__ = "providers"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), unique=True)
    experience_years: Mapped[int] = mapped_column(Integer, default=0)
    bio: Mapped[Optional[str]] = mapped_column(Text, default=None)
    service_radius_km: Mapped[float] = mapped_column(Float, default=10.0)
    location_lat: Mapped[Optional[float]] = mapped_column(Float, default=None)
    location_lng: Mapped[Optional[float]] = mapped_column(Float, default=None)
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class VehicleType(Base):
    __tablename__ = "pricing_vehicle_types"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(50), unique=True)
    display_name: Mapped[str] = mapped_column(String(100))
    base_fare_cents: Mapped[int] = mapped_column(BigInteger)
    rate_per_km_cents: Mapped[int] = mapped_column(BigInteger)
    rate_per_min_cents: Mapped[int] = mapped_column(BigInteger)
    minimum_fare_cents: Mapped[int] = mapped_column(BigInteger, default=5000)
    free_km_threshold: Mapped[float] = mapped_column(Float, default=2.0)
    vehicle_multiplier: Mapped[float] = mapped_column(Float, default=1.0)
    night_multiplier: Mapped[float] = mapped_column(Float, default=1.25)
    surge_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    max_surge_multiplier: Mapped[float] = mapped_column(Float, default=3.0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class PricingRule(Base):
    __tablename__ = "pricing_rules"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    rule_key: Mapped[str] = mapped_column(String(100), unique=True)
    rule_value: Mapped[str] = mapped_column(String(255))
    rule_type: Mapped[str] = mapped_column(String(20), default="number")
    category: Mapped[str] = mapped_column(String(50), default="general")
    description: Mapped[Optional[str]] = mapped_column(String(255), default=None)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class SurgeZone(Base):
    __tablename__ = "surge_zones"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    zone_name: Mapped[str] = mapped_column(String(100))
    center_lat: Mapped[float] = mapped_column(Float)
    center_lng: Mapped[float] = mapped_column(Float)
    radius_km: Mapped[float] = mapped_column(Float, default=5.0)
    current_multiplier: Mapped[float] = mapped_column(Float, default=1.0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class SurgeHistory(Base):
    __tablename__ = "surge_history"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    zone_id: Mapped[Optional[int]] = mapped_column(ForeignKey("surge_zones.id", ondelete="SET NULL"), default=None)
    multiplier: Mapped[float] = mapped_column(Float)
    demand_index: Mapped[int] = mapped_column(Integer, default=0)
    pending_requests: Mapped[int] = mapped_column(Integer, default=0)
    active_rides: Mapped[int] = mapped_column(Integer, default=0)
    source: Mapped[str] = mapped_column(String(16), default="computed")  # computed|override
    recorded_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (Index("ix_bookings_type_status_created", "booking_type", "service_status", "created_at"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    provider_id: Mapped[Optional[int]] = mapped_column(ForeignKey("providers.id"), index=True, default=None)
    booking_type: Mapped[str] = mapped_column(String(20), default="ride")
    service_status: Mapped[str] = mapped_column(String(20), default="pending")
    payment_status: Mapped[str] = mapped_column(String(20), default="unpaid")
    vehicle_type_id: Mapped[Optional[int]] = mapped_column(ForeignKey("pricing_vehicle_types.id"), default=None)
    pickup_lat: Mapped[Optional[float]] = mapped_column(Float, default=None)
    pickup_lng: Mapped[Optional[float]] = mapped_column(Float, default=None)
    drop_lat: Mapped[Optional[float]] = mapped_column(Float, default=None)
    drop_lng: Mapped[Optional[float]] = mapped_column(Float, default=None)
    estimated_cost_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    actual_cost_cents: Mapped[Optional[int]] = mapped_column(BigInteger, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=None)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=None)
    # service bookings
    subcategory_id: Mapped[Optional[int]] = mapped_column(ForeignKey("service_subcategories.id"), index=True, default=None)
    scheduled_time: Mapped[Optional[datetime]] = mapped_column(DateTime, index=True, default=None)
    service_unit_count: Mapped[int] = mapped_column(Integer, default=1)
    base_item_price_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    night_charge_per_unit_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    night_charge_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    is_night_booking: Mapped[bool] = mapped_column(Boolean, default=False)
    discount_percentage: Mapped[float] = mapped_column(Float, default=0.0)
    discount_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    subtotal_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    gst_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    total_amount_cents: Mapped[Optional[int]] = mapped_column(BigInteger, default=None)
    service_address: Mapped[Optional[str]] = mapped_column(Text, default=None)
    worker_preference: Mapped[str] = mapped_column(String(10), default="any")  # any|male|female
    payment_method: Mapped[str] = mapped_column(String(20), default="online")  # online|pay_after_service
    notes: Mapped[Optional[str]] = mapped_column(Text, default=None)
    otp_code: Mapped[Optional[str]] = mapped_column(String(6), default=None)
    otp_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=None)
    arrived_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=None)


class FareBreakdown(Base):
    __tablename__ = "ride_fare_breakdowns"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    quote_id: Mapped[str] = mapped_column(String(36), unique=True)
    booking_id: Mapped[Optional[int]] = mapped_column(ForeignKey("bookings.id", ondelete="SET NULL"), unique=True, default=None)
    user_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"), default=None)
    vehicle_type_id: Mapped[int] = mapped_column(ForeignKey("pricing_vehicle_types.id"), index=True)
    pickup_lat: Mapped[float] = mapped_column(Float)
    pickup_lng: Mapped[float] = mapped_column(Float)
    drop_lat: Mapped[float] = mapped_column(Float)
    drop_lng: Mapped[float] = mapped_column(Float)
    distance_km: Mapped[float] = mapped_column(Float)
    duration_min: Mapped[int] = mapped_column(Integer)
    base_fare_cents: Mapped[int] = mapped_column(BigInteger)
    distance_component_cents: Mapped[int] = mapped_column(BigInteger)
    time_component_cents: Mapped[int] = mapped_column(BigInteger)
    night_component_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    surge_component_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    vehicle_multiplier: Mapped[float] = mapped_column(Float, default=1.0)
    surge_multiplier: Mapped[float] = mapped_column(Float, default=1.0)
    night_hours_applied: Mapped[bool] = mapped_column(Boolean, default=False)
    total_fare_cents: Mapped[int] = mapped_column(BigInteger)
    actual_distance_km: Mapped[Optional[float]] = mapped_column(Float, default=None)
    actual_duration_min: Mapped[Optional[int]] = mapped_column(Integer, default=None)
    tip_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    waiting_charges_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    toll_charges_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    promo_discount_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    final_fare_cents: Mapped[Optional[int]] = mapped_column(BigInteger, default=None)
    fare_deviation_percentage: Mapped[Optional[float]] = mapped_column(Float, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime)


class Payment(Base):
    __tablename__ = "payments"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    booking_id: Mapped[Optional[int]] = mapped_column(ForeignKey("bookings.id"), index=True, default=None)
    amount_cents: Mapped[int] = mapped_column(BigInteger)
    currency: Mapped[str] = mapped_column(String(3), default="INR")
    status: Mapped[str] = mapped_column(String(20), default="created")  # created|captured|failed
    method: Mapped[str] = mapped_column(String(20), default="razorpay")
    razorpay_order_id: Mapped[Optional[str]] = mapped_column(String(64), unique=True, default=None)
    razorpay_payment_id: Mapped[Optional[str]] = mapped_column(String(64), default=None)
    failure_reason: Mapped[Optional[str]] = mapped_column(String(255), default=None)
    captured_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class PayoutBatch(Base):
    __tablename__ = "payout_batches"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    batch_reference: Mapped[str] = mapped_column(String(64), unique=True)
    total_amount_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    provider_count: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(20), default="created")  # created|processing|completed
    payout_method: Mapped[str] = mapped_column(String(30), default="bank_transfer")
    notes: Mapped[Optional[str]] = mapped_column(Text, default=None)
    created_by: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=None)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=None)


class ProviderEarning(Base):
    __tablename__ = "provider_earnings"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider_id: Mapped[int] = mapped_column(ForeignKey("providers.id"), index=True)
    booking_id: Mapped[int] = mapped_column(ForeignKey("bookings.id"), unique=True)
    gross_amount_cents: Mapped[int] = mapped_column(BigInteger)
    commission_cents: Mapped[int] = mapped_column(BigInteger)
    gst_cents: Mapped[int] = mapped_column(BigInteger)
    net_earnings_cents: Mapped[int] = mapped_column(BigInteger)
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending|processing|paid
    payout_batch_id: Mapped[Optional[int]] = mapped_column(ForeignKey("payout_batches.id"), index=True, default=None)
    earned_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=None)


class PayoutDetail(Base):
    __tablename__ = "payout_details"
    __table_args__ = (UniqueConstraint("batch_id", "provider_id", name="uq_payout_details_batch_provider"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    batch_id: Mapped[int] = mapped_column(ForeignKey("payout_batches.id", ondelete="CASCADE"), index=True)
    provider_id: Mapped[int] = mapped_column(ForeignKey("providers.id"))
    amount_cents: Mapped[int] = mapped_column(BigInteger)
    earnings_count: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending|paid
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=None)


class ChatSession(Base):
    __tablename__ = "chat_sessions"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[int] = mapped_column(ForeignKey("bookings.id", ondelete="CASCADE"), unique=True)
    customer_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    provider_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)  # users.id of the worker
    session_status: Mapped[str] = mapped_column(String(16), default="active")  # active|ended|deleted
    message_count: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=None)
    last_message_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=None)


class ChatMessage(Base):
    __tablename__ = "chat_messages"
    __table_args__ = (Index("ix_chat_messages_session_created", "session_id", "created_at"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[int] = mapped_column(ForeignKey("chat_sessions.id", ondelete="CASCADE"))
    sender_id: Mapped[int] = mapped_column(ForeignKey("users.id"))
    sender_type: Mapped[str] = mapped_column(String(16))  # customer|provider
    message_type: Mapped[str] = mapped_column(String(16), default="text")
    content: Mapped[str] = mapped_column(Text)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False)
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class AuditLog(Base):
    __tablename__ = "audit_logs"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[Optional[int]] = mapped_column(Integer, index=True, default=None)
    user_email: Mapped[Optional[str]] = mapped_column(String(255), default=None)
    user_role: Mapped[Optional[str]] = mapped_column(String(50), default=None)
    action: Mapped[str] = mapped_column(String(100), index=True)
    entity_type: Mapped[Optional[str]] = mapped_column(String(50), default=None)
    entity_id: Mapped[Optional[str]] = mapped_column(String(64), default=None)
    details: Mapped[Optional[str]] = mapped_column(Text, default=None)  # JSON
    ip_address: Mapped[Optional[str]] = mapped_column(String(64), default=None)
    user_agent: Mapped[Optional[str]] = mapped_column(String(255), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)


class PaymentSetting(Base):
    __tablename__ = "payment_settings"
    __table_args__ = (UniqueConstraint("provider", "key_name", name="uq_payment_settings_provider_key"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(String(50))
    key_name: Mapped[str] = mapped_column(String(100))
    key_value_encrypted: Mapped[str] = mapped_column(Text)
    description: Mapped[Optional[str]] = mapped_column(String(255), default=None)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_by: Mapped[Optional[int]] = mapped_column(Integer, default=None)
    updated_by: Mapped[Optional[int]] = mapped_column(Integer, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class PaymentSettingAudit(Base):
    __tablename__ = "payment_settings_audit"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    setting_id: Mapped[int] = mapped_column(ForeignKey("payment_settings.id", ondelete="CASCADE"), index=True)
    action: Mapped[str] = mapped_column(String(20))  # created|updated|viewed|deleted
    old_value_hash: Mapped[Optional[str]] = mapped_column(String(64), default=None)
    new_value_hash: Mapped[Optional[str]] = mapped_column(String(64), default=None)
    user_id: Mapped[Optional[int]] = mapped_column(Integer, default=None)
    ip_address: Mapped[Optional[str]] = mapped_column(String(64), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class SystemSetting(Base):
    __tablename__ = "system_settings"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    setting_key: Mapped[str] = mapped_column(String(100), unique=True)
    setting_value: Mapped[Optional[str]] = mapped_column(Text, default=None)
    setting_type: Mapped[str] = mapped_column(String(20), default="string")
    category: Mapped[str] = mapped_column(String(50), default="general")
    is_sensitive: Mapped[bool] = mapped_column(Boolean, default=False)
    description: Mapped[Optional[str]] = mapped_column(String(255), default=None)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class CustomerType(Base):
    __tablename__ = "customer_types"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), unique=True)
    discount_percentage: Mapped[float] = mapped_column(Float, default=0.0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class CustomerAddress(Base):
    __tablename__ = "customer_addresses"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    address: Mapped[str] = mapped_column(Text)
    pin_code: Mapped[str] = mapped_column(String(16))
    city: Mapped[str] = mapped_column(String(100))
    state: Mapped[str] = mapped_column(String(100))
    country: Mapped[str] = mapped_column(String(100))
    location_lat: Mapped[Optional[float]] = mapped_column(Float, default=None)
    location_lng: Mapped[Optional[float]] = mapped_column(Float, default=None)
    address_type: Mapped[str] = mapped_column(String(20), default="home")  # home|work|other
    address_label: Mapped[Optional[str]] = mapped_column(String(100), default=None)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class ServiceCategory(Base):
    __tablename__ = "service_categories"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), unique=True)
    description: Mapped[Optional[str]] = mapped_column(Text, default=None)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class ServiceSubcategory(Base):
    __tablename__ = "service_subcategories"
    __table_args__ = (UniqueConstraint("category_id", "name", name="uq_service_subcategories_category_name"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    category_id: Mapped[int] = mapped_column(ForeignKey("service_categories.id", ondelete="CASCADE"), index=True)
    name: Mapped[str] = mapped_column(String(100))
    description: Mapped[Optional[str]] = mapped_column(Text, default=None)
    base_price_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    night_charge_cents: Mapped[int] = mapped_column(BigInteger, default=0)  # per unit
    night_start_time: Mapped[str] = mapped_column(String(5), default="17:00")
    night_end_time: Mapped[str] = mapped_column(String(5), default="06:00")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class CartItem(Base):
    __tablename__ = "cart_items"
    __table_args__ = (UniqueConstraint("user_id", "subcategory_id", name="uq_cart_items_user_subcategory"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    subcategory_id: Mapped[int] = mapped_column(ForeignKey("service_subcategories.id", ondelete="CASCADE"))
    quantity: Mapped[int] = mapped_column(Integer, default=1)
    added_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class ProviderService(Base):
    __tablename__ = "provider_services"
    __table_args__ = (UniqueConstraint("provider_id", "subcategory_id", name="uq_provider_services_provider_subcategory"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider_id: Mapped[int] = mapped_column(ForeignKey("providers.id", ondelete="CASCADE"), index=True)
    subcategory_id: Mapped[int] = mapped_column(ForeignKey("service_subcategories.id", ondelete="CASCADE"), index=True)


class BookingRequest(Base):
    __tablename__ = "booking_requests"
    __table_args__ = (UniqueConstraint("booking_id", "provider_id", name="uq_booking_requests_booking_provider"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[int] = mapped_column(ForeignKey("bookings.id", ondelete="CASCADE"), index=True)
    provider_id: Mapped[int] = mapped_column(ForeignKey("providers.id", ondelete="CASCADE"), index=True)
    status: Mapped[str] = mapped_column(String(16), default="pending")  # pending|accepted|rejected|expired|cancelled
    requested_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    responded_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=None)


class CashPayment(Base):
    __tablename__ = "cash_payments"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[int] = mapped_column(ForeignKey("bookings.id", ondelete="CASCADE"), unique=True)
    provider_id: Mapped[int] = mapped_column(ForeignKey("providers.id"), index=True)
    amount_cents: Mapped[int] = mapped_column(BigInteger)
    status: Mapped[str] = mapped_column(String(16), default="received")  # received|disputed
    payment_method: Mapped[str] = mapped_column(String(20), default="cash")  # cash|upi
    notes: Mapped[Optional[str]] = mapped_column(Text, default=None)
    received_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
