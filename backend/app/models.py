"""SQLAlchemy ORM models and enums.

This module defines the slice of the tenant schema the integration and
billing core reads or writes: agencies, users, clients (which carry the
per-vendor OAuth token store) and in-app notifications. Provider tokens are
stored encrypted; see app/security.py.
"""

import uuid
from datetime import datetime
import enum

from sqlalchemy import Column, String, DateTime, Enum, ForeignKey, Text, Boolean, Uuid
from sqlalchemy.orm import relationship, declarative_base


# Single Base used by the entire application
Base = declarative_base()


# Enums ---------------------------------------------------------

class RoleEnum(str, enum.Enum):
    super_admin = "SUPER_ADMIN"
    admin = "ADMIN"
    agency = "AGENCY"
    specialist = "SPECIALIST"
    user = "USER"


class NotificationTypeEnum(str, enum.Enum):
    payment_failed = "payment_failed"
    plan_upgrade = "plan_upgrade"
    plan_downgrade = "plan_downgrade"


# Models --------------------------------------------------------

class Agency(Base):
    """Agency is the paying tenant.

    Billing state mirrors Stripe: the customer id is set at checkout, the
    subscription id and tier are kept in sync by the Stripe webhook and by
    the pull-based reconciliation in app/services/stripe_tier_sync.py.
    """
    __tablename__ = "agencies"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    stripe_customer_id = Column(String, nullable=True, index=True)
    stripe_subscription_id = Column(String, nullable=True)
    subscription_tier = Column(String, nullable=True)  # tier id from app/services/tiers.py
    created_at = Column(DateTime, default=datetime.utcnow)

    users = relationship("User", back_populates="agency")
    clients = relationship("Client", back_populates="agency")
    notifications = relationship("Notification", back_populates="agency", cascade="all, delete-orphan")

    def __str__(self):
        return self.name


class User(Base):
    """User represents a person who can sign in.

    AGENCY and SPECIALIST users are scoped to their agency; USER accounts
    are client-portal logins scoped to a single client.
    """
    __tablename__ = "users"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=False)
    role = Column(Enum(RoleEnum, values_callable=lambda obj: [e.value for e in obj]), nullable=False)
    agency_id = Column(Uuid(as_uuid=True), ForeignKey("agencies.id"), nullable=True)
    client_id = Column(Uuid(as_uuid=True), ForeignKey("clients.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    agency = relationship("Agency", back_populates="users")

    def __str__(self):
        return f"{self.name} ({self.email})"


class Client(Base):
    """Client is an agency's end customer (one SEO dashboard).

    Token store:
        Each vendor integration keeps an encrypted access token, an encrypted
        refresh token, the selected account (Google Ads customer id / GA4
        property id), the consenting Google account email and a connected_at
        timestamp. A connection only counts when refresh token, account id
        and connected_at are all present; any partial state is disconnected.

    REFERENCES:
        - app/services/token_service.py (reads/writes these columns)
        - app/security.py (encrypt_secret / decrypt_secret)
    """
    __tablename__ = "clients"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    domain = Column(String, nullable=True)
    agency_id = Column(Uuid(as_uuid=True), ForeignKey("agencies.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Google Ads
    google_ads_access_token = Column(Text, nullable=True)
    google_ads_refresh_token = Column(Text, nullable=True)
    google_ads_customer_id = Column(String, nullable=True)  # digits only, no dashes
    google_ads_account_email = Column(String, nullable=True)
    google_ads_connected_at = Column(DateTime, nullable=True)

    # GA4
    ga4_access_token = Column(Text, nullable=True)
    ga4_refresh_token = Column(Text, nullable=True)
    ga4_property_id = Column(String, nullable=True)  # numeric id, no "properties/" prefix
    ga4_account_email = Column(String, nullable=True)
    ga4_connected_at = Column(DateTime, nullable=True)

    agency = relationship("Agency", back_populates="clients")

    def __str__(self):
        return self.name


class Notification(Base):
    """In-app notification shown in the agency bell menu."""
    __tablename__ = "notifications"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    agency_id = Column(Uuid(as_uuid=True), ForeignKey("agencies.id"), nullable=False)
    type = Column(Enum(NotificationTypeEnum, values_callable=lambda obj: [e.value for e in obj]), nullable=False)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    link = Column(String, nullable=True)
    read = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    agency = relationship("Agency", back_populates="notifications")

    def __str__(self):
        return f"{self.type.value}: {self.title}"
