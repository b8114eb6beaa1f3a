"""Merchant tenancy models: merchants, their POS locations and settings."""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from loyalty_engine.db.base import Base


LOYALTY_ENABLED_SETTING = "loyalty_enabled"


class Merchant(Base):
    """A tenant connected to the POS platform."""

    __tablename__ = "merchants"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String, nullable=False)
    pos_merchant_id = Column(String, nullable=True, unique=True, index=True)
    access_token = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="1")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    locations = relationship("Location", back_populates="merchant", cascade="all, delete-orphan")
    settings = relationship("MerchantSetting", back_populates="merchant", cascade="all, delete-orphan")


class Location(Base):
    """POS location belonging to a merchant; backfill scans active ones."""

    __tablename__ = "merchant_locations"
    __table_args__ = (
        UniqueConstraint("merchant_id", "location_id", name="uq_merchant_locations_location"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    merchant_id = Column(UUID(as_uuid=True), ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False, index=True)
    location_id = Column(String, nullable=False)
    name = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="1")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    merchant = relationship("Merchant", back_populates="locations")


class MerchantSetting(Base):
    """Key/value merchant configuration, including the loyalty feature flag."""

    __tablename__ = "merchant_settings"
    __table_args__ = (
        UniqueConstraint("merchant_id", "key", name="uq_merchant_settings_key"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    merchant_id = Column(UUID(as_uuid=True), ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False, index=True)
    key = Column(String, nullable=False)
    value = Column(Text, nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    merchant = relationship("Merchant", back_populates="settings")


__all__ = ["LOYALTY_ENABLED_SETTING", "Location", "Merchant", "MerchantSetting"]
