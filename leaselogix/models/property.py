"""
Property and Unit records.

Only the columns the access core reads are modelled here: identity, display
name, ownership of units by properties, and the reversible ``is_active`` flag.
"""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, String

from leaselogix.models.base import Base, utcnow


class Property(Base):
    __tablename__ = "properties"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    address = Column(String, nullable=True)

    # Deactivation is reversible; members keep read access
    is_active = Column(Boolean, nullable=False, default=True)

    created_by = Column(String, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class Unit(Base):
    __tablename__ = "units"

    id = Column(String, primary_key=True)
    property_id = Column(String, ForeignKey("properties.id"), nullable=False, index=True)
    name = Column(String, nullable=False)

    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_units_property_name", "property_id", "name"),
    )
