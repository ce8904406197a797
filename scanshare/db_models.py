from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from scanshare.database import Base


class ScanSession(Base):
    __tablename__ = "sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    short_code = Column(Text, nullable=False, unique=True, index=True)
    access_code = Column(Text, nullable=False)
    name = Column(Text, nullable=False)
    type = Column(Text)
    ask_internal_code = Column(Boolean, nullable=False, default=False)
    ask_product_name = Column(Boolean, nullable=False, default=False)
    ask_price = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    scans = relationship(
        "Scan",
        back_populates="session",
        cascade="all, delete-orphan",
        order_by="Scan.id",
    )


class Scan(Base):
    __tablename__ = "scans"
    __table_args__ = (UniqueConstraint("session_id", "code", name="uq_scans_session_code"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(Integer, ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    code = Column(Text, nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    internal_code = Column(Text)
    product_name = Column(Text)
    price = Column(Float)
    scanned_at = Column(DateTime, default=datetime.utcnow)

    # Relationship
    session = relationship("ScanSession", back_populates="scans")
