from sqlalchemy import (
    Column, BigInteger, String, Integer, Float, Text, DateTime, ForeignKey,
    Index, UniqueConstraint
)
from datetime import datetime
from models.base import Base


class Part(Base):
    """
    Canonical part record (document store).

    Uniqueness is scoped to (part_number, integration_id, file_name): the same
    part number legitimately appears in several suppliers' exports.

    Lifecycle:
    - created on first sight of the key tuple (created_at set once)
    - every later sync overwrites mutable fields and bumps last_updated
    - only removed by the bulk delete-by-integration operation
    """
    __tablename__ = "parts"

    id = Column(BigInteger, primary_key=True, autoincrement=True)

    # Identity
    part_number = Column(String(255), nullable=False, index=True)
    integration_id = Column(
        BigInteger,
        ForeignKey("integrations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    file_name = Column(String(500), nullable=False)

    # Descriptive fields
    description = Column(Text, nullable=True)
    brand = Column(String(255), nullable=True, index=True)
    supplier = Column(String(255), nullable=True, index=True)
    origin = Column(String(100), nullable=True)
    category = Column(String(255), nullable=True)

    # Commercial fields
    price = Column(Float, nullable=True)
    currency = Column(String(3), nullable=False, default="USD")
    quantity = Column(Integer, nullable=False, default=0)
    stock_status = Column(String(20), nullable=False, default="unknown", index=True)
    weight = Column(Float, nullable=True)
    weight_unit = Column(String(10), nullable=True)
    delivery_days = Column(Integer, nullable=True)

    # Provenance
    integration_name = Column(String(200), nullable=True)
    imported_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    last_updated = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint(
            "part_number", "integration_id", "file_name",
            name="uq_part_integration_file"
        ),
        Index("idx_part_integration_stock", "integration_id", "stock_status"),
    )

    def __repr__(self):
        return f"<Part(part_number={self.part_number}, integration_id={self.integration_id})>"
