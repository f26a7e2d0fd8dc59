"""
Pydantic schema for the canonical part record with validation
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, Dict, Any
from datetime import datetime
import hashlib

from models.base import StockStatus


# Quantities above this are considered plentiful
IN_STOCK_THRESHOLD = 10


def derive_stock_status(quantity: int, on_order: bool = False) -> StockStatus:
    """
    Derive stock status from quantity.

    The source's own stock column is never trusted; only an explicit
    "on order" marker survives, and only when nothing is on hand.
    """
    if quantity > IN_STOCK_THRESHOLD:
        return StockStatus.IN_STOCK
    if quantity > 0:
        return StockStatus.LOW_STOCK
    if on_order:
        return StockStatus.ON_ORDER
    return StockStatus.OUT_OF_STOCK


def document_id(integration_id: int, file_name: str, part_number: str) -> str:
    """Stable search index id for a part key."""
    key = f"{integration_id}:{file_name}:{part_number}"
    return hashlib.sha1(key.encode("utf-8")).hexdigest()


class PartRecord(BaseModel):
    """
    One normalized part, ready to be written to both stores.

    Ensures:
    - Part number is present and stripped
    - Numeric fields are non-negative
    - Currency is an upper-case ISO code
    """

    # Identity (required)
    part_number: str = Field(..., min_length=1, max_length=255)
    integration_id: int
    file_name: str = Field(..., min_length=1, max_length=500)
    integration_name: Optional[str] = None

    # Descriptive fields
    description: Optional[str] = None
    brand: Optional[str] = Field(None, max_length=255)
    supplier: Optional[str] = Field(None, max_length=255)
    origin: Optional[str] = Field(None, max_length=100)
    category: Optional[str] = Field(None, max_length=255)

    # Commercial fields
    price: Optional[float] = Field(None, ge=0)
    currency: str = "USD"
    quantity: int = Field(0, ge=0)
    on_order: bool = False
    weight: Optional[float] = Field(None, ge=0)
    weight_unit: Optional[str] = Field(None, max_length=10)
    delivery_days: Optional[int] = Field(None, ge=0)

    @validator("part_number")
    def clean_part_number(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("Part number cannot be empty after stripping")
        return v

    @validator("currency")
    def clean_currency(cls, v):
        v = (v or "USD").strip().upper()
        return v[:3] or "USD"

    @validator("brand", "supplier", "origin", "category", "description")
    def empty_to_none(cls, v):
        if v is None:
            return None
        v = v.strip()
        return v or None

    @property
    def key(self):
        return (self.part_number, self.integration_id, self.file_name)

    @property
    def stock_status(self) -> StockStatus:
        return derive_stock_status(self.quantity, self.on_order)

    @property
    def document_id(self) -> str:
        return document_id(self.integration_id, self.file_name, self.part_number)

    def to_row(self, now: datetime) -> Dict[str, Any]:
        """Column values for the document store upsert."""
        row = self.dict(exclude={"on_order"})
        row["stock_status"] = self.stock_status.value
        row["imported_at"] = now
        row["last_updated"] = now
        row["created_at"] = now
        return row

    def to_document(self, now: datetime) -> Dict[str, Any]:
        """Search index document body (JSON-serializable)."""
        doc = self.dict(exclude={"on_order"})
        doc["stock_status"] = self.stock_status.value
        doc["imported_at"] = now.isoformat()
        doc["last_updated"] = now.isoformat()
        return doc
    @classmethod
    def from_part(cls, part) -> "PartRecord":
        """Rebuild a record from a stored parts row (ORM object or mapping-like)."""
        return cls(
            part_number=part.part_number,
            integration_id=part.integration_id,
            file_name=part.file_name,
            integration_name=part.integration_name,
            description=part.description,
            brand=part.brand,
            supplier=part.supplier,
            origin=part.origin,
            category=part.category,
            price=part.price,
            currency=part.currency,
            quantity=part.quantity or 0,
            on_order=part.stock_status == StockStatus.ON_ORDER.value,
            weight=part.weight,
            weight_unit=part.weight_unit,
            delivery_days=part.delivery_days,
        )
