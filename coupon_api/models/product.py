"""Catalog models read by the coupon engine."""

import uuid
from decimal import Decimal
from typing import Optional

from sqlalchemy import ForeignKey, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from coupon_api.db.database import Base
from coupon_api.db.types import GUID


class Category(Base):
    """Product category."""

    __tablename__ = "categories"

    id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        primary_key=True,
        default=uuid.uuid4,
    )
    name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Category {self.name}>"


class Product(Base):
    """
    Sellable product.

    Only the fields the discount engine needs: the authoritative unit
    price and the category used for coupon scoping.
    """

    __tablename__ = "products"

    id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        primary_key=True,
        default=uuid.uuid4,
    )
    name: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
    )
    price: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
    )
    category_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        GUID(),
        ForeignKey("categories.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    category: Mapped[Optional["Category"]] = relationship(
        "Category",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<Product {self.name} ({self.price})>"
