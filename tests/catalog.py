"""Sample catalog models and resources used across the test suite."""

from __future__ import annotations

import enum
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from typing import Any

from fastapi import Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import Boolean, Column, Date, Enum, ForeignKey, Integer, Numeric, String, Table
from sqlalchemy.orm import Mapped, Session, mapped_column, object_session, relationship

from resource_api import (
    BusinessRuleError,
    ColumnType,
    RelationshipDescriptor,
    ResourceController,
    SaveStrategy,
)
from resource_api.db import Base, UTCDateTime, utc_now


class Status(str, enum.Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    ARCHIVED = "archived"


product_tags = Table(
    "product_tags",
    Base.metadata,
    Column("product_id", ForeignKey("products.id", ondelete="CASCADE"), primary_key=True),
    Column("tag_id", ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
)


class Category(Base):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100))


class Tag(Base):
    __tablename__ = "tags"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    label: Mapped[str] = mapped_column(String(50))


class Product(Base):
    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(200))
    sku: Mapped[str] = mapped_column(String(50), unique=True)
    status: Mapped[Status] = mapped_column(
        Enum(Status, native_enum=False, length=20), default=Status.DRAFT
    )
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    category_id: Mapped[int | None] = mapped_column(ForeignKey("categories.id"), nullable=True)
    released_on: Mapped[date | None] = mapped_column(Date, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utc_now)

    category: Mapped[Category | None] = relationship()
    tags: Mapped[list[Tag]] = relationship(secondary=product_tags)
    reviews: Mapped[list[Review]] = relationship(
        back_populates="product", cascade="all, delete-orphan"
    )

    def apply_discount(self, percent: Any) -> None:
        factor = (Decimal(100) - Decimal(str(percent))) / Decimal(100)
        self.price = (Decimal(self.price) * factor).quantize(Decimal("0.01"))

    def record_ratings(self, ratings: Any) -> None:
        # Writes rows directly, leaving the loaded reviews collection stale.
        object_session(self).add_all(
            Review(product_id=self.id, rating=int(rating)) for rating in ratings
        )


class Review(Base):
    __tablename__ = "reviews"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="CASCADE"))
    rating: Mapped[int] = mapped_column(Integer)
    body: Mapped[str] = mapped_column(String(500), default="")

    product: Mapped[Product] = relationship(back_populates="reviews")


# --- Schemas ---------------------------------------------------------------


class ReviewIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    rating: int = Field(ge=1, le=5)
    body: str = ""


class ProductCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=200)
    sku: str = Field(min_length=1, max_length=50)
    status: Status = Status.DRAFT
    price: Decimal = Field(ge=0)
    active: bool = True
    category_id: int | None = None
    released_on: date | None = None
    tag_ids: list[int] | None = None
    reviews: list[ReviewIn] | None = None


class ProductUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1, max_length=200)
    status: Status | None = None
    price: Decimal | None = Field(default=None, ge=0)
    active: bool | None = None
    category_id: int | None = None
    released_on: date | None = None
    tag_ids: list[int] | None = None
    reviews: list[ReviewIn] | None = None


# --- Resources -------------------------------------------------------------


class ProductResource(ResourceController[Product]):
    model = Product
    name = "products"

    filter_fields = {
        "active": "bool",
        "name": "string",
        "status": "select",
        "category_id": "select",
        "price": "num_range",
        "released_on": "date_range",
        "created_at": "date_range",
    }
    sort_fields = ("id", "name", "price", "released_on", "created_at")
    search_fields = ("name", "sku")

    relationships = (
        RelationshipDescriptor("tags", SaveStrategy.SYNC, attribute_name="tag_ids"),
        RelationshipDescriptor("reviews", SaveStrategy.CREATE_MANY, clear_before_saving=True),
    )
    eager_load = ("tags", "reviews")
    export_eager_load = ("category",)

    create_schema = ProductCreate
    update_schema = ProductUpdate

    export_header = [["ID", "Name", "SKU", "Released", "Price", "Category"]]
    export_column_types = [ColumnType(3, "string"), {"index": 4, "type": "date"}]
    export_auto_width = True

    def map_export_row(self, entity: Product) -> list[Any]:
        return [
            entity.id,
            entity.name,
            entity.sku,
            entity.released_on,
            entity.price,
            entity.category.name if entity.category else None,
        ]

    def pre_create_hook(self, attributes: dict[str, Any], request: Request) -> None:
        if attributes.get("sku", "").startswith("BLOCKED"):
            raise ValueError("SKU prefix BLOCKED is reserved")

    def entity_update_access_hook(self, entity: Product, request: Request) -> None:
        if entity.status is Status.ARCHIVED:
            raise BusinessRuleError("Archived products are read-only")

    def post_create_hook(self, entity: Product, response: dict[str, Any]) -> None:
        response["entity"]["tag_count"] = len(entity.tags)


class CategoryResource(ResourceController[Category]):
    model = Category
    name = "categories"
    path = "categories"
    export_header = ["ID", "Name"]
    export_mode = "csv"


# --- Seed data -------------------------------------------------------------

SEED_CREATED_AT = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)


def seed_catalog(session: Session) -> dict[str, Any]:
    """Insert two categories, two tags and five products; ids are 1-based in insert order."""

    tools = Category(id=1, name="Tools")
    toys = Category(id=2, name="Toys")
    red = Tag(id=1, label="red")
    blue = Tag(id=2, label="blue")
    rows = [
        ("Hammer", "H-1", Status.ACTIVE, "12.50", True, tools, date(2024, 1, 15)),
        ("Screwdriver 100%", "S-1", Status.ACTIVE, "5.00", True, tools, date(2024, 2, 1)),
        ("Teddy bear", "T-1", Status.DRAFT, "20.00", False, toys, date(2024, 3, 10)),
        ("Yo-yo", "Y-1", Status.ARCHIVED, "3.25", True, toys, None),
        ("Kite", "K-1", Status.ACTIVE, "15.00", True, None, date(2024, 3, 31)),
    ]
    products = []
    for index, (name, sku, status, price, active, category, released) in enumerate(rows):
        products.append(
            Product(
                id=index + 1,
                name=name,
                sku=sku,
                status=status,
                price=Decimal(price),
                active=active,
                category=category,
                released_on=released,
                created_at=SEED_CREATED_AT + timedelta(days=index),
            )
        )
    products[0].tags = [red]
    products[0].reviews = [Review(rating=5, body="Solid")]
    session.add_all([tools, toys, red, blue, *products])
    session.commit()
    return {"categories": [tools, toys], "tags": [red, blue], "products": products}
