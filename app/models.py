from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class Brand(Base):
    __tablename__ = "brands"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    brand_name: Mapped[str] = mapped_column(Text, unique=True)


class Category(Base):
    __tablename__ = "categories"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    category_name: Mapped[str] = mapped_column(Text, unique=True)


class CategoryBrand(Base):
    __tablename__ = "category_brands"
    __table_args__ = (UniqueConstraint("brand_id", "category_id", name="category_brand_uq"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    brand_id: Mapped[str] = mapped_column(ForeignKey("brands.id", ondelete="CASCADE"))
    category_id: Mapped[str] = mapped_column(ForeignKey("categories.id", ondelete="CASCADE"))


class Store(Base):
    __tablename__ = "stores"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    store_name: Mapped[str] = mapped_column(Text)
    city: Mapped[str | None] = mapped_column(Text)
    full_address: Mapped[str | None] = mapped_column(Text)
    # JSON-encoded lists of brand ids and their partner tiers (A_PLUS, A, B, C, D).
    partner_brand_ids: Mapped[str] = mapped_column(Text, default="[]")
    partner_brand_types: Mapped[str] = mapped_column(Text, default="[]")
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Executive(Base):
    __tablename__ = "executives"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(Text)


class ExecutiveStoreAssignment(Base):
    __tablename__ = "executive_store_assignments"
    __table_args__ = (UniqueConstraint("executive_id", "store_id", name="executive_store_uq"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    executive_id: Mapped[str] = mapped_column(ForeignKey("executives.id", ondelete="CASCADE"))
    store_id: Mapped[str] = mapped_column(ForeignKey("stores.id", ondelete="CASCADE"))
    assigned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class SalesRecord(Base):
    __tablename__ = "sales_records"
    __table_args__ = (
        UniqueConstraint("store_id", "brand_id", "category_id", "year", name="sales_record_natural_key"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    store_id: Mapped[str] = mapped_column(ForeignKey("stores.id", ondelete="CASCADE"))
    brand_id: Mapped[str] = mapped_column(ForeignKey("brands.id"))
    category_id: Mapped[str] = mapped_column(ForeignKey("categories.id"))
    year: Mapped[int] = mapped_column(Integer)
    # [{"month": 1, "deviceSales": .., "planSales": .., "attachPct": .., "revenue": ..}, ...]
    monthly_sales: Mapped[str] = mapped_column(Text, default="[]")
    # {"1": [{"date": "DD-MM-YYYY", "countOfSales": .., "revenue": ..}, ...], ...}
    daily_sales: Mapped[str] = mapped_column(Text, default="{}")
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
