from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class TypeOfFlow(str, Enum):
    income = "income"
    outgo = "outgo"

    @property
    def flow_id(self) -> int:
        return 1 if self is TypeOfFlow.income else 2

    @property
    def label(self) -> str:
        return "Income" if self is TypeOfFlow.income else "Outgo"

    @classmethod
    def from_id(cls, flow_id: int) -> "TypeOfFlow":
        return cls.income if flow_id == 1 else cls.outgo


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


user_roles = Table(
    "user_roles",
    Base.metadata,
    Column("user_id", Integer, ForeignKey("users.id"), primary_key=True),
    Column("role_id", Integer, ForeignKey("roles.id"), primary_key=True),
)


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(254), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    password_hash: Mapped[str] = mapped_column(String(128), nullable=False)

    roles: Mapped[list["Role"]] = relationship(
        "Role", secondary="user_roles", back_populates="users"
    )

    def has_role(self, name: str) -> bool:
        return any(role.name == name for role in self.roles)


class Role(Base, TimestampMixin):
    __tablename__ = "roles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)

    users: Mapped[list["User"]] = relationship(
        "User", secondary="user_roles", back_populates="roles"
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    cash_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    paying_items: Mapped[list["PayingItem"]] = relationship(
        "PayingItem", back_populates="account"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_account_user_name"),
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type_of_flow: Mapped[TypeOfFlow] = mapped_column(
        SAEnum(TypeOfFlow), nullable=False
    )
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    products: Mapped[list["Product"]] = relationship(
        "Product", back_populates="category", order_by="Product.name"
    )
    paying_items: Mapped[list["PayingItem"]] = relationship(
        "PayingItem", back_populates="category"
    )

    __table_args__ = (
        UniqueConstraint(
            "user_id", "type_of_flow", "name", name="uq_category_user_flow_name"
        ),
    )


class Product(Base, TimestampMixin):
    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)

    category: Mapped["Category"] = relationship("Category", back_populates="products")

    __table_args__ = (
        UniqueConstraint("category_id", "name", name="uq_product_category_name"),
    )


class PayingItem(Base, TimestampMixin):
    __tablename__ = "paying_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    summ_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    comment: Mapped[Optional[str]] = mapped_column(Text)

    category: Mapped["Category"] = relationship(
        "Category", back_populates="paying_items"
    )
    account: Mapped["Account"] = relationship("Account", back_populates="paying_items")
    product_lines: Mapped[list["PayingItemProduct"]] = relationship(
        "PayingItemProduct",
        back_populates="paying_item",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_paying_items_user_date", "user_id", "date"),
        Index("ix_paying_items_user_category_date", "user_id", "category_id", "date"),
        CheckConstraint("summ_cents >= 0", name="ck_paying_items_summ_positive"),
    )


class PayingItemProduct(Base):
    __tablename__ = "paying_item_products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    paying_item_id: Mapped[int] = mapped_column(
        ForeignKey("paying_items.id"), nullable=False
    )
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id"), nullable=False)
    summ_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    paying_item: Mapped["PayingItem"] = relationship(
        "PayingItem", back_populates="product_lines"
    )
    product: Mapped["Product"] = relationship("Product")

    __table_args__ = (
        CheckConstraint("summ_cents >= 0", name="ck_paying_item_products_summ_positive"),
    )


class PlanItem(Base, TimestampMixin):
    __tablename__ = "plan_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    month: Mapped[date] = mapped_column(Date, nullable=False)
    summ_plan_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    summ_fact_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    closed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    category: Mapped["Category"] = relationship("Category")

    __table_args__ = (
        UniqueConstraint(
            "user_id", "category_id", "month", name="uq_plan_item_user_category_month"
        ),
        Index("ix_plan_items_user_month", "user_id", "month"),
        CheckConstraint("summ_plan_cents >= 0", name="ck_plan_items_plan_positive"),
    )
