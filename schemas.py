from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import TypeOfFlow


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    cash_cents: int = 0

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Account name is required")
        return value


class TransferIn(BaseModel):
    from_id: int
    to_id: int
    summ: str = Field(..., pattern=r"^\s*\d+([.,]\d{1,2})?\s*$")


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type_of_flow: TypeOfFlow
    active: bool = True


class ProductIn(BaseModel):
    category_id: int
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)


class ProductLineIn(BaseModel):
    product_id: int
    summ_cents: int = Field(..., ge=0)


class PayingItemIn(BaseModel):
    category_id: int
    account_id: int
    date: date
    summ_cents: int = Field(..., ge=0)
    comment: Optional[str] = Field(default=None, max_length=500)
    product_lines: list[ProductLineIn] = Field(default_factory=list)


class PlanSumIn(BaseModel):
    summ_plan_cents: int = Field(..., ge=0)


class RoleIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class RoleModificationIn(BaseModel):
    role_name: str = Field(..., min_length=1, max_length=100)
    ids_to_add: Optional[list[int]] = None
    ids_to_delete: Optional[list[int]] = None


class RegisterIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$", max_length=254)
    name: str = Field(..., min_length=1, max_length=100)
    password: str = Field(..., min_length=6, max_length=128)


class ByTypeReportIn(BaseModel):
    category_id: int = 0
    date_from: date
    date_to: date


class CSVRow(BaseModel):
    date: date
    type_of_flow: TypeOfFlow
    summ_cents: int = Field(..., ge=0)
    category: str
    account: str
    comment: Optional[str] = Field(default=None, max_length=500)
