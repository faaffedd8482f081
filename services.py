from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import date
from typing import Optional, Sequence

from rapidfuzz.distance import Levenshtein
from sqlalchemy import case, func, select, update
from sqlalchemy.orm import Session, joinedload, selectinload

from auth import hash_password, verify_password
from config import get_settings
from csv_utils import export_paying_items, parse_amount, parse_csv
from errors import (
    ConflictError,
    DependencyError,
    InsufficientFundsError,
    NO_ACCOUNTS_MESSAGE,
    NO_CATEGORIES_MESSAGE,
    NotFoundError,
    ROLE_NOT_FOUND_MESSAGE,
    ValidationError,
)
from models import (
    Account,
    Category,
    PayingItem,
    PayingItemProduct,
    PlanItem,
    Product,
    Role,
    TypeOfFlow,
    User,
)
from periods import (
    Period,
    add_months,
    local_today,
    month_end,
    month_range,
    month_start,
    week_bounds,
)
from schemas import (
    AccountIn,
    ByTypeReportIn,
    CategoryIn,
    PayingItemIn,
    ProductIn,
    RegisterIn,
    RoleIn,
    RoleModificationIn,
    TransferIn,
)

logger = logging.getLogger(__name__)


def signed_summ(type_of_flow: TypeOfFlow, summ_cents: int) -> int:
    return summ_cents if type_of_flow == TypeOfFlow.income else -summ_cents


@dataclass(frozen=True)
class PagingInfo:
    current_page: int
    items_per_page: int
    total_items: int

    @property
    def total_pages(self) -> int:
        return max(1, math.ceil(self.total_items / self.items_per_page))

    @property
    def has_previous(self) -> bool:
        return self.current_page > 1

    @property
    def has_next(self) -> bool:
        return self.current_page < self.total_pages


def paginate(session: Session, stmt, page: int, per_page: Optional[int] = None):
    """Run ``stmt`` for one page and return ``(rows, PagingInfo)``."""
    per_page = per_page or get_settings().items_per_page
    page = max(page, 1)
    total = int(
        session.execute(
            select(func.count()).select_from(stmt.order_by(None).subquery())
        ).scalar_one()
        or 0
    )
    rows = session.scalars(stmt.offset((page - 1) * per_page).limit(per_page)).all()
    return rows, PagingInfo(
        current_page=page, items_per_page=per_page, total_items=total
    )


@dataclass
class PayingItemFilters:
    type_of_flow: Optional[TypeOfFlow] = None
    category_id: Optional[int] = None
    account_id: Optional[int] = None
    query: Optional[str] = None


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, user_id: int) -> User:
        user = self.session.get(User, user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def list_all(self) -> list[User]:
        stmt = select(User).options(selectinload(User.roles)).order_by(User.email)
        return self.session.scalars(stmt).all()

    def register(self, data: RegisterIn) -> User:
        email = data.email.strip().lower()
        existing = self.session.scalar(select(User).where(User.email == email))
        if existing:
            raise ConflictError("A user with this email already exists")
        is_first = (
            self.session.execute(select(func.count(User.id))).scalar_one() or 0
        ) == 0
        user = User(
            email=email,
            name=data.name.strip(),
            password_hash=hash_password(data.password),
        )
        if is_first:
            admin_role = RoleService(self.session).get_or_create(
                get_settings().admin_role
            )
            user.roles.append(admin_role)
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        logger.info(f"user_registered: id={user.id} admin={is_first}")
        return user

    def authenticate(self, email: str, password: str) -> Optional[User]:
        user = self.session.scalar(
            select(User).where(User.email == email.strip().lower())
        )
        if not user or not verify_password(password, user.password_hash):
            return None
        return user


@dataclass(frozen=True)
class RoleEditModel:
    role: Role
    members: list[User]
    non_members: list[User]


class RoleService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_roles(self) -> list[Role]:
        stmt = select(Role).options(selectinload(Role.users)).order_by(Role.name)
        return self.session.scalars(stmt).all()

    def get(self, role_id: int) -> Role:
        role = self.session.get(Role, role_id)
        if not role:
            raise NotFoundError(ROLE_NOT_FOUND_MESSAGE)
        return role

    def get_by_name(self, name: str) -> Role:
        role = self.session.scalar(select(Role).where(Role.name == name))
        if not role:
            raise NotFoundError(ROLE_NOT_FOUND_MESSAGE)
        return role

    def get_or_create(self, name: str) -> Role:
        role = self.session.scalar(select(Role).where(Role.name == name))
        if role:
            return role
        role = Role(name=name)
        self.session.add(role)
        self.session.flush()
        return role

    def create(self, data: RoleIn) -> Role:
        name = data.name.strip()
        if not name:
            raise ValidationError("Role name is required")
        existing = self.session.scalar(
            select(Role).where(func.lower(Role.name) == name.lower())
        )
        if existing:
            raise ConflictError(f"Role '{name}' already exists")
        role = Role(name=name)
        self.session.add(role)
        self.session.commit()
        self.session.refresh(role)
        logger.info(f"role_created: id={role.id} name={role.name}")
        return role

    def delete(self, role_id: int) -> None:
        role = self.get(role_id)
        if role.name == get_settings().admin_role:
            raise ValidationError("The administrators role cannot be deleted")
        self.session.delete(role)
        self.session.commit()
        logger.info(f"role_deleted: id={role_id}")

    def edit_model(self, role_id: int) -> RoleEditModel:
        role = self.get(role_id)
        member_ids = {user.id for user in role.users}
        users = UserService(self.session).list_all()
        return RoleEditModel(
            role=role,
            members=[u for u in users if u.id in member_ids],
            non_members=[u for u in users if u.id not in member_ids],
        )

    def modify(self, data: RoleModificationIn) -> Role:
        """Add and remove role members; stops at the first failing user.

        Changes made before the failure stay committed.
        """
        role = self.get_by_name(data.role_name)
        users = UserService(self.session)
        for user_id in data.ids_to_add or []:
            user = users.get(user_id)
            if role in user.roles:
                raise ConflictError(f"User {user.email} is already in role")
            user.roles.append(role)
            self.session.commit()
        for user_id in data.ids_to_delete or []:
            user = users.get(user_id)
            if role not in user.roles:
                raise ConflictError(f"User {user.email} is not in role")
            if role.name == get_settings().admin_role and len(role.users) <= 1:
                raise ValidationError("The last administrator cannot be removed")
            user.roles.remove(role)
            self.session.commit()
        self.session.refresh(role)
        return role


class AccountService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id)
            .order_by(Account.name, Account.id)
        )
        return self.session.scalars(stmt).all()

    def find(self, account_id: int) -> Optional[Account]:
        account = self.session.get(Account, account_id)
        if not account or account.user_id != self.user_id:
            return None
        return account

    def get(self, account_id: int) -> Account:
        account = self.find(account_id)
        if not account:
            raise NotFoundError("Account not found")
        return account

    def others(self, account_id: int) -> list[Account]:
        return [a for a in self.list_all() if a.id != account_id]

    def _check_unique_name(self, name: str, exclude_id: Optional[int] = None) -> None:
        stmt = select(Account).where(
            Account.user_id == self.user_id,
            func.lower(Account.name) == name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(Account.id != exclude_id)
        if self.session.scalar(stmt):
            raise ConflictError("Account with this name already exists")

    def create(self, data: AccountIn) -> Account:
        self._check_unique_name(data.name)
        account = Account(
            user_id=self.user_id, name=data.name, cash_cents=data.cash_cents
        )
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        return account

    def update(self, account_id: int, data: AccountIn) -> Account:
        account = self.get(account_id)
        self._check_unique_name(data.name, exclude_id=account.id)
        account.name = data.name
        account.cash_cents = data.cash_cents
        self.session.commit()
        return account

    def has_any_dependencies(self, account_id: int) -> bool:
        stmt = select(func.count(PayingItem.id)).where(
            PayingItem.account_id == account_id
        )
        return (self.session.execute(stmt).scalar_one() or 0) > 0

    def delete(self, account_id: int) -> None:
        account = self.get(account_id)
        if self.has_any_dependencies(account.id):
            raise DependencyError(
                f"Account '{account.name}' has paying items and cannot be deleted"
            )
        self.session.delete(account)
        self.session.commit()

    @staticmethod
    def has_enough_money(account: Account, summ_cents: int) -> bool:
        return account.cash_cents >= summ_cents

    def total_cash(self) -> int:
        stmt = select(func.coalesce(func.sum(Account.cash_cents), 0)).where(
            Account.user_id == self.user_id
        )
        return int(self.session.execute(stmt).scalar_one() or 0)

    def transfer(self, data: TransferIn) -> tuple[Account, Account]:
        if not self.list_all():
            raise ValidationError(NO_ACCOUNTS_MESSAGE)
        summ_cents = parse_amount(data.summ)
        if summ_cents <= 0:
            raise ValidationError("Transfer amount must be positive")
        source = self.get(data.from_id)
        target = self.get(data.to_id)
        if source.id == target.id:
            raise ValidationError("Choose two different accounts")
        if not self.has_enough_money(source, summ_cents):
            raise InsufficientFundsError(
                f"Not enough money on account '{source.name}'"
            )
        source.cash_cents -= summ_cents
        target.cash_cents += summ_cents
        self.session.commit()
        logger.info(
            f"account_transfer: user={self.user_id} from={source.id} "
            f"to={target.id} amount_cents={summ_cents}"
        )
        return source, target


@dataclass(frozen=True)
class CategoriesViewModel:
    categories: list[Category]
    paging_info: PagingInfo
    type_of_flow: TypeOfFlow


class CategoryService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _base_stmt(self, type_of_flow: Optional[TypeOfFlow] = None):
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.type_of_flow, Category.name)
        )
        if type_of_flow is not None:
            stmt = stmt.where(Category.type_of_flow == type_of_flow)
        return stmt

    def list_all(self, type_of_flow: Optional[TypeOfFlow] = None) -> list[Category]:
        return self.session.scalars(self._base_stmt(type_of_flow)).all()

    def list_active(self, type_of_flow: Optional[TypeOfFlow] = None) -> list[Category]:
        stmt = self._base_stmt(type_of_flow).where(Category.active.is_(True))
        return self.session.scalars(stmt).all()

    def list_by_type(self, type_of_flow: TypeOfFlow, page: int = 1) -> CategoriesViewModel:
        categories, paging = paginate(self.session, self._base_stmt(type_of_flow), page)
        return CategoriesViewModel(
            categories=list(categories), paging_info=paging, type_of_flow=type_of_flow
        )

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise NotFoundError("Category not found")
        return category

    def _check_unique_name(
        self, name: str, type_of_flow: TypeOfFlow, exclude_id: Optional[int] = None
    ) -> None:
        stmt = select(Category).where(
            Category.user_id == self.user_id,
            Category.type_of_flow == type_of_flow,
            func.lower(Category.name) == name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        if self.session.scalar(stmt):
            raise ConflictError("Category with this name already exists")

    def create(self, data: CategoryIn) -> Category:
        name = data.name.strip()
        self._check_unique_name(name, data.type_of_flow)
        category = Category(
            user_id=self.user_id,
            name=name,
            type_of_flow=data.type_of_flow,
            active=data.active,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def update(self, category_id: int, data: CategoryIn) -> Category:
        category = self.get(category_id)
        name = data.name.strip()
        self._check_unique_name(name, data.type_of_flow, exclude_id=category.id)
        if data.type_of_flow != category.type_of_flow and self.has_any_dependencies(
            category.id
        ):
            raise DependencyError(
                "Type of flow cannot change while the category has paying items"
            )
        category.name = name
        category.type_of_flow = data.type_of_flow
        category.active = data.active
        self.session.commit()
        return category

    def set_active(self, category_id: int, active: bool) -> None:
        category = self.get(category_id)
        category.active = active
        self.session.commit()

    def has_any_dependencies(self, category_id: int) -> bool:
        items = self.session.execute(
            select(func.count(PayingItem.id)).where(
                PayingItem.category_id == category_id
            )
        ).scalar_one()
        plans = self.session.execute(
            select(func.count(PlanItem.id)).where(PlanItem.category_id == category_id)
        ).scalar_one()
        lines = self.session.execute(
            select(func.count(PayingItemProduct.id))
            .join(Product, Product.id == PayingItemProduct.product_id)
            .where(Product.category_id == category_id)
        ).scalar_one()
        return (items or 0) + (plans or 0) + (lines or 0) > 0

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        if self.has_any_dependencies(category.id):
            raise DependencyError(
                f"Category '{category.name}' is in use and cannot be deleted"
            )
        for product in list(category.products):
            self.session.delete(product)
        self.session.delete(category)
        self.session.commit()


class ProductService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_for_category(self, category_id: int) -> list[Product]:
        CategoryService(self.session, self.user_id).get(category_id)
        stmt = (
            select(Product)
            .where(Product.user_id == self.user_id, Product.category_id == category_id)
            .order_by(Product.name)
        )
        return self.session.scalars(stmt).all()

    def get(self, product_id: int) -> Product:
        product = self.session.get(Product, product_id)
        if not product or product.user_id != self.user_id:
            raise NotFoundError("Product not found")
        return product

    def _check_unique_name(
        self, category_id: int, name: str, exclude_id: Optional[int] = None
    ) -> None:
        stmt = select(Product).where(
            Product.category_id == category_id,
            func.lower(Product.name) == name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(Product.id != exclude_id)
        if self.session.scalar(stmt):
            raise ConflictError("Product with this name already exists")

    def create(self, data: ProductIn) -> Product:
        CategoryService(self.session, self.user_id).get(data.category_id)
        name = data.name.strip()
        self._check_unique_name(data.category_id, name)
        product = Product(
            user_id=self.user_id,
            category_id=data.category_id,
            name=name,
            description=data.description,
        )
        self.session.add(product)
        self.session.commit()
        self.session.refresh(product)
        return product

    def _usage_count(self, product_id: int) -> int:
        return self.session.execute(
            select(func.count(PayingItemProduct.id)).where(
                PayingItemProduct.product_id == product_id
            )
        ).scalar_one()

    def update(self, product_id: int, data: ProductIn) -> Product:
        product = self.get(product_id)
        CategoryService(self.session, self.user_id).get(data.category_id)
        if data.category_id != product.category_id and self._usage_count(product.id):
            raise DependencyError(
                f"Product '{product.name}' is used by paying items and cannot change category"
            )
        name = data.name.strip()
        self._check_unique_name(data.category_id, name, exclude_id=product.id)
        product.category_id = data.category_id
        product.name = name
        product.description = data.description
        self.session.commit()
        return product

    def delete(self, product_id: int) -> None:
        product = self.get(product_id)
        if self._usage_count(product.id):
            raise DependencyError(
                f"Product '{product.name}' is used by paying items and cannot be deleted"
            )
        self.session.delete(product)
        self.session.commit()


class PayingItemService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _validated_refs(self, data: PayingItemIn) -> tuple[Category, Account]:
        category = CategoryService(self.session, self.user_id).get(data.category_id)
        account = AccountService(self.session, self.user_id).get(data.account_id)
        return category, account

    def _build_lines(
        self, category: Category, data: PayingItemIn
    ) -> list[PayingItemProduct]:
        lines: list[PayingItemProduct] = []
        products = ProductService(self.session, self.user_id)
        for line in data.product_lines:
            product = products.get(line.product_id)
            if product.category_id != category.id:
                raise ValidationError(
                    f"Product '{product.name}' does not belong to '{category.name}'"
                )
            lines.append(
                PayingItemProduct(product_id=product.id, summ_cents=line.summ_cents)
            )
        return lines

    def refresh_plans(self, *dates: date) -> None:
        planning = PlanService(self.session, self.user_id)
        for year, month in {(d.year, d.month) for d in dates}:
            planning.refresh_facts(year, month)

    def add(self, data: PayingItemIn) -> PayingItem:
        """Stage a new item and its cash effect; the caller commits."""
        category, account = self._validated_refs(data)
        if not category.active:
            raise ValidationError(f"Category '{category.name}' is not active")
        lines = self._build_lines(category, data)
        summ_cents = sum(line.summ_cents for line in lines) if lines else data.summ_cents
        item = PayingItem(
            user_id=self.user_id,
            category_id=category.id,
            account_id=account.id,
            date=data.date,
            summ_cents=summ_cents,
            comment=(data.comment or "").strip() or None,
            product_lines=lines,
        )
        self.session.add(item)
        account.cash_cents += signed_summ(category.type_of_flow, summ_cents)
        self.session.flush()
        return item

    def create(self, data: PayingItemIn) -> PayingItem:
        try:
            item = self.add(data)
            self.refresh_plans(data.date)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(item)
        logger.info(
            f"paying_item_created: user={self.user_id} id={item.id} "
            f"flow={item.category.type_of_flow.value} amount_cents={item.summ_cents}"
        )
        return item

    def get(self, item_id: int) -> PayingItem:
        stmt = (
            select(PayingItem)
            .options(
                joinedload(PayingItem.category),
                joinedload(PayingItem.account),
                selectinload(PayingItem.product_lines).joinedload(
                    PayingItemProduct.product
                ),
            )
            .where(PayingItem.user_id == self.user_id, PayingItem.id == item_id)
        )
        item = self.session.scalar(stmt)
        if not item:
            raise NotFoundError("Paying item not found")
        return item

    def update(self, item_id: int, data: PayingItemIn) -> PayingItem:
        item = self.get(item_id)
        category, account = self._validated_refs(data)
        lines = self._build_lines(category, data)
        old_date = item.date

        # revert the old effect first so a same-account edit nets out
        item.account.cash_cents -= signed_summ(
            item.category.type_of_flow, item.summ_cents
        )
        summ_cents = sum(line.summ_cents for line in lines) if lines else data.summ_cents
        item.category_id = category.id
        item.category = category
        item.account_id = account.id
        item.account = account
        item.date = data.date
        item.summ_cents = summ_cents
        item.comment = (data.comment or "").strip() or None
        item.product_lines = lines
        account.cash_cents += signed_summ(category.type_of_flow, summ_cents)

        self.session.flush()
        self.refresh_plans(old_date, data.date)
        self.session.commit()
        self.session.refresh(item)
        return item

    def delete(self, item_id: int) -> None:
        item = self.get(item_id)
        item.account.cash_cents -= signed_summ(
            item.category.type_of_flow, item.summ_cents
        )
        item_date = item.date
        self.session.delete(item)
        self.session.flush()
        self.refresh_plans(item_date)
        self.session.commit()
        logger.info(f"paying_item_deleted: user={self.user_id} id={item_id}")

    def _filtered_stmt(self, period: Period, filters: PayingItemFilters):
        stmt = (
            select(PayingItem)
            .join(Category, Category.id == PayingItem.category_id)
            .options(joinedload(PayingItem.category), joinedload(PayingItem.account))
            .where(
                PayingItem.user_id == self.user_id,
                PayingItem.date.between(period.start, period.end),
            )
            .order_by(PayingItem.date.desc(), PayingItem.id.desc())
        )
        if filters.type_of_flow:
            stmt = stmt.where(Category.type_of_flow == filters.type_of_flow)
        if filters.category_id:
            stmt = stmt.where(PayingItem.category_id == filters.category_id)
        if filters.account_id:
            stmt = stmt.where(PayingItem.account_id == filters.account_id)
        if filters.query:
            like = f"%{filters.query.lower()}%"
            stmt = stmt.where(
                func.lower(func.coalesce(PayingItem.comment, "")).like(like)
            )
        return stmt

    def list(
        self,
        period: Period,
        filters: Optional[PayingItemFilters] = None,
        page: int = 1,
    ) -> tuple[list[PayingItem], PagingInfo]:
        stmt = self._filtered_stmt(period, filters or PayingItemFilters())
        items, paging = paginate(self.session, stmt, page)
        return list(items), paging

    def all_in_dates(
        self, date_from: date, date_to: date, filters: Optional[PayingItemFilters] = None
    ) -> list[PayingItem]:
        stmt = self._filtered_stmt(
            Period("range", date_from, date_to), filters or PayingItemFilters()
        )
        return self.session.scalars(stmt).all()

    def list_by_type_of_flow(self, type_of_flow: TypeOfFlow) -> list[PayingItem]:
        stmt = (
            select(PayingItem)
            .join(Category, Category.id == PayingItem.category_id)
            .where(
                PayingItem.user_id == self.user_id,
                Category.type_of_flow == type_of_flow,
            )
            .order_by(PayingItem.date.desc(), PayingItem.id.desc())
        )
        return self.session.scalars(stmt).all()


@dataclass(frozen=True)
class BudgetModel:
    day: int
    week: int
    month: int


@dataclass(frozen=True)
class Budget:
    in_fact: int
    overall: int


class BudgetService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    @staticmethod
    def _sum_between(items: Sequence[PayingItem], start: date, end: date) -> int:
        return sum(item.summ_cents for item in items if start <= item.date <= end)

    @classmethod
    def sum_for_day(cls, items: Sequence[PayingItem], today: date) -> int:
        return cls._sum_between(items, today, today)

    @classmethod
    def sum_for_week(cls, items: Sequence[PayingItem], today: date) -> int:
        start, end = week_bounds(today)
        return cls._sum_between(items, start, end)

    @classmethod
    def sum_for_month(cls, items: Sequence[PayingItem], today: date) -> int:
        return cls._sum_between(
            items,
            month_start(today.year, today.month),
            month_end(today.year, today.month),
        )

    def _budget_model(
        self, type_of_flow: TypeOfFlow, today: Optional[date] = None
    ) -> BudgetModel:
        today = today or local_today()
        items = PayingItemService(self.session, self.user_id).list_by_type_of_flow(
            type_of_flow
        )
        return BudgetModel(
            day=self.sum_for_day(items, today),
            week=self.sum_for_week(items, today),
            month=self.sum_for_month(items, today),
        )

    def incoming(self, today: Optional[date] = None) -> BudgetModel:
        return self._budget_model(TypeOfFlow.income, today)

    def outgo(self, today: Optional[date] = None) -> BudgetModel:
        return self._budget_model(TypeOfFlow.outgo, today)

    def overall(self) -> int:
        stmt = (
            select(
                func.coalesce(
                    func.sum(
                        case(
                            (
                                Category.type_of_flow == TypeOfFlow.income,
                                PayingItem.summ_cents,
                            ),
                            else_=-PayingItem.summ_cents,
                        )
                    ),
                    0,
                )
            )
            .join(Category, Category.id == PayingItem.category_id)
            .where(PayingItem.user_id == self.user_id)
        )
        return int(self.session.execute(stmt).scalar_one() or 0)

    def budget(self) -> Budget:
        return Budget(
            in_fact=AccountService(self.session, self.user_id).total_cash(),
            overall=self.overall(),
        )


@dataclass(frozen=True)
class PlanMonthSummary:
    income_plan: int
    outgo_plan: int
    income_fact: int
    outgo_fact: int

    @property
    def balance_plan(self) -> int:
        return self.income_plan - self.outgo_plan

    @property
    def balance_fact(self) -> int:
        return self.income_fact - self.outgo_fact


@dataclass(frozen=True)
class PlanMonthView:
    month: date
    items: list[PlanItem]
    summary: PlanMonthSummary
    closed: bool


class PlanService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def ensure_plan(self, start: date, months: int = 12) -> int:
        """Create missing plan items for every active category; returns the count."""
        categories = CategoryService(self.session, self.user_id).list_active()
        first = month_start(start.year, start.month)
        existing = {
            (row.category_id, row.month)
            for row in self.session.execute(
                select(PlanItem.category_id, PlanItem.month).where(
                    PlanItem.user_id == self.user_id,
                    PlanItem.month.between(first, add_months(first, months)),
                )
            )
        }
        created = 0
        for offset in range(months):
            month = add_months(first, offset)
            for category in categories:
                if (category.id, month) in existing:
                    continue
                self.session.add(
                    PlanItem(
                        user_id=self.user_id,
                        category_id=category.id,
                        month=month,
                        summ_plan_cents=0,
                        summ_fact_cents=0,
                        closed=False,
                    )
                )
                created += 1
        self.session.flush()
        for offset in range(months):
            month = add_months(first, offset)
            self.refresh_facts(month.year, month.month)
        self.session.commit()
        logger.info(f"plan_ensured: user={self.user_id} created={created}")
        return created

    def get(self, item_id: int) -> PlanItem:
        item = self.session.get(PlanItem, item_id)
        if not item or item.user_id != self.user_id:
            raise NotFoundError("Plan item not found")
        return item

    def set_plan_sum(self, item_id: int, summ_plan_cents: int) -> PlanItem:
        item = self.get(item_id)
        if item.closed:
            raise ValidationError("This plan month is closed")
        if summ_plan_cents < 0:
            raise ValidationError("Planned sum must be positive")
        item.summ_plan_cents = summ_plan_cents
        self.session.commit()
        return item

    def _facts_by_category(self, year: int, month: int) -> dict[int, int]:
        stmt = (
            select(
                PayingItem.category_id,
                func.coalesce(func.sum(PayingItem.summ_cents), 0).label("fact"),
            )
            .where(
                PayingItem.user_id == self.user_id,
                PayingItem.date.between(
                    month_start(year, month), month_end(year, month)
                ),
            )
            .group_by(PayingItem.category_id)
        )
        return {row.category_id: int(row.fact or 0) for row in self.session.execute(stmt)}

    def refresh_facts(self, year: int, month: int) -> None:
        facts = self._facts_by_category(year, month)
        items = self.session.scalars(
            select(PlanItem).where(
                PlanItem.user_id == self.user_id,
                PlanItem.month == month_start(year, month),
            )
        ).all()
        for item in items:
            item.summ_fact_cents = facts.get(item.category_id, 0)

    def month_view(self, year: int, month: int) -> PlanMonthView:
        first = month_start(year, month)
        items = self.session.scalars(
            select(PlanItem)
            .join(Category, Category.id == PlanItem.category_id)
            .options(joinedload(PlanItem.category))
            .where(PlanItem.user_id == self.user_id, PlanItem.month == first)
            .order_by(Category.type_of_flow, Category.name)
        ).all()
        totals = {
            "income_plan": 0,
            "outgo_plan": 0,
            "income_fact": 0,
            "outgo_fact": 0,
        }
        for item in items:
            prefix = "income" if item.category.type_of_flow == TypeOfFlow.income else "outgo"
            totals[f"{prefix}_plan"] += item.summ_plan_cents
            totals[f"{prefix}_fact"] += item.summ_fact_cents
        return PlanMonthView(
            month=first,
            items=list(items),
            summary=PlanMonthSummary(**totals),
            closed=bool(items) and all(item.closed for item in items),
        )


def close_past_plan_months(session: Session, today: date) -> int:
    """Refresh facts and close every open plan item of a month before ``today``'s."""
    current = month_start(today.year, today.month)
    open_rows = session.execute(
        select(PlanItem.user_id, PlanItem.month)
        .where(PlanItem.closed.is_(False), PlanItem.month < current)
        .group_by(PlanItem.user_id, PlanItem.month)
    ).all()
    for row in open_rows:
        PlanService(session, row.user_id).refresh_facts(row.month.year, row.month.month)
    session.flush()
    result = session.execute(
        update(PlanItem)
        .where(PlanItem.closed.is_(False), PlanItem.month < current)
        .values(closed=True)
    )
    session.commit()
    return int(result.rowcount or 0)


@dataclass(frozen=True)
class ByTypeReportModel:
    category: Category
    date_from: date
    date_to: date
    items: list[PayingItem]
    paging_info: PagingInfo
    summ: int


@dataclass(frozen=True)
class ByDatesReportModel:
    date_from: date
    date_to: date
    items: list[PayingItem]
    paging_info: PagingInfo
    incoming_sum: int
    outgo_sum: int


@dataclass(frozen=True)
class OverAllItem:
    category: str
    summ: int


@dataclass(frozen=True)
class OverallReport:
    type_of_flow: TypeOfFlow
    date_from: date
    date_to: date
    items: list[OverAllItem]

    @property
    def summ(self) -> int:
        return sum(item.summ for item in self.items)


@dataclass
class MonthRow:
    month: date
    income: int = 0
    outgo: int = 0

    @property
    def balance(self) -> int:
        return self.income - self.outgo


@dataclass
class ReportMonthsModel:
    months: list[MonthRow] = field(default_factory=list)

    @property
    def income_total(self) -> int:
        return sum(row.income for row in self.months)

    @property
    def outgo_total(self) -> int:
        return sum(row.outgo for row in self.months)

    @property
    def balance_total(self) -> int:
        return self.income_total - self.outgo_total


@dataclass(frozen=True)
class ProductPrice:
    product_name: str
    price: int


@dataclass(frozen=True)
class PayItemSubcategories:
    category_id: int
    category_summ: OverAllItem
    product_prices: list[ProductPrice]


@dataclass(frozen=True)
class SubcategoriesReport:
    type_of_flow: TypeOfFlow
    date_from: date
    date_to: date
    items: list[PayItemSubcategories]

    @property
    def summ(self) -> int:
        return sum(item.category_summ.summ for item in self.items)


class ReportService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.paying_items = PayingItemService(session, user_id)

    def categories_by_type(self, type_of_flow: TypeOfFlow) -> list[Category]:
        return CategoryService(self.session, self.user_id).list_all(type_of_flow)

    def by_type_report(self, data: ByTypeReportIn, page: int = 1) -> ByTypeReportModel:
        if data.category_id == 0:
            raise ValidationError(NO_CATEGORIES_MESSAGE)
        category = CategoryService(self.session, self.user_id).get(data.category_id)
        filters = PayingItemFilters(category_id=category.id)
        period = Period("report", data.date_from, data.date_to)
        items, paging = self.paying_items.list(period, filters, page)
        summ = int(
            self.session.execute(
                select(func.coalesce(func.sum(PayingItem.summ_cents), 0)).where(
                    PayingItem.user_id == self.user_id,
                    PayingItem.category_id == category.id,
                    PayingItem.date.between(data.date_from, data.date_to),
                )
            ).scalar_one()
            or 0
        )
        return ByTypeReportModel(
            category=category,
            date_from=data.date_from,
            date_to=data.date_to,
            items=items,
            paging_info=paging,
            summ=summ,
        )

    def flow_sums(self, date_from: date, date_to: date) -> dict[TypeOfFlow, int]:
        stmt = (
            select(
                Category.type_of_flow,
                func.coalesce(func.sum(PayingItem.summ_cents), 0).label("total"),
            )
            .join(Category, Category.id == PayingItem.category_id)
            .where(
                PayingItem.user_id == self.user_id,
                PayingItem.date.between(date_from, date_to),
            )
            .group_by(Category.type_of_flow)
        )
        sums = {flow: 0 for flow in TypeOfFlow}
        for row in self.session.execute(stmt):
            sums[row.type_of_flow] = int(row.total or 0)
        return sums

    def by_dates_report(
        self, date_from: date, date_to: date, page: int = 1
    ) -> ByDatesReportModel:
        if date_from > date_to:
            raise ValidationError("Start date must be before end date")
        items, paging = self.paying_items.list(
            Period("report", date_from, date_to), PayingItemFilters(), page
        )
        sums = self.flow_sums(date_from, date_to)
        return ByDatesReportModel(
            date_from=date_from,
            date_to=date_to,
            items=items,
            paging_info=paging,
            incoming_sum=sums[TypeOfFlow.income],
            outgo_sum=sums[TypeOfFlow.outgo],
        )

    def overall_list(
        self, date_from: date, date_to: date, type_of_flow: TypeOfFlow
    ) -> OverallReport:
        total = func.sum(PayingItem.summ_cents)
        stmt = (
            select(Category.name, total.label("total"))
            .join(Category, Category.id == PayingItem.category_id)
            .where(
                PayingItem.user_id == self.user_id,
                Category.type_of_flow == type_of_flow,
                PayingItem.date.between(date_from, date_to),
            )
            .group_by(Category.id, Category.name)
            .order_by(total.desc(), Category.name)
        )
        items = [
            OverAllItem(category=row.name, summ=int(row.total or 0))
            for row in self.session.execute(stmt)
        ]
        return OverallReport(
            type_of_flow=type_of_flow, date_from=date_from, date_to=date_to, items=items
        )

    def last_year_months(self, today: Optional[date] = None) -> ReportMonthsModel:
        today = today or local_today()
        last = month_start(today.year, today.month)
        first = add_months(last, -11)
        rows = {add_months(first, i): MonthRow(month=add_months(first, i)) for i in range(12)}
        stmt = (
            select(PayingItem.date, Category.type_of_flow, PayingItem.summ_cents)
            .join(Category, Category.id == PayingItem.category_id)
            .where(
                PayingItem.user_id == self.user_id,
                PayingItem.date.between(first, month_end(last.year, last.month)),
            )
        )
        for item_date, type_of_flow, summ_cents in self.session.execute(stmt):
            row = rows[month_start(item_date.year, item_date.month)]
            if type_of_flow == TypeOfFlow.income:
                row.income += summ_cents
            else:
                row.outgo += summ_cents
        return ReportMonthsModel(months=[rows[key] for key in sorted(rows)])

    def subcategories_report(
        self, type_of_flow: TypeOfFlow, month_date: date
    ) -> SubcategoriesReport:
        date_from, date_to = month_range(month_date)
        totals_stmt = (
            select(
                Category.id,
                Category.name,
                func.sum(PayingItem.summ_cents).label("total"),
            )
            .join(Category, Category.id == PayingItem.category_id)
            .where(
                PayingItem.user_id == self.user_id,
                Category.type_of_flow == type_of_flow,
                PayingItem.date.between(date_from, date_to),
            )
            .group_by(Category.id, Category.name)
            .order_by(Category.name)
        )
        category_rows = self.session.execute(totals_stmt).all()

        prices_stmt = (
            select(
                PayingItem.category_id,
                Product.name,
                func.sum(PayingItemProduct.summ_cents).label("price"),
            )
            .join(PayingItemProduct, PayingItemProduct.paying_item_id == PayingItem.id)
            .join(Product, Product.id == PayingItemProduct.product_id)
            .where(
                PayingItem.user_id == self.user_id,
                PayingItem.category_id.in_([row.id for row in category_rows]),
                PayingItem.date.between(date_from, date_to),
            )
            .group_by(PayingItem.category_id, Product.name)
            .order_by(Product.name)
        )
        prices: dict[int, list[ProductPrice]] = {}
        for row in self.session.execute(prices_stmt):
            prices.setdefault(row.category_id, []).append(
                ProductPrice(product_name=row.name, price=int(row.price or 0))
            )

        items = [
            PayItemSubcategories(
                category_id=row.id,
                category_summ=OverAllItem(category=row.name, summ=int(row.total or 0)),
                product_prices=prices.get(row.id, []),
            )
            for row in category_rows
        ]
        return SubcategoriesReport(
            type_of_flow=type_of_flow, date_from=date_from, date_to=date_to, items=items
        )


class CSVService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _resolve_category(
        self, categories: list[Category], name: str, type_of_flow: TypeOfFlow
    ) -> Category:
        candidates = [c for c in categories if c.type_of_flow == type_of_flow]
        needle = name.strip().lower()
        for category in candidates:
            if category.name.lower() == needle:
                return category

        best_distance: Optional[int] = None
        best: list[Category] = []
        for category in candidates:
            dist = int(Levenshtein.distance(needle, category.name.lower()))
            if best_distance is None or dist < best_distance:
                best_distance = dist
                best = [category]
            elif dist == best_distance:
                best.append(category)
        if best_distance is not None and best_distance <= 1:
            if len(best) > 1:
                options = ", ".join(sorted(c.name for c in best))
                raise ValidationError(
                    f"Category '{name}' is ambiguous; matches: {options}"
                )
            return best[0]
        raise ValidationError(f"Missing category '{name}' for {type_of_flow.value}")

    def preview(self, content: str) -> tuple[list[dict[str, object]], list[str]]:
        rows, errors = parse_csv(content)
        categories = CategoryService(self.session, self.user_id).list_active()
        accounts = {
            a.name.lower(): a for a in AccountService(self.session, self.user_id).list_all()
        }
        preview_rows: list[dict[str, object]] = []
        for idx, row in enumerate(rows, start=1):
            category_id = None
            try:
                category_id = self._resolve_category(
                    categories, row.category, row.type_of_flow
                ).id
            except ValidationError as exc:
                errors.append(f"Row {idx}: {exc}")
            account = accounts.get(row.account.lower())
            if not account:
                errors.append(f"Row {idx}: Missing account '{row.account}'")
            preview_rows.append(
                {
                    "date": row.date,
                    "type_of_flow": row.type_of_flow.value,
                    "summ_cents": row.summ_cents,
                    "category": row.category,
                    "account": row.account,
                    "comment": row.comment,
                    "category_id": category_id,
                    "account_id": account.id if account else None,
                }
            )
        return preview_rows, errors

    def commit(self, content: str) -> int:
        preview_rows, errors = self.preview(content)
        if errors:
            raise ValidationError("; ".join(errors))
        items = PayingItemService(self.session, self.user_id)
        try:
            for row in preview_rows:
                items.add(
                    PayingItemIn(
                        category_id=row["category_id"],
                        account_id=row["account_id"],
                        date=row["date"],
                        summ_cents=row["summ_cents"],
                        comment=row["comment"],
                    )
                )
            items.refresh_plans(*(row["date"] for row in preview_rows))
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        logger.info(f"csv_imported: user={self.user_id} rows={len(preview_rows)}")
        return len(preview_rows)

    def export(self, items: list[PayingItem]) -> str:
        return export_paying_items(items)
