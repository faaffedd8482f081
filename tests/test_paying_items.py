from datetime import date

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import NotFoundError, ValidationError
from models import PayingItemProduct, TypeOfFlow, User
from periods import Period
from schemas import (
    AccountIn,
    CategoryIn,
    PayingItemIn,
    ProductIn,
    ProductLineIn,
)
from services import (
    AccountService,
    CategoryService,
    PayingItemFilters,
    PayingItemService,
    ProductService,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def setup_books(session):
    user = User(email="owner@example.com", name="Owner", password_hash="x")
    session.add(user)
    session.commit()
    accounts = AccountService(session, user.id)
    wallet = accounts.create(AccountIn(name="Wallet", cash_cents=10_000))
    card = accounts.create(AccountIn(name="Card", cash_cents=0))
    categories = CategoryService(session, user.id)
    salary = categories.create(CategoryIn(name="Salary", type_of_flow=TypeOfFlow.income))
    food = categories.create(CategoryIn(name="Food", type_of_flow=TypeOfFlow.outgo))
    return user, wallet, card, salary, food


def test_income_adds_and_outgo_subtracts_account_cash() -> None:
    session = make_session()
    user, wallet, _card, salary, food = setup_books(session)
    items = PayingItemService(session, user.id)

    items.create(
        PayingItemIn(
            category_id=salary.id,
            account_id=wallet.id,
            date=date(2025, 4, 1),
            summ_cents=50_000,
        )
    )
    items.create(
        PayingItemIn(
            category_id=food.id,
            account_id=wallet.id,
            date=date(2025, 4, 2),
            summ_cents=1_500,
            comment="  Groceries ",
        )
    )

    assert AccountService(session, user.id).get(wallet.id).cash_cents == 58_500
    groceries = items.list_by_type_of_flow(TypeOfFlow.outgo)
    assert [i.comment for i in groceries] == ["Groceries"]


def test_product_lines_define_the_item_amount() -> None:
    session = make_session()
    user, wallet, _card, _salary, food = setup_books(session)
    products = ProductService(session, user.id)
    milk = products.create(ProductIn(category_id=food.id, name="Milk"))
    bread = products.create(ProductIn(category_id=food.id, name="Bread"))

    item = PayingItemService(session, user.id).create(
        PayingItemIn(
            category_id=food.id,
            account_id=wallet.id,
            date=date(2025, 4, 3),
            summ_cents=1,
            product_lines=[
                ProductLineIn(product_id=milk.id, summ_cents=120),
                ProductLineIn(product_id=bread.id, summ_cents=80),
            ],
        )
    )

    assert item.summ_cents == 200
    assert sorted(line.summ_cents for line in item.product_lines) == [80, 120]
    assert AccountService(session, user.id).get(wallet.id).cash_cents == 9_800


def test_product_from_another_category_is_rejected() -> None:
    session = make_session()
    user, wallet, _card, salary, food = setup_books(session)
    bonus = ProductService(session, user.id).create(
        ProductIn(category_id=salary.id, name="Bonus")
    )

    with pytest.raises(ValidationError):
        PayingItemService(session, user.id).create(
            PayingItemIn(
                category_id=food.id,
                account_id=wallet.id,
                date=date(2025, 4, 3),
                summ_cents=0,
                product_lines=[ProductLineIn(product_id=bonus.id, summ_cents=10)],
            )
        )


def test_inactive_category_cannot_take_new_items() -> None:
    session = make_session()
    user, wallet, _card, _salary, food = setup_books(session)
    CategoryService(session, user.id).set_active(food.id, False)

    with pytest.raises(ValidationError):
        PayingItemService(session, user.id).create(
            PayingItemIn(
                category_id=food.id,
                account_id=wallet.id,
                date=date(2025, 4, 3),
                summ_cents=100,
            )
        )


def test_update_reverts_old_effect_before_applying_new_one() -> None:
    session = make_session()
    user, wallet, card, salary, food = setup_books(session)
    items = PayingItemService(session, user.id)
    accounts = AccountService(session, user.id)

    item = items.create(
        PayingItemIn(
            category_id=food.id,
            account_id=wallet.id,
            date=date(2025, 4, 5),
            summ_cents=2_000,
        )
    )
    assert accounts.get(wallet.id).cash_cents == 8_000

    items.update(
        item.id,
        PayingItemIn(
            category_id=food.id,
            account_id=wallet.id,
            date=date(2025, 4, 5),
            summ_cents=500,
        ),
    )
    assert accounts.get(wallet.id).cash_cents == 9_500

    items.update(
        item.id,
        PayingItemIn(
            category_id=salary.id,
            account_id=card.id,
            date=date(2025, 4, 6),
            summ_cents=700,
        ),
    )
    assert accounts.get(wallet.id).cash_cents == 10_000
    assert accounts.get(card.id).cash_cents == 700


def test_delete_reverts_cash_and_removes_product_lines() -> None:
    session = make_session()
    user, wallet, _card, _salary, food = setup_books(session)
    milk = ProductService(session, user.id).create(
        ProductIn(category_id=food.id, name="Milk")
    )
    items = PayingItemService(session, user.id)
    item = items.create(
        PayingItemIn(
            category_id=food.id,
            account_id=wallet.id,
            date=date(2025, 4, 7),
            summ_cents=0,
            product_lines=[ProductLineIn(product_id=milk.id, summ_cents=300)],
        )
    )

    items.delete(item.id)

    assert AccountService(session, user.id).get(wallet.id).cash_cents == 10_000
    assert session.scalar(select(func.count(PayingItemProduct.id))) == 0
    with pytest.raises(NotFoundError):
        items.get(item.id)


def test_list_is_filtered_and_paged() -> None:
    session = make_session()
    user, wallet, card, salary, food = setup_books(session)
    items = PayingItemService(session, user.id)
    for day in range(1, 13):
        items.create(
            PayingItemIn(
                category_id=food.id,
                account_id=wallet.id,
                date=date(2025, 5, day),
                summ_cents=100,
            )
        )
    items.create(
        PayingItemIn(
            category_id=salary.id,
            account_id=card.id,
            date=date(2025, 5, 20),
            summ_cents=9_000,
            comment="May salary",
        )
    )
    items.create(
        PayingItemIn(
            category_id=food.id,
            account_id=wallet.id,
            date=date(2025, 6, 1),
            summ_cents=100,
        )
    )
    may = Period("custom", date(2025, 5, 1), date(2025, 5, 31))

    first, paging = items.list(may)
    assert len(first) == 10
    assert paging.total_items == 13
    assert paging.total_pages == 2
    assert first[0].date == date(2025, 5, 20)

    second, paging = items.list(may, page=2)
    assert len(second) == 3
    assert paging.has_previous and not paging.has_next

    outgo, _ = items.list(may, PayingItemFilters(type_of_flow=TypeOfFlow.outgo))
    assert all(i.category_id == food.id for i in outgo)

    salary_rows, _ = items.list(may, PayingItemFilters(query="SALARY"))
    assert [i.summ_cents for i in salary_rows] == [9_000]

    by_card = items.all_in_dates(
        date(2025, 1, 1), date(2025, 12, 31), PayingItemFilters(account_id=card.id)
    )
    assert len(by_card) == 1
