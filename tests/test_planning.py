from datetime import date

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import ValidationError
from models import PlanItem, TypeOfFlow, User
from schemas import AccountIn, CategoryIn, PayingItemIn
from services import (
    AccountService,
    CategoryService,
    PayingItemService,
    PlanService,
    close_past_plan_months,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def setup_plan(session):
    user = User(email="owner@example.com", name="Owner", password_hash="x")
    session.add(user)
    session.commit()
    wallet = AccountService(session, user.id).create(
        AccountIn(name="Wallet", cash_cents=100_000)
    )
    categories = CategoryService(session, user.id)
    salary = categories.create(CategoryIn(name="Salary", type_of_flow=TypeOfFlow.income))
    food = categories.create(CategoryIn(name="Food", type_of_flow=TypeOfFlow.outgo))
    categories.create(
        CategoryIn(name="Old hobby", type_of_flow=TypeOfFlow.outgo, active=False)
    )
    return user, wallet, salary, food


def test_ensure_plan_creates_rows_for_active_categories_once() -> None:
    session = make_session()
    user, _wallet, _salary, _food = setup_plan(session)
    plans = PlanService(session, user.id)

    created = plans.ensure_plan(date(2025, 11, 15), months=3)
    assert created == 6
    assert plans.ensure_plan(date(2025, 11, 1), months=3) == 0

    months = session.scalars(select(PlanItem.month).distinct().order_by(PlanItem.month)).all()
    assert months == [date(2025, 11, 1), date(2025, 12, 1), date(2026, 1, 1)]


def test_paying_items_refresh_plan_facts() -> None:
    session = make_session()
    user, wallet, salary, food = setup_plan(session)
    plans = PlanService(session, user.id)
    plans.ensure_plan(date(2025, 6, 1), months=1)
    items = PayingItemService(session, user.id)

    lunch = items.create(
        PayingItemIn(
            category_id=food.id,
            account_id=wallet.id,
            date=date(2025, 6, 10),
            summ_cents=1_250,
        )
    )
    items.create(
        PayingItemIn(
            category_id=salary.id,
            account_id=wallet.id,
            date=date(2025, 6, 25),
            summ_cents=300_000,
        )
    )

    view = plans.month_view(2025, 6)
    facts = {item.category.name: item.summ_fact_cents for item in view.items}
    assert facts == {"Salary": 300_000, "Food": 1_250}

    items.update(
        lunch.id,
        PayingItemIn(
            category_id=food.id,
            account_id=wallet.id,
            date=date(2025, 7, 1),
            summ_cents=1_250,
        ),
    )
    view = plans.month_view(2025, 6)
    facts = {item.category.name: item.summ_fact_cents for item in view.items}
    assert facts["Food"] == 0


def test_month_view_summary_and_plan_edits() -> None:
    session = make_session()
    user, wallet, salary, food = setup_plan(session)
    plans = PlanService(session, user.id)
    plans.ensure_plan(date(2025, 6, 1), months=1)
    rows = {item.category_id: item for item in plans.month_view(2025, 6).items}

    plans.set_plan_sum(rows[salary.id].id, 250_000)
    plans.set_plan_sum(rows[food.id].id, 40_000)
    PayingItemService(session, user.id).create(
        PayingItemIn(
            category_id=food.id,
            account_id=wallet.id,
            date=date(2025, 6, 3),
            summ_cents=5_000,
        )
    )

    summary = plans.month_view(2025, 6).summary
    assert summary.income_plan == 250_000
    assert summary.outgo_plan == 40_000
    assert summary.balance_plan == 210_000
    assert summary.outgo_fact == 5_000
    assert summary.balance_fact == -5_000

    with pytest.raises(ValidationError):
        plans.set_plan_sum(rows[food.id].id, -1)


def test_close_past_months_freezes_plan_rows() -> None:
    session = make_session()
    user, wallet, _salary, food = setup_plan(session)
    plans = PlanService(session, user.id)
    plans.ensure_plan(date(2025, 5, 1), months=3)
    PayingItemService(session, user.id).create(
        PayingItemIn(
            category_id=food.id,
            account_id=wallet.id,
            date=date(2025, 5, 20),
            summ_cents=700,
        )
    )

    closed = close_past_plan_months(session, date(2025, 7, 2))

    assert closed == 4
    may = plans.month_view(2025, 5)
    july = plans.month_view(2025, 7)
    assert may.closed
    assert may.summary.outgo_fact == 700
    assert not july.closed
    with pytest.raises(ValidationError):
        plans.set_plan_sum(may.items[0].id, 10)
    assert close_past_plan_months(session, date(2025, 7, 2)) == 0


def test_scheduler_registers_month_close_jobs() -> None:
    from scheduler import SchedulerManager

    manager = SchedulerManager()

    job_ids = [job_id for job_id, _trigger, _grace in manager._jobs()]
    assert job_ids == [
        "plan_close_month_start",
        "plan_close_daily",
        "plan_close_hourly_safety",
    ]
    assert not manager.scheduler.running
    manager.stop()
