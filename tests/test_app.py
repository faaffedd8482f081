from datetime import date

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

from csrf import generate_csrf_token
from database import Base, make_engine, make_sessionmaker
from errors import NO_CATEGORIES_MESSAGE, ROLE_NOT_FOUND_MESSAGE
from main import app, format_currency, get_db
from models import PlanItem, TypeOfFlow
from schemas import AccountIn, CategoryIn, PayingItemIn
from services import (
    AccountService,
    CategoryService,
    PayingItemService,
    PlanService,
    close_past_plan_months,
)


@pytest.fixture()
def session_factory():
    engine = make_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(engine)
    return make_sessionmaker(engine)


@pytest.fixture()
def client(session_factory):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def register(client: TestClient, email: str) -> None:
    response = client.post(
        "/register",
        data={
            "csrf_token": generate_csrf_token(),
            "email": email,
            "name": "Owner",
            "password": "secret123",
        },
        follow_redirects=False,
    )
    assert response.status_code == 303


def test_anonymous_user_is_sent_to_login(client: TestClient) -> None:
    response = client.get("/", follow_redirects=False)

    assert response.status_code == 303
    assert response.headers["location"] == "/login"


def test_accounts_flow_with_csrf(client: TestClient) -> None:
    register(client, "owner@example.com")

    response = client.post(
        "/accounts/add",
        data={"csrf_token": generate_csrf_token(1), "name": "Wallet", "cash": "100,50"},
        follow_redirects=False,
    )
    assert response.status_code == 303

    page = client.get("/accounts")
    assert page.status_code == 200
    assert "Wallet" in page.text
    assert "100,50" in page.text

    rejected = client.post(
        "/accounts/add", data={"csrf_token": "bogus", "name": "Card"}
    )
    assert rejected.status_code == 400

    blank = client.get("/accounts/999/edit")
    assert blank.status_code == 200
    assert "New account" in blank.text


def test_role_admin_requires_administrator(client: TestClient) -> None:
    register(client, "owner@example.com")
    assert client.get("/admin/roles").status_code == 200

    other = TestClient(app)
    register(other, "guest@example.com")
    assert other.get("/admin/roles").status_code == 403


def test_items_by_month_redirects_or_renders_partial(client: TestClient) -> None:
    register(client, "owner@example.com")

    response = client.get("/reports/items-by-month?date=2025-03-01", follow_redirects=False)
    assert response.status_code == 303
    assert "date_from=2025-03-01" in response.headers["location"]
    assert "date_to=2025-03-31" in response.headers["location"]

    partial = client.get(
        "/reports/items-by-month?date=2025-03-01", headers={"HX-Request": "true"}
    )
    assert partial.status_code == 200
    assert "<html" not in partial.text


def test_by_type_report_without_category_shows_message(client: TestClient) -> None:
    register(client, "owner@example.com")

    response = client.get(
        "/reports/by-type?category_id=0&date_from=2025-01-01&date_to=2025-01-31"
    )

    assert response.status_code == 200
    assert NO_CATEGORIES_MESSAGE in response.text


def test_deleting_unknown_role_shows_not_found(client: TestClient) -> None:
    register(client, "owner@example.com")

    response = client.post(
        "/admin/roles/999/delete", data={"csrf_token": generate_csrf_token(1)}
    )

    assert response.status_code == 400
    assert ROLE_NOT_FOUND_MESSAGE in response.text


def test_deleting_used_account_redirects_with_message(
    client: TestClient, session_factory
) -> None:
    register(client, "owner@example.com")
    with session_factory() as session:
        wallet = AccountService(session, 1).create(
            AccountIn(name="Wallet", cash_cents=1_000)
        )
        food = CategoryService(session, 1).create(
            CategoryIn(name="Food", type_of_flow=TypeOfFlow.outgo)
        )
        PayingItemService(session, 1).create(
            PayingItemIn(
                category_id=food.id,
                account_id=wallet.id,
                date=date(2025, 2, 1),
                summ_cents=300,
            )
        )
        wallet_id = wallet.id

    response = client.post(
        f"/accounts/{wallet_id}/delete",
        data={"csrf_token": generate_csrf_token(1)},
        follow_redirects=False,
    )
    assert response.status_code == 303
    assert response.headers["location"].startswith("/accounts?message=")

    page = client.get(response.headers["location"])
    assert "has paying items and cannot be deleted" in page.text
    assert "Wallet" in page.text


def test_failed_transfer_rerenders_form_with_message(
    client: TestClient, session_factory
) -> None:
    register(client, "owner@example.com")
    with session_factory() as session:
        accounts = AccountService(session, 1)
        wallet = accounts.create(AccountIn(name="Wallet", cash_cents=1_000))
        card = accounts.create(AccountIn(name="Card", cash_cents=0))
        wallet_id, card_id = wallet.id, card.id

    response = client.post(
        "/accounts/transfer",
        data={
            "csrf_token": generate_csrf_token(1),
            "from_id": str(wallet_id),
            "to_id": str(card_id),
            "summ": "25,00",
        },
    )

    assert response.status_code == 200
    assert "Transfer money" in response.text
    assert "Not enough money on account" in response.text
    with session_factory() as session:
        assert AccountService(session, 1).get(wallet_id).cash_cents == 1_000


def test_closed_plan_month_rejects_edit(client: TestClient, session_factory) -> None:
    register(client, "owner@example.com")
    with session_factory() as session:
        CategoryService(session, 1).create(
            CategoryIn(name="Food", type_of_flow=TypeOfFlow.outgo)
        )
        PlanService(session, 1).ensure_plan(date(2025, 1, 1), 1)
        close_past_plan_months(session, date(2025, 3, 1))
        item_id = session.scalar(select(PlanItem.id))

    response = client.post(
        f"/plan/items/{item_id}",
        data={"csrf_token": generate_csrf_token(1), "summ": "10"},
    )

    assert response.status_code == 400
    assert "This plan month is closed" in response.text


def test_currency_filter_groups_thousands_with_comma_decimals() -> None:
    assert format_currency(123_456) == "1 234,56"
    assert format_currency(-5) == "-0,05"
