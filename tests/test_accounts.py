from datetime import date

import pytest
from pydantic import ValidationError as PayloadError
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import (
    ConflictError,
    DependencyError,
    InsufficientFundsError,
    NO_ACCOUNTS_MESSAGE,
    NotFoundError,
    ValidationError,
)
from models import TypeOfFlow, User
from schemas import AccountIn, CategoryIn, PayingItemIn, TransferIn
from services import AccountService, CategoryService, PayingItemService


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def make_user(session, email: str = "owner@example.com") -> User:
    user = User(email=email, name="Owner", password_hash="x")
    session.add(user)
    session.commit()
    return user


def test_transfer_moves_money_between_accounts() -> None:
    session = make_session()
    user = make_user(session)
    accounts = AccountService(session, user.id)
    wallet = accounts.create(AccountIn(name="Wallet", cash_cents=10_000))
    card = accounts.create(AccountIn(name="Card", cash_cents=500))

    source, target = accounts.transfer(
        TransferIn(from_id=wallet.id, to_id=card.id, summ="25,50")
    )

    assert source.cash_cents == 7_450
    assert target.cash_cents == 3_050
    assert accounts.total_cash() == 10_500


def test_transfer_rejects_insufficient_funds() -> None:
    session = make_session()
    user = make_user(session)
    accounts = AccountService(session, user.id)
    wallet = accounts.create(AccountIn(name="Wallet", cash_cents=1_000))
    card = accounts.create(AccountIn(name="Card"))

    with pytest.raises(InsufficientFundsError):
        accounts.transfer(TransferIn(from_id=wallet.id, to_id=card.id, summ="10.01"))

    assert accounts.get(wallet.id).cash_cents == 1_000
    assert accounts.get(card.id).cash_cents == 0


def test_transfer_of_whole_balance_is_allowed() -> None:
    session = make_session()
    user = make_user(session)
    accounts = AccountService(session, user.id)
    wallet = accounts.create(AccountIn(name="Wallet", cash_cents=1_000))
    card = accounts.create(AccountIn(name="Card"))

    accounts.transfer(TransferIn(from_id=wallet.id, to_id=card.id, summ="10"))

    assert accounts.get(wallet.id).cash_cents == 0
    assert accounts.get(card.id).cash_cents == 1_000


def test_transfer_without_accounts_asks_to_create_one() -> None:
    session = make_session()
    user = make_user(session)

    with pytest.raises(ValidationError, match=NO_ACCOUNTS_MESSAGE):
        AccountService(session, user.id).transfer(
            TransferIn(from_id=1, to_id=2, summ="1")
        )


def test_transfer_to_same_account_is_rejected() -> None:
    session = make_session()
    user = make_user(session)
    accounts = AccountService(session, user.id)
    wallet = accounts.create(AccountIn(name="Wallet", cash_cents=1_000))

    with pytest.raises(ValidationError):
        accounts.transfer(TransferIn(from_id=wallet.id, to_id=wallet.id, summ="1"))


def test_transfer_amount_must_be_a_positive_number() -> None:
    with pytest.raises(PayloadError):
        TransferIn(from_id=1, to_id=2, summ="-5")
    with pytest.raises(PayloadError):
        TransferIn(from_id=1, to_id=2, summ="ten")

    session = make_session()
    user = make_user(session)
    accounts = AccountService(session, user.id)
    wallet = accounts.create(AccountIn(name="Wallet", cash_cents=1_000))
    card = accounts.create(AccountIn(name="Card"))
    with pytest.raises(ValidationError):
        accounts.transfer(TransferIn(from_id=wallet.id, to_id=card.id, summ="0"))


def test_transfer_cannot_use_foreign_accounts() -> None:
    session = make_session()
    owner = make_user(session)
    stranger = make_user(session, "stranger@example.com")
    mine = AccountService(session, owner.id).create(
        AccountIn(name="Wallet", cash_cents=1_000)
    )
    theirs = AccountService(session, stranger.id).create(AccountIn(name="Wallet"))

    with pytest.raises(NotFoundError):
        AccountService(session, owner.id).transfer(
            TransferIn(from_id=mine.id, to_id=theirs.id, summ="1")
        )
    assert AccountService(session, owner.id).find(theirs.id) is None


def test_account_names_are_unique_per_user() -> None:
    session = make_session()
    owner = make_user(session)
    other = make_user(session, "other@example.com")
    AccountService(session, owner.id).create(AccountIn(name="Wallet"))

    with pytest.raises(ConflictError):
        AccountService(session, owner.id).create(AccountIn(name="wallet"))
    AccountService(session, other.id).create(AccountIn(name="Wallet"))


def test_others_lists_every_account_but_the_given_one() -> None:
    session = make_session()
    user = make_user(session)
    accounts = AccountService(session, user.id)
    cash = accounts.create(AccountIn(name="Cash"))
    bank = accounts.create(AccountIn(name="Bank"))
    card = accounts.create(AccountIn(name="Card"))

    assert [a.id for a in accounts.others(cash.id)] == [bank.id, card.id]


def test_account_with_paying_items_cannot_be_deleted() -> None:
    session = make_session()
    user = make_user(session)
    accounts = AccountService(session, user.id)
    wallet = accounts.create(AccountIn(name="Wallet", cash_cents=5_000))
    spare = accounts.create(AccountIn(name="Spare"))
    food = CategoryService(session, user.id).create(
        CategoryIn(name="Food", type_of_flow=TypeOfFlow.outgo)
    )
    PayingItemService(session, user.id).create(
        PayingItemIn(
            category_id=food.id,
            account_id=wallet.id,
            date=date(2025, 3, 1),
            summ_cents=1_200,
        )
    )

    assert accounts.has_any_dependencies(wallet.id)
    with pytest.raises(DependencyError):
        accounts.delete(wallet.id)

    accounts.delete(spare.id)
    assert [a.name for a in accounts.list_all()] == ["Wallet"]


def test_update_account_changes_name_and_cash() -> None:
    session = make_session()
    user = make_user(session)
    accounts = AccountService(session, user.id)
    wallet = accounts.create(AccountIn(name="Wallet", cash_cents=100))

    updated = accounts.update(wallet.id, AccountIn(name="  Pocket ", cash_cents=250))

    assert updated.name == "Pocket"
    assert updated.cash_cents == 250
    with pytest.raises(NotFoundError):
        accounts.update(999, AccountIn(name="Ghost"))
