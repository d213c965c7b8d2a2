from datetime import date

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from database import Base
from models import Budget, Category, Transaction
from schemas import AccountIn, BudgetIn, CategoryIn, TransactionIn
from services import (
    AccountService,
    BudgetService,
    CategoryService,
    TransactionFilters,
    TransactionService,
    seed_system_categories,
)


def test_seed_system_categories_is_idempotent() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        assert seed_system_categories(session, ["Groceries", "Other"]) == 2
        assert seed_system_categories(session, ["Groceries", "Other", "Gifts"]) == 1

        names = session.scalars(select(Category.name).order_by(Category.name)).all()
        assert names == ["Gifts", "Groceries", "Other"]


def test_category_names_unique_within_visible_scope() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        seed_system_categories(session, ["Groceries"])
        u1 = CategoryService(session, "u1")

        with pytest.raises(ValueError, match="already exists"):
            u1.create(CategoryIn(name="groceries"))

        u1.create(CategoryIn(name="Coffee"))
        with pytest.raises(ValueError, match="already exists"):
            u1.create(CategoryIn(name="COFFEE"))

        # Another user's category does not collide.
        CategoryService(session, "u2").create(CategoryIn(name="Coffee"))

        u1_names = [c.name for c in u1.list_visible()]
        assert u1_names == ["Groceries", "Coffee"]


def test_system_categories_are_immutable() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        seed_system_categories(session, ["Groceries"])
        groceries = session.scalars(select(Category)).one()
        service = CategoryService(session, "u1")

        with pytest.raises(ValueError, match="System categories cannot be modified"):
            service.rename(groceries.id, "Food")
        with pytest.raises(ValueError, match="System categories cannot be modified"):
            service.delete(groceries.id)


def test_user_cannot_touch_another_users_category() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        coffee = CategoryService(session, "u2").create(CategoryIn(name="Coffee"))

        with pytest.raises(ValueError, match="Category not found"):
            CategoryService(session, "u1").delete(coffee.id)
        with pytest.raises(ValueError, match="Category not found"):
            CategoryService(session, "u1").rename(coffee.id, "Tea")


def test_deleting_category_uncategorizes_transactions_and_drops_budgets() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        account = AccountService(session, "u1").create(AccountIn(name="Checking"))
        categories = CategoryService(session, "u1")
        coffee = categories.create(CategoryIn(name="Coffee"))
        txn = TransactionService(session, "u1").create_manual(
            TransactionIn(
                account_id=account.id,
                date=date(2025, 3, 3),
                amount_cents=-450,
                category_id=coffee.id,
            )
        )
        BudgetService(session, "u1").upsert(
            BudgetIn(category_id=coffee.id, month=3, year=2025, amount_cents=5_000)
        )

        categories.delete(coffee.id)
        session.expire_all()

        assert session.get(Transaction, txn.id).category_id is None
        assert session.scalars(select(Budget)).all() == []


def test_account_delete_removes_its_transactions() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        accounts = AccountService(session, "u1")
        checking = accounts.create(AccountIn(name="Checking", balance_cents=10_000))
        savings = accounts.create(AccountIn(name="Savings", balance_cents=50_000))
        txns = TransactionService(session, "u1")
        for account in (checking, savings):
            txns.create_manual(
                TransactionIn(
                    account_id=account.id, date=date(2025, 1, 2), amount_cents=-100
                )
            )

        assert accounts.total_balance() == 60_000
        accounts.delete(checking.id)

        remaining = txns.list()
        assert [t.account_id for t in remaining] == [savings.id]
        assert accounts.total_balance() == 50_000
        with pytest.raises(ValueError, match="Account not found"):
            accounts.get(checking.id)


def test_accounts_are_scoped_to_user() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        account = AccountService(session, "u1").create(AccountIn(name="Checking"))

        with pytest.raises(ValueError, match="Account not found"):
            AccountService(session, "u2").update_balance(account.id, 1)
        with pytest.raises(ValueError, match="Account not found"):
            TransactionService(session, "u2").create_manual(
                TransactionIn(account_id=account.id, date=date(2025, 1, 1), amount_cents=-1)
            )


def test_transaction_list_filters() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        account = AccountService(session, "u1").create(AccountIn(name="Checking"))
        coffee = CategoryService(session, "u1").create(CategoryIn(name="Coffee"))
        txns = TransactionService(session, "u1")
        first = txns.create_manual(
            TransactionIn(
                account_id=account.id,
                date=date(2025, 1, 5),
                amount_cents=-300,
                category_id=coffee.id,
            )
        )
        second = txns.create_manual(
            TransactionIn(account_id=account.id, date=date(2025, 2, 5), amount_cents=-700)
        )

        assert [t.id for t in txns.list()] == [second.id, first.id]
        assert [t.id for t in txns.list(TransactionFilters(category_id=coffee.id))] == [
            first.id
        ]
        assert [t.id for t in txns.list(TransactionFilters(uncategorized_only=True))] == [
            second.id
        ]
        in_february = TransactionFilters(start=date(2025, 2, 1), end=date(2025, 2, 28))
        assert [t.id for t in txns.list(in_february)] == [second.id]
        assert [t.id for t in txns.list(limit=1, offset=1)] == [first.id]


def test_update_category_reports_missing_rows() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        account = AccountService(session, "u1").create(AccountIn(name="Checking"))
        coffee = CategoryService(session, "u1").create(CategoryIn(name="Coffee"))
        txn = TransactionService(session, "u1").create_manual(
            TransactionIn(account_id=account.id, date=date(2025, 1, 5), amount_cents=-300)
        )

        other_user = TransactionService(session, "u2").update_category(txn.id, coffee.id)
        assert not other_user.success
        assert "not found" in other_user.error

        unknown = TransactionService(session, "u1").update_category(txn.id, 9999)
        assert not unknown.success
        assert "9999" in unknown.error

        ok = TransactionService(session, "u1").update_category(txn.id, coffee.id)
        assert ok.success
        assert TransactionService(session, "u1").get(txn.id).category_id == coffee.id

        cleared = TransactionService(session, "u1").update_category(txn.id, None)
        assert cleared.success
        assert TransactionService(session, "u1").get(txn.id).category_id is None
