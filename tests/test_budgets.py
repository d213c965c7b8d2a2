from datetime import date

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from database import Base
from models import Budget
from schemas import AccountIn, BudgetIn, BudgetSetupIn, CategoryIn, TransactionIn
from services import AccountService, BudgetService, CategoryService, TransactionService


def test_upsert_replaces_amount_for_same_month() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        groceries = CategoryService(session, "u1").create(CategoryIn(name="Groceries"))
        budgets = BudgetService(session, "u1")

        first = budgets.upsert(
            BudgetIn(category_id=groceries.id, month=3, year=2025, amount_cents=20_000)
        )
        second = budgets.upsert(
            BudgetIn(category_id=groceries.id, month=3, year=2025, amount_cents=25_000)
        )

        assert first.id == second.id
        rows = session.scalars(select(Budget)).all()
        assert len(rows) == 1
        assert rows[0].amount_cents == 25_000
        assert rows[0].updated_at >= rows[0].created_at


def test_upsert_rejects_unknown_category() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        with pytest.raises(ValueError, match="does not exist"):
            BudgetService(session, "u1").upsert(
                BudgetIn(category_id=42, month=3, year=2025, amount_cents=1)
            )


def test_setup_counts_created_and_updated() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        categories = CategoryService(session, "u1")
        groceries = categories.create(CategoryIn(name="Groceries"))
        dining = categories.create(CategoryIn(name="Dining Out"))
        budgets = BudgetService(session, "u1")
        budgets.upsert(
            BudgetIn(category_id=groceries.id, month=4, year=2025, amount_cents=10_000)
        )

        result = budgets.setup(
            BudgetSetupIn(
                user_id="u1",
                month=4,
                year=2025,
                budgets=[
                    {"category_id": groceries.id, "planned_cents": 12_000},
                    {"category_id": dining.id, "planned_cents": 8_000},
                ],
            )
        )

        assert (result.created, result.updated, result.total) == (1, 1, 2)
        amounts = {b.category_id: b.amount_cents for b in budgets.list_for_month(4, 2025)}
        assert amounts == {groceries.id: 12_000, dining.id: 8_000}


def test_setup_writes_nothing_when_a_row_is_invalid() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        groceries = CategoryService(session, "u1").create(CategoryIn(name="Groceries"))

        with pytest.raises(ValueError, match="Category ID 999"):
            BudgetService(session, "u1").setup(
                BudgetSetupIn(
                    user_id="u1",
                    month=4,
                    year=2025,
                    budgets=[
                        {"category_id": groceries.id, "planned_cents": 12_000},
                        {"category_id": 999, "planned_cents": 8_000},
                    ],
                )
            )

        assert session.scalars(select(Budget)).all() == []


def test_budget_page_combines_budgets_with_spend() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        account = AccountService(session, "u1").create(AccountIn(name="Checking"))
        categories = CategoryService(session, "u1")
        groceries = categories.create(CategoryIn(name="Groceries"))
        dining = categories.create(CategoryIn(name="Dining Out"))
        TransactionService(session, "u1").create_manual(
            TransactionIn(
                account_id=account.id,
                date=date(2025, 5, 10),
                amount_cents=-15_000,
                category_id=groceries.id,
            )
        )
        budgets = BudgetService(session, "u1")
        budgets.upsert(
            BudgetIn(category_id=groceries.id, month=5, year=2025, amount_cents=30_000)
        )
        budgets.upsert(
            BudgetIn(category_id=dining.id, month=5, year=2025, amount_cents=0)
        )

        page = budgets.budget_page(5, 2025)

        assert [item.category_name for item in page.category_budgets] == [
            "Dining Out",
            "Groceries",
        ]
        dining_item, groceries_item = page.category_budgets
        assert groceries_item.spent_cents == -15_000
        assert groceries_item.remaining_cents == 45_000
        assert groceries_item.percentage_used == 50
        assert dining_item.spent_cents == 0
        assert dining_item.percentage_used == 0
        assert page.summary.total_budgeted_cents == 30_000
        assert page.summary.total_spent_cents == -15_000
        assert page.summary.total_remaining_cents == 45_000


def test_budget_page_for_empty_month() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        page = BudgetService(session, "u1").budget_page(7, 2025)

        assert page.category_budgets == []
        assert page.summary.total_budgeted_cents == 0
        assert page.summary.overall_percentage_used == 0


def test_delete_month_only_touches_that_month() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        groceries = CategoryService(session, "u1").create(CategoryIn(name="Groceries"))
        budgets = BudgetService(session, "u1")
        for month in (1, 2):
            budgets.upsert(
                BudgetIn(category_id=groceries.id, month=month, year=2025, amount_cents=100)
            )

        assert budgets.delete_month(1, 2025) == 1
        assert budgets.list_for_month(1, 2025) == []
        assert len(budgets.list_for_month(2, 2025)) == 1

        with pytest.raises(ValueError, match="Budget not found"):
            BudgetService(session, "u2").delete(budgets.list_for_month(2, 2025)[0].id)
