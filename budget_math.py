"""
Budget arithmetic over already-aggregated spend.

Spent amounts keep the ledger's sign convention (expenses negative, refunds
positive), so ``remaining = budgeted - spent`` grows with expenses. Nothing here
rounds; presentation decides on precision.
"""

from dataclasses import dataclass
from typing import Iterable, Mapping, Sequence, Union

Number = Union[int, float]


@dataclass(frozen=True)
class BudgetAllocation:
    category_id: int
    category_name: str
    budgeted_cents: int


@dataclass(frozen=True)
class CategoryBudgetItem:
    category_id: int
    category_name: str
    budgeted_cents: int
    spent_cents: int
    remaining_cents: int
    percentage_used: float


@dataclass(frozen=True)
class BudgetSummary:
    total_budgeted_cents: int
    total_spent_cents: int
    total_remaining_cents: int
    overall_percentage_used: float


@dataclass(frozen=True)
class BudgetPage:
    month: int
    year: int
    category_budgets: list[CategoryBudgetItem]
    summary: BudgetSummary


def category_remaining(budgeted: Number, spent: Number) -> Number:
    return budgeted - spent


def percentage_used(spent: Number, budgeted: Number) -> float:
    if budgeted == 0:
        return 0.0
    return (abs(spent) / budgeted) * 100


def build_category_budget_items(
    budgets: Iterable[BudgetAllocation], spent_by_category: Mapping[int, int]
) -> list[CategoryBudgetItem]:
    items: list[CategoryBudgetItem] = []
    for budget in budgets:
        spent = spent_by_category.get(budget.category_id, 0)
        items.append(
            CategoryBudgetItem(
                category_id=budget.category_id,
                category_name=budget.category_name,
                budgeted_cents=budget.budgeted_cents,
                spent_cents=spent,
                remaining_cents=category_remaining(budget.budgeted_cents, spent),
                percentage_used=percentage_used(spent, budget.budgeted_cents),
            )
        )
    return items


def budget_summary(items: Sequence[CategoryBudgetItem]) -> BudgetSummary:
    total_budgeted = sum(item.budgeted_cents for item in items)
    total_spent = sum(item.spent_cents for item in items)
    total_remaining = sum(item.remaining_cents for item in items)
    return BudgetSummary(
        total_budgeted_cents=total_budgeted,
        total_spent_cents=total_spent,
        total_remaining_cents=total_remaining,
        overall_percentage_used=percentage_used(total_spent, total_budgeted),
    )


def compose_budget_page(
    month: int, year: int, items: Sequence[CategoryBudgetItem]
) -> BudgetPage:
    return BudgetPage(
        month=month,
        year=year,
        category_budgets=list(items),
        summary=budget_summary(items),
    )
