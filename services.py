from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from budget_math import (
    BudgetAllocation,
    BudgetPage,
    build_category_budget_items,
    compose_budget_page,
)
from models import (
    Account,
    AssetLiability,
    Budget,
    Category,
    HoldingKind,
    SyncState,
    Transaction,
    utcnow,
)
from periods import month_period, validate_month
from schemas import (
    AccountIn,
    AssetLiabilityIn,
    AssetLiabilityUpdateIn,
    BudgetIn,
    BudgetSetupIn,
    CategoryIn,
    TransactionIn,
)


logger = logging.getLogger(__name__)

SYSTEM_CATEGORIES = (
    "Groceries",
    "Dining Out",
    "Transportation",
    "Gas",
    "Shopping",
    "Entertainment",
    "Health & Fitness",
    "Health & Medical",
    "Personal Care",
    "Travel",
    "Utilities",
    "Rent",
    "Mortgage",
    "Financial Services",
    "Taxes",
    "Gifts",
    "Income",
    "Other",
)

DEFAULT_LINKED_ACCOUNT = "default"


def to_cents(amount: Decimal) -> int:
    return int(
        (Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    )


def seed_system_categories(
    session: Session, names: Iterable[str] = SYSTEM_CATEGORIES
) -> int:
    existing = {
        name.lower()
        for name in session.scalars(
            select(Category.name).where(Category.user_id.is_(None))
        )
    }
    created = 0
    for name in names:
        clean = name.strip()
        if not clean or clean.lower() in existing:
            continue
        session.add(Category(user_id=None, name=clean, is_system=True))
        existing.add(clean.lower())
        created += 1
    session.commit()
    if created:
        logger.info(f"system_categories_seeded: created={created}")
    return created


class DuplicateTransactionError(ValueError):
    def __init__(self, external_id: str) -> None:
        super().__init__(f"Transaction {external_id} already exists")
        self.external_id = external_id


def _is_external_id_conflict(exc: IntegrityError) -> bool:
    return "external_id" in str(exc.orig).lower()


@dataclass
class TransactionFilters:
    account_id: Optional[int] = None
    category_id: Optional[int] = None
    start: Optional[date] = None
    end: Optional[date] = None
    uncategorized_only: bool = False


class AccountService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id)
            .order_by(Account.name, Account.id)
        )
        return self.session.scalars(stmt).all()

    def get(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account or account.user_id != self.user_id:
            raise ValueError("Account not found")
        return account

    def create(self, data: AccountIn) -> Account:
        account = Account(
            user_id=self.user_id,
            external_account_id=data.external_account_id,
            name=data.name.strip(),
            type=data.type,
            subtype=data.subtype,
            balance_cents=data.balance_cents,
            institution=data.institution,
        )
        self.session.add(account)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ValueError("Account with this external id already exists") from exc
        self.session.refresh(account)
        return account

    def update_balance(self, account_id: int, balance_cents: int) -> Account:
        account = self.get(account_id)
        account.balance_cents = balance_cents
        self.session.commit()
        self.session.refresh(account)
        return account

    def delete(self, account_id: int) -> None:
        account = self.get(account_id)
        self.session.execute(
            delete(Transaction).where(Transaction.account_id == account.id)
        )
        self.session.delete(account)
        self.session.commit()

    def total_balance(self) -> int:
        stmt = select(func.coalesce(func.sum(Account.balance_cents), 0)).where(
            Account.user_id == self.user_id
        )
        return int(self.session.execute(stmt).scalar_one() or 0)

    def find_linked(self, external_account_id: str) -> Optional[Account]:
        return self.session.scalar(
            select(Account).where(
                Account.user_id == self.user_id,
                Account.external_account_id == external_account_id,
            )
        )

    def upsert_linked(
        self,
        external_account_id: str,
        *,
        name: Optional[str] = None,
        type: Optional[str] = None,
        subtype: Optional[str] = None,
        balance_cents: Optional[int] = None,
        institution: Optional[str] = None,
    ) -> Account:
        """
        Create or refresh an account reported by the provider. Only flushes;
        the caller owns the surrounding commit.
        """
        account = self.find_linked(external_account_id)
        if account is None:
            account = Account(
                user_id=self.user_id,
                external_account_id=external_account_id,
                name=(name or "Linked account").strip(),
                type=type or "depository",
                subtype=subtype,
                balance_cents=balance_cents or 0,
                institution=institution,
            )
            self.session.add(account)
            self.session.flush()
            logger.info(
                f"account_linked: user_id={self.user_id} account_id={account.id}"
            )
            return account

        if name:
            account.name = name.strip()
        if type:
            account.type = type
        if subtype is not None:
            account.subtype = subtype
        if institution is not None:
            account.institution = institution
        if balance_cents is not None:
            account.balance_cents = balance_cents
        self.session.flush()
        return account


@dataclass(frozen=True)
class NetWorth:
    net_worth_cents: int
    account_balance_cents: int
    manual_assets_cents: int
    manual_liabilities_cents: int


class NetWorthService:
    """Manual assets and liabilities, combined with account balances."""

    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self, kind: Optional[HoldingKind] = None) -> list[AssetLiability]:
        stmt = select(AssetLiability).where(AssetLiability.user_id == self.user_id)
        if kind is not None:
            stmt = stmt.where(AssetLiability.kind == kind)
        stmt = stmt.order_by(AssetLiability.name, AssetLiability.id)
        return self.session.scalars(stmt).all()

    def get(self, item_id: int) -> AssetLiability:
        item = self.session.get(AssetLiability, item_id)
        if not item or item.user_id != self.user_id:
            raise ValueError("Asset/Liability not found")
        return item

    def create(self, data: AssetLiabilityIn) -> AssetLiability:
        item = AssetLiability(
            user_id=self.user_id,
            name=data.name.strip(),
            kind=data.kind,
            value_cents=data.value_cents,
            is_manual=True,
        )
        self.session.add(item)
        self.session.commit()
        self.session.refresh(item)
        return item

    def update(self, item_id: int, data: AssetLiabilityUpdateIn) -> AssetLiability:
        item = self.get(item_id)
        for field, value in data.model_dump(exclude_none=True).items():
            setattr(item, field, value.strip() if field == "name" else value)
        self.session.commit()
        self.session.refresh(item)
        return item

    def delete(self, item_id: int) -> None:
        item = self.get(item_id)
        self.session.delete(item)
        self.session.commit()

    def total(self, kind: HoldingKind) -> int:
        stmt = select(func.coalesce(func.sum(AssetLiability.value_cents), 0)).where(
            AssetLiability.user_id == self.user_id, AssetLiability.kind == kind
        )
        return int(self.session.execute(stmt).scalar_one() or 0)

    def net_worth(self) -> NetWorth:
        accounts = AccountService(self.session, self.user_id).total_balance()
        assets = self.total(HoldingKind.asset)
        liabilities = self.total(HoldingKind.liability)
        return NetWorth(
            net_worth_cents=accounts + assets - liabilities,
            account_balance_cents=accounts,
            manual_assets_cents=assets,
            manual_liabilities_cents=liabilities,
        )


class CategoryService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def _visible(self):
        return or_(Category.user_id.is_(None), Category.user_id == self.user_id)

    def list_visible(self) -> list[Category]:
        stmt = (
            select(Category)
            .where(self._visible())
            .order_by(Category.is_system.desc(), Category.name)
        )
        return self.session.scalars(stmt).all()

    def get_visible(self, category_id: int) -> Optional[Category]:
        category = self.session.get(Category, category_id)
        if not category:
            return None
        if category.user_id is not None and category.user_id != self.user_id:
            return None
        return category

    def _name_taken(self, name: str, *, exclude_id: Optional[int] = None) -> bool:
        stmt = select(Category.id).where(
            self._visible(), func.lower(Category.name) == name.lower()
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        return self.session.scalar(stmt) is not None

    def _get_owned(self, category_id: int) -> Category:
        category = self.get_visible(category_id)
        if not category:
            raise ValueError("Category not found")
        if category.is_system or category.user_id is None:
            raise ValueError("System categories cannot be modified")
        return category

    def create(self, data: CategoryIn) -> Category:
        clean_name = data.name.strip()
        if not clean_name:
            raise ValueError("Category name cannot be empty")
        if self._name_taken(clean_name):
            raise ValueError("Category with this name already exists")
        category = Category(user_id=self.user_id, name=clean_name, is_system=False)
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def rename(self, category_id: int, name: str) -> Category:
        category = self._get_owned(category_id)
        clean_name = name.strip()
        if not clean_name:
            raise ValueError("Category name cannot be empty")
        if self._name_taken(clean_name, exclude_id=category.id):
            raise ValueError("Category with this name already exists")
        category.name = clean_name
        self.session.commit()
        self.session.refresh(category)
        return category

    def delete(self, category_id: int) -> None:
        category = self._get_owned(category_id)
        # Same effect as the ON DELETE rules, without relying on SQLite pragmas.
        self.session.execute(
            update(Transaction)
            .where(Transaction.category_id == category.id)
            .values(category_id=None)
        )
        self.session.execute(delete(Budget).where(Budget.category_id == category.id))
        self.session.delete(category)
        self.session.commit()


@dataclass(frozen=True)
class CategoryUpdateResult:
    success: bool
    error: Optional[str] = None


class TransactionService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def create_manual(self, data: TransactionIn) -> Transaction:
        AccountService(self.session, self.user_id).get(data.account_id)
        if data.category_id is not None:
            category = CategoryService(self.session, self.user_id).get_visible(
                data.category_id
            )
            if not category:
                raise ValueError("Category not found")
        txn = Transaction(
            user_id=self.user_id,
            account_id=data.account_id,
            external_id=None,
            date=data.date,
            amount_cents=data.amount_cents,
            name=data.name,
            merchant=data.merchant,
            category_id=data.category_id,
            is_manual=True,
        )
        self.session.add(txn)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def find(self, transaction_id: int) -> Optional[Transaction]:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        return self.session.scalar(stmt)

    def get(self, transaction_id: int) -> Transaction:
        txn = self.find(transaction_id)
        if not txn:
            raise ValueError("Transaction not found")
        return txn

    def list(
        self,
        filters: Optional[TransactionFilters] = None,
        *,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Transaction]:
        filters = filters or TransactionFilters()
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        )
        if filters.account_id is not None:
            stmt = stmt.where(Transaction.account_id == filters.account_id)
        if filters.uncategorized_only:
            stmt = stmt.where(Transaction.category_id.is_(None))
        elif filters.category_id is not None:
            stmt = stmt.where(Transaction.category_id == filters.category_id)
        if filters.start is not None:
            stmt = stmt.where(Transaction.date >= filters.start)
        if filters.end is not None:
            stmt = stmt.where(Transaction.date <= filters.end)
        if limit is not None:
            stmt = stmt.limit(limit).offset(offset)
        return self.session.scalars(stmt).all()

    def update_category(
        self, transaction_id: int, category_id: Optional[int]
    ) -> CategoryUpdateResult:
        """
        Reassign the authoritative category. Upstream category fields are left
        as they were. Missing rows come back as an unsuccessful result.
        """
        txn = self.find(transaction_id)
        if not txn:
            return CategoryUpdateResult(
                False, "Transaction not found or does not belong to user"
            )
        if category_id is not None:
            category = CategoryService(self.session, self.user_id).get_visible(
                category_id
            )
            if not category:
                return CategoryUpdateResult(
                    False,
                    f"Category ID {category_id} does not exist or is not accessible",
                )
        txn.category_id = category_id
        self.session.commit()
        logger.info(
            f"transaction_recategorized: user_id={self.user_id} "
            f"transaction_id={transaction_id} category_id={category_id}"
        )
        return CategoryUpdateResult(True)

    # Ledger primitives used by the sync engine. They flush but never commit.

    def find_by_external_id(self, external_id: str) -> Optional[Transaction]:
        return self.session.scalar(
            select(Transaction).where(
                Transaction.user_id == self.user_id,
                Transaction.external_id == external_id,
            )
        )

    def insert_synced(
        self,
        *,
        account_id: int,
        external_id: str,
        date: date,
        amount_cents: int,
        name: Optional[str] = None,
        merchant: Optional[str] = None,
        pending: bool = False,
        upstream_category_primary: Optional[str] = None,
        upstream_category_detailed: Optional[str] = None,
        upstream_category_confidence: Optional[str] = None,
        category_id: Optional[int] = None,
    ) -> Transaction:
        exists = self.session.scalar(
            select(Transaction.id).where(Transaction.external_id == external_id)
        )
        if exists is not None:
            raise DuplicateTransactionError(external_id)

        txn = Transaction(
            user_id=self.user_id,
            account_id=account_id,
            external_id=external_id,
            date=date,
            amount_cents=amount_cents,
            name=name,
            merchant=merchant,
            pending=pending,
            upstream_category_primary=upstream_category_primary,
            upstream_category_detailed=upstream_category_detailed,
            upstream_category_confidence=upstream_category_confidence,
            category_id=category_id,
            is_manual=False,
        )
        try:
            with self.session.begin_nested():
                self.session.add(txn)
                self.session.flush()
        except IntegrityError as exc:
            if not _is_external_id_conflict(exc):
                raise
            raise DuplicateTransactionError(external_id) from exc
        return txn

    def apply_modified(
        self,
        external_id: str,
        *,
        date: date,
        amount_cents: int,
        name: Optional[str] = None,
        merchant: Optional[str] = None,
        pending: bool = False,
    ) -> Optional[Transaction]:
        txn = self.find_by_external_id(external_id)
        if txn is None:
            return None
        # category_id and the upstream category fields stay as they are.
        txn.date = date
        txn.amount_cents = amount_cents
        txn.name = name
        txn.merchant = merchant
        txn.pending = pending
        self.session.flush()
        return txn

    def delete_by_external_id(self, external_id: str) -> bool:
        result = self.session.execute(
            delete(Transaction).where(
                Transaction.user_id == self.user_id,
                Transaction.external_id == external_id,
            )
        )
        return (result.rowcount or 0) > 0


class SyncStateService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def get(self) -> Optional[SyncState]:
        return self.session.scalar(
            select(SyncState).where(SyncState.user_id == self.user_id)
        )

    def _get_or_create(self) -> SyncState:
        state = self.get()
        if state is None:
            state = SyncState(user_id=self.user_id)
            self.session.add(state)
            self.session.flush()
        return state

    def get_cursor(self) -> Optional[str]:
        state = self.get()
        return state.cursor if state else None

    def set_cursor(self, cursor: Optional[str]) -> None:
        self._get_or_create().cursor = cursor
        self.session.flush()

    def remember_token(self, access_token: str) -> None:
        self._get_or_create().access_token = access_token
        self.session.flush()

    def forget_token(self) -> None:
        state = self.get()
        if state is not None:
            state.access_token = None
            self.session.flush()

    def record_outcome(self, error: Optional[str] = None) -> None:
        state = self._get_or_create()
        if error is None:
            state.last_synced_at = utcnow()
        state.last_error = error
        self.session.flush()


def users_with_tokens(session: Session) -> list[tuple[str, str]]:
    rows = session.execute(
        select(SyncState.user_id, SyncState.access_token)
        .where(SyncState.access_token.is_not(None))
        .order_by(SyncState.user_id)
    ).all()
    return [(row.user_id, row.access_token) for row in rows]


@dataclass(frozen=True)
class CategorySpending:
    category_id: int
    total_spent_cents: int
    transaction_count: int


@dataclass(frozen=True)
class SpendingAggregation:
    month: int
    year: int
    spending_by_category: list[CategorySpending] = field(default_factory=list)
    total_spending_cents: int = 0
    total_transaction_count: int = 0

    def spent_by_category(self) -> dict[int, int]:
        return {
            row.category_id: row.total_spent_cents for row in self.spending_by_category
        }


class SpendingService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def aggregate_monthly_spending(self, month: int, year: int) -> SpendingAggregation:
        """
        Net spend per authoritative category for one calendar month.

        Amounts are summed with their sign, so refunds offset expenses inside a
        category. Uncategorized transactions are left out of every figure.
        """
        validate_month(month)
        period = month_period(year, month)
        stmt = (
            select(
                Transaction.category_id,
                func.coalesce(func.sum(Transaction.amount_cents), 0).label("spent"),
                func.count(Transaction.id).label("txn_count"),
            )
            .where(
                Transaction.user_id == self.user_id,
                Transaction.category_id.is_not(None),
                Transaction.date.between(period.start, period.end),
            )
            .group_by(Transaction.category_id)
            .order_by(Transaction.category_id)
        )
        rows = [
            CategorySpending(
                category_id=row.category_id,
                total_spent_cents=int(row.spent or 0),
                transaction_count=int(row.txn_count or 0),
            )
            for row in self.session.execute(stmt)
        ]
        return SpendingAggregation(
            month=month,
            year=year,
            spending_by_category=rows,
            total_spending_cents=sum(r.total_spent_cents for r in rows),
            total_transaction_count=sum(r.transaction_count for r in rows),
        )


@dataclass(frozen=True)
class BudgetSetupResult:
    created: int
    updated: int
    month: int
    year: int

    @property
    def total(self) -> int:
        return self.created + self.updated


class BudgetService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def _check_category(self, category_id: int) -> Category:
        category = CategoryService(self.session, self.user_id).get_visible(
            category_id
        )
        if not category:
            raise ValueError(f"Category ID {category_id} does not exist")
        return category

    def _upsert_row(
        self, category_id: int, month: int, year: int, amount_cents: int
    ) -> tuple[Budget, bool]:
        existing = self.session.scalar(
            select(Budget).where(
                Budget.user_id == self.user_id,
                Budget.category_id == category_id,
                Budget.month == month,
                Budget.year == year,
            )
        )
        if existing:
            existing.amount_cents = amount_cents
            existing.updated_at = utcnow()
            return existing, False
        budget = Budget(
            user_id=self.user_id,
            category_id=category_id,
            month=month,
            year=year,
            amount_cents=amount_cents,
        )
        self.session.add(budget)
        return budget, True

    def upsert(self, data: BudgetIn) -> Budget:
        self._check_category(data.category_id)
        budget, _ = self._upsert_row(
            data.category_id, data.month, data.year, data.amount_cents
        )
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def setup(self, data: BudgetSetupIn) -> BudgetSetupResult:
        # Validate every row first so a bad entry leaves nothing half written.
        for item in data.budgets:
            self._check_category(item.category_id)

        created = 0
        updated = 0
        for item in data.budgets:
            _, was_created = self._upsert_row(
                item.category_id, data.month, data.year, item.planned_cents
            )
            self.session.flush()
            if was_created:
                created += 1
            else:
                updated += 1
        self.session.commit()
        logger.info(
            f"budgets_setup: user_id={self.user_id} month={data.year}-{data.month:02d} "
            f"created={created} updated={updated}"
        )
        return BudgetSetupResult(
            created=created, updated=updated, month=data.month, year=data.year
        )

    def list_for_month(self, month: int, year: int) -> list[Budget]:
        validate_month(month)
        stmt = (
            select(Budget)
            .join(Category, Budget.category_id == Category.id)
            .options(joinedload(Budget.category))
            .where(
                Budget.user_id == self.user_id,
                Budget.month == month,
                Budget.year == year,
            )
            .order_by(Category.name.asc(), Budget.id.asc())
        )
        return self.session.scalars(stmt).all()

    def delete(self, budget_id: int) -> None:
        budget = self.session.get(Budget, budget_id)
        if not budget or budget.user_id != self.user_id:
            raise ValueError("Budget not found")
        self.session.delete(budget)
        self.session.commit()

    def delete_month(self, month: int, year: int) -> int:
        validate_month(month)
        result = self.session.execute(
            delete(Budget).where(
                Budget.user_id == self.user_id,
                Budget.month == month,
                Budget.year == year,
            )
        )
        self.session.commit()
        return result.rowcount or 0

    def allocations_for_month(self, month: int, year: int) -> list[BudgetAllocation]:
        return [
            BudgetAllocation(
                category_id=budget.category_id,
                category_name=budget.category.name,
                budgeted_cents=budget.amount_cents,
            )
            for budget in self.list_for_month(month, year)
        ]

    def budget_page(self, month: int, year: int) -> BudgetPage:
        validate_month(month)
        allocations = self.allocations_for_month(month, year)
        spending = SpendingService(
            self.session, self.user_id
        ).aggregate_monthly_spending(month, year)
        items = build_category_budget_items(allocations, spending.spent_by_category())
        return compose_budget_page(month, year, items)
