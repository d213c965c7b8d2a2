import logging
from dataclasses import asdict
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from sqlalchemy.orm import Session

from categorization import category_status
from database import SessionLocal, init_db, session_scope
from models import Account, AssetLiability, Category, HoldingKind, Transaction
from periods import validate_month, validate_year
from provider import PlaidTransactionsProvider
from scheduler import SchedulerManager
from schemas import (
    AccountBalanceIn,
    AccountIn,
    AssetLiabilityIn,
    AssetLiabilityUpdateIn,
    BudgetIn,
    BudgetSetupIn,
    CategoryIn,
    CategoryUpdateIn,
    SyncRequest,
    TransactionIn,
)
from services import (
    AccountService,
    BudgetService,
    CategoryService,
    NetWorthService,
    SpendingService,
    SyncStateService,
    TransactionFilters,
    TransactionService,
    seed_system_categories,
)
from sync import SyncAbortedError, SyncEngine, SyncRetryableError


logger = logging.getLogger(__name__)

app = FastAPI(title="Budget Sync")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


_sync_engine: Optional[SyncEngine] = None


def get_sync_engine() -> SyncEngine:
    global _sync_engine
    if _sync_engine is None:
        _sync_engine = SyncEngine(PlaidTransactionsProvider())
    return _sync_engine


scheduler_manager = SchedulerManager(get_sync_engine)


@app.on_event("startup")
async def startup_event():
    init_db()
    with session_scope() as session:
        seed_system_categories(session)
    scheduler_manager.start()


@app.on_event("shutdown")
async def shutdown_event():
    scheduler_manager.stop()
    if _sync_engine is not None and hasattr(_sync_engine.provider, "aclose"):
        await _sync_engine.provider.aclose()


def account_to_dict(account: Account) -> dict:
    return {
        "id": account.id,
        "external_account_id": account.external_account_id,
        "name": account.name,
        "type": account.type,
        "subtype": account.subtype,
        "balance_cents": account.balance_cents,
        "institution": account.institution,
    }


def holding_to_dict(item: AssetLiability) -> dict:
    return {
        "id": item.id,
        "name": item.name,
        "kind": item.kind.value,
        "value_cents": item.value_cents,
        "is_manual": item.is_manual,
    }


def category_to_dict(category: Category) -> dict:
    return {
        "id": category.id,
        "name": category.name,
        "is_system": category.is_system,
        "user_id": category.user_id,
    }


def transaction_to_dict(txn: Transaction) -> dict:
    category_name = txn.category.name if txn.category else None
    return {
        "id": txn.id,
        "account_id": txn.account_id,
        "external_id": txn.external_id,
        "date": txn.date.isoformat(),
        "amount_cents": txn.amount_cents,
        "name": txn.name,
        "merchant": txn.merchant,
        "pending": txn.pending,
        "category_id": txn.category_id,
        "category": category_name,
        "upstream_category": {
            "primary": txn.upstream_category_primary,
            "detailed": txn.upstream_category_detailed,
            "confidence": txn.upstream_category_confidence,
        },
        "status": category_status(category_name, txn.upstream_category_primary),
        "is_manual": txn.is_manual,
    }


@app.post("/api/users/{user_id}/sync")
async def api_sync(
    user_id: str,
    payload: SyncRequest,
    engine: SyncEngine = Depends(get_sync_engine),
):
    try:
        result = await engine.sync(
            user_id, payload.access_token, remember_token=payload.remember_token
        )
    except SyncRetryableError as exc:
        raise HTTPException(
            status_code=503, detail={"error": str(exc), **asdict(exc.result)}
        ) from exc
    except SyncAbortedError as exc:
        raise HTTPException(
            status_code=502, detail={"error": str(exc), **asdict(exc.result)}
        ) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"success": True, **asdict(result)}


@app.get("/api/users/{user_id}/sync")
def api_sync_state(user_id: str, db: Session = Depends(get_db)):
    state = SyncStateService(db, user_id).get()
    return {
        "user_id": user_id,
        "has_cursor": bool(state and state.cursor),
        "token_remembered": bool(state and state.access_token),
        "last_synced_at": (
            state.last_synced_at.isoformat() if state and state.last_synced_at else None
        ),
        "last_error": state.last_error if state else None,
    }


@app.delete("/api/users/{user_id}/sync/token")
def api_forget_token(user_id: str, db: Session = Depends(get_db)):
    SyncStateService(db, user_id).forget_token()
    db.commit()
    return {"success": True}


@app.get("/api/users/{user_id}/spending")
def api_spending(
    user_id: str,
    month: int = Query(...),
    year: int = Query(...),
    db: Session = Depends(get_db),
):
    try:
        aggregation = SpendingService(db, user_id).aggregate_monthly_spending(
            month, year
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return asdict(aggregation)


@app.get("/api/budgets")
def api_budgets(
    user_id: str = Query(..., min_length=1),
    month: int = Query(...),
    year: int = Query(...),
    db: Session = Depends(get_db),
):
    try:
        validate_month(month)
        validate_year(year)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    page = BudgetService(db, user_id).budget_page(month, year)
    return asdict(page)


@app.post("/api/budgets/setup")
def api_budgets_setup(payload: BudgetSetupIn, db: Session = Depends(get_db)):
    try:
        result = BudgetService(db, payload.user_id).setup(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {
        "success": True,
        "created": result.created,
        "updated": result.updated,
        "count": result.total,
        "month": result.month,
        "year": result.year,
    }


@app.post("/api/users/{user_id}/budgets")
def api_upsert_budget(user_id: str, payload: BudgetIn, db: Session = Depends(get_db)):
    try:
        budget = BudgetService(db, user_id).upsert(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {
        "id": budget.id,
        "category_id": budget.category_id,
        "month": budget.month,
        "year": budget.year,
        "amount_cents": budget.amount_cents,
    }


@app.delete("/api/users/{user_id}/budgets")
def api_delete_month_budgets(
    user_id: str,
    month: int = Query(...),
    year: int = Query(...),
    db: Session = Depends(get_db),
):
    try:
        validate_year(year)
        deleted = BudgetService(db, user_id).delete_month(month, year)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"success": True, "deleted": deleted, "month": month, "year": year}


@app.delete("/api/users/{user_id}/budgets/{budget_id}")
def api_delete_budget(user_id: str, budget_id: int, db: Session = Depends(get_db)):
    try:
        BudgetService(db, user_id).delete(budget_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"success": True}


@app.patch("/api/users/{user_id}/transactions/{transaction_id}/category")
def api_update_transaction_category(
    user_id: str,
    transaction_id: int,
    payload: CategoryUpdateIn,
    db: Session = Depends(get_db),
):
    result = TransactionService(db, user_id).update_category(
        transaction_id, payload.category_id
    )
    if not result.success:
        raise HTTPException(status_code=404, detail=result.error)
    return {"success": True}


@app.get("/api/users/{user_id}/transactions")
def api_transactions(
    user_id: str,
    account_id: Optional[int] = None,
    category_id: Optional[int] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
    uncategorized: bool = False,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    filters = TransactionFilters(
        account_id=account_id,
        category_id=category_id,
        start=start,
        end=end,
        uncategorized_only=uncategorized,
    )
    offset = (page - 1) * limit
    items = TransactionService(db, user_id).list(
        filters, limit=limit + 1, offset=offset
    )
    has_more = len(items) > limit
    items = items[:limit]
    return {
        "items": [transaction_to_dict(txn) for txn in items],
        "page": page,
        "limit": limit,
        "has_more": has_more,
    }


@app.post("/api/users/{user_id}/transactions")
def api_create_transaction(
    user_id: str, payload: TransactionIn, db: Session = Depends(get_db)
):
    service = TransactionService(db, user_id)
    try:
        txn = service.create_manual(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return transaction_to_dict(service.get(txn.id))


@app.get("/api/users/{user_id}/transactions/{transaction_id}")
def api_transaction(user_id: str, transaction_id: int, db: Session = Depends(get_db)):
    try:
        txn = TransactionService(db, user_id).get(transaction_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return transaction_to_dict(txn)


@app.get("/api/users/{user_id}/categories")
def api_categories(user_id: str, db: Session = Depends(get_db)):
    categories = CategoryService(db, user_id).list_visible()
    return [category_to_dict(category) for category in categories]


@app.post("/api/users/{user_id}/categories")
def api_create_category(
    user_id: str, payload: CategoryIn, db: Session = Depends(get_db)
):
    try:
        category = CategoryService(db, user_id).create(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return category_to_dict(category)


@app.patch("/api/users/{user_id}/categories/{category_id}")
def api_rename_category(
    user_id: str, category_id: int, payload: CategoryIn, db: Session = Depends(get_db)
):
    try:
        category = CategoryService(db, user_id).rename(category_id, payload.name)
    except ValueError as exc:
        status = 404 if "not found" in str(exc) else 400
        raise HTTPException(status_code=status, detail=str(exc)) from exc
    return category_to_dict(category)


@app.delete("/api/users/{user_id}/categories/{category_id}")
def api_delete_category(user_id: str, category_id: int, db: Session = Depends(get_db)):
    try:
        CategoryService(db, user_id).delete(category_id)
    except ValueError as exc:
        status = 404 if "not found" in str(exc) else 400
        raise HTTPException(status_code=status, detail=str(exc)) from exc
    return {"success": True}


@app.get("/api/users/{user_id}/accounts")
def api_accounts(user_id: str, db: Session = Depends(get_db)):
    service = AccountService(db, user_id)
    return {
        "items": [account_to_dict(account) for account in service.list_all()],
        "total_balance_cents": service.total_balance(),
    }


@app.post("/api/users/{user_id}/accounts")
def api_create_account(user_id: str, payload: AccountIn, db: Session = Depends(get_db)):
    try:
        account = AccountService(db, user_id).create(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return account_to_dict(account)


@app.patch("/api/users/{user_id}/accounts/{account_id}/balance")
def api_update_account_balance(
    user_id: str,
    account_id: int,
    payload: AccountBalanceIn,
    db: Session = Depends(get_db),
):
    try:
        account = AccountService(db, user_id).update_balance(
            account_id, payload.balance_cents
        )
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return account_to_dict(account)


@app.delete("/api/users/{user_id}/accounts/{account_id}")
def api_delete_account(user_id: str, account_id: int, db: Session = Depends(get_db)):
    try:
        AccountService(db, user_id).delete(account_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"success": True}


@app.get("/api/users/{user_id}/net-worth")
def api_net_worth(user_id: str, db: Session = Depends(get_db)):
    worth = NetWorthService(db, user_id).net_worth()
    return {
        "net_worth_cents": worth.net_worth_cents,
        "breakdown": {
            "account_balance_cents": worth.account_balance_cents,
            "manual_assets_cents": worth.manual_assets_cents,
            "manual_liabilities_cents": worth.manual_liabilities_cents,
        },
    }


@app.get("/api/users/{user_id}/assets-liabilities")
def api_assets_liabilities(
    user_id: str, kind: Optional[HoldingKind] = None, db: Session = Depends(get_db)
):
    items = NetWorthService(db, user_id).list_all(kind)
    return {"items": [holding_to_dict(item) for item in items]}


@app.post("/api/users/{user_id}/assets-liabilities", status_code=201)
def api_create_asset_liability(
    user_id: str, payload: AssetLiabilityIn, db: Session = Depends(get_db)
):
    item = NetWorthService(db, user_id).create(payload)
    return holding_to_dict(item)


@app.patch("/api/users/{user_id}/assets-liabilities/{item_id}")
def api_update_asset_liability(
    user_id: str,
    item_id: int,
    payload: AssetLiabilityUpdateIn,
    db: Session = Depends(get_db),
):
    try:
        item = NetWorthService(db, user_id).update(item_id, payload)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return holding_to_dict(item)


@app.delete("/api/users/{user_id}/assets-liabilities/{item_id}")
def api_delete_asset_liability(
    user_id: str, item_id: int, db: Session = Depends(get_db)
):
    try:
        NetWorthService(db, user_id).delete(item_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"success": True}


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
