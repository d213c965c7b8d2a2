"""
Incremental ledger sync against a paginated transaction delta feed.

Each page is applied and its cursor stored in one database transaction before
the next page is requested. A run that stops early therefore resumes from the
last applied page, and replaying a page is harmless: adds are deduplicated by
external id, modifications overwrite the same fields, and removals of missing
rows are no-ops.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from dataclasses import dataclass
from typing import Callable, Mapping, Optional

from sqlalchemy.orm import Session

from categorization import CategoryResolver, default_category_map
from config import get_settings
from database import SessionLocal, session_scope
from provider import (
    MalformedPageError,
    PaginationRestartRequired,
    ProviderError,
    ProviderNotReady,
    ProviderRateLimited,
    ProviderTransientError,
    TransactionsProvider,
    parse_sync_page,
)
from schemas import SyncPage, UpstreamTransaction
from services import (
    DEFAULT_LINKED_ACCOUNT,
    AccountService,
    DuplicateTransactionError,
    SyncStateService,
    TransactionService,
    to_cents,
)


logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    applied_count: int = 0
    skipped_duplicates: int = 0
    modified_count: int = 0
    removed_count: int = 0
    pages: int = 0
    restarts: int = 0
    cursor: Optional[str] = None


class SyncError(RuntimeError):
    """Sync stopped early. ``result`` holds what was applied before that."""

    def __init__(self, message: str, result: SyncResult) -> None:
        super().__init__(message)
        self.result = result


class SyncRetryableError(SyncError):
    pass


class SyncAbortedError(SyncError):
    pass


class SyncCancelled(SyncError):
    pass


class UserLocks:
    """Per-user locks, dropped once no run holds or waits on them."""

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def __len__(self) -> int:
        return len(self._locks)

    def for_user(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    def is_locked(self, user_id: str) -> bool:
        lock = self._locks.get(user_id)
        return bool(lock and lock.locked())


class SyncEngine:
    def __init__(
        self,
        provider: TransactionsProvider,
        session_factory: Callable[[], Session] = SessionLocal,
        *,
        category_map: Optional[Mapping[str, str]] = None,
        not_ready_backoff_secs: Optional[float] = None,
        max_not_ready_retries: Optional[int] = None,
        transient_backoff_secs: Optional[float] = None,
        max_transient_retries: Optional[int] = None,
    ) -> None:
        settings = get_settings()
        self.provider = provider
        self.session_factory = session_factory
        self.category_map = (
            default_category_map() if category_map is None else dict(category_map)
        )
        self.not_ready_backoff_secs = (
            settings.sync_not_ready_backoff_secs
            if not_ready_backoff_secs is None
            else not_ready_backoff_secs
        )
        self.max_not_ready_retries = (
            settings.sync_max_not_ready_retries
            if max_not_ready_retries is None
            else max_not_ready_retries
        )
        self.transient_backoff_secs = (
            settings.sync_transient_backoff_secs
            if transient_backoff_secs is None
            else transient_backoff_secs
        )
        self.max_transient_retries = (
            settings.sync_max_transient_retries
            if max_transient_retries is None
            else max_transient_retries
        )
        self.locks = UserLocks()

    async def sync(
        self,
        user_id: str,
        access_token: str,
        *,
        remember_token: bool = False,
        cancel: Optional[asyncio.Event] = None,
    ) -> SyncResult:
        """
        Pull every pending page for ``user_id`` and apply it to the ledger.

        Runs for the same user are serialized; a second caller waits for the
        first to finish and then continues from the cursor it left behind.
        Setting ``cancel`` (or cancelling the task) stops the run between
        pages or during a backoff wait.
        """
        if not user_id:
            raise ValueError("user_id is required")
        if not access_token:
            raise ValueError("access_token is required")

        async with self.locks.for_user(user_id):
            result = SyncResult()
            try:
                await self._run(user_id, access_token, remember_token, cancel, result)
            except SyncError as exc:
                self._fail(user_id, exc)
                raise
            except asyncio.CancelledError:
                logger.warning(f"sync_task_cancelled: user_id={user_id}")
                raise
            except Exception as exc:
                logger.exception(f"sync_unexpected_error: user_id={user_id}")
                error = SyncAbortedError(f"Unexpected sync failure: {exc}", result)
                self._fail(user_id, error)
                raise error from exc
            self._record_outcome(user_id, None)
            logger.info(
                f"sync_completed: user_id={user_id} pages={result.pages} "
                f"applied={result.applied_count} "
                f"duplicates={result.skipped_duplicates} "
                f"modified={result.modified_count} removed={result.removed_count}"
            )
            return result

    async def _run(
        self,
        user_id: str,
        access_token: str,
        remember_token: bool,
        cancel: Optional[asyncio.Event],
        result: SyncResult,
    ) -> SyncResult:
        with session_scope(self.session_factory) as session:
            state = SyncStateService(session, user_id)
            start_cursor = state.get_cursor()
            if remember_token:
                state.remember_token(access_token)

        result.cursor = start_cursor
        cursor = start_cursor
        not_ready_attempts = 0
        transient_attempts = 0
        logger.info(
            f"sync_started: user_id={user_id} resume={'yes' if cursor else 'no'}"
        )

        while True:
            if cancel is not None and cancel.is_set():
                raise SyncCancelled("Sync cancelled", result)

            try:
                page = await self._fetch(access_token, cursor)
            except ProviderNotReady:
                page = None
            except PaginationRestartRequired as exc:
                result.restarts += 1
                if result.restarts > self.max_transient_retries:
                    raise SyncRetryableError(
                        "Upstream data kept changing during pagination", result
                    ) from exc
                logger.info(
                    f"sync_restart: user_id={user_id} attempt={result.restarts}"
                )
                cursor = start_cursor
                continue
            except ProviderTransientError as exc:
                transient_attempts += 1
                if transient_attempts > self.max_transient_retries:
                    raise SyncRetryableError(
                        f"Upstream unavailable: {exc}", result
                    ) from exc
                delay = self.transient_backoff_secs
                if isinstance(exc, ProviderRateLimited) and exc.retry_after is not None:
                    delay = exc.retry_after
                logger.info(
                    f"sync_backoff: user_id={user_id} reason={type(exc).__name__} "
                    f"attempt={transient_attempts} delay={delay}"
                )
                await self._wait(delay, cancel, result)
                continue
            except MalformedPageError as exc:
                raise SyncAbortedError(
                    f"Malformed upstream page: {exc}", result
                ) from exc
            except ProviderError as exc:
                raise SyncAbortedError(
                    f"Upstream rejected sync: {exc}", result
                ) from exc

            # An empty cursor means the provider has not finished preparing
            # the data; the page is discarded and the same request repeated.
            if page is None or not page.next_cursor:
                not_ready_attempts += 1
                if not_ready_attempts > self.max_not_ready_retries:
                    raise SyncRetryableError("Upstream data not ready", result)
                logger.info(
                    f"sync_not_ready: user_id={user_id} attempt={not_ready_attempts}"
                )
                await self._wait(self.not_ready_backoff_secs, cancel, result)
                continue

            not_ready_attempts = 0
            transient_attempts = 0
            self._apply_page(user_id, page, result)
            cursor = page.next_cursor
            result.cursor = cursor
            result.pages += 1

            if not page.has_more:
                return result

    async def _fetch(self, access_token: str, cursor: Optional[str]) -> SyncPage:
        payload = await self.provider.fetch_page(access_token, cursor)
        return parse_sync_page(payload)

    async def _wait(
        self, delay: float, cancel: Optional[asyncio.Event], result: SyncResult
    ) -> None:
        if cancel is None:
            await asyncio.sleep(delay)
            return
        try:
            await asyncio.wait_for(cancel.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise SyncCancelled("Sync cancelled during backoff", result)

    def _apply_page(self, user_id: str, page: SyncPage, result: SyncResult) -> None:
        # Counters only move once the page has committed.
        applied = duplicates = modified = removed = 0
        with session_scope(self.session_factory) as session:
            accounts = AccountService(session, user_id)
            txns = TransactionService(session, user_id)
            resolver = CategoryResolver(session, user_id, self.category_map)
            account_ids: dict[str, int] = {}

            for upstream in page.accounts:
                account = accounts.upsert_linked(
                    upstream.account_id,
                    name=upstream.name,
                    type=upstream.type,
                    subtype=upstream.subtype,
                    balance_cents=(
                        to_cents(upstream.current_balance)
                        if upstream.current_balance is not None
                        else None
                    ),
                    institution=upstream.institution,
                )
                account_ids[upstream.account_id] = account.id

            def account_id_for(record: UpstreamTransaction) -> int:
                key = record.account_id or DEFAULT_LINKED_ACCOUNT
                if key not in account_ids:
                    account = accounts.find_linked(key) or accounts.upsert_linked(key)
                    account_ids[key] = account.id
                return account_ids[key]

            def insert(record: UpstreamTransaction) -> bool:
                suggestion = record.category_suggestion
                category_id = record.category_id
                if category_id is None and suggestion is not None:
                    category_id = resolver.resolve(
                        suggestion.primary, suggestion.detailed
                    )
                try:
                    txns.insert_synced(
                        account_id=account_id_for(record),
                        external_id=record.external_id,
                        date=record.date,
                        amount_cents=to_cents(record.amount),
                        name=record.name,
                        merchant=record.merchant_name,
                        pending=record.pending,
                        upstream_category_primary=(
                            suggestion.primary if suggestion else None
                        ),
                        upstream_category_detailed=(
                            suggestion.detailed if suggestion else None
                        ),
                        upstream_category_confidence=(
                            suggestion.confidence if suggestion else None
                        ),
                        category_id=category_id,
                    )
                except DuplicateTransactionError:
                    return False
                return True

            for record in page.added:
                if insert(record):
                    applied += 1
                else:
                    duplicates += 1

            for record in page.modified:
                updated = txns.apply_modified(
                    record.external_id,
                    date=record.date,
                    amount_cents=to_cents(record.amount),
                    name=record.name,
                    merchant=record.merchant_name,
                    pending=record.pending,
                )
                if updated is not None:
                    modified += 1
                elif insert(record):
                    applied += 1

            for record in page.removed:
                if txns.delete_by_external_id(record.external_id):
                    removed += 1

            SyncStateService(session, user_id).set_cursor(page.next_cursor)

        result.applied_count += applied
        result.skipped_duplicates += duplicates
        result.modified_count += modified
        result.removed_count += removed
        logger.info(
            f"sync_page_applied: user_id={user_id} added={applied} "
            f"duplicates={duplicates} modified={modified} removed={removed} "
            f"has_more={page.has_more}"
        )

    def _fail(self, user_id: str, exc: SyncError) -> None:
        self._record_outcome(user_id, str(exc))
        logger.warning(
            f"sync_failed: user_id={user_id} kind={type(exc).__name__} "
            f"applied={exc.result.applied_count} pages={exc.result.pages} "
            f"error={exc}"
        )

    def _record_outcome(self, user_id: str, error: Optional[str]) -> None:
        with session_scope(self.session_factory) as session:
            SyncStateService(session, user_id).record_outcome(error)
