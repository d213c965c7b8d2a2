from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional, Protocol, Union

import httpx
from pydantic import ValidationError

from config import Settings, get_settings
from schemas import SyncPage


logger = logging.getLogger(__name__)

SYNC_PATH = "/transactions/sync"

# Provider error codes with a meaning of their own.
NOT_READY_CODES = {"PRODUCT_NOT_READY"}
RESTART_CODES = {"TRANSACTIONS_SYNC_MUTATION_DURING_PAGINATION"}
RATE_LIMIT_TYPES = {"RATE_LIMIT_EXCEEDED"}


class ProviderError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        error_code: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.status_code = status_code


class ProviderTransientError(ProviderError):
    pass


class ProviderRateLimited(ProviderTransientError):
    def __init__(
        self, message: str, *, retry_after: Optional[float] = None, **kwargs
    ) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ProviderNotReady(ProviderError):
    pass


class PaginationRestartRequired(ProviderError):
    pass


class MalformedPageError(ProviderError):
    pass


PagePayload = Union[SyncPage, Mapping[str, Any]]


class TransactionsProvider(Protocol):
    async def fetch_page(self, access_token: str, cursor: Optional[str]) -> PagePayload:
        ...


def parse_sync_page(payload: PagePayload) -> SyncPage:
    if isinstance(payload, SyncPage):
        return payload
    if not isinstance(payload, Mapping):
        raise MalformedPageError(
            f"Expected a JSON object page, got {type(payload).__name__}"
        )
    try:
        return SyncPage.model_validate(dict(payload))
    except ValidationError as exc:
        raise MalformedPageError(
            f"Upstream page failed validation: {exc.error_count()} error(s)"
        ) from exc


def _negate(amount: Any) -> Any:
    try:
        return -Decimal(str(amount))
    except (InvalidOperation, ValueError):
        # Left as-is so page validation reports it.
        return amount


def _contract_transaction(raw: Any) -> Any:
    if not isinstance(raw, Mapping):
        return raw
    record = dict(raw)
    # Legacy provider taxonomy id, unrelated to local category ids.
    record.pop("category_id", None)
    # The provider reports outflows as positive amounts.
    if record.get("amount") is not None:
        record["amount"] = _negate(record["amount"])
    pfc = record.get("personal_finance_category")
    if isinstance(pfc, Mapping) and "category_suggestion" not in record:
        record["category_suggestion"] = dict(pfc)
    return record


def _contract_account(raw: Any) -> Any:
    if not isinstance(raw, Mapping):
        return raw
    record = dict(raw)
    balances = record.get("balances")
    if isinstance(balances, Mapping) and "current_balance" not in record:
        record["current_balance"] = balances.get("current")
    return record


def plaid_page_to_contract(payload: Any) -> Any:
    """
    Translate a ``/transactions/sync`` response body into the local page
    contract: signed amounts (negative = expense), ``category_suggestion`` from
    ``personal_finance_category`` and ``current_balance`` from ``balances``.
    """
    if not isinstance(payload, Mapping):
        return payload
    page = dict(payload)
    for key in ("added", "modified"):
        if isinstance(page.get(key), list):
            page[key] = [_contract_transaction(item) for item in page[key]]
    if isinstance(page.get("accounts"), list):
        page["accounts"] = [_contract_account(item) for item in page["accounts"]]
    return page


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("retry-after")
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


def error_from_response(response: httpx.Response) -> ProviderError:
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, Mapping):
        body = {}
    error_type = body.get("error_type")
    error_code = body.get("error_code")
    message = (
        body.get("error_message") or f"Provider returned HTTP {response.status_code}"
    )
    status = response.status_code

    if error_code in RESTART_CODES:
        return PaginationRestartRequired(
            message, error_code=error_code, status_code=status
        )
    if error_code in NOT_READY_CODES:
        return ProviderNotReady(message, error_code=error_code, status_code=status)
    if status == 429 or error_type in RATE_LIMIT_TYPES:
        return ProviderRateLimited(
            message,
            retry_after=_retry_after(response),
            error_code=error_code,
            status_code=status,
        )
    if status >= 500:
        return ProviderTransientError(
            message, error_code=error_code, status_code=status
        )
    return ProviderError(message, error_code=error_code, status_code=status)


class PlaidTransactionsProvider:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.settings.provider_base_url,
                timeout=self.settings.provider_timeout_secs,
                headers={"Accept": "application/json"},
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def fetch_page(self, access_token: str, cursor: Optional[str]) -> SyncPage:
        body: dict[str, Any] = {
            "client_id": self.settings.provider_client_id,
            "secret": self.settings.provider_secret,
            "access_token": access_token,
            "count": self.settings.sync_page_size,
        }
        if cursor:
            body["cursor"] = cursor

        try:
            response = await self._get_client().post(SYNC_PATH, json=body)
        except httpx.TimeoutException as exc:
            raise ProviderTransientError("Provider request timed out") from exc
        except httpx.TransportError as exc:
            raise ProviderTransientError(f"Provider request failed: {exc}") from exc

        if response.status_code >= 400:
            error = error_from_response(response)
            logger.warning(
                f"provider_error: status={response.status_code} "
                f"code={error.error_code} kind={type(error).__name__}"
            )
            raise error

        try:
            payload = response.json()
        except ValueError as exc:
            raise MalformedPageError("Provider returned a non-JSON body") from exc
        return parse_sync_page(plaid_page_to_contract(payload))
