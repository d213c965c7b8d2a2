import datetime as dt
from decimal import Decimal
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from models import HoldingKind


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    type: str = Field(default="depository", min_length=1, max_length=40)
    subtype: Optional[str] = Field(default=None, max_length=40)
    balance_cents: int = 0
    institution: Optional[str] = Field(default=None, max_length=120)
    external_account_id: Optional[str] = Field(default=None, max_length=128)


class AccountBalanceIn(BaseModel):
    balance_cents: int


class AssetLiabilityIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    kind: HoldingKind = Field(..., validation_alias=AliasChoices("kind", "type"))
    value_cents: int = Field(..., ge=0)


class AssetLiabilityUpdateIn(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    kind: Optional[HoldingKind] = Field(
        default=None, validation_alias=AliasChoices("kind", "type")
    )
    value_cents: Optional[int] = Field(default=None, ge=0)


class TransactionIn(BaseModel):
    account_id: int
    date: dt.date
    amount_cents: int
    name: Optional[str] = Field(default=None, max_length=200)
    merchant: Optional[str] = Field(default=None, max_length=200)
    category_id: Optional[int] = Field(default=None, gt=0)


class CategoryUpdateIn(BaseModel):
    category_id: Optional[int] = Field(..., gt=0)


class BudgetIn(BaseModel):
    category_id: int = Field(..., gt=0)
    month: int = Field(..., ge=1, le=12)
    year: int = Field(..., ge=1970, le=2100)
    amount_cents: int = Field(..., ge=0)


class BudgetSetupItem(BaseModel):
    category_id: int = Field(..., gt=0)
    category_name: Optional[str] = None
    planned_cents: int = Field(..., ge=0)


class BudgetSetupIn(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    month: int = Field(..., ge=1, le=12)
    year: int = Field(..., ge=1970, le=2100)
    budgets: list[BudgetSetupItem] = Field(..., min_length=1)


class SyncRequest(BaseModel):
    access_token: str = Field(..., min_length=1)
    remember_token: bool = False


# Upstream delta feed. Field aliases accept both the local contract names and
# the provider's wire names.


class UpstreamCategory(BaseModel):
    model_config = ConfigDict(extra="ignore")

    primary: Optional[str] = None
    detailed: Optional[str] = None
    confidence: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("confidence", "confidence_level")
    )


class UpstreamTransaction(BaseModel):
    model_config = ConfigDict(extra="ignore")

    external_id: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("external_id", "transaction_id"),
    )
    date: dt.date
    amount: Decimal
    name: Optional[str] = None
    merchant_name: Optional[str] = None
    account_id: Optional[str] = None
    pending: bool = False
    category_suggestion: Optional[UpstreamCategory] = None
    category_id: Optional[int] = None


class UpstreamRemoved(BaseModel):
    model_config = ConfigDict(extra="ignore")

    external_id: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("external_id", "id", "transaction_id"),
    )


class UpstreamAccount(BaseModel):
    model_config = ConfigDict(extra="ignore")

    account_id: str = Field(..., min_length=1)
    name: str = "Linked account"
    type: str = "depository"
    subtype: Optional[str] = None
    current_balance: Optional[Decimal] = None
    institution: Optional[str] = None


class SyncPage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    added: list[UpstreamTransaction] = Field(default_factory=list)
    modified: list[UpstreamTransaction] = Field(default_factory=list)
    removed: list[UpstreamRemoved] = Field(default_factory=list)
    accounts: list[UpstreamAccount] = Field(default_factory=list)
    next_cursor: str
    has_more: bool
