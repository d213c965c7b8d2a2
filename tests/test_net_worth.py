import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from models import HoldingKind
from schemas import AccountIn, AssetLiabilityIn, AssetLiabilityUpdateIn
from services import AccountService, NetWorthService


def test_net_worth_combines_accounts_assets_and_liabilities() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        accounts = AccountService(session, "u1")
        accounts.create(AccountIn(name="Checking", balance_cents=250_000))
        accounts.create(AccountIn(name="Card", balance_cents=-40_000))
        holdings = NetWorthService(session, "u1")
        holdings.create(AssetLiabilityIn(name="Car", kind="asset", value_cents=900_000))
        holdings.create(
            AssetLiabilityIn(name="Car loan", type="liability", value_cents=600_000)
        )
        NetWorthService(session, "u2").create(
            AssetLiabilityIn(name="House", kind="asset", value_cents=10_000_000)
        )

        worth = holdings.net_worth()

        assert worth.account_balance_cents == 210_000
        assert worth.manual_assets_cents == 900_000
        assert worth.manual_liabilities_cents == 600_000
        assert worth.net_worth_cents == 510_000


def test_empty_user_has_zero_net_worth() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        worth = NetWorthService(session, "u1").net_worth()
        assert worth.net_worth_cents == 0
        assert worth.manual_assets_cents == 0


def test_update_changes_only_given_fields() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        holdings = NetWorthService(session, "u1")
        item = holdings.create(
            AssetLiabilityIn(name="Boat", kind="asset", value_cents=5_000)
        )

        updated = holdings.update(item.id, AssetLiabilityUpdateIn(value_cents=4_000))
        assert updated.name == "Boat"
        assert updated.kind == HoldingKind.asset
        assert updated.value_cents == 4_000

        holdings.update(item.id, AssetLiabilityUpdateIn(kind="liability"))
        assert [i.name for i in holdings.list_all(HoldingKind.liability)] == ["Boat"]
        assert holdings.list_all(HoldingKind.asset) == []
        assert holdings.net_worth().net_worth_cents == -4_000


def test_other_users_items_are_not_found() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        item = NetWorthService(session, "u1").create(
            AssetLiabilityIn(name="Savings bond", kind="asset", value_cents=100)
        )
        other = NetWorthService(session, "u2")

        with pytest.raises(ValueError, match="not found"):
            other.update(item.id, AssetLiabilityUpdateIn(value_cents=1))
        with pytest.raises(ValueError, match="not found"):
            other.delete(item.id)

        NetWorthService(session, "u1").delete(item.id)
        assert NetWorthService(session, "u1").list_all() == []


def test_negative_values_are_rejected() -> None:
    with pytest.raises(ValueError):
        AssetLiabilityIn(name="Car", kind="asset", value_cents=-1)
    with pytest.raises(ValueError):
        AssetLiabilityIn(name="Car", kind="stock", value_cents=1)
