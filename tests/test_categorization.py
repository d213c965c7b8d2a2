from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from categorization import (
    NEEDS_CATEGORIZATION,
    CategoryResolver,
    category_status,
    load_category_map,
)
from config import DEFAULT_CATEGORY_MAP
from database import Base
from models import Category
from schemas import CategoryIn
from services import CategoryService, seed_system_categories


MAPPING = {
    "FOOD_AND_DRINK": "Dining Out",
    "FOOD_AND_DRINK_GROCERIES": "Groceries",
    "TRAVEL": "Vacation",
}


def test_category_status_prefers_authoritative_name() -> None:
    assert category_status("Groceries", "FOOD_AND_DRINK") == "Groceries"
    assert category_status(None, "FOOD_AND_DRINK") == "Suggested: FOOD_AND_DRINK"
    assert category_status(None, None) == NEEDS_CATEGORIZATION


def test_resolver_prefers_detailed_label() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        seed_system_categories(session, ["Dining Out", "Groceries"])
        resolver = CategoryResolver(session, "u1", MAPPING)

        groceries = session.query(Category).filter_by(name="Groceries").one()
        dining = session.query(Category).filter_by(name="Dining Out").one()

        assert (
            resolver.resolve("FOOD_AND_DRINK", "FOOD_AND_DRINK_GROCERIES")
            == groceries.id
        )
        assert resolver.resolve("FOOD_AND_DRINK", "FOOD_AND_DRINK_UNKNOWN") == dining.id
        assert resolver.resolve("food_and_drink") == dining.id


def test_resolver_returns_none_when_unmapped_or_missing() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        seed_system_categories(session, ["Dining Out"])
        resolver = CategoryResolver(session, "u1", MAPPING)

        assert resolver.resolve("LOAN_PAYMENTS") is None
        assert resolver.resolve(None) is None
        # Mapped, but no category with that name exists.
        assert resolver.resolve("TRAVEL") is None


def test_resolver_only_sees_categories_visible_to_user() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        vacation = CategoryService(session, "u2").create(CategoryIn(name="Vacation"))

        assert CategoryResolver(session, "u1", MAPPING).resolve("TRAVEL") is None
        assert CategoryResolver(session, "u2", MAPPING).resolve("TRAVEL") == vacation.id


def test_load_category_map_normalizes_labels(tmp_path: Path) -> None:
    path = tmp_path / "map.json"
    path.write_text('{" food_and_drink ": "Dining Out", "EMPTY": ""}', encoding="utf-8")

    assert load_category_map(path) == {"FOOD_AND_DRINK": "Dining Out"}


def test_load_category_map_rejects_bad_files(tmp_path: Path) -> None:
    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")
    with pytest.raises(RuntimeError, match="Failed to load category map"):
        load_category_map(broken)

    listing = tmp_path / "list.json"
    listing.write_text('["FOOD_AND_DRINK"]', encoding="utf-8")
    with pytest.raises(RuntimeError, match="must be a JSON object"):
        load_category_map(listing)


def test_bundled_map_targets_seeded_categories() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        seed_system_categories(session)
        resolver = CategoryResolver(session, "u1", load_category_map(DEFAULT_CATEGORY_MAP))

        for label in resolver.mapping:
            assert resolver.resolve(label) is not None, label
