import json
import logging
from functools import lru_cache
from pathlib import Path
from typing import Mapping, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from config import get_settings
from models import Category


logger = logging.getLogger(__name__)

NEEDS_CATEGORIZATION = "Needs Categorized"


def load_category_map(path: Path) -> dict[str, str]:
    try:
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise RuntimeError(f"Failed to load category map from {path}") from exc
    if not isinstance(payload, dict):
        raise RuntimeError(f"Category map in {path} must be a JSON object")

    mapping: dict[str, str] = {}
    for label, name in payload.items():
        clean_label = str(label).strip().upper()
        clean_name = str(name or "").strip()
        if clean_label and clean_name:
            mapping[clean_label] = clean_name
    return mapping


@lru_cache(maxsize=4)
def _load_cached(path: str) -> tuple[tuple[str, str], ...]:
    mapping = load_category_map(Path(path))
    logger.info(f"category_map_loaded: path={path} labels={len(mapping)}")
    return tuple(mapping.items())


def default_category_map() -> dict[str, str]:
    return dict(_load_cached(str(get_settings().category_map_path)))


def category_status(
    category_name: Optional[str], upstream_primary: Optional[str]
) -> str:
    if category_name:
        return category_name
    if upstream_primary:
        return f"Suggested: {upstream_primary}"
    return NEEDS_CATEGORIZATION


class CategoryResolver:
    """
    Seeds the authoritative category of newly synced transactions from the
    provider's suggestion. Callers skip it for records that already carry a
    category, so a user's assignment is never replaced.
    """

    def __init__(
        self,
        session: Session,
        user_id: str,
        mapping: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        source = default_category_map() if mapping is None else mapping
        self.mapping = {str(k).strip().upper(): v for k, v in source.items()}
        self._ids_by_name: dict[str, Optional[int]] = {}

    def category_name_for(self, label: Optional[str]) -> Optional[str]:
        if not label:
            return None
        return self.mapping.get(label.strip().upper())

    def resolve(
        self, primary_label: Optional[str], detailed_label: Optional[str] = None
    ) -> Optional[int]:
        # The detailed label is more specific, so it wins when both map.
        for label in (detailed_label, primary_label):
            name = self.category_name_for(label)
            if not name:
                continue
            category_id = self._lookup(name)
            if category_id is not None:
                return category_id
        return None

    def _lookup(self, name: str) -> Optional[int]:
        key = name.lower()
        if key in self._ids_by_name:
            return self._ids_by_name[key]
        stmt = (
            select(Category.id)
            .where(
                or_(Category.user_id.is_(None), Category.user_id == self.user_id),
                func.lower(Category.name) == key,
            )
            .order_by(Category.user_id.is_(None).asc(), Category.id.asc())
            .limit(1)
        )
        category_id = self.session.scalar(stmt)
        if category_id is None:
            logger.info(
                f"category_unresolved: user_id={self.user_id} category_name={name}"
            )
        self._ids_by_name[key] = category_id
        return category_id
