from __future__ import annotations

import logging
import os
from functools import lru_cache
from typing import Any, Dict, List, Optional, Tuple

import yaml
from pydantic import ValidationError

from catalog_models import (
    CatalogDocument,
    CategoryDefinition,
    CompoundPhrase,
    SourceDefinition,
    UnitCounts,
)

logger = logging.getLogger(__name__)

DEFAULT_CATALOG_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'catalog')


class CatalogLoadError(RuntimeError):
    pass


def _read_yaml(path: str) -> Dict[str, Any]:
    try:
        with open(path, 'r', encoding='utf-8') as f:
            return yaml.safe_load(f) or {}
    except FileNotFoundError as e:
        raise CatalogLoadError(f"catalog file not found: {path}") from e
    except yaml.YAMLError as e:
        raise CatalogLoadError(f"catalog file is not valid YAML: {path}: {e}") from e


class SourceCatalog:
    """Read-only view over the source catalog YAML.

    - Validates sources.yaml against `CatalogDocument` (Pydantic)
    - Validates unit_counts.yaml against `UnitCounts`
    - Exposes lookups by source id, category and site
    """

    def __init__(self, catalog_dir: Optional[str] = None):
        env_dir = os.getenv('CHARGEQA_CATALOG_DIR')
        self.catalog_dir = catalog_dir or env_dir or DEFAULT_CATALOG_DIR
        self._doc: CatalogDocument
        self._units: UnitCounts
        self._by_id: Dict[str, SourceDefinition] = {}
        self._category_by_name: Dict[str, CategoryDefinition] = {}
        self._load_all()

    def _load_all(self) -> None:
        sources_path = os.path.join(self.catalog_dir, 'sources.yaml')
        units_path = os.path.join(self.catalog_dir, 'unit_counts.yaml')
        try:
            self._doc = CatalogDocument(**_read_yaml(sources_path))
        except ValidationError as ve:
            raise CatalogLoadError(f"invalid source catalog {sources_path}: {ve}") from ve
        try:
            self._units = UnitCounts(**_read_yaml(units_path))
        except CatalogLoadError:
            logger.warning(f"No unit counts at {units_path}; per-unit formulas are disabled")
            self._units = UnitCounts()
        except ValidationError as ve:
            raise CatalogLoadError(f"invalid unit counts {units_path}: {ve}") from ve

        self._by_id = {s.id: s for s in self._doc.sources}
        self._category_by_name = {c.name: c for c in self._doc.categories}
        logger.debug(f"Loaded {len(self._by_id)} sources from {self.catalog_dir}")

    # Sources
    def ids(self) -> Tuple[str, ...]:
        return tuple(s.id for s in self._doc.sources)

    def sources(self) -> Tuple[SourceDefinition, ...]:
        return self._doc.sources

    def get(self, source_id: str) -> SourceDefinition:
        try:
            return self._by_id[source_id]
        except KeyError:
            raise KeyError(f"unknown source: {source_id}") from None

    def has(self, source_id: str) -> bool:
        return source_id in self._by_id

    def in_catalog_order(self, source_ids) -> List[str]:
        wanted = set(source_ids)
        return [sid for sid in self.ids() if sid in wanted]

    # Categories
    def categories(self) -> Tuple[CategoryDefinition, ...]:
        return self._doc.categories

    def category(self, name: str) -> Optional[CategoryDefinition]:
        return self._category_by_name.get(name)

    def members(self, category_name: str) -> Tuple[str, ...]:
        cat = self._category_by_name.get(category_name)
        if cat:
            return cat.members
        return tuple(s.id for s in self._doc.sources if s.category == category_name)

    def charging_sources(self) -> Tuple[str, ...]:
        return self.members('charging')

    def utility_source(self) -> Optional[SourceDefinition]:
        members = self.members('utility')
        return self._by_id[members[0]] if members else None

    @property
    def charging_fallback_keywords(self) -> Tuple[str, ...]:
        return self._doc.charging_fallback_keywords

    # Sites, phrases, units
    @property
    def sites(self) -> Tuple[str, ...]:
        return self._doc.sites

    def site_in(self, text: str) -> Optional[str]:
        for site in self._doc.sites:
            if site in (text or ''):
                return site
        return None

    @property
    def compound_phrases(self) -> Tuple[CompoundPhrase, ...]:
        return self._doc.compound_phrases

    @property
    def unit_counts(self) -> UnitCounts:
        return self._units

    def to_prompt_snippet(self, source_ids: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        """Compact per-source description used when prompting the model."""
        ids = source_ids or list(self.ids())
        out: List[Dict[str, Any]] = []
        for sid in ids:
            s = self._by_id.get(sid)
            if not s:
                continue
            seen: Dict[str, List[str]] = {}
            for keyword, mapping in s.fields.items():
                seen.setdefault(mapping.expression, []).append(keyword)
            snippet: Dict[str, Any] = {
                'table': f"[{s.id}]",
                'time': f"[{s.time_field}]" if s.time_field else f"[{s.time_fields.year_field}]/[{s.time_fields.month_field}]",
                'fields': {expr: kws for expr, kws in seen.items()},
            }
            filters = s.filters_for_site(None)
            if filters:
                snippet['filters'] = filters
            if s.location_filter:
                snippet['site_filters'] = dict(s.location_filter)
            if s.valid_from:
                snippet['valid_from'] = str(s.valid_from)
            if s.valid_until:
                snippet['valid_until'] = str(s.valid_until)
            out.append(snippet)
        return out


@lru_cache(maxsize=1)
def get_catalog() -> SourceCatalog:
    return SourceCatalog()
