"""
Pydantic models for the source catalog YAML.

The catalog is the single place that knows how business keywords map to store
columns. Models are frozen: a loaded catalog is shared across requests and is
never mutated after load.
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


FieldKind = Literal['raw', 'numericString', 'computed', 'count']

_YEAR_MONTH_RE = re.compile(r"^(\d{4})-(\d{1,2})$")


class YearMonth(BaseModel):
    model_config = ConfigDict(frozen=True)

    year: int = Field(ge=1900, le=2999)
    month: int = Field(ge=1, le=12)

    @model_validator(mode='before')
    @classmethod
    def _parse_string(cls, data: Any) -> Any:
        if isinstance(data, str):
            m = _YEAR_MONTH_RE.match(data.strip())
            if not m:
                raise ValueError(f"expected YYYY-MM, got {data!r}")
            return {'year': int(m.group(1)), 'month': int(m.group(2))}
        return data

    def key(self) -> int:
        """Sortable integer key, e.g. 202405."""
        return self.year * 100 + self.month

    def __str__(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"


class FieldMapping(BaseModel):
    model_config = ConfigDict(frozen=True)

    expression: str = Field(..., description="Column reference or SQL expression")
    kind: FieldKind = 'raw'
    positive_only: bool = Field(default=True, description="Computed fields keep only rows where the value is > 0")

    @field_validator('expression')
    @classmethod
    def _strip(cls, v: str) -> str:
        v = ' '.join((v or '').split())
        if not v:
            raise ValueError('expression must be non-empty')
        return v


class ConnectorKey(BaseModel):
    """Columns that together identify one charging connector."""

    model_config = ConfigDict(frozen=True)

    station: str
    terminal: str


class CompositeTimeField(BaseModel):
    model_config = ConfigDict(frozen=True)

    year_field: str
    month_field: str


class SourceDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Store table name")
    category: str
    display_name: Optional[str] = None
    aliases: Tuple[str, ...] = ()
    time_field: Optional[str] = None
    time_fields: Optional[CompositeTimeField] = None
    fields: Dict[str, FieldMapping] = Field(default_factory=dict)
    default_metric: str = '收入'
    status_filter: Optional[str] = None
    row_filters: Tuple[str, ...] = ()
    location_filter: Dict[str, str] = Field(default_factory=dict)
    sites: Tuple[str, ...] = Field(default=(), description="Sites the source exists at; empty means all")
    connector: Optional[ConnectorKey] = None
    plate_field: Optional[str] = None
    valid_from: Optional[YearMonth] = None
    valid_until: Optional[YearMonth] = None

    @model_validator(mode='after')
    def _check(self) -> 'SourceDefinition':
        if bool(self.time_field) == bool(self.time_fields):
            raise ValueError(f"source {self.id}: exactly one of time_field/time_fields is required")
        if not self.fields:
            raise ValueError(f"source {self.id}: at least one field mapping is required")
        if self.valid_from and self.valid_until and self.valid_from.key() > self.valid_until.key():
            raise ValueError(f"source {self.id}: valid_from is after valid_until")
        return self

    @property
    def name(self) -> str:
        return self.display_name or self.id

    def filters_for_site(self, site: Optional[str]) -> List[str]:
        """Row predicates that always apply, plus the site predicate when one is named."""
        preds: List[str] = []
        if self.status_filter:
            preds.append(self.status_filter)
        preds.extend(self.row_filters)
        if site and site in self.location_filter:
            preds.append(self.location_filter[site])
        return preds

    def exists_at(self, site: Optional[str]) -> bool:
        return not site or not self.sites or site in self.sites


class CategoryDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    keywords: Tuple[str, ...]
    members: Tuple[str, ...]


class CompoundPhrase(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    phrases: Tuple[str, ...]
    sets: Dict[str, Tuple[str, ...]]

    @field_validator('sets')
    @classmethod
    def _default_required(cls, v: Dict[str, Tuple[str, ...]]) -> Dict[str, Tuple[str, ...]]:
        if 'default' not in v:
            raise ValueError("compound phrase needs a 'default' source set")
        return v

    def sources_for(self, site: Optional[str]) -> Tuple[str, ...]:
        if site and site in self.sets:
            return self.sets[site]
        return self.sets['default']


class UnitCounts(BaseModel):
    model_config = ConfigDict(frozen=True)

    unit: str = '枪'
    counts: Dict[str, Dict[int, int]] = Field(default_factory=dict)

    def count_for(self, site: str, year: int) -> Optional[int]:
        """Installed units for a site and year; falls back to the nearest earlier year on record."""
        per_year = self.counts.get(site) or {}
        if year in per_year:
            return per_year[year]
        earlier = [y for y in per_year if y < year]
        if earlier:
            return per_year[max(earlier)]
        return None


class CatalogDocument(BaseModel):
    model_config = ConfigDict(frozen=True)

    sites: Tuple[str, ...]
    categories: Tuple[CategoryDefinition, ...] = ()
    charging_fallback_keywords: Tuple[str, ...] = ()
    compound_phrases: Tuple[CompoundPhrase, ...] = ()
    sources: Tuple[SourceDefinition, ...]

    @model_validator(mode='after')
    def _check_references(self) -> 'CatalogDocument':
        ids = {s.id for s in self.sources}
        if len(ids) != len(self.sources):
            raise ValueError('duplicate source ids in catalog')
        for cat in self.categories:
            missing = [m for m in cat.members if m not in ids]
            if missing:
                raise ValueError(f"category {cat.name} references unknown sources: {missing}")
        for phrase in self.compound_phrases:
            for key, members in phrase.sets.items():
                missing = [m for m in members if m not in ids]
                if missing:
                    raise ValueError(f"compound phrase {phrase.name}/{key} references unknown sources: {missing}")
        return self


def catalog_json_schema() -> Dict[str, Any]:
    return CatalogDocument.model_json_schema()
