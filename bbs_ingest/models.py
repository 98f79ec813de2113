from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

import pandas as pd


def slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", name.strip().lower()).strip("_")


@dataclass(frozen=True)
class RegionDescriptor:
    country_num: int
    state_num: int
    name: str
    file_name: str
    abbreviation: str | None = None
    aliases: Tuple[str, ...] = ()

    @property
    def key(self) -> str:
        return slugify(self.name)

    @property
    def file_stem(self) -> str:
        return self.file_name.rsplit(".", 1)[0]


class ArtifactKind(str, Enum):
    RAW_ARCHIVE = "raw-archive"
    EXTRACTED_TABLE = "extracted-table"
    ROUTES = "routes"
    CONDITIONS = "conditions"


class Presence(str, Enum):
    ABSENT = "absent"
    STALE = "stale"
    FRESH = "fresh"


@dataclass(frozen=True)
class ObservationRecord:
    country_num: int
    state_num: int
    route: int
    rpid: Optional[int]
    year: int
    aou: int
    count: int
    state: str


OBSERVATION_FIELDS: Tuple[str, ...] = tuple(f.name for f in fields(ObservationRecord))


@dataclass(frozen=True)
class RegionTable:
    """Parsed observations of one region plus what the parser had to drop."""

    region: RegionDescriptor
    records: Tuple[ObservationRecord, ...]
    dropped_rows: int = 0
    source_members: Tuple[str, ...] = ()


@dataclass
class UnifiedDataset:
    records: List[ObservationRecord] = field(default_factory=list)
    regions: List[str] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)
    dropped_rows: Dict[str, int] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator[ObservationRecord]:
        return iter(self.records)

    @property
    def states(self) -> set[str]:
        return {record.state for record in self.records}

    def filter(
        self,
        states: Iterable[str] | None = None,
        years: Iterable[int] | None = None,
        aou: Iterable[int] | None = None,
    ) -> "UnifiedDataset":
        wanted_states = {s.strip().lower() for s in states} if states is not None else None
        wanted_years = set(years) if years is not None else None
        wanted_aou = set(aou) if aou is not None else None

        kept = [
            record
            for record in self.records
            if (wanted_states is None or record.state.lower() in wanted_states)
            and (wanted_years is None or record.year in wanted_years)
            and (wanted_aou is None or record.aou in wanted_aou)
        ]
        kept_regions = [name for name in self.regions if wanted_states is None or name.lower() in wanted_states]
        return UnifiedDataset(
            records=kept,
            regions=kept_regions,
            skipped=dict(self.skipped),
            dropped_rows={k: v for k, v in self.dropped_rows.items() if k in kept_regions},
        )

    def to_frame(self) -> pd.DataFrame:
        df = pd.DataFrame([asdict(r) for r in self.records], columns=list(OBSERVATION_FIELDS))
        df["rpid"] = df["rpid"].astype("Int64")
        return df


@dataclass(frozen=True)
class Taxon:
    aou: int
    common_name: str | None
    french_name: str | None
    latin_name: str | None
    order: str | None
    family: str | None
    genus: str | None = None
    species: str | None = None


class TaxonomyTable(Mapping[int, Taxon]):
    """Read-only AOU -> Taxon lookup."""

    def __init__(self, taxa: Iterable[Taxon]) -> None:
        self._taxa: Mapping[int, Taxon] = MappingProxyType({t.aou: t for t in taxa})

    def __getitem__(self, aou: int) -> Taxon:
        return self._taxa[aou]

    def __iter__(self) -> Iterator[int]:
        return iter(self._taxa)

    def __len__(self) -> int:
        return len(self._taxa)

    def by_common_name(self, name: str) -> Taxon | None:
        target = name.strip().lower()
        for taxon in self._taxa.values():
            if taxon.common_name and taxon.common_name.lower() == target:
                return taxon
        return None


@dataclass(frozen=True)
class RouteInfo:
    country_num: int
    state_num: int
    route: int
    route_name: str | None = None
    active: int | None = None
    latitude: float | None = None
    longitude: float | None = None
    stratum: int | None = None
    bcr: int | None = None

    @property
    def key(self) -> Tuple[int, int, int]:
        return (self.country_num, self.state_num, self.route)


@dataclass(frozen=True)
class RunConditions:
    country_num: int
    state_num: int
    route: int
    rpid: Optional[int]
    year: int
    month: int | None = None
    day: int | None = None
    obs_n: int | None = None
    start_temp: float | None = None
    end_temp: float | None = None
    temp_scale: str | None = None
    start_wind: int | None = None
    end_wind: int | None = None
    start_sky: int | None = None
    end_sky: int | None = None
    start_time: int | None = None
    end_time: int | None = None
    assistant: int | None = None
    quality_current_id: int | None = None
    run_type: int | None = None

    @property
    def key(self) -> Tuple[int, int, int, Optional[int], int]:
        return (self.country_num, self.state_num, self.route, self.rpid, self.year)


@dataclass(frozen=True)
class EnrichedRecord:
    record: ObservationRecord
    taxon: Taxon | None = None
    route_info: RouteInfo | None = None
    conditions: RunConditions | None = None

    @property
    def common_name(self) -> str | None:
        return self.taxon.common_name if self.taxon else None

    def as_dict(self) -> Dict[str, Any]:
        row: Dict[str, Any] = asdict(self.record)
        taxon = self.taxon
        row.update(
            {
                "common_name": taxon.common_name if taxon else None,
                "latin_name": taxon.latin_name if taxon else None,
                "order": taxon.order if taxon else None,
                "family": taxon.family if taxon else None,
            }
        )
        route = self.route_info
        row.update(
            {
                "route_name": route.route_name if route else None,
                "latitude": route.latitude if route else None,
                "longitude": route.longitude if route else None,
                "bcr": route.bcr if route else None,
            }
        )
        cond = self.conditions
        row.update(
            {
                "month": cond.month if cond else None,
                "day": cond.day if cond else None,
                "obs_n": cond.obs_n if cond else None,
                "run_type": cond.run_type if cond else None,
            }
        )
        return row
