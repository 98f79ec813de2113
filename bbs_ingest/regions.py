from __future__ import annotations

from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from typing import Any, Dict, Iterable, List, Sequence, Tuple

import yaml

from bbs_ingest.errors import UnknownRegionError
from bbs_ingest.models import RegionDescriptor


def _normalize(name: str) -> str:
    return " ".join(str(name).split()).casefold()


@dataclass(frozen=True)
class RegionIndex:
    """Immutable lookup from user-entered region names to descriptors.

    Matching is case-insensitive and ignores surrounding and repeated
    whitespace. Each region answers to its canonical name, postal
    abbreviation, remote file stem (``Nebrask``) and any listed aliases.
    """

    regions: Tuple[RegionDescriptor, ...]
    countries: Dict[int, str] = field(default_factory=dict)
    version: int = 1
    _lookup: Dict[str, RegionDescriptor] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        lookup: Dict[str, RegionDescriptor] = {}
        file_names: Dict[str, RegionDescriptor] = {}
        for region in self.regions:
            owner = file_names.setdefault(region.file_name.casefold(), region)
            if owner is not region:
                raise ValueError(f"Duplicate remote file name {region.file_name!r} for {owner.name} and {region.name}")
            for key in self._keys_for(region):
                current = lookup.setdefault(key, region)
                if current is not region:
                    raise ValueError(f"Ambiguous region key {key!r}: {current.name} / {region.name}")
        object.__setattr__(self, "_lookup", lookup)

    @staticmethod
    def _keys_for(region: RegionDescriptor) -> set[str]:
        keys = {_normalize(region.name), _normalize(region.file_stem)}
        if region.abbreviation:
            keys.add(_normalize(region.abbreviation))
        keys.update(_normalize(alias) for alias in region.aliases)
        return keys

    def list_regions(self) -> List[RegionDescriptor]:
        return list(self.regions)

    def get(self, name: str) -> RegionDescriptor:
        try:
            return self._lookup[_normalize(name)]
        except KeyError:
            raise UnknownRegionError(name) from None

    def resolve(self, names: Iterable[str] | str | None = None) -> List[RegionDescriptor]:
        # a bare string is one region name, not a sequence of characters
        wanted = [names] if isinstance(names, str) else list(names or [])
        if not wanted:
            return self.list_regions()

        resolved: List[RegionDescriptor] = []
        for name in wanted:
            region = self.get(name)
            if region not in resolved:
                resolved.append(region)
        return resolved

    def by_codes(self, country_num: int, state_num: int) -> RegionDescriptor | None:
        for region in self.regions:
            if region.country_num == country_num and region.state_num == state_num:
                return region
        return None

    def country_name(self, region: RegionDescriptor) -> str | None:
        return self.countries.get(region.country_num)


def _descriptor(item: Dict[str, Any]) -> RegionDescriptor:
    aliases = item.get("aliases") or []
    if isinstance(aliases, str):
        aliases = [aliases]
    abbreviation = item.get("abbreviation")
    return RegionDescriptor(
        country_num=int(item["country_num"]),
        state_num=int(item["state_num"]),
        name=str(item["name"]).strip(),
        file_name=str(item["file_name"]).strip(),
        abbreviation=str(abbreviation).strip() if abbreviation else None,
        aliases=tuple(str(a).strip() for a in aliases if a),
    )


def parse_region_table(payload: Dict[str, Any]) -> RegionIndex:
    regions = tuple(_descriptor(item) for item in payload.get("regions", []))
    if not regions:
        raise ValueError("Region table contains no regions.")
    countries = {int(k): str(v) for k, v in (payload.get("countries") or {}).items()}
    return RegionIndex(regions=regions, countries=countries, version=int(payload.get("version", 1)))


def load_region_index(path: str | Path | None = None) -> RegionIndex:
    if path is None:
        text = resources.files("bbs_ingest.reference").joinpath("regions.yaml").read_text(encoding="utf-8")
    else:
        text = Path(path).read_text(encoding="utf-8")
    payload = yaml.safe_load(text) or {}
    return parse_region_table(payload)


def region_names(regions: Sequence[RegionDescriptor]) -> List[str]:
    return [region.name for region in regions]
