from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import pandas as pd

from bbs_ingest.models import (
    EnrichedRecord,
    ObservationRecord,
    RegionTable,
    RouteInfo,
    RunConditions,
    Taxon,
    UnifiedDataset,
)

logger = logging.getLogger(__name__)

RecordKey = Tuple[str, int, Optional[int], int, int]


def record_key(record: ObservationRecord) -> RecordKey:
    return (record.state, record.route, record.rpid, record.year, record.aou)


def dedupe_region(records: Iterable[ObservationRecord]) -> Tuple[List[ObservationRecord], int]:
    """Drop repeated (state, route, rpid, year, aou) keys, keeping the first."""
    seen: set[RecordKey] = set()
    kept: List[ObservationRecord] = []
    duplicates = 0
    for record in records:
        key = record_key(record)
        if key in seen:
            duplicates += 1
            continue
        seen.add(key)
        kept.append(record)
    return kept, duplicates


def assemble(tables: Sequence[RegionTable], skipped: Mapping[str, str] | None = None) -> UnifiedDataset:
    """Concatenate per-region tables in the order given.

    Tables for the same region (an overwrite run that parsed one archive
    twice) are merged and de-duplicated; distinct regions never are.
    """
    order: List[str] = []
    merged: Dict[str, List[ObservationRecord]] = {}
    dropped: Dict[str, int] = {}
    for table in tables:
        name = table.region.name
        if name not in merged:
            order.append(name)
            merged[name] = []
            dropped[name] = 0
        merged[name].extend(table.records)
        # a re-parsed archive reports the same dropped rows again
        dropped[name] = max(dropped[name], table.dropped_rows)

    dataset = UnifiedDataset(skipped=dict(skipped or {}))
    for name in order:
        kept, duplicates = dedupe_region(merged[name])
        if duplicates:
            logger.info("%s: removed %s duplicate rows", name, f"{duplicates:,}")
        dataset.records.extend(kept)
        dataset.regions.append(name)
        dataset.dropped_rows[name] = dropped[name]

    if dataset.skipped:
        logger.warning("Skipped %d region(s): %s", len(dataset.skipped), sorted(dataset.skipped))
    return dataset


def enrich(
    dataset: Iterable[ObservationRecord],
    taxonomy: Mapping[int, Taxon] | None = None,
    routes: Iterable[RouteInfo] | None = None,
    conditions: Iterable[RunConditions] | None = None,
) -> List[EnrichedRecord]:
    """Left-join observations against reference tables.

    Observations whose key is absent from a table keep ``None`` for that
    table; no observation is ever dropped.
    """
    route_index = {route.key: route for route in routes} if routes is not None else {}
    condition_index = {run.key: run for run in conditions} if conditions is not None else {}
    taxa = taxonomy or {}

    enriched = []
    for record in dataset:
        enriched.append(
            EnrichedRecord(
                record=record,
                taxon=taxa.get(record.aou),
                route_info=route_index.get((record.country_num, record.state_num, record.route)),
                conditions=condition_index.get(
                    (record.country_num, record.state_num, record.route, record.rpid, record.year)
                ),
            )
        )
    return enriched


def enriched_frame(records: Sequence[EnrichedRecord]) -> pd.DataFrame:
    return pd.DataFrame([r.as_dict() for r in records])


def filter_records(
    dataset: UnifiedDataset,
    states: Iterable[str] | None = None,
    years: Iterable[int] | None = None,
    aou: Iterable[int] | None = None,
) -> UnifiedDataset:
    return dataset.filter(states=states, years=years, aou=aou)
