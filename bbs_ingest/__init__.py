"""Retrieval, caching and normalization of BBS route-level survey archives."""

from bbs_ingest.errors import (
    BBSIngestError,
    CatalogUnavailableError,
    FetchError,
    MalformedArchiveError,
    UnknownRegionError,
)
from bbs_ingest.ingest import BBSPipeline, DownloadReport, FailurePolicy
from bbs_ingest.models import (
    ArtifactKind,
    EnrichedRecord,
    ObservationRecord,
    RegionDescriptor,
    RouteInfo,
    RunConditions,
    Taxon,
    TaxonomyTable,
    UnifiedDataset,
)
from bbs_ingest.regions import RegionIndex, load_region_index
from bbs_ingest.settings import Settings, load_settings

__version__ = "0.3.0"

__all__ = [
    "ArtifactKind",
    "BBSIngestError",
    "BBSPipeline",
    "CatalogUnavailableError",
    "DownloadReport",
    "EnrichedRecord",
    "FailurePolicy",
    "FetchError",
    "MalformedArchiveError",
    "ObservationRecord",
    "RegionDescriptor",
    "RegionIndex",
    "RouteInfo",
    "RunConditions",
    "Settings",
    "Taxon",
    "TaxonomyTable",
    "UnifiedDataset",
    "UnknownRegionError",
    "load_region_index",
    "load_settings",
]
