from __future__ import annotations

import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Union

from bbs_ingest.catalog import RemoteArtifact
from bbs_ingest.models import ArtifactKind, Presence, RegionDescriptor

METADATA_DIR = "_metadata"
MANIFEST_NAME = "manifest.json"
CATALOG_NAME = "catalog.json"

_PARQUET_MAGIC = b"PAR1"


class CacheBackend(Protocol):
    def size(self, path: Path) -> Optional[int]:
        """Size in bytes, or ``None`` when nothing exists at ``path``."""
        ...

    def is_well_formed(self, path: Path, kind: ArtifactKind) -> bool:
        ...


class LocalCacheBackend:
    def size(self, path: Path) -> Optional[int]:
        if not path.is_file():
            return None
        return path.stat().st_size

    def is_well_formed(self, path: Path, kind: ArtifactKind) -> bool:
        if kind is ArtifactKind.EXTRACTED_TABLE:
            if path.stat().st_size < 2 * len(_PARQUET_MAGIC):
                return False
            with path.open("rb") as fh:
                head = fh.read(4)
                fh.seek(-4, 2)
                tail = fh.read(4)
            return head == _PARQUET_MAGIC and tail == _PARQUET_MAGIC
        return zipfile.is_zipfile(path)


@dataclass(frozen=True)
class CacheEntry:
    region: Optional[RegionDescriptor]
    kind: ArtifactKind
    local_path: Path
    presence: Presence


@dataclass(frozen=True)
class Reuse:
    path: Path


@dataclass(frozen=True)
class Fetch:
    remote_path: str
    local_path: Path


Action = Union[Reuse, Fetch]


class CacheManager:
    """Single source of truth for what already exists under ``cache_dir``.

    Every artifact lives at a path derived only from the region and the
    artifact kind, so re-running with the same inputs always addresses
    the same files::

        <cache_dir>/<region key>/<remote file name>     raw-archive
        <cache_dir>/<region key>/<region key>.parquet   extracted-table
        <cache_dir>/_metadata/<routes file>             routes
        <cache_dir>/_metadata/<weather file>            conditions
    """

    def __init__(
        self,
        cache_dir: str | Path,
        backend: CacheBackend | None = None,
        metadata_files: Dict[ArtifactKind, str] | None = None,
    ) -> None:
        self.cache_dir = Path(cache_dir)
        self.backend = backend or LocalCacheBackend()
        self.metadata_files = metadata_files or {
            ArtifactKind.ROUTES: "Routes.zip",
            ArtifactKind.CONDITIONS: "Weather.zip",
        }

    def region_dir(self, region: RegionDescriptor) -> Path:
        return self.cache_dir / region.key

    def manifest_path(self, region: RegionDescriptor) -> Path:
        return self.region_dir(region) / MANIFEST_NAME

    def catalog_path(self) -> Path:
        return self.cache_dir / CATALOG_NAME

    def remote_name(self, region: Optional[RegionDescriptor], kind: ArtifactKind) -> str:
        if kind in self.metadata_files:
            return self.metadata_files[kind]
        if region is None:
            raise ValueError(f"Artifact kind {kind.value} needs a region.")
        return region.file_name

    def local_path(self, region: Optional[RegionDescriptor], kind: ArtifactKind) -> Path:
        if kind in self.metadata_files:
            return self.cache_dir / METADATA_DIR / self.metadata_files[kind]
        if region is None:
            raise ValueError(f"Artifact kind {kind.value} needs a region.")
        if kind is ArtifactKind.RAW_ARCHIVE:
            return self.region_dir(region) / region.file_name
        return self.region_dir(region) / f"{region.key}.parquet"

    def presence(
        self,
        path: Path,
        kind: ArtifactKind,
        remote: RemoteArtifact | None = None,
    ) -> Presence:
        size = self.backend.size(path)
        if size is None:
            return Presence.ABSENT
        if size == 0 or not self.backend.is_well_formed(path, kind):
            return Presence.STALE
        if remote is not None and remote.size is not None and kind is not ArtifactKind.EXTRACTED_TABLE:
            if remote.size != size:
                return Presence.STALE
        return Presence.FRESH

    def entry(
        self,
        region: Optional[RegionDescriptor],
        kind: ArtifactKind,
        remote: RemoteArtifact | None = None,
    ) -> CacheEntry:
        path = self.local_path(region, kind)
        return CacheEntry(region=region, kind=kind, local_path=path, presence=self.presence(path, kind, remote))

    def plan_fetch(
        self,
        region: Optional[RegionDescriptor],
        kind: ArtifactKind,
        overwrite: bool,
        remote: RemoteArtifact | None = None,
    ) -> Action:
        """Decide whether the cached artifact can be reused.

        ``remote`` is only given when remote verification is enabled; a
        size mismatch against it then counts as stale. For an extracted
        table, ``Fetch`` means re-extract from the region's raw archive.
        """
        entry = self.entry(region, kind, remote)
        if not overwrite and entry.presence is Presence.FRESH:
            return Reuse(entry.local_path)
        return Fetch(remote_path=self.remote_name(region, kind), local_path=entry.local_path)

    def cached_regions(self) -> List[str]:
        if not self.cache_dir.is_dir():
            return []
        return sorted(
            p.name for p in self.cache_dir.iterdir() if p.is_dir() and p.name != METADATA_DIR
        )
