from __future__ import annotations

import argparse
import json
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple, TypeVar, Union

import pandas as pd
import requests

from bbs_ingest.assemble import assemble, enrich, enriched_frame
from bbs_ingest.cache import CacheBackend, CacheManager, Reuse
from bbs_ingest.catalog import RemoteArtifact, RemoteCatalog
from bbs_ingest.common import (
    file_entry,
    read_json,
    sha256_for_file,
    upsert_catalog_entry,
    utc_now,
    write_catalog,
    write_json,
    write_parquet,
)
from bbs_ingest.errors import BBSIngestError, FetchError, MalformedArchiveError
from bbs_ingest.fetch import Fetcher
from bbs_ingest.models import (
    ArtifactKind,
    RegionDescriptor,
    RegionTable,
    RouteInfo,
    RunConditions,
    TaxonomyTable,
    UnifiedDataset,
)
from bbs_ingest.parser import parse_archive, parse_conditions, parse_routes, records_from_frame
from bbs_ingest.quality import evaluate
from bbs_ingest.regions import RegionIndex, load_region_index
from bbs_ingest.settings import Settings, load_settings
from bbs_ingest.taxonomy import fetch_species_list, load_species_list

logger = logging.getLogger(__name__)

T = TypeVar("T")

RegionLike = Union[RegionDescriptor, str]

# Per-region failures that the failure policy may absorb. Anything else,
# including an unreachable catalog, aborts the operation.
REGION_ERRORS = (FetchError, MalformedArchiveError)


class FailurePolicy(str, Enum):
    FAIL_FAST = "fail-fast"
    BEST_EFFORT = "best-effort"


@dataclass
class DownloadReport:
    fetched: List[str] = field(default_factory=list)
    reused: List[str] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)
    paths: Dict[str, Path] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, object]:
        return {
            "fetched": self.fetched,
            "reused": self.reused,
            "skipped": self.skipped,
            "paths": {k: str(v) for k, v in self.paths.items()},
        }


class BBSPipeline:
    """Retrieval, caching and import of BBS per-region archives.

    Reference data (the region index) and collaborators are handed in once
    and shared by every call. Each public call that may need the network
    builds its own remote catalog, which lists the server at most once and
    only when something actually has to be fetched.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        regions: RegionIndex | None = None,
        session: requests.Session | None = None,
        cache_backend: CacheBackend | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.regions = regions or load_region_index()
        self.session = session or requests.Session()
        self.cache_backend = cache_backend
        self.fetcher = Fetcher(self.session, timeout=self.settings.timeout, headers=self.settings.headers)
        self._catalog_lock = threading.Lock()

    # ── reference lookups ────────────────────────────────────────────
    def list_regions(self) -> List[RegionDescriptor]:
        return self.regions.list_regions()

    def resolve_regions(self, names: Sequence[str] | str | None = None) -> List[RegionDescriptor]:
        return self.regions.resolve(names)

    def _descriptors(self, items: Sequence[RegionLike] | RegionLike | None) -> List[RegionDescriptor]:
        if isinstance(items, (str, RegionDescriptor)):
            items = [items]
        if not items:
            return self.regions.list_regions()
        resolved: List[RegionDescriptor] = []
        for item in items:
            region = item if isinstance(item, RegionDescriptor) else self.regions.get(item)
            if region not in resolved:
                resolved.append(region)
        return resolved

    # ── collaborators ────────────────────────────────────────────────
    def cache(self, cache_dir: str | Path | None = None) -> CacheManager:
        return CacheManager(
            cache_dir or self.settings.cache_dir,
            backend=self.cache_backend,
            metadata_files={
                ArtifactKind.ROUTES: self.settings.routes_file,
                ArtifactKind.CONDITIONS: self.settings.weather_file,
            },
        )

    def _catalog(self, url: str) -> RemoteCatalog:
        return RemoteCatalog(
            url,
            session=self.session,
            timeout=self.settings.catalog_timeout,
            headers=self.settings.headers,
        )

    # ── fetch-or-reuse ───────────────────────────────────────────────
    def _ensure(
        self,
        cache: CacheManager,
        region: Optional[RegionDescriptor],
        kind: ArtifactKind,
        overwrite: bool,
        catalog: RemoteCatalog,
    ) -> Tuple[Path, Optional[RemoteArtifact]]:
        """Return the local path of a raw artifact and, if fetched, its listing entry."""
        label = region.name if region else kind.value
        remote = None
        if self.settings.verify_remote and not overwrite:
            remote = catalog.lookup(cache.remote_name(region, kind))

        action = cache.plan_fetch(region, kind, overwrite, remote=remote)
        if isinstance(action, Reuse):
            logger.info("%s: reusing cached %s", label, action.path)
            return action.path, None

        remote = remote or catalog.lookup(action.remote_path)
        if remote is None:
            raise FetchError(
                region.name if region else None,
                catalog.url_for(action.remote_path),
                action.local_path,
                "not listed in remote catalog",
            )
        self.fetcher.fetch(catalog.url_for(remote.name), action.local_path, region=region.name if region else None)
        return action.local_path, remote

    def _region_table(
        self,
        cache: CacheManager,
        region: RegionDescriptor,
        overwrite: bool,
        catalog: RemoteCatalog,
    ) -> RegionTable:
        archive, remote = self._ensure(cache, region, ArtifactKind.RAW_ARCHIVE, overwrite, catalog)

        action = cache.plan_fetch(region, ArtifactKind.EXTRACTED_TABLE, overwrite or remote is not None)
        if isinstance(action, Reuse):
            try:
                manifest = read_json(cache.manifest_path(region))
                if _extracted_from(manifest, archive):
                    df = pd.read_parquet(action.path)
                    dropped = int(manifest.get("manifest", {}).get("dropped_rows", 0))
                    return RegionTable(region=region, records=records_from_frame(df, region), dropped_rows=dropped)
                logger.info("%s: raw archive changed since extraction; re-extracting", region.name)
            except (ValueError, OSError, MalformedArchiveError) as exc:
                logger.warning("%s: cached table unreadable (%s); re-extracting", region.name, exc)

        table = parse_archive(archive, region)
        self._write_region_table(cache, table, archive, remote, catalog)
        return table

    def _write_region_table(
        self,
        cache: CacheManager,
        table: RegionTable,
        archive: Path,
        remote: Optional[RemoteArtifact],
        catalog: RemoteCatalog,
    ) -> None:
        region = table.region
        df = UnifiedDataset(records=list(table.records)).to_frame()
        table_path = cache.local_path(region, ArtifactKind.EXTRACTED_TABLE)
        write_parquet(df, table_path)

        now = utc_now()
        manifest = {
            "region": region.key,
            "name": region.name,
            "country_num": region.country_num,
            "state_num": region.state_num,
            "status": "fetched" if remote is not None else "reparsed",
            "source": {
                "file_name": region.file_name,
                "remote_url": catalog.url_for(remote.name) if remote is not None else None,
                "remote_size": remote.size if remote is not None else None,
                "remote_last_modified": remote.last_modified.isoformat() if remote and remote.last_modified else None,
                "retrieved_at": now if remote is not None else None,
            },
            "manifest": {
                "raw_files": [file_entry(archive)],
                "output_files": [file_entry(table_path, "parquet")],
                "row_count": int(len(df)),
                "dropped_rows": table.dropped_rows,
                "columns": list(df.columns),
                "source_members": list(table.source_members),
            },
            "parsed_at": now,
        }
        manifest.update(evaluate(df, table.dropped_rows, region.state_num))
        write_json(manifest, cache.manifest_path(region))

        summary = {
            "region": region.key,
            "name": region.name,
            "row_count": manifest["manifest"]["row_count"],
            "dropped_rows": table.dropped_rows,
            "overall_confidence_badge": manifest["overall_confidence_badge"],
            "parsed_at": now,
        }
        with self._catalog_lock:
            write_catalog(cache.catalog_path(), upsert_catalog_entry(cache.catalog_path(), summary))

    # ── batch driver ─────────────────────────────────────────────────
    def _run(
        self,
        regions: List[RegionDescriptor],
        work: Callable[[RegionDescriptor], T],
        policy: FailurePolicy,
    ) -> Tuple[List[Tuple[RegionDescriptor, T]], Dict[str, str]]:
        """Apply ``work`` to each region, returning results in request order."""
        policy = FailurePolicy(policy)
        results: Dict[int, T] = {}
        skipped: Dict[str, str] = {}

        def record_failure(region: RegionDescriptor, exc: BBSIngestError) -> None:
            if policy is FailurePolicy.FAIL_FAST:
                raise exc
            logger.warning("%s: skipped (%s)", region.name, exc)
            skipped[region.name] = str(exc)

        if self.settings.max_workers <= 1 or len(regions) <= 1:
            for idx, region in enumerate(regions):
                try:
                    results[idx] = work(region)
                except REGION_ERRORS as exc:
                    record_failure(region, exc)
        else:
            executor = ThreadPoolExecutor(max_workers=self.settings.max_workers)
            try:
                futures: Dict[Future, int] = {executor.submit(work, region): idx for idx, region in enumerate(regions)}
                for future in as_completed(futures):
                    idx = futures[future]
                    try:
                        results[idx] = future.result()
                    except REGION_ERRORS as exc:
                        record_failure(regions[idx], exc)
            except BaseException:
                executor.shutdown(wait=True, cancel_futures=True)
                raise
            executor.shutdown(wait=True)

        if skipped:
            logger.warning("%d of %d region(s) skipped", len(skipped), len(regions))
        ordered = [(regions[idx], results[idx]) for idx in sorted(results)]
        return ordered, skipped

    # ── public surface ───────────────────────────────────────────────
    def download_regions(
        self,
        regions: Sequence[RegionLike] | RegionLike | None = None,
        cache_dir: str | Path | None = None,
        overwrite: bool = False,
        policy: FailurePolicy = FailurePolicy.FAIL_FAST,
    ) -> DownloadReport:
        descriptors = self._descriptors(regions)
        cache = self.cache(cache_dir)
        catalog = self._catalog(self.settings.states_url)

        outcomes, skipped = self._run(
            descriptors,
            lambda region: self._ensure(cache, region, ArtifactKind.RAW_ARCHIVE, overwrite, catalog),
            policy,
        )
        report = DownloadReport(skipped=skipped)
        for region, (path, remote) in outcomes:
            (report.fetched if remote is not None else report.reused).append(region.name)
            report.paths[region.name] = path
        logger.info(
            "Download complete: %d fetched, %d reused, %d skipped",
            len(report.fetched),
            len(report.reused),
            len(report.skipped),
        )
        return report

    def import_regions(
        self,
        regions: Sequence[RegionLike] | RegionLike | None = None,
        cache_dir: str | Path | None = None,
        overwrite: bool = False,
        policy: FailurePolicy = FailurePolicy.FAIL_FAST,
    ) -> UnifiedDataset:
        descriptors = self._descriptors(regions)
        cache = self.cache(cache_dir)
        catalog = self._catalog(self.settings.states_url)

        outcomes, skipped = self._run(
            descriptors,
            lambda region: self._region_table(cache, region, overwrite, catalog),
            policy,
        )
        return assemble([table for _, table in outcomes], skipped=skipped)

    def _metadata_path(self, kind: ArtifactKind, cache_dir: str | Path | None, overwrite: bool) -> Path:
        cache = self.cache(cache_dir)
        path, _ = self._ensure(cache, None, kind, overwrite, self._catalog(self.settings.root_url))
        return path

    def get_route_metadata(self, cache_dir: str | Path | None = None, overwrite: bool = False) -> List[RouteInfo]:
        return parse_routes(self._metadata_path(ArtifactKind.ROUTES, cache_dir, overwrite))

    def get_condition_metadata(
        self,
        cache_dir: str | Path | None = None,
        overwrite: bool = False,
    ) -> List[RunConditions]:
        return parse_conditions(self._metadata_path(ArtifactKind.CONDITIONS, cache_dir, overwrite))

    def get_species_taxonomy(self, path: str | Path | None = None) -> TaxonomyTable:
        if path is not None:
            return load_species_list(path)
        return fetch_species_list(self.settings.species_url, session=self.session, timeout=self.settings.catalog_timeout)


def _extracted_from(manifest: Dict[str, object], archive: Path) -> bool:
    """True when the manifest's recorded raw file is byte-for-byte ``archive``."""
    raw_files = manifest.get("manifest", {}).get("raw_files") or []
    if not raw_files:
        return False
    recorded = raw_files[0]
    if recorded.get("size_bytes") != archive.stat().st_size:
        return False
    return recorded.get("sha256") == sha256_for_file(archive)


def _write_table(df: pd.DataFrame, out: Path) -> None:
    out.parent.mkdir(parents=True, exist_ok=True)
    if out.suffix.lower() == ".csv":
        df.to_csv(out, index=False)
    else:
        write_parquet(df, out)


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="bbs-ingest", description="Fetch and import BBS route-level survey data")
    parser.add_argument("--config", help="YAML settings file")
    parser.add_argument("--cache-dir", help="local cache directory")
    parser.add_argument("--log-level", default="INFO")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("regions", help="list known regions")

    for name in ("download", "import"):
        cmd = sub.add_parser(name, help=f"{name} per-region archives")
        cmd.add_argument("--region", action="append", help="region name or abbreviation; repeat for several (default: all)")
        cmd.add_argument("--overwrite", action="store_true")
        cmd.add_argument("--best-effort", action="store_true", help="skip failing regions instead of aborting")
        cmd.add_argument("--workers", type=int, help="parallel region workers")
        if name == "import":
            cmd.add_argument("--out", default="data/bbs_observations.parquet")
            cmd.add_argument("--with-taxonomy", action="store_true")
            cmd.add_argument("--species-list", help="local SpeciesList.txt instead of the remote copy")

    species = sub.add_parser("species", help="fetch the species list")
    species.add_argument("--out", default="data/bbs_species.csv")
    species.add_argument("--species-list", help="local SpeciesList.txt instead of the remote copy")

    args = parser.parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s %(message)s")

    settings = load_settings(args.config, cache_dir=args.cache_dir, max_workers=getattr(args, "workers", None))
    pipeline = BBSPipeline(settings)

    if args.command == "regions":
        payload = [
            {"name": r.name, "abbreviation": r.abbreviation, "country_num": r.country_num, "state_num": r.state_num, "file_name": r.file_name}
            for r in pipeline.list_regions()
        ]
        print(json.dumps(payload, indent=2))
        return 0

    if args.command == "species":
        taxonomy = pipeline.get_species_taxonomy(args.species_list)
        df = pd.DataFrame([asdict(t) for t in taxonomy.values()])
        _write_table(df, Path(args.out))
        print(json.dumps({"status": "done", "taxa": len(taxonomy), "out": args.out}, indent=2))
        return 0

    policy = FailurePolicy.BEST_EFFORT if args.best_effort else FailurePolicy.FAIL_FAST
    regions = pipeline.resolve_regions(args.region)

    if args.command == "download":
        report = pipeline.download_regions(regions, settings.cache_dir, args.overwrite, policy)
        print(json.dumps({"status": "done", **report.as_dict()}, indent=2))
        return 1 if report.skipped else 0

    dataset = pipeline.import_regions(regions, settings.cache_dir, args.overwrite, policy)
    if args.with_taxonomy:
        taxonomy = pipeline.get_species_taxonomy(args.species_list)
        df = enriched_frame(enrich(dataset, taxonomy=taxonomy))
    else:
        df = dataset.to_frame()
    _write_table(df, Path(args.out))
    print(
        json.dumps(
            {
                "status": "done",
                "rows": len(dataset),
                "regions": dataset.regions,
                "dropped_rows": dataset.dropped_rows,
                "skipped": dataset.skipped,
                "out": args.out,
            },
            indent=2,
        )
    )
    return 1 if dataset.skipped else 0


if __name__ == "__main__":
    raise SystemExit(main())
