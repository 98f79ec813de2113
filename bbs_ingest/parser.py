"""Zip archive -> typed rows.

Every BBS archive holds one or more comma-delimited tables whose header
casing and column order drift between regions and releases. Readers here
normalize headers to a fixed vocabulary, coerce the numeric keys and drop
(never fail on) rows that cannot be coerced.
"""

from __future__ import annotations

import io
import logging
import re
import zipfile
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

import pandas as pd

from bbs_ingest.errors import MalformedArchiveError
from bbs_ingest.models import (
    ObservationRecord,
    RegionDescriptor,
    RegionTable,
    RouteInfo,
    RunConditions,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

TABLE_SUFFIXES = (".csv", ".txt")

# Normalized header (lowercase, alphanumerics only) -> canonical column.
COLUMN_ALIASES: Dict[str, str] = {
    "countrynum": "country_num",
    "countrycode": "country_num",
    "statenum": "state_num",
    "statecode": "state_num",
    "route": "route",
    "routenum": "route",
    "rpid": "rpid",
    "year": "year",
    "aou": "aou",
    "speciescode": "aou",
    "speciestotal": "count",
    "count": "count",
    "routedataid": "route_data_id",
    "routename": "route_name",
    "active": "active",
    "latitude": "latitude",
    "lati": "latitude",
    "longitude": "longitude",
    "longi": "longitude",
    "stratum": "stratum",
    "bcr": "bcr",
    "month": "month",
    "day": "day",
    "obsn": "obs_n",
    "starttemp": "start_temp",
    "endtemp": "end_temp",
    "tempscale": "temp_scale",
    "startwind": "start_wind",
    "endwind": "end_wind",
    "startsky": "start_sky",
    "endsky": "end_sky",
    "starttime": "start_time",
    "endtime": "end_time",
    "assistant": "assistant",
    "qualitycurrentid": "quality_current_id",
    "runtype": "run_type",
}

OBSERVATION_KEYS = ["country_num", "state_num", "route", "year", "aou", "count"]
ROUTE_KEYS = ["country_num", "state_num", "route"]
CONDITION_KEYS = ["country_num", "state_num", "route", "year"]

# Per-stop count columns used when a file has no species total.
_STOP_COLUMN = re.compile(r"^(count\d+|stop\d+)$")


def normalize_header(name: object) -> str:
    return re.sub(r"[^a-z0-9]", "", str(name).strip().lower())


def standardize_columns(df: pd.DataFrame) -> pd.DataFrame:
    out = df.copy(deep=False)
    renamed = []
    for col in out.columns:
        key = normalize_header(col)
        renamed.append(COLUMN_ALIASES.get(key, key))
    out.columns = renamed
    # Keep the first of any columns that collapse onto the same name.
    return out.loc[:, ~out.columns.duplicated()]


def _read_member(payload: bytes) -> pd.DataFrame:
    return pd.read_csv(
        io.BytesIO(payload),
        dtype=str,
        encoding="latin-1",
        skipinitialspace=True,
        keep_default_na=True,
    )


def _iter_members(archive: zipfile.ZipFile, prefix: str = "") -> Iterable[Tuple[str, bytes]]:
    for info in archive.infolist():
        name = info.filename
        if info.is_dir() or name.startswith("__MACOSX/") or Path(name).name.startswith("."):
            continue
        lower = name.lower()
        if lower.endswith(".zip"):
            with zipfile.ZipFile(io.BytesIO(archive.read(info))) as nested:
                yield from _iter_members(nested, prefix=f"{prefix}{name}/")
        elif lower.endswith(TABLE_SUFFIXES):
            yield f"{prefix}{name}", archive.read(info)


def read_archive_tables(
    path: Path,
    required: List[str],
    region: Optional[str] = None,
) -> List[Tuple[str, pd.DataFrame]]:
    """Return ``(member name, standardized frame)`` for every recognizable table.

    A member is recognizable when, after header normalization, it carries
    every column in ``required``. Members that are not (read-me files,
    code lists) are skipped.
    """
    path = Path(path)
    tables: List[Tuple[str, pd.DataFrame]] = []
    try:
        with zipfile.ZipFile(path) as archive:
            members = list(_iter_members(archive))
    except (zipfile.BadZipFile, OSError, EOFError) as exc:
        raise MalformedArchiveError(region, path, f"cannot decompress: {exc}") from exc

    for member, payload in members:
        try:
            df = standardize_columns(_read_member(payload))
        except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as exc:
            logger.warning("%s: skipping unreadable member %s (%s)", path.name, member, exc)
            continue

        missing = [c for c in required if c not in df.columns]
        if missing:
            logger.debug("%s: member %s lacks columns %s", path.name, member, missing)
            continue
        tables.append((member, df))

    if not tables:
        raise MalformedArchiveError(
            region,
            path,
            f"no table with columns {required} among {[m for m, _ in members]}",
        )
    return tables


def coerce_required(
    df: pd.DataFrame,
    columns: List[str],
    label: str,
) -> Tuple[pd.DataFrame, int]:
    """Coerce ``columns`` to integers and drop rows where that fails.

    Returns the surviving rows and the number of rows dropped.
    """
    out = df.copy()
    bad = pd.Series(False, index=out.index)
    for col in columns:
        raw = out[col]
        if not pd.api.types.is_numeric_dtype(raw):
            raw = raw.astype("string").str.strip()
        values = pd.to_numeric(raw, errors="coerce").astype("float64")
        invalid = values.isna() | (values % 1 != 0)
        if invalid.any():
            samples = out.loc[invalid, col].head(5).tolist()
            logger.warning(
                "%s: %s rows with non-numeric %s. Samples: %s",
                label,
                f"{int(invalid.sum()):,}",
                col,
                samples,
            )
        bad |= invalid
        out[col] = values

    dropped = int(bad.sum())
    out = out.loc[~bad].copy()
    for col in columns:
        out[col] = out[col].astype("int64")
    return out, dropped


def _derive_count(df: pd.DataFrame) -> pd.DataFrame:
    if "count" in df.columns:
        return df
    stop_cols = [c for c in df.columns if _STOP_COLUMN.match(c)]
    if not stop_cols:
        return df
    out = df.copy()
    stops = out[stop_cols].apply(pd.to_numeric, errors="coerce")
    # any unreadable stop makes the total unreadable, so the row is dropped later
    out["count"] = stops.sum(axis=1, min_count=len(stop_cols)).where(stops.notna().all(axis=1))
    return out


def _opt_int(value: object) -> Optional[int]:
    if value is None or pd.isna(value):
        return None
    number = pd.to_numeric(str(value).strip(), errors="coerce")
    if pd.isna(number):
        return None
    return int(number)


def _opt_float(value: object) -> Optional[float]:
    if value is None or pd.isna(value):
        return None
    number = pd.to_numeric(str(value).strip(), errors="coerce")
    return None if pd.isna(number) else float(number)


def _opt_str(value: object) -> Optional[str]:
    if value is None or pd.isna(value):
        return None
    text = str(value).strip()
    return text or None


def _records(df: pd.DataFrame, build: Callable[[Dict[str, object]], T]) -> List[T]:
    return [build(row) for row in df.to_dict(orient="records")]


def parse_archive(path: str | Path, region: RegionDescriptor) -> RegionTable:
    """Parse one region's raw archive into observation records.

    Every record is tagged with ``region.name``; the numeric codes come from
    the file itself.
    """
    path = Path(path)
    label = f"{region.name} ({path.name})"
    tables = read_archive_tables(
        path,
        required=[c for c in OBSERVATION_KEYS if c != "count"],
        region=region.name,
    )

    frames = []
    for member, df in tables:
        df = _derive_count(df)
        if "count" not in df.columns:
            logger.warning("%s: member %s has no species total or stop counts; skipped", label, member)
            continue
        frames.append(df)
    if not frames:
        raise MalformedArchiveError(region.name, path, "no table with a species count column")

    combined = pd.concat(frames, ignore_index=True)
    if "rpid" not in combined.columns:
        combined["rpid"] = None
    clean, dropped = coerce_required(combined, OBSERVATION_KEYS, label)

    foreign = clean["state_num"] != region.state_num
    if foreign.any():
        logger.warning(
            "%s: %s rows carry state_num other than %d",
            label,
            f"{int(foreign.sum()):,}",
            region.state_num,
        )

    records = tuple(
        _records(
            clean,
            lambda row: ObservationRecord(
                country_num=int(row["country_num"]),
                state_num=int(row["state_num"]),
                route=int(row["route"]),
                rpid=_opt_int(row["rpid"]),
                year=int(row["year"]),
                aou=int(row["aou"]),
                count=int(row["count"]),
                state=region.name,
            ),
        )
    )
    logger.info("%s: parsed %s rows (dropped %s)", label, f"{len(records):,}", f"{dropped:,}")
    return RegionTable(
        region=region,
        records=records,
        dropped_rows=dropped,
        source_members=tuple(member for member, _ in tables),
    )


def parse_routes(path: str | Path) -> List[RouteInfo]:
    path = Path(path)
    tables = read_archive_tables(path, required=ROUTE_KEYS)
    combined = pd.concat([df for _, df in tables], ignore_index=True)
    clean, _ = coerce_required(combined, ROUTE_KEYS, path.name)
    clean = clean.drop_duplicates(subset=ROUTE_KEYS, keep="first")

    return _records(
        clean,
        lambda row: RouteInfo(
            country_num=row["country_num"],
            state_num=row["state_num"],
            route=row["route"],
            route_name=_opt_str(row.get("route_name")),
            active=_opt_int(row.get("active")),
            latitude=_opt_float(row.get("latitude")),
            longitude=_opt_float(row.get("longitude")),
            stratum=_opt_int(row.get("stratum")),
            bcr=_opt_int(row.get("bcr")),
        ),
    )


def parse_conditions(path: str | Path) -> List[RunConditions]:
    path = Path(path)
    tables = read_archive_tables(path, required=CONDITION_KEYS)
    combined = pd.concat([df for _, df in tables], ignore_index=True)
    clean, _ = coerce_required(combined, CONDITION_KEYS, path.name)

    return _records(
        clean,
        lambda row: RunConditions(
            country_num=row["country_num"],
            state_num=row["state_num"],
            route=row["route"],
            rpid=_opt_int(row.get("rpid")),
            year=row["year"],
            month=_opt_int(row.get("month")),
            day=_opt_int(row.get("day")),
            obs_n=_opt_int(row.get("obs_n")),
            start_temp=_opt_float(row.get("start_temp")),
            end_temp=_opt_float(row.get("end_temp")),
            temp_scale=_opt_str(row.get("temp_scale")),
            start_wind=_opt_int(row.get("start_wind")),
            end_wind=_opt_int(row.get("end_wind")),
            start_sky=_opt_int(row.get("start_sky")),
            end_sky=_opt_int(row.get("end_sky")),
            start_time=_opt_int(row.get("start_time")),
            end_time=_opt_int(row.get("end_time")),
            assistant=_opt_int(row.get("assistant")),
            quality_current_id=_opt_int(row.get("quality_current_id")),
            run_type=_opt_int(row.get("run_type")),
        ),
    )


def records_from_frame(df: pd.DataFrame, region: RegionDescriptor) -> Tuple[ObservationRecord, ...]:
    """Rebuild records from a cached extracted table."""
    missing = [c for c in OBSERVATION_KEYS if c not in df.columns]
    if missing:
        raise MalformedArchiveError(region.name, region.key, f"cached table lacks {missing}")
    rpids = df["rpid"] if "rpid" in df.columns else pd.Series([None] * len(df), index=df.index)
    return tuple(
        ObservationRecord(
            country_num=int(c),
            state_num=int(s),
            route=int(r),
            rpid=_opt_int(p),
            year=int(y),
            aou=int(a),
            count=int(n),
            state=region.name,
        )
        for c, s, r, p, y, a, n in zip(
            df["country_num"], df["state_num"], df["route"], rpids, df["year"], df["aou"], df["count"]
        )
    )
