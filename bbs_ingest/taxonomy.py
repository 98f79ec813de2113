from __future__ import annotations

import io
import logging
import re
from pathlib import Path
from typing import List, Tuple

import pandas as pd
import requests

from bbs_ingest.catalog import DEFAULT_HEADERS
from bbs_ingest.errors import FetchError, MalformedArchiveError
from bbs_ingest.models import Taxon, TaxonomyTable

logger = logging.getLogger(__name__)

SPECIES_LIST_ENCODING = "latin-1"

_DASH_RUN = re.compile(r"-+")


def _column_spans(header: str, underline: str) -> Tuple[List[str], List[Tuple[int, int]]]:
    spans = [(m.start(), m.end()) for m in _DASH_RUN.finditer(underline)]
    names = [re.sub(r"[^a-z0-9]+", "_", header[start:end].strip().lower()).strip("_") for start, end in spans]
    # The final column runs to end of line even when its underline is short.
    if spans:
        spans[-1] = (spans[-1][0], None)  # type: ignore[assignment]
    return names, spans


def parse_species_list(text: str, source: str = "SpeciesList.txt") -> TaxonomyTable:
    """Parse the survey's fixed-width species list.

    The file opens with free-text front matter, then a header row whose
    columns are underlined by runs of dashes; the dash runs give the
    column extents for every row below.
    """
    lines = text.splitlines()
    header_idx = None
    for idx in range(len(lines) - 1):
        if re.search(r"\bAOU\b", lines[idx]) and set(lines[idx + 1].strip()) <= {"-", " "} and "-" in lines[idx + 1]:
            header_idx = idx
            break
    if header_idx is None:
        raise MalformedArchiveError(None, source, "species list header with dashed underline not found")

    names, spans = _column_spans(lines[header_idx], lines[header_idx + 1])
    body = "\n".join(lines[header_idx + 2:])
    df = pd.read_fwf(io.StringIO(body), colspecs=spans, names=names, dtype=str)
    if "aou" not in df.columns:
        raise MalformedArchiveError(None, source, f"species list has no AOU column: {names}")

    aou = pd.to_numeric(df["aou"].str.strip(), errors="coerce")
    bad = aou.isna()
    if bad.any():
        logger.warning("%s: dropped %s rows without a numeric AOU", source, f"{int(bad.sum()):,}")
    df = df.loc[~bad].copy()
    df["aou"] = aou[~bad].astype("int64")

    def text_of(row, column: str) -> str | None:
        value = row.get(column)
        if value is None or pd.isna(value):
            return None
        return str(value).strip() or None

    taxa = []
    for row in df.to_dict(orient="records"):
        genus = text_of(row, "genus")
        species = text_of(row, "species")
        latin = " ".join(part for part in (genus, species) if part) or None
        taxa.append(
            Taxon(
                aou=int(row["aou"]),
                common_name=text_of(row, "english_common_name"),
                french_name=text_of(row, "french_common_name"),
                latin_name=latin,
                order=text_of(row, "order"),
                family=text_of(row, "family"),
                genus=genus,
                species=species,
            )
        )
    logger.info("%s: loaded %s taxa", source, f"{len(taxa):,}")
    return TaxonomyTable(taxa)


def load_species_list(path: str | Path) -> TaxonomyTable:
    path = Path(path)
    return parse_species_list(path.read_bytes().decode(SPECIES_LIST_ENCODING), source=str(path))


def fetch_species_list(
    url: str,
    session: requests.Session | None = None,
    timeout: float = 60,
) -> TaxonomyTable:
    session = session or requests.Session()
    try:
        response = session.get(url, headers=dict(DEFAULT_HEADERS), timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as exc:
        raise FetchError(None, url, "<memory>", f"{exc.__class__.__name__}: {exc}") from exc
    return parse_species_list(response.content.decode(SPECIES_LIST_ENCODING), source=url)
