from __future__ import annotations

import hashlib
import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List

import pandas as pd


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def sha256_for_file(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as fh:
        for chunk in iter(lambda: fh.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def write_parquet(df: pd.DataFrame, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    temp = path.with_name(path.name + ".part")
    df.to_parquet(temp, index=False)
    os.replace(temp, path)


def write_json(payload: Dict[str, Any], path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2, default=str), encoding="utf-8")


def read_json(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    return json.loads(path.read_text(encoding="utf-8"))


def file_entry(path: Path, fmt: str | None = None) -> Dict[str, Any]:
    entry: Dict[str, Any] = {
        "path": path.name,
        "sha256": sha256_for_file(path),
        "size_bytes": path.stat().st_size,
    }
    if fmt:
        entry["format"] = fmt
    return entry


def upsert_catalog_entry(catalog_path: Path, entry: Dict[str, Any], key: str = "region") -> List[Dict[str, Any]]:
    catalog = read_json(catalog_path).get("regions", []) if catalog_path.exists() else []
    catalog = [x for x in catalog if x.get(key) != entry.get(key)]
    catalog.append(entry)
    return sorted(catalog, key=lambda x: str(x.get(key)))


def write_catalog(catalog_path: Path, entries: List[Dict[str, Any]]) -> None:
    payload = {
        "generated_at": utc_now(),
        "regions": entries,
    }
    write_json(payload, catalog_path)


def getenv(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name, default)
    if value is not None and not value.strip():
        return default
    return value
