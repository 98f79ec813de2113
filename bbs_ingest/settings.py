from __future__ import annotations

from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict
from urllib.parse import urljoin

import yaml

from bbs_ingest.common import getenv

DEFAULT_BASE_URL = "https://ftpext.usgs.gov/pub/er/md/laurel/BBS/DataFiles/"

ENV_PREFIX = "BBS_"


@dataclass(frozen=True)
class Settings:
    base_url: str = DEFAULT_BASE_URL
    states_dir: str = "States/"
    routes_file: str = "Routes.zip"
    weather_file: str = "Weather.zip"
    species_list_file: str = "SpeciesList.txt"
    species_list_url: str | None = None
    cache_dir: str = "data/bbs"
    timeout: float = 300.0
    catalog_timeout: float = 60.0
    user_agent: str = "bbs-ingest/0.3 (+route-level survey retrieval)"
    max_workers: int = 1
    verify_remote: bool = False

    @property
    def root_url(self) -> str:
        return self.base_url if self.base_url.endswith("/") else self.base_url + "/"

    @property
    def states_url(self) -> str:
        states = self.states_dir if self.states_dir.endswith("/") else self.states_dir + "/"
        return urljoin(self.root_url, states)

    @property
    def species_url(self) -> str:
        return self.species_list_url or urljoin(self.root_url, self.species_list_file)

    @property
    def headers(self) -> Dict[str, str]:
        return {"User-Agent": self.user_agent}


def _coerce(name: str, value: Any) -> Any:
    if value is None:
        return None
    if name in {"timeout", "catalog_timeout"}:
        return float(value)
    if name == "max_workers":
        return max(1, int(value))
    if name == "verify_remote":
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}
    return str(value)


def load_settings(path: str | Path | None = None, **overrides: Any) -> Settings:
    """Build settings from defaults, an optional YAML file, ``BBS_*`` env vars
    and explicit keyword overrides, in increasing order of precedence."""
    values: Dict[str, Any] = {}
    names = [f.name for f in fields(Settings)]

    if path is not None:
        with Path(path).open("r", encoding="utf-8") as fh:
            payload = yaml.safe_load(fh) or {}
        section = payload.get("bbs", payload)
        unknown = sorted(set(section) - set(names))
        if unknown:
            raise ValueError(f"Unknown settings in {path}: {unknown}")
        values.update({k: _coerce(k, v) for k, v in section.items()})

    for name in names:
        env_value = getenv(f"{ENV_PREFIX}{name.upper()}")
        if env_value is not None:
            values[name] = _coerce(name, env_value)

    values.update({k: _coerce(k, v) for k, v in overrides.items() if v is not None})
    return replace(Settings(), **values)
