from __future__ import annotations

from pathlib import Path
from typing import Optional


class BBSIngestError(Exception):
    """Base class for every error raised by the ingestion pipeline."""


class UnknownRegionError(BBSIngestError, LookupError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Unknown region: {name!r}")


class CatalogUnavailableError(BBSIngestError):
    def __init__(self, url: str, cause: BaseException | str) -> None:
        self.url = url
        self.cause = cause
        super().__init__(f"Remote catalog unavailable at {url}: {cause}")


class FetchError(BBSIngestError):
    def __init__(
        self,
        region: Optional[str],
        remote: str,
        local: Path | str,
        reason: str,
    ) -> None:
        self.region = region
        self.remote = remote
        self.local = Path(local)
        self.reason = reason
        label = region or "metadata"
        super().__init__(f"Fetch failed for {label} ({remote} -> {local}): {reason}")


class MalformedArchiveError(BBSIngestError):
    def __init__(self, region: Optional[str], path: Path | str, reason: str) -> None:
        self.region = region
        self.path = Path(path)
        self.reason = reason
        label = region or "metadata"
        super().__init__(f"Malformed archive for {label} ({path}): {reason}")
