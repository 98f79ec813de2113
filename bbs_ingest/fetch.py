from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Dict, Optional

import requests

from bbs_ingest.catalog import DEFAULT_HEADERS
from bbs_ingest.errors import FetchError

logger = logging.getLogger(__name__)


class Fetcher:
    """Single-shot download of one remote file into the cache.

    There is no retry: a failed transfer raises :class:`FetchError` and the
    caller decides what to do. Bytes are streamed into ``<name>.part`` and
    renamed into place only once the body has been fully received, so an
    interrupted transfer never leaves a file at the cache path.
    """

    def __init__(
        self,
        session: requests.Session | None = None,
        timeout: float = 300,
        chunk_size: int = 1024 * 1024,
        headers: Dict[str, str] | None = None,
    ) -> None:
        self.session = session or requests.Session()
        self.timeout = timeout
        self.chunk_size = chunk_size
        self.headers = headers or dict(DEFAULT_HEADERS)

    def fetch(self, remote_url: str, local_path: Path, region: Optional[str] = None) -> int:
        local_path = Path(local_path)
        created_dir = not local_path.parent.exists()
        local_path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = local_path.with_name(local_path.name + ".part")

        def discard() -> None:
            temp_path.unlink(missing_ok=True)
            # no empty region directory is left behind
            if created_dir and not any(local_path.parent.iterdir()):
                local_path.parent.rmdir()

        written = 0
        try:
            with self.session.get(remote_url, headers=self.headers, stream=True, timeout=self.timeout) as response:
                response.raise_for_status()
                expected = response.headers.get("Content-Length")
                if response.headers.get("Content-Encoding"):
                    # decoded size differs from the advertised wire size
                    expected = None
                with temp_path.open("wb") as fh:
                    for chunk in response.iter_content(chunk_size=self.chunk_size):
                        if chunk:
                            fh.write(chunk)
                            written += len(chunk)
            if expected is not None and expected.isdigit() and int(expected) != written:
                raise FetchError(region, remote_url, local_path, f"truncated transfer: {written} of {expected} bytes")
            if written == 0:
                raise FetchError(region, remote_url, local_path, "empty response body")
            os.replace(temp_path, local_path)
        except FetchError:
            discard()
            raise
        except (requests.RequestException, OSError) as exc:
            discard()
            raise FetchError(region, remote_url, local_path, f"{exc.__class__.__name__}: {exc}") from exc

        logger.info("Fetched %s (%s bytes) -> %s", remote_url, f"{written:,}", local_path)
        return written
