"""Shared fixtures: an in-memory BBS file server and archive builders.

Nothing here touches the network. ``FakeServer`` stands in for a
``requests.Session`` and records every URL it is asked for, which is how
the tests count network round-trips.
"""

from __future__ import annotations

import io
import zipfile
from pathlib import Path
from typing import Dict, List, Sequence

import pytest
import requests

from bbs_ingest.regions import load_region_index
from bbs_ingest.settings import Settings

BASE_URL = "https://bbs.example.test/DataFiles/"
STATES_URL = BASE_URL + "States/"

FLORIDA_CSV = (
    "RouteDataID,CountryNum,StateNum,Route,RPID,Year,AOU,Count10,Count20,Count30,Count40,Count50,StopTotal,SpeciesTotal\n"
    "6001,840,25,1,101,2019,06882,1,0,2,0,1,3,4\n"
    "6001,840,25,1,101,2019,04740,0,1,0,0,0,1,1\n"
    "6002,840,25,2,101,2019,06882,2,2,0,0,0,2,4\n"
    "6003,840,25,1,101,2020,03160,5,3,2,1,0,8,11\n"
)

# Same schema, different casing and column order.
NEBRASKA_CSV = (
    "aou,speciestotal,year,route,rpid,statenum,countrynum,routedataid\n"
    "06882,7,2019,12,101,54,840,9001\n"
    "99999,2,2019,12,101,54,840,9001\n"
    "04740,3,2020,14,101,54,840,9002\n"
)

ROUTES_CSV = (
    "CountryNum,StateNum,Route,RouteName,Active,Latitude,Longitude,Stratum,BCR,RouteTypeID,RouteTypeDetailID\n"
    "840,25,1,OKEECHOBEE,1,27.25,-80.83,3,31,1,1\n"
    "840,54,12,OGALLALA,1,41.13,-101.72,36,18,1,1\n"
)

WEATHER_CSV = (
    "RouteDataID,CountryNum,StateNum,Route,RPID,Year,Month,Day,ObsN,TotalSpp,StartTemp,EndTemp,TempScale,"
    "StartWind,EndWind,StartSky,EndSky,StartTime,EndTime,Assistant,QualityCurrentID,RunType\n"
    "6001,840,25,1,101,2019,5,14,1234,40,68,81,F,1,2,0,1,0540,1012,0,1,1\n"
    "9001,840,54,12,101,2019,6,2,2345,35,55,70,F,2,3,1,1,0530,0955,1,1,1\n"
)

SPECIES_COLUMNS = [
    ("Seq", 5),
    ("AOU", 7),
    ("English_Common_Name", 32),
    ("French_Common_Name", 30),
    ("ORDER", 18),
    ("Family", 14),
    ("Genus", 13),
    ("Species", 12),
]


def species_list_text(rows: Sequence[Sequence[str]]) -> str:
    """Render rows in the survey's dash-underlined fixed-width layout."""

    def fmt(values: Sequence[str]) -> str:
        return "".join(str(v).ljust(width) for v, (_, width) in zip(values, SPECIES_COLUMNS)).rstrip()

    lines = [
        "                 North American Breeding Bird Survey",
        "                        Species List",
        "",
        fmt([name for name, _ in SPECIES_COLUMNS]),
        "".join(("-" * (width - 1)).ljust(width) for _, width in SPECIES_COLUMNS).rstrip(),
    ]
    lines.extend(fmt(row) for row in rows)
    return "\n".join(lines) + "\n"


SPECIES_ROWS = [
    ["1", "06882", "Test Warbler", "Paruline test", "Passeriformes", "Parulidae", "Setophaga", "testa"],
    ["2", "04740", "American Kestrel", "Crécerelle d'Amérique", "Falconiformes", "Falconidae", "Falco", "sparverius"],
    ["3", "03160", "Mourning Dove", "Tourterelle triste", "Columbiformes", "Columbidae", "Zenaida", "macroura"],
]


def zip_bytes(members: Dict[str, str | bytes]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for name, payload in members.items():
            zf.writestr(name, payload)
    return buf.getvalue()


def write_zip(path: Path, members: Dict[str, str | bytes]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(zip_bytes(members))
    return path


def apache_listing(files: Dict[str, bytes]) -> str:
    rows = "\n".join(
        f'<tr><td valign="top"><img src="/icons/compressed.gif" alt="[   ]"></td>'
        f'<td><a href="{name}">{name}</a></td><td align="right">2023-11-20 09:41  </td>'
        f'<td align="right">{len(payload)}</td><td>&nbsp;</td></tr>'
        for name, payload in files.items()
    )
    return (
        "<html><head><title>Index of /States</title></head><body><table>"
        '<tr><th><a href="?C=N;O=D">Name</a></th><th><a href="?C=M;O=A">Last modified</a></th></tr>'
        '<tr><td></td><td><a href="/DataFiles/">Parent Directory</a></td><td>&nbsp;</td></tr>'
        f"{rows}</table></body></html>"
    )


class FakeResponse:
    def __init__(
        self,
        url: str,
        body: bytes,
        status_code: int = 200,
        headers: Dict[str, str] | None = None,
        fail_after: int | None = None,
    ) -> None:
        self.url = url
        self.content = body
        self.status_code = status_code
        self.headers = {"Content-Length": str(len(body))} if headers is None else headers
        self.fail_after = fail_after

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error for url: {self.url}", response=self)

    def iter_content(self, chunk_size: int = 1):
        for start in range(0, len(self.content), max(1, chunk_size)):
            if self.fail_after is not None and start >= self.fail_after:
                raise requests.ConnectionError("connection reset by peer")
            yield self.content[start:start + chunk_size]

    def __enter__(self) -> "FakeResponse":
        return self

    def __exit__(self, *exc) -> None:
        return None


class FakeServer:
    """Dict-backed stand-in for ``requests.Session``."""

    def __init__(self) -> None:
        self.files: Dict[str, bytes] = {}
        self.pages: Dict[str, str] = {}
        self.errors: Dict[str, Exception] = {}
        self.interrupt: Dict[str, int] = {}
        self.calls: List[str] = []

    def serve_states(self, files: Dict[str, bytes]) -> None:
        for name, payload in files.items():
            self.files[STATES_URL + name] = payload
        self.pages[STATES_URL] = apache_listing(files)

    def serve_root(self, files: Dict[str, bytes]) -> None:
        for name, payload in files.items():
            self.files[BASE_URL + name] = payload
        self.pages[BASE_URL] = apache_listing(files)

    def get(self, url: str, headers=None, stream: bool = False, timeout=None, **kwargs) -> FakeResponse:
        self.calls.append(url)
        if url in self.errors:
            raise self.errors[url]
        if url in self.pages:
            return FakeResponse(url, self.pages[url].encode("utf-8"))
        if url in self.files:
            return FakeResponse(url, self.files[url], fail_after=self.interrupt.get(url))
        return FakeResponse(url, b"Not Found", status_code=404)


@pytest.fixture()
def region_index():
    return load_region_index()


@pytest.fixture()
def settings():
    return Settings(base_url=BASE_URL)


@pytest.fixture()
def server():
    return FakeServer()


@pytest.fixture()
def state_archives():
    return {
        "Florida.zip": zip_bytes({"Florida.csv": FLORIDA_CSV}),
        "Nebrask.zip": zip_bytes({"Nebrask.csv": NEBRASKA_CSV}),
    }
