from __future__ import annotations

from datetime import datetime

import pytest
import requests

from bbs_ingest.catalog import RemoteCatalog, parse_listing, parse_size
from bbs_ingest.errors import CatalogUnavailableError

from conftest import STATES_URL, FakeServer, apache_listing

APACHE_PRE = """<html><head><title>Index of /BBS/DataFiles/States</title></head><body>
<h1>Index of /BBS/DataFiles/States</h1>
<pre><img src="/icons/blank.gif" alt="Icon "> <a href="?C=N;O=D">Name</a>                    <a href="?C=M;O=A">Last modified</a>      <a href="?C=S;O=A">Size</a>
<hr><img src="/icons/back.gif" alt="[PARENTDIR]"> <a href="/BBS/DataFiles/">Parent Directory</a>                             -
<img src="/icons/compressed.gif" alt="[   ]"> <a href="Florida.zip">Florida.zip</a>             20-Nov-2023 09:41  1.2M
<img src="/icons/compressed.gif" alt="[   ]"> <a href="Nebrask.zip">Nebrask.zip</a>             21-Nov-2023 10:05  512K
<img src="/icons/folder.gif" alt="[DIR]"> <a href="Archive/">Archive/</a>                21-Nov-2023 10:05    -
<hr></pre>
</body></html>
"""

IIS_LISTING = """<html><head><title>ftpext.example - /BBS/DataFiles/States/</title></head><body>
<H1>ftpext.example - /BBS/DataFiles/States/</H1><hr>
<pre><A HREF="/BBS/DataFiles/">[To Parent Directory]</A><br><br> 11/20/2023  9:41 AM      1258291 <A HREF="/BBS/DataFiles/States/Florida.zip">Florida.zip</A><br> 11/21/2023  2:05 PM        &lt;dir&gt; <A HREF="/BBS/DataFiles/States/Archive">Archive</A><br> 11/21/2023 10:05 AM       524288 <A HREF="/BBS/DataFiles/States/W_Virgi.zip">W_Virgi.zip</A><br></pre><hr></body></html>
"""

FTP_LISTING = """total 3
  -rw-r--r--   1 ftp      ftp       1258291 Nov 20  2023 Florida.zip
drwxr-xr-x   2 ftp      ftp          4096 Jan  3  2024 Archive
-rw-r--r--   1 ftp      ftp        524288 Jan  3  2024 Nebrask.zip

"""


class TestParseSize:
    @pytest.mark.parametrize(
        "token,expected",
        [("1234", 1234), ("1,234", 1234), ("512K", 524288), ("1.2M", 1258291), ("2G", 2 * 1024**3), ("-", None), (None, None)],
    )
    def test_tokens(self, token, expected):
        assert parse_size(token) == expected


class TestParseListing:
    def test_apache_table(self):
        listing = parse_listing(apache_listing({"Florida.zip": b"x" * 1234, "Nebrask.zip": b"y" * 10}))
        assert set(listing) == {"Florida.zip", "Nebrask.zip"}
        assert listing["Florida.zip"].size == 1234
        assert listing["Florida.zip"].last_modified == datetime(2023, 11, 20, 9, 41)

    def test_apache_pre_skips_parent_and_directories(self):
        listing = parse_listing(APACHE_PRE)
        assert list(listing) == ["Florida.zip", "Nebrask.zip"]
        assert listing["Florida.zip"].size == 1258291
        assert listing["Nebrask.zip"].size == 524288
        assert listing["Nebrask.zip"].last_modified == datetime(2023, 11, 21, 10, 5)

    def test_iis_listing(self):
        listing = parse_listing(IIS_LISTING)
        assert set(listing) == {"Florida.zip", "W_Virgi.zip"}
        assert listing["Florida.zip"].last_modified == datetime(2023, 11, 20, 9, 41)
        assert listing["W_Virgi.zip"].size == 524288

    def test_ftp_text_listing(self):
        listing = parse_listing(FTP_LISTING)
        assert set(listing) == {"Florida.zip", "Nebrask.zip"}
        assert listing["Florida.zip"].size == 1258291
        assert listing["Nebrask.zip"].last_modified == datetime(2024, 1, 3)

    def test_bare_name_listing_has_no_metadata(self):
        listing = parse_listing("Florida.zip\r\nNebrask.zip\r\n")
        assert listing["Florida.zip"].size is None
        assert listing["Florida.zip"].last_modified is None

    def test_entries_without_size_or_date(self):
        listing = parse_listing('<html><body><a href="Florida.zip">Florida.zip</a></body></html>')
        assert listing["Florida.zip"].size is None
        assert listing["Florida.zip"].last_modified is None

    def test_empty_index(self):
        assert parse_listing("<html><body><h1>Nothing here</h1></body></html>") == {}


class TestRemoteCatalog:
    def test_lists_once(self, server, state_archives):
        server.serve_states(state_archives)
        catalog = RemoteCatalog(STATES_URL, session=server)

        assert set(catalog.list_remote_artifacts()) == {"Florida.zip", "Nebrask.zip"}
        catalog.lookup("Florida.zip")
        catalog.lookup("Nebrask.zip")
        assert server.calls == [STATES_URL]

    def test_lookup_ignores_case(self, server, state_archives):
        server.serve_states(state_archives)
        catalog = RemoteCatalog(STATES_URL, session=server)
        assert catalog.lookup("florida.ZIP").name == "Florida.zip"
        assert catalog.lookup("Atlantis.zip") is None

    def test_url_for(self):
        catalog = RemoteCatalog("https://bbs.example.test/DataFiles/States", session=FakeServer())
        assert catalog.url_for("W_Virgi.zip") == "https://bbs.example.test/DataFiles/States/W_Virgi.zip"

    def test_unreachable_server(self, server):
        server.errors[STATES_URL] = requests.ConnectionError("name resolution failed")
        catalog = RemoteCatalog(STATES_URL, session=server)
        with pytest.raises(CatalogUnavailableError) as exc_info:
            catalog.list_remote_artifacts()
        assert exc_info.value.url == STATES_URL

    def test_http_error_status(self, server):
        catalog = RemoteCatalog(STATES_URL, session=server)
        with pytest.raises(CatalogUnavailableError):
            catalog.lookup("Florida.zip")
