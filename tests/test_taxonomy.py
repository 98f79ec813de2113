from __future__ import annotations

import pytest
import requests

from bbs_ingest.errors import FetchError, MalformedArchiveError
from bbs_ingest.taxonomy import fetch_species_list, load_species_list, parse_species_list

from conftest import BASE_URL, SPECIES_ROWS, species_list_text


class TestParseSpeciesList:
    def test_fixed_width_columns(self):
        taxonomy = parse_species_list(species_list_text(SPECIES_ROWS))

        assert len(taxonomy) == 3
        warbler = taxonomy[6882]
        assert warbler.common_name == "Test Warbler"
        assert warbler.french_name == "Paruline test"
        assert warbler.latin_name == "Setophaga testa"
        assert warbler.order == "Passeriformes"
        assert warbler.family == "Parulidae"

    def test_accented_names_survive(self):
        taxonomy = parse_species_list(species_list_text(SPECIES_ROWS))
        assert taxonomy[4740].french_name == "Crécerelle d'Amérique"

    def test_rows_without_numeric_aou_are_dropped(self):
        rows = SPECIES_ROWS + [["4", "", "Unidentified bird", "", "", "", "", ""]]
        assert set(parse_species_list(species_list_text(rows))) == {6882, 4740, 3160}

    def test_lookup_by_common_name(self):
        taxonomy = parse_species_list(species_list_text(SPECIES_ROWS))
        assert taxonomy.by_common_name("mourning dove").aou == 3160
        assert taxonomy.by_common_name("Dodo") is None

    def test_table_is_read_only(self):
        taxonomy = parse_species_list(species_list_text(SPECIES_ROWS))
        with pytest.raises(TypeError):
            taxonomy[1] = None  # type: ignore[index]

    def test_missing_header(self):
        with pytest.raises(MalformedArchiveError, match="header"):
            parse_species_list("AOU list coming soon\n", source="SpeciesList.txt")


class TestLoading:
    def test_load_latin1_file(self, tmp_path):
        path = tmp_path / "SpeciesList.txt"
        path.write_bytes(species_list_text(SPECIES_ROWS).encode("latin-1"))
        assert load_species_list(path)[4740].common_name == "American Kestrel"

    def test_fetch(self, server):
        url = BASE_URL + "SpeciesList.txt"
        server.files[url] = species_list_text(SPECIES_ROWS).encode("latin-1")
        assert len(fetch_species_list(url, session=server)) == 3

    def test_fetch_failure(self, server):
        url = BASE_URL + "SpeciesList.txt"
        server.errors[url] = requests.Timeout("read timed out")
        with pytest.raises(FetchError) as exc_info:
            fetch_species_list(url, session=server)
        assert exc_info.value.remote == url
