"""Test suite for header and value normalization."""

from catalogsync.normalizer import (
    CatalogNormalizer,
    normalize_header,
    normalize_value,
    parse_status,
)
from catalogsync.schema import PARTS_TABLE, VEHICLE_APPLICATIONS_TABLE


class TestNormalizeHeader:
    def test_folding(self):
        assert normalize_header("  Año  Inicial ") == "ano_inicial"
        assert normalize_header("Part-Type") == "part_type"

    def test_hidden_prefix_kept(self):
        assert normalize_header("_part_id") == "_part_id"

    def test_blank(self):
        assert normalize_header(None) == ""


class TestNormalizeValue:
    def test_empty_is_none(self):
        assert normalize_value("") is None
        assert normalize_value("   ") is None
        assert normalize_value(None) is None

    def test_whitespace_collapsed(self):
        assert normalize_value("  Maza   delantera ") == "Maza delantera"

    def test_integral_numbers(self):
        assert normalize_value(2020) == normalize_value(2020.0) == normalize_value("2020") == "2020"
        assert normalize_value("2020.00") == "2020"

    def test_leading_zeros_are_significant(self):
        assert normalize_value("00123") == "00123"
        assert normalize_value("00123") != normalize_value(123)

    def test_case_preserved(self):
        assert normalize_value("maza") != normalize_value("Maza")


class TestParseStatus:
    def test_labels(self):
        assert parse_status("Activo") == ("ACTIVE", False)
        assert parse_status("inactive") == ("INACTIVE", False)

    def test_delete_markers(self):
        assert parse_status("ELIMINAR") == (None, True)
        assert parse_status(" delete ") == (None, True)

    def test_blank_and_unknown(self):
        assert parse_status(None) == (None, False)
        assert parse_status("Pendiente") == (None, False)


class TestCatalogNormalizer:
    def test_header_variations(self):
        normalizer = CatalogNormalizer()
        assert normalizer.normalize_column_name("SKU", PARTS_TABLE) == "acr_sku"
        assert normalizer.normalize_column_name("Especificaciones", PARTS_TABLE) == "specifications"
        assert normalizer.normalize_column_name("Oem 2", PARTS_TABLE) == "oem_2_skus"
        assert normalizer.normalize_column_name("Año Final", VEHICLE_APPLICATIONS_TABLE) == "end_year"
        assert normalizer.normalize_column_name("Make", PARTS_TABLE) is None

    def test_map_headers(self):
        mapping, unmapped, duplicates = CatalogNormalizer().map_headers(
            ["_id", "ACR_SKU", None, "Notes", "SKU"], PARTS_TABLE,
        )
        assert mapping == {0: "identity_id", 1: "acr_sku"}
        assert unmapped == ["Notes"]
        assert duplicates == ["acr_sku"]
