from __future__ import annotations

import pytest

from labtracker_dose.markers import canonicalize_marker, normalize_unit


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("E2", "Estradiol"),
        ("Oestradiol", "Estradiol"),
        ("Testosteron", "Testosterone"),
        ("Total Testosterone", "Testosterone"),
        ("Testosterone, free (calculated)", "Free Testosterone"),
        ("Vrij testosteron", "Free Testosterone"),
        ("Bioavailable Testosterone", "Bioavailable Testosterone"),
        ("Hematokriet", "Hematocrit"),
        ("Apo B", "Apolipoprotein B"),
        ("LDL-Cholesterol", "LDL Cholesterol"),
        ("HDL Cholesterol", "HDL Cholesterol"),
        ("Non-HDL cholesterol", "Non-HDL Cholesterol"),
        ("Cholesterol totaal", "Cholesterol"),
    ],
)
def test_aliases_resolve_to_canonical_name(raw, expected):
    assert canonicalize_marker(raw) == expected


def test_unknown_marker_is_title_cased():
    assert canonicalize_marker("  vitamin d3 ") == "Vitamin D3"


@pytest.mark.parametrize("raw", ["", "   ", "--"])
def test_blank_marker_is_unknown(raw):
    assert canonicalize_marker(raw) == "Unknown Marker"


def test_normalize_unit_strips_whitespace_and_case():
    assert normalize_unit(" pmol / L ") == "pmol/l"
    assert normalize_unit("%") == "%"
    assert normalize_unit("") == ""
