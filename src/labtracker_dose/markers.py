"""Marker name canonicalization.

Lab reports name the same marker many ways ("E2", "oestradiol", "Testosteron,
vrij"). Prior lookup, the remote allow-list and fit grouping all key on the
canonical name returned here.
"""

from __future__ import annotations

import re

_ALIASES: dict[str, list[str]] = {
    "Testosterone": [
        "testosterone",
        "total testosterone",
        "testosteron",
        "testosterone total",
        "totale testosteron",
        "totaal testosteron",
    ],
    "Free Testosterone": [
        "free testosterone",
        "vrij testosteron",
        "vrije testosteron",
        "testosterone free",
        "testosteron vrij",
        "free test",
        "free t",
        "testosterone free calculated",
    ],
    "Estradiol": ["estradiol", "e2", "oestradiol", "oestrodiol"],
    "Hematocrit": ["hematocrit", "hematokriet", "hematocriet", "hct"],
    "SHBG": ["shbg", "sex hormone binding globulin", "sex horm bind gl"],
    "Apolipoprotein B": ["apolipoprotein b", "apo b", "apob", "apolipoproteine b"],
    "LDL Cholesterol": ["ldl cholesterol", "ldl", "ldl c", "ldl-cholesterol", "ldl cholesterol calc"],
    "Hemoglobin": ["hemoglobin", "hemoglobine", "haemoglobin", "hb"],
    "Cholesterol": ["cholesterol", "cholesterol totaal", "total cholesterol", "cholesterol total"],
    "HDL Cholesterol": ["hdl cholesterol", "hdl-cholesterol", "hdlcholesterol", "cholesterol hdl"],
    "Non-HDL Cholesterol": ["non hdl cholesterol", "non-hdl cholesterol", "non-hdl-cholesterol", "non hdl"],
    "Cholesterol/HDL Ratio": ["cholesterol/hdl ratio", "cholesterol hdl ratio", "cholesterol/hdl cholesterol ratio"],
    "LDL/HDL Ratio": ["ldl/hdl ratio", "ldl hdl ratio", "ldl hdl cholesterol ratio"],
    "Triglycerides": ["triglycerides", "triglyceriden"],
}

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")
_TESTOSTERONE_RE = re.compile(r"\b(testosterone|testosteron)\b")
_FREE_RE = re.compile(r"\b(free|vrij|vrije)\b")
_BIOAVAILABLE_RE = re.compile(r"\bbioavailable\b")


def _normalize_text(value: str) -> str:
    return _NON_ALNUM_RE.sub(" ", value.lower()).strip()


_ALIAS_ENTRIES: list[tuple[str, str]] = sorted(
    (
        (_normalize_text(alias), canonical)
        for canonical, aliases in _ALIASES.items()
        for alias in aliases
        if _normalize_text(alias)
    ),
    key=lambda entry: len(entry[0]),
    reverse=True,
)
_ALIAS_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(rf"\b{re.escape(alias)}\b"), canonical) for alias, canonical in _ALIAS_ENTRIES
]
_EXACT: dict[str, str] = {alias: canonical for alias, canonical in reversed(_ALIAS_ENTRIES)}


def canonicalize_marker(name: str) -> str:
    """Return the canonical marker name, or a title-cased fallback."""
    normalized = _normalize_text(name or "")
    if not normalized:
        return "Unknown Marker"

    if _TESTOSTERONE_RE.search(normalized):
        if _BIOAVAILABLE_RE.search(normalized):
            return "Bioavailable Testosterone"
        # "free" must win over the generic testosterone aliases
        if _FREE_RE.search(normalized):
            return "Free Testosterone"

    exact = _EXACT.get(normalized)
    if exact is not None:
        return exact

    for pattern, canonical in _ALIAS_PATTERNS:
        if pattern.search(normalized):
            return canonical

    return " ".join(word[:1].upper() + word[1:].lower() for word in name.strip().split())


def normalize_unit(unit: str) -> str:
    return "".join((unit or "").split()).lower()
