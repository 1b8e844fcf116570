"""Tooth notation to the 6-digit form used by claim records."""

from __future__ import annotations

import re
from types import MappingProxyType
from typing import List, Mapping, Optional, Sequence

_SIX_DIGITS_RE = re.compile(r"^\d{6}$")
_SHORT_NUMBER_RE = re.compile(r"^\d{1,2}$")


def _build_map() -> Mapping[str, str]:
    table = {}
    # permanent 11-48 and deciduous 51-85 in FDI notation
    for quadrant, last in ((1, 8), (2, 8), (3, 8), (4, 8), (5, 5), (6, 5), (7, 5), (8, 5)):
        for position in range(1, last + 1):
            table[f"{quadrant}{position}"] = f"00{quadrant}{position}00"
    # deciduous letters: A-E upper right, F-J upper left, K-O lower left, P-T lower right
    letters = {
        "A": "55", "B": "54", "C": "53", "D": "52", "E": "51",
        "F": "65", "G": "64", "H": "63", "I": "62", "J": "61",
        "K": "71", "L": "72", "M": "73", "N": "74", "O": "75",
        "P": "85", "Q": "84", "R": "83", "S": "82", "T": "81",
    }
    for letter, fdi in letters.items():
        table[letter] = f"00{fdi}00"
    return MappingProxyType(table)


TOOTH_6DIGIT_MAP: Mapping[str, str] = _build_map()


def tooth_to_6digit(tooth: str) -> str:
    """Convert one tooth token; unknown input is returned cleaned but unchanged."""

    cleaned = str(tooth).strip().lstrip("#").strip()
    mapped = TOOTH_6DIGIT_MAP.get(cleaned)
    if mapped:
        return mapped
    if _SHORT_NUMBER_RE.match(cleaned):
        return cleaned.zfill(4) + "00"
    return cleaned


def is_six_digit(value: str) -> bool:
    return bool(_SIX_DIGITS_RE.match(value))


def format_teeth(teeth: Sequence[str], warnings: Optional[List[str]] = None) -> str:
    """Space-joined 6-digit tooth codes; failures are reported in ``warnings``."""

    converted = []
    for tooth in teeth:
        six = tooth_to_6digit(tooth)
        if not is_six_digit(six) and warnings is not None:
            warnings.append(f'歯式6桁変換失敗: "{tooth}" → "{six}"')
        converted.append(six)
    return " ".join(converted)


__all__ = ["TOOTH_6DIGIT_MAP", "format_teeth", "is_six_digit", "tooth_to_6digit"]
