"""Clinical note normalisation used by the billing derivation.

The four SOAP sections are folded into one lower-cased search corpus and the
tooth numbers written in the note are extracted in first-seen order.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

# Permanent teeth 11-48 and deciduous teeth 51-85 in FDI notation.
TOOTH_PATTERN = re.compile(r"[#＃]?\s*([1-4][1-8]|[5-8][1-5])\s*(?:番)?")

NEXT_VISIT_MARKER = "【次回】"
TODAY_MARKER = "【本日】"

_SURFACE_SPLIT_RE = re.compile(r"[\s,、/・]+")


@dataclass(frozen=True)
class NormalizedNote:
    """Search corpus and tooth data derived from one clinical note."""

    corpus: str
    teeth: List[str] = field(default_factory=list)
    tooth_surfaces: Dict[str, List[str]] = field(default_factory=dict)

    def contains(self, keyword: str) -> bool:
        return keyword.lower() in self.corpus

    def contains_any(self, keywords: Iterable[str]) -> bool:
        return any(self.contains(kw) for kw in keywords if kw)

    def max_surface_count(self) -> Optional[int]:
        return max_surface_count(self.teeth, self.tooth_surfaces)


def todays_plan(plan: Optional[str]) -> str:
    """Return the part of the P section describing today's treatment."""

    if not plan:
        return ""
    return plan.split(NEXT_VISIT_MARKER)[0].replace(TODAY_MARKER, "")


def extract_teeth(text: str) -> List[str]:
    """Return unique tooth numbers found in ``text`` in first-seen order."""

    teeth: List[str] = []
    for match in TOOTH_PATTERN.finditer(text or ""):
        number = match.group(1)
        if number not in teeth:
            teeth.append(number)
    return teeth


def _parse_surfaces(raw: Any) -> Dict[str, List[str]]:
    if raw in (None, "", b""):
        return {}
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except (TypeError, ValueError):
            return {}
    if not isinstance(raw, Mapping):
        return {}

    surfaces: Dict[str, List[str]] = {}
    for tooth, value in raw.items():
        key = str(tooth).lstrip("#＃").strip()
        if isinstance(value, str):
            parts = [p for p in _SURFACE_SPLIT_RE.split(value) if p]
            # "MOD" style notation lists one surface per letter
            if len(parts) == 1 and parts[0].isascii() and parts[0].isalpha():
                parts = list(parts[0])
        elif isinstance(value, Sequence):
            parts = [str(p).strip() for p in value if str(p).strip()]
        else:
            continue
        surfaces[key] = [p.upper() for p in parts]
    return surfaces


def max_surface_count(teeth: Sequence[str], tooth_surfaces: Mapping[str, Sequence[str]]) -> Optional[int]:
    """Largest number of distinct surfaces recorded for any of ``teeth``.

    Returns ``None`` when there is no structured surface data for the teeth so
    callers can fall back to keyword heuristics.
    """

    counts = [len(set(tooth_surfaces[t])) for t in teeth if tooth_surfaces.get(t)]
    if not counts and not teeth:
        counts = [len(set(v)) for v in tooth_surfaces.values() if v]
    return max(counts) if counts else None


def normalize_note(
    soap_s: Optional[str],
    soap_o: Optional[str],
    soap_a: Optional[str],
    soap_p: Optional[str],
    tooth_surfaces: Any = None,
) -> NormalizedNote:
    sections = [s for s in (soap_s, soap_o, soap_a, todays_plan(soap_p)) if s]
    raw = " ".join(sections)
    return NormalizedNote(
        corpus=raw.lower(),
        teeth=extract_teeth(raw),
        tooth_surfaces=_parse_surfaces(tooth_surfaces),
    )


__all__ = [
    "NormalizedNote",
    "TOOTH_PATTERN",
    "extract_teeth",
    "max_surface_count",
    "normalize_note",
    "todays_plan",
]
