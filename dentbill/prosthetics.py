"""Mandatory follow-on items for crowns, bridges, inlays and dentures."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from dentbill.code_tables import LineItemCollector
from dentbill.notes import NormalizedNote

CROWN_PREFIXES = ("M-CRN-", "M003-", "M-IN-", "M001-3")
CROWN_CODES = frozenset({"BR-PON"})
NEW_DENTURE_PREFIXES = ("DEN-1-", "DEN-5-", "DEN-9-", "DEN-12-", "DEN-FULL")
DENTURE_MAINTENANCE_CODES = frozenset({"DEN-ADJ", "DEN-REP", "DEN-RELINE"})
PREPARATION_CODES = frozenset({"M001-1", "M001-2", "M001-fuku", "M001-sho", "M003-1", "M003-2", "M003-3"})
POST_CORE_CODES = frozenset({"M-POST", "M-POST-cast"})
TEMPORARY_CROWN_KEYWORDS = ("tek", "仮歯", "テンポラリー", "テック")

CROWN_FOLLOW_ON = ("M-IMP", "M-BITE", "M-SET", "M-HOHEKI")
DENTURE_FOLLOW_ON = ("M-IMP-sei", "M-BITE", "DEN-SET", "M-HOHEKI")
TEMPORARY_CROWN_CODE = "M-TEK"
CAVITY_PREPARATION_CODE = "M001-1"


@dataclass(frozen=True)
class ProstheticFlags:
    crown: bool
    new_denture: bool
    preparation: bool
    denture_maintenance: bool
    post_core: bool


def classify(codes: Sequence[str]) -> ProstheticFlags:
    return ProstheticFlags(
        crown=any(c.startswith(CROWN_PREFIXES) or c in CROWN_CODES for c in codes),
        new_denture=any(c.startswith(NEW_DENTURE_PREFIXES) for c in codes),
        preparation=any(c in PREPARATION_CODES for c in codes),
        denture_maintenance=any(c in DENTURE_MAINTENANCE_CODES for c in codes),
        post_core=any(c in POST_CORE_CODES for c in codes),
    )


def add_follow_on_items(note: NormalizedNote, collector: LineItemCollector) -> ProstheticFlags:
    """Add impression, bite, seating and diagnosis items for prosthetic work.

    The flags are taken from the codes billed before this step and returned
    for the derivation warnings.
    """

    flags = classify(collector.codes)
    teeth = note.teeth

    if flags.crown and not flags.denture_maintenance:
        for code in CROWN_FOLLOW_ON:
            collector.add(code, 1, teeth)

    if flags.new_denture:
        # dentures are billed per jaw, not per tooth
        for code in DENTURE_FOLLOW_ON:
            collector.add(code, 1, [])

    if flags.preparation and note.contains_any(TEMPORARY_CROWN_KEYWORDS):
        collector.add(TEMPORARY_CROWN_CODE, 1, teeth)

    if flags.post_core:
        collector.add(CAVITY_PREPARATION_CODE, 1, teeth)

    return flags


__all__ = ["ProstheticFlags", "add_follow_on_items", "classify"]
