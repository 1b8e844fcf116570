"""Facility standard bonuses (施設基準加算)."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Sequence, Tuple

from dentbill.code_tables import LineItem, LineItemCollector

BONUS_CATEGORY_LABEL = "加算"

_DIGITS_RE = re.compile(r"[0-9]")


@dataclass(frozen=True)
class FacilityBonus:
    facility_code: str
    target_kubun: str
    bonus_points: int
    bonus_type: str = "add"
    condition: str = ""
    target_sub: str = ""

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "FacilityBonus":
        return cls(
            facility_code=row["facility_code"],
            target_kubun=row["target_kubun"],
            bonus_points=int(row.get("bonus_points") or 0),
            bonus_type=row.get("bonus_type") or "add",
            condition=row.get("condition") or "",
            target_sub=row.get("target_sub") or "",
        )

    @property
    def group_key(self) -> Tuple[str, str]:
        """Competing bonuses share a facility family and a target."""

        return (_DIGITS_RE.sub("", self.facility_code), self.target_kubun)

    @property
    def code(self) -> str:
        return f"BONUS-{self.facility_code}-{self.target_kubun}"

    def to_line_item(self) -> LineItem:
        return LineItem(
            code=self.code,
            name=f"施設基準加算（{self.condition}）",
            points=self.bonus_points,
            category=BONUS_CATEGORY_LABEL,
            count=1,
            note=self.facility_code,
        )


def best_of_group(bonuses: Sequence[FacilityBonus]) -> List[FacilityBonus]:
    """Highest-point ``add`` bonus per group; the first seen wins a tie."""

    best: Dict[Tuple[str, str], FacilityBonus] = {}
    for bonus in bonuses:
        if bonus.bonus_type != "add" or bonus.bonus_points <= 0:
            continue
        current = best.get(bonus.group_key)
        if current is None or bonus.bonus_points > current.bonus_points:
            best[bonus.group_key] = bonus
    return list(best.values())


def applies_to(bonus: FacilityBonus, codes: Sequence[str]) -> bool:
    return any(code.startswith(bonus.target_kubun) for code in codes)


def add_bonus_items(bonuses: Sequence[FacilityBonus], collector: LineItemCollector) -> List[FacilityBonus]:
    codes = collector.codes
    applied = []
    for bonus in best_of_group(bonuses):
        if applies_to(bonus, codes) and collector.add_custom(bonus.to_line_item()):
            applied.append(bonus)
    return applied


__all__ = ["FacilityBonus", "add_bonus_items", "applies_to", "best_of_group"]
