"""Automatic material (特定器材) fee items for billed procedures."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Mapping, Sequence, Tuple

import structlog

from dentbill.code_tables import LineItem, LineItemCollector, load_json_field
from dentbill.drugs import format_number
from dentbill.points import price_to_points

logger = structlog.get_logger(__name__)

MATERIAL_CATEGORY_LABEL = "特定器材"


@dataclass(frozen=True)
class MaterialItem:
    material_code: str
    name: str
    unit_price: float
    unit: str = ""
    material_category: str = ""
    procedure_category: str = ""
    default_quantity: float = 1.0
    related_fee_codes: Tuple[str, ...] = ()
    receipt_code: str = ""
    shinryo_shikibetsu: str = ""

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "MaterialItem":
        related = load_json_field(row.get("related_fee_codes"), [])
        quantity = row.get("default_quantity")
        return cls(
            material_code=row["material_code"],
            name=row["name"],
            unit_price=float(row.get("unit_price") or 0),
            unit=row.get("unit") or "",
            material_category=row.get("material_category") or "",
            procedure_category=row.get("procedure_category") or "",
            default_quantity=float(1 if quantity is None else quantity),
            related_fee_codes=tuple(str(c) for c in related) if isinstance(related, list) else (),
            receipt_code=row.get("receipt_code") or "",
            shinryo_shikibetsu=row.get("shinryo_shikibetsu") or "",
        )

    @property
    def code(self) -> str:
        return f"MAT-{self.material_code}"

    @property
    def dedup_key(self) -> Tuple[str, str]:
        return (self.material_category, self.procedure_category)

    @property
    def points(self) -> int:
        return price_to_points(self.unit_price * self.default_quantity, zero_is_free=True)

    def to_line_item(self) -> LineItem:
        return LineItem(
            code=self.code,
            name=f"【材料】{self.name}",
            points=self.points,
            category=MATERIAL_CATEGORY_LABEL,
            count=1,
            note=(
                f"{format_number(self.default_quantity)}{self.unit} × "
                f"{format_number(self.unit_price)}円/{self.unit}"
            ),
        )


def add_material_items(
    materials: Sequence[MaterialItem], collector: LineItemCollector
) -> List[MaterialItem]:
    """Add one material per (material, procedure) category for billed codes.

    The category slot is claimed before the zero-price check, so a
    market-priced metal keeps other materials of its category out; the
    operator prices it by hand.
    """

    billed = set(collector.codes)
    claimed: set = set()
    added: List[MaterialItem] = []
    for material in materials:
        if not material.related_fee_codes:
            continue
        if not billed.intersection(material.related_fee_codes):
            continue
        if material.dedup_key in claimed:
            continue
        claimed.add(material.dedup_key)
        if material.unit_price == 0:
            logger.info("materials.market_priced_skipped", material=material.material_code)
            continue
        if collector.add_custom(material.to_line_item()):
            added.append(material)
    return added


__all__ = ["MaterialItem", "add_material_items"]
