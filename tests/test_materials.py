import pytest

from dentbill.code_tables import FeeItem, FeeTable, LineItemCollector
from dentbill.materials import MaterialItem, add_material_items
from dentbill.reference_data import DEFAULT_FEE_ITEMS, DEFAULT_MATERIALS

MATERIALS = sorted((MaterialItem.from_row(row) for row in DEFAULT_MATERIALS), key=lambda m: m.material_code)


@pytest.fixture
def collector():
    return LineItemCollector(FeeTable(FeeItem.from_row(row) for row in DEFAULT_FEE_ITEMS))


def test_composite_resin_for_filling(collector):
    collector.add("M009-CR")
    added = add_material_items(MATERIALS, collector)
    assert [m.material_code for m in added] == ["CR-001"]
    item = collector.get("MAT-CR-001")
    assert item.points == 1
    assert item.name == "【材料】歯科充填用材料Ⅰ（複合レジン）"


def test_market_priced_metal_claims_category(collector):
    collector.add("M-CRN-ko")
    added = add_material_items(MATERIALS, collector)
    assert added == []
    assert "MAT-MC-001" not in collector
    assert "MAT-MC-002" not in collector


def test_cad_block_points(collector):
    collector.add("M-CRN-cad2")
    add_material_items(MATERIALS, collector)
    assert collector.get("MAT-CAD-001").points == 336


def test_no_related_procedure(collector):
    collector.add("A000")
    assert add_material_items(MATERIALS, collector) == []


def test_related_codes_parsed_from_json_text():
    material = MaterialItem.from_row(
        {"material_code": "X", "name": "x", "unit_price": 20, "related_fee_codes": '["M-POST"]'}
    )
    assert material.related_fee_codes == ("M-POST",)
    assert material.default_quantity == 1.0
    assert material.points == 2
