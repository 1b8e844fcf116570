from dentbill.receipt_codes import (
    CODE_MAP,
    ReceiptCodeTranslator,
    drug_shikibetsu,
    split_code,
)


def test_static_map_first():
    translator = ReceiptCodeTranslator([("A000", "", "999999999", "99")])
    code = translator.translate("A000")
    assert (code.receipt_code, code.shikibetsu, code.resolved_by) == ("301000110", "11", "static")
    assert not code.is_heuristic


def test_database_fallback_by_kubun_and_sub():
    translator = ReceiptCodeTranslator([("I001", "1", "309001110", "41")])
    code = translator.translate("I001-1")
    assert code.receipt_code == "309001110"
    assert code.resolved_by == "database"


def test_nine_digit_passthrough():
    translator = ReceiptCodeTranslator([("X", "", "123456789", "13")])
    assert translator.translate("123456789").shikibetsu == "13"
    assert translator.translate("987654321").shikibetsu == "80"


def test_heuristic_records_warning():
    warnings = []
    code = ReceiptCodeTranslator().translate("K999-x", "謎の麻酔", warnings)
    assert code.is_heuristic
    assert code.shikibetsu == "54"
    assert code.receipt_code == "K999-x"
    assert warnings == ["receipt_code未解決: K999-x (謎の麻酔)"]


def test_unknown_prefix_defaults():
    assert ReceiptCodeTranslator().translate("ZZZ").shikibetsu == "80"


def test_translator_from_seeded_table(db_session):
    translator = ReceiptCodeTranslator.from_session(db_session)
    assert "J000-4-1" not in CODE_MAP
    assert translator.translate("J000-4-1").receipt_code == "310000420"


def test_split_code():
    assert split_code("I011-2-3") == ("I011", "2-3")
    assert split_code("A000") == ("A000", "")


def test_drug_shikibetsu():
    assert drug_shikibetsu("内服") == "21"
    assert drug_shikibetsu("頓服") == "22"
    assert drug_shikibetsu("外用") == "23"
    assert drug_shikibetsu(None) == "21"
