from dentbill.teeth import TOOTH_6DIGIT_MAP, format_teeth, is_six_digit, tooth_to_6digit


def test_permanent_and_deciduous_numbers():
    assert tooth_to_6digit("36") == "003600"
    assert tooth_to_6digit("#11") == "001100"
    assert tooth_to_6digit("85") == "008500"
    assert "19" not in TOOTH_6DIGIT_MAP


def test_deciduous_letters():
    assert tooth_to_6digit("A") == "005500"
    assert tooth_to_6digit("T") == "008100"


def test_short_numbers_are_padded():
    assert tooth_to_6digit("9") == "000900"


def test_unknown_token_is_returned_cleaned():
    assert tooth_to_6digit(" #右上 ") == "右上"
    assert not is_six_digit("右上")


def test_format_teeth_collects_failures():
    warnings = []
    assert format_teeth(["36", "47"], warnings) == "003600 004700"
    assert warnings == []
    assert format_teeth(["X1"], warnings) == "X1"
    assert warnings == ['歯式6桁変換失敗: "X1" → "X1"']


def test_format_teeth_without_warning_list():
    assert format_teeth([]) == ""
    assert format_teeth(["zz"]) == "zz"
