from dentbill.notes import extract_teeth, max_surface_count, normalize_note, todays_plan


def test_corpus_is_lowercased_and_joins_sections():
    note = normalize_note("痛み", "#36 う蝕", None, "CR充填")
    assert note.contains("cr充填")
    assert note.contains("痛み")
    assert note.teeth == ["36"]


def test_next_visit_part_of_plan_is_ignored():
    note = normalize_note(None, None, None, "【本日】CR充填【次回】抜髄")
    assert note.contains("cr充填")
    assert not note.contains("抜髄")
    assert "【本日】" not in note.corpus


def test_todays_plan_empty():
    assert todays_plan(None) == ""
    assert todays_plan("【次回】抜歯") == ""


def test_extract_teeth_unique_in_first_seen_order():
    assert extract_teeth("#47 と 36番、47") == ["47", "36"]
    assert extract_teeth("乳歯 55 75") == ["55", "75"]
    assert extract_teeth("") == []


def test_surface_notation_letters_are_split():
    note = normalize_note(None, "#36", None, "CR", '{"36": "MOD"}')
    assert note.tooth_surfaces == {"36": ["M", "O", "D"]}
    assert note.max_surface_count() == 3


def test_surface_list_notation():
    note = normalize_note(None, "#11", None, "CR", {"#11": ["m", "d"]})
    assert note.max_surface_count() == 2


def test_no_surface_data_returns_none():
    assert normalize_note(None, "#36", None, "CR").max_surface_count() is None
    assert max_surface_count(["36"], {"46": ["O"]}) is None


def test_bad_surface_json_is_ignored():
    note = normalize_note(None, None, None, "CR", "{not json")
    assert note.tooth_surfaces == {}
