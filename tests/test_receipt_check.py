import json
from datetime import date, datetime
from zoneinfo import ZoneInfo

import pytest
import sqlalchemy as sa

from dentbill import models
from dentbill.billing import WARN_MANAGEMENT_PLAN, confirm_payment, derive_billing, set_document_provided
from dentbill.claims import ClaimQueryError
from dentbill.receipt_check import (
    CheckRules,
    Level,
    age_in_months,
    age_in_years,
    expected_burden,
    rule_counts,
    run_receipt_check,
)
from dentbill.reference_data import DEFAULT_CHECK_RULES

TOKYO = ZoneInfo("Asia/Tokyo")

SHOSHIN = {"code": "A000", "name": "初診料", "points": 267, "category": "基本診療料"}
SAISHIN = {"code": "A002", "name": "再診料", "points": 58, "category": "基本診療料"}
NYUJI = {"code": "A000-nyuji", "name": "乳幼児加算（初診）", "points": 40, "category": "加算"}
SCALING = {"code": "P-SC", "name": "スケーリング", "points": 72, "category": "処置"}
SRP = {"code": "P-SRP", "name": "SRP（大臼歯）", "points": 68, "category": "処置"}
CR_FILLING = {"code": "M009-CR", "name": "充填（単純）", "points": 106, "category": "歯冠修復"}
RESIN = {"code": "MAT-712040000", "name": "複合レジン", "points": 11, "category": "特定器材"}
PULPECTOMY = {"code": "I005-1", "name": "抜髄（単根管）", "points": 234, "category": "処置"}


def _at(day, hour=10):
    return datetime(2025, 6, day, hour, tzinfo=TOKYO).timestamp()


def _billing(session, make_encounter, encounter_id, items, *, created_at=None, patient_id="P001", **values):
    make_encounter(session, encounter_id, patient_id=patient_id, **values.pop("patient", {}))
    total = sum(item["points"] * item.get("count", 1) for item in items)
    row = {
        "record_id": encounter_id,
        "patient_id": patient_id,
        "total_points": total,
        "patient_burden": expected_burden(total, 0.3),
        "insurance_claim": 0,
        "burden_ratio": 0.3,
        "procedures_detail": json.dumps(items, ensure_ascii=False),
        "ai_check_warnings": "[]",
        "payment_status": "paid",
        "created_at": created_at or _at(3),
        "updated_at": created_at or _at(3),
    }
    row.update(values)
    return session.execute(sa.insert(models.billing).values(**row)).inserted_primary_key[0]


def _diagnosis(session, name, code=None, patient_id="P001", **fields):
    session.execute(
        sa.insert(models.patient_diagnoses).values(
            patient_id=patient_id, diagnosis_code=code, diagnosis_name=name, **fields
        )
    )


def _result(report, billing_id):
    return next(r for r in report.results if r.billing_id == billing_id)


def _rules(result, rule):
    return [f for f in result.findings if f.rule == rule]


def test_clean_billing_is_ok(db_session, make_encounter):
    billing_id = _billing(db_session, make_encounter, "E1", [SHOSHIN, SCALING])
    _diagnosis(db_session, "歯周炎", "K053")

    report = run_receipt_check(db_session, "202506")

    result = _result(report, billing_id)
    assert result.status == "ok"
    assert result.findings == []
    assert report.summary == {"total": 1, "ok": 1, "warn": 0, "error": 0}
    assert result.to_dict()["patient_name"] == "山田太郎"


def test_empty_month_reports_message(db_session):
    report = run_receipt_check(db_session, "202506")
    payload = report.to_dict()

    assert payload["results"] == []
    assert payload["summary"]["total"] == 0
    assert payload["message"] == "該当月の精算済みデータがありません"
    assert payload["rules_loaded"]["exclusive_pairs"] == len(DEFAULT_CHECK_RULES["check_exclusive_pairs"])


def test_unpaid_and_other_month_billings_are_skipped(db_session, make_encounter):
    _billing(db_session, make_encounter, "E1", [SHOSHIN], payment_status="unpaid")
    _billing(db_session, make_encounter, "E2", [SHOSHIN], created_at=datetime(2025, 7, 1, 0, 30, tzinfo=TOKYO).timestamp())

    assert run_receipt_check(db_session, "202506").results == []


def test_billing_ids_select_regardless_of_status(db_session, make_encounter):
    billing_id = _billing(db_session, make_encounter, "E1", [SHOSHIN, SCALING], payment_status="unpaid")
    _diagnosis(db_session, "歯周炎")

    report = run_receipt_check(db_session, "202506", billing_ids=[billing_id])

    assert [r.billing_id for r in report.results] == [billing_id]


def test_basic_errors(db_session, make_encounter):
    billing_id = _billing(
        db_session,
        make_encounter,
        "E1",
        [SHOSHIN, SCALING],
        patient_burden=1500,
        patient={"insurance_type": None},
    )

    result = _result(run_receipt_check(db_session, "202506"), billing_id)

    assert result.status == "error"
    messages = " ".join(result.errors)
    assert "傷病名が1つも登録されていません" in messages
    assert "患者負担額が計算と不一致です（期待:¥1020 / 実際:¥1500）" in messages
    assert "保険種別が未設定です" in messages
    assert all(f.rule == "basic" for f in result.findings)


def test_zero_total_is_an_error(db_session, make_encounter):
    billing_id = _billing(db_session, make_encounter, "E1", [], total_points=0)
    _diagnosis(db_session, "う蝕")

    result = _result(run_receipt_check(db_session, "202506"), billing_id)

    assert any("合計点数が0以下です" in e for e in result.errors)


def test_basic_warnings(db_session, make_encounter):
    billing_id = _billing(db_session, make_encounter, "E1", [SAISHIN])
    _diagnosis(db_session, "う蝕", outcome="cured")

    result = _result(run_receipt_check(db_session, "202506"), billing_id)

    assert result.status == "warn"
    assert any("初・再診料のみで処置がありません" in w for w in result.warnings)
    assert any("全ての傷病名が「治癒」" in w for w in result.warnings)


def test_burden_within_ten_yen_is_accepted(db_session, make_encounter):
    billing_id = _billing(db_session, make_encounter, "E1", [SHOSHIN, SCALING], patient_burden=1017)
    _diagnosis(db_session, "歯周炎")

    result = _result(run_receipt_check(db_session, "202506"), billing_id)

    assert result.status == "ok"


def test_frequency_limit_per_day(db_session, make_encounter):
    first = _billing(db_session, make_encounter, "E1", [SHOSHIN, SCALING], created_at=_at(3, 9))
    second = _billing(db_session, make_encounter, "E2", [SHOSHIN, SCALING], created_at=_at(3, 15))
    third = _billing(db_session, make_encounter, "E3", [SHOSHIN, SCALING], created_at=_at(4, 9))
    _diagnosis(db_session, "歯周炎")

    report = run_receipt_check(db_session, "202506")

    expected = "「初診料」は1日1回までです（現在: 2回）【算定回数限度】"
    assert expected in _result(report, first).errors
    assert expected in _result(report, second).errors
    assert not _rules(_result(report, third), "frequency")


def test_frequency_limit_per_month_counts_item_counts(db_session, make_encounter):
    management = {"code": "B001-2", "name": "歯科疾患管理料", "points": 100, "category": "医学管理", "count": 2}
    billing_id = _billing(db_session, make_encounter, "E1", [SHOSHIN, management])
    _diagnosis(db_session, "歯周炎")

    result = _result(run_receipt_check(db_session, "202506"), billing_id)

    assert "「歯科疾患管理料」は月1回までです（現在: 2回）【算定回数限度】" in result.errors


def test_exclusive_pair_in_one_billing(db_session, make_encounter):
    billing_id = _billing(db_session, make_encounter, "E1", [SHOSHIN, SAISHIN, SCALING])
    _diagnosis(db_session, "歯周炎")

    result = _result(run_receipt_check(db_session, "202506"), billing_id)

    assert "「初診料」と「再診料」は同日に併算定できません【併算定不可】" in result.errors


def test_exclusive_pair_across_billings_of_the_month(db_session, make_encounter):
    first = _billing(db_session, make_encounter, "E1", [SHOSHIN, SCALING], created_at=_at(3))
    second = _billing(db_session, make_encounter, "E2", [SAISHIN, SRP], created_at=_at(10))
    _diagnosis(db_session, "歯周炎")

    report = run_receipt_check(db_session, "202506")

    for billing_id in (first, second):
        findings = _rules(_result(report, billing_id), "exclusive")
        assert len(findings) == 1
        assert findings[0].level is Level.WARNING
        assert "同月の別会計で併算定されています【併算定不可・要確認】" in findings[0].message


def test_exclusive_pairs_ignore_other_patients(db_session, make_encounter):
    _billing(db_session, make_encounter, "E1", [SHOSHIN, SCALING])
    other = _billing(db_session, make_encounter, "E2", [SAISHIN, SRP], patient_id="P002")
    _diagnosis(db_session, "歯周炎", patient_id="P002")

    report = run_receipt_check(db_session, "202506")

    assert not _rules(_result(report, other), "exclusive")


def test_age_limit_warns_for_older_patient(db_session, make_encounter):
    billing_id = _billing(db_session, make_encounter, "E1", [SHOSHIN, NYUJI, SCALING])
    _diagnosis(db_session, "歯周炎")

    result = _result(run_receipt_check(db_session, "202506"), billing_id)

    assert "「乳幼児加算（初診）」は5歳以下が対象です（患者: 45歳）【年齢制限】" in result.warnings


def test_age_limit_accepts_infant(db_session, make_encounter):
    billing_id = _billing(
        db_session,
        make_encounter,
        "E1",
        [SHOSHIN, NYUJI, SCALING],
        patient_id="P010",
        patient={"date_of_birth": "2022-01-15"},
    )
    _diagnosis(db_session, "う蝕", patient_id="P010")

    result = _result(run_receipt_check(db_session, "202506"), billing_id)

    assert not _rules(result, "age")


def test_age_limit_in_months(db_session, make_encounter):
    db_session.execute(
        sa.update(models.check_age_limits)
        .where(models.check_age_limits.c.shinryo_code == "301000550")
        .values(min_age=6, max_age=None, age_type="months")
    )
    billing_id = _billing(
        db_session,
        make_encounter,
        "E1",
        [SHOSHIN, NYUJI, SCALING],
        patient_id="P011",
        patient={"date_of_birth": "2025-01-10"},
    )
    _diagnosis(db_session, "う蝕", patient_id="P011")

    result = _result(run_receipt_check(db_session, "202506"), billing_id)

    assert "「乳幼児加算（初診）」は6ヶ月以上が対象です（患者: 0歳）【年齢制限】" in result.warnings


def test_addition_without_base(db_session, make_encounter):
    billing_id = _billing(db_session, make_encounter, "E1", [SAISHIN, NYUJI, SCALING])
    _diagnosis(db_session, "歯周炎")

    result = _result(run_receipt_check(db_session, "202506"), billing_id)

    assert "「乳幼児加算（初診）」は「初診料」の算定が前提です【加算要件】" in result.warnings


def test_addition_names_required_facility(db_session, make_encounter):
    db_session.execute(sa.update(models.check_addition_rules).values(required_facility="歯初診"))
    billing_id = _billing(db_session, make_encounter, "E1", [SAISHIN, NYUJI, SCALING])
    _diagnosis(db_session, "歯周炎")

    result = _result(run_receipt_check(db_session, "202506"), billing_id)

    assert any("施設基準「歯初診」が必要です【加算要件】" in w for w in result.warnings)


def test_material_missing_for_filling(db_session, make_encounter):
    billing_id = _billing(db_session, make_encounter, "E1", [SAISHIN, CR_FILLING])
    _diagnosis(db_session, "う蝕")

    result = _result(run_receipt_check(db_session, "202506"), billing_id)

    findings = _rules(result, "material")
    assert len(findings) == 1
    assert findings[0].message == "「充填（単純）」には材料（歯科充填用材料Ⅰ（複合レジン）等）の算定が必要な場合があります【手技材料】"


def test_material_present_clears_reminder(db_session, make_encounter):
    billing_id = _billing(db_session, make_encounter, "E1", [SAISHIN, CR_FILLING, RESIN])
    _diagnosis(db_session, "う蝕")

    result = _result(run_receipt_check(db_session, "202506"), billing_id)

    assert not _rules(result, "material")


def test_incremental_fee_below_base(db_session, make_encounter):
    short_scaling = dict(SCALING, points=50)
    billing_id = _billing(db_session, make_encounter, "E1", [SAISHIN, short_scaling])
    _diagnosis(db_session, "歯周炎")

    result = _result(run_receipt_check(db_session, "202506"), billing_id)

    findings = _rules(result, "incremental")
    assert len(findings) == 1
    assert "基本点数（72点）未満です（現在: 50点）" in findings[0].message


def test_diagnosis_requirement_missing(db_session, make_encounter):
    billing_id = _billing(db_session, make_encounter, "E1", [SAISHIN, PULPECTOMY])
    _diagnosis(db_session, "う蝕", "K021")

    result = _result(run_receipt_check(db_session, "202506"), billing_id)

    assert "抜髄には歯髄炎の傷病名が必要です【療担規則】" in result.errors


@pytest.mark.parametrize(
    "name, code",
    [
        ("急性化膿性歯髄炎", None),
        ("Pul", "K0401"),
    ],
)
def test_diagnosis_requirement_satisfied(db_session, make_encounter, name, code):
    billing_id = _billing(db_session, make_encounter, "E1", [SAISHIN, PULPECTOMY])
    _diagnosis(db_session, name, code)

    result = _result(run_receipt_check(db_session, "202506"), billing_id)

    assert not _rules(result, "diagnosis")


def test_inactive_diagnosis_requirement_is_ignored(db_session, make_encounter):
    db_session.execute(sa.update(models.diagnosis_requirements).values(is_active=False))
    billing_id = _billing(db_session, make_encounter, "E1", [SAISHIN, PULPECTOMY])
    _diagnosis(db_session, "う蝕")

    report = run_receipt_check(db_session, "202506")

    assert not _rules(_result(report, billing_id), "diagnosis")
    assert report.rules_loaded["diagnosis_requirements"] == 0


def test_warning_level_requirement(db_session, make_encounter):
    db_session.execute(sa.update(models.diagnosis_requirements).values(error_level="warning"))
    billing_id = _billing(db_session, make_encounter, "E1", [SAISHIN, PULPECTOMY])
    _diagnosis(db_session, "う蝕")

    result = _result(run_receipt_check(db_session, "202506"), billing_id)

    assert result.status == "warn"
    assert "抜髄には歯髄炎の傷病名が必要です【療担規則】" in result.warnings


def test_derivation_warnings_are_carried(db_session, make_encounter):
    warnings = ["管理計画書の文書提供が必要です", "根管数を確認してください"]
    billing_id = _billing(
        db_session, make_encounter, "E1", [SHOSHIN, SCALING], ai_check_warnings=json.dumps(warnings, ensure_ascii=False)
    )
    _diagnosis(db_session, "歯周炎")

    result = _result(run_receipt_check(db_session, "202506"), billing_id)

    assert [f.message for f in _rules(result, "derivation")] == warnings


def test_plan_document_warning_dropped_once_provided(db_session, make_encounter):
    warnings = ["管理計画書の文書提供が必要です", "根管数を確認してください"]
    billing_id = _billing(
        db_session,
        make_encounter,
        "E1",
        [SHOSHIN, SCALING],
        ai_check_warnings=json.dumps(warnings, ensure_ascii=False),
        document_provided=True,
    )
    _diagnosis(db_session, "歯周炎")

    result = _result(run_receipt_check(db_session, "202506"), billing_id)

    assert [f.message for f in _rules(result, "derivation")] == ["根管数を確認してください"]


def test_derived_billing_is_checked(db_session, make_encounter):
    make_encounter(db_session, "E1", soap_p="CR充填")
    derive_billing(db_session, "E1")
    confirm_payment(db_session, "E1")
    db_session.execute(sa.update(models.billing).values(created_at=_at(5)))
    _diagnosis(db_session, "う蝕", "K021")

    report = run_receipt_check(db_session, "202506")

    assert report.summary["total"] == 1
    assert not _rules(report.results[0], "basic")


def test_document_toggle_clears_derived_plan_warning(db_session, make_encounter):
    make_encounter(db_session, "E1", soap_p="CR充填")
    derive_billing(db_session, "E1")
    confirm_payment(db_session, "E1")
    db_session.execute(sa.update(models.billing).values(created_at=_at(5)))

    before = run_receipt_check(db_session, "202506").results[0]
    set_document_provided(db_session, "E1")
    after = run_receipt_check(db_session, "202506").results[0]

    assert WARN_MANAGEMENT_PLAN in before.warnings
    assert WARN_MANAGEMENT_PLAN not in after.warnings


def test_summary_counts_each_status(db_session, make_encounter):
    _billing(db_session, make_encounter, "E1", [SHOSHIN, SCALING], created_at=_at(3))
    _billing(db_session, make_encounter, "E2", [SAISHIN], created_at=_at(10))
    _billing(db_session, make_encounter, "E3", [SAISHIN, PULPECTOMY], created_at=_at(17))
    _diagnosis(db_session, "う蝕")

    report = run_receipt_check(db_session, "202506")

    assert report.summary == {"total": 3, "ok": 1, "warn": 1, "error": 1}


def test_bad_month_is_rejected(db_session):
    with pytest.raises(ValueError):
        run_receipt_check(db_session, "2025-6")


def test_database_failure_is_wrapped(db_session, in_memory_db):
    models.metadata.tables["check_age_limits"].drop(in_memory_db.engine)

    with pytest.raises(ClaimQueryError):
        run_receipt_check(db_session, "202506")


def test_rule_counts(db_session):
    counts = rule_counts(db_session)

    expected = {name: len(rows) for name, rows in DEFAULT_CHECK_RULES.items()}
    assert {k: v for k, v in counts.items() if k != "total"} == expected
    assert counts["total"] == sum(expected.values())


def test_rules_from_session_parse_json_columns(db_session):
    rules = CheckRules.from_session(db_session)

    requirement = rules.diagnosis_requirements[0]
    assert requirement.keywords == ("歯髄炎",)
    assert requirement.icd_prefixes == ("K040",)
    assert requirement.level is Level.ERROR
    assert rules.frequency_limits[2].period_label == "3ヶ月"


@pytest.mark.parametrize(
    "born, on, years, months",
    [
        (date(2020, 6, 15), date(2025, 6, 14), 4, 59),
        (date(2020, 6, 15), date(2025, 6, 15), 5, 60),
        (date(2025, 1, 31), date(2025, 3, 1), 0, 1),
    ],
)
def test_age_helpers(born, on, years, months):
    assert age_in_years(born, on) == years
    assert age_in_months(born, on) == months


@pytest.mark.parametrize(
    "total, expected",
    [
        (339, 1020),
        (325, 980),
        (335, 1010),
    ],
)
def test_expected_burden(total, expected):
    assert expected_burden(total, 0.3) == expected
