from datetime import datetime
from zoneinfo import ZoneInfo

import pytest
import sqlalchemy as sa

from dentbill import models
from dentbill.billing import confirm_payment, derive_billing
from dentbill.claims import NoPaidBillingsError, generate_monthly_claim, group_by_patient

TOKYO = ZoneInfo("Asia/Tokyo")


def _at(day, hour=10):
    return datetime(2025, 6, day, hour, tzinfo=TOKYO).timestamp()


def _paid_encounter(session, make_encounter, encounter_id, plan, created_at, **kwargs):
    make_encounter(session, encounter_id, soap_p=plan, **kwargs)
    derive_billing(session, encounter_id)
    confirm_payment(session, encounter_id)
    session.execute(
        sa.update(models.billing)
        .where(models.billing.c.record_id == encounter_id)
        .values(created_at=created_at)
    )


def _diagnosis(code, name, **fields):
    row = {
        "patient_id": "P001",
        "diagnosis_code": code,
        "diagnosis_name": name,
        "start_date": None,
        "end_date": None,
        "outcome": None,
        "modifier_code": None,
        "tooth_number": None,
    }
    row.update(fields)
    return row


def _records(claim, kind):
    return [line.split(",") for line in claim.text.split("\r\n") if line.startswith(kind + ",")]


def _total(session, *encounter_ids):
    return sum(
        session.execute(
            sa.select(models.billing.c.total_points).where(models.billing.c.record_id.in_(encounter_ids))
        ).scalars()
    )


def test_two_encounters_one_receipt(db_session, make_encounter):
    _paid_encounter(db_session, make_encounter, "R1", "CR充填", _at(3))
    _paid_encounter(db_session, make_encounter, "R2", "パノラマ", _at(17), patient_type=None)

    claim = generate_monthly_claim(db_session, "202506")
    total = _total(db_session, "R1", "R2")

    assert claim.receipt_count == 1
    assert claim.total_points == total
    assert len(_records(claim, "RE")) == 1
    assert _records(claim, "HO")[0][5] == str(total)
    assert _records(claim, "GO") == [["GO", "1", str(total), "99"]]
    jd = _records(claim, "JD")[0]
    assert jd[1] == "2"
    assert jd[1 + 3] == "1" and jd[1 + 17] == "1"
    assert _records(claim, "MF") == [["MF", str(round(total * 10 * 0.3))]]


def test_record_order(db_session, make_encounter):
    _paid_encounter(db_session, make_encounter, "R1", "ロキソニン 処方 CR充填", _at(5))
    claim = generate_monthly_claim(db_session, "202506")
    kinds = [line.split(",")[0] for line in claim.text.splitlines()]
    assert kinds[:4] == ["UK", "IR", "RE", "HO"]
    assert kinds[-3:] == ["JD", "MF", "GO"]
    first_iy = kinds.index("IY")
    assert all(kind == "SI" for kind in kinds[4:first_iy])
    assert kinds.index("TO") > first_iy


def test_drugs_materials_and_bonuses(db_session, make_encounter):
    _paid_encounter(db_session, make_encounter, "R1", "ロキソニン 処方 CR充填", _at(5))
    claim = generate_monthly_claim(db_session, "202506")

    iy = _records(claim, "IY")
    assert ["IY", "21", "", "620098801", "1", "3", "1"] in iy
    assert len(iy) == 2
    assert _records(claim, "TO") == [["TO", "70", "", "712040000", "1", "11", "1", "1"]]
    si_codes = [fields[3] for fields in _records(claim, "SI")]
    assert "301000110" in si_codes
    assert not any(code.startswith("BONUS-") for code in si_codes)
    assert not any("MAT-" in line for line in claim.text.split("\r\n"))


def test_si_teeth_are_six_digits(db_session, make_encounter):
    _paid_encounter(db_session, make_encounter, "R1", "#36 CR充填", _at(5))
    claim = generate_monthly_claim(db_session, "202506")
    cr = [fields for fields in _records(claim, "SI") if fields[3] == "312009110"]
    assert cr[0][4] == "003600"


def test_home_visit_comments_become_co_records(db_session, make_encounter):
    _paid_encounter(db_session, make_encounter, "R1", "訪問診療 義歯調整", _at(5))
    claim = generate_monthly_claim(db_session, "202506")
    assert [fields[1] for fields in _records(claim, "CO")] == ["830100348", "830100349"]


def test_diagnosis_translation(db_session, make_encounter):
    _paid_encounter(db_session, make_encounter, "R1", "CR充填", _at(5))
    db_session.execute(
        sa.insert(models.patient_diagnoses),
        [
            _diagnosis("5210001", "う蝕第２度", start_date="2025-05-20", tooth_number="#36"),
            _diagnosis("", "慢性歯周炎"),
            _diagnosis("0000000", "不明病名", outcome="cured", end_date="2025-06-30"),
        ],
    )
    claim = generate_monthly_claim(db_session, "202506")
    sy = _records(claim, "SY")
    assert sy[0] == ["SY", "5210001", "う蝕第２度", "202505", "", "", "", "36"]
    assert sy[1][1] == "5231004"
    assert sy[1][3] == "202506"
    assert sy[2][1:6] == ["0000000", "不明病名", "202506", "1", "202506"]
    assert '傷病名マスタ未登録: "不明病名" (code: 0000000)' in claim.warnings


def test_public_expense_sets_burden_flag(db_session, make_encounter):
    _paid_encounter(
        db_session, make_encounter, "R1", "CR充填", _at(5),
        public_expense_type="12", public_expense_recipient="1234",
    )
    claim = generate_monthly_claim(db_session, "202506")
    assert len(_records(claim, "KO")) == 1
    assert all(fields[2] == "1" for fields in _records(claim, "SI"))


def test_unpaid_and_other_months_are_excluded(db_session, make_encounter):
    make_encounter(db_session, "R1", soap_p="CR充填")
    derive_billing(db_session, "R1")
    db_session.execute(sa.update(models.billing).values(created_at=_at(5)))
    with pytest.raises(NoPaidBillingsError):
        generate_monthly_claim(db_session, "202506")

    confirm_payment(db_session, "R1")
    with pytest.raises(NoPaidBillingsError) as excinfo:
        generate_monthly_claim(db_session, "202507")
    assert excinfo.value.status_code == 404


def test_rederived_billing_needs_payment_again(db_session, make_encounter):
    _paid_encounter(db_session, make_encounter, "R1", "CR充填", _at(5))
    derive_billing(db_session, "R1")
    with pytest.raises(NoPaidBillingsError):
        generate_monthly_claim(db_session, "202506")

    confirm_payment(db_session, "R1")
    assert generate_monthly_claim(db_session, "202506").receipt_count == 1


def test_month_boundary_uses_clinic_timezone(db_session, make_encounter):
    # 2025-06-30 23:30 JST is still June 30 14:30 UTC
    _paid_encounter(db_session, make_encounter, "R1", "CR充填", _at(30, 23) + 30 * 60)
    claim = generate_monthly_claim(db_session, "202506")
    assert _records(claim, "JD")[0][1 + 30] == "1"


def test_missing_patient_is_skipped_without_using_a_number(db_session, make_encounter):
    _paid_encounter(db_session, make_encounter, "R1", "CR充填", _at(5))
    make_encounter(db_session, "R-ghost", soap_p="CR充填", patient_id="GHOST")
    derive_billing(db_session, "R-ghost")
    confirm_payment(db_session, "R-ghost")
    db_session.execute(
        sa.update(models.billing).where(models.billing.c.record_id == "R-ghost").values(created_at=_at(1))
    )
    db_session.execute(sa.delete(models.patients).where(models.patients.c.id == "GHOST"))

    claim = generate_monthly_claim(db_session, "202506")
    re = _records(claim, "RE")
    assert [fields[1] for fields in re] == ["1"]
    assert claim.receipt_count == 1
    assert claim.total_points == _total(db_session, "R1")
    assert any("GHOST" in w for w in claim.warnings)


def test_mark_billed_only_for_included_rows(db_session, make_encounter):
    _paid_encounter(db_session, make_encounter, "R1", "CR充填", _at(5))
    generate_monthly_claim(db_session, "202506")
    status = db_session.execute(sa.select(models.billing.c.claim_status)).scalar_one()
    assert status == "pending"

    claim = generate_monthly_claim(db_session, "202506", mark_billed=True)
    status = db_session.execute(sa.select(models.billing.c.claim_status)).scalar_one()
    assert status == "billed"
    assert claim.filename == "receipt_202506.UKE"


def test_bad_year_month():
    with pytest.raises(ValueError):
        generate_monthly_claim(None, "2025-6")


def test_group_by_patient_keeps_first_seen_order():
    rows = [{"patient_id": "B"}, {"patient_id": "A"}, {"patient_id": "B"}]
    grouped = group_by_patient(rows)
    assert list(grouped) == ["B", "A"]
    assert len(grouped["B"]) == 2
