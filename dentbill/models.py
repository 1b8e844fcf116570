"""SQLAlchemy table metadata for the billing schema.

Reference tables (fee master, billing patterns, drug and material masters,
facility bonuses, receipt code maps) and the claim-check rule tables are
read-only during a derivation.  The ``billing`` table is the only one written
by this service.  List and mapping valued columns are stored as JSON text.
"""

from __future__ import annotations

from sqlalchemy import (
    Boolean,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.engine import Engine
from sqlalchemy.sql import text

metadata = MetaData()

clinic_settings = Table(
    "clinic_settings",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("clinic_code", String, nullable=True),
    Column("prefecture_code", String, nullable=True),
    Column("facility_code", String, nullable=True),
    Column("name", String, nullable=True),
    Column("phone", String, nullable=True),
)

patients = Table(
    "patients",
    metadata,
    Column("id", String, primary_key=True),
    Column("name_kanji", String, nullable=True),
    Column("name_kana", String, nullable=True),
    Column("sex", String, nullable=True),
    Column("date_of_birth", String, nullable=True),
    Column("burden_ratio", Float, nullable=True),
    Column("insurance_type", String, nullable=True),
    Column("insurer_number", String, nullable=True),
    Column("insured_symbol", String, nullable=True),
    Column("insured_number", String, nullable=True),
    Column("public_expense_type", String, nullable=True),
    Column("public_expense_recipient", String, nullable=True),
    Column("allergies", Text, nullable=True),
)

appointments = Table(
    "appointments",
    metadata,
    Column("id", String, primary_key=True),
    Column("patient_id", String, ForeignKey("patients.id"), nullable=True),
    Column("patient_type", String, nullable=True),
    Column("status", String, nullable=False, server_default=text("'scheduled'")),
    Column("scheduled_at", Float, nullable=False),
)
Index("idx_appointments_patient", appointments.c.patient_id, appointments.c.scheduled_at)

medical_records = Table(
    "medical_records",
    metadata,
    Column("id", String, primary_key=True),
    Column("patient_id", String, ForeignKey("patients.id"), nullable=True),
    Column("appointment_id", String, ForeignKey("appointments.id"), nullable=True),
    Column("soap_s", Text, nullable=True),
    Column("soap_o", Text, nullable=True),
    Column("soap_a", Text, nullable=True),
    Column("soap_p", Text, nullable=True),
    Column("tooth_surfaces", Text, nullable=True),
)

fee_revisions = Table(
    "fee_revisions",
    metadata,
    Column("revision_code", String, primary_key=True),
    Column("is_current", Boolean, nullable=False, server_default=text("0")),
)

fee_master = Table(
    "fee_master",
    metadata,
    Column("code", String, primary_key=True),
    Column("name", String, nullable=False),
    Column("points", Integer, nullable=False),
    Column("category", String, nullable=True),
    Column("conditions", Text, nullable=True),
    Column("revision_code", String, nullable=True),
)

billing_patterns = Table(
    "billing_patterns",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("pattern_name", String, nullable=False),
    Column("category", String, nullable=False),
    Column("soap_keywords", Text, nullable=False, server_default=text("'[]'")),
    Column("soap_exclude_keywords", Text, nullable=False, server_default=text("'[]'")),
    Column("fee_codes", Text, nullable=False, server_default=text("'[]'")),
    Column("use_tooth_numbers", Boolean, nullable=False, server_default=text("0")),
    Column("condition", Text, nullable=True),
    Column("priority", Integer, nullable=False, server_default=text("0")),
    Column("revision_code", String, nullable=False),
    Column("is_active", Boolean, nullable=False, server_default=text("1")),
)
Index("idx_billing_patterns_revision", billing_patterns.c.revision_code, billing_patterns.c.priority)

drug_master = Table(
    "drug_master",
    metadata,
    Column("yj_code", String, primary_key=True),
    Column("name", String, nullable=False),
    Column("unit_price", Float, nullable=False),
    Column("unit", String, nullable=True),
    Column("dosage_form", String, nullable=True),
    Column("default_dose", String, nullable=True),
    Column("default_frequency", String, nullable=True),
    Column("default_days", Integer, nullable=False, server_default=text("1")),
    Column("drug_category", String, nullable=True),
    Column("receipt_code", String, nullable=True),
    Column("is_active", Boolean, nullable=False, server_default=text("1")),
)

material_master = Table(
    "material_master",
    metadata,
    Column("material_code", String, primary_key=True),
    Column("name", String, nullable=False),
    Column("unit_price", Float, nullable=False),
    Column("unit", String, nullable=True),
    Column("material_category", String, nullable=True),
    Column("procedure_category", String, nullable=True),
    Column("default_quantity", Float, nullable=False, server_default=text("1")),
    Column("related_fee_codes", Text, nullable=False, server_default=text("'[]'")),
    Column("receipt_code", String, nullable=True),
    Column("shinryo_shikibetsu", String, nullable=True),
    Column("is_active", Boolean, nullable=False, server_default=text("1")),
)

facility_standards = Table(
    "facility_standards",
    metadata,
    Column("code", String, primary_key=True),
    Column("name", String, nullable=True),
    Column("is_registered", Boolean, nullable=False, server_default=text("0")),
)

facility_bonus = Table(
    "facility_bonus",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("facility_code", String, ForeignKey("facility_standards.code"), nullable=False),
    Column("target_kubun", String, nullable=False),
    Column("target_sub", String, nullable=True),
    Column("bonus_points", Integer, nullable=False, server_default=text("0")),
    Column("bonus_type", String, nullable=False, server_default=text("'add'")),
    Column("condition", String, nullable=True),
    Column("is_active", Boolean, nullable=False, server_default=text("1")),
)

fee_master_receipt = Table(
    "fee_master_receipt",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("kubun_code", String, nullable=False),
    Column("sub_code", String, nullable=False, server_default=text("''")),
    Column("receipt_code", String, nullable=False),
    Column("shinryo_shikibetsu", String, nullable=True),
    UniqueConstraint("kubun_code", "sub_code", name="uq_fee_master_receipt_key"),
)

diagnosis_master = Table(
    "diagnosis_master",
    metadata,
    Column("code", String, primary_key=True),
    Column("icd_code", String, nullable=True),
    Column("name", String, nullable=False),
    Column("name_kana", String, nullable=True),
)

patient_diagnoses = Table(
    "patient_diagnoses",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("patient_id", String, ForeignKey("patients.id"), nullable=False),
    Column("diagnosis_code", String, nullable=True),
    Column("diagnosis_name", String, nullable=True),
    Column("start_date", String, nullable=True),
    Column("end_date", String, nullable=True),
    Column("outcome", String, nullable=True),
    Column("modifier_code", String, nullable=True),
    Column("tooth_number", String, nullable=True),
)
Index("idx_patient_diagnoses_patient", patient_diagnoses.c.patient_id)

billing = Table(
    "billing",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("record_id", String, ForeignKey("medical_records.id"), nullable=False),
    Column("patient_id", String, nullable=True),
    Column("total_points", Integer, nullable=False, server_default=text("0")),
    Column("patient_burden", Integer, nullable=False, server_default=text("0")),
    Column("insurance_claim", Integer, nullable=False, server_default=text("0")),
    Column("burden_ratio", Float, nullable=False),
    Column("procedures_detail", Text, nullable=False, server_default=text("'[]'")),
    Column("receipt_comments", Text, nullable=True),
    Column("ai_check_warnings", Text, nullable=False, server_default=text("'[]'")),
    Column("document_provided", Boolean, nullable=False, server_default=text("0")),
    Column("claim_status", String, nullable=False, server_default=text("'pending'")),
    Column("payment_status", String, nullable=False, server_default=text("'unpaid'")),
    Column("created_at", Float, nullable=False),
    Column("updated_at", Float, nullable=False),
    UniqueConstraint("record_id", name="uq_billing_record"),
)
Index("idx_billing_created_payment", billing.c.created_at, billing.c.payment_status)

# Claim check rule tables.  Codes are 9-digit receipt codes.

check_frequency_limits = Table(
    "check_frequency_limits",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("shinryo_code", String, nullable=False),
    Column("name", String, nullable=False),
    Column("limit_type", String, nullable=False),
    Column("max_count", Integer, nullable=False),
    Column("period_months", Integer, nullable=True),
    Column("exception_conditions", Text, nullable=True),
)
Index("idx_check_frequency_code", check_frequency_limits.c.shinryo_code)

check_exclusive_pairs = Table(
    "check_exclusive_pairs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("code_a", String, nullable=False),
    Column("name_a", String, nullable=False),
    Column("code_b", String, nullable=False),
    Column("name_b", String, nullable=False),
    Column("exclusion_type", String, nullable=False),
    Column("exception_conditions", Text, nullable=True),
)

check_addition_rules = Table(
    "check_addition_rules",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("base_code", String, nullable=False),
    Column("base_name", String, nullable=False),
    Column("addition_code", String, nullable=False),
    Column("addition_name", String, nullable=False),
    Column("addition_type", String, nullable=True),
    Column("required_facility", String, nullable=True),
    Column("conditions", Text, nullable=True),
)

check_procedure_materials = Table(
    "check_procedure_materials",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("procedure_code", String, nullable=False),
    Column("procedure_name", String, nullable=False),
    Column("material_code", String, nullable=False),
    Column("material_name", String, nullable=False),
    Column("is_required", Boolean, nullable=False, server_default=text("1")),
    Column("default_quantity", Float, nullable=False, server_default=text("1")),
    Column("conditions", Text, nullable=True),
)

check_age_limits = Table(
    "check_age_limits",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("shinryo_code", String, nullable=False),
    Column("name", String, nullable=False),
    Column("min_age", Integer, nullable=True),
    Column("max_age", Integer, nullable=True),
    Column("age_type", String, nullable=False, server_default=text("'years'")),
    Column("exception_conditions", Text, nullable=True),
)

check_incremental_fees = Table(
    "check_incremental_fees",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("shinryo_code", String, nullable=False),
    Column("name", String, nullable=False),
    Column("base_points", Integer, nullable=False, server_default=text("0")),
    Column("increment_points", Integer, nullable=False, server_default=text("0")),
    Column("increment_unit", String, nullable=True),
    Column("base_count", Integer, nullable=False, server_default=text("1")),
    Column("max_count", Integer, nullable=True),
    Column("conditions", Text, nullable=True),
)

diagnosis_requirements = Table(
    "diagnosis_requirements",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("procedure_code_pattern", String, nullable=False),
    Column("required_diagnosis_keywords", Text, nullable=False, server_default=text("'[]'")),
    Column("required_icd_prefixes", Text, nullable=False, server_default=text("'[]'")),
    Column("error_level", String, nullable=False, server_default=text("'error'")),
    Column("message", String, nullable=False),
    Column("legal_basis", String, nullable=True),
    Column("is_active", Boolean, nullable=False, server_default=text("1")),
)


def create_all(engine: Engine) -> None:
    """Create every table declared on :data:`metadata` if missing."""

    metadata.create_all(engine)


__all__ = [
    "metadata",
    "clinic_settings",
    "patients",
    "appointments",
    "medical_records",
    "fee_revisions",
    "fee_master",
    "billing_patterns",
    "drug_master",
    "material_master",
    "facility_standards",
    "facility_bonus",
    "fee_master_receipt",
    "diagnosis_master",
    "patient_diagnoses",
    "billing",
    "check_frequency_limits",
    "check_exclusive_pairs",
    "check_addition_rules",
    "check_procedure_materials",
    "check_age_limits",
    "check_incremental_fees",
    "diagnosis_requirements",
    "create_all",
]
