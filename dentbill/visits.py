"""Initial vs. follow-up visit classification.

A visit is billed as an initial visit (初診) when the appointment is flagged
``new`` or when the patient has not completed a visit within the last
:data:`NEW_VISIT_GAP_DAYS` days.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional

import sqlalchemy as sa
from sqlalchemy.orm import Session

from dentbill import models
from dentbill.time_utils import whole_days_between

NEW_VISIT_GAP_DAYS = 90


def is_new_visit(
    patient_type: Optional[str],
    visit_at: Optional[float],
    previous_completed_at: Optional[float],
) -> bool:
    """Pure classification from the appointment flag and two timestamps."""

    if (patient_type or "").strip().lower() == "new":
        return True
    if previous_completed_at is None or visit_at is None:
        return True
    return whole_days_between(previous_completed_at, visit_at) >= NEW_VISIT_GAP_DAYS


def _previous_completed_visit(
    session: Session, patient_id: Optional[str], before: float
) -> Optional[float]:
    if not patient_id:
        return None
    stmt = (
        sa.select(models.appointments.c.scheduled_at)
        .where(models.appointments.c.patient_id == patient_id)
        .where(models.appointments.c.status == "completed")
        .where(models.appointments.c.scheduled_at < before)
        .order_by(models.appointments.c.scheduled_at.desc())
        .limit(1)
    )
    return session.execute(stmt).scalar_one_or_none()


def classify_encounter(session: Session, record: Mapping[str, Any]) -> bool:
    """Return ``True`` when the encounter in ``record`` is an initial visit."""

    appointment_id = record.get("appointment_id")
    if not appointment_id:
        return True

    appointment = (
        session.execute(
            sa.select(models.appointments).where(models.appointments.c.id == appointment_id)
        )
        .mappings()
        .first()
    )
    if appointment is None:
        return True

    if (appointment.get("patient_type") or "").lower() == "new":
        return True

    visit_at = appointment["scheduled_at"]
    previous = _previous_completed_visit(
        session, record.get("patient_id") or appointment.get("patient_id"), visit_at
    )
    return is_new_visit(appointment.get("patient_type"), visit_at, previous)


__all__ = ["NEW_VISIT_GAP_DAYS", "classify_encounter", "is_new_visit"]
