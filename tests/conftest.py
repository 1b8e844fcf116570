import os
import sys
from dataclasses import dataclass
from typing import Any, Callable, Generator, Iterator, Optional

import pytest
import sqlalchemy as sa
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Ensure the repository root is on sys.path so tests can import the package
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

os.environ.setdefault('DENTBILL_DATABASE_URL', 'sqlite+pysqlite:///:memory:')

from dentbill import db, models  # noqa: E402
from dentbill.config import get_settings  # noqa: E402
from dentbill.reference_data import seed_defaults  # noqa: E402


DEFAULT_PATIENT = {
    'id': 'P001',
    'name_kanji': '山田太郎',
    'name_kana': 'ヤマダタロウ',
    'sex': '男',
    'date_of_birth': '1980-04-01',
    'burden_ratio': 0.3,
    'insurance_type': '社保',
    'insurer_number': '6139999',
    'insured_symbol': '12',
    'insured_number': '345',
}


@dataclass
class DatabaseContext:
    """Holds state for the ephemeral in-memory SQLite database."""

    engine: sa.engine.Engine
    session_factory: sessionmaker

    def make_session(self) -> Session:
        return self.session_factory()


@pytest.fixture(scope='function')
def in_memory_db() -> Iterator[DatabaseContext]:
    """Provide an isolated, seeded in-memory SQLite database for each test."""

    get_settings.cache_clear()
    engine = sa.create_engine(
        'sqlite+pysqlite:///:memory:',
        future=True,
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    models.create_all(engine)
    db.configure(engine)
    session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)

    with session_factory() as session:
        seed_defaults(session)
        session.commit()

    try:
        yield DatabaseContext(engine=engine, session_factory=session_factory)
    finally:
        engine.dispose()
        get_settings.cache_clear()


@pytest.fixture(scope='function')
def db_session(in_memory_db: DatabaseContext) -> Iterator[Session]:
    """Yield a SQLAlchemy session tied to the in-memory database."""

    session = in_memory_db.make_session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope='function')
def api_client(in_memory_db: DatabaseContext) -> Iterator[TestClient]:
    """Yield a FastAPI test client bound to the in-memory database."""

    from dentbill import main

    def _session_dependency() -> Generator[Session, None, None]:
        session = in_memory_db.make_session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    main.app.dependency_overrides[db.get_session] = _session_dependency
    try:
        yield TestClient(main.app)
    finally:
        main.app.dependency_overrides.pop(db.get_session, None)


def insert_patient(session: Session, **overrides: Any) -> str:
    values = dict(DEFAULT_PATIENT)
    values.update(overrides)
    exists = session.execute(
        sa.select(models.patients.c.id).where(models.patients.c.id == values['id'])
    ).first()
    if not exists:
        session.execute(sa.insert(models.patients).values(**values))
    return values['id']


@pytest.fixture
def make_encounter() -> Callable[..., str]:
    """Return a helper inserting patient, appointment and medical record rows."""

    def _make(
        session: Session,
        encounter_id: str,
        *,
        soap_p: str = '',
        soap_s: Optional[str] = None,
        patient_id: str = 'P001',
        patient_type: Optional[str] = 'new',
        scheduled_at: float = 1_700_000_000.0,
        tooth_surfaces: Optional[str] = None,
        **patient_fields: Any,
    ) -> str:
        insert_patient(session, id=patient_id, **patient_fields)
        appointment_id = f'APT-{encounter_id}'
        session.execute(
            sa.insert(models.appointments).values(
                id=appointment_id,
                patient_id=patient_id,
                patient_type=patient_type,
                status='completed',
                scheduled_at=scheduled_at,
            )
        )
        session.execute(
            sa.insert(models.medical_records).values(
                id=encounter_id,
                patient_id=patient_id,
                appointment_id=appointment_id,
                soap_s=soap_s,
                soap_p=soap_p,
                tooth_surfaces=tooth_surfaces,
            )
        )
        return encounter_id

    return _make
