import pytest
from datetime import date
import uuid

from clinic import create_app
from clinic import database
from clinic.database import get_session
from clinic.models import (
    Patient, ProcedureTemplate, SavedKey, ProcedureLine, SessionRecord, TemplateRecord
)
from clinic.services.draft_service import SessionLedger
from clinic.services.repository import LedgerRepository


class FakeRepository(LedgerRepository):
    """In-memory storage collaborator for ledger unit tests."""

    def __init__(self, templates=None):
        self.stored = {}
        self.templates = list(templates or [])
        self.save_calls = []
        self.template_saves = []
        self.quick_payments = []
        self.fail_saves = 0
        self.fail_template_saves = 0
        self.on_save = None
        self._ids = iter(range(100, 100000))

    def next_id(self):
        return next(self._ids)

    def add_saved(self, patient_id, on, budget=0, discount=0, payment=0, balance=None,
                  session_id=None, items=None):
        """Store a saved session directly (figures as given, like storage does)."""
        if balance is None:
            balance = budget - discount - payment
        record = SessionRecord(
            key=SavedKey(session_id if session_id is not None else self.next_id()),
            patient_id=patient_id,
            date=date.fromisoformat(on) if isinstance(on, str) else on,
            reason_type='Control',
            items=list(items or []),
            budget=budget,
            discount=discount,
            payment=payment,
            balance=balance,
        )
        self.stored.setdefault(patient_id, []).append(record)
        return record

    def load_sessions(self, patient_id):
        rows = sorted(self.stored.get(patient_id, []), key=lambda s: s.sort_key)
        return [s.clone() for s in rows]

    def save_sessions(self, patient_id, payload, drafts):
        self.save_calls.append((patient_id, dict(payload), [d.clone() for d in drafts]))
        if self.on_save:
            self.on_save()
        if self.fail_saves:
            self.fail_saves -= 1
            raise RuntimeError('database is locked')

        last = None
        for draft in drafts:
            saved = draft.clone()
            saved.key = SavedKey(self.next_id())
            self.stored.setdefault(patient_id, []).append(saved)
            last = saved
        return {'patient_id': patient_id, 'session_id': last.key.id}

    def load_procedure_templates(self):
        return [t for t in self.templates if t.active]

    def save_procedure_templates(self, templates):
        self.template_saves.append(list(templates))
        if self.fail_template_saves:
            self.fail_template_saves -= 1
            raise RuntimeError('catalog table is locked')
        self.templates = [
            TemplateRecord(
                id=t.id if t.id is not None else self.next_id(),
                name=t.name,
                default_price=t.default_price,
            )
            for t in templates
        ]

    def save_quick_payment(self, patient_id, session):
        saved = session.clone()
        saved.key = SavedKey(self.next_id())
        self.stored.setdefault(patient_id, []).append(saved)
        self.quick_payments.append(saved)
        return saved.key.id

    def pending_balances(self):
        return []


@pytest.fixture
def catalog():
    """Procedure catalog used to pre-populate drafts."""
    return [
        TemplateRecord(id=1, name='Limpieza', default_price=40),
        TemplateRecord(id=2, name='Resina', default_price=80),
        TemplateRecord(id=3, name='Extracción', default_price=60),
    ]


@pytest.fixture
def repo(catalog):
    return FakeRepository(templates=catalog)


@pytest.fixture
def ledger(repo):
    """Ledger of patient 1 with an empty history."""
    return SessionLedger.open(1, repo)


@pytest.fixture
def line():
    """Factory for procedure lines."""
    def make(line_id, name='Resina', unit_price=80, quantity=1, is_active=True):
        return ProcedureLine(id=line_id, name=name, unit_price=unit_price,
                             quantity=quantity, is_active=is_active)
    return make


# =====================================================
# DATABASE / FLASK FIXTURES
# =====================================================

@pytest.fixture(scope='session')
def app():
    """Create application instance for testing."""
    app = create_app('config.TestingConfig')
    return app


@pytest.fixture(scope='function')
def session(app):
    """Create database session (fresh tables) for testing."""
    with app.app_context():
        database.create_all()
        session = get_session()
        yield session
        session.rollback()
        session.close()
        database.drop_all()


@pytest.fixture(scope='function')
def client(app, session):
    """Create test client with no open ledgers."""
    app.extensions['ledgers'] = {}
    return app.test_client()


@pytest.fixture(scope='function')
def patient(session):
    """Create test patient."""
    suffix = str(uuid.uuid4())[:8]
    patient = Patient(
        full_name=f'Ana Torres {suffix}',
        doc_id=f'DOC-{suffix}',
        phone='555-0101',
        status='active'
    )
    session.add(patient)
    session.commit()
    session.refresh(patient)
    return patient


@pytest.fixture(scope='function')
def db_templates(session):
    """Create catalog rows."""
    rows = [
        ProcedureTemplate(name='Limpieza', default_price=40, active=True),
        ProcedureTemplate(name='Resina', default_price=80, active=True),
    ]
    session.add_all(rows)
    session.commit()
    for row in rows:
        session.refresh(row)
    return rows
