"""
Integration tests for the SQLAlchemy ledger repository (in-memory SQLite).
"""

import pytest
from datetime import date

from clinic.exceptions import NotFoundError
from clinic.models import (
    Patient, Visit, VisitProcedure, ProcedureTemplate,
    DraftKey, SavedKey, ProcedureLine, SessionRecord, TemplateRecord
)
from clinic.services.financial_service import recompute
from clinic.services.balance_service import running_balances
from clinic.services.repository import SqlAlchemyLedgerRepository


def make_draft(local_id, patient_id, on, items=(), discount=0, payment=0, **fields):
    return recompute(SessionRecord(
        key=DraftKey(local_id),
        patient_id=patient_id,
        date=date.fromisoformat(on),
        reason_type='Control',
        items=list(items),
        discount=discount,
        payment=payment,
        **fields
    ))


@pytest.fixture
def repo(session):
    return SqlAlchemyLedgerRepository(session)


class TestSaveAndLoadSessions:
    """Tests for save_sessions() / load_sessions()."""

    def test_round_trip_with_cumulative_balance(self, repo, session, patient, db_templates):
        patient_id = patient.id
        resina_id = db_templates[1].id
        drafts = [
            make_draft(2, patient_id, '2024-02-10', discount=10, items=[
                ProcedureLine(id=-3, name='Resina', unit_price=80, quantity=1, template_id=resina_id),
                ProcedureLine(id=-4, name='Sellante', unit_price=20, quantity=2, is_active=False),
            ]),
            make_draft(1, patient_id, '2024-01-10', payment=50, items=[
                ProcedureLine(id=-1, name='Corona', unit_price=200, quantity=1),
            ], tooth_dx={'36': ['caries'], '11': ['fractura', 'sensibilidad']}, signer='Dra. Pérez'),
        ]

        result = repo.save_sessions(patient_id, {'primary_id': -2}, drafts)

        loaded = repo.load_sessions(patient_id)
        assert [s.date for s in loaded] == [date(2024, 1, 10), date(2024, 2, 10)]
        assert all(isinstance(s.key, SavedKey) for s in loaded)
        assert result == {'patient_id': patient_id, 'session_id': loaded[-1].key.id}

        first, second = loaded
        assert (first.budget, first.payment, first.balance) == (200, 50, 150)
        assert (second.budget, second.discount, second.balance) == (80, 10, 70)
        assert first.tooth_dx == {'36': ['caries'], '11': ['fractura', 'sensibilidad']}
        assert first.signer == 'Dra. Pérez'
        assert [(i.name, i.is_active, i.subtotal) for i in second.items] == [
            ('Resina', True, 80), ('Sellante', False, 40)
        ]
        assert second.items[0].template_id == resina_id
        assert all(i.id > 0 for i in second.items)

        cumulative = [v.cumulative_balance for v in session.query(Visit).order_by(Visit.date).all()]
        assert cumulative == [150, 220]

    def test_cumulative_continues_from_history(self, repo, session, patient):
        patient_id = patient.id
        repo.save_sessions(patient_id, {}, [make_draft(1, patient_id, '2024-01-01', payment=30)])
        repo.save_sessions(patient_id, {}, [make_draft(2, patient_id, '2024-02-01', items=[
            ProcedureLine(id=-1, name='Limpieza', unit_price=40, quantity=1),
        ])])

        latest = session.query(Visit).order_by(Visit.id.desc()).first()
        assert latest.balance == 40
        assert latest.cumulative_balance == 10

    def test_manual_budget_is_kept_and_balance_recomputed(self, repo, patient):
        patient_id = patient.id
        draft = make_draft(1, patient_id, '2024-03-01', items=[
            ProcedureLine(id=-1, name='Corona', unit_price=500, quantity=1),
        ])
        draft.budget = 900
        draft.balance = 12345

        repo.save_sessions(patient_id, {}, [draft])

        saved = repo.load_sessions(patient_id)[0]
        assert saved.budget == 900
        assert saved.balance == 900

    def test_malformed_tooth_json_loads_empty(self, repo, session, patient):
        patient_id = patient.id
        session.add(Visit(patient_id=patient_id, date=date(2024, 1, 1), tooth_dx_json='{no es json',
                          budget=0, discount=0, payment=0, balance=0, cumulative_balance=0))
        session.commit()

        assert repo.load_sessions(patient_id)[0].tooth_dx == {}

    def test_unknown_patient(self, repo, session):
        with pytest.raises(NotFoundError):
            repo.save_sessions(424242, {}, [make_draft(1, 424242, '2024-01-01')])
        assert session.query(Visit).count() == 0

    def test_quick_payment_is_negative_balance(self, repo, session, patient):
        patient_id = patient.id
        repo.save_sessions(patient_id, {}, [make_draft(1, patient_id, '2024-01-01', items=[
            ProcedureLine(id=-1, name='Corona', unit_price=300, quantity=1),
        ])])

        payment = make_draft(9, patient_id, '2024-02-01', payment=120)
        visit_id = repo.save_quick_payment(patient_id, payment)

        visit = session.query(Visit).filter_by(id=visit_id).one()
        assert (visit.budget, visit.payment, visit.balance) == (0, 120, -120)
        assert visit.cumulative_balance == 180
        assert session.query(VisitProcedure).filter_by(visit_id=visit_id).count() == 0


class TestProcedureTemplates:
    """Tests for the catalog reconciliation."""

    def test_reconcile_catalog(self, repo, session, patient, db_templates):
        patient_id = patient.id
        limpieza_id, resina_id = db_templates[0].id, db_templates[1].id
        sellante = ProcedureTemplate(name='Sellante', default_price=20, active=True)
        session.add(sellante)
        session.commit()
        sellante_id = sellante.id

        # a saved line points at Resina
        repo.save_sessions(patient_id, {}, [make_draft(1, patient_id, '2024-01-01', items=[
            ProcedureLine(id=-1, name='Resina', unit_price=80, quantity=1, template_id=resina_id),
        ])])

        repo.save_procedure_templates([
            TemplateRecord(id=limpieza_id, name='Limpieza', default_price=45),
            TemplateRecord(id=None, name='Corona', default_price=500),
            TemplateRecord(id=None, name='  ', default_price=1),
        ])

        active = repo.load_procedure_templates()
        assert [(t.name, t.default_price) for t in active] == [('Corona', 500), ('Limpieza', 45)]
        assert next(t.id for t in active if t.name == 'Limpieza') == limpieza_id

        resina = session.query(ProcedureTemplate).filter_by(id=resina_id).one()
        assert resina.active is False
        assert session.query(ProcedureTemplate).filter_by(id=sellante_id).first() is None

    def test_entry_without_id_matches_by_name(self, repo, session, db_templates):
        resina_id = db_templates[1].id

        repo.save_procedure_templates([TemplateRecord(id=None, name='Resina', default_price=95)])

        active = repo.load_procedure_templates()
        assert [(t.id, t.name, t.default_price) for t in active] == [(resina_id, 'Resina', 95)]


class TestPendingBalances:
    """Tests for pending_balances()."""

    def test_lists_only_active_patients_that_owe(self, repo, session, patient):
        owing_id = patient.id
        paid = Patient(full_name='Bruno Díaz', doc_id='DOC-B', status='active')
        gone = Patient(full_name='Carla Ruiz', doc_id='DOC-C', status='inactive')
        session.add_all([paid, gone])
        session.commit()
        paid_id, gone_id = paid.id, gone.id

        repo.save_sessions(owing_id, {}, [make_draft(1, owing_id, '2024-01-01', items=[
            ProcedureLine(id=-1, name='Corona', unit_price=300, quantity=1),
        ])])
        repo.save_quick_payment(owing_id, make_draft(2, owing_id, '2024-02-01', payment=100))

        repo.save_sessions(paid_id, {}, [make_draft(1, paid_id, '2024-01-01', items=[
            ProcedureLine(id=-1, name='Limpieza', unit_price=40, quantity=1),
        ], payment=40)])
        repo.save_sessions(gone_id, {}, [make_draft(1, gone_id, '2024-01-01', items=[
            ProcedureLine(id=-1, name='Limpieza', unit_price=40, quantity=1),
        ])])

        rows = repo.pending_balances()

        assert [r['patient_id'] for r in rows] == [owing_id]
        assert rows[0]['current_balance'] == 200
        assert rows[0]['last_visit'] == date(2024, 2, 1)


class TestBackdatedSessions:
    """A session saved with an earlier date than the history."""

    def test_cumulative_follows_date_order(self, repo, session, patient):
        patient_id = patient.id
        repo.save_sessions(patient_id, {}, [
            make_draft(1, patient_id, '2024-02-01'),
            make_draft(2, patient_id, '2024-02-01', items=[
                ProcedureLine(id=-1, name='Resina', unit_price=100, quantity=1),
            ]),
        ])
        repo.save_sessions(patient_id, {}, [make_draft(3, patient_id, '2024-01-01', items=[
            ProcedureLine(id=-2, name='Limpieza', unit_price=50, quantity=1),
        ])])

        visits = session.query(Visit).filter_by(patient_id=patient_id).order_by(Visit.date, Visit.id).all()
        assert [v.balance for v in visits] == [50, 0, 100]
        assert [v.cumulative_balance for v in visits] == [50, 50, 150]

        sessions = repo.load_sessions(patient_id)
        assert [r['cumulative_balance'] for r in running_balances(sessions)] == [50, 50, 150]

        rows = repo.pending_balances()
        assert rows[0]['current_balance'] == 150
        assert rows[0]['last_visit'] == date(2024, 2, 1)

    def test_backdated_quick_payment(self, repo, session, patient):
        patient_id = patient.id
        repo.save_sessions(patient_id, {}, [make_draft(1, patient_id, '2024-03-01', items=[
            ProcedureLine(id=-1, name='Corona', unit_price=300, quantity=1),
        ])])
        repo.save_quick_payment(patient_id, make_draft(2, patient_id, '2024-01-15', payment=100))

        visits = session.query(Visit).filter_by(patient_id=patient_id).order_by(Visit.date, Visit.id).all()
        assert [v.cumulative_balance for v in visits] == [-100, 200]
        assert repo.pending_balances()[0]['current_balance'] == 200
