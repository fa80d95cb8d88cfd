"""
Ledger repository - the storage collaborator of the session ledger.

The ledger only talks to storage through LedgerRepository. The SQLAlchemy
implementation below is the one the application wires in; it is also the
only place (with the HTTP layer) that speaks the signed-id convention.
"""
import abc
import json
import logging
from datetime import date as date_cls
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import func, select

from clinic.exceptions import ClinicError, NotFoundError, PersistenceError
from clinic.models import (
    Patient, Visit, VisitProcedure, ProcedureTemplate,
    SavedKey, ProcedureLine, SessionRecord, TemplateRecord
)
from clinic.services.financial_service import active_total, compute_balance, line_subtotal, to_amount

logger = logging.getLogger(__name__)


class LedgerRepository(abc.ABC):
    """Storage operations the ledger depends on."""

    @abc.abstractmethod
    def load_sessions(self, patient_id: int) -> List[SessionRecord]:
        """All persisted sessions of the patient, ordered by (date, id)."""

    @abc.abstractmethod
    def save_sessions(self, patient_id: int, payload: Dict[str, Any],
                      drafts: Sequence[SessionRecord]) -> Dict[str, int]:
        """
        Persist every given draft in one unit of work.

        Returns {'patient_id', 'session_id'} where session_id is the id given
        to the most recent draft.
        """

    @abc.abstractmethod
    def load_procedure_templates(self) -> List[TemplateRecord]:
        """Active catalog entries."""

    @abc.abstractmethod
    def save_procedure_templates(self, templates: Sequence[TemplateRecord]) -> None:
        """Replace the active catalog with `templates`."""

    @abc.abstractmethod
    def save_quick_payment(self, patient_id: int, session: SessionRecord) -> int:
        """Persist a payment-only session directly. Returns its id."""

    @abc.abstractmethod
    def pending_balances(self) -> List[Dict[str, Any]]:
        """Active patients whose latest cumulative balance is positive."""


# =====================================================
# CONVERSION HELPERS
# =====================================================

def _load_tooth_dx(raw: Optional[str]) -> Dict[str, List[str]]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError:
        logger.warning(f"[REPO] Ignoring malformed tooth_dx_json: {raw[:40]!r}")
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _dump_tooth_dx(tooth_dx: Dict[str, List[str]]) -> Optional[str]:
    if not tooth_dx:
        return None
    return json.dumps(tooth_dx, sort_keys=True)


def visit_to_record(visit: Visit) -> SessionRecord:
    """Build the ledger record of a persisted visit (figures as stored)."""
    items = [
        ProcedureLine(
            id=proc.id,
            name=proc.name or '',
            unit_price=proc.unit_price or 0,
            quantity=proc.quantity or 0,
            is_active=bool(proc.is_active),
            subtotal=proc.subtotal or 0,
            template_id=proc.procedure_template_id,
            tooth_number=proc.tooth_number,
            notes=proc.notes,
        )
        for proc in visit.procedures
    ]
    return SessionRecord(
        key=SavedKey(visit.id),
        patient_id=visit.patient_id,
        date=visit.date,
        reason_type=visit.reason_type,
        reason_detail=visit.reason_detail or '',
        diagnosis_text=visit.diagnosis_text or '',
        clinical_notes=visit.clinical_notes or '',
        signer=visit.signer or '',
        tooth_dx=_load_tooth_dx(visit.tooth_dx_json),
        items=items,
        budget=visit.budget or 0,
        discount=visit.discount or 0,
        payment=visit.payment or 0,
        balance=visit.balance or 0,
        payment_method_id=visit.payment_method_id,
        payment_notes=visit.payment_notes,
    )


class SqlAlchemyLedgerRepository(LedgerRepository):
    """LedgerRepository backed by the SQLAlchemy session of the application."""

    def __init__(self, session):
        self.session = session

    def load_sessions(self, patient_id: int) -> List[SessionRecord]:
        visits = self.session.query(Visit).filter(
            Visit.patient_id == patient_id,
            Visit.is_saved.is_(True)
        ).order_by(Visit.date.asc(), Visit.id.asc()).all()
        return [visit_to_record(v) for v in visits]

    def save_sessions(self, patient_id, payload, drafts):
        if not drafts:
            raise PersistenceError('No hay borradores para guardar')

        try:
            self._require_patient(patient_id)

            last_visit = None
            for draft in sorted(drafts, key=lambda s: s.sort_key):
                last_visit = self._insert_visit(patient_id, draft)
            self._refresh_cumulative(patient_id)

            self.session.commit()
            logger.info(
                f"[REPO] Saved {len(drafts)} session(s) for patient={patient_id}, "
                f"primary={last_visit.id}"
            )
            return {'patient_id': patient_id, 'session_id': last_visit.id}

        except ClinicError:
            self.session.rollback()
            raise
        except Exception as e:
            self.session.rollback()
            logger.error(f"[REPO] save_sessions failed for patient={patient_id}: {e}")
            raise PersistenceError(payload={'patient_id': patient_id}) from e

    def save_quick_payment(self, patient_id, session):
        try:
            self._require_patient(patient_id)
            visit = self._insert_visit(patient_id, session)
            self._refresh_cumulative(patient_id)
            self.session.commit()
            logger.info(f"[REPO] Quick payment saved: patient={patient_id}, visit={visit.id}")
            return visit.id
        except ClinicError:
            self.session.rollback()
            raise
        except Exception as e:
            self.session.rollback()
            logger.error(f"[REPO] save_quick_payment failed for patient={patient_id}: {e}")
            raise PersistenceError(payload={'patient_id': patient_id}) from e

    def load_procedure_templates(self) -> List[TemplateRecord]:
        rows = self.session.query(ProcedureTemplate).filter(
            ProcedureTemplate.active.is_(True)
        ).order_by(ProcedureTemplate.name.asc()).all()
        return [
            TemplateRecord(id=row.id, name=row.name, default_price=row.default_price, active=True)
            for row in rows
        ]

    def save_procedure_templates(self, templates):
        """
        Reconcile the catalog with the given entries.

        Every template is marked inactive, then each entry is upserted by id
        (or by name when it has none) and reactivated. Inactive templates no
        saved procedure points to are deleted.
        """
        try:
            self.session.query(ProcedureTemplate).update(
                {ProcedureTemplate.active: False}, synchronize_session='evaluate'
            )

            for entry in templates:
                name = (entry.name or '').strip()
                if not name:
                    continue
                price = to_amount(entry.default_price)

                row = None
                if entry.id is not None:
                    row = self.session.query(ProcedureTemplate).filter_by(id=entry.id).first()
                if row is None:
                    row = self.session.query(ProcedureTemplate).filter_by(name=name).first()

                if row is None:
                    self.session.add(ProcedureTemplate(name=name, default_price=price, active=True))
                else:
                    row.name = name
                    row.default_price = price
                    row.active = True
                # Names are unique, flush before the next lookup by name
                self.session.flush()

            referenced = select(VisitProcedure.procedure_template_id).where(
                VisitProcedure.procedure_template_id.isnot(None)
            ).distinct()
            self.session.query(ProcedureTemplate).filter(
                ProcedureTemplate.active.is_(False),
                ProcedureTemplate.id.notin_(referenced)
            ).delete(synchronize_session=False)

            self.session.commit()
            logger.info(f"[REPO] Procedure catalog saved ({len(templates)} entries)")

        except Exception as e:
            self.session.rollback()
            logger.error(f"[REPO] save_procedure_templates failed: {e}")
            raise PersistenceError('No se pudo guardar el catálogo de procedimientos') from e

    def pending_balances(self) -> List[Dict[str, Any]]:
        latest = self.session.query(
            Visit.patient_id.label('patient_id'),
            Visit.cumulative_balance.label('current_balance'),
            Visit.date.label('last_visit'),
            func.row_number().over(
                partition_by=Visit.patient_id,
                order_by=(Visit.date.desc(), Visit.id.desc())
            ).label('rn')
        ).filter(Visit.is_saved.is_(True)).subquery()

        rows = self.session.query(
            Patient.id, Patient.full_name, Patient.phone, Patient.doc_id,
            latest.c.current_balance, latest.c.last_visit
        ).join(
            latest, (latest.c.patient_id == Patient.id) & (latest.c.rn == 1)
        ).filter(
            Patient.status == 'active',
            latest.c.current_balance > 0
        ).order_by(latest.c.current_balance.desc(), Patient.full_name.asc()).all()

        return [
            {
                'patient_id': row[0],
                'full_name': row[1],
                'phone': row[2],
                'doc_id': row[3],
                'current_balance': row[4],
                'last_visit': row[5],
            }
            for row in rows
        ]

    # =====================================================
    # PRIVATE HELPERS
    # =====================================================

    def _require_patient(self, patient_id):
        patient = self.session.query(Patient).filter_by(id=patient_id).first()
        if not patient:
            raise NotFoundError('Paciente no encontrado.', payload={'patient_id': patient_id})
        return patient

    def _refresh_cumulative(self, patient_id) -> None:
        """
        Rewrite cumulative_balance of every saved visit in (date, id) order.

        A backdated session changes the running balance of every later one,
        so the column is recomputed from the frozen per-visit balances.
        """
        visits = self.session.query(Visit).filter(
            Visit.patient_id == patient_id,
            Visit.is_saved.is_(True)
        ).order_by(Visit.date.asc(), Visit.id.asc()).all()

        running = 0
        for visit in visits:
            running += visit.balance or 0
            if visit.cumulative_balance != running:
                visit.cumulative_balance = running
        self.session.flush()

    def _insert_visit(self, patient_id, record: SessionRecord) -> Visit:
        """Insert one visit and its lines. Storage recomputes the figures it keeps."""
        budget = to_amount(record.budget)
        if record.items:
            calculated = active_total(record.items)
            if calculated != budget:
                # Manual budget overrides are legitimate, keep what was offered
                logger.warning(
                    f"[REPO] Budget differs from active lines: offered={budget}, "
                    f"lines={calculated}, patient={patient_id}"
                )
        balance = compute_balance(budget, record.discount, record.payment)

        visit = Visit(
            patient_id=patient_id,
            date=record.date if isinstance(record.date, date_cls) else date_cls.fromisoformat(record.date),
            reason_type=record.reason_type,
            reason_detail=record.reason_detail,
            diagnosis_text=record.diagnosis_text,
            clinical_notes=record.clinical_notes,
            signer=record.signer,
            tooth_dx_json=_dump_tooth_dx(record.tooth_dx),
            budget=budget,
            discount=to_amount(record.discount),
            payment=to_amount(record.payment),
            balance=balance,
            cumulative_balance=balance,
            payment_method_id=record.payment_method_id,
            payment_notes=record.payment_notes,
            is_saved=True,
        )
        self.session.add(visit)
        self.session.flush()

        for order, item in enumerate(record.items):
            self.session.add(VisitProcedure(
                visit_id=visit.id,
                procedure_template_id=item.template_id,
                name=item.name or '',
                unit_price=to_amount(item.unit_price),
                quantity=to_amount(item.quantity),
                subtotal=line_subtotal(item),
                is_active=item.counts,
                tooth_number=item.tooth_number,
                notes=item.notes,
                sort_order=order,
            ))
        self.session.flush()
        return visit
