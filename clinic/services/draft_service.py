"""
Draft Service - a patient's session ledger and the draft lifecycle.

A SessionLedger owns the patient's list of sessions. Sessions are either
drafts (local, editable while they are the latest draft) or saved
(persisted, immutable). Every mutation goes through the ledger, which
refreshes the session's figures with the financial service afterwards.
Storage is only touched by save(), record_quick_payment() and the template
edit session.
"""
import copy
import itertools
import logging
import threading
from datetime import date
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from clinic.exceptions import (
    ClinicError, ValidationError, SavedSessionError, NotEditableError,
    EditModeError, SaveInProgressError, NotFoundError, PersistenceError
)
from clinic.models import DraftKey, SavedKey, SessionKey, ProcedureLine, SessionRecord, TemplateRecord
from clinic.services import balance_service
from clinic.services.financial_service import recompute, to_amount
from clinic.services.template_edit_service import TemplateEditSession

logger = logging.getLogger(__name__)

SESSION_TEXT_FIELDS = (
    'reason_type', 'reason_detail', 'diagnosis_text', 'clinical_notes',
    'signer', 'payment_notes',
)
SESSION_FIELDS = SESSION_TEXT_FIELDS + (
    'date', 'discount', 'payment', 'payment_method_id', 'budget', 'tooth_dx',
)
LINE_FIELDS = ('name', 'unit_price', 'quantity', 'is_active', 'template_id', 'tooth_number', 'notes')

Confirmation = Union[bool, Callable[[SessionRecord], bool]]


def find_editable(sessions: Iterable[SessionRecord]) -> Optional[SessionKey]:
    """
    Key of the only session that may be edited, or None.

    It is the chronologically latest draft by (date, id). Computed from the
    list every time, never stored.
    """
    drafts = [s for s in sessions if s.is_draft]
    if not drafts:
        return None
    return max(drafts, key=lambda s: s.sort_key).key


def parse_date(value) -> date:
    """Accept a date or an ISO 'YYYY-MM-DD' string."""
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError:
        raise ValidationError(f'Fecha inválida: {value}', status_code=400)


class SessionLedger:
    """Treatment ledger of one patient."""

    def __init__(self, patient_id: int, repository, default_reason_type: str = 'Control',
                 quick_payment_reason: str = 'Abono a cuenta',
                 quick_payment_detail: str = 'Abono rápido a cuenta'):
        self.patient_id = patient_id
        self.repository = repository
        self.default_reason_type = default_reason_type
        self.quick_payment_reason = quick_payment_reason
        self.quick_payment_detail = quick_payment_detail

        self._sessions: List[SessionRecord] = []
        self._templates: List[TemplateRecord] = []
        self._manual_budget = set()
        self._pending: Dict[Tuple[SessionKey, str], Any] = {}
        self._draft_ids = itertools.count(1)
        self._line_ids = itertools.count(1)
        self._save_lock = threading.Lock()

        self.template_editor = TemplateEditSession(self)

    @classmethod
    def open(cls, patient_id: int, repository, **options) -> 'SessionLedger':
        """Create a ledger and load the patient's saved sessions and the catalog."""
        ledger = cls(patient_id, repository, **options)
        ledger.load()
        return ledger

    # =====================================================
    # QUERIES
    # =====================================================

    @property
    def sessions(self) -> List[SessionRecord]:
        """Copies of every session in (date, id) order."""
        return [s.clone() for s in sorted(self._sessions, key=lambda s: s.sort_key)]

    @property
    def drafts(self) -> List[SessionRecord]:
        return [s for s in self.sessions if s.is_draft]

    @property
    def templates(self) -> List[TemplateRecord]:
        return list(self._templates)

    @property
    def editable_key(self) -> Optional[SessionKey]:
        return find_editable(self._sessions)

    @property
    def is_saving(self) -> bool:
        return self._save_lock.locked()

    def is_editable(self, key: SessionKey) -> bool:
        return key == self.editable_key

    def is_manual_budget(self, key: SessionKey) -> bool:
        return key in self._manual_budget

    def get(self, key: SessionKey) -> SessionRecord:
        return self._find(key).clone()

    def previous_balance(self, key: SessionKey) -> int:
        return balance_service.previous_balance(self._find(key), self.sessions)

    def total_owed(self, key: SessionKey) -> int:
        return balance_service.total_owed(self._find(key), self.sessions)

    def view(self) -> Dict[str, Any]:
        """Plain data for the rendering and printing collaborators."""
        sessions = self.sessions
        editable = find_editable(sessions)
        cumulative = {
            row['id']: row['cumulative_balance']
            for row in balance_service.running_balances(sessions)
        }

        rows = []
        for session in sessions:
            row = session.to_dict()
            row['editable'] = session.key == editable
            row['manual_budget'] = session.key in self._manual_budget
            row['previous_balance'] = balance_service.previous_balance(session, sessions)
            row['total_owed'] = balance_service.total_owed(session, sessions)
            row['cumulative_balance'] = cumulative.get(session.key.to_legacy())
            rows.append(row)

        return {
            'patient_id': self.patient_id,
            'editable_id': editable.to_legacy() if editable else None,
            'template_edit_id': (
                self.template_editor.active_key.to_legacy()
                if self.template_editor.active else None
            ),
            'sessions': rows,
            'summary': balance_service.financial_summary(sessions),
            'templates': [t.to_dict() for t in self._templates],
        }

    # =====================================================
    # LIFECYCLE
    # =====================================================

    def load(self) -> None:
        """(Re)load saved sessions and the catalog. Local drafts are discarded."""
        if self.is_saving:
            raise SaveInProgressError(self.patient_id)

        self._sessions = list(self.repository.load_sessions(self.patient_id))
        self._templates = list(self.repository.load_procedure_templates())
        self._manual_budget.clear()
        self._pending.clear()
        self.template_editor.reset()
        logger.info(f"[LEDGER] Loaded {len(self._sessions)} saved session(s) for patient={self.patient_id}")

    def create_draft(self, on: Optional[Union[date, str]] = None) -> SessionRecord:
        """
        Append a new draft and return it.

        Lines come from the current catalog, unselected, with the quantity
        the most recent session had for a line of the same name (0 if none).
        """
        if self.template_editor.active:
            raise EditModeError('Termine la edición de la plantilla antes de crear una sesión')
        self.flush_pending()

        session_date = parse_date(on) if on is not None else date.today()
        previous = max(self._sessions, key=lambda s: s.sort_key) if self._sessions else None
        previous_qty = {}
        if previous is not None:
            for item in previous.items:
                previous_qty.setdefault(item.name, item.quantity)

        items = [
            ProcedureLine(
                id=self._next_line_id(),
                name=template.name,
                unit_price=template.default_price,
                quantity=to_amount(previous_qty.get(template.name, 0)),
                is_active=False,
                template_id=template.id,
            )
            for template in self._templates
        ]

        draft = SessionRecord(
            key=DraftKey(next(self._draft_ids)),
            patient_id=self.patient_id,
            date=session_date,
            reason_type=self.default_reason_type,
            items=items,
        )
        draft = recompute(draft)
        self._sessions.append(draft)

        logger.info(
            f"[LEDGER] Draft created: patient={self.patient_id}, id={draft.key.to_legacy()}, "
            f"date={draft.date.isoformat()}, lines={len(items)}"
        )
        return draft.clone()

    def delete_draft(self, key: SessionKey, confirm: Confirmation) -> bool:
        """
        Remove a draft once `confirm` agrees.

        `confirm` is either a bool or a callable receiving the draft. Returns
        False when the confirmation was declined (nothing removed).
        """
        session = self._find(key)
        if session.is_saved:
            logger.warning(f"[LEDGER] Refused delete of saved session {key.to_legacy()}")
            raise SavedSessionError('No se puede eliminar una sesión guardada (histórico legal)')
        if self.template_editor.active:
            raise EditModeError('No se puede eliminar mientras se edita la plantilla de procedimientos')

        approved = confirm(session.clone()) if callable(confirm) else bool(confirm)
        if not approved:
            return False

        self._sessions = [s for s in self._sessions if s.key != key]
        self._manual_budget.discard(key)
        self._pending = {k: v for k, v in self._pending.items() if k[0] != key}
        logger.info(f"[LEDGER] Draft deleted: patient={self.patient_id}, id={key.to_legacy()}")
        return True

    def save(self) -> Dict[str, int]:
        """
        Commit every draft to storage in a single call.

        Older, non-editable drafts are committed as they are. On failure
        nothing changes locally and PersistenceError is raised, so the same
        drafts can be offered again.
        """
        if not self._save_lock.acquire(blocking=False):
            raise SaveInProgressError(self.patient_id)

        try:
            if self.template_editor.active:
                raise EditModeError('Confirme o cancele la edición de la plantilla antes de guardar')

            self.flush_pending()
            drafts = [s for s in self.sessions if s.is_draft]
            if not drafts:
                raise ValidationError('No hay sesiones en borrador para guardar')

            drafts = [recompute(d, d.key in self._manual_budget) for d in drafts]
            payload = self._save_payload(drafts)

            try:
                result = self.repository.save_sessions(self.patient_id, payload, drafts)
            except PersistenceError:
                logger.error(f"[LEDGER] Save failed for patient={self.patient_id}, drafts kept")
                raise
            except ClinicError:
                raise
            except Exception as e:
                logger.error(f"[LEDGER] Save failed for patient={self.patient_id}: {e}")
                raise PersistenceError(payload={'patient_id': self.patient_id}) from e

            committed = {d.key for d in drafts}
            try:
                saved = list(self.repository.load_sessions(self.patient_id))
            except Exception as e:
                # The drafts are stored; never offer them again
                self._sessions = [s for s in self._sessions if s.key not in committed]
                self._manual_budget -= committed
                logger.error(f"[LEDGER] Saved but reload failed for patient={self.patient_id}: {e}")
                raise PersistenceError(
                    'Sesiones guardadas, pero no se pudieron recargar',
                    payload={'saved': True, **result}
                ) from e

            self._sessions = saved + [s for s in self._sessions if s.is_draft and s.key not in committed]
            self._manual_budget -= committed
            logger.info(
                f"[LEDGER] Committed {len(drafts)} draft(s): patient={self.patient_id}, "
                f"primary={result.get('session_id')}"
            )
            return result
        finally:
            self._save_lock.release()

    def record_quick_payment(self, amount, on: Optional[Union[date, str]] = None,
                             payment_method_id: Optional[int] = None,
                             notes: Optional[str] = None) -> int:
        """
        Store a payment-only session right away (abono a cuenta).

        It never becomes a draft: budget 0, payment = amount, balance = -amount.
        Local drafts are kept. Returns the stored session id.
        """
        value = to_amount(amount)
        if value <= 0:
            raise ValidationError('El monto del abono debe ser mayor a 0', status_code=400)
        if not self._save_lock.acquire(blocking=False):
            raise SaveInProgressError(self.patient_id)

        try:
            session = recompute(SessionRecord(
                key=DraftKey(next(self._draft_ids)),
                patient_id=self.patient_id,
                date=parse_date(on) if on is not None else date.today(),
                reason_type=self.quick_payment_reason,
                reason_detail=notes or self.quick_payment_detail,
                payment=value,
                payment_method_id=payment_method_id,
                payment_notes=notes,
            ))

            try:
                visit_id = self.repository.save_quick_payment(self.patient_id, session)
            except ClinicError:
                raise
            except Exception as e:
                raise PersistenceError(payload={'patient_id': self.patient_id}) from e

            try:
                saved = list(self.repository.load_sessions(self.patient_id))
            except Exception as e:
                logger.error(f"[LEDGER] Quick payment stored but reload failed for patient={self.patient_id}: {e}")
                raise PersistenceError(
                    'Abono guardado, pero no se pudo recargar el historial',
                    payload={'saved': True, 'patient_id': self.patient_id, 'session_id': visit_id}
                ) from e

            self._sessions = saved + [s for s in self._sessions if s.is_draft]
            logger.info(f"[LEDGER] Quick payment {value} stored: patient={self.patient_id}, id={visit_id}")
            return visit_id
        finally:
            self._save_lock.release()

    # =====================================================
    # MUTATIONS (editable draft only)
    # =====================================================

    def update_session(self, key: SessionKey, **changes) -> SessionRecord:
        """Change session fields and refresh its figures."""
        unknown = set(changes) - set(SESSION_FIELDS)
        if unknown:
            raise ValidationError(f'Campos desconocidos: {", ".join(sorted(unknown))}', status_code=400)
        if 'budget' in changes and key not in self._manual_budget:
            self._require_editable(key)
            raise ValidationError('Habilite el presupuesto manual para editar el presupuesto')
        if 'date' in changes and self.template_editor.active_key == key:
            # the date decides which draft is editable
            raise EditModeError('No se puede cambiar la fecha mientras se edita la plantilla de procedimientos')

        def mutate(session):
            for name, value in changes.items():
                setattr(session, name, self._coerce_session_field(name, value))

        return self._apply(key, mutate)

    def stage_field(self, key: SessionKey, field: str, value) -> None:
        """
        Buffer a text edit (typing) for the editable draft.

        Buffered values are written on the next mutation or save, in the
        order they were staged.
        """
        if field not in SESSION_TEXT_FIELDS:
            raise ValidationError(f'Campo no admite edición diferida: {field}', status_code=400)
        self._require_editable(key)
        self._pending.pop((key, field), None)
        self._pending[(key, field)] = value

    def flush_pending(self) -> None:
        """Write every buffered text edit."""
        if not self._pending:
            return
        pending, self._pending = self._pending, {}
        by_session: Dict[SessionKey, Dict[str, Any]] = {}
        for (key, field), value in pending.items():
            by_session.setdefault(key, {})[field] = value
        for key, fields in by_session.items():
            self.update_session(key, **fields)

    def set_manual_budget(self, key: SessionKey, enabled: bool, budget=None) -> SessionRecord:
        """Switch manual budget mode; turning it off goes back to the line total."""
        self._require_editable(key)
        if enabled:
            self._manual_budget.add(key)
        else:
            self._manual_budget.discard(key)

        def mutate(session):
            if enabled and budget is not None:
                session.budget = to_amount(budget)

        return self._apply(key, mutate)

    def add_line(self, key: SessionKey, name: str = '', unit_price=0, quantity=0,
                 is_active: Optional[bool] = True, template_id: Optional[int] = None,
                 tooth_number: Optional[str] = None, notes: Optional[str] = None) -> ProcedureLine:
        line = ProcedureLine(
            id=self._next_line_id(),
            name=name or '',
            unit_price=to_amount(unit_price),
            quantity=to_amount(quantity),
            is_active=is_active,
            template_id=template_id,
            tooth_number=tooth_number,
            notes=notes,
        )

        def mutate(session):
            session.items.append(line)

        session = self._apply(key, mutate)
        return self._find_line(session, line.id)

    def update_line(self, key: SessionKey, line_id: int, **changes) -> ProcedureLine:
        """
        Change fields of one line.

        Without an explicit is_active, a quantity above 0 selects the line
        and a quantity of 0 unselects it.
        """
        unknown = set(changes) - set(LINE_FIELDS)
        if unknown:
            raise ValidationError(f'Campos desconocidos: {", ".join(sorted(unknown))}', status_code=400)

        def mutate(session):
            line = self._find_line(session, line_id)
            for name, value in changes.items():
                if name in ('unit_price', 'quantity'):
                    value = to_amount(value)
                elif name == 'name':
                    value = value or ''
                elif name == 'is_active':
                    value = bool(value)
                setattr(line, name, value)
            if 'quantity' in changes and 'is_active' not in changes:
                if line.quantity > 0 and not line.counts:
                    line.is_active = True
                elif line.quantity == 0 and line.counts:
                    line.is_active = False

        session = self._apply(key, mutate)
        return self._find_line(session, line_id)

    def set_line_active(self, key: SessionKey, line_id: int, active: bool) -> ProcedureLine:
        return self.update_line(key, line_id, is_active=active)

    def remove_line(self, key: SessionKey, line_id: int) -> SessionRecord:
        def mutate(session):
            line = self._find_line(session, line_id)
            session.items = [item for item in session.items if item is not line]

        return self._apply(key, mutate)

    # =====================================================
    # PRIVATE HELPERS
    # =====================================================

    def _find(self, key: SessionKey) -> SessionRecord:
        for session in self._sessions:
            if session.key == key:
                return session
        raise NotFoundError('Sesión no encontrada.', payload={'session_id': key.to_legacy()})

    @staticmethod
    def _find_line(session: SessionRecord, line_id: int) -> ProcedureLine:
        for item in session.items:
            if item.id == line_id:
                return item
        raise NotFoundError('Procedimiento no encontrado.', payload={'line_id': line_id})

    def _require_editable(self, key: SessionKey) -> SessionRecord:
        session = self._find(key)
        if session.is_saved:
            logger.warning(f"[LEDGER] Refused edit of saved session {key.to_legacy()}")
            raise SavedSessionError()
        if key != self.editable_key:
            logger.warning(f"[LEDGER] Refused edit of non-editable draft {key.to_legacy()}")
            raise NotEditableError()
        return session

    def _apply(self, key: SessionKey, mutate: Callable[[SessionRecord], None]) -> SessionRecord:
        """Run `mutate` on a copy of the editable draft, recompute, then swap it in."""
        if self._pending:
            self.flush_pending()
        self._require_editable(key)
        return self._rewrite(key, mutate)

    def _rewrite(self, key: SessionKey, mutate: Callable[[SessionRecord], None]) -> SessionRecord:
        """
        Mutate a draft without the editability check.

        Only template edit mode uses it directly: the lines it restores or
        links belong to the draft captured on enter().
        """
        current = self._find(key)
        if current.is_saved:
            raise SavedSessionError()
        working = current.clone()
        mutate(working)
        refreshed = recompute(working, key in self._manual_budget)
        self._replace(refreshed)
        return refreshed.clone()

    def _replace(self, session: SessionRecord) -> None:
        self._sessions = [session if s.key == session.key else s for s in self._sessions]

    def _restore_items(self, key: SessionKey, items: List[ProcedureLine]) -> SessionRecord:
        def mutate(session):
            session.items = copy.deepcopy(items)

        return self._rewrite(key, mutate)

    def _link_templates(self, key: SessionKey) -> SessionRecord:
        """Point lines at the catalog entry with the same name."""
        by_name = {t.name: t.id for t in self._templates}

        def mutate(session):
            for item in session.items:
                name = (item.name or '').strip()
                if name in by_name:
                    item.template_id = by_name[name]

        return self._rewrite(key, mutate)

    def _next_line_id(self) -> int:
        return -next(self._line_ids)

    def _coerce_session_field(self, name: str, value):
        if name == 'date':
            return parse_date(value)
        if name in ('discount', 'payment', 'budget'):
            return to_amount(value)
        if name == 'payment_method_id':
            if value in (None, ''):
                return None
            try:
                return int(value)
            except (TypeError, ValueError):
                raise ValidationError(f'Método de pago inválido: {value}', status_code=400)
        if name == 'tooth_dx':
            if not isinstance(value, dict):
                raise ValidationError('Odontograma inválido', status_code=400)
            return {str(tooth): list(labels or []) for tooth, labels in value.items()}
        if name == 'reason_type':
            return value or None
        return value if value is not None else ''

    def _save_payload(self, drafts: List[SessionRecord]) -> Dict[str, Any]:
        primary = drafts[-1]
        return {
            'patient_id': self.patient_id,
            'primary_id': primary.key.to_legacy(),
            'date': primary.date.isoformat(),
            'reason_type': primary.reason_type,
            'diagnosis_text': primary.diagnosis_text,
            'draft_count': len(drafts),
        }
