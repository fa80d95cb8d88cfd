"""Sessions blueprint - JSON API over a patient's treatment ledger."""
import threading

from flask import Blueprint, request, jsonify, current_app

from clinic.database import get_session
from clinic.exceptions import NotFoundError, ValidationError
from clinic.models import Patient, key_from_legacy
from clinic.services.draft_service import SessionLedger
from clinic.services.repository import SqlAlchemyLedgerRepository

sessions_bp = Blueprint('sessions', __name__, url_prefix='/patients/<int:patient_id>/sessions')

_registry_lock = threading.Lock()


def get_ledger(patient_id: int) -> SessionLedger:
    """
    Ledger of an open patient.

    Drafts only exist in memory, so ledgers are kept per process in
    app.extensions['ledgers'] and reused across requests.
    """
    ledgers = current_app.extensions.setdefault('ledgers', {})
    with _registry_lock:
        ledger = ledgers.get(patient_id)
        if ledger is None:
            db_session = get_session()
            if not db_session.query(Patient).filter_by(id=patient_id).first():
                raise NotFoundError('Paciente no encontrado.', payload={'patient_id': patient_id})
            ledger = SessionLedger.open(
                patient_id,
                SqlAlchemyLedgerRepository(db_session),
                default_reason_type=current_app.config.get('DEFAULT_REASON_TYPE', 'Control'),
                quick_payment_reason=current_app.config.get('QUICK_PAYMENT_REASON', 'Abono a cuenta'),
                quick_payment_detail=current_app.config.get('QUICK_PAYMENT_DETAIL', 'Abono rápido a cuenta'),
            )
            ledgers[patient_id] = ledger
        return ledger


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError('Se esperaba un objeto JSON', status_code=400)
    return data


def _key(session_id: int):
    return key_from_legacy(session_id)


def _view(ledger: SessionLedger, status_code: int = 200, **extra):
    body = {'status': 'ok', **extra, 'ledger': ledger.view()}
    return jsonify(body), status_code


@sessions_bp.route('/', methods=['GET'])
def list_sessions(patient_id):
    """Ledger view with derived balances."""
    return _view(get_ledger(patient_id))


@sessions_bp.route('/', methods=['POST'])
def create_session(patient_id):
    """Create a new draft session."""
    ledger = get_ledger(patient_id)
    data = _json_body()
    draft = ledger.create_draft(on=data.get('date'))
    return _view(ledger, 201, session_id=draft.key.to_legacy())


@sessions_bp.route('/<int(signed=True):session_id>', methods=['PATCH'])
def update_session(patient_id, session_id):
    """Change fields of the editable draft."""
    ledger = get_ledger(patient_id)
    key = _key(session_id)
    data = _json_body()

    if 'manual_budget' in data:
        ledger.set_manual_budget(key, bool(data.pop('manual_budget')), budget=data.pop('budget', None))

    staged = data.pop('staged', None) or {}
    for field, value in staged.items():
        ledger.stage_field(key, field, value)

    if data:
        ledger.update_session(key, **data)
    return _view(ledger, session_id=session_id)


@sessions_bp.route('/<int(signed=True):session_id>', methods=['DELETE'])
def delete_session(patient_id, session_id):
    """Delete a draft. ?confirm=true is the confirmation gate."""
    ledger = get_ledger(patient_id)
    confirmed = request.args.get('confirm', '').lower() in ('1', 'true', 'yes')
    deleted = ledger.delete_draft(_key(session_id), confirm=confirmed)
    if not deleted:
        return jsonify({
            'status': 'confirm',
            'message': '¿Eliminar esta sesión en borrador?',
            'session_id': session_id,
        }), 202
    return _view(ledger, deleted=session_id)


@sessions_bp.route('/<int(signed=True):session_id>/lines', methods=['POST'])
def add_line(patient_id, session_id):
    ledger = get_ledger(patient_id)
    data = _json_body()
    allowed = {k: v for k, v in data.items() if k in (
        'name', 'unit_price', 'quantity', 'is_active', 'template_id', 'tooth_number', 'notes'
    )}
    line = ledger.add_line(_key(session_id), **allowed)
    return _view(ledger, 201, line_id=line.id)


@sessions_bp.route('/<int(signed=True):session_id>/lines/<int(signed=True):line_id>', methods=['PATCH'])
def update_line(patient_id, session_id, line_id):
    ledger = get_ledger(patient_id)
    ledger.update_line(_key(session_id), line_id, **_json_body())
    return _view(ledger, line_id=line_id)


@sessions_bp.route('/<int(signed=True):session_id>/lines/<int(signed=True):line_id>', methods=['DELETE'])
def remove_line(patient_id, session_id, line_id):
    ledger = get_ledger(patient_id)
    ledger.remove_line(_key(session_id), line_id)
    return _view(ledger, removed=line_id)


@sessions_bp.route('/<int(signed=True):session_id>/template-edit', methods=['POST'])
def enter_template_edit(patient_id, session_id):
    ledger = get_ledger(patient_id)
    ledger.template_editor.enter(_key(session_id))
    return _view(ledger)


@sessions_bp.route('/template-edit/confirm', methods=['POST'])
def confirm_template_edit(patient_id):
    ledger = get_ledger(patient_id)
    ledger.template_editor.confirm()
    return _view(ledger)


@sessions_bp.route('/template-edit/cancel', methods=['POST'])
def cancel_template_edit(patient_id):
    ledger = get_ledger(patient_id)
    ledger.template_editor.cancel()
    return _view(ledger)


@sessions_bp.route('/save', methods=['POST'])
def save_sessions(patient_id):
    """Commit every draft of the patient."""
    ledger = get_ledger(patient_id)
    result = ledger.save()
    current_app.logger.info(f"Sessions saved for patient {patient_id}: {result}")
    return _view(ledger, result=result)


@sessions_bp.route('/quick-payment', methods=['POST'])
def quick_payment(patient_id):
    ledger = get_ledger(patient_id)
    data = _json_body()
    visit_id = ledger.record_quick_payment(
        data.get('amount'),
        on=data.get('date'),
        payment_method_id=data.get('payment_method_id'),
        notes=data.get('notes'),
    )
    return _view(ledger, 201, session_id=visit_id)


@sessions_bp.route('/reload', methods=['POST'])
def reload_sessions(patient_id):
    """Discard local drafts and reload from storage."""
    ledger = get_ledger(patient_id)
    ledger.load()
    return _view(ledger)
