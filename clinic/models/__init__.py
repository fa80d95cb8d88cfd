"""Models package - exports the SQLAlchemy models and ledger records."""
# Master data
from clinic.models.patient import Patient
from clinic.models.procedure_template import ProcedureTemplate

# Clinical history
from clinic.models.visit import Visit
from clinic.models.visit_procedure import VisitProcedure

# Ledger records (in-memory)
from clinic.models.session_record import (
    DraftKey, SavedKey, SessionKey, key_from_legacy,
    ProcedureLine, SessionRecord, TemplateRecord
)

__all__ = [
    'Patient', 'ProcedureTemplate',
    'Visit', 'VisitProcedure',
    'DraftKey', 'SavedKey', 'SessionKey', 'key_from_legacy',
    'ProcedureLine', 'SessionRecord', 'TemplateRecord',
]
