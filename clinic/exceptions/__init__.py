"""Custom exceptions for the clinical records ledger."""

class ClinicError(Exception):
    """Base exception for all application errors."""
    kind = 'internal'

    def __init__(self, message="An internal error occurred", status_code=500, payload=None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload

    def to_dict(self):
        rv = dict(self.payload or ())
        rv['message'] = self.message
        rv['status'] = 'error'
        rv['kind'] = self.kind
        return rv

class ValidationError(ClinicError):
    """Raised when an operation would break a ledger rule. Nothing was changed."""
    kind = 'validation'

    def __init__(self, message, status_code=409, payload=None):
        super().__init__(message, status_code, payload)

class SavedSessionError(ValidationError):
    """Raised when a saved (legal) session is edited or deleted."""
    def __init__(self, message="No se puede editar una sesión guardada", payload=None):
        super().__init__(message, payload=payload)

class NotEditableError(ValidationError):
    """Raised when a draft other than the editable one is mutated."""
    def __init__(self, message="Solo se puede editar el borrador más reciente", payload=None):
        super().__init__(message, payload=payload)

class EditModeError(ValidationError):
    """Raised for template edit mode conflicts."""
    def __init__(self, message, payload=None):
        super().__init__(message, payload=payload)

class SaveInProgressError(ValidationError):
    """Raised when a save is requested while another is still running."""
    def __init__(self, patient_id):
        super().__init__(
            'Ya hay un guardado en curso para este paciente',
            payload={'patient_id': patient_id}
        )

class NotFoundError(ClinicError):
    """Exception raised when a resource is not found."""
    kind = 'not_found'

    def __init__(self, message="Resource not found", payload=None):
        super().__init__(message, 404, payload)

class PersistenceError(ClinicError):
    """Raised when the storage collaborator fails. Drafts are still drafts."""
    kind = 'persistence'

    def __init__(self, message="No se pudo guardar, intente de nuevo", payload=None):
        super().__init__(message, 503, payload)
