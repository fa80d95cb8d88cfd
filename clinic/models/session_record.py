"""
In-memory ledger records.

These are the values the ledger services work on. They are plain dataclasses,
detached from the ORM: the repository converts Visit/VisitProcedure rows into
SessionRecord/ProcedureLine on load and back on save.
"""
import copy
from dataclasses import dataclass, field
from datetime import date
from typing import ClassVar, Dict, List, Optional, Union


@dataclass(frozen=True)
class DraftKey:
    """Identity of a local, unsaved session."""
    local_id: int
    kind: ClassVar[str] = 'draft'

    def to_legacy(self) -> int:
        return -self.local_id


@dataclass(frozen=True)
class SavedKey:
    """Identity of a persisted session (id assigned by storage)."""
    id: int
    kind: ClassVar[str] = 'saved'

    def to_legacy(self) -> int:
        return self.id


SessionKey = Union[DraftKey, SavedKey]


def key_from_legacy(value) -> SessionKey:
    """
    Translate the signed-integer convention (negative = draft) into a key.

    Only the persistence and HTTP boundaries speak the signed convention.
    """
    number = int(value)
    if number < 0:
        return DraftKey(-number)
    return SavedKey(number)


@dataclass
class ProcedureLine:
    """One billable item of a session. subtotal is derived, never trusted."""
    id: int
    name: str = ''
    unit_price: int = 0
    quantity: int = 0
    is_active: Optional[bool] = True
    subtotal: int = 0
    template_id: Optional[int] = None
    tooth_number: Optional[str] = None
    notes: Optional[str] = None

    @property
    def counts(self) -> bool:
        """Whether the line takes part in the budget (absent flag counts)."""
        return True if self.is_active is None else bool(self.is_active)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'unit_price': self.unit_price,
            'quantity': self.quantity,
            'is_active': self.counts,
            'subtotal': self.subtotal,
            'template_id': self.template_id,
            'tooth_number': self.tooth_number,
            'notes': self.notes,
        }


@dataclass
class SessionRecord:
    """A dated clinical visit with its procedure lines and money figures."""
    key: SessionKey
    patient_id: Optional[int]
    date: date
    reason_type: Optional[str] = None
    reason_detail: str = ''
    diagnosis_text: str = ''
    clinical_notes: str = ''
    signer: str = ''
    tooth_dx: Dict[str, List[str]] = field(default_factory=dict)
    items: List[ProcedureLine] = field(default_factory=list)
    budget: int = 0
    discount: int = 0
    payment: int = 0
    balance: int = 0
    payment_method_id: Optional[int] = None
    payment_notes: Optional[str] = None

    @property
    def is_saved(self) -> bool:
        return isinstance(self.key, SavedKey)

    @property
    def is_draft(self) -> bool:
        return isinstance(self.key, DraftKey)

    @property
    def sort_key(self):
        """
        Chronological order: (date, id).

        On the same date saved sessions come before drafts, saved ones by
        storage id and drafts by creation order.
        """
        if self.is_saved:
            return (self.date, 0, self.key.id)
        return (self.date, 1, self.key.local_id)

    def clone(self) -> 'SessionRecord':
        return copy.deepcopy(self)

    def to_dict(self):
        return {
            'id': self.key.to_legacy(),
            'kind': self.key.kind,
            'patient_id': self.patient_id,
            'date': self.date.isoformat(),
            'reason_type': self.reason_type,
            'reason_detail': self.reason_detail,
            'diagnosis_text': self.diagnosis_text,
            'clinical_notes': self.clinical_notes,
            'signer': self.signer,
            'tooth_dx': copy.deepcopy(self.tooth_dx),
            'items': [item.to_dict() for item in self.items],
            'budget': self.budget,
            'discount': self.discount,
            'payment': self.payment,
            'balance': self.balance,
            'payment_method_id': self.payment_method_id,
            'payment_notes': self.payment_notes,
            'is_saved': self.is_saved,
        }


@dataclass(frozen=True)
class TemplateRecord:
    """Catalog entry used to pre-populate new drafts."""
    id: Optional[int]
    name: str
    default_price: int = 0
    active: bool = True

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'default_price': self.default_price,
            'active': self.active,
        }
