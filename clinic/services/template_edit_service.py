"""
Template edit session - scoped editing of the procedure catalog.

While edit mode is on, line names and prices of the editable draft are
changed in place through the ledger. Confirming pushes the lines to the
catalog; cancelling puts back the lines captured when edit mode started.
"""
import copy
import logging
from typing import Dict, List, Optional

from clinic.exceptions import ClinicError, EditModeError, PersistenceError
from clinic.models import ProcedureLine, SessionKey, TemplateRecord

logger = logging.getLogger(__name__)


class TemplateEditSession:
    """Snapshot/restore of one session's lines while the catalog is edited."""

    def __init__(self, ledger):
        self._ledger = ledger
        self._snapshots: Dict[SessionKey, List[ProcedureLine]] = {}
        self.active_key: Optional[SessionKey] = None

    @property
    def active(self) -> bool:
        return self.active_key is not None

    def snapshot(self, key: SessionKey) -> Optional[List[ProcedureLine]]:
        """Copy of the lines captured for `key`, if any."""
        items = self._snapshots.get(key)
        return copy.deepcopy(items) if items is not None else None

    def enter(self, key: SessionKey) -> None:
        if self.active:
            if self.active_key == key:
                return
            raise EditModeError('Ya hay otra sesión editando la plantilla de procedimientos')

        session = self._ledger._require_editable(key)
        self._snapshots[key] = copy.deepcopy(session.items)
        self.active_key = key
        logger.info(f"[TEMPLATES] Edit mode on for session {key.to_legacy()} ({len(session.items)} lines)")

    def confirm(self) -> List[TemplateRecord]:
        """
        Push the edited lines to the catalog and leave edit mode.

        Lines without a name are skipped and names are de-duplicated (first
        one wins). The catalog is fetched again afterwards so ids given by
        storage are known locally. If storage fails, edit mode stays on.
        """
        key = self._require_active()
        session = self._ledger.get(key)

        entries = []
        seen = set()
        for item in session.items:
            name = (item.name or '').strip()
            if not name or name in seen:
                continue
            seen.add(name)
            entries.append(TemplateRecord(id=item.template_id, name=name, default_price=item.unit_price))

        repository = self._ledger.repository
        try:
            repository.save_procedure_templates(entries)
            templates = list(repository.load_procedure_templates())
        except ClinicError:
            raise
        except Exception as e:
            logger.error(f"[TEMPLATES] Catalog save failed: {e}")
            raise PersistenceError('No se pudo guardar el catálogo de procedimientos') from e

        self._ledger._templates = templates
        try:
            self._ledger._link_templates(key)
        finally:
            self._finish(key)
        logger.info(f"[TEMPLATES] Catalog updated from session {key.to_legacy()} ({len(entries)} entries)")
        return list(templates)

    def cancel(self) -> None:
        """Put back the lines captured on enter() and leave edit mode."""
        key = self._require_active()
        items = self._snapshots.get(key)
        try:
            if items is not None:
                self._ledger._restore_items(key, copy.deepcopy(items))
        finally:
            self._finish(key)
        logger.info(f"[TEMPLATES] Edit mode cancelled for session {key.to_legacy()}")

    def reset(self) -> None:
        """Drop every snapshot (ledger reload)."""
        self._snapshots.clear()
        self.active_key = None

    def _require_active(self) -> SessionKey:
        if not self.active:
            raise EditModeError('No hay una edición de plantilla en curso')
        return self.active_key

    def _finish(self, key: SessionKey) -> None:
        self._snapshots.pop(key, None)
        self.active_key = None
