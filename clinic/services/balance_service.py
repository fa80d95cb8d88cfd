"""Balance service - patient running balance across sessions."""
from typing import Dict, Iterable, List

from clinic.models import SessionRecord


def precedes(earlier: SessionRecord, later: SessionRecord) -> bool:
    """True when `earlier` comes strictly before `later` under (date, id)."""
    return earlier.sort_key < later.sort_key


def previous_balance(session: SessionRecord, all_sessions: Iterable[SessionRecord]) -> int:
    """
    Sum of the balances of saved sessions strictly before `session`.

    Saved balances are frozen at save time, so they are read as stored and
    never recomputed. Drafts never contribute.
    """
    return sum(
        other.balance
        for other in all_sessions
        if other.is_saved and precedes(other, session)
    )


def total_owed(session: SessionRecord, all_sessions: Iterable[SessionRecord]) -> int:
    """
    What the patient owes including this session.

    Derived for display only. A negative result is credit in the patient's
    favour.
    """
    return previous_balance(session, all_sessions) + session.balance


def running_balances(sessions: Iterable[SessionRecord]) -> List[Dict]:
    """
    Cumulative balance after each saved session, oldest first.

    Returns:
        List of dicts with keys: id, date, balance, cumulative_balance
    """
    saved = sorted((s for s in sessions if s.is_saved), key=lambda s: s.sort_key)

    rows = []
    running = 0
    for session in saved:
        running += session.balance
        rows.append({
            'id': session.key.to_legacy(),
            'date': session.date,
            'balance': session.balance,
            'cumulative_balance': running,
        })
    return rows


def financial_summary(sessions: Iterable[SessionRecord]) -> Dict[str, int]:
    """
    Totals for the patient's financial history block.

    budget/discount/payment/balance totals include drafts (what the screen
    shows); `outstanding` only counts saved sessions.

    Returns:
        Dict with keys: total_budget, total_discount, total_payment,
        total_balance, outstanding
    """
    sessions = list(sessions)
    return {
        'total_budget': sum(s.budget for s in sessions),
        'total_discount': sum(s.discount for s in sessions),
        'total_payment': sum(s.payment for s in sessions),
        'total_balance': sum(s.balance for s in sessions),
        'outstanding': sum(s.balance for s in sessions if s.is_saved),
    }
