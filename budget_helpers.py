"""
Budget helper module for the F-system funding pool
Centralizes expense totals, funding-status classification and remaining-budget math
so every pool, cycle and workplan endpoint computes the same numbers
"""
import json
from dataclasses import dataclass
from typing import Optional


FUNDING_UNASSIGNED = 'unassigned'
FUNDING_ALLOCATED = 'allocated'
FUNDING_COMMITTED = 'committed'

STATUS_PENDING = 'pending'
STATUS_APPROVED = 'approved'
STATUS_ACTIVE = 'active'
STATUS_COMPLETED = 'completed'

REPORTING_STATUSES = ('waiting', 'partial', 'in review', 'completed')

# Spelling variants seen in imported sheets
STATE_ALIASES = {
    'Al Jazeera': 'Al Jazirah',
    'Gadarif': 'Gadaref',
    'Sinar': 'Sennar',
}

# Cap comparisons tolerate float noise from summed allocations
CAP_TOLERANCE = 1e-6


@dataclass
class BudgetLine:
    """
    Budget position for one bucket (state, grant call, cycle or grant)

    Attributes:
        total: Amount available to the bucket (included, allocated or transferred)
        historical: Commitments recorded before the portal existed
        committed: Sum of committed workplans
        pending: Sum of allocated or pending workplans not yet committed
    """
    total: float = 0.0
    historical: float = 0.0
    committed: float = 0.0
    pending: float = 0.0

    @property
    def remaining(self):
        return self.total - self.historical - self.committed - self.pending


def parse_expenses(value):
    """
    Normalize a workplan expenses value to a list

    Args:
        value: list, JSON-encoded string or None

    Returns:
        list of expense dicts; malformed input yields an empty list
    """
    if value is None:
        return []
    if isinstance(value, str):
        if not value.strip():
            return []
        try:
            value = json.loads(value)
        except (json.JSONDecodeError, TypeError):
            return []
    if not isinstance(value, list):
        return []
    return value


def sum_expenses(value):
    """Sum total_cost over a workplan's expenses; missing or bad costs count as zero"""
    total = 0.0
    for expense in parse_expenses(value):
        if not isinstance(expense, dict):
            continue
        cost = expense.get('total_cost')
        try:
            total += float(cost or 0)
        except (TypeError, ValueError):
            continue
    return total


def normalize_state(name):
    if not name or not isinstance(name, str):
        return ''
    stripped = name.strip()
    if not stripped:
        return ''
    if stripped in STATE_ALIASES:
        return STATE_ALIASES[stripped]
    for alias, canonical in STATE_ALIASES.items():
        if alias.lower() == stripped.lower():
            return canonical
    return stripped


def grant_display_key(grant_id):
    """All FCDO sub-grants (FCDO-HELP-S, FCDO-SHPR, ...) report under one FCDO key"""
    key = str(grant_id or '').strip()
    if key.startswith('FCDO-'):
        return 'FCDO'
    return key


def activity_serials(value):
    """
    Extract workplan serials recorded against a grant

    Args:
        value: list of strings or {id|serial} dicts, JSON string, or comma-separated string

    Returns:
        list of non-empty serial strings in input order
    """
    if value is None:
        return []
    if isinstance(value, list):
        serials = []
        for item in value:
            if isinstance(item, dict):
                item = item.get('id') or item.get('serial')
            if isinstance(item, str) and item.strip():
                serials.append(item.strip())
        return serials
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except (json.JSONDecodeError, TypeError):
            return [s.strip() for s in value.split(',') if s.strip()]
        if isinstance(parsed, str):
            return [s.strip() for s in parsed.split(',') if s.strip()]
        return activity_serials(parsed)
    return []


def _lower(value):
    return (value or '').lower()


def is_committed(funding_status):
    return _lower(funding_status) == FUNDING_COMMITTED


def is_pending(funding_status, status):
    """Allocated workplans, plus fresh uploads still unassigned and pending review"""
    funding = _lower(funding_status)
    if funding == FUNDING_ALLOCATED:
        return True
    return funding == FUNDING_UNASSIGNED and _lower(status) == STATUS_PENDING


def is_allocated(funding_status):
    return _lower(funding_status) == FUNDING_ALLOCATED


def tally_usage(projects, key=None, allocated_only=False):
    """
    Sum committed and pending expenses, optionally grouped

    Args:
        projects: iterable of objects with expenses, funding_status and status
        key: optional callable returning the group key for a project
        allocated_only: count only allocated workplans as pending, leaving out
            unassigned uploads (grant call and pool-wide totals)

    Returns:
        dict mapping group key (None when ungrouped) to BudgetLine with committed/pending set
    """
    lines = {}
    for project in projects:
        group = key(project) if key else None
        if allocated_only:
            pending = is_allocated(project.funding_status)
        else:
            pending = is_pending(project.funding_status, project.status)
        if is_committed(project.funding_status):
            bucket = 'committed'
        elif pending:
            bucket = 'pending'
        else:
            continue
        line = lines.setdefault(group, BudgetLine())
        setattr(line, bucket, getattr(line, bucket) + sum_expenses(project.expenses))
    return lines


def active_tranche(tranches, max_decision_no=None):
    """
    Pick the tranche that new state allocations are recorded against

    Args:
        tranches: iterable of (tranche_no, status) pairs
        max_decision_no: highest decision number already used in the cycle

    Returns:
        int: the lowest open tranche, otherwise the latest decision (minimum 1)
    """
    open_numbers = [no for no, status in tranches if status == 'open']
    if open_numbers:
        return min(open_numbers)
    return max(1, max_decision_no or 1)


def tranche_headroom(caps, active, allocated_before):
    """
    Amount still allocatable in the active tranche

    Args:
        caps: per-tranche planned caps ordered by tranche number
        active: active tranche number (1-based)
        allocated_before: allocations recorded in earlier tranches

    Returns:
        float or None: cumulative caps up to the active tranche minus earlier
        allocations, floored at zero; None when the tranche has no cap defined
    """
    if len(caps) < active:
        return None
    cumulative = sum(float(c or 0) for c in caps[:active])
    return max(0.0, cumulative - float(allocated_before or 0))


def exceeds_headroom(already, to_add, headroom):
    if headroom is None:
        return False
    return already + to_add > headroom + CAP_TOLERANCE


def normalize_reporting_status(value) -> Optional[str]:
    if value is None or value == '':
        return None
    status = str(value).strip().lower()
    if status in REPORTING_STATUSES:
        return status
    if status == 'under review':
        return 'in review'
    return None
