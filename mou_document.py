"""
MOU (F3) document assembly
Aggregates the narrative fields of every workplan linked to an MOU and renders
the bilingual agreement as HTML from templates/mou_document.html
"""
import json
from collections import Counter, OrderedDict

from flask import render_template

from budget_helpers import sum_expenses

MAX_LISTED_LOCALITIES = 4


def _most_common(values):
    values = [v for v in values if v]
    if not values:
        return None
    # Counter preserves first-seen order among equal counts
    return Counter(values).most_common(1)[0][0]


def aggregate_objectives(projects):
    return _most_common([p.project_objectives for p in projects])


def aggregate_beneficiaries(projects):
    return _most_common([p.intended_beneficiaries for p in projects])


def _planned_items(raw):
    if raw is None:
        return []
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return [line.strip() for line in raw.split("\n") if line.strip()]
    if isinstance(raw, str):
        return [line.strip() for line in raw.split("\n") if line.strip()]
    if isinstance(raw, list):
        return raw
    return []


def _activity_name(item):
    if isinstance(item, dict):
        name = item.get("activity") or item.get("selectedActivity") or item.get("activity_name")
    else:
        name = item
    if isinstance(name, str) and name.strip():
        return name.strip()
    return None


def aggregate_planned_activities(projects):
    """
    Unique planned activities across projects with summed planned cost

    Returns:
        str: one "• name" or "• name -> $cost" line per activity, or None
    """
    activities = OrderedDict()
    for project in projects:
        for item in _planned_items(project.planned_activities):
            name = _activity_name(item)
            if not name:
                continue
            cost = None
            if isinstance(item, dict):
                cost = item.get("planned_activity_cost") or item.get("cost")
            try:
                cost = float(cost) if cost is not None else None
            except (TypeError, ValueError):
                cost = None
            if name in activities:
                if cost and cost > 0:
                    activities[name] = (activities[name] or 0) + cost
            else:
                activities[name] = cost
    if not activities:
        return None
    lines = []
    for name, cost in activities.items():
        if cost and cost > 0:
            lines.append(f"• {name} -> ${cost:,.0f}")
        else:
            lines.append(f"• {name}")
    return "\n".join(lines)


def aggregate_locations(projects):
    localities = list(OrderedDict.fromkeys(p.locality for p in projects if p.locality))
    states = [p.state for p in projects if p.state]
    if not localities:
        locality_text = "-"
    elif len(localities) <= MAX_LISTED_LOCALITIES:
        locality_text = ", ".join(localities)
    else:
        locality_text = f"{len(localities)} localities"
    return {"localities": locality_text, "state": states[0] if states else None}


def banking_details(projects):
    """Per-account blocks: location header, banking text, amount; None when no project has details"""
    blocks = []
    for project in projects:
        if not project.banking_details:
            continue
        room = project.emergency_room
        if room and (room.name_ar or room.name):
            location = room.name_ar or room.name
        else:
            location = project.err_id or project.locality or project.state or "Unknown"
        amount = sum_expenses(project.expenses)
        blocks.append(f"{location}\n\n{project.banking_details}\nAmount: ${amount:,.0f}")
    if not blocks:
        return None
    return "\n\n---\n\n".join(blocks)


def build_context(mou, projects):
    return {
        "mou": mou,
        "total_amount": mou.total_amount or 0,
        "objectives": aggregate_objectives(projects),
        "beneficiaries": aggregate_beneficiaries(projects),
        "activities": aggregate_planned_activities(projects),
        "locations": aggregate_locations(projects),
        "banking": mou.banking_details_override or banking_details(projects),
        "partner_contact": mou.partner_contact_override or f"Partner: {mou.partner_name}",
        "err_contact": mou.err_contact_override or f"ERR: {mou.err_name}",
    }


def render_mou_html(mou, projects):
    return render_template("mou_document.html", **build_context(mou, projects))
