"""
Function-level permissions: role defaults plus per-user overrides

Role defaults and the function table are static JSON shipped in data/.
User overrides live in a JSON file that admins edit at runtime; it is read
from disk on every check so saved changes apply without a restart.
"""
import json
import os
from collections import OrderedDict

from flask import current_app

ROLE_SUPERADMIN = "superadmin"
ROLE_ADMIN = "admin"
ROLE_STATE_ERR = "state_err"
ROLE_BASE_ERR = "base_err"

ALL_ROLES = [ROLE_SUPERADMIN, ROLE_ADMIN, ROLE_STATE_ERR, ROLE_BASE_ERR]
ADMIN_ROLES = (ROLE_ADMIN, ROLE_SUPERADMIN)

DEFAULT_DATA_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "data")


def _data_dir():
    return current_app.config.get("PERMISSIONS_DATA_DIR") or DEFAULT_DATA_DIR


def _overrides_path():
    return current_app.config.get("USER_OVERRIDES_PATH") or os.path.join(_data_dir(), "user_overrides.json")


def _load_json(name):
    with open(os.path.join(_data_dir(), name), "r", encoding="utf-8") as f:
        return json.load(f)


def function_list():
    """All function definitions: [{code, module, label_en, label_ar}, ...]"""
    return _load_json("functions.json")


def all_codes():
    return [f["code"] for f in function_list()]


def role_defaults():
    return _load_json("role_permissions.json")


def read_overrides():
    """Return {user_id: {"add": [...], "remove": [...]}}; a missing or corrupt file means no overrides"""
    path = _overrides_path()
    if not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        current_app.logger.error("Error reading user overrides from %s: %s", path, e)
        return {}
    return data if isinstance(data, dict) else {}


def write_overrides(overrides):
    path = _overrides_path()
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(overrides, f, indent=2, ensure_ascii=False)


def set_user_override(user_id, add, remove):
    """Store a user's override; empty add and remove lists delete the entry"""
    overrides = read_overrides()
    key = str(user_id)
    if not add and not remove:
        overrides.pop(key, None)
    else:
        overrides[key] = {"add": list(add), "remove": list(remove)}
    write_overrides(overrides)
    return overrides


def _base_allowed(role):
    if role == ROLE_SUPERADMIN:
        return set(all_codes())
    codes = role_defaults().get(role)
    # admin with an empty list means every function
    if role == ROLE_ADMIN and not codes:
        return set(all_codes())
    return set(codes or [])


def role_base(role):
    return sorted(_base_allowed(role))


def allowed_set_from_overrides(user_id, role, overrides):
    if role == ROLE_SUPERADMIN:
        return set(all_codes())
    allowed = _base_allowed(role)
    override = overrides.get(str(user_id))
    if not override:
        return allowed
    for code in override.get("remove") or []:
        allowed.discard(code)
    for code in override.get("add") or []:
        allowed.add(code)
    return allowed


def allowed_functions(user):
    if user is None:
        return []
    return sorted(allowed_set_from_overrides(user.id, user.role, read_overrides()))


def can(user, function_code):
    """Check whether a user may perform function_code; anonymous users may not"""
    if user is None:
        return False
    return function_code in allowed_set_from_overrides(user.id, user.role, read_overrides())


def functions_by_module():
    grouped = OrderedDict()
    for definition in function_list():
        grouped.setdefault(definition["module"], []).append(definition)
    return grouped
