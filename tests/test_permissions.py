import json
from types import SimpleNamespace

import permissions
from permissions import ROLE_ADMIN, ROLE_BASE_ERR, ROLE_STATE_ERR, ROLE_SUPERADMIN


def user(role, user_id=1):
    return SimpleNamespace(id=user_id, role=role)


class TestRoleDefaults:

    def test_superadmin_has_everything(self, app):
        assert permissions.allowed_functions(user(ROLE_SUPERADMIN)) == sorted(permissions.all_codes())

    def test_admin_with_empty_list_has_everything(self, app):
        assert permissions.can(user(ROLE_ADMIN), "f3_reassign_mou")
        assert permissions.can(user(ROLE_ADMIN), "historical_import")

    def test_state_err_defaults(self, app):
        assert permissions.can(user(ROLE_STATE_ERR), "f2_commit")
        assert not permissions.can(user(ROLE_STATE_ERR), "f2_assign")

    def test_anonymous_cannot(self, app):
        assert not permissions.can(None, "f4_save")
        assert permissions.allowed_functions(None) == []

    def test_functions_by_module(self, app):
        grouped = permissions.functions_by_module()
        assert "f2_assign" in [f["code"] for f in grouped["f2"]]
        assert "grant_management" in grouped


class TestOverrides:

    def test_add_and_remove(self, app):
        permissions.set_user_override(7, add=["f2_edit"], remove=["f4_save"])
        base = user(ROLE_BASE_ERR, 7)
        assert permissions.can(base, "f2_edit")
        assert not permissions.can(base, "f4_save")
        assert permissions.can(base, "f5_save")

    def test_overrides_do_not_leak_to_other_users(self, app):
        permissions.set_user_override(7, add=["f2_edit"], remove=[])
        assert not permissions.can(user(ROLE_BASE_ERR, 8), "f2_edit")

    def test_superadmin_ignores_removals(self, app):
        permissions.set_user_override(1, add=[], remove=["f2_assign"])
        assert permissions.can(user(ROLE_SUPERADMIN, 1), "f2_assign")

    def test_empty_override_deletes_entry(self, app):
        permissions.set_user_override(7, add=["f2_edit"], remove=[])
        permissions.set_user_override(7, add=[], remove=[])
        assert "7" not in permissions.read_overrides()

    def test_corrupt_file_means_no_overrides(self, app):
        with open(app.config["USER_OVERRIDES_PATH"], "w") as f:
            f.write("{not json")
        assert permissions.read_overrides() == {}

    def test_file_is_read_on_every_check(self, app):
        base = user(ROLE_BASE_ERR, 9)
        assert not permissions.can(base, "f2_commit")
        with open(app.config["USER_OVERRIDES_PATH"], "w") as f:
            json.dump({"9": {"add": ["f2_commit"], "remove": []}}, f)
        assert permissions.can(base, "f2_commit")


class TestPermissionsApi:

    def test_me_lists_allowed_functions(self, state_client):
        resp = state_client.get("/api/users/me")
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["role"] == ROLE_STATE_ERR
        assert "f2_commit" in data["allowed_functions"]
        assert "f2_assign" not in data["allowed_functions"]

    def test_unauthenticated_is_json_401(self, client):
        resp = client.get("/api/users/me")
        assert resp.status_code == 401
        assert resp.get_json()["success"] is False

    def test_admin_sets_overrides(self, admin_client, make_user):
        target = make_user("someone@example.org", ROLE_BASE_ERR, state="Khartoum")
        resp = admin_client.put(f"/api/permissions/user/{target.id}/overrides",
                                json={"add": ["f2_edit"], "remove": ["f5_save"]})
        assert resp.status_code == 200
        assert "f2_edit" in resp.get_json()["allowed"]
        assert "f5_save" not in resp.get_json()["allowed"]

        detail = admin_client.get(f"/api/permissions/user/{target.id}").get_json()
        assert detail["overrides"] == {"add": ["f2_edit"], "remove": ["f5_save"]}

    def test_unknown_codes_rejected(self, admin_client, make_user):
        target = make_user("someone@example.org", ROLE_BASE_ERR)
        resp = admin_client.put(f"/api/permissions/user/{target.id}/overrides", json={"add": ["launch_rockets"]})
        assert resp.status_code == 400
        assert resp.get_json()["codes"] == ["launch_rockets"]

    def test_err_users_cannot_manage_permissions(self, state_client):
        assert state_client.get("/api/permissions/functions").status_code == 403

    def test_denied_function_reports_code(self, base_client):
        resp = base_client.post("/api/f2/uncommitted/commit", json={"f1_ids": [1]})
        assert resp.status_code == 403
        body = resp.get_json()
        assert body["code"] == "PERMISSION_DENIED"
        assert body["functionCode"] == "f2_commit"
