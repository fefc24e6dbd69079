import io
import re

import pytest

from app import db, Grant, Mou, Partner, Project
from budget_helpers import FUNDING_COMMITTED, STATUS_ACTIVE, STATUS_APPROVED
from storage_service import get_storage


@pytest.fixture
def committed(make_project):
    def _make(cost=1000, **fields):
        return make_project(cost, status=STATUS_APPROVED, funding_status=FUNDING_COMMITTED, **fields)
    return _make


@pytest.fixture
def grant(donor):
    grant = Grant(grant_id="P2H-2025-01", project_name="Emergency response", donor_id=donor.id,
                  donor_name=donor.name, activities="LCC-P2H-KH-0125-0001,LCC-P2H-KH-0125-0002,LCC-P2H-KH-0125-0003",
                  max_workplan_sequence=3)
    db.session.add(grant)
    db.session.commit()
    return grant


@pytest.fixture
def mou(admin_client, committed):
    first, second = committed(1000), committed(2500)
    resp = admin_client.post("/api/f3/mous", json={"project_ids": [first.id, second.id]})
    assert resp.status_code == 201
    return db.session.get(Mou, resp.get_json()["id"])


def grant_payload(grant, mmyy="0125"):
    return {"grant_id": grant.grant_id, "donor_name": grant.donor_name, "mmyy": mmyy}


class TestCreateMou:

    def test_defaults(self, admin_client, committed):
        project = committed(1200)
        resp = admin_client.post("/api/f3/mous", json={"project_ids": [project.id]})
        assert resp.status_code == 201
        data = resp.get_json()
        assert re.match(r"^LOCA-KHA-\d{6}-\d{3}$", data["mou_code"])
        assert data["partner_name"] == "Localization Hub"
        assert data["err_name"] == "Bahri ERR"
        assert data["state"] == "Khartoum"
        assert data["total_amount"] == 1200
        assert data["assigned"] is False
        assert [p["id"] for p in data["projects"]] == [project.id]
        assert get_storage().exists(data["file_key"])

    def test_explicit_partner_code_and_dates(self, admin_client, committed):
        partner = Partner(name="Sudan Relief Network", status="active")
        db.session.add(partner)
        db.session.commit()
        project = committed()
        resp = admin_client.post("/api/f3/mous", json={
            "project_ids": [project.id],
            "partner_id": partner.id,
            "mou_code": "SRN-KHA-250101-001",
            "err_name": "Bahri Youth ERR",
            "start_date": "2025-01-01",
            "end_date": "2025-03-31",
        })
        data = resp.get_json()
        assert data["partner_name"] == "Sudan Relief Network"
        assert data["err_name"] == "Bahri Youth ERR"
        assert (data["start_date"], data["end_date"]) == ("2025-01-01", "2025-03-31")

    def test_inactive_partner_rejected(self, admin_client, committed):
        partner = Partner(name="Dormant Org", status="inactive")
        db.session.add(partner)
        db.session.commit()
        project = committed()
        resp = admin_client.post("/api/f3/mous", json={"project_ids": [project.id], "partner_id": partner.id})
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Invalid partner selected"

    def test_duplicate_code(self, admin_client, committed):
        first, second = committed(), committed()
        admin_client.post("/api/f3/mous", json={"project_ids": [first.id], "mou_code": "X-1"})
        resp = admin_client.post("/api/f3/mous", json={"project_ids": [second.id], "mou_code": "X-1"})
        assert resp.status_code == 400

    def test_uncommitted_or_linked_projects_rejected(self, admin_client, committed, make_project, mou):
        pending = make_project()
        resp = admin_client.post("/api/f3/mous", json={"project_ids": [pending.id]})
        assert resp.status_code == 400
        linked = mou.projects[0]
        resp = admin_client.post("/api/f3/mous", json={"project_ids": [linked.id]})
        assert resp.get_json()["project_ids"] == [linked.id]

    def test_bad_date(self, admin_client, committed):
        project = committed()
        resp = admin_client.post("/api/f3/mous", json={"project_ids": [project.id], "start_date": "01/01/2025"})
        assert resp.status_code == 400

    def test_base_err_cannot_create(self, base_client, committed):
        project = committed()
        assert base_client.post("/api/f3/mous", json={"project_ids": [project.id]}).status_code == 403


class TestListAndEdit:

    def test_list_search_and_state_scope(self, admin_client, state_client, committed, mou):
        other = committed(state="Sennar")
        admin_client.post("/api/f3/mous", json={"project_ids": [other.id], "mou_code": "LOCA-SEN-250101-001"})

        assert len(admin_client.get("/api/f3/mous").get_json()) == 2
        rows = admin_client.get("/api/f3/mous?search=sen").get_json()
        assert [r["mou_code"] for r in rows] == ["LOCA-SEN-250101-001"]
        assert [r["id"] for r in state_client.get("/api/f3/mous").get_json()] == [mou.id]

    def test_detail_and_access(self, state_client, admin_client, committed):
        other = committed(state="Sennar")
        mou_id = admin_client.post("/api/f3/mous", json={"project_ids": [other.id]}).get_json()["id"]
        assert state_client.get(f"/api/f3/mous/{mou_id}").status_code == 403
        assert admin_client.get(f"/api/f3/mous/{mou_id}").get_json()["state"] == "Sennar"
        assert admin_client.get("/api/f3/mous/999").status_code == 404

    def test_patch_fields(self, admin_client, mou):
        resp = admin_client.patch(f"/api/f3/mous/{mou.id}", json={
            "banking_details_override": "Account 42",
            "err_contact_override": "",
            "end_date": "2025-06-30",
        })
        data = resp.get_json()
        assert data["banking_details_override"] == "Account 42"
        assert data["err_contact_override"] is None
        assert data["end_date"] == "2025-06-30"

    def test_patch_rejects_empty_names(self, admin_client, mou):
        assert admin_client.patch(f"/api/f3/mous/{mou.id}", json={"partner_name": ""}).status_code == 400

    def test_add_and_remove_projects(self, admin_client, committed, mou):
        extra = committed(500)
        data = admin_client.post(f"/api/f3/mous/{mou.id}/projects/add", json={"project_ids": [extra.id]}).get_json()
        assert data["total_amount"] == 4000
        data = admin_client.post(f"/api/f3/mous/{mou.id}/projects/remove", json={"project_ids": [extra.id]}).get_json()
        assert data["total_amount"] == 3500
        assert db.session.get(Project, extra.id).mou_id is None


class TestAssignMou:

    def test_assign_continues_grant_sequence(self, admin_client, grant, mou):
        resp = admin_client.post(f"/api/f3/mous/{mou.id}/assign", json=grant_payload(grant))
        assert resp.status_code == 200
        assert resp.get_json()["assigned_count"] == 2

        projects = sorted(db.session.get(Mou, mou.id).projects, key=lambda p: p.id)
        assert [p.grant_id for p in projects] == ["LCC-P2H-KH-0125-0004", "LCC-P2H-KH-0125-0005"]
        assert all(p.status == STATUS_ACTIVE and p.grant_row_id == grant.id for p in projects)
        grant = db.session.get(Grant, grant.id)
        assert grant.max_workplan_sequence == 5
        assert grant.activities.endswith(",LCC-P2H-KH-0125-0004,LCC-P2H-KH-0125-0005")

    def test_assigned_mou_is_frozen(self, admin_client, committed, grant, mou):
        admin_client.post(f"/api/f3/mous/{mou.id}/assign", json=grant_payload(grant))
        assert admin_client.post(f"/api/f3/mous/{mou.id}/assign", json=grant_payload(grant)).status_code == 400
        extra = committed()
        resp = admin_client.post(f"/api/f3/mous/{mou.id}/projects/add", json={"project_ids": [extra.id]})
        assert resp.status_code == 400
        assert admin_client.get(f"/api/f3/mous/{mou.id}").get_json()["assigned"] is True

    def test_reassign_moves_serials_to_new_grant(self, admin_client, donor, grant, mou):
        admin_client.post(f"/api/f3/mous/{mou.id}/assign", json=grant_payload(grant))
        fresh = Grant(grant_id="P2H-2025-02", donor_id=donor.id, donor_name=donor.name)
        db.session.add(fresh)
        db.session.commit()

        resp = admin_client.post(f"/api/f3/mous/{mou.id}/reassign", json=grant_payload(fresh, mmyy="0225"))
        assert resp.status_code == 200
        assert "0004" not in db.session.get(Grant, grant.id).activities
        projects = sorted(db.session.get(Mou, mou.id).projects, key=lambda p: p.id)
        assert [p.grant_id for p in projects] == ["LCC-P2H-KH-0225-0001", "LCC-P2H-KH-0225-0002"]
        assert db.session.get(Grant, fresh.id).activities == "LCC-P2H-KH-0225-0001,LCC-P2H-KH-0225-0002"

    def test_unknown_grant(self, admin_client, mou):
        resp = admin_client.post(f"/api/f3/mous/{mou.id}/assign",
                                 json={"grant_id": "NOPE", "donor_name": "People to Help", "mmyy": "0125"})
        assert resp.status_code == 404

    def test_bad_payload(self, admin_client, grant, mou):
        assert admin_client.post(f"/api/f3/mous/{mou.id}/assign", json={}).status_code == 400
        assert admin_client.post(f"/api/f3/mous/{mou.id}/assign",
                                 json=grant_payload(grant, mmyy="1/25")).status_code == 400

    def test_state_users_cannot_assign(self, state_client, grant, mou):
        assert state_client.post(f"/api/f3/mous/{mou.id}/assign", json=grant_payload(grant)).status_code == 403


class TestDocumentsAndUploads:

    def test_document_download(self, admin_client, mou):
        resp = admin_client.get(f"/api/f3/mous/{mou.id}/document")
        assert resp.status_code == 200
        assert resp.mimetype == "text/html"
        assert mou.mou_code in resp.get_data(as_text=True)

    def test_regenerate_reflects_edits(self, admin_client, mou):
        admin_client.patch(f"/api/f3/mous/{mou.id}", json={"err_name": "Renamed ERR"})
        resp = admin_client.post(f"/api/f3/mous/{mou.id}/regenerate")
        assert resp.status_code == 200
        assert "Renamed ERR" in admin_client.get(f"/api/f3/mous/{mou.id}/document").get_data(as_text=True)

    def test_missing_document(self, admin_client, mou):
        get_storage().delete_file(mou.file_key)
        assert admin_client.get(f"/api/f3/mous/{mou.id}/document").status_code == 404

    def test_signed_upload(self, state_client, mou):
        resp = state_client.post(f"/api/f3/mous/{mou.id}/signed-mou",
                                 data={"file": (io.BytesIO(b"%PDF-1.4"), "signed.pdf")},
                                 content_type="multipart/form-data")
        assert resp.status_code == 200
        key = resp.get_json()["file_key"]
        assert key.startswith(f"f3-mous/{mou.id}/signed/") and key.endswith("signed.pdf")
        assert db.session.get(Mou, mou.id).signed_mou_file_key == key

    def test_payment_upload(self, state_client, mou):
        resp = state_client.post(f"/api/f3/mous/{mou.id}/payment-confirmation",
                                 data={"file": (io.BytesIO(b"%PDF-1.4"), "receipt.pdf")},
                                 content_type="multipart/form-data")
        assert resp.get_json()["file_key"].startswith(f"f3-mous/{mou.id}/payment/")

    def test_upload_validation(self, admin_client, mou):
        url = f"/api/f3/mous/{mou.id}/signed-mou"
        assert admin_client.post(url, data={}, content_type="multipart/form-data").status_code == 400
        resp = admin_client.post(url, data={"file": (io.BytesIO(b"MZ"), "tool.exe")},
                                 content_type="multipart/form-data")
        assert resp.status_code == 400
