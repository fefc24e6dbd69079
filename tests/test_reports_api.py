import io

import pytest

from app import db, FinancialReport, HistoricalActivity, Project, ProgramReport, User
from budget_helpers import STATUS_ACTIVE, STATUS_COMPLETED
from storage_service import get_storage

SERIAL = "LCC-P2H-KH-0125-0001"


@pytest.fixture
def active_project(make_project):
    return make_project(status=STATUS_ACTIVE, grant_serial_id=SERIAL, grant_id=f"{SERIAL}-001")


@pytest.fixture
def historical(app):
    activity = HistoricalActivity(err_code="KH-OLD-01", err_name="Old ERR", state="Khartoum",
                                  serial_number="LCC-P2H-KH-0624-0001-001", usd=5000, project_donor="P2H")
    db.session.add(activity)
    db.session.commit()
    return activity


def f4_payload(project_id, **extra):
    payload = {
        "project_id": project_id,
        "summary": {"report_date": "18/7/202", "total_grant": 1000, "total_expenses": "850.5",
                    "beneficiaries": "120 households"},
        "expenses": [
            {"expense_activity": "Food baskets", "expense_amount": 600, "payment_date": "2025-07-01"},
            {"expense_activity": "Transport", "expense_amount": 250.5, "receipt_no": "R-17"},
        ],
    }
    payload.update(extra)
    return payload


class TestFinancialReports:

    def test_save_with_file(self, state_client, active_project):
        get_storage().save_bytes(b"%PDF", "f4-temp/upload.PDF")
        resp = state_client.post("/api/f4/save", json=f4_payload(active_project.id, file_key_temp="f4-temp/upload.PDF"))
        assert resp.status_code == 200
        data = resp.get_json()
        assert len(data["expense_ids"]) == 2

        report = db.session.get(FinancialReport, data["summary_id"])
        assert report.report_date.isoformat() == "2020-07-18"
        assert report.total_expenses == 850.5
        assert report.err_id == "KH-BAH-01"
        key = f"f4-financial-reports/Khartoum/KH-BAH-01/{SERIAL}/{report.id}/summary.pdf"
        assert [a.file_key for a in report.attachments] == [key]
        assert get_storage().exists(key)

    def test_missing_temp_file_rolls_back(self, state_client, active_project):
        resp = state_client.post("/api/f4/save", json=f4_payload(active_project.id, file_key_temp="f4-temp/gone.pdf"))
        assert resp.status_code == 500
        assert FinancialReport.query.count() == 0

    def test_save_against_historical_activity(self, state_client, historical):
        resp = state_client.post("/api/f4/save", json=f4_payload(f"historical_{historical.id}"))
        assert resp.status_code == 200
        rows = state_client.get(f"/api/f4/list?project_id=historical_{historical.id}").get_json()
        assert len(rows) == 1
        assert rows[0]["project_id"] == f"historical_{historical.id}"
        assert rows[0]["grant_id"] == "LCC-P2H-KH-0624-0001-001"

    def test_unknown_targets(self, state_client):
        assert state_client.post("/api/f4/save", json=f4_payload(999)).status_code == 404
        assert state_client.post("/api/f4/save", json=f4_payload("historical_999")).status_code == 404
        assert state_client.post("/api/f4/save", json=f4_payload(None)).status_code == 400

    def test_other_state_forbidden(self, state_client, make_project):
        project = make_project(state="Sennar")
        assert state_client.post("/api/f4/save", json=f4_payload(project.id)).status_code == 403

    def test_list_and_detail_scoped_by_state(self, admin_client, state_client, active_project, make_project):
        other = make_project(state="Sennar")
        admin_client.post("/api/f4/save", json=f4_payload(active_project.id))
        other_id = admin_client.post("/api/f4/save", json=f4_payload(other.id)).get_json()["summary_id"]

        assert len(admin_client.get("/api/f4/list").get_json()) == 2
        assert [r["state"] for r in state_client.get("/api/f4/list").get_json()] == ["Khartoum"]
        assert state_client.get(f"/api/f4/summary/{other_id}").status_code == 403

        detail = admin_client.get(f"/api/f4/summary/{other_id}").get_json()
        assert detail["beneficiaries"] == "120 households"
        assert [e["expense_activity"] for e in detail["expenses"]] == ["Food baskets", "Transport"]
        assert detail["expenses"][0]["payment_date"] == "2025-07-01"

    def test_update_replaces_expenses(self, state_client, active_project):
        summary_id = state_client.post("/api/f4/save", json=f4_payload(active_project.id)).get_json()["summary_id"]
        resp = state_client.post("/api/f4/update", json={
            "summary_id": summary_id,
            "summary": {"remainder": 149.5, "lessons": "Buy earlier"},
            "expenses": [{"expense_activity": "Water", "expense_amount": 100}],
        })
        assert resp.status_code == 200
        summary = resp.get_json()["summary"]
        assert summary["remainder"] == 149.5
        assert summary["lessons"] == "Buy earlier"
        assert [e["expense_activity"] for e in summary["expenses"]] == ["Water"]

    def test_base_err_can_save_but_not_edit(self, base_client, active_project):
        summary_id = base_client.post("/api/f4/save", json=f4_payload(active_project.id)).get_json()["summary_id"]
        resp = base_client.post("/api/f4/update", json={"summary_id": summary_id, "summary": {}})
        assert resp.status_code == 403
        assert resp.get_json()["functionCode"] == "f4_edit"


class TestProgramReports:

    def payload(self, project_id, **extra):
        payload = {
            "project_id": project_id,
            "summary": {"report_date": "2025-08-01", "positive_changes": "Markets reopened",
                        "reporting_person": "Amal", "is_draft": True},
            "reach": [{"activity_name": "Food baskets", "location": "Bahri", "individual_count": "340",
                       "household_count": 68, "start_date": "1/6/2025"}],
        }
        payload.update(extra)
        return payload

    def test_save_and_read(self, state_client, active_project):
        get_storage().save_bytes(b"%PDF", "f5-temp/report.pdf")
        resp = state_client.post("/api/f5/save", json=self.payload(active_project.id, file_key_temp="f5-temp/report.pdf"))
        assert resp.status_code == 200
        data = resp.get_json()
        assert len(data["reach_ids"]) == 1

        report = state_client.get(f"/api/f5/report/{data['report_id']}").get_json()
        assert report["is_draft"] is True
        assert report["positive_changes"] == "Markets reopened"
        assert report["reach"][0]["individual_count"] == 340
        assert report["reach"][0]["start_date"] == "2025-06-01"
        assert report["reach"][0]["is_draft"] is True
        key = f"f5-program-reports/Khartoum/KH-BAH-01/{SERIAL}/{data['report_id']}/report.pdf"
        assert report["files"][0]["file_key"] == key
        assert report["files"][0]["file_name"] == "report.pdf"

    def test_historical_projects_rejected(self, state_client, historical):
        resp = state_client.post("/api/f5/save", json=self.payload(f"historical_{historical.id}"))
        assert resp.status_code == 400

    def test_list_by_project(self, state_client, active_project, make_project):
        other = make_project()
        state_client.post("/api/f5/save", json=self.payload(active_project.id))
        state_client.post("/api/f5/save", json=self.payload(other.id))
        rows = state_client.get(f"/api/f5/list?project_id={other.id}").get_json()
        assert [r["project_id"] for r in rows] == [other.id]

    def test_update(self, state_client, active_project):
        report_id = state_client.post("/api/f5/save", json=self.payload(active_project.id)).get_json()["report_id"]
        resp = state_client.post("/api/f5/update", json={
            "report_id": report_id,
            "summary": {"is_draft": False, "suggestions": "More water points"},
            "reach": [],
        })
        report = resp.get_json()["report"]
        assert report["is_draft"] is False
        assert report["suggestions"] == "More water points"
        assert report["reach"] == []
        assert db.session.get(ProgramReport, report_id).reach == []

    def test_unknown_report(self, state_client):
        assert state_client.get("/api/f5/report/999").status_code == 404
        assert state_client.post("/api/f5/update", json={"report_id": 999}).status_code == 404


class TestProjectStatus:

    def test_defaults_to_completed(self, state_client, active_project):
        resp = state_client.patch(f"/api/projects/{active_project.id}/status", json={})
        assert resp.status_code == 200
        assert db.session.get(Project, active_project.id).status == STATUS_COMPLETED

    def test_explicit_and_invalid_status(self, state_client, active_project):
        resp = state_client.patch(f"/api/projects/{active_project.id}/status", json={"status": "Approved"})
        assert resp.get_json()["project"]["status"] == "approved"
        assert state_client.patch(f"/api/projects/{active_project.id}/status",
                                  json={"status": "archived"}).status_code == 400

    def test_historical_and_missing(self, state_client, historical):
        assert state_client.patch(f"/api/projects/historical_{historical.id}/status", json={}).status_code == 400
        assert state_client.patch("/api/projects/999/status", json={}).status_code == 404

    def test_other_state(self, state_client, make_project):
        project = make_project(state="Sennar")
        assert state_client.patch(f"/api/projects/{project.id}/status", json={}).status_code == 403

    def test_reporting_status(self, state_client, active_project):
        url = f"/api/projects/{active_project.id}/reporting-status"
        resp = state_client.patch(url, json={"f4_status": "Under Review"})
        assert resp.get_json() == {"success": True, "f4_status": "in review", "f5_status": None}
        resp = state_client.patch(url, json={"f5_status": "partial"})
        assert resp.get_json()["f4_status"] == "in review"
        assert resp.get_json()["f5_status"] == "partial"

    def test_reporting_status_needs_a_value(self, state_client, active_project):
        resp = state_client.patch(f"/api/projects/{active_project.id}/reporting-status",
                                  json={"f4_status": "lost", "f5_status": ""})
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Provide at least one of f4_status or f5_status."

    def test_base_err_cannot_update(self, base_client, active_project):
        assert base_client.patch(f"/api/projects/{active_project.id}/status", json={}).status_code == 403


HISTORICAL_CSV = (
    "ERR Code,ERR Name,State,Serial Number,USD,Project Donor\n"
    'KH-BAH-01,Bahri ERR,Khartoum,LCC-P2H-KH-0624-0001-001,"1,200",P2H\n'
    "JZ-MAD-01,Madani ERR,Al Jazeera,LCC-P2H-JZ-0624-0001-001,800,P2H\n"
    "XX-000-00,No State,,LCC-P2H-XX-0624-0001-001,300,P2H\n"
    "KH-BAH-02,Zero ERR,Khartoum,LCC-P2H-KH-0624-0001-002,0,P2H\n"
)


class TestHistoricalImport:

    def upload(self, client, content=HISTORICAL_CSV, **form):
        data = {"file": (io.BytesIO(content.encode("utf-8")), "activities.csv")}
        data.update(form)
        return client.post("/api/historical/import", data=data, content_type="multipart/form-data")

    def test_import_cleans_rows(self, admin_client):
        resp = self.upload(admin_client)
        assert resp.get_json() == {"success": True, "created": 2, "skipped": 2}

        rows = admin_client.get("/api/historical").get_json()
        assert [(r["state"], r["usd"]) for r in rows] == [("Khartoum", 1200.0), ("Al Jazirah", 800.0)]
        assert rows[0]["id"].startswith("historical_")
        assert rows[0]["err_name"] == "Bahri ERR"

    def test_replace(self, admin_client, historical):
        self.upload(admin_client, replace="true")
        assert HistoricalActivity.query.count() == 2
        assert HistoricalActivity.query.filter_by(err_code="KH-OLD-01").count() == 0

    def test_missing_columns(self, admin_client):
        resp = self.upload(admin_client, content="ERR Code,Amount\nKH-1,10\n")
        assert resp.status_code == 400

    def test_no_file(self, admin_client):
        assert admin_client.post("/api/historical/import", data={},
                                 content_type="multipart/form-data").status_code == 400

    def test_state_users_see_own_state(self, admin_client, state_client):
        self.upload(admin_client)
        assert [r["state"] for r in state_client.get("/api/historical").get_json()] == ["Khartoum"]
        assert self.upload(state_client).status_code == 403


class TestCli:

    def test_init_db(self, app):
        result = app.test_cli_runner().invoke(args=["init-db"])
        assert "Database initialized." in result.output

    def test_import_historical(self, app, tmp_path):
        path = tmp_path / "activities.csv"
        path.write_text(HISTORICAL_CSV, encoding="utf-8")
        result = app.test_cli_runner().invoke(args=["import-historical", str(path)])
        assert "Created 2, skipped 2" in result.output
        assert HistoricalActivity.query.count() == 2

    def test_import_historical_bad_columns(self, app, tmp_path):
        path = tmp_path / "bad.csv"
        path.write_text("Name\nx\n", encoding="utf-8")
        result = app.test_cli_runner().invoke(args=["import-historical", str(path)])
        assert "Error:" in result.output

    def test_import_historical_missing_file(self, app, tmp_path):
        result = app.test_cli_runner().invoke(args=["import-historical", str(tmp_path / "nope.csv")])
        assert result.exception is None
        assert "Error:" in result.output
        assert HistoricalActivity.query.count() == 0

    def test_create_admin(self, app, monkeypatch):
        monkeypatch.setattr("getpass.getpass", lambda prompt="": "longenough")
        result = app.test_cli_runner().invoke(args=["create-admin"], input="Root@Example.org\nRoot User\n")
        assert "created successfully" in result.output
        user = User.query.filter_by(email="root@example.org").first()
        assert user.role == "superadmin"
        assert user.check_password("longenough")

    def test_create_admin_short_password(self, app, monkeypatch):
        monkeypatch.setattr("getpass.getpass", lambda prompt="": "short")
        result = app.test_cli_runner().invoke(args=["create-admin"], input="root@example.org\nRoot User\n")
        assert "at least 8 characters" in result.output
        assert User.query.filter_by(email="root@example.org").first() is None

    def test_seed_demo(self, app):
        result = app.test_cli_runner().invoke(args=["seed-demo"])
        assert result.exit_code == 0
        assert User.query.filter_by(email="khartoum@fsystem.local").first() is not None
        assert Project.query.count() == 3
