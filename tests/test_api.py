"""
HTTP API tests — blueprints, error mapping and health checks.
"""

import io

from pipetrack.models.component import Component
from pipetrack.models.needs_review import ReviewItem
from pipetrack.services import locks

SPOOLS = [
    {"DRAWING": "P-001", "TYPE": "Spool", "ID": "SP-1", "TEST PACKAGE": "TP-01"},
    {"DRAWING": "P-001", "TYPE": "Spool", "ID": "SP-2", "TEST PACKAGE": "TP-01"},
]


def _import(client, project_id, rows, **flags):
    return client.post(f"/api/v1/projects/{project_id}/imports", json={"rows": rows, **flags})


# ═════════════════════════════════════════════════════════════════════════════
# Health & app-level handlers
# ═════════════════════════════════════════════════════════════════════════════


def test_ready(client):
    res = client.get("/api/v1/health/ready")
    assert res.status_code == 200
    assert res.get_json() == {"status": "ok"}


def test_live_reports_database_and_templates(client):
    res = client.get("/api/v1/health/live")
    assert res.status_code == 200
    body = res.get_json()
    assert body["status"] == "ok"
    assert body["checks"]["database"]["status"] == "ok"
    assert body["checks"]["templates"]["count"] > 0


def test_request_id_header(client):
    res = client.get("/api/v1/health/ready", headers={"X-Request-ID": "abc-123"})
    assert res.headers["X-Request-ID"] == "abc-123"
    assert "X-Request-Duration-Ms" in res.headers


def test_unknown_route(client):
    res = client.get("/api/v1/nowhere")
    assert res.status_code == 404
    assert res.get_json()["path"] == "/api/v1/nowhere"


# ═════════════════════════════════════════════════════════════════════════════
# Projects
# ═════════════════════════════════════════════════════════════════════════════


class TestProjects:
    def test_create_list_get(self, client):
        res = client.post("/api/v1/projects", json={"code": "NEW-1", "name": "Unit 7 Revamp"})
        assert res.status_code == 201
        pid = res.get_json()["id"]
        assert [p["code"] for p in client.get("/api/v1/projects").get_json()] == ["NEW-1"]
        assert client.get(f"/api/v1/projects/{pid}").get_json()["name"] == "Unit 7 Revamp"

    def test_duplicate_code(self, client, project):
        res = client.post("/api/v1/projects", json={"code": "PRJ-1", "name": "Again"})
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_DUPLICATE"

    def test_required_fields(self, client):
        res = client.post("/api/v1/projects", json={"code": "X"})
        assert res.status_code == 400

    def test_missing_project(self, client):
        assert client.get("/api/v1/projects/777").status_code == 404


# ═════════════════════════════════════════════════════════════════════════════
# Imports
# ═════════════════════════════════════════════════════════════════════════════


class TestImportApi:
    def test_json_rows_commit(self, client, project):
        res = _import(client, project.id, SPOOLS, actor_id="planner")
        assert res.status_code == 201
        body = res.get_json()
        assert body["created"] == 2
        assert body["committed"] is True
        assert Component.query.count() == 2

    def test_aborted_batch_returns_full_report(self, client, project):
        res = _import(client, project.id, SPOOLS + [{"DRAWING": "P-001", "TYPE": "Spool", "ID": "SP-001"}])
        assert res.status_code == 422
        body = res.get_json()
        assert body["code"] == "IMPORT_ABORTED"
        assert body["created"] == 0
        assert body["errors"][0]["row"] == 3
        assert Component.query.count() == 0

    def test_validate_is_a_dry_run(self, client, project):
        res = client.post(f"/api/v1/projects/{project.id}/imports/validate", json={"rows": SPOOLS})
        assert res.status_code == 200
        assert res.get_json()["created"] == 2
        assert res.get_json()["dry_run"] is True
        assert Component.query.count() == 0

    def test_multipart_csv_upload(self, client, project):
        csv_bytes = b"DRAWING,TYPE,QTY,CMDTY CODE,SIZE\nP-001,Valve,3,VGT-2,2\n"
        res = client.post(
            f"/api/v1/projects/{project.id}/imports",
            data={"file": (io.BytesIO(csv_bytes), "takeoff.csv")},
            content_type="multipart/form-data",
        )
        assert res.status_code == 201
        assert res.get_json()["created"] == 3

    def test_non_utf8_upload_is_client_error(self, client, project):
        res = client.post(
            f"/api/v1/projects/{project.id}/imports",
            data={"file": (io.BytesIO(b"DRAWING,TYPE\n\xff\xfe,Spool\n"), "takeoff.csv")},
            content_type="multipart/form-data",
        )
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"
        assert Component.query.count() == 0

    def test_raw_csv_body_with_query_flags(self, client, project):
        _import(client, project.id, [{"DRAWING": "P-001", "TYPE": "Valve", "QTY": 2, "CMDTY CODE": "V"}])
        res = client.post(
            f"/api/v1/projects/{project.id}/imports?approve_quantity_increases=1",
            data="DRAWING,TYPE,QTY,CMDTY CODE\nP-001,Valve,4,V\n",
            content_type="text/csv",
        )
        assert res.status_code == 201
        assert res.get_json()["created"] == 2
        assert ReviewItem.query.count() == 0

    def test_csv_missing_required_column(self, client, project):
        res = client.post(f"/api/v1/projects/{project.id}/imports", json={"csv_content": "QTY\n1\n"})
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"

    def test_no_takeoff(self, client, project):
        res = client.post(f"/api/v1/projects/{project.id}/imports", json={})
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_REQUIRED"

    def test_unknown_project(self, client):
        assert _import(client, 4040, SPOOLS).status_code == 404

    def test_commit_lock_conflict(self, client, project):
        lock = locks._project_locks.get(project.id)
        lock.acquire()
        try:
            res = _import(client, project.id, SPOOLS)
        finally:
            lock.release()
        assert res.status_code == 409
        assert res.headers["Retry-After"] == "1"
        assert res.get_json()["code"] == "ERR_CONFLICT_CONCURRENT"

    def test_template_download(self, client, project):
        res = client.get(f"/api/v1/projects/{project.id}/imports/template")
        assert res.status_code == 200
        assert res.mimetype == "text/csv"
        assert res.data.decode().startswith("DRAWING,TYPE")


# ═════════════════════════════════════════════════════════════════════════════
# Milestones, rollups, reviews
# ═════════════════════════════════════════════════════════════════════════════


class TestMilestoneApi:
    def _spool_id(self, client, project):
        _import(client, project.id, SPOOLS)
        return Component.query.filter_by(identity_token="spool_id=SP-1").one().id

    def test_complete_then_conflict(self, client, project):
        cid = self._spool_id(client, project)
        url = f"/api/v1/components/{cid}/milestones"

        res = client.post(url, json={"milestone": "Receive", "actor_id": "fm"})
        assert res.status_code == 200
        assert res.get_json()["component"]["percent_complete"] == 5.0

        res = client.post(url, json={"milestone": "Receive"})
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_STATE"

    def test_bad_requests(self, client, project):
        cid = self._spool_id(client, project)
        url = f"/api/v1/components/{cid}/milestones"
        assert client.post(url, json={}).status_code == 400
        assert client.post(url, json={"milestone": "Receive", "metadata": [1]}).status_code == 400
        assert client.post(url, json={"milestone": "Paint"}).status_code == 422
        assert client.post("/api/v1/components/999/milestones", json={"milestone": "Receive"}).status_code == 404

    def test_events_and_ledger(self, client, project):
        cid = self._spool_id(client, project)
        client.post(f"/api/v1/components/{cid}/milestones", json={"milestone": "Erect"})

        events = client.get(f"/api/v1/components/{cid}/events").get_json()
        assert [e["milestone_name"] for e in events] == ["Erect"]
        assert events[0]["metadata"]["out_of_sequence"] == ["Receive"]
        ledger = client.get(f"/api/v1/components/{cid}/ledger").get_json()
        assert ledger["consistent"] is True
        rebuild = client.post(f"/api/v1/components/{cid}/rebuild", json={})
        assert rebuild.get_json()["rebuilt"] is False

    def test_bulk_and_rollups(self, client, project):
        _import(client, project.id, SPOOLS)
        ids = [c.id for c in Component.query.all()]
        res = client.post(
            f"/api/v1/projects/{project.id}/milestones/bulk",
            json={"milestone": "Receive", "component_ids": ids},
        )
        assert res.get_json()["updated"] == 2

        drawings = client.get(f"/api/v1/projects/{project.id}/progress/drawings").get_json()
        assert drawings == [{
            "drawing_id": drawings[0]["drawing_id"],
            "drawing_no": "P-001",
            "drawing_no_norm": "P-1",
            "component_count": 2,
            "percent_complete": 5.0,
        }]
        packages = client.get(f"/api/v1/projects/{project.id}/progress/packages").get_json()
        assert packages[0]["name"] == "TP-01"
        assert packages[0]["percent_complete"] == 5.0

    def test_bulk_requires_ids(self, client, project):
        res = client.post(f"/api/v1/projects/{project.id}/milestones/bulk", json={"milestone": "Receive"})
        assert res.status_code == 400


class TestReviewApi:
    def _delta_review(self, client, project):
        row = {"DRAWING": "P-001", "TYPE": "Valve", "CMDTY CODE": "V", "QTY": 4}
        _import(client, project.id, [row])
        _import(client, project.id, [{**row, "QTY": 2}])
        return ReviewItem.query.one().id

    def test_list_resolve_and_conflict(self, client, project):
        rid = self._delta_review(client, project)
        listing = client.get(f"/api/v1/projects/{project.id}/reviews?status=pending").get_json()
        assert listing["total"] == 1
        assert listing["items"][0]["payload"]["delta"] == -2

        res = client.post(f"/api/v1/reviews/{rid}/resolve", json={"actor_id": "lead"})
        assert res.status_code == 200
        assert res.get_json()["resolution"]["outcome"]["retired"] == 2

        again = client.post(f"/api/v1/reviews/{rid}/resolve", json={})
        assert again.status_code == 409

    def test_ignore_and_summary(self, client, project):
        rid = self._delta_review(client, project)
        assert client.post(f"/api/v1/reviews/{rid}/ignore", json={"note": "typo"}).status_code == 200
        summary = client.get(f"/api/v1/projects/{project.id}/reviews/summary").get_json()
        assert summary["by_status"]["ignored"] == 1

    def test_resolution_must_be_object(self, client, project):
        rid = self._delta_review(client, project)
        res = client.post(f"/api/v1/reviews/{rid}/resolve", json={"resolution": [1]})
        assert res.status_code == 400

    def test_bad_filter(self, client, project):
        res = client.get(f"/api/v1/projects/{project.id}/reviews?status=open")
        assert res.status_code == 422


# ═════════════════════════════════════════════════════════════════════════════
# Drawings, components, operators, templates
# ═════════════════════════════════════════════════════════════════════════════


class TestCatalogueApi:
    def test_drawings_and_similar(self, client, project):
        _import(client, project.id, SPOOLS)
        drawings = client.get(f"/api/v1/projects/{project.id}/drawings").get_json()
        assert [d["drawing_no_norm"] for d in drawings] == ["P-1"]

        res = client.get(f"/api/v1/projects/{project.id}/drawings/similar?drawing=p 0001")
        body = res.get_json()
        assert body["normalized_value"] == "P-1"
        assert body["existing_drawing"]["id"] == drawings[0]["id"]
        assert client.get(f"/api/v1/projects/{project.id}/drawings/similar").status_code == 400

    def test_components(self, client, project):
        _import(client, project.id, SPOOLS)
        body = client.get(f"/api/v1/projects/{project.id}/components?type=spool").get_json()
        assert body["total"] == 2
        assert client.get(f"/api/v1/projects/{project.id}/components?type=pump").status_code == 422
        cid = body["items"][0]["id"]
        assert client.get(f"/api/v1/components/{cid}").get_json()["current_milestones"] == {}

    def test_operators(self, client, project):
        url = f"/api/v1/projects/{project.id}/operators"
        res = client.post(url, json={"name": "K. Osei", "stencil": "k-07"})
        assert res.status_code == 201
        op = res.get_json()
        assert op["stencil_norm"] == "K-07"
        assert op["status"] == "unverified"
        assert client.post(url, json={"name": "Other", "stencil": " K-07 "}).status_code == 409
        assert client.post(url, json={"name": "Bad", "stencil": "!"}).status_code == 422

        verified = client.post(f"/api/v1/operators/{op['id']}/verify", json={"actor_id": "qa"}).get_json()
        assert verified["status"] == "verified"
        assert client.get(f"{url}?status=verified").get_json()[0]["id"] == op["id"]

    def test_templates(self, client):
        res = client.post("/api/v1/templates", json={
            "component_type": "hose",
            "milestones": [{"name": "Hook-Up", "weight": 100, "order": 1}],
        })
        assert res.status_code == 201
        assert res.get_json()["version"] == 2

        bad = client.post("/api/v1/templates", json={
            "component_type": "hose",
            "milestones": [{"name": "Hook-Up", "weight": 90, "order": 1}],
        })
        assert bad.status_code == 422
        assert [t["version"] for t in client.get("/api/v1/templates?component_type=hose").get_json()] == [1, 2]
