from conftest import add_contact, add_tag
from mailflow.config import settings

HEADERS = {"X-API-Key": settings.api_key}


def _workflow(tag_id, **extra):
    return {
        "tenant_id": "tenant-1",
        "name": "Tag new contacts",
        "steps": [
            {"id": "wait", "step_type": "delay", "config": {"value": 1, "unit": "hours"}},
            {"id": "tag", "step_type": "add_tag", "config": {"tag_id": tag_id}},
        ],
        "edges": [
            {"source_step_id": "trigger", "target_step_id": "wait"},
            {"source_step_id": "wait", "target_step_id": "tag"},
        ],
        **extra,
    }


def _create_active(client, tag_id, **extra):
    workflow_id = client.post("/workflows", json=_workflow(tag_id, **extra), headers=HEADERS).json()["id"]
    client.post(f"/workflows/{workflow_id}/activate", headers=HEADERS)
    return workflow_id


def test_health_needs_no_auth(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_auth_required(client):
    response = client.get("/workflows")
    assert response.status_code in (401, 403, 422)


def test_invalid_api_key(client):
    response = client.get("/workflows", headers={"X-API-Key": "wrong-key"})
    assert response.status_code == 401


def test_create_workflow(client):
    response = client.post("/workflows", json=_workflow("t1"), headers=HEADERS)
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "draft"
    assert data["trigger_type"] == "manual"
    assert {s["key"] for s in data["steps"]} == {"wait", "tag"}
    assert len(data["edges"]) == 2


def test_create_workflow_with_cycle(client):
    workflow = _workflow("t1")
    workflow["edges"].append({"source_step_id": "tag", "target_step_id": "wait"})
    response = client.post("/workflows", json=workflow, headers=HEADERS)
    assert response.status_code == 400
    assert any("cycle" in e for e in response.json()["detail"]["errors"])


def test_create_workflow_with_bad_config(client):
    workflow = _workflow("t1")
    workflow["steps"][0]["config"] = {"value": 0}
    response = client.post("/workflows", json=workflow, headers=HEADERS)
    assert response.status_code == 400


def test_list_and_get_workflows(client):
    workflow_id = client.post("/workflows", json=_workflow("t1"), headers=HEADERS).json()["id"]
    assert len(client.get("/workflows", headers=HEADERS).json()) == 1
    assert client.get("/workflows?tenant_id=tenant-2", headers=HEADERS).json() == []
    assert client.get(f"/workflows/{workflow_id}", headers=HEADERS).json()["id"] == workflow_id


def test_get_workflow_not_found(client):
    assert client.get("/workflows/nonexistent", headers=HEADERS).status_code == 404


def test_status_transitions(client):
    workflow_id = client.post("/workflows", json=_workflow("t1"), headers=HEADERS).json()["id"]

    assert client.post(f"/workflows/{workflow_id}/pause", headers=HEADERS).status_code == 409
    response = client.post(f"/workflows/{workflow_id}/activate", headers=HEADERS)
    assert response.json()["status"] == "active"
    response = client.post(f"/workflows/{workflow_id}/pause", headers=HEADERS)
    assert response.json()["status"] == "paused"
    response = client.post(f"/workflows/{workflow_id}/archive", headers=HEADERS)
    assert response.json()["status"] == "archived"
    assert client.post(f"/workflows/{workflow_id}/activate", headers=HEADERS).status_code == 409
    assert client.post("/workflows/nonexistent/activate", headers=HEADERS).status_code == 404


def test_enroll_requires_active_workflow(client):
    workflow_id = client.post("/workflows", json=_workflow("t1"), headers=HEADERS).json()["id"]
    response = client.post(
        f"/workflows/{workflow_id}/enroll", json={"contact_id": "c1"}, headers=HEADERS
    )
    assert response.status_code == 400


def test_enroll_unknown_workflow(client):
    response = client.post(
        "/workflows/nonexistent/enroll", json={"contact_id": "c1"}, headers=HEADERS
    )
    assert response.status_code == 404


def test_enroll_advance_and_inspect(client, db, clock):
    contact = add_contact(db)
    tag = add_tag(db)
    workflow_id = _create_active(client, tag)

    first = client.post(
        f"/workflows/{workflow_id}/enroll", json={"contact_id": contact}, headers=HEADERS
    ).json()["execution_id"]
    again = client.post(
        f"/workflows/{workflow_id}/enroll", json={"contact_id": contact}, headers=HEADERS
    ).json()["execution_id"]
    assert first == again

    response = client.post("/advance", headers=HEADERS)
    assert response.json() == {"processed": 1, "succeeded": 1, "failed": 0}

    steps = client.get(f"/executions/{first}/steps", headers=HEADERS).json()
    assert [s["status"] for s in steps] == ["waiting"]
    assert steps[0]["scheduled_at"] is not None

    clock.advance(hours=1)
    client.post("/advance", headers=HEADERS)

    execution = client.get(f"/executions/{first}", headers=HEADERS).json()
    assert execution["status"] == "completed"
    executions = client.get(
        f"/workflows/{workflow_id}/executions?status=completed", headers=HEADERS
    ).json()
    assert [e["id"] for e in executions] == [first]


def test_advance_limit_bounds(client):
    assert client.post("/advance?limit=0", headers=HEADERS).status_code == 422
    assert client.post("/advance?limit=5", headers=HEADERS).status_code == 200


def test_trigger_enrolls_matching_workflows(client, db):
    tag = add_tag(db)
    workflow_id = _create_active(
        client, tag, trigger_type="tag_added", trigger_config={"tag_id": "vip"}
    )

    response = client.post(
        "/triggers/tag_added",
        json={"tenant_id": "tenant-1", "contact_id": "c1", "payload": {"tag_id": "vip"}},
        headers=HEADERS,
    )
    [execution_id] = response.json()["execution_ids"]
    assert client.get(f"/executions/{execution_id}", headers=HEADERS).json()["workflow_id"] == workflow_id

    response = client.post(
        "/triggers/tag_added",
        json={"tenant_id": "tenant-1", "contact_id": "c2", "payload": {"tag_id": "other"}},
        headers=HEADERS,
    )
    assert response.json()["execution_ids"] == []


def test_unknown_trigger_type(client):
    response = client.post(
        "/triggers/webhook",
        json={"tenant_id": "tenant-1", "contact_id": "c1"},
        headers=HEADERS,
    )
    assert response.status_code == 422


def test_cancel_execution(client, db):
    workflow_id = _create_active(client, add_tag(db))
    execution_id = client.post(
        f"/workflows/{workflow_id}/enroll", json={"contact_id": "c1"}, headers=HEADERS
    ).json()["execution_id"]

    response = client.post(f"/executions/{execution_id}/cancel", headers=HEADERS)
    assert response.json()["status"] == "failed"
    assert client.post(f"/executions/{execution_id}/cancel", headers=HEADERS).status_code == 409
    assert client.post("/executions/nonexistent/cancel", headers=HEADERS).status_code == 404

    steps = client.get(f"/executions/{execution_id}/steps", headers=HEADERS).json()
    assert [s["status"] for s in steps] == ["skipped"]


def test_stalled_execution_and_retry(client, db, clock):
    # Tag id that does not exist, so the add_tag step fails.
    workflow_id = _create_active(client, "missing-tag")
    execution_id = client.post(
        f"/workflows/{workflow_id}/enroll", json={"contact_id": "c1"}, headers=HEADERS
    ).json()["execution_id"]
    client.post("/advance", headers=HEADERS)
    clock.advance(hours=1)
    assert client.post("/advance", headers=HEADERS).json()["failed"] == 1

    stalled = client.get("/executions/stalled", headers=HEADERS).json()
    assert [e["id"] for e in stalled] == [execution_id]
    assert "Tag 'missing-tag' not found" in stalled[0]["error"]

    steps = client.get(f"/executions/{execution_id}/steps", headers=HEADERS).json()
    failed = next(s for s in steps if s["status"] == "failed")
    assert failed["result"] == {"error": "Tag 'missing-tag' not found"}

    response = client.post(f"/execution-steps/{failed['id']}/retry", headers=HEADERS)
    assert response.status_code == 200
    assert response.json()["retry_of"] == failed["id"]
    assert client.post(f"/execution-steps/{failed['id']}/retry", headers=HEADERS).status_code == 409
    assert client.post("/execution-steps/nonexistent/retry", headers=HEADERS).status_code == 404
    assert client.get("/executions/stalled", headers=HEADERS).json() == []


def test_execution_not_found(client):
    assert client.get("/executions/nonexistent", headers=HEADERS).status_code == 404
    assert client.get("/executions/nonexistent/steps", headers=HEADERS).status_code == 404
