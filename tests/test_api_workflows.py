"""
Workflow API — HTTP contract of the advancement protocol.

Uses shared fixtures from conftest.py: client, session (autouse), directory.
"""

import pytest

from factories import LEAD_QUALIFIED_FACTS, QUALIFICATION_CHECKLIST, SERVICE_FACTS

BASE = "/api/v1"


@pytest.fixture(autouse=True)
def _directory(directory):
    return directory


def _create(client, record_id="lead-100", process_type="lead-to-quote", **extra):
    res = client.post(f"{BASE}/workflows", json={"record_id": record_id, "process_type": process_type, **extra})
    assert res.status_code == 201, res.get_json()
    return res.get_json()


def _advance(client, workflow_id, target, **extra):
    return client.post(f"{BASE}/workflows/{workflow_id}/advance", json={"target_stage": target, **extra})


# ═════════════════════════════════════════════════════════════════════════════
#  Create / read
# ═════════════════════════════════════════════════════════════════════════════

class TestCreateWorkflow:
    def test_create(self, client):
        data = _create(client, created_by="sales.manager", watchers=["sales.manager"])
        assert data["current_stage"] == "qualification"
        assert data["status"] == "active"
        assert data["assigned_to"] == "sales.rep.1"
        assert data["completed_stages"] == []
        assert data["days_remaining"] in (4, 5)
        assert data["next_actions"][0]["stage"] == "assessment"
        assert data["next_actions"][0]["pending_requirements"] == QUALIFICATION_CHECKLIST
        assert data["progress"] == {"completed_stages": 0, "total_stages": 4, "progress_percentage": 0.0}

    def test_missing_fields(self, client):
        res = client.post(f"{BASE}/workflows", json={"record_id": "lead-1"})
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_REQUIRED"

    def test_watchers_must_be_list(self, client):
        res = client.post(f"{BASE}/workflows", json={
            "record_id": "lead-1", "process_type": "lead-to-quote", "watchers": "sales.manager",
        })
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"

    def test_unknown_process_type(self, client):
        res = client.post(f"{BASE}/workflows", json={"record_id": "x-1", "process_type": "lease-renewal"})
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_UNKNOWN_PROCESS_TYPE"

    def test_duplicate(self, client):
        first = _create(client)
        res = client.post(f"{BASE}/workflows", json={"record_id": "lead-100", "process_type": "lead-to-quote"})
        assert res.status_code == 409
        body = res.get_json()
        assert body["code"] == "ERR_DUPLICATE_WORKFLOW"
        assert body["details"]["existing_workflow_id"] == first["workflow_id"]

    def test_non_json_body_rejected(self, client):
        res = client.post(f"{BASE}/workflows", data="record_id=1", content_type="text/plain")
        assert res.status_code == 415

    def test_get_and_list(self, client):
        wf = _create(client)
        _create(client, "svc-1", "service-completion")

        res = client.get(f"{BASE}/workflows/{wf['workflow_id']}")
        assert res.status_code == 200
        assert res.get_json()["record_id"] == "lead-100"

        listing = client.get(f"{BASE}/workflows").get_json()
        assert listing["total"] == 2
        filtered = client.get(f"{BASE}/workflows?process_type=service-completion").get_json()
        assert [w["record_id"] for w in filtered["items"]] == ["svc-1"]
        by_record = client.get(f"{BASE}/workflows?record_id=lead-100").get_json()
        assert [w["workflow_id"] for w in by_record["items"]] == [wf["workflow_id"]]
        paged = client.get(f"{BASE}/workflows?limit=1&offset=1").get_json()
        assert paged["total"] == 2
        assert len(paged["items"]) == 1

    def test_list_bad_status(self, client):
        res = client.get(f"{BASE}/workflows?status=paused")
        assert res.status_code == 422
        assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"

    def test_get_unknown(self, client):
        res = client.get(f"{BASE}/workflows/does-not-exist")
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"


# ═════════════════════════════════════════════════════════════════════════════
#  Advance
# ═════════════════════════════════════════════════════════════════════════════

class TestAdvanceWorkflow:
    def test_gate_then_success(self, client):
        wf = _create(client)

        res = _advance(client, wf["workflow_id"], "assessment")
        assert res.status_code == 422
        body = res.get_json()
        assert body["code"] == "ERR_GATE_NOT_SATISFIED"
        assert body["failed_requirements"] == QUALIFICATION_CHECKLIST

        put = client.put(f"{BASE}/records/lead-100/facts", json={"facts": LEAD_QUALIFIED_FACTS})
        assert put.status_code == 200

        res = _advance(client, wf["workflow_id"], "assessment", actor="sales.rep.1")
        assert res.status_code == 200
        data = res.get_json()
        assert data["current_stage"] == "assessment"
        assert [c["stage_id"] for c in data["completed_stages"]] == ["qualification"]
        assert data["completed_stages"][0]["completed_by"] == "sales.rep.1"

    def test_inline_snapshot(self, client):
        wf = _create(client)
        res = _advance(client, wf["workflow_id"], "assessment", snapshot=LEAD_QUALIFIED_FACTS)
        assert res.status_code == 200

    def test_snapshot_must_be_object(self, client):
        wf = _create(client)
        res = _advance(client, wf["workflow_id"], "assessment", snapshot=["email"])
        assert res.status_code == 400

    def test_skip_rejected(self, client):
        wf = _create(client)
        res = _advance(client, wf["workflow_id"], "quote-generation")
        assert res.status_code == 409
        body = res.get_json()
        assert body["code"] == "ERR_INVALID_TRANSITION"
        assert body["details"] == {
            "current_stage": "qualification",
            "target_stage": "quote-generation",
            "expected_stage": "assessment",
        }

    def test_target_required(self, client):
        wf = _create(client)
        res = client.post(f"{BASE}/workflows/{wf['workflow_id']}/advance", json={})
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_REQUIRED"

    def test_terminal_workflow_gone(self, client):
        client.put(f"{BASE}/records/svc-9/facts", json=SERVICE_FACTS)
        wf = _create(client, "svc-9", "service-completion")
        for target in ("on-site-service", "completion-review", "closed"):
            res = _advance(client, wf["workflow_id"], target)
            assert res.status_code == 200, res.get_json()

        final = res.get_json()
        assert final["status"] == "completed"
        assert final["next_actions"] == []

        res = _advance(client, wf["workflow_id"], "closed")
        assert res.status_code == 410
        assert res.get_json()["code"] == "ERR_WORKFLOW_COMPLETE"

    def test_unknown_workflow(self, client):
        res = _advance(client, "nope", "assessment")
        assert res.status_code == 404


class TestCancelWorkflow:
    def test_cancel_then_recreate(self, client):
        wf = _create(client)
        res = client.post(f"{BASE}/workflows/{wf['workflow_id']}/cancel", json={"reason": "Lost deal"})
        assert res.status_code == 200
        assert res.get_json()["status"] == "cancelled"
        assert res.get_json()["cancel_reason"] == "Lost deal"

        res = _advance(client, wf["workflow_id"], "assessment")
        assert res.status_code == 410
        assert res.get_json()["code"] == "ERR_WORKFLOW_CANCELLED"

        again = _create(client)
        assert again["workflow_id"] != wf["workflow_id"]


# ═════════════════════════════════════════════════════════════════════════════
#  Blockers
# ═════════════════════════════════════════════════════════════════════════════

class TestBlockers:
    def test_add_and_resolve(self, client):
        wf = _create(client)
        res = client.post(f"{BASE}/workflows/{wf['workflow_id']}/blockers",
                          json={"description": "Credit hold", "severity": "high", "created_by": "legal.counsel"})
        assert res.status_code == 201
        blocker = res.get_json()
        assert blocker["resolved"] is False
        assert blocker["severity"] == "high"

        detail = client.get(f"{BASE}/workflows/{wf['workflow_id']}").get_json()
        assert detail["open_blocker_count"] == 1

        url = f"{BASE}/workflows/{wf['workflow_id']}/blockers/{blocker['blocker_id']}/resolve"
        res = client.post(url)
        assert res.status_code == 200
        assert res.get_json()["resolved"] is True

        res = client.post(url)
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_BLOCKER_NOT_FOUND"

    def test_resolution_note_recorded(self, client):
        wf = _create(client)
        blocker = client.post(f"{BASE}/workflows/{wf['workflow_id']}/blockers",
                              json={"description": "Credit hold"}).get_json()
        res = client.post(f"{BASE}/workflows/{wf['workflow_id']}/blockers/{blocker['blocker_id']}/resolve",
                          json={"resolution": "Deposit received"})
        assert res.status_code == 200
        assert res.get_json()["resolution"] == "Deposit received"

        detail = client.get(f"{BASE}/workflows/{wf['workflow_id']}").get_json()
        assert detail["blockers"][0]["resolution"] == "Deposit received"

    def test_resolution_must_be_text(self, client):
        wf = _create(client)
        blocker = client.post(f"{BASE}/workflows/{wf['workflow_id']}/blockers",
                              json={"description": "Credit hold"}).get_json()
        res = client.post(f"{BASE}/workflows/{wf['workflow_id']}/blockers/{blocker['blocker_id']}/resolve",
                          json={"resolution": ["x"]})
        assert res.status_code == 400

    def test_blocker_on_completed_workflow(self, client):
        client.put(f"{BASE}/records/svc-9/facts", json=SERVICE_FACTS)
        wf = _create(client, "svc-9", "service-completion")
        for target in ("on-site-service", "completion-review", "closed"):
            assert _advance(client, wf["workflow_id"], target).status_code == 200

        res = client.post(f"{BASE}/workflows/{wf['workflow_id']}/blockers",
                          json={"description": "Customer disputes invoice", "severity": "high"})
        assert res.status_code == 201
        detail = client.get(f"{BASE}/workflows/{wf['workflow_id']}").get_json()
        assert detail["status"] == "completed"
        assert detail["open_blocker_count"] == 1

    def test_blocker_on_cancelled_workflow_gone(self, client):
        wf = _create(client)
        client.post(f"{BASE}/workflows/{wf['workflow_id']}/cancel", json={})
        res = client.post(f"{BASE}/workflows/{wf['workflow_id']}/blockers", json={"description": "Late"})
        assert res.status_code == 410
        assert res.get_json()["code"] == "ERR_WORKFLOW_CANCELLED"

    def test_description_required(self, client):
        wf = _create(client)
        res = client.post(f"{BASE}/workflows/{wf['workflow_id']}/blockers", json={"severity": "low"})
        assert res.status_code == 400

    def test_invalid_severity(self, client):
        wf = _create(client)
        res = client.post(f"{BASE}/workflows/{wf['workflow_id']}/blockers",
                          json={"description": "Credit hold", "severity": "urgent"})
        assert res.status_code == 422
        assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"


# ═════════════════════════════════════════════════════════════════════════════
#  Pre-flight & record facts
# ═════════════════════════════════════════════════════════════════════════════

class TestValidateAndFacts:
    def test_preflight_without_workflow(self, client):
        res = client.get(f"{BASE}/validate/quote-to-proposal/quote-7")
        assert res.status_code == 200
        data = res.get_json()
        assert data["valid"] is False
        assert data["stage"] == "acceptance-verification"
        assert data["workflow_id"] is None
        assert len(data["errors"]) == 7

    def test_preflight_alias(self, client):
        data = client.get(f"{BASE}/validate/kitting-to-delivery/po-5").get_json()
        assert data["process_type"] == "order-fulfillment"
        assert data["stage"] == "purchase-order"

    def test_order_workflow_summary(self, client):
        client.put(f"{BASE}/records/acct-1/facts", json=LEAD_QUALIFIED_FACTS)
        _create(client, "acct-1")
        res = client.get(f"{BASE}/validate/order-workflow/acct-1")
        assert res.status_code == 200
        data = res.get_json()
        assert data["record_id"] == "acct-1"
        assert [s["process_type"] for s in data["steps"]] == [
            "lead-to-quote", "quote-to-proposal", "proposal-to-contract", "order-fulfillment",
        ]
        assert data["steps"][0]["status"] == "in_progress"
        assert data["steps"][0]["can_proceed"] is True
        assert data["steps"][1]["blockers"] == ["Lead to Quote Conversion must be completed first"]
        assert data["overall_status"] == "in_progress"
        assert data["next_action"] == "Advance to Needs Assessment"
        assert data["estimated_completion_days"] > 0

    def test_order_workflow_unknown_record(self, client):
        data = client.get(f"{BASE}/validate/order-workflow/nobody").get_json()
        assert data["overall_status"] == "not_started"
        assert data["next_action"] == "Start Lead to Quote Conversion"
        assert all(s["workflow_id"] is None for s in data["steps"])

    def test_preflight_unknown_type(self, client):
        res = client.get(f"{BASE}/validate/lease-renewal/x-1")
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_UNKNOWN_PROCESS_TYPE"

    def test_facts_merge_and_replace(self, client):
        client.put(f"{BASE}/records/lead-1/facts", json={"email": "a@b.c"})
        res = client.put(f"{BASE}/records/lead-1/facts", json={"facts": {"timeline": "Q1"}})
        assert res.get_json()["facts"] == {"email": "a@b.c", "timeline": "Q1"}

        res = client.put(f"{BASE}/records/lead-1/facts?replace=true", json={"facts": {"phone": "555"}})
        assert res.get_json()["facts"] == {"phone": "555"}
        assert client.get(f"{BASE}/records/lead-1/facts").get_json() == {
            "record_id": "lead-1", "facts": {"phone": "555"},
        }

    def test_facts_must_be_object(self, client):
        res = client.put(f"{BASE}/records/lead-1/facts", json={"facts": [1, 2]})
        assert res.status_code == 400


# ═════════════════════════════════════════════════════════════════════════════
#  Process catalog
# ═════════════════════════════════════════════════════════════════════════════

class TestProcesses:
    def test_list(self, client):
        data = client.get(f"{BASE}/processes").get_json()
        assert data["total"] == 6
        assert {p["process_type"] for p in data["items"]} >= {"lead-to-quote", "service-completion"}

    def test_detail(self, client):
        data = client.get(f"{BASE}/processes/lead-to-quote").get_json()
        assert [s["stage_id"] for s in data["stages"]] == [
            "qualification", "assessment", "solution-design", "quote-generation",
        ]
        assert data["stages"][0]["requirements"][1] == {
            "type": "field_present", "name": "Business type confirmed", "field": "business_type",
        }

    def test_unknown(self, client):
        res = client.get(f"{BASE}/processes/nope")
        assert res.status_code == 404

    def test_bottlenecks(self, client):
        for i in range(3):
            _create(client, f"lead-{i}")
        data = client.get(f"{BASE}/processes/lead-to-quote/bottlenecks").get_json()
        assert data["process_type"] == "lead-to-quote"
        assert data["stage_distribution"]["qualification"] == 3
        assert [b["stage"] for b in data["bottlenecks"]] == ["qualification"]
