"""
Change request HTTP API tests.

Covers the kanban routes: create, lane moves (including the refusal of
decision fields on the move endpoint), submit/decide and the board.
"""

import pytest

from conftest import APPROVER, EDITOR, OUTSIDER, VIEWER, headers


@pytest.fixture()
def card(client, pid):
    res = client.post(
        f"/api/v1/projects/{pid}/change-requests",
        json={"title": "Extend UAT by two weeks", "priority": "high",
              "impact_analysis": {"days": 10, "cost": 5000, "risk": "Go-live slips"}},
        headers=headers(EDITOR),
    )
    assert res.status_code == 201
    return res.get_json()


def _move(client, cid, lane, actor=EDITOR, **extra):
    return client.patch(
        f"/api/v1/change-requests/{cid}/delivery-status",
        json={"delivery_status": lane, **extra},
        headers=headers(actor),
    )


class TestCreateAndRead:
    def test_create(self, card):
        assert card["code"] == "CR-001"
        assert card["delivery_lane"] == "intake"
        assert card["priority"] == "High"
        assert card["impact_analysis"]["days"] == 10

    def test_missing_title(self, client, pid):
        res = client.post(
            f"/api/v1/projects/{pid}/change-requests", json={}, headers=headers(EDITOR),
        )
        assert res.status_code == 400

    def test_non_finite_impact(self, client, pid):
        res = client.post(
            f"/api/v1/projects/{pid}/change-requests",
            json={"title": "Open-ended", "impact_analysis": {"days": "nan", "cost": "inf"}},
            headers=headers(EDITOR),
        )
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"

    def test_viewer_forbidden(self, client, pid):
        res = client.post(
            f"/api/v1/projects/{pid}/change-requests", json={"title": "x"}, headers=headers(VIEWER),
        )
        assert res.status_code == 403

    def test_get_member_only(self, client, card):
        assert client.get(f"/api/v1/change-requests/{card['id']}", headers=headers(VIEWER)).status_code == 200
        assert client.get(f"/api/v1/change-requests/{card['id']}", headers=headers(OUTSIDER)).status_code == 404

    def test_update(self, client, card):
        res = client.put(
            f"/api/v1/change-requests/{card['id']}",
            json={"summary": "Vendor delay"}, headers=headers(EDITOR),
        )
        assert res.status_code == 200
        assert res.get_json()["summary"] == "Vendor delay"


class TestDeliveryStatus:
    def test_move(self, client, card):
        res = _move(client, card["id"], "analysis")
        assert res.status_code == 200
        data = res.get_json()
        assert data["moved"] is True
        assert (data["from_lane"], data["to_lane"]) == ("intake", "analysis")
        assert data["item"]["delivery_lane"] == "analysis"

    def test_governance_fields_refused(self, client, card):
        res = _move(client, card["id"], "analysis", decision_status="approved")
        assert res.status_code == 400
        assert "decision_status" in res.get_json()["details"]
        got = client.get(f"/api/v1/change-requests/{card['id']}", headers=headers(EDITOR)).get_json()
        assert got["delivery_lane"] == "intake"
        assert got["decision_status"] == "draft"

    def test_illegal_move(self, client, card):
        res = _move(client, card["id"], "closed")
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_STATE"

    def test_unknown_lane(self, client, card):
        assert _move(client, card["id"], "backlog").status_code == 400

    def test_missing_lane(self, client, card):
        res = client.patch(
            f"/api/v1/change-requests/{card['id']}/delivery-status", json={}, headers=headers(EDITOR),
        )
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_REQUIRED"


class TestDecisionFlow:
    def test_submit_and_approve(self, client, card):
        cid = card["id"]
        _move(client, cid, "analysis")
        res = client.post(f"/api/v1/change-requests/{cid}/submit", headers=headers(EDITOR))
        assert res.status_code == 200
        assert res.get_json()["is_locked"] is True

        assert _move(client, cid, "in_progress").status_code == 409

        res = client.post(
            f"/api/v1/change-requests/{cid}/decision",
            json={"decision": "approved"}, headers=headers(APPROVER),
        )
        assert res.status_code == 200
        assert res.get_json()["delivery_lane"] == "in_progress"

    def test_decision_by_non_approver(self, client, card):
        cid = card["id"]
        _move(client, cid, "analysis")
        client.post(f"/api/v1/change-requests/{cid}/submit", headers=headers(EDITOR))
        res = client.post(
            f"/api/v1/change-requests/{cid}/decision",
            json={"decision": "approved"}, headers=headers(VIEWER),
        )
        assert res.status_code == 403

    def test_delete_draft(self, client, card):
        res = client.delete(f"/api/v1/change-requests/{card['id']}", headers=headers(EDITOR))
        assert res.status_code == 200
        assert client.get(f"/api/v1/change-requests/{card['id']}", headers=headers(EDITOR)).status_code == 404


class TestBoard:
    def test_board(self, client, pid, card):
        res = client.get(f"/api/v1/projects/{pid}/change-requests/board", headers=headers(VIEWER))
        assert res.status_code == 200
        data = res.get_json()
        intake = next(lane for lane in data["lanes"] if lane["lane"] == "intake")
        assert [item["id"] for item in intake["items"]] == [card["id"]]
        assert data["summary"]["total_items"] == 1
