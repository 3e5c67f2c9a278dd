"""
API tests for WhatsApp session management, single sends and broadcast jobs.
"""
import asyncio

from wacrm.services.broadcast_service import STATUS_COMPLETED


API = "/api/v1"


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

class TestSessionsApi:

    def test_create_and_list(self, client, gateway):
        resp = client.post(f"{API}/sessions", json={"id": "sales"})
        assert resp.status_code == 200
        assert resp.json() == {"status": "created", "sessionId": "sales"}
        assert gateway.started[0][0] == "sales"

        sessions = client.get(f"{API}/sessions").json()["sessions"]
        assert sessions == [{"id": "sales", "state": "connecting", "hasQR": False, "user": None}]

    def test_create_requires_id(self, client):
        resp = client.post(f"{API}/sessions", json={})
        assert resp.status_code == 400
        assert resp.json()["message"] == "Session id required"

    def test_create_duplicate(self, client):
        client.post(f"{API}/sessions", json={"id": "sales"})
        resp = client.post(f"{API}/sessions", json={"id": "sales"})
        assert resp.status_code == 400
        assert resp.json()["error_code"] == "SESSION_EXISTS"

    def test_status(self, client, open_session):
        resp = client.get(f"{API}/sessions/default/status")
        assert resp.json() == {"sessionId": "default", "state": "open", "hasQR": False, "user": None}
        assert client.get(f"{API}/sessions/ghost/status").status_code == 404

    def test_logout(self, client, gateway, open_session):
        resp = client.post(f"{API}/sessions/default/logout")
        assert resp.json() == {"status": "logged out"}
        assert gateway.logged_out == ["default"]
        assert client.get(f"{API}/sessions/default/status").json()["state"] == "connecting"

    def test_backup_disabled(self, client, open_session):
        assert client.post(f"{API}/sessions/default/backup").json() == {"success": False}


# ---------------------------------------------------------------------------
# Single send
# ---------------------------------------------------------------------------

class TestSendApi:

    def test_send(self, client, gateway, open_session):
        resp = client.post(f"{API}/sessions/default/send", json={"number": "+62 812-3456-7890", "message": "Halo"})
        assert resp.status_code == 200
        assert resp.json() == {"status": "sent", "messageId": "OUT0001"}
        assert gateway.sent == [("default", "6281234567890@s.whatsapp.net", "Halo")]

    def test_session_not_ready(self, client, runtime):
        asyncio.run(runtime.sessions.start_session("default"))
        resp = client.post(f"{API}/sessions/default/send", json={"number": "6281234567890", "message": "Halo"})
        assert resp.status_code == 503

    def test_unknown_session(self, client):
        resp = client.post(f"{API}/sessions/ghost/send", json={"number": "6281234567890", "message": "Halo"})
        assert resp.status_code == 404

    def test_invalid_number(self, client, open_session):
        resp = client.post(f"{API}/sessions/default/send", json={"number": "12ab", "message": "Halo"})
        assert resp.status_code == 400

    def test_not_on_whatsapp(self, client, gateway, open_session):
        gateway.not_on_whatsapp.add("6281234567890@s.whatsapp.net")
        resp = client.post(f"{API}/sessions/default/send", json={"number": "6281234567890", "message": "Halo"})
        assert resp.status_code == 400
        assert resp.json()["message"] == "Number is not on WhatsApp"
        assert gateway.sent == []


# ---------------------------------------------------------------------------
# Broadcast jobs
# ---------------------------------------------------------------------------

class TestBroadcastApi:

    def test_start_broadcast(self, client, open_session):
        resp = client.post(f"{API}/sessions/default/broadcast", json={
            "numbers": ["6281111111111", "12", "6282222222222"],
            "message": "Promo",
            "delayMinMs": 0,
            "delayMaxMs": 0,
        })
        assert resp.status_code == 200
        body = resp.json()
        assert body["totals"]["total"] == 3
        assert body["jobId"]

    def test_invalid_config(self, client, open_session):
        resp = client.post(f"{API}/sessions/default/broadcast", json={
            "numbers": ["6281111111111"], "message": "Promo", "delayMinMs": 5000, "delayMaxMs": 10,
        })
        assert resp.status_code == 400

    def test_requires_ready_session(self, client):
        resp = client.post(f"{API}/sessions/default/broadcast", json={"numbers": ["6281111111111"], "message": "x"})
        assert resp.status_code == 404

    def test_personalized_requires_template(self, client, open_session):
        resp = client.post(f"{API}/sessions/default/broadcast-personalized", json={
            "csvData": [{"phone": "6281111111111", "name": "Ani"}], "messageTemplate": " ",
        })
        assert resp.status_code == 400

    def test_job_status_and_listing(self, client, runtime):
        job = runtime.broadcasts.create_job("default", ["6281111111111"], "Promo")
        asyncio.run(runtime.broadcasts.run(job))

        resp = client.get(f"{API}/sessions/default/broadcast/{job.id}")
        assert resp.status_code == 200
        detail = resp.json()["job"]
        assert detail["status"] == STATUS_COMPLETED
        assert detail["results"][0]["status"] == "sent"

        assert client.get(f"{API}/sessions/sales/broadcast/{job.id}").status_code == 404
        assert client.get(f"{API}/sessions/default/broadcast/nope").status_code == 404

        jobs = client.get(f"{API}/jobs", params={"sessionId": "default"}).json()["jobs"]
        assert [j["id"] for j in jobs] == [job.id]
        assert "recipients" not in jobs[0]
        assert client.get(f"{API}/jobs", params={"sessionId": "sales"}).json()["jobs"] == []

    def test_cancel_queued_job(self, client, runtime):
        job = runtime.broadcasts.create_job("default", ["6281111111111"], "Promo")
        resp = client.post(f"{API}/sessions/default/broadcast/{job.id}/cancel")
        assert resp.status_code == 200
        assert resp.json()["job"]["status"] == "cancelled"
