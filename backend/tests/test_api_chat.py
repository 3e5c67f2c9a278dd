"""
API tests for chat, media download, groups and external app links.
"""
import json

from sqlmodel import select

from wacrm.models.group import WhatsAppGroup
from wacrm.models.message import Message


API = "/api/v1"
GROUP_JID = "120363025246125888@g.us"


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------

class TestChat:

    def test_send_and_list_conversations(self, client, gateway, open_session):
        resp = client.post(f"{API}/chat/send", json={"session_id": "default", "phone": "6281234567890", "content": "Halo"})
        assert resp.status_code == 200
        message = resp.json()["message"]
        assert message["direction"] == "outgoing"
        assert message["content"] == "Halo"

        conversations = client.get(f"{API}/chat/conversations", params={"sessionId": "default"}).json()["conversations"]
        assert conversations[0]["contact"]["phone"] == "6281234567890"
        assert conversations[0]["lastMessage"]["content"] == "Halo"
        assert conversations[0]["messageCount"] == 1

    def test_send_requires_content(self, client, open_session):
        resp = client.post(f"{API}/chat/send", json={"session_id": "default", "phone": "6281234567890", "content": ""})
        assert resp.status_code == 400

    def test_send_invalid_phone(self, client, open_session):
        resp = client.post(f"{API}/chat/send", json={"session_id": "default", "phone": "123", "content": "x"})
        assert resp.status_code == 400
        assert resp.json()["error_code"] == "INVALID_PHONE_NUMBER"

    def test_transport_failure_maps_to_502(self, client, gateway, open_session):
        gateway.failing_jids.add("6281234567890@s.whatsapp.net")
        resp = client.post(f"{API}/chat/send", json={"session_id": "default", "phone": "6281234567890", "content": "x"})
        assert resp.status_code == 502


# ---------------------------------------------------------------------------
# Media
# ---------------------------------------------------------------------------

class TestMedia:

    def _image(self, session, contact):
        raw = {"key": {"remoteJid": contact.whatsapp_jid, "id": "IMG1", "fromMe": False},
               "message": {"imageMessage": {"mimetype": "image/png"}}}
        message = Message(session_id="default", message_id="IMG1", contact_id=contact.id,
                          message_type="image", media_mimetype="image/png", raw_message=json.dumps(raw))
        session.add(message)
        session.commit()
        session.refresh(message)
        return message

    def test_downloads_on_demand(self, client, session, runtime, sample_contact):
        message = self._image(session, sample_contact)
        resp = client.get(f"{API}/messages/{message.id}/media")
        assert resp.status_code == 200
        assert resp.content == b"\x89PNG fake media"
        assert resp.headers["content-type"] == "image/png"
        assert (runtime.media.media_dir / "IMG1.png").is_file()

    def test_text_message_has_no_media(self, client, session, sample_contact):
        message = Message(session_id="default", message_id="T1", contact_id=sample_contact.id, content="hi")
        session.add(message)
        session.commit()
        assert client.get(f"{API}/messages/{message.id}/media").status_code == 404

    def test_unknown_message(self, client):
        resp = client.get(f"{API}/messages/9999/media")
        assert resp.status_code == 404
        assert resp.json()["error_code"] == "MESSAGE_NOT_FOUND"


# ---------------------------------------------------------------------------
# Groups
# ---------------------------------------------------------------------------

class TestGroupsApi:

    def _group(self, session):
        group = WhatsAppGroup(session_id="default", group_id="120363025246125888", subject="Alumni")
        session.add(group)
        session.commit()
        session.refresh(group)
        return group

    def test_list_and_detail(self, client, session):
        group = self._group(session)
        groups = client.get(f"{API}/groups", params={"sessionId": "default"}).json()["groups"]
        assert [g["subject"] for g in groups] == ["Alumni"]

        by_id = client.get(f"{API}/groups/{group.id}", params={"sessionId": "default"}).json()["group"]
        by_jid = client.get(f"{API}/groups/{GROUP_JID}", params={"sessionId": "default"}).json()["group"]
        assert by_id["id"] == by_jid["id"] == group.id

    def test_unknown_group(self, client):
        resp = client.get(f"{API}/groups/999", params={"sessionId": "default"})
        assert resp.status_code == 404

    def test_sync_participants_and_send(self, client, session, gateway, open_session):
        group = self._group(session)
        gateway.groups[GROUP_JID] = {"id": GROUP_JID, "subject": "Alumni", "participants": [
            {"id": "6281111111111@s.whatsapp.net", "admin": "admin"},
        ]}
        resp = client.post(f"{API}/groups/{group.id}/participants/sync", json={"sessionId": "default"})
        assert resp.status_code == 200
        assert resp.json()["participantCount"] == 1

        participants = client.get(f"{API}/groups/{group.id}/participants", params={"sessionId": "default"}).json()
        assert participants["participants"][0]["is_admin"] is True

        resp = client.post(f"{API}/groups/{group.id}/messages", json={"sessionId": "default", "content": "Info kelas"})
        assert resp.status_code == 200
        assert gateway.sent[-1] == ("default", GROUP_JID, "Info kelas")

        messages = client.get(f"{API}/groups/{group.id}/messages", params={"sessionId": "default"}).json()["messages"]
        assert [m["content"] for m in messages] == ["Info kelas"]

    def test_category(self, client, session):
        group = self._group(session)
        resp = client.put(f"{API}/groups/{group.id}/category", params={"sessionId": "default"},
                          json={"category": "business"})
        assert resp.json()["group"]["category"] == "business"

        resp = client.put(f"{API}/groups/{group.id}/category", params={"sessionId": "default"},
                          json={"category": "spam"})
        assert resp.status_code == 400

        filtered = client.get(f"{API}/groups", params={"sessionId": "default", "category": "business"}).json()
        assert len(filtered["groups"]) == 1


# ---------------------------------------------------------------------------
# External links
# ---------------------------------------------------------------------------

class TestExternalLinks:

    def test_link_lifecycle(self, client, sample_contact):
        url = f"{API}/contacts/{sample_contact.id}/external-links"
        body = {"session_id": "default", "app_name": "student-portal", "external_id": "STU-42",
                "url": "https://portal.example.com/students/42"}
        resp = client.post(url, json=body)
        assert resp.status_code == 201
        link_id = resp.json()["link"]["id"]

        assert client.post(url, json=body).status_code == 409

        links = client.get(url, params={"sessionId": "default"}).json()["links"]
        assert [link["external_id"] for link in links] == ["STU-42"]

        assert client.delete(f"{API}/external-links/{link_id}").status_code == 200
        assert client.get(url, params={"sessionId": "default"}).json()["links"] == []

    def test_unknown_contact(self, client):
        resp = client.post(f"{API}/contacts/9999/external-links", json={
            "session_id": "default", "app_name": "billing", "external_id": "INV-1",
        })
        assert resp.status_code == 404
