"""
Tests for the inbound message pipeline: de-duplication, revokes,
delivery receipts and media materialization.
"""
import asyncio
import json

from sqlmodel import select

from wacrm.core.exceptions import TransportException
from wacrm.models.contact import Contact
from wacrm.models.message import Message
from wacrm.services.message_parser import extract_content, get_message_type, map_ack_status, parse_timestamp
from wacrm.services.message_service import MessageService, ORIGIN_APPEND, ORIGIN_NOTIFY


JID = "6281234567890@s.whatsapp.net"


def _text_message(message_id="MSG1", text="Halo, info kursus?", from_me=False, jid=JID, **key_extra):
    key = {"remoteJid": jid, "id": message_id, "fromMe": from_me}
    key.update(key_extra)
    return {
        "key": key,
        "pushName": "Budi",
        "messageTimestamp": 1700000000,
        "message": {"conversation": text},
    }


def _messages(session):
    session.expire_all()
    return session.exec(select(Message)).all()


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

class TestMessageParser:

    def test_caption_and_placeholders(self):
        assert extract_content({"imageMessage": {"caption": "brosur"}}) == "brosur"
        assert extract_content({"imageMessage": {}}) == "[Image]"
        assert extract_content({"documentMessage": {"fileName": "jadwal.pdf"}}) == "jadwal.pdf"

    def test_unwraps_ephemeral(self):
        wrapped = {"ephemeralMessage": {"message": {"extendedTextMessage": {"text": "hi"}}}}
        assert extract_content(wrapped) == "hi"
        assert get_message_type({"viewOnceMessage": {"message": {"videoMessage": {}}}}) == "video"

    def test_empty_media_payload_keeps_its_type(self):
        assert get_message_type({"audioMessage": {}}) == "audio"
        assert get_message_type({"documentMessage": {}}) == "document"
        assert extract_content({"stickerMessage": {}}) == "[Sticker]"
        assert get_message_type({"conversation": "halo"}) == "text"

    def test_ack_mapping(self):
        assert map_ack_status(3) == "delivered"
        assert map_ack_status("READ") == "read"
        assert map_ack_status(99) is None

    def test_long_timestamp(self):
        assert parse_timestamp({"low": 1700000000, "high": 0}) == parse_timestamp(1700000000)


# ---------------------------------------------------------------------------
# process_message
# ---------------------------------------------------------------------------

class TestProcessMessage:

    def test_notify_stores_and_emits(self, session, runtime, notifier):
        stored = asyncio.run(MessageService(session, runtime).process_message("default", _text_message()))

        assert stored is not None
        assert stored.direction == "incoming"
        assert stored.content == "Halo, info kursus?"
        contact = session.get(Contact, stored.contact_id)
        assert contact.phone == "6281234567890"
        assert contact.name == "Budi"
        assert contact.last_interaction_at == stored.timestamp

        frames = notifier.events("chat.newMessage")
        assert len(frames) == 1
        assert frames[0]["data"]["message"]["messageId"] == "MSG1"

    def test_live_and_history_paths_store_once(self, session, runtime):
        service = MessageService(session, runtime)

        async def scenario():
            await service.process_message("default", _text_message(), ORIGIN_NOTIFY)
            return await service.process_message("default", _text_message(), ORIGIN_APPEND)

        assert asyncio.run(scenario()) is None
        assert len(_messages(session)) == 1

    def test_history_does_not_emit_new_message(self, session, runtime, notifier):
        stored = asyncio.run(MessageService(session, runtime).process_history("default", [
            _text_message("H1", "satu"),
            _text_message("H2", "dua"),
            _text_message("H1", "satu"),
        ]))
        assert stored == 2
        assert notifier.events("chat.newMessage") == []
        assert notifier.events("chat.historySync")[0]["data"] == {"sessionId": "default", "stored": 2, "received": 3}

    def test_lid_sender_with_alt_attaches_to_phone_contact(self, session, runtime, sample_contact):
        raw = _text_message(jid="987654321012345@lid", remoteJidAlt=JID)
        stored = asyncio.run(MessageService(session, runtime).process_message("default", raw))
        assert stored.contact_id == sample_contact.id
        assert len(session.exec(select(Contact)).all()) == 1

    def test_lid_placeholder_folds_into_known_contact(self, session, runtime, sample_contact):
        lid = "99887766554433@lid"
        service = MessageService(session, runtime)

        async def scenario():
            await service.process_message("default", _text_message("M1", jid=lid))
            await service.process_message("default", _text_message("M2", jid=lid, remoteJidAlt=JID))

        asyncio.run(scenario())
        contacts = session.exec(select(Contact)).all()
        assert [(c.id, c.whatsapp_lid) for c in contacts] == [(sample_contact.id, lid)]
        assert {m.message_id: m.contact_id for m in _messages(session)} == {
            "M1": sample_contact.id,
            "M2": sample_contact.id,
        }

    def test_unique_constraint_drops_duplicate_when_precheck_misses(self, session, runtime, monkeypatch):
        service = MessageService(session, runtime)
        monkeypatch.setattr(service, "message_exists", lambda session_id, message_id: False)

        async def scenario():
            first = await service.process_message("default", _text_message())
            second = await service.process_message("default", _text_message(), ORIGIN_APPEND)
            return first, second

        first, second = asyncio.run(scenario())
        assert first is not None
        assert second is None
        assert len(_messages(session)) == 1

    def test_insert_message_conflict_returns_none(self, session, runtime, sample_contact):
        service = MessageService(session, runtime)
        assert service.insert_message(Message(session_id="default", message_id="DUP1", contact_id=sample_contact.id))
        assert service.insert_message(Message(session_id="default", message_id="DUP1", contact_id=sample_contact.id)) is None
        # 会话在回滚后仍可用
        assert service.insert_message(Message(session_id="default", message_id="DUP2", contact_id=sample_contact.id))
        assert sorted(m.message_id for m in _messages(session)) == ["DUP1", "DUP2"]

    def test_skips_status_broadcast_and_reactions(self, session, runtime):
        service = MessageService(session, runtime)
        reaction = _text_message("R1")
        reaction["message"] = {"reactionMessage": {"text": "👍"}}

        async def scenario():
            a = await service.process_message("default", _text_message("S1", jid="status@broadcast"))
            b = await service.process_message("default", reaction)
            return a, b

        assert asyncio.run(scenario()) == (None, None)
        assert _messages(session) == []

    def test_revoke_soft_deletes(self, session, runtime, notifier):
        service = MessageService(session, runtime)
        revoke = {
            "key": {"remoteJid": JID, "id": "REV1", "fromMe": False},
            "message": {"protocolMessage": {"type": 0, "key": {"remoteJid": JID, "id": "MSG1"}}},
        }

        async def scenario():
            await service.process_message("default", _text_message())
            await service.process_message("default", revoke)

        asyncio.run(scenario())
        rows = _messages(session)
        assert len(rows) == 1
        assert rows[0].is_deleted is True
        assert notifier.events("chat.messageDeleted")[0]["data"]["messageId"] == "MSG1"
        assert service.get_contact_history("default", rows[0].contact_id) == []


# ---------------------------------------------------------------------------
# Delivery receipts
# ---------------------------------------------------------------------------

class TestMessageStatus:

    def test_status_never_regresses(self, session, runtime):
        service = MessageService(session, runtime)

        async def scenario():
            await service.process_message("default", _text_message("OUT1", from_me=True))
            await service.apply_update("default", {"key": {"id": "OUT1"}, "update": {"status": 4}})
            await service.apply_update("default", {"key": {"id": "OUT1"}, "update": {"status": 3}})
            await service.apply_update("default", {"key": {"id": "OUT1"}, "update": {"status": 0}})
            return service.get_by_message_id("default", "OUT1")

        assert asyncio.run(scenario()).status == "read"

    def test_failed_applies_before_delivery(self, session, runtime):
        service = MessageService(session, runtime)

        async def scenario():
            await service.process_message("default", _text_message("OUT2", from_me=True))
            await service.update_message_status("default", "OUT2", "failed")
            return service.get_by_message_id("default", "OUT2")

        assert asyncio.run(scenario()).status == "failed"

    def test_repeated_failure_emits_once(self, session, runtime, notifier):
        service = MessageService(session, runtime)

        async def scenario():
            await service.process_message("default", _text_message("OUT3", from_me=True))
            await service.update_message_status("default", "OUT3", "failed")
            await service.update_message_status("default", "OUT3", "failed")

        asyncio.run(scenario())
        frames = notifier.events("chat.messageStatus")
        assert [f["data"]["status"] for f in frames] == ["failed"]

    def test_stub_revoke_update(self, session, runtime):
        service = MessageService(session, runtime)

        async def scenario():
            await service.process_message("default", _text_message())
            await service.apply_update("default", {"key": {"id": "MSG1", "remoteJid": JID}, "update": {"messageStubType": 1}})
            return service.get_by_message_id("default", "MSG1")

        assert asyncio.run(scenario()).is_deleted is True


# ---------------------------------------------------------------------------
# Sending
# ---------------------------------------------------------------------------

class TestSendMessage:

    def test_send_records_outgoing(self, session, runtime, gateway):
        message = asyncio.run(MessageService(session, runtime).send_message("default", "+62 812 3456 7890", "Halo"))
        assert gateway.sent == [("default", JID, "Halo")]
        assert message.direction == "outgoing"
        assert message.status == "sent"
        assert message.message_id == "OUT0001"

    def test_request_history_anchors_on_oldest(self, session, runtime, gateway, sample_contact):
        service = MessageService(session, runtime)

        async def scenario():
            await service.process_message("default", _text_message("OLD", "lama"))
            await service.request_history("default", sample_contact, count=20)

        asyncio.run(scenario())
        session_id, jid, count, oldest_key, oldest_ts = gateway.history_requests[0]
        assert (jid, count) == (JID, 20)
        assert oldest_key["id"] == "OLD"
        assert oldest_ts == 1700000000


# ---------------------------------------------------------------------------
# Media
# ---------------------------------------------------------------------------

class TestMedia:

    def test_image_materialized_to_disk(self, session, runtime):
        raw = _text_message("IMG1")
        raw["message"] = {"imageMessage": {"mimetype": "image/jpeg", "caption": "brosur"}}

        async def scenario():
            stored = await MessageService(session, runtime).process_message("default", raw)
            await runtime.media.drain()
            return stored.id

        pk = asyncio.run(scenario())
        session.expire_all()
        message = session.get(Message, pk)
        assert message.media_url == "IMG1.jpg"
        path = runtime.media.get_media_path(message)
        assert path.read_bytes() == b"\x89PNG fake media"

    def test_pending_sweep_lists_unsaved_media(self, session, runtime):
        session.add(Message(session_id="default", message_id="IMG2", message_type="image"))
        session.add(Message(session_id="default", message_id="TXT2", message_type="text"))
        session.commit()
        pending = runtime.media.pending_message_ids(session)
        assert [row[1] for row in pending] == ["default"]

    def test_empty_video_payload_is_materialized(self, session, runtime):
        raw = _text_message("VID1")
        raw["message"] = {"videoMessage": {}}

        async def scenario():
            stored = await MessageService(session, runtime).process_message("default", raw)
            await runtime.media.drain()
            return stored.id

        pk = asyncio.run(scenario())
        session.expire_all()
        message = session.get(Message, pk)
        assert message.message_type == "video"
        assert message.content == "[Video]"
        assert message.media_url == "VID1.png"

    def test_failed_downloads_leave_the_sweep(self, session, runtime, gateway):
        async def expired(session_id, raw_message):
            raise TransportException("media expired")

        gateway.download_media = expired
        message = Message(
            session_id="default",
            message_id="IMG3",
            message_type="image",
            raw_message=json.dumps(_text_message("IMG3")),
        )
        session.add(message)
        session.commit()
        pk = message.id

        async def attempt(times):
            for _ in range(times):
                assert await runtime.media.materialize("default", pk) is None

        asyncio.run(attempt(2))
        session.expire_all()
        assert session.get(Message, pk).media_attempts == 2
        assert runtime.media.pending_message_ids(session, max_attempts=3) == [(pk, "default")]
        assert runtime.media.pending_message_ids(session, max_attempts=2) == []

    def test_message_without_raw_payload_is_not_retried(self, session, runtime):
        message = Message(session_id="default", message_id="IMG4", message_type="image")
        session.add(message)
        session.commit()
        pk = message.id

        assert asyncio.run(runtime.media.materialize("default", pk)) is None
        assert runtime.media.pending_message_ids(session) == []
