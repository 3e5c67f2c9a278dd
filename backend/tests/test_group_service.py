"""
Tests for group metadata refresh and participant reconciliation.
"""
import asyncio

import pytest
from sqlmodel import select

from wacrm.core.exceptions import InvalidInputException
from wacrm.models.group import GroupParticipant, WhatsAppGroup
from wacrm.services.group_service import GroupService


GROUP_JID = "120363025246125888@g.us"


def _metadata(*participants, subject="Kelas Bahasa Inggris"):
    return {"id": GROUP_JID, "subject": subject, "participants": list(participants)}


def _participant_jids(session):
    session.expire_all()
    return sorted(p.participant_jid for p in session.exec(select(GroupParticipant)).all())


class TestSyncParticipants:

    def test_roster_follows_upstream(self, session, runtime, gateway):
        service = GroupService(session, runtime)
        gateway.groups[GROUP_JID] = _metadata(
            {"id": "6281111111111@s.whatsapp.net", "admin": "superadmin"},
            {"id": "6282222222222@s.whatsapp.net"},
            {"id": "6283333333333@s.whatsapp.net"},
        )
        asyncio.run(service.refresh_group("default", GROUP_JID, force=True))

        gateway.groups[GROUP_JID] = _metadata(
            {"id": "6281111111111@s.whatsapp.net", "admin": "superadmin"},
            {"id": "6283333333333@s.whatsapp.net", "admin": "admin"},
        )
        group = asyncio.run(service.refresh_group("default", GROUP_JID, force=True))

        assert _participant_jids(session) == ["6281111111111@s.whatsapp.net", "6283333333333@s.whatsapp.net"]
        assert group.participant_count == 2
        admins = {p.participant_jid: p.is_admin for p in service.list_participants(group)}
        assert admins["6283333333333@s.whatsapp.net"] is True

    def test_refresh_failure_keeps_roster(self, session, runtime, gateway):
        service = GroupService(session, runtime)
        gateway.groups[GROUP_JID] = _metadata({"id": "6281111111111@s.whatsapp.net"})
        asyncio.run(service.refresh_group("default", GROUP_JID, force=True))

        del gateway.groups[GROUP_JID]
        group = asyncio.run(service.refresh_group("default", GROUP_JID, force=True))

        assert group.subject == "Kelas Bahasa Inggris"
        assert _participant_jids(session) == ["6281111111111@s.whatsapp.net"]

    def test_lid_participant_linked_by_phone_number(self, session, runtime, gateway, sample_contact):
        gateway.groups[GROUP_JID] = _metadata(
            {"id": "987654321012345@lid", "phoneNumber": "6281234567890@s.whatsapp.net"},
        )
        group = asyncio.run(GroupService(session, runtime).refresh_group("default", GROUP_JID, force=True))
        participant = session.exec(select(GroupParticipant).where(GroupParticipant.group_id == group.id)).one()
        assert participant.contact_id == sample_contact.id
        assert participant.participant_name == "Budi"


class TestGroupMessages:

    def test_group_message_stored_with_participant(self, session, runtime, gateway, notifier):
        gateway.groups[GROUP_JID] = _metadata({"id": "6281234567890@s.whatsapp.net"})
        raw = {
            "key": {"remoteJid": GROUP_JID, "id": "G1", "fromMe": False,
                    "participant": "6281234567890@s.whatsapp.net"},
            "pushName": "Budi",
            "messageTimestamp": 1700000000,
            "message": {"conversation": "Selamat pagi"},
        }
        service = GroupService(session, runtime)
        message = asyncio.run(service.messages.process_message("default", raw))

        assert message.is_group_message is True
        assert message.participant_name == "Budi"
        assert message.contact_id is not None
        group = session.exec(select(WhatsAppGroup)).one()
        assert message.group_id == group.id
        assert notifier.events("chat.newGroupMessage")[0]["data"]["group"]["groupId"] == "120363025246125888"

    def test_category_validation(self, session, runtime, gateway):
        gateway.groups[GROUP_JID] = _metadata()
        service = GroupService(session, runtime)
        asyncio.run(service.refresh_group("default", GROUP_JID, force=True))

        assert service.update_group_category("default", GROUP_JID, "business").category == "business"
        with pytest.raises(InvalidInputException):
            service.update_group_category("default", GROUP_JID, "vip")
