"""
Tests for wacrm.services.contact_service: identity resolution and
contact de-duplication.
"""
from datetime import datetime, timedelta

from sqlmodel import select

from wacrm.models.contact import Contact, ContactImportEntry, ContactTag, Note, Tag, SOURCE_GOOGLE, SOURCE_MERGED
from wacrm.models.message import Message
from wacrm.services.contact_service import ContactService, resolve_identity


PHONE = "6281234567890"
USER_JID = f"{PHONE}@s.whatsapp.net"
LID = "987654321012345@lid"


def _contacts(session, session_id="default"):
    return session.exec(select(Contact).where(Contact.session_id == session_id)).all()


# ---------------------------------------------------------------------------
# resolve_identity
# ---------------------------------------------------------------------------

class TestResolveIdentity:

    def test_user_jid(self):
        identity = resolve_identity(USER_JID)
        assert identity.phone == PHONE
        assert identity.jid == USER_JID
        assert identity.lid is None

    def test_lid_with_alt_prefers_real_number(self):
        identity = resolve_identity(LID, USER_JID)
        assert identity.phone == PHONE
        assert identity.lid == LID

    def test_lid_only_has_no_phone(self):
        identity = resolve_identity(LID)
        assert identity.phone is None
        assert identity.resolvable

    def test_group_jid_is_not_resolvable(self):
        assert not resolve_identity("120363025246125888@g.us").resolvable


# ---------------------------------------------------------------------------
# get_or_create / resolve_sender
# ---------------------------------------------------------------------------

class TestResolveSender:

    def test_creates_contact_once_per_phone(self, session):
        service = ContactService(session)
        first = service.resolve_sender("default", USER_JID, push_name="Budi")
        second = service.resolve_sender("default", f"{PHONE}:7@s.whatsapp.net")
        assert first.id == second.id
        assert len(_contacts(session)) == 1
        assert first.name == "Budi"

    def test_lid_with_remote_jid_alt_uses_real_phone(self, session):
        contact = ContactService(session).resolve_sender("default", LID, USER_JID, "Siti")
        assert contact.phone == PHONE
        assert contact.whatsapp_lid == LID
        assert contact.whatsapp_jid == USER_JID

    def test_lid_placeholder_upgraded_when_phone_learned(self, session):
        service = ContactService(session)
        placeholder = service.resolve_sender("default", LID, push_name="Siti")
        assert placeholder.phone == "987654321012345"

        upgraded = service.resolve_sender("default", LID, USER_JID)
        assert upgraded.id == placeholder.id
        assert upgraded.phone == PHONE
        assert len(_contacts(session)) == 1

    def test_lid_placeholder_merged_into_existing_phone_contact(self, session, sample_contact):
        service = ContactService(session)
        placeholder = service.resolve_sender("default", LID, push_name="Budi")
        placeholder_id = placeholder.id
        assert placeholder_id != sample_contact.id

        tag = Tag(session_id="default", name="Prospek")
        session.add(tag)
        session.commit()
        session.add(Message(session_id="default", message_id="LID1", contact_id=placeholder_id))
        session.add(Note(session_id="default", contact_id=placeholder_id, content="tanya jadwal"))
        session.add(ContactTag(contact_id=placeholder_id, tag_id=tag.id))
        session.commit()

        merged = service.resolve_sender("default", LID, USER_JID)

        assert merged.id == sample_contact.id
        assert merged.whatsapp_lid == LID
        assert [c.id for c in _contacts(session)] == [sample_contact.id]
        session.expire_all()
        assert session.exec(select(Message)).one().contact_id == sample_contact.id
        assert session.exec(select(Note)).one().contact_id == sample_contact.id
        assert session.exec(select(ContactTag)).one().contact_id == sample_contact.id
        # 之后只带 lid 的消息也落到同一个联系人
        assert service.resolve_sender("default", LID).id == sample_contact.id

    def test_concurrent_insert_returns_winning_row(self, session, sample_contact, monkeypatch):
        service = ContactService(session)
        real_get_by_phone = service.get_by_phone
        calls = []

        def stale_first_lookup(session_id, phone):
            calls.append(phone)
            if len(calls) == 1:
                return None
            return real_get_by_phone(session_id, phone)

        monkeypatch.setattr(service, "get_by_phone", stale_first_lookup)
        contact = service.get_or_create_contact("default", PHONE, name="Budi")

        assert contact.id == sample_contact.id
        assert len(calls) == 2
        assert len(_contacts(session)) == 1

    def test_same_phone_in_other_session_is_separate(self, session):
        service = ContactService(session)
        a = service.resolve_sender("default", USER_JID)
        b = service.resolve_sender("sales", USER_JID)
        assert a.id != b.id

    def test_name_not_overwritten_once_set(self, session):
        service = ContactService(session)
        contact = service.get_or_create_contact("default", PHONE, name="Pak Budi")
        service.resolve_sender("default", USER_JID, push_name="budi123")
        session.refresh(contact)
        assert contact.name == "Pak Budi"
        assert contact.push_name == "budi123"

    def test_touch_interaction_only_moves_forward(self, session):
        service = ContactService(session)
        contact = service.get_or_create_contact("default", PHONE)
        now = datetime.utcnow()
        service.touch_interaction(contact, now)
        service.touch_interaction(contact, now - timedelta(days=3))
        assert contact.last_interaction_at == now


# ---------------------------------------------------------------------------
# import_contacts
# ---------------------------------------------------------------------------

class TestImportContacts:

    def test_merges_existing_whatsapp_contact(self, session, sample_contact):
        stats = ContactService(session).import_contacts("default", [
            ContactImportEntry(phone="+62 812-3456-7890", name="Budi Santoso", email="budi@example.com"),
            ContactImportEntry(phone="6289900011122", name="Ani"),
            ContactImportEntry(phone="12"),
        ], SOURCE_GOOGLE)

        assert stats == {"created": 1, "merged": 1, "updated": 0, "skipped": 1}
        session.refresh(sample_contact)
        assert sample_contact.source == SOURCE_MERGED
        assert sample_contact.email == "budi@example.com"
        # 已有真实名字不被覆盖
        assert sample_contact.name == "Budi"

        created = ContactService(session).get_by_phone("default", "6289900011122")
        assert created.source == SOURCE_GOOGLE
