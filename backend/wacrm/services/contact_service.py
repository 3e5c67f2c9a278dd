"""
联系人身份解析
把 WhatsApp JID (可能是 @lid 匿名别名) 映射到本地唯一联系人：
优先使用网关提供的真实号码 JID (remoteJidAlt / participantAlt)，
按 (session_id, 规范化号码) 查找，不存在再插入
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from wacrm.models.activity import Activity
from wacrm.models.contact import Contact, ContactTag, Note, SOURCE_MERGED, SOURCE_WHATSAPP
from wacrm.models.external_link import ExternalAppLink
from wacrm.models.group import GroupParticipant
from wacrm.models.message import Message
from wacrm.services.phone import (
    is_lid,
    is_user_jid,
    jid_user,
    normalize_phone,
    normalize_user_jid,
    phone_from_jid,
    to_user_jid,
)

logger = logging.getLogger(__name__)


@dataclass
class Identity:
    phone: Optional[str] = None  # 真实号码
    jid: Optional[str] = None  # xxx@s.whatsapp.net
    lid: Optional[str] = None  # xxx@lid

    @property
    def resolvable(self) -> bool:
        return bool(self.phone or self.lid)


def resolve_identity(remote_jid: Optional[str], alt_jid: Optional[str] = None) -> Identity:
    """从 remoteJid 与其备用 JID 中挑出带号码的那个"""
    identity = Identity()
    for jid in (remote_jid, alt_jid):
        if is_lid(jid) and not identity.lid:
            identity.lid = jid
        elif is_user_jid(jid) and not identity.jid:
            identity.jid = normalize_user_jid(jid)
            identity.phone = phone_from_jid(jid)
    return identity


def should_update_name(contact: Contact, name: Optional[str]) -> bool:
    """只有当前名字为空或仍是号码占位时才覆盖"""
    if not name or name == contact.name:
        return False
    return not contact.name or contact.name == contact.phone


class ContactService:
    """联系人查找/创建，调用方负责提供数据库会话"""

    def __init__(self, session: Session):
        self.session = session

    def get_by_phone(self, session_id: str, phone: str) -> Optional[Contact]:
        return self.session.exec(
            select(Contact).where(Contact.session_id == session_id, Contact.phone == phone)
        ).first()

    def get_by_lid(self, session_id: str, lid: str) -> Optional[Contact]:
        """同一 lid 有多行时优先返回已知真实号码的联系人"""
        contacts = self.session.exec(
            select(Contact)
            .where(Contact.session_id == session_id, Contact.whatsapp_lid == lid)
            .order_by(Contact.id)
        ).all()
        placeholder_key = jid_user(lid)
        for contact in contacts:
            if contact.phone != placeholder_key:
                return contact
        return contacts[0] if contacts else None

    def get_lid_placeholder(self, session_id: str, lid: str) -> Optional[Contact]:
        """只见过 lid 时创建的占位联系人 (phone 为 lid 用户部分)"""
        contact = self.get_by_phone(session_id, jid_user(lid))
        if contact is not None and contact.whatsapp_lid == lid:
            return contact
        return None

    def get_or_create_contact(
        self,
        session_id: str,
        phone: str,
        name: Optional[str] = None,
        jid: Optional[str] = None,
        lid: Optional[str] = None,
        source: str = SOURCE_WHATSAPP,
    ) -> Contact:
        """
        按规范化号码查找联系人，不存在则创建

        Args:
            phone: 号码 (任意格式，内部规范化；无法规范化时原样作为键，用于 lid 占位)
            name: 显示名 (pushName / 通讯录名)
            jid: 真实用户 JID
            lid: @lid 别名
        """
        key = normalize_phone(phone) or phone
        contact = self.get_by_phone(session_id, key)

        # 之前只见过 lid 的占位联系人：号码联系人不存在时原地升级，已存在时并入
        placeholder = self.get_lid_placeholder(session_id, lid) if lid and key != jid_user(lid) else None
        if placeholder is not None:
            if contact is None:
                logger.info(f"Upgrading lid contact {placeholder.id} to phone {key} (session={session_id})")
                if placeholder.name == placeholder.phone:
                    placeholder.name = key
                placeholder.phone = key
                contact = placeholder
            else:
                self.merge_placeholder(placeholder, contact)

        if contact is not None:
            return self._refresh(contact, name=name, jid=jid, lid=lid)

        contact = Contact(
            session_id=session_id,
            phone=key,
            name=name or key,
            push_name=name,
            whatsapp_jid=jid or (to_user_jid(key) if normalize_phone(key) and not lid else None),
            whatsapp_lid=lid,
            source=source,
        )
        self.session.add(contact)
        try:
            self.session.commit()
        except IntegrityError:
            # 并发插入同一号码，唯一约束兜底，读回胜出的那一行
            self.session.rollback()
            logger.debug(f"Contact {key} created concurrently in session {session_id}, re-reading")
            existing = self.get_by_phone(session_id, key)
            if existing is None:
                raise
            return self._refresh(existing, name=name, jid=jid, lid=lid)

        self.session.refresh(contact)
        logger.info(f"Created contact {contact.id} for {key} (session={session_id}, source={source})")
        return contact

    def merge_placeholder(self, placeholder: Contact, contact: Contact) -> None:
        """把 lid 占位联系人的消息、群成员、活动、备注、标签、外部关联转到 contact，然后删除占位"""
        for model in (Message, GroupParticipant, Activity, Note):
            for row in self.session.exec(select(model).where(model.contact_id == placeholder.id)).all():
                row.contact_id = contact.id
                self.session.add(row)

        existing_tags = set(self.session.exec(
            select(ContactTag.tag_id).where(ContactTag.contact_id == contact.id)
        ).all())
        for link in self.session.exec(select(ContactTag).where(ContactTag.contact_id == placeholder.id)).all():
            if link.tag_id not in existing_tags:
                self.session.add(ContactTag(contact_id=contact.id, tag_id=link.tag_id, created_at=link.created_at))
            self.session.delete(link)

        existing_links = set(self.session.exec(
            select(ExternalAppLink.app_name, ExternalAppLink.external_id)
            .where(ExternalAppLink.contact_id == contact.id)
        ).all())
        for link in self.session.exec(select(ExternalAppLink).where(ExternalAppLink.contact_id == placeholder.id)).all():
            if (link.app_name, link.external_id) in existing_links:
                self.session.delete(link)
            else:
                link.contact_id = contact.id
                self.session.add(link)

        if contact.lead_status_id is None:
            contact.lead_status_id = placeholder.lead_status_id
        if placeholder.last_interaction_at and (
            contact.last_interaction_at is None or placeholder.last_interaction_at > contact.last_interaction_at
        ):
            contact.last_interaction_at = placeholder.last_interaction_at
        if not contact.whatsapp_lid:
            contact.whatsapp_lid = placeholder.whatsapp_lid
        if should_update_name(contact, placeholder.name) and placeholder.name != placeholder.phone:
            contact.name = placeholder.name
        contact.updated_at = datetime.utcnow()
        self.session.add(contact)

        # 先刷出外键变更，再删除占位行
        self.session.flush()
        self.session.delete(placeholder)
        self.session.commit()
        self.session.refresh(contact)
        logger.info(f"Merged lid contact {placeholder.id} into contact {contact.id} (session={contact.session_id})")

    def _refresh(self, contact: Contact, name: Optional[str], jid: Optional[str], lid: Optional[str]) -> Contact:
        changed = False
        if should_update_name(contact, name):
            contact.name = name
            changed = True
        if name and contact.push_name != name:
            contact.push_name = name
            changed = True
        if jid and not contact.whatsapp_jid:
            contact.whatsapp_jid = jid
            changed = True
        if lid and not contact.whatsapp_lid:
            contact.whatsapp_lid = lid
            changed = True
        if changed or self.session.is_modified(contact):
            contact.updated_at = datetime.utcnow()
            self.session.add(contact)
            self.session.commit()
            self.session.refresh(contact)
        return contact

    def resolve_sender(
        self,
        session_id: str,
        remote_jid: Optional[str],
        alt_jid: Optional[str] = None,
        push_name: Optional[str] = None,
    ) -> Optional[Contact]:
        """入站消息发送者 -> 联系人；无法解析 (非用户 JID) 时返回 None"""
        identity = resolve_identity(remote_jid, alt_jid)
        if identity.phone:
            return self.get_or_create_contact(
                session_id, identity.phone, name=push_name, jid=identity.jid, lid=identity.lid
            )
        if identity.lid:
            # 只有 lid：先按 lid 找已知联系人，否则以 lid 用户部分作为占位键
            contact = self.get_by_lid(session_id, identity.lid)
            if contact is not None:
                return self._refresh(contact, name=push_name, jid=None, lid=None)
            return self.get_or_create_contact(
                session_id, jid_user(identity.lid), name=push_name, lid=identity.lid
            )
        return None

    def touch_interaction(self, contact: Contact, when: datetime) -> None:
        """更新最后互动时间，只前进不后退 (历史回填可能更旧)"""
        if contact.last_interaction_at is None or when > contact.last_interaction_at:
            contact.last_interaction_at = when
            self.session.add(contact)
            self.session.commit()

    def import_contacts(self, session_id: str, entries: Iterable, source: str) -> Dict[str, int]:
        """
        导入外部通讯录 (Google / Outlook)
        已存在的 WhatsApp 联系人标记为 merged，新号码以导入来源创建
        """
        stats = {"created": 0, "merged": 0, "updated": 0, "skipped": 0}
        for entry in entries:
            phone = normalize_phone(entry.phone)
            if not phone:
                stats["skipped"] += 1
                continue

            contact = self.get_by_phone(session_id, phone)
            if contact is None:
                contact = self.get_or_create_contact(session_id, phone, name=entry.name, source=source)
                contact.push_name = None
                contact.email = entry.email
                contact.external_contact_id = entry.external_contact_id
                self.session.add(contact)
                self.session.commit()
                stats["created"] += 1
                continue

            if contact.source not in (source, SOURCE_MERGED):
                contact.source = SOURCE_MERGED
                stats["merged"] += 1
            else:
                stats["updated"] += 1
            if should_update_name(contact, entry.name):
                contact.name = entry.name
            if entry.email and not contact.email:
                contact.email = entry.email
            if entry.external_contact_id:
                contact.external_contact_id = entry.external_contact_id
            contact.updated_at = datetime.utcnow()
            self.session.add(contact)
            self.session.commit()

        logger.info(f"Contact import from {source} for session {session_id}: {stats}")
        return stats
