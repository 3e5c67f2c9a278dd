"""
群组同步
群元数据与成员名单以网关为准：群内有消息时按需刷新 (带节流)，
成员按 (group_id, participant_jid) 对账，上游已不存在的成员从本地删除
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from sqlmodel import Session, select, func, col

from wacrm.core.config import settings
from wacrm.core.exceptions import GroupNotFoundException, InvalidInputException, TransportException
from wacrm.models.contact import Contact
from wacrm.models.group import WhatsAppGroup, GroupParticipant, GROUP_CATEGORIES
from wacrm.models.message import Message, DIRECTION_INCOMING, DIRECTION_OUTGOING
from wacrm.services.contact_service import ContactService, resolve_identity
from wacrm.services.message_service import MessageService, message_payload
from wacrm.services.phone import group_key, is_lid, to_group_jid

logger = logging.getLogger(__name__)


def group_payload(group: WhatsAppGroup) -> Dict[str, Any]:
    return {
        "id": group.id,
        "groupId": group.group_id,
        "subject": group.subject,
        "participantCount": group.participant_count,
        "category": group.category,
    }


class GroupService:
    def __init__(self, session: Session, runtime=None):
        self.session = session
        self.runtime = runtime
        self.contacts = ContactService(session)
        self.messages = MessageService(session, runtime)

    # ==================== 查找 ====================

    def get_group(self, session_id: str, group_ref: Union[int, str]) -> Optional[WhatsAppGroup]:
        """group_ref 可以是数据库 ID，也可以是群 JID (带或不带 @g.us)"""
        ref = str(group_ref)
        if ref.isdigit() and len(ref) < 12:
            group = self.session.get(WhatsAppGroup, int(ref))
            if group is not None and group.session_id == session_id:
                return group
        return self.session.exec(
            select(WhatsAppGroup).where(
                WhatsAppGroup.session_id == session_id,
                WhatsAppGroup.group_id == group_key(ref),
            )
        ).first()

    def require_group(self, session_id: str, group_ref: Union[int, str]) -> WhatsAppGroup:
        group = self.get_group(session_id, group_ref)
        if group is None:
            raise GroupNotFoundException(group_ref)
        return group

    # ==================== 元数据 ====================

    def upsert_group(self, session_id: str, metadata: Dict[str, Any]) -> WhatsAppGroup:
        key = group_key(metadata["id"])
        group = self.session.exec(
            select(WhatsAppGroup).where(WhatsAppGroup.session_id == session_id, WhatsAppGroup.group_id == key)
        ).first()
        now = datetime.utcnow()
        participants = metadata.get("participants")

        if group is None:
            group = WhatsAppGroup(
                session_id=session_id,
                group_id=key,
                owner_jid=metadata.get("owner"),
                is_broadcast=bool(metadata.get("isBroadcast", False)),
            )
            logger.info(f"Created group {key} '{metadata.get('subject')}' (session={session_id})")

        if "subject" in metadata:
            group.subject = metadata.get("subject")
        if "desc" in metadata:
            group.description = metadata.get("desc")
        if metadata.get("profilePicUrl"):
            group.profile_pic_url = metadata["profilePicUrl"]
        if metadata.get("owner") and not group.owner_jid:
            group.owner_jid = metadata["owner"]
        if participants is not None:
            group.participant_count = len(participants)
        group.last_interaction_at = now
        group.updated_at = now

        self.session.add(group)
        self.session.commit()
        self.session.refresh(group)
        return group

    def _link_contact(self, session_id: str, participant: Dict[str, Any], name: Optional[str]) -> Optional[Contact]:
        """成员 -> 联系人；id 为 @lid 时用 phoneNumber/jid 找真实号码"""
        jid = participant.get("id")
        alt = participant.get("phoneNumber") or participant.get("jid")
        if not alt and participant.get("lid") and not is_lid(jid):
            alt = participant.get("lid")
        identity = resolve_identity(jid, alt)
        if identity.phone:
            return self.contacts.get_or_create_contact(
                session_id, identity.phone, name=name, jid=identity.jid, lid=identity.lid
            )
        if identity.lid:
            return self.contacts.get_by_lid(session_id, identity.lid)
        return None

    def sync_participants(self, group: WhatsAppGroup, participants: List[Dict[str, Any]]) -> Dict[str, int]:
        """
        以上游名单为准对账本地成员

        Returns:
            {"synced": 新增, "updated": 更新, "removed": 删除, "total": 上游人数}
        """
        existing = {
            p.participant_jid: p
            for p in self.session.exec(select(GroupParticipant).where(GroupParticipant.group_id == group.id)).all()
        }
        seen = set()
        synced = updated = removed = 0
        now = datetime.utcnow()

        for participant in participants:
            jid = participant.get("id")
            if not jid or jid in seen:
                continue
            seen.add(jid)

            admin = participant.get("admin")
            is_superadmin = admin == "superadmin"
            is_admin = is_superadmin or admin == "admin" or bool(participant.get("isAdmin"))
            name = participant.get("name") or participant.get("notify")
            contact = self._link_contact(group.session_id, participant, name)
            if not name and contact is not None and contact.name and contact.name != contact.phone:
                name = contact.name
            contact_id = contact.id if contact is not None else None

            row = existing.get(jid)
            if row is None:
                self.session.add(GroupParticipant(
                    group_id=group.id,
                    participant_jid=jid,
                    participant_name=name,
                    is_admin=is_admin,
                    is_superadmin=is_superadmin,
                    contact_id=contact_id,
                ))
                synced += 1
                continue

            if (row.participant_name, row.is_admin, row.is_superadmin, row.contact_id) != (
                name or row.participant_name, is_admin, is_superadmin, contact_id or row.contact_id
            ):
                row.participant_name = name or row.participant_name
                row.is_admin = is_admin
                row.is_superadmin = is_superadmin
                row.contact_id = contact_id or row.contact_id
                row.updated_at = now
                self.session.add(row)
                updated += 1

        for jid, row in existing.items():
            if jid not in seen:
                self.session.delete(row)
                removed += 1

        group.participant_count = len(seen)
        group.updated_at = now
        self.session.add(group)
        self.session.commit()

        logger.info(
            f"Synced participants for group {group.group_id}: {synced} new, {updated} updated, {removed} removed"
        )
        return {"synced": synced, "updated": updated, "removed": removed, "total": len(seen)}

    def _is_stale(self, group: Optional[WhatsAppGroup]) -> bool:
        if group is None or group.metadata_synced_at is None:
            return True
        return datetime.utcnow() - group.metadata_synced_at > timedelta(seconds=settings.GROUP_REFRESH_INTERVAL)

    async def refresh_group(self, session_id: str, group_jid: str, force: bool = False) -> WhatsAppGroup:
        """
        从网关拉取权威元数据并同步成员
        网关失败时保留本地旧名单 (群不存在时建一条最小记录)
        """
        group = self.get_group(session_id, group_key(group_jid))
        if not force and not self._is_stale(group):
            return group

        try:
            metadata = await self.runtime.gateway.group_metadata(session_id, to_group_jid(group_jid))
        except TransportException as e:
            logger.warning(f"Group metadata refresh failed for {group_jid} (session={session_id}): {e.message}")
            if group is None:
                group = self.upsert_group(session_id, {"id": to_group_jid(group_jid)})
            return group

        group = self.upsert_group(session_id, metadata)
        self.sync_participants(group, metadata.get("participants") or [])
        group.metadata_synced_at = datetime.utcnow()
        self.session.add(group)
        self.session.commit()
        self.session.refresh(group)
        return group

    # ==================== 群消息 ====================

    async def process_group_message(self, session_id: str, raw: Dict[str, Any], origin: str = "notify") -> Optional[Message]:
        key = raw.get("key") or {}
        group_jid = key["remoteJid"]
        message_id = key["id"]

        if self.messages.message_exists(session_id, message_id):
            logger.debug(f"Group message {message_id} already stored (origin={origin})")
            return None

        group = await self.refresh_group(session_id, group_jid)

        from_me = bool(key.get("fromMe"))
        participant_jid = key.get("participant")
        participant_alt = key.get("participantAlt") or key.get("participantPn")
        participant_name = None if from_me else raw.get("pushName")
        contact = None
        if not from_me and participant_jid:
            contact = self.contacts.resolve_sender(session_id, participant_jid, participant_alt, participant_name)
            if contact is not None:
                participant_jid = contact.whatsapp_jid or participant_jid
                participant_name = participant_name or contact.name

        message = self.messages.insert_message(self.messages.build_message(
            session_id,
            raw,
            contact_id=contact.id if contact is not None else None,
            group_id=group.id,
            is_group_message=True,
            participant_jid=participant_jid,
            participant_name=participant_name or ("You" if from_me else "Someone"),
        ))
        if message is None:
            return None

        if group.last_interaction_at is None or message.timestamp > group.last_interaction_at:
            group.last_interaction_at = message.timestamp
            self.session.add(group)
            self.session.commit()
        self.messages.schedule_media(message)

        if origin == "notify":
            await self.messages.emit("chat.newGroupMessage", {
                "sessionId": session_id,
                "group": group_payload(group),
                "message": message_payload(message),
            })
        return message

    async def apply_participants_update(self, session_id: str, update: Dict[str, Any]) -> Optional[WhatsAppGroup]:
        """group-participants.update: add/remove/promote/demote 后以网关名单为准重新同步"""
        group_jid = update.get("id")
        if not group_jid:
            return None
        logger.info(f"Participants {update.get('action')} in group {group_jid}: {update.get('participants')}")
        group = await self.refresh_group(session_id, group_jid, force=True)
        await self.messages.emit("group.updated", {
            "sessionId": session_id,
            "group": group_payload(group),
            "action": update.get("action"),
        })
        return group

    async def apply_group_update(self, session_id: str, metadata: Dict[str, Any]) -> Optional[WhatsAppGroup]:
        """groups.upsert / groups.update: 只更新元数据字段"""
        if not metadata.get("id"):
            return None
        group = self.upsert_group(session_id, metadata)
        if metadata.get("participants"):
            self.sync_participants(group, metadata["participants"])
        await self.messages.emit("group.updated", {"sessionId": session_id, "group": group_payload(group)})
        return group

    async def send_group_message(self, session_id: str, group: WhatsAppGroup, content: str) -> Message:
        sent = await self.runtime.gateway.send_text(session_id, to_group_jid(group.group_id), content)
        now = datetime.utcnow()
        message = self.messages.insert_message(Message(
            session_id=session_id,
            group_id=group.id,
            message_id=sent["key"]["id"],
            remote_jid=to_group_jid(group.group_id),
            direction=DIRECTION_OUTGOING,
            content=content,
            status="sent",
            is_group_message=True,
            participant_name="You",
            timestamp=now,
        ))
        if message is None:
            message = self.messages.get_by_message_id(session_id, sent["key"]["id"])
        group.last_interaction_at = now
        self.session.add(group)
        self.session.commit()
        return message

    # ==================== 查询 ====================

    def list_groups(self, session_id: str, category: Optional[str] = None) -> List[Dict[str, Any]]:
        query = select(WhatsAppGroup).where(WhatsAppGroup.session_id == session_id)
        if category and category != "all":
            query = query.where(WhatsAppGroup.category == category)
        groups = self.session.exec(
            query.order_by(col(WhatsAppGroup.last_interaction_at).desc())
        ).all()

        result = []
        for group in groups:
            last = self.session.exec(
                select(Message)
                .where(Message.group_id == group.id, Message.is_deleted == False)  # noqa: E712
                .order_by(Message.timestamp.desc())
            ).first()
            incoming = self.session.exec(
                select(func.count(Message.id)).where(
                    Message.group_id == group.id, Message.direction == DIRECTION_INCOMING
                )
            ).one()
            item = group.model_dump()
            item["last_message"] = message_payload(last) if last else None
            item["unread_count"] = incoming
            result.append(item)
        return result

    def list_participants(self, group: WhatsAppGroup) -> List[GroupParticipant]:
        return self.session.exec(
            select(GroupParticipant)
            .where(GroupParticipant.group_id == group.id)
            .order_by(col(GroupParticipant.is_admin).desc(), col(GroupParticipant.participant_name))
        ).all()

    def get_group_details(self, session_id: str, group_ref: Union[int, str]) -> Dict[str, Any]:
        group = self.require_group(session_id, group_ref)
        detail = group.model_dump()
        detail["participants"] = [p.model_dump() for p in self.list_participants(group)]
        return detail

    def get_group_messages(self, session_id: str, group_ref: Union[int, str], limit: int = 100) -> List[Message]:
        group = self.require_group(session_id, group_ref)
        rows = self.session.exec(
            select(Message)
            .where(Message.group_id == group.id, Message.is_deleted == False)  # noqa: E712
            .order_by(Message.timestamp.desc())
            .limit(limit)
        ).all()
        return list(reversed(rows))

    def update_group_category(self, session_id: str, group_ref: Union[int, str], category: str) -> WhatsAppGroup:
        if category not in GROUP_CATEGORIES:
            raise InvalidInputException(
                f"Invalid category '{category}'", details={"allowed": list(GROUP_CATEGORIES)}
            )
        group = self.require_group(session_id, group_ref)
        group.category = category
        group.updated_at = datetime.utcnow()
        self.session.add(group)
        self.session.commit()
        self.session.refresh(group)
        return group
