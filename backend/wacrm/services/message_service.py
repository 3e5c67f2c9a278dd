"""
入站消息管道: 身份解析 -> 去重 -> 持久化 -> (媒体) 异步下载 -> 推送前端

同一条消息可能经 live notify 和 history append 两条路径到达，
以 (session_id, message_id) 唯一约束作为最终去重保障
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select, func, or_

from wacrm.core.exceptions import InvalidPhoneNumberException
from wacrm.models.contact import Contact
from wacrm.models.message import (
    Message,
    DIRECTION_INCOMING,
    DIRECTION_OUTGOING,
    STATUS_FAILED,
    STATUS_ORDER,
)
from wacrm.services.contact_service import ContactService
from wacrm.services.message_parser import (
    dump_raw,
    extract_content,
    get_media_mimetype,
    get_message_type,
    get_protocol_message,
    is_reaction,
    is_revoke,
    map_ack_status,
    parse_timestamp,
    unwrap_message,
)
from wacrm.services.phone import is_broadcast_jid, is_group_jid, normalize_phone, to_user_jid

logger = logging.getLogger(__name__)

ORIGIN_NOTIFY = "notify"
ORIGIN_APPEND = "append"


def message_payload(message: Message) -> Dict[str, Any]:
    """推送给前端的消息结构"""
    return {
        "id": message.id,
        "messageId": message.message_id,
        "direction": message.direction,
        "type": message.message_type,
        "content": message.content,
        "mediaUrl": message.media_url,
        "status": message.status,
        "timestamp": message.timestamp.isoformat() if message.timestamp else None,
        "participantJid": message.participant_jid,
        "participantName": message.participant_name,
    }


def contact_payload(contact: Contact) -> Dict[str, Any]:
    return {
        "id": contact.id,
        "phone": contact.phone,
        "name": contact.name,
        "source": contact.source,
    }


class MessageService:
    """
    消息持久化与查询

    runtime 提供 gateway / notifier / media，纯查询场景可以不传
    """

    def __init__(self, session: Session, runtime=None):
        self.session = session
        self.runtime = runtime
        self.contacts = ContactService(session)

    # ==================== 去重 ====================

    def message_exists(self, session_id: str, message_id: str) -> bool:
        return self.session.exec(
            select(Message.id).where(Message.session_id == session_id, Message.message_id == message_id)
        ).first() is not None

    def get_by_message_id(self, session_id: str, message_id: str) -> Optional[Message]:
        return self.session.exec(
            select(Message).where(Message.session_id == session_id, Message.message_id == message_id)
        ).first()

    def insert_message(self, message: Message) -> Optional[Message]:
        """插入消息；唯一约束冲突视为重复投递，返回 None"""
        self.session.add(message)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            logger.debug(f"Duplicate message {message.message_id} dropped by unique constraint")
            return None
        self.session.refresh(message)
        return message

    def build_message(self, session_id: str, raw: Dict[str, Any], **fields) -> Message:
        key = raw.get("key") or {}
        content = raw.get("message")
        message_type = get_message_type(content)
        from_me = bool(key.get("fromMe"))
        return Message(
            session_id=session_id,
            message_id=key["id"],
            remote_jid=key.get("remoteJid"),
            direction=DIRECTION_OUTGOING if from_me else DIRECTION_INCOMING,
            message_type=message_type,
            content=extract_content(content),
            media_mimetype=get_media_mimetype(content),
            status="sent" if from_me else "delivered",
            timestamp=parse_timestamp(raw.get("messageTimestamp")),
            raw_message=dump_raw(raw),
            **fields,
        )

    # ==================== 入站管道 ====================

    async def process_message(self, session_id: str, raw: Dict[str, Any], origin: str = ORIGIN_NOTIFY) -> Optional[Message]:
        """
        处理一条 messages.upsert 消息

        Returns:
            新存入的 Message；被跳过 / 重复 / 无法解析时返回 None
        """
        key = raw.get("key") or {}
        remote_jid = key.get("remoteJid")
        message_id = key.get("id")
        if not remote_jid or not message_id:
            logger.debug(f"Skipping message without key in session {session_id}")
            return None
        if is_broadcast_jid(remote_jid):
            return None

        content = unwrap_message(raw.get("message"))
        if not content:
            # 系统通知 / 解密失败的占位消息
            return None

        protocol = get_protocol_message(content)
        if protocol is not None:
            if is_revoke(protocol):
                await self.handle_revoke(session_id, protocol.get("key") or {}, fallback_jid=remote_jid)
            return None
        if is_reaction(content):
            return None

        if is_group_jid(remote_jid):
            from wacrm.services.group_service import GroupService
            return await GroupService(self.session, self.runtime).process_group_message(session_id, raw, origin)

        if self.message_exists(session_id, message_id):
            logger.debug(f"Message {message_id} already stored (session={session_id}, origin={origin})")
            return None

        from_me = bool(key.get("fromMe"))
        contact = self.contacts.resolve_sender(
            session_id,
            remote_jid,
            key.get("remoteJidAlt") or key.get("senderPn"),
            None if from_me else raw.get("pushName"),
        )
        if contact is None:
            logger.warning(f"Could not resolve sender {remote_jid} for message {message_id}")
            return None

        message = self.insert_message(self.build_message(session_id, raw, contact_id=contact.id))
        if message is None:
            return None

        self.contacts.touch_interaction(contact, message.timestamp)
        self.schedule_media(message)

        if origin == ORIGIN_NOTIFY:
            await self.emit("chat.newMessage", {
                "sessionId": session_id,
                "message": message_payload(message),
                "contact": contact_payload(contact),
            })
        logger.debug(f"Stored {message.direction} message {message_id} for contact {contact.id} ({origin})")
        return message

    async def process_history(self, session_id: str, messages: List[Dict[str, Any]], origin: str = ORIGIN_APPEND) -> int:
        """批量回填，单条失败只记日志；结束后发一次 chat.historySync 汇总"""
        stored = 0
        for raw in messages:
            try:
                if await self.process_message(session_id, raw, origin) is not None:
                    stored += 1
            except Exception as e:
                self.session.rollback()
                logger.error(f"Error processing history message in session {session_id}: {e}", exc_info=True)
        if stored:
            await self.emit("chat.historySync", {"sessionId": session_id, "stored": stored, "received": len(messages)})
        return stored

    async def handle_revoke(self, session_id: str, target_key: Dict[str, Any], fallback_jid: Optional[str] = None) -> Optional[Message]:
        """远端撤回: 软删除 (is_deleted)，从不物理删除"""
        target_id = target_key.get("id")
        if not target_id:
            return None
        message = self.get_by_message_id(session_id, target_id)
        if message is None:
            logger.debug(f"Revoke for unknown message {target_id} in session {session_id}")
            return None
        if not message.is_deleted:
            message.is_deleted = True
            self.session.add(message)
            self.session.commit()
            logger.info(f"Message {target_id} revoked (session={session_id})")
        await self.emit("chat.messageDeleted", {
            "sessionId": session_id,
            "messageId": target_id,
            "remoteJid": target_key.get("remoteJid") or fallback_jid,
            "contactId": message.contact_id,
            "groupId": message.group_id,
        })
        return message

    # ==================== 状态更新 ====================

    async def update_message_status(self, session_id: str, message_id: str, status: str) -> Optional[Message]:
        """投递回执；状态只前进 (read 不会被 delivered 覆盖)"""
        message = self.get_by_message_id(session_id, message_id)
        if message is None:
            return None
        if status == STATUS_FAILED:
            if message.status in ("delivered", "read", STATUS_FAILED):
                return message
        elif STATUS_ORDER.get(status, -1) <= STATUS_ORDER.get(message.status, -1):
            return message

        message.status = status
        self.session.add(message)
        self.session.commit()
        await self.emit("chat.messageStatus", {
            "sessionId": session_id,
            "messageId": message_id,
            "status": status,
        })
        return message

    async def apply_update(self, session_id: str, update: Dict[str, Any]) -> None:
        """messages.update 单条: 回执状态或撤回 stub"""
        key = update.get("key") or {}
        changes = update.get("update") or {}
        message_id = key.get("id")
        if not message_id:
            return
        if changes.get("messageStubType") in (1, "REVOKE"):
            await self.handle_revoke(session_id, key)
            return
        if "status" in changes:
            status = map_ack_status(changes["status"])
            if status:
                await self.update_message_status(session_id, message_id, status)

    # ==================== 发送 ====================

    def record_outgoing(self, session_id: str, contact: Contact, message_id: str, content: str,
                        status: str = "sent", message_type: str = "text") -> Optional[Message]:
        now = datetime.utcnow()
        message = self.insert_message(Message(
            session_id=session_id,
            contact_id=contact.id,
            message_id=message_id,
            remote_jid=contact.whatsapp_jid,
            direction=DIRECTION_OUTGOING,
            message_type=message_type,
            content=content,
            status=status,
            timestamp=now,
        ))
        self.contacts.touch_interaction(contact, now)
        return message

    async def send_message(self, session_id: str, phone: str, content: str) -> Message:
        """发送文本给联系人并入库 (outgoing / sent)"""
        normalized = normalize_phone(phone)
        if not normalized:
            raise InvalidPhoneNumberException(phone)

        contact = self.contacts.get_or_create_contact(session_id, normalized)
        jid = contact.whatsapp_jid or to_user_jid(normalized)
        sent = await self.runtime.gateway.send_text(session_id, jid, content)
        message_id = sent["key"]["id"]

        message = self.record_outgoing(session_id, contact, message_id, content)
        if message is None:
            # 网关已先把自己发出的消息回调进来
            message = self.get_by_message_id(session_id, message_id)
        logger.info(f"Sent message {message_id} to {normalized} (session={session_id})")
        await self.emit("chat.newMessage", {
            "sessionId": session_id,
            "message": message_payload(message),
            "contact": contact_payload(contact),
        })
        return message

    async def request_history(self, session_id: str, contact: Contact, count: int = 50) -> Dict[str, Any]:
        """向网关请求更早的历史，结果以 append 回调"""
        oldest = self.session.exec(
            select(Message)
            .where(Message.session_id == session_id, Message.contact_id == contact.id)
            .order_by(Message.timestamp.asc())
        ).first()
        jid = contact.whatsapp_jid or contact.whatsapp_lid or to_user_jid(contact.phone)
        oldest_key = None
        oldest_ts = None
        if oldest is not None:
            oldest_key = {"remoteJid": jid, "id": oldest.message_id, "fromMe": oldest.direction == DIRECTION_OUTGOING}
            oldest_ts = int((oldest.timestamp - datetime(1970, 1, 1)).total_seconds())
        return await self.runtime.gateway.fetch_history(session_id, jid, count, oldest_key, oldest_ts)

    # ==================== 查询 ====================

    def get_contact_history(self, session_id: str, contact_id: int, limit: int = 100) -> List[Message]:
        """联系人会话记录，排除已撤回，按时间正序 (取最近 limit 条)"""
        rows = self.session.exec(
            select(Message)
            .where(
                Message.session_id == session_id,
                Message.contact_id == contact_id,
                Message.is_deleted == False,  # noqa: E712
            )
            .order_by(Message.timestamp.desc())
            .limit(limit)
        ).all()
        return list(reversed(rows))

    def list_conversations(self, session_id: str, search: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        """有消息往来的联系人，按最近互动排序，附最后一条消息"""
        query = select(Contact).where(
            Contact.session_id == session_id,
            Contact.last_interaction_at.is_not(None),
        )
        if search:
            pattern = f"%{search}%"
            query = query.where(or_(Contact.name.ilike(pattern), Contact.phone.ilike(pattern)))
        contacts = self.session.exec(query.order_by(Contact.last_interaction_at.desc()).limit(limit)).all()

        conversations = []
        for contact in contacts:
            last = self.session.exec(
                select(Message)
                .where(Message.contact_id == contact.id, Message.is_deleted == False)  # noqa: E712
                .order_by(Message.timestamp.desc())
            ).first()
            count = self.session.exec(
                select(func.count(Message.id)).where(Message.contact_id == contact.id)
            ).one()
            conversations.append({
                "contact": contact_payload(contact),
                "lastMessage": message_payload(last) if last else None,
                "messageCount": count,
            })
        return conversations

    # ==================== 内部 ====================

    def schedule_media(self, message: Message) -> None:
        if message.has_media and self.runtime is not None:
            self.runtime.media.schedule(message.session_id, message.id)

    async def emit(self, event: str, data: Dict[str, Any]) -> None:
        if self.runtime is not None:
            await self.runtime.notifier.emit(event, data)
