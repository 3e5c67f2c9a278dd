"""
网关回调事件分发
网关把 Baileys 的 sock.ev 事件原样 POST 到 webhook: {"event": "...", "data": {...}}
单条消息处理失败只记录日志，不影响同批次其余消息
"""
import logging
from typing import Any, Dict, List

from sqlmodel import Session

from wacrm.services.group_service import GroupService
from wacrm.services.message_service import MessageService, ORIGIN_APPEND, ORIGIN_NOTIFY

logger = logging.getLogger(__name__)


def _as_list(value: Any) -> List[Dict[str, Any]]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


class EventDispatcher:

    def __init__(self, runtime):
        self.runtime = runtime
        self.handlers = {
            "connection.update": self.on_connection_update,
            "creds.update": self.on_creds_update,
            "messages.upsert": self.on_messages_upsert,
            "messages.update": self.on_messages_update,
            "messaging-history.set": self.on_history_set,
            "groups.upsert": self.on_groups_update,
            "groups.update": self.on_groups_update,
            "group-participants.update": self.on_participants_update,
        }

    async def dispatch(self, session_id: str, event: str, data: Any) -> bool:
        """返回事件是否被识别"""
        handler = self.handlers.get(event)
        if handler is None:
            logger.debug(f"Ignoring gateway event {event} for session {session_id}")
            return False
        if data is not None and not isinstance(data, (dict, list)):
            logger.warning(f"Dropping {event} for session {session_id}: unexpected payload type {type(data).__name__}")
            return True
        await handler(session_id, data or {})
        return True

    def _open_session(self) -> Session:
        return self.runtime.session_factory()

    # ==================== 连接 ====================

    async def on_connection_update(self, session_id: str, data: Dict[str, Any]) -> None:
        try:
            await self.runtime.sessions.handle_connection_update(session_id, data)
        except Exception as e:
            logger.error(f"Error handling connection update in session {session_id}: {e}", exc_info=True)

    async def on_creds_update(self, session_id: str, data: Dict[str, Any]) -> None:
        try:
            self.runtime.sessions.schedule_backup(session_id)
        except Exception as e:
            logger.error(f"Error scheduling credentials backup for session {session_id}: {e}", exc_info=True)

    # ==================== 消息 ====================

    async def on_messages_upsert(self, session_id: str, data: Dict[str, Any]) -> None:
        upsert_type = data.get("type")
        origin = ORIGIN_NOTIFY if upsert_type == ORIGIN_NOTIFY else ORIGIN_APPEND
        with self._open_session() as db:
            service = MessageService(db, self.runtime)
            for raw in _as_list(data.get("messages")):
                try:
                    await service.process_message(session_id, raw, origin)
                except Exception as e:
                    db.rollback()
                    key = raw.get("key") if isinstance(raw, dict) else None
                    message_id = key.get("id") if isinstance(key, dict) else None
                    logger.error(f"Error handling message {message_id} in session {session_id}: {e}", exc_info=True)

    async def on_messages_update(self, session_id: str, data: Any) -> None:
        updates = data.get("updates") if isinstance(data, dict) and "updates" in data else data
        with self._open_session() as db:
            service = MessageService(db, self.runtime)
            for update in _as_list(updates):
                try:
                    await service.apply_update(session_id, update)
                except Exception as e:
                    db.rollback()
                    logger.error(f"Error applying message update in session {session_id}: {e}", exc_info=True)

    async def on_history_set(self, session_id: str, data: Dict[str, Any]) -> None:
        messages = _as_list(data.get("messages"))
        logger.info(f"History sync for session {session_id}: {len(messages)} messages")
        with self._open_session() as db:
            await MessageService(db, self.runtime).process_history(session_id, messages, ORIGIN_APPEND)

    # ==================== 群组 ====================

    async def on_groups_update(self, session_id: str, data: Any) -> None:
        groups = data.get("groups") if isinstance(data, dict) and "groups" in data else data
        with self._open_session() as db:
            service = GroupService(db, self.runtime)
            for metadata in _as_list(groups):
                try:
                    await service.apply_group_update(session_id, metadata)
                except Exception as e:
                    db.rollback()
                    logger.error(f"Error updating group {metadata.get('id')} in session {session_id}: {e}", exc_info=True)

    async def on_participants_update(self, session_id: str, data: Dict[str, Any]) -> None:
        with self._open_session() as db:
            try:
                await GroupService(db, self.runtime).apply_participants_update(session_id, data)
            except Exception as e:
                db.rollback()
                logger.error(f"Error syncing participants for {data.get('id')} in session {session_id}: {e}", exc_info=True)
