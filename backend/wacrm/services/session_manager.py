"""
WhatsApp 会话管理
每个会话对应网关里的一个 Baileys socket，认证材料在 AUTH_DIR/<session_id>。
这里维护会话状态 (starting / connecting / qr / open / close)，处理
connection.update 回调、断线重连，以及 creds.update 后的云端备份
"""
import asyncio
import logging
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from wacrm.core.config import settings
from wacrm.core.exceptions import (
    InvalidInputException,
    MissingSessionIdException,
    SessionAlreadyExistsException,
    SessionNotFoundException,
    SessionNotReadyException,
)

logger = logging.getLogger(__name__)

STATE_STARTING = "starting"
STATE_CONNECTING = "connecting"
STATE_QR = "qr"
STATE_OPEN = "open"
STATE_CLOSE = "close"

# DisconnectReason.loggedOut
LOGGED_OUT_STATUS_CODE = 401

_SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


@dataclass
class WASession:
    id: str
    auth_path: str
    state: str = STATE_STARTING
    has_qr: bool = False
    user: Optional[Dict[str, Any]] = None
    last_qr: Optional[str] = None

    @property
    def is_ready(self) -> bool:
        return self.state == STATE_OPEN

    def status_payload(self) -> Dict[str, Any]:
        return {"sessionId": self.id, "state": self.state, "hasQR": self.has_qr, "user": self.user}

    def summary(self) -> Dict[str, Any]:
        return {"id": self.id, "state": self.state, "hasQR": self.has_qr, "user": self.user}


def validate_session_id(session_id: Optional[str]) -> str:
    session_id = str(session_id or "").strip()
    if not session_id:
        raise MissingSessionIdException("Session id required")
    # 会话 ID 会用作目录名
    if not _SESSION_ID_PATTERN.match(session_id):
        raise InvalidInputException(
            "Session id may only contain letters, digits, '-' and '_'",
            details={"session_id": session_id},
        )
    return session_id


def disconnect_status_code(update: Dict[str, Any]) -> Optional[int]:
    """lastDisconnect.error.output.statusCode，网关也可能直接给 statusCode"""
    code = update.get("statusCode")
    if code is None:
        error = (update.get("lastDisconnect") or {}).get("error") or {}
        code = (error.get("output") or {}).get("statusCode")
    try:
        return int(code) if code is not None else None
    except (TypeError, ValueError):
        return None


class SessionManager:

    def __init__(self, runtime, auth_dir: Optional[str] = None, reconnect_delay: Optional[float] = None):
        self.runtime = runtime
        self.auth_dir = Path(auth_dir or settings.AUTH_DIR)
        self.reconnect_delay = settings.RECONNECT_DELAY_SECONDS if reconnect_delay is None else reconnect_delay
        self.sessions: Dict[str, WASession] = {}
        self._reconnect_tasks: Dict[str, asyncio.Task] = {}
        self._backup_tasks: Dict[str, asyncio.Task] = {}

    def auth_path(self, session_id: str) -> Path:
        return self.auth_dir / session_id

    def webhook_url(self, session_id: str) -> str:
        base = settings.WEBHOOK_BASE_URL.rstrip("/")
        return f"{base}{settings.API_V1_STR}/webhooks/whatsapp/{session_id}"

    # ==================== 查询 ====================

    def get(self, session_id: str) -> Optional[WASession]:
        return self.sessions.get(session_id)

    def require(self, session_id: str) -> WASession:
        session = self.sessions.get(session_id)
        if session is None:
            raise SessionNotFoundException(session_id, "Session not found")
        return session

    def require_ready(self, session_id: str) -> WASession:
        """发送类操作前调用: 不存在 404，未连接 503"""
        session = self.require(session_id)
        if not session.is_ready:
            raise SessionNotReadyException(session_id, session.state)
        return session

    def list(self) -> List[Dict[str, Any]]:
        return [s.summary() for s in self.sessions.values()]

    def initial_events(self) -> List[Dict[str, Any]]:
        """新 websocket 客户端连上时补发的状态 / 二维码"""
        events = []
        for session in self.sessions.values():
            events.append({"event": "status", "data": session.status_payload()})
            if session.last_qr:
                events.append({"event": "qr", "data": {"sessionId": session.id, "qr": session.last_qr}})
        return events

    # ==================== 生命周期 ====================

    async def create_session(self, session_id: str) -> WASession:
        session_id = validate_session_id(session_id)
        if session_id in self.sessions:
            raise SessionAlreadyExistsException(session_id)
        return await self.start_session(session_id)

    async def ensure_session(self, session_id: str) -> WASession:
        """已存在则直接返回 (默认会话自动启动时使用)"""
        session = self.sessions.get(session_id)
        if session is not None:
            return session
        return await self.start_session(validate_session_id(session_id))

    async def start_session(self, session_id: str) -> WASession:
        auth_path = self.auth_path(session_id)
        auth_path.mkdir(parents=True, exist_ok=True)

        session = WASession(id=session_id, auth_path=str(auth_path))
        self.sessions[session_id] = session

        # 本地没有认证文件时尝试从云端备份恢复，免重新扫码
        if self.runtime.backups is not None:
            await asyncio.to_thread(self.runtime.backups.restore, session_id)

        self._seed_defaults(session_id)

        try:
            await self._connect(session)
        except Exception:
            self.sessions.pop(session_id, None)
            raise
        logger.info(f"Session {session_id} started (auth={auth_path})")
        return session

    def _seed_defaults(self, session_id: str) -> None:
        if self.runtime.session_factory is None:
            return
        from wacrm.db.init_db import seed_session_defaults
        try:
            with self.runtime.session_factory() as db:
                seed_session_defaults(db, session_id)
        except Exception as e:
            logger.error(f"Failed to seed defaults for session {session_id}: {e}")

    async def _connect(self, session: WASession) -> None:
        session.state = STATE_CONNECTING
        session.has_qr = False
        await self.broadcast_status(session)
        info = await self.runtime.gateway.start_session(session.id, session.auth_path, self.webhook_url(session.id))
        if info.get("user"):
            session.user = info["user"]
        if info.get("state"):
            session.state = info["state"]
            await self.broadcast_status(session)

    async def broadcast_status(self, session: WASession) -> None:
        await self.runtime.notifier.emit("status", session.status_payload())

    async def handle_connection_update(self, session_id: str, update: Dict[str, Any]) -> Optional[WASession]:
        session = self.sessions.get(session_id)
        if session is None:
            logger.warning(f"connection.update for unknown session {session_id}")
            return None

        notifier = self.runtime.notifier
        if update.get("user"):
            session.user = update["user"]

        qr = update.get("qr")
        if qr:
            session.last_qr = qr
            session.state = STATE_QR
            session.has_qr = True
            await notifier.emit("qr", {"sessionId": session_id, "qr": qr})
            await self.broadcast_status(session)

        connection = update.get("connection")
        if connection == "connecting":
            session.state = STATE_CONNECTING
            await self.broadcast_status(session)
        elif connection == "open":
            session.state = STATE_OPEN
            session.has_qr = False
            session.last_qr = None
            logger.info(f"Session {session_id} connected as {(session.user or {}).get('id')}")
            await notifier.emit("ready", {"sessionId": session_id, "message": "WhatsApp connected!"})
            await self.broadcast_status(session)
        elif connection == "close":
            session.state = STATE_CLOSE
            session.has_qr = False
            await notifier.emit("close", {"sessionId": session_id, "message": "WhatsApp disconnected!"})
            await self.broadcast_status(session)

            status_code = disconnect_status_code(update)
            if status_code == LOGGED_OUT_STATUS_CODE:
                logger.warning(f"Session {session_id} logged out, not reconnecting")
            else:
                logger.info(f"Session {session_id} closed (code={status_code}), reconnecting in {self.reconnect_delay}s")
                self._schedule_reconnect(session)
        return session

    def _schedule_reconnect(self, session: WASession) -> None:
        existing = self._reconnect_tasks.get(session.id)
        if existing is not None and not existing.done():
            return
        task = asyncio.get_running_loop().create_task(self._reconnect(session))
        self._reconnect_tasks[session.id] = task
        task.add_done_callback(lambda _t, sid=session.id: self._reconnect_tasks.pop(sid, None))

    async def _reconnect(self, session: WASession) -> None:
        await asyncio.sleep(self.reconnect_delay)
        if self.sessions.get(session.id) is not session:
            return
        try:
            await self._connect(session)
        except Exception as e:
            logger.error(f"Reconnect failed for session {session.id}: {e}")

    async def logout(self, session_id: str) -> WASession:
        """注销: 网关登出，清除本地与云端认证材料，然后重新创建等待扫码"""
        session = self.require(session_id)
        try:
            await self.runtime.gateway.logout(session_id)
        except Exception as e:
            logger.warning(f"Gateway logout failed for session {session_id}: {e}")

        task = self._reconnect_tasks.pop(session_id, None)
        if task is not None:
            task.cancel()
        self.sessions.pop(session_id, None)

        shutil.rmtree(session.auth_path, ignore_errors=True)
        if self.runtime.backups is not None:
            await asyncio.to_thread(self.runtime.backups.delete, session_id)

        logger.info(f"Session {session_id} logged out, auth data removed")
        return await self.start_session(session_id)

    # ==================== 备份 ====================

    def schedule_backup(self, session_id: str, delay: float = 5.0) -> Optional[asyncio.Task]:
        """creds.update 会连续触发，合并为一次延迟备份"""
        if self.runtime.backups is None or not self.runtime.backups.enabled:
            return None
        pending = self._backup_tasks.get(session_id)
        if pending is not None and not pending.done():
            return pending
        task = asyncio.get_running_loop().create_task(self._backup_later(session_id, delay))
        self._backup_tasks[session_id] = task
        task.add_done_callback(lambda _t: self._backup_tasks.pop(session_id, None))
        return task

    async def _backup_later(self, session_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        await asyncio.to_thread(self.runtime.backups.backup, session_id)

    async def backup_now(self, session_id: str) -> bool:
        self.require(session_id)
        if self.runtime.backups is None:
            return False
        return await asyncio.to_thread(self.runtime.backups.backup, session_id)

    async def shutdown(self) -> None:
        tasks = list(self._reconnect_tasks.values()) + list(self._backup_tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
