"""
应用运行时上下文
把网关客户端、websocket 推送、数据库 session 工厂以及各个后台管理器
组装在一起，挂在 app.state.runtime 上，由 lifespan 负责启动与关闭
"""
import logging
from typing import Callable, Optional

from sqlmodel import Session

from wacrm.core.config import settings
from wacrm.core.db import engine
from wacrm.services.broadcast_service import BroadcastManager
from wacrm.services.event_handlers import EventDispatcher
from wacrm.services.media_service import MediaMaterializer
from wacrm.services.session_backup_service import SessionBackupService
from wacrm.services.session_manager import SessionManager
from wacrm.services.websocket_manager import manager
from wacrm.services.whatsapp_gateway import WhatsAppGateway

logger = logging.getLogger(__name__)


def default_session_factory() -> Session:
    return Session(engine)


class WhatsAppRuntime:

    def __init__(
        self,
        gateway=None,
        notifier=None,
        session_factory: Optional[Callable[[], Session]] = None,
        auth_dir: Optional[str] = None,
        jobs_dir: Optional[str] = None,
        media_dir: Optional[str] = None,
        backups: Optional[SessionBackupService] = None,
        broadcast_sleep: Optional[Callable] = None,
        reconnect_delay: Optional[float] = None,
    ):
        self.gateway = gateway or WhatsAppGateway()
        self.notifier = notifier or manager
        self.session_factory = session_factory or default_session_factory
        self.backups = backups or SessionBackupService(self.session_factory, auth_dir=auth_dir)
        self.media = MediaMaterializer(self.gateway, self.session_factory, media_dir)
        self.sessions = SessionManager(self, auth_dir, reconnect_delay)
        self.broadcasts = BroadcastManager(self, jobs_dir, sleep=broadcast_sleep)
        self.events = EventDispatcher(self)

    async def start(self) -> None:
        resumed = await self.broadcasts.resume_incomplete()
        if resumed:
            logger.info(f"Resumed {len(resumed)} broadcast job(s)")

        if settings.AUTO_START_DEFAULT_SESSION:
            try:
                await self.sessions.ensure_session(settings.DEFAULT_SESSION_ID)
            except Exception as e:
                # 网关未就绪时不阻止 API 启动，可稍后通过 POST /sessions 重试
                logger.error(f"Failed to start default session {settings.DEFAULT_SESSION_ID}: {e}")

    async def shutdown(self) -> None:
        await self.broadcasts.shutdown()
        await self.sessions.shutdown()
        await self.media.drain()
        if hasattr(self.gateway, "close"):
            await self.gateway.close()
        logger.info("WhatsApp runtime stopped")
