"""
维护任务
- 补下载漏掉的媒体 (进程重启 / 网关暂时不可用)
- 定时备份所有会话的认证目录
"""
import asyncio
import logging
from pathlib import Path

from sqlmodel import Session
from wacrm.core.celery_app import celery_app
from wacrm.core.config import settings
from wacrm.core.db import engine
from wacrm.services.media_service import MediaMaterializer
from wacrm.services.session_backup_service import SessionBackupService
from wacrm.services.whatsapp_gateway import WhatsAppGateway

logger = logging.getLogger(__name__)


def _session_factory() -> Session:
    return Session(engine)


async def _materialize_batch(materializer: MediaMaterializer, pending) -> int:
    saved = 0
    for message_pk, session_id in pending:
        try:
            if await materializer.materialize(session_id, message_pk):
                saved += 1
        except Exception as e:
            logger.error(f"Media sweep failed for message {message_pk}: {e}")
    return saved


@celery_app.task(bind=True, max_retries=2)
def materialize_pending_media(self, limit: int = 100):
    """下载尚无本地文件的媒体消息"""
    gateway = WhatsAppGateway()
    materializer = MediaMaterializer(gateway, _session_factory)

    with _session_factory() as session:
        pending = materializer.pending_message_ids(session, limit)
    if not pending:
        return {"pending": 0, "saved": 0}

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        saved = loop.run_until_complete(_materialize_batch(materializer, pending))
    finally:
        loop.run_until_complete(gateway.close())
        loop.close()

    logger.info(f"Media sweep: {saved}/{len(pending)} saved")
    return {"pending": len(pending), "saved": saved}


@celery_app.task(bind=True)
def backup_all_sessions(self):
    """遍历 AUTH_DIR 下的每个会话目录做一次加密备份"""
    service = SessionBackupService(_session_factory)
    if not service.enabled:
        return {"enabled": False, "backed_up": 0}

    auth_dir = Path(settings.AUTH_DIR)
    if not auth_dir.is_dir():
        return {"enabled": True, "backed_up": 0}

    backed_up = []
    for directory in sorted(auth_dir.iterdir()):
        if directory.is_dir() and service.backup(directory.name):
            backed_up.append(directory.name)

    logger.info(f"Session backup sweep: {len(backed_up)} session(s) stored")
    return {"enabled": True, "backed_up": len(backed_up), "sessions": backed_up}
