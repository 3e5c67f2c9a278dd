"""
媒体落地
通过网关下载消息中的媒体，以消息 ID 命名保存到本地缓存目录，
前端只读本地文件，不依赖 WhatsApp 会过期的媒体 URL
"""
import asyncio
import json
import logging
import mimetypes
import os
import re
from pathlib import Path
from typing import Callable, Optional, Set

from sqlmodel import Session, select

from wacrm.core.config import settings
from wacrm.core.exceptions import CRMException
from wacrm.models.message import Message, MEDIA_TYPES

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_-]")

# mimetypes 对这些类型给出的扩展名不理想
_EXTENSION_OVERRIDES = {
    "audio/ogg": ".ogg",
    "audio/ogg; codecs=opus": ".ogg",
    "image/jpeg": ".jpg",
    "image/webp": ".webp",
    "audio/mpeg": ".mp3",
    "video/mp4": ".mp4",
}

_DEFAULT_EXTENSIONS = {
    "image": ".jpg",
    "video": ".mp4",
    "audio": ".ogg",
    "sticker": ".webp",
    "document": ".bin",
}


def media_extension(mimetype: Optional[str], message_type: str = "document") -> str:
    if mimetype:
        base = mimetype.split(";")[0].strip().lower()
        ext = _EXTENSION_OVERRIDES.get(mimetype.lower()) or _EXTENSION_OVERRIDES.get(base) or mimetypes.guess_extension(base)
        if ext:
            return ext
    return _DEFAULT_EXTENSIONS.get(message_type, ".bin")


def media_filename(message_id: str, mimetype: Optional[str], message_type: str = "document") -> str:
    """<message_id><ext>，message_id 中的非法字符替换为下划线"""
    return f"{_UNSAFE_CHARS.sub('_', message_id)}{media_extension(mimetype, message_type)}"


class MediaMaterializer:
    """媒体下载器；schedule() 在事件循环里异步执行，失败只记日志"""

    def __init__(self, gateway, session_factory: Callable[[], Session], media_dir: Optional[str] = None):
        self.gateway = gateway
        self.session_factory = session_factory
        self.media_dir = Path(media_dir or settings.MEDIA_DIR)
        self._tasks: Set[asyncio.Task] = set()

    def path_for(self, filename: str) -> Path:
        return self.media_dir / filename

    def get_media_path(self, message: Message) -> Optional[Path]:
        """本地文件存在时返回路径"""
        if not message.media_url:
            return None
        path = self.path_for(message.media_url)
        return path if path.is_file() else None

    def schedule(self, session_id: str, message_pk: int) -> Optional[asyncio.Task]:
        """在当前事件循环中排队下载，不阻塞消息管道"""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running loop, media for message {message_pk} left for the sweep task")
            return None
        task = loop.create_task(self._run(session_id, message_pk))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, session_id: str, message_pk: int) -> None:
        try:
            await self.materialize(session_id, message_pk)
        except Exception as e:
            logger.error(f"Media materialization failed for message {message_pk}: {e}", exc_info=True)

    async def materialize(self, session_id: str, message_pk: int) -> Optional[str]:
        """
        下载并保存媒体

        Returns:
            本地文件名；无媒体或下载失败时返回 None
        """
        with self.session_factory() as session:
            message = session.get(Message, message_pk)
            if message is None or message.message_type not in MEDIA_TYPES:
                return None
            if self.get_media_path(message) is not None:
                return message.media_url
            if not message.raw_message:
                logger.warning(f"Message {message.message_id} has no raw payload, cannot download media")
                message.media_attempts = max(message.media_attempts, settings.MEDIA_MAX_ATTEMPTS)
                session.add(message)
                session.commit()
                return None

            raw = json.loads(message.raw_message)
            try:
                data, content_type = await self.gateway.download_media(session_id, raw)
            except CRMException as e:
                message.media_attempts += 1
                session.add(message)
                session.commit()
                logger.warning(
                    f"Media download failed for {message.message_id} "
                    f"(attempt {message.media_attempts}/{settings.MEDIA_MAX_ATTEMPTS}): {e.message}"
                )
                return None

            mimetype = message.media_mimetype or content_type
            filename = media_filename(message.message_id, mimetype, message.message_type)
            self._write_atomic(self.path_for(filename), data)

            message.media_url = filename
            if not message.media_mimetype and content_type:
                message.media_mimetype = content_type
            session.add(message)
            session.commit()

        logger.info(f"Saved media for message {message_pk} -> {filename} ({len(data)} bytes)")
        return filename

    def _write_atomic(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f".{path.name}.tmp")
        with open(tmp_path, "wb") as f:
            f.write(data)
        os.replace(tmp_path, path)

    def pending_message_ids(self, session: Session, limit: int = 100, max_attempts: Optional[int] = None):
        """还没有本地文件、且失败次数未达上限的媒体消息 (供定时任务补偿)"""
        if max_attempts is None:
            max_attempts = settings.MEDIA_MAX_ATTEMPTS
        return session.exec(
            select(Message.id, Message.session_id)
            .where(
                Message.message_type.in_(MEDIA_TYPES),
                Message.media_url.is_(None),
                Message.is_deleted == False,  # noqa: E712
                Message.media_attempts < max_attempts,
            )
            .order_by(Message.timestamp.desc())
            .limit(limit)
        ).all()

    async def drain(self) -> None:
        """等待已排队的下载完成 (关闭时 / 测试中使用)"""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
