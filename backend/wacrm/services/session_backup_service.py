"""
会话认证目录云端备份
把 AUTH_DIR/<session_id> 打包为 {相对路径: base64} 的 JSON，加密后存入数据库；
容器重建后可从数据库恢复，免重新扫码。
备份/恢复失败只记录日志，不影响本地运行
"""
import base64
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Optional

from sqlmodel import Session, select

from wacrm.core.config import settings
from wacrm.core.encryption import SessionEncryption, get_encryption_service
from wacrm.models.session_backup import SessionBackup

logger = logging.getLogger(__name__)


class SessionBackupService:

    def __init__(self, session_factory: Callable[[], Session], auth_dir: Optional[str] = None,
                 encryption: Optional[SessionEncryption] = None, enabled: Optional[bool] = None):
        self.session_factory = session_factory
        self.auth_dir = Path(auth_dir or settings.AUTH_DIR)
        self._encryption = encryption
        self.enabled = settings.SESSION_BACKUP_ENABLED if enabled is None else enabled

    @property
    def encryption(self) -> SessionEncryption:
        if self._encryption is None:
            self._encryption = get_encryption_service()
        return self._encryption

    def session_dir(self, session_id: str) -> Path:
        return self.auth_dir / session_id

    def _pack(self, directory: Path) -> Dict[str, str]:
        files = {}
        for path in sorted(directory.rglob("*")):
            if path.is_file():
                files[path.relative_to(directory).as_posix()] = base64.b64encode(path.read_bytes()).decode("ascii")
        return files

    def backup(self, session_id: str) -> bool:
        """加密备份认证目录；成功返回 True"""
        if not self.enabled:
            return False
        try:
            directory = self.session_dir(session_id)
            if not directory.is_dir():
                logger.debug(f"No auth directory to backup for session {session_id}")
                return False
            files = self._pack(directory)
            if not files:
                return False

            payload = json.dumps(files).encode("utf-8")
            encrypted = self.encryption.encrypt_to_text(session_id, payload)

            with self.session_factory() as db:
                record = db.exec(select(SessionBackup).where(SessionBackup.session_id == session_id)).first()
                if record is None:
                    record = SessionBackup(session_id=session_id, session_data=encrypted)
                record.session_data = encrypted
                record.file_count = len(files)
                record.last_synced_at = datetime.utcnow()
                db.add(record)
                db.commit()

            logger.info(f"Session backup stored for {session_id} ({len(files)} files)")
            return True
        except Exception as e:
            logger.error(f"Session backup failed for {session_id}, continuing with local auth: {e}", exc_info=True)
            return False

    def restore(self, session_id: str, overwrite: bool = False) -> bool:
        """从数据库恢复认证目录；本地已有文件且不覆盖时跳过"""
        if not self.enabled:
            return False
        try:
            directory = self.session_dir(session_id)
            if directory.is_dir() and any(directory.iterdir()) and not overwrite:
                return False

            with self.session_factory() as db:
                record = db.exec(select(SessionBackup).where(SessionBackup.session_id == session_id)).first()
                if record is None:
                    return False
                encrypted = record.session_data

            files = json.loads(self.encryption.decrypt_from_text(session_id, encrypted))
            directory.mkdir(parents=True, exist_ok=True)
            root = directory.resolve()
            for relative, content in files.items():
                target = (directory / relative).resolve()
                if root not in target.parents:
                    logger.warning(f"Skipping suspicious path in backup for {session_id}: {relative}")
                    continue
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(base64.b64decode(content))

            logger.info(f"Session restore completed for {session_id} ({len(files)} files)")
            return True
        except Exception as e:
            logger.error(f"Session restore failed for {session_id}, a new QR pairing may be needed: {e}", exc_info=True)
            return False

    def delete(self, session_id: str) -> bool:
        try:
            with self.session_factory() as db:
                record = db.exec(select(SessionBackup).where(SessionBackup.session_id == session_id)).first()
                if record is None:
                    return False
                db.delete(record)
                db.commit()
            logger.info(f"Session backup deleted for {session_id}")
            return True
        except Exception as e:
            logger.error(f"Failed to delete session backup for {session_id}: {e}")
            return False

    def list_backups(self):
        with self.session_factory() as db:
            return [
                {"session_id": r.session_id, "file_count": r.file_count, "last_synced_at": r.last_synced_at}
                for r in db.exec(select(SessionBackup)).all()
            ]
