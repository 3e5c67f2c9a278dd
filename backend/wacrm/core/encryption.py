"""
会话凭据加密
使用 AES-256-GCM 加密 WhatsApp 认证目录的云端备份
"""
import os
import base64
import logging
from functools import lru_cache
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from wacrm.core.exceptions import DecryptionException

logger = logging.getLogger(__name__)

# 密文格式标识头
ENCRYPTED_HEADER = b"WACRM_ENC_V1"

NONCE_SIZE = 12
PBKDF2_ITERATIONS = 100000


class SessionEncryption:
    """会话备份加密/解密服务，每个会话 ID 派生独立密钥"""

    def __init__(self, encryption_key: str):
        """
        Args:
            encryption_key: 主密钥 (至少 32 个字符)
        """
        if not encryption_key or len(encryption_key) < 32:
            raise ValueError("Encryption key must be at least 32 characters")
        self._secret = encryption_key

    @lru_cache(maxsize=32)
    def _derive_key(self, session_id: str) -> bytes:
        """使用 PBKDF2 从主密钥和会话 ID 派生 256-bit 密钥"""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=f"wacrm_session_{session_id}".encode(),
            iterations=PBKDF2_ITERATIONS,
        )
        return kdf.derive(self._secret.encode())

    def encrypt(self, session_id: str, plaintext: bytes) -> bytes:
        """返回 header + nonce + ciphertext"""
        nonce = os.urandom(NONCE_SIZE)
        ciphertext = AESGCM(self._derive_key(session_id)).encrypt(nonce, plaintext, session_id.encode())
        return ENCRYPTED_HEADER + nonce + ciphertext

    def decrypt(self, session_id: str, data: bytes) -> bytes:
        if not data.startswith(ENCRYPTED_HEADER):
            raise DecryptionException("Payload is missing the encryption header")

        payload = data[len(ENCRYPTED_HEADER):]
        if len(payload) <= NONCE_SIZE:
            raise DecryptionException("Invalid encrypted data: too short")

        nonce, ciphertext = payload[:NONCE_SIZE], payload[NONCE_SIZE:]
        try:
            return AESGCM(self._derive_key(session_id)).decrypt(nonce, ciphertext, session_id.encode())
        except InvalidTag:
            logger.warning(f"Backup decryption failed for session {session_id}")
            raise DecryptionException()

    def encrypt_to_text(self, session_id: str, plaintext: bytes) -> str:
        """加密并编码为 base64 字符串，便于存入文本列"""
        return base64.b64encode(self.encrypt(session_id, plaintext)).decode("ascii")

    def decrypt_from_text(self, session_id: str, text: str) -> bytes:
        return self.decrypt(session_id, base64.b64decode(text))

    def is_encrypted(self, data: bytes) -> bool:
        return data.startswith(ENCRYPTED_HEADER)


# 全局加密服务实例 (延迟初始化)
_encryption_service: Optional[SessionEncryption] = None


def get_encryption_service() -> SessionEncryption:
    """获取全局加密服务实例"""
    global _encryption_service

    if _encryption_service is None:
        from wacrm.core.config import settings
        _encryption_service = SessionEncryption(settings.SESSION_ENCRYPTION_KEY)

    return _encryption_service
