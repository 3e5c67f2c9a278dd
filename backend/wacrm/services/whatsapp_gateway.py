"""
WhatsApp 网关客户端

协议层 (加密、多设备同步、扫码配对) 由 Baileys sidecar 负责，
这里只通过 HTTP 调用它暴露的 socket 原语；socket 事件由 sidecar 回调
/api/v1/webhooks/whatsapp/{session_id}
"""
import json
import base64
import asyncio
import logging
from typing import Any, Dict, Optional, Tuple

import aiohttp

from wacrm.core.config import settings
from wacrm.core.exceptions import GatewayUnavailableException, TransportException

logger = logging.getLogger(__name__)


class WhatsAppGateway:
    """Baileys 网关的异步 HTTP 客户端，所有调用按 session_id 区分"""

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None, timeout: Optional[int] = None):
        self.base_url = (base_url or settings.WA_GATEWAY_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.WA_GATEWAY_API_KEY
        self.timeout = aiohttp.ClientTimeout(total=timeout or settings.WA_GATEWAY_TIMEOUT)
        self._session: Optional[aiohttp.ClientSession] = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            headers = {"X-Api-Key": self.api_key} if self.api_key else {}
            self._session = aiohttp.ClientSession(timeout=self.timeout, headers=headers)
        return self._session

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _request(self, method: str, path: str, payload: Optional[Dict] = None, raw: bool = False):
        url = f"{self.base_url}{path}"
        try:
            async with self._get_session().request(method, url, json=payload) as response:
                if response.status >= 400:
                    body = await response.text()
                    logger.warning(f"Gateway {method} {path} -> {response.status}: {body[:200]}")
                    raise TransportException(
                        f"Gateway returned {response.status}",
                        details={"path": path, "status": response.status, "body": body[:500]},
                    )
                if raw:
                    return await response.read(), response.headers.get("Content-Type")
                if response.content_type == "application/json":
                    return await response.json()
                return None
        except aiohttp.ClientConnectionError as e:
            raise GatewayUnavailableException(f"Gateway unreachable: {e}", details={"path": path})
        except aiohttp.ClientError as e:
            raise TransportException(f"Gateway request failed: {e}", details={"path": path})
        except asyncio.TimeoutError:
            raise GatewayUnavailableException("Gateway request timed out", details={"path": path})

    # ==================== 会话生命周期 ====================

    async def start_session(self, session_id: str, auth_path: str, webhook_url: Optional[str] = None) -> Dict[str, Any]:
        """启动 (或重启) socket；认证材料保存在 auth_path"""
        payload = {"authPath": auth_path}
        if webhook_url:
            payload["webhookUrl"] = webhook_url
        return await self._request("POST", f"/sessions/{session_id}/start", payload) or {}

    async def logout(self, session_id: str) -> None:
        await self._request("POST", f"/sessions/{session_id}/logout")

    # ==================== 消息 ====================

    async def send_text(self, session_id: str, jid: str, text: str) -> Dict[str, Any]:
        """发送文本，返回 Baileys 的 WAMessage (至少包含 key.id)"""
        result = await self._request("POST", f"/sessions/{session_id}/messages/text", {"jid": jid, "text": text})
        if not result or not (result.get("key") or {}).get("id"):
            raise TransportException("Gateway did not return a message key", details={"jid": jid})
        return result

    async def on_whatsapp(self, session_id: str, jid: str) -> bool:
        """号码是否注册了 WhatsApp (onWhatsApp(jid)[0].exists)"""
        result = await self._request("POST", f"/sessions/{session_id}/on-whatsapp", {"jids": [jid]})
        if not result:
            return False
        return bool(result[0].get("exists"))

    async def fetch_history(self, session_id: str, jid: str, count: int = 50,
                            oldest_key: Optional[Dict] = None, oldest_timestamp: Optional[int] = None) -> Dict[str, Any]:
        """请求更早的历史消息；结果稍后以 messages.upsert (type=append) 回调"""
        payload = {"jid": jid, "count": count}
        if oldest_key:
            payload["oldestKey"] = oldest_key
        if oldest_timestamp:
            payload["oldestTimestamp"] = oldest_timestamp
        return await self._request("POST", f"/sessions/{session_id}/history", payload) or {}

    async def download_media(self, session_id: str, raw_message: Dict[str, Any]) -> Tuple[bytes, Optional[str]]:
        """下载消息中的媒体，返回 (bytes, content-type)"""
        data, content_type = await self._request(
            "POST", f"/sessions/{session_id}/media/download", {"message": raw_message}, raw=True
        )
        if content_type and content_type.startswith("application/json"):
            # 部分网关版本以 {"base64": ..., "mimetype": ...} 返回
            body = json.loads(data)
            return base64.b64decode(body["base64"]), body.get("mimetype")
        return data, content_type

    # ==================== 群组 ====================

    async def group_metadata(self, session_id: str, group_jid: str) -> Dict[str, Any]:
        """权威群元数据: id/subject/desc/owner/participants[{id, admin, phoneNumber?, lid?}]"""
        result = await self._request("GET", f"/sessions/{session_id}/groups/{group_jid}")
        if not result:
            raise TransportException("Empty group metadata", details={"group": group_jid})
        return result

