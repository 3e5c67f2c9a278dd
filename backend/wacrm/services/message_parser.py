"""
Baileys WAMessage 解析
只做纯函数转换，不访问数据库
"""
import json
from datetime import datetime
from typing import Any, Dict, Optional

# 需要剥掉的外层包装
_WRAPPERS = (
    "ephemeralMessage",
    "viewOnceMessage",
    "viewOnceMessageV2",
    "viewOnceMessageV2Extension",
    "documentWithCaptionMessage",
    "editedMessage",
)

# WAMessage 字段 -> message_type
_TYPE_KEYS = (
    ("imageMessage", "image"),
    ("videoMessage", "video"),
    ("audioMessage", "audio"),
    ("documentMessage", "document"),
    ("stickerMessage", "sticker"),
    ("locationMessage", "location"),
    ("liveLocationMessage", "location"),
    ("contactMessage", "contact"),
    ("contactsArrayMessage", "contact"),
)

_MEDIA_KEYS = {
    "image": "imageMessage",
    "video": "videoMessage",
    "audio": "audioMessage",
    "document": "documentMessage",
    "sticker": "stickerMessage",
}

# ProtocolMessage.Type.REVOKE / WAMessageStubType.REVOKE
REVOKE_TYPES = (0, "REVOKE")
STUB_REVOKE_TYPES = (1, "REVOKE")

# WebMessageInfo.Status -> 本地投递状态
ACK_STATUS = {
    0: "failed",
    1: "pending",
    2: "sent",
    3: "delivered",
    4: "read",
    5: "read",
    "ERROR": "failed",
    "PENDING": "pending",
    "SERVER_ACK": "sent",
    "DELIVERY_ACK": "delivered",
    "READ": "read",
    "PLAYED": "read",
}


def unwrap_message(message: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """剥掉 ephemeral / viewOnce 等包装，返回真正的内容节点"""
    depth = 0
    while message and depth < 5:
        for wrapper in _WRAPPERS:
            inner = message.get(wrapper)
            if isinstance(inner, dict) and inner.get("message"):
                message = inner["message"]
                break
        else:
            return message
        depth += 1
    return message


def get_message_type(message: Optional[Dict[str, Any]]) -> str:
    content = unwrap_message(message) or {}
    for key, message_type in _TYPE_KEYS:
        if content.get(key) is not None:
            return message_type
    return "text"


def extract_content(message: Optional[Dict[str, Any]]) -> str:
    """文本内容；媒体取 caption，没有文字时返回 [Image] 之类的占位"""
    content = unwrap_message(message) or {}

    if content.get("conversation"):
        return content["conversation"]
    extended = content.get("extendedTextMessage") or {}
    if extended.get("text"):
        return extended["text"]

    message_type = get_message_type(content)
    if message_type in _MEDIA_KEYS:
        media = content.get(_MEDIA_KEYS[message_type]) or {}
        if media.get("caption"):
            return media["caption"]
        if message_type == "document" and media.get("fileName"):
            return media["fileName"]
    elif message_type == "location":
        location = content.get("locationMessage") or content.get("liveLocationMessage") or {}
        lat, lng = location.get("degreesLatitude"), location.get("degreesLongitude")
        if lat is not None and lng is not None:
            return f"[Location] {lat},{lng}"
    elif message_type == "contact":
        card = content.get("contactMessage") or {}
        if card.get("displayName"):
            return f"[Contact] {card['displayName']}"

    return f"[{message_type.capitalize()}]" if message_type != "text" else "[Media]"


def get_media_mimetype(message: Optional[Dict[str, Any]]) -> Optional[str]:
    content = unwrap_message(message) or {}
    key = _MEDIA_KEYS.get(get_message_type(content))
    if not key:
        return None
    return (content.get(key) or {}).get("mimetype")


def get_protocol_message(message: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    content = unwrap_message(message) or {}
    return content.get("protocolMessage")


def is_revoke(protocol_message: Dict[str, Any]) -> bool:
    return protocol_message.get("type") in REVOKE_TYPES


def is_reaction(message: Optional[Dict[str, Any]]) -> bool:
    content = unwrap_message(message) or {}
    return "reactionMessage" in content


def parse_timestamp(value: Any) -> datetime:
    """messageTimestamp 可能是 int、字符串或 protobuf Long ({low, high})"""
    if isinstance(value, dict):
        value = (value.get("high", 0) << 32) + (value.get("low", 0) & 0xFFFFFFFF)
    try:
        seconds = int(value)
    except (TypeError, ValueError):
        return datetime.utcnow()
    if seconds <= 0:
        return datetime.utcnow()
    return datetime.utcfromtimestamp(seconds)


def map_ack_status(value: Any) -> Optional[str]:
    return ACK_STATUS.get(value)


def dump_raw(raw: Dict[str, Any]) -> str:
    return json.dumps(raw, ensure_ascii=False, default=str)
