"""
号码与 JID 工具

WhatsApp JID 形式:
    6281234567890@s.whatsapp.net      普通用户
    6281234567890:12@s.whatsapp.net   带设备号的用户
    123456789012345@lid               多设备匿名别名，不是号码
    120363025246125888@g.us           群组
    status@broadcast                  状态广播
"""
import re
from typing import Optional

USER_SUFFIX = "@s.whatsapp.net"
LID_SUFFIX = "@lid"
GROUP_SUFFIX = "@g.us"
BROADCAST_SUFFIXES = ("@broadcast", "@newsletter")

MIN_PHONE_DIGITS = 8
MAX_PHONE_DIGITS = 15

_NON_DIGITS = re.compile(r"\D+")


def normalize_phone(value) -> Optional[str]:
    """去掉所有非数字字符，长度在 8-15 位之间才视为有效号码"""
    if value is None:
        return None
    digits = _NON_DIGITS.sub("", str(value))
    if MIN_PHONE_DIGITS <= len(digits) <= MAX_PHONE_DIGITS:
        return digits
    return None


def jid_user(jid: Optional[str]) -> str:
    """JID 的用户部分，去掉设备号"""
    if not jid:
        return ""
    user = jid.split("@", 1)[0]
    return user.split(":", 1)[0]


def is_lid(jid: Optional[str]) -> bool:
    return bool(jid) and jid.endswith(LID_SUFFIX)


def is_user_jid(jid: Optional[str]) -> bool:
    return bool(jid) and jid.endswith(USER_SUFFIX)


def is_group_jid(jid: Optional[str]) -> bool:
    return bool(jid) and jid.endswith(GROUP_SUFFIX)


def is_broadcast_jid(jid: Optional[str]) -> bool:
    return bool(jid) and jid.endswith(BROADCAST_SUFFIXES)


def to_user_jid(phone: str) -> str:
    return f"{phone}{USER_SUFFIX}"


def normalize_user_jid(jid: Optional[str]) -> Optional[str]:
    """去掉设备号: 628xx:12@s.whatsapp.net -> 628xx@s.whatsapp.net"""
    if not is_user_jid(jid):
        return jid
    return to_user_jid(jid_user(jid))


def group_key(jid: str) -> str:
    """群 JID 去掉 @g.us，作为数据库中的 group_id"""
    if jid.endswith(GROUP_SUFFIX):
        return jid[: -len(GROUP_SUFFIX)]
    return jid


def to_group_jid(key: str) -> str:
    return key if key.endswith(GROUP_SUFFIX) else f"{key}{GROUP_SUFFIX}"


def phone_from_jid(jid: Optional[str]) -> Optional[str]:
    """只有 @s.whatsapp.net 的用户部分才是号码"""
    if not is_user_jid(jid):
        return None
    return normalize_phone(jid_user(jid))
