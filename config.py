"""
桥接配置
从环境变量（或 .env 文件）读取 Telegram / WhatsApp 配置，启动时构建一次，之后只读

Telegram API ID 和 API Hash 请在 https://my.telegram.org/ 创建应用获取
"""

import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional

from dotenv import load_dotenv


DEFAULT_PREFIX = "tg:"
SELECTOR_ALL = "all"
DEFAULT_SEND_TIMEOUT = 10.0
DEFAULT_SESSION_FILE = "telegram-session.txt"
DEFAULT_WHATSAPP_AUTH_DIR = "./whatsapp-auth"

# .env 模板里的占位值
PLACEHOLDER_FRIEND_ID = "000000000"
PLACEHOLDER_WHATSAPP_NUMBER = "34000000000"
PLACEHOLDER_PHONE = "+34000000000"
PLACEHOLDER_API_HASH = "your_api_hash_here"


class ConfigError(Exception):
    """配置缺失或格式错误，启动时直接退出"""


@dataclass(frozen=True)
class FriendRegistry:
    """
    好友注册表

    ids_all 保持配置顺序且不重复；tag_to_id 的键全部小写；
    id_to_tag 只用于显示，保留配置中的原始大小写
    """
    ids_all: tuple = ()
    tag_to_id: Mapping[str, int] = field(default_factory=lambda: MappingProxyType({}))
    id_to_tag: Mapping[int, str] = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def build(cls, ids, tags=()):
        """
        构建注册表

        Args:
            ids: 好友ID序列（int）
            tags: (标签, ID) 序列，重复标签以最后一个为准

        Returns:
            FriendRegistry: 只读注册表
        """
        ids_all = []
        seen = set()
        for friend_id in ids:
            if friend_id not in seen:
                seen.add(friend_id)
                ids_all.append(friend_id)

        tag_to_id = {}
        id_to_tag = {}
        for tag, friend_id in tags:
            tag_to_id[tag.lower()] = friend_id
            id_to_tag[friend_id] = tag
            # 标签指向的ID必须也在 ids_all 中
            if friend_id not in seen:
                seen.add(friend_id)
                ids_all.append(friend_id)

        # 被覆盖的旧标签不再出现在反查表里
        id_to_tag = {
            friend_id: tag for friend_id, tag in id_to_tag.items()
            if tag_to_id.get(tag.lower()) == friend_id
        }

        return cls(
            ids_all=tuple(ids_all),
            tag_to_id=MappingProxyType(tag_to_id),
            id_to_tag=MappingProxyType(id_to_tag),
        )

    def tag_for(self, friend_id) -> Optional[str]:
        return self.id_to_tag.get(friend_id)


@dataclass(frozen=True)
class BridgeConfig:
    """桥接运行配置"""
    api_id: int
    api_hash: str
    phone: str
    whatsapp_number: str
    friends: FriendRegistry
    prefix: str = DEFAULT_PREFIX
    send_timeout: float = DEFAULT_SEND_TIMEOUT
    session_file: str = DEFAULT_SESSION_FILE
    whatsapp_auth_dir: str = DEFAULT_WHATSAPP_AUTH_DIR
    log_level: str = "INFO"


def is_digits(value):
    """只接受 ASCII 数字，'²' 之类的 Unicode 数字不算"""
    return value.isascii() and value.isdigit()


def parse_friend_ids(raw):
    """
    解析 FRIEND_TELEGRAM_IDS，逗号分隔的纯数字ID

    Args:
        raw (str): 环境变量原始值

    Returns:
        list[int]: 按配置顺序的ID列表
    """
    ids = []
    for part in raw.split(','):
        part = part.strip()
        if not part or part == PLACEHOLDER_FRIEND_ID:
            continue
        if ':' in part:
            raise ConfigError(
                f"FRIEND_TELEGRAM_IDS 格式错误: \"{part}\"，这里只能填写数字ID，"
                f"标签请写到 FRIEND_TAGS 中 (例如 FRIEND_TAGS={part})"
            )
        if not is_digits(part):
            raise ConfigError(
                f"FRIEND_TELEGRAM_IDS 中存在无效ID: \"{part}\"，"
                f"只能是数字 (例如 \"123456789\" 或 \"123456789,987654321\")"
            )
        ids.append(int(part))
    return ids


def parse_friend_tags(raw):
    """
    解析 FRIEND_TAGS，格式为 "john:123456789,mary:987654321"

    Returns:
        list[tuple[str, int]]: (标签, ID) 列表
    """
    tags = []
    for pair in raw.split(','):
        pair = pair.strip()
        if not pair:
            continue
        parts = [p.strip() for p in pair.split(':')]
        if len(parts) != 2:
            raise ConfigError(f"FRIEND_TAGS 格式错误: \"{pair}\"，应为 标签:ID，标签中不能包含 ':'")
        tag, friend_id = parts
        if not tag or not friend_id:
            raise ConfigError(f"FRIEND_TAGS 格式错误: \"{pair}\"，标签和ID都不能为空")
        if any(ch.isspace() for ch in tag):
            raise ConfigError(f"FRIEND_TAGS 中的标签不能包含空白字符: \"{tag}\"")
        if tag.lower() == SELECTOR_ALL:
            raise ConfigError(f"FRIEND_TAGS 中的标签不能叫 \"{tag}\"，{SELECTOR_ALL} 表示发送给所有好友")
        if not is_digits(friend_id):
            raise ConfigError(f"FRIEND_TAGS 中存在无效ID: \"{pair}\"，ID只能是数字")
        tags.append((tag, int(friend_id)))
    return tags


def _require(env, key):
    value = (env.get(key) or '').strip()
    if not value:
        raise ConfigError(f"{key} 未设置，请检查 .env 文件")
    return value


def load_config(env=None, dotenv_path=None, telegram_only=False):
    """
    读取并校验配置

    Args:
        env: 环境变量映射，默认为 os.environ（会先加载 .env）
        dotenv_path: .env 文件路径，为空时自动查找
        telegram_only: 只校验 Telegram 登录所需的配置（login / dialogs 命令）

    Returns:
        BridgeConfig: 校验通过的配置

    Raises:
        ConfigError: 缺少必填项或格式错误
    """
    if env is None:
        load_dotenv(dotenv_path)
        env = os.environ

    api_id_raw = _require(env, "TELEGRAM_API_ID")
    if not is_digits(api_id_raw):
        raise ConfigError(f"TELEGRAM_API_ID 无效: {api_id_raw}，应为数字")

    api_hash = _require(env, "TELEGRAM_API_HASH")
    if api_hash == PLACEHOLDER_API_HASH:
        raise ConfigError("TELEGRAM_API_HASH 仍是模板占位值，请填写真实的 API Hash")

    phone = _require(env, "TELEGRAM_PHONE")
    if phone == PLACEHOLDER_PHONE:
        raise ConfigError("TELEGRAM_PHONE 仍是模板占位值")
    if not phone.startswith('+'):
        raise ConfigError(f"TELEGRAM_PHONE 必须以 + 开头 (例如 +34612345678)，当前为: {phone}")

    friends = FriendRegistry()
    whatsapp_number = ''
    if not telegram_only:
        # 兼容单数和复数两种变量名
        ids_raw = env.get("FRIEND_TELEGRAM_IDS") or env.get("FRIEND_TELEGRAM_ID") or ''
        friend_ids = parse_friend_ids(ids_raw)
        if not friend_ids:
            raise ConfigError("没有找到有效的好友 Telegram ID，请设置 FRIEND_TELEGRAM_IDS (可运行 dialogs 命令查询)")
        tags = parse_friend_tags(env.get("FRIEND_TAGS") or '')
        friends = FriendRegistry.build(friend_ids, tags)

        whatsapp_number = _require(env, "YOUR_WHATSAPP_NUMBER").lstrip('+')
        if whatsapp_number == PLACEHOLDER_WHATSAPP_NUMBER or not is_digits(whatsapp_number):
            raise ConfigError(f"YOUR_WHATSAPP_NUMBER 无效: {whatsapp_number}")

    prefix = env.get("MESSAGE_PREFIX") or DEFAULT_PREFIX

    timeout_raw = env.get("SEND_TIMEOUT") or str(DEFAULT_SEND_TIMEOUT)
    try:
        send_timeout = float(timeout_raw)
    except ValueError:
        raise ConfigError(f"SEND_TIMEOUT 无效: {timeout_raw}，应为秒数")
    if send_timeout <= 0:
        raise ConfigError(f"SEND_TIMEOUT 必须大于0: {timeout_raw}")

    return BridgeConfig(
        api_id=int(api_id_raw),
        api_hash=api_hash,
        phone=phone,
        whatsapp_number=whatsapp_number,
        friends=friends,
        prefix=prefix,
        send_timeout=send_timeout,
        session_file=env.get("TELEGRAM_SESSION_FILE") or DEFAULT_SESSION_FILE,
        whatsapp_auth_dir=env.get("WHATSAPP_AUTH_DIR") or DEFAULT_WHATSAPP_AUTH_DIR,
        log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
    )
