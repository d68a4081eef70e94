"""
消息路由
解析 WhatsApp 上的桥接指令、确定 Telegram 收件人、逐个发送并汇总结果；
另一方向判断 Telegram 发送者是否在好友列表中并格式化转发内容

这里的函数都不读取环境变量，配置通过参数传入
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from config import SELECTOR_ALL, is_digits

logger = logging.getLogger(__name__)

EMPTY_PAYLOAD = "empty_payload"
SELECTOR_WITHOUT_PAYLOAD = "selector_without_payload"

FORWARD_HEADER = "📨 TG | "


@dataclass(frozen=True)
class RoutingCommand:
    raw_body: str
    selector: str
    payload: str


@dataclass(frozen=True)
class ParseError:
    """指令可识别但无法发送（空消息或只有标签）"""
    raw_body: str
    kind: str


@dataclass(frozen=True)
class UnknownSelector:
    selector: str
    valid: tuple


@dataclass(frozen=True)
class ForwardResult:
    destination: int
    delivered: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class InboundEvent:
    """
    传输层无关的入站消息

    Attributes:
        sender_id: 发送者ID（Telegram 为 int，WhatsApp 为 JID）
        sender_name: 发送者显示名称
        text: 消息文本，没有文本时为 None
        from_owner: 是否由本人账号发出
        origin: 消息来源地址
    """
    sender_id: object
    sender_name: str = ""
    text: Optional[str] = None
    from_owner: bool = False
    origin: str = ""


def parse_command(body, prefix, registry):
    """
    解析桥接指令

    前缀匹配不区分大小写，消息正文保留原样。支持的格式:
        tg: 消息        -> 发送给所有好友
        tg:all 消息     -> 发送给所有好友
        tg:john 消息    -> 发送给标签为 john 的好友

    Args:
        body (str): 原始消息文本
        prefix (str): 配置的指令前缀
        registry (FriendRegistry): 好友注册表

    Returns:
        None 表示不是桥接指令；否则为 RoutingCommand 或 ParseError
    """
    if not body or not body.lower().startswith(prefix.lower()):
        return None

    remainder = body[len(prefix):].strip()
    if not remainder:
        return ParseError(raw_body=body, kind=EMPTY_PAYLOAD)

    parts = remainder.split(None, 1)
    token = parts[0].lower()
    if token == SELECTOR_ALL or token in registry.tag_to_id:
        rest = parts[1].strip() if len(parts) > 1 else ''
        if not rest:
            return ParseError(raw_body=body, kind=SELECTOR_WITHOUT_PAYLOAD)
        return RoutingCommand(raw_body=body, selector=token, payload=rest)

    # 第一个词不是标签时视为消息的一部分
    return RoutingCommand(raw_body=body, selector=SELECTOR_ALL, payload=remainder)


def available_selectors(registry):
    return tuple(registry.tag_to_id) + (SELECTOR_ALL,)


def resolve_recipients(selector, registry):
    """
    根据选择器确定收件人

    Returns:
        (收件人ID元组, 描述) 或 UnknownSelector
    """
    if selector == SELECTOR_ALL:
        return tuple(dict.fromkeys(registry.ids_all)), "all friends"
    if selector in registry.tag_to_id:
        return (registry.tag_to_id[selector],), selector
    return UnknownSelector(selector=selector, valid=available_selectors(registry))


async def dispatch(destinations, payload, send, timeout, registry=None):
    """
    按顺序向每个收件人发送一次，失败不影响后续收件人

    Args:
        destinations: 收件人ID序列
        payload (str): 要发送的文本
        send: 协程函数 send(destination, text)
        timeout (float): 单次发送超时秒数
        registry: 可选，仅用于日志中显示标签

    Returns:
        list[ForwardResult]: 与 destinations 一一对应
    """
    results = []
    for destination in destinations:
        label = destination
        if registry is not None:
            label = registry.tag_for(destination) or destination
        try:
            await asyncio.wait_for(send(destination, payload), timeout)
        except asyncio.TimeoutError:
            logger.error(f"发送给 {label} 超时 ({timeout}s)")
            results.append(ForwardResult(destination, False, "timeout"))
        except Exception as e:
            logger.error(f"发送给 {label} 失败: {e}")
            results.append(ForwardResult(destination, False, str(e) or type(e).__name__))
        else:
            logger.info(f"已发送给: {label}")
            results.append(ForwardResult(destination, True))
    return results


def summarize(results, selector):
    """
    根据发送结果生成一条回复

    Returns:
        str: 成功/失败汇总，两者都有时合并为一条
    """
    delivered = sum(1 for r in results if r.delivered)
    failed = len(results) - delivered

    lines = []
    if delivered:
        recipients = f"{delivered} friend(s)" if selector == SELECTOR_ALL else selector
        lines.append(f"✅ Sent to {recipients} on Telegram")
    if failed:
        lines.append(f"⚠️ Failed to send to {failed} friend(s)")
    if not lines:
        lines.append("⚠️ No friends to send to")
    return "\n".join(lines)


def usage_help(prefix, registry):
    tag_help = ''
    if registry.tag_to_id:
        tag_help = f"\n   Tags: {', '.join(available_selectors(registry))}"
    return (
        "⚠️ Message is empty.\n\nUsage:\n"
        f"   {prefix} Your message\n"
        f"   {prefix}all Your message\n"
        f"   {prefix}john Your message"
        f"{tag_help}"
    )


def error_reply(outcome, prefix, registry):
    """ParseError / UnknownSelector 对应的回复文本"""
    if isinstance(outcome, UnknownSelector):
        return f"⚠️ Unknown tag: \"{outcome.selector}\"\nAvailable: {', '.join(outcome.valid)}"
    if outcome.kind == SELECTOR_WITHOUT_PAYLOAD:
        return "⚠️ No message provided after tag."
    return usage_help(prefix, registry)


def is_owner_message(event, owner_address):
    """
    判断消息是否由本人发出

    优先使用 from_owner 标记，否则比较来源地址的号码部分
    """
    if event.from_owner:
        return True
    return bool(owner_address) and address_user(event.origin) == address_user(owner_address)


def address_user(address):
    """'34612345678@s.whatsapp.net' -> '34612345678'"""
    if not address:
        return ''
    user = str(address).split('@', 1)[0]
    return user.split(':', 1)[0].lstrip('+')


def should_forward(sender_id, registry):
    """
    发送者是否在好友列表中，按整数精确比较

    只接受 int 或纯 ASCII 数字字符串，浮点数、bool 等一律不匹配
    """
    if isinstance(sender_id, bool):
        return False
    if isinstance(sender_id, str):
        if not is_digits(sender_id):
            return False
        sender_id = int(sender_id)
    if not isinstance(sender_id, int):
        return False
    return sender_id in registry.ids_all


def display_name(name, sender_id, registry):
    tag = registry.tag_for(sender_id)
    return f"{name} ({tag})" if tag else name


def format_inbound(name, sender_id, text, registry):
    """
    格式化转发到 WhatsApp 的消息

    Returns:
        str: 例如 "📨 TG | John Smith (john):\\n原始消息"
    """
    return f"{FORWARD_HEADER}{display_name(name, sender_id, registry)}:\n{text}"


def preview(text, limit=50):
    return text[:limit] + ('...' if len(text) > limit else '')
