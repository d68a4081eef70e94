"""
WhatsApp 客户端封装
基于 pyaileys，负责登录态保存、二维码显示、消息收发
"""

import asyncio
import logging

import qrcode
from pyaileys import WhatsAppClient
from pyaileys.wabinary import S_WHATSAPP_NET, jid_normalized_user

from router import InboundEvent, address_user

logger = logging.getLogger(__name__)


def number_to_jid(number):
    """'34612345678' -> '34612345678@s.whatsapp.net'"""
    if '@' in str(number):
        return str(number)
    return f"{address_user(number)}{S_WHATSAPP_NET}"


class WhatsAppSide:
    reconnect_delay = 1.0
    max_reconnect_delay = 60.0

    def __init__(self, auth_dir):
        """
        初始化 WhatsApp 客户端

        Args:
            auth_dir (str): 登录凭据保存目录，扫码一次后无需重复登录
        """
        self.auth_dir = auth_dir
        self.client = None
        self.auth_state = None
        self._handlers = []
        self._tasks = set()
        self._stopping = False
        self._reconnect_task = None

    async def start(self):
        """加载登录凭据并连接"""
        logger.info("正在连接到 WhatsApp...")
        self._stopping = False
        self.client, self.auth_state = await WhatsAppClient.from_auth_folder(self.auth_dir)
        self.client.on("connection.update", self._on_connection_update)
        self.client.on("creds.update", self._on_creds_update)
        self.client.on("message.decrypted", self._on_decrypted)
        await self.client.connect()

    async def stop(self):
        self._stopping = True
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
        if self.client is not None:
            await self.client.disconnect()

    def schedule_reconnect(self):
        """连接断开后在后台重连，已有重连任务时不重复创建"""
        if self._stopping:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self.reconnect())
        self._tasks.add(self._reconnect_task)
        self._reconnect_task.add_done_callback(self._tasks.discard)

    async def reconnect(self):
        """
        按指数退避重连，直到连接成功或调用了 stop()
        """
        delay = self.reconnect_delay
        while not self._stopping:
            await asyncio.sleep(delay)
            if self._stopping:
                return
            # pyaileys 收到 515 时会自己重启连接
            if self.client.socket.is_open:
                return
            try:
                logger.info("正在重新连接 WhatsApp...")
                await self.client.connect()
                return
            except Exception as e:
                delay = min(delay * 2, self.max_reconnect_delay)
                logger.warning(f"WhatsApp 重连失败: {e}，{delay}s 后重试")

    def on_message(self, handler):
        """注册入站消息回调，handler 接收 InboundEvent"""
        self._handlers.append(handler)

    @property
    def own_jid(self):
        if self.client is None:
            return ''
        me = self.client.socket.auth.creds.me
        return jid_normalized_user(me.id) if me and me.id else ''

    @property
    def own_jids(self):
        """本账号的手机号 JID 和 LID（群消息的 participant 可能是 LID）"""
        if self.client is None:
            return set()
        me = self.client.socket.auth.creds.me
        if not me:
            return set()
        return {jid_normalized_user(jid) for jid in (me.id, me.lid) if jid}

    async def send_text(self, destination, text):
        await self.client.send_text(number_to_jid(destination), text)

    async def _on_connection_update(self, update):
        if update.qr:
            logger.warning("WhatsApp 登录已失效或不存在，请扫描二维码 (WhatsApp -> 已关联的设备 -> 关联新设备)")
            qr = qrcode.QRCode(border=1)
            qr.add_data(update.qr)
            qr.make(fit=True)
            qr.print_ascii(invert=True)
        if update.connection == "open":
            logger.info(f"WhatsApp 已连接: {self.own_jid or '(未知账号)'}")
        elif update.connection == "close":
            if self._stopping:
                logger.info("WhatsApp 已断开")
                return
            logger.warning(f"WhatsApp 连接断开: {update.last_disconnect}，准备重连")
            self.schedule_reconnect()

    async def _on_creds_update(self, _creds):
        await self.auth_state.save_creds()

    def to_event(self, ev):
        """
        将 pyaileys 的 message.decrypted 事件转换为 InboundEvent

        pyaileys 不直接提供 fromMe 标记，通过比较发送者与本账号判断
        """
        sender = ev.get("sender_jid") or ev.get("chat_jid") or ''
        from_me = bool(sender) and jid_normalized_user(sender) in self.own_jids
        return InboundEvent(
            sender_id=sender,
            sender_name=address_user(sender),
            text=ev.get("text"),
            from_owner=from_me,
            origin=sender,
        )

    async def _on_decrypted(self, ev):
        event = self.to_event(ev)
        chat = ev.get("chat_jid") or event.origin
        # pyaileys 在接收循环中直接 await 回调，处理放到独立任务里
        for handler in self._handlers:
            task = asyncio.create_task(self._run_handler(handler, event, chat))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run_handler(self, handler, event, chat):
        try:
            await handler(event, chat)
        except Exception as e:
            logger.error(f"处理 WhatsApp 消息时出错: {e}")
