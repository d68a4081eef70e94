import argparse
import asyncio
import logging
import os
import sys

from telethon import TelegramClient, events
from telethon.errors import RPCError
from telethon.sessions import StringSession
from telethon.tl.types import Chat, Channel, User

import router
from config import ConfigError, load_config
from whatsapp import WhatsAppSide

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def read_session(path):
    if not os.path.exists(path):
        return ''
    with open(path, 'r', encoding='utf-8') as f:
        return f.read().strip()


def sender_full_name(sender):
    """
    构建发送者显示名称：姓名 > 用户名 > ID
    """
    if sender is None:
        return "未知用户"
    if not isinstance(sender, User):
        return getattr(sender, 'title', None) or str(sender.id)

    name_parts = []
    if getattr(sender, 'first_name', None):
        name_parts.append(sender.first_name)
    if getattr(sender, 'last_name', None):
        name_parts.append(sender.last_name)
    if name_parts:
        return " ".join(name_parts)
    if getattr(sender, 'username', None):
        return sender.username
    return str(sender.id)


class TelegramWhatsAppBridge:
    def __init__(self, config, client=None, whatsapp=None):
        """
        初始化桥接

        Args:
            config (BridgeConfig): 启动时加载的配置
            client: Telegram 客户端，默认使用保存的会话创建
            whatsapp: WhatsApp 客户端封装，默认使用 config 中的登录目录
        """
        self.config = config
        self.friends = config.friends
        if client is None:
            client = TelegramClient(
                StringSession(read_session(config.session_file)),
                config.api_id, config.api_hash,
                connection_retries=5,
            )
        self.client = client
        self.whatsapp = whatsapp or WhatsAppSide(config.whatsapp_auth_dir)
        self.me = None
        self.is_running = False

    async def start_client(self):
        """
        连接 Telegram，使用已保存的会话
        """
        logger.info("正在连接到Telegram...")
        await self.client.connect()
        if not await self.client.is_user_authorized():
            raise ConfigError("Telegram 会话无效或已过期，请先运行: python main.py login")
        self.me = await self.client.get_me()
        logger.info(f"成功登录到账号 {self.me.first_name} (@{self.me.username})")
        # 预先加载对话列表，send_message 才能通过数字ID找到好友
        await self.client.get_dialogs()

    async def keep_alive(self):
        """
        保持连接活跃
        """
        while self.is_running:
            try:
                await self.client.get_me()
                await asyncio.sleep(60)
            except Exception as e:
                logger.warning(f"保持连接活跃时出错: {e}")
                await asyncio.sleep(60)

    async def send_telegram(self, friend_id, text):
        await self.client.send_message(friend_id, text)

    async def reply_whatsapp(self, chat, text):
        """
        回复到 WhatsApp 上发出指令的对话，失败只记录日志
        """
        try:
            await asyncio.wait_for(self.whatsapp.send_text(chat, text), self.config.send_timeout)
        except Exception as e:
            logger.error(f"无法发送 WhatsApp 回复: {str(e) or type(e).__name__}")

    async def handle_whatsapp_message(self, event, chat):
        """
        WhatsApp -> Telegram

        只处理本人发出且以前缀开头的消息，每条指令回复一次
        """
        if not router.is_owner_message(event, self.config.whatsapp_number):
            return
        if not event.text:
            return

        outcome = router.parse_command(event.text, self.config.prefix, self.friends)
        if outcome is None:
            return

        try:
            if isinstance(outcome, router.ParseError):
                await self.reply_whatsapp(chat, router.error_reply(outcome, self.config.prefix, self.friends))
                return

            resolved = router.resolve_recipients(outcome.selector, self.friends)
            if isinstance(resolved, router.UnknownSelector):
                await self.reply_whatsapp(chat, router.error_reply(resolved, self.config.prefix, self.friends))
                return
            destinations, description = resolved

            logger.info(f"[WhatsApp -> Telegram] 发送给 {description} ({len(destinations)} 个收件人): "
                        f"\"{router.preview(outcome.payload)}\"")

            results = await router.dispatch(
                destinations, outcome.payload, self.send_telegram,
                self.config.send_timeout, self.friends,
            )
            await self.reply_whatsapp(chat, router.summarize(results, outcome.selector))
        except Exception as e:
            logger.error(f"WhatsApp -> Telegram 转发出错: {e}")
            await self.reply_whatsapp(chat, "❌ Error sending message to Telegram")

    async def handle_telegram_message(self, event):
        """
        Telegram -> WhatsApp

        只转发好友列表中的发送者的文本消息，发送到本人的 WhatsApp
        """
        try:
            message = event.message
            if not message or not message.text:
                return

            sender_id = message.sender_id
            if not router.should_forward(sender_id, self.friends):
                return
            sender_id = int(sender_id)

            sender = await message.get_sender()
            name = sender_full_name(sender)
            logger.info(f"[Telegram -> WhatsApp] 来自 {router.display_name(name, sender_id, self.friends)} "
                        f"(ID: {sender_id}): \"{router.preview(message.text)}\"")

            forwarded = router.format_inbound(name, sender_id, message.text, self.friends)
            await asyncio.wait_for(
                self.whatsapp.send_text(self.config.whatsapp_number, forwarded),
                self.config.send_timeout,
            )
            logger.info("已转发到 WhatsApp")
        except Exception as e:
            logger.error(f"Telegram -> WhatsApp 转发出错: {str(e) or type(e).__name__}")

    def register_handlers(self):
        self.client.add_event_handler(self.handle_telegram_message, events.NewMessage(incoming=True))
        self.whatsapp.on_message(self.handle_whatsapp_message)

    async def run(self):
        """
        运行桥接，直到 Telegram 断开连接
        """
        keep_alive_task = None
        try:
            await self.start_client()
            self.register_handlers()
            await self.whatsapp.start()

            logger.info(f"桥接已启动: Telegram -> WhatsApp 转发 {len(self.friends.ids_all)} 个好友的消息，"
                        f"WhatsApp -> Telegram 处理以 \"{self.config.prefix}\" 开头的消息 (不区分大小写)")
            if self.friends.tag_to_id:
                tags = ', '.join(f"{tag}:{friend_id}" for tag, friend_id in self.friends.tag_to_id.items())
                logger.info(f"好友标签: {tags}")

            self.is_running = True
            keep_alive_task = asyncio.create_task(self.keep_alive())
            await self.client.run_until_disconnected()
        finally:
            self.is_running = False
            if keep_alive_task is not None:
                keep_alive_task.cancel()
            await self.shutdown()

    async def shutdown(self):
        logger.info("正在断开连接...")
        try:
            await self.client.disconnect()
        except Exception as e:
            logger.warning(f"断开 Telegram 时出错: {e}")
        try:
            await self.whatsapp.stop()
        except Exception as e:
            logger.warning(f"断开 WhatsApp 时出错: {e}")


async def get_dialogs_list(client, limit=50):
    """
    获取最近的对话列表（用户、群组、频道）
    """
    dialogs = []
    async for dialog in client.iter_dialogs(limit=limit):
        entity = dialog.entity
        if isinstance(entity, User):
            kind = 'user'
        elif isinstance(entity, Chat):
            kind = 'group'
        elif isinstance(entity, Channel):
            kind = 'supergroup' if getattr(entity, 'megagroup', False) else 'channel'
        else:
            continue
        dialogs.append({
            'id': entity.id,
            'title': dialog.name,
            'type': kind,
            'username': getattr(entity, 'username', None)
        })
    return dialogs


async def list_dialogs_formatted(config):
    """
    输出最近的对话及其数字ID，用于填写 FRIEND_TELEGRAM_IDS
    """
    session = read_session(config.session_file)
    if not session:
        raise ConfigError(f"找不到 Telegram 会话文件 {config.session_file}，请先运行: python main.py login")

    client = TelegramClient(StringSession(session), config.api_id, config.api_hash)
    try:
        await client.connect()
        dialogs = await get_dialogs_list(client)
        if not dialogs:
            print("没有找到对话")
            return []

        print("\n=== 最近的对话 ===")
        for i, dialog in enumerate(dialogs):
            username_str = f" (@{dialog['username']})" if dialog['username'] else ""
            print(f"[{i+1}] ID: {dialog['id']}")
            print(f"    名称: {dialog['title']}{username_str}")
            print(f"    类型: {dialog['type']}")
            print("-" * 30)

        users = sum(1 for d in dialogs if d['type'] == 'user')
        print(f"共 {len(dialogs)} 个对话 ({users} 个用户)")
        print("将好友的数字ID填写到 .env 的 FRIEND_TELEGRAM_IDS 中，不要填写 @用户名")
        return dialogs
    finally:
        await client.disconnect()


async def login(config):
    """
    交互式登录 Telegram 并保存会话字符串
    """
    client = TelegramClient(StringSession(read_session(config.session_file)), config.api_id, config.api_hash)
    try:
        await client.start(
            phone=lambda: config.phone,
            code_callback=lambda: input("请输入收到的验证码: "),
            password=lambda: input("请输入两步验证密码: "),
        )
        me = await client.get_me()
        logger.info(f"成功登录到账号 {me.first_name} (@{me.username})，用户ID: {me.id}")

        with open(config.session_file, 'w', encoding='utf-8') as f:
            f.write(client.session.save())
        logger.info(f"会话已保存到 {config.session_file}")
    finally:
        await client.disconnect()


def build_parser():
    parser = argparse.ArgumentParser(prog="main.py", description="Telegram <-> WhatsApp 消息桥接")
    parser.add_argument("command", nargs="?", default="run", choices=["run", "login", "dialogs"],
                        help="run: 运行桥接 (默认); login: 登录 Telegram; dialogs: 列出对话ID")
    parser.add_argument("--env", default=None, help=".env 文件路径")
    return parser


async def main(argv=None):
    """
    主函数
    """
    args = build_parser().parse_args(argv)
    try:
        config = load_config(dotenv_path=args.env, telegram_only=args.command != "run")
    except ConfigError as e:
        logging.basicConfig(format=LOG_FORMAT, level=logging.INFO)
        logger.error(f"配置错误: {e}")
        sys.exit(1)

    logging.basicConfig(format=LOG_FORMAT, level=getattr(logging, config.log_level, logging.INFO))

    try:
        if args.command == "login":
            await login(config)
        elif args.command == "dialogs":
            await list_dialogs_formatted(config)
        else:
            if not read_session(config.session_file):
                raise ConfigError(f"找不到 Telegram 会话文件 {config.session_file}，请先运行: python main.py login")
            await TelegramWhatsAppBridge(config).run()
    except ConfigError as e:
        logger.error(f"配置错误: {e}")
        sys.exit(1)
    except RPCError as e:
        logger.error(f"Telegram 请求失败: {e}")
        sys.exit(1)


def cli(argv=None):
    try:
        asyncio.run(main(argv))
    except KeyboardInterrupt:
        logger.info("用户中断，桥接已停止")


if __name__ == "__main__":
    cli()
