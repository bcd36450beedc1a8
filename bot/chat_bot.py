from __future__ import annotations
import os, asyncio, json, yaml
from typing import Optional, Dict, List, Callable, Awaitable, Any
from dataclasses import dataclass
from pathlib import Path

import aiohttp
from twitchio import eventsub
from twitchio.ext import commands

# ---- Env ----
# Full URL of the backend API, defaulting to the docker-compose service name.
BACKEND_URL = os.getenv('BACKEND_URL', 'http://api:7070')
# Token used for privileged requests to the backend.
ADMIN_TOKEN = os.getenv('ADMIN_TOKEN', 'change-me')
MESSAGES_PATH = Path(os.getenv("BOT_MESSAGES_PATH", "/bot/messages.yml"))
BACKEND_TIMEOUT_SECONDS = float(os.getenv('BACKEND_TIMEOUT_SECONDS', '10'))

COMMANDS_FILE = os.getenv('COMMANDS_FILE', '/bot/commands.yml')
DEFAULT_COMMANDS = {
    'prefix': '!',
    'request': ['request', 'sr', 'rr'],
    'vip': ['vip', 'viprequest'],
    'super_vip': ['svip', 'supervip'],
    'promote': ['promote', 'upgrade'],
    'edit': ['edit', 'editrequest'],
    'edit_super_vip': ['editsvip', 'editsuper'],
    'remove': ['remove', 'oops', 'undo'],
    'remove_super_vip': ['removesvip', 'removesuper'],
    'list': ['list', 'mylist', 'myrequests'],
    'vips': ['vips', 'tokens'],
    'gift': ['gift', 'giftvip'],
    'give_vip': ['givevip'],
    'open': ['open'],
    'close': ['close'],
    'very_close': ['veryclose'],
    'archive': ['next', 'played'],
    'clear': ['clear'],
}

DEFAULT_MESSAGES = {
    'request_added': '@{user} "{text}" is #{position} in the queue',
    'request_playing': '@{user} "{text}" is up right now',
    'vip_added': '@{user} VIP request "{text}" is #{position} in the VIP queue',
    'super_vip_added': '@{user} SuperVIP request "{text}" will be played next',
    'promoted': '@{user} "{text}" is now a VIP request at #{position}',
    'edited': '@{user} your request is now "{text}"',
    'removed': '@{user} removed "{text}"',
    'list': '@{user} your requests: {items}',
    'list_empty': '@{user} you have no requests in the queue',
    'vips': '@{user} you have {remaining} VIP tokens, a SuperVIP costs more than {super_vip_cost}',
    'gifted': '@{user} gifted a VIP to {receiver}',
    'granted': 'Gave {amount} VIP to {receiver}',
    'cleared': 'Cleared {cleared} requests',
    'mod_only': '@{user} only moderators can do that',
    'now_playing': 'Now playing "{text}" requested by @{requester}',
    'queue_finished': 'That was the last request in the queue',
    'status_open': 'The playlist is now open!',
    'status_closed': 'The playlist is closed, VIP and SuperVIP requests are still welcome',
    'status_very_closed': 'The playlist is now closed',
    'failed': '@{user} failed: {error}',
    'no_request_entered': '@{user} tell me what you want to request, e.g. !request Artist - Song',
    'invalid_input': '@{user} that did not look right, check the command',
    'playlist_closed': '@{user} the playlist is closed, only VIP requests are accepted right now',
    'playlist_very_closed': '@{user} the playlist is closed',
    'duplicate_request': '@{user} you already have a request in the queue, use !edit to change it',
    'only_one_super': '@{user} there is already a SuperVIP in the queue',
    'already_vip': '@{user} that request is already VIP',
    'request_is_current': '@{user} that request is playing right now',
    'insufficient_balance': '@{user} you do not have enough VIP tokens',
    'not_found': '@{user} I could not find that request',
    'not_your_request': '@{user} that is not your request',
    'request_already_removed': '@{user} that request was already removed',
    'no_request_in_list': '@{user} you have no requests in the queue',
    'no_request_provided': '@{user} tell me what to change your request to',
    'argument_error': '@{user} you have several VIP requests, use !edit <position> <new request>',
    'persistence_failure': '@{user} the queue is unavailable right now, try again shortly',
}

MOD_ONLY_COMMANDS = {'give_vip', 'open', 'close', 'very_close', 'archive', 'clear'}


# ---- Backend client ----
class BackendError(RuntimeError):
    def __init__(self, status: int, detail: object):
        message = detail if isinstance(detail, str) else str(detail)
        super().__init__(message)
        self.status = status
        self.detail = message

class Backend:
    def __init__(self, base_url: str, admin_token: str, timeout: float = BACKEND_TIMEOUT_SECONDS):
        self.base = base_url.rstrip('/')
        self.headers = { 'X-Admin-Token': admin_token, 'Content-Type': 'application/json' }
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.session: Optional[aiohttp.ClientSession] = None

    async def start(self):
        if not self.session:
            self.session = aiohttp.ClientSession(timeout=self.timeout)

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None

    async def _req(self, method: str, path: str, payload: Optional[dict] = None):
        if not self.session:
            await self.start()
        url = f"{self.base}{path}"
        async with self.session.request(method, url, headers=self.headers, data=json.dumps(payload) if payload else None) as r:
            content_type = r.headers.get('content-type', '')
            is_json = content_type.startswith('application/json')
            if r.status >= 400:
                detail: object = ''
                if is_json:
                    try:
                        data = await r.json()
                    except Exception:
                        data = None
                    if isinstance(data, dict) and 'detail' in data:
                        detail = data['detail']
                    else:
                        detail = data or ''
                if not detail:
                    try:
                        detail = await r.text()
                    except Exception:
                        detail = ''
                if isinstance(detail, list):
                    detail = ', '.join(str(item) for item in detail)
                raise BackendError(r.status, detail or f"{method} {path} failed")
            if is_json:
                return await r.json()
            return await r.text()

    async def add_request(self, username: str, text: str, *, vip: bool = False):
        return await self._req('POST', "/playlist/requests", {'username': username, 'text': text, 'vip': vip})

    async def add_super_request(self, username: str, text: str):
        return await self._req('POST', "/playlist/requests/super", {'username': username, 'text': text})

    async def edit_super_request(self, username: str, text: str):
        return await self._req('PUT', "/playlist/requests/super", {'username': username, 'text': text})

    async def remove_super_request(self, username: str):
        return await self._req('POST', "/playlist/requests/super/remove", {'username': username})

    async def promote_request(self, username: str):
        return await self._req('POST', "/playlist/requests/promote", {'username': username})

    async def edit_request(self, username: str, command: str):
        return await self._req('POST', "/playlist/requests/edit", {'username': username, 'command': command})

    async def remove_request(self, username: str, command: str, *, is_mod: bool = False):
        payload = {'username': username, 'command': command, 'is_mod': is_mod}
        return await self._req('POST', "/playlist/requests/remove", payload)

    async def archive_current(self):
        return await self._req('POST', "/playlist/current/archive")

    async def clear_requests(self):
        return await self._req('POST', "/playlist/clear")

    async def set_playlist_status(self, status: str):
        return await self._req('PUT', "/playlist/status", {'status': status})

    async def user_requests(self, username: str):
        return await self._req('GET', f"/users/{username}/requests")

    async def token_account(self, username: str):
        return await self._req('GET', f"/users/{username}/vips")

    async def grant_vips(self, username: str, amount: int, source: str = 'mod'):
        return await self._req('POST', f"/users/{username}/vips", {'source': source, 'amount': amount})

    async def gift_vip(self, donor: str, receiver: str):
        return await self._req('POST', f"/users/{donor}/vips/gift", {'receiver': receiver})

    async def mark_seen(self, username: str):
        return await self._req('POST', f"/users/{username}/seen")

    async def set_stream_status(self, broadcaster: str, online: bool):
        return await self._req('PUT', "/stream/status", {'broadcaster': broadcaster, 'online': online})

    async def push_bot_log(
        self,
        *,
        level: str = 'info',
        message: str,
        metadata: Optional[Dict[str, object]] = None,
    ) -> Dict[str, object]:
        payload = {
            'level': level,
            'message': message,
            'metadata': metadata or {},
            'source': 'bot',
        }
        return await self._req('POST', "/bot/logs", payload)


backend = Backend(BACKEND_URL, ADMIN_TOKEN)


@dataclass
class BotSettings:
    token: Optional[str]
    refresh_token: Optional[str]
    client_id: Optional[str]
    client_secret: Optional[str]
    bot_user_id: Optional[str]
    channel_login: Optional[str]
    channel_id: Optional[str]

    @classmethod
    def from_env(cls, env: Optional[Dict[str, str]] = None) -> "BotSettings":
        source = os.environ if env is None else env

        def value(name: str) -> Optional[str]:
            raw = (source.get(name) or '').strip()
            return raw or None

        return cls(
            token=value('BOT_TOKEN'),
            refresh_token=value('BOT_REFRESH_TOKEN'),
            client_id=value('TWITCH_CLIENT_ID'),
            client_secret=value('TWITCH_CLIENT_SECRET'),
            bot_user_id=value('BOT_USER_ID'),
            channel_login=(value('STREAMER_CHANNEL') or '').lower() or None,
            channel_id=value('STREAMER_CHANNEL_ID'),
        )

    def missing(self) -> List[str]:
        required = {
            'BOT_TOKEN': self.token,
            'BOT_REFRESH_TOKEN': self.refresh_token,
            'TWITCH_CLIENT_ID': self.client_id,
            'TWITCH_CLIENT_SECRET': self.client_secret,
            'BOT_USER_ID': self.bot_user_id,
            'STREAMER_CHANNEL': self.channel_login,
            'STREAMER_CHANNEL_ID': self.channel_id,
        }
        return [name for name, current in required.items() if not current]


async def push_console_event(
    level: str,
    message: str,
    *,
    event: Optional[str] = None,
    metadata: Optional[Dict[str, object]] = None,
):
    meta = dict(metadata or {})
    if event:
        meta.setdefault('event', event)
    try:
        await backend.push_bot_log(level=level, message=message, metadata=meta)
    except Exception:
        # Console streaming is best-effort; avoid crashing the bot when the
        # backend is temporarily unavailable.
        pass

# ---- helpers ----
def load_commands(path: str) -> Dict[str, List[str]]:
    cfg = DEFAULT_COMMANDS.copy()
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
            cfg.update(data)
    except FileNotFoundError:
        pass
    return {k: v if isinstance(v, list) else [v] for k, v in cfg.items()}


def load_messages(path: Path) -> Dict[str, str]:
    cfg: Dict[str, str] = DEFAULT_MESSAGES.copy()
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
            cfg.update(data)
    except FileNotFoundError:
        pass
    return cfg


@dataclass
class ChatContext:
    user: str
    text: str
    is_mod: bool = False
    message_id: Optional[str] = None


SendFunc = Callable[[str, Optional[str]], Awaitable[None]]


class CommandRouter:
    """Turns chat commands into backend calls and backend events into chat text.

    ``send(text, reply_to)`` is the chat sink; the router never talks to
    Twitch directly so it can run without a connection.
    """

    def __init__(
        self,
        backend_client: Backend,
        send: SendFunc,
        *,
        commands_map: Optional[Dict[str, List[str]]] = None,
        messages: Optional[Dict[str, str]] = None,
    ):
        self.backend = backend_client
        self.send = send
        self.commands_map = commands_map or load_commands(COMMANDS_FILE)
        self.messages = messages or load_messages(MESSAGES_PATH)
        self.handlers: Dict[str, Callable[[ChatContext, str], Awaitable[None]]] = {
            'request': self.handle_request,
            'vip': self.handle_vip,
            'super_vip': self.handle_super_vip,
            'promote': self.handle_promote,
            'edit': self.handle_edit,
            'edit_super_vip': self.handle_edit_super_vip,
            'remove': self.handle_remove,
            'remove_super_vip': self.handle_remove_super_vip,
            'list': self.handle_list,
            'vips': self.handle_vips,
            'gift': self.handle_gift,
            'give_vip': self.handle_give_vip,
            'open': self.handle_open,
            'close': self.handle_close,
            'very_close': self.handle_very_close,
            'archive': self.handle_archive,
            'clear': self.handle_clear,
        }

    def resolve_command(self, content: str) -> Optional[tuple[str, str]]:
        prefix = self.commands_map['prefix'][0]
        content = (content or '').strip()
        if not content.startswith(prefix):
            return None
        cmd, *rest = content[len(prefix):].split(' ', 1)
        args = rest[0].strip() if rest else ''
        cmd_lower = cmd.lower()
        for name in self.handlers:
            if cmd_lower in self.commands_map.get(name, []):
                return name, args
        return None

    def format(self, key: str, **values: object) -> str:
        template = self.messages.get(key) or self.messages['failed']
        try:
            return template.format(**values)
        except (KeyError, IndexError):
            return template

    async def reply(self, ctx: ChatContext, key: str, **values: object) -> None:
        await self.send(self.format(key, user=ctx.user, **values), ctx.message_id)

    async def dispatch(self, ctx: ChatContext) -> bool:
        resolved = self.resolve_command(ctx.text)
        if resolved is None:
            return False
        name, args = resolved
        if name in MOD_ONLY_COMMANDS and not ctx.is_mod:
            await self.reply(ctx, 'mod_only')
            return True
        try:
            await self.handlers[name](ctx, args)
        except BackendError as exc:
            if exc.detail in self.messages:
                await self.reply(ctx, exc.detail)
            else:
                await self.reply(ctx, 'failed', error=exc.detail)
        except Exception as exc:
            await push_console_event(
                'error',
                f'Command {name} failed for {ctx.user}: {exc}',
                event='command',
                metadata={'command': name},
            )
            await self.reply(ctx, 'failed', error=exc)
        return True

    async def _acknowledge_add(self, ctx: ChatContext, key: str, data: Dict[str, Any]) -> None:
        request = data.get('request') or {}
        position = data.get('position')
        if position == 0:
            key = 'request_playing'
        await self.reply(ctx, key, text=request.get('text', ''), position=position)

    async def handle_request(self, ctx: ChatContext, args: str) -> None:
        data = await self.backend.add_request(ctx.user, args)
        await self._acknowledge_add(ctx, 'request_added', data)

    async def handle_vip(self, ctx: ChatContext, args: str) -> None:
        data = await self.backend.add_request(ctx.user, args, vip=True)
        await self._acknowledge_add(ctx, 'vip_added', data)

    async def handle_super_vip(self, ctx: ChatContext, args: str) -> None:
        data = await self.backend.add_super_request(ctx.user, args)
        await self._acknowledge_add(ctx, 'super_vip_added', data)

    async def handle_promote(self, ctx: ChatContext, args: str) -> None:
        data = await self.backend.promote_request(ctx.user)
        await self._acknowledge_add(ctx, 'promoted', data)

    async def handle_edit(self, ctx: ChatContext, args: str) -> None:
        data = await self.backend.edit_request(ctx.user, args)
        await self.reply(ctx, 'edited', text=(data.get('request') or {}).get('text', ''))

    async def handle_edit_super_vip(self, ctx: ChatContext, args: str) -> None:
        data = await self.backend.edit_super_request(ctx.user, args)
        await self.reply(ctx, 'edited', text=(data.get('request') or {}).get('text', ''))

    async def handle_remove(self, ctx: ChatContext, args: str) -> None:
        data = await self.backend.remove_request(ctx.user, args, is_mod=ctx.is_mod)
        await self.reply(ctx, 'removed', text=(data.get('request') or {}).get('text', ''))

    async def handle_remove_super_vip(self, ctx: ChatContext, args: str) -> None:
        data = await self.backend.remove_super_request(ctx.user)
        await self.reply(ctx, 'removed', text=(data.get('request') or {}).get('text', ''))

    async def handle_list(self, ctx: ChatContext, args: str) -> None:
        data = await self.backend.user_requests(ctx.user)
        items = (data.get('data') or {}).get('requests') or []
        if not items:
            await self.reply(ctx, 'list_empty')
            return
        await self.reply(ctx, 'list', items=', '.join(item['label'] for item in items))

    async def handle_vips(self, ctx: ChatContext, args: str) -> None:
        data = await self.backend.token_account(ctx.user)
        account = data.get('data') or {}
        await self.reply(
            ctx,
            'vips',
            remaining=account.get('remaining', 0),
            super_vip_cost=account.get('super_vip_cost', ''),
        )

    async def handle_gift(self, ctx: ChatContext, args: str) -> None:
        receiver = args.split(' ', 1)[0].lstrip('@') if args else ''
        if not receiver:
            await self.reply(ctx, 'invalid_input')
            return
        await self.backend.gift_vip(ctx.user, receiver)
        await self.reply(ctx, 'gifted', receiver=receiver)

    async def handle_give_vip(self, ctx: ChatContext, args: str) -> None:
        parts = args.split()
        if not parts:
            await self.reply(ctx, 'invalid_input')
            return
        receiver = parts[0].lstrip('@')
        amount = 1
        if len(parts) > 1:
            try:
                amount = int(parts[1])
            except ValueError:
                await self.reply(ctx, 'invalid_input')
                return
        await self.backend.grant_vips(receiver, amount)
        await self.reply(ctx, 'granted', receiver=receiver, amount=amount)

    async def handle_open(self, ctx: ChatContext, args: str) -> None:
        await self.backend.set_playlist_status('open')

    async def handle_close(self, ctx: ChatContext, args: str) -> None:
        await self.backend.set_playlist_status('closed')

    async def handle_very_close(self, ctx: ChatContext, args: str) -> None:
        await self.backend.set_playlist_status('very_closed')

    async def handle_archive(self, ctx: ChatContext, args: str) -> None:
        # The rotation announcement arrives through the playlist stream.
        await self.backend.archive_current()

    async def handle_clear(self, ctx: ChatContext, args: str) -> None:
        data = await self.backend.clear_requests()
        await self.reply(ctx, 'cleared', cleared=(data.get('data') or {}).get('cleared', 0))

    async def announce_event(self, event: Dict[str, Any]) -> None:
        etype = event.get('type')
        payload = event.get('payload') or {}
        if etype == 'current.changed':
            current = payload.get('current')
            if current:
                message = self.format('now_playing', text=current.get('text', ''), requester=current.get('requester', ''))
            elif payload.get('previous'):
                message = self.format('queue_finished')
            else:
                return
        elif etype == 'playlist.status':
            message = self.format(f"status_{payload.get('status')}")
        else:
            return
        await self.send(message, None)


# ---- bot ----
class SongQueueBot(commands.Bot):
    def __init__(self, settings: BotSettings, *, router: Optional[CommandRouter] = None):
        missing = settings.missing()
        if missing:
            raise RuntimeError(f"missing bot settings: {', '.join(missing)}")
        commands_map = load_commands(COMMANDS_FILE)
        super().__init__(
            client_id=settings.client_id,
            client_secret=settings.client_secret,
            bot_id=str(settings.bot_user_id),
            prefix=commands_map['prefix'][0],
            fetch_client_user=False,
        )
        self.settings = settings
        self.bot_user_id = str(settings.bot_user_id)
        self.router = router or CommandRouter(backend, self._send_message, commands_map=commands_map)
        self._listener_task: Optional[asyncio.Task] = None

    async def load_tokens(self, path: Optional[str] = None) -> None:
        await super().add_token(self.settings.token, self.settings.refresh_token)

    async def save_tokens(self, path: Optional[str] = None) -> None:
        # Tokens come from the environment, so skip file writes.
        return None

    async def setup_hook(self) -> None:
        payload = eventsub.ChatMessageSubscription(
            broadcaster_user_id=self.settings.channel_id,
            user_id=self.bot_user_id,
        )
        await self.subscribe_websocket(payload=payload, as_bot=True)
        for subscription in (
            eventsub.StreamOnlineSubscription(broadcaster_user_id=self.settings.channel_id),
            eventsub.StreamOfflineSubscription(broadcaster_user_id=self.settings.channel_id),
        ):
            await self.subscribe_websocket(payload=subscription, as_bot=True)

    async def event_ready(self) -> None:
        await push_console_event('info', f'Connected to {self.settings.channel_login}', event='lifecycle')
        if self._listener_task is None or self._listener_task.done():
            self._listener_task = asyncio.create_task(self.listen_backend())

    async def _report_stream_status(self, online: bool) -> None:
        channel_label = self.settings.channel_login
        try:
            await backend.set_stream_status(channel_label, online)
            await push_console_event(
                'info',
                f"Stream {channel_label} is {'online' if online else 'offline'}",
                event='stream',
                metadata={'channel': channel_label, 'online': online},
            )
        except Exception as exc:
            await push_console_event(
                'error',
                f'Failed to report stream status for {channel_label}: {exc}',
                event='stream',
                metadata={'channel': channel_label, 'error': str(exc)},
            )

    async def event_stream_online(self, payload) -> None:
        await self._report_stream_status(True)

    async def event_stream_offline(self, payload) -> None:
        await self._report_stream_status(False)

    async def _send_message(self, message: str, reply_to: Optional[str] = None) -> None:
        channel_label = self.settings.channel_login
        try:
            partial = self.create_partialuser(self.settings.channel_id, self.settings.channel_login)
            await partial.send_message(
                message,
                sender=self.bot_user_id,
                token_for=self.bot_user_id,
                reply_to_message_id=reply_to,
            )
            await push_console_event(
                'info',
                f'Sent message to {channel_label}',
                event='message',
                metadata={'sent_text': message, 'channel': channel_label},
            )
        except Exception as exc:
            await push_console_event(
                'error',
                f'Failed to send message to {channel_label}: {exc}',
                event='message',
                metadata={'channel': channel_label, 'error': str(exc)},
            )

    async def _mark_seen(self, username: str) -> None:
        try:
            await backend.mark_seen(username)
        except Exception as exc:
            await push_console_event(
                'warning',
                f'Failed to record chat presence for {username}: {exc}',
                event='presence',
            )

    async def event_message(self, message) -> None:
        if getattr(message.chatter, 'id', None) == self.bot_user_id:
            return
        username = (message.chatter.name or '').lower()
        await self._mark_seen(username)
        ctx = ChatContext(
            user=username,
            text=(message.text or '').strip(),
            is_mod=bool(message.chatter.moderator or message.chatter.broadcaster),
            message_id=message.id,
        )
        await self.router.dispatch(ctx)

    async def listen_backend(self) -> None:
        url = f"{backend.base}/playlist/stream"
        while True:
            try:
                if backend.session is None:
                    await backend.start()
                async with backend.session.get(url, timeout=aiohttp.ClientTimeout(total=None, sock_read=None)) as resp:
                    async for line in resp.content:
                        line = line.decode().strip()
                        if not line.startswith('data:'):
                            continue
                        try:
                            event = json.loads(line[len('data:'):].strip())
                        except ValueError:
                            continue
                        if isinstance(event, dict):
                            await self.router.announce_event(event)
            except asyncio.CancelledError:
                break
            except Exception as exc:
                await push_console_event(
                    'error',
                    f'Playlist stream error: {exc}',
                    event='backend',
                )
                await asyncio.sleep(5)

    async def close(self, **options) -> None:
        if self._listener_task:
            self._listener_task.cancel()
            await asyncio.gather(self._listener_task, return_exceptions=True)
            self._listener_task = None
        await super().close(**options)
        await backend.close()


# ---- entry ----
async def main():
    settings = BotSettings.from_env()
    await backend.start()
    bot = SongQueueBot(settings)
    async with bot:
        await bot.start()

if __name__ == '__main__':
    asyncio.run(main())
