from __future__ import annotations
import os, sys, math, time, asyncio, json, logging, yaml
from typing import Optional, Dict, List, Tuple, Callable, Awaitable, Literal, Mapping
from dataclasses import dataclass
from pathlib import Path

import aiohttp
from twitchio import eventsub
from twitchio.ext import commands

from video_links import detect_platform, is_valid_url

# ---- Env ----
# Full URL of the backend API, defaulting to the docker-compose service name.
BACKEND_URL = os.getenv('BACKEND_URL', 'http://api:3000')
# Token used for privileged requests to the backend.
ADMIN_TOKEN = os.getenv('ADMIN_TOKEN', 'change-me')
MESSAGES_PATH = Path(os.getenv('BOT_MESSAGES_PATH', str(Path(__file__).with_name('messages.yml'))))
COMMANDS_FILE = os.getenv('COMMANDS_FILE', str(Path(__file__).with_name('commands.yml')))
RATE_LIMIT_SECONDS = float(os.getenv('RATE_LIMIT_SECONDS', '60'))

DEFAULT_COMMANDS = {
    'prefix': '!',
    'video': ['video', 'v', 'addvideo'],
}

DEFAULT_MESSAGES = {
    'rate_limited': '@{user} please wait {seconds}s before sending another video',
    'invalid_url': '@{user} invalid format. Use: {command} <video URL>',
    'duplicate': '@{user} that link is already in the list.',
    'video_added': '@{user} added ✅ | It will show up in the list in a few seconds.',
    'failed': '@{user} could not save your video right now, try again later.',
}

# Variable name -> BotSettings field, in the order they are reported when missing.
REQUIRED_ENV = {
    'TWITCH_CLIENT_ID': 'client_id',
    'TWITCH_CLIENT_SECRET': 'client_secret',
    'TWITCH_BOT_ID': 'bot_user_id',
    'TWITCH_BOT_USERNAME': 'login',
    'TWITCH_OAUTH_TOKEN': 'token',
    'TWITCH_REFRESH_TOKEN': 'refresh_token',
    'TWITCH_CHANNEL': 'channel',
}

logger = logging.getLogger(__name__)

Outcome = Literal['ignored', 'rate_limited', 'invalid_url', 'duplicate', 'accepted', 'failed']

# ---- Backend client ----
class BackendError(RuntimeError):
    def __init__(self, status: int, detail: object):
        message = detail if isinstance(detail, str) else str(detail)
        super().__init__(message)
        self.status = status
        self.detail = message


class DuplicateSubmission(BackendError):
    pass


class Backend:
    def __init__(self, base_url: str, admin_token: str):
        self.base = base_url.rstrip('/')
        self.headers = {'X-Admin-Token': admin_token, 'Content-Type': 'application/json'}
        self.session: Optional[aiohttp.ClientSession] = None

    async def start(self):
        if not self.session:
            self.session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=10))

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None

    async def _req(self, method: str, path: str, payload: Optional[dict] = None,
                   params: Optional[Dict[str, str]] = None):
        if not self.session:
            await self.start()
        url = f"{self.base}{path}"
        async with self.session.request(
            method, url, headers=self.headers, params=params,
            data=json.dumps(payload) if payload else None,
        ) as r:
            content_type = r.headers.get('content-type', '')
            is_json = content_type.startswith('application/json')
            if r.status >= 400:
                detail: object = ''
                if is_json:
                    try:
                        data = await r.json()
                    except (aiohttp.ContentTypeError, ValueError):
                        data = None
                    if isinstance(data, dict) and 'detail' in data:
                        detail = data['detail']
                    else:
                        detail = data or ''
                if not detail:
                    detail = await r.text()
                if isinstance(detail, list):
                    detail = ', '.join(str(item) for item in detail)
                raise BackendError(r.status, detail or f"{method} {path} failed")
            if is_json:
                return await r.json()
            return await r.text()

    async def find_video(self, url: str) -> Optional[dict]:
        try:
            return await self._req('GET', "/api/videos/lookup", params={'url': url})
        except BackendError as exc:
            if exc.status == 404:
                return None
            raise

    async def add_video(self, url: str, platform: str, submitter: str) -> dict:
        try:
            return await self._req('POST', "/api/videos", {
                'url': url, 'platform': platform, 'submitter': submitter,
            })
        except BackendError as exc:
            if exc.status == 409:
                raise DuplicateSubmission(exc.status, exc.detail) from None
            raise


backend = Backend(BACKEND_URL, ADMIN_TOKEN)

# ---- settings ----
class MissingConfiguration(RuntimeError):
    def __init__(self, missing: List[str]):
        super().__init__('Missing bot configuration: ' + ', '.join(missing))
        self.missing = missing


@dataclass
class BotSettings:
    token: str
    refresh_token: str
    login: str
    client_id: str
    client_secret: str
    bot_user_id: str
    channel: str

    @classmethod
    def from_env(cls, env: Mapping[str, str]) -> 'BotSettings':
        values: Dict[str, str] = {}
        missing: List[str] = []
        for name, field in REQUIRED_ENV.items():
            value = (env.get(name) or '').strip()
            if not value:
                missing.append(name)
            values[field] = value
        if missing:
            raise MissingConfiguration(missing)
        values['token'] = _format_token(values['token'])
        values['channel'] = values['channel'].lstrip('#').lower()
        return cls(**values)


def _format_token(token: str) -> str:
    return token.removeprefix('oauth:') if token else token


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

# ---- rate limiter ----
@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    seconds_remaining: int = 0


class SubmissionRateLimiter:
    """Per-identity cooldown between accepted submissions.

    Entries live for the lifetime of the process. ``check`` never writes;
    callers ``record`` once a submission has actually been stored. There is no
    locking, so calls must be serialized by the owner.
    """

    def __init__(self, cooldown_seconds: float = 60):
        self.cooldown = float(cooldown_seconds)
        self._last_accepted: Dict[str, float] = {}

    def check(self, identity: str, now: float) -> RateLimitDecision:
        last = self._last_accepted.get(identity)
        if last is None:
            return RateLimitDecision(True)
        elapsed = now - last
        if elapsed >= self.cooldown:
            return RateLimitDecision(True)
        return RateLimitDecision(False, max(1, math.ceil(self.cooldown - elapsed)))

    def record(self, identity: str, now: float) -> None:
        self._last_accepted[identity] = now

    def reset(self) -> None:
        self._last_accepted.clear()

# ---- pipeline ----
@dataclass(frozen=True)
class ChatEvent:
    channel: str
    sender: str
    text: str
    is_self: bool = False


class CommandPipeline:
    def __init__(
        self,
        store,
        rate_limiter: SubmissionRateLimiter,
        send: Callable[[str, str], Awaitable[None]],
        *,
        commands_map: Optional[Dict[str, List[str]]] = None,
        messages: Optional[Dict[str, str]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.rate_limiter = rate_limiter
        self.send = send
        self.commands_map = commands_map or load_commands(COMMANDS_FILE)
        self.messages = messages or load_messages(MESSAGES_PATH)
        self.clock = clock
        self._lock = asyncio.Lock()

    def match_command(self, text: str) -> Tuple[Optional[str], str]:
        content = (text or '').strip()
        prefix = self.commands_map['prefix'][0]
        if not content.startswith(prefix):
            return None, ''
        cmd, *rest = content[len(prefix):].split(' ', 1)
        cmd_lower = cmd.lower()
        aliases = [alias.lower() for alias in self.commands_map['video']]
        if cmd_lower not in aliases or not rest:
            return None, ''
        return f"{prefix}{cmd_lower}", rest[0]

    async def handle(self, event: ChatEvent) -> Outcome:
        if event.is_self:
            return 'ignored'
        command, arg = self.match_command(event.text)
        if command is None:
            return 'ignored'
        async with self._lock:
            return await self._submit(event, command, arg)

    async def _reply(self, event: ChatEvent, key: str, **values: object) -> None:
        await self.send(event.channel, self.messages[key].format(user=event.sender, **values))

    async def _submit(self, event: ChatEvent, command: str, arg: str) -> Outcome:
        user = event.sender
        now = self.clock()
        decision = self.rate_limiter.check(user, now)
        if not decision.allowed:
            logger.info('Rate limited %s for %ss', user, decision.seconds_remaining)
            await self._reply(event, 'rate_limited', seconds=decision.seconds_remaining)
            return 'rate_limited'

        url = arg.strip()
        if not is_valid_url(url):
            logger.info('Rejected malformed link from %s: %r', user, url)
            await self._reply(event, 'invalid_url', command=command)
            return 'invalid_url'

        try:
            if await self.store.find_video(url):
                await self._reply(event, 'duplicate')
                return 'duplicate'
            platform = detect_platform(url)
            await self.store.add_video(url, platform, user)
        except DuplicateSubmission:
            await self._reply(event, 'duplicate')
            return 'duplicate'
        except (BackendError, aiohttp.ClientError, asyncio.TimeoutError):
            logger.exception('Failed to store video from %s', user)
            await self._reply(event, 'failed')
            return 'failed'

        self.rate_limiter.record(user, now)
        logger.info('Queued %s video from %s: %s', platform, user, url)
        await self._reply(event, 'video_added')
        return 'accepted'

# ---- bot ----
class VideoBot(commands.Bot):
    def __init__(
        self,
        settings: BotSettings,
        *,
        store=None,
        rate_limiter: Optional[SubmissionRateLimiter] = None,
    ):
        super().__init__(
            client_id=settings.client_id,
            client_secret=settings.client_secret,
            bot_id=str(settings.bot_user_id),
            prefix=load_commands(COMMANDS_FILE)['prefix'][0],
            fetch_client_user=False,
        )
        self.settings = settings
        self.bot_user_id = str(settings.bot_user_id)
        self.channel_login = settings.channel
        self.broadcaster_id: Optional[str] = None
        self.store = store or backend
        self.pipeline = CommandPipeline(
            self.store,
            rate_limiter or SubmissionRateLimiter(RATE_LIMIT_SECONDS),
            self.send_chat,
        )

    async def load_tokens(self, path: Optional[str] = None) -> None:
        await super().add_token(self.settings.token, self.settings.refresh_token)

    async def save_tokens(self, path: Optional[str] = None) -> None:
        # Tokens come from the environment; nothing is written back.
        return None

    async def event_ready(self) -> None:
        users = await self.fetch_users(logins=[self.channel_login])
        if not users:
            logger.error('Channel %s not found on Twitch', self.channel_login)
            return
        self.broadcaster_id = str(users[0].id)
        payload = eventsub.ChatMessageSubscription(
            broadcaster_user_id=self.broadcaster_id,
            user_id=self.bot_user_id,
        )
        await self.subscribe_websocket(payload=payload, as_bot=True)
        logger.info('Bot connected to #%s as %s', self.channel_login, self.settings.login)

    async def send_chat(self, channel: str, text: str) -> None:
        if not self.broadcaster_id:
            logger.warning('Dropping reply for #%s; channel not resolved yet', channel)
            return
        partial = self.create_partialuser(self.broadcaster_id, channel)
        try:
            await partial.send_message(text, sender=self.bot_user_id, token_for=self.bot_user_id)
        except Exception:
            logger.warning('Failed to send message to #%s', channel, exc_info=True)

    async def event_message(self, message) -> None:
        chatter = message.chatter
        event = ChatEvent(
            channel=self.channel_login,
            sender=getattr(chatter, 'display_name', None) or chatter.name,
            text=message.text or '',
            is_self=str(getattr(chatter, 'id', '')) == self.bot_user_id,
        )
        await self.pipeline.handle(event)

    async def close(self, **options) -> None:
        await super().close(**options)
        close_store = getattr(self.store, 'close', None)
        if callable(close_store):
            await close_store()

# ---- entry ----
async def main():
    logging.basicConfig(level=os.getenv('LOG_LEVEL', 'INFO').upper())
    try:
        settings = BotSettings.from_env(os.environ)
    except MissingConfiguration as exc:
        logger.error('%s', exc)
        sys.exit(1)
    await backend.start()
    bot = VideoBot(settings)
    await bot.start()

if __name__ == '__main__':
    asyncio.run(main())
