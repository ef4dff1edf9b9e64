import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import List, Optional
import httpx
import structlog

from .config import Settings
from .models import RiskWarning, Severity

logger = structlog.get_logger()

SEVERITY_GLYPHS = {
    Severity.CRITICAL: "🚨",
    Severity.HIGH: "⚠️",
    Severity.MEDIUM: "⚡",
    Severity.LOW: "ℹ️",
}
DEFAULT_GLYPH = "📢"


def format_timestamp(timestamp: datetime) -> str:
    """Render in UTC. Naive timestamps are taken to be UTC already."""
    if timestamp.tzinfo is not None:
        timestamp = timestamp.astimezone(timezone.utc)
    return timestamp.strftime("%Y-%m-%d %H:%M:%S UTC")


def format_alert(warning: RiskWarning, address: str) -> str:
    """Render a warning as a chat message"""
    glyph = SEVERITY_GLYPHS.get(warning.severity, DEFAULT_GLYPH)
    return (
        f"{glyph} Risk Alert for {address}\n\n"
        f"Type: {warning.type.value}\n"
        f"Severity: {warning.severity.value}\n"
        f"Message: {warning.message}\n"
        f"Time: {format_timestamp(warning.timestamp)}"
    )


class NotificationChannel(ABC):
    """A single outbound notification transport"""

    name: str = "channel"

    @property
    @abstractmethod
    def is_configured(self) -> bool:
        ...

    @abstractmethod
    async def send(self, message: str) -> None:
        ...

    async def close(self) -> None:
        pass


class WebhookChannel(NotificationChannel):
    """Base class for channels that POST JSON over HTTP"""

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: float = 10.0):
        self._client = client
        self._owns_client = client is None
        self.timeout = timeout

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def _post(self, url: str, payload: dict) -> None:
        response = await self.client.post(url, json=payload)
        response.raise_for_status()

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


class DiscordChannel(WebhookChannel):
    name = "discord"

    def __init__(self, webhook_url: str, username: str = "DeFi Sentinel",
                 client: Optional[httpx.AsyncClient] = None):
        super().__init__(client)
        self.webhook_url = webhook_url
        self.username = username

    @property
    def is_configured(self) -> bool:
        return bool(self.webhook_url)

    async def send(self, message: str) -> None:
        if not self.is_configured:
            return
        await self._post(self.webhook_url, {"content": message, "username": self.username})


class TelegramChannel(WebhookChannel):
    name = "telegram"

    def __init__(self, bot_token: str, chat_id: str,
                 api_base: str = "https://api.telegram.org",
                 client: Optional[httpx.AsyncClient] = None):
        super().__init__(client)
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.api_base = api_base.rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.bot_token and self.chat_id)

    async def send(self, message: str) -> None:
        if not self.is_configured:
            return
        url = f"{self.api_base}/bot{self.bot_token}/sendMessage"
        await self._post(url, {"chat_id": self.chat_id, "text": message})


class NotificationManager:
    """Fans a message out to every configured channel"""

    def __init__(self, channels: List[NotificationChannel]):
        self.channels = [c for c in channels if c.is_configured]
        skipped = [c.name for c in channels if not c.is_configured]
        if skipped:
            logger.info("Notification channels not configured", channels=skipped)

    @classmethod
    def from_settings(cls, settings: Settings) -> "NotificationManager":
        return cls([
            DiscordChannel(settings.DISCORD_WEBHOOK_URL),
            TelegramChannel(settings.TELEGRAM_BOT_TOKEN, settings.TELEGRAM_CHAT_ID,
                            api_base=settings.TELEGRAM_API_BASE),
        ])

    async def broadcast(self, message: str) -> int:
        """Send to all channels concurrently. Returns the number of successful sends."""
        if not self.channels:
            return 0

        results = await asyncio.gather(
            *(channel.send(message) for channel in self.channels),
            return_exceptions=True
        )

        delivered = 0
        for channel, result in zip(self.channels, results):
            if isinstance(result, Exception):
                logger.error(f"{channel.name} notification failed", error=str(result),
                             error_type=type(result).__name__)
            else:
                delivered += 1
        return delivered

    async def close(self):
        for channel in self.channels:
            try:
                await channel.close()
            except Exception as e:
                logger.warning(f"Error closing {channel.name} channel", error=str(e))
