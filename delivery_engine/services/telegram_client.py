"""
Telegram Bot API client.
Low-level HTTPS client used by the channel gateway; it neither paces nor
retries. Every Bot API failure is raised as TelegramAPIError carrying the
platform error code and description so the gateway can classify it.
"""

from typing import Any

import httpx

from delivery_engine.config import settings
from delivery_engine.domain.models import MediaType, OutboundMessage
from delivery_engine.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

REQUEST_TIMEOUT = 15  # seconds

# Bot API method per media type
SEND_METHODS = {
    MediaType.TEXT: "sendMessage",
    MediaType.IMAGE: "sendPhoto",
    MediaType.VIDEO: "sendVideo",
}


class TelegramAPIError(Exception):
    """Custom exception for Telegram Bot API errors."""

    def __init__(
        self,
        message: str,
        error_code: int | None = None,
        description: str | None = None,
        retry_after: int | None = None,
    ):
        super().__init__(message)
        self.error_code = error_code
        self.description = description or ""
        self.retry_after = retry_after


class TelegramNetworkError(TelegramAPIError):
    """
    The request never produced a Bot API response (DNS, connect, read).

    `request_sent` is False only when the connection was never established,
    so the Bot API cannot have acted on the call.
    """

    def __init__(self, message: str, request_sent: bool = True):
        super().__init__(message)
        self.request_sent = request_sent


class TelegramBotClient:
    """
    Client for the Telegram Bot API.

    Implements the MessagingPlatform protocol used by the channel gateway.
    """

    def __init__(
        self,
        token: str | None = None,
        base_url: str | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        token = token or settings.TELEGRAM_BOT_TOKEN
        if not token:
            raise ValueError("TELEGRAM_BOT_TOKEN is not configured")

        base_url = (base_url or settings.TELEGRAM_API_BASE_URL).rstrip("/")
        self._base_url = f"{base_url}/bot{token}"
        self._client = self._create_client(transport)

    def _create_client(self, transport: httpx.AsyncBaseTransport | None) -> httpx.AsyncClient:
        """Create async HTTP client for the Bot API."""
        timeout = httpx.Timeout(REQUEST_TIMEOUT)
        limits = httpx.Limits(max_keepalive_connections=10, max_connections=20)
        return httpx.AsyncClient(timeout=timeout, limits=limits, transport=transport)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def send(self, chat_id: str, message: OutboundMessage) -> str:
        """Send rendered content to a chat and return the platform message id."""
        media_type = message.media_type if message.media_url else MediaType.TEXT
        method = SEND_METHODS[media_type]
        payload: dict[str, Any] = {"chat_id": chat_id, "parse_mode": message.parse_mode}

        if media_type == MediaType.TEXT:
            payload["text"] = message.text
        elif media_type == MediaType.IMAGE:
            payload["photo"] = message.media_url
            payload["caption"] = message.text
        else:
            payload["video"] = message.media_url
            payload["caption"] = message.text

        result = await self._call(method, payload)
        return str(result["message_id"])

    async def delete(self, chat_id: str, message_id: str) -> None:
        await self._call("deleteMessage", {"chat_id": chat_id, "message_id": int(message_id)})

    async def _call(self, method: str, payload: dict[str, Any]) -> Any:
        """
        POST one Bot API method.

        Returns:
            The `result` field of a successful response

        Raises:
            TelegramNetworkError: Transport failure, no response received
            TelegramAPIError: Bot API answered with ok=false or non-JSON
        """
        try:
            response = await self._client.post(f"{self._base_url}/{method}", json=payload)
        except (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout) as e:
            raise TelegramNetworkError(
                f"Telegram {method} connection failed: {e}", request_sent=False
            ) from e
        except httpx.TimeoutException as e:
            raise TelegramNetworkError(f"Telegram {method} timed out") from e
        except httpx.RequestError as e:
            raise TelegramNetworkError(f"Telegram {method} request failed: {e}") from e

        try:
            data = response.json()
        except ValueError:
            logger.error(
                "Telegram API returned non-JSON response",
                method=method,
                status_code=response.status_code,
                response_text=response.text[:200] if response.text else "",
            )
            raise TelegramAPIError(
                f"Telegram API error (HTTP {response.status_code})",
                error_code=response.status_code,
            ) from None

        if data.get("ok"):
            return data.get("result")

        error_code = data.get("error_code", response.status_code)
        description = data.get("description", "Unknown Telegram API error")
        retry_after = (data.get("parameters") or {}).get("retry_after")

        logger.debug(
            f"Telegram {method} failed",
            status_code=response.status_code,
            error_code=error_code,
            description=description,
        )

        raise TelegramAPIError(
            f"Telegram {method} failed: {description}",
            error_code=error_code,
            description=description,
            retry_after=retry_after,
        )
