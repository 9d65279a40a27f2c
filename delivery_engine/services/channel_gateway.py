"""
Channel Gateway - the only component allowed to call the messaging platform.

Every call goes through a pacing gate for its operation type (sends and
deletes are paced separately) and carries a timeout. Platform failures are
classified once, here, into:

- TransientGatewayError: network trouble, timeouts, HTTP 429 and 5xx.
  The caller may retry later. `outcome_unknown` is set when the platform
  may still have acted on the request (timeout, response lost in transit).
- PermanentGatewayError: chat not found, bot blocked or kicked, content
  rejected. Retrying cannot help.

Deleting a message that no longer exists is not an error: `delete` returns
DeleteOutcome.NOT_FOUND and logs at debug.
"""

import asyncio
from typing import Protocol

from delivery_engine.config import settings
from delivery_engine.domain.models import DeleteOutcome, OutboundMessage
from delivery_engine.infrastructure.observability.logging import get_logger
from delivery_engine.services.pacing import PacingGate
from delivery_engine.services.telegram_client import TelegramAPIError, TelegramNetworkError

logger = get_logger(__name__)

# Bot API descriptions meaning the target message is already gone
DELETE_NOT_FOUND_MARKERS = ("message to delete not found", "message_id_invalid")


class MessagingPlatform(Protocol):
    async def send(self, chat_id: str, message: OutboundMessage) -> str: ...

    async def delete(self, chat_id: str, message_id: str) -> None: ...


class PacingGateLike(Protocol):
    async def acquire(self) -> float: ...


class GatewayError(Exception):
    """Base class for classified platform failures."""

    recoverable = False

    def __init__(
        self,
        message: str,
        operation: str = "unknown",
        retry_after: int | None = None,
        outcome_unknown: bool = False,
    ):
        super().__init__(message)
        self.operation = operation
        self.retry_after = retry_after
        self.outcome_unknown = outcome_unknown


class TransientGatewayError(GatewayError):
    recoverable = True


class PermanentGatewayError(GatewayError):
    recoverable = False


def classify_platform_error(error: Exception, operation: str) -> GatewayError:
    """Map a platform exception to a transient or permanent gateway error."""
    if isinstance(error, GatewayError):
        return error

    if isinstance(error, TelegramNetworkError):
        return TransientGatewayError(
            str(error), operation=operation, outcome_unknown=error.request_sent
        )

    if isinstance(error, TelegramAPIError):
        code = error.error_code or 0
        if code == 429:
            return TransientGatewayError(
                f"Rate limited by platform: {error.description}",
                operation=operation,
                retry_after=error.retry_after,
            )
        if code >= 500:
            return TransientGatewayError(
                f"Platform unavailable: {error.description}", operation=operation
            )
        # 400 chat not found / content rejected, 403 bot blocked or kicked
        return PermanentGatewayError(
            error.description or str(error), operation=operation
        )

    # OSError and anything unknown: let the bounded retry budget decide
    return TransientGatewayError(
        f"{type(error).__name__}: {error}", operation=operation, outcome_unknown=True
    )


def _is_delete_not_found(error: Exception) -> bool:
    if not isinstance(error, TelegramAPIError) or error.error_code != 400:
        return False
    description = error.description.lower()
    return any(marker in description for marker in DELETE_NOT_FOUND_MARKERS)


class ChannelGateway:
    """Paced, time-bounded wrapper around a MessagingPlatform."""

    def __init__(
        self,
        platform: MessagingPlatform,
        *,
        send_gate: PacingGateLike | None = None,
        delete_gate: PacingGateLike | None = None,
        timeout_seconds: float | None = None,
    ):
        pacing = settings.get_pacing_config()
        self.platform = platform
        self.send_gate = send_gate or PacingGate(pacing["send"])
        self.delete_gate = delete_gate or PacingGate(pacing["delete"])
        self.timeout_seconds = timeout_seconds or settings.GATEWAY_TIMEOUT_SECONDS

    async def send(self, chat_id: str, message: OutboundMessage) -> str:
        """
        Send content to a destination chat.

        Returns:
            The platform's message id

        Raises:
            TransientGatewayError: Retry may succeed
            PermanentGatewayError: Retry cannot succeed
        """
        await self.send_gate.acquire()
        try:
            message_id = await asyncio.wait_for(
                self.platform.send(chat_id, message), timeout=self.timeout_seconds
            )
        except TimeoutError as e:
            logger.warning("Platform send timed out", chat_id=chat_id, timeout=self.timeout_seconds)
            raise TransientGatewayError(
                f"send timed out after {self.timeout_seconds}s",
                operation="send",
                outcome_unknown=True,
            ) from e
        except Exception as e:
            gateway_error = classify_platform_error(e, "send")
            logger.warning(
                "Platform send failed",
                chat_id=chat_id,
                error=str(gateway_error),
                recoverable=gateway_error.recoverable,
            )
            if gateway_error is e:
                raise
            raise gateway_error from e

        logger.debug("Platform send succeeded", chat_id=chat_id, message_id=message_id)
        return str(message_id)

    async def delete(self, channel_id: str, message_id: str) -> DeleteOutcome:
        """
        Delete one previously sent message.

        Returns:
            DeleteOutcome.OK, or DeleteOutcome.NOT_FOUND when it was already gone

        Raises:
            TransientGatewayError / PermanentGatewayError for any other failure
        """
        await self.delete_gate.acquire()
        try:
            await asyncio.wait_for(
                self.platform.delete(channel_id, message_id), timeout=self.timeout_seconds
            )
        except TimeoutError as e:
            raise TransientGatewayError(
                f"delete timed out after {self.timeout_seconds}s", operation="delete"
            ) from e
        except Exception as e:
            if _is_delete_not_found(e):
                logger.debug(
                    "Message already deleted", channel_id=channel_id, message_id=message_id
                )
                return DeleteOutcome.NOT_FOUND
            gateway_error = classify_platform_error(e, "delete")
            if gateway_error is e:
                raise
            raise gateway_error from e

        return DeleteOutcome.OK
