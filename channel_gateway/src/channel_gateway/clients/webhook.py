"""
Webhook client used to deliver subscribed channel events.

Each matching event is POSTed as JSON to the subscription's delivery
target.  Deliveries are retried with exponential backoff on connection
errors and on 5xx responses; 4xx responses are treated as permanent and
fail immediately.  Response bodies are truncated before logging.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import aiohttp
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..models_events import DeliveryEnvelope

logger = logging.getLogger(__name__)


class DeliveryError(Exception):
    """Raised when a webhook delivery fails permanently."""

    def __init__(self, target: str, status: Optional[int], message: str = "") -> None:
        super().__init__(f"Delivery to {target} failed ({status}): {message}")
        self.target = target
        self.status = status


class _RetryableDeliveryError(DeliveryError):
    pass


class WebhookClient:
    """POST delivery envelopes to callback URLs."""

    def __init__(
        self,
        *,
        timeout: float = 10.0,
        max_attempts: int = 3,
        min_wait: float = 0.5,
        max_wait: float = 8.0,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        """Construct the webhook client.

        Args:
            timeout: Total timeout in seconds for one POST.
            max_attempts: Attempts per delivery, including the first.
            min_wait: Lower bound of the exponential backoff in seconds.
            max_wait: Upper bound of the exponential backoff in seconds.
            session: Optional shared session; when omitted a session is
                opened per delivery.
        """
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.max_attempts = max_attempts
        self.min_wait = min_wait
        self.max_wait = max_wait
        self._session = session

    async def _post(self, session: aiohttp.ClientSession, target: str, envelope: DeliveryEnvelope) -> Any:
        try:
            async with session.post(target, json=envelope, timeout=self.timeout) as resp:
                if resp.status >= 400:
                    text = await resp.text()
                    truncated = text[:200] if text else ""
                    logger.warning("Webhook %s answered %s: %s", target, resp.status, truncated)
                    error_cls = _RetryableDeliveryError if resp.status >= 500 else DeliveryError
                    raise error_cls(target, resp.status, truncated)
                return resp.status
        except aiohttp.ClientError as exc:
            raise _RetryableDeliveryError(target, None, str(exc)) from exc

    async def deliver(self, target: str, envelope: DeliveryEnvelope) -> None:
        """Deliver ``envelope`` to ``target``.

        Raises:
            DeliveryError: If the target rejects the event or every
                attempt failed.
        """
        if self._session is not None:
            await self._send(self._session, target, envelope)
        else:
            async with aiohttp.ClientSession() as session:
                await self._send(session, target, envelope)
        logger.debug("Delivered %s for subscription %s to %s", envelope["event"], envelope["id"], target)

    async def _send(self, session: aiohttp.ClientSession, target: str, envelope: DeliveryEnvelope) -> None:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(min=self.min_wait, max=self.max_wait),
            retry=retry_if_exception_type(_RetryableDeliveryError),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                await self._post(session, target, envelope)
