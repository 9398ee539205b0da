"""Consent channel abstraction.

The flow manager opens a channel for an authorization URL and waits on it
for exactly one terminal signal: completed, errored or abandoned by the
user. How the URL reaches the user (popup, redirect, device prompt) is up
to the opener.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Callable, Optional, Protocol

from shared.logging import get_logger
from oauth.models import AuthorizationOutcome, OutcomeSignal

logger = get_logger(__name__)


class PendingAuthorization(ABC):
    """An open consent channel awaiting its terminal signal."""

    @abstractmethod
    async def await_outcome(self) -> OutcomeSignal:
        """Wait for the channel's terminal signal."""

    @abstractmethod
    def close(self) -> None:
        """Close the channel. Safe to call more than once."""

    @property
    @abstractmethod
    def closed(self) -> bool:
        ...


class InteractionOpener(Protocol):
    """Opens the external consent channel for an authorization URL."""

    async def __call__(self, provider_id: str, url: str) -> PendingAuthorization:
        ...


class ChannelInteraction(PendingAuthorization):
    """
    In-process consent channel.

    The first signal wins; later signals are ignored.
    """

    def __init__(
        self,
        provider_id: str,
        url: str,
        on_close: Optional[Callable[["ChannelInteraction"], None]] = None
    ) -> None:
        self.provider_id = provider_id
        self.url = url
        self._on_close = on_close
        self._signal: Optional[OutcomeSignal] = None
        self._signalled = asyncio.Event()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def signal(self) -> Optional[OutcomeSignal]:
        return self._signal

    def _resolve(self, outcome: AuthorizationOutcome, message: Optional[str] = None) -> bool:
        if self._signal is not None or self._closed:
            return False
        self._signal = OutcomeSignal(outcome=outcome, message=message)
        self._signalled.set()
        return True

    def complete(self) -> bool:
        """Authorization finished successfully."""
        return self._resolve(AuthorizationOutcome.COMPLETED)

    def fail(self, message: str) -> bool:
        """The authorization server or the exchange reported an error."""
        return self._resolve(AuthorizationOutcome.ERRORED, message)

    def abandon(self) -> bool:
        """The user closed the consent channel."""
        return self._resolve(AuthorizationOutcome.CANCELLED, "Authorization window was closed")

    async def await_outcome(self) -> OutcomeSignal:
        await self._signalled.wait()
        return self._signal

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._on_close is not None:
            self._on_close(self)


class InteractionRegistry:
    """
    Opener that keeps open channels addressable by provider id.

    The HTTP surface uses it to expose the pending authorization URL and to
    deliver callback and cancel signals to the waiting flow.
    """

    def __init__(self) -> None:
        self._channels: dict[str, ChannelInteraction] = {}

    async def __call__(self, provider_id: str, url: str) -> ChannelInteraction:
        channel = ChannelInteraction(provider_id, url, on_close=self._release)
        self._channels[provider_id] = channel
        logger.info("Consent channel opened", provider=provider_id)
        return channel

    def _release(self, channel: ChannelInteraction) -> None:
        if self._channels.get(channel.provider_id) is channel:
            del self._channels[channel.provider_id]
        logger.debug("Consent channel closed", provider=channel.provider_id)

    def get(self, provider_id: str) -> Optional[ChannelInteraction]:
        return self._channels.get(provider_id)

    def pending_url(self, provider_id: str) -> Optional[str]:
        channel = self._channels.get(provider_id)
        return channel.url if channel is not None else None

    def complete(self, provider_id: str) -> bool:
        channel = self._channels.get(provider_id)
        return channel.complete() if channel is not None else False

    def fail(self, provider_id: str, message: str) -> bool:
        channel = self._channels.get(provider_id)
        return channel.fail(message) if channel is not None else False

    def abandon(self, provider_id: str) -> bool:
        channel = self._channels.get(provider_id)
        return channel.abandon() if channel is not None else False

    def __contains__(self, provider_id: str) -> bool:
        return provider_id in self._channels
