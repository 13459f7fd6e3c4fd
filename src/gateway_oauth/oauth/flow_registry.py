"""Pending authorization flows and the process-wide state registry.

A provider keeps its own ``state -> PendingAuthorization`` map; the
FlowRegistry maps every live state to the provider that issued it so a
callback arriving on any route finds the right instance.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, ClassVar

from gateway_oauth.logging_config import get_logger
from gateway_oauth.security import redact_state

if TYPE_CHECKING:
    from collections.abc import Iterator

    from gateway_oauth.oauth.token_exchange import TokenData
    from gateway_oauth.security import AuthProvider

logger = get_logger(__name__)


@dataclass
class PendingAuthorization:
    """One in-flight authorization code flow.

    Attributes:
        state: Opaque CSRF-bearing state sent in the authorization URL
        code_verifier: PKCE secret used once in the token exchange
        future: Settled exactly once with the token or the failure
        timer: Handle of the per-flow timeout, if armed
        created_at: ``time.monotonic()`` at flow start
    """

    state: str
    code_verifier: str = field(repr=False)
    future: asyncio.Future[TokenData]
    timer: asyncio.TimerHandle | None = None
    created_at: float = field(default_factory=time.monotonic)

    def age(self, now: float | None = None) -> float:
        """Seconds since the flow started."""
        return (time.monotonic() if now is None else now) - self.created_at

    @property
    def settled(self) -> bool:
        return self.future.done()


class FlowRegistry:
    """Maps live OAuth states to the provider that owns them.

    Mutations are plain dict operations with no suspension point, so a
    callback can never observe a half-registered flow.
    """

    _default: ClassVar[FlowRegistry | None] = None

    def __init__(self) -> None:
        self._providers: dict[str, AuthProvider] = {}

    @classmethod
    def default(cls) -> FlowRegistry:
        """Shared registry used when the host does not inject one."""
        if cls._default is None:
            cls._default = cls()
        return cls._default

    def register(self, state: str, provider: AuthProvider) -> None:
        """Bind a state to its provider.

        Raises:
            ValueError: If the state is already registered
        """
        if state in self._providers:
            msg = f"State {redact_state(state)} is already registered"
            raise ValueError(msg)
        self._providers[state] = provider

    def unregister(self, state: str, provider: AuthProvider | None = None) -> bool:
        """Remove a state.

        Args:
            state: State to remove
            provider: If given, only remove the entry when it belongs to it

        Returns:
            True if an entry was removed
        """
        current = self._providers.get(state)
        if current is None:
            return False
        if provider is not None and current is not provider:
            logger.warning(
                "State %s belongs to another provider; not removed", redact_state(state)
            )
            return False
        del self._providers[state]
        return True

    def get_provider_for_state(self, state: str) -> AuthProvider | None:
        return self._providers.get(state)

    def states_for(self, provider: AuthProvider) -> list[str]:
        """All live states owned by ``provider``."""
        return [s for s, p in self._providers.items() if p is provider]

    def __len__(self) -> int:
        return len(self._providers)

    def __contains__(self, state: object) -> bool:
        return state in self._providers

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._providers))
