"""
Connection lifecycle manager.

Owns at most one active channel client and is the single source of truth
for whether a usable client exists and which one it is.  The lifecycle
is a small state machine::

    UNINITIALIZED --initialize ok-----> READY
    UNINITIALIZED --initialize failed-> UNINITIALIZED
    READY --initialize-----------------> READY (existing client returned)
    READY --replace_client/reconnect---> READY
    any --initialize/replace while a connect is in flight--> AlreadyInitializing

The in-flight guard is checked and set before the first ``await`` and
released in ``finally``, so a concurrent second caller is rejected
instead of racing to create a second client, and a failed attempt never
locks the manager.  During ``reconnect`` the current client stays active
(and ``state`` stays READY) until the swap; the swap and the registry
rebind happen without another registry call observing a half-moved
registry.

Connection options resolve in this order: fields passed by the caller,
the options persisted by the last successful connect, then the
configured defaults.

Swapping the client (after a credential or store change) tears down the
subscription bindings on the old client, installs the new one and asks
the :class:`SubscriptionRegistry` to bind the previously known
descriptors again.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Iterable, List, Mapping, Optional, Union

from .clients.channel_client import ChannelClient, Connector, derive_address, derive_signer, load_callable
from .config import GatewayConfig
from .exceptions import (
    AlreadyInitializing,
    ExternalClientFailure,
    ExternalConnectFailure,
    MissingCredential,
    NotInitialized,
)
from .models import ConnectionOptions, SubscriptionDescriptor, SubscriptionOutcome
from .services.store import KeyValueStore
from .services.subscriptions import SubscriptionRegistry
from .telemetry import connection_state_gauge

logger = logging.getLogger(__name__)

OptionsArg = Optional[Union[ConnectionOptions, Mapping[str, Any]]]


class ConnectionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"


_STATE_VALUES = {
    ConnectionState.UNINITIALIZED: 0,
    ConnectionState.INITIALIZING: 1,
    ConnectionState.READY: 2,
}


def _coerce_options(options: OptionsArg) -> ConnectionOptions:
    if options is None:
        return ConnectionOptions()
    if isinstance(options, ConnectionOptions):
        return options
    return ConnectionOptions.model_validate(options)


class ConnectionManager:
    """Guard initialization of, and hand out, the single channel client."""

    def __init__(
        self,
        store: KeyValueStore,
        registry: SubscriptionRegistry,
        *,
        connector: Optional[Connector] = None,
        config: Optional[GatewayConfig] = None,
        mnemonic: Optional[str] = None,
    ) -> None:
        """
        :param store: Durable store for the mnemonic and connection options;
            also handed to the connector as the client's store.
        :param registry: Registry whose bindings follow the active client.
        :param connector: Coroutine that connects a channel client.  When
            omitted it is loaded from ``config.channel_connector``.
        :param config: Gateway configuration supplying default options.
        :param mnemonic: Optional credential known at construction time.
        """
        self._store = store
        self._registry = registry
        self._connector = connector
        self._config = config or GatewayConfig()
        self._mnemonic = mnemonic
        self._client: Optional[ChannelClient] = None
        self._options: Optional[ConnectionOptions] = None
        self._initializing = False

    @property
    def state(self) -> ConnectionState:
        if self._client is not None:
            return ConnectionState.READY
        if self._initializing:
            return ConnectionState.INITIALIZING
        return ConnectionState.UNINITIALIZED

    @property
    def credential(self) -> Optional[str]:
        return self._mnemonic or self._config.mnemonic

    @property
    def options(self) -> Optional[ConnectionOptions]:
        """Options the active client was connected with."""
        return self._options

    def _publish_state(self) -> None:
        connection_state_gauge.set(_STATE_VALUES[self.state])

    async def initialize(self, credential: Optional[str] = None, options: OptionsArg = None) -> ChannelClient:
        """Connect the channel client unless one is already active.

        Raises:
            AlreadyInitializing: If another initialization is in flight.
            MissingCredential: If no mnemonic resolves.
            ExternalConnectFailure: If the connector fails.
            ExternalClientFailure: If the store fails.
        """
        if self._initializing:
            raise AlreadyInitializing("Client is initializing")
        if self._client is not None:
            logger.info("Client is already connected - skipping initialize")
            return self._client
        requested = _coerce_options(options)

        self._initializing = True
        self._publish_state()
        try:
            mnemonic = await self._resolve_credential(credential)
            await self.set_credential(mnemonic)
            defaults = self._config.default_options()
            stored = await self._load_options()
            if stored is not None:
                defaults = stored.merged_with(defaults)
            resolved = requested.merged_with(defaults)
            client = await self._connect(mnemonic, resolved)
            self._client = client
            self._options = resolved
            await self._persist_options(resolved)
            logger.info(
                "Client initialized for signer %s on network %s", derive_address(mnemonic), resolved.network
            )
            return client
        finally:
            self._initializing = False
            self._publish_state()

    def get_active_client(self) -> ChannelClient:
        """Return the active client.

        Raises:
            NotInitialized: If no client is ready.
        """
        if self._client is None:
            raise NotInitialized("Client is not initialized")
        return self._client

    async def set_credential(self, credential: str) -> None:
        """Persist and remember ``credential``; the client is not reconnected."""
        if not credential:
            raise MissingCredential("Mnemonic must not be empty")
        try:
            await self._store.store_mnemonic(credential)
        except Exception as exc:
            raise ExternalClientFailure("store mnemonic", str(exc)) from exc
        self._mnemonic = credential
        logger.info("Mnemonic set successfully")

    async def replace_client(
        self,
        new_client: ChannelClient,
        descriptors: Optional[Iterable[Union[SubscriptionDescriptor, Mapping[str, Any]]]] = None,
        options: OptionsArg = None,
    ) -> List[SubscriptionOutcome]:
        """Swap in ``new_client`` and rebind ``descriptors`` on it.

        Teardown failures on the old client are logged and do not block the
        swap.  Returns the per-descriptor outcomes of the rebind.

        Raises:
            NotInitialized: If there is no active client to replace.
            AlreadyInitializing: If a connect is in flight.
        """
        if self._client is None:
            raise NotInitialized("Cannot replace a client that was never initialized")
        if self._initializing:
            raise AlreadyInitializing("Client is initializing")
        return await self._swap(new_client, list(descriptors or []), options)

    async def reconnect(self, credential: Optional[str] = None, options: OptionsArg = None) -> List[SubscriptionOutcome]:
        """Connect a fresh client and hot-swap it for the active one.

        Used after the credential or the connection options change.  Fields
        left unset in ``options`` keep their current values.  Every known
        subscription is carried over to the new client.

        Raises:
            NotInitialized: If there is no active client.
            AlreadyInitializing: If another connect is in flight.
        """
        if self._client is None:
            raise NotInitialized("Client is not initialized")
        if self._initializing:
            raise AlreadyInitializing("Client is initializing")
        requested = _coerce_options(options)

        self._initializing = True
        try:
            if credential:
                await self.set_credential(credential)
            mnemonic = await self._resolve_credential(None)
            resolved = requested.merged_with(self._options or self._config.default_options())
            new_client = await self._connect(mnemonic, resolved)
            return await self._swap(new_client, None, resolved)
        finally:
            self._initializing = False

    # -- internals ---------------------------------------------------------

    async def _swap(
        self,
        new_client: ChannelClient,
        descriptors: Optional[List[Union[SubscriptionDescriptor, Mapping[str, Any]]]],
        options: OptionsArg,
    ) -> List[SubscriptionOutcome]:
        # nothing may yield between the swap and the registry taking its lock;
        # descriptors=None carries over whatever the registry holds at that point
        self._client = new_client
        if options is not None:
            self._options = _coerce_options(options).merged_with(
                self._options or self._config.default_options()
            )
        outcomes = await self._registry.rebind_all(new_client, descriptors)
        if self._options is not None:
            await self._persist_options(self._options)
        failed = sum(1 for outcome in outcomes if not outcome.ok)
        logger.info("Client replaced; %d subscriptions rebound, %d failed", len(outcomes) - failed, failed)
        return outcomes

    async def _load_options(self) -> Optional[ConnectionOptions]:
        try:
            return await self._store.get_init_options()
        except Exception as exc:
            logger.warning("Ignoring unreadable persisted connection options: %s", exc)
            return None

    async def _resolve_credential(self, explicit: Optional[str]) -> str:
        mnemonic = explicit or self._mnemonic or self._config.mnemonic
        if not mnemonic:
            try:
                mnemonic = await self._store.get_mnemonic()
            except Exception as exc:
                raise ExternalClientFailure("load mnemonic", str(exc)) from exc
        if not mnemonic:
            raise MissingCredential("Cannot init channel client without mnemonic")
        return mnemonic

    def _get_connector(self) -> Connector:
        if self._connector is None:
            path = self._config.channel_connector
            if not path:
                raise ExternalConnectFailure("connect", "no channel client connector configured")
            try:
                self._connector = load_callable(path)
            except (ImportError, AttributeError, ValueError) as exc:
                raise ExternalConnectFailure("connect", f"cannot load connector {path}: {exc}") from exc
        return self._connector

    async def _connect(self, mnemonic: str, options: ConnectionOptions) -> ChannelClient:
        connector = self._get_connector()
        try:
            signer = derive_signer(mnemonic)
        except Exception as exc:
            raise ExternalConnectFailure("connect", f"invalid mnemonic: {exc}") from exc
        try:
            return await connector(
                options.network,
                signer=signer,
                store=self._store,
                eth_provider_url=options.eth_provider_url,
                node_url=options.node_url,
                log_level=options.log_level,
            )
        except Exception as exc:
            logger.error("Channel client connect failed: %s", exc)
            raise ExternalConnectFailure("connect", str(exc)) from exc

    async def _persist_options(self, options: ConnectionOptions) -> None:
        try:
            await self._store.store_init_options(options)
        except Exception as exc:
            logger.warning("Failed to persist connection options: %s", exc)
