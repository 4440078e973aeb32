"""
Channel client boundary.

The gateway treats the channel-network client as an opaque capability.
This module describes the surface the gateway calls on it
(:class:`ChannelClient`), the signature of the coroutine that connects a
new client (:data:`Connector`) and of the on-chain transfer helper
(:data:`OnchainTransfer`).  Concrete implementations are plugged in by
dotted path (``package.module:attribute``) through configuration, or
injected directly in code and tests.

Signing keys are derived from the mnemonic with ``eth_account`` on the
standard Ethereum path ``m/44'/60'/0'/0/0``.
"""

from __future__ import annotations

import importlib
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol

from eth_account import Account

Account.enable_unaudited_hdwallet_features()

Listener = Callable[[Any], Awaitable[None]]


class ChannelClient(Protocol):
    """A ready, connected channel client."""

    signer_address: str
    eth_provider: Any
    channel_provider_config: Mapping[str, Any]

    def on(self, event_type: str, listener: Listener) -> Any: ...

    def off(self, event_type: str, listener: Listener) -> Any: ...

    async def deposit(self, params: Dict[str, Any]) -> Mapping[str, Any]: ...

    async def withdraw(self, params: Dict[str, Any]) -> Any: ...

    async def swap(self, params: Dict[str, Any]) -> Any: ...

    async def conditional_transfer(self, params: Dict[str, Any]) -> Mapping[str, Any]: ...

    async def resolve_condition(self, params: Dict[str, Any]) -> Any: ...

    async def get_app_instance(self, app_identity_hash: str) -> Optional[Mapping[str, Any]]: ...

    async def get_transfer_history(self) -> List[Any]: ...

    async def get_linked_transfer(self, payment_id: str) -> Optional[Mapping[str, Any]]: ...

    async def get_hash_lock_transfer(self, lock_hash: str, asset_id: str) -> Optional[Mapping[str, Any]]: ...

    async def get_free_balance(self, asset_id: str) -> Mapping[str, Any]: ...

    async def get_onchain_balance(self, asset_id: str) -> Any: ...


#: ``connect(network, *, signer, store, eth_provider_url, node_url, log_level)``
Connector = Callable[..., Awaitable[ChannelClient]]

#: ``transfer(*, mnemonic, eth_provider, asset_id, amount, recipient) -> tx hash``
OnchainTransfer = Callable[..., Awaitable[str]]


def derive_signer(mnemonic: str) -> str:
    """Return the hex private key for the first account of ``mnemonic``."""
    account = Account.from_mnemonic(mnemonic)
    return "0x" + bytes(account.key).hex()


def derive_address(mnemonic: str) -> str:
    """Return the checksummed address for the first account of ``mnemonic``."""
    return Account.from_mnemonic(mnemonic).address


def load_callable(path: str) -> Callable[..., Any]:
    """Resolve ``package.module:attribute`` to the named callable.

    Raises:
        ValueError: If ``path`` is malformed or does not name a callable.
    """
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Expected 'package.module:attribute', got {path!r}")
    module = importlib.import_module(module_name)
    target: Any = module
    for part in attr.split("."):
        target = getattr(target, part)
    if not callable(target):
        raise ValueError(f"{path} is not callable")
    return target
