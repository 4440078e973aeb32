"""
Channel gateway facade.

``ChannelGateway`` is what the outer request layer talks to.  Each
operation fetches the active client from the :class:`ConnectionManager`
at the start of the call (never caching it across awaits), forwards the
request to the channel client and shapes the response.  Failures raised
by the client or the on-chain helper are wrapped in
:class:`ExternalClientFailure` and are never retried here, since whether
a transfer is safe to repeat is not knowable at this layer.

Every balance-affecting operation that takes an asset id treats the
native-asset sentinel (the zero address) as "no asset id", which makes
the client fall back to the chain's native asset.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Type, TypeVar, Union

from pydantic import BaseModel

from .clients.channel_client import ChannelClient, Connector, OnchainTransfer, load_callable
from .clients.webhook import WebhookClient
from .config import GatewayConfig
from .connection_manager import ConnectionManager, OptionsArg
from .exceptions import (
    ExternalClientFailure,
    GatewayError,
    MissingCredential,
    NotInitialized,
    TransferNotFound,
)
from .models import (
    ADDRESS_ZERO,
    DepositRequest,
    HashLockTransferRequest,
    LinkedTransferRequest,
    OnchainTransferRequest,
    ResolveHashLockRequest,
    ResolveLinkedRequest,
    SubscriptionOutcome,
    SubscriptionParams,
    SwapRequest,
    WithdrawRequest,
)
from .services.store import KeyValueStore
from .services.subscriptions import Deliver, SubscriptionRegistry

logger = logging.getLogger(__name__)

HASH_LOCK_TRANSFER = "HashLockTransfer"
LINKED_TRANSFER = "LinkedTransfer"

RequestT = TypeVar("RequestT", bound=BaseModel)


def _parse(model: Type[RequestT], params: Union[RequestT, Mapping[str, Any]]) -> RequestT:
    if isinstance(params, model):
        return params
    return model.model_validate(params)


def _without_native_asset(params: Dict[str, Any]) -> Dict[str, Any]:
    if params.get("assetId") == ADDRESS_ZERO:
        del params["assetId"]
    return params


def _outcomes(outcomes: List[SubscriptionOutcome]) -> List[Dict[str, Any]]:
    return [outcome.model_dump(by_alias=True, mode="json", exclude_none=True) for outcome in outcomes]


class ChannelGateway:
    """Operations exposed to the request layer."""

    def __init__(
        self,
        manager: ConnectionManager,
        registry: SubscriptionRegistry,
        *,
        onchain_transfer: Optional[OnchainTransfer] = None,
        config: Optional[GatewayConfig] = None,
    ) -> None:
        self.manager = manager
        self.registry = registry
        self._onchain_transfer = onchain_transfer
        self._config = config or GatewayConfig()

    @classmethod
    def from_config(
        cls,
        config: GatewayConfig,
        *,
        connector: Optional[Connector] = None,
        onchain_transfer: Optional[OnchainTransfer] = None,
        deliver: Optional[Deliver] = None,
    ) -> "ChannelGateway":
        """Wire the store, webhook client, registry and manager from ``config``."""
        store = KeyValueStore(config.store_path)
        if deliver is None:
            webhook = WebhookClient(timeout=config.webhook_timeout, max_attempts=config.webhook_max_attempts)
            deliver = webhook.deliver
        registry = SubscriptionRegistry(deliver, store=store)
        manager = ConnectionManager(store, registry, connector=connector, config=config)
        return cls(manager, registry, onchain_transfer=onchain_transfer, config=config)

    async def _call(self, operation: str, func: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        try:
            return await func(*args)
        except GatewayError:
            raise
        except Exception as exc:
            logger.error("%s failed: %s", operation, exc)
            raise ExternalClientFailure(operation, str(exc)) from exc

    async def _onchain_balance(self, client: ChannelClient, asset_id: str) -> str:
        balance = await self._call("get on-chain balance", client.get_onchain_balance, asset_id)
        return str(balance)

    @staticmethod
    def _own_share(client: ChannelClient, free_balance: Mapping[str, Any]) -> str:
        try:
            return str(free_balance[client.signer_address])
        except (KeyError, TypeError) as exc:
            raise ExternalClientFailure("read free balance", f"no entry for {client.signer_address}") from exc

    # -- lifecycle ---------------------------------------------------------

    async def initialize_client(self, credential: Optional[str] = None, options: OptionsArg = None) -> Dict[str, Any]:
        await self.manager.initialize(credential, options)
        return await self.get_config()

    async def set_mnemonic(self, mnemonic: str) -> None:
        await self.manager.set_credential(mnemonic)

    async def reconnect(self, credential: Optional[str] = None, options: OptionsArg = None) -> Dict[str, Any]:
        outcomes = await self.manager.reconnect(credential, options)
        return {"subscriptions": _outcomes(outcomes)}

    async def get_config(self) -> Dict[str, Any]:
        client = self.manager.get_active_client()
        config: Dict[str, Any] = {"multisigAddress": None, **dict(client.channel_provider_config or {})}
        if not config["multisigAddress"]:
            raise NotInitialized("Channel client not yet initialized")
        return config

    # -- queries -----------------------------------------------------------

    async def get_transfer_history(self) -> List[Any]:
        client = self.manager.get_active_client()
        return await self._call("get transfer history", client.get_transfer_history)

    async def get_app_instance_details(self, app_identity_hash: str) -> Any:
        client = self.manager.get_active_client()
        return await self._call("get app instance", client.get_app_instance, app_identity_hash)

    async def balance(self, asset_id: str = ADDRESS_ZERO) -> Dict[str, str]:
        client = self.manager.get_active_client()
        free_balance = await self._call("get free balance", client.get_free_balance, asset_id)
        return {
            "freeBalanceOffChain": self._own_share(client, free_balance),
            "freeBalanceOnChain": await self._onchain_balance(client, asset_id),
        }

    # -- conditional transfers ---------------------------------------------

    async def _conditional_transfer(self, client: ChannelClient, payload: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._call("conditional transfer", client.conditional_transfer, payload) or {}
        app_details = await self._call(
            "get app instance", client.get_app_instance, response.get("appIdentityHash")
        )
        return {**response, **(app_details or {})}

    async def hash_lock_transfer(
        self, params: Union[HashLockTransferRequest, Mapping[str, Any]]
    ) -> Dict[str, Any]:
        client = self.manager.get_active_client()
        request = _parse(HashLockTransferRequest, params)
        payload = _without_native_asset(request.to_params())
        payload["conditionType"] = HASH_LOCK_TRANSFER
        return await self._conditional_transfer(client, payload)

    async def hash_lock_resolve(self, params: Union[ResolveHashLockRequest, Mapping[str, Any]]) -> Any:
        client = self.manager.get_active_client()
        request = _parse(ResolveHashLockRequest, params)
        payload = {"conditionType": HASH_LOCK_TRANSFER, **request.to_params()}
        return await self._call("resolve hash lock transfer", client.resolve_condition, payload)

    async def hash_lock_status(self, lock_hash: str, asset_id: str) -> Any:
        client = self.manager.get_active_client()
        response = await self._call("get hash lock transfer", client.get_hash_lock_transfer, lock_hash, asset_id)
        if not response:
            raise TransferNotFound(
                f"No HashLock Transfer found for lockHash: {lock_hash} and assetId: {asset_id}"
            )
        return response

    async def linked_transfer(self, params: Union[LinkedTransferRequest, Mapping[str, Any]]) -> Dict[str, Any]:
        client = self.manager.get_active_client()
        request = _parse(LinkedTransferRequest, params)
        payload = _without_native_asset(request.to_params())
        payload["conditionType"] = LINKED_TRANSFER
        return await self._conditional_transfer(client, payload)

    async def linked_resolve(self, params: Union[ResolveLinkedRequest, Mapping[str, Any]]) -> Any:
        client = self.manager.get_active_client()
        request = _parse(ResolveLinkedRequest, params)
        payload = {"conditionType": LINKED_TRANSFER, **request.to_params()}
        return await self._call("resolve linked transfer", client.resolve_condition, payload)

    async def linked_status(self, payment_id: str) -> Any:
        client = self.manager.get_active_client()
        response = await self._call("get linked transfer", client.get_linked_transfer, payment_id)
        if not response:
            raise TransferNotFound(f"No Linked Transfer found for paymentId: {payment_id}")
        return response

    # -- funding -----------------------------------------------------------

    async def deposit(self, params: Union[DepositRequest, Mapping[str, Any]]) -> Dict[str, str]:
        client = self.manager.get_active_client()
        request = _parse(DepositRequest, params)
        asset_id = request.asset_id or ADDRESS_ZERO
        response = await self._call("deposit", client.deposit, _without_native_asset(request.to_params()))
        return {
            "freeBalanceOffChain": self._own_share(client, (response or {}).get("freeBalance")),
            "freeBalanceOnChain": await self._onchain_balance(client, asset_id),
        }

    async def swap(self, params: Union[SwapRequest, Mapping[str, Any]]) -> Dict[str, str]:
        client = self.manager.get_active_client()
        request = _parse(SwapRequest, params)
        await self._call("swap", client.swap, request.to_params())
        return {
            "fromAssetIdBalance": await self._onchain_balance(client, request.from_asset_id),
            "toAssetIdBalance": await self._onchain_balance(client, request.to_asset_id),
        }

    async def withdraw(self, params: Union[WithdrawRequest, Mapping[str, Any]]) -> Any:
        client = self.manager.get_active_client()
        request = _parse(WithdrawRequest, params)
        return await self._call("withdraw", client.withdraw, _without_native_asset(request.to_params()))

    def _get_onchain_transfer(self) -> OnchainTransfer:
        if self._onchain_transfer is None:
            path = self._config.onchain_transfer
            if not path:
                raise ExternalClientFailure("on-chain transfer", "no on-chain transfer helper configured")
            try:
                self._onchain_transfer = load_callable(path)
            except (ImportError, AttributeError, ValueError) as exc:
                raise ExternalClientFailure("on-chain transfer", f"cannot load helper {path}: {exc}") from exc
        return self._onchain_transfer

    async def transfer_on_chain(self, params: Union[OnchainTransferRequest, Mapping[str, Any]]) -> Dict[str, str]:
        client = self.manager.get_active_client()
        request = _parse(OnchainTransferRequest, params)
        mnemonic = self.manager.credential
        if not mnemonic:
            raise MissingCredential("Cannot transfer on-chain without mnemonic")
        transfer = self._get_onchain_transfer()

        async def submit() -> str:
            return await transfer(
                mnemonic=mnemonic,
                eth_provider=client.eth_provider,
                asset_id=request.asset_id,
                amount=request.amount,
                recipient=request.recipient,
            )

        txhash = await self._call("on-chain transfer", submit)
        logger.info("Submitted on-chain transfer %s", txhash)
        return {"txhash": txhash}

    # -- subscriptions -----------------------------------------------------

    async def subscribe(self, params: Union[SubscriptionParams, Mapping[str, Any]]) -> Dict[str, str]:
        client = self.manager.get_active_client()
        descriptor = await self.registry.subscribe_one(client, params)
        return {"id": descriptor.id}

    async def subscribe_batch(
        self, params_list: Iterable[Union[SubscriptionParams, Mapping[str, Any]]]
    ) -> Dict[str, Any]:
        client = self.manager.get_active_client()
        outcomes = await self.registry.subscribe_batch(client, params_list)
        return {"subscriptions": _outcomes(outcomes)}

    async def unsubscribe(self, subscription_id: str) -> Dict[str, bool]:
        client = self.manager.get_active_client()
        await self.registry.unsubscribe_one(client, subscription_id)
        return {"success": True}

    async def unsubscribe_batch(self, subscription_ids: Iterable[str]) -> Dict[str, Any]:
        client = self.manager.get_active_client()
        outcomes = await self.registry.unsubscribe_batch(client, subscription_ids)
        return {"success": all(outcome.ok for outcome in outcomes), "results": _outcomes(outcomes)}

    async def unsubscribe_all(self) -> Dict[str, bool]:
        client = self.manager.get_active_client()
        await self.registry.unsubscribe_all(client)
        return {"success": True}

    async def restore_subscriptions(self) -> Dict[str, Any]:
        """Bind the subscriptions persisted by an earlier process."""
        client = self.manager.get_active_client()
        persisted = await self.registry.load_persisted()
        outcomes = await self.registry.resubscribe_batch(client, persisted) if persisted else []
        return {"subscriptions": _outcomes(outcomes)}
