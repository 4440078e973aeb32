"""
Subscription registry.

Maps externally visible subscription ids to listeners installed on a
channel client's event bus.  Every operation receives the client it
should act on; the registry never asks for "the active client".  A
binding remembers the client its listener was installed on, so removing
it always targets that client even after the active one was swapped.

Each binding is a predicate + action closure: the predicate is the
subscription's filter, the action POSTs a delivery envelope to the
subscription's delivery target.  A listener checks that its binding is
still the registered one before delivering, so a listener left behind on
a discarded client (for instance because removing it failed) stays
silent.  Deliveries run as background tasks so a slow or dead callback
never holds up the client's event dispatch or other subscribers.

All mutations are serialised behind one :class:`asyncio.Lock`; batch
operations and :meth:`SubscriptionRegistry.rebind_all` hold it for their
whole run so a concurrent ``unsubscribe_all`` cannot interleave with
their individual steps.  Batch operations report one
:class:`SubscriptionOutcome` per element and never roll back the
elements that succeeded.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Set, Union

from pydantic import ValidationError

from ..clients.channel_client import ChannelClient, Listener
from ..exceptions import (
    ExternalClientFailure,
    GatewayError,
    InvalidSubscriptionParams,
    SubscriptionNotFound,
)
from ..models import SubscriptionDescriptor, SubscriptionOutcome, SubscriptionParams
from ..models_events import DeliveryEnvelope, EventKind, build_envelope, matches_filter
from ..telemetry import bound_subscriptions_gauge, deliveries_counter
from .store import KeyValueStore

logger = logging.getLogger(__name__)

Deliver = Callable[[str, DeliveryEnvelope], Awaitable[None]]
DescriptorLike = Union[SubscriptionDescriptor, Mapping[str, Any]]

ID_PREFIX = "sub_"


@dataclass
class _Binding:
    event_type: str
    client: ChannelClient
    listener: Optional[Listener] = None


def _summarise(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in error['loc']) or 'params'}: {error['msg']}"
        for error in exc.errors()
    )


def _failure(subscription_id: Optional[str], exc: Exception) -> SubscriptionOutcome:
    return SubscriptionOutcome(id=subscription_id, error=str(exc), error_type=type(exc).__name__)


def _descriptor_id(item: Any) -> Optional[str]:
    if isinstance(item, SubscriptionDescriptor):
        return item.id
    if isinstance(item, Mapping):
        value = item.get("id")
        return value if isinstance(value, str) else None
    return None


async def _maybe_await(result: Any) -> Any:
    if inspect.isawaitable(result):
        return await result
    return result


class SubscriptionRegistry:
    """Keep subscription descriptors and their listener bindings in step."""

    def __init__(self, deliver: Deliver, store: Optional[KeyValueStore] = None) -> None:
        """
        :param deliver: Coroutine ``deliver(target, envelope)`` invoked for
            every matching event, usually :meth:`WebhookClient.deliver`.
        :param store: Optional store; when given the descriptor set is
            persisted after every mutation.
        """
        self._deliver = deliver
        self._store = store
        self._descriptors: Dict[str, SubscriptionDescriptor] = {}
        self._bindings: Dict[str, _Binding] = {}
        self._next_id = 1
        self._lock = asyncio.Lock()
        self._deliveries: Set["asyncio.Task[None]"] = set()

    @property
    def bound_count(self) -> int:
        return len(self._bindings)

    @property
    def pending_deliveries(self) -> int:
        return len(self._deliveries)

    def descriptors(self) -> List[SubscriptionDescriptor]:
        """Snapshot of the known descriptors."""
        return [descriptor.model_copy() for descriptor in self._descriptors.values()]

    def get(self, subscription_id: str) -> SubscriptionDescriptor:
        try:
            return self._descriptors[subscription_id].model_copy()
        except KeyError:
            raise SubscriptionNotFound(subscription_id) from None

    async def subscribe_one(
        self, client: ChannelClient, params: Union[SubscriptionParams, Mapping[str, Any]]
    ) -> SubscriptionDescriptor:
        """Validate ``params`` and bind a new subscription on ``client``.

        Raises:
            InvalidSubscriptionParams: If validation fails.
            ExternalClientFailure: If the client refuses the listener.
        """
        validated = self._validate(params)
        async with self._lock:
            descriptor = await self._subscribe(client, validated)
            await self._commit()
        logger.info(
            "Subscribed %s to %s -> %s", descriptor.id, descriptor.event_kind.value, descriptor.delivery_target
        )
        return descriptor.model_copy()

    async def subscribe_batch(
        self, client: ChannelClient, params_list: Iterable[Union[SubscriptionParams, Mapping[str, Any]]]
    ) -> List[SubscriptionOutcome]:
        outcomes: List[SubscriptionOutcome] = []
        async with self._lock:
            for params in params_list:
                try:
                    descriptor = await self._subscribe(client, self._validate(params))
                except GatewayError as exc:
                    outcomes.append(_failure(None, exc))
                else:
                    outcomes.append(SubscriptionOutcome(id=descriptor.id, descriptor=descriptor.model_copy()))
            await self._commit()
        failed = sum(1 for outcome in outcomes if not outcome.ok)
        logger.info("Batch subscribe: %d bound, %d failed", len(outcomes) - failed, failed)
        return outcomes

    async def unsubscribe_one(self, client: ChannelClient, subscription_id: str) -> None:
        """Remove the binding and descriptor for ``subscription_id``.

        The listener is removed from the client it was installed on, which
        is ``client`` unless a swap is in progress.

        Raises:
            SubscriptionNotFound: If the id is unknown (including ids that
                were already unsubscribed).
        """
        async with self._lock:
            await self._unsubscribe(subscription_id)
            await self._commit()
        logger.info("Unsubscribed %s", subscription_id)

    async def unsubscribe_batch(
        self, client: ChannelClient, subscription_ids: Iterable[str]
    ) -> List[SubscriptionOutcome]:
        outcomes: List[SubscriptionOutcome] = []
        async with self._lock:
            for subscription_id in subscription_ids:
                try:
                    await self._unsubscribe(subscription_id)
                except GatewayError as exc:
                    outcomes.append(_failure(subscription_id, exc))
                else:
                    outcomes.append(SubscriptionOutcome(id=subscription_id))
            await self._commit()
        return outcomes

    async def unsubscribe_all(self, client: ChannelClient) -> int:
        """Remove every binding and forget all descriptors.

        Listener removal failures are logged; the registry is cleared
        regardless.  Returns the number of descriptors dropped.
        """
        async with self._lock:
            await self._unbind_all()
            removed = len(self._descriptors)
            self._descriptors.clear()
            await self._commit()
        logger.info("Cleared %d subscriptions", removed)
        return removed

    async def resubscribe_batch(
        self, client: ChannelClient, descriptors: Iterable[DescriptorLike]
    ) -> List[SubscriptionOutcome]:
        """Re-bind previously known descriptors on ``client``, keeping their ids.

        Descriptor contents are not re-validated.  A descriptor that is
        already bound is moved to ``client``.  Failures are reported per
        descriptor; the ids of failed descriptors stay reserved.
        """
        async with self._lock:
            outcomes = await self._rebind(client, descriptors)
            await self._commit()
        return outcomes

    async def rebind_all(
        self, client: ChannelClient, descriptors: Optional[Iterable[DescriptorLike]] = None
    ) -> List[SubscriptionOutcome]:
        """Move the registry onto ``client`` in one step.

        Removes every current binding from the client it was installed on,
        forgets the current descriptors and binds ``descriptors`` (by
        default the descriptors known when the lock is taken) on
        ``client``.  No other registry call can observe the registry
        between the teardown and the rebind.
        """
        async with self._lock:
            pending = list(descriptors) if descriptors is not None else list(self._descriptors.values())
            await self._unbind_all()
            self._descriptors.clear()
            outcomes = await self._rebind(client, pending)
            await self._commit()
        failed = sum(1 for outcome in outcomes if not outcome.ok)
        logger.info("Rebound %d subscriptions, %d failed", len(outcomes) - failed, failed)
        return outcomes

    async def load_persisted(self) -> List[Dict[str, Any]]:
        """Return the descriptors saved by an earlier process, if any."""
        if self._store is None:
            return []
        return await self._store.get_subscriptions()

    async def drain(self) -> None:
        """Wait until every delivery started so far has finished."""
        while self._deliveries:
            await asyncio.gather(*list(self._deliveries), return_exceptions=True)

    # -- internals ---------------------------------------------------------

    @staticmethod
    def _validate(params: Union[SubscriptionParams, Mapping[str, Any]]) -> SubscriptionParams:
        if isinstance(params, SubscriptionParams):
            return params
        try:
            return SubscriptionParams.model_validate(params)
        except ValidationError as exc:
            raise InvalidSubscriptionParams(_summarise(exc)) from exc

    @staticmethod
    def _coerce(item: DescriptorLike) -> SubscriptionDescriptor:
        if isinstance(item, SubscriptionDescriptor):
            return item.model_copy(update={"bound": False})
        try:
            return SubscriptionDescriptor.model_validate({**item, "bound": False})
        except (ValidationError, TypeError) as exc:
            raise InvalidSubscriptionParams(f"Unreadable subscription descriptor: {exc}") from exc

    def _new_id(self) -> str:
        subscription_id = f"{ID_PREFIX}{self._next_id}"
        self._next_id += 1
        return subscription_id

    def _reserve_id(self, subscription_id: Optional[str]) -> None:
        if not subscription_id or not subscription_id.startswith(ID_PREFIX):
            return
        suffix = subscription_id[len(ID_PREFIX):]
        if suffix.isdigit():
            self._next_id = max(self._next_id, int(suffix) + 1)

    async def _subscribe(self, client: ChannelClient, params: SubscriptionParams) -> SubscriptionDescriptor:
        descriptor = SubscriptionDescriptor(
            id=self._new_id(),
            event_kind=params.event_kind,
            filter=dict(params.filter),
            delivery_target=params.delivery_target,
        )
        await self._bind(client, descriptor)
        return descriptor

    async def _rebind(self, client: ChannelClient, descriptors: Iterable[DescriptorLike]) -> List[SubscriptionOutcome]:
        outcomes: List[SubscriptionOutcome] = []
        for item in descriptors:
            subscription_id = _descriptor_id(item)
            # ids handed out once stay taken, whether or not the rebind works
            self._reserve_id(subscription_id)
            try:
                descriptor = self._coerce(item)
                if descriptor.id in self._bindings:
                    await self._unbind(descriptor.id)
                await self._bind(client, descriptor)
            except GatewayError as exc:
                logger.warning("Could not resubscribe %s: %s", subscription_id, exc)
                outcomes.append(_failure(subscription_id, exc))
            else:
                outcomes.append(SubscriptionOutcome(id=descriptor.id, descriptor=descriptor.model_copy()))
        return outcomes

    async def _bind(self, client: ChannelClient, descriptor: SubscriptionDescriptor) -> None:
        binding = _Binding(event_type=descriptor.event_kind.value, client=client)
        binding.listener = self._make_listener(binding, descriptor)
        try:
            await _maybe_await(client.on(binding.event_type, binding.listener))
        except Exception as exc:
            raise ExternalClientFailure("install listener", str(exc)) from exc
        descriptor.bound = True
        self._bindings[descriptor.id] = binding
        self._descriptors[descriptor.id] = descriptor

    async def _unbind(self, subscription_id: str) -> None:
        binding = self._bindings.pop(subscription_id, None)
        descriptor = self._descriptors.get(subscription_id)
        if descriptor is not None:
            descriptor.bound = False
        if binding is None:
            return
        try:
            await _maybe_await(binding.client.off(binding.event_type, binding.listener))
        except Exception as exc:
            logger.warning("Failed to remove listener for %s: %s", subscription_id, exc)

    async def _unbind_all(self) -> None:
        for subscription_id in list(self._bindings):
            await self._unbind(subscription_id)

    async def _unsubscribe(self, subscription_id: str) -> None:
        if subscription_id not in self._descriptors:
            raise SubscriptionNotFound(subscription_id)
        await self._unbind(subscription_id)
        del self._descriptors[subscription_id]

    def _make_listener(self, binding: _Binding, descriptor: SubscriptionDescriptor) -> Listener:
        subscription_id = descriptor.id
        kind: EventKind = descriptor.event_kind
        event_filter = dict(descriptor.filter)
        target = descriptor.delivery_target

        async def listener(data: Any) -> None:
            if self._bindings.get(subscription_id) is not binding:
                return
            if not matches_filter(event_filter, data):
                return
            envelope = build_envelope(subscription_id, kind, data)
            task = asyncio.create_task(self._send(target, envelope))
            self._deliveries.add(task)
            task.add_done_callback(self._deliveries.discard)

        return listener

    async def _send(self, target: str, envelope: DeliveryEnvelope) -> None:
        try:
            await self._deliver(target, envelope)
        except Exception as exc:
            deliveries_counter.labels(outcome="failed").inc()
            logger.warning(
                "Delivery of %s for %s to %s failed: %s", envelope["event"], envelope["id"], target, exc
            )
            return
        deliveries_counter.labels(outcome="delivered").inc()

    async def _commit(self) -> None:
        bound_subscriptions_gauge.set(len(self._bindings))
        if self._store is None:
            return
        records = [
            descriptor.model_dump(by_alias=True, mode="json", exclude={"bound"})
            for descriptor in self._descriptors.values()
        ]
        try:
            await self._store.store_subscriptions(records)
        except Exception as exc:
            logger.warning("Failed to persist subscriptions: %s", exc)
