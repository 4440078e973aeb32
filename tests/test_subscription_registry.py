"""Tests for the SubscriptionRegistry."""

import asyncio

import pytest

from channel_gateway.exceptions import InvalidSubscriptionParams, SubscriptionNotFound
from channel_gateway.models import SubscriptionDescriptor
from channel_gateway.models_events import EventKind
from channel_gateway.services.store import KeyValueStore
from channel_gateway.services.subscriptions import SubscriptionRegistry
from tests.helpers.fake_client import FakeChannelClient, RecordingDeliverer

ASSET = "0x5A3b1F4a6d1C2bA3f8eE9d2C4f1A0b9C8d7E6f5A"


def _params(kind=EventKind.DEPOSIT_CONFIRMED, target="http://hooks.local/deposits", **event_filter):
    return {"eventKind": kind.value, "filter": event_filter, "deliveryTarget": target}


@pytest.fixture
def deliverer():
    return RecordingDeliverer()


@pytest.fixture
def registry(deliverer):
    return SubscriptionRegistry(deliverer)


@pytest.mark.asyncio  # type: ignore
async def test_subscribe_then_unsubscribe_round_trip(registry) -> None:
    client = FakeChannelClient()

    descriptor = await registry.subscribe_one(client, _params())
    assert descriptor.id.startswith("sub_")
    assert descriptor.bound
    assert client.bus.listener_count(EventKind.DEPOSIT_CONFIRMED.value) == 1
    assert registry.bound_count == 1

    await registry.unsubscribe_one(client, descriptor.id)
    assert client.bus.listener_count() == 0
    assert registry.bound_count == 0
    assert registry.descriptors() == []
    with pytest.raises(SubscriptionNotFound):
        await registry.unsubscribe_one(client, descriptor.id)


@pytest.mark.asyncio  # type: ignore
async def test_unsubscribe_unknown_id(registry) -> None:
    with pytest.raises(SubscriptionNotFound) as excinfo:
        await registry.unsubscribe_one(FakeChannelClient(), "sub_404")
    assert excinfo.value.subscription_id == "sub_404"


@pytest.mark.asyncio  # type: ignore
@pytest.mark.parametrize(
    "params",
    [
        {"eventKind": "NOT_AN_EVENT", "deliveryTarget": "http://hooks.local"},
        {"eventKind": "DEPOSIT_CONFIRMED", "deliveryTarget": "ftp://hooks.local"},
        {"eventKind": "DEPOSIT_CONFIRMED", "deliveryTarget": "http://hooks.local", "filter": {"paymentId": "1"}},
        {"eventKind": "DEPOSIT_CONFIRMED", "deliveryTarget": "http://hooks.local", "filter": {"assetId": ""}},
        {"eventKind": "DEPOSIT_CONFIRMED"},
        {"eventKind": "DEPOSIT_CONFIRMED", "deliveryTarget": "http://hooks.local", "extra": True},
    ],
)
async def test_invalid_params_install_nothing(registry, params) -> None:
    client = FakeChannelClient()
    with pytest.raises(InvalidSubscriptionParams):
        await registry.subscribe_one(client, params)
    assert client.bus.listener_count() == 0
    assert registry.descriptors() == []


@pytest.mark.asyncio  # type: ignore
async def test_batch_subscribe_reports_each_element(registry) -> None:
    client = FakeChannelClient()
    batch = [
        _params(),
        {"eventKind": "BOGUS", "deliveryTarget": "http://hooks.local"},
        _params(EventKind.INSTALL, "http://hooks.local/apps"),
        {"eventKind": "INSTALL", "deliveryTarget": "not a url"},
    ]

    outcomes = await registry.subscribe_batch(client, batch)

    assert [outcome.ok for outcome in outcomes] == [True, False, True, False]
    assert outcomes[1].error_type == "InvalidSubscriptionParams"
    assert outcomes[1].id is None
    assert client.bus.listener_count() == 2
    assert registry.bound_count == 2


@pytest.mark.asyncio  # type: ignore
async def test_batch_unsubscribe_partial(registry) -> None:
    client = FakeChannelClient()
    first = await registry.subscribe_one(client, _params())
    second = await registry.subscribe_one(client, _params())

    outcomes = await registry.unsubscribe_batch(client, [first.id, "sub_999", second.id])

    assert [outcome.ok for outcome in outcomes] == [True, False, True]
    assert outcomes[1].error_type == "SubscriptionNotFound"
    assert client.bus.listener_count() == 0


@pytest.mark.asyncio  # type: ignore
async def test_unsubscribe_all(registry) -> None:
    client = FakeChannelClient()
    for _ in range(3):
        await registry.subscribe_one(client, _params())

    removed = await registry.unsubscribe_all(client)

    assert removed == 3
    assert client.bus.listener_count() == 0
    assert registry.descriptors() == []
    assert await registry.unsubscribe_all(client) == 0


@pytest.mark.asyncio  # type: ignore
async def test_filtered_delivery(registry, deliverer) -> None:
    client = FakeChannelClient()
    filtered = await registry.subscribe_one(client, _params(assetId=ASSET))
    unfiltered = await registry.subscribe_one(client, _params(target="http://hooks.local/all"))

    await client.emit(EventKind.DEPOSIT_CONFIRMED.value, {"assetId": ASSET.lower(), "amount": "5"})
    await registry.drain()
    await client.emit(EventKind.DEPOSIT_CONFIRMED.value, {"assetId": "0x" + "1" * 40})
    await registry.drain()
    await client.emit(EventKind.WITHDRAWAL_CONFIRMED.value, {"assetId": ASSET})
    await registry.drain()

    delivered_ids = [envelope["id"] for _, envelope in deliverer.deliveries]
    assert delivered_ids.count(filtered.id) == 1
    assert delivered_ids.count(unfiltered.id) == 2
    target, envelope = deliverer.deliveries[0]
    assert target == "http://hooks.local/deposits"
    assert envelope == {
        "id": filtered.id,
        "event": "DEPOSIT_CONFIRMED",
        "data": {"assetId": ASSET.lower(), "amount": "5"},
    }


@pytest.mark.asyncio  # type: ignore
async def test_delivery_failure_is_contained(registry, deliverer) -> None:
    client = FakeChannelClient()
    await registry.subscribe_one(client, _params())
    deliverer.error = RuntimeError("callback down")

    invoked = await client.emit(EventKind.DEPOSIT_CONFIRMED.value, {"assetId": ASSET})
    await registry.drain()

    assert invoked == 1
    assert registry.bound_count == 1


@pytest.mark.asyncio  # type: ignore
async def test_ids_are_never_reused(registry) -> None:
    client = FakeChannelClient()
    first = await registry.subscribe_one(client, _params())
    await registry.unsubscribe_one(client, first.id)
    second = await registry.subscribe_one(client, _params())
    assert second.id != first.id


@pytest.mark.asyncio  # type: ignore
async def test_resubscribe_keeps_ids_on_new_client(registry, deliverer) -> None:
    old = FakeChannelClient("old")
    new = FakeChannelClient("new")
    first = await registry.subscribe_one(old, _params())
    second = await registry.subscribe_one(old, _params(EventKind.UNINSTALL, "http://hooks.local/apps"))
    snapshot = registry.descriptors()

    await registry.unsubscribe_all(old)
    outcomes = await registry.resubscribe_batch(new, snapshot)

    assert [outcome.id for outcome in outcomes] == [first.id, second.id]
    assert all(outcome.ok for outcome in outcomes)
    assert old.bus.listener_count() == 0
    assert new.bus.listener_count() == 2
    assert {descriptor.id for descriptor in registry.descriptors()} == {first.id, second.id}

    await new.emit(EventKind.UNINSTALL.value, {"appIdentityHash": "0xaa"})
    await registry.drain()
    assert deliverer.deliveries[-1][1]["id"] == second.id


@pytest.mark.asyncio  # type: ignore
async def test_resubscribe_reports_unreadable_descriptor(registry) -> None:
    client = FakeChannelClient()
    outcomes = await registry.resubscribe_batch(
        client,
        [
            {"id": "sub_7", "eventKind": "INSTALL", "deliveryTarget": "http://hooks.local/apps"},
            {"id": "sub_8", "eventKind": "NOPE", "deliveryTarget": "http://hooks.local/apps"},
        ],
    )

    assert [outcome.ok for outcome in outcomes] == [True, False]
    assert outcomes[1].id == "sub_8"
    # ids read from persisted descriptors stay taken even when rebinding fails
    fresh = await registry.subscribe_one(client, _params())
    assert fresh.id == "sub_9"


@pytest.mark.asyncio  # type: ignore
async def test_resubscribe_moves_already_bound_descriptor(registry) -> None:
    old = FakeChannelClient("old")
    new = FakeChannelClient("new")
    descriptor = await registry.subscribe_one(old, _params())

    outcomes = await registry.resubscribe_batch(new, [descriptor])

    assert outcomes[0].ok
    assert old.bus.listener_count() == 0
    assert new.bus.listener_count() == 1
    assert registry.bound_count == 1


@pytest.mark.asyncio  # type: ignore
async def test_descriptors_are_persisted(tmp_path, deliverer) -> None:
    store = KeyValueStore(str(tmp_path / "store.json"))
    registry = SubscriptionRegistry(deliverer, store=store)
    client = FakeChannelClient()
    descriptor = await registry.subscribe_one(client, _params(assetId=ASSET))

    persisted = await SubscriptionRegistry(deliverer, store=store).load_persisted()

    assert persisted == [
        {
            "id": descriptor.id,
            "eventKind": "DEPOSIT_CONFIRMED",
            "filter": {"assetId": ASSET},
            "deliveryTarget": "http://hooks.local/deposits",
        }
    ]
    restored = SubscriptionRegistry(deliverer, store=store)
    outcomes = await restored.resubscribe_batch(FakeChannelClient(), persisted)
    assert [outcome.id for outcome in outcomes] == [descriptor.id]
    assert isinstance(restored.get(descriptor.id), SubscriptionDescriptor)


@pytest.mark.asyncio  # type: ignore
async def test_failed_rebind_keeps_ids_reserved(registry) -> None:
    rejecting = FakeChannelClient("rejecting", fail_on=True)
    persisted = [
        {"id": "sub_1", "eventKind": "INSTALL", "deliveryTarget": "http://hooks.local/apps"},
        {"id": "sub_2", "eventKind": "UNINSTALL", "deliveryTarget": "http://hooks.local/apps"},
    ]

    outcomes = await registry.resubscribe_batch(rejecting, persisted)

    assert [(outcome.id, outcome.ok) for outcome in outcomes] == [("sub_1", False), ("sub_2", False)]
    fresh = await registry.subscribe_one(FakeChannelClient(), _params())
    assert fresh.id not in {"sub_1", "sub_2"}
    assert fresh.id == "sub_3"


@pytest.mark.asyncio  # type: ignore
async def test_rebind_all_moves_every_binding_off_the_old_client(registry) -> None:
    old = FakeChannelClient("old")
    new = FakeChannelClient("new")
    first = await registry.subscribe_one(old, _params())
    second = await registry.subscribe_one(old, _params(EventKind.INSTALL, "http://hooks.local/apps"))

    outcomes = await registry.rebind_all(new)

    assert [outcome.id for outcome in outcomes] == [first.id, second.id]
    assert old.bus.listener_count() == 0
    assert new.bus.listener_count() == 2
    assert registry.bound_count == 2


@pytest.mark.asyncio  # type: ignore
async def test_unsubscribe_all_during_rebind_is_not_undone(tmp_path, deliverer) -> None:
    store = KeyValueStore(str(tmp_path / "store.json"))
    registry = SubscriptionRegistry(deliverer, store=store)
    old = FakeChannelClient("old")
    new = FakeChannelClient("new")
    await registry.subscribe_one(old, _params())

    # the store write inside rebind_all yields while the registry lock is held
    rebind = asyncio.create_task(registry.rebind_all(new))
    await asyncio.sleep(0)
    removed = await registry.unsubscribe_all(new)
    outcomes = await rebind

    assert [outcome.ok for outcome in outcomes] == [True]
    assert removed == 1
    assert registry.bound_count == 0
    assert registry.descriptors() == []
    assert old.bus.listener_count() == 0
    assert new.bus.listener_count() == 0


@pytest.mark.asyncio  # type: ignore
async def test_slow_callback_does_not_delay_other_subscribers() -> None:
    gate = asyncio.Event()
    delivered = []

    async def deliver(target, envelope) -> None:
        if target.endswith("/slow"):
            await gate.wait()
        delivered.append(target)

    registry = SubscriptionRegistry(deliver)
    client = FakeChannelClient()
    await registry.subscribe_one(client, _params(target="http://hooks.local/slow"))
    await registry.subscribe_one(client, _params(target="http://hooks.local/fast"))

    invoked = await asyncio.wait_for(client.emit(EventKind.DEPOSIT_CONFIRMED.value, {"assetId": ASSET}), 1)
    for _ in range(5):
        await asyncio.sleep(0)

    assert invoked == 2
    assert delivered == ["http://hooks.local/fast"]
    assert registry.pending_deliveries == 1

    gate.set()
    await registry.drain()
    assert delivered == ["http://hooks.local/fast", "http://hooks.local/slow"]
    assert registry.pending_deliveries == 0
