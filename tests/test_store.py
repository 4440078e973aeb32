"""Tests for the file-backed KeyValueStore."""

import asyncio
import json

import pytest

from channel_gateway.models import ConnectionOptions
from channel_gateway.services.store import KeyValueStore


@pytest.mark.asyncio  # type: ignore
async def test_creates_file_and_round_trips(tmp_path) -> None:
    path = tmp_path / "nested" / "store.json"
    store = KeyValueStore(str(path))
    assert json.loads(path.read_text()) == {}

    await store.set("channel", {"multisig": "0x1"})
    assert await store.get("channel") == {"multisig": "0x1"}
    assert await store.get("missing", "fallback") == "fallback"

    await store.delete("channel")
    assert await store.get("channel") is None


@pytest.mark.asyncio  # type: ignore
async def test_values_survive_reopen(tmp_path) -> None:
    path = str(tmp_path / "store.json")
    store = KeyValueStore(path)
    await store.store_mnemonic("alpha beta")
    await store.store_init_options(ConnectionOptions(network="mainnet", node_url="http://node"))
    await store.store_subscriptions([{"id": "sub_1"}])

    reopened = KeyValueStore(path)
    assert await reopened.get_mnemonic() == "alpha beta"
    options = await reopened.get_init_options()
    assert options == ConnectionOptions(network="mainnet", node_url="http://node")
    assert await reopened.get_subscriptions() == [{"id": "sub_1"}]
    raw = json.loads((tmp_path / "store.json").read_text())
    assert raw["initOptions"] == {"network": "mainnet", "nodeUrl": "http://node"}


@pytest.mark.asyncio  # type: ignore
async def test_empty_store_defaults(tmp_path) -> None:
    store = KeyValueStore(str(tmp_path / "store.json"))
    assert await store.get_mnemonic() is None
    assert await store.get_init_options() is None
    assert await store.get_subscriptions() == []


@pytest.mark.asyncio  # type: ignore
async def test_concurrent_sets_do_not_lose_updates(tmp_path) -> None:
    store = KeyValueStore(str(tmp_path / "store.json"))
    await asyncio.gather(*(store.set(f"key{i}", i) for i in range(20)))
    for i in range(20):
        assert await store.get(f"key{i}") == i
