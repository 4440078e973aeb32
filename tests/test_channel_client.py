"""Tests for signer derivation and dotted-path loading."""

import pytest

from channel_gateway.clients.channel_client import derive_address, derive_signer, load_callable
from channel_gateway.models_events import build_envelope

MNEMONIC = "test test test test test test test test test test test junk"


def test_derive_signer_uses_first_account():
    assert derive_signer(MNEMONIC) == "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
    assert derive_address(MNEMONIC) == "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"


def test_derive_signer_rejects_invalid_mnemonic():
    with pytest.raises(Exception):
        derive_signer("not a real mnemonic")


def test_load_callable_resolves_attribute():
    assert load_callable("channel_gateway.models_events:build_envelope") is build_envelope


@pytest.mark.parametrize(
    "path",
    ["channel_gateway.models_events", ":build_envelope", "channel_gateway.models_events:ADDRESS"],
)
def test_load_callable_rejects_bad_paths(path):
    with pytest.raises((ValueError, AttributeError)):
        load_callable(path)


def test_load_callable_rejects_non_callable():
    with pytest.raises(ValueError):
        load_callable("channel_gateway.models:ADDRESS_ZERO")
