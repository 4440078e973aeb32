"""Channel event kinds, filter shapes and delivery envelopes.

This module defines the event kinds a subscription may target, the
filter fields each kind accepts, and the helpers used by the
subscription registry to decide whether an event emitted on the client
bus matches a subscription and what payload is POSTed to the delivery
target.  Keeping these rules in one place means validation at subscribe
time and matching at delivery time cannot drift apart.

The envelope is a :class:`typing.TypedDict` so it stays a plain JSON
serialisable dictionary on the wire.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional, TypedDict


class EventKind(str, Enum):
    """Events emitted on the channel client's bus."""

    CREATE_CHANNEL = "CREATE_CHANNEL"
    DEPOSIT_STARTED = "DEPOSIT_STARTED"
    DEPOSIT_CONFIRMED = "DEPOSIT_CONFIRMED"
    DEPOSIT_FAILED = "DEPOSIT_FAILED"
    WITHDRAWAL_STARTED = "WITHDRAWAL_STARTED"
    WITHDRAWAL_CONFIRMED = "WITHDRAWAL_CONFIRMED"
    WITHDRAWAL_FAILED = "WITHDRAWAL_FAILED"
    CONDITIONAL_TRANSFER_CREATED = "CONDITIONAL_TRANSFER_CREATED"
    CONDITIONAL_TRANSFER_UNLOCKED = "CONDITIONAL_TRANSFER_UNLOCKED"
    CONDITIONAL_TRANSFER_FAILED = "CONDITIONAL_TRANSFER_FAILED"
    HASHLOCK_TRANSFER_CREATED = "HASHLOCK_TRANSFER_CREATED"
    HASHLOCK_TRANSFER_UNLOCKED = "HASHLOCK_TRANSFER_UNLOCKED"
    LINKED_TRANSFER_CREATED = "LINKED_TRANSFER_CREATED"
    LINKED_TRANSFER_UNLOCKED = "LINKED_TRANSFER_UNLOCKED"
    PROPOSE_INSTALL = "PROPOSE_INSTALL"
    REJECT_INSTALL = "REJECT_INSTALL"
    INSTALL = "INSTALL"
    UNINSTALL = "UNINSTALL"
    UPDATE_STATE = "UPDATE_STATE"


_TRANSFER_FIELDS: FrozenSet[str] = frozenset({"assetId", "appIdentityHash", "sender", "recipient"})
_APP_FIELDS: FrozenSet[str] = frozenset({"appIdentityHash"})
_FUNDING_FIELDS: FrozenSet[str] = frozenset({"assetId"})

FILTER_FIELDS: Dict[EventKind, FrozenSet[str]] = {
    EventKind.CREATE_CHANNEL: frozenset({"multisigAddress"}),
    EventKind.DEPOSIT_STARTED: _FUNDING_FIELDS,
    EventKind.DEPOSIT_CONFIRMED: _FUNDING_FIELDS,
    EventKind.DEPOSIT_FAILED: _FUNDING_FIELDS,
    EventKind.WITHDRAWAL_STARTED: _FUNDING_FIELDS,
    EventKind.WITHDRAWAL_CONFIRMED: _FUNDING_FIELDS,
    EventKind.WITHDRAWAL_FAILED: _FUNDING_FIELDS,
    EventKind.CONDITIONAL_TRANSFER_CREATED: _TRANSFER_FIELDS
    | {"conditionType", "paymentId", "lockHash"},
    EventKind.CONDITIONAL_TRANSFER_UNLOCKED: _TRANSFER_FIELDS
    | {"conditionType", "paymentId", "lockHash"},
    EventKind.CONDITIONAL_TRANSFER_FAILED: _TRANSFER_FIELDS
    | {"conditionType", "paymentId", "lockHash"},
    EventKind.HASHLOCK_TRANSFER_CREATED: _TRANSFER_FIELDS | {"lockHash"},
    EventKind.HASHLOCK_TRANSFER_UNLOCKED: _TRANSFER_FIELDS | {"lockHash"},
    EventKind.LINKED_TRANSFER_CREATED: _TRANSFER_FIELDS | {"paymentId"},
    EventKind.LINKED_TRANSFER_UNLOCKED: _TRANSFER_FIELDS | {"paymentId"},
    EventKind.PROPOSE_INSTALL: _APP_FIELDS,
    EventKind.REJECT_INSTALL: _APP_FIELDS,
    EventKind.INSTALL: _APP_FIELDS,
    EventKind.UNINSTALL: _APP_FIELDS,
    EventKind.UPDATE_STATE: _APP_FIELDS,
}


class DeliveryEnvelope(TypedDict):
    """Payload POSTed to a subscription's delivery target.

    * ``id`` (str): the subscription id that matched.
    * ``event`` (str): the :class:`EventKind` value.
    * ``data`` (Any): the event payload as emitted by the client.
    """

    id: str
    event: str
    data: Any


def validate_filter(kind: EventKind, event_filter: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    """Check that ``event_filter`` only uses fields allowed for ``kind``.

    Returns a normalised copy with string values.

    Raises
    ------
    ValueError
        If a key is not allowed for the event kind or a value is empty.
    """
    if not event_filter:
        return {}
    allowed = FILTER_FIELDS[kind]
    unknown = sorted(set(event_filter) - allowed)
    if unknown:
        raise ValueError(
            f"Filter fields {unknown} are not valid for {kind.value}; allowed: {sorted(allowed)}"
        )
    normalised: Dict[str, str] = {}
    for key, value in event_filter.items():
        if value is None or str(value) == "":
            raise ValueError(f"Filter field '{key}' must not be empty")
        normalised[key] = str(value)
    return normalised


def _same(expected: str, actual: Any) -> bool:
    if actual is None:
        return False
    actual_str = str(actual)
    # Hex identifiers (addresses, hashes) compare case-insensitively
    if expected.startswith("0x") and actual_str.startswith("0x"):
        return expected.lower() == actual_str.lower()
    return expected == actual_str


def matches_filter(event_filter: Mapping[str, str], data: Any) -> bool:
    """Return ``True`` when every filter field equals the event's field."""
    if not event_filter:
        return True
    if not isinstance(data, Mapping):
        return False
    return all(_same(expected, data.get(key)) for key, expected in event_filter.items())


def build_envelope(subscription_id: str, kind: EventKind, data: Any) -> DeliveryEnvelope:
    """Wrap an event payload for delivery."""
    return {"id": subscription_id, "event": kind.value, "data": data}
