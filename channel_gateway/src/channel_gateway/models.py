"""
Domain models for the channel gateway using Pydantic.  These models
validate requests coming from the outer request layer and describe the
records the gateway keeps (connection options, subscription
descriptors, batch outcomes).  Field names are snake_case in Python and
camelCase on the wire via aliases, matching the channel client's
parameter names.
"""

from __future__ import annotations

from typing import Any, Dict, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .models_events import EventKind, validate_filter

#: Native-asset sentinel; operations treat it as "no asset id".
ADDRESS_ZERO = "0x" + "0" * 40


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_params(self) -> Dict[str, Any]:
        """Dump to the camelCase dictionary the channel client expects."""
        return self.model_dump(by_alias=True, exclude_none=True)


class ConnectionOptions(_WireModel):
    """Options handed to the channel client connector."""

    network: Optional[str] = None
    eth_provider_url: Optional[str] = Field(None, alias="ethProviderUrl")
    node_url: Optional[str] = Field(None, alias="nodeUrl")
    log_level: Optional[int] = Field(None, alias="logLevel", ge=0, le=5)

    def merged_with(self, defaults: "ConnectionOptions") -> "ConnectionOptions":
        """Fill unset fields from ``defaults``."""
        values = defaults.model_dump()
        values.update(self.model_dump(exclude_none=True))
        return ConnectionOptions(**values)


class SubscriptionParams(_WireModel):
    """Request to forward one kind of channel event to a callback URL."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    event_kind: EventKind = Field(..., alias="eventKind")
    filter: Dict[str, Any] = Field(default_factory=dict)
    delivery_target: str = Field(..., alias="deliveryTarget")

    @field_validator("delivery_target")
    @classmethod
    def _check_target(cls, value: str) -> str:
        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("deliveryTarget must be an http(s) URL")
        return value

    @model_validator(mode="after")
    def _check_filter(self) -> "SubscriptionParams":
        self.filter = validate_filter(self.event_kind, self.filter)
        return self


class SubscriptionDescriptor(_WireModel):
    """Externally addressable record of a subscription."""

    id: str
    event_kind: EventKind = Field(..., alias="eventKind")
    filter: Dict[str, str] = Field(default_factory=dict)
    delivery_target: str = Field(..., alias="deliveryTarget")
    bound: bool = False


class SubscriptionOutcome(_WireModel):
    """Result for one element of a batch subscription operation."""

    id: Optional[str] = None
    descriptor: Optional[SubscriptionDescriptor] = None
    error: Optional[str] = None
    error_type: Optional[str] = Field(None, alias="errorType")

    @property
    def ok(self) -> bool:
        return self.error is None


class _AmountRequest(_WireModel):
    amount: str

    @field_validator("amount", mode="before")
    @classmethod
    def _check_amount(cls, value: Any) -> str:
        text = str(value).strip()
        if not text.isdigit() or int(text) <= 0:
            raise ValueError("amount must be a positive integer in base units")
        return text


class DepositRequest(_AmountRequest):
    asset_id: Optional[str] = Field(None, alias="assetId")


class WithdrawRequest(_AmountRequest):
    asset_id: Optional[str] = Field(None, alias="assetId")
    recipient: Optional[str] = None


class SwapRequest(_AmountRequest):
    from_asset_id: str = Field(..., alias="fromAssetId")
    to_asset_id: str = Field(..., alias="toAssetId")
    swap_rate: str = Field(..., alias="swapRate")


class HashLockTransferRequest(_AmountRequest):
    lock_hash: str = Field(..., alias="lockHash")
    recipient: Optional[str] = None
    asset_id: Optional[str] = Field(None, alias="assetId")
    meta: Optional[Dict[str, Any]] = None
    timelock: Optional[str] = None


class ResolveHashLockRequest(_WireModel):
    pre_image: str = Field(..., alias="preImage")
    asset_id: Optional[str] = Field(None, alias="assetId")


class LinkedTransferRequest(_AmountRequest):
    pre_image: str = Field(..., alias="preImage")
    payment_id: Optional[str] = Field(None, alias="paymentId")
    recipient: Optional[str] = None
    asset_id: Optional[str] = Field(None, alias="assetId")
    meta: Optional[Dict[str, Any]] = None


class ResolveLinkedRequest(_WireModel):
    pre_image: str = Field(..., alias="preImage")
    payment_id: str = Field(..., alias="paymentId")


class OnchainTransferRequest(_AmountRequest):
    asset_id: str = Field(ADDRESS_ZERO, alias="assetId")
    recipient: str
