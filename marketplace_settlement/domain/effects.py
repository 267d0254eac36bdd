"""
Side-effect intents returned by aggregate transitions.

Transitions never call collaborators themselves. They return a list of
intents which the coordinator executes after the aggregate is committed.
A failed intent is queued for retry and never rolls the commit back.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from marketplace_settlement.domain.value_objects import Money


class InventoryAdjustment(BaseModel):
    """Reserve at placement, decrement at confirmation, release on cancel/return."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["inventory"] = "inventory"
    action: Literal["reserve", "release", "decrement"]
    product_id: str
    quantity: int
    order_id: str


class Notification(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["notification"] = "notification"
    recipient: str
    template: str
    data: dict[str, Any] = Field(default_factory=dict)


class RefundRequest(BaseModel):
    """Dependent refund issued after an order cancellation commits."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["refund_request"] = "refund_request"
    order_id: str
    payment_id: str
    refund_id: str
    amount: Money
    reason: str
    actor: str


class PaymentCancellation(BaseModel):
    """Void a payment that was never completed, after its order was cancelled."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["payment_cancellation"] = "payment_cancellation"
    order_id: str
    payment_id: str
    actor: str


class OrderPaymentSync(BaseModel):
    """Bring an order in line with its payment (dependent step after a payment write)."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["order_payment_sync"] = "order_payment_sync"
    order_id: str
    payment_id: str
    actor: str
    note: str | None = None


SideEffect = Annotated[
    Union[InventoryAdjustment, Notification, RefundRequest, PaymentCancellation, OrderPaymentSync],
    Field(discriminator="kind"),
]

side_effect_adapter: TypeAdapter[SideEffect] = TypeAdapter(SideEffect)


def parse_side_effect(data: dict[str, Any]) -> SideEffect:
    """Rebuild an intent from its stored JSON form."""
    return side_effect_adapter.validate_python(data)
