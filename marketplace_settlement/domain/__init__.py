"""Domain layer: aggregates, value objects, pricing and error taxonomy."""
from marketplace_settlement.domain.commission import CommissionRateSource, CommissionResolver
from marketplace_settlement.domain.consistency import is_consistent
from marketplace_settlement.domain.effects import (
    InventoryAdjustment,
    Notification,
    OrderPaymentSync,
    PaymentCancellation,
    RefundRequest,
    SideEffect,
    parse_side_effect,
)
from marketplace_settlement.domain.errors import (
    ConcurrencyError,
    ConfigurationError,
    ConflictError,
    CorruptAggregateError,
    DisputeLocked,
    DuplicateEvent,
    GatewayError,
    IllegalTransition,
    InvalidAmount,
    InvalidSignature,
    InvariantViolation,
    NotFoundError,
    SettlementError,
    ValidationError,
)
from marketplace_settlement.domain.order import (
    CartLine,
    ItemStatus,
    OrderAggregate,
    OrderStatus,
    ReturnReason,
    ReturnStatus,
    ShippingInfo,
    SubOrderStatus,
)
from marketplace_settlement.domain.payment import (
    DisputeStatus,
    PaymentAggregate,
    PaymentFees,
    PaymentStatus,
    PaymentSummary,
    RefundReason,
    RefundStatus,
)
from marketplace_settlement.domain.settlement import PriceAdjustments, Pricing, calculate_pricing
from marketplace_settlement.domain.value_objects import Currency, Money

__all__ = [
    "CartLine",
    "CommissionRateSource",
    "CommissionResolver",
    "ConcurrencyError",
    "ConfigurationError",
    "ConflictError",
    "CorruptAggregateError",
    "Currency",
    "DisputeLocked",
    "DisputeStatus",
    "DuplicateEvent",
    "GatewayError",
    "IllegalTransition",
    "InvalidAmount",
    "InvalidSignature",
    "InvariantViolation",
    "InventoryAdjustment",
    "ItemStatus",
    "Money",
    "NotFoundError",
    "Notification",
    "OrderAggregate",
    "OrderPaymentSync",
    "OrderStatus",
    "PaymentAggregate",
    "PaymentCancellation",
    "PaymentFees",
    "PaymentStatus",
    "PaymentSummary",
    "PriceAdjustments",
    "Pricing",
    "RefundReason",
    "RefundRequest",
    "RefundStatus",
    "ReturnReason",
    "ReturnStatus",
    "SettlementError",
    "ShippingInfo",
    "SideEffect",
    "SubOrderStatus",
    "ValidationError",
    "calculate_pricing",
    "is_consistent",
    "parse_side_effect",
]
