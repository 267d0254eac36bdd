"""Settlement workflows: mutation unit, side effects, payments, refunds, reconciliation."""
from marketplace_settlement.core.coordinator import EventOutcome, ReconciliationCoordinator
from marketplace_settlement.core.effects import SideEffectExecutor
from marketplace_settlement.core.orders import OrderWorkflow
from marketplace_settlement.core.payments import PaymentWorkflow
from marketplace_settlement.core.refunds import RefundDisputeManager
from marketplace_settlement.core.service import OperationResult, SettlementService
from marketplace_settlement.core.transactions import AggregateMutator, MutationOutcome

__all__ = [
    "AggregateMutator",
    "EventOutcome",
    "MutationOutcome",
    "OperationResult",
    "OrderWorkflow",
    "PaymentWorkflow",
    "ReconciliationCoordinator",
    "RefundDisputeManager",
    "SettlementService",
    "SideEffectExecutor",
]
