"""
Marketplace settlement core.

Order and payment state machines for a multi-vendor marketplace, with
commission-based settlement, refunds, disputes and idempotent reconciliation
of payment-gateway notifications.
"""

__version__ = "0.1.0"
