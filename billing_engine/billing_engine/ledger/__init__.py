"""Credit ledger."""

from billing_engine.ledger.credit_ledger import CreditLedger, plan_application

__all__ = ["CreditLedger", "plan_application"]
