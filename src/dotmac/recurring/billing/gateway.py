"""
Charge collaborator contract.

The payment processor integration lives outside this package; the engine only
sees ``ChargeGateway.charge`` and the ``ChargeResult`` it returns.
"""

from decimal import Decimal
from typing import Protocol, runtime_checkable

from dotmac.recurring.billing.enums import ChargeFailureKind, TransactionType
from dotmac.recurring.billing.models import AppBaseModel


class ChargeResult(AppBaseModel):
    """Outcome of a charge attempt."""

    success: bool
    charge_ref: str | None = None
    failure_code: str | None = None
    failure_kind: ChargeFailureKind | None = None
    message: str | None = None
    outcome_known: bool = True
    transaction_type: TransactionType = TransactionType.PURCHASE

    @classmethod
    def succeeded(
        cls, charge_ref: str, transaction_type: TransactionType = TransactionType.PURCHASE
    ) -> "ChargeResult":
        return cls(success=True, charge_ref=charge_ref, transaction_type=transaction_type)

    @classmethod
    def declined(
        cls, failure_code: str, *, permanent: bool = False, message: str | None = None
    ) -> "ChargeResult":
        """The processor answered and refused the charge."""
        return cls(
            success=False,
            failure_code=failure_code,
            failure_kind=ChargeFailureKind.PERMANENT if permanent else ChargeFailureKind.TRANSIENT,
            message=message,
        )

    @classmethod
    def unknown(cls, failure_code: str, message: str | None = None) -> "ChargeResult":
        """No answer (timeout, transport error); the charge may or may not have happened."""
        return cls(
            success=False,
            failure_code=failure_code,
            failure_kind=ChargeFailureKind.TRANSIENT,
            message=message,
            outcome_known=False,
        )

    @property
    def is_permanent_failure(self) -> bool:
        return not self.success and self.failure_kind == ChargeFailureKind.PERMANENT

    @property
    def is_definitive(self) -> bool:
        """True when the processor gave an answer, successful or not."""
        return self.outcome_known


@runtime_checkable
class ChargeGateway(Protocol):
    """Charges a payment instrument. Implementations must honour the idempotency key."""

    async def charge(
        self,
        amount: Decimal,
        currency: str,
        payment_method_ref: str | None,
        idempotency_key: str,
    ) -> ChargeResult: ...  # pragma: no cover - protocol


__all__ = ["ChargeGateway", "ChargeResult"]
