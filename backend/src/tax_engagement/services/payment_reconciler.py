"""Payment reconciliation.

A paid charge is the source of truth for payment. When the platform still
shows the agreement at PENDING_PAYMENT, the reconciler advances it to
PENDING_TODOS_COMPLETION on the system's behalf.
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from tax_engagement.domain.enums import AgreementActor, AgreementStatus, ChargeStatus
from tax_engagement.domain.schemas import Agreement, Charge
from tax_engagement.infra.gateway import EngagementGateway
from tax_engagement.services.agreement_state_machine import AgreementStateMachine

logger = logging.getLogger(__name__)

state_machine = AgreementStateMachine()


def select_active_charge(charges: Sequence[Charge]) -> Charge | None:
    """The first pending charge, else the first charge, else None."""
    for charge in charges:
        if charge.status == ChargeStatus.PENDING:
            return charge
    return charges[0] if charges else None


def has_paid_charge(charges: Sequence[Charge]) -> bool:
    return any(charge.status == ChargeStatus.PAID for charge in charges)


@dataclass(frozen=True)
class PaymentSnapshot:
    charges: tuple[Charge, ...]
    active_charge: Charge | None
    advance_needed: bool


class PaymentReconciler:
    def __init__(self, gateway: EngagementGateway):
        self.gateway = gateway

    async def load(self, agreement: Agreement) -> PaymentSnapshot:
        """Fetch charges for *agreement*. Gateway errors propagate."""
        charges = tuple(await self.gateway.get_charges_for_agreement(agreement.id))
        advance_needed = (
            agreement.status == AgreementStatus.PENDING_PAYMENT and has_paid_charge(charges)
        )
        if advance_needed:
            logger.info(
                "Agreement %s has a paid charge but is still %s",
                agreement.id, agreement.status.value,
            )
        return PaymentSnapshot(
            charges=charges,
            active_charge=select_active_charge(charges),
            advance_needed=advance_needed,
        )

    async def advance(self, agreement: Agreement) -> bool:
        """Move a paid agreement to PENDING_TODOS_COMPLETION.

        Never raises: a failure is logged and reported as False so the
        caller can carry on without it.
        """
        target = AgreementStatus.PENDING_TODOS_COMPLETION
        try:
            state_machine.validate_transition(agreement.status, target, AgreementActor.SYSTEM)
            accepted = await self.gateway.update_agreement_status(agreement.id, target)
        except Exception as e:
            logger.error("Auto-advance failed for agreement %s: %s", agreement.id, e)
            return False
        if not accepted:
            logger.error("Platform refused auto-advance for agreement %s", agreement.id)
            return False
        logger.info("Agreement %s advanced to %s after payment", agreement.id, target.value)
        return True
