"""Status projection: canonical progress key and "who acts next" grouping.

The status key describes how far an engagement has progressed; the workflow
group describes whose move it is. They are computed independently and can
disagree on purpose (a compliance rejection is progress-wise still "awaiting
compliance" territory, but the strategist owns the next action).
"""

from collections.abc import Iterable, Mapping

from tax_engagement.domain.enums import (
    AcceptanceStatus,
    AgreementStatus,
    ClientStatusKey,
    StrategyPhase,
    WorkflowGroup,
)
from tax_engagement.domain.schemas import Agreement, ClientRecord
from tax_engagement.services.agreement_state_machine import is_paid, is_signed
from tax_engagement.services.document_aggregator import DocumentCounts
from tax_engagement.services.strategy_resolver import Step5State, compute_step5_state

S = AgreementStatus
K = ClientStatusKey
G = WorkflowGroup

CLIENT_STATUS_LABELS: dict[ClientStatusKey, str] = {
    K.AWAITING_AGREEMENT: "agreement · pending signature",
    K.AWAITING_PAYMENT: "payment · pending",
    K.AWAITING_DOCUMENTS: "documents · pending upload",
    K.READY_FOR_STRATEGY: "strategy · not created",
    K.AWAITING_COMPLIANCE: "strategy · compliance review",
    K.AWAITING_APPROVAL: "strategy · awaiting client approval",
    K.ACTIVE: "strategy · active",
}

WORKFLOW_GROUP_LABELS: dict[WorkflowGroup, str] = {
    G.ACTION_REQUIRED: "Action Required",
    G.WAITING_ON_CLIENT: "Waiting on Client",
    G.WAITING_ON_COMPLIANCE: "Waiting on Compliance",
    G.ACTIVE_CLIENTS: "Active Clients",
    G.ARCHIVED: "Archived",
}


# ---------------------------------------------------------------------------
# Status key
# ---------------------------------------------------------------------------


def compute_status_key(
    agreement_signed: bool,
    payment_received: bool,
    counts: DocumentCounts,
    step5: Step5State,
) -> ClientStatusKey:
    """Progress key; pure, first matching rule wins."""
    if not agreement_signed:
        return K.AWAITING_AGREEMENT
    if not payment_received:
        return K.AWAITING_PAYMENT
    if not counts.all_accepted:
        return K.AWAITING_DOCUMENTS
    if step5.is_complete:
        return K.ACTIVE
    if step5.phase == StrategyPhase.CLIENT_REVIEW:
        return K.AWAITING_APPROVAL
    if step5.phase == StrategyPhase.COMPLIANCE_REVIEW:
        return K.AWAITING_COMPLIANCE
    if step5.strategy_sent:
        return K.AWAITING_COMPLIANCE
    return K.READY_FOR_STRATEGY


def project_status_key(
    agreement: Agreement | None,
    counts: DocumentCounts,
    step5: Step5State,
    envelope_completed: bool = False,
) -> ClientStatusKey:
    """Status key for *agreement*, trusting a completed envelope as signed."""
    if agreement is None:
        return K.AWAITING_AGREEMENT
    signed = is_signed(agreement.status) or envelope_completed
    return compute_status_key(signed, is_paid(agreement.status), counts, step5)


# ---------------------------------------------------------------------------
# Workflow group
# ---------------------------------------------------------------------------


def compute_workflow_group(
    status: AgreementStatus | None,
    step5: Step5State,
    archived: bool = False,
) -> WorkflowGroup:
    """Who must act next, from the raw agreement status and sub-phase."""
    if archived:
        return G.ARCHIVED
    if status is None:
        return G.ACTION_REQUIRED

    if status in (S.DRAFT, S.CANCELLED, S.PENDING_STRATEGY):
        return G.ACTION_REQUIRED

    if status in (S.PENDING_SIGNATURE, S.PENDING_PAYMENT, S.PENDING_TODOS_COMPLETION):
        return G.WAITING_ON_CLIENT

    if status == S.PENDING_STRATEGY_REVIEW:
        if step5.phase == StrategyPhase.COMPLIANCE_REVIEW:
            return G.WAITING_ON_COMPLIANCE
        if step5.phase == StrategyPhase.CLIENT_REVIEW:
            return G.WAITING_ON_CLIENT
        # Both approved (finalize) or rejected/declined (revise)
        return G.ACTION_REQUIRED

    if status == S.COMPLETED:
        return G.ACTIVE_CLIENTS

    return G.ACTION_REQUIRED


# ---------------------------------------------------------------------------
# Dashboard triage
# ---------------------------------------------------------------------------


def latest_agreement(agreements: Iterable[Agreement]) -> Agreement | None:
    """Most recently created agreement, or None."""
    return max(agreements, key=lambda a: a.created_at, default=None)


def group_clients_by_workflow(
    clients: Iterable[ClientRecord],
    agreements: Iterable[Agreement],
    strategy_statuses: Mapping[str, AcceptanceStatus] | None = None,
) -> dict[WorkflowGroup, list[ClientRecord]]:
    """Bucket clients by the workflow group of their latest agreement.

    *strategy_statuses* maps agreement id to its strategy document's
    acceptance status where the caller has it; without it a strategy under
    review is assumed to sit with compliance.
    """
    strategy_statuses = strategy_statuses or {}
    by_client: dict[str, list[Agreement]] = {}
    for agreement in agreements:
        by_client.setdefault(agreement.client_id, []).append(agreement)

    groups: dict[WorkflowGroup, list[ClientRecord]] = {group: [] for group in WorkflowGroup}
    for client in clients:
        latest = latest_agreement(by_client.get(client.id, []))
        status = latest.status if latest else None
        step5 = compute_step5_state(status, strategy_statuses.get(latest.id) if latest else None)
        groups[compute_workflow_group(status, step5, archived=client.archived)].append(client)
    return groups


# ---------------------------------------------------------------------------
# Strategist action gating
# ---------------------------------------------------------------------------


def can_send_agreement(agreement: Agreement | None) -> bool:
    return agreement is not None and agreement.status == S.DRAFT


def can_send_payment_link(agreement: Agreement | None) -> bool:
    return agreement is not None and is_signed(agreement.status) and not is_paid(agreement.status)


def can_advance_to_strategy(agreement: Agreement | None, counts: DocumentCounts) -> bool:
    return (
        agreement is not None
        and agreement.status == S.PENDING_TODOS_COMPLETION
        and counts.all_accepted
    )


def can_send_strategy(agreement: Agreement | None, step5: Step5State) -> bool:
    """First send from PENDING_STRATEGY, or a revision after rejection."""
    if agreement is None:
        return False
    if agreement.status == S.PENDING_STRATEGY:
        return True
    return agreement.status == S.PENDING_STRATEGY_REVIEW and (
        step5.compliance_rejected or step5.client_declined
    )


def can_complete_agreement(agreement: Agreement | None, step5: Step5State) -> bool:
    return (
        agreement is not None
        and agreement.status == S.PENDING_STRATEGY_REVIEW
        and step5.is_complete
    )
