"""Strategy review sub-phase resolution.

Inside PENDING_STRATEGY_REVIEW the strategy document's acceptance status
tracks the compliance -> client approval flow:

    REQUEST_COMPLIANCE_ACCEPTANCE  compliance reviewing
    ACCEPTED_BY_COMPLIANCE         compliance approved, client next
    REQUEST_CLIENT_ACCEPTANCE      client reviewing
    ACCEPTED_BY_CLIENT             both approved, strategist may finalize
    REJECTED_BY_COMPLIANCE         strategist must revise and resend
    REJECTED_BY_CLIENT             strategist must revise and resend

Rejection never moves the agreement status; resending sets the document
back to REQUEST_COMPLIANCE_ACCEPTANCE, which clears the previous flags.
"""

from collections.abc import Iterable
from dataclasses import dataclass

from tax_engagement.domain.enums import AcceptanceStatus, AgreementStatus, StrategyPhase
from tax_engagement.domain.schemas import Agreement, Document
from tax_engagement.services.metadata_codec import MetadataStore

AS = AcceptanceStatus


@dataclass(frozen=True)
class Step5State:
    """Approval state of the strategy document."""

    phase: StrategyPhase = StrategyPhase.NOT_CREATED
    strategy_sent: bool = False
    compliance_approved: bool = False
    compliance_rejected: bool = False
    client_approved: bool = False
    client_declined: bool = False
    is_complete: bool = False
    acceptance_status: AcceptanceStatus | None = None


NOT_CREATED = Step5State()


def _review_state(status: AcceptanceStatus | None) -> Step5State:
    if status in (AS.ACCEPTED_BY_COMPLIANCE, AS.REQUEST_CLIENT_ACCEPTANCE):
        return Step5State(
            phase=StrategyPhase.CLIENT_REVIEW,
            strategy_sent=True,
            compliance_approved=True,
            acceptance_status=status,
        )
    if status == AS.ACCEPTED_BY_CLIENT:
        return Step5State(
            phase=StrategyPhase.COMPLETE,
            strategy_sent=True,
            compliance_approved=True,
            client_approved=True,
            is_complete=True,
            acceptance_status=status,
        )
    if status == AS.REJECTED_BY_COMPLIANCE:
        return Step5State(
            phase=StrategyPhase.COMPLIANCE_REJECTED,
            strategy_sent=True,
            compliance_rejected=True,
            acceptance_status=status,
        )
    if status == AS.REJECTED_BY_CLIENT:
        # The client only reviews after compliance signed off
        return Step5State(
            phase=StrategyPhase.CLIENT_DECLINED,
            strategy_sent=True,
            compliance_approved=True,
            client_declined=True,
            acceptance_status=status,
        )
    # REQUEST_COMPLIANCE_ACCEPTANCE, or review without a readable document
    return Step5State(
        phase=StrategyPhase.COMPLIANCE_REVIEW,
        strategy_sent=True,
        acceptance_status=status,
    )


def compute_step5_state(
    agreement_status: AgreementStatus | None,
    document_status: AcceptanceStatus | None = None,
) -> Step5State:
    """Derive the strategy sub-phase from the agreement and document statuses."""
    if agreement_status == AgreementStatus.COMPLETED:
        return Step5State(
            phase=StrategyPhase.COMPLETE,
            strategy_sent=True,
            compliance_approved=True,
            client_approved=True,
            is_complete=True,
            acceptance_status=document_status,
        )

    if agreement_status == AgreementStatus.PENDING_STRATEGY_REVIEW:
        return _review_state(document_status)

    if agreement_status == AgreementStatus.PENDING_STRATEGY and document_status in (
        AS.REJECTED_BY_COMPLIANCE,
        AS.REJECTED_BY_CLIENT,
    ):
        # Agreements reverted by older builds still show why they came back
        return _review_state(document_status)

    return NOT_CREATED


def find_strategy_document(
    agreement: Agreement | None,
    documents: Iterable[Document],
    metadata_store: MetadataStore,
) -> Document | None:
    """The loaded document the agreement metadata names as its strategy."""
    if agreement is None:
        return None
    metadata = metadata_store.read(agreement)
    if metadata is None or not metadata.strategy_document_id:
        return None
    return next((doc for doc in documents if doc.id == metadata.strategy_document_id), None)


def resolve_for_agreement(
    agreement: Agreement | None,
    documents: Iterable[Document],
    metadata_store: MetadataStore,
) -> Step5State:
    if agreement is None:
        return NOT_CREATED
    strategy_doc = find_strategy_document(agreement, documents, metadata_store)
    return compute_step5_state(
        agreement.status,
        strategy_doc.acceptance_status if strategy_doc else None,
    )
