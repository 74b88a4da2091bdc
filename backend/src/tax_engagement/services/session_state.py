"""Engagement session state, events, reducer and read-only view.

``SessionState`` is an immutable snapshot. It only changes through
``reduce(state, event)``; the session controller decides which events to
apply and drops any whose request epoch has gone stale.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone

from tax_engagement.domain.enums import (
    ClientStatusKey,
    EnvelopeStatus,
    SessionSection,
    WorkflowGroup,
)
from tax_engagement.domain.schemas import (
    Agreement,
    Charge,
    ClientRecord,
    ComplianceUser,
    Document,
    EnvelopeSigningInfo,
    StrategyMetadata,
)
from tax_engagement.services.agreement_state_machine import is_paid, is_sent, is_signed
from tax_engagement.services.document_aggregator import DocumentCounts, count_documents
from tax_engagement.services.metadata_codec import MetadataStore
from tax_engagement.services.status_projector import (
    can_advance_to_strategy,
    can_complete_agreement,
    can_send_agreement,
    can_send_payment_link,
    can_send_strategy,
    compute_workflow_group,
    latest_agreement,
    project_status_key,
)
from tax_engagement.services.strategy_resolver import (
    Step5State,
    find_strategy_document,
    resolve_for_agreement,
)

logger = logging.getLogger(__name__)

Sec = SessionSection

# Sections reset to "loading" whenever the selected agreement changes
DEPENDENT_SECTIONS = frozenset({Sec.DOCUMENTS, Sec.CHARGES, Sec.SIGNING, Sec.STRATEGY_DOCUMENT})


# ---------------------------------------------------------------------------
# Request epochs
# ---------------------------------------------------------------------------


class EpochClock:
    """Monotonic generation counter owned by one session."""

    def __init__(self) -> None:
        self.generation = 0

    def advance(self) -> RequestEpoch:
        self.generation += 1
        return RequestEpoch(self.generation, self)

    def current(self) -> RequestEpoch:
        return RequestEpoch(self.generation, self)


@dataclass(frozen=True)
class RequestEpoch:
    """Token carried by every asynchronous load.

    A result may be committed only while its epoch is still current.
    """

    generation: int
    clock: EpochClock = field(compare=False, repr=False)

    def is_current(self) -> bool:
        return self.clock.generation == self.generation


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SessionState:
    client_id: str | None = None
    client: ClientRecord | None = None
    agreements: tuple[Agreement, ...] = ()
    selected_agreement_id: str | None = None
    documents: tuple[Document, ...] = ()
    charges: tuple[Charge, ...] = ()
    active_charge: Charge | None = None
    signing_info: EnvelopeSigningInfo | None = None
    signed_document_url: str | None = None
    envelope_statuses: dict[str, EnvelopeStatus] = field(default_factory=dict)
    compliance_users: tuple[ComplianceUser, ...] = ()
    strategy_document_url: str | None = None
    loading: frozenset[SessionSection] = frozenset()
    errors: dict[SessionSection, str] = field(default_factory=dict)
    pending_actions: frozenset[str] = frozenset()
    generation: int = 0
    envelopes_synced: bool = False
    signing_info_fetched: bool = False
    auto_advanced: frozenset[str] = frozenset()

    @property
    def selected_agreement(self) -> Agreement | None:
        """Selected agreement, else the most recently created one."""
        if self.selected_agreement_id:
            for agreement in self.agreements:
                if agreement.id == self.selected_agreement_id:
                    return agreement
        return latest_agreement(self.agreements)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SessionStarted:
    client_id: str
    generation: int
    initial_agreement_id: str | None = None


@dataclass(frozen=True)
class AgreementSelected:
    agreement_id: str
    generation: int


@dataclass(frozen=True)
class RefreshStarted:
    generation: int


@dataclass(frozen=True)
class ClientLoaded:
    client: ClientRecord | None


@dataclass(frozen=True)
class AgreementsLoaded:
    agreements: tuple[Agreement, ...]


@dataclass(frozen=True)
class DocumentsLoaded:
    documents: tuple[Document, ...]


@dataclass(frozen=True)
class ChargesLoaded:
    charges: tuple[Charge, ...]
    active_charge: Charge | None


@dataclass(frozen=True)
class ChargeUpdated:
    charge: Charge


@dataclass(frozen=True)
class SigningInfoLoaded:
    info: EnvelopeSigningInfo | None
    signed_document_url: str | None


@dataclass(frozen=True)
class EnvelopeStatusesLoaded:
    statuses: dict[str, EnvelopeStatus]


@dataclass(frozen=True)
class ComplianceUsersLoaded:
    users: tuple[ComplianceUser, ...]


@dataclass(frozen=True)
class StrategyDocumentUrlLoaded:
    url: str | None


@dataclass(frozen=True)
class SectionLoading:
    section: SessionSection


@dataclass(frozen=True)
class SectionSkipped:
    section: SessionSection


@dataclass(frozen=True)
class SectionCleared:
    section: SessionSection


@dataclass(frozen=True)
class SectionFailed:
    section: SessionSection
    message: str


@dataclass(frozen=True)
class AutoAdvanceRequested:
    agreement_id: str


@dataclass(frozen=True)
class ActionStarted:
    action: str


@dataclass(frozen=True)
class ActionFinished:
    action: str


# ---------------------------------------------------------------------------
# Reducer
# ---------------------------------------------------------------------------


def _done(state: SessionState, section: SessionSection, **changes) -> SessionState:
    """Commit a section's result: stop loading and clear its error."""
    errors = {k: v for k, v in state.errors.items() if k != section}
    return replace(state, loading=state.loading - {section}, errors=errors, **changes)


def _resolve_selection(selected_id: str | None, agreements: tuple[Agreement, ...]) -> str | None:
    """Keep the selection if it is still listed, else fall back to the newest."""
    if selected_id and any(a.id == selected_id for a in agreements):
        return selected_id
    newest = latest_agreement(agreements)
    if selected_id and newest:
        logger.info(
            "Selected agreement %s not in fresh list; falling back to %s", selected_id, newest.id
        )
    return newest.id if newest else None


def _on_session_started(state: SessionState, event: SessionStarted) -> SessionState:
    return SessionState(
        client_id=event.client_id,
        selected_agreement_id=event.initial_agreement_id,
        generation=event.generation,
        loading=frozenset({Sec.CLIENT, Sec.AGREEMENTS, Sec.COMPLIANCE_USERS}) | DEPENDENT_SECTIONS,
        pending_actions=state.pending_actions,
    )


def _on_agreement_selected(state: SessionState, event: AgreementSelected) -> SessionState:
    errors = {k: v for k, v in state.errors.items() if k not in DEPENDENT_SECTIONS}
    return replace(
        state,
        selected_agreement_id=event.agreement_id,
        generation=event.generation,
        documents=(),
        charges=(),
        active_charge=None,
        signing_info=None,
        signed_document_url=None,
        strategy_document_url=None,
        signing_info_fetched=False,
        auto_advanced=frozenset(),
        loading=state.loading | DEPENDENT_SECTIONS,
        errors=errors,
    )


def _on_agreements_loaded(state: SessionState, event: AgreementsLoaded) -> SessionState:
    return _done(
        state,
        Sec.AGREEMENTS,
        agreements=event.agreements,
        selected_agreement_id=_resolve_selection(state.selected_agreement_id, event.agreements),
    )


def _on_section_failed(state: SessionState, event: SectionFailed) -> SessionState:
    # Already-loaded data for the section stays on screen
    return replace(
        state,
        loading=state.loading - {event.section},
        errors={**state.errors, event.section: event.message},
    )


_HANDLERS = {
    SessionStarted: _on_session_started,
    AgreementSelected: _on_agreement_selected,
    RefreshStarted: lambda s, e: replace(s, generation=e.generation),
    ClientLoaded: lambda s, e: _done(s, Sec.CLIENT, client=e.client),
    AgreementsLoaded: _on_agreements_loaded,
    DocumentsLoaded: lambda s, e: _done(s, Sec.DOCUMENTS, documents=e.documents),
    ChargesLoaded: lambda s, e: _done(
        s, Sec.CHARGES, charges=e.charges, active_charge=e.active_charge
    ),
    ChargeUpdated: lambda s, e: replace(s, active_charge=e.charge),
    SigningInfoLoaded: lambda s, e: _done(
        s,
        Sec.SIGNING,
        signing_info_fetched=True,
        signing_info=e.info or s.signing_info,
        signed_document_url=e.signed_document_url or s.signed_document_url,
    ),
    EnvelopeStatusesLoaded: lambda s, e: replace(
        s, envelope_statuses=dict(e.statuses), envelopes_synced=True
    ),
    ComplianceUsersLoaded: lambda s, e: _done(s, Sec.COMPLIANCE_USERS, compliance_users=e.users),
    StrategyDocumentUrlLoaded: lambda s, e: _done(
        s, Sec.STRATEGY_DOCUMENT, strategy_document_url=e.url
    ),
    SectionLoading: lambda s, e: replace(s, loading=s.loading | {e.section}),
    SectionSkipped: lambda s, e: replace(s, loading=s.loading - {e.section}),
    SectionCleared: lambda s, e: _done(s, e.section),
    SectionFailed: _on_section_failed,
    AutoAdvanceRequested: lambda s, e: replace(s, auto_advanced=s.auto_advanced | {e.agreement_id}),
    ActionStarted: lambda s, e: replace(s, pending_actions=s.pending_actions | {e.action}),
    ActionFinished: lambda s, e: replace(s, pending_actions=s.pending_actions - {e.action}),
}


def reduce(state: SessionState, event) -> SessionState:
    """Apply *event* to *state* and return the new snapshot."""
    handler = _HANDLERS.get(type(event))
    if handler is None:
        raise TypeError(f"Unknown session event {type(event).__name__}")
    return handler(state, event)


# ---------------------------------------------------------------------------
# Read-only projection
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EngagementView:
    """Everything a client detail screen renders, derived from one snapshot."""

    agreement: Agreement | None
    metadata: StrategyMetadata | None
    counts: DocumentCounts
    step5: Step5State
    status_key: ClientStatusKey
    workflow_group: WorkflowGroup
    agreement_sent: bool
    agreement_signed: bool
    payment_sent: bool
    payment_received: bool
    strategy_document: Document | None
    compliance_user_id: str | None
    payment_amount: float
    can_send_agreement: bool
    can_send_payment_link: bool
    can_advance_to_strategy: bool
    can_send_strategy: bool
    can_complete_agreement: bool
    loaded_at: datetime


def build_view(
    state: SessionState,
    metadata_store: MetadataStore,
    default_payment_amount: float,
) -> EngagementView:
    agreement = state.selected_agreement
    todos = agreement.todos if agreement else []
    counts = count_documents(todos)
    step5 = resolve_for_agreement(agreement, state.documents, metadata_store)
    envelope_completed = bool(
        agreement and state.envelope_statuses.get(agreement.id) == EnvelopeStatus.COMPLETED
    )
    signed = bool(agreement and (is_signed(agreement.status) or envelope_completed))
    paid = bool(agreement and is_paid(agreement.status))
    archived = bool(state.client and state.client.archived)

    return EngagementView(
        agreement=agreement,
        metadata=metadata_store.read(agreement) if agreement else None,
        counts=counts,
        step5=step5,
        status_key=project_status_key(agreement, counts, step5, envelope_completed),
        workflow_group=compute_workflow_group(
            agreement.status if agreement else None, step5, archived=archived
        ),
        agreement_sent=bool(agreement and is_sent(agreement.status)),
        agreement_signed=signed,
        payment_sent=state.active_charge is not None,
        payment_received=paid,
        strategy_document=find_strategy_document(agreement, state.documents, metadata_store),
        compliance_user_id=(
            state.compliance_users[0].compliance_user_id if state.compliance_users else None
        ),
        payment_amount=(
            (metadata_store.price_for(agreement) if agreement else None) or default_payment_amount
        ),
        can_send_agreement=can_send_agreement(agreement),
        can_send_payment_link=can_send_payment_link(agreement),
        can_advance_to_strategy=can_advance_to_strategy(agreement, counts),
        can_send_strategy=can_send_strategy(agreement, step5),
        can_complete_agreement=can_complete_agreement(agreement, step5),
        loaded_at=datetime.now(timezone.utc),
    )
