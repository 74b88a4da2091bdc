"""Engagement session controller.

One ``EngagementSession`` backs one open client detail view. It owns the
client id, the selected agreement and the request epochs, runs the
parallel loads and reconcilers, and exposes the strategist commands.

Every asynchronous result is committed through ``reduce`` only while the
epoch it was started under is still current. Selecting another agreement
(or refreshing) starts a new epoch, so late answers for the old one are
dropped instead of overwriting the screen.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone

from tax_engagement.app.config import Settings, get_settings
from tax_engagement.domain.enums import (
    AcceptanceStatus,
    AgreementActor,
    AgreementStatus,
    ChargeStatus,
    SessionSection,
)
from tax_engagement.domain.schemas import Agreement, StrategyMetadata
from tax_engagement.infra.gateway import EngagementGateway, GatewayError
from tax_engagement.services.agreement_state_machine import (
    AgreementStateMachine,
    InvalidTransitionError,
    describe_status,
)
from tax_engagement.services.document_aggregator import DocumentAggregator, count_documents
from tax_engagement.services.metadata_codec import DescriptionMetadataAdapter, MetadataStore
from tax_engagement.services.payment_reconciler import PaymentReconciler
from tax_engagement.services.session_state import (
    ActionFinished,
    ActionStarted,
    AgreementSelected,
    AgreementsLoaded,
    AutoAdvanceRequested,
    ChargesLoaded,
    ChargeUpdated,
    ClientLoaded,
    ComplianceUsersLoaded,
    DocumentsLoaded,
    EngagementView,
    EnvelopeStatusesLoaded,
    EpochClock,
    RefreshStarted,
    RequestEpoch,
    SectionCleared,
    SectionFailed,
    SectionLoading,
    SectionSkipped,
    SessionStarted,
    SessionState,
    SigningInfoLoaded,
    StrategyDocumentUrlLoaded,
    build_view,
    reduce,
)
from tax_engagement.services.signing_reconciler import SigningReconciler, needs_reload
from tax_engagement.services.status_projector import can_send_payment_link, can_send_strategy
from tax_engagement.services.strategy_resolver import resolve_for_agreement

logger = logging.getLogger(__name__)

Sec = SessionSection
S = AgreementStatus

state_machine = AgreementStateMachine()


def _ensure_accepted(accepted: bool, operation: str, subject: str) -> None:
    """Raise when the platform answered a mutation with success=false."""
    if not accepted:
        raise GatewayError(operation, f"platform refused the update for {subject}")


class EngagementSession:
    """Commands plus a read-only ``SessionState`` for one client."""

    def __init__(
        self,
        gateway: EngagementGateway,
        metadata_store: MetadataStore | None = None,
        settings: Settings | None = None,
    ):
        self.gateway = gateway
        self.metadata_store = metadata_store or DescriptionMetadataAdapter()
        self.settings = settings or get_settings()
        self.signing = SigningReconciler(gateway, self.metadata_store)
        self.payments = PaymentReconciler(gateway)
        self._clock = EpochClock()
        self._state = SessionState()
        self._listeners: list[Callable[[SessionState], None]] = []
        self._background: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # State access
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def view(self) -> EngagementView:
        return build_view(self._state, self.metadata_store, self.settings.default_payment_amount)

    def subscribe(self, listener: Callable[[SessionState], None]) -> Callable[[], None]:
        """Call *listener* with every new snapshot. Returns an unsubscribe function."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _apply(self, event) -> None:
        self._state = reduce(self._state, event)
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception:
                logger.exception("Session listener failed on %s", type(event).__name__)

    def _commit(self, event, epoch: RequestEpoch) -> bool:
        """Apply *event* if *epoch* is still current. Returns whether it applied."""
        if not epoch.is_current():
            logger.debug(
                "Dropping stale %s (epoch %d, now %d)",
                type(event).__name__, epoch.generation, self._clock.generation,
            )
            return False
        self._apply(event)
        return True

    def _fail(self, section: SessionSection, label: str, error: Exception, epoch: RequestEpoch) -> None:
        logger.error("%s: %s", label, error)
        self._commit(SectionFailed(section, f"{label}: {error}"), epoch)

    def _spawn(self, coro: Awaitable) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def wait_idle(self) -> None:
        """Wait for fire-and-forget work (auto-advance and its reload)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self, client_id: str, initial_agreement_id: str | None = None) -> None:
        """Start a session for *client_id* and load everything."""
        epoch = self._clock.advance()
        self._commit(SessionStarted(client_id, epoch.generation, initial_agreement_id), epoch)
        logger.info("Session init for client %s (epoch %d)", client_id, epoch.generation)

        await asyncio.gather(
            self._load_client(epoch),
            self._load_agreements(epoch),
            self._load_compliance_users(epoch),
            return_exceptions=True,
        )
        await self._load_for_selection(epoch)

    async def select_agreement(self, agreement_id: str) -> None:
        """Switch the selected agreement; stale loads for the old one are dropped."""
        epoch = self._clock.advance()
        self._commit(AgreementSelected(agreement_id, epoch.generation), epoch)
        logger.info("Selected agreement %s (epoch %d)", agreement_id, epoch.generation)
        await self._load_for_selection(epoch)

    async def refresh(self) -> None:
        """Reload the agreement list, then everything derived from it."""
        if self._state.client_id is None:
            logger.warning("Refresh requested before init; ignoring")
            return
        epoch = self._clock.advance()
        self._commit(RefreshStarted(epoch.generation), epoch)
        self._commit(SectionLoading(Sec.AGREEMENTS), epoch)
        await asyncio.gather(
            self._load_client(epoch),
            self._load_agreements(epoch),
            return_exceptions=True,
        )
        await self._load_for_selection(epoch)

    async def _refresh_if_current(self, epoch: RequestEpoch) -> None:
        if epoch.is_current():
            await self.refresh()
        else:
            logger.debug("Skipping reload for stale epoch %d", epoch.generation)

    # ------------------------------------------------------------------
    # Loads
    # ------------------------------------------------------------------

    async def _load_client(self, epoch: RequestEpoch) -> None:
        client_id = self._state.client_id
        try:
            client = await self.gateway.get_client(client_id)
        except Exception as e:
            self._fail(Sec.CLIENT, "Failed to load client", e, epoch)
            return
        if client is None:
            logger.warning("Client %s not found", client_id)
        self._commit(ClientLoaded(client), epoch)

    async def _load_agreements(self, epoch: RequestEpoch) -> None:
        try:
            agreements = await self.gateway.list_client_agreements(self._state.client_id)
        except Exception as e:
            self._fail(Sec.AGREEMENTS, "Failed to load agreements", e, epoch)
            return
        self._commit(AgreementsLoaded(tuple(agreements)), epoch)

    async def _load_compliance_users(self, epoch: RequestEpoch) -> None:
        try:
            users = await self.gateway.get_linked_compliance_users()
        except Exception as e:
            self._fail(Sec.COMPLIANCE_USERS, "Failed to load compliance users", e, epoch)
            return
        self._commit(ComplianceUsersLoaded(tuple(users)), epoch)

    async def _load_for_selection(self, epoch: RequestEpoch) -> None:
        if not epoch.is_current():
            return
        if not self._state.agreements and Sec.AGREEMENTS in self._state.loading:
            # The list load in flight was started under an older epoch
            await self._load_agreements(epoch)
            if not epoch.is_current():
                return
        agreement = self._state.selected_agreement
        if agreement is None:
            for section in (Sec.DOCUMENTS, Sec.CHARGES, Sec.SIGNING, Sec.STRATEGY_DOCUMENT):
                self._commit(SectionSkipped(section), epoch)
            return

        await asyncio.gather(
            self._load_dependent(agreement, epoch),
            self._sync_envelopes(epoch),
            return_exceptions=True,
        )

    async def _load_dependent(self, agreement: Agreement, epoch: RequestEpoch) -> None:
        await asyncio.gather(
            self._load_documents(agreement, epoch),
            self._load_charges(agreement, epoch),
            self._load_signing_info(agreement, epoch),
            return_exceptions=True,
        )
        await self._load_strategy_document_url(agreement, epoch)

    async def _load_documents(self, agreement: Agreement, epoch: RequestEpoch) -> None:
        try:
            documents = list(await self.gateway.list_agreement_documents(agreement.id))
        except Exception as e:
            self._fail(Sec.DOCUMENTS, "Failed to load documents", e, epoch)
            return

        contract_id = agreement.contract_document_id
        if contract_id and not any(doc.id == contract_id for doc in documents):
            try:
                contract = await self.gateway.get_document(contract_id)
            except Exception as e:
                logger.warning("Contract document %s unavailable: %s", contract_id, e)
            else:
                if contract is not None:
                    documents.append(contract)

        self._commit(DocumentsLoaded(tuple(documents)), epoch)

    async def _load_charges(self, agreement: Agreement, epoch: RequestEpoch) -> None:
        try:
            snapshot = await self.payments.load(agreement)
        except Exception as e:
            self._fail(Sec.CHARGES, "Failed to load charges", e, epoch)
            return
        if not self._commit(ChargesLoaded(snapshot.charges, snapshot.active_charge), epoch):
            return

        if snapshot.advance_needed and agreement.id not in self._state.auto_advanced:
            self._commit(AutoAdvanceRequested(agreement.id), epoch)
            self._spawn(self._auto_advance(agreement, epoch))

    async def _auto_advance(self, agreement: Agreement, epoch: RequestEpoch) -> None:
        if await self.payments.advance(agreement):
            logger.info(describe_status(agreement.id, S.PENDING_TODOS_COMPLETION, "payment received"))
            await self._refresh_if_current(epoch)

    async def _load_signing_info(self, agreement: Agreement, epoch: RequestEpoch) -> None:
        if self._state.signing_info_fetched:
            self._commit(SectionSkipped(Sec.SIGNING), epoch)
            return
        snapshot = await self.signing.fetch_signing_info(agreement)
        if snapshot.info is not None or snapshot.signed_document_url:
            self._commit(SigningInfoLoaded(snapshot.info, snapshot.signed_document_url), epoch)
        if snapshot.error:
            self._commit(SectionFailed(Sec.SIGNING, f"Failed to load signing info: {snapshot.error}"), epoch)

    async def _sync_envelopes(self, epoch: RequestEpoch) -> None:
        if self._state.envelopes_synced:
            return
        agreements = self._state.agreements
        statuses = await self.signing.poll_envelopes(agreements)
        if not self._commit(EnvelopeStatusesLoaded(statuses), epoch):
            return
        if needs_reload(agreements, statuses):
            logger.info("Envelope completed ahead of agreement status; reloading")
            await self._refresh_if_current(epoch)

    async def _load_strategy_document_url(self, agreement: Agreement, epoch: RequestEpoch) -> None:
        metadata = self.metadata_store.read(agreement)
        if metadata is None or not metadata.strategy_document_id:
            self._commit(SectionSkipped(Sec.STRATEGY_DOCUMENT), epoch)
            return
        try:
            url = await self.gateway.get_document_download_url(metadata.strategy_document_id)
        except Exception as e:
            logger.warning("Strategy document URL unavailable for %s: %s", agreement.id, e)
            self._commit(SectionFailed(Sec.STRATEGY_DOCUMENT, str(e)), epoch)
            return
        self._commit(StrategyDocumentUrlLoaded(url), epoch)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def _run_action(self, action: str, operation: Callable[[], Awaitable[bool]]) -> bool:
        """Run *operation* unless the same action is already in flight."""
        if action in self._state.pending_actions:
            logger.info("Ignoring %s: already in progress", action)
            return False
        self._apply(ActionStarted(action))
        try:
            return await operation()
        finally:
            self._apply(ActionFinished(action))

    def _reject(self, section: SessionSection, message: str) -> bool:
        logger.warning(message)
        self._apply(SectionFailed(section, message))
        return False

    def _selected(self) -> Agreement | None:
        agreement = self._state.selected_agreement
        if agreement is None:
            self._reject(Sec.AGREEMENT_ACTION, "No agreement selected")
        return agreement

    async def _transition(self, agreement: Agreement, target: AgreementStatus, context: str) -> None:
        """Validate and persist a strategist transition. Raises on illegal edges."""
        state_machine.validate_transition(agreement.status, target, AgreementActor.STRATEGIST)
        accepted = await self.gateway.update_agreement_status(agreement.id, target)
        _ensure_accepted(accepted, "update_agreement_status", agreement.id)
        logger.info(describe_status(agreement.id, target, context))

    async def accept_document(self, document_id: str) -> bool:
        return await self._review_document(document_id, accept=True)

    async def decline_document(self, document_id: str) -> bool:
        return await self._review_document(document_id, accept=False)

    async def _review_document(self, document_id: str, accept: bool) -> bool:
        epoch = self._clock.current()
        aggregator = DocumentAggregator(self.gateway, reload=lambda: self._refresh_if_current(epoch))

        async def operation() -> bool:
            try:
                if accept:
                    return await aggregator.accept_document(document_id)
                return await aggregator.decline_document(document_id)
            except GatewayError as e:
                return self._reject(Sec.DOCUMENTS, f"Failed to update document {document_id}: {e}")

        return await self._run_action(f"document:{document_id}", operation)

    async def send_agreement(self, price: float | None = None, envelope_id: str | None = None) -> bool:
        """Send a draft agreement for signature, embedding price and envelope id."""
        epoch = self._clock.current()

        async def operation() -> bool:
            agreement = self._selected()
            if agreement is None:
                return False
            state_machine.validate_transition(
                agreement.status, S.PENDING_SIGNATURE, AgreementActor.STRATEGIST
            )
            try:
                if price is not None or envelope_id is not None:
                    description = self.metadata_store.write(
                        agreement, StrategyMetadata(price=price, envelope_id=envelope_id)
                    )
                    accepted = await self.gateway.update_agreement_description(agreement.id, description)
                    _ensure_accepted(accepted, "update_agreement_description", agreement.id)
                await self._transition(agreement, S.PENDING_SIGNATURE, "sent for signature")
            except GatewayError as e:
                return self._reject(Sec.AGREEMENT_ACTION, f"Failed to send agreement: {e}")
            self._apply(SectionCleared(Sec.AGREEMENT_ACTION))
            await self._refresh_if_current(epoch)
            return True

        return await self._run_action("send_agreement", operation)

    async def advance_to_strategy(self) -> bool:
        """Move to PENDING_STRATEGY once every requested document is accepted."""
        epoch = self._clock.current()

        async def operation() -> bool:
            agreement = self._selected()
            if agreement is None:
                return False
            state_machine.validate_transition(
                agreement.status, S.PENDING_STRATEGY, AgreementActor.STRATEGIST
            )
            counts = count_documents(agreement.todos)
            if not counts.all_accepted:
                return self._reject(
                    Sec.AGREEMENT_ACTION,
                    f"{counts.total - counts.accepted} document(s) still need acceptance",
                )
            try:
                await self._transition(agreement, S.PENDING_STRATEGY, "documents accepted")
            except GatewayError as e:
                return self._reject(Sec.AGREEMENT_ACTION, f"Failed to advance agreement: {e}")
            self._apply(SectionCleared(Sec.AGREEMENT_ACTION))
            await self._refresh_if_current(epoch)
            return True

        return await self._run_action("advance_to_strategy", operation)

    async def send_strategy(self, strategy_document_id: str) -> bool:
        """Send (or resend after a rejection) the strategy for compliance review."""
        epoch = self._clock.current()

        async def operation() -> bool:
            agreement = self._selected()
            if agreement is None:
                return False
            if agreement.status not in (S.PENDING_STRATEGY, S.PENDING_STRATEGY_REVIEW):
                raise InvalidTransitionError(
                    agreement.status,
                    S.PENDING_STRATEGY_REVIEW,
                    "strategy can only be sent from PENDING_STRATEGY or after a rejection",
                )
            step5 = resolve_for_agreement(agreement, self._state.documents, self.metadata_store)
            if not can_send_strategy(agreement, step5):
                return self._reject(Sec.AGREEMENT_ACTION, "Strategy is already under review")

            metadata = StrategyMetadata(
                strategy_document_id=strategy_document_id,
                sent_at=datetime.now(timezone.utc).isoformat(),
            )
            try:
                description = self.metadata_store.write(agreement, metadata)
                accepted = await self.gateway.update_agreement_description(agreement.id, description)
                _ensure_accepted(accepted, "update_agreement_description", agreement.id)
                accepted = await self.gateway.update_document_acceptance(
                    strategy_document_id, AcceptanceStatus.REQUEST_COMPLIANCE_ACCEPTANCE
                )
                _ensure_accepted(accepted, "update_document_acceptance", strategy_document_id)
                if agreement.status == S.PENDING_STRATEGY:
                    await self._transition(agreement, S.PENDING_STRATEGY_REVIEW, "strategy sent")
                else:
                    logger.info("Strategy resent for agreement %s", agreement.id)
            except GatewayError as e:
                return self._reject(Sec.AGREEMENT_ACTION, f"Failed to send strategy: {e}")
            self._apply(SectionCleared(Sec.AGREEMENT_ACTION))
            await self._refresh_if_current(epoch)
            return True

        return await self._run_action("send_strategy", operation)

    async def complete_agreement(self) -> bool:
        """Finalize once compliance and the client both approved the strategy."""
        epoch = self._clock.current()

        async def operation() -> bool:
            agreement = self._selected()
            if agreement is None:
                return False
            state_machine.validate_transition(
                agreement.status, S.COMPLETED, AgreementActor.STRATEGIST
            )
            step5 = resolve_for_agreement(agreement, self._state.documents, self.metadata_store)
            if not step5.is_complete:
                return self._reject(
                    Sec.AGREEMENT_ACTION, "Strategy needs compliance and client approval"
                )
            try:
                await self._transition(agreement, S.COMPLETED, "strategy approved")
            except GatewayError as e:
                return self._reject(Sec.AGREEMENT_ACTION, f"Failed to complete agreement: {e}")
            self._apply(SectionCleared(Sec.AGREEMENT_ACTION))
            await self._refresh_if_current(epoch)
            return True

        return await self._run_action("complete_agreement", operation)

    async def cancel_agreement(self) -> bool:
        epoch = self._clock.current()

        async def operation() -> bool:
            agreement = self._selected()
            if agreement is None:
                return False
            try:
                await self._transition(agreement, S.CANCELLED, "cancelled by strategist")
            except GatewayError as e:
                return self._reject(Sec.AGREEMENT_ACTION, f"Failed to cancel agreement: {e}")
            self._apply(SectionCleared(Sec.AGREEMENT_ACTION))
            await self._refresh_if_current(epoch)
            return True

        return await self._run_action("cancel_agreement", operation)

    async def send_payment_link(self, amount: float | None = None) -> bool:
        """Create a charge, generate its link and attach it to the agreement."""
        epoch = self._clock.current()

        async def operation() -> bool:
            agreement = self._selected()
            if agreement is None:
                return False
            if not can_send_payment_link(agreement):
                return self._reject(Sec.PAYMENT, "Agreement must be signed and unpaid")

            charge_amount = (
                amount
                or self.metadata_store.price_for(agreement)
                or self.settings.default_payment_amount
            )
            try:
                charge = await self.gateway.create_charge(
                    agreement.id,
                    charge_amount,
                    self.settings.default_currency,
                    f"{self.settings.onboarding_fee_description} - {agreement.name}",
                )
                link = await self.gateway.generate_payment_link(charge.id)
                accepted = await self.gateway.attach_payment(agreement.id, charge_amount, link)
                _ensure_accepted(accepted, "attach_payment", agreement.id)
            except GatewayError as e:
                return self._reject(Sec.PAYMENT, f"Failed to send payment link: {e}")

            logger.info("Payment link for %.2f sent on agreement %s", charge_amount, agreement.id)
            self._commit(ChargeUpdated(charge.model_copy(update={"payment_link": link})), epoch)
            self._apply(SectionCleared(Sec.PAYMENT))
            await self._refresh_if_current(epoch)
            return True

        return await self._run_action("send_payment_link", operation)

    async def send_payment_reminder(self) -> bool:
        """Regenerate the payment link for the existing pending charge."""
        epoch = self._clock.current()

        async def operation() -> bool:
            agreement = self._selected()
            if agreement is None:
                return False
            charge = self._state.active_charge
            if charge is None or charge.status != ChargeStatus.PENDING:
                return self._reject(Sec.PAYMENT, "No pending charge to remind about")
            try:
                link = await self.gateway.generate_payment_link(charge.id)
                accepted = await self.gateway.attach_payment(agreement.id, charge.amount, link)
                _ensure_accepted(accepted, "attach_payment", agreement.id)
            except GatewayError as e:
                return self._reject(Sec.PAYMENT, f"Failed to send payment reminder: {e}")
            logger.info("Payment reminder sent for charge %s", charge.id)
            self._commit(ChargeUpdated(charge.model_copy(update={"payment_link": link})), epoch)
            self._apply(SectionCleared(Sec.PAYMENT))
            return True

        return await self._run_action("send_payment_reminder", operation)

    async def refresh_signing_info(self) -> bool:
        """Re-fetch signing info; reload if both parties just finished signing."""
        epoch = self._clock.current()
        agreement = self._state.selected_agreement
        if agreement is None:
            return False
        before = self._state.signing_info
        was_signed = bool(before and before.strategist_has_signed and before.client_has_signed)

        snapshot = await self.signing.fetch_signing_info(agreement)
        if snapshot.error:
            self._commit(SectionFailed(Sec.SIGNING, f"Failed to load signing info: {snapshot.error}"), epoch)
            return False
        self._commit(SigningInfoLoaded(snapshot.info, snapshot.signed_document_url), epoch)

        if snapshot.both_signed and not was_signed:
            logger.info("Both parties signed agreement %s; reloading", agreement.id)
            await self._refresh_if_current(epoch)
        return True
