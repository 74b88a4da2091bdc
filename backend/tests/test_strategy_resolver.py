"""Tests for the strategy review sub-phase resolver."""

import pytest

from tax_engagement.domain.enums import AcceptanceStatus, AgreementStatus, StrategyPhase
from tax_engagement.services.metadata_codec import DescriptionMetadataAdapter, embed
from tax_engagement.services.strategy_resolver import (
    NOT_CREATED,
    compute_step5_state,
    find_strategy_document,
    resolve_for_agreement,
)

S = AgreementStatus
AS = AcceptanceStatus


class TestComputeStep5State:
    @pytest.mark.parametrize(
        "status",
        [S.DRAFT, S.PENDING_SIGNATURE, S.PENDING_PAYMENT, S.PENDING_TODOS_COMPLETION, S.PENDING_STRATEGY],
    )
    def test_before_review_is_not_created(self, status):
        assert compute_step5_state(status, None) == NOT_CREATED

    def test_completed_is_always_complete(self):
        state = compute_step5_state(S.COMPLETED, AS.REJECTED_BY_CLIENT)
        assert state.is_complete
        assert state.phase == StrategyPhase.COMPLETE

    def test_review_without_document_is_compliance_review(self):
        state = compute_step5_state(S.PENDING_STRATEGY_REVIEW, None)
        assert state.phase == StrategyPhase.COMPLIANCE_REVIEW
        assert state.strategy_sent

    @pytest.mark.parametrize(
        "document_status,phase",
        [
            (AS.REQUEST_COMPLIANCE_ACCEPTANCE, StrategyPhase.COMPLIANCE_REVIEW),
            (AS.ACCEPTED_BY_COMPLIANCE, StrategyPhase.CLIENT_REVIEW),
            (AS.REQUEST_CLIENT_ACCEPTANCE, StrategyPhase.CLIENT_REVIEW),
            (AS.ACCEPTED_BY_CLIENT, StrategyPhase.COMPLETE),
            (AS.REJECTED_BY_COMPLIANCE, StrategyPhase.COMPLIANCE_REJECTED),
            (AS.REJECTED_BY_CLIENT, StrategyPhase.CLIENT_DECLINED),
        ],
    )
    def test_review_phases(self, document_status, phase):
        assert compute_step5_state(S.PENDING_STRATEGY_REVIEW, document_status).phase == phase

    def test_compliance_rejection_flags(self):
        state = compute_step5_state(S.PENDING_STRATEGY_REVIEW, AS.REJECTED_BY_COMPLIANCE)
        assert state.compliance_rejected
        assert not state.compliance_approved
        assert not state.is_complete

    def test_client_decline_keeps_compliance_approval(self):
        state = compute_step5_state(S.PENDING_STRATEGY_REVIEW, AS.REJECTED_BY_CLIENT)
        assert state.client_declined
        assert state.compliance_approved

    def test_both_approved_is_complete(self):
        state = compute_step5_state(S.PENDING_STRATEGY_REVIEW, AS.ACCEPTED_BY_CLIENT)
        assert state.is_complete
        assert state.compliance_approved and state.client_approved

    def test_reverted_agreement_still_shows_rejection(self):
        state = compute_step5_state(S.PENDING_STRATEGY, AS.REJECTED_BY_COMPLIANCE)
        assert state.phase == StrategyPhase.COMPLIANCE_REJECTED


class TestResolveForAgreement:
    @pytest.fixture
    def store(self):
        return DescriptionMetadataAdapter()

    def test_finds_document_named_in_metadata(self, store, make_agreement, make_document):
        agreement = make_agreement(
            status=S.PENDING_STRATEGY_REVIEW,
            description=embed("", {"strategyDocumentId": "doc-s"}),
        )
        docs = [
            make_document("doc-a", AS.ACCEPTED_BY_STRATEGIST),
            make_document("doc-s", AS.ACCEPTED_BY_COMPLIANCE),
        ]
        assert find_strategy_document(agreement, docs, store).id == "doc-s"
        assert resolve_for_agreement(agreement, docs, store).phase == StrategyPhase.CLIENT_REVIEW

    def test_no_metadata_means_no_document(self, store, make_agreement, make_document):
        agreement = make_agreement(status=S.PENDING_STRATEGY_REVIEW)
        assert find_strategy_document(agreement, [make_document()], store) is None
        assert resolve_for_agreement(agreement, [], store).phase == StrategyPhase.COMPLIANCE_REVIEW

    def test_no_agreement(self, store):
        assert resolve_for_agreement(None, [], store) == NOT_CREATED
