"""Unit tests for the AgreementStateMachine and lifecycle predicates."""

import pytest

from tax_engagement.domain.enums import AgreementActor, AgreementStatus
from tax_engagement.services.agreement_state_machine import (
    CANCELLABLE_STATES,
    STATUS_LABELS,
    TERMINAL_STATES,
    TRANSITION_MAP,
    AgreementStateMachine,
    InvalidTransitionError,
    describe_status,
    is_paid,
    is_sent,
    is_signed,
    status_priority,
)

S = AgreementStatus
A = AgreementActor


@pytest.fixture
def sm():
    return AgreementStateMachine()


# ---------------------------------------------------------------------------
# Test every valid transition in the transition map
# ---------------------------------------------------------------------------


class TestValidTransitions:
    """Every transition defined in TRANSITION_MAP should succeed for allowed actors."""

    @pytest.mark.parametrize(
        "from_status,to_status,actor",
        [
            (from_s, to_s, actor)
            for from_s, targets in TRANSITION_MAP.items()
            for to_s, actors in targets.items()
            for actor in actors
        ],
    )
    def test_all_valid_transitions(self, sm, from_status, to_status, actor):
        assert sm.validate_transition(from_status, to_status, actor) is True


class TestHappyPath:
    def test_full_pipeline(self, sm):
        transitions = [
            (S.DRAFT, S.PENDING_SIGNATURE, A.STRATEGIST),
            (S.PENDING_SIGNATURE, S.PENDING_PAYMENT, A.SYSTEM),
            (S.PENDING_PAYMENT, S.PENDING_TODOS_COMPLETION, A.SYSTEM),
            (S.PENDING_TODOS_COMPLETION, S.PENDING_STRATEGY, A.STRATEGIST),
            (S.PENDING_STRATEGY, S.PENDING_STRATEGY_REVIEW, A.STRATEGIST),
            (S.PENDING_STRATEGY_REVIEW, S.COMPLETED, A.STRATEGIST),
        ]
        for from_s, to_s, actor in transitions:
            assert sm.validate_transition(from_s, to_s, actor) is True


# ---------------------------------------------------------------------------
# Test invalid transitions
# ---------------------------------------------------------------------------


class TestInvalidTransitions:
    def test_cannot_skip_states(self, sm):
        with pytest.raises(InvalidTransitionError):
            sm.validate_transition(S.DRAFT, S.PENDING_PAYMENT, A.SYSTEM)

    def test_cannot_go_backwards(self, sm):
        with pytest.raises(InvalidTransitionError):
            sm.validate_transition(S.PENDING_STRATEGY_REVIEW, S.PENDING_STRATEGY, A.STRATEGIST)

    def test_rejection_has_no_status_edge(self, sm):
        """A strategy rejection is tracked on the document, never as a status revert."""
        assert S.PENDING_STRATEGY not in TRANSITION_MAP[S.PENDING_STRATEGY_REVIEW]

    def test_wrong_actor_rejected(self, sm):
        with pytest.raises(InvalidTransitionError, match="not permitted"):
            sm.validate_transition(S.PENDING_PAYMENT, S.PENDING_TODOS_COMPLETION, A.CLIENT)

    def test_no_transitions_from_completed(self, sm):
        with pytest.raises(InvalidTransitionError, match="No transitions allowed"):
            sm.validate_transition(S.COMPLETED, S.DRAFT, A.ADMIN)

    def test_error_carries_statuses(self, sm):
        with pytest.raises(InvalidTransitionError) as exc_info:
            sm.validate_transition(S.DRAFT, S.COMPLETED, A.STRATEGIST)
        assert exc_info.value.current_status == S.DRAFT
        assert exc_info.value.target_status == S.COMPLETED


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class TestCancellation:
    @pytest.mark.parametrize("status", sorted(CANCELLABLE_STATES, key=lambda s: s.value))
    def test_strategist_can_cancel_non_terminal(self, sm, status):
        assert sm.validate_transition(status, S.CANCELLED, A.STRATEGIST) is True

    @pytest.mark.parametrize("status", sorted(TERMINAL_STATES, key=lambda s: s.value))
    def test_cannot_cancel_terminal(self, sm, status):
        with pytest.raises(InvalidTransitionError, match="terminal"):
            sm.validate_transition(status, S.CANCELLED, A.STRATEGIST)

    def test_client_cannot_cancel(self, sm):
        with pytest.raises(InvalidTransitionError):
            sm.validate_transition(S.PENDING_PAYMENT, S.CANCELLED, A.CLIENT)


class TestAllowedTransitions:
    def test_strategist_from_draft(self, sm):
        assert sm.get_allowed_transitions(S.DRAFT, A.STRATEGIST) == [
            S.PENDING_SIGNATURE,
            S.CANCELLED,
        ]

    def test_system_from_pending_payment(self, sm):
        allowed = sm.get_allowed_transitions(S.PENDING_PAYMENT, A.SYSTEM)
        assert S.PENDING_TODOS_COMPLETION in allowed

    def test_nothing_from_cancelled(self, sm):
        assert sm.get_allowed_transitions(S.CANCELLED, A.ADMIN) == []


# ---------------------------------------------------------------------------
# Predicates
# ---------------------------------------------------------------------------


class TestPredicates:
    def test_signed_excludes_pre_signature_and_cancelled(self):
        assert not is_signed(S.DRAFT)
        assert not is_signed(S.PENDING_SIGNATURE)
        assert not is_signed(S.CANCELLED)
        assert is_signed(S.PENDING_PAYMENT)
        assert is_signed(S.COMPLETED)

    def test_paid(self):
        assert not is_paid(S.PENDING_PAYMENT)
        assert is_paid(S.PENDING_TODOS_COMPLETION)

    def test_sent(self):
        assert not is_sent(S.DRAFT)
        assert is_sent(S.PENDING_SIGNATURE)

    def test_priority_follows_pipeline(self):
        assert status_priority(S.DRAFT) < status_priority(S.COMPLETED) < status_priority(S.CANCELLED)

    def test_every_status_has_label(self):
        assert set(STATUS_LABELS) == set(AgreementStatus)

    def test_describe_status(self):
        text = describe_status("abcdef123456", S.PENDING_PAYMENT, "signed")
        assert text == "Agreement abcdef12... -> Awaiting Payment (PENDING_PAYMENT) | signed"
