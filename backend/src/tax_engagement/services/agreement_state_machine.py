"""Agreement state machine: validates transitions and answers lifecycle questions.

Encodes the engagement pipeline:
DRAFT -> PENDING_SIGNATURE -> PENDING_PAYMENT -> PENDING_TODOS_COMPLETION
-> PENDING_STRATEGY -> PENDING_STRATEGY_REVIEW -> COMPLETED,
with CANCELLED reachable from any non-terminal state.
"""

from tax_engagement.domain.enums import AgreementActor, AgreementStatus


class InvalidTransitionError(Exception):
    """Raised when an agreement state transition is not allowed."""

    def __init__(
        self,
        current_status: AgreementStatus,
        target_status: AgreementStatus,
        reason: str,
    ):
        self.current_status = current_status
        self.target_status = target_status
        self.reason = reason
        super().__init__(
            f"Invalid transition from {current_status.value} to {target_status.value}: {reason}"
        )


# ---------------------------------------------------------------------------
# Transition map: from_status -> {to_status: set_of_allowed_actors}
# ---------------------------------------------------------------------------

S = AgreementStatus
A = AgreementActor

TRANSITION_MAP: dict[AgreementStatus, dict[AgreementStatus, set[AgreementActor]]] = {
    S.DRAFT: {
        S.PENDING_SIGNATURE: {A.STRATEGIST},
    },
    S.PENDING_SIGNATURE: {
        S.PENDING_PAYMENT: {A.SYSTEM},
    },
    S.PENDING_PAYMENT: {
        S.PENDING_TODOS_COMPLETION: {A.SYSTEM},
    },
    S.PENDING_TODOS_COMPLETION: {
        S.PENDING_STRATEGY: {A.STRATEGIST},
    },
    S.PENDING_STRATEGY: {
        S.PENDING_STRATEGY_REVIEW: {A.STRATEGIST},
    },
    S.PENDING_STRATEGY_REVIEW: {
        S.COMPLETED: {A.STRATEGIST},
    },
}

TERMINAL_STATES: set[AgreementStatus] = {
    S.COMPLETED,
    S.CANCELLED,
}

# Cancellation is allowed from any non-terminal state
CANCELLABLE_STATES: set[AgreementStatus] = {
    s for s in AgreementStatus if s not in TERMINAL_STATES
}

CANCEL_ACTORS: set[AgreementActor] = {A.STRATEGIST, A.ADMIN, A.SYSTEM}

# Pipeline order; CANCELLED sorts last for display priority
PIPELINE_ORDER: list[AgreementStatus] = [
    S.DRAFT,
    S.PENDING_SIGNATURE,
    S.PENDING_PAYMENT,
    S.PENDING_TODOS_COMPLETION,
    S.PENDING_STRATEGY,
    S.PENDING_STRATEGY_REVIEW,
    S.COMPLETED,
    S.CANCELLED,
]

STATUS_LABELS: dict[AgreementStatus, str] = {
    S.DRAFT: "Draft",
    S.PENDING_SIGNATURE: "Awaiting Signature",
    S.PENDING_PAYMENT: "Awaiting Payment",
    S.PENDING_TODOS_COMPLETION: "Documents Required",
    S.PENDING_STRATEGY: "Awaiting Strategy",
    S.PENDING_STRATEGY_REVIEW: "Strategy Review",
    S.CANCELLED: "Cancelled",
    S.COMPLETED: "Completed",
}


class AgreementStateMachine:
    """Validates agreement state transitions."""

    def validate_transition(
        self,
        current_status: AgreementStatus,
        target_status: AgreementStatus,
        actor: AgreementActor,
    ) -> bool:
        """Return True if the transition is valid. Raise InvalidTransitionError if not.

        Checks:
        1. Cancellation from a non-terminal state by a permitted actor.
        2. The transition is in the allowed map (no skipped states).
        3. The actor has permission for this transition.
        """
        if target_status == S.CANCELLED:
            if current_status not in CANCELLABLE_STATES:
                raise InvalidTransitionError(
                    current_status,
                    target_status,
                    f"{current_status.value} is terminal",
                )
            if actor not in CANCEL_ACTORS:
                raise InvalidTransitionError(
                    current_status,
                    target_status,
                    f"Actor {actor.value} is not permitted to cancel",
                )
            return True

        allowed_targets = TRANSITION_MAP.get(current_status)
        if allowed_targets is None:
            raise InvalidTransitionError(
                current_status,
                target_status,
                f"No transitions allowed from {current_status.value}",
            )

        if target_status not in allowed_targets:
            raise InvalidTransitionError(
                current_status,
                target_status,
                f"Transition from {current_status.value} to {target_status.value} is not allowed",
            )

        allowed_actors = allowed_targets[target_status]
        if actor not in allowed_actors:
            raise InvalidTransitionError(
                current_status,
                target_status,
                f"Actor {actor.value} is not permitted for this transition "
                f"(allowed: {', '.join(sorted(a.value for a in allowed_actors))})",
            )

        return True

    def get_allowed_transitions(
        self,
        current_status: AgreementStatus,
        actor: AgreementActor,
    ) -> list[AgreementStatus]:
        """Return list of valid next states for the given actor from the current status."""
        results: list[AgreementStatus] = [
            target
            for target, actors in TRANSITION_MAP.get(current_status, {}).items()
            if actor in actors
        ]
        if current_status in CANCELLABLE_STATES and actor in CANCEL_ACTORS:
            results.append(S.CANCELLED)
        return results


# ---------------------------------------------------------------------------
# Lifecycle predicates
# ---------------------------------------------------------------------------


def is_sent(status: AgreementStatus) -> bool:
    return status not in (S.DRAFT, S.CANCELLED)


def is_signed(status: AgreementStatus) -> bool:
    """True for every status after PENDING_SIGNATURE."""
    return status not in (S.DRAFT, S.PENDING_SIGNATURE, S.CANCELLED)


def is_paid(status: AgreementStatus) -> bool:
    """True for every status after PENDING_PAYMENT."""
    return is_signed(status) and status != S.PENDING_PAYMENT


def status_priority(status: AgreementStatus) -> int:
    """Lower sorts first on dashboards."""
    return PIPELINE_ORDER.index(status) + 1


def describe_status(agreement_id: str, status: AgreementStatus, context: str | None = None) -> str:
    """One-line log description of an agreement's status."""
    text = f"Agreement {agreement_id[:8]}... -> {STATUS_LABELS[status]} ({status.value})"
    if context:
        text += f" | {context}"
    return text
