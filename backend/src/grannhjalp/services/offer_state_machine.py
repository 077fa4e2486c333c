"""Offer state machine - validates help offer transitions.

Approval is modeled as one explicit state instead of two independent flags,
so "withdrawn but approved" and similar combinations cannot be stored.
"""

from grannhjalp.domain.enums import OfferAction, OfferActor, OfferState
from grannhjalp.services.errors import Conflict


class InvalidTransitionError(Conflict):
    """Raised when an offer transition is not allowed."""

    def __init__(
        self,
        current_state: OfferState,
        action: OfferAction,
        actor: OfferActor,
        reason: str,
    ):
        self.current_state = current_state
        self.action = action
        self.actor = actor
        self.reason = reason
        super().__init__(
            f"Cannot {action.value} offer as {actor.value} from {current_state.value}: {reason}"
        )


# ---------------------------------------------------------------------------
# Transition map: from_state -> {(action, actor): to_state}
# A transition whose target equals its source is an idempotent no-op.
# ---------------------------------------------------------------------------

S = OfferState
A = OfferAction
R = OfferActor

TRANSITION_MAP: dict[OfferState, dict[tuple[OfferAction, OfferActor], OfferState]] = {
    S.SUBMITTED: {
        (A.APPROVE, R.REQUESTER): S.REQUESTER_APPROVED,
        (A.APPROVE, R.HELPER): S.HELPER_APPROVED,
        (A.WITHDRAW, R.HELPER): S.WITHDRAWN,
    },
    S.REQUESTER_APPROVED: {
        (A.APPROVE, R.REQUESTER): S.REQUESTER_APPROVED,
        (A.APPROVE, R.HELPER): S.MUTUALLY_APPROVED,
        (A.WITHDRAW, R.HELPER): S.WITHDRAWN,
    },
    S.HELPER_APPROVED: {
        (A.APPROVE, R.REQUESTER): S.MUTUALLY_APPROVED,
        (A.APPROVE, R.HELPER): S.HELPER_APPROVED,
        (A.WITHDRAW, R.HELPER): S.WITHDRAWN,
    },
    S.MUTUALLY_APPROVED: {
        (A.APPROVE, R.REQUESTER): S.MUTUALLY_APPROVED,
        (A.APPROVE, R.HELPER): S.MUTUALLY_APPROVED,
    },
    S.WITHDRAWN: {
        (A.WITHDRAW, R.HELPER): S.WITHDRAWN,
    },
}

# States in which contact details are shared between requester and helper
CONTACT_VISIBLE_STATES: set[OfferState] = {S.MUTUALLY_APPROVED}


def initial_state(helper_approved: bool = True) -> OfferState:
    """State of a freshly submitted offer."""
    return S.HELPER_APPROVED if helper_approved else S.SUBMITTED


class OfferStateMachine:
    """Validates offer transitions and computes the resulting state."""

    def next_state(
        self,
        current_state: OfferState,
        action: OfferAction,
        actor: OfferActor,
    ) -> OfferState:
        """Return the state reached by applying *action* as *actor*.

        Raises InvalidTransitionError if the combination is not allowed.
        """
        if isinstance(current_state, str):
            current_state = OfferState(current_state)

        allowed = TRANSITION_MAP.get(current_state, {})
        target = allowed.get((action, actor))
        if target is not None:
            return target

        if current_state == S.MUTUALLY_APPROVED and action == A.WITHDRAW:
            reason = "mutually approved offers can no longer be withdrawn"
        elif current_state == S.WITHDRAWN:
            reason = "offer has been withdrawn"
        elif action == A.WITHDRAW:
            reason = "only the helper may withdraw an offer"
        else:
            reason = "transition is not allowed"
        raise InvalidTransitionError(current_state, action, actor, reason)

    def is_noop(
        self,
        current_state: OfferState,
        action: OfferAction,
        actor: OfferActor,
    ) -> bool:
        return self.next_state(current_state, action, actor) == OfferState(current_state)

    def get_allowed_actions(
        self,
        current_state: OfferState,
        actor: OfferActor,
    ) -> list[OfferAction]:
        """Return the actions that would change state for *actor*."""
        if isinstance(current_state, str):
            current_state = OfferState(current_state)
        results: list[OfferAction] = []
        for (action, allowed_actor), target in TRANSITION_MAP.get(current_state, {}).items():
            if allowed_actor == actor and target != current_state:
                results.append(action)
        return results

    def contact_visible(self, state: OfferState) -> bool:
        return OfferState(state) in CONTACT_VISIBLE_STATES
