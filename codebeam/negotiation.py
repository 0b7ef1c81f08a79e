"""Offer/answer negotiation as an explicit state machine."""

from enum import Enum

from .errors import NegotiationError


class NegotiationState(str, Enum):
    NEW = "new"
    HAVE_LOCAL_OFFER = "have-local-offer"
    HAVE_REMOTE_OFFER = "have-remote-offer"
    APPLYING_ANSWER = "applying-answer"
    STABLE = "stable"
    CLOSED = "closed"


_TRANSITIONS = {
    ("local_offer", NegotiationState.NEW): NegotiationState.HAVE_LOCAL_OFFER,
    ("remote_offer", NegotiationState.NEW): NegotiationState.HAVE_REMOTE_OFFER,
    ("local_answer", NegotiationState.HAVE_REMOTE_OFFER): NegotiationState.STABLE,
    ("begin_answer", NegotiationState.HAVE_LOCAL_OFFER): NegotiationState.APPLYING_ANSWER,
    ("answer_applied", NegotiationState.APPLYING_ANSWER): NegotiationState.STABLE,
    ("answer_failed", NegotiationState.APPLYING_ANSWER): NegotiationState.HAVE_LOCAL_OFFER,
}


class Negotiation:
    def __init__(self) -> None:
        self.state = NegotiationState.NEW

    @property
    def remote_description_set(self) -> bool:
        return self.state in (NegotiationState.HAVE_REMOTE_OFFER, NegotiationState.STABLE)

    def fire(self, event: str) -> NegotiationState:
        if event == "close":
            self.state = NegotiationState.CLOSED
            return self.state
        target = _TRANSITIONS.get((event, self.state))
        if target is None:
            raise NegotiationError(f"Cannot {event} while {self.state.value}")
        self.state = target
        return target

    def begin_answer(self) -> bool:
        """
        Claim the right to apply a remote answer.

        Returns False when an answer is already being applied or the
        negotiation is complete, so duplicate or late answers are skipped.
        """
        if self.state in (NegotiationState.APPLYING_ANSWER, NegotiationState.STABLE):
            return False
        self.fire("begin_answer")
        return True
