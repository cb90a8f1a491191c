"""Single-ballot state: roster, tally, and the open/closed lifecycle."""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Optional, Sequence, Tuple


class BallotErrorReason(str, Enum):
    NO_CALLER = "NoCaller"
    BALLOT_NOT_FOUND = "BallotNotFound"
    NOT_CREATOR = "NotCreator"
    BALLOT_CLOSED = "BallotClosed"
    VOTER_NOT_ALLOWED = "VoterNotAllowed"
    VOTER_NOT_FOUND = "VoterNotFound"
    NO_ALLOWANCE_LEFT = "NoAllowanceLeft"
    OPTION_INDEX_OUT_OF_RANGE = "OptionIndexOutOfRange"


_REASON_MESSAGES = {
    BallotErrorReason.NO_CALLER: "no caller identity supplied",
    BallotErrorReason.BALLOT_NOT_FOUND: "ballot not found",
    BallotErrorReason.NOT_CREATOR: "only the ballot creator may do this",
    BallotErrorReason.BALLOT_CLOSED: "ballot is closed",
    BallotErrorReason.VOTER_NOT_ALLOWED: "voter is not enrolled in this ballot",
    BallotErrorReason.VOTER_NOT_FOUND: "voter not found in roster",
    BallotErrorReason.NO_ALLOWANCE_LEFT: "no allowance left",
    BallotErrorReason.OPTION_INDEX_OUT_OF_RANGE: "option index out of range",
}


class BallotError(Exception):
    """Recoverable ballot failure carrying a reason code."""

    def __init__(self, reason: BallotErrorReason, message: str = ""):
        self.reason = reason
        self.message = message or _REASON_MESSAGES[reason]
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "reason": self.reason.value}


@dataclass(frozen=True)
class Identity:
    """A participant key plus whether the host authenticated it as the caller."""

    pubkey: str
    is_signer: bool = True


@dataclass
class VoterEntry:
    remaining_allowance: int = 1
    delegate_target: Optional[str] = None


class BallotState:
    """All state owned by one ballot.

    Every mutator except ``close_ballot`` requires the ballot to be open.
    Callers are expected to serialize access per ballot.
    """

    def __init__(
        self,
        ballot_id: int,
        title: str,
        options: Sequence[str],
        creator: str,
        results_restricted: bool = False,
    ):
        self.ballot_id = ballot_id
        self.title = title
        self.options: Tuple[str, ...] = tuple(options)
        self.tally: Dict[str, int] = {}
        self._creator = creator
        self.roster: Dict[str, VoterEntry] = {}
        self.results_restricted = bool(results_restricted)
        self.is_open = True

    @property
    def creator(self) -> str:
        return self._creator

    def _require_creator(self, caller: str) -> None:
        if caller != self._creator:
            raise BallotError(BallotErrorReason.NOT_CREATOR)

    def _require_open(self) -> None:
        if not self.is_open:
            raise BallotError(BallotErrorReason.BALLOT_CLOSED)

    def _require_enrolled(self, identity: str) -> VoterEntry:
        entry = self.roster.get(identity)
        if entry is None:
            raise BallotError(BallotErrorReason.VOTER_NOT_ALLOWED)
        return entry

    def options_view(self) -> Tuple[str, ...]:
        return self.options

    def enroll_voter(self, identity: str, caller: str) -> None:
        """Grant ``identity`` exactly one unit of allowance.

        Re-enrolling resets the entry; allowance received through delegation
        is discarded rather than merged.
        """
        self._require_creator(caller)
        self._require_open()
        self.roster[identity] = VoterEntry(remaining_allowance=1, delegate_target=None)

    def revoke_voter(self, identity: str, caller: str) -> None:
        self._require_creator(caller)
        self._require_open()
        if identity not in self.roster:
            raise BallotError(BallotErrorReason.VOTER_NOT_FOUND)
        # Held allowance is dropped, not handed to a delegate or the creator.
        del self.roster[identity]

    def is_enrolled(self, identity: str) -> bool:
        return identity in self.roster

    def cast_vote(self, voter: str, option_index: int) -> str:
        """Record one vote and return the option text that received it."""
        entry = self._require_enrolled(voter)
        self._require_open()
        if entry.remaining_allowance <= 0:
            raise BallotError(BallotErrorReason.NO_ALLOWANCE_LEFT)
        if option_index < 0 or option_index >= len(self.options):
            raise BallotError(BallotErrorReason.OPTION_INDEX_OUT_OF_RANGE)

        option = self.options[option_index]
        self.tally[option] = self.tally.get(option, 0) + 1
        entry.remaining_allowance -= 1
        return option

    def delegate_allowance(self, delegate: str, delegator: str) -> None:
        """Move one unit of allowance from ``delegator`` to ``delegate``.

        Single hop: the delegate's own delegation pointer is neither followed
        nor checked, and the delegate does not have to be enrolled already.
        """
        entry = self._require_enrolled(delegator)
        self._require_open()
        if entry.remaining_allowance <= 0:
            raise BallotError(BallotErrorReason.NO_ALLOWANCE_LEFT)

        entry.remaining_allowance -= 1
        entry.delegate_target = delegate
        target = self.roster.setdefault(delegate, VoterEntry(remaining_allowance=0))
        target.remaining_allowance += 1

    def close_ballot(self, caller: str) -> None:
        self._require_creator(caller)
        self.is_open = False

    def read_results(self, caller: str) -> Dict[str, int]:
        if self.results_restricted and not self.is_enrolled(caller):
            raise BallotError(BallotErrorReason.VOTER_NOT_ALLOWED)
        return dict(self.tally)

    def voter_entry(self, identity: str) -> Optional[VoterEntry]:
        entry = self.roster.get(identity)
        return replace(entry) if entry is not None else None

    def total_votes(self) -> int:
        return sum(self.tally.values())

    def describe(self) -> Dict[str, Any]:
        return {
            "ballot_id": self.ballot_id,
            "title": self.title,
            "creator": self._creator,
            "options": list(self.options),
            "is_open": self.is_open,
            "results_restricted": self.results_restricted,
            "voter_count": len(self.roster),
            "total_votes": self.total_votes(),
        }
