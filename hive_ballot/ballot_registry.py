"""Registry that owns ballots and routes caller-scoped operations to them."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from hive_ballot.ballot_state import (
    BallotError,
    BallotErrorReason,
    BallotState,
    Identity,
    VoterEntry,
)

IdentityLike = Union[Identity, str]

# Ballot ids are unsigned 32-bit values.
MAX_BALLOT_ID = 0xFFFFFFFF


def _caller_pubkey(identities: Sequence[IdentityLike]) -> str:
    """Return the acting identity, which is always the first entry."""
    if not identities:
        raise BallotError(BallotErrorReason.NO_CALLER)
    first = identities[0]
    if isinstance(first, Identity):
        if not first.is_signer:
            raise BallotError(BallotErrorReason.NO_CALLER, "first identity is not an authenticated caller")
        return first.pubkey
    return str(first)


class BallotRegistry:
    """Owns every BallotState, keyed by a monotonically increasing id.

    The map and id counter share one lock; each ballot has its own lock so
    operations on different ballots do not serialize against each other.
    """

    def __init__(self, logger: Optional[Callable[[str, str], None]] = None):
        self._logger = logger
        self._lock = threading.Lock()
        self._ballots: Dict[int, BallotState] = {}
        self._ballot_locks: Dict[int, threading.Lock] = {}
        self._next_id = 0

    def _log(self, message: str, level: str = "info") -> None:
        if self._logger:
            self._logger(message, level)

    @property
    def next_id(self) -> int:
        with self._lock:
            return self._next_id

    def __len__(self) -> int:
        with self._lock:
            return len(self._ballots)

    def __contains__(self, ballot_id: object) -> bool:
        with self._lock:
            return ballot_id in self._ballots

    @contextmanager
    def _locked(self, ballot_id: int) -> Iterator[BallotState]:
        with self._lock:
            ballot = self._ballots.get(ballot_id)
            ballot_lock = self._ballot_locks.get(ballot_id)
        if ballot is None or ballot_lock is None:
            raise BallotError(BallotErrorReason.BALLOT_NOT_FOUND)
        with ballot_lock:
            yield ballot

    def _insert(self, ballot: BallotState) -> None:
        self._ballots[ballot.ballot_id] = ballot
        self._ballot_locks[ballot.ballot_id] = threading.Lock()

    def create_ballot(
        self,
        title: str,
        options: Sequence[str],
        results_restricted: bool,
        caller_identities: Sequence[IdentityLike],
    ) -> int:
        creator = _caller_pubkey(caller_identities)
        with self._lock:
            ballot_id = self._next_id
            if ballot_id > MAX_BALLOT_ID:
                raise RuntimeError("ballot id counter exhausted")
            self._insert(
                BallotState(
                    ballot_id=ballot_id,
                    title=title,
                    options=options,
                    creator=creator,
                    results_restricted=results_restricted,
                )
            )
            self._next_id = ballot_id + 1
        self._log(f"ballot: created ballot {ballot_id} ({len(options)} options) by {creator}")
        return ballot_id

    def restore_ballot(self, ballot: BallotState) -> None:
        """Insert a rehydrated ballot, keeping ``next_id`` past its id."""
        if ballot.ballot_id < 0 or ballot.ballot_id > MAX_BALLOT_ID:
            raise ValueError(f"invalid ballot id {ballot.ballot_id}")
        with self._lock:
            if ballot.ballot_id in self._ballots:
                raise ValueError(f"ballot {ballot.ballot_id} already present")
            self._insert(ballot)
            self._next_id = max(self._next_id, ballot.ballot_id + 1)

    def reserve_ids(self, next_id: int) -> None:
        """Advance the counter so ids below ``next_id`` are never handed out."""
        with self._lock:
            self._next_id = max(self._next_id, int(next_id))

    def vote(self, ballot_id: int, caller_identities: Sequence[IdentityLike], option_index: int) -> str:
        with self._locked(ballot_id) as ballot:
            voter = _caller_pubkey(caller_identities)
            try:
                return ballot.cast_vote(voter, option_index)
            except BallotError as exc:
                self._log(f"ballot: vote on {ballot_id} rejected: {exc.reason.value}", "debug")
                raise

    def close_ballot(self, ballot_id: int, caller_identities: Sequence[IdentityLike]) -> None:
        with self._locked(ballot_id) as ballot:
            caller = _caller_pubkey(caller_identities)
            ballot.close_ballot(caller)
        self._log(f"ballot: closed ballot {ballot_id}")

    def read_results(self, ballot_id: int, caller_identities: Sequence[IdentityLike]) -> Dict[str, int]:
        with self._locked(ballot_id) as ballot:
            caller = _caller_pubkey(caller_identities)
            return ballot.read_results(caller)

    def enroll_voter(
        self,
        ballot_id: int,
        voter: str,
        caller_identities: Sequence[IdentityLike],
    ) -> None:
        with self._locked(ballot_id) as ballot:
            caller = _caller_pubkey(caller_identities)
            ballot.enroll_voter(voter, caller)

    def revoke_voter(
        self,
        ballot_id: int,
        voter: str,
        caller_identities: Sequence[IdentityLike],
    ) -> None:
        with self._locked(ballot_id) as ballot:
            caller = _caller_pubkey(caller_identities)
            ballot.revoke_voter(voter, caller)

    def is_enrolled(self, ballot_id: int, voter: str) -> bool:
        with self._locked(ballot_id) as ballot:
            return ballot.is_enrolled(voter)

    def delegate_allowance(
        self,
        ballot_id: int,
        delegate: str,
        caller_identities: Sequence[IdentityLike],
    ) -> None:
        with self._locked(ballot_id) as ballot:
            delegator = _caller_pubkey(caller_identities)
            try:
                ballot.delegate_allowance(delegate, delegator)
            except BallotError as exc:
                self._log(f"ballot: delegation on {ballot_id} rejected: {exc.reason.value}", "debug")
                raise

    def options_view(self, ballot_id: int) -> Tuple[str, ...]:
        with self._locked(ballot_id) as ballot:
            return ballot.options_view()

    def ballot_info(self, ballot_id: int) -> Dict[str, Any]:
        with self._locked(ballot_id) as ballot:
            return ballot.describe()

    def voter_info(self, ballot_id: int, voter: str) -> Optional[VoterEntry]:
        with self._locked(ballot_id) as ballot:
            return ballot.voter_entry(voter)

    def list_ballot_ids(self) -> List[int]:
        with self._lock:
            return sorted(self._ballots)

    def with_ballot(self, ballot_id: int, fn: Callable[[BallotState], Any]) -> Any:
        """Run ``fn`` against a ballot while holding that ballot's lock."""
        with self._locked(ballot_id) as ballot:
            return fn(ballot)
