"""Unit tests for the ballot registry dispatch layer."""

import os
import sys
import threading

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from hive_ballot import ballot_registry
from hive_ballot.ballot_registry import BallotRegistry
from hive_ballot.ballot_state import BallotError, BallotErrorReason, BallotState, Identity

CREATOR = Identity("creator")
VOTER = Identity("voter-1")
OUTSIDER = Identity("outsider")


def _make_registry(options=None, results_restricted=False, logger=None):
    registry = BallotRegistry(logger=logger)
    ballot_id = registry.create_ballot(
        "Test Vote",
        options or ["Option 1", "Option 2"],
        results_restricted,
        [CREATOR],
    )
    return registry, ballot_id


def _reason(excinfo):
    return excinfo.value.reason


def test_create_ballot_assigns_sequential_ids():
    registry = BallotRegistry()
    first = registry.create_ballot("A", ["x"], False, [CREATOR])
    second = registry.create_ballot("B", ["y"], True, [VOTER, CREATOR])
    assert (first, second) == (0, 1)
    assert registry.next_id == 2
    assert len(registry) == 2
    assert registry.list_ballot_ids() == [0, 1]
    assert 1 in registry
    assert 2 not in registry
    assert registry.ballot_info(1)["creator"] == "voter-1"


def test_create_ballot_requires_caller():
    registry = BallotRegistry()
    with pytest.raises(BallotError) as excinfo:
        registry.create_ballot("A", ["x"], False, [])
    assert _reason(excinfo) == BallotErrorReason.NO_CALLER
    assert registry.next_id == 0


def test_create_ballot_rejects_non_signer_caller():
    registry = BallotRegistry()
    with pytest.raises(BallotError) as excinfo:
        registry.create_ballot("A", ["x"], False, [Identity("creator", is_signer=False)])
    assert _reason(excinfo) == BallotErrorReason.NO_CALLER


def test_plain_string_identities_are_accepted():
    registry = BallotRegistry()
    ballot_id = registry.create_ballot("A", ["x"], False, ["creator"])
    registry.enroll_voter(ballot_id, "voter-1", ["creator"])
    assert registry.is_enrolled(ballot_id, "voter-1")


def test_vote_scenario():
    registry, ballot_id = _make_registry()
    registry.enroll_voter(ballot_id, VOTER.pubkey, [CREATOR])
    assert registry.vote(ballot_id, [VOTER, OUTSIDER], 0) == "Option 1"
    assert registry.read_results(ballot_id, [VOTER])["Option 1"] == 1


def test_vote_nonexistent_ballot():
    registry, _ = _make_registry()
    with pytest.raises(BallotError) as excinfo:
        registry.vote(999, [VOTER], 0)
    assert _reason(excinfo) == BallotErrorReason.BALLOT_NOT_FOUND


def test_ballot_lookup_precedes_caller_check():
    registry = BallotRegistry()
    with pytest.raises(BallotError) as excinfo:
        registry.close_ballot(5, [])
    assert _reason(excinfo) == BallotErrorReason.BALLOT_NOT_FOUND


@pytest.mark.parametrize(
    "call",
    [
        lambda r, b: r.vote(b, [], 0),
        lambda r, b: r.close_ballot(b, []),
        lambda r, b: r.read_results(b, []),
        lambda r, b: r.enroll_voter(b, "voter-1", []),
        lambda r, b: r.revoke_voter(b, "voter-1", []),
        lambda r, b: r.delegate_allowance(b, "voter-1", []),
    ],
)
def test_caller_operations_require_identities(call):
    registry, ballot_id = _make_registry()
    with pytest.raises(BallotError) as excinfo:
        call(registry, ballot_id)
    assert _reason(excinfo) == BallotErrorReason.NO_CALLER


@pytest.mark.parametrize(
    "call",
    [
        lambda r, b: r.vote(b + 1, [VOTER], 0),
        lambda r, b: r.close_ballot(b + 1, [CREATOR]),
        lambda r, b: r.read_results(b + 1, [CREATOR]),
        lambda r, b: r.enroll_voter(b + 1, "voter-1", [CREATOR]),
        lambda r, b: r.revoke_voter(b + 1, "voter-1", [CREATOR]),
        lambda r, b: r.is_enrolled(b + 1, "voter-1"),
        lambda r, b: r.delegate_allowance(b + 1, "voter-1", [VOTER]),
        lambda r, b: r.options_view(b + 1),
        lambda r, b: r.ballot_info(b + 1),
        lambda r, b: r.voter_info(b + 1, "voter-1"),
    ],
)
def test_unknown_ballot_for_every_operation(call):
    registry, ballot_id = _make_registry()
    with pytest.raises(BallotError) as excinfo:
        call(registry, ballot_id)
    assert _reason(excinfo) == BallotErrorReason.BALLOT_NOT_FOUND


def test_options_and_enrollment_need_no_caller():
    registry, ballot_id = _make_registry(options=["a", "b", "a"])
    assert registry.options_view(ballot_id) == ("a", "b", "a")
    assert registry.is_enrolled(ballot_id, VOTER.pubkey) is False


def test_enroll_and_revoke_through_registry():
    registry, ballot_id = _make_registry()
    registry.enroll_voter(ballot_id, VOTER.pubkey, [CREATOR])
    assert registry.is_enrolled(ballot_id, VOTER.pubkey)

    with pytest.raises(BallotError) as excinfo:
        registry.revoke_voter(ballot_id, VOTER.pubkey, [OUTSIDER])
    assert _reason(excinfo) == BallotErrorReason.NOT_CREATOR

    registry.revoke_voter(ballot_id, VOTER.pubkey, [CREATOR])
    assert not registry.is_enrolled(ballot_id, VOTER.pubkey)


def test_delegate_through_registry():
    registry, ballot_id = _make_registry()
    registry.enroll_voter(ballot_id, VOTER.pubkey, [CREATOR])
    registry.delegate_allowance(ballot_id, OUTSIDER.pubkey, [VOTER])

    delegator = registry.voter_info(ballot_id, VOTER.pubkey)
    delegate = registry.voter_info(ballot_id, OUTSIDER.pubkey)
    assert delegator.remaining_allowance == 0
    assert delegator.delegate_target == OUTSIDER.pubkey
    assert delegate.remaining_allowance == 1


def test_delegate_by_non_enrolled_identity():
    registry, ballot_id = _make_registry()
    with pytest.raises(BallotError) as excinfo:
        registry.delegate_allowance(ballot_id, VOTER.pubkey, [OUTSIDER])
    assert _reason(excinfo) == BallotErrorReason.VOTER_NOT_ALLOWED


def test_close_then_vote_fails():
    registry, ballot_id = _make_registry()
    registry.enroll_voter(ballot_id, VOTER.pubkey, [CREATOR])
    registry.close_ballot(ballot_id, [CREATOR])

    with pytest.raises(BallotError) as excinfo:
        registry.vote(ballot_id, [VOTER], 0)
    assert _reason(excinfo) == BallotErrorReason.BALLOT_CLOSED
    assert registry.ballot_info(ballot_id)["is_open"] is False


def test_non_creator_cannot_close():
    registry, ballot_id = _make_registry()
    with pytest.raises(BallotError) as excinfo:
        registry.close_ballot(ballot_id, [VOTER, CREATOR])
    assert _reason(excinfo) == BallotErrorReason.NOT_CREATOR


def test_restricted_results_through_registry():
    registry, ballot_id = _make_registry(results_restricted=True)
    registry.enroll_voter(ballot_id, VOTER.pubkey, [CREATOR])
    registry.vote(ballot_id, [VOTER], 1)

    with pytest.raises(BallotError) as excinfo:
        registry.read_results(ballot_id, [OUTSIDER])
    assert _reason(excinfo) == BallotErrorReason.VOTER_NOT_ALLOWED
    assert registry.read_results(ballot_id, [VOTER]) == {"Option 2": 1}


def test_ballots_are_independent():
    registry = BallotRegistry()
    first = registry.create_ballot("A", ["x"], False, [CREATOR])
    second = registry.create_ballot("B", ["x"], False, [CREATOR])
    registry.enroll_voter(first, VOTER.pubkey, [CREATOR])
    registry.close_ballot(second, [CREATOR])

    assert registry.is_enrolled(first, VOTER.pubkey)
    assert not registry.is_enrolled(second, VOTER.pubkey)
    assert registry.ballot_info(first)["is_open"] is True


def test_restore_ballot_advances_next_id():
    registry = BallotRegistry()
    restored = BallotState(ballot_id=7, title="Old", options=["x"], creator="creator")
    registry.restore_ballot(restored)
    assert registry.next_id == 8
    assert registry.create_ballot("New", ["y"], False, [CREATOR]) == 8

    with pytest.raises(ValueError):
        registry.restore_ballot(BallotState(ballot_id=7, title="Dup", options=["x"], creator="c"))


def test_reserve_ids_never_moves_backwards():
    registry = BallotRegistry()
    registry.reserve_ids(10)
    registry.reserve_ids(3)
    assert registry.next_id == 10


def test_id_counter_overflow_is_fatal(monkeypatch):
    monkeypatch.setattr(ballot_registry, "MAX_BALLOT_ID", 1)
    registry = BallotRegistry()
    registry.create_ballot("A", ["x"], False, [CREATOR])
    registry.create_ballot("B", ["x"], False, [CREATOR])
    with pytest.raises(RuntimeError):
        registry.create_ballot("C", ["x"], False, [CREATOR])
    assert len(registry) == 2


def test_logger_receives_lifecycle_messages():
    messages = []
    registry, ballot_id = _make_registry(logger=lambda msg, level: messages.append((level, msg)))
    registry.enroll_voter(ballot_id, VOTER.pubkey, [CREATOR])
    with pytest.raises(BallotError):
        registry.vote(ballot_id, [VOTER], 5)
    registry.close_ballot(ballot_id, [CREATOR])

    assert any("created ballot 0" in msg for level, msg in messages if level == "info")
    assert any("closed ballot 0" in msg for level, msg in messages if level == "info")
    assert any("OptionIndexOutOfRange" in msg for level, msg in messages if level == "debug")


def test_concurrent_votes_do_not_lose_updates():
    registry, ballot_id = _make_registry()
    voters = [f"voter-{i}" for i in range(50)]
    for voter in voters:
        registry.enroll_voter(ballot_id, voter, [CREATOR])

    errors = []

    def _cast(voter):
        try:
            registry.vote(ballot_id, [voter], 0)
        except BallotError as exc:
            errors.append(exc)

    threads = [threading.Thread(target=_cast, args=(voter,)) for voter in voters]
    # Each voter also tries a second time; only one of the two may count.
    threads += [threading.Thread(target=_cast, args=(voter,)) for voter in voters]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert registry.read_results(ballot_id, [CREATOR]) == {"Option 1": 50}
    assert len(errors) == 50
    assert all(err.reason == BallotErrorReason.NO_ALLOWANCE_LEFT for err in errors)
