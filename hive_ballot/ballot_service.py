"""Host-facing service and snapshot persistence for cl-hive-ballot."""

from __future__ import annotations

import json
import os
import sqlite3
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from hive_ballot.ballot_registry import BallotRegistry
from hive_ballot.ballot_state import BallotError, BallotState, Identity, VoterEntry


def _is_hex(value: str, expected_len: int) -> bool:
    if not isinstance(value, str) or len(value) != expected_len:
        return False
    try:
        int(value, 16)
        return True
    except ValueError:
        return False


def _is_valid_cln_pubkey(value: str) -> bool:
    if not isinstance(value, str):
        return False
    if len(value) != 66 or value[:2] not in ("02", "03"):
        return False
    return _is_hex(value, 66)


def _dumps(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


class BallotStore:
    """SQLite snapshots of ballots and the id counter."""

    def __init__(self, db_path: str, logger: Optional[Callable[[str, str], None]] = None):
        self.db_path = os.path.expanduser(db_path)
        self._logger = logger
        self._local = threading.local()

    def _log(self, message: str, level: str = "info") -> None:
        if self._logger:
            self._logger(message, level)

    def _get_connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            db_dir = os.path.dirname(self.db_path)
            if db_dir:
                os.makedirs(db_dir, exist_ok=True)
            conn = sqlite3.connect(
                self.db_path,
                isolation_level=None,
                timeout=30.0,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL;")
            self._local.conn = conn
        return conn

    def close(self) -> None:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None

    def initialize(self) -> None:
        conn = self._get_connection()
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS ballot_meta (
                singleton_id INTEGER PRIMARY KEY CHECK(singleton_id = 1),
                next_id INTEGER NOT NULL DEFAULT 0
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS ballots (
                ballot_id INTEGER PRIMARY KEY,
                title TEXT NOT NULL,
                creator TEXT NOT NULL,
                options_json TEXT NOT NULL,
                results_restricted INTEGER NOT NULL DEFAULT 0,
                is_open INTEGER NOT NULL DEFAULT 1,
                tally_json TEXT NOT NULL DEFAULT '{}',
                roster_json TEXT NOT NULL DEFAULT '{}',
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            )
            """
        )
        conn.execute(
            "INSERT OR IGNORE INTO ballot_meta (singleton_id, next_id) VALUES (1, 0)"
        )

    def get_next_id(self) -> int:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT next_id FROM ballot_meta WHERE singleton_id = 1"
        ).fetchone()
        return int(row["next_id"]) if row else 0

    def set_next_id(self, next_id: int) -> None:
        conn = self._get_connection()
        conn.execute(
            "UPDATE ballot_meta SET next_id = MAX(next_id, ?) WHERE singleton_id = 1",
            (next_id,),
        )

    def save_ballot(self, ballot: BallotState, now_ts: int) -> None:
        roster = {
            pubkey: {
                "remaining_allowance": entry.remaining_allowance,
                "delegate_target": entry.delegate_target,
            }
            for pubkey, entry in ballot.roster.items()
        }
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO ballots (
                ballot_id, title, creator, options_json, results_restricted,
                is_open, tally_json, roster_json, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(ballot_id) DO UPDATE SET
                is_open = excluded.is_open,
                tally_json = excluded.tally_json,
                roster_json = excluded.roster_json,
                updated_at = excluded.updated_at
            """,
            (
                ballot.ballot_id,
                ballot.title,
                ballot.creator,
                json.dumps(list(ballot.options), separators=(",", ":")),
                1 if ballot.results_restricted else 0,
                1 if ballot.is_open else 0,
                _dumps(ballot.tally),
                _dumps(roster),
                now_ts,
                now_ts,
            ),
        )

    def load_ballots(self) -> List[BallotState]:
        conn = self._get_connection()
        rows = conn.execute("SELECT * FROM ballots ORDER BY ballot_id ASC").fetchall()
        ballots: List[BallotState] = []
        for row in rows:
            try:
                ballots.append(self._row_to_ballot(row))
            except (json.JSONDecodeError, AttributeError, TypeError, ValueError) as exc:
                self._log(f"ballot: skipping corrupt ballot row {row['ballot_id']}: {exc}", "warn")
        return ballots

    def _row_to_ballot(self, row: sqlite3.Row) -> BallotState:
        options = json.loads(row["options_json"])
        if not isinstance(options, list):
            raise ValueError("options_json is not a list")
        ballot = BallotState(
            ballot_id=int(row["ballot_id"]),
            title=str(row["title"]),
            options=[str(opt) for opt in options],
            creator=str(row["creator"]),
            results_restricted=bool(row["results_restricted"]),
        )
        ballot.is_open = bool(row["is_open"])
        ballot.tally = {str(k): int(v) for k, v in json.loads(row["tally_json"] or "{}").items()}
        roster = json.loads(row["roster_json"] or "{}")
        for pubkey, entry in roster.items():
            delegate = entry.get("delegate_target")
            ballot.roster[str(pubkey)] = VoterEntry(
                remaining_allowance=max(0, int(entry.get("remaining_allowance", 0))),
                delegate_target=str(delegate) if delegate else None,
            )
        return ballot


class BallotService:
    """Service API used by cl-hive-ballot RPC methods."""

    MAX_TITLE_LEN = 200
    MAX_OPTIONS = 64
    MAX_OPTION_LEN = 120
    MAX_TOTAL_BALLOTS = 5_000

    def __init__(
        self,
        store: Optional[BallotStore] = None,
        rpc: Any = None,
        logger: Optional[Callable[[str, str], None]] = None,
        max_total_ballots: int = MAX_TOTAL_BALLOTS,
        time_fn: Callable[[], float] = time.time,
    ):
        self.store = store
        self.rpc = rpc
        self._logger = logger
        self.max_total_ballots = max(1, int(max_total_ballots))
        self._time_fn = time_fn
        self.registry = BallotRegistry(logger=logger)

        if self.store is not None:
            self.store.initialize()
            self._load_from_store(self.store)

    def _log(self, message: str, level: str = "info") -> None:
        if self._logger:
            self._logger(message, level)

    def _now(self) -> int:
        return int(self._time_fn())

    def _load_from_store(self, store: BallotStore) -> None:
        ballots = store.load_ballots()
        for ballot in ballots:
            self.registry.restore_ballot(ballot)
        self.registry.reserve_ids(store.get_next_id())
        if ballots:
            self._log(f"ballot: restored {len(ballots)} ballot(s), next id {self.registry.next_id}")

    def _persist(self, ballot_id: int, new_ballot: bool = False) -> None:
        store = self.store
        if store is None:
            return
        now_ts = self._now()
        try:
            self.registry.with_ballot(ballot_id, lambda ballot: store.save_ballot(ballot, now_ts))
            if new_ballot:
                store.set_next_id(self.registry.next_id)
        except sqlite3.Error as exc:
            self._log(f"ballot: failed to persist ballot {ballot_id} (in-memory state kept): {exc}", "warn")

    def _our_node_pubkey(self) -> str:
        if not self.rpc:
            return ""
        try:
            info = self.rpc.getinfo()
            if isinstance(info, dict):
                pubkey = str(info.get("id", ""))
                if _is_valid_cln_pubkey(pubkey):
                    return pubkey
        except Exception as exc:
            self._log(f"ballot: getinfo failed: {exc}", "warn")
        return ""

    def _build_identities(self, identities: Optional[List[Any]]) -> Any:
        """Return a list of Identity, or an error dict.

        ``None`` means the caller did not name anyone, so this node acts.
        The first entry is the authenticated caller.
        """
        if identities is None:
            node_pubkey = self._our_node_pubkey()
            identities = [node_pubkey] if node_pubkey else []
        if not isinstance(identities, list):
            return {"error": "identities must be a list of pubkeys"}
        built: List[Identity] = []
        for index, pubkey in enumerate(identities):
            if not _is_valid_cln_pubkey(pubkey):
                return {"error": "invalid identity pubkey (expected 66-char compressed secp256k1 pubkey)"}
            built.append(Identity(pubkey=pubkey, is_signer=(index == 0)))
        return built

    @staticmethod
    def _valid_ballot_id(ballot_id: Any) -> bool:
        return isinstance(ballot_id, int) and not isinstance(ballot_id, bool) and ballot_id >= 0

    def _normalize_options(self, options: Any) -> Optional[List[str]]:
        if not isinstance(options, list):
            return None
        cleaned: List[str] = []
        for item in options:
            if not isinstance(item, str):
                return None
            value = item.strip()
            if not value or len(value) > self.MAX_OPTION_LEN:
                return None
            # Repeated option text is allowed; options are positional.
            cleaned.append(value)
        if not cleaned or len(cleaned) > self.MAX_OPTIONS:
            return None
        return cleaned

    def create(
        self,
        title: str,
        options: List[Any],
        results_restricted: bool = False,
        identities: Optional[List[Any]] = None,
    ) -> Dict[str, Any]:
        if len(self.registry) >= self.max_total_ballots:
            return {"error": "ballot capacity reached"}

        if not isinstance(title, str):
            return {"error": "invalid title"}
        title = title.strip()
        if not title or len(title) > self.MAX_TITLE_LEN:
            return {"error": f"invalid title (1-{self.MAX_TITLE_LEN} chars)"}

        cleaned_options = self._normalize_options(options)
        if cleaned_options is None:
            return {
                "error": f"invalid options (expected 1-{self.MAX_OPTIONS} non-empty strings "
                f"of at most {self.MAX_OPTION_LEN} chars)"
            }

        if not isinstance(results_restricted, bool):
            return {"error": "results_restricted must be a boolean"}

        callers = self._build_identities(identities)
        if isinstance(callers, dict):
            return callers

        try:
            ballot_id = self.registry.create_ballot(
                title=title,
                options=cleaned_options,
                results_restricted=results_restricted,
                caller_identities=callers,
            )
        except BallotError as exc:
            return exc.to_dict()

        self._persist(ballot_id, new_ballot=True)
        return {
            "ok": True,
            "ballot_id": ballot_id,
            "title": title,
            "options": cleaned_options,
            "creator": callers[0].pubkey,
            "results_restricted": results_restricted,
        }

    def vote(
        self,
        ballot_id: int,
        option_index: int,
        identities: Optional[List[Any]] = None,
    ) -> Dict[str, Any]:
        if not self._valid_ballot_id(ballot_id):
            return {"error": "invalid ballot_id"}
        if not isinstance(option_index, int) or isinstance(option_index, bool):
            return {"error": "option_index must be an integer"}
        callers = self._build_identities(identities)
        if isinstance(callers, dict):
            return callers

        try:
            option = self.registry.vote(ballot_id, callers, option_index)
        except BallotError as exc:
            return exc.to_dict()

        self._persist(ballot_id)
        return {
            "ok": True,
            "ballot_id": ballot_id,
            "voter": callers[0].pubkey,
            "option_index": option_index,
            "option": option,
        }

    def close(self, ballot_id: int, identities: Optional[List[Any]] = None) -> Dict[str, Any]:
        if not self._valid_ballot_id(ballot_id):
            return {"error": "invalid ballot_id"}
        callers = self._build_identities(identities)
        if isinstance(callers, dict):
            return callers

        try:
            self.registry.close_ballot(ballot_id, callers)
        except BallotError as exc:
            return exc.to_dict()

        self._persist(ballot_id)
        return {"ok": True, "ballot_id": ballot_id, "is_open": False}

    def results(self, ballot_id: int, identities: Optional[List[Any]] = None) -> Dict[str, Any]:
        if not self._valid_ballot_id(ballot_id):
            return {"error": "invalid ballot_id"}
        callers = self._build_identities(identities)
        if isinstance(callers, dict):
            return callers

        try:
            tally = self.registry.read_results(ballot_id, callers)
        except BallotError as exc:
            return exc.to_dict()

        return {
            "ok": True,
            "ballot_id": ballot_id,
            "results": tally,
            "total_votes": sum(tally.values()),
        }

    def enroll(
        self,
        ballot_id: int,
        voter: str,
        identities: Optional[List[Any]] = None,
    ) -> Dict[str, Any]:
        if not self._valid_ballot_id(ballot_id):
            return {"error": "invalid ballot_id"}
        if not _is_valid_cln_pubkey(voter):
            return {"error": "invalid voter pubkey"}
        callers = self._build_identities(identities)
        if isinstance(callers, dict):
            return callers

        try:
            self.registry.enroll_voter(ballot_id, voter, callers)
        except BallotError as exc:
            return exc.to_dict()

        self._persist(ballot_id)
        return {"ok": True, "ballot_id": ballot_id, "voter": voter, "remaining_allowance": 1}

    def revoke(
        self,
        ballot_id: int,
        voter: str,
        identities: Optional[List[Any]] = None,
    ) -> Dict[str, Any]:
        if not self._valid_ballot_id(ballot_id):
            return {"error": "invalid ballot_id"}
        if not _is_valid_cln_pubkey(voter):
            return {"error": "invalid voter pubkey"}
        callers = self._build_identities(identities)
        if isinstance(callers, dict):
            return callers

        try:
            self.registry.revoke_voter(ballot_id, voter, callers)
        except BallotError as exc:
            return exc.to_dict()

        self._persist(ballot_id)
        return {"ok": True, "ballot_id": ballot_id, "voter": voter, "revoked": True}

    def is_enrolled(self, ballot_id: int, voter: str) -> Dict[str, Any]:
        if not self._valid_ballot_id(ballot_id):
            return {"error": "invalid ballot_id"}
        if not _is_valid_cln_pubkey(voter):
            return {"error": "invalid voter pubkey"}
        try:
            enrolled = self.registry.is_enrolled(ballot_id, voter)
        except BallotError as exc:
            return exc.to_dict()
        return {"ok": True, "ballot_id": ballot_id, "voter": voter, "enrolled": enrolled}

    def delegate(
        self,
        ballot_id: int,
        delegate: str,
        identities: Optional[List[Any]] = None,
    ) -> Dict[str, Any]:
        if not self._valid_ballot_id(ballot_id):
            return {"error": "invalid ballot_id"}
        if not _is_valid_cln_pubkey(delegate):
            return {"error": "invalid delegate pubkey"}
        callers = self._build_identities(identities)
        if isinstance(callers, dict):
            return callers

        try:
            self.registry.delegate_allowance(ballot_id, delegate, callers)
        except BallotError as exc:
            return exc.to_dict()

        self._persist(ballot_id)
        return {
            "ok": True,
            "ballot_id": ballot_id,
            "delegator": callers[0].pubkey,
            "delegate": delegate,
        }

    def options(self, ballot_id: int) -> Dict[str, Any]:
        if not self._valid_ballot_id(ballot_id):
            return {"error": "invalid ballot_id"}
        try:
            options = self.registry.options_view(ballot_id)
        except BallotError as exc:
            return exc.to_dict()
        return {"ok": True, "ballot_id": ballot_id, "options": list(options)}

    def info(self, ballot_id: int) -> Dict[str, Any]:
        if not self._valid_ballot_id(ballot_id):
            return {"error": "invalid ballot_id"}
        try:
            ballot = self.registry.ballot_info(ballot_id)
        except BallotError as exc:
            return exc.to_dict()
        return {"ok": True, "ballot": ballot}

    def voter(self, ballot_id: int, voter: str) -> Dict[str, Any]:
        if not self._valid_ballot_id(ballot_id):
            return {"error": "invalid ballot_id"}
        if not _is_valid_cln_pubkey(voter):
            return {"error": "invalid voter pubkey"}
        try:
            entry = self.registry.voter_info(ballot_id, voter)
        except BallotError as exc:
            return exc.to_dict()

        if entry is None:
            return {"ok": True, "ballot_id": ballot_id, "voter": voter, "enrolled": False}
        return {
            "ok": True,
            "ballot_id": ballot_id,
            "voter": voter,
            "enrolled": True,
            "remaining_allowance": entry.remaining_allowance,
            "delegate_target": entry.delegate_target,
        }

    def _describe_all(self) -> List[Dict[str, Any]]:
        return [self.registry.ballot_info(ballot_id) for ballot_id in self.registry.list_ballot_ids()]

    def list_ballots(self, include_closed: bool = True) -> Dict[str, Any]:
        ballots = self._describe_all()
        if not include_closed:
            ballots = [ballot for ballot in ballots if ballot["is_open"]]
        return {"ok": True, "count": len(ballots), "ballots": ballots}

    def status(self) -> Dict[str, Any]:
        ballots = self._describe_all()
        open_count = sum(1 for ballot in ballots if ballot["is_open"])
        return {
            "ok": True,
            "total_ballots": len(ballots),
            "open_ballots": open_count,
            "closed_ballots": len(ballots) - open_count,
            "total_votes": sum(ballot["total_votes"] for ballot in ballots),
            "next_ballot_id": self.registry.next_id,
            "max_total_ballots": self.max_total_ballots,
            "persistence_enabled": self.store is not None,
        }
