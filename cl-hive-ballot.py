#!/usr/bin/env python3
"""cl-hive-ballot: allowance-based ballot ledger plugin."""

from __future__ import annotations

import json
import os
import sys
from typing import Any, Dict, List, Optional, Tuple

# Ensure this script's real directory is on sys.path so that `from hive_ballot.X`
# works even when CLN loads the plugin via a symlink in the plugins directory.
sys.path.insert(0, os.path.dirname(os.path.realpath(__file__)))

from pyln.client import Plugin

from hive_ballot.ballot_service import BallotService, BallotStore

plugin = Plugin()
service: BallotService | None = None


plugin.add_option(
    name="hive-ballot-db-path",
    default="~/.lightning/cl_hive_ballot.db",
    description="SQLite path for cl-hive-ballot snapshots",
)

plugin.add_option(
    name="hive-ballot-persist",
    default="true",
    description="Persist ballots across restarts (false keeps state in memory only)",
)

plugin.add_option(
    name="hive-ballot-max-ballots",
    default="5000",
    description="Maximum number of ballots this node will hold",
)


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return False


def _parse_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _parse_identities(identities_json: Any) -> Tuple[Any, Optional[Dict[str, Any]]]:
    """Decode the identity list; an empty argument means "this node"."""
    if identities_json is None or identities_json == "":
        return None, None
    if isinstance(identities_json, list):
        return identities_json, None
    try:
        return json.loads(identities_json), None
    except (json.JSONDecodeError, TypeError):
        return None, {"error": "invalid identities_json"}


def _logger(message: str, level: str = "info") -> None:
    plugin.log(message, level=level)


def _require_service() -> BallotService:
    if service is None:
        raise RuntimeError("service not initialized")
    return service


@plugin.init()
def init(options: Dict[str, Any], configuration: Dict[str, Any], plugin: Plugin, **kwargs: Any) -> None:
    del kwargs

    persist = _parse_bool(options.get("hive-ballot-persist"))
    max_ballots = max(1, _parse_int(options.get("hive-ballot-max-ballots"), 5_000))

    store: Optional[BallotStore] = None
    db_path = ""
    if persist:
        db_path_opt = str(options.get("hive-ballot-db-path") or "~/.lightning/cl_hive_ballot.db")
        db_path = os.path.expanduser(db_path_opt)
        if not os.path.isabs(db_path):
            lightning_dir = str(configuration.get("lightning-dir") or os.path.expanduser("~/.lightning"))
            db_path = os.path.join(lightning_dir, db_path)
        store = BallotStore(db_path=db_path, logger=_logger)

    global service
    service = BallotService(
        store=store,
        rpc=plugin.rpc,
        logger=_logger,
        max_total_ballots=max_ballots,
    )

    plugin.log(
        "cl-hive-ballot initialized "
        f"(persist={persist}, db_path={db_path or '-'}, max_ballots={max_ballots})"
    )


def _with_identities(identities_json: str, call: Any) -> Dict[str, Any]:
    identities, error = _parse_identities(identities_json)
    if error:
        return error
    return call(identities)


@plugin.method("hive-ballot-create")
def hive_ballot_create(
    plugin: Plugin,
    title: str,
    options_json: str,
    results_restricted: str = "false",
    identities_json: str = "",
) -> Dict[str, Any]:
    del plugin

    try:
        options: List[Any] = json.loads(options_json)
    except (json.JSONDecodeError, TypeError):
        return {"error": "invalid options_json"}

    return _with_identities(
        identities_json,
        lambda identities: _require_service().create(
            title=title,
            options=options,
            results_restricted=_parse_bool(results_restricted),
            identities=identities,
        ),
    )


@plugin.method("hive-ballot-vote")
def hive_ballot_vote(
    plugin: Plugin,
    ballot_id: int,
    option_index: int,
    identities_json: str = "",
) -> Dict[str, Any]:
    del plugin
    return _with_identities(
        identities_json,
        lambda identities: _require_service().vote(
            ballot_id=_parse_int(ballot_id, -1),
            option_index=_parse_int(option_index, -1),
            identities=identities,
        ),
    )


@plugin.method("hive-ballot-close")
def hive_ballot_close(plugin: Plugin, ballot_id: int, identities_json: str = "") -> Dict[str, Any]:
    del plugin
    return _with_identities(
        identities_json,
        lambda identities: _require_service().close(
            ballot_id=_parse_int(ballot_id, -1), identities=identities
        ),
    )


@plugin.method("hive-ballot-results")
def hive_ballot_results(plugin: Plugin, ballot_id: int, identities_json: str = "") -> Dict[str, Any]:
    del plugin
    return _with_identities(
        identities_json,
        lambda identities: _require_service().results(
            ballot_id=_parse_int(ballot_id, -1), identities=identities
        ),
    )


@plugin.method("hive-ballot-enroll")
def hive_ballot_enroll(
    plugin: Plugin,
    ballot_id: int,
    voter: str,
    identities_json: str = "",
) -> Dict[str, Any]:
    del plugin
    return _with_identities(
        identities_json,
        lambda identities: _require_service().enroll(
            ballot_id=_parse_int(ballot_id, -1), voter=voter, identities=identities
        ),
    )


@plugin.method("hive-ballot-revoke")
def hive_ballot_revoke(
    plugin: Plugin,
    ballot_id: int,
    voter: str,
    identities_json: str = "",
) -> Dict[str, Any]:
    del plugin
    return _with_identities(
        identities_json,
        lambda identities: _require_service().revoke(
            ballot_id=_parse_int(ballot_id, -1), voter=voter, identities=identities
        ),
    )


@plugin.method("hive-ballot-is-enrolled")
def hive_ballot_is_enrolled(plugin: Plugin, ballot_id: int, voter: str) -> Dict[str, Any]:
    del plugin
    return _require_service().is_enrolled(ballot_id=_parse_int(ballot_id, -1), voter=voter)


@plugin.method("hive-ballot-delegate")
def hive_ballot_delegate(
    plugin: Plugin,
    ballot_id: int,
    delegate: str,
    identities_json: str = "",
) -> Dict[str, Any]:
    del plugin
    return _with_identities(
        identities_json,
        lambda identities: _require_service().delegate(
            ballot_id=_parse_int(ballot_id, -1), delegate=delegate, identities=identities
        ),
    )


@plugin.method("hive-ballot-options")
def hive_ballot_options(plugin: Plugin, ballot_id: int) -> Dict[str, Any]:
    del plugin
    return _require_service().options(ballot_id=_parse_int(ballot_id, -1))


@plugin.method("hive-ballot-info")
def hive_ballot_info(plugin: Plugin, ballot_id: int) -> Dict[str, Any]:
    del plugin
    return _require_service().info(ballot_id=_parse_int(ballot_id, -1))


@plugin.method("hive-ballot-voter")
def hive_ballot_voter(plugin: Plugin, ballot_id: int, voter: str) -> Dict[str, Any]:
    del plugin
    return _require_service().voter(ballot_id=_parse_int(ballot_id, -1), voter=voter)


@plugin.method("hive-ballot-list")
def hive_ballot_list(plugin: Plugin, include_closed: str = "true") -> Dict[str, Any]:
    del plugin
    return _require_service().list_ballots(include_closed=_parse_bool(include_closed))


@plugin.method("hive-ballot-status")
def hive_ballot_status(plugin: Plugin) -> Dict[str, Any]:
    del plugin
    return _require_service().status()


if __name__ == "__main__":
    plugin.run()
