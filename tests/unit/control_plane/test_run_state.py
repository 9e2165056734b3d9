"""Unit tests for persisted run state."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import pytest

from buildwave.control_plane.run_state import RunPhase, RunState, RunStateStore
from buildwave.domain.models import EscalationRecord

if TYPE_CHECKING:
    from pathlib import Path


def test_store_round_trips_state(tmp_path: Path) -> None:
    store = RunStateStore(tmp_path / "state")
    state = RunState(
        run_id="run-20260101T000000Z-abcdef",
        request_path="request.yaml",
        request_digest="d1",
        phase=RunPhase.ESCALATED,
        resume_phase=RunPhase.VERIFY,
        features={"api": "merged"},
        dispatch={"api:backend": {"branch_ref": "abc", "attempt": 1}},
        accepted_stages=["visual"],
        quality_accepted=True,
        escalation=EscalationRecord(
            phase="runtime-verification",
            subject="verification:runtime",
            attempts_log=(),
            last_diagnostics="crash",
        ),
        escalation_history=["runtime-verification/verification:runtime"],
    )

    assert store.load() is None
    store.save(state)
    loaded = store.load()

    assert loaded is not None
    assert loaded.phase is RunPhase.ESCALATED
    assert loaded.resume_phase is RunPhase.VERIFY
    assert loaded.dispatch == state.dispatch
    assert loaded.quality_accepted
    assert loaded.open_escalation is not None
    assert loaded.open_escalation.subject == "verification:runtime"
    assert loaded.escalation_history == state.escalation_history

    store.clear()
    assert not store.path.exists()


def test_unknown_schema_version_is_rejected(tmp_path: Path) -> None:
    store = RunStateStore(tmp_path)
    store.path.write_text(json.dumps({"schema_version": 999, "run_id": "x"}), encoding="utf-8")

    with pytest.raises(ValueError, match="schema version"):
        store.load()
