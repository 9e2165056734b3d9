"""Unit tests for domain models."""

from __future__ import annotations

import pytest

from buildwave.domain.errors import ValidationError
from buildwave.domain.models import (
    EscalationRecord,
    Feature,
    FeatureStatus,
    Resolution,
    ResolutionOption,
    StageOutcome,
    VerificationRun,
    WorkerResult,
    WorkItem,
)
from buildwave.domain.roles import RoleId, parse_role


def test_feature_lifecycle_rejects_skipped_states() -> None:
    feature = Feature(name="api", roles=("backend",))

    with pytest.raises(ValueError, match="cannot move"):
        feature.transition(FeatureStatus.MERGED)

    feature.transition(FeatureStatus.DISPATCHED)
    feature.transition(FeatureStatus.IN_PROGRESS)
    feature.transition(FeatureStatus.MERGED)
    assert feature.status is FeatureStatus.MERGED
    with pytest.raises(ValueError):
        feature.transition(FeatureStatus.FAILED)


def test_failed_feature_can_be_redispatched() -> None:
    feature = Feature(name="api", roles=("backend",))
    feature.transition(FeatureStatus.FAILED)
    feature.transition(FeatureStatus.DISPATCHED)

    assert feature.status is FeatureStatus.DISPATCHED


def test_work_item_retry_carries_diagnostics() -> None:
    item = WorkItem(feature="api", role="backend", branch_name="work/api/backend/a1")

    retried = item.next_attempt(branch_name="work/api/backend/a2", diagnostics="TypeError")

    assert retried.attempt_count == 2
    assert retried.prior_diagnostics == ("TypeError",)
    assert retried.to_request()["prior_diagnostics"] == ["TypeError"]
    assert "prior_diagnostics" not in item.to_request()


def test_worker_result_payload_parsing() -> None:
    ok = WorkerResult.from_dict({"status": "SUCCESS", "branch_ref": "abc"})
    failed = WorkerResult.from_dict({"status": "failure", "diagnostics": "boom"})

    assert ok.ok and ok.branch_ref == "abc"
    assert not failed.ok and failed.diagnostics == "boom"
    with pytest.raises(ValueError):
        WorkerResult(status="success")


def test_passing_run_cannot_be_blocking() -> None:
    with pytest.raises(ValueError):
        VerificationRun(stage="unit", input_ref="h", result=StageOutcome.PASS, blocking=True)
    with pytest.raises(ValueError):
        VerificationRun(
            stage="unit", input_ref="h", result=StageOutcome.PASS, metrics={"x": float("nan")}
        )


def test_escalation_resolution_is_single_use() -> None:
    record = EscalationRecord(
        phase="feature_build", subject="api:backend", attempts_log=(), last_diagnostics="boom"
    )
    resolved = record.resolve(Resolution(ResolutionOption.ABORT))

    assert resolved.resolved
    assert EscalationRecord.from_dict(resolved.to_dict()).resolution is not None
    with pytest.raises(ValueError, match="already resolved"):
        resolved.resolve(Resolution(ResolutionOption.ABORT))
    assert "options: retry_with_guidance" in record.render()


def test_role_aliases_and_unknown_roles() -> None:
    assert parse_role("QA") is RoleId.TESTER
    assert parse_role("ui-tester") is RoleId.UI_TESTER
    with pytest.raises(ValueError, match="unknown role"):
        parse_role("wizard")


def test_validation_error_lists_every_violation() -> None:
    combined = ValidationError.combine([ValidationError("one"), ValidationError(["two", "three"])])

    assert combined.violations == ("one", "two", "three")
    assert "3 violations" in str(combined)
