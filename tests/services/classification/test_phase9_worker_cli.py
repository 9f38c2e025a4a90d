from __future__ import annotations

import json
from pathlib import Path

import pytest

from organising_universe.classification.worker import load_worker_config, main


REPO_ROOT = Path(__file__).resolve().parents[3]
POLICY_PATH = REPO_ROOT / "config/platform/organising_universe/classification_policy_v0.yaml"


def _profile(tmp_path: Path) -> Path:
    path = tmp_path / "profile.yaml"
    path.write_text(
        f"""
profile_id: test
organising_universe:
  classification:
    wiring:
      store_dsn: ${{OU_TEST_STORE_DSN:-{tmp_path / 'ou_cli.sqlite'}}}
      policy_ref: {POLICY_PATH}
      metrics_path: {tmp_path / 'metrics' / 'last_metrics.json'}
    logging:
      level: WARNING
""".strip(),
        encoding="utf-8",
    )
    return path


def _run(capsys: pytest.CaptureFixture[str], profile: Path, *argv: str) -> tuple[int, object]:
    code = main(["--profile", str(profile), "--actor", "HUMAN::operator", *argv])
    return code, json.loads(capsys.readouterr().out)


def test_worker_profile_resolves_env_defaults(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    profile = _profile(tmp_path)
    config = load_worker_config(profile)
    assert config.store_locator == str(tmp_path / "ou_cli.sqlite")
    assert config.policy_ref == POLICY_PATH
    assert config.log_level == "WARNING"

    monkeypatch.setenv("OU_TEST_STORE_DSN", str(tmp_path / "override.sqlite"))
    assert load_worker_config(profile).store_locator == str(tmp_path / "override.sqlite")


def test_worker_cli_drives_the_admin_surface(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    profile = _profile(tmp_path)
    events = tmp_path / "events.jsonl"
    events.write_text(
        "\n".join(
            [
                json.dumps({"event_type": "project_created", "project_id": "p-001", "tier": "tier_1"}),
                json.dumps({"event_type": "project_created", "project_id": "p-002"}),
                "not json",
                json.dumps(
                    {
                        "event_type": "contractor_assignment_changed",
                        "project_id": "p-002",
                        "contractor_role": "electrician",
                        "change_kind": "created",
                    }
                ),
            ]
        )
        + "\n",
        encoding="utf-8",
    )

    code, routed = _run(capsys, profile, "route-events", "--input", str(events))
    assert code == 0
    assert routed["routed"] == 2
    assert routed["ignored"] == 1
    assert routed["rejected"][0]["line"] == 3

    code, signals = _run(capsys, profile, "record-signals", "p-002", "--tier", "tier_3")
    assert code == 0
    assert signals["reconcile"]["new"] == "excluded"

    code, dry = _run(capsys, profile, "apply", "--dry-run")
    assert dry["total_eligible"] == 0

    code, _ = _run(capsys, profile, "snapshot")
    assert code == 0
    code, pinned = _run(capsys, profile, "set-manual", "p-001", "potential", "--reason", "board decision")
    assert pinned["rule_applied"] == "manual_override"

    code, refused = _run(capsys, profile, "rollback")
    assert code == 2
    assert refused["error"] == "ROLLBACK_NOT_CONFIRMED"

    code, rolled = _run(capsys, profile, "rollback", "--confirm")
    assert rolled["restored_count"] == 1

    code, history = _run(capsys, profile, "history", "p-001", "--verify")
    assert [item["rule_applied"] for item in history["changes"]] == [
        "tier_eba_patch_rules",
        "manual_override",
        "rollback_function",
    ]
    assert history["chain_breaks"] == []

    code, recent = _run(capsys, profile, "recent", "--limit", "2")
    assert len(recent) == 2

    code, impact = _run(capsys, profile, "impact")
    assert impact["summary"]["total_projects"] == 2

    code, missing = _run(capsys, profile, "clear-manual", "p-404")
    assert code == 2
    assert missing["error"] == "PROJECT_NOT_FOUND"

    assert (tmp_path / "metrics" / "last_metrics.json").exists()


@pytest.mark.parametrize("parallel", [False, True])
def test_route_events_isolates_failures_per_event(
    tmp_path: Path, capsys: pytest.CaptureFixture[str], parallel: bool
) -> None:
    profile = _profile(tmp_path)
    events = tmp_path / "events.jsonl"
    events.write_text(
        "\n".join(
            [
                json.dumps({"event_type": "project_created", "project_id": "p-001", "tier": "tier_1"}),
                json.dumps(
                    {
                        "event_type": "contractor_assignment_changed",
                        "project_id": "p-404",
                        "contractor_role": "builder",
                        "change_kind": "updated",
                    }
                ),
                json.dumps({"event_type": "project_created", "project_id": "p-002"}),
            ]
        )
        + "\n",
        encoding="utf-8",
    )

    argv = ["route-events", "--input", str(events)] + (["--parallel"] if parallel else [])
    code, routed = _run(capsys, profile, *argv)
    assert code == 0
    assert routed["routed"] == 2
    assert routed["rejected"] == []
    assert [(item["line"], item["reason_code"]) for item in routed["failed"]] == [(2, "PROJECT_NOT_FOUND")]
    assert {item["project_id"] for item in routed["outcomes"]} == {"p-001", "p-002"}

    code, impact = _run(capsys, profile, "impact")
    assert impact["summary"]["total_projects"] == 2


def test_record_signals_for_unknown_project_reports_not_found(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    profile = _profile(tmp_path)
    code, payload = _run(capsys, profile, "record-signals", "p-404", "--tier", "tier_1")
    assert code == 2
    assert payload["error"] == "PROJECT_NOT_FOUND"
