from __future__ import annotations

import logging
from pathlib import Path

import pytest

from organising_universe.classification.config import (
    ClassificationConfigError,
    default_policy,
    load_classification_policy,
)
from organising_universe.classification.taxonomy import Classification
from organising_universe.logging_utils import resolve_log_level


REPO_ROOT = Path(__file__).resolve().parents[3]
POLICY_PATH = REPO_ROOT / "config/platform/organising_universe/classification_policy_v0.yaml"


def _write_policy(tmp_path: Path, body: str) -> Path:
    path = tmp_path / "policy.yaml"
    path.write_text(body.strip(), encoding="utf-8")
    return path


def test_load_classification_policy_v0_is_stable_and_versioned() -> None:
    policy_a = load_classification_policy(POLICY_PATH)
    policy_b = load_classification_policy(POLICY_PATH)
    assert policy_a.version == "0.1.0"
    assert policy_a.policy_id == "organising_universe.classification.v0"
    assert policy_a.revision == "r1"
    assert policy_a.content_digest == policy_b.content_digest
    assert len(policy_a.content_digest) == 64
    assert policy_a.default_classification is Classification.POTENTIAL
    assert policy_a.primary_contractor_roles == ("builder", "head_contractor")
    assert policy_a.audit_write.max_attempts == 3
    assert policy_a.router_max_workers == 4


def test_policy_digest_tracks_content(tmp_path: Path) -> None:
    path = _write_policy(
        tmp_path,
        """
version: "0.1.0"
policy_id: organising_universe.classification.v0
revision: r1
classification:
  primary_contractor_roles: [Builder]
  router:
    max_workers: 2
""",
    )
    policy = load_classification_policy(path)
    assert policy.primary_contractor_roles == ("builder",)
    assert policy.is_primary_contractor_role(" BUILDER ")
    assert not policy.is_primary_contractor_role("electrician")
    assert policy.content_digest != load_classification_policy(POLICY_PATH).content_digest


def test_policy_formats_change_reason_for_creation() -> None:
    policy = default_policy()
    text = policy.format_change_reason(old=None, new=Classification.ACTIVE, basis="rule=tier_1")
    assert text == "Auto-assigned unset -> active (rule=tier_1)"


@pytest.mark.parametrize(
    "section",
    [
        "  default_classification: archived",
        "  primary_contractor_roles: []",
        "  change_reason_template: 'Moved {from_value}'",
        "  audit_write:\n    max_attempts: 0",
        "  audit_write:\n    backoff_seconds: -1",
        "  router:\n    max_workers: many",
    ],
)
def test_policy_rejects_invalid_sections(tmp_path: Path, section: str) -> None:
    path = _write_policy(
        tmp_path,
        f"""
version: "0.1.0"
policy_id: organising_universe.classification.v0
revision: r1
classification:
{section}
""",
    )
    with pytest.raises(ClassificationConfigError):
        load_classification_policy(path)


def test_policy_requires_identity_fields(tmp_path: Path) -> None:
    path = _write_policy(tmp_path, "policy_id: x\nclassification: {}\n")
    with pytest.raises(ClassificationConfigError):
        load_classification_policy(path)


def test_log_level_resolution() -> None:
    assert resolve_log_level("debug") == logging.DEBUG
    assert resolve_log_level(logging.WARNING) == logging.WARNING
    with pytest.raises(ValueError):
        resolve_log_level("chatty")
