"""Organising universe classification operator CLI."""

from __future__ import annotations

import argparse
from dataclasses import dataclass
import json
import logging
import os
from pathlib import Path
import re
from typing import Any, Mapping, Sequence

import yaml

from organising_universe.logging_utils import configure_logging

from .config import ClassificationPolicy, default_policy, load_classification_policy
from .errors import ClassificationError, error_detail, reason_code
from .events import ClassificationEventError, event_from_envelope
from .service import ClassificationService
from .taxonomy import ClassificationTaxonomyError, optional_tier


logger = logging.getLogger("organising_universe.classification.worker")
_ENV_PATTERN = re.compile(r"^\$\{([^}:]+)(?::-([^}]*))?\}$")

DEFAULT_STORE_LOCATOR = "runs/organising_universe/classification.sqlite"


@dataclass(frozen=True)
class ClassificationWorkerConfig:
    profile_path: Path
    profile_id: str
    store_locator: str
    policy_ref: Path | None
    metrics_path: Path | None
    log_level: str | None
    log_paths: tuple[str, ...]

    def load_policy(self) -> ClassificationPolicy:
        if self.policy_ref is None:
            return default_policy()
        return load_classification_policy(self.policy_ref)


def load_worker_config(profile_path: Path) -> ClassificationWorkerConfig:
    payload = yaml.safe_load(profile_path.read_text(encoding="utf-8"))
    if not isinstance(payload, Mapping):
        raise RuntimeError("CLASSIFICATION_PROFILE_INVALID")

    profile_id = str(payload.get("profile_id") or "local")
    ou = payload.get("organising_universe") if isinstance(payload.get("organising_universe"), Mapping) else {}
    section = ou.get("classification") if isinstance(ou.get("classification"), Mapping) else {}
    wiring = section.get("wiring") if isinstance(section.get("wiring"), Mapping) else {}
    logging_section = section.get("logging") if isinstance(section.get("logging"), Mapping) else {}

    policy_ref = _none_if_blank(_env(wiring.get("policy_ref")))
    metrics_path = _none_if_blank(_env(wiring.get("metrics_path")))
    log_paths = logging_section.get("paths") or []
    if not isinstance(log_paths, list):
        raise RuntimeError("CLASSIFICATION_PROFILE_INVALID:logging.paths")
    return ClassificationWorkerConfig(
        profile_path=profile_path,
        profile_id=profile_id,
        store_locator=_locator(wiring.get("store_dsn")),
        policy_ref=Path(policy_ref) if policy_ref else None,
        metrics_path=Path(metrics_path) if metrics_path else None,
        log_level=_none_if_blank(_env(logging_section.get("level"))),
        log_paths=tuple(str(_env(item)) for item in log_paths if str(_env(item) or "").strip()),
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Organising universe classification operator")
    parser.add_argument("--profile", required=True, help="Path to platform profile YAML")
    parser.add_argument("--actor", default=None, help="Actor id recorded on audit rows")
    sub = parser.add_subparsers(dest="command", required=True)

    apply_cmd = sub.add_parser("apply", help="Retrospectively apply the rule table to every project")
    apply_cmd.add_argument("--dry-run", action="store_true")

    reconcile_cmd = sub.add_parser("reconcile", help="Reconcile one project")
    reconcile_cmd.add_argument("project_id")
    reconcile_cmd.add_argument("--force", action="store_true", help="Bypass the manual override guard")

    set_cmd = sub.add_parser("set-manual", help="Pin one project's classification")
    set_cmd.add_argument("project_id")
    set_cmd.add_argument("value")
    set_cmd.add_argument("--reason", default=None)

    clear_cmd = sub.add_parser("clear-manual", help="Remove a pin and converge to the rule value")
    clear_cmd.add_argument("project_id")
    clear_cmd.add_argument("--reason", default=None)

    bulk_cmd = sub.add_parser("set-manual-bulk", help="Pin many projects to one value")
    bulk_cmd.add_argument("value")
    bulk_cmd.add_argument("project_ids", nargs="+")
    bulk_cmd.add_argument("--reason", default=None)

    sub.add_parser("snapshot", help="Capture the single-generation classification backup")

    rollback_cmd = sub.add_parser("rollback", help="Restore the backup and freeze restored rows")
    rollback_cmd.add_argument("--confirm", action="store_true")

    reset_cmd = sub.add_parser("clear-all-automation", help="Reset every flag and purge the change log")
    reset_cmd.add_argument("--confirm", action="store_true")

    history_cmd = sub.add_parser("history", help="Change log for one project")
    history_cmd.add_argument("project_id")
    history_cmd.add_argument("--verify", action="store_true", help="Also report audit chain breaks")

    recent_cmd = sub.add_parser("recent", help="Most recent changes across all projects")
    recent_cmd.add_argument("--limit", type=int, default=10)

    sub.add_parser("impact", help="Impact analysis of the rule table against current values")

    signals_cmd = sub.add_parser("record-signals", help="Publish tier/EBA/patch facts for one project")
    signals_cmd.add_argument("project_id")
    signals_cmd.add_argument("--tier", default=None, help="tier_1, tier_2, tier_3 or 'none'")
    signals_cmd.add_argument("--eba", choices=("yes", "no"), default=None)
    signals_cmd.add_argument("--patch", choices=("yes", "no"), default=None)
    signals_cmd.add_argument("--no-reconcile", action="store_true")

    route_cmd = sub.add_parser("route-events", help="Replay domain events from a JSONL file")
    route_cmd.add_argument("--input", required=True)
    route_cmd.add_argument("--parallel", action="store_true", help="Dispatch onto the router worker pool")
    return parser


def run_command(service: ClassificationService, args: argparse.Namespace) -> Any:
    actor = args.actor
    command = args.command
    if command == "apply":
        return service.trigger_retrospective_apply(dry_run=args.dry_run, actor=actor).as_dict()
    if command == "reconcile":
        if args.force:
            return service.force_reconcile(args.project_id, actor=actor).as_dict()
        return service.reconcile(args.project_id, actor=actor).as_dict()
    if command == "set-manual":
        return service.set_manual(args.project_id, args.value, actor=actor, reason=args.reason).as_dict()
    if command == "clear-manual":
        return service.clear_manual(args.project_id, actor=actor, reason=args.reason).as_dict()
    if command == "set-manual-bulk":
        return service.set_manual_bulk(args.project_ids, args.value, actor=actor, reason=args.reason).as_dict()
    if command == "snapshot":
        return service.snapshot().as_dict()
    if command == "rollback":
        return service.rollback(confirmed=bool(args.confirm), actor=actor).as_dict()
    if command == "clear-all-automation":
        return service.clear_all_automation(confirmed=bool(args.confirm), actor=actor).as_dict()
    if command == "history":
        payload: dict[str, Any] = {
            "project_id": args.project_id,
            "changes": [item.as_dict() for item in service.history(args.project_id)],
        }
        if args.verify:
            payload["chain_breaks"] = [item.as_dict() for item in service.verify_chain(args.project_id)]
        return payload
    if command == "recent":
        return [item.as_dict() for item in service.recent_changes(args.limit)]
    if command == "impact":
        return service.impact_analysis().as_dict()
    if command == "record-signals":
        return _record_signals(service, args)
    if command == "route-events":
        return _route_events(service, Path(args.input), parallel=args.parallel)
    raise RuntimeError(f"unsupported command: {command}")


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    config = load_worker_config(Path(args.profile))
    configure_logging(level=config.log_level, log_paths=list(config.log_paths))
    service = ClassificationService.from_locator(config.store_locator, policy=config.load_policy())
    try:
        payload = run_command(service, args)
    except ClassificationError as exc:
        logger.error("Classification command failed command=%s code=%s", args.command, exc.code)
        print(json.dumps({"error": reason_code(exc), "detail": exc.detail}, sort_keys=True))
        return 2
    finally:
        service.close()
        if config.metrics_path is not None:
            service.export_metrics(config.metrics_path)
    print(json.dumps(payload, sort_keys=True, indent=2, ensure_ascii=True))
    return 0


def _record_signals(service: ClassificationService, args: argparse.Namespace) -> dict[str, Any]:
    payload: dict[str, Any] = {"project_id": args.project_id}
    if args.tier is not None:
        raw_tier = None if args.tier.strip().lower() == "none" else args.tier
        try:
            tier = optional_tier(raw_tier)
        except ClassificationTaxonomyError as exc:
            raise SystemExit(f"invalid --tier: {exc}") from exc
        previous = service.store.set_project_tier(args.project_id, tier)
        payload["tier"] = {
            "old": previous.value if previous is not None else None,
            "new": tier.value if tier is not None else None,
        }
    if args.eba is not None or args.patch is not None:
        payload["facts"] = service.store.record_signal_facts(
            args.project_id,
            has_eba_primary_contractor=None if args.eba is None else args.eba == "yes",
            has_patch_assignment=None if args.patch is None else args.patch == "yes",
        )
    if not args.no_reconcile:
        payload["reconcile"] = service.reconcile(args.project_id, actor=args.actor).as_dict()
    return payload


def _route_events(service: ClassificationService, path: Path, *, parallel: bool) -> dict[str, Any]:
    outcomes: list[dict[str, Any]] = []
    rejected: list[dict[str, Any]] = []
    failed: list[dict[str, Any]] = []
    futures = []
    with path.open("r", encoding="utf-8") as handle:
        for line_no, line in enumerate(handle, start=1):
            if not line.strip():
                continue
            try:
                event = event_from_envelope(json.loads(line))
            except (json.JSONDecodeError, ClassificationEventError) as exc:
                logger.warning("Event rejected line=%s error=%s", line_no, str(exc)[:256])
                rejected.append({"line": line_no, "error": str(exc)[:256]})
                continue
            if parallel:
                futures.append((line_no, service.submit(event)))
                continue
            try:
                outcomes.append(service.route(event).as_dict())
            except ClassificationError as exc:
                failed.append(_failed_event(line_no, exc))
    for line_no, future in futures:
        try:
            outcomes.append(future.result().as_dict())
        except ClassificationError as exc:
            failed.append(_failed_event(line_no, exc))
    return {
        "routed": sum(1 for item in outcomes if item["routed"]),
        "ignored": sum(1 for item in outcomes if not item["routed"]),
        "rejected": rejected,
        "failed": failed,
        "outcomes": outcomes,
    }


def _failed_event(line_no: int, exc: ClassificationError) -> dict[str, Any]:
    logger.warning("Event failed line=%s reason_code=%s", line_no, exc.code)
    return {"line": line_no, "reason_code": reason_code(exc), "detail": error_detail(exc)}


def _env(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    token = value.strip()
    match = _ENV_PATTERN.fullmatch(token)
    if not match:
        return value
    return os.getenv(match.group(1), match.group(2) or "")


def _locator(value: Any) -> str:
    return str(_env(value) or "").strip() or os.getenv("OU_STORE_DSN") or DEFAULT_STORE_LOCATOR


def _none_if_blank(value: Any) -> str | None:
    text = str(value or "").strip()
    return text or None


if __name__ == "__main__":
    raise SystemExit(main())
