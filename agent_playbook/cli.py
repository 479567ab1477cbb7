"""agent-playbook CLI entrypoint."""

import argparse
import json
import sys
from pathlib import Path
from typing import Any, NoReturn

from agent_playbook import __version__
from agent_playbook.core.config import PlaybookConfig, load_config
from agent_playbook.core.lock import LockAcquisitionError
from agent_playbook.core.store import PlaybookWriteError
from agent_playbook.utils import setup_logging


def read_json_input(path_or_stdin: str | None) -> Any:
    """Read JSON from file path or stdin."""
    if path_or_stdin and path_or_stdin != "-":
        with open(path_or_stdin) as f:
            return json.load(f)
    return json.load(sys.stdin)


def print_output(data: Any, as_json: bool) -> None:
    """Print output as JSON or human-readable format."""
    if as_json:
        json.dump(data, sys.stdout, indent=2, default=str)
        print()
    elif isinstance(data, dict):
        for key, value in data.items():
            print(f"{key}: {value}")
    elif isinstance(data, list):
        for item in data:
            print(item)
    else:
        print(data)


def _config(args: argparse.Namespace) -> PlaybookConfig:
    config = load_config(Path(args.config) if args.config else None)
    setup_logging(config.logging.level, json_format=config.logging.format == "json")
    return config


def _repo_path(args: argparse.Namespace, config: PlaybookConfig) -> Path | None:
    from agent_playbook.core.store import resolve_repo_playbook_path

    if args.repo:
        return Path(args.repo)
    return resolve_repo_playbook_path(config)


def cmd_stats(args: argparse.Namespace) -> None:
    """Show playbook statistics."""
    from agent_playbook.core.scoring import effective_score
    from agent_playbook.core.store import load_merged_playbook

    config = _config(args)
    playbook = load_merged_playbook(config, _repo_path(args, config))

    by_maturity: dict[str, int] = {}
    for b in playbook.bullets:
        by_maturity[b.maturity] = by_maturity.get(b.maturity, 0) + 1
    active = playbook.active_bullets()
    top = sorted(active, key=lambda b: effective_score(b, config.scoring), reverse=True)[: args.top]

    result: dict[str, Any] = {
        "total_bullets": len(playbook.bullets),
        "active_bullets": len(active),
        "maturity": by_maturity,
        "top": [
            {"id": b.id, "score": round(effective_score(b, config.scoring), 3), "content": b.content}
            for b in top
        ],
    }
    print_output(result, as_json=args.json)


def cmd_dump(args: argparse.Namespace) -> None:
    """Dump the merged playbook as JSON."""
    from agent_playbook.core.store import load_merged_playbook

    config = _config(args)
    playbook = load_merged_playbook(config, _repo_path(args, config))
    print_output(playbook.to_document(), as_json=True)


def cmd_apply(args: argparse.Namespace) -> None:
    """Apply a JSON list of deltas (or ``{"deltas": [...]}``) to the playbooks.

    Entries that are not valid deltas are reported and counted as skipped;
    the valid ones are still applied.
    """
    from agent_playbook.core.schema import parse_delta_list
    from agent_playbook.pipeline import apply_deltas
    from agent_playbook.search.client import create_search

    config = _config(args)
    data = read_json_input(args.deltas)
    if isinstance(data, dict):
        data = data.get("deltas", [])
    if not isinstance(data, list):
        data = [data]
    deltas, invalid = parse_delta_list(data)
    for reason in invalid:
        print(f"Skipping invalid {reason}", file=sys.stderr)

    search = create_search(config.paths) if args.validate else None
    result = apply_deltas(
        config, deltas, validate=args.validate, search=search, repo_path=_repo_path(args, config)
    )
    output = {"applied": result.applied, "skipped": result.skipped + len(invalid), "invalid": invalid}
    print_output(output, as_json=args.json)


def cmd_mark(args: argparse.Namespace) -> None:
    """Record helpful or harmful feedback for a bullet."""
    from agent_playbook.manage import record_feedback

    config = _config(args)
    result = record_feedback(
        config,
        args.bullet_id,
        "helpful" if args.helpful else "harmful",
        session_path=args.session,
        reason=args.reason,
        repo_path=_repo_path(args, config),
    )
    bullet = result.playbook.get(args.bullet_id)
    output: dict[str, Any] = {
        "bullet_id": args.bullet_id,
        "maturity": bullet.maturity if bullet else None,
        "inverted": [r.anti_pattern_id for r in result.inversions],
    }
    print_output(output, as_json=args.json)


def cmd_undo(args: argparse.Namespace) -> None:
    """Remove the most recent feedback event of a bullet, or un-deprecate it."""
    from agent_playbook.manage import restore_bullet, undo_feedback

    config = _config(args)
    if args.undeprecate:
        restored = restore_bullet(config, args.bullet_id, repo_path=_repo_path(args, config))
        print_output({"bullet_id": args.bullet_id, "undeprecated": restored}, as_json=args.json)
        return
    undone = undo_feedback(config, args.bullet_id, repo_path=_repo_path(args, config))
    print_output({"bullet_id": args.bullet_id, "undone": undone}, as_json=args.json)


def cmd_forget(args: argparse.Namespace) -> None:
    """Hard-delete a bullet and block its content from returning."""
    from agent_playbook.manage import forget_bullet

    config = _config(args)
    removed = forget_bullet(config, args.bullet_id, reason=args.reason, repo_path=_repo_path(args, config))
    print_output({"bullet_id": removed.id, "content": removed.content}, as_json=args.json)


def cmd_pin(args: argparse.Namespace) -> None:
    """Pin or unpin a bullet."""
    from agent_playbook.manage import pin_bullet

    config = _config(args)
    pin_bullet(
        config, args.bullet_id, pinned=not args.unpin, reason=args.reason, repo_path=_repo_path(args, config)
    )
    print_output({"bullet_id": args.bullet_id, "pinned": not args.unpin}, as_json=args.json)


def cmd_reflect(args: argparse.Namespace) -> None:
    """Reflect on session diaries and fold the lessons into the playbooks."""
    from agent_playbook.pipeline import ReflectionPipeline, SessionInput
    from agent_playbook.search.client import create_search

    config = _config(args)
    sessions = [
        SessionInput(session_path=str(Path(p).resolve()), diary_text=Path(p).read_text(encoding="utf-8"))
        for p in args.diaries
    ]
    pipeline = ReflectionPipeline(
        config,
        search=create_search(config.paths),
        repo_path=_repo_path(args, config),
        workspace=args.workspace,
    )
    outcome = pipeline.run(sessions, dry_run=args.dry_run)

    result: dict[str, Any] = {
        "sessions_processed": outcome.sessions_processed,
        "sessions_skipped": outcome.sessions_skipped,
        "deltas_generated": outcome.deltas_generated,
        "deltas_accepted": outcome.deltas_accepted,
        "applied": outcome.commit.applied if outcome.commit else 0,
        "errors": outcome.errors,
        "dry_run": outcome.dry_run,
    }
    if args.dry_run:
        result["pending"] = [d.model_dump(mode="json", by_alias=True) for d in outcome.pending_deltas]
    print_output(result, as_json=args.json)


def cmd_version(args: argparse.Namespace) -> None:
    print(__version__)


def main() -> NoReturn:
    """Main CLI entrypoint."""
    parser = argparse.ArgumentParser(
        prog="agent-playbook",
        description="Maintain a scored playbook of rules learned from coding-agent sessions",
    )
    parser.add_argument("--config", help="Path to a TOML config file")
    parser.add_argument("--repo", help="Repo playbook path (default: <git root>/.cass/playbook.yaml)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    version_parser = subparsers.add_parser("version", help="Print the version")
    version_parser.set_defaults(func=cmd_version)

    stats_parser = subparsers.add_parser("stats", help="Show playbook statistics")
    stats_parser.add_argument("--top", type=int, default=5, help="Number of top-scored bullets to show")
    stats_parser.add_argument("--json", action="store_true", help="Output as JSON")
    stats_parser.set_defaults(func=cmd_stats)

    dump_parser = subparsers.add_parser("dump", help="Dump the merged playbook as JSON")
    dump_parser.set_defaults(func=cmd_dump)

    apply_parser = subparsers.add_parser("apply", help="Apply deltas from a JSON file")
    apply_parser.add_argument("deltas", nargs="?", default="-", help="Delta JSON file (default: stdin)")
    apply_parser.add_argument("--validate", action="store_true", help="Validate add deltas against history")
    apply_parser.add_argument("--json", action="store_true", help="Output as JSON")
    apply_parser.set_defaults(func=cmd_apply)

    mark_parser = subparsers.add_parser("mark", help="Mark a bullet as helpful or harmful")
    mark_parser.add_argument("bullet_id", help="Bullet ID")
    group = mark_parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--helpful", action="store_true", help="Mark as helpful")
    group.add_argument("--harmful", action="store_true", help="Mark as harmful")
    mark_parser.add_argument("--session", help="Session path the feedback comes from")
    mark_parser.add_argument(
        "--reason",
        choices=["caused_bug", "wasted_time", "contradicted_requirements", "wrong_context", "outdated", "other"],
        help="Why the bullet was harmful (only with --harmful)",
    )
    mark_parser.add_argument("--json", action="store_true", help="Output as JSON")
    mark_parser.set_defaults(func=cmd_mark)

    undo_parser = subparsers.add_parser("undo", help="Undo the last feedback on a bullet, or un-deprecate it")
    undo_parser.add_argument("bullet_id", help="Bullet ID")
    undo_parser.add_argument(
        "--undeprecate", action="store_true", help="Restore a deprecated bullet instead of undoing feedback"
    )
    undo_parser.add_argument("--json", action="store_true", help="Output as JSON")
    undo_parser.set_defaults(func=cmd_undo)

    forget_parser = subparsers.add_parser("forget", help="Delete a bullet permanently")
    forget_parser.add_argument("bullet_id", help="Bullet ID")
    forget_parser.add_argument("--reason", default="Forgotten by user", help="Tombstone reason")
    forget_parser.add_argument("--json", action="store_true", help="Output as JSON")
    forget_parser.set_defaults(func=cmd_forget)

    pin_parser = subparsers.add_parser("pin", help="Pin a bullet so it is never demoted or pruned")
    pin_parser.add_argument("bullet_id", help="Bullet ID")
    pin_parser.add_argument("--unpin", action="store_true", help="Remove the pin instead")
    pin_parser.add_argument("--reason", help="Why the bullet is pinned")
    pin_parser.add_argument("--json", action="store_true", help="Output as JSON")
    pin_parser.set_defaults(func=cmd_pin)

    reflect_parser = subparsers.add_parser("reflect", help="Reflect on session diaries")
    reflect_parser.add_argument("diaries", nargs="+", help="Session diary files")
    reflect_parser.add_argument("--workspace", help="Workspace whose processed log to use")
    reflect_parser.add_argument("--dry-run", action="store_true", help="Show deltas without saving")
    reflect_parser.add_argument("--json", action="store_true", help="Output as JSON")
    reflect_parser.set_defaults(func=cmd_reflect)

    args = parser.parse_args()
    if args.command == "mark" and args.helpful and args.reason:
        parser.error("--reason only applies to --harmful feedback")
    try:
        args.func(args)
    except (LockAcquisitionError, PlaybookWriteError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except LookupError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    sys.exit(0)


if __name__ == "__main__":
    main()
