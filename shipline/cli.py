"""Command-line entry point: ``shipline <command>``."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from collections.abc import Sequence
from pathlib import Path

from shipline.config import ConfigManager
from shipline.errors import ConfigError, PipelineError
from shipline.pipeline.orchestrator import Pipeline, PipelineReport

logger = logging.getLogger("shipline")

EXIT_INTERRUPTED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="shipline",
        description="Build, test, publish and deploy verified releases.",
    )
    parser.add_argument(
        "--project-root", default=".", help="Project checkout (default: current directory)",
    )
    parser.add_argument("--env", default=None, help="Target environment / config profile")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="Write .env.example listing every configuration key")

    sub.add_parser("build", help="Tag the checkout and build all components")

    test = sub.add_parser("test", help="Run tiered tests and the content gate on the last build")
    test.add_argument(
        "--load-prod-data",
        action="store_true",
        help="Restore the newest production snapshot into the test store first",
    )

    sub.add_parser("push", help="Publish the last tested build")

    deploy = sub.add_parser("deploy", help="Deploy a published release")
    deploy.add_argument("--version", dest="version", help="Release tag to deploy")
    deploy.add_argument("--skip-backup", action="store_true", help="Do not snapshot the store first")
    deploy.add_argument("--skip-migrations", action="store_true", help="Do not run migrations")
    deploy.add_argument(
        "--rollback",
        action="store_true",
        help="Redeploy the release the active one superseded",
    )

    release = sub.add_parser("release", help="build, test, push and deploy in one run")
    release.add_argument("--load-prod-data", action="store_true")
    release.add_argument("--skip-backup", action="store_true")
    release.add_argument("--skip-migrations", action="store_true")

    status = sub.add_parser("status", help="Show the active release and deployment history")
    status.add_argument("--json", action="store_true", help="Print raw JSON")

    backups = sub.add_parser("backups", help="List or prune store snapshots")
    backups.add_argument("--prune", action="store_true", help="Delete old snapshots")
    backups.add_argument("--keep", type=int, default=None, help="Snapshots to keep when pruning")

    return parser


def _configure_logging(verbose: bool) -> None:
    level = "DEBUG" if verbose else os.environ.get("SHIPLINE_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )


def _report(report: PipelineReport) -> int:
    print(report.describe())
    return report.exit_code


def cmd_init(args: argparse.Namespace) -> int:
    path = ConfigManager().generate_env_template(args.project_root)
    print(f"wrote {path}")
    return 0


def cmd_deploy(pipeline: Pipeline, args: argparse.Namespace) -> int:
    if args.rollback:
        return _report(pipeline.rollback())
    if not args.version:
        raise ConfigError("deploy needs --version <tag> (or --rollback)")
    return _report(pipeline.deploy(
        args.version,
        skip_backup=args.skip_backup,
        skip_migrations=args.skip_migrations,
    ))


def cmd_status(pipeline: Pipeline, args: argparse.Namespace) -> int:
    info = pipeline.status()
    if args.json:
        print(json.dumps(info, indent=2, sort_keys=True))
        return 0

    print(f"environment: {info['environment']}")
    active = info["active"]
    if active is None:
        print("active:      (nothing deployed)")
    else:
        print(f"active:      {active['version']} ({active['kind']} at {active['deployed_at']})")
        for component, coordinate in sorted(active["artifacts"].items()):
            print(f"  {component}: {coordinate}")
    print(f"built:       {info['built'] or '-'}")
    print(f"tested:      {info['tested'] or '-'}")
    print(f"published:   {info['published'] or '-'}")
    print(f"ledger:      {'ok' if info['chain_valid'] else 'HASH CHAIN BROKEN'}")
    history = info["history"]
    if history:
        print("history:")
        for record in history:
            prev = f" (replaced {record['previous_version']})" if record["previous_version"] else ""
            print(f"  {record['deployed_at']}  {record['kind']:<8} {record['version']}{prev}")
    return 0


def cmd_backups(pipeline: Pipeline, args: argparse.Namespace) -> int:
    if args.prune:
        removed = pipeline.prune_backups(args.keep)
        for backup_id in removed:
            print(f"removed {backup_id}")
        print(f"{len(removed)} snapshot(s) pruned")
        return 0

    snapshots = pipeline.list_backups()
    if not snapshots:
        print("no snapshots")
    for snap in snapshots:
        label = f"  {snap.label}" if snap.label else ""
        print(f"{snap.backup_id}  {snap.taken_at.isoformat()}  {snap.environment or '-'}{label}")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)
    _configure_logging(args.verbose)

    if args.command == "init":
        return cmd_init(args)

    try:
        pipeline = Pipeline.from_project(Path(args.project_root), env_name=args.env)
    except PipelineError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code

    try:
        if args.command == "build":
            return _report(pipeline.build())
        if args.command == "test":
            return _report(pipeline.test(load_prod_data=args.load_prod_data))
        if args.command == "push":
            return _report(pipeline.push())
        if args.command == "deploy":
            return cmd_deploy(pipeline, args)
        if args.command == "release":
            return _report(pipeline.release(
                load_prod_data=args.load_prod_data,
                skip_backup=args.skip_backup,
                skip_migrations=args.skip_migrations,
            ))
        if args.command == "status":
            return cmd_status(pipeline, args)
        if args.command == "backups":
            return cmd_backups(pipeline, args)
    except PipelineError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return EXIT_INTERRUPTED
    finally:
        pipeline.close()

    raise AssertionError(f"Unhandled command: {args.command}")


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main(sys.argv[1:]))
