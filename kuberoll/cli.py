"""Command line entry point.

    kuberoll rollout --region us-west-2 --group workers
    kuberoll drain --region us-west-2 --group workers --group workers-spot
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from collections.abc import Sequence
from typing import Any

from injector import Injector
from loguru import logger

from kuberoll.aws.clients import AWS, AWSModule
from kuberoll.config import Settings, resolve_settings
from kuberoll.errors import RolloutError
from kuberoll.kube.client import KubeModule
from kuberoll.logging import setup_logging, teardown_logging
from kuberoll.rollout import Components, Rollout, drain_groups
from kuberoll.state import load_state

log = logger.bind(component="cli")


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--region", help="AWS region of the Auto Scaling Group")
    parser.add_argument(
        "--drain-timeout", type=float, default=None,
        help="Seconds to wait for each node to drain; 0 means no limit (default: 900)",
    )
    parser.add_argument(
        "--delete-local-data", action="store_true", default=None,
        help="Continue even if there are pods using emptyDir (local data is deleted)",
    )
    parser.add_argument("--kubeconfig", help="Path to the kubeconfig file")
    parser.add_argument("--context", help="Kubeconfig context to use")
    parser.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], default=None,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kuberoll",
        description="Zero-downtime rollout of the EC2 workers behind an EKS cluster",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    rollout = sub.add_parser(
        "rollout",
        help="Replace every instance of an Auto Scaling Group without downtime",
    )
    rollout.add_argument("--group", required=True, help="Name of the Auto Scaling Group to roll")
    _add_common(rollout)
    rollout.add_argument(
        "--max-retries", type=int, default=None,
        help="Polls before a wait gives up; 0 derives it from the group size",
    )
    rollout.add_argument(
        "--sleep-between-retries", type=float, default=None,
        help="Seconds between polls (default: 15)",
    )
    rollout.add_argument(
        "--ignore-recovery-file", action="store_true",
        help="Start from scratch even if a state file from a previous run exists",
    )
    rollout.add_argument("--state-file", help="Where rollout progress is saved")

    drain = sub.add_parser("drain", help="Cordon and drain every node of the given groups")
    drain.add_argument(
        "--group", action="append", required=True, dest="groups",
        help="Auto Scaling Group to drain; repeat for several groups",
    )
    _add_common(drain)

    return parser


def _overrides(args: argparse.Namespace) -> dict[str, Any]:
    return {
        "rollout": {
            "region": args.region,
            "drain_timeout": args.drain_timeout,
            "delete_local_data": args.delete_local_data,
            "max_retries": getattr(args, "max_retries", None),
            "sleep_between_retries": getattr(args, "sleep_between_retries", None),
            "state_file": getattr(args, "state_file", None),
        },
        "kube": {"kubeconfig": args.kubeconfig, "context": args.context},
        "logging": {"level": args.log_level},
    }


def _components(settings: Settings) -> Components:
    injector = Injector([
        AWSModule(AWS(region=settings.rollout.region)),
        KubeModule(settings.kube),
    ])
    return Components.from_injector(injector, policy=settings.registration)


async def _rollout(settings: Settings, group_name: str, ignore_recovery_file: bool) -> None:
    options = settings.rollout
    state, store = load_state(
        options.state_file,
        ignore_recovery_file,
        options.max_retries,
        options.sleep_between_retries,
    )
    rollout = Rollout(
        group_name,
        state,
        store,
        _components(settings),
        drain_timeout=options.drain_timeout,
        delete_local_data=options.delete_local_data,
    )
    await rollout.run()


async def _drain(settings: Settings, group_names: Sequence[str]) -> None:
    await drain_groups(
        _components(settings),
        group_names,
        drain_timeout=settings.rollout.drain_timeout,
        delete_local_data=settings.rollout.delete_local_data,
    )


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = resolve_settings(_overrides(args))
    except RolloutError as e:
        print(f"kuberoll: {e}", file=sys.stderr)
        return 1

    logger.remove()
    handler_ids = setup_logging(settings.logging)
    try:
        match args.command:
            case "rollout":
                asyncio.run(_rollout(settings, args.group, args.ignore_recovery_file))
            case "drain":
                asyncio.run(_drain(settings, args.groups))
    except RolloutError as e:
        log.error("{kind} error: {err}", kind=e.kind, err=e)
        if e.fatal:
            log.error("This error will not go away by retrying; fix the cause before rerunning.")
        return 1
    except KeyboardInterrupt:
        log.warning("Interrupted")
        return 130
    finally:
        teardown_logging(handler_ids)
    return 0
