#!/usr/bin/env python3
"""Manage rotatable encryption keys and audit their lifecycle from the shell."""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import sys
from pathlib import Path
from typing import Any, List, Optional

from envkeeper.errors import KeyLifecycleError
from envkeeper.models import RotationReason, to_record
from envkeeper.observability import configure_logging
from envkeeper.orchestrator import CryptoOrchestrator, create_orchestrator
from envkeeper.settings import KeyLifecycleSettings, get_settings


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Generate, encrypt with, rotate and audit EnvKeeper keys.",
    )
    parser.add_argument("--env-dir", help="Directory holding environment files")
    parser.add_argument("--key-file", help="Secret file holding key material, relative to --env-dir")
    parser.add_argument("--metadata-dir", help="Directory of the key metadata file")
    parser.add_argument("--log-level", help="Logging level (default: LOG_LEVEL or INFO)")

    commands = parser.add_subparsers(dest="command", required=True)

    generate = commands.add_parser("generate", help="Generate and store a new key")
    generate.add_argument("key_name")
    generate.add_argument("--max-age", type=float, help="Maximum key age in days")
    generate.add_argument(
        "--rotate",
        action="store_true",
        help="Overwrite the key if it already exists",
    )

    encrypt = commands.add_parser("encrypt", help="Encrypt plaintext variables of an environment file")
    encrypt.add_argument("environment_file")
    encrypt.add_argument("key_name")
    encrypt.add_argument("variables", nargs="*", help="Variables to encrypt (default: all plaintext)")

    rotate = commands.add_parser("rotate", help="Rotate a key and re-encrypt an environment file")
    rotate.add_argument("key_name")
    rotate.add_argument("environment_file")
    rotate.add_argument(
        "--reason",
        choices=[reason.value for reason in RotationReason],
        default=RotationReason.MANUAL.value,
    )
    rotate.add_argument("--max-age", type=float, help="New maximum key age in days")
    rotate.add_argument(
        "--include-plaintext",
        action="store_true",
        help="Also encrypt plaintext values under the new key",
    )

    info = commands.add_parser("info", help="Show metadata and rotation status of a key")
    info.add_argument("key_name")
    info.add_argument("--no-audit", action="store_true", help="Omit the audit summary")

    status = commands.add_parser("status", help="Check whether a key needs rotation")
    status.add_argument("key_name")

    commands.add_parser("audit", help="Run a system-wide key audit")
    commands.add_parser("startup-check", help="Run the startup security check")

    acknowledge = commands.add_parser(
        "acknowledge", help="Clear an interrupted rotation after a manual audit"
    )
    acknowledge.add_argument("key_name")
    return parser.parse_args(argv)


def build_settings(args: argparse.Namespace) -> KeyLifecycleSettings:
    settings = get_settings()
    overrides: dict[str, Any] = {}
    if args.env_dir:
        overrides["env_dir"] = Path(args.env_dir).expanduser()
    if args.key_file:
        overrides["base_env_file"] = args.key_file
    if args.metadata_dir:
        overrides["metadata_dir"] = Path(args.metadata_dir).expanduser()
    return dataclasses.replace(settings, **overrides) if overrides else settings


async def run_command(args: argparse.Namespace, orchestrator: CryptoOrchestrator) -> tuple[int, Any]:
    if args.command == "generate":
        stored = await orchestrator.generate_rotatable_secret_key(
            args.key_name, max_age_in_days=args.max_age, should_rotate_key=args.rotate
        )
        return 0, {"key": args.key_name, "stored": stored}
    if args.command == "encrypt":
        encrypted = await orchestrator.encrypt_environment_variables(
            args.environment_file, args.key_name, args.variables or None
        )
        return 0, {"environmentFile": args.environment_file, "encrypted": encrypted}
    if args.command == "rotate":
        result = await orchestrator.rotate_key_and_re_encrypt(
            args.key_name,
            args.environment_file,
            RotationReason(args.reason),
            custom_max_age=args.max_age,
            should_rotate_key=args.include_plaintext,
        )
        return 0, result
    if args.command == "info":
        info = await orchestrator.get_key_information(args.key_name, include_audit=not args.no_audit)
        return (0 if info.exists else 1), info
    if args.command == "status":
        return 0, await orchestrator.check_key_rotation_status(args.key_name)
    if args.command == "audit":
        return 0, await orchestrator.perform_system_audit()
    if args.command == "startup-check":
        result = await orchestrator.perform_startup_security_check()
        return (0 if result.passed else 2), result
    if args.command == "acknowledge":
        cleared = await orchestrator.acknowledge_interrupted_rotation(args.key_name)
        return (0 if cleared else 1), {"key": args.key_name, "acknowledged": cleared}
    raise ValueError(f"Unknown command: {args.command}")


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(level=args.log_level)
    orchestrator = create_orchestrator(build_settings(args))

    try:
        exit_code, payload = asyncio.run(run_command(args, orchestrator))
    except KeyLifecycleError as exc:
        print(json.dumps({"success": False, "error": str(exc)}, indent=2), file=sys.stderr)
        return 1

    print(json.dumps(to_record(payload, json_ready=True), indent=2))
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
