from __future__ import annotations

import argparse
import json
from pathlib import Path
import sys

from mergebot.config import AppConfig, load_config
from mergebot.git_ops import GitRepoManager
from mergebot.github_gateway import GitHubGateway
from mergebot.merge_command import MergeCoordinator
from mergebot.observability import configure_logging
from mergebot.responses import ErrorResponse
from mergebot.webhooks import handle_event, invalid_payload


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mergebot")
    subparsers = parser.add_subparsers(dest="command", required=True)

    handle_parser = subparsers.add_parser(
        "handle", help="Process one GitHub webhook delivery (issue_comment or status)"
    )
    handle_parser.add_argument("--config", type=Path, default=Path("mergebot.toml"))
    handle_parser.add_argument(
        "--event",
        required=True,
        help="Webhook event type, as sent in the X-GitHub-Event header",
    )
    handle_parser.add_argument(
        "--payload",
        default="-",
        help="Path to the JSON payload, or '-' to read it from stdin",
    )
    handle_parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose runtime logging to stderr",
    )

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    config = load_config(args.config)
    configure_logging(bool(args.verbose), log_dir=config.runtime.log_dir)

    if args.command == "handle":
        return _cmd_handle(config, event_type=str(args.event), payload_source=str(args.payload))

    raise RuntimeError(f"Unknown command: {args.command}")


def build_coordinator(config: AppConfig) -> MergeCoordinator:
    gateway = GitHubGateway()
    return MergeCoordinator(
        issues=gateway,
        pull_requests=gateway,
        repositories=gateway,
        search=gateway,
        git_repos=GitRepoManager(config.runtime.base_dir),
        merging_label=config.merge.merging_label,
        squash_context=config.merge.squash_context,
    )


def _cmd_handle(config: AppConfig, *, event_type: str, payload_source: str) -> int:
    try:
        payload = json.loads(_read_payload(payload_source))
    except json.JSONDecodeError as exc:
        response = invalid_payload(event_type, exc)
    else:
        response = handle_event(
            event_type,
            payload,
            build_coordinator(config),
            merge_command=config.merge.merge_command,
        )
    status_code, body = response.to_http()
    print(json.dumps({"status": status_code, **body}))
    return 1 if isinstance(response, ErrorResponse) else 0


def _read_payload(source: str) -> str:
    if source == "-":
        return sys.stdin.read()
    return Path(source).read_text(encoding="utf-8")
