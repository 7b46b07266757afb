#!/usr/bin/env python3
"""Live sync watcher for manual verification against a real cloud account.

Logs in with the password grant, registers the given device ids and prints
every state change and poll failure as a JSON line until interrupted (or
until ``--duration`` elapses).

Credential sourcing:
- CLOUDSYNC_USERNAME
- CLOUDSYNC_PASSWORD

Endpoint configuration comes from the usual ``CLOUDSYNC_*`` variables
(``CLOUDSYNC_API_BASE_URL``, ``CLOUDSYNC_TOKEN_URL``, ...), or from
``--host``/``--realm`` for Keycloak-hosted providers.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from pycloudsync import (  # noqa: E402
    AuthError,
    CloudSyncError,
    DeviceCommand,
    OAuthProfile,
    PollFailureEvent,
    StateChangeEvent,
    SyncConfig,
    SyncEngine,
)


def _emit(kind: str, payload: dict[str, Any]) -> None:
    print(json.dumps({"event": kind, **payload}, default=str), flush=True)


def _on_change(event: StateChangeEvent) -> None:
    _emit("state_change", event.model_dump(mode="json"))


def _on_failure(event: PollFailureEvent) -> None:
    _emit("poll_failure", event.model_dump(mode="json"))


def _on_auth_error(exc: AuthError) -> None:
    _emit("auth_error", {"message": str(exc)})


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("devices", nargs="+", help="Device ids to watch")
    parser.add_argument("--host", help="Provider host; token URL becomes https://auth.<host>/realms/<realm>/...")
    parser.add_argument("--realm", help="Keycloak realm (with --host)")
    parser.add_argument("--duration", type=float, default=0.0, help="Stop after N seconds (0 = run until Ctrl-C)")
    parser.add_argument("--command", help="Command name to send to the first device after the first poll")
    parser.add_argument("--params", default="{}", help="JSON object of command parameters")
    parser.add_argument("--debug", action="store_true", help="Enable DEBUG logging")
    return parser


async def _run(args: argparse.Namespace) -> int:
    overrides: dict[str, Any] = {}
    if args.host and args.realm:
        overrides["oauth"] = OAuthProfile.for_keycloak(args.host, args.realm)
        if not os.environ.get("CLOUDSYNC_API_BASE_URL"):
            overrides["api_base_url"] = f"https://{args.host}/api/v0.1"
    config = SyncConfig.from_env(**overrides)
    config.require_urls()

    username = os.environ.get("CLOUDSYNC_USERNAME")
    password = os.environ.get("CLOUDSYNC_PASSWORD")
    if not username or not password:
        print("CLOUDSYNC_USERNAME and CLOUDSYNC_PASSWORD must be set", file=sys.stderr)
        return 2

    async with SyncEngine(
        config,
        on_state_change=_on_change,
        on_failure=_on_failure,
        on_auth_error=_on_auth_error,
    ) as engine:
        await engine.authenticate(username, password)
        for device_id in args.devices:
            engine.register_device(device_id)
            record = await engine.refresh_device(device_id)
            _emit("snapshot", record.model_dump(mode="json"))

        if args.command:
            command = DeviceCommand(name=args.command, params=json.loads(args.params))
            result = await engine.submit_command(args.devices[0], command)
            _emit("command_result", result.model_dump(mode="json"))

        if args.duration > 0:
            await asyncio.sleep(args.duration)
        else:
            await asyncio.Event().wait()
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return asyncio.run(_run(args))
    except CloudSyncError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    with contextlib.suppress(BrokenPipeError):
        sys.exit(main())
