"""Entry point for `python -m panelsync` / `panelsync`.

Subcommands:
    panelsync replay EVENTS.jsonl   Replay scripted host events and print the resulting state
    panelsync config                Print the effective settings
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any


def _load_steps(path: Path) -> list[dict[str, Any]]:
    steps = []
    for lineno, line in enumerate(path.read_text().splitlines(), start=1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        try:
            step = json.loads(line)
        except json.JSONDecodeError as exc:
            raise SystemExit(f"{path}:{lineno}: invalid JSON ({exc.msg})") from None
        if not isinstance(step, dict):
            raise SystemExit(f"{path}:{lineno}: each line must be a JSON object")
        steps.append(step)
    return steps


async def replay(steps: list[dict[str, Any]], conversation_id: str) -> dict[str, Any]:
    from panelsync.app import PanelSyncApp
    from panelsync.event_bus import Event, EventType
    from panelsync.host.scripted import ScriptedHost

    host = ScriptedHost(conversation_id)
    seen: list[dict[str, Any]] = []

    def _record(event: Event) -> None:
        seen.append({"type": event.type, "payload": event.payload})

    # No grace window: a replay has no host that needs time to load.
    async with PanelSyncApp(host, chat_switch_grace=0.0) as app:
        for event_type in EventType:
            app.bus.subscribe(event_type, _record)
        for step in steps:
            await host.play(step)
            if step.get("event") == "APPEND":
                await app.bridge.poller.poll_once()
            await app.bus.drain()
        state = await app.snapshot()
    return {"state": state, "events": seen}


def _replay(args: argparse.Namespace) -> None:
    steps = _load_steps(Path(args.events))
    result = asyncio.run(replay(steps, args.conversation))
    if not args.events_out:
        result.pop("events")
    json.dump(result, sys.stdout, indent=2, ensure_ascii=False, default=str)
    sys.stdout.write("\n")


def _config() -> None:
    from panelsync.config import get_settings

    json.dump(get_settings().model_dump(mode="json"), sys.stdout, indent=2)
    sys.stdout.write("\n")


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="panelsync",
        description="Extract structured panel data from chat messages",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    replay_cmd = sub.add_parser("replay", help="Replay a JSONL script of host events")
    replay_cmd.add_argument("events", help="Path to the JSONL script")
    replay_cmd.add_argument(
        "--conversation",
        default="default",
        help="Conversation id the host starts in (default: default)",
    )
    replay_cmd.add_argument(
        "--events",
        dest="events_out",
        action="store_true",
        help="Also print every internal event emitted during the replay",
    )
    sub.add_parser("config", help="Print the effective settings")

    args = parser.parse_args()

    match args.command:
        case "replay":
            _replay(args)
        case "config":
            _config()


if __name__ == "__main__":
    main()
