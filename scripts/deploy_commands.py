#!/usr/bin/env python
"""Register the slash commands with the chat platform (guild-scoped when GUILD_ID is set)."""

from __future__ import annotations

import argparse
import json
import os
import sys

import httpx

# add project root (one level up from /scripts) to import path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from settings import get_settings
from server.src.modules.command_catalog import command_payloads

API_BASE = "https://discord.com/api/v10"


def commands_route(client_id: str, guild_id: str | None = None) -> str:
    if guild_id:
        return f"{API_BASE}/applications/{client_id}/guilds/{guild_id}/commands"
    return f"{API_BASE}/applications/{client_id}/commands"


def deploy(token: str, client_id: str, guild_id: str | None = None, dry_run: bool = False) -> int:
    payload = command_payloads()
    route = commands_route(client_id, (guild_id or "").strip() or None)
    print(f"Deploying {len(payload)} commands to {route} ...")
    if dry_run:
        print(json.dumps(payload, indent=2))
        return len(payload)
    resp = httpx.put(
        route,
        json=payload,
        headers={"Authorization": f"Bot {token}"},
        timeout=30.0,
    )
    resp.raise_for_status()
    print("Done.")
    return len(payload)


def main() -> None:
    parser = argparse.ArgumentParser(description="Register slash commands with the chat platform.")
    parser.add_argument("--guild-id", default=None, help="Override GUILD_ID for a guild-scoped deploy")
    parser.add_argument("--dry-run", action="store_true", help="Print the command payload instead of sending it")
    args = parser.parse_args()

    settings = get_settings()
    if not settings.client_id:
        raise SystemExit("CLIENT_ID is required")
    if not settings.discord_token and not args.dry_run:
        raise SystemExit("DISCORD_TOKEN is required")
    try:
        deploy(settings.discord_token or "", settings.client_id, args.guild_id or settings.guild_id, dry_run=args.dry_run)
    except httpx.HTTPStatusError as exc:
        raise SystemExit(f"Deploy failed: {exc.response.status_code} {exc.response.text[:300]}")


if __name__ == "__main__":
    main()
