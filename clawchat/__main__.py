#!/usr/bin/env python3
"""Console client for an agent gateway.

Connects, sends one message, waits for the run to end and prints the
transcript as plain text.

Usage:
    python -m clawchat --url ws://127.0.0.1:18789 --message "Hello"

    # Token from the command line, CLAWCHAT_GATEWAY_TOKEN or .env
    python -m clawchat --token secret --message "What's the weather?"

    # Only print the current transcript
    python -m clawchat --history
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from clawchat.client import GatewayClient, RunState, load_client_config
from clawchat.client.config import generate_example_config, normalize_gateway_url
from clawchat.models import ClawChatError, ContentPartType, Message, RequestRejectedError, Role

console = Console()

_ROLE_STYLES = {
    Role.USER.value: "bold green",
    Role.ASSISTANT.value: "bold cyan",
    Role.SYSTEM.value: "bold red",
}


def render_message(message: Message) -> Panel:
    """Render one message as a plain-text panel."""
    body = Text()
    for part in message.parts:
        if part.is_tool_call:
            status = part.status.value if part.status else "?"
            body.append(f"[tool {part.name}: {status}]", style="yellow")
            if part.result:
                body.append(f" {part.result}", style="dim")
            body.append("\n")
        elif part.type == ContentPartType.THINKING:
            body.append(f"{part.text}\n", style="dim italic")
        elif part.text:
            body.append(f"{part.text}\n")
    subtitle = None
    if message.run_duration is not None:
        subtitle = f"{message.run_duration:.1f}s"
    return Panel(
        body,
        title=message.role,
        title_align="left",
        subtitle=subtitle,
        border_style=_ROLE_STYLES.get(message.role, "white"),
    )


def print_transcript(messages: List[Message]) -> None:
    for message in messages:
        console.print(render_message(message))


async def run_client(
    client: GatewayClient,
    message: Optional[str],
    timeout: float,
) -> int:
    """Connect, optionally send ``message``, and print the transcript.

    Returns:
        Process exit code.
    """
    run_done = asyncio.Event()
    history_loaded = asyncio.Event()

    def on_run_state(state: RunState, run_id: Optional[str], silent: bool) -> None:
        if state.is_terminal:
            run_done.set()
        elif silent:
            console.print(Text("... still working", style="dim"))

    def on_error(error: RequestRejectedError) -> None:
        console.print(Text(str(error), style="red"))

    def on_transcript(messages: List[Message]) -> None:
        if client.session.main_session_key and not history_loaded.is_set():
            history_loaded.set()

    client.set_run_state_callback(on_run_state)
    client.set_error_callback(on_error)
    client.set_transcript_callback(on_transcript)

    await client.start()
    try:
        await asyncio.wait_for(history_loaded.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        console.print(Text(f"Could not connect to {client.config.gateway.url}", style="red"))
        await client.close()
        return 1

    if message:
        # Let a run resumed from history finish first
        try:
            while client.tracker.is_active:
                run_done.clear()
                await asyncio.wait_for(run_done.wait(), timeout=timeout)
            run_done.clear()
            client.send_message(message)
        except (ClawChatError, asyncio.TimeoutError) as e:
            console.print(Text(f"Error: {e}", style="red"))
            await client.close()
            return 1
        try:
            await asyncio.wait_for(run_done.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            console.print(Text("Timed out waiting for the reply; aborting", style="yellow"))
            client.abort()

    print_transcript(client.messages)
    await client.close()
    return 0


def main():
    parser = argparse.ArgumentParser(
        description="Console client for an agent gateway"
    )
    parser.add_argument(
        "--url",
        help="Gateway URL (default: from config, ws://127.0.0.1:18789)"
    )
    parser.add_argument(
        "--token",
        help="Gateway token (default: CLAWCHAT_GATEWAY_TOKEN)"
    )
    parser.add_argument(
        "--message", "-m",
        type=str,
        help="Send a single message and wait for the reply"
    )
    parser.add_argument(
        "--history",
        action="store_true",
        help="Print the current transcript and exit"
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=120.0,
        help="Seconds to wait for connection and reply (default: 120)"
    )
    parser.add_argument(
        "--no-device",
        action="store_true",
        help="Connect without a signed device identity"
    )
    parser.add_argument(
        "--example-config",
        action="store_true",
        help="Print an example client.json and exit"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Verbose logging"
    )
    args = parser.parse_args()

    if args.example_config:
        print(generate_example_config())
        sys.exit(0)

    if not args.message and not args.history:
        parser.error("one of --message or --history is required")

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    config = load_client_config(workspace_path=Path.cwd())
    if args.url:
        config.gateway.url = normalize_gateway_url(args.url)
    if args.token:
        config.gateway.token = args.token
    if args.no_device:
        config.gateway.device_identity = False

    client = GatewayClient.from_config(config)
    try:
        exit_code = asyncio.run(run_client(client, args.message, args.timeout))
    except KeyboardInterrupt:
        console.print(Text("\nInterrupted", style="yellow"))
        exit_code = 130
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
