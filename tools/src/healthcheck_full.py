#!/usr/bin/env python3
"""
healthcheck_full.py - Container health check for the Odoo web and WebSocket services.

Without arguments the liveness endpoint ``http://localhost:<HTTP_PORT>/web/health``
is checked; it must answer JSON containing ``{"status": "pass"}``.  A
``ws://`` or ``wss://`` URL adds a WebSocket handshake check.

History:
    2025-03-02: Default to the Cloud Run liveness endpoint, configurable timeout
"""

import argparse
import asyncio
import os
import signal
import sys
from typing import List, Optional

import requests
import websockets
from websockets.exceptions import InvalidHandshake, InvalidMessage

DEFAULT_TIMEOUT: float = 5.0
HEALTH_PATH: str = "/web/health"


def default_health_url() -> str:
    """Return the local liveness URL for the configured HTTP port."""
    return f"http://localhost:{os.getenv('HTTP_PORT', '8080')}{HEALTH_PATH}"


def signal_handler(signum: int, frame) -> None:
    """Handle termination signals and exit gracefully.

    Args:
        signum (int): The signal number.
        frame: The current stack frame.
    """
    print(f"Received signal {signum}, exiting.", file=sys.stderr)
    sys.exit(1)


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Returns:
        argparse.Namespace: The parsed arguments.
    """
    parser = argparse.ArgumentParser(
        description="Check the Odoo liveness endpoint and optionally its WebSocket service."
    )
    parser.add_argument(
        "urls",
        nargs="*",
        help="URLs of the web service and/or WebSocket service to check",
    )
    parser.add_argument(
        "--websocket-origin",
        type=str,
        help="The Origin header to use in the WebSocket handshake",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=DEFAULT_TIMEOUT,
        help="Timeout in seconds for each check",
    )
    return parser.parse_args(argv)


def check_web_service(url: str, timeout: float = DEFAULT_TIMEOUT) -> int:
    """Check the web service health.

    Args:
        url (str): The URL of the web service health endpoint.
        timeout (float): Request timeout in seconds.

    Returns:
        int: 0 if the health check passes, 1 otherwise.
    """
    try:
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()
        content_type = response.headers.get("Content-Type", "")
        if "application/json" not in content_type:
            print(f"Web service {url} did not return JSON.", file=sys.stderr)
            return 1
        data = response.json()
    except (requests.RequestException, ValueError) as e:
        print(f"Failed to check web service {url}: {e}", file=sys.stderr)
        return 1
    if isinstance(data, dict) and data.get("status") == "pass":
        print(f"Web service {url} is healthy.", file=sys.stderr)
        return 0
    print(f"Web service {url} health check failed: {data}", file=sys.stderr)
    return 1


async def check_websocket(url: str, origin: Optional[str] = None, timeout: float = DEFAULT_TIMEOUT) -> int:
    """Attempt to connect to the WebSocket URL with an optional Origin header.

    Args:
        url (str): The WebSocket URL to connect to.
        origin (Optional[str], optional): The Origin header to send. Defaults to None.
        timeout (float): Handshake timeout in seconds.

    Returns:
        int: 0 if successful, 1 otherwise.
    """
    headers = {}
    if origin:
        headers["Origin"] = origin
    try:
        async with websockets.connect(url, additional_headers=headers, open_timeout=timeout):
            print(f"Connected to WebSocket URL: {url}", file=sys.stderr)
        return 0
    except InvalidHandshake as e:
        print(f"Invalid handshake with WebSocket URL {url}: {e}", file=sys.stderr)
        return 1
    except InvalidMessage as e:
        print(f"Invalid message from WebSocket URL {url}: {e}", file=sys.stderr)
        return 1
    except (OSError, asyncio.TimeoutError) as e:
        print(f"Failed to connect to WebSocket URL {url}: {e}", file=sys.stderr)
        return 1


def main(argv: Optional[List[str]] = None) -> None:
    """Run the health checks and exit 0 only when all of them pass."""
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)
    args = parse_arguments(argv)

    web_url: Optional[str] = None
    websocket_url: Optional[str] = None

    for url in args.urls:
        if url.startswith("http://") or url.startswith("https://"):
            web_url = url
        elif url.startswith("ws://") or url.startswith("wss://"):
            websocket_url = url
        else:
            print(f"Error: unsupported URL scheme: {url}", file=sys.stderr)
            sys.exit(1)

    if not web_url and not websocket_url:
        web_url = default_health_url()

    web_exit_code = 0
    if web_url:
        web_exit_code = check_web_service(web_url, args.timeout)

    websocket_exit_code = 0
    if websocket_url:
        websocket_exit_code = asyncio.run(
            check_websocket(websocket_url, args.websocket_origin, args.timeout)
        )

    sys.exit(0 if web_exit_code == 0 and websocket_exit_code == 0 else 1)


if __name__ == "__main__":
    main()
