"""CLI client for the lifedesk API."""

from __future__ import annotations

import logging
import time
import uuid
from typing import (
    Any,
    Dict,
    Tuple,
    cast,
)

import httpx

from lifedesk.common import (
    AnsiColors,
    colored_print,
)
from lifedesk.config import settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# CLI Client
# ---------------------------------------------------------------------------
def get_user_message(prompt: str = "") -> Tuple[str, bool]:
    """
    Get a message from the user via standard input.

    Returns:
        Tuple of (user_input, success_flag)
        The success_flag is False if input couldn't be read (e.g., Ctrl+C)
    """
    import signal  # pylint: disable=import-outside-toplevel

    # Ensure SIGINT breaks out of slow system calls such as read()
    signal.siginterrupt(signal.SIGINT, True)

    try:
        user_input = input(prompt).strip()
        return user_input, True
    except (EOFError, KeyboardInterrupt):
        return "", False


def call_api(
    endpoint: str,
    data: Dict[str, Any] | None = None,
    max_retries: int = 5,
    base_url: str | None = None,
    method: str = "POST",
) -> Dict[str, Any]:
    """Send *data* to the API and return the JSON body, retrying while the server starts."""
    api_url = f"{base_url or f'http://localhost:{settings.API_PORT}'}{endpoint}"

    for attempt in range(max_retries):
        try:
            with httpx.Client(timeout=settings.MODEL_TIMEOUT * 3) as client:
                response = client.request(method, api_url, json=data or {})
        except httpx.ConnectError as e:
            if attempt < max_retries - 1:
                retry_delay = 0.5 * (2**attempt)  # exponential backoff: 0.5s, 1s, 2s, 4s...
                logger.info(
                    "API not ready yet, retrying in %.1f seconds (attempt %d/%d)...",
                    retry_delay,
                    attempt + 1,
                    max_retries,
                )
                time.sleep(retry_delay)
                continue
            logger.error("API request error: %s", str(e))
            return {"success": False, "error": f"Error connecting to API: {e}"}
        except httpx.HTTPError as e:
            logger.error("API request error: %s", str(e))
            return {"success": False, "error": f"Error connecting to API: {e}"}

        try:
            body = cast(Dict[str, Any], response.json())
        except ValueError:
            body = {"success": False, "error": response.text}
        if response.is_error:
            body.setdefault("success", False)
            body.setdefault("error", f"HTTP {response.status_code}")
        return body

    # If we've exhausted all retries without returning
    return {"success": False, "error": f"Failed to connect to API after {max_retries} attempts"}


def _confirm_pending(tool_call: Dict[str, Any]) -> None:
    """Ask whether to apply a proposed action, then confirm or discard it through the API."""
    params = ", ".join(f"{k}={v!r}" for k, v in tool_call.get("params", {}).items())
    colored_print(
        f"Proposed {tool_call.get('name')}({params}). Apply it? [y/N] ", AnsiColors.MAGENTA, end=""
    )
    answer, ok = get_user_message()
    if not ok or answer.lower() not in {"y", "yes"}:
        call_api(f"/actions/proposals/{tool_call.get('proposalId')}", method="DELETE")
        colored_print("Skipped.", AnsiColors.YELLOW)
        return

    result = call_api(f"/actions/proposals/{tool_call.get('proposalId')}/confirm")
    if result.get("success"):
        colored_print(f"[{tool_call.get('name')}] {result.get('message')}", AnsiColors.GREEN)
    else:
        colored_print(f"⚠️ {result.get('details') or result.get('error')}", AnsiColors.RED)


def _show_response(response: Dict[str, Any]) -> None:
    for thought in response.get("thoughts", []):
        colored_print(f"  ({thought})", AnsiColors.BLUE)

    for tool_call in response.get("toolCalls", []):
        status = tool_call.get("status")
        name = tool_call.get("name")
        if status == "succeeded":
            message = (tool_call.get("result") or {}).get("message", "done")
            colored_print(f"[{name}] {message}", AnsiColors.GREEN)
        elif status != "pending_confirmation":
            colored_print(f"[{name}] {status}: {tool_call.get('error')}", AnsiColors.RED)

    colored_print(response.get("reply", "No response from API"), AnsiColors.YELLOW)

    for learning in response.get("learnings", []):
        colored_print(f"  learned: {learning}", AnsiColors.MAGENTA)

    for tool_call in response.get("toolCalls", []):
        if tool_call.get("status") == "pending_confirmation":
            _confirm_pending(tool_call)


def run_cli(thread_id: str | None = None) -> None:
    """Run the CLI client that communicates with the API."""
    thread_id = thread_id or f"cli-{uuid.uuid4().hex[:8]}"

    colored_print(
        "\n🗂️  lifedesk shell - type 'exit' or 'quit' (or Ctrl+C) to exit", AnsiColors.GREEN
    )
    while True:
        colored_print("\n🧑 You: ", AnsiColors.BLUE, end="")
        user_msg, ok = get_user_message()
        if not ok:
            break  # Exit if user input couldn't be retrieved (e.g., Ctrl+C)
        if user_msg.lower() in {"exit", "quit"}:
            break
        if not user_msg:
            continue

        response = call_api("/agent/chat", {"message": user_msg, "threadId": thread_id})
        if not response.get("success", False):
            colored_print(f"⚠️ {response.get('error', 'Request failed')}", AnsiColors.RED)
            continue
        _show_response(response)


if __name__ == "__main__":
    run_cli()
