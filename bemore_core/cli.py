"""
Command-line interface tools for BeMore Core.
"""

import asyncio
import json
from collections.abc import Coroutine
from datetime import datetime
from typing import Any

import httpx
import typer
from httpx_sse import ServerSentEvent, aconnect_sse

from .classifier import ClassifierProfile, classify, emotion_advice, emotion_emoji
from .models import SessionState, VADScore

DEFAULT_BASE_URL = "http://localhost:8000"

app = typer.Typer(help="BeMore Core CLI tools")


# MARK: - Commands


@app.command()
def serve() -> None:
    """Run the local state service."""
    from .server import main

    main()


@app.command()
def status(
    base_url: str = typer.Option(
        DEFAULT_BASE_URL, "--url", "-u", help="Base URL of the BeMore service"
    ),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output raw JSON"),
) -> None:
    """Show the active session and its statistics."""

    async def _status() -> None:
        async with httpx.AsyncClient() as client:
            response = await client.get(f"{base_url}/session")
            response.raise_for_status()
            result = response.json()

            if json_output:
                print(json.dumps(result, indent=2))
                return

            print(_format_state(SessionState.model_validate(result)))

    _run_with_error_handling(_status(), base_url)


@app.command()
def start(
    base_url: str = typer.Option(
        DEFAULT_BASE_URL, "--url", "-u", help="Base URL of the BeMore service"
    ),
) -> None:
    """Start a new session on the BeMore service."""

    async def _start() -> None:
        async with httpx.AsyncClient() as client:
            response = await client.post(f"{base_url}/session/start")
            response.raise_for_status()
            state = SessionState.model_validate(response.json())
            print(f"Session started: {state.session.id if state.session else '-'}")

    _run_with_error_handling(_start(), base_url)


@app.command()
def end(
    base_url: str = typer.Option(
        DEFAULT_BASE_URL, "--url", "-u", help="Base URL of the BeMore service"
    ),
) -> None:
    """End the active session."""

    async def _end() -> None:
        async with httpx.AsyncClient() as client:
            response = await client.post(f"{base_url}/session/end")
            response.raise_for_status()
            print(_format_state(SessionState.model_validate(response.json())))

    _run_with_error_handling(_end(), base_url)


@app.command()
def stream(
    base_url: str = typer.Option(
        DEFAULT_BASE_URL, "--url", "-u", help="Base URL of the BeMore service"
    ),
) -> None:
    """Stream session updates in real-time."""

    async def _stream() -> None:
        print(f"Streaming from {base_url}/session/stream... (Ctrl+C to stop)")

        async with httpx.AsyncClient(timeout=None) as client:
            async with aconnect_sse(
                client, "GET", f"{base_url}/session/stream"
            ) as event_source:
                async for sse in event_source.aiter_sse():
                    _handle_sse_event(sse)

    _run_with_error_handling(_stream(), base_url)


@app.command("classify")
def classify_command(
    valence: float = typer.Argument(..., help="Valence in [0, 1]"),
    arousal: float = typer.Argument(..., help="Arousal in [0, 1]"),
    dominance: float = typer.Argument(0.5, help="Dominance in [0, 1]"),
    profile: ClassifierProfile = typer.Option(
        ClassifierProfile.DASHBOARD, "--profile", "-p", help="Threshold profile"
    ),
) -> None:
    """Classify a VAD score offline."""
    vad = VADScore(valence=valence, arousal=arousal, dominance=dominance)
    label = classify(vad, profile)
    print(f"{emotion_emoji(label)} {label.value}")
    print(emotion_advice(label))


# MARK: - Private Helpers


def _format_state(state: SessionState) -> str:
    """Render a session snapshot as a short human-readable block."""
    if state.session is None:
        return "No active session"

    started = datetime.fromtimestamp(state.session.start_time).strftime("%H:%M:%S")
    summary = state.summary
    duration = f"{summary.duration:.0f}s" if summary.duration is not None else "unknown"
    lines = [
        f"Session {state.session.id} (started {started}, {duration})",
        f"  records: {summary.total_records}  messages: {summary.total_messages}",
        f"  average valence: {summary.average_valence:.2f}  trend: {summary.trend.value}",
    ]
    if state.session.end_time is not None:
        lines.append("  ended")
    if state.last_error:
        lines.append(f"  last error: {state.last_error}")
    return "\n".join(lines)


def _handle_sse_event(sse: ServerSentEvent) -> None:
    """Handle a single SSE event."""
    try:
        if sse.event == "error":
            error_data = json.loads(sse.data)
            print(f"Server error: {error_data.get('error', 'Unknown error')}")
            return

        state = SessionState.model_validate_json(sse.data)
        print(_format_state(state))

    except json.JSONDecodeError as e:
        print(f"Warning: Could not parse SSE data: {sse.data} - {e}")
    except Exception as e:
        print(f"Warning: Error processing session data: {e}")


def _run_with_error_handling(coro: Coroutine[Any, Any, Any], base_url: str) -> None:
    """Run an async coroutine with standardized error handling."""
    try:
        asyncio.run(coro)
    except KeyboardInterrupt:
        print("\nStopped")
        raise typer.Exit(0)
    except httpx.ConnectError:
        print(f"Error: Could not connect to {base_url}")
        raise typer.Exit(1)
    except httpx.HTTPStatusError as e:
        print(f"Error: HTTP {e.response.status_code}")
        raise typer.Exit(1)
    except Exception as e:
        error_msg = str(e) if str(e) else f"Unknown error of type {type(e).__name__}"
        print(f"Error: {error_msg}")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
