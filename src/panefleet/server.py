"""FastMCP server bootstrap for panefleet."""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from fastmcp import Context, FastMCP

from . import __version__
from .config import FleetSettings, get_settings
from .errors import FleetError
from .fleet import Fleet
from .terminal import TerminalPrimitive
from .tools import register_tools


def configure_logging(level: str) -> None:
    """Configure root logging for the panefleet server."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def create_server(
    settings: Optional[FleetSettings] = None,
    terminal: TerminalPrimitive | None = None,
    *,
    server_factory: Callable[..., Any] = FastMCP,
) -> Any:
    """Instantiate the FastMCP server with the fleet tools and a status resource."""

    settings = settings or get_settings()

    fleet = Fleet.from_settings(settings, terminal)
    executable = getattr(fleet.terminal, "executable", None)
    terminal_metadata: dict[str, Any] = {
        "kind": type(fleet.terminal).__name__,
        "path": str(executable) if executable is not None else settings.tmux_path,
    }

    server = server_factory(
        name="panefleet",
        version=__version__,
        instructions=(
            "panefleet manages long-running agent workers in tmux panes behind stable "
            "worker ids. Resolve targets, spawn and split workers, run batches under a "
            "concurrency ceiling, watch worker state and auto-approve trusted prompts."
        ),
    )

    handles = register_tools(server, fleet)

    @server.resource(
        "resource://panefleet/status",
        name="panefleet_status",
        description="Current runtime status of the panefleet server.",
        mime_type="application/json",
    )
    async def status_resource(context: Context) -> str:
        """Return a JSON string summarizing workers, batches and approvals."""

        summary: dict[str, Any] = {}
        error: str | None = None
        try:
            summary = await fleet.summary()
        except FleetError as exc:
            error = str(exc)

        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "terminal": terminal_metadata,
            "registry_path": str(settings.resolved_registry_path()),
            "activity_backend": settings.activity_backend,
            **summary,
            "error": error,
            "request_id": getattr(context, "request_id", None),
        }
        return json.dumps(payload)

    setattr(server, "fleet", fleet)
    setattr(server, "terminal_metadata", terminal_metadata)
    setattr(server, "tool_handles", handles)
    setattr(server, "status_resource", status_resource)
    return server


def main() -> None:
    """Entry point for running the panefleet MCP server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    logging.getLogger(__name__).info(
        "Launching panefleet MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "registry_path": str(settings.resolved_registry_path()),
            "tmux": getattr(server, "terminal_metadata", {}).get("path"),
        },
    )
    server.run()


if __name__ == "__main__":
    main()
