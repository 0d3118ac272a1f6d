"""Built-in host functions that need nothing beyond the run context."""

from __future__ import annotations

import logging
from typing import Any

from orchestra.api.tools import ToolContext, check_arguments, tool_error, tool_result

logger = logging.getLogger(__name__)

_LOG_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "message": {"type": "string"},
        "data": {},
    },
    "required": ["message"],
}


async def log_message(ctx: ToolContext, arguments: dict[str, Any]) -> str:
    """Write a message (and optional data) to the worker log."""
    if err := check_arguments(arguments, _LOG_SCHEMA):
        return tool_error(err)
    logger.info(
        "[agent %s/%s] %s data=%r",
        ctx.agent_id,
        ctx.session_id,
        arguments["message"],
        arguments.get("data"),
    )
    return tool_result({"status": "success", "message": "Message was logged successfully."})


TOOLS = {
    "system.log": log_message,
}
