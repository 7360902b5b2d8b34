"""MCP server exposing the network-device core.

A thin adapter over ``NetworkCore.dispatch``: every tool call is one
``(device_id, operation, payload)`` dispatch and returns the response
envelope as JSON text.

Tools exposed:
- list_devices: List all configured network devices
- execute / execute_batch: Run CLI commands on a device
- get_config: Running configuration (text or structured)
- apply_config: Load a payload (merge or replace), staged or committed
- commit / confirm_commit / discard / rollback: Transaction control
- backup / restore / list_backups: Configuration snapshots
- transaction_state: Current transaction state for the caller
"""
import asyncio
import json
import logging
import os
from typing import Any, Optional

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import (
    TextContent,
    Tool,
    Resource,
)
from pydantic import AnyUrl

from .config.inventory import DeviceInventory
from .service import NetworkCore
from .utils.audit_log import setup_audit_logging
from .utils.logging_config import setup_logging, timed_section

logger = logging.getLogger(__name__)

# Initialized on first use
core: Optional[NetworkCore] = None


def get_core() -> NetworkCore:
    """Get or create the network core."""
    global core
    if core is None:
        inventory = DeviceInventory(os.environ.get("NETOPS_INVENTORY"))
        core = NetworkCore(inventory)
    return core


# Create MCP server
server = Server("netops-core")


DEVICE_ID = {"type": "string", "description": "Device ID (e.g., 'edge-1', 'core-1')"}
CALLER = {"type": "string", "description": "Caller identity owning the transaction", "default": "default"}
FORMAT = {"type": "string", "enum": ["text", "structured"], "default": "text"}


def _tool(name: str, description: str, properties: Optional[dict] = None, required: tuple = ()) -> Tool:
    return Tool(
        name=name,
        description=description,
        inputSchema={
            "type": "object",
            "properties": {"device_id": DEVICE_ID, "caller": CALLER, **(properties or {})},
            "required": ["device_id", *required],
        },
    )


# === TOOLS ===

@server.list_tools()
async def list_tools() -> list[Tool]:
    """List all available tools."""
    return [
        Tool(
            name="list_devices",
            description="List all configured network devices with their types and connection info",
            inputSchema={
                "type": "object",
                "properties": {},
                "required": []
            }
        ),
        _tool(
            "execute",
            "Execute a CLI command on a device. Use with caution!",
            {
                "command": {"type": "string", "description": "Command to execute"},
                "timeout": {"type": "number", "description": "Seconds to wait for the prompt"},
                "parser": {"type": "string", "description": "Named parser: version, interfaces, config"},
            },
            ("command",),
        ),
        _tool(
            "execute_batch",
            "Execute commands in order on one session. Stops at the first error unless best_effort is set.",
            {
                "commands": {"type": "array", "items": {"type": "string"}},
                "timeout": {"type": "number"},
                "best_effort": {"type": "boolean", "default": False},
                "parser": {"type": "string"},
            },
            ("commands",),
        ),
        _tool(
            "get_config",
            "Get the running configuration, optionally one section, as text or a structured tree",
            {
                "section": {"type": "string", "description": "e.g. 'interfaces' or 'router ospf'"},
                "format": FORMAT,
            },
        ),
        _tool(
            "apply_config",
            "Load a configuration payload. On staged-commit devices commit_immediately=false only stages it.",
            {
                "config": {
                    "description": "Configuration text, or a tree when format is 'structured'",
                    "type": ["string", "object"],
                },
                "format": FORMAT,
                "replace": {"type": "boolean", "default": False},
                "commit_immediately": {"type": "boolean", "default": True},
                "section": {"type": "string"},
            },
            ("config",),
        ),
        _tool(
            "commit",
            "Commit staged changes. confirm_within makes it a confirmed commit that auto-reverts.",
            {"confirm_within": {"type": "number", "description": "Seconds to confirm within"}},
        ),
        _tool("confirm_commit", "Confirm a pending confirmed commit"),
        _tool("discard", "Discard staged changes"),
        _tool("rollback", "Undo the most recent change (candidate, commit, checkpoint or restore point)"),
        _tool(
            "backup",
            "Capture the running configuration into the backup store",
            {
                "description": {"type": "string"},
                "section": {"type": "string"},
            },
        ),
        _tool(
            "restore",
            "Reapply a stored backup with replace semantics",
            {
                "backup_id": {"type": "string"},
                "commit_immediately": {"type": "boolean", "default": True},
            },
            ("backup_id",),
        ),
        _tool(
            "list_backups",
            "List stored backups for a device, newest first",
            {"limit": {"type": "integer", "default": 20}},
        ),
        _tool("transaction_state", "Show the configuration transaction state of a device"),
    ]


@server.call_tool()
async def call_tool(name: str, arguments: dict) -> list[TextContent]:
    """Handle tool calls."""
    device_id = arguments.get("device_id", "N/A")

    async with timed_section(f"tool:{name}", device_id=device_id):
        netops = get_core()
        if name == "list_devices":
            return await handle_list_devices(netops.inventory)

        payload = {k: v for k, v in arguments.items() if k not in ("device_id", "caller")}
        response = await netops.dispatch(
            device_id,
            name,
            payload,
            caller=arguments.get("caller", "default"),
        )
        return [TextContent(type="text", text=json.dumps(response, indent=2, default=str))]


# === TOOL HANDLERS ===

async def handle_list_devices(inv: DeviceInventory) -> list[TextContent]:
    """List all configured devices."""
    devices = []
    for device in inv.list_devices():
        devices.append({
            "id": device.device_id,
            "name": device.name or device.device_id,
            "type": device.device_type,
            "host": device.host,
            "protocol": device.protocol,
            "port": device.port,
        })

    return [TextContent(
        type="text",
        text=json.dumps({"devices": devices}, indent=2)
    )]


# === RESOURCES ===

@server.list_resources()
async def list_resources() -> list[Resource]:
    """List available resources."""
    inv = get_core().inventory
    resources = [
        Resource(
            uri=AnyUrl("netops://inventory"),
            name="Device inventory",
            description="All registered devices",
            mimeType="application/json",
        )
    ]

    for device in inv.list_devices():
        resources.append(Resource(
            uri=AnyUrl(f"netops://{device.device_id}/config"),
            name=f"{device.name or device.device_id} Configuration",
            description=f"Running configuration for {device.device_id}",
            mimeType="application/json",
        ))

    return resources


@server.read_resource()
async def read_resource(uri: AnyUrl) -> str:
    """Read a resource."""
    # Parse URI: netops://inventory or netops://device_id/config
    uri_str = str(uri)
    if uri_str.startswith("netops://"):
        parts = uri_str[9:].rstrip("/").split("/")
        netops = get_core()

        if parts == ["inventory"]:
            result = await handle_list_devices(netops.inventory)
            return result[0].text

        if len(parts) == 2 and parts[1] == "config":
            response: dict[str, Any] = await netops.dispatch(parts[0], "get_config")
            return json.dumps(response, indent=2, default=str)

    return json.dumps({"error": f"Unknown resource: {uri}"})


def main():
    """Run the MCP server."""
    setup_logging()
    setup_audit_logging()

    async def run():
        netops = get_core()
        await netops.start()
        try:
            async with stdio_server() as (read_stream, write_stream):
                await server.run(
                    read_stream,
                    write_stream,
                    server.create_initialization_options()
                )
        finally:
            await netops.close()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
