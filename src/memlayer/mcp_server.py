"""MCP server: memlayer — memory search tools for the coding assistant.

Wraps ``get_memory_tools`` as MCP tools (mem_search, mem_timeline,
mem_details, mem_cite, mem_stats).

Protocol: JSON-RPC 2.0 over stdio (NDJSON).

Usage:
  python -m memlayer mcp
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import os
import sys
from typing import Callable

from memlayer.config import MemlayerConfig
from memlayer.core import build_service
from memlayer.tools.memory_tools import get_memory_tools

logger = logging.getLogger(__name__)

# ── Constants ────────────────────────────────────────────────

SERVER_NAME = "memlayer"
SERVER_VERSION = "0.1.0"
PROTOCOL_VERSION = "2024-11-05"

_IDS = {"type": "array", "items": {"type": "string"}, "description": "Event ids from mem_search"}

# ── Tool definitions ─────────────────────────────────────────

TOOLS = [
    {
        "name": "mem_search",
        "description": (
            "Search long-term memory of past sessions. Returns a ranked index; "
            "timeline and full details are included automatically when a match is confident."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "What to look for"},
                "top_k": {"type": "integer", "description": "Max results (default 10)"},
                "min_score": {"type": "number", "description": "Similarity threshold 0-1 (default 0.7)"},
                "session": {"type": "string", "description": "Only this session"},
                "event_type": {
                    "type": "string",
                    "enum": ["prompt", "response", "tool-observation", "insight", "session-start", "session-end"],
                },
            },
            "required": ["query"],
        },
    },
    {
        "name": "mem_timeline",
        "description": "Events immediately before and after the given events, in the same session.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "event_ids": _IDS,
                "window_size": {"type": "integer", "description": "Events on each side (default 3)"},
            },
            "required": ["event_ids"],
        },
    },
    {
        "name": "mem_details",
        "description": "Full content, extracted files/tools and neighbours for the given events.",
        "inputSchema": {
            "type": "object",
            "properties": {"event_ids": _IDS},
            "required": ["event_ids"],
        },
    },
    {
        "name": "mem_cite",
        "description": "Open a memory citation such as mem:a1B2c3.",
        "inputSchema": {
            "type": "object",
            "properties": {"citation_id": {"type": "string"}},
            "required": ["citation_id"],
        },
    },
    {
        "name": "mem_stats",
        "description": "Memory statistics: events, vectors, sessions, levels, pending embeddings.",
        "inputSchema": {"type": "object", "properties": {}},
    },
]

# ── JSON-RPC 2.0 helpers ─────────────────────────────────────


def jsonrpc_result(req_id, result):
    return {"jsonrpc": "2.0", "id": req_id, "result": result}


def jsonrpc_error(req_id, code, message):
    return {"jsonrpc": "2.0", "id": req_id, "error": {"code": code, "message": message}}


# ── Request handler ──────────────────────────────────────────


async def handle_request(req: dict, tools: dict[str, Callable]) -> dict | None:
    req_id = req.get("id")
    method = req.get("method", "")

    # Notifications (no id) — no response
    if req_id is None:
        if method == "notifications/initialized":
            logger.info("Client initialized")
        return None

    if method == "initialize":
        return jsonrpc_result(req_id, {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {"tools": {}},
            "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
        })

    if method == "tools/list":
        return jsonrpc_result(req_id, {"tools": TOOLS})

    if method == "tools/call":
        params = req.get("params", {})
        tool_name = params.get("name", "")
        args = params.get("arguments", {}) or {}

        tool = tools.get(tool_name)
        if tool is None:
            return jsonrpc_result(req_id, {
                "content": [{"type": "text", "text": f"Unknown tool: {tool_name}"}],
                "isError": True,
            })
        try:
            text = tool(**args)
            if inspect.isawaitable(text):
                text = await text
        except Exception as e:
            logger.error("Tool %s failed: %s", tool_name, e)
            return jsonrpc_result(req_id, {
                "content": [{"type": "text", "text": f"[internal error] {e}"}],
                "isError": True,
            })
        return jsonrpc_result(req_id, {"content": [{"type": "text", "text": text}]})

    return jsonrpc_error(req_id, -32601, f"Method not found: {method}")


# ── Stdio transport (NDJSON) ─────────────────────────────────


async def serve_stdio(config: MemlayerConfig) -> None:
    service = build_service(config)
    tools = get_memory_tools(service, session_id=os.getenv("MEMLAYER_SESSION_ID"))
    logger.info("Starting MCP server (root=%s)", config.storage.root)

    reader = asyncio.StreamReader()
    protocol = asyncio.StreamReaderProtocol(reader)
    await asyncio.get_running_loop().connect_read_pipe(lambda: protocol, sys.stdin)

    try:
        while True:
            line = await reader.readline()
            if not line:
                break
            line = line.decode("utf-8").strip()
            if not line:
                continue

            try:
                req = json.loads(line)
                logger.debug("<- %s", req.get("method", "?"))
                response = await handle_request(req, tools)
                if response:
                    sys.stdout.write(json.dumps(response, ensure_ascii=False) + "\n")
                    sys.stdout.flush()
            except json.JSONDecodeError as e:
                logger.warning("Parse error: %s", e)
    finally:
        service.close()
