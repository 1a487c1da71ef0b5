"""Assistant hook entry points — capture interactions, inject related memories.

Usage (hook command, JSON payload on stdin):
    python -m memlayer.hooks user-prompt-submit
    python -m memlayer.hooks post-tool-use
    python -m memlayer.hooks stop
    python -m memlayer.hooks session-start
    python -m memlayer.hooks session-end

Hooks only touch SQLite: prompt context uses keyword search and new events
are left in the outbox for the daemon (or ``memlayer drain``) to embed.
Content is masked here, before it reaches the ledger. A failed write is
logged and exits non-zero; a failed search just returns no context.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path

from memlayer.config import MemlayerConfig, load_config
from memlayer.core import MemoryService, build_service
from memlayer.errors import MemlayerError
from memlayer.memory.extract import extract_tool_metadata, summarize
from memlayer.memory.models import EventType
from memlayer.memory.privacy import mask_secrets, mask_sensitive_input

logger = logging.getLogger(__name__)

PROMPT_CONTEXT_LIMIT = 5
PROMPT_MIN_SCORE = 0.3
MIN_PROMPT_LENGTH = 10
CONTEXT_PREVIEW_CHARS = 300
TRANSCRIPT_TAIL_BYTES = 200 * 1024
MIN_RESPONSE_LENGTH = 10


def _emit(payload: dict) -> None:
    print(json.dumps(payload, ensure_ascii=False))


# ── Tool output helpers ──────────────────────────────────


def tool_output_text(response) -> str:
    """Flatten a tool response (stdout/stderr, content, or anything else) to text."""
    if response is None:
        return ""
    if isinstance(response, str):
        return response
    if isinstance(response, dict):
        if "stdout" in response:
            parts = []
            if response.get("stdout"):
                parts.append(str(response["stdout"]))
            if response.get("stderr"):
                parts.append(f"[stderr] {response['stderr']}")
            return "\n".join(parts)
        if "content" in response:
            content = response["content"]
            return content if isinstance(content, str) else json.dumps(content, ensure_ascii=False)
    return json.dumps(response, ensure_ascii=False, default=str)


def tool_succeeded(response) -> bool:
    if response is None:
        return False
    if isinstance(response, dict):
        if response.get("interrupted") or response.get("is_error"):
            return False
        if response.get("success") is False:
            return False
    return True


def read_assistant_messages(transcript_path: Path) -> list[str]:
    """Assistant text blocks from the tail of a JSONL transcript."""
    if not transcript_path.exists():
        return []
    with transcript_path.open("rb") as f:
        f.seek(0, 2)
        size = f.tell()
        f.seek(max(0, size - TRANSCRIPT_TAIL_BYTES))
        tail = f.read().decode("utf-8", errors="replace")

    messages = []
    for line in tail.splitlines():
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            continue  # partial first line after the seek
        if not isinstance(entry, dict) or entry.get("type") != "assistant":
            continue
        content = (entry.get("message") or {}).get("content")
        if not isinstance(content, list):
            continue
        texts = [c.get("text", "") for c in content if isinstance(c, dict) and c.get("type") == "text"]
        text = "\n".join(t for t in texts if t)
        if text:
            messages.append(text)
    return messages


# ── Hook handlers ────────────────────────────────────────


async def on_user_prompt_submit(service: MemoryService, config: MemlayerConfig, data: dict) -> dict:
    session_id = data["session_id"]
    prompt = mask_secrets(data.get("prompt", ""), config.privacy.exclude_patterns, config.privacy.private_tags)

    context = ""
    if len(prompt.strip()) > MIN_PROMPT_LENGTH:
        try:
            items = await service.recall(prompt, limit=PROMPT_CONTEXT_LIMIT, min_score=PROMPT_MIN_SCORE)
        except MemlayerError as e:
            logger.warning("Prompt recall failed: %s", e)
            items = []
        if items:
            lines = [
                f"- [{item.type.value}] {summarize(item.summary, CONTEXT_PREVIEW_CHARS)}"
                + (f" (mem:{item.citation_id})" if item.citation_id else "")
                for item in items
            ]
            context = "Related memories:\n" + "\n".join(lines)

    if prompt.strip():
        service.store_event(session_id, EventType.PROMPT, prompt)

    if not context:
        return {}
    return {
        "hookSpecificOutput": {
            "hookEventName": "UserPromptSubmit",
            "additionalContext": context,
        }
    }


async def on_post_tool_use(service: MemoryService, config: MemlayerConfig, data: dict) -> dict:
    tool_name = data.get("tool_name") or ""
    if not tool_name or tool_name in config.privacy.excluded_tools:
        return {}

    privacy = config.privacy
    response = data.get("tool_response")
    tool_input = data.get("tool_input") or {}
    if not isinstance(tool_input, dict):
        tool_input = {"input": tool_input}
    masked_input = mask_sensitive_input(tool_input, privacy.exclude_patterns, privacy.private_tags)
    output = mask_secrets(tool_output_text(response), privacy.exclude_patterns, privacy.private_tags)
    success = tool_succeeded(response)
    error_message = None
    if not success and isinstance(response, dict):
        error_message = response.get("error") or response.get("stderr")

    metadata = extract_tool_metadata(tool_name, masked_input, output, success)
    service.store_event(
        data["session_id"],
        EventType.TOOL_OBSERVATION,
        output,
        {
            "tool_name": tool_name,
            "tool_input": masked_input,
            "success": success,
            "error_message": error_message,
            "tool_metadata": metadata,
        },
    )
    return {}


async def on_stop(service: MemoryService, config: MemlayerConfig, data: dict) -> dict:
    transcript = data.get("transcript_path")
    if not transcript:
        return {}
    privacy = config.privacy
    for text in read_assistant_messages(Path(transcript).expanduser()):
        masked = mask_secrets(text, privacy.exclude_patterns, privacy.private_tags)
        if len(masked.strip()) < MIN_RESPONSE_LENGTH:
            continue
        # Earlier turns reappear in the transcript tail at any later Stop.
        service.store_event(data["session_id"], EventType.RESPONSE, masked, dedupe_any_time=True)
    return {}


async def on_session_start(service: MemoryService, config: MemlayerConfig, data: dict) -> dict:
    service.start_session(data["session_id"], data.get("cwd"))
    return {}


async def on_session_end(service: MemoryService, config: MemlayerConfig, data: dict) -> dict:
    summary = mask_secrets(data.get("summary") or "", config.privacy.exclude_patterns)
    service.end_session(data["session_id"], summary)
    return {}


HANDLERS = {
    "user-prompt-submit": on_user_prompt_submit,
    "post-tool-use": on_post_tool_use,
    "stop": on_stop,
    "session-start": on_session_start,
    "session-end": on_session_end,
}


async def run_hook(name: str, data: dict, service: MemoryService, config: MemlayerConfig) -> dict:
    if not data.get("session_id"):
        raise MemlayerError("hook input has no session_id")
    return await HANDLERS[name](service, config, data)


def main() -> None:
    name = sys.argv[1] if len(sys.argv) > 1 else ""
    if name not in HANDLERS:
        print(f"Usage: python -m memlayer.hooks [{'|'.join(HANDLERS)}]", file=sys.stderr)
        sys.exit(2)

    config = load_config()
    # stdout carries the hook response; logs go to stderr.
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )

    raw = sys.stdin.read()
    try:
        data = json.loads(raw) if raw.strip() else {}
    except json.JSONDecodeError as e:
        logger.error("Invalid hook input: %s", e)
        _emit({})
        sys.exit(1)

    service = build_service(config)
    try:
        output = asyncio.run(run_hook(name, data, service, config))
    except MemlayerError as e:
        logger.error("Hook %s failed: %s", name, e)
        _emit({})
        sys.exit(1)
    finally:
        service.close()
    _emit(output)


if __name__ == "__main__":
    main()
