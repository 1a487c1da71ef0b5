"""Tool-callable wrappers over MemoryService.

These functions are designed to be exposed as tools to the AI agent (e.g. via
an MCP server), following the progressive disclosure flow: search the index
first, then fetch timelines or full details only for the ids that matter.
Every tool returns a JSON string.
"""

from __future__ import annotations

import json
from dataclasses import asdict
from typing import TYPE_CHECKING, Callable

from memlayer.errors import ValidationError
from memlayer.memory.retriever import SearchOptions

if TYPE_CHECKING:
    from memlayer.core import MemoryService


def _dump(value) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


def get_memory_tools(service: MemoryService, session_id: str | None = None) -> dict[str, Callable]:
    """Return a dict of tool_name -> callable for memory operations.

    ``session_id`` is the calling assistant session, recorded on usage rows.
    """

    async def mem_search(
        query: str,
        top_k: int | None = None,
        min_score: float | None = None,
        session: str | None = None,
        event_type: str | None = None,
    ) -> str:
        """Search memories. Returns the ranked index, plus timeline/details when confident."""
        options = SearchOptions(top_k=top_k, min_score=min_score, session_id=session, event_type=event_type)
        try:
            result = await service.search(query, options, caller_session=session_id)
        except ValidationError as e:
            return _dump({"error": str(e)})
        return _dump(result.to_dict())

    def mem_timeline(event_ids: list[str], window_size: int | None = None) -> str:
        """Events before and after each id, in the same session."""
        return _dump([asdict(t) for t in service.get_timeline(event_ids, window_size)])

    def mem_details(event_ids: list[str]) -> str:
        """Full content and metadata for specific event ids."""
        details = service.get_details(event_ids, caller_session=session_id)
        return _dump([asdict(d) for d in details])

    def mem_cite(citation_id: str) -> str:
        """Open a citation (``mem:XXXXXX``) with its previous and next events."""
        cited = service.get_cited_event(citation_id, session_id=session_id)
        if cited is None:
            return _dump({"error": f"citation {citation_id} not found"})
        return _dump(cited.to_dict())

    async def mem_stats() -> str:
        """Event, vector, session and level counts."""
        stats = await service.get_stats()
        return _dump(stats.to_dict())

    return {
        "mem_search": mem_search,
        "mem_timeline": mem_timeline,
        "mem_details": mem_details,
        "mem_cite": mem_cite,
        "mem_stats": mem_stats,
    }
