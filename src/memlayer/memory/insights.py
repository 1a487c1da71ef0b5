"""Insight extraction: turn recurring prompts into ``insight`` events.

Two heuristics run over the prompts of a lookback window:

    pattern     the same normalised prompt asked at least ``insight_min_repeats``
                times, across any sessions
    preference  a prompt stating a preference ("I prefer", "always", "never", ...)

Insights are ordinary ledger events under ``INSIGHT_SESSION`` and go through the
outbox like everything else. Re-running over the same window stores nothing new.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from memlayer.config import GraduationConfig
from memlayer.memory.db import utcnow
from memlayer.memory.extract import summarize
from memlayer.memory.ledger import EventLedger
from memlayer.memory.models import Event, EventType, InsightPayload

logger = logging.getLogger(__name__)

INSIGHT_SESSION = "memlayer-insights"
PREFERENCE_CONFIDENCE = 0.7
_PREFERENCE = re.compile(r"\b(prefer|like|want|always|never|favou?rite)\b", re.IGNORECASE)
_SCAN_LIMIT = 5000


@dataclass
class InsightReport:
    scanned: int = 0
    patterns: int = 0
    preferences: int = 0
    stored: list[str] = field(default_factory=list)
    dry_run: bool = False


def _normalise(text: str) -> str:
    return " ".join(text.casefold().split())


def detect_patterns(prompts: list[Event], min_repeats: int = 2) -> list[InsightPayload]:
    groups: dict[str, list[Event]] = {}
    for event in prompts:
        key = _normalise(event.text)
        if key:
            groups.setdefault(key, []).append(event)

    patterns = []
    for events in groups.values():
        if len(events) < min_repeats:
            continue
        events.sort(key=lambda e: (e.timestamp, e.seq))
        patterns.append(
            InsightPayload(
                text=f"Repeated topic: {summarize(events[0].text, 80)}",
                insight_type="pattern",
                confidence=min(1.0, len(events) / 5),
                source_event_ids=tuple(e.id for e in events),
            )
        )
    return patterns


def detect_preferences(prompts: list[Event]) -> list[InsightPayload]:
    preferences = []
    for event in prompts:
        if not _PREFERENCE.search(event.text):
            continue
        preferences.append(
            InsightPayload(
                text=f"User preference: {summarize(event.text, 120)}",
                insight_type="preference",
                confidence=PREFERENCE_CONFIDENCE,
                source_event_ids=(event.id,),
            )
        )
    return preferences


class InsightExtractor:
    def __init__(self, ledger: EventLedger, config: GraduationConfig | None = None) -> None:
        self.ledger = ledger
        self.config = config or GraduationConfig()

    def extract(self, now: datetime | None = None, dry_run: bool = False) -> InsightReport:
        since = (now or utcnow()) - timedelta(days=self.config.insight_lookback_days)
        prompts = self.ledger.list_recent(limit=_SCAN_LIMIT, event_type=EventType.PROMPT, since=since)
        patterns = detect_patterns(prompts, self.config.insight_min_repeats)
        preferences = detect_preferences(prompts)
        report = InsightReport(
            scanned=len(prompts), patterns=len(patterns), preferences=len(preferences), dry_run=dry_run
        )
        if dry_run:
            return report

        for payload in patterns + preferences:
            result = self.ledger.append(INSIGHT_SESSION, EventType.INSIGHT, payload, dedupe_any_time=True)
            if not result.is_duplicate:
                report.stored.append(result.event_id)
        if report.stored:
            logger.info("Stored %d new insights from %d prompts", len(report.stored), report.scanned)
        return report
