"""Intent classification for the latest user message.

Patterns are checked in a fixed order; the first family that matches wins.
A conversation that is waiting on answers to a clarifying-question widget is
treated as a continuation of document drafting unless the new message makes
an explicit request of its own.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

from chat_engine.engine.models import Message, Role
from chat_engine.tools.client_tools import CLARIFYING_TOOL_NAME

RECENT_ASSISTANT_MESSAGES = 2


class Intent(str, Enum):
    GENERAL = "general"
    EXPLICIT_VISUAL = "explicit_visual"
    DOCUMENT_DRAFTING = "document_drafting"
    CONTINUE_DOCUMENT = "continue_document"
    NARRATIVE_ONLY = "narrative_only"
    OFF_TOPIC = "off_topic"


INTENT_LABELS = {
    Intent.GENERAL: "General question",
    Intent.EXPLICIT_VISUAL: "Visual request",
    Intent.DOCUMENT_DRAFTING: "Document drafting",
    Intent.CONTINUE_DOCUMENT: "Continue document drafting",
    Intent.NARRATIVE_ONLY: "Narrative only",
    Intent.OFF_TOPIC: "Off topic",
}


@dataclass(frozen=True)
class ConversationSignals:
    latest_user_message: str
    awaiting_clarification: bool = False


@dataclass(frozen=True)
class IntentResult:
    intent: Intent
    explicit_tool: str | None = None

    @property
    def is_document_mode(self) -> bool:
        return self.intent in (Intent.DOCUMENT_DRAFTING, Intent.CONTINUE_DOCUMENT)

    def payload(self) -> dict[str, Any]:
        return {
            "explicitTool": self.explicit_tool,
            "isDocumentDrafting": self.is_document_mode,
            "isNarrativeOnly": self.intent == Intent.NARRATIVE_ONLY,
            "isOffTopic": self.intent == Intent.OFF_TOPIC,
            "isContinuation": self.intent == Intent.CONTINUE_DOCUMENT,
            "detectedIntent": INTENT_LABELS[self.intent],
        }


def _rx(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern, re.IGNORECASE)


def conversation_signals(messages: list[Message]) -> ConversationSignals:
    """Derive per-turn signals from history, once."""
    latest = ""
    for msg in reversed(messages):
        if msg.role == Role.USER:
            latest = msg.content
            break

    recent = [m for m in messages if m.role == Role.ASSISTANT][-RECENT_ASSISTANT_MESSAGES:]
    awaiting = any(tc.name == CLARIFYING_TOOL_NAME for m in recent for tc in m.tool_calls)
    return ConversationSignals(latest_user_message=latest, awaiting_clarification=awaiting)


class IntentClassifier:
    """Maps the latest user message to an ``IntentResult``.

    Order of checks:
      narrative-only  => NARRATIVE_ONLY   ("no charts, just explain")
      visual tool     => EXPLICIT_VISUAL  (first tool pattern wins)
      off-topic       => OFF_TOPIC
      awaiting answer => CONTINUE_DOCUMENT
      drafting        => DOCUMENT_DRAFTING
      *               => GENERAL
    """

    NARRATIVE_PATTERNS: list[re.Pattern[str]] = [
        _rx(r"\b(no|without)\s+(charts?|graphs?|tables?|visuals?|widgets?)\b"),
        _rx(r"\b(just|only)\s+(text|prose|words|explain|describe|tell me)\b"),
        _rx(r"\bin\s+(plain\s+)?(prose|paragraphs|narrative form)\b"),
    ]

    EXPLICIT_TOOL_PATTERNS: list[tuple[re.Pattern[str], str]] = [
        (_rx(r"\b(chart|graph|plot|visuali[sz](e|ation))\b"), "show_chart"),
        (_rx(r"\b(table|tabular|spreadsheet|matrix)\b"), "show_data_table"),
        (_rx(r"\b(kpis?|metrics|stats|statistics|scorecard)\b"), "show_stats"),
        (_rx(r"\b(roadmap|timeline|action plan|project plan|step[- ]by[- ]step plan)\b"), "show_plan"),
        (_rx(r"\b(give me (some )?options|what are my options|list (the |some )?options)\b"), "show_options"),
    ]

    OFF_TOPIC_PATTERNS: list[re.Pattern[str]] = [
        _rx(r"\b(weather|joke|recipe|horoscope|lottery|sports? scores?|movie recommendations?)\b"),
    ]

    DOCUMENT_PATTERNS: list[re.Pattern[str]] = [
        _rx(r"\b(draft|write|create|generate|prepare|produce|build)\b.{0,40}?"
            r"\b(sow|statement of work|document|proposal|report|contract|brief|memo)\b"),
        _rx(r"\bstatement of work\b"),
    ]

    def classify(self, signals: ConversationSignals) -> IntentResult:
        text = signals.latest_user_message.strip()

        if any(p.search(text) for p in self.NARRATIVE_PATTERNS):
            return IntentResult(Intent.NARRATIVE_ONLY)
        for pattern, tool_name in self.EXPLICIT_TOOL_PATTERNS:
            if pattern.search(text):
                return IntentResult(Intent.EXPLICIT_VISUAL, explicit_tool=tool_name)
        if any(p.search(text) for p in self.OFF_TOPIC_PATTERNS):
            return IntentResult(Intent.OFF_TOPIC)
        if signals.awaiting_clarification:
            return IntentResult(Intent.CONTINUE_DOCUMENT)
        if any(p.search(text) for p in self.DOCUMENT_PATTERNS):
            return IntentResult(Intent.DOCUMENT_DRAFTING)
        return IntentResult(Intent.GENERAL)
