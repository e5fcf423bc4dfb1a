"""Prompt composer — restructures the base instruction and appends context.

Reassembly order is persona, body, Output Format, Constraints. Constraints
always close the instruction so they sit closest to the conversation. The
retrieval context follows, and the intent-specific mode block is the very
last thing the model reads.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from chat_engine.engine.models import Message
from chat_engine.prompting.intent import (
    ConversationSignals,
    Intent,
    IntentClassifier,
    IntentResult,
    conversation_signals,
)
from chat_engine.tools.client_tools import CLARIFYING_TOOL_NAME, DOCUMENT_TOOL_NAME

logger = logging.getLogger(__name__)

MIN_LENGTH_FOR_SYNTHESIS = 200

# A section ends at the next heading (markdown, bold or "Title:") or at a
# blank line followed by prose that is not a list item.
_SECTION_END = re.compile(
    r"^(#{1,6}\s+\S|\*\*[^*\n]+\*\*:?\s*$|[A-Z][A-Za-z ]{1,40}:\s*$)|\n[ \t]*\n(?=[^\s\-*\d])",
    re.MULTILINE,
)


def _heading(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern, re.IGNORECASE | re.MULTILINE)


PERSONA_PATTERNS: list[re.Pattern[str]] = [
    _heading(r"^#{1,3}\s*(role|persona)\s*\n"),
    _heading(r"^[ \t]*(?P<persona>(you are|you're|act as)\b[^\n]*?[.!])(?=\s|\Z)"),
    _heading(r"^[ \t]*(?P<persona>(you are|you're|act as)\b[^\n]*)"),
]

CONSTRAINT_PATTERNS: list[re.Pattern[str]] = [
    _heading(r"^#{1,4}\s*constraints\s*\n"),
    _heading(r"^\*\*constraints:?\*\*:?\s*\n"),
    _heading(r"^constraints:\s*\n"),
    _heading(r"^#{1,4}\s*(rules|requirements|guidelines)\s*\n"),
]

OUTPUT_FORMAT_PATTERNS: list[re.Pattern[str]] = [
    _heading(r"^#{1,4}\s*output format\s*\n"),
    _heading(r"^#{1,4}\s*(response|answer) format\s*\n"),
    _heading(r"^\*\*output format:?\*\*:?\s*\n"),
    _heading(r"^output format:\s*\n"),
    _heading(r"^#{1,4}\s*format\s*\n"),
]

DEFAULT_OUTPUT_FORMAT = (
    "- Lead with a one-sentence direct answer.\n"
    "- Follow with supporting detail under short headings.\n"
    "- Use markdown lists and tables where they aid scanning."
)

DEFAULT_CONSTRAINTS = (
    "- Be concise (under 250 words unless the user asks for more).\n"
    "- Do not invent facts, figures or sources; say when information is missing.\n"
    "- Ask one clarifying question if the request is ambiguous."
)


@dataclass(frozen=True)
class SharpeningRule:
    """Appends a concrete qualifier to a vague phrase, once."""

    phrase: str
    qualifier: str

    @property
    def pattern(self) -> re.Pattern[str]:
        return re.compile(
            rf"\b{self.phrase}\b(?!{re.escape(self.qualifier)})",
            re.IGNORECASE,
        )

    def apply(self, text: str) -> tuple[str, int]:
        return self.pattern.subn(lambda m: m.group(0) + self.qualifier, text)


SHARPENING_RULES: list[SharpeningRule] = [
    SharpeningRule(r"be concise", " (under 250 words unless the user asks for more)"),
    SharpeningRule(r"keep (?:it|responses|answers) (?:short|brief)", " (3-5 sentences)"),
    SharpeningRule(r"use bullet points", " (3-7 bullets per list)"),
    SharpeningRule(r"cite (?:your )?sources", " (name the document and section for each claim)"),
    SharpeningRule(r"avoid jargon", " (define any technical term on first use)"),
]


def sharpen(text: str) -> tuple[str, int]:
    """Apply every sharpening rule; returns (text, replacements). Idempotent."""
    total = 0
    for rule in SHARPENING_RULES:
        text, count = rule.apply(text)
        total += count
    return text, total


def _extract_section(text: str, patterns: list[re.Pattern[str]]) -> tuple[str | None, str]:
    """First matching heading wins; returns (section body, text without the section)."""
    for pattern in patterns:
        match = pattern.search(text)
        if match is None:
            continue
        rest = _SECTION_END.search(text, match.end())
        end = rest.start() if rest else len(text)
        body = text[match.end():end].strip()
        return body, (text[:match.start()] + text[end:])
    return None, text


def _extract_persona(text: str) -> tuple[str | None, str]:
    for pattern in PERSONA_PATTERNS:
        match = pattern.search(text)
        if match is None:
            continue
        if "persona" in pattern.groupindex:
            return match.group("persona").strip(), text[:match.start()] + text[match.end():]
        rest = _SECTION_END.search(text, match.end())
        end = rest.start() if rest else len(text)
        return text[match.end():end].strip(), text[:match.start()] + text[end:]
    return None, text


# ---------------------------------------------------------------------------
# Mode blocks
# ---------------------------------------------------------------------------

VISUAL_TOOLS_BLOCK = (
    "## Visual Tools\n"
    "When the answer involves numbers, comparisons, plans or choices, you may "
    "call show_chart, show_data_table, show_stats, show_plan or show_options "
    "instead of describing the data in prose. Call at most one visual tool per "
    "answer and always add a short written explanation."
)

_MODE_BLOCKS: dict[Intent, str] = {
    Intent.DOCUMENT_DRAFTING: (
        "## Response Mode: Document Drafting\n"
        f"The user wants a document drafted. If essential details are missing, call "
        f"{CLARIFYING_TOOL_NAME} once with a few short steps. Otherwise call "
        f"{DOCUMENT_TOOL_NAME} with the full document as titled sections. Do not call "
        "chart, table, stats or plan tools."
    ),
    Intent.CONTINUE_DOCUMENT: (
        "## Response Mode: Continue Document Drafting\n"
        "The user has just answered your clarifying questions. Do not ask further "
        f"questions. Call {DOCUMENT_TOOL_NAME} now, using their answers and any "
        "retrieved context."
    ),
    Intent.NARRATIVE_ONLY: (
        "## Response Mode: Narrative\n"
        "Answer in prose only. Do not call any visual or interactive tools."
    ),
    Intent.OFF_TOPIC: (
        "## Response Mode: Off Topic\n"
        "The request falls outside the purpose of this prompt. Say so in one "
        "sentence and suggest how the user could use this assistant instead. "
        "Do not call tools."
    ),
}


def mode_block(intent: IntentResult) -> str:
    if intent.intent == Intent.EXPLICIT_VISUAL and intent.explicit_tool:
        return (
            "## Response Mode: Visual\n"
            f"The user explicitly asked for a visual. Call {intent.explicit_tool} "
            "with well-structured data, then add a brief explanation."
        )
    return _MODE_BLOCKS.get(intent.intent, "")


@dataclass
class ComposedPrompt:
    text: str
    intent: IntentResult | None = None
    modifications: list[str] = field(default_factory=list)


class PromptComposer:
    def __init__(self, classifier: IntentClassifier | None = None) -> None:
        self._classifier = classifier or IntentClassifier()

    def signals(self, messages: list[Message]) -> ConversationSignals:
        return conversation_signals(messages)

    def classify(self, signals: ConversationSignals) -> IntentResult:
        return self._classifier.classify(signals)

    def restructure(self, base_instruction: str) -> tuple[str, list[str]]:
        """Reorder the base instruction; returns (text, list of modifications)."""
        source = base_instruction.strip()
        modifications: list[str] = []

        persona, rest = _extract_persona(source)
        output_format, rest = _extract_section(rest, OUTPUT_FORMAT_PATTERNS)
        constraints, rest = _extract_section(rest, CONSTRAINT_PATTERNS)
        body = rest.strip()
        long_enough = len(source) > MIN_LENGTH_FOR_SYNTHESIS

        if persona:
            modifications.append("Placed role statement first")
        if output_format is None and long_enough:
            output_format = DEFAULT_OUTPUT_FORMAT
            modifications.append("Added default output format")
        if constraints is None and long_enough:
            constraints = DEFAULT_CONSTRAINTS
            modifications.append("Added default constraints")
        elif constraints is not None:
            modifications.append("Moved constraints to the end")
        if constraints:
            constraints, sharpened = sharpen(constraints)
            if sharpened:
                modifications.append(f"Sharpened {sharpened} constraint phrase(s)")

        blocks = [b for b in (persona, body) if b]
        if output_format:
            blocks.append(f"## Output Format\n{output_format}")
        if constraints:
            blocks.append(f"## Constraints\n{constraints}")
        return "\n\n".join(blocks), modifications

    def compose(
        self,
        base_instruction: str,
        retrieval_context: str = "",
        signals: ConversationSignals | None = None,
        intent: IntentResult | None = None,
    ) -> ComposedPrompt:
        """Restructure, append retrieved context, then the mode block.

        ``intent`` may be passed when the caller already classified this turn.
        """
        text, modifications = self.restructure(base_instruction)
        blocks = [text] if text else []

        if retrieval_context:
            blocks.append(retrieval_context)
            modifications.append("Appended retrieved context")

        if intent is None and signals is not None:
            intent = self.classify(signals)
        if intent is not None:
            if intent.intent not in (Intent.NARRATIVE_ONLY, Intent.OFF_TOPIC) and not intent.is_document_mode:
                blocks.append(VISUAL_TOOLS_BLOCK)
            block = mode_block(intent)
            if block:
                blocks.append(block)
                modifications.append(f"Added {intent.intent.value} mode instructions")

        logger.debug("Composed instruction (%d chars): %s", sum(map(len, blocks)), modifications)
        return ComposedPrompt(text="\n\n".join(blocks), intent=intent, modifications=modifications)
