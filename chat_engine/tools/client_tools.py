"""Client-rendered tools: declarations shown to the model and their placeholders.

These tools are a UI-routing mechanism. The model "calls" them with the data
the client needs to draw a widget; the engine never executes anything and
answers the model with a fixed acknowledgement.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from chat_engine.engine.models import ToolDeclaration


@dataclass(frozen=True)
class ClientToolDef:
    """Registration record for a single client-rendered tool."""

    declaration: ToolDeclaration
    placeholder: str

    @property
    def name(self) -> str:
        return self.declaration.name


def _string(description: str, enum: list[str] | None = None) -> dict[str, Any]:
    schema: dict[str, Any] = {"type": "string", "description": description}
    if enum:
        schema["enum"] = enum
    return schema


def _array(items: dict[str, Any], description: str) -> dict[str, Any]:
    return {"type": "array", "description": description, "items": items}


def _object(properties: dict[str, Any], required: list[str]) -> dict[str, Any]:
    return {"type": "object", "properties": properties, "required": required}


_RECORD = {"type": "object", "description": "One record; keys match xKey / column keys."}


# ---------------------------------------------------------------------------
# Visual widgets
# ---------------------------------------------------------------------------

SHOW_CHART = ClientToolDef(
    declaration=ToolDeclaration(
        name="show_chart",
        description=(
            "Render a bar, line, area or pie chart in the chat. Use when the "
            "user asks to visualise numbers or compare values over time."
        ),
        parameters=_object(
            {
                "title": _string("Chart title"),
                "type": _string("Chart type", ["bar", "line", "area", "pie"]),
                "data": _array(_RECORD, "Data points"),
                "xKey": _string("Key in each data point used for the x axis"),
                "series": _array(
                    _object(
                        {
                            "name": _string("Key in each data point holding the value"),
                            "label": _string("Legend label"),
                            "color": _string("Optional hex colour"),
                        },
                        ["name", "label"],
                    ),
                    "Value series to plot",
                ),
            },
            ["title", "type", "data", "xKey", "series"],
        ),
    ),
    placeholder="Chart displayed to the user.",
)

SHOW_DATA_TABLE = ClientToolDef(
    declaration=ToolDeclaration(
        name="show_data_table",
        description="Render a table of rows and columns for structured comparisons.",
        parameters=_object(
            {
                "title": _string("Table title"),
                "columns": _array(
                    _object({"key": _string("Row key"), "label": _string("Header")}, ["key", "label"]),
                    "Column definitions",
                ),
                "rows": _array(_RECORD, "Table rows"),
            },
            ["title", "columns", "rows"],
        ),
    ),
    placeholder="Table displayed to the user.",
)

SHOW_PLAN = ClientToolDef(
    declaration=ToolDeclaration(
        name="show_plan",
        description="Render an ordered plan or roadmap with per-step status.",
        parameters=_object(
            {
                "title": _string("Plan title"),
                "steps": _array(
                    _object(
                        {
                            "id": _string("Stable step id"),
                            "title": _string("Step title"),
                            "description": _string("Optional detail"),
                            "status": _string("Step status", ["pending", "in_progress", "complete"]),
                        },
                        ["id", "title", "status"],
                    ),
                    "Plan steps in order",
                ),
            },
            ["title", "steps"],
        ),
    ),
    placeholder="Plan displayed to the user.",
)

SHOW_STATS = ClientToolDef(
    declaration=ToolDeclaration(
        name="show_stats",
        description="Render headline metrics (KPI cards) with optional deltas and trends.",
        parameters=_object(
            {
                "title": _string("Card group title"),
                "stats": _array(
                    _object(
                        {
                            "label": _string("Metric name"),
                            "value": _string("Formatted value"),
                            "delta": _string("Optional change, e.g. +4%"),
                            "trend": _string("Direction", ["up", "down", "neutral"]),
                        },
                        ["label", "value"],
                    ),
                    "Metrics to show",
                ),
            },
            ["title", "stats"],
        ),
    ),
    placeholder="Statistics displayed to the user.",
)

# ---------------------------------------------------------------------------
# Interactive widgets
# ---------------------------------------------------------------------------

_OPTION = _object(
    {"id": _string("Option id"), "label": _string("Option label"), "description": _string("Optional detail")},
    ["id", "label"],
)

SHOW_OPTIONS = ClientToolDef(
    declaration=ToolDeclaration(
        name="show_options",
        description="Offer the user a list of options to pick from.",
        parameters=_object(
            {
                "title": _string("Prompt shown above the options"),
                "options": _array(_OPTION, "Selectable options"),
                "selectionMode": _string("Single or multiple choice", ["single", "multi"]),
            },
            ["title", "options"],
        ),
    ),
    placeholder="Options displayed to the user. Wait for their selection.",
)

ASK_QUESTIONS = ClientToolDef(
    declaration=ToolDeclaration(
        name="ask_questions",
        description=(
            "Ask the user a short multi-step set of clarifying questions before "
            "drafting a document. Each step offers a few options."
        ),
        parameters=_object(
            {
                "id": _string("Question flow id"),
                "title": _string("Flow title"),
                "steps": _array(
                    _object(
                        {
                            "id": _string("Step id"),
                            "title": _string("Question"),
                            "description": _string("Optional detail"),
                            "options": _array(_OPTION, "Answer options"),
                        },
                        ["id", "title", "options"],
                    ),
                    "Question steps",
                ),
            },
            ["id", "title", "steps"],
        ),
    ),
    placeholder="Questions displayed to the user. Wait for their answers before drafting.",
)

GENERATE_DOCUMENT = ClientToolDef(
    declaration=ToolDeclaration(
        name="generate_document",
        description=(
            "Produce a structured document (for example a statement of work) "
            "as titled sections the user can review and edit."
        ),
        parameters=_object(
            {
                "documentType": _string("Kind of document, e.g. SOW"),
                "title": _string("Document title"),
                "sections": _array(
                    _object(
                        {
                            "id": _string("Section id"),
                            "title": _string("Section heading"),
                            "content": _string("Section body in markdown"),
                            "sources": _array(
                                _object(
                                    {
                                        "documentId": _string("Source document id"),
                                        "jsonPath": _string("Path inside the source document"),
                                        "snippet": _string("Quoted excerpt"),
                                    },
                                    ["documentId", "snippet"],
                                ),
                                "Retrieved passages this section relies on",
                            ),
                        },
                        ["id", "title", "content"],
                    ),
                    "Document sections in order",
                ),
            },
            ["documentType", "title", "sections"],
        ),
    ),
    placeholder="Document displayed to the user for review.",
)


CLIENT_TOOLS: tuple[ClientToolDef, ...] = (
    SHOW_CHART,
    SHOW_DATA_TABLE,
    SHOW_PLAN,
    SHOW_STATS,
    SHOW_OPTIONS,
    ASK_QUESTIONS,
    GENERATE_DOCUMENT,
)

VISUAL_TOOL_NAMES = frozenset({"show_chart", "show_data_table", "show_plan", "show_stats"})
CLARIFYING_TOOL_NAME = ASK_QUESTIONS.name
DOCUMENT_TOOL_NAME = GENERATE_DOCUMENT.name
