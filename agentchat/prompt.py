"""Layered system prompt assembly."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date

from agentchat.models import Agent, Feature

FORMATTING_GUIDANCE = """

## Response formatting
Use markdown so replies are easy to read:
- **Bold** for emphasis and *italic* when needed
- Bullet or numbered lists for options, steps, or multiple items
- Tables (| col1 | col2 |) for comparisons or structured data
- `inline code` for technical terms, and code blocks for longer snippets
- Short paragraphs; add blank lines between sections"""

OFFICIAL_IMAGE_GUIDANCE = """

You can use markdown formatting:
- Use **bold** and *italic* for emphasis
- Use bullet points and numbered lists
- When referencing images or logos from your knowledge, use markdown: ![Description](URL)
- If you have image URLs in your context, display them!"""

SCHEDULING_CAPABILITY = """

## Scheduling Capability
You can help users schedule meetings with your creator. When users ask about scheduling, meeting times, or availability:
- Be helpful and proactive
- Present the available times clearly when you have them
- Tell users they can select a time from the interactive booking card that appears below your message
- Ask clarifying questions if needed (preferred time of day, meeting type, etc.)
- DO NOT direct users to external URLs - booking happens in this chat
"""

TOOL_RESULTS_HEADER = """
## RETRIEVED INFORMATION (USE THIS DATA - DO NOT OUTPUT CODE)

The following information was ALREADY retrieved from tool servers on behalf of the user.
Your job is to PRESENT this information in a helpful, formatted way.

ABSOLUTE RULES:
1. DO NOT write Python, JavaScript, or ANY code showing how to call these tools
2. DO NOT explain how to use the tool API
3. DO NOT show import statements or function calls
4. JUST use the retrieved data to answer the user's question directly
5. Format the information nicely with markdown
"""

API_RESULTS_HEADER = """
## API RESULTS (USE THIS DATA - DO NOT OUTPUT CODE)

The following data was ALREADY retrieved from APIs on behalf of the user.
Your job is to PRESENT this information in a helpful, formatted way.

ABSOLUTE RULES:
1. DO NOT write code showing how to query these APIs
2. DO NOT show GraphQL queries or fetch examples
3. JUST use the retrieved data to answer the user's question directly
4. Format the information nicely: use **bold** for key terms, bullet or numbered lists for multiple items, and markdown tables (| col | col |) for comparisons or rows of data. Keep paragraphs short.
"""

TOOL_RESULTS_REMINDER = "\n\n[REMINDER: Answer using the RETRIEVED INFORMATION at the top. DO NOT output code.]"
API_RESULTS_REMINDER = (
    "\n\n[CRITICAL REMINDER: The API data above contains the answer. Present it directly - DO NOT output code.]"
)


@dataclass(slots=True)
class PromptContext:
    """Everything gathered for one turn that can reach the system prompt.

    Nothing here may carry calendar busy data; scheduling text is built from
    window-only slots before it is placed on this object.
    """

    tool_sections: list[str] = field(default_factory=list)
    api_sections: list[str] = field(default_factory=list)
    knowledge: str = ""
    scheduling: str | None = None
    events: str | None = None
    api_catalog: str = ""


def date_anchor(today: date) -> str:
    formatted = f"{today.strftime('%A, %B')} {today.day}, {today.year}"
    return (
        f"CURRENT DATE: Today is {formatted}. When users ask about \"today\", \"tomorrow\", \"this week\", etc., "
        "use this date as reference.\n\n"
    )


def build_system_prompt(agent: Agent, context: PromptContext, today: date) -> str:
    parts = [date_anchor(today)]

    if context.tool_sections:
        parts.append(TOOL_RESULTS_HEADER + "\n" + "\n".join(context.tool_sections) + "\n\n---END OF RETRIEVED DATA---\n\n")
    if context.api_sections:
        parts.append(API_RESULTS_HEADER + "\n" + "\n".join(context.api_sections) + "\n\n---END OF API DATA---\n\n")

    parts.append(agent.system_instructions or f"You are a helpful AI assistant named {agent.name}.")
    parts.append(FORMATTING_GUIDANCE)

    if context.knowledge:
        parts.append(
            "\n\nYou have access to the following knowledge sources. Use this information to help answer "
            f"questions when relevant:{context.knowledge}"
        )
    if agent.visibility == "official" and agent.enabled(Feature.KNOWLEDGE_BASE):
        parts.append(OFFICIAL_IMAGE_GUIDANCE)

    if agent.enabled(Feature.SCHEDULING):
        parts.append(SCHEDULING_CAPABILITY)
        if context.scheduling:
            parts.append(context.scheduling)

    if context.events is not None:
        parts.append(context.events)

    if context.api_catalog:
        parts.append(context.api_catalog)

    if context.tool_sections:
        parts.append(TOOL_RESULTS_REMINDER)
    if context.api_sections:
        parts.append(API_RESULTS_REMINDER)
    return "".join(parts)
