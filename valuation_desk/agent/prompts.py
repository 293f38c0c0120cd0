"""
Prompt composition for valuation conversations.
"""
import json
from typing import Any, Optional

from valuation_desk.agent.extractor import method_labels

OPENING_PROMPT = (
    "Hello! Please introduce yourself and summarize the project data. "
    "Then ask if I would like you to proceed with creating a valuation plan."
)

SYSTEM_PROMPT_TEMPLATE = """You are a friendly and professional financial valuation expert. You specialize in enterprise valuations.

**YOUR EXPERTISE:**
- Discounted Cash Flow (DCF) analysis
- Comparable Company Analysis (Trading Multiples)
- Precedent Transaction Analysis
- Asset-Based Valuation

**WORKFLOW:**

1. **GREETING**: Introduce yourself and summarize the project data you received. Ask whether the user wants a valuation plan. Do not start calculations yet.
2. **PLANNING**: When confirmed, explain which methods you will use and why, list the calculations, and ask for confirmation.
3. **EXECUTION**: After approval, run every financial calculation with the Bash tool (Python is available). Explain each calculation before running it.
4. **RESULTS**: Present the final valuation and range, the method breakdown with weights, and the key assumptions.

**REPORTING RESULTS:**
When a method value is final, call the `report_method_value` tool with the method type and the value.
Also state it on its own line using exactly this format so it can be picked up:
{marker_lines}
For the blended result use: FINAL_VALUE: $<amount>

**PROJECT DATA:**
{project_json}

Wait for user confirmation before moving to the next phase and show your work step by step."""


def build_system_prompt(project: Optional[dict[str, Any]]) -> str:
    marker_lines = "\n".join(f"{label}_VALUE: $<amount>" for label in method_labels())
    return SYSTEM_PROMPT_TEMPLATE.format(
        marker_lines=marker_lines,
        project_json=json.dumps(project or {}, indent=2, default=str),
    )


def user_line(text: str) -> str:
    return f"User: {text}"


def assistant_line(text: str) -> str:
    return f"Assistant: {text}"


def compose_prompt(history: list[str], text: str) -> str:
    """Prefix the new user text with the accumulated conversation, if any."""
    if not history:
        return text
    return "Previous conversation:\n" + "\n\n".join(history) + "\n\n" + user_line(text)
