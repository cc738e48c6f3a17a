"""
Prompt building for aigate's model-invoking operations.

Chat sessions carry a typed context: one model per session type, tagged by
``session_type``, each with only the fields that session uses.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from aigate.errors import ValidationError


# =============================================================================
# Text enhancement
# =============================================================================

EnhanceContext = Literal["organization_description", "objective", "key_result", "initiative", "general"]

ENHANCE_CONTEXTS = ("organization_description", "objective", "key_result", "initiative", "general")

_ONLY_TEXT = "- Reply ONLY with the improved text, no extra explanation"

ENHANCE_SYSTEM_PROMPTS: dict[str, str] = {
    "organization_description": "\n".join([
        "You are an expert in corporate communication. Improve the description of an "
        "organization so it reads as more professional, clear and engaging.",
        "",
        "Rules:",
        "- Keep the essence and the original message",
        "- Improve clarity and professionalism",
        "- Use inspiring but authentic language",
        "- Keep a professional yet approachable tone",
        "- Limit: 200 words at most",
        _ONLY_TEXT,
    ]),
    "objective": "\n".join([
        "You are an OKR (Objectives and Key Results) expert. Improve the wording of an "
        "objective so it is clearer, inspiring and measurable.",
        "",
        "Rules:",
        "- The objective must be ambitious but achievable",
        "- It must inspire and motivate the team",
        "- It must be clear and easy to understand",
        "- Keep the original intent",
        "- Limit: 100 words at most",
        _ONLY_TEXT,
    ]),
    "key_result": "\n".join([
        "You are an OKR expert. Improve the wording of a key result so it is specific, "
        "measurable and time-bound.",
        "",
        "Rules:",
        "- It must be fully measurable",
        "- It must include specific metrics",
        "- It must have a clear or implied deadline",
        "- Keep the original metric if there is one",
        "- Limit: 50 words at most",
        _ONLY_TEXT,
    ]),
    "initiative": "\n".join([
        "You are a project management expert. Improve the description of an initiative "
        "so it is clearer and actionable.",
        "",
        "Rules:",
        "- Clearly describe the action to take",
        "- Be specific and actionable",
        "- Keep the original purpose",
        "- Limit: 100 words at most",
        _ONLY_TEXT,
    ]),
    "general": "\n".join([
        "You are an expert in professional writing. Improve the text so it is clearer, "
        "more concise and professional.",
        "",
        "Rules:",
        "- Keep the original intent",
        "- Improve clarity and structure",
        "- Use professional language",
        _ONLY_TEXT,
    ]),
}

ENHANCE_MAX_TOKENS = 500


def build_enhance_prompt(
    text: str,
    context: str = "general",
    organization_name: Optional[str] = None,
    additional_context: Optional[dict[str, Any]] = None,
) -> tuple[str, str]:
    """
    Build the (system, user) prompt pair for text enhancement.

    Raises:
        ValidationError: If context is not a known enhance context
    """
    if context not in ENHANCE_SYSTEM_PROMPTS:
        raise ValidationError.for_field(
            "context", f"must be one of: {', '.join(ENHANCE_CONTEXTS)}"
        )

    user_prompt = f'Original text: "{text}"'
    if organization_name:
        user_prompt += f"\n\nOrganization name: {organization_name}"
    if additional_context:
        user_prompt += f"\n\nAdditional context: {json.dumps(additional_context, sort_keys=True)}"
    user_prompt += "\n\nPlease improve this text following the rules above."

    return ENHANCE_SYSTEM_PROMPTS[context], user_prompt


# =============================================================================
# Chat sessions
# =============================================================================

CHAT_SYSTEM_PROMPT = """You are an expert assistant in OKRs (Objectives and Key Results) and strategic management. You help business users to:

1. **Create effective OKRs**: clear objectives, ambitious but achievable
2. **Define measurable key results**: specific, quantifiable metrics
3. **Align strategic objectives**: connect individual OKRs with company goals
4. **Track and evaluate**: monitor progress and adjust strategy
5. **Apply best practices**: use proven OKR methodologies

**Communication style:**
- Professional but approachable
- Structured, actionable answers
- Practical examples where possible
- Ask for specific context when needed
- Concise but complete"""

CHAT_MAX_TOKENS = 1500

COMPANY_SIZE_LABELS = {
    "startup": "Startup (1-50 employees)",
    "sme": "SME (50-250 employees)",
    "midsize": "Mid-size company (250-1000 employees)",
    "enterprise": "Large corporation (1000+ employees)",
}


class ChatMessage(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str = Field(..., min_length=1)


class _SessionContext(BaseModel):
    model_config = ConfigDict(extra="forbid")

    department: Optional[str] = None
    role: Optional[str] = None
    company_size: Optional[Literal["startup", "sme", "midsize", "enterprise"]] = None


class StrategyContext(_SessionContext):
    """Planning new objectives."""
    session_type: Literal["strategy"] = "strategy"
    time_horizon: Optional[str] = None
    focus_areas: list[str] = Field(default_factory=list)


class TrackingContext(_SessionContext):
    """Following up on an existing objective."""
    session_type: Literal["tracking"] = "tracking"
    objective: str = Field(..., min_length=1)
    progress_percent: Optional[float] = Field(None, ge=0, le=100)
    key_results: list[str] = Field(default_factory=list)


class ProblemSolvingContext(_SessionContext):
    """Unblocking a specific problem."""
    session_type: Literal["problem_solving"] = "problem_solving"
    problem: str = Field(..., min_length=1)
    urgency: Literal["low", "medium", "high"] = "medium"


class GeneralContext(_SessionContext):
    session_type: Literal["general"] = "general"
    topic: Optional[str] = None


ChatContext = Annotated[
    Union[StrategyContext, TrackingContext, ProblemSolvingContext, GeneralContext],
    Field(discriminator="session_type"),
]

_chat_context = TypeAdapter(ChatContext)


def _details(error: PydanticValidationError, prefix: str) -> list[dict]:
    return [
        {
            "field": ".".join([prefix, *(str(p) for p in e["loc"])]),
            "message": e["msg"],
        }
        for e in error.errors()
    ]


def parse_chat_context(data: Any) -> ChatContext:
    """
    Turn a JSON object into a typed chat context. None means a general session.

    Raises:
        ValidationError: With field-level details if the object does not match
    """
    if data is None:
        return GeneralContext()
    if isinstance(data, dict) and "session_type" not in data:
        data = {**data, "session_type": "general"}
    try:
        return _chat_context.validate_python(data)
    except PydanticValidationError as e:
        raise ValidationError("Invalid chat context", _details(e, "context")) from e


def parse_chat_messages(data: Any) -> list[ChatMessage]:
    """
    Raises:
        ValidationError: If there is no valid message
    """
    if not isinstance(data, list) or not data:
        raise ValidationError.for_field("messages", "at least one message is required")
    try:
        return [ChatMessage.model_validate(m) for m in data]
    except PydanticValidationError as e:
        raise ValidationError("Invalid chat messages", _details(e, "messages")) from e


def _profile_lines(context: _SessionContext) -> list[str]:
    lines = []
    if context.department:
        lines.append(f"- Department: {context.department}")
    if context.role:
        lines.append(f"- Role: {context.role}")
    if context.company_size:
        lines.append(f"- Company size: {COMPANY_SIZE_LABELS[context.company_size]}")
    return lines


def build_chat_system_prompt(context: ChatContext) -> str:
    """
    System prompt for a chat session.

    Raises:
        ValidationError: If context is not one of the session context types
    """
    if isinstance(context, StrategyContext):
        lines = ["**Session: strategy planning.** Help define objectives and key results."]
        if context.time_horizon:
            lines.append(f"- Time horizon: {context.time_horizon}")
        if context.focus_areas:
            lines.append(f"- Focus areas: {', '.join(context.focus_areas)}")
    elif isinstance(context, TrackingContext):
        lines = [
            "**Session: progress tracking.** Review progress and suggest adjustments.",
            f"- Objective: {context.objective}",
        ]
        if context.progress_percent is not None:
            lines.append(f"- Current progress: {context.progress_percent:.0f}%")
        for kr in context.key_results:
            lines.append(f"- Key result: {kr}")
    elif isinstance(context, ProblemSolvingContext):
        lines = [
            "**Session: problem solving.** Diagnose the blocker and propose concrete next steps.",
            f"- Problem: {context.problem}",
            f"- Urgency: {context.urgency}",
        ]
        if context.urgency == "high":
            lines.append("Lead with the single most important action.")
    elif isinstance(context, GeneralContext):
        lines = []
        if context.topic:
            lines.append(f"- Topic: {context.topic}")
    else:
        raise ValidationError.for_field(
            "context.session_type", f"unsupported session context {type(context).__name__}"
        )

    profile = _profile_lines(context)
    if profile:
        lines.append("")
        lines.append("**User context:**")
        lines.extend(profile)

    if not lines:
        return CHAT_SYSTEM_PROMPT
    return CHAT_SYSTEM_PROMPT + "\n\n" + "\n".join(lines)


def render_transcript(messages: list[ChatMessage]) -> str:
    """Flatten a conversation into a single prompt, latest message last."""
    return "\n\n".join(f"{m.role}: {m.content}" for m in messages)
