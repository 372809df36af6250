"""
FormPilot - Decision Sources
Whatever proposes the next actions for a page.

- ScriptedDecisionSource: replays a fixed list of decisions (tests, demos,
  replays of recorded sessions).
- LLMDecisionSource: asks an OpenAI chat model for a JSON action list.

Both implement `async decide(context, history) -> Decision`, where context is
the initial PageSnapshot on the first cycle and the last DiffSummary after
that. An empty action list with no intervention means the form is done.
"""

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Union

from openai import AsyncOpenAI, OpenAIError
from pydantic import BaseModel, Field, ValidationError

from formpilot.browser.snapshot import PageSnapshot
from formpilot.core.config import get_settings
from formpilot.core.errors import DecisionError
from formpilot.models.actions import ActionRequest
from formpilot.models.session import CycleRecord
from formpilot.services.diff import DiffSummary

logger = logging.getLogger(__name__)
settings = get_settings()

DecisionContext = Union[PageSnapshot, DiffSummary]


@dataclass
class HumanInterventionRequest:
    """The decision source wants a person to take over."""
    reason: str
    action: str = "complete the required step"

    def to_dict(self) -> Dict[str, Any]:
        return {"reason": self.reason, "action": self.action}


@dataclass
class Decision:
    """Actions for this cycle, or a request for a human."""
    actions: List[ActionRequest] = field(default_factory=list)
    intervention: Optional[HumanInterventionRequest] = None

    @property
    def is_complete(self) -> bool:
        return not self.actions and self.intervention is None

    @classmethod
    def of(cls, actions: Iterable[Union[ActionRequest, Mapping[str, Any]]]) -> "Decision":
        return cls(actions=[
            a if isinstance(a, ActionRequest) else ActionRequest.from_dict(a) for a in actions
        ])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "actions": [a.to_dict() for a in self.actions],
            "intervention": self.intervention.to_dict() if self.intervention else None,
        }


class DecisionSource(Protocol):
    async def decide(self, context: DecisionContext, history: Sequence[CycleRecord]) -> Decision:
        ...


# =============================================================================
# Scripted
# =============================================================================

ScriptEntry = Union[Decision, Sequence[Union[ActionRequest, Mapping[str, Any]]], Exception]


class ScriptedDecisionSource:
    """
    Returns pre-recorded decisions in order.

    Entries may be Decision objects, lists of ActionRequests / action dicts,
    or an Exception instance to raise on that call. Once the script runs out
    every call returns an empty (complete) decision.
    """

    def __init__(self, script: Iterable[ScriptEntry] = ()):
        self._script: List[ScriptEntry] = list(script)
        self.calls: List[DecisionContext] = []

    async def decide(self, context: DecisionContext, history: Sequence[CycleRecord]) -> Decision:
        self.calls.append(context)
        if not self._script:
            return Decision()
        entry = self._script.pop(0)
        if isinstance(entry, Exception):
            raise entry
        if isinstance(entry, Decision):
            return entry
        return Decision.of(entry)


# =============================================================================
# LLM
# =============================================================================

SYSTEM_PROMPT = """You are a browser automation agent that fills out job application forms.
Your only job is to output the actions to take on the current page, as JSON.

Rules:
1. Fill every field you can from the user's profile.
2. reCAPTCHA badges are passive; keep filling the form.
3. Work authorization and visa questions: answer from the profile.
4. Demographic questions: choose "Prefer not to answer" when offered.
5. Fill all fields first, then click submit/continue as the LAST action.
6. An empty "actions" list means the form is complete or submitted.

Use "human_intervention" only when an active CAPTCHA challenge blocks you,
a required question has no reasonable answer in the profile, or submission
keeps failing.

Target elements by "ref" exactly as shown in the page listing.

Available actions:
{tools}

Respond with a JSON object:
{{"actions": [{{"kind": "fill_field", "params": {{"ref": "...", "value": "..."}}, "reasoning": "..."}}],
  "human_intervention": null | {{"reason": "...", "action": "..."}}}}"""


class InterventionPayload(BaseModel):
    reason: str
    action: str = "complete the required step"


class DecisionPayload(BaseModel):
    """Shape the model is asked to return."""
    actions: List[Dict[str, Any]] = Field(default_factory=list)
    human_intervention: Optional[InterventionPayload] = None

    def to_decision(self) -> Decision:
        intervention = None
        if self.human_intervention:
            intervention = HumanInterventionRequest(
                reason=self.human_intervention.reason,
                action=self.human_intervention.action,
            )
        return Decision(
            actions=[ActionRequest.from_dict(a) for a in self.actions],
            intervention=intervention,
        )


def parse_json_response(content: str) -> Dict[str, Any]:
    """Extract the JSON object from an LLM response."""
    if not content:
        raise ValueError("Empty response")
    try:
        return json.loads(content)
    except json.JSONDecodeError:
        pass
    json_match = re.search(r'\{[\s\S]*\}', content)
    if not json_match:
        raise ValueError(f"No JSON object in response: {content[:200]}")
    return json.loads(json_match.group())


class LLMDecisionSource:
    """Chat-completion backed decision source."""

    def __init__(
        self,
        profile: Mapping[str, Any],
        tools_description: str = "",
        client: Optional[AsyncOpenAI] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        retry_attempts: Optional[int] = None,
        history_window: int = 3,
    ):
        self.profile = dict(profile or {})
        self.tools_description = tools_description
        self._client = client
        self.model = model or settings.LLM_MODEL
        self.temperature = temperature if temperature is not None else settings.LLM_TEMPERATURE
        self.max_tokens = max_tokens or settings.LLM_MAX_TOKENS
        self.retry_attempts = max(1, retry_attempts or settings.LLM_RETRY_ATTEMPTS)
        self.history_window = history_window

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            if not settings.OPENAI_API_KEY:
                raise DecisionError("OPENAI_API_KEY is not configured")
            self._client = AsyncOpenAI(api_key=settings.OPENAI_API_KEY)
        return self._client

    def build_messages(self, context: DecisionContext, history: Sequence[CycleRecord]) -> List[Dict[str, str]]:
        return [
            {"role": "system", "content": SYSTEM_PROMPT.format(tools=self.tools_description or "-")},
            {"role": "user", "content": self._build_user_prompt(context, history)},
        ]

    def _build_user_prompt(self, context: DecisionContext, history: Sequence[CycleRecord]) -> str:
        parts = ["User profile:", json.dumps(self.profile, indent=2, default=str), ""]

        recent = list(history)[-self.history_window:]
        if recent:
            parts.append("Previous cycles:")
            for record in recent:
                for outcome in record.actions:
                    parts.append(
                        f"  cycle {record.cycle}: {outcome.kind} {outcome.id} -> {outcome.state}"
                        f" ({outcome.message})"
                    )
                if record.intervention_response:
                    parts.append(f"  operator said: {record.intervention_response}")
            parts.append("")

        if isinstance(context, PageSnapshot):
            parts.append("Current page:")
            parts.append(context.describe())
        else:
            parts.append(f"Changes since the last batch (page: {context.after_url}):")
            parts.append(context.describe())

        parts.append("")
        parts.append("What actions should I take next? Return an empty list if the page is complete.")
        return "\n".join(parts)

    async def decide(self, context: DecisionContext, history: Sequence[CycleRecord]) -> Decision:
        messages = self.build_messages(context, history)
        last_error: Optional[Exception] = None

        for attempt in range(1, self.retry_attempts + 1):
            try:
                logger.info(f"[LLMDecision] Attempt {attempt}/{self.retry_attempts} ({self.model})")
                response = await self.client.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    response_format={"type": "json_object"},
                    temperature=self.temperature,
                    max_tokens=self.max_tokens,
                )
                content = response.choices[0].message.content or ""
                decision = DecisionPayload.model_validate(parse_json_response(content)).to_decision()
                logger.info(f"[LLMDecision] {len(decision.actions)} actions proposed")
                return decision
            except (OpenAIError, ValidationError, ValueError) as e:
                last_error = e
                logger.warning(f"[LLMDecision] Attempt {attempt} failed: {e}")
                if attempt < self.retry_attempts:
                    await asyncio.sleep(min(2 ** (attempt - 1), 5))

        raise DecisionError(
            f"Decision failed after {self.retry_attempts} attempts: {last_error}"
        ) from last_error
