"""
FormPilot - Risk Classifier
Assigns every action a tier describing how likely it is to change the page
in ways the decision source can't predict.

- HIGH: click, navigate, upload, human_intervention, submit, and any kind we
  don't recognise. These end a batch.
- MEDIUM: field edits that tend to trigger validation (email, phone, dates,
  passwords...) and consent checkboxes.
- LOW: plain text fields and simple selects, scroll, wait.

Pure functions: the same (kind, params) always yields the same tier.
"""

import re
from typing import Any, Mapping, Optional

from formpilot.models.actions import ActionKind, ActionRequest, RiskTier, normalize_kind

HIGH_RISK_KINDS = frozenset({
    ActionKind.CLICK.value,
    ActionKind.NAVIGATE.value,
    ActionKind.UPLOAD.value,
    ActionKind.HUMAN_INTERVENTION.value,
    "submit",
})

FIELD_KINDS = frozenset({
    ActionKind.FILL_FIELD.value,
    ActionKind.SELECT.value,
    ActionKind.CHECKBOX.value,
})

PASSIVE_KINDS = frozenset({ActionKind.SCROLL.value, ActionKind.WAIT.value})

VALIDATION_PRONE_TYPES = frozenset({
    "email", "phone", "tel", "date", "datetime", "datetime-local",
    "password", "number", "url",
})

# Matched as whole words ("Update" is not a date field)
VALIDATION_PRONE_WORDS = re.compile(
    r"\b(?:e-?mail|(?:tele)?phone|mobile|dates?|birth\w*|password|zip|postal)\b"
)

CONSENT_WORDS = re.compile(r"\b(?:agree\w*|consent\w*|terms|acknowledge\w*)\b")


def _field_text(params: Mapping[str, Any]) -> str:
    return " ".join(
        str(params.get(key) or "")
        for key in ("label", "element", "description", "ref", "selector")
    ).lower()


def classify(kind: str, params: Optional[Mapping[str, Any]] = None) -> RiskTier:
    """Risk tier for an action kind and its params."""
    kind = normalize_kind(kind)
    params = params or {}

    if kind in HIGH_RISK_KINDS:
        return RiskTier.HIGH
    if kind in PASSIVE_KINDS:
        return RiskTier.LOW
    if kind not in FIELD_KINDS:
        return RiskTier.HIGH

    field_type = str(params.get("field_type") or "").lower()
    if field_type:
        return RiskTier.MEDIUM if field_type in VALIDATION_PRONE_TYPES else RiskTier.LOW

    text = _field_text(params)
    if kind == ActionKind.CHECKBOX.value and CONSENT_WORDS.search(text):
        return RiskTier.MEDIUM
    if VALIDATION_PRONE_WORDS.search(text):
        return RiskTier.MEDIUM
    return RiskTier.LOW


def classify_request(request: ActionRequest) -> RiskTier:
    return classify(request.kind, request.params)


def is_barrier(kind: str, params: Optional[Mapping[str, Any]] = None) -> bool:
    """True when the action must be the last one in its batch."""
    return classify(kind, params) == RiskTier.HIGH
