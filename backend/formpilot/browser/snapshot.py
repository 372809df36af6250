"""
FormPilot - Page Snapshot Model
Parses Playwright ARIA snapshots into keyed element states.

A snapshot line looks like:
    - textbox "Email" [required]: jane@example.com
    - checkbox "I agree to the terms" [checked]
    - button "Submit application" [ref=e42]

Only form-relevant nodes are kept (interactive roles, headings, alerts and
text that reads like a validation message). Each kept node gets a stable key,
"<role>:<name>#<n>", where n counts earlier nodes with the same role and name,
or the explicit ref when the snapshot carries one. The key is also the `ref`
that decision sources use to target an element.
"""

import re
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

# =============================================================================
# Parsing
# =============================================================================

ARIA_LINE_RE = re.compile(
    r'^(?P<indent>\s*)-\s+(?P<body>.+?)\s*$'
)

ARIA_NODE_RE = re.compile(
    r'^(?P<role>[\w-]+)'
    r'(?:\s+"(?P<name>(?:[^"\\]|\\.)*)")?'
    r'(?P<attrs>(?:\s*\[[^\]]*\])*)'
    r'(?::\s*(?P<value>.*))?$'
)

ARIA_ATTR_RE = re.compile(r'\[(?P<key>[\w-]+)(?:=(?P<value>[^\]]*))?\]')

KEY_RE = re.compile(r'^(?P<role>[\w-]+):(?P<name>.*)#(?P<index>\d+)$')

INTERACTIVE_ROLES = frozenset({
    "textbox", "searchbox", "combobox", "listbox", "option", "checkbox",
    "radio", "switch", "slider", "spinbutton", "button", "link", "menuitem",
    "tab",
})

STRUCTURAL_ROLES = frozenset({"heading", "alert", "status", "dialog", "alertdialog"})

TEXT_ROLES = frozenset({"text", "paragraph"})

ERROR_PHRASES = (
    "error",
    "invalid",
    "required",
    "must",
    "please enter",
    "please select",
    "not valid",
)

CheckedState = Union[bool, str, None]


def is_error_text(text: Optional[str]) -> bool:
    """True when text reads like a validation or error message."""
    if not text:
        return False
    lowered = text.lower()
    return any(phrase in lowered for phrase in ERROR_PHRASES)


def _unquote(body: str) -> str:
    # Lines containing YAML-special characters are emitted single-quoted
    if len(body) >= 2 and body[0] == "'" and body[-1] == "'":
        return body[1:-1].replace("''", "'")
    return body


def _parse_checked(attrs: Dict[str, Optional[str]]) -> CheckedState:
    if "checked" not in attrs:
        return None
    raw = attrs["checked"]
    if raw is None or raw == "true":
        return True
    if raw == "mixed":
        return "mixed"
    return False


# =============================================================================
# Data model
# =============================================================================

@dataclass(frozen=True)
class ElementState:
    """Observable state of one element in a snapshot."""
    key: str
    role: str
    name: str = ""
    value: Optional[str] = None
    checked: CheckedState = None
    disabled: bool = False
    selected: bool = False
    expanded: Optional[bool] = None
    required: bool = False
    level: Optional[int] = None
    ref: Optional[str] = None
    index: int = 0

    @property
    def is_error_indicator(self) -> bool:
        if self.role in ("alert", "alertdialog"):
            return True
        if self.role in TEXT_ROLES or self.role == "status":
            return is_error_text(self.value or self.name)
        return False

    @property
    def text(self) -> str:
        """The human-visible text of the element."""
        return self.name or self.value or ""

    def describe(self) -> str:
        label = f'{self.role} "{self.name}"' if self.name else self.role
        flags = []
        if self.required:
            flags.append("required")
        if self.checked is True:
            flags.append("checked")
        elif self.checked == "mixed":
            flags.append("mixed")
        if self.disabled:
            flags.append("disabled")
        if self.selected:
            flags.append("selected")
        if self.expanded is not None:
            flags.append("expanded" if self.expanded else "collapsed")
        if flags:
            label += " [" + ", ".join(flags) + "]"
        if self.value:
            label += f": {self.value}"
        return f"{label} (ref={self.key})"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "role": self.role,
            "name": self.name,
            "value": self.value,
            "checked": self.checked,
            "disabled": self.disabled,
            "selected": self.selected,
            "expanded": self.expanded,
            "required": self.required,
            "level": self.level,
        }


def parse_key(key: str) -> Optional[Tuple[str, str, int]]:
    """Split a "<role>:<name>#<n>" key. Returns None for explicit refs."""
    match = KEY_RE.match(key)
    if not match:
        return None
    return match.group("role"), match.group("name"), int(match.group("index"))


@dataclass(frozen=True)
class PageSnapshot:
    """Observable state of a page at one instant."""
    url: str
    title: str
    elements: Mapping[str, ElementState] = field(default_factory=dict)

    @classmethod
    def from_aria(cls, url: str, title: str, aria: str) -> "PageSnapshot":
        """Build a snapshot from Playwright's aria_snapshot() YAML."""
        elements: Dict[str, ElementState] = {}
        occurrences: Dict[Tuple[str, str], int] = {}
        # (indent, key) of open combobox/listbox nodes, for lifting selected options
        parents: List[Tuple[int, str]] = []

        for line in (aria or "").splitlines():
            line_match = ARIA_LINE_RE.match(line)
            if not line_match:
                continue
            indent = len(line_match.group("indent"))
            body = _unquote(line_match.group("body"))
            node = ARIA_NODE_RE.match(body)
            if not node:
                continue

            role = node.group("role").lower()
            name = (node.group("name") or "").replace('\\"', '"')
            value = node.group("value")
            value = _unquote(value.strip()) if value else None

            while parents and parents[-1][0] >= indent:
                parents.pop()

            keep = (
                role in INTERACTIVE_ROLES
                or role in STRUCTURAL_ROLES
                or (role == "text" and is_error_text(value))
                or (role == "paragraph" and is_error_text(value or name))
            )
            if not keep:
                continue

            attrs = {
                m.group("key"): m.group("value")
                for m in ARIA_ATTR_RE.finditer(node.group("attrs") or "")
            }
            level = attrs.get("level")
            ref = attrs.get("ref")

            label = name or (value or "") if role in TEXT_ROLES else name
            pair = (role, label)
            index = occurrences.get(pair, 0)
            occurrences[pair] = index + 1
            key = ref or f"{role}:{pair[1]}#{index}"

            element = ElementState(
                key=key,
                role=role,
                name=name,
                value=value,
                checked=_parse_checked(attrs),
                disabled="disabled" in attrs,
                selected="selected" in attrs,
                expanded=(attrs["expanded"] != "false") if "expanded" in attrs else None,
                required="required" in attrs,
                level=int(level) if level and level.isdigit() else None,
                ref=ref,
                index=index,
            )
            elements[key] = element

            if role == "option" and element.selected and parents:
                parent_key = parents[-1][1]
                parent = elements[parent_key]
                if not parent.value:
                    elements[parent_key] = replace(parent, value=name)

            if role in ("combobox", "listbox"):
                parents.append((indent, key))

        return cls(url=url, title=title, elements=elements)

    def get(self, key: str) -> Optional[ElementState]:
        return self.elements.get(key)

    def find(self, role: Optional[str] = None, name: Optional[str] = None) -> List[ElementState]:
        """Elements matching role and/or a case-insensitive name substring."""
        needle = name.lower() if name else None
        return [
            el for el in self.elements.values()
            if (role is None or el.role == role)
            and (needle is None or needle in el.name.lower())
        ]

    def errors(self) -> List[str]:
        """Texts of all error indicators currently on the page."""
        return [el.text for el in self.elements.values() if el.is_error_indicator and el.text]

    def describe(self, limit: int = 150) -> str:
        """Compact text rendering for decision-source context."""
        lines = [f"URL: {self.url}", f"Title: {self.title}"]
        for i, element in enumerate(self.elements.values()):
            if i >= limit:
                lines.append(f"... {len(self.elements) - limit} more elements")
                break
            lines.append(f"- {element.describe()}")
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "title": self.title,
            "elements": [el.to_dict() for el in self.elements.values()],
        }
