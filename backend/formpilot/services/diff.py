"""
FormPilot - Snapshot Diff Verifier
Reduces a before/after pair of page snapshots to the handful of changes the
decision source needs to see: navigation, fields that appeared or vanished,
values that changed, and new validation errors.

Element identity is the snapshot key, so the comparison is a single pass over
each element map.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List

from formpilot.browser.snapshot import PageSnapshot

COMPARED_FIELDS = ("value", "checked", "disabled", "selected", "expanded")


@dataclass
class FieldChange:
    key: str
    field: str
    before: Any
    after: Any

    def to_dict(self) -> Dict[str, Any]:
        return {"key": self.key, "field": self.field, "before": self.before, "after": self.after}


@dataclass
class DiffSummary:
    """What changed between two snapshots."""
    before_url: str
    after_url: str
    before_title: str
    after_title: str
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    modified: List[FieldChange] = field(default_factory=list)
    new_errors: List[str] = field(default_factory=list)

    @property
    def url_changed(self) -> bool:
        return self.before_url != self.after_url

    @property
    def title_changed(self) -> bool:
        return self.before_title != self.after_title

    @property
    def is_empty(self) -> bool:
        return not (
            self.url_changed or self.title_changed
            or self.added or self.removed or self.modified or self.new_errors
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url_changed": self.url_changed,
            "title_changed": self.title_changed,
            "before_url": self.before_url,
            "after_url": self.after_url,
            "before_title": self.before_title,
            "after_title": self.after_title,
            "added": list(self.added),
            "removed": list(self.removed),
            "modified": [m.to_dict() for m in self.modified],
            "new_errors": list(self.new_errors),
        }

    def describe(self) -> str:
        """Compact text for decision-source context."""
        if self.is_empty:
            return "No visible changes."
        lines = []
        if self.url_changed:
            lines.append(f"Navigated: {self.before_url} -> {self.after_url}")
        if self.title_changed:
            lines.append(f"Title: {self.before_title!r} -> {self.after_title!r}")
        if self.new_errors:
            lines.append("New errors:")
            lines.extend(f"  ! {text}" for text in self.new_errors)
        if self.added:
            lines.append("Appeared:")
            lines.extend(f"  + {desc}" for desc in self.added)
        if self.removed:
            lines.append("Disappeared:")
            lines.extend(f"  - {desc}" for desc in self.removed)
        if self.modified:
            lines.append("Changed:")
            lines.extend(
                f"  ~ {m.key} {m.field}: {m.before!r} -> {m.after!r}" for m in self.modified
            )
        return "\n".join(lines)


class SnapshotDiffer:
    """Computes DiffSummary objects."""

    def diff(self, before: PageSnapshot, after: PageSnapshot) -> DiffSummary:
        summary = DiffSummary(
            before_url=before.url,
            after_url=after.url,
            before_title=before.title,
            after_title=after.title,
        )

        for key, element in after.elements.items():
            old = before.elements.get(key)
            if old is None:
                summary.added.append(element.describe())
                continue
            for name in COMPARED_FIELDS:
                old_value = getattr(old, name)
                new_value = getattr(element, name)
                if old_value != new_value:
                    summary.modified.append(FieldChange(key, name, old_value, new_value))

        for key, element in before.elements.items():
            if key not in after.elements:
                summary.removed.append(element.describe())

        previous_errors = set(before.errors())
        seen = set()
        for text in after.errors():
            if text not in previous_errors and text not in seen:
                summary.new_errors.append(text)
                seen.add(text)

        return summary


def diff(before: PageSnapshot, after: PageSnapshot) -> DiffSummary:
    return SnapshotDiffer().diff(before, after)
