"""ARIA snapshot parsing and snapshot diffs."""

from formpilot.browser.snapshot import PageSnapshot, is_error_text, parse_key
from formpilot.services.diff import SnapshotDiffer, diff

FORM_ARIA = """
- heading "Apply for Backend Engineer" [level=1]
- textbox "Full name" [required]: Jane Doe
- textbox "Email" [required]
- combobox "Country":
  - option "Canada"
  - option "United States" [selected]
- checkbox "I agree to the terms"
- paragraph: Tell us about yourself
- button "Next"
- button "Next"
- button "Upload resume" [ref=e12]
- button "Submit application"
"""


def _snapshot(aria=FORM_ARIA, url="https://jobs.example.com/apply", title="Apply"):
    return PageSnapshot.from_aria(url, title, aria)


def test_parses_interactive_and_structural_nodes():
    snapshot = _snapshot()

    name = snapshot.get("textbox:Full name#0")
    assert name.value == "Jane Doe"
    assert name.required

    heading = snapshot.get("heading:Apply for Backend Engineer#0")
    assert heading.level == 1

    assert snapshot.get("checkbox:I agree to the terms#0").checked is None
    # plain copy text is dropped
    assert not snapshot.find(role="paragraph")


def test_selected_option_becomes_combobox_value():
    snapshot = _snapshot()
    assert snapshot.get("combobox:Country#0").value == "United States"
    assert snapshot.get("option:United States#0").selected


def test_duplicate_names_get_increasing_index():
    snapshot = _snapshot()
    assert snapshot.get("button:Next#0") is not None
    assert snapshot.get("button:Next#1") is not None


def test_explicit_ref_is_the_key():
    snapshot = _snapshot()
    assert snapshot.get("e12").name == "Upload resume"
    assert parse_key("e12") is None
    assert parse_key("button:Next#1") == ("button", "Next", 1)


def test_keys_survive_filling_a_field():
    before = _snapshot()
    after = _snapshot(FORM_ARIA.replace('textbox "Email" [required]', 'textbox "Email" [required]: jane@example.com'))
    assert set(before.elements) == set(after.elements)


def test_error_text_and_alerts_are_kept():
    aria = FORM_ARIA + '- text: Please enter a valid email\n- alert: Something went wrong\n'
    snapshot = _snapshot(aria)

    errors = snapshot.errors()
    assert "Please enter a valid email" in errors
    assert "Something went wrong" in errors
    assert is_error_text("This field is required")
    assert not is_error_text("Tell us about yourself")


def test_quoted_lines_are_unquoted():
    snapshot = _snapshot("- 'textbox \"Notes\": it''s fine'\n")
    assert snapshot.get("textbox:Notes#0").value == "it's fine"


def test_describe_lists_refs():
    text = _snapshot().describe()
    assert text.startswith("URL: https://jobs.example.com/apply")
    assert '(ref=textbox:Email#0)' in text
    assert 'checkbox "I agree to the terms" (ref=checkbox:I agree to the terms#0)' in text


def test_diff_of_identical_snapshots_is_empty():
    snapshot = _snapshot()
    summary = diff(snapshot, snapshot)
    assert summary.is_empty
    assert summary.describe() == "No visible changes."


def test_diff_reports_value_changes():
    before = _snapshot()
    after = _snapshot(
        FORM_ARIA
        .replace('textbox "Email" [required]', 'textbox "Email" [required]: jane@example.com')
        .replace('checkbox "I agree to the terms"', 'checkbox "I agree to the terms" [checked]')
    )
    summary = SnapshotDiffer().diff(before, after)

    changes = {(m.key, m.field): (m.before, m.after) for m in summary.modified}
    assert changes[("textbox:Email#0", "value")] == (None, "jane@example.com")
    assert changes[("checkbox:I agree to the terms#0", "checked")] == (None, True)
    assert not summary.added
    assert not summary.new_errors


def test_diff_reports_new_fields_and_errors():
    before = _snapshot()
    after = _snapshot(FORM_ARIA + '- textbox "Phone"\n- alert: Email is invalid\n')
    summary = diff(before, after)

    assert any("Phone" in desc for desc in summary.added)
    assert summary.new_errors == ["Email is invalid"]
    assert "New errors:" in summary.describe()


def test_errors_already_present_are_not_new():
    aria = FORM_ARIA + "- alert: Email is invalid\n"
    summary = diff(_snapshot(aria), _snapshot(aria))
    assert summary.new_errors == []


def test_diff_reports_navigation_and_removed_fields():
    before = _snapshot()
    after = _snapshot('- heading "Thank you" [level=1]\n', url="https://jobs.example.com/done", title="Done")
    summary = diff(before, after)

    assert summary.url_changed
    assert summary.title_changed
    assert any("Submit application" in desc for desc in summary.removed)
    assert summary.to_dict()["after_url"] == "https://jobs.example.com/done"
