"""Tests for the entry <-> issue mapping."""

import pytest

from conftest import make_entry, rich_entry
from devlog_store.github.mapper import (
    DATA_MARKER,
    METADATA_END,
    METADATA_START,
    GitHubMapper,
    format_body,
    parse_criteria,
    parse_metadata,
    parse_sections,
)
from devlog_store.models import (
    Decision,
    EntryPriority,
    EntryStatus,
    EntryType,
    ExternalReference,
    ExternalSystem,
)


@pytest.fixture
def mapper():
    return GitHubMapper("devlog")


def as_issue(payload, number=5, **overrides):
    """Shape an ``entry_to_issue`` payload like GitHub's issue JSON."""
    issue = {
        "number": number,
        "title": payload["title"],
        "body": payload["body"],
        "labels": [{"name": name} for name in payload["labels"]],
        "assignees": [{"login": login} for login in payload["assignees"]],
        "state": payload["state"],
        "created_at": "2024-05-01T12:00:00Z",
        "updated_at": "2024-05-02T08:30:00Z",
    }
    issue.update(overrides)
    return issue


class TestBody:
    def test_layout(self):
        entry = rich_entry()
        body = format_body(entry)
        assert body.startswith(METADATA_START + "\n## Description\n")
        assert body.rstrip().endswith(METADATA_END)
        assert "## Technical Context\nOAuth via provider" in body
        assert "## Acceptance Criteria\n- [ ] Login works\n- [ ] Logout works\n" in body
        assert body.index("## Technical Context") < body.index("## Business Context")
        assert body.index("## Acceptance Criteria") < body.index(DATA_MARKER)

    def test_empty_sections_are_omitted(self):
        body = format_body(make_entry())
        assert "## " not in body
        assert parse_metadata(body)["version"] == "1.0.0"

    def test_sections_and_criteria_parse_back(self):
        sections = parse_sections(format_body(rich_entry()))
        assert sections["Business Context"] == "Users need to sign in"
        assert parse_criteria(sections["Acceptance Criteria"]) == ["Login works", "Logout works"]

    def test_checked_criteria(self):
        assert parse_criteria("- [x] done\n- [ ] open\nnot a criterion") == ["done", "open"]

    def test_metadata_must_be_object(self):
        body = f"{DATA_MARKER}\n```json\n[1, 2]\n```\n"
        with pytest.raises(ValueError):
            parse_metadata(body)

    def test_no_metadata_block(self):
        assert parse_metadata("just words") is None


class TestEntryToIssue:
    def test_labels(self, mapper):
        entry = make_entry(priority=EntryPriority.HIGH, status=EntryStatus.IN_PROGRESS)
        assert mapper.labels_for(entry) == [
            "devlog-type:feature",
            "devlog-priority:high",
            "devlog-status:in-progress",
        ]

    def test_new_status_has_no_label(self, mapper):
        assert mapper.labels_for(make_entry()) == ["devlog-type:feature", "devlog-priority:medium"]

    @pytest.mark.parametrize(
        "status,state",
        [(EntryStatus.DONE, "closed"), (EntryStatus.ARCHIVED, "closed"), (EntryStatus.TESTING, "open")],
    )
    def test_state(self, mapper, status, state):
        assert mapper.entry_to_issue(make_entry(status=status))["state"] == state

    def test_assignee(self, mapper):
        assert mapper.entry_to_issue(make_entry(assignee="alice"))["assignees"] == ["alice"]
        assert mapper.entry_to_issue(make_entry())["assignees"] == []

    def test_custom_prefix(self):
        mapper = GitHubMapper("work")
        assert mapper.deleted_label == "work-deleted"
        assert mapper.labels_for(make_entry())[0] == "work-type:feature"


class TestIssueToEntry:
    """Tests for decoding issues."""

    def test_round_trip_keeps_structured_fields(self, mapper):
        entry = rich_entry()
        entry.status = EntryStatus.IN_REVIEW
        entry.actual_hours = 2.0
        entry.context.decisions.append(Decision(
            "decision-1", "2024-05-03T10:00:00.000+00:00", "Use PKCE", "Public client", "alice",
            alternatives=["Implicit flow"],
        ))
        entry.ai_context.open_questions = ["Refresh rotation?"]
        entry.set_external_reference(ExternalReference(ExternalSystem.JIRA, "AUTH-7"))

        decoded = mapper.issue_to_entry(as_issue(mapper.entry_to_issue(entry)))

        assert decoded.id == 5
        assert decoded.key == entry.key
        assert decoded.title == entry.title
        assert decoded.type is EntryType.FEATURE
        assert decoded.priority is EntryPriority.HIGH
        assert decoded.status is EntryStatus.IN_REVIEW
        assert decoded.description == entry.description
        assert decoded.assignee == "alice"
        assert decoded.notes == entry.notes
        assert decoded.context == entry.context
        assert decoded.ai_context == entry.ai_context
        assert decoded.tags == entry.tags
        assert decoded.files == entry.files
        assert decoded.related_devlogs == entry.related_devlogs
        assert decoded.estimated_hours == 3.5
        assert decoded.actual_hours == 2.0
        assert decoded.external_references == entry.external_references

    def test_timestamps_come_from_github(self, mapper):
        decoded = mapper.issue_to_entry(as_issue(mapper.entry_to_issue(make_entry())))
        assert decoded.created_at == "2024-05-01T12:00:00.000+00:00"
        assert decoded.updated_at == "2024-05-02T08:30:00.000+00:00"

    @pytest.mark.parametrize(
        "state,label,expected",
        [
            ("open", None, EntryStatus.NEW),
            ("open", "blocked", EntryStatus.BLOCKED),
            ("open", "done", EntryStatus.NEW),
            ("closed", None, EntryStatus.DONE),
            ("closed", "closed", EntryStatus.CLOSED),
            ("closed", "in-progress", EntryStatus.DONE),
            ("open", "bogus", EntryStatus.NEW),
        ],
    )
    def test_status_from_state_and_label(self, mapper, state, label, expected):
        labels = [{"name": "devlog-type:task"}]
        if label:
            labels.append({"name": f"devlog-status:{label}"})
        issue = {"number": 1, "title": "t", "body": "", "labels": labels, "state": state}
        assert mapper.issue_to_entry(issue).status is expected

    def test_unknown_labels_use_defaults(self, mapper):
        issue = {
            "number": 1, "title": "t", "body": "", "state": "open",
            "labels": [{"name": "devlog-type:epic"}, {"name": "bug"}],
        }
        entry = mapper.issue_to_entry(issue)
        assert entry.type is EntryType.TASK
        assert entry.priority is EntryPriority.MEDIUM

    def test_sections_used_without_metadata(self, mapper):
        issue = {
            "number": 3, "title": "Hand written", "state": "open",
            "labels": [{"name": "devlog-type:bugfix"}],
            "body": (
                "## Description\nSomething broke\n\n"
                "## Technical Context\nStack trace\n\n"
                "## Acceptance Criteria\n- [ ] No crash\n- [x] Test added\n"
            ),
        }
        entry = mapper.issue_to_entry(issue)
        assert entry.description == "Something broke"
        assert entry.context.technical_context == "Stack trace"
        assert entry.context.acceptance_criteria == ["No crash", "Test added"]
        assert entry.key == "hand-written"
        assert entry.notes == []

    def test_plain_body_becomes_description(self, mapper):
        issue = {
            "number": 3, "title": "t", "state": "open",
            "labels": [{"name": "devlog-type:task"}], "body": "  Just a note  \n",
        }
        assert mapper.issue_to_entry(issue).description == "Just a note"

    def test_unreadable_metadata_falls_back(self, mapper, caplog):
        issue = {
            "number": 9, "title": "t", "state": "open",
            "labels": [{"name": "devlog-type:task"}],
            "body": f"## Description\nKept\n\n{DATA_MARKER}\n```json\n{{broken\n```\n",
        }
        with caplog.at_level("WARNING"):
            entry = mapper.issue_to_entry(issue)
        assert entry.description == "Kept"
        assert any(getattr(r, "event", None) == "github.metadata_unreadable" for r in caplog.records)


class TestIssueClassification:
    def test_pull_requests_are_not_entries(self, mapper):
        issue = {"number": 1, "labels": [{"name": "devlog-type:task"}], "pull_request": {}}
        assert not mapper.is_devlog_issue(issue)

    def test_issue_needs_type_label(self, mapper):
        assert not mapper.is_devlog_issue({"number": 1, "labels": [{"name": "devlog-priority:low"}]})
        assert mapper.is_devlog_issue({"number": 1, "labels": ["devlog-type:docs"]})

    def test_deleted(self, mapper):
        issue = {"labels": [{"name": "devlog-type:task"}, {"name": "devlog-deleted"}]}
        assert mapper.is_deleted(issue)
        assert not mapper.is_own_label("help wanted")
