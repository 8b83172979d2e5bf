"""Tests for the issue lifecycle state machine."""

import pytest

from afu9.domain.models import Issue
from afu9.lifecycle.state_machine import (
    BlockerCode,
    DraftData,
    IssueState,
    LoopStep,
    check_draft_gate,
    draft_from_issue,
    get_blocker_description,
    is_valid_transition,
    resolve_next_step,
    verdict_to_issue_state,
)
from afu9.verification.models import Verdict


def make_issue(status="CREATED", **overrides):
    values = {
        "id": "issue-1",
        "title": "Add retry to webhook sender",
        "status": status,
        "github_url": "https://github.com/acme/api/issues/12",
    }
    values.update(overrides)
    return Issue(**values)


class TestResolveNextStep:
    def test_created_without_draft_picks(self):
        assert resolve_next_step(make_issue()).step is LoopStep.S1_PICK_ISSUE

    @pytest.mark.parametrize("github_url", [None, "", "   "])
    def test_created_without_github_link_blocks(self, github_url):
        resolution = resolve_next_step(make_issue(github_url=github_url))

        assert resolution.step is None
        assert resolution.blocked
        assert resolution.blocker_code is BlockerCode.NO_GITHUB_LINK

    def test_created_with_valid_draft_goes_to_spec_ready(self):
        issue = make_issue(current_draft_id="draft-1", draft_validation_status="valid")

        assert resolve_next_step(issue, draft_from_issue(issue)).step is LoopStep.S2_SPEC_READY

    def test_created_with_uncommitted_draft_blocks(self):
        issue = make_issue(current_draft_id="draft-1")

        resolution = resolve_next_step(issue, draft_from_issue(issue))

        assert resolution.blocker_code is BlockerCode.NO_COMMITTED_DRAFT

    def test_synced_handoff_counts_as_committed(self):
        issue = make_issue(current_draft_id="draft-1", handoff_state="SYNCED")

        assert resolve_next_step(issue, draft_from_issue(issue)).step is LoopStep.S2_SPEC_READY

    def test_invalid_draft_blocks(self):
        issue = make_issue(
            current_draft_id="draft-1", handoff_state="SYNCED", draft_validation_status="invalid"
        )

        resolution = resolve_next_step(issue, draft_from_issue(issue))

        assert resolution.blocker_code is BlockerCode.DRAFT_INVALID

    def test_draft_states_without_draft_block(self):
        resolution = resolve_next_step(make_issue(status="DRAFT_READY"))

        assert resolution.blocker_code is BlockerCode.NO_DRAFT

    def test_version_committed_with_valid_draft(self):
        issue = make_issue(
            status="VERSION_COMMITTED", current_draft_id="d", draft_validation_status="valid"
        )

        assert resolve_next_step(issue, draft_from_issue(issue)).step is LoopStep.S2_SPEC_READY

    @pytest.mark.parametrize(
        "status,step",
        [
            ("SPEC_READY", LoopStep.S3_IMPLEMENT_PREP),
            ("IMPLEMENTING_PREP", LoopStep.S4_REVIEW),
            ("REVIEW_READY", LoopStep.S5_MERGE),
            ("DONE", LoopStep.S6_DEPLOYMENT_OBSERVE),
        ],
    )
    def test_forward_progression(self, status, step):
        assert resolve_next_step(make_issue(status=status)).step is step

    def test_done_with_observations_goes_to_verify_gate(self):
        resolution = resolve_next_step(make_issue(status="DONE"), has_deployment_observations=True)

        assert resolution.step is LoopStep.S7_VERIFY_GATE

    @pytest.mark.parametrize("status", ["VERIFIED", "HOLD"])
    def test_terminal_states_have_no_step_and_are_not_blocked(self, status):
        resolution = resolve_next_step(make_issue(status=status))

        assert resolution.step is None
        assert not resolution.blocked
        assert resolution.blocker_message == f"Issue is in terminal state: {status}"

    @pytest.mark.parametrize("status", ["", "ARCHIVED"])
    def test_unknown_status_blocks(self, status):
        resolution = resolve_next_step(make_issue(status=status))

        assert resolution.blocker_code is BlockerCode.UNKNOWN_STATE

    def test_is_pure(self):
        issue = make_issue(status="SPEC_READY")

        assert resolve_next_step(issue) == resolve_next_step(issue)


class TestDraftGate:
    def test_no_draft_and_no_handoff(self):
        resolution = check_draft_gate(make_issue(), None)

        assert resolution.blocker_code is BlockerCode.NO_COMMITTED_DRAFT

    def test_valid_draft(self):
        draft = DraftData(id="d", last_validation_status="valid")
        resolution = check_draft_gate(make_issue(), draft)

        assert resolution.step is LoopStep.S2_SPEC_READY

    def test_draft_from_issue(self):
        assert draft_from_issue(make_issue()) is None
        assert draft_from_issue(
            make_issue(current_draft_id="d", draft_validation_status="valid")
        ) == DraftData(id="d", last_validation_status="valid")


class TestTransitions:
    @pytest.mark.parametrize(
        "before,after",
        [
            (IssueState.CREATED, IssueState.SPEC_READY),
            (IssueState.SPEC_READY, IssueState.IMPLEMENTING_PREP),
            (IssueState.IMPLEMENTING_PREP, IssueState.REVIEW_READY),
            (IssueState.REVIEW_READY, IssueState.DONE),
            (IssueState.DONE, IssueState.VERIFIED),
            (IssueState.DONE, IssueState.HOLD),
            (IssueState.CREATED, IssueState.HOLD),
        ],
    )
    def test_valid(self, before, after):
        assert is_valid_transition(before, after)

    @pytest.mark.parametrize(
        "before,after",
        [
            (IssueState.CREATED, IssueState.DONE),
            (IssueState.REVIEW_READY, IssueState.SPEC_READY),
            (IssueState.VERIFIED, IssueState.DONE),
            (IssueState.HOLD, IssueState.CREATED),
            (IssueState.DONE, IssueState.DONE),
        ],
    )
    def test_invalid(self, before, after):
        assert not is_valid_transition(before, after)

    def test_verdict_mapping(self):
        assert verdict_to_issue_state(Verdict.GREEN) is IssueState.VERIFIED
        assert verdict_to_issue_state(Verdict.RED) is IssueState.HOLD


def test_every_blocker_has_description():
    for code in BlockerCode:
        assert get_blocker_description(code) != "Unknown blocker"
