"""Tests for the validation gate and worker checklists."""

import pytest

from changeflow.core import ChecklistItem, ChecklistOverride, ValidationGate, WorkerOutput
from changeflow.core.validation_gate import DEFAULT_CHECKLISTS, OutputRequirement
from changeflow.core.worker import ChecklistStage
from tests.mocks import bad_output, good_output


class TestDefaultChecklists:
    """Test the built-in checklists."""

    @pytest.mark.parametrize("worker_type", sorted(DEFAULT_CHECKLISTS))
    def test_good_output_passes_every_checklist(self, worker_type):
        output = good_output()
        report = ValidationGate().validate(worker_type, output.pre_work_report, output)

        assert report.passed, report.feedback()
        assert report.feedback() == ""

    @pytest.mark.parametrize("worker_type", sorted(DEFAULT_CHECKLISTS))
    def test_bad_output_fails_every_item(self, worker_type):
        report = ValidationGate().validate(worker_type, "", bad_output())

        assert not report.passed
        assert not any(item.satisfied for item in report.items)

    def test_report_order_and_stages(self):
        output = good_output()
        report = ValidationGate().validate("backend", output.pre_work_report, output)

        assert [item.key for item in report.items] == [
            "api_design",
            "error_handling",
            "auth",
            "artifacts",
            "code_block",
            "completion_marker",
        ]
        assert [item.stage for item in report.items[:3]] == [ChecklistStage.PRE_WORK] * 3

    def test_feedback_names_missing_items(self):
        output = good_output()
        report = ValidationGate().validate("backend", "We will add a new endpoint.", output)

        assert not report.passed
        assert report.missing == ["error handling plan", "authorization check"]
        assert report.feedback() == (
            "backend output is missing: error handling plan; authorization check"
        )

    def test_section_heading_satisfies_item(self):
        pre_work = "## Schema\nusers\n## Migration\nadd\n## Indexes\nby email"
        output = WorkerOutput(artifacts=["m.sql"], summary="done")
        report = ValidationGate().validate("database", pre_work, output)
        assert report.passed

    def test_output_requirements(self):
        pre_work = "test plan; reproduce the failing case"
        missing_tests = WorkerOutput(artifacts=["t.py"], summary="All done")
        report = ValidationGate().validate("test-debug", pre_work, missing_tests)
        assert report.missing == ["a test run summary (passed/failed counts)"]

        with_tests = WorkerOutput(artifacts=["t.py"], summary="Done. 8 tests passed")
        assert ValidationGate().validate("test-debug", pre_work, with_tests).passed

    def test_unknown_worker_uses_generic_checklist(self):
        gate = ValidationGate()
        checklist = gate.checklist_for("docs")

        assert checklist.worker_type == "docs"
        assert [i.key for i in checklist.pre_work] == ["plan"]
        report = gate.validate("docs", "Plan: rewrite", WorkerOutput(artifacts=["README.md"], summary="done"))
        assert report.passed


class TestChecklistOverrides:
    """Test configured checklist changes."""

    def test_extend(self):
        override = ChecklistOverride(
            pre_work=[ChecklistItem(key="perf", description="performance budget", keywords=["Latency"])],
            output=[OutputRequirement.TEST_SUMMARY],
        )
        gate = ValidationGate({"backend": override})
        checklist = gate.checklist_for("backend")

        assert [i.key for i in checklist.pre_work] == ["api_design", "error_handling", "auth", "perf"]
        assert checklist.pre_work[-1].keywords == ["latency"]
        assert OutputRequirement.TEST_SUMMARY in checklist.output
        # Built-ins are not changed
        assert len(DEFAULT_CHECKLISTS["backend"].pre_work) == 3

    def test_override_item_with_same_key(self):
        override = ChecklistOverride(
            pre_work=[ChecklistItem(key="auth", description="auth via SSO", keywords=["sso"])]
        )
        checklist = ValidationGate({"backend": override}).checklist_for("backend")
        assert [i.description for i in checklist.pre_work][-1] == "auth via SSO"
        assert len(checklist.pre_work) == 3

    def test_replace(self):
        override = ChecklistOverride(replace=True, output=[OutputRequirement.ARTIFACTS])
        gate = ValidationGate({"frontend": override})

        report = gate.validate("frontend", "", WorkerOutput(artifacts=["x.tsx"]))
        assert report.passed

    def test_new_worker_type(self):
        override = ChecklistOverride(
            pre_work=[ChecklistItem(key="copy", description="copy review", keywords=["wording"])]
        )
        gate = ValidationGate({"docs": override})

        assert "docs" in gate.known_worker_types()
        assert [i.key for i in gate.checklist_for("docs").pre_work] == ["plan", "copy"]
