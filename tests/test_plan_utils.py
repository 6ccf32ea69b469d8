"""
Plan helper and run configuration tests
"""
import pytest

from fakes import make_steps


# ============================================================
# Reply parsing
# ============================================================

class TestParsePlanJson:

    def test_fenced_block(self):
        from agent_engine.plan_utils import parse_plan_json
        assert parse_plan_json('Here you go:\n```json\n{"steps": []}\n```') == {"steps": []}

    def test_prose_around_object(self):
        from agent_engine.plan_utils import parse_plan_json
        assert parse_plan_json('Sure! {"summary": "done"} Hope that helps.') == {"summary": "done"}

    @pytest.mark.parametrize("content", ["", "no json here", "{broken"])
    def test_unparseable(self, content):
        from agent_engine.plan_utils import parse_plan_json
        assert parse_plan_json(content) is None


class TestPlannerMeta:

    def test_meta_collects_checks_from_critique_and_top_level(self):
        from agent_engine.models import TaskType
        from agent_engine.plan_utils import normalize_planner_meta
        meta = normalize_planner_meta({
            "critique": {"risks": ["Paywall"], "safetyChecks": ["Check domain"], "bogus": ["x"]},
            "safetyChecks": ["Check domain", "Check login state"],
            "alternatives": [{"title": "Use search", "steps": [{"title": "Type query"}]}, {"title": "No steps"}],
            "taskType": "extract_info",
            "summary": "  Collect names  ",
        })

        assert meta.critique == {"risks": ["Paywall"], "safetyChecks": ["Check domain"]}
        assert meta.safety_checks == ["Check domain", "Check login state"]
        assert [alt["title"] for alt in meta.alternatives] == ["Use search"]
        assert meta.task_type == TaskType.EXTRACT_INFO
        assert meta.summary == "Collect names"

    def test_dependencies_map_to_step_refs(self):
        from agent_engine.plan_utils import normalize_dependencies
        specs = [{"title": "Open page"}, {"title": "Search"}, {"title": "Read"}]
        assert normalize_dependencies([0, 1, 7], specs) == ["step-0", "step-1"]
        assert normalize_dependencies(["search", "unknown"], specs) == ["step-1"]
        assert normalize_dependencies([], specs) is None

    def test_branch_steps_from_alternatives(self):
        from agent_engine.plan_utils import build_branch_steps_from_alternatives
        steps = build_branch_steps_from_alternatives(
            [{"title": "Use search", "steps": [{"title": "Type the query"}, {"title": "Open the first hit"}]}],
            max_attempts=3,
            max_steps=12,
        )
        assert [step.title for step in steps][-2:] == ["Type the query", "Open the first hit"]
        assert all(step.max_attempts == 3 for step in steps)


# ============================================================
# Heuristic plans and scheduling
# ============================================================

class TestHeuristicPlan:

    def test_login_prompt(self):
        from agent_engine.plan_utils import build_heuristic_plan
        titles = build_heuristic_plan("Log in to example.com with my account")
        assert titles[1] == "Locate the sign-in form."
        assert len(titles) == 5

    def test_browse_prompt(self):
        from agent_engine.plan_utils import build_heuristic_plan
        assert build_heuristic_plan("Browse the example.com website")[0] == "Open the target URL."

    def test_sentence_split_and_cap(self):
        from agent_engine.plan_utils import build_heuristic_plan
        assert build_heuristic_plan("Open the shop. Search for socks! Read the price.", max_steps=2) == [
            "Open the shop", "Search for socks",
        ]
        assert build_heuristic_plan("   ") == []

    def test_extraction_step_detection(self):
        from agent_engine.models import PlanStep, TaskType
        from agent_engine.plan_utils import is_extraction_step
        step = PlanStep(title="Read the page")
        assert is_extraction_step(step, "Collect product names", None)
        assert is_extraction_step(step, "Open the page", TaskType.EXTRACT_INFO)
        assert not is_extraction_step(step, "Open the page", TaskType.WEB_TASK)

    def test_scheduled_replan(self):
        from agent_engine.plan_utils import should_evaluate_replan
        steps = make_steps(["a", "b", "c", "d"])
        assert should_evaluate_replan(1, steps, 2) is True
        assert should_evaluate_replan(0, steps, 2) is False
        assert should_evaluate_replan(3, steps, 2) is False
        assert should_evaluate_replan(1, steps[:2], 2) is False

    def test_splice_keeps_prefix_and_caps(self):
        from agent_engine.plan_utils import splice_plan
        plan = make_steps(["a", "b", "c"])
        new = make_steps(["x", "y", "z"])
        spliced = splice_plan(plan, 2, new, max_steps=3)
        assert [step.title for step in spliced] == ["a", "b", "x"]
        assert [step.title for step in splice_plan(plan, 3, new, max_steps=3)] == ["a", "b", "c", "x"]

    def test_task_type_suffix(self):
        from agent_engine.models import TaskType
        from agent_engine.plan_utils import append_task_type_to_prompt
        assert append_task_type_to_prompt("Go", None) == "Go"
        assert append_task_type_to_prompt("Go", TaskType.EXTRACT_INFO) == "Go\n\nTask type: extract_info"


# ============================================================
# Run settings / preferences / models
# ============================================================

class TestRunConfig:

    def test_clamp_int(self):
        from agent_engine.run_config import clamp_int
        assert clamp_int("7", 1, 5, 2) == 5
        assert clamp_int(-1, 0, 6, 2) == 0
        assert clamp_int("many", 1, 5, 2) == 2
        assert clamp_int(True, 1, 5, 2) == 2

    def test_resolve_settings_clamps_and_fills(self):
        from agent_engine.run_config import resolve_run_settings
        settings = resolve_run_settings({"settings": {"max_steps": 50, "loop_guard_threshold": 0, "max_self_checks": "x"}})
        assert settings.max_steps == 20
        assert settings.loop_guard_threshold == 1
        assert settings.max_self_checks == 4
        assert resolve_run_settings(None).max_step_attempts == 2

    def test_resolve_preferences(self):
        from agent_engine.run_config import resolve_run_preferences
        prefs = resolve_run_preferences({"preferences": {"require_human_approval": 1, "loop_guard_model": "  ", "planner_model": " p "}})
        assert prefs.require_human_approval is True
        assert prefs.loop_guard_model is None
        assert prefs.planner_model == "p"

    def test_model_selection_fallbacks(self):
        from agent_engine.run_config import ModelSelection, RunPreferences
        models = ModelSelection.from_preferences(
            RunPreferences(planner_model="planner", memory_validation_model="validator"), "run-model",
        )
        assert models.resolved == "run-model"
        assert models.planner == "planner"
        assert models.self_check == "planner"
        assert models.loop_guard == "planner"
        assert models.memory_summarization == "run-model"
        assert models.approval_gate is None
        assert models.memory_validation == "validator"

    def test_model_selection_defaults_to_configured_model(self):
        from agent_engine.run_config import ModelSelection, RunPreferences
        assert ModelSelection.from_preferences(RunPreferences(), None).resolved == "test-model"
