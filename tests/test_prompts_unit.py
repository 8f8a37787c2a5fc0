from src.research.prompts import (
    build_candidate_system_prompt,
    build_execution_system_prompt,
    build_optimize_system_prompt,
    format_user_payload,
    get_prompt_templates,
)


def test_candidate_prompt_contains_output_schema_and_sides():
    cfg = {"ai": {}}
    p = build_candidate_system_prompt(cfg)
    assert "=== OUTPUT ===" in p
    assert "side: LONG | SHORT" in p


def test_candidate_prompt_override_is_used_and_output_is_appended():
    cfg = {"ai": {"candidate_system_prompt": "CUSTOM CANDIDATE PROMPT"}}
    p = build_candidate_system_prompt(cfg)
    assert p.splitlines()[0] == "CUSTOM CANDIDATE PROMPT"
    assert "=== OUTPUT ===" in p


def test_blank_override_falls_back_to_default():
    cfg = {"ai": {"optimize_system_prompt": "   "}}
    p = build_optimize_system_prompt(cfg)
    assert p.startswith("You are the risk manager")


def test_optimize_and_execution_prompts_contain_output_schema():
    assert "recommendation: APPROVE | REJECT | REDUCE_SIZE" in build_optimize_system_prompt({})
    assert "shouldExecute: boolean" in build_execution_system_prompt(None)


def test_get_prompt_templates_excludes_output_schema():
    t = get_prompt_templates()
    assert set(t) == {"candidate", "optimize", "execution"}
    assert all("=== OUTPUT ===" not in v for v in t.values())


def test_format_user_payload_is_stable_json():
    assert format_user_payload({"b": 1, "a": 2}) == '{"a": 2, "b": 1}'
