import logging
from types import SimpleNamespace

from orchestrator.guard_service import (
    DEFAULT_RULES,
    GuardRuleEngine,
    SqlGuardRuleStore,
    merge_base_prompt,
)
from orchestrator.models import GuardRule


def rule(priority, hidden_prompt, rule_type="custom", apply_to=None, enabled=True):
    return SimpleNamespace(
        priority=priority,
        hidden_prompt=hidden_prompt,
        rule_type=rule_type,
        apply_to=apply_to if apply_to is not None else [],
        enabled=enabled,
    )


class ListStore:
    def __init__(self, rules):
        self.rules = rules

    def load_enabled_rules(self):
        return self.rules


class BrokenStore:
    def load_enabled_rules(self):
        raise RuntimeError("database is down")


def test_rules_prepended_in_priority_order():
    """
    Verify rules are applied in ascending priority regardless of storage order.
    Why: Admins rely on priority to decide which instruction the backend reads first.
    """
    engine = GuardRuleEngine(ListStore([rule(2, "C"), rule(0, "A"), rule(1, "B")]))

    result = engine.build_execution_prompt("a cat", None, "text_to_image")

    assert result.execution_prompt == "A. B. C. a cat"
    assert result.user_prompt == "a cat"


def test_negative_prompt_rules_go_to_negative_prompt():
    """
    Verify negative_prompt rules are joined into the negative prompt, not the prompt.
    Why: Backends weight the negative prompt differently; mixing them inverts the intent.
    """
    engine = GuardRuleEngine(ListStore([
        rule(0, "blurry", rule_type="negative_prompt"),
        rule(1, "Be safe", rule_type="safety_nsfw"),
        rule(2, "watermark", rule_type="negative_prompt"),
    ]))

    result = engine.build_execution_prompt("a cat", None, "text_to_image")

    assert result.execution_prompt == "Be safe. a cat"
    assert result.negative_prompt == "blurry, watermark"


def test_rules_filtered_by_generation_type():
    """Rules scoped to image_to_image must not reach a text-to-image request"""
    engine = GuardRuleEngine(ListStore([
        rule(0, "Keep the face", rule_type="face_preserve", apply_to=["image_to_image"]),
        rule(1, "Everywhere", apply_to=["image"]),
        rule(2, "Unscoped"),
    ]))

    text_result = engine.build_execution_prompt("portrait", None, "text_to_image")
    edit_result = engine.build_execution_prompt("portrait", None, "image_to_image")

    assert text_result.execution_prompt == "Everywhere. Unscoped. portrait"
    assert edit_result.execution_prompt == "Keep the face. Everywhere. Unscoped. portrait"


def test_disabled_and_empty_rules_contribute_nothing():
    engine = GuardRuleEngine(ListStore([
        rule(0, "Disabled", enabled=False),
        rule(1, "   "),
    ]))

    result = engine.build_execution_prompt("a cat", None, "image")

    assert result.execution_prompt == "a cat"
    assert result.negative_prompt == ""


def test_fail_open_when_rules_cannot_load(caplog):
    """
    Verify a rule store failure returns the base prompt unchanged.
    Why: Generation must keep working even if the guard rule table is unavailable.
    """
    engine = GuardRuleEngine(BrokenStore())

    with caplog.at_level(logging.WARNING):
        result = engine.build_execution_prompt("a cat", "Watercolor of {prompt}", "image")

    assert result.execution_prompt == "Watercolor of a cat"
    assert result.negative_prompt == ""
    assert "proceeding with base prompt" in caplog.text


def test_hidden_prompt_text_is_not_logged(caplog):
    engine = GuardRuleEngine(ListStore([rule(0, "SECRET INSTRUCTION")]))

    with caplog.at_level(logging.DEBUG, logger="orchestrator.guard_service"):
        engine.build_execution_prompt("a cat", None, "image")

    assert "SECRET INSTRUCTION" not in caplog.text


def test_template_merge():
    assert merge_base_prompt("a cat", "Oil painting of {prompt}, dramatic") == "Oil painting of a cat, dramatic"
    assert merge_base_prompt("a cat", "Oil painting") == "Oil painting, a cat"
    assert merge_base_prompt("", "Oil painting") == "Oil painting"
    assert merge_base_prompt("  a cat  ", None) == "a cat"


def test_seed_default_rules_only_once(session_factory):
    store = SqlGuardRuleStore(session_factory)

    assert store.seed_default_rules() == len(DEFAULT_RULES)
    assert store.seed_default_rules() == len(DEFAULT_RULES)

    with session_factory() as session:
        assert session.query(GuardRule).count() == len(DEFAULT_RULES)


def test_store_returns_only_enabled_rules_sorted(session_factory):
    with session_factory() as session:
        session.add_all([
            GuardRule(rule_name="late", rule_type="custom", priority=5, hidden_prompt="late"),
            GuardRule(rule_name="off", rule_type="custom", priority=0, hidden_prompt="off", enabled=False),
            GuardRule(rule_name="early", rule_type="custom", priority=1, hidden_prompt="early"),
        ])
        session.commit()

    rules = SqlGuardRuleStore(session_factory).load_enabled_rules()

    assert [r.rule_name for r in rules] == ["early", "late"]
