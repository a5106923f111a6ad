import pytest

from conftest import FakeScenario
from app.agents.validator import conflict_terms, local_validation, strip_conflicting_items, validate_plan
from app.core.health_twin import ProfileUpdates, apply_profile_updates, create_empty_profile, format_health_twin_for_prompt
from app.core.stage_results import AnalyzerResult, PlanRecommendation

ANALYZER = AnalyzerResult(summary="Tired after short sleep.", energy_score=45)


def _plan(diet: list[str], exercise: list[str]) -> PlanRecommendation:
    return PlanRecommendation(summary="Plan", diet=diet, exercise=exercise, hydration="Water", recovery="Sleep")


def _profile_text(**updates) -> str:
    return format_health_twin_for_prompt(apply_profile_updates(create_empty_profile(), ProfileUpdates(**updates)))


def test_validate_plan_skips_without_profile(fake_completion_factory) -> None:
    fake = fake_completion_factory()
    result = validate_plan(fake, _plan(["Peanuts"], ["Walk"]), ANALYZER, "")
    assert result.approved is True
    assert result.tier == "skipped"
    assert "skipping validation" in result.reasoning
    assert fake.calls == []


def test_validate_plan_skips_short_profile(fake_completion_factory) -> None:
    fake = fake_completion_factory()
    result = validate_plan(fake, _plan(["Peanuts"], ["Walk"]), ANALYZER, "allergies: nuts")
    assert result.approved is True
    assert result.tier == "skipped"


def test_local_allergy_conflict_rejects_without_model_call(fake_completion_factory) -> None:
    fake = fake_completion_factory()
    profile_text = _profile_text(add_allergies=["peanuts"], add_conditions=["mild asthma"], add_patterns=["x" * 120])
    plan = _plan(["Handful of peanuts as a snack", "Oatmeal"], ["Walk"])

    result = validate_plan(fake, plan, ANALYZER, profile_text, "s1")

    assert result.approved is False
    assert result.tier == "local"
    assert result.conflicts == ['ALLERGY CONFLICT: Plan suggests "peanuts" but user is allergic']
    assert fake.calls == []


def test_local_validation_preference_and_exercise_conflicts() -> None:
    profile_text = _profile_text(add_food_dislikes=["mushrooms"], add_exercise_dislikes=["running"])
    plan = _plan(["Mushrooms on toast"], ["30 minutes of running", "Yoga"])

    conflicts = local_validation(plan, profile_text)

    assert 'PREFERENCE CONFLICT: Plan suggests "mushrooms" but user dislikes it' in conflicts
    assert 'EXERCISE CONFLICT: Plan suggests "running" but user avoids it' in conflicts


def test_local_validation_safety_conflict_for_limiting_condition() -> None:
    profile_text = _profile_text(add_conditions=["chronic back pain"])
    plan = _plan(["Salad"], ["15 minute HIIT circuit"])

    conflicts = local_validation(plan, profile_text)

    assert conflicts == ['SAFETY CONFLICT: Plan suggests "hiit" exercise but user has chronic back pain']


def test_local_validation_ignores_empty_terms() -> None:
    profile_text = "HEALTH TWIN PROFILE:\nAllergies: none\nHealth conditions: none reported"
    assert local_validation(_plan(["None of the usual snacks"], ["Walk"]), profile_text) == []


def test_medium_profile_without_conflicts_passes(fake_completion_factory) -> None:
    fake = fake_completion_factory()
    profile_text = _profile_text(add_allergies=["shellfish"])
    assert 30 <= len(profile_text) <= 150

    result = validate_plan(fake, _plan(["Oatmeal"], ["Walk"]), ANALYZER, profile_text)

    assert result.approved is True
    assert result.tier == "passed"
    assert fake.calls == []


def test_rich_profile_runs_deep_validation(fake_completion_factory) -> None:
    fake = fake_completion_factory()
    profile_text = _profile_text(
        add_allergies=["shellfish"],
        add_conditions=["type 2 diabetes"],
        add_medications=["metformin"],
        add_food_likes=["oatmeal", "berries"],
        add_patterns=["Energy dips after short sleep"],
    )
    assert len(profile_text) > 150

    result = validate_plan(fake, _plan(["Oatmeal"], ["Walk"]), ANALYZER, profile_text, "s2")

    assert result.approved is True
    assert result.tier == "deep"
    assert fake.stages_called() == ["validator"]
    assert fake.calls[0]["max_tokens"] == 200
    assert fake.calls[0]["temperature"] == 0.1


def test_deep_validation_fails_open_on_provider_error(fake_completion_factory) -> None:
    fake = fake_completion_factory(FakeScenario.PROVIDER_ERROR)
    profile_text = _profile_text(add_conditions=["type 2 diabetes"], add_patterns=["p" * 120])

    result = validate_plan(fake, _plan(["Oatmeal"], ["Walk"]), ANALYZER, profile_text)

    assert result.approved is True
    assert result.reasoning == "Validation skipped (error)"


def test_deep_validation_fails_open_on_malformed_output(fake_completion_factory) -> None:
    fake = fake_completion_factory(FakeScenario.MALFORMED_JSON)
    profile_text = _profile_text(add_conditions=["type 2 diabetes"], add_patterns=["p" * 120])

    result = validate_plan(fake, _plan(["Oatmeal"], ["Walk"]), ANALYZER, profile_text)

    assert result.approved is True
    assert result.tier == "deep"


def test_strip_conflicting_items_removes_matching_entries() -> None:
    conflicts = [
        'ALLERGY CONFLICT: Plan suggests "peanuts" but user is allergic',
        'SAFETY CONFLICT: Plan suggests "hiit" exercise but user has knee pain',
    ]
    plan = _plan(["Handful of Peanuts", "Greek yogurt"], ["HIIT sprints", "Gentle walk"])

    stripped = strip_conflicting_items(plan, conflicts)

    assert conflict_terms(conflicts) == ["peanuts", "hiit"]
    assert stripped.diet == ["Greek yogurt"]
    assert stripped.exercise == ["Gentle walk"]
    assert plan.diet == ["Handful of Peanuts", "Greek yogurt"]


@pytest.mark.parametrize(
    "profile_text,diet,exercise,expected",
    [
        ("Allergies: chicken, shellfish\nConditions: none", ["Grilled chicken with rice"], ["Walk"], "chicken"),
        ("Preferences: Avoids: running, swimming", ["Oatmeal"], ["30 min running", "Yoga"], "running"),
        ("Conditions: chronic back pain, knee injury", ["Salad"], ["HIIT training", "Heavy deadlifts"], "SAFETY"),
    ],
)
def test_labeled_profile_text_rejects_locally(fake_completion_factory, profile_text, diet, exercise, expected) -> None:
    fake = fake_completion_factory()

    result = validate_plan(fake, _plan(diet, exercise), ANALYZER, profile_text, "s3")

    assert result.approved is False
    assert result.tier == "local"
    assert any(expected in conflict for conflict in result.conflicts)
    assert fake.calls == []


def test_limiting_conditions_flag_each_high_intensity_word() -> None:
    conflicts = local_validation(
        _plan(["Salad"], ["HIIT training", "Heavy deadlifts"]), "Conditions: chronic back pain, knee injury"
    )
    assert conflicts == [
        'SAFETY CONFLICT: Plan suggests "hiit" exercise but user has chronic back pain, knee injury',
        'SAFETY CONFLICT: Plan suggests "heavy" exercise but user has chronic back pain, knee injury',
    ]


def test_local_validation_is_deterministic() -> None:
    profile_text = _profile_text(
        add_allergies=["peanuts", "shellfish"],
        add_food_dislikes=["mushrooms"],
        add_exercise_dislikes=["running"],
        add_conditions=["knee pain"],
    )
    plan = _plan(["Handful of peanuts", "Shellfish pasta", "Mushrooms on toast"], ["Sprint intervals", "Running"])

    first = local_validation(plan, profile_text)

    assert len(first) == 5
    for _ in range(10):
        assert local_validation(plan, profile_text) == first
