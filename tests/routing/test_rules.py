"""Tests for rule matching, candidate scoring and ranking.

Tests cover:
- The keyword regression scenario ("this is a test" -> m1)
- Default fallback when no rule matches
- Cross-rule ordering by score, priority, declaration and prefer position
- Capability fit and routing mode modifiers
- Dropping unknown references and de-duplicating provider:model pairs
- Glob matching and privacy preprocessing
- Determinism under repetition and concurrency
"""

from __future__ import annotations

import asyncio

import pytest

from conftest import simple_profile_data
from prompt_router.profile import RoutingMode, RulePredicate, load_profile
from prompt_router.routing.rules import (
    DEFAULT_RULE_ID,
    REDACTED_PATH,
    RoutingRequest,
    apply_privacy,
    effective_privacy,
    glob_match,
    rank,
    rule_matches,
    strip_large_content,
)


def keys(candidates):
    return [candidate.key for candidate in candidates]


# ------------------------------------------------------------------ #
# Matching & default fallback
# ------------------------------------------------------------------ #


def test_keyword_rule_routes_test_prompt_to_m1(settings):
    profile = load_profile(
        simple_profile_data(
            routing={
                "rules": [
                    {"id": "r", "if": {"anyKeyword": ["test"]}, "then": {"prefer": ["p1:m1"]}},
                ],
                "default": {"prefer": ["p1:m1"]},
            }
        )
    )

    ranked = rank(profile, RoutingRequest(prompt="this is a test"), settings)

    assert ranked[0].model_name == "m1"
    assert ranked[0].provider_id == "p1"
    assert ranked[0].rule_id == "r"


def test_no_matching_rule_uses_default(settings):
    profile = load_profile(simple_profile_data())

    ranked = rank(profile, RoutingRequest(prompt="hello there"), settings)

    assert keys(ranked) == ["p1:m1", "p2:m2"]
    assert all(candidate.rule_id == DEFAULT_RULE_ID for candidate in ranked)
    assert ranked[0].rule_index == len(profile.rules)


def test_default_used_when_matching_rule_references_nothing(settings):
    data = simple_profile_data()
    data["routing"]["rules"][0]["then"]["prefer"] = ["ghost:model", "p1:missing"]
    profile = load_profile(data)

    ranked = rank(profile, RoutingRequest(prompt="a test prompt"), settings)

    assert keys(ranked) == ["p1:m1", "p2:m2"]
    assert ranked[0].rule_id == DEFAULT_RULE_ID


def test_unknown_references_are_dropped_silently(settings):
    data = simple_profile_data()
    data["routing"]["rules"][0]["then"]["prefer"] = ["ghost:model", "p2:m2"]
    profile = load_profile(data)

    ranked = rank(profile, RoutingRequest(prompt="test"), settings)

    assert keys(ranked) == ["p2:m2"]
    assert ranked[0].prefer_index == 1


def test_all_matching_rules_contribute_candidates(profile, settings):
    request = RoutingRequest(prompt="design this module", file_lang="python")

    ranked = rank(profile, request, settings)

    # architecture (priority 2) outranks code (priority 1); prefer order breaks the tie
    assert keys(ranked) == ["cloud:gpt-large", "cloud:gpt-small", "local:qwen2.5:7b"]
    assert [c.rule_id for c in ranked] == ["architecture", "code", "code"]


def test_score_formula(profile, settings):
    request = RoutingRequest(prompt="refactor", file_lang="python")

    ranked = rank(profile, request, settings)

    # base 1 + priority 1 * 10 + code capability 2
    assert [c.score for c in ranked] == [pytest.approx(13.0), pytest.approx(13.0)]
    assert keys(ranked) == ["cloud:gpt-small", "local:qwen2.5:7b"]


def test_priority_breaks_score_ties(settings):
    data = simple_profile_data()
    data["routing"]["rules"] = [
        {"id": "low", "if": {"anyKeyword": ["x"]}, "then": {"prefer": ["p1:m1"], "priority": 0}},
        {"id": "high", "if": {"anyKeyword": ["x"]}, "then": {"prefer": ["p2:m2"], "priority": 2}},
    ]
    profile = load_profile(data)
    # Zero weight makes every score equal
    tied = settings.model_copy(update={"priority_weight": 0.0})

    ranked = rank(profile, RoutingRequest(prompt="x"), tied)

    assert ranked[0].score == ranked[1].score
    assert keys(ranked) == ["p2:m2", "p1:m1"]


def test_declaration_order_breaks_remaining_ties(settings):
    data = simple_profile_data()
    data["routing"]["rules"] = [
        {"id": "first", "if": {"anyKeyword": ["x"]}, "then": {"prefer": ["p1:m1"], "priority": 1}},
        {"id": "second", "if": {"anyKeyword": ["x"]}, "then": {"prefer": ["p2:m2"], "priority": 1}},
    ]
    profile = load_profile(data)

    ranked = rank(profile, RoutingRequest(prompt="x"), settings)

    assert keys(ranked) == ["p1:m1", "p2:m2"]
    assert [c.rule_index for c in ranked] == [0, 1]


def test_duplicate_pairs_keep_best_ranked_occurrence(settings):
    data = simple_profile_data()
    data["routing"]["rules"] = [
        {"id": "a", "if": {"anyKeyword": ["x"]}, "then": {"prefer": ["p1:m1", "p2:m2"]}},
        {"id": "b", "if": {"anyKeyword": ["x"]}, "then": {"prefer": ["p1:m1"], "priority": 3}},
    ]
    profile = load_profile(data)

    ranked = rank(profile, RoutingRequest(prompt="x"), settings)

    assert keys(ranked) == ["p1:m1", "p2:m2"]
    assert ranked[0].rule_id == "b"
    assert ranked[0].priority == 3


# ------------------------------------------------------------------ #
# Predicate fields
# ------------------------------------------------------------------ #


def test_keywords_match_case_insensitively():
    any_kw = RulePredicate(any_keyword=("Docker", "k8s"))
    all_kw = RulePredicate(all_keywords=("unit", "TEST"))

    assert rule_matches(any_kw, RoutingRequest(prompt="fix the DOCKER file"), mode=RoutingMode.AUTO, privacy_strict=False)
    assert not rule_matches(any_kw, RoutingRequest(prompt="fix it"), mode=RoutingMode.AUTO, privacy_strict=False)
    assert rule_matches(all_kw, RoutingRequest(prompt="write a Unit test"), mode=RoutingMode.AUTO, privacy_strict=False)
    assert not rule_matches(all_kw, RoutingRequest(prompt="write a unit"), mode=RoutingMode.AUTO, privacy_strict=False)


def test_file_lang_requires_a_language():
    predicate = RulePredicate(file_lang_in=("python",))

    assert rule_matches(predicate, RoutingRequest(prompt="x", file_lang="python"), mode=RoutingMode.AUTO, privacy_strict=False)
    assert not rule_matches(predicate, RoutingRequest(prompt="x", file_lang="go"), mode=RoutingMode.AUTO, privacy_strict=False)
    assert not rule_matches(predicate, RoutingRequest(prompt="x"), mode=RoutingMode.AUTO, privacy_strict=False)


def test_file_path_globs():
    predicate = RulePredicate(file_path_matches=("src/**/*.py",))

    assert rule_matches(predicate, RoutingRequest(prompt="x", file_path="src/a/b/c.py"), mode=RoutingMode.AUTO, privacy_strict=False)
    assert not rule_matches(predicate, RoutingRequest(prompt="x", file_path="docs/c.py"), mode=RoutingMode.AUTO, privacy_strict=False)
    assert not rule_matches(predicate, RoutingRequest(prompt="x"), mode=RoutingMode.AUTO, privacy_strict=False)


@pytest.mark.parametrize(
    ("path", "pattern", "expected"),
    [
        ("src/a/b/c.py", "src/**/*.py", True),
        ("src/c.py", "src/**/*.py", True),
        ("SRC/Main.PY", "src/*.py", True),
        ("src/a/main.py", "src/*.py", False),
        ("abc", "a?c", True),
        ("a/c", "a?c", False),
        ("src\\win\\path.ts", "src/**", True),
        ("notes(1).md", "notes(1).md", True),
    ],
)
def test_glob_match(path, pattern, expected):
    assert glob_match(path, pattern) is expected


@pytest.mark.parametrize(("context_kb", "expected"), [(0.5, False), (1.0, True), (2.0, True), (2.5, False)])
def test_context_bounds_are_inclusive(context_kb, expected):
    predicate = RulePredicate(min_context_kb=1.0, max_context_kb=2.0)
    request = RoutingRequest(prompt="x", context_kb=context_kb)

    assert rule_matches(predicate, request, mode=RoutingMode.AUTO, privacy_strict=False) is expected


def test_context_defaults_to_prompt_size():
    request = RoutingRequest(prompt="a" * 2048)

    assert request.effective_context_kb == 2.0
    assert request.estimated_context_tokens == 512


def test_mode_predicate_uses_profile_mode_when_request_has_none(settings):
    data = simple_profile_data(mode="speed")
    data["routing"]["rules"] = [
        {"id": "fast", "if": {"mode": ["speed"]}, "then": {"prefer": ["p2:m2"]}},
    ]
    profile = load_profile(data)

    assert keys(rank(profile, RoutingRequest(prompt="x"), settings)) == ["p2:m2"]
    assert keys(rank(profile, RoutingRequest(prompt="x", mode=RoutingMode.QUALITY), settings)) == [
        "p1:m1",
        "p2:m2",
    ]


def test_plain_string_mode_is_coerced(settings):
    profile = load_profile(simple_profile_data())
    request = RoutingRequest(prompt="this is a test", mode="speed")

    assert request.mode is RoutingMode.SPEED
    assert keys(rank(profile, request, settings))[0] == "p1:m1"


def test_unknown_mode_is_rejected_at_construction():
    with pytest.raises(ValueError):
        RoutingRequest(prompt="x", mode="turbo")


# ------------------------------------------------------------------ #
# Capability fit & modes
# ------------------------------------------------------------------ #


def test_cheap_mode_prefers_lower_price(profile, settings):
    ranked = rank(profile, RoutingRequest(prompt="hello", mode=RoutingMode.CHEAP), settings)

    # Unpriced local model beats the priced cloud model despite prefer order
    assert keys(ranked) == ["local:qwen2.5:7b", "cloud:gpt-small"]


def test_quality_mode_favours_quality_models(profile_data, settings):
    profile_data["routing"]["default"]["prefer"] = ["cloud:gpt-small", "cloud:gpt-large"]
    profile = load_profile(profile_data)

    ranked = rank(profile, RoutingRequest(prompt="hello", mode=RoutingMode.QUALITY), settings)

    assert keys(ranked) == ["cloud:gpt-large", "cloud:gpt-small"]


def test_auto_mode_adds_nothing(profile, settings):
    ranked = rank(profile, RoutingRequest(prompt="hello"), settings)

    assert [c.score for c in ranked] == [pytest.approx(1.0), pytest.approx(1.0)]


def test_small_context_window_is_penalised(profile_data, settings):
    profile_data["routing"]["default"]["prefer"] = ["local:qwen2.5:7b", "cloud:gpt-small"]
    profile = load_profile(profile_data)

    # 200 KB is ~51k tokens: too big for the 32k local window
    ranked = rank(profile, RoutingRequest(prompt="hello", context_kb=200), settings)

    assert keys(ranked) == ["cloud:gpt-small", "local:qwen2.5:7b"]
    assert ranked[0].score > ranked[1].score


def test_privacy_strict_request_matches_private_rule(profile, settings):
    ranked = rank(profile, RoutingRequest(prompt="hello", privacy_strict=True), settings)

    assert keys(ranked) == ["local:qwen2.5:7b"]
    assert ranked[0].rule_id == "private"


def test_local_only_mode_forces_privacy_and_favours_local(profile, settings):
    request = RoutingRequest(prompt="hello", mode=RoutingMode.LOCAL_ONLY)

    ranked = rank(profile, request, settings)

    assert effective_privacy(profile, request) is True
    assert keys(ranked) == ["local:qwen2.5:7b"]
    # base 1 + priority 5 * 10 + local bonus 3
    assert ranked[0].score == pytest.approx(54.0)


def test_rule_target_carries_to_candidate(settings):
    data = simple_profile_data()
    data["routing"]["rules"][0]["then"]["target"] = "completion"
    profile = load_profile(data)

    ranked = rank(profile, RoutingRequest(prompt="test"), settings)

    assert ranked[0].target == "completion"


# ------------------------------------------------------------------ #
# Privacy preprocessing
# ------------------------------------------------------------------ #


def test_strip_large_content_keeps_head_and_tail():
    content = "\n".join(f"line {i}" for i in range(250))

    stripped = strip_large_content(content)

    lines = stripped.split("\n")
    assert lines[0] == "line 0"
    assert lines[-1] == "line 249"
    assert "[... 150 lines omitted for privacy ...]" in stripped
    assert "line 100" not in lines


def test_strip_large_content_leaves_short_content():
    content = "\n".join(f"line {i}" for i in range(100))

    assert strip_large_content(content) == content


def test_apply_privacy_redacts_and_strips(profile_data):
    profile_data["privacy"] = {
        "redactPaths": ["**/.env", "secrets/**"],
        "stripFileContentOverKB": 1,
    }
    profile = load_profile(profile_data)
    prompt = "\n".join(f"line {i}" for i in range(300))
    request = RoutingRequest(prompt=prompt, file_path="config/.env")

    result = apply_privacy(profile, request)

    assert result.file_path == REDACTED_PATH
    assert "omitted for privacy" in result.prompt
    assert result.context_kb == pytest.approx(request.effective_context_kb)
    assert result.privacy_strict is False


def test_apply_privacy_forces_flag_when_external_disallowed(profile_data):
    profile_data["privacy"] = {"allowExternal": False}
    profile = load_profile(profile_data)

    result = apply_privacy(profile, RoutingRequest(prompt="hi"))

    assert result.privacy_strict is True


def test_apply_privacy_is_noop_without_policy(profile):
    request = RoutingRequest(prompt="hi", file_path="a/.env")

    assert apply_privacy(profile, request) is request


# ------------------------------------------------------------------ #
# Determinism
# ------------------------------------------------------------------ #


def test_ranking_is_deterministic(profile, settings):
    request = RoutingRequest(prompt="design the api", file_lang="typescript")

    first = rank(profile, request, settings)

    for _ in range(50):
        assert rank(profile, request, settings) == first


@pytest.mark.asyncio
async def test_ranking_is_independent_of_concurrency(profile, settings):
    request = RoutingRequest(prompt="design the api", file_lang="typescript")
    expected = rank(profile, request, settings)

    results = await asyncio.gather(
        *(asyncio.to_thread(rank, profile, request, settings) for _ in range(20))
    )

    assert all(result == expected for result in results)
