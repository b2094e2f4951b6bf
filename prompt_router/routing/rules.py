"""Rule engine and candidate ranker.

rank() evaluates every routing rule against a request and turns the
``prefer`` lists of all matching rules into scored candidates:

    score = base + priority * priority_weight + capability_fit + mode_modifier

Candidates are ordered by score (descending), then rule priority
(descending), then rule declaration order, then position in ``prefer``.
When nothing matches, or every match references unknown models, the
profile default supplies the list. Ranking is pure and never raises.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, replace
from functools import lru_cache
from typing import TYPE_CHECKING

import structlog

from prompt_router.config import Settings, get_settings
from prompt_router.pricing import CHARS_PER_TOKEN
from prompt_router.profile import PRIVATE_MODES, RoutingMode, split_candidate_token

if TYPE_CHECKING:
    from prompt_router.profile import (
        BudgetConfig,
        ModelSpec,
        ProviderConfig,
        RuleAction,
        RulePredicate,
        RoutingProfile,
    )

log = structlog.get_logger(__name__)

DEFAULT_RULE_ID = "default"
REDACTED_PATH = "[REDACTED]"

# Content stripping keeps this many lines at each end
STRIP_KEEP_LINES = 50

# Capability fit
CODE_CAP_BONUS = 2.0
LARGE_CONTEXT_KB = 32.0
LARGE_CONTEXT_TOKENS = 100_000
LONG_CONTEXT_BONUS = 2.0
CONTEXT_OVERFLOW_PENALTY = 5.0

# Mode modifiers
MODE_CAP_BONUS = 3.0
LOCAL_PROVIDER_BONUS = 3.0
CHEAP_MODE_SCALE = 3.0

_MODE_CAPS: dict[RoutingMode, frozenset[str]] = {
    RoutingMode.SPEED: frozenset({"fast"}),
    RoutingMode.QUALITY: frozenset({"quality", "reasoning"}),
}
_LOCAL_MODES = PRIVATE_MODES | {RoutingMode.OFFLINE}


@dataclass(frozen=True)
class RoutingRequest:
    """A prompt plus the signals rules can match on.

    Attributes:
        prompt: Prompt text sent to the model
        file_lang: Language id of the active file (e.g. "python")
        file_path: Path of the active file
        context_kb: Context size in KB. Derived from the prompt when omitted.
        privacy_strict: Require local providers for this request
        mode: Routing mode override. Falls back to the profile mode.
        budget: Budget override. Falls back to the profile budget.
        target: Transaction target override ("chat" or "completion")
    """

    prompt: str
    file_lang: str | None = None
    file_path: str | None = None
    context_kb: float | None = None
    privacy_strict: bool = False
    mode: RoutingMode | None = None
    budget: BudgetConfig | None = None
    target: str | None = None

    def __post_init__(self) -> None:
        if self.mode is not None and not isinstance(self.mode, RoutingMode):
            object.__setattr__(self, "mode", RoutingMode(self.mode))

    @property
    def effective_context_kb(self) -> float:
        if self.context_kb is not None:
            return self.context_kb
        return len(self.prompt.encode("utf-8")) / 1024

    @property
    def estimated_context_tokens(self) -> int:
        return math.ceil(self.effective_context_kb * 1024 / CHARS_PER_TOKEN)


@dataclass(frozen=True)
class Candidate:
    """A ranked provider/model pair. Built per request, never persisted."""

    provider_id: str
    model_name: str
    score: float
    rule_id: str
    priority: int = 0
    rule_index: int = 0
    prefer_index: int = 0
    target: str = "chat"

    @property
    def key(self) -> str:
        return f"{self.provider_id}:{self.model_name}"

    def sort_key(self) -> tuple[float, int, int, int]:
        return (-self.score, -self.priority, self.rule_index, self.prefer_index)


# ------------------------------------------------------------------ #
# Effective request view
# ------------------------------------------------------------------ #


def effective_mode(profile: RoutingProfile, request: RoutingRequest) -> RoutingMode:
    return request.mode or profile.mode


def effective_privacy(profile: RoutingProfile, request: RoutingRequest) -> bool:
    """Privacy is forced on by private profile modes and ``allowExternal: false``."""
    if request.privacy_strict:
        return True
    if request.mode in PRIVATE_MODES or profile.mode in PRIVATE_MODES:
        return True
    return profile.privacy is not None and not profile.privacy.allow_external


def strip_large_content(content: str, keep_lines: int = STRIP_KEEP_LINES) -> str:
    """Keep the first and last ``keep_lines`` lines with an omission marker between."""
    lines = content.split("\n")
    if len(lines) <= keep_lines * 2:
        return content

    omitted = len(lines) - keep_lines * 2
    head = "\n".join(lines[:keep_lines])
    tail = "\n".join(lines[-keep_lines:])
    return f"{head}\n\n[... {omitted} lines omitted for privacy ...]\n\n{tail}"


def apply_privacy(profile: RoutingProfile, request: RoutingRequest) -> RoutingRequest:
    """Apply the profile's privacy policy to a request.

    Redacts matching file paths, strips oversized prompts and forces the
    privacy flag where the profile demands it. The context size seen by
    rules is preserved when the prompt is stripped.
    """
    changes: dict[str, object] = {}
    if effective_privacy(profile, request) and not request.privacy_strict:
        changes["privacy_strict"] = True

    privacy = profile.privacy
    if privacy is not None:
        if request.file_path and any(
            glob_match(request.file_path, pattern) for pattern in privacy.redact_paths
        ):
            changes["file_path"] = REDACTED_PATH

        limit = privacy.strip_file_content_over_kb
        context_kb = request.effective_context_kb
        if limit is not None and context_kb > limit:
            stripped = strip_large_content(request.prompt)
            if stripped != request.prompt:
                changes["prompt"] = stripped
                changes["context_kb"] = context_kb

    if not changes:
        return request

    log.debug("rules.privacy_applied", changed=sorted(changes))
    return replace(request, **changes)


# ------------------------------------------------------------------ #
# Matching
# ------------------------------------------------------------------ #


@lru_cache(maxsize=256)
def _glob_regex(pattern: str) -> re.Pattern[str]:
    parts: list[str] = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("**/", i):
            parts.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("**", i):
            parts.append(".*")
            i += 2
        elif pattern[i] == "*":
            parts.append("[^/]*")
            i += 1
        elif pattern[i] == "?":
            parts.append("[^/]")
            i += 1
        else:
            parts.append(re.escape(pattern[i]))
            i += 1
    return re.compile("^" + "".join(parts) + "$", re.IGNORECASE)


def glob_match(path: str, pattern: str) -> bool:
    """Case-insensitive glob match. ``**`` crosses directories, ``*`` and ``?`` do not."""
    return _glob_regex(pattern.replace("\\", "/")).match(path.replace("\\", "/")) is not None


def rule_matches(
    predicate: RulePredicate,
    request: RoutingRequest,
    *,
    mode: RoutingMode,
    privacy_strict: bool,
) -> bool:
    """True when every field the predicate declares holds for the request."""
    prompt = request.prompt.lower()

    if predicate.any_keyword is not None and not any(
        keyword.lower() in prompt for keyword in predicate.any_keyword
    ):
        return False
    if predicate.all_keywords is not None and not all(
        keyword.lower() in prompt for keyword in predicate.all_keywords
    ):
        return False

    if predicate.file_lang_in is not None:
        if not request.file_lang:
            return False
        langs = {lang.lower() for lang in predicate.file_lang_in}
        if request.file_lang.lower() not in langs:
            return False

    if predicate.file_path_matches is not None:
        if not request.file_path:
            return False
        if not any(glob_match(request.file_path, p) for p in predicate.file_path_matches):
            return False

    context_kb = request.effective_context_kb
    if predicate.min_context_kb is not None and context_kb < predicate.min_context_kb:
        return False
    if predicate.max_context_kb is not None and context_kb > predicate.max_context_kb:
        return False

    if predicate.mode is not None and mode not in predicate.mode:
        return False
    if predicate.privacy_strict is not None and predicate.privacy_strict != privacy_strict:
        return False

    return True


# ------------------------------------------------------------------ #
# Scoring
# ------------------------------------------------------------------ #


def capability_fit(model: ModelSpec, request: RoutingRequest) -> float:
    score = 0.0
    if request.file_lang and model.has_cap("code"):
        score += CODE_CAP_BONUS

    if request.effective_context_kb >= LARGE_CONTEXT_KB and (
        model.has_cap("long-context")
        or (model.context is not None and model.context >= LARGE_CONTEXT_TOKENS)
    ):
        score += LONG_CONTEXT_BONUS

    if model.context is not None and model.context < request.estimated_context_tokens:
        score -= CONTEXT_OVERFLOW_PENALTY
    return score


def mode_modifier(mode: RoutingMode, provider: ProviderConfig, model: ModelSpec) -> float:
    if mode in _MODE_CAPS:
        return MODE_CAP_BONUS if _MODE_CAPS[mode].intersection(model.caps) else 0.0

    if mode is RoutingMode.CHEAP:
        # Unpriced models count as free
        blended = model.price.blended_per_mtok if model.price else 0.0
        return CHEAP_MODE_SCALE / (1.0 + blended)

    if mode in _LOCAL_MODES:
        return LOCAL_PROVIDER_BONUS if provider.is_local else 0.0

    return 0.0


def _expand(
    profile: RoutingProfile,
    action: RuleAction,
    rule_id: str,
    rule_index: int,
    request: RoutingRequest,
    mode: RoutingMode,
    settings: Settings,
) -> list[Candidate]:
    base = settings.rule_base_score + action.priority * settings.priority_weight
    target = request.target or action.target
    candidates = []
    for prefer_index, token in enumerate(action.prefer):
        resolved = profile.resolve(token)
        if resolved is None:
            log.debug("rules.candidate_dropped", rule_id=rule_id, candidate=token)
            continue

        provider, model = resolved
        provider_id, model_name = split_candidate_token(token)
        candidates.append(
            Candidate(
                provider_id=provider_id,
                model_name=model_name,
                score=base + capability_fit(model, request) + mode_modifier(mode, provider, model),
                rule_id=rule_id,
                priority=action.priority,
                rule_index=rule_index,
                prefer_index=prefer_index,
                target=target,
            )
        )
    return candidates


def _dedupe(candidates: list[Candidate]) -> list[Candidate]:
    seen: set[str] = set()
    unique = []
    for candidate in candidates:
        if candidate.key in seen:
            continue
        seen.add(candidate.key)
        unique.append(candidate)
    return unique


def rank(
    profile: RoutingProfile,
    request: RoutingRequest,
    settings: Settings | None = None,
) -> list[Candidate]:
    """Rank candidates for a request.

    Args:
        profile: Profile snapshot to route against
        request: Routing request
        settings: Scoring settings. Defaults to get_settings().

    Returns:
        Candidates best-first, one per provider:model pair. Empty only if
        the default action resolves to nothing, which load_profile rejects.
    """
    settings = settings or get_settings()
    mode = effective_mode(profile, request)
    privacy_strict = effective_privacy(profile, request)

    matched: list[str] = []
    candidates: list[Candidate] = []
    for rule_index, rule in enumerate(profile.rules):
        if not rule_matches(rule.when, request, mode=mode, privacy_strict=privacy_strict):
            continue
        matched.append(rule.id)
        candidates.extend(
            _expand(profile, rule.then, rule.id, rule_index, request, mode, settings)
        )

    used_default = not candidates
    if used_default:
        candidates = _expand(
            profile,
            profile.default,
            DEFAULT_RULE_ID,
            len(profile.rules),
            request,
            mode,
            settings,
        )

    ranked = _dedupe(sorted(candidates, key=Candidate.sort_key))
    log.debug(
        "rules.ranked",
        mode=str(mode),
        matched_rules=matched,
        used_default=used_default,
        candidates=[candidate.key for candidate in ranked],
    )
    return ranked
