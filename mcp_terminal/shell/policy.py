"""Command policy (admit / deny / require approval).

Decisions are pure functions of the command text and a PolicyConfig snapshot.
The active snapshot lives in a PolicyStore owned by whoever serves commands;
reloading swaps the whole snapshot at once.

Matching:
- denylist entries match as case-insensitive whole words, on every path
- allowlist entries match as plain substrings
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Iterable

log = logging.getLogger("policy")


class Decision(str, Enum):
    ADMIT = "admit"
    DENY = "deny"
    REQUIRE_APPROVAL = "require_approval"


@dataclass(frozen=True)
class PolicyConfig:
    enabled: bool = False
    allowlist: tuple[str, ...] = ()
    denylist: tuple[str, ...] = ()
    allow_all_others: bool = False


@dataclass(frozen=True)
class PolicyDecision:
    """Decision plus the rule that produced it (for logs and error details)."""

    decision: Decision
    reason: str
    matched_rule: str | None = None


@lru_cache(maxsize=512)
def _word_regex(pattern: str) -> re.Pattern[str]:
    # Lookarounds instead of \b so patterns that start or end with
    # punctuation ("/dev/sda", "rm -rf") still bound correctly.
    return re.compile(rf"(?<!\w){re.escape(pattern)}(?!\w)", re.IGNORECASE)


def match_denylist(command: str, patterns: Iterable[str]) -> str | None:
    for p in patterns:
        pattern = (p or "").strip()
        if pattern and _word_regex(pattern).search(command):
            return pattern
    return None


def match_allowlist(command: str, patterns: Iterable[str]) -> str | None:
    for p in patterns:
        if p and p in command:
            return p
    return None


def evaluate(command: str, config: PolicyConfig) -> PolicyDecision:
    denied = match_denylist(command, config.denylist)
    if denied:
        return PolicyDecision(Decision.DENY, "Command is denied by denylist.", denied)

    if not config.enabled:
        return PolicyDecision(Decision.ADMIT, "Autorun mode is disabled; only the denylist applies.")

    if config.allow_all_others:
        return PolicyDecision(Decision.ADMIT, "Allowed by allow_all_other_commands.", "allow_all_other_commands")

    allowed = match_allowlist(command, config.allowlist)
    if allowed:
        return PolicyDecision(Decision.ADMIT, "Command is allowed by allowlist.", allowed)

    return PolicyDecision(Decision.DENY, "Command is not in the allowlist.", "default")


def decide(command: str, config: PolicyConfig) -> Decision:
    return evaluate(command, config).decision


def evaluate_with_approval(
    command: str,
    config: PolicyConfig,
    require_approval: bool,
) -> PolicyDecision:
    """Combine the policy with the caller's approval flag.

    - flag unset: the policy decision stands
    - denylist hit: Deny, whatever the flag says
    - otherwise-denied command with the flag set: RequireApproval
    - admitted command with the flag set: RequireApproval, unless autorun mode
      is on and the allowlist matches (auto-approval beats the manual gate)
    """
    base = evaluate(command, config)
    if not require_approval:
        return base

    if base.decision == Decision.DENY:
        if match_denylist(command, config.denylist):
            return base
        return PolicyDecision(
            Decision.REQUIRE_APPROVAL,
            "Command needs approval; resubmit with require_user_approval=false.",
            base.matched_rule,
        )

    if config.enabled:
        allowed = match_allowlist(command, config.allowlist)
        if allowed:
            return PolicyDecision(Decision.ADMIT, "Auto-approved by allowlist.", allowed)

    return PolicyDecision(
        Decision.REQUIRE_APPROVAL,
        "Caller requested approval before execution.",
        "require_user_approval",
    )


def decide_with_approval(command: str, config: PolicyConfig, require_approval: bool) -> Decision:
    return evaluate_with_approval(command, config, require_approval).decision


class PolicyStore:
    """Holds the active PolicyConfig snapshot.

    Readers take `current` once per decision; `replace()` rebinds the
    reference, so nobody ever sees a half-updated config.
    """

    def __init__(self, config: PolicyConfig | None = None):
        self._config = config or PolicyConfig()

    @property
    def current(self) -> PolicyConfig:
        return self._config

    def replace(self, config: PolicyConfig) -> PolicyConfig:
        previous = self._config
        self._config = config
        log.info(
            f"Policy updated: enabled={config.enabled} "
            f"allow_all_other_commands={config.allow_all_others} "
            f"allowlist={list(config.allowlist)} denylist={list(config.denylist)}"
        )
        return previous
