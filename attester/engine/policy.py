"""
FarGuard Attester - Eligibility Policy
======================================

Anti-farming rules evaluated over an IdentityRecord snapshot. Pure: no chain
or network access, ``now`` is passed in, so every decision can be replayed
from the logged inputs.

Rules
  account_age       account created at least N days ago
  social            follower / following / post floors (every configured floor)
  verified_address  identity has at least one verified wallet (opt-in gate)

account_age and social vote: mode="all" requires every enabled one,
mode="any" requires one of them. verified_address is a gate outside the
vote and must hold in both modes, so it can never carry a new, inactive
account on its own. A disabled config, or one where no rule has a
threshold, always passes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Dict, List, Optional

if TYPE_CHECKING:
    from engine.identity import IdentityRecord

POLICY_MODES = ("all", "any")
GATE_RULES   = ("verified_address",)


@dataclass(frozen=True)
class PolicyConfig:
    enabled:                bool = False
    mode:                   str  = "all"
    min_account_age_days:   int  = 0
    min_followers:          int  = 0
    min_following:          int  = 0
    min_posts:              int  = 0
    verified_address_bonus: bool = False

    def __post_init__(self):
        if self.mode not in POLICY_MODES:
            raise ValueError(f"policy mode must be one of {POLICY_MODES}, got {self.mode!r}")

    def to_dict(self) -> dict:
        return {
            "enabled":                self.enabled,
            "mode":                   self.mode,
            "min_account_age_days":   self.min_account_age_days,
            "min_followers":          self.min_followers,
            "min_following":          self.min_following,
            "min_posts":              self.min_posts,
            "verified_address_bonus": self.verified_address_bonus,
        }


@dataclass
class PolicyDecision:
    passed:  bool
    reasons: List[str]        = field(default_factory=list)
    checks:  Dict[str, bool]  = field(default_factory=dict)


class EligibilityPolicy:

    def __init__(self, config: Optional[PolicyConfig] = None):
        self.config = config or PolicyConfig()

    @property
    def active(self) -> bool:
        return self.config.enabled and bool(self._enabled_rules())

    def _enabled_rules(self) -> List[str]:
        c = self.config
        rules = []
        if c.min_account_age_days > 0:
            rules.append("account_age")
        if c.min_followers > 0 or c.min_following > 0 or c.min_posts > 0:
            rules.append("social")
        if c.verified_address_bonus:
            rules.append("verified_address")
        return rules

    def _check_account_age(self, identity: "IdentityRecord", now: datetime) -> Optional[str]:
        floor = self.config.min_account_age_days
        age   = identity.account_age_days(now)
        if age is None:
            return f"account age unknown (requires >= {floor} days)"
        if age < floor:
            return f"account age {age:.1f} days < {floor} days"
        return None

    def _check_social(self, identity: "IdentityRecord") -> Optional[str]:
        c = self.config
        shortfalls = []
        if identity.follower_count < c.min_followers:
            shortfalls.append(f"followers {identity.follower_count} < {c.min_followers}")
        if identity.following_count < c.min_following:
            shortfalls.append(f"following {identity.following_count} < {c.min_following}")
        if identity.post_count < c.min_posts:
            shortfalls.append(f"posts {identity.post_count} < {c.min_posts}")
        return "; ".join(shortfalls) or None

    @staticmethod
    def _check_verified_address(identity: "IdentityRecord") -> Optional[str]:
        if identity.verified_addresses:
            return None
        return "no verified address on identity"

    def evaluate(self, identity: "IdentityRecord", now: Optional[datetime] = None) -> PolicyDecision:
        if not self.active:
            return PolicyDecision(passed=True)

        now = now or datetime.now(timezone.utc)
        failures: Dict[str, Optional[str]] = {}
        for rule in self._enabled_rules():
            if rule == "account_age":
                failures[rule] = self._check_account_age(identity, now)
            elif rule == "social":
                failures[rule] = self._check_social(identity)
            else:
                failures[rule] = self._check_verified_address(identity)

        checks  = {rule: reason is None for rule, reason in failures.items()}
        reasons = [f"{rule}: {reason}" for rule, reason in failures.items() if reason]

        # The verified-address gate never votes; it must hold in either mode
        gates = [checks[r] for r in checks if r in GATE_RULES]
        votes = [checks[r] for r in checks if r not in GATE_RULES]
        if not votes:
            voted = True
        elif self.config.mode == "any":
            voted = any(votes)
        else:
            voted = all(votes)
        passed = voted and all(gates)
        return PolicyDecision(passed=passed, reasons=[] if passed else reasons, checks=checks)
