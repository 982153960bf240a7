import math
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from chatrelay.observability.logger import get_logger
from chatrelay.quota.models import QuotaPolicy, UsageRecord

log = get_logger("quota")

GROQ = "groq"
GEMINI = "gemini"
TAVILY_SEARCH = "tavily-search"

# Declared rotation order; failover walks this list, skipping exceeded providers.
PROVIDER_ORDER = [GROQ, GEMINI, TAVILY_SEARCH]

# Free-tier ceilings of the deployed API keys. Tuned against the len/4 token estimate.
DEFAULT_QUOTAS = {
    GROQ: QuotaPolicy(max_tokens=1_000_000, max_requests=50_000, reset_hours=24),
    GEMINI: QuotaPolicy(max_tokens=None, max_requests=1_500, reset_hours=24),
    TAVILY_SEARCH: QuotaPolicy(max_tokens=None, max_requests=1_000, reset_hours=24),
}

NEAR_CEILING_RATIO = 0.9
NEAR_RESET_MINUTES = 5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def estimate_tokens(text: str) -> int:
    """Rough token estimate used when a provider reports no usage: 1 token ~ 4 chars."""
    return math.ceil(len(text or "") / 4)


class QuotaLedger:
    """Process-wide per-provider usage counters and exceeded flags.

    Quotas belong to API keys, not users, so a single ledger is shared by every
    turn in flight. Counters reset lazily: ``tick`` compares the clock against
    ``reset_at`` whenever a provider is about to be used, there is no timer.
    """

    def __init__(
        self,
        policies: dict[str, QuotaPolicy] = None,
        order: list[str] = None,
        initial_provider: str = None,
        clock: Callable[[], datetime] = None,
    ):
        self.policies = dict(policies or DEFAULT_QUOTAS)
        self.order = list(order or PROVIDER_ORDER)
        missing = [p for p in self.order if p not in self.policies]
        if missing:
            raise ValueError(f"No quota policy for providers: {missing}")

        self._clock = clock or _utcnow
        self._lock = threading.RLock()
        now = self._clock()
        self._usage = {p: UsageRecord(reset_at=self._next_reset(p, now)) for p in self.order}
        self._exceeded = {p: False for p in self.order}
        self._current = initial_provider or self.order[0]
        if self._current not in self.policies:
            raise ValueError(f"Unknown provider: {self._current}")

    # ── Sticky provider ────────────────────────────────────────────────

    @property
    def current_provider(self) -> str:
        return self._current

    def set_current(self, provider: str):
        self._require(provider)
        with self._lock:
            if provider != self._current:
                log.info("current_provider_changed", previous=self._current, current=provider)
            self._current = provider

    # ── Reset / usage ──────────────────────────────────────────────────

    def tick(self, provider: str) -> bool:
        """Zero the provider's counters if its reset time has passed. Returns True on reset."""
        self._require(provider)
        with self._lock:
            now = self._clock()
            if now < self._usage[provider].reset_at:
                return False
            self._usage[provider] = UsageRecord(reset_at=self._next_reset(provider, now))
            self._exceeded[provider] = False
            log.info("quota_reset", provider=provider,
                     next_reset=self._usage[provider].reset_at.isoformat())
            return True

    def refresh(self):
        """Tick every provider."""
        for provider in self.order:
            self.tick(provider)

    def record_usage(self, provider: str, tokens: int, requests: int = 1):
        """Apply a completed call's usage. Raises the exceeded flag when a ceiling is crossed."""
        self._require(provider)
        with self._lock:
            self.tick(provider)
            usage = self._usage[provider]
            usage.tokens_used += max(0, int(tokens or 0))
            usage.requests_made += max(0, int(requests))
            if self.is_exceeded(provider) and not self._exceeded[provider]:
                self._exceeded[provider] = True
                log.warning("quota_exceeded", provider=provider, source="usage",
                            reset_at=usage.reset_at.isoformat())
        self.log_status(provider)

    def mark_exceeded(self, provider: str):
        """Force the exceeded flag; only a reset tick clears it."""
        self._require(provider)
        with self._lock:
            if not self._exceeded[provider]:
                log.warning("quota_exceeded", provider=provider, source="provider",
                            reset_at=self._usage[provider].reset_at.isoformat())
            self._exceeded[provider] = True

    # ── Queries ────────────────────────────────────────────────────────

    def is_exceeded(self, provider: str) -> bool:
        """True if the tracked counters have reached a configured ceiling."""
        policy = self.policies[provider]
        with self._lock:
            usage = self._usage[provider]
            if policy.max_tokens is not None and usage.tokens_used >= policy.max_tokens:
                return True
            if policy.max_requests is not None and usage.requests_made >= policy.max_requests:
                return True
            return False

    def is_flagged(self, provider: str) -> bool:
        self._require(provider)
        with self._lock:
            return self._exceeded[provider]

    def is_near_ceiling(self, provider: str) -> bool:
        policy = self.policies[provider]
        with self._lock:
            usage = self._usage[provider]
            if policy.max_tokens and usage.tokens_used >= policy.max_tokens * NEAR_CEILING_RATIO:
                return True
            if policy.max_requests and usage.requests_made >= policy.max_requests * NEAR_CEILING_RATIO:
                return True
            return self._minutes_left(provider) <= NEAR_RESET_MINUTES

    def is_usable(self, provider: str) -> bool:
        with self._lock:
            self.tick(provider)
            return not self._exceeded[provider] and not self.is_exceeded(provider)

    def get_usage(self, provider: str) -> UsageRecord:
        self._require(provider)
        with self._lock:
            return self._usage[provider].model_copy()

    # ── Rotation ───────────────────────────────────────────────────────

    def available_providers(self, eligible: Callable[[str], bool] = None) -> list[str]:
        """Non-exceeded providers in declared order, optionally narrowed by ``eligible``."""
        with self._lock:
            available = [p for p in self.order if not self._exceeded[p]]
        if eligible is not None:
            available = [p for p in available if eligible(p)]
        return available

    def next_available(self, current: Optional[str], exclude_current: bool = False,
                       eligible: Callable[[str], bool] = None) -> Optional[str]:
        """Round-robin successor of ``current`` among non-exceeded providers.

        When ``current`` is not in the available list the first available provider
        is returned. With ``exclude_current`` the result is never ``current`` itself.
        """
        available = self.available_providers(eligible)
        if not available or (exclude_current and available == [current]):
            return None
        if current in available:
            return available[(available.index(current) + 1) % len(available)]
        return available[0]

    def predict_next_switch(self, provider: str, eligible: Callable[[str], bool] = None) -> Optional[str]:
        """First available provider in declared order other than ``provider``."""
        candidates = [p for p in self.available_providers(eligible) if p != provider]
        return candidates[0] if candidates else None

    def predict_expiry(self, provider: str) -> datetime:
        policy = self.policies[provider]
        with self._lock:
            usage = self._usage[provider]
            near = (
                (policy.max_tokens and usage.tokens_used >= policy.max_tokens * NEAR_CEILING_RATIO)
                or (policy.max_requests and usage.requests_made >= policy.max_requests * NEAR_CEILING_RATIO)
            )
            if near:
                return self._clock() + timedelta(minutes=NEAR_RESET_MINUTES)
            return usage.reset_at

    def snapshot(self) -> dict:
        """Read-only projection of ledger state. Never ticks."""
        with self._lock:
            now = self._clock()
            usage = {}
            predictions = {}
            for p in self.order:
                u = self._usage[p]
                usage[p] = {
                    "tokensUsed": u.tokens_used,
                    "requestsMade": u.requests_made,
                    "resetAt": u.reset_at.isoformat(),
                }
                expiry = self.predict_expiry(p)
                predictions[p] = {
                    "willExpireAt": expiry.isoformat(),
                    "minutesLeft": round((expiry - now).total_seconds() / 60, 1),
                    "nextSwitchTo": self.predict_next_switch(p),
                    "isHealthy": not self._exceeded[p] and not self.is_exceeded(p),
                }
            current = self._current
            return {
                "currentProvider": current,
                "availableProviders": list(self.order),
                "usage": usage,
                "exceeded": dict(self._exceeded),
                "quotas": {p: pol.model_dump() for p, pol in self.policies.items()},
                "predictions": predictions,
                "predictedNextSwitch": self.predict_next_switch(current),
                "predictedExpiryTime": self.predict_expiry(current).isoformat(),
            }

    def log_status(self, provider: str):
        policy = self.policies[provider]
        with self._lock:
            usage = self._usage[provider]
            pct_left = (
                round((1 - usage.tokens_used / policy.max_tokens) * 100)
                if policy.max_tokens else 100
            )
            mins_left = round(self._minutes_left(provider))
            tokens_used, requests_made = usage.tokens_used, usage.requests_made

        if pct_left <= 10 or mins_left <= NEAR_RESET_MINUTES:
            log.warning("quota_low", provider=provider, tokens_left_pct=pct_left,
                        minutes_until_reset=mins_left)
        log.info("quota_status", provider=provider,
                 tokens_used=tokens_used, max_tokens=policy.max_tokens,
                 requests_made=requests_made, max_requests=policy.max_requests,
                 minutes_until_reset=mins_left)

    # ── Internal ───────────────────────────────────────────────────────

    def _next_reset(self, provider: str, now: datetime) -> datetime:
        return now + timedelta(hours=self.policies[provider].reset_hours)

    def _minutes_left(self, provider: str) -> float:
        return (self._usage[provider].reset_at - self._clock()).total_seconds() / 60

    def _require(self, provider: str):
        if provider not in self.policies:
            raise KeyError(f"Unknown provider: {provider}")
