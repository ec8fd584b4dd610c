"""
ratelimit/limiter.py -- Fixed-window rate limiter with exponential backoff.

The limiter is a thin policy layer over RateLimitStore. It owns no state of
its own besides the injected clock and random source, so any number of
RateLimiter instances (one per worker process or host) pointing at the same
database enforce one shared limit per key.

Semantics:
  check(key, max_requests, window) counts the call. Within one window the
  first max_requests calls are allowed, the next one is rejected with the
  seconds remaining until the window ends. After the window ends the counter
  restarts automatically on the next call.

  peek() reports the same numbers without counting.

  Failure tallies (record_failure / failure_delay) drive graduated penalties:
  the first backoff_after_failures consecutive failures are free, after that
  each further failure doubles the wait before the next attempt is accepted,
  capped at backoff_max_seconds.

This is separate from the slowapi limiter in api/limiter.py, which guards the
HTTP layer per client IP with in-process counters.
"""

from __future__ import annotations

import logging
import random
from datetime import timedelta

from core.config import Settings, get_settings
from core.crypto import exponential_backoff
from core.timeutil import Clock, utc_now
from ratelimit.models import RateLimitDecision, RateLimitPolicy
from ratelimit.store import RateLimitStore

logger = logging.getLogger("gatekeeper.ratelimit")


def policies_from_settings(settings: Settings) -> dict[str, RateLimitPolicy]:
    """Build the named policies the orchestrator gates its operations with."""
    return {
        "login_account": RateLimitPolicy(
            "login:account", settings.login_max_attempts_per_account, settings.login_window_seconds
        ),
        "login_ip": RateLimitPolicy("login:ip", settings.login_max_attempts_per_ip, settings.login_window_seconds),
        "reset_account": RateLimitPolicy(
            "reset:account", settings.reset_max_per_account, settings.reset_window_seconds
        ),
        "reset_ip": RateLimitPolicy("reset:ip", settings.reset_max_per_ip, settings.reset_window_seconds),
        "two_factor": RateLimitPolicy(
            "2fa:user", settings.two_factor_max_attempts, settings.two_factor_window_seconds
        ),
        "register_ip": RateLimitPolicy(
            "register:ip", settings.register_max_per_ip, settings.register_window_seconds
        ),
        "verify_account": RateLimitPolicy(
            "verify:account", settings.reset_max_per_account, settings.reset_window_seconds
        ),
        "token_ip": RateLimitPolicy("token:ip", settings.token_max_attempts_per_ip, settings.token_window_seconds),
        "reauth_user": RateLimitPolicy(
            "reauth:user", settings.reauth_max_attempts, settings.reauth_window_seconds
        ),
    }


class RateLimiter:
    """Shared-store rate limiter.

    Usage:
        limiter = RateLimiter(RateLimitStore())
        decision = limiter.check("reset:ip:203.0.113.9", 10, 3600)
        if not decision.allowed:
            ...  # decision.wait_time seconds until the window resets
    """

    def __init__(
        self,
        store: RateLimitStore,
        settings: Settings | None = None,
        clock: Clock = utc_now,
        rng: random.Random | None = None,
    ) -> None:
        self._store = store
        self._settings = settings or get_settings()
        self._clock = clock
        self._rng = rng or random.SystemRandom()
        self.policies = policies_from_settings(self._settings)

    # ------------------------------------------------------------------
    # Window checks
    # ------------------------------------------------------------------

    def check(self, key: str, max_requests: int, window_seconds: int) -> RateLimitDecision:
        """Count one request against key and report whether it is allowed."""
        now = self._clock()
        allowed = self._store.try_consume(key, max_requests, window_seconds, now)
        counter = self._store.get(key)
        if counter is None:
            # max_requests <= 0 never creates a row
            return RateLimitDecision(
                allowed=False,
                remaining=0,
                reset_at=now + timedelta(seconds=window_seconds),
                wait_time=float(window_seconds),
            )
        reset_at = counter.window_start + timedelta(seconds=counter.window_seconds)
        if allowed:
            return RateLimitDecision(
                allowed=True, remaining=max(0, max_requests - counter.count), reset_at=reset_at
            )
        wait = max(0.0, (reset_at - now).total_seconds())
        logger.warning("Rate limit exceeded for %s (retry in %.0fs)", key, wait)
        return RateLimitDecision(allowed=False, remaining=0, reset_at=reset_at, wait_time=wait)

    def peek(self, key: str, max_requests: int, window_seconds: int) -> RateLimitDecision:
        """Report the current status for key without counting a request."""
        now = self._clock()
        counter = self._store.get(key)
        if counter is None:
            return RateLimitDecision(
                allowed=max_requests > 0,
                remaining=max(0, max_requests),
                reset_at=now + timedelta(seconds=window_seconds),
            )
        reset_at = counter.window_start + timedelta(seconds=counter.window_seconds)
        if reset_at <= now:
            return RateLimitDecision(
                allowed=max_requests > 0,
                remaining=max(0, max_requests),
                reset_at=now + timedelta(seconds=window_seconds),
            )
        remaining = max(0, max_requests - counter.count)
        if remaining > 0:
            return RateLimitDecision(allowed=True, remaining=remaining, reset_at=reset_at)
        return RateLimitDecision(
            allowed=False, remaining=0, reset_at=reset_at, wait_time=(reset_at - now).total_seconds()
        )

    def check_policy(self, name: str, identifier: str) -> RateLimitDecision:
        policy = self.policies[name]
        return self.check(f"{policy.operation}:{identifier}", policy.max_requests, policy.window_seconds)

    def policy_key(self, name: str, identifier: str) -> str:
        return f"{self.policies[name].operation}:{identifier}"

    def reset(self, key: str) -> None:
        """Forget every counter and failure tally for key."""
        self._store.delete(key)

    # ------------------------------------------------------------------
    # Backoff
    # ------------------------------------------------------------------

    def backoff(self, attempt: int, base_delay: float | None = None) -> float:
        """Exponential backoff delay for attempt, with jitter from the injected RNG."""
        return exponential_backoff(
            attempt,
            self._settings.backoff_base_seconds if base_delay is None else base_delay,
            max_delay=self._settings.backoff_max_seconds,
            jitter=self._settings.backoff_jitter,
            rng=self._rng,
        )

    def record_failure(self, key: str) -> int:
        """Bump the consecutive-failure tally for key and return it."""
        failures = self._store.record_failure(key, self._clock())
        if failures > self._settings.backoff_after_failures:
            logger.info("Consecutive failure %d for %s; backoff engaged", failures, key)
        return failures

    def clear_failures(self, key: str) -> None:
        self._store.clear_failures(key)

    def failure_delay(self, key: str) -> float:
        """Seconds the caller must still wait before key may try again (0 = go).

        Uses the un-jittered backoff so repeated checks give a stable answer.
        """
        failures, last_failure_at = self._store.get_failures(key)
        penalized = failures - self._settings.backoff_after_failures
        if penalized <= 0 or last_failure_at is None:
            return 0.0
        delay = exponential_backoff(
            penalized,
            self._settings.backoff_base_seconds,
            max_delay=self._settings.backoff_max_seconds,
            jitter=0.0,
        )
        elapsed = (self._clock() - last_failure_at).total_seconds()
        return max(0.0, delay - elapsed)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def purge_stale(self) -> int:
        return self._store.purge_stale(self._clock())

    def close(self) -> None:
        self._store.close()
