"""
Importance decay for stale memories.

Decay is an owner-agnostic sweep: every entry whose last access (or
creation, if never accessed) is older than the age threshold has its
importance multiplied by the decay factor, floored at the importance floor.
Decay never deletes; stale entries simply become the first eviction
candidates.
"""

import asyncio
import logging
import math
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Protocol

from .errors import InvalidInput

logger = logging.getLogger(__name__)

LAST_RUN_META_KEY = "decay.last_run_at.v1"


def _utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _normalize_datetime(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return _normalize_datetime(parsed)


class DecayStore(Protocol):
    async def apply_importance_decay(
        self,
        *,
        age_threshold_days: float,
        decay_factor: float,
        importance_floor: float,
        reference_time: Optional[datetime] = None,
        last_run_key: Optional[str] = None,
    ) -> Dict[str, Any]: ...

    async def get_runtime_meta(self, key: str) -> Optional[str]: ...


@dataclass(frozen=True)
class DecayPolicy:
    age_threshold_days: float = 7.0
    decay_factor: float = 0.95
    importance_floor: float = 0.1

    def validate(self) -> "DecayPolicy":
        for name, value in asdict(self).items():
            if not isinstance(value, (int, float)) or isinstance(value, bool):
                raise InvalidInput(f"{name} must be a number")
            if not math.isfinite(float(value)):
                raise InvalidInput(f"{name} must be finite")
        if self.age_threshold_days < 0:
            raise InvalidInput("age_threshold_days must be >= 0")
        if not 0.0 < self.decay_factor <= 1.0:
            raise InvalidInput("decay_factor must be within (0, 1]")
        if not 0.0 <= self.importance_floor <= 1.0:
            raise InvalidInput("importance_floor must be within [0, 1]")
        return self

    def with_overrides(
        self,
        *,
        age_threshold_days: Optional[float] = None,
        decay_factor: Optional[float] = None,
        importance_floor: Optional[float] = None,
    ) -> "DecayPolicy":
        return DecayPolicy(
            age_threshold_days=(
                self.age_threshold_days if age_threshold_days is None else age_threshold_days
            ),
            decay_factor=self.decay_factor if decay_factor is None else decay_factor,
            importance_floor=(
                self.importance_floor if importance_floor is None else importance_floor
            ),
        ).validate()


class DecayScheduler:
    """Single-flight decay runner with an optional background loop.

    A non-forced run is skipped while the persisted last run is younger than
    ``interval_seconds``; a forced run always performs one full pass. The
    background loop re-checks at least every ``check_interval_seconds`` and
    wakes early when the next pass falls due sooner.
    """

    def __init__(
        self,
        store: DecayStore,
        *,
        policy: Optional[DecayPolicy] = None,
        interval_seconds: float = 86400,
        check_interval_seconds: float = 600,
        enabled: bool = True,
    ) -> None:
        self._store = store
        self.policy = (policy or DecayPolicy()).validate()
        self.interval_seconds = max(1.0, float(interval_seconds))
        self.check_interval_seconds = max(1.0, float(check_interval_seconds))
        self.enabled = bool(enabled)
        self._guard = asyncio.Lock()
        self._runner: Optional[asyncio.Task] = None
        self._runs_total = 0
        self._failures_total = 0
        self._last_error: Optional[str] = None
        self._last_result: Dict[str, Any] = {
            "applied": False,
            "reason": "not_started",
        }

    async def run_decay(
        self,
        *,
        force: bool = False,
        reason: str = "runtime",
        policy: Optional[DecayPolicy] = None,
        reference_time: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        active_policy = (policy or self.policy).validate()
        async with self._guard:
            now_value = _normalize_datetime(reference_time) or _utc_now_naive()

            if not force:
                last_run_at = _parse_iso_datetime(
                    await self._store.get_runtime_meta(LAST_RUN_META_KEY)
                )
                if last_run_at is not None and (
                    now_value - last_run_at
                ) < timedelta(seconds=self.interval_seconds):
                    next_run_at = last_run_at + timedelta(seconds=self.interval_seconds)
                    self._last_result = {
                        "applied": False,
                        "reason": "interval_not_elapsed",
                        "last_run_at": last_run_at.isoformat(),
                        "next_run_at": next_run_at.isoformat(),
                    }
                    return dict(self._last_result)

            payload = await self._store.apply_importance_decay(
                age_threshold_days=active_policy.age_threshold_days,
                decay_factor=active_policy.decay_factor,
                importance_floor=active_policy.importance_floor,
                reference_time=now_value,
                last_run_key=LAST_RUN_META_KEY,
            )
            self._runs_total += 1

            result = {
                "applied": True,
                "forced": bool(force),
                "reason": (reason or "runtime").strip() or "runtime",
                "policy": asdict(active_policy),
                **payload,
            }
            logger.info(
                "decay pass (%s): %d memories lowered, cutoff=%s",
                result["reason"],
                int(payload.get("updated_memories", 0)),
                payload.get("cutoff"),
            )
            self._last_result = result
            return dict(result)

    async def ensure_started(self) -> None:
        if not self.enabled:
            return
        async with self._guard:
            if self._runner is None or self._runner.done():
                self._runner = asyncio.create_task(
                    self._run_loop(), name="memory-decay-scheduler"
                )

    async def shutdown(self) -> None:
        runner = self._runner
        self._runner = None
        if runner is None:
            return
        runner.cancel()
        try:
            await runner
        except asyncio.CancelledError:
            pass

    def _next_delay(self, result: Optional[Dict[str, Any]]) -> float:
        delay = min(self.interval_seconds, self.check_interval_seconds)
        next_run_at = _parse_iso_datetime((result or {}).get("next_run_at"))
        if next_run_at is not None:
            remaining = (next_run_at - _utc_now_naive()).total_seconds()
            delay = min(delay, max(0.01, remaining))
        return delay

    async def _run_loop(self) -> None:
        while True:
            result = None
            try:
                result = await self.run_decay(force=False, reason="scheduler")
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._failures_total += 1
                self._last_error = str(exc)
                logger.exception("scheduled decay pass failed")
            await asyncio.sleep(self._next_delay(result))

    async def status(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "running": self._runner is not None and not self._runner.done(),
            "interval_seconds": self.interval_seconds,
            "check_interval_seconds": self.check_interval_seconds,
            "policy": asdict(self.policy),
            "runs": self._runs_total,
            "failures": self._failures_total,
            "last_error": self._last_error,
            "last_result": dict(self._last_result),
        }
