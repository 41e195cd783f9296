import asyncio
import logging
import math
import time
import zlib
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from typing import ClassVar, Deque, Dict, Mapping, Union

logger = logging.getLogger(__name__)

UNLIMITED = -1
DEFAULT_PLAN = "guest"


@dataclass(frozen=True)
class Allowed:
  remaining: int | None = None
  allowed: ClassVar[bool] = True


@dataclass(frozen=True)
class Denied:
  retry_after_seconds: int
  allowed: ClassVar[bool] = False


AdmissionDecision = Union[Allowed, Denied]


@dataclass
class RateLimitState:
  timestamps: Deque[float] = field(default_factory=deque)
  lock: asyncio.Lock = field(default_factory=asyncio.Lock)
  users: int = 0

  def prune(self, cutoff: float) -> None:
    while self.timestamps and self.timestamps[0] <= cutoff:
      self.timestamps.popleft()

  @property
  def newest(self) -> float | None:
    return self.timestamps[-1] if self.timestamps else None


class SlidingWindowLimiter:
  """Per-identity sliding-window admission control.

  Records live in ``shards`` LRU tables keyed by a stable hash of the identity.
  Each table holds at most ``max_identities // shards`` records; the least
  recently seen idle identity is evicted first, which resets its budget.
  """

  def __init__(
    self,
    limits: Mapping[str, int],
    window_seconds: float = 3600.0,
    *,
    shards: int = 16,
    max_identities: int = 10_000,
    default_plan: str = DEFAULT_PLAN,
  ):
    if shards < 1:
      raise ValueError("shards must be >= 1")
    self._shards: list[OrderedDict[str, RateLimitState]] = [OrderedDict() for _ in range(shards)]
    self._shard_capacity = max(1, max_identities // shards)
    self.configure(limits, window_seconds, default_plan=default_plan)

  def configure(
    self,
    limits: Mapping[str, int],
    window_seconds: float,
    *,
    default_plan: str = DEFAULT_PLAN,
  ) -> None:
    if window_seconds <= 0:
      raise ValueError("window_seconds must be positive")
    if default_plan not in limits:
      raise ValueError(f"default plan '{default_plan}' has no limit")
    self.limits: Dict[str, int] = dict(limits)
    self.window_seconds = float(window_seconds)
    self.default_plan = default_plan

  def limit_for(self, plan: str | None) -> int:
    if plan in self.limits:
      return self.limits[plan]
    return self.limits[self.default_plan]

  def _shard_for(self, identity: str) -> "OrderedDict[str, RateLimitState]":
    index = zlib.crc32(identity.encode("utf-8")) % len(self._shards)
    return self._shards[index]

  def _checkout(self, identity: str) -> RateLimitState:
    # Holders and waiters both count as users; eviction skips records in use.
    shard = self._shard_for(identity)
    record = shard.get(identity)
    if record is not None:
      shard.move_to_end(identity)
      record.users += 1
      return record
    record = RateLimitState(users=1)
    shard[identity] = record
    if len(shard) > self._shard_capacity:
      self._evict(shard)
    return record

  def _evict(self, shard: "OrderedDict[str, RateLimitState]") -> None:
    for key in list(shard.keys()):
      if len(shard) <= self._shard_capacity:
        return
      if shard[key].users:
        continue
      del shard[key]
      logger.debug("rate_limiter.evict identity=%s", key)

  async def admit(self, identity: str, plan: str | None, *, now: float | None = None) -> AdmissionDecision:
    limit = self.limit_for(plan)
    if limit == UNLIMITED:
      return Allowed(remaining=None)
    record = self._checkout(identity)
    try:
      async with record.lock:
        current = time.monotonic() if now is None else now
        record.prune(current - self.window_seconds)
        if len(record.timestamps) >= limit:
          if not record.timestamps:
            return Denied(retry_after_seconds=max(1, math.ceil(self.window_seconds)))
          oldest = record.timestamps[0]
          wait = math.ceil(oldest + self.window_seconds - current)
          return Denied(retry_after_seconds=max(1, wait))
        record.timestamps.append(current)
        return Allowed(remaining=limit - len(record.timestamps))
    finally:
      record.users -= 1

  def sweep(self, now: float | None = None) -> int:
    current = time.monotonic() if now is None else now
    cutoff = current - self.window_seconds
    removed = 0
    for shard in self._shards:
      for key in list(shard.keys()):
        record = shard[key]
        if record.users:
          continue
        newest = record.newest
        if newest is None or newest <= cutoff:
          del shard[key]
          removed += 1
    if removed:
      logger.debug("rate_limiter.sweep removed=%d", removed)
    return removed

  def snapshot(self, identity: str) -> tuple[float, ...]:
    record = self._shard_for(identity).get(identity)
    return tuple(record.timestamps) if record is not None else ()

  def __len__(self) -> int:
    return sum(len(shard) for shard in self._shards)


def limiter_from_settings(settings) -> SlidingWindowLimiter:
  return SlidingWindowLimiter(
    {name: plan.limit for name, plan in settings.plans.items()},
    settings.window_s,
    shards=settings.shards,
    max_identities=settings.max_identities,
  )
