"""Notification storm protection: digest mode and push rate buckets."""

import logging
import threading
import time
from collections import deque
from typing import Callable

logger = logging.getLogger(__name__)


class RateController:
    """Decides which channel an alert may actually use.

    Two rolling windows are tracked. Every processed event lands in the
    digest window; more than ``digest_threshold`` events in it switches every
    alert to in-app delivery. Push grants land in an hourly bucket, one global
    and one per agent; a push is granted only while both have headroom.

    All state is guarded by a single lock so that the digest check and the
    push grant of one resolution are atomic with respect to other threads.
    """

    def __init__(
        self,
        digest_threshold: int = 5,
        digest_window: float = 60.0,
        global_push_limit: int = 10,
        agent_push_limit: int = 3,
        push_window: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.digest_threshold = digest_threshold
        self.digest_window = digest_window
        self.global_push_limit = global_push_limit
        self.agent_push_limit = agent_push_limit
        self.push_window = push_window
        self._clock = clock
        self._lock = threading.Lock()
        self._recent_events: deque[float] = deque()
        self._push_grants: deque[float] = deque()
        self._agent_push_grants: dict[str, deque[float]] = {}

    # ── Digest window ────────────────────────────────────────────────────────

    def track_event(self) -> None:
        """Record one processed event in the digest window."""
        with self._lock:
            now = self._clock()
            self._prune(self._recent_events, now - self.digest_window)
            self._recent_events.append(now)

    def is_digest_mode(self) -> bool:
        with self._lock:
            return self._digest_locked(self._clock())

    def _digest_locked(self, now: float) -> bool:
        self._prune(self._recent_events, now - self.digest_window)
        return len(self._recent_events) > self.digest_threshold

    # ── Push buckets ─────────────────────────────────────────────────────────

    def resolve_channel(self, agent_id: str, channel: str) -> str:
        """Return the channel an alert for agent_id may use given its rule's channel.

        in_app rules pass through untouched. push/both downgrade to in_app
        during digest mode or when a push bucket is exhausted.
        """
        if channel == "in_app":
            return "in_app"

        with self._lock:
            now = self._clock()
            if self._digest_locked(now):
                logger.info("Digest mode active, downgrading %s alert for %s", channel, agent_id)
                return "in_app"
            if not self._try_record_push_locked(agent_id, now):
                logger.info("Push budget exhausted, downgrading %s alert for %s", channel, agent_id)
                return "in_app"
        return channel

    def try_record_push(self, agent_id: str) -> bool:
        """Record a push grant for agent_id if both buckets have headroom."""
        with self._lock:
            return self._try_record_push_locked(agent_id, self._clock())

    def _try_record_push_locked(self, agent_id: str, now: float) -> bool:
        cutoff = now - self.push_window
        self._prune(self._push_grants, cutoff)
        if len(self._push_grants) >= self.global_push_limit:
            return False

        self._prune_agents_locked(cutoff)
        if len(self._agent_push_grants.get(agent_id, ())) >= self.agent_push_limit:
            return False

        self._push_grants.append(now)
        self._agent_push_grants.setdefault(agent_id, deque()).append(now)
        return True

    def _prune_agents_locked(self, cutoff: float) -> None:
        # Agents with no grants left in the window are forgotten.
        for agent_id in list(self._agent_push_grants):
            bucket = self._agent_push_grants[agent_id]
            self._prune(bucket, cutoff)
            if not bucket:
                del self._agent_push_grants[agent_id]

    def push_counts(self, agent_id: str | None = None) -> int:
        """Push grants in the current window, globally or for one agent."""
        with self._lock:
            cutoff = self._clock() - self.push_window
            self._prune(self._push_grants, cutoff)
            self._prune_agents_locked(cutoff)
            if agent_id is None:
                return len(self._push_grants)
            return len(self._agent_push_grants.get(agent_id, ()))

    def tracked_agents(self) -> list[str]:
        """Agents holding at least one push grant in the current window."""
        with self._lock:
            self._prune_agents_locked(self._clock() - self.push_window)
            return sorted(self._agent_push_grants)

    @staticmethod
    def _prune(window: deque, cutoff: float) -> None:
        while window and window[0] <= cutoff:
            window.popleft()
