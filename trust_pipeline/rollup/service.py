"""
Rollup/snapshot service.

Responsibilities:
- Close a rollup window every cadence: digest trust.casino.updated events of
  the window and trust.degen.updated events of the trailing 24h from bus
  history, publish trust.casino.rollup / trust.degen.rollup.
- Serve on-demand snapshots with a per-requester throttle, directly or via
  trust.state.requested -> trust.state.snapshot.
- Persist every snapshot; failed writes are retried on the next tick.

Snapshot builds are serialized by one lock. tick() is driven by the runtime's
periodic task; the service owns no thread.
"""

from __future__ import annotations

import itertools
import threading
from collections import deque
from typing import Any

from trust_pipeline.config.settings import RollupConfig
from trust_pipeline.core.clock import MS_PER_SECOND, Clock, system_clock
from trust_pipeline.core.exceptions import PayloadDecodeError, PersistenceError
from trust_pipeline.database.repository import Repository
from trust_pipeline.event_bus.bus import EventBus
from trust_pipeline.event_bus.models import Event, HistoryFilter, Subscription
from trust_pipeline.event_bus.payloads import (
    BONUS_NERF_DETECTED,
    TRUST_CASINO_ROLLUP,
    TRUST_CASINO_UPDATED,
    TRUST_DEGEN_ROLLUP,
    TRUST_DEGEN_UPDATED,
    TRUST_STATE_REQUESTED,
    TRUST_STATE_SNAPSHOT,
    BonusNerfPayload,
    StateRequestedPayload,
    StateSnapshotPayload,
    TrustCasinoRollupPayload,
    TrustCasinoUpdatedPayload,
    TrustDegenRollupPayload,
    TrustDegenUpdatedPayload,
    decode_payload,
)
from trust_pipeline.rollup.models import (
    ActorRollup,
    RollupSnapshot,
    SnapshotResponse,
    SnapshotTrigger,
    VenueRollup,
    classify_risk,
    volatility_score,
)
from trust_pipeline.trust.venue_scorer import normalize_percent_drop
from trust_pipeline.trust_logging import get_logger

logger = get_logger(__name__)

SOURCE = "rollup_service"


def _decoded(entries: list[Any], model: type, handler: str) -> list[tuple[Event, Any]]:
    """Decode history events, skipping (and logging) malformed ones."""
    out = []
    for entry in entries:
        try:
            out.append((entry.event, decode_payload(model, entry.event)))
        except PayloadDecodeError as e:
            logger.warning("payload_rejected", event_type=e.event_type, handler_id=handler, error=e.message)
    return out


class RollupService:
    def __init__(
        self,
        bus: EventBus,
        config: RollupConfig | None = None,
        *,
        repository: Repository | None = None,
        clock: Clock = system_clock,
    ) -> None:
        self._bus = bus
        self._config = config or RollupConfig()
        self._repository = repository
        self._clock = clock
        self._build_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._snapshots: deque[RollupSnapshot] = deque(maxlen=self._config.retained_snapshots)
        self._pending: deque[RollupSnapshot] = deque()
        self._last_request: dict[str, int] = {}
        self._window_start = clock()
        self._ids = itertools.count(1)
        self._subscription: Subscription | None = None

    @property
    def config(self) -> RollupConfig:
        return self._config

    @property
    def window_start(self) -> int:
        with self._state_lock:
            return self._window_start

    @property
    def pending_writes(self) -> int:
        with self._state_lock:
            return len(self._pending)

    def _cadence_ms(self) -> int:
        return int(self._config.cadence_sec * MS_PER_SECOND)

    # --- lifecycle ---

    def start(self) -> None:
        """Reload persisted snapshots, resume windows from the newest one, subscribe to state requests."""
        self._reload()
        if self._subscription is None:
            self._subscription = self._bus.subscribe(
                TRUST_STATE_REQUESTED, f"{SOURCE}.state_requested", self._on_state_requested
            )

    def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def _reload(self) -> None:
        if self._repository is None:
            return
        try:
            ids = self._repository.list_ids()
        except PersistenceError as e:
            logger.warning("rollup_reload_failed", error=str(e))
            return
        loaded: list[RollupSnapshot] = []
        for record_id in ids[-self._config.retained_snapshots:]:
            try:
                data = self._repository.load(record_id)
                if data is not None:
                    loaded.append(RollupSnapshot.from_dict(data))
            except (PersistenceError, KeyError, TypeError, ValueError) as e:
                logger.warning("rollup_record_corrupted", record_id=record_id, error=str(e))
        loaded.sort(key=lambda s: (s.generated_at, s.snapshot_id))
        with self._state_lock:
            self._snapshots.extend(loaded)
            scheduled = [s for s in loaded if s.trigger is SnapshotTrigger.SCHEDULED]
            if scheduled:
                self._window_start = max(s.window_end for s in scheduled)
        logger.info("rollup_reloaded", count=len(loaded), window_start=self.window_start)

    # --- snapshot generation ---

    def _next_id(self, generated_at: int) -> str:
        return f"{generated_at:015d}-{next(self._ids):06d}"

    def _build(self, window_start: int, window_end: int, trigger: SnapshotTrigger) -> RollupSnapshot:
        """Digest bus history. Caller holds the build lock."""
        cfg = self._config
        venue_risk_since = window_end - int(cfg.venue_risk_window_sec * MS_PER_SECOND)
        actor_since = window_end - int(cfg.actor_window_sec * MS_PER_SECOND)

        casino_24h = _decoded(
            self._bus.history(
                HistoryFilter(event_type=TRUST_CASINO_UPDATED, since_ms=venue_risk_since, until_ms=window_end)
            ),
            TrustCasinoUpdatedPayload,
            SOURCE,
        )
        nerfs_24h = _decoded(
            self._bus.history(
                HistoryFilter(event_type=BONUS_NERF_DETECTED, since_ms=venue_risk_since, until_ms=window_end)
            ),
            BonusNerfPayload,
            SOURCE,
        )
        degen_24h = _decoded(
            self._bus.history(
                HistoryFilter(event_type=TRUST_DEGEN_UPDATED, since_ms=actor_since, until_ms=window_end)
            ),
            TrustDegenUpdatedPayload,
            SOURCE,
        )

        window_totals: dict[str, dict[str, Any]] = {}
        deltas_24h: dict[str, list[float]] = {}
        latest_24h: dict[str, TrustCasinoUpdatedPayload] = {}
        for event, p in casino_24h:
            deltas_24h.setdefault(p.venue_id, []).append(p.delta)
            latest_24h[p.venue_id] = p
            if window_start <= event.timestamp < window_end:
                agg = window_totals.setdefault(
                    p.venue_id, {"total_delta": 0.0, "event_count": 0, "last_severity": None}
                )
                agg["total_delta"] += p.delta
                agg["event_count"] += 1
                if p.severity is not None:
                    agg["last_severity"] = p.severity

        nerf_percents: dict[str, list[float]] = {}
        for _, p in nerfs_24h:
            nerf_percents.setdefault(p.venue_id, []).append(normalize_percent_drop(p.percent_drop) * 100)

        per_venue: dict[str, VenueRollup] = {}
        for venue_id in set(window_totals) | set(nerf_percents):
            agg = window_totals.get(venue_id, {"total_delta": 0.0, "event_count": 0, "last_severity": None})
            nerfs = nerf_percents.get(venue_id, [])
            volatility = volatility_score(deltas_24h.get(venue_id, []), nerfs)
            latest = latest_24h.get(venue_id)
            per_venue[venue_id] = VenueRollup(
                total_delta=agg["total_delta"],
                event_count=agg["event_count"],
                last_severity=agg["last_severity"],
                last_score=latest.new_score if latest else None,
                nerfs_24h=len(nerfs),
                volatility_24h=volatility,
                risk_level=classify_risk(volatility, len(nerfs)),
            )

        actor_totals: dict[str, dict[str, Any]] = {}
        for _, p in degen_24h:
            agg = actor_totals.setdefault(p.actor_id, {"total": 0.0, "count": 0, "last": None, "level": None})
            agg["total"] += p.delta
            agg["count"] += 1
            agg["last"] = p.new_score
            agg["level"] = p.level
        per_actor = {
            actor_id: ActorRollup(
                total_delta_24h=agg["total"],
                event_count_24h=agg["count"],
                last_score=agg["last"],
                level=agg["level"],
            )
            for actor_id, agg in actor_totals.items()
        }

        generated_at = self._clock()
        return RollupSnapshot(
            snapshot_id=self._next_id(generated_at),
            window_start=window_start,
            window_end=window_end,
            generated_at=generated_at,
            trigger=trigger,
            per_venue_delta=per_venue,
            per_actor_delta=per_actor,
        )

    def _retain(self, snapshot: RollupSnapshot) -> None:
        with self._state_lock:
            self._snapshots.append(snapshot)
            self._pending.append(snapshot)

    def tick(self) -> RollupSnapshot | None:
        """
        Retry pending writes; close the window when cadence has elapsed.
        Returns the scheduled snapshot when one was generated.
        """
        snapshot: RollupSnapshot | None = None
        with self._build_lock:
            now = self._clock()
            with self._state_lock:
                start = self._window_start
            if now - start >= self._cadence_ms():
                snapshot = self._build(start, now, SnapshotTrigger.SCHEDULED)
                with self._state_lock:
                    self._window_start = now
                self._retain(snapshot)
        if snapshot is not None:
            self._publish_rollups(snapshot)
            logger.info(
                "rollup_window_closed",
                window_start=snapshot.window_start,
                window_end=snapshot.window_end,
                venues=len(snapshot.per_venue_delta),
                actors=len(snapshot.per_actor_delta),
            )
        self.persist_pending()
        return snapshot

    def _publish_rollups(self, snapshot: RollupSnapshot) -> None:
        self._bus.publish(
            TRUST_CASINO_ROLLUP,
            SOURCE,
            TrustCasinoRollupPayload(
                window_start=snapshot.window_start,
                window_end=snapshot.window_end,
                generated_at=snapshot.generated_at,
                venues={k: v.to_entry() for k, v in snapshot.per_venue_delta.items()},
            ).to_wire(),
        )
        self._bus.publish(
            TRUST_DEGEN_ROLLUP,
            SOURCE,
            TrustDegenRollupPayload(
                window_start=snapshot.window_start,
                window_end=snapshot.window_end,
                generated_at=snapshot.generated_at,
                actors={k: v.to_entry() for k, v in snapshot.per_actor_delta.items()},
            ).to_wire(),
        )

    def persist_pending(self) -> int:
        """Write queued snapshots in order; stop at the first failure and keep the rest queued."""
        if self._repository is None:
            with self._state_lock:
                self._pending.clear()
            return 0
        written = 0
        while True:
            with self._state_lock:
                if not self._pending:
                    break
                snapshot = self._pending[0]
            try:
                self._repository.save(snapshot.snapshot_id, snapshot.to_dict())
            except PersistenceError as e:
                logger.warning(
                    "rollup_persist_failed",
                    snapshot_id=snapshot.snapshot_id,
                    pending=self.pending_writes,
                    error=str(e),
                )
                break
            with self._state_lock:
                self._pending.popleft()
            written += 1
        if written:
            self._prune_persisted()
        return written

    def _prune_persisted(self) -> None:
        try:
            ids = self._repository.list_ids()
            for record_id in ids[: max(0, len(ids) - self._config.retained_snapshots)]:
                self._repository.delete(record_id)
        except PersistenceError as e:
            logger.warning("rollup_prune_failed", error=str(e))

    # --- on-demand ---

    def request_snapshot(self, requester_id: str) -> SnapshotResponse:
        """
        One fulfilled request per requester per cooldown. Inside the cooldown the
        latest snapshot is returned with throttled=True. A fulfilled request
        digests [window_start, now] without closing the window.
        """
        cooldown_ms = int(self._config.request_cooldown_sec * MS_PER_SECOND)
        with self._build_lock:
            now = self._clock()
            with self._state_lock:
                last = self._last_request.get(requester_id)
                if last is not None and now - last < cooldown_ms:
                    latest = self._snapshots[-1] if self._snapshots else None
                    logger.debug("snapshot_request_throttled", requester_id=requester_id)
                    return SnapshotResponse(snapshot=latest, throttled=True)
                self._last_request[requester_id] = now
                start = self._window_start
            snapshot = self._build(start, now, SnapshotTrigger.ON_DEMAND)
            self._retain(snapshot)
        logger.info("snapshot_request_fulfilled", requester_id=requester_id, snapshot_id=snapshot.snapshot_id)
        return SnapshotResponse(snapshot=snapshot, throttled=False)

    def _on_state_requested(self, event: Event) -> None:
        try:
            p = decode_payload(StateRequestedPayload, event)
        except PayloadDecodeError as e:
            logger.warning("payload_rejected", event_type=e.event_type, handler_id=SOURCE, error=e.message)
            return
        requester_id = event.actor_id or event.source
        response = self.request_snapshot(requester_id)
        self._bus.publish(
            TRUST_STATE_SNAPSHOT,
            SOURCE,
            StateSnapshotPayload(
                requester_id=requester_id,
                throttled=response.throttled,
                scope=p.scope,
                snapshot=response.snapshot.to_dict() if response.snapshot else None,
            ).to_wire(),
            actor_id=event.actor_id,
        )

    # --- queries ---

    def get_latest_snapshot(self) -> RollupSnapshot | None:
        with self._state_lock:
            return self._snapshots[-1] if self._snapshots else None

    def get_snapshots(self, limit: int | None = None) -> list[RollupSnapshot]:
        """Retained snapshots, oldest first."""
        with self._state_lock:
            snapshots = list(self._snapshots)
        if limit is not None:
            snapshots = snapshots[-limit:] if limit > 0 else []
        return snapshots
