from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from ..config import DetectorConfig
from ..lru import INSERTED, REPLACED, DetectedTokenCache, SignatureCache
from ..validation import is_valid_identifier
from .criteria import AcceptanceCriteria, get_criteria
from .scoring import RiskLookup, score_candidate
from .strategies import STRATEGY_REGISTRY, DetectionStrategy, build_strategy
from .types import CandidateRecord, DetectionResult, DetectionSummary

log = logging.getLogger(__name__)

STARTUP_ORDER = ("websocket", "polling", "scanning", "boost")

CandidatesCallback = Callable[[List[CandidateRecord]], Awaitable[None] | None]
SummaryCallback = Callable[[DetectionSummary], Awaitable[None] | None]


class DetectionCoordinator:
    """Own the strategies and run every emitted batch through dedup and scoring.

    Strategy output is funnelled through one queue drained by a single worker,
    so cache mutation never happens concurrently. Consumers register
    ``on_candidates`` for newly accepted records and ``on_result`` for the
    per-batch diagnostics.
    """

    def __init__(
        self,
        connection: Any = None,
        gateway: Any = None,
        config: Optional[DetectorConfig] = None,
        *,
        criteria: AcceptanceCriteria | str | None = None,
        on_candidates: Optional[CandidatesCallback] = None,
        on_result: Optional[SummaryCallback] = None,
        strategies: Optional[Mapping[str, DetectionStrategy]] = None,
        honeypot_check: Optional[RiskLookup] = None,
        rug_check: Optional[RiskLookup] = None,
    ) -> None:
        self.connection = connection
        self.gateway = gateway
        self.config = config or DetectorConfig.from_env()
        self.criteria = get_criteria(criteria if criteria is not None else self.config.criteria)
        self.on_candidates = on_candidates
        self.on_result = on_result
        self.honeypot_check = honeypot_check
        self.rug_check = rug_check

        if strategies is None:
            strategies = {
                name: build_strategy(
                    name,
                    connection=connection,
                    gateway=gateway,
                    config=self.config,
                    criteria=self.criteria,
                )
                for name in STARTUP_ORDER
                if name in self.config.enabled_sources
            }
        self._strategies: Dict[str, DetectionStrategy] = dict(strategies)
        for strategy in self._strategies.values():
            strategy.bind(self.submit)

        self._detected = DetectedTokenCache(self.config.max_detected_tokens)
        self._signatures = SignatureCache(self.config.max_processed_signatures)
        self._queue: asyncio.Queue[DetectionResult] = asyncio.Queue()
        self._lock = asyncio.Lock()
        self._stopped = asyncio.Event()
        self._running = False
        self._worker_task: Optional[asyncio.Task] = None
        self._cleanup_task: Optional[asyncio.Task] = None
        self._stats: Dict[str, int] = {
            "batches": 0,
            "records": 0,
            "accepted": 0,
            "filtered_out": 0,
            "invalid": 0,
            "duplicates": 0,
            "replaced": 0,
            "duplicate_signatures": 0,
            "evicted_tokens": 0,
            "trimmed_signatures": 0,
            "callback_errors": 0,
        }
        self._last_detection: Optional[float] = None

    # lifecycle ------------------------------------------------------------
    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def strategies(self) -> Dict[str, DetectionStrategy]:
        return dict(self._strategies)

    def _startup_order(self) -> List[str]:
        known = [name for name in STARTUP_ORDER if name in self._strategies]
        extra = [name for name in self._strategies if name not in STARTUP_ORDER]
        return known + extra

    def _required(self) -> set[str]:
        required = self.config.required_sources
        if required is None:
            return set(self._strategies)
        return set(required)

    async def _wait_stopped(self, delay: float) -> bool:
        """Sleep for *delay* seconds; returns ``True`` when stopped meanwhile."""
        try:
            await asyncio.wait_for(self._stopped.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    async def start(self) -> None:
        """Start the worker and every strategy in order, staggering each one.

        A required strategy that fails to start aborts the call with its
        exception and leaves the coordinator stopped. Strategies started
        before it keep running until :meth:`stop` is called.
        """
        if self._running:
            log.warning("DetectionCoordinator already running")
            return
        self._running = True
        self._stopped = asyncio.Event()
        self._worker_task = asyncio.create_task(self._worker(), name="detection-worker")
        required = self._required()

        for index, name in enumerate(self._startup_order()):
            if index and self.config.stagger_delay > 0:
                if await self._wait_stopped(self.config.stagger_delay):
                    log.info("DetectionCoordinator stopped during startup")
                    return
            if not self._running:
                return
            strategy = self._strategies[name]
            try:
                await strategy.start()
            except Exception as exc:
                if name in required:
                    log.error("Required %s strategy failed to start: %s", name, exc)
                    await self._halt()
                    raise
                log.warning("Optional %s strategy failed to start: %s", name, exc)
                continue
            log.info("DetectionCoordinator: %s strategy started", name)

        self._cleanup_task = asyncio.create_task(self._cleanup_loop(), name="detection-cleanup")
        log.info(
            "DetectionCoordinator: started (strategies=%s, criteria=%s)",
            ",".join(self._startup_order()),
            self.criteria.name,
        )

    async def _halt(self) -> None:
        self._running = False
        self._stopped.set()
        for attr in ("_cleanup_task", "_worker_task"):
            task = getattr(self, attr)
            setattr(self, attr, None)
            if task is None:
                continue
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def stop(self) -> None:
        if not self._running and not any(s.is_running for s in self._strategies.values()):
            return
        self._running = False
        self._stopped.set()
        for name, strategy in self._strategies.items():
            try:
                await strategy.stop()
            except Exception as exc:
                log.warning("Failed to stop %s strategy: %s", name, exc)
        await self._halt()
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
        log.info("DetectionCoordinator: stopped")

    # pipeline -------------------------------------------------------------
    def submit(self, result: DetectionResult) -> None:
        """Queue a strategy result for processing; ignored once stopped."""
        if not self._running:
            log.debug("Dropping %s result; coordinator stopped", result.strategy)
            return
        self._queue.put_nowait(result)

    async def _worker(self) -> None:
        while True:
            result = await self._queue.get()
            try:
                await self.handle_detection_result(result)
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("Failed to process %s detection result", result.strategy)
            finally:
                self._queue.task_done()

    async def join(self) -> None:
        """Wait until every queued result has been processed."""
        await self._queue.join()

    async def handle_detection_result(self, result: DetectionResult) -> List[CandidateRecord]:
        """Deduplicate, score and cache one batch; returns the newly accepted records."""
        async with self._lock:
            if not self._running:
                return []
            return await self._process(result)

    async def _process(self, result: DetectionResult) -> List[CandidateRecord]:
        started = time.monotonic()
        now = time.time()
        self._stats["batches"] += 1
        self._stats["records"] += len(result.records)

        signature = result.metadata.get("signature")
        if signature and signature in self._signatures:
            self._stats["duplicate_signatures"] += 1
            log.debug("Skipping already processed signature %s", signature)
            await self._emit_summary(
                result, [], started, duplicates=len(result.records)
            )
            return []
        if signature and not result.errors:
            self._signatures.add(signature)
            if self._signatures.over_capacity:
                self._run_cleanup()

        accepted: List[CandidateRecord] = []
        invalid = duplicates = rejected = 0
        for record in result.records:
            if not is_valid_identifier(record.address):
                invalid += 1
                continue
            if record.address in self._detected and not self._detected.supersedes(record):
                duplicates += 1
                continue
            verdict = score_candidate(
                record,
                self.criteria,
                now=now,
                honeypot_check=self.honeypot_check,
                rug_check=self.rug_check,
            )
            if not verdict.passed:
                rejected += 1
                log.debug(
                    "Filtered %s from %s (score=%.0f reasons=%s)",
                    record.address,
                    record.source,
                    verdict.score,
                    ",".join(verdict.reasons),
                )
                continue
            outcome = self._detected.put(record)
            if outcome == INSERTED:
                accepted.append(record)
            elif outcome == REPLACED:
                self._stats["replaced"] += 1
            if self._detected.over_capacity:
                self._run_cleanup()

        self._stats["invalid"] += invalid
        self._stats["duplicates"] += duplicates
        self._stats["filtered_out"] += rejected
        self._stats["accepted"] += len(accepted)

        if accepted:
            self._last_detection = now
            log.info(
                "Detected %d new token(s) from %s", len(accepted), result.source
            )
            await self._run_callback(self.on_candidates, list(accepted))
        await self._emit_summary(
            result,
            accepted,
            started,
            invalid=invalid,
            duplicates=duplicates,
            rejected=rejected,
        )
        return accepted

    async def _emit_summary(
        self,
        result: DetectionResult,
        accepted: List[CandidateRecord],
        started: float,
        *,
        invalid: int = 0,
        duplicates: int = 0,
        rejected: int = 0,
    ) -> None:
        summary = DetectionSummary(
            source=result.source,
            strategy=result.strategy,
            original_count=len(result.records),
            filtered_count=len(accepted),
            processing_time=result.processing_time + (time.monotonic() - started),
            timestamp=time.time(),
            rejected_count=rejected,
            invalid_count=invalid,
            duplicate_count=duplicates,
            cached=bool(result.metadata.get("cached", False)),
        )
        await self._run_callback(self.on_result, summary)

    async def _run_callback(self, cb, arg) -> None:
        if not cb:
            return
        try:
            if inspect.iscoroutinefunction(cb):
                await cb(arg)
            else:
                outcome = cb(arg)
                if inspect.isawaitable(outcome):
                    await outcome
        except Exception:
            self._stats["callback_errors"] += 1
            log.exception("External callback failed")

    # cleanup --------------------------------------------------------------
    def _run_cleanup(self) -> None:
        evicted = self._detected.evict_to_capacity()
        if evicted:
            self._stats["evicted_tokens"] += len(evicted)
            log.debug("Evicted %d detected tokens", len(evicted))
        trimmed = self._signatures.trim()
        if trimmed:
            self._stats["trimmed_signatures"] += trimmed
            log.debug("Trimmed %d processed signatures", trimmed)

    async def _cleanup_loop(self) -> None:
        period = max(0.01, float(self.config.cleanup_interval))
        while self._running:
            if await self._wait_stopped(period):
                break
            try:
                async with self._lock:
                    if not self._running:
                        break
                    self._run_cleanup()
            except Exception:
                log.exception("Detection cache cleanup failed")

    # queries --------------------------------------------------------------
    def get_detected_tokens(self, limit: int = 50) -> List[CandidateRecord]:
        return self._detected.recent(limit)

    def get_status(self) -> Dict[str, Any]:
        return {
            "is_running": self._running,
            "criteria": self.criteria.name,
            "detected_count": len(self._detected),
            "processed_signatures": len(self._signatures),
            "queue_size": self._queue.qsize(),
            "last_detection": self._last_detection,
            "enabled_sources": self._startup_order(),
            "required_sources": sorted(self._required() & set(self._strategies)),
            "strategies": {
                name: strategy.get_status() for name, strategy in self._strategies.items()
            },
            "stats": dict(self._stats),
        }

    async def health_check(self) -> bool:
        if self.connection is None:
            return False
        try:
            await self.connection.get_slot()
        except Exception as exc:
            log.warning("Health check failed: %s", exc)
            return False
        return self._running


__all__ = ["DetectionCoordinator", "STARTUP_ORDER", "STRATEGY_REGISTRY"]
