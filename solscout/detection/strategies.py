"""Detection strategies feeding the :class:`DetectionCoordinator`.

Each strategy watches one kind of source on its own schedule and hands
:class:`DetectionResult` batches to the sink it was bound to. Strategies never
touch coordinator state directly.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple, Type

from ..config import DetectorConfig
from ..logging_utils import warn_once_per
from .criteria import AcceptanceCriteria, get_criteria
from .records import (
    extract_token_mints,
    generate_symbol,
    has_pool_creation_log,
    liquidity_from_meta,
    looks_like_token_creation,
    record_from_boost,
    record_from_pair,
)
from .timers import RepeatingTask
from .types import CandidateRecord, DetectionResult, StrategyStatus

log = logging.getLogger(__name__)

SPL_TOKEN_PROGRAM = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"

# venue key -> (program id, display label)
DEX_PROGRAMS: Dict[str, Tuple[str, str]] = {
    "raydium_amm": ("675kPX9MHTjS2zt1qfr1NYHuzeLXfQM9H24wFSUt1Mp8", "Raydium AMM"),
    "raydium_clmm": ("CAMMCzo5YL8w4VFF8KVHrK22GGUsp5VTaW7grrKgrWqK", "Raydium CLMM"),
    "orca_whirlpool": ("whirLbMiicVdio4qvUfM5KAg6Ct8VwpYzGff3uctyCc", "Orca Whirlpool"),
    "meteora_dlmm": ("LBUZKhRxPF3XUpBCjp4YzTKgLccjZhTSDM9YuVaPwxo", "Meteora DLMM"),
    "pump_fun": ("6EF8rrecthR5Dkzon8Nwu78hRvfCKubJ14M5uBEwF6P", "Pump.fun"),
}

ResultSink = Callable[[DetectionResult], Any]


class DetectionStrategy:
    """Common lifecycle and bookkeeping for every strategy."""

    name = "base"
    source = "base"

    def __init__(
        self,
        *,
        connection: Any = None,
        gateway: Any = None,
        config: Optional[DetectorConfig] = None,
        criteria: AcceptanceCriteria | str | None = None,
    ) -> None:
        self.connection = connection
        self.gateway = gateway
        self.config = config or DetectorConfig()
        self.criteria = get_criteria(criteria if criteria is not None else self.config.criteria)
        self._sink: Optional[ResultSink] = None
        self._status = StrategyStatus()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def bind(self, sink: ResultSink) -> None:
        """Route emitted results to *sink* (normally ``DetectionCoordinator.submit``)."""
        self._sink = sink

    async def start(self) -> None:
        raise NotImplementedError

    async def stop(self) -> None:
        raise NotImplementedError

    def get_status(self) -> StrategyStatus:
        return dataclasses.replace(self._status, is_running=self._running)

    def _record_error(self, exc: BaseException | str) -> None:
        self._status.error_count += 1
        self._status.last_error = str(exc)

    def _emit(
        self,
        records: List[CandidateRecord],
        *,
        started: float,
        batch_size: Optional[int] = None,
        errors: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        source: Optional[str] = None,
    ) -> Optional[DetectionResult]:
        if not self._running:
            return None
        processing_time = time.monotonic() - started
        result = DetectionResult(
            records=list(records),
            source=source or self.source,
            strategy=self.name,
            timestamp=time.time(),
            processing_time=processing_time,
            batch_size=len(records) if batch_size is None else batch_size,
            errors=list(errors or []),
            metadata=dict(metadata or {}),
        )
        status = self._status
        status.emitted_batches += 1
        status.detected_count += len(result.records)
        if result.records:
            status.last_detection = result.timestamp
        status.avg_processing_time += (
            processing_time - status.avg_processing_time
        ) / status.emitted_batches
        if self._sink is None:
            log.debug("%s strategy has no sink; dropping %d records", self.name, len(records))
            return result
        try:
            self._sink(result)
        except Exception:
            log.exception("%s strategy sink failed", self.name)
        return result


class _IntervalStrategy(DetectionStrategy):
    """Strategy driven by a :class:`RepeatingTask`."""

    requires = "connection"
    eager = False

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._timer: Optional[RepeatingTask] = None

    @property
    def interval(self) -> float:
        return self.config.scan_interval

    async def start(self) -> None:
        if self._running:
            return
        if getattr(self, self.requires) is None:
            raise ConnectionError(f"{self.name} strategy requires a {self.requires}")
        timer = RepeatingTask(self._cycle, self.interval, name=f"{self.name}-strategy")
        self._running = True
        try:
            if self.eager:
                await self._cycle()
        except BaseException:
            self._running = False
            raise
        if not self._running:
            return
        self._timer = timer
        timer.start()
        log.info("%s strategy started (interval=%.1fs)", self.name, self.interval)

    async def stop(self) -> None:
        if not self._running and self._timer is None:
            return
        self._running = False
        timer, self._timer = self._timer, None
        if timer is not None:
            await timer.stop()
        log.info("%s strategy stopped", self.name)

    async def _cycle(self) -> None:
        raise NotImplementedError


class WebSocketStrategy(DetectionStrategy):
    """Watch venue program logs for pool creation and resolve the new mints."""

    name = "websocket"
    source = "websocket"

    def __init__(
        self,
        *,
        programs: Optional[Mapping[str, Tuple[str, str]]] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.programs = dict(programs or DEX_PROGRAMS)
        self._subscriptions: Dict[str, int] = {}
        self._tasks: Set[asyncio.Task] = set()

    async def start(self) -> None:
        if self._running:
            return
        if self.connection is None:
            raise ConnectionError("websocket strategy requires a connection")
        self._running = True
        for venue, (program_id, _label) in self.programs.items():
            try:
                subscription_id = await self.connection.on_logs(
                    program_id, self._make_handler(venue)
                )
            except Exception as exc:
                self._record_error(exc)
                log.warning("Failed to subscribe to %s logs: %s", venue, exc)
                continue
            self._subscriptions[venue] = subscription_id
        if not self._subscriptions:
            self._running = False
            raise ConnectionError("no venue log subscriptions could be established")
        log.info(
            "websocket strategy started (%d/%d venues)",
            len(self._subscriptions),
            len(self.programs),
        )

    async def stop(self) -> None:
        if not self._running and not self._subscriptions and not self._tasks:
            return
        self._running = False
        subscriptions, self._subscriptions = self._subscriptions, {}
        for venue, subscription_id in subscriptions.items():
            try:
                await self.connection.remove_on_logs_listener(subscription_id)
            except Exception as exc:
                log.warning("Failed to unsubscribe from %s logs: %s", venue, exc)
        tasks, self._tasks = list(self._tasks), set()
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
        log.info("websocket strategy stopped")

    def _make_handler(self, venue: str) -> Callable[[Mapping[str, Any]], None]:
        def _handler(value: Mapping[str, Any]) -> None:
            self.handle_logs(venue, value)

        return _handler

    def handle_logs(self, venue: str, value: Mapping[str, Any]) -> Optional[asyncio.Task]:
        """Inspect one log notification; schedules a lookup when it signals a new pool."""

        if not self._running or value.get("err"):
            return None
        signature = value.get("signature")
        logs = value.get("logs") or []
        if not signature or not has_pool_creation_log(logs):
            return None
        task = asyncio.create_task(self._process(venue, str(signature)))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _process(self, venue: str, signature: str) -> None:
        started = time.monotonic()
        errors: List[str] = []
        records: List[CandidateRecord] = []
        try:
            tx = await self.connection.get_transaction(signature)
        except Exception as exc:
            self._record_error(exc)
            log.debug("Transaction lookup failed for %s: %s", signature, exc)
            tx = None
            errors.append(f"{signature}: {exc}")
        if not self._running:
            return
        if tx:
            label = self.programs.get(venue, ("", venue))[1]
            liquidity = liquidity_from_meta(tx.get("meta"))
            now = time.time()
            for mint in extract_token_mints(tx):
                records.append(
                    CandidateRecord(
                        address=mint,
                        name=f"{label} Token {mint[:8]}",
                        symbol=generate_symbol(mint),
                        decimals=9,
                        detected_at=now,
                        source=f"{self.source}-{venue}",
                        liquidity=dataclasses.replace(liquidity),
                        dex_id=venue,
                        metadata={"signature": signature, "dex": venue},
                    )
                )
        self._emit(
            records,
            started=started,
            errors=errors,
            source=f"{self.source}-{venue}",
            metadata={"signature": signature, "dex": venue},
        )


class PollingStrategy(_IntervalStrategy):
    """Poll the market-data gateway for trending pairs."""

    name = "polling"
    source = "dexscreener"
    requires = "gateway"
    eager = True

    async def _cycle(self) -> None:
        started = time.monotonic()
        try:
            listing = await self.gateway.fetch_trending(self.criteria)
        except Exception as exc:
            self._record_error(exc)
            warn_once_per(
                5, "polling-fetch", "Trending fetch failed: %s", exc, logger=log
            )
            return
        if not self._running:
            return
        now = time.time()
        records = _convert(listing.items, record_from_pair, self.source, now)
        if records:
            self._emit(
                records,
                started=started,
                batch_size=len(listing.items),
                metadata={"endpoint": listing.endpoint, "cached": listing.cached},
            )


class ScanningStrategy(_IntervalStrategy):
    """Sample recent SPL Token program transactions for mint initialisation."""

    name = "scanning"
    source = "scanning"

    def __init__(self, *, program_id: str = SPL_TOKEN_PROGRAM, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.program_id = program_id

    async def _cycle(self) -> None:
        started = time.monotonic()
        try:
            signatures = await self.connection.get_signatures_for_address(
                self.program_id, limit=self.config.scan_signature_limit
            )
        except Exception as exc:
            self._record_error(exc)
            warn_once_per(
                5, "scanning-signatures", "Signature listing failed: %s", exc, logger=log
            )
            return
        sample = list(signatures or [])[: self.config.scan_sample_size]
        records: List[CandidateRecord] = []
        errors: List[str] = []
        seen: Set[str] = set()
        for signature in sample:
            if not self._running:
                return
            try:
                tx = await self.connection.get_transaction(signature)
            except Exception as exc:
                self._record_error(exc)
                errors.append(f"{signature}: {exc}")
                log.debug("Skipping transaction %s: %s", signature, exc)
                continue
            if not looks_like_token_creation(tx):
                continue
            now = time.time()
            for mint in extract_token_mints(tx):
                if mint in seen:
                    continue
                seen.add(mint)
                records.append(
                    CandidateRecord(
                        address=mint,
                        name=f"Scanned Token {mint[:8]}",
                        symbol=generate_symbol(mint),
                        decimals=9,
                        detected_at=now,
                        source=self.source,
                        metadata={"signature": signature, "method": "recent_activity"},
                    )
                )
        if records:
            self._emit(
                records,
                started=started,
                batch_size=len(sample),
                errors=errors,
                metadata={"method": "recent_activity"},
            )


class BoostFeedStrategy(_IntervalStrategy):
    """Slow poll of momentum boosted tokens."""

    name = "boost"
    source = "boost"
    requires = "gateway"

    @property
    def interval(self) -> float:
        return self.config.boost_interval

    async def _cycle(self) -> None:
        started = time.monotonic()
        try:
            listing = await self.gateway.fetch_boosted()
        except Exception as exc:
            self._record_error(exc)
            warn_once_per(5, "boost-fetch", "Boost fetch failed: %s", exc, logger=log)
            return
        if not self._running:
            return
        records = _convert(listing.items, record_from_boost, self.source, time.time())
        if records:
            self._emit(
                records,
                started=started,
                batch_size=len(listing.items),
                metadata={"endpoint": listing.endpoint, "cached": listing.cached},
            )


def _convert(
    items: Iterable[Mapping[str, Any]],
    converter: Callable[..., Optional[CandidateRecord]],
    source: str,
    now: float,
) -> List[CandidateRecord]:
    records: List[CandidateRecord] = []
    for item in items:
        record = converter(item, source=source, now=now)
        if record is not None:
            records.append(record)
    return records


STRATEGY_REGISTRY: Dict[str, Type[DetectionStrategy]] = {
    WebSocketStrategy.name: WebSocketStrategy,
    PollingStrategy.name: PollingStrategy,
    ScanningStrategy.name: ScanningStrategy,
    BoostFeedStrategy.name: BoostFeedStrategy,
}


def build_strategy(name: str, **kwargs: Any) -> DetectionStrategy:
    """Instantiate the strategy registered under *name*."""

    try:
        factory = STRATEGY_REGISTRY[name]
    except KeyError:
        raise ValueError(f"unknown detection source {name!r}") from None
    return factory(**kwargs)
