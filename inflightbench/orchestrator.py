"""
Scenario orchestrator.

Drives one run through its phases::

    INIT -> AWAIT_SUBSCRIBER_READY -> AWAIT_PUBLISHER_READY -> PUBLISHING
         -> FAULT_INJECTION (optional, concurrent with publishing)
         -> DRAINING -> VERIFYING -> REPORTING -> DONE

Any exception moves the run to FAILED.  Connections are torn down in every
case, and the final counters are logged on the way out.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from enum import Enum

from inflightbench.client import ClientFactory
from inflightbench.config import ScenarioConfig
from inflightbench.console import (log_fail, log_header, log_info, log_metric,
                                   log_pass, log_sub, log_warn)
from inflightbench.errors import BarrierTimeout, SessionError, SetupError
from inflightbench.faults import FaultReport, inject_faults, select_targets
from inflightbench.fingerprint import ExpectedUniverse
from inflightbench.launcher import launch_in_batches
from inflightbench.ledger import DeliveryLedger
from inflightbench.publisher import PublisherDriver, PublisherIdentity
from inflightbench.report import ReportSink
from inflightbench.session import SessionController, SubscriberIdentity
from inflightbench.stats import LatencyResult, RunCounters, StatsReporter, format_snapshot
from inflightbench.verdict import VerdictEngine, VerdictReport, print_verdict

log = logging.getLogger("inflightbench.orchestrator")


class Phase(str, Enum):
    INIT                   = "init"
    AWAIT_SUBSCRIBER_READY = "await_subscriber_ready"
    AWAIT_PUBLISHER_READY  = "await_publisher_ready"
    PUBLISHING             = "publishing"
    FAULT_INJECTION        = "fault_injection"
    DRAINING               = "draining"
    VERIFYING              = "verifying"
    REPORTING              = "reporting"
    DONE                   = "done"
    FAILED                 = "failed"


@dataclass
class ScenarioResult:
    report:           VerdictReport
    stats:            dict
    latency:          LatencyResult
    fault:            FaultReport | None = None
    connect_failures: list[str] = field(default_factory=list)
    publishers:       dict[str, dict] = field(default_factory=dict)

    @property
    def passed(self) -> bool:
        return self.report.passed


class ScenarioOrchestrator:
    def __init__(self, config: ScenarioConfig, client_factory: ClientFactory,
                 sink: ReportSink | None = None):
        self.config = config
        self.client_factory = client_factory
        self.sink = sink

        self.phase = Phase.INIT
        self.counters = RunCounters()
        self.ledger = DeliveryLedger()
        self.universe: ExpectedUniverse | None = None
        self.controllers: list[SessionController] = []
        self.drivers: list[PublisherDriver] = []
        self.groups: dict[str, list[str]] = {}
        self.fault_report: FaultReport | None = None
        self.connect_failures: list[str] = []

        self._active: list[SessionController] = []
        self._ready: list[PublisherDriver] = []

    @property
    def finished(self) -> bool:
        return self.phase in (Phase.DONE, Phase.FAILED)

    def _enter(self, phase: Phase):
        log.debug("phase %s -> %s", self.phase.value, phase.value)
        self.phase = phase

    # ── setup ──────────────────────────────────────────────────────── #
    def _validate(self):
        """Re-check counts; ``model_copy(update=...)`` skips pydantic's bounds."""
        cfg = self.config
        if cfg.total_subscribers < 1:
            raise SetupError(f"at least one subscriber is required, got {cfg.total_subscribers}")
        if cfg.publishers < 1:
            raise SetupError(f"at least one publisher is required, got {cfg.publishers}")
        if cfg.messages_per_pub < 1:
            raise SetupError(f"messages per publisher must be >= 1, got {cfg.messages_per_pub}")

    def _subscriber_identities(self) -> list[SubscriberIdentity]:
        cfg = self.config
        common = dict(topic=cfg.topic, qos=cfg.qos, session_expiry=cfg.session_expiry,
                      receive_maximum=cfg.receive_maximum)
        if not cfg.shared:
            return [SubscriberIdentity(f"sub-{i}", **common) for i in range(cfg.subscribers)]
        identities = []
        for g in range(cfg.groups):
            group = f"Group{g + 1}"
            members = [f"{group}-{s}" for s in range(cfg.subs_per_group)]
            self.groups[group] = members
            identities.extend(SubscriberIdentity(m, group=group, **common) for m in members)
        return identities

    def build(self):
        """Create identities, controllers and drivers; no network activity."""
        self._validate()
        cfg = self.config
        publishers = tuple(f"pub-{p}" for p in range(cfg.publishers))
        self.universe = ExpectedUniverse(publishers, cfg.messages_per_pub)

        self.controllers = [
            SessionController(ident, self.client_factory, self.ledger, self.counters,
                              connect_timeout=cfg.connect_timeout,
                              subscribe_timeout=cfg.subscribe_timeout,
                              connect_attempts=cfg.connect_attempts)
            for ident in self._subscriber_identities()
        ]
        self.drivers = [
            PublisherDriver(PublisherIdentity(pub, cfg.messages_per_pub),
                            self.client_factory, cfg.topic, self.counters,
                            qos=cfg.qos, interval=cfg.publish_interval,
                            jitter=cfg.pace_jitter, payload_size=cfg.payload_size,
                            message_expiry=cfg.message_expiry,
                            connect_timeout=cfg.connect_timeout,
                            ack_timeout=cfg.ack_timeout)
            for pub in publishers
        ]

    # ── run ────────────────────────────────────────────────────────── #
    async def run(self) -> ScenarioResult:
        if self.universe is None:
            try:
                self.build()
            except SetupError:
                self._enter(Phase.FAILED)
                raise
        cfg = self.config
        reporter = StatsReporter(self.counters, cfg.stats_interval)
        try:
            await self._await_subscribers()
            await self._await_publishers()
            reporter.start()
            await self._publish()

            self._enter(Phase.DRAINING)
            log_info(f"Waiting {cfg.drain_window:.1f}s for in-flight deliveries…")
            await asyncio.sleep(cfg.drain_window)
            await reporter.stop()

            report = self._verify()
            self._enter(Phase.REPORTING)
            print_verdict(report)
            if self.sink is not None:
                self.sink.write(report)
            self._enter(Phase.DONE)
            return ScenarioResult(
                report=report,
                stats=self.counters.snapshot(),
                latency=self.counters.latency(),
                fault=self.fault_report,
                connect_failures=list(self.connect_failures),
                publishers={d.client_id: d.stats.as_dict() for d in self.drivers},
            )
        except BaseException:
            self._enter(Phase.FAILED)
            raise
        finally:
            await reporter.stop()
            await self._teardown()

    async def _barrier(self, items: list, start, label: str) -> list:
        """Launch *items* in batches under ``ready_timeout``; return the failures."""
        cfg = self.config
        try:
            results = await asyncio.wait_for(
                launch_in_batches(items, start, cfg.batch_size, cfg.batch_delay, label),
                timeout=cfg.ready_timeout)
        except asyncio.TimeoutError:
            raise BarrierTimeout(label, f"not all {label} ready within "
                                        f"{cfg.ready_timeout:.1f}s") from None
        failed = []
        for item, result in zip(items, results):
            if isinstance(result, SessionError):
                log_fail(f"{item.client_id}: {result}")
                failed.append(item)
            elif isinstance(result, BaseException):
                raise result
        if len(failed) == len(items):
            raise SetupError(f"none of the {len(items)} {label} could connect")
        self.connect_failures.extend(i.client_id for i in failed)
        return failed

    async def _await_subscribers(self):
        cfg = self.config
        self._enter(Phase.AWAIT_SUBSCRIBER_READY)
        log_header(f"Connecting {len(self.controllers)} subscriber(s)")
        failed = await self._barrier(self.controllers, lambda c: c.connect(), "subscribers")
        self._active = [c for c in self.controllers if c not in failed]
        log_pass(f"{len(self._active)}/{len(self.controllers)} subscribers subscribed")
        if cfg.registration_delay:
            log_info(f"Waiting {cfg.registration_delay:.1f}s for subscription registration…")
            await asyncio.sleep(cfg.registration_delay)

    async def _await_publishers(self):
        cfg = self.config
        self._enter(Phase.AWAIT_PUBLISHER_READY)
        log_header(f"Connecting {len(self.drivers)} publisher(s)")
        failed = await self._barrier(self.drivers, lambda d: d.connect(), "publishers")
        self._ready = [d for d in self.drivers if d not in failed]
        log_pass(f"{len(self._ready)}/{len(self.drivers)} publishers connected")
        if cfg.registration_delay:
            await asyncio.sleep(cfg.registration_delay)

    async def _publish(self):
        cfg = self.config
        self._enter(Phase.PUBLISHING)
        log_header(f"Publishing {cfg.total_messages} message(s) "
                   f"({len(self._ready)} publisher(s) × {cfg.messages_per_pub})")

        fault_task = None
        trigger = asyncio.Event()
        if cfg.fault_injection:
            self.counters.add_watermark(cfg.fault_trigger_count, trigger.set)
            fault_task = asyncio.create_task(self._inject(trigger), name="fault-injection")
        try:
            await asyncio.gather(*(d.run() for d in self._ready))
            log_pass(f"All publishers finished ({self.counters.published} attempts)")
            if fault_task is not None:
                if trigger.is_set():
                    await fault_task
                else:
                    log_warn(f"Fault threshold of {cfg.fault_trigger_count} attempts "
                             f"never reached; no fault injected")
        finally:
            if fault_task is not None and not fault_task.done():
                fault_task.cancel()
                await asyncio.gather(fault_task, return_exceptions=True)

    async def _inject(self, trigger: asyncio.Event):
        cfg = self.config
        await trigger.wait()
        self._enter(Phase.FAULT_INJECTION)
        targets = select_targets(self._active, cfg.shared)
        log_header(f"Fault injection ({cfg.fault_mode.value}) after "
                   f"{self.counters.published}/{cfg.total_messages} publish attempts")
        report = await inject_faults(targets, cfg.fault_mode, cfg.reconnect_delay,
                                     cfg.stagger_delay)
        for rec in report.failures:
            log_fail(f"Fault cycle for {rec.client_id}: {rec.error}")
        back = len(report.records) - len(report.failures)
        log_info(f"Fault injection complete: {back}/{len(report.records)} subscriber(s) resubscribed")
        self.fault_report = report
        if self.phase is Phase.FAULT_INJECTION:
            self._enter(Phase.PUBLISHING)

    def _verify(self) -> VerdictReport:
        self._enter(Phase.VERIFYING)
        engine = VerdictEngine(self.universe, self.ledger)
        lapsed = [c.client_id for c in self.controllers if c.session_lapsed]
        lost = [c.client_id for c in self.controllers if c.session_lost]
        active = {c.client_id for c in self._active}
        if self.config.shared:
            groups = {g: [m for m in members if m in active]
                      for g, members in self.groups.items()}
            return engine.judge_groups(groups, lapsed, lost)
        return engine.judge_subscribers([c.client_id for c in self._active], lapsed, lost)

    async def _teardown(self):
        log_info("Closing all connections…")
        results = await asyncio.gather(*(c.teardown() for c in self.controllers),
                                       *(d.close() for d in self.drivers),
                                       return_exceptions=True)
        for r in results:
            if isinstance(r, Exception):
                log.warning("Error during teardown: %s", r)

        log_metric(f"Final: {format_snapshot(self.counters.snapshot())}")
        lat = self.counters.latency()
        if lat.samples:
            log_metric(f"Ack latency: mean {lat.mean_ms:.2f} ms, p95 {lat.p95_ms:.2f} ms, "
                       f"max {lat.max_ms:.2f} ms ({lat.samples} samples)")
        for d in self.drivers:
            s = d.stats
            log_sub(f"{d.client_id}: {s.published} published, {s.acked} acked, {s.failed} failed")

    # ── introspection (status endpoint) ────────────────────────────── #
    def status(self) -> dict:
        return {
            "phase":       self.phase.value,
            "stats":       self.counters.snapshot(),
            "latency":     asdict(self.counters.latency()),
            "subscribers": {c.client_id: c.state.value for c in self.controllers},
            "publishers":  {d.client_id: d.stats.as_dict() for d in self.drivers},
        }
