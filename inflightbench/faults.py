"""
Fault injection: take subscriber sessions offline mid-run and bring them
back under the same identity.

* mass: every target disconnects together, waits the settle delay, and
  reconnects together
* staggered: target ``i`` starts its disconnect ``i * stagger_delay`` after
  the trigger, so reconnect load trickles in instead of arriving as a herd
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Sequence

from inflightbench.config import FaultMode
from inflightbench.console import log_info
from inflightbench.errors import SessionError
from inflightbench.session import SessionController

log = logging.getLogger("inflightbench.faults")


@dataclass
class FaultRecord:
    client_id:       str
    topic_filter:    str
    disconnected_at: float | None = None
    reconnected_at:  float | None = None
    error:           str | None = None


@dataclass
class FaultReport:
    mode:         FaultMode
    triggered_at: float
    records:      list[FaultRecord] = field(default_factory=list)

    @property
    def failures(self) -> list[FaultRecord]:
        return [r for r in self.records if r.error]


def select_targets(controllers: Sequence[SessionController],
                   shared: bool) -> list[SessionController]:
    """Every controller, or the first controller of each shared group."""
    if not shared:
        return list(controllers)
    seen: set[str] = set()
    targets = []
    for c in controllers:
        group = c.identity.group
        if group is not None and group not in seen:
            seen.add(group)
            targets.append(c)
    return targets


async def inject_faults(targets: Sequence[SessionController], mode: FaultMode,
                        reconnect_delay: float, stagger_delay: float = 0.0) -> FaultReport:
    mode = FaultMode(mode)
    report = FaultReport(mode=mode, triggered_at=time.monotonic())
    if mode is FaultMode.MASS:
        log_info(f"Disconnecting {len(targets)} subscriber(s)…")
        records = [FaultRecord(c.client_id, c.identity.topic_filter) for c in targets]
        await asyncio.gather(*(_disconnect(c, r) for c, r in zip(targets, records)))
        await asyncio.sleep(reconnect_delay)
        log_info(f"Reconnecting {len(targets)} subscriber(s)…")
        await asyncio.gather(*(_reconnect(c, r) for c, r in zip(targets, records)
                               if r.error is None))
    else:
        log_info(f"Staggered disconnect of {len(targets)} subscriber(s), "
                 f"{stagger_delay:.2f}s apart…")
        records = await asyncio.gather(*(
            _cycle(c, i * stagger_delay, reconnect_delay) for i, c in enumerate(targets)))
    report.records.extend(records)
    return report


async def _cycle(controller: SessionController, offset: float,
                 reconnect_delay: float) -> FaultRecord:
    record = FaultRecord(controller.client_id, controller.identity.topic_filter)
    await asyncio.sleep(offset)
    await _disconnect(controller, record)
    if record.error is None:
        await asyncio.sleep(reconnect_delay)
        await _reconnect(controller, record)
    return record


async def _disconnect(controller: SessionController, record: FaultRecord):
    log.info(">>> Forcing DISCONNECT of subscriber %s", controller.client_id)
    try:
        await controller.disconnect()
    except SessionError as e:
        record.error = f"disconnect: {e}"
        log.error("Subscriber %s failed to disconnect: %s", controller.client_id, e)
        return
    record.disconnected_at = time.monotonic()


async def _reconnect(controller: SessionController, record: FaultRecord):
    log.info(">>> Reconnecting subscriber %s", controller.client_id)
    try:
        await controller.reconnect_same_identity()
    except SessionError as e:
        record.error = f"reconnect: {e}"
        log.error("Re-subscribe error for %s: %s", controller.client_id, e)
        return
    record.reconnected_at = time.monotonic()
