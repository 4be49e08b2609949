#!/usr/bin/env python3
"""
Inflight-delivery & Shared-Subscription Test Harness for MQTT v5 brokers.

Scenarios:
  • inflight: persistent subscribers are disconnected mid-run and must receive
    every message after reconnecting with the same client id
  • shared:   every message published to a $share group must reach exactly
    one member of the group

Usage:
    pip install -e .
    python benchmark.py                                   # inflight scenario
    python benchmark.py --scenario shared --groups 2 --subs-per-group 3
    python benchmark.py --fault-mode staggered --stagger-delay 0.5
    python benchmark.py --broker-url wss://broker.example:443 --username u --password p
    python benchmark.py --status-port 7870                # live stats on :7870
"""

import argparse
import asyncio
import sys

from inflightbench.client import paho_client_factory
from inflightbench.config import BENCH, CONFIG, BrokerSettings, FaultMode, load_config
from inflightbench.console import C, close_logging, log, log_fail, setup_logging
from inflightbench.errors import InflightBenchError
from inflightbench.orchestrator import ScenarioOrchestrator, ScenarioResult
from inflightbench.report import CsvReportSink

# --------------------------------------------------------------------------- #
# uvloop
# --------------------------------------------------------------------------- #
try:
    import uvloop
    _UVLOOP = True
except ImportError:
    _UVLOOP = False

EXIT_INTERRUPTED = 130


def _run(coro):
    if _UVLOOP:
        return uvloop.run(coro)
    return asyncio.run(coro)


# --------------------------------------------------------------------------- #
# Runner
# --------------------------------------------------------------------------- #
async def run_scenario(cfg, client_factory=None) -> ScenarioResult:
    orchestrator = ScenarioOrchestrator(
        cfg,
        client_factory or paho_client_factory(cfg.broker),
        CsvReportSink(cfg.csv_file) if cfg.csv_file else None,
    )
    server = None
    if cfg.status_port:
        from inflightbench.status_app import StatusServer
        server = StatusServer(orchestrator, cfg.status_port)
        await server.start()
    try:
        return await orchestrator.run()
    finally:
        if server is not None:
            await server.stop()


def print_header(cfg):
    title = ("Shared-Subscription Test" if cfg.shared
             else "Inflight Message Delivery Test")
    subs = (f"{cfg.groups} group(s) × {cfg.subs_per_group}" if cfg.shared
            else f"{cfg.subscribers}")
    fault = (f"{cfg.fault_mode.value} at {cfg.fault_threshold:.0%} "
             f"(reconnect after {cfg.reconnect_delay}s)"
             if cfg.fault_injection else "disabled")
    log.info(f"\n{'='*70}")
    log.info(f"  🎯  MQTT v5 {title}")
    log.info(f"{'='*70}")
    log.info(f"  Broker:       {cfg.broker.url}")
    log.info(f"  Credentials:  {cfg.broker.redacted()}")
    log.info(f"  Topic:        {cfg.topic}  (QoS {cfg.qos})")
    log.info(f"  Subscribers:  {subs}  (session expiry {cfg.session_expiry}s)")
    log.info(f"  Publishers:   {cfg.publishers} × {cfg.messages_per_pub} messages")
    log.info(f"  Interval:     {cfg.publish_interval}s")
    log.info(f"  Fault:        {fault}")
    log.info(f"  Drain:        {cfg.drain_window}s")
    log.info(f"  Report:       {cfg.csv_file or '-'}")
    log.info(f"{'='*70}\n")


# --------------------------------------------------------------------------- #
# Main
# --------------------------------------------------------------------------- #
def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Inflight-delivery and shared-subscription tests for MQTT v5 brokers")
    p.add_argument("--scenario", choices=sorted(BENCH), default="inflight")

    g = p.add_argument_group("broker")
    g.add_argument("--broker-url", default=CONFIG["broker_url"])
    g.add_argument("--username",   default=CONFIG["username"])
    g.add_argument("--password",   default=CONFIG["password"])
    g.add_argument("--keepalive",  type=int, default=60)
    g.add_argument("--ws-path",    default="/mqtt")

    g = p.add_argument_group("scenario")
    g.add_argument("--topic")
    g.add_argument("--qos",              type=int, choices=[0, 1, 2])
    g.add_argument("--subscribers",      type=int)
    g.add_argument("--groups",           type=int)
    g.add_argument("--subs-per-group",   type=int)
    g.add_argument("--session-expiry",   type=int, help="Seconds")
    g.add_argument("--receive-maximum",  type=int)
    g.add_argument("--publishers",       type=int)
    g.add_argument("--messages",         type=int, dest="messages_per_pub",
                   help="Messages per publisher")
    g.add_argument("--interval",         type=float, dest="publish_interval",
                   help="Seconds between publishes")
    g.add_argument("--jitter",           type=float, dest="pace_jitter",
                   help="Pacing jitter as a fraction of the interval (e.g. 0.3)")
    g.add_argument("--payload-size",     type=int, help="Pad payloads to this many bytes")
    g.add_argument("--message-expiry",   type=int, help="Seconds")

    g = p.add_argument_group("fault injection")
    g.add_argument("--fault",    dest="fault_injection", action="store_true", default=None)
    g.add_argument("--no-fault", dest="fault_injection", action="store_false")
    g.add_argument("--fault-mode",       choices=[m.value for m in FaultMode])
    g.add_argument("--fault-threshold",  type=float,
                   help="Fraction of total publishes after which to disconnect")
    g.add_argument("--reconnect-delay",  type=float)
    g.add_argument("--stagger-delay",    type=float)

    g = p.add_argument_group("timing")
    g.add_argument("--drain",            type=float, dest="drain_window")
    g.add_argument("--registration-delay", type=float)
    g.add_argument("--connect-timeout",  type=float)
    g.add_argument("--subscribe-timeout", type=float)
    g.add_argument("--ack-timeout",      type=float)
    g.add_argument("--ready-timeout",    type=float)
    g.add_argument("--batch-size",       type=int)
    g.add_argument("--batch-delay",      type=float)

    g = p.add_argument_group("output")
    g.add_argument("--log-file")
    g.add_argument("--csv-file")
    g.add_argument("--log-level",        default=CONFIG["log_level"])
    g.add_argument("--stats-interval",   type=float)
    g.add_argument("--status-port",      type=int)
    g.add_argument("--fail-exit-code",   type=int,
                   help="Exit code when the verdict is FAIL (default 0)")
    return p


OVERRIDES = (
    "topic", "qos", "subscribers", "groups", "subs_per_group", "session_expiry",
    "receive_maximum", "publishers", "messages_per_pub", "publish_interval",
    "pace_jitter", "payload_size", "message_expiry", "fault_injection",
    "fault_mode", "fault_threshold", "reconnect_delay", "stagger_delay",
    "drain_window", "registration_delay", "connect_timeout", "subscribe_timeout",
    "ack_timeout", "ready_timeout", "batch_size", "batch_delay", "log_file",
    "csv_file", "stats_interval", "status_port", "fail_exit_code",
)


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    overrides = {k: getattr(args, k) for k in OVERRIDES}
    try:
        broker = BrokerSettings(url=args.broker_url, username=args.username,
                                password=args.password, keepalive=args.keepalive,
                                ws_path=args.ws_path)
        cfg = load_config(args.scenario, broker=broker, **overrides)
    except (InflightBenchError, ValueError) as e:
        setup_logging(level=args.log_level)
        log_fail(f"Invalid configuration: {e}")
        return 1

    setup_logging(cfg.log_file, args.log_level)
    print_header(cfg)
    try:
        result = _run(run_scenario(cfg))
    except KeyboardInterrupt:
        log.info(f"\n{C.WARN}Interrupted, connections closed.{C.END}")
        return EXIT_INTERRUPTED
    except InflightBenchError as e:
        log_fail(f"Harness error: {e}")
        return 1
    finally:
        close_logging()

    return 0 if result.passed else cfg.fail_exit_code


if __name__ == "__main__":
    sys.exit(main())
