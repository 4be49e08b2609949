"""
Verdict engine.

Reads the ledger once the drain window has passed and turns it into
per-subscriber (or per-group) verdicts plus report rows.  Rows are built in
a fixed order (subject, publisher, sequence) so the report is deterministic
whatever order messages arrived in.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Mapping, Sequence

from inflightbench.console import log_fail, log_header, log_metric, log_pass, log_sub, log_warn
from inflightbench.fingerprint import ExpectedUniverse, make_payload
from inflightbench.ledger import DeliveryLedger


class Status(str, Enum):
    PASS = "Pass"
    FAIL = "Fail"


@dataclass(frozen=True)
class ReportRow:
    subject:     str
    publisher:   str
    sequence:    int
    status:      Status
    message:     str = ""
    received_by: tuple[str, ...] = ()


# --------------------------------------------------------------------------- #
# Result Containers
# --------------------------------------------------------------------------- #
@dataclass
class SubscriberVerdict:
    subscriber:   str
    expected:     int
    received:     int
    deliveries:   int
    missing:      dict[str, list[int]] = field(default_factory=dict)
    unexpected:   list[str] = field(default_factory=list)
    lapsed:       bool = False
    session_lost: bool = False

    @property
    def missing_count(self) -> int:
        return sum(len(v) for v in self.missing.values())

    @property
    def passed(self) -> bool:
        return self.missing_count == 0

    @property
    def excused(self) -> bool:
        return self.lapsed and not self.session_lost


@dataclass
class GroupVerdict:
    group:        str
    expected:     int
    missing:      list[str] = field(default_factory=list)
    duplicates:   dict[str, list[str]] = field(default_factory=dict)
    per_member:   dict[str, int] = field(default_factory=dict)
    lapsed:       bool = False
    session_lost: bool = False

    @property
    def passed(self) -> bool:
        return not self.missing and not self.duplicates

    @property
    def excused(self) -> bool:
        """An expired member session explains missing messages, never duplicates."""
        return self.lapsed and not self.duplicates and not self.session_lost


@dataclass(frozen=True)
class VerdictReport:
    mode:        str
    rows:        tuple[ReportRow, ...]
    subscribers: tuple[SubscriberVerdict, ...] = ()
    groups:      tuple[GroupVerdict, ...] = ()

    @property
    def verdicts(self) -> tuple:
        return self.groups if self.mode == "shared" else self.subscribers

    @property
    def failed(self) -> list:
        """Verdicts that fail the run, including sessions the broker dropped early."""
        return [v for v in self.verdicts
                if v.session_lost or (not v.passed and not v.excused)]

    @property
    def excused(self) -> list:
        """Failures explained by a session that lapsed while offline."""
        return [v for v in self.verdicts if not v.passed and v.excused]

    @property
    def passed(self) -> bool:
        return not self.failed


class VerdictEngine:
    def __init__(self, universe: ExpectedUniverse, ledger: DeliveryLedger):
        self.universe = universe
        self.ledger = ledger

    def judge_subscribers(self, subscribers: Sequence[str],
                          lapsed: Iterable[str] = (),
                          lost: Iterable[str] = ()) -> VerdictReport:
        """At-least-once: every subscriber must hold every expected fingerprint."""
        lapsed, lost = set(lapsed), set(lost)
        rows: list[ReportRow] = []
        verdicts: list[SubscriberVerdict] = []
        expected = self.universe.keys
        for sub in subscribers:
            seen = self.ledger.received(sub)
            missing = self.ledger.missing_for(sub, expected)
            verdict = SubscriberVerdict(
                subscriber=sub,
                expected=len(self.universe),
                received=len(seen & expected),
                deliveries=self.ledger.delivery_count(sub),
                unexpected=sorted(seen - expected),
                lapsed=sub in lapsed,
                session_lost=sub in lost,
            )
            for pub, seq, key in self.universe:
                ok = key not in missing
                if not ok:
                    verdict.missing.setdefault(pub, []).append(seq)
                rows.append(ReportRow(sub, pub, seq, Status.PASS if ok else Status.FAIL))
            verdicts.append(verdict)
        return VerdictReport(mode="inflight", rows=tuple(rows), subscribers=tuple(verdicts))

    def judge_groups(self, groups: Mapping[str, Sequence[str]],
                     lapsed: Iterable[str] = (),
                     lost: Iterable[str] = ()) -> VerdictReport:
        """Exactly-once per group: one receiver per fingerprint, none missing."""
        lapsed, lost = set(lapsed), set(lost)
        rows: list[ReportRow] = []
        verdicts: list[GroupVerdict] = []
        for group, members in groups.items():
            receivers = self.ledger.group_receivers(group)
            verdict = GroupVerdict(
                group=group,
                expected=len(self.universe),
                duplicates=self.ledger.duplicates_in_group(receivers),
                per_member={m: 0 for m in members},
                lapsed=any(m in lapsed for m in members),
                session_lost=any(m in lost for m in members),
            )
            for subs in receivers.values():
                for sub in subs:
                    verdict.per_member[sub] = verdict.per_member.get(sub, 0) + 1
            for pub, seq, key in self.universe:
                got = tuple(receivers.get(key, ()))
                if not got:
                    verdict.missing.append(key)
                rows.append(ReportRow(group, pub, seq,
                                      Status.PASS if len(got) == 1 else Status.FAIL,
                                      message=make_payload(pub, seq).decode(),
                                      received_by=got))
            verdicts.append(verdict)
        return VerdictReport(mode="shared", rows=tuple(rows), groups=tuple(verdicts))


# --------------------------------------------------------------------------- #
# Console summary
# --------------------------------------------------------------------------- #
def print_verdict(report: VerdictReport):
    if report.mode == "shared":
        log_header("Verifying shared-subscription semantics")
        for g in report.groups:
            _print_group(g)
        log_header("Distribution of messages per subscriber")
        for g in report.groups:
            log_metric(f"{g.group}:")
            for sub, count in g.per_member.items():
                log_sub(f"{sub}: {count} messages")
            log_sub(f"{g.group} total: {sum(g.per_member.values())} messages")
    else:
        log_header("Verifying inflight message delivery")
        for v in report.subscribers:
            _print_subscriber(v)

    if report.excused:
        names = ", ".join(getattr(v, "group", None) or v.subscriber for v in report.excused)
        log_warn(f"Expected gaps (session lapsed while offline): {names}")
    if report.passed:
        log_pass("===== FINAL OUTCOME: ALL SUBSCRIBERS PASSED =====")
    else:
        log_fail("===== FINAL OUTCOME: ONE OR MORE SUBSCRIBERS FAILED =====")


def _print_subscriber(v: SubscriberVerdict):
    label = f"Subscriber {v.subscriber}: received {v.received}/{v.expected}"
    if v.deliveries > v.received:
        label += f" ({v.deliveries - v.received} redelivered)"
    if v.session_lost:
        log_fail(f"Subscriber {v.subscriber}: session dropped inside its expiry window")
    if v.passed:
        log_pass(label)
        return
    (log_warn if v.excused else log_fail)(f"{label} (missing {v.missing_count})")
    for pub, seqs in v.missing.items():
        log_sub(f"Missing from {pub}: [{', '.join(map(str, seqs))}]")
    if v.unexpected:
        log_sub(f"Unexpected payloads: {len(v.unexpected)}")


def _print_group(g: GroupVerdict):
    if g.session_lost:
        log_fail(f"{g.group}: a member session was dropped inside its expiry window")
    if g.passed:
        log_pass(f"{g.group}: no missing or duplicate deliveries")
        return
    (log_warn if g.excused else log_fail)(f"{g.group}: missing or duplicate deliveries")
    if g.missing:
        more = f" (+{len(g.missing) - 5} more)" if len(g.missing) > 5 else ""
        log_sub(f"Missing ({len(g.missing)}): {g.missing[:5]}{more}")
    if g.duplicates:
        log_sub(f"Duplicate deliveries for {len(g.duplicates)} message(s)")
        for key, subs in list(g.duplicates.items())[:3]:
            log_sub(f"  • {key!r} → [{', '.join(subs)}]")
        if len(g.duplicates) > 3:
            log_sub(f"  (+{len(g.duplicates) - 3} more)")
