"""End-to-end scenarios against the in-memory broker."""

import asyncio

import pytest

from inflightbench.errors import BarrierTimeout, SetupError
from inflightbench.orchestrator import Phase, ScenarioOrchestrator
from inflightbench.report import MemorySink
from inflightbench.session import SessionState
from inflightbench.verdict import Status


def orchestrator(broker, cfg, sink=None):
    return ScenarioOrchestrator(cfg, broker.factory, sink)


class TestInflightScenario:
    """Non-shared subscribers, at-least-once delivery."""

    @pytest.mark.asyncio
    async def test_no_fault_all_rows_pass(self, mock_broker, make_config):
        cfg = make_config("inflight", subscribers=1, publishers=2, messages_per_pub=10,
                          qos=1, fault_injection=False)
        sink = MemorySink()
        orch = orchestrator(mock_broker, cfg, sink)

        result = await orch.run()

        assert result.passed
        assert orch.phase is Phase.DONE
        assert len(orch.universe) == 20
        report = sink.reports[0]
        assert len(report.rows) == 20
        assert {r.status for r in report.rows} == {Status.PASS}
        assert result.stats["published"] == 20
        assert result.stats["acked"] == 20
        assert result.publishers == {
            "pub-0": {"published": 10, "acked": 10, "failed": 0},
            "pub-1": {"published": 10, "acked": 10, "failed": 0}}

    @pytest.mark.asyncio
    async def test_reconnect_within_expiry_recovers_everything(self, mock_broker, make_config):
        cfg = make_config("inflight", subscribers=2, publishers=2, messages_per_pub=10,
                          qos=1, session_expiry=5, fault_injection=True,
                          fault_threshold=0.2, reconnect_delay=0.1, publish_interval=0.02)
        orch = orchestrator(mock_broker, cfg)

        result = await orch.run()

        assert result.passed
        assert result.fault is not None and not result.fault.failures
        assert sorted(r.client_id for r in result.fault.records) == ["sub-0", "sub-1"]
        for c in orch.controllers:
            assert c.reconnects == 1
            assert not c.session_lapsed
            assert mock_broker.events_of("connect", c.client_id)[-1][2:] == (False, True)
        assert not result.report.excused

    @pytest.mark.asyncio
    async def test_reconnect_beyond_expiry_is_reported_as_expected_gap(
            self, mock_broker, make_config):
        cfg = make_config("inflight", subscribers=1, publishers=2, messages_per_pub=10,
                          qos=1, session_expiry=1, fault_injection=True,
                          fault_threshold=0.2, reconnect_delay=1.2, publish_interval=0.05)
        orch = orchestrator(mock_broker, cfg)

        result = await orch.run()

        sub = orch.controllers[0]
        assert sub.session_lapsed
        verdict = result.report.subscribers[0]
        assert not verdict.passed
        assert verdict.lapsed
        assert any(r.status is Status.FAIL for r in result.report.rows)
        assert result.report.excused == [verdict]
        assert result.passed

    @pytest.mark.asyncio
    async def test_session_dropped_inside_expiry_fails_the_run(
            self, forgetful_broker, make_config):
        cfg = make_config("inflight", subscribers=1, publishers=1, messages_per_pub=20,
                          qos=1, session_expiry=300, fault_injection=True,
                          fault_threshold=0.25, reconnect_delay=0.1, publish_interval=0.02)
        orch = orchestrator(forgetful_broker, cfg)

        result = await orch.run()

        sub = orch.controllers[0]
        assert sub.session_lost
        assert not sub.session_lapsed
        verdict = result.report.subscribers[0]
        assert verdict.session_lost
        assert not verdict.excused
        assert not result.report.excused
        assert result.report.failed == [verdict]
        assert not result.passed

    @pytest.mark.asyncio
    async def test_staggered_fault_mode(self, mock_broker, make_config):
        cfg = make_config("inflight", subscribers=3, publishers=1, messages_per_pub=10,
                          qos=2, fault_injection=True, fault_mode="staggered",
                          stagger_delay=0.03, reconnect_delay=0.05, publish_interval=0.02)
        result = await orchestrator(mock_broker, cfg).run()
        assert result.passed
        assert result.fault.mode.value == "staggered"
        assert len(result.fault.records) == 3

    @pytest.mark.asyncio
    async def test_rejected_publish_shows_up_as_fail_row(self, mock_broker, make_config):
        mock_broker.reject_keys.add("pub-0:3")
        cfg = make_config("inflight", subscribers=1, publishers=1, messages_per_pub=5,
                          qos=1, fault_injection=False)
        result = await orchestrator(mock_broker, cfg).run()

        assert not result.passed
        assert result.stats["failed"] == 1
        failed = [(r.publisher, r.sequence) for r in result.report.rows
                  if r.status is Status.FAIL]
        assert failed == [("pub-0", 3)]


class TestSharedScenario:
    """Shared-subscription groups, exactly-once per group."""

    @pytest.mark.asyncio
    async def test_one_group_of_three(self, mock_broker, make_config):
        cfg = make_config("shared", groups=1, subs_per_group=3, publishers=1,
                          messages_per_pub=9, qos=2, fault_injection=False)
        sink = MemorySink()
        result = await orchestrator(mock_broker, cfg, sink).run()

        assert result.passed
        assert all(len(r.received_by) == 1 for r in result.report.rows)
        assert len(result.report.rows) == 9
        group = result.report.groups[0]
        assert group.group == "Group1"
        assert group.per_member == {"Group1-0": 3, "Group1-1": 3, "Group1-2": 3}
        for member in group.per_member:
            assert mock_broker.events_of("subscribe", member) == [
                ("subscribe", member, "$share/Group1/test/topic")]

    @pytest.mark.asyncio
    async def test_edge_disconnect_hits_first_member_per_group(self, mock_broker, make_config):
        cfg = make_config("shared", groups=2, subs_per_group=2, publishers=1,
                          messages_per_pub=10, qos=1, fault_injection=True,
                          fault_threshold=0.5, reconnect_delay=0.05, publish_interval=0.02)
        orch = orchestrator(mock_broker, cfg)
        result = await orch.run()

        assert result.passed
        assert [r.client_id for r in result.fault.records] == ["Group1-0", "Group2-0"]
        reconnected = {c.client_id for c in orch.controllers if c.reconnects}
        assert reconnected == {"Group1-0", "Group2-0"}

    @pytest.mark.asyncio
    async def test_duplicates_fail_even_with_a_lapsed_member(
            self, duplicating_broker, make_config):
        cfg = make_config("shared", groups=1, subs_per_group=2, publishers=1,
                          messages_per_pub=10, qos=1, session_expiry=1, fault_injection=True,
                          fault_threshold=0.5, reconnect_delay=1.2, publish_interval=0.02)

        result = await orchestrator(duplicating_broker, cfg).run()

        group = result.report.groups[0]
        assert group.lapsed
        assert sorted(group.duplicates["pub-0:1"]) == ["Group1-0", "Group1-1"]
        assert not group.excused
        assert not result.report.excused
        assert result.report.failed == [group]
        assert not result.passed

    @pytest.mark.asyncio
    async def test_subscriber_receive_maximum_and_expiry_sent(self, mock_broker, make_config):
        cfg = make_config("shared", messages_per_pub=2, fault_injection=False)
        await orchestrator(mock_broker, cfg).run()
        opts = mock_broker.clients_for("Group1-0")[0].options
        assert opts.receive_maximum == 16
        assert opts.session_expiry == 300
        assert opts.clean_start is False


class TestSetupAndFailures:
    """Barriers, setup validation and teardown."""

    @pytest.mark.asyncio
    async def test_invalid_counts_fail_before_any_connection(self, mock_broker, make_config):
        cfg = make_config("inflight").model_copy(update={"subscribers": 0})
        orch = orchestrator(mock_broker, cfg)
        with pytest.raises(SetupError):
            await orch.run()
        assert mock_broker.clients == []

    @pytest.mark.asyncio
    async def test_one_refused_subscriber_does_not_stop_the_run(self, mock_broker, make_config):
        mock_broker.refuse.add("sub-1")
        cfg = make_config("inflight", subscribers=2, publishers=1, messages_per_pub=3,
                          fault_injection=False)
        result = await orchestrator(mock_broker, cfg).run()

        assert result.connect_failures == ["sub-1"]
        assert [v.subscriber for v in result.report.subscribers] == ["sub-0"]
        assert result.passed

    @pytest.mark.asyncio
    async def test_all_subscribers_refused_is_fatal(self, mock_broker, make_config):
        mock_broker.refuse.update({"sub-0", "sub-1"})
        cfg = make_config("inflight", subscribers=2, fault_injection=False)
        orch = orchestrator(mock_broker, cfg)
        with pytest.raises(SetupError):
            await orch.run()
        assert orch.phase is Phase.FAILED
        assert mock_broker.clients_for("pub-0") == []

    @pytest.mark.asyncio
    async def test_all_publishers_refused_is_fatal(self, mock_broker, make_config):
        mock_broker.refuse.add("pub-0")
        cfg = make_config("inflight", subscribers=1, publishers=1, fault_injection=False)
        orch = orchestrator(mock_broker, cfg)
        with pytest.raises(SetupError):
            await orch.run()
        assert mock_broker.online == {}

    @pytest.mark.asyncio
    async def test_subscriber_barrier_times_out(self, mock_broker, make_config):
        mock_broker.hang_subscribe.add("sub-0")
        cfg = make_config("inflight", subscribers=2, fault_injection=False,
                          subscribe_timeout=5.0, ready_timeout=0.1)
        orch = orchestrator(mock_broker, cfg)
        with pytest.raises(BarrierTimeout):
            await orch.run()
        assert orch.phase is Phase.FAILED
        assert mock_broker.published == []
        assert mock_broker.online == {}

    @pytest.mark.asyncio
    async def test_cancellation_tears_everything_down(self, mock_broker, make_config):
        cfg = make_config("inflight", subscribers=2, publishers=1, messages_per_pub=50,
                          publish_interval=0.05, fault_injection=False)
        orch = orchestrator(mock_broker, cfg)
        task = asyncio.create_task(orch.run())
        while orch.phase is not Phase.PUBLISHING:
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert orch.phase is Phase.FAILED
        assert mock_broker.online == {}
        assert all(c.state is SessionState.DISCONNECTED for c in orch.controllers)

    @pytest.mark.asyncio
    async def test_status_snapshot(self, mock_broker, make_config):
        cfg = make_config("inflight", subscribers=1, publishers=1, messages_per_pub=2,
                          fault_injection=False)
        orch = orchestrator(mock_broker, cfg)
        await orch.run()

        status = orch.status()
        assert status["phase"] == "done"
        assert status["stats"]["published"] == 2
        assert status["subscribers"] == {"sub-0": "disconnected"}
        assert status["publishers"]["pub-0"]["acked"] == 2
        assert status["latency"]["samples"] == 2
