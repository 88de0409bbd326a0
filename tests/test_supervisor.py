"""Tests for firefleet.supervisor module."""

from __future__ import annotations

import dataclasses
from unittest.mock import MagicMock, patch

import pytest
import requests

from firefleet.assets import AssetStore
from firefleet.exceptions import AssetError, PlanningError, StateStoreError
from firefleet.models import InstanceRecord
from firefleet.state import StateStore
from firefleet.supervisor import InstanceSupervisor


@pytest.fixture
def assets(tmp_path):
    store = MagicMock(spec=AssetStore)
    store.ensure.return_value = (tmp_path / "vmlinux", tmp_path / "rootfs.ext4")
    store.remove.return_value = []
    return store


@pytest.fixture
def supervisor(fleet_config, fake_host, fake_launcher, assets):
    return InstanceSupervisor(fleet_config, launcher=fake_launcher, assets=assets)


class TestStart:
    def test_starts_requested_instances(self, supervisor, fake_host, process_table):
        result = supervisor.start(3)
        assert result.all_ok
        assert result.succeeded == 3
        assert supervisor.store.enumerate() == [1, 2, 3]
        assert sorted(fake_host.devices) == ["tap1", "tap2", "tap3"]
        pids = {outcome.record.pid for outcome in result.results}
        assert len(pids) == 3
        assert pids <= process_table.alive

    def test_custom_prefixes_scenario(self, fleet_config, fake_host, fake_launcher, assets):
        cfg = dataclasses.replace(fleet_config, device_prefix="veth", subnet_prefix="10.0")
        supervisor = InstanceSupervisor(cfg, launcher=fake_launcher, assets=assets)
        result = supervisor.start(2)
        assert result.all_ok
        assert fake_host.devices == {"veth1": ["10.0.1.1/24"], "veth2": ["10.0.2.1/24"]}
        sockets = [outcome.record.socket_path for outcome in result.results]
        assert all(path.exists() for path in sockets)
        assert len(set(sockets)) == 2
        records = [supervisor.store.read(i) for i in (1, 2)]
        assert records[0].pid != records[1].pid
        statuses = supervisor.status()
        assert [(s.index, s.running) for s in statuses] == [(1, True), (2, True)]
        assert all(s.live and s.has_device for s in statuses)

    def test_partial_failure_is_isolated(self, supervisor, fake_launcher, process_table):
        fake_launcher.failing.add(2)
        result = supervisor.start(3)
        assert result.succeeded == 2
        assert result.failed == 1
        failure = result.failures[0]
        assert failure.index == 2
        assert failure.stage == "launch"
        assert failure.message.startswith("liveness:")
        assert failure.log_tail == ["Error: KVM_CREATE_VM failed"]
        assert supervisor.store.enumerate() == [1, 3]
        assert [index for index, _ in fake_launcher.calls] == [1, 2, 3]
        assert len(process_table.terminated) == 1
        assert process_table.terminated[0] not in process_table.alive

    def test_bind_failure_launches_degraded(self, supervisor, fake_host, fake_launcher):
        fake_host.fail("ip", "tuntap", "add", "dev", "tap2")
        result = supervisor.start(2)
        assert result.all_ok
        assert fake_launcher.calls == [(1, True), (2, False)]
        outcome = result.results[1]
        assert outcome.degraded
        assert "bind" in outcome.message
        assert supervisor.store.read(2).network_degraded is True
        assert supervisor.status()[1].network_degraded is True

    def test_already_running_instances_are_skipped(self, supervisor, fake_launcher):
        first = supervisor.start(2)
        second = supervisor.start(3)
        assert second.all_ok
        assert [index for index, _ in fake_launcher.calls] == [1, 2, 3]
        assert second.results[0].message == "already running"
        assert second.results[0].record.pid == first.results[0].record.pid

    def test_stale_record_is_replaced(self, supervisor, process_table):
        first = supervisor.start(1)
        process_table.crash(first.results[0].record.pid)
        second = supervisor.start(1)
        assert second.all_ok
        assert second.results[0].record.pid != first.results[0].record.pid
        assert supervisor.store.read(1).pid == second.results[0].record.pid

    @pytest.mark.parametrize("count", [0, 255, True])
    def test_invalid_count_aborts_before_any_work(self, supervisor, fake_launcher, assets, count):
        with pytest.raises(PlanningError):
            supervisor.start(count)
        assets.ensure.assert_not_called()
        assert fake_launcher.calls == []

    def test_asset_failure_aborts(self, supervisor, fake_launcher, assets):
        assets.ensure.side_effect = AssetError("Failed to obtain a valid kernel from 2 source(s)")
        with pytest.raises(AssetError):
            supervisor.start(2)
        assert fake_launcher.calls == []

    def test_record_write_failure_stops_new_process(self, supervisor, process_table):
        with patch.object(StateStore, "write", side_effect=StateStoreError("disk full")):
            with pytest.raises(StateStoreError):
                supervisor.start(2)
        assert len(process_table.terminated) == 1
        assert process_table.alive == set()


class TestStop:
    def test_stop_completeness(self, supervisor, fake_host, process_table):
        supervisor.start(3)
        stopped = supervisor.stop()
        assert stopped == 3
        assert supervisor.store.enumerate() == []
        assert process_table.alive == set()
        assert fake_host.devices == {}
        assert fake_host.rules == []
        assert not any(supervisor.planner.plan(i).socket_path.exists() for i in (1, 2, 3))

    def test_round_trip(self, supervisor, fake_host):
        devices_before = dict(fake_host.devices)
        supervisor.start(2)
        supervisor.stop()
        assert supervisor.status() == []
        assert fake_host.devices == devices_before

    def test_continues_past_dead_instances(self, supervisor, process_table):
        result = supervisor.start(3)
        process_table.crash(result.results[0].record.pid)
        assert supervisor.stop() == 2
        assert supervisor.store.enumerate() == []

    def test_does_not_kill_reused_pid(self, supervisor, process_table):
        result = supervisor.start(1)
        pid = result.results[0].record.pid
        process_table.cmdlines[pid] = ["/usr/bin/python3", "unrelated.py"]
        assert supervisor.stop() == 0
        assert pid in process_table.alive
        assert supervisor.store.enumerate() == []

    def test_malformed_record_is_removed(self, supervisor):
        supervisor.store.ensure_layout()
        supervisor.store.record_path(4).write_text("garbage")
        supervisor.stop()
        assert supervisor.store.enumerate() == []

    def test_corrupt_records_do_not_hide_the_rest(self, supervisor, fake_host, process_table):
        supervisor.start(2)
        supervisor.store.record_path(1).write_bytes(b"\xff\xfe{garbage")
        supervisor.store.record_path(3).write_text(
            '{"index": 3, "pid": 99999999999999999999, "socket_path": "/tmp/fc-3.socket"}'
        )
        assert [s.index for s in supervisor.status()] == [2]
        assert supervisor.stop() == 1
        assert supervisor.store.enumerate() == []
        assert "tap2" not in fake_host.devices
        assert len(process_table.terminated) == 1

    def test_os_errors_do_not_short_circuit(self, supervisor, process_table):
        supervisor.start(2)
        with patch("firefleet.supervisor.terminate_pid", side_effect=[OSError("Operation not permitted"), True]):
            assert supervisor.stop() == 1
        assert supervisor.store.enumerate() == [1]

    def test_unrecorded_instance_devices_are_removed(self, supervisor, fake_host, fake_launcher):
        fake_launcher.failing.add(2)
        supervisor.start(2)
        assert "tap2" in fake_host.devices
        supervisor.stop()
        assert fake_host.devices == {}

    def test_per_instance_errors_do_not_short_circuit(self, supervisor, fake_host):
        supervisor.start(2)
        fake_host.fail("ip", "link", "del", "tap1")
        supervisor.stop()
        assert "tap1" in fake_host.devices
        assert "tap2" not in fake_host.devices
        assert supervisor.store.enumerate() == []

    def test_empty_fleet(self, supervisor, fake_host):
        assert supervisor.stop() == 0
        assert fake_host.commands == []


class TestStatus:
    def test_stale_record_self_heals(self, supervisor, process_table):
        result = supervisor.start(2)
        dead = result.results[1].record
        process_table.crash(dead.pid)
        statuses = supervisor.status()
        assert [(s.index, s.running, s.stale) for s in statuses] == [(1, True, False), (2, False, True)]
        assert supervisor.store.enumerate() == [1]
        assert not dead.socket_path.exists()
        assert [s.index for s in supervisor.status()] == [1]

    def test_unresponsive_socket_is_not_live(self, supervisor, process_table):
        result = supervisor.start(1)
        process_table.live_sockets.discard(result.results[0].record.socket_path)
        status = supervisor.status()[0]
        assert status.running
        assert not status.has_live_socket
        assert not status.live

    def test_skips_malformed_records(self, supervisor):
        supervisor.start(1)
        supervisor.store.record_path(2).write_text("{")
        assert [s.index for s in supervisor.status()] == [1]

    def test_empty(self, supervisor):
        assert supervisor.status() == []


class TestRestartAndClean:
    def test_restart_replaces_processes(self, supervisor):
        first = supervisor.start(2)
        second = supervisor.restart(3)
        assert second.all_ok
        old_pids = {r.record.pid for r in first.results}
        new_pids = {r.record.pid for r in second.results}
        assert not old_pids & new_pids
        assert supervisor.store.enumerate() == [1, 2, 3]

    def test_clean_removes_everything(self, supervisor, assets, fleet_config):
        supervisor.start(2)
        supervisor.clean()
        for name in ("vms", "pids", "sockets", "logs"):
            assert not (fleet_config.state_dir / name).exists()
        assets.remove.assert_called_once_with()


class TestProbe:
    def test_reports_reachability(self, supervisor, process_table):
        supervisor.start(2)
        ok = MagicMock(ok=True, status_code=200, reason="OK")

        def _get(url, timeout):
            if "172.16.2.2" in url:
                raise requests.ConnectionError("connection refused")
            return ok

        with patch("firefleet.supervisor.requests.get", side_effect=_get) as mock_get:
            results = supervisor.probe(port=8080, timeout=0.5)
        assert mock_get.call_args_list[0][0][0] == "http://172.16.1.2:8080/health"
        assert [(r.index, r.reachable) for r in results] == [(1, True), (2, False)]
        assert results[0].status_code == 200
        assert "connection refused" in results[1].error

    def test_uses_configured_port(self, supervisor):
        supervisor.start(1)
        with patch("firefleet.supervisor.requests.get", return_value=MagicMock(ok=True, status_code=200)) as mock_get:
            supervisor.probe()
        assert mock_get.call_args[0][0] == "http://172.16.1.2:8000/health"


def test_verify_rejects_reused_pid(supervisor, process_table, tmp_path):
    pid = process_table.spawn(["sleep", "100"])
    record = InstanceRecord(index=1, pid=pid, socket_path=tmp_path / "s.socket", started_at="")
    assert supervisor.is_running(record) is False
