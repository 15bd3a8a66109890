"""Tests for the agent runtime lifecycle controllers."""

from __future__ import annotations

import io
import json
import subprocess
from urllib.error import URLError

import pytest

from fleetnode.errors import PrerequisiteMissing, ServiceTimeout
from fleetnode.service import (
    CONTAINER_POLL_INTERVAL,
    CONTAINER_TIMEOUT,
    DAEMON_POLL_INTERVAL,
    DAEMON_TIMEOUT,
    ContainerService,
    DaemonService,
)


class StatusResponse(io.BytesIO):
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


class StatusOpener:
    """Fails a fixed number of times, then reports ``version`` (or keeps failing)."""

    def __init__(self, failures: int, version: str = "") -> None:
        self.failures = failures
        self.version = version
        self.urls = []

    def __call__(self, url, timeout=None):
        self.urls.append(url)
        if len(self.urls) <= self.failures or not self.version:
            raise URLError("connection refused")
        body = {"configuration": {"exchange_version": self.version}}
        return StatusResponse(json.dumps(body).encode("utf-8"))


def _daemon(runner, opener, clock):
    return DaemonService(runner, port=8510, opener=opener, clock=clock, sleep=clock.sleep)


def test_daemon_already_running_is_not_started(make_runner, clock):
    runner = make_runner()
    opener = StatusOpener(failures=0, version="2.30.0")

    ready = _daemon(runner, opener, clock).ensure_running()

    assert ready.version == "2.30.0"
    assert ready.waited == 0
    assert ("systemctl", "start", "horizon.service") not in runner.calls
    assert opener.urls == ["http://localhost:8510/status"]


def test_daemon_is_started_when_inactive(make_runner, clock):
    runner = make_runner(
        responses={("systemctl", "is-active", "--quiet", "horizon.service"): (3, "")}
    )
    opener = StatusOpener(failures=2, version="2.30.0")

    ready = _daemon(runner, opener, clock).ensure_running()

    assert ("systemctl", "start", "horizon.service") in runner.calls
    assert ready.version == "2.30.0"
    assert clock.sleeps == [DAEMON_POLL_INTERVAL, DAEMON_POLL_INTERVAL]


def test_daemon_timeout_is_raised_once_within_deadline(make_runner, clock):
    service = _daemon(make_runner(), StatusOpener(failures=0), clock)

    with pytest.raises(ServiceTimeout):
        service.wait_ready()

    assert clock.now == DAEMON_TIMEOUT
    assert all(step <= DAEMON_POLL_INTERVAL for step in clock.sleeps)
    assert len(clock.sleeps) == int(DAEMON_TIMEOUT / DAEMON_POLL_INTERVAL)


def test_systemctl_failure_is_reported(make_runner, clock):
    runner = make_runner(
        responses={
            ("systemctl", "is-active", "--quiet", "horizon.service"): (3, ""),
            ("systemctl", "start", "horizon.service"): (1, ""),
        }
    )

    with pytest.raises(PrerequisiteMissing):
        _daemon(runner, StatusOpener(failures=0, version="1"), clock).ensure_running()


def _container_runner(make_runner, running=True, known=True, node_list="{}"):
    ps = ("docker", "ps", "-q", "--filter", "name=horizon1")
    ps_all = ("docker", "ps", "-a", "-q", "--filter", "name=horizon1")
    return make_runner(
        responses={
            ps: (0, "abc123\n" if running else ""),
            ps_all: (0, "abc123\n" if known else ""),
            ("hzn", "node", "list"): (0, node_list),
        },
        tools={"horizon-container", "hzn"},
    )


def test_container_start_reuses_existing_container(make_runner, clock):
    node_list = json.dumps({"configuration": {"preferred_exchange_version": "1.4.0"}})
    runner = _container_runner(make_runner, running=False, known=True, node_list=node_list)
    service = ContainerService(runner, clock=clock, sleep=clock.sleep)

    ready = service.ensure_running()

    assert ("docker", "start", "horizon1") in runner.calls
    assert ("horizon-container", "start") not in runner.calls
    assert ready.version == "1.4.0"


def test_container_created_by_helper_when_unknown(make_runner, clock):
    node_list = json.dumps({"configuration": {"preferred_exchange_version": "1.4.0"}})
    runner = _container_runner(make_runner, running=False, known=False, node_list=node_list)

    ContainerService(runner, clock=clock, sleep=clock.sleep).ensure_running()

    assert ("horizon-container", "start") in runner.calls


def test_container_timeout_uses_container_deadline(make_runner, clock):
    runner = _container_runner(make_runner)

    with pytest.raises(ServiceTimeout):
        ContainerService(runner, clock=clock, sleep=clock.sleep).ensure_running()

    assert clock.now == CONTAINER_TIMEOUT
    assert set(clock.sleeps) == {CONTAINER_POLL_INTERVAL}


def test_container_stop_only_when_running(make_runner, clock):
    runner = _container_runner(make_runner, running=False)
    ContainerService(runner, clock=clock, sleep=clock.sleep).stop()
    assert ("horizon-container", "stop") not in runner.calls

    runner = _container_runner(make_runner, running=True)
    ContainerService(runner, clock=clock, sleep=clock.sleep).stop()
    assert ("horizon-container", "stop") in runner.calls


def test_container_helper_is_required(make_runner, clock):
    service = ContainerService(make_runner(), clock=clock, sleep=clock.sleep)

    with pytest.raises(PrerequisiteMissing):
        service.is_running()


class SlowOpener:
    """Every probe uses its whole timeout before failing."""

    def __init__(self, clock) -> None:
        self.clock = clock
        self.timeouts = []

    def __call__(self, url, timeout=None):
        self.timeouts.append(timeout)
        self.clock.now += timeout
        raise OSError("timed out")


def test_slow_daemon_probes_stay_within_deadline(make_runner, clock):
    opener = SlowOpener(clock)

    with pytest.raises(ServiceTimeout):
        _daemon(make_runner(), opener, clock).wait_ready()

    assert clock.now <= DAEMON_TIMEOUT
    assert max(opener.timeouts) <= 10
    assert opener.timeouts[-1] < 10


def test_hanging_container_probe_is_not_ready(make_runner, clock):
    base = _container_runner(make_runner)

    class HangingRunner(type(base)):
        def run(self, args, *, check=True, input_text=None, timeout=None):
            if tuple(args) == ("hzn", "node", "list"):
                self.calls.append(tuple(args))
                clock.now += timeout
                raise subprocess.TimeoutExpired(list(args), timeout)
            return super().run(args, check=check, input_text=input_text, timeout=timeout)

    runner = HangingRunner(responses=base.responses, tools=base.tools)

    with pytest.raises(ServiceTimeout):
        ContainerService(runner, clock=clock, sleep=clock.sleep).wait_ready()

    assert clock.now <= CONTAINER_TIMEOUT
    assert runner.calls.count(("hzn", "node", "list")) >= 2
