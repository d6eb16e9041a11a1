"""
Tests for the job scheduler: admission, concurrency, lifecycle and reporting.
"""

import threading
import time

import pytest

from netbackup.error_handling import FailureKind, RetryConfig, TransportConnectError
from netbackup.inventory import DeviceRecord, Inventory, TaskDefinition
from netbackup.job_scheduler import JobScheduler, JobState, SchedulerState, StopMode

from conftest import DeviceFarm, RecordingReporter, ScriptedTransport, make_inventory, wait_until


class SlowReporter(RecordingReporter):
    """Reporter that takes a while to accept each result."""

    def __init__(self, delay):
        super().__init__()
        self.delay = delay

    def report_result(self, device_id, outcome):
        time.sleep(self.delay)
        return super().report_result(device_id, outcome)


class HungTransport(ScriptedTransport):
    """Reads block until the transport is closed, then fail with a non-transport error."""

    def read(self, timeout):
        with self._cond:
            self._cond.wait_for(lambda: not self.is_open)
        raise RuntimeError("read on released socket")


@pytest.fixture
def make_scheduler(script_library, reporter):
    created = []

    def factory(inventory, transport_factory, **kwargs):
        kwargs.setdefault("retry_config", RetryConfig(max_attempts=1, base_delay=0.01, jitter=False))
        kwargs.setdefault("job_timeout", 10.0)
        kwargs.setdefault("reporter", reporter)
        scheduler = JobScheduler(inventory, script_library, transport_factory=transport_factory, **kwargs)
        created.append(scheduler)
        return scheduler

    yield factory

    for scheduler in created:
        scheduler.shutdown()


class TestAdmission:
    """Test job requests and rejections."""

    def test_adhoc_backup_while_stopped(self, make_scheduler, reporter):
        """Single device backups run without starting the scheduler."""
        scheduler = make_scheduler(make_inventory(1), DeviceFarm())

        result = scheduler.run_single_backup("sw00", wait=True, timeout=5)

        assert result.accepted
        assert result.job.state == JobState.SUCCEEDED
        assert result.job.reported
        assert scheduler.state == SchedulerState.STOPPED
        outcomes = reporter.outcomes_for("sw00")
        assert len(outcomes) == 1
        assert outcomes[0].artifact == "hostname sw00\n"
        assert outcomes[0].job_id == result.job_id

    def test_concurrent_duplicate_rejected(self, make_scheduler, reporter):
        """Two simultaneous requests for one device: one job, one rejection."""
        scheduler = make_scheduler(make_inventory(1), DeviceFarm(reply_delay=0.5))
        barrier = threading.Barrier(2)
        results = []

        def submit():
            barrier.wait()
            results.append(scheduler.run_single_backup("sw00", wait=False))

        threads = [threading.Thread(target=submit) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        accepted = [r for r in results if r.accepted]
        rejected = [r for r in results if not r.accepted]
        assert len(accepted) == 1
        assert len(rejected) == 1
        assert rejected[0].rejection == FailureKind.DUPLICATE_DEVICE_JOB

        assert wait_until(lambda: not scheduler.active_jobs())
        assert len(reporter) == 1

        again = scheduler.run_single_backup("sw00", wait=True, timeout=5)
        assert again.accepted

    def test_unknown_device(self, make_scheduler):
        scheduler = make_scheduler(make_inventory(1), DeviceFarm())

        result = scheduler.run_single_backup("nope")

        assert not result.accepted
        assert result.rejection == FailureKind.UNKNOWN_DEVICE

    def test_unknown_script(self, make_scheduler):
        inventory = Inventory([DeviceRecord("fw1", "10.1.1.1", "unknown_vendor")])
        scheduler = make_scheduler(inventory, DeviceFarm())

        result = scheduler.run_single_backup("fw1")

        assert result.rejection == FailureKind.UNKNOWN_SCRIPT

    def test_unknown_task(self, make_scheduler):
        scheduler = make_scheduler(make_inventory(1), DeviceFarm())

        result = scheduler.run_task("nope")

        assert not result.accepted
        assert result.rejection == FailureKind.UNKNOWN_TASK

    def test_disabled_devices_skipped(self, make_scheduler, reporter):
        devices = [
            DeviceRecord("sw00", "10.0.0.1", "simple", protocol="telnet"),
            DeviceRecord("sw01", "10.0.0.2", "simple", protocol="telnet", enabled=False),
        ]
        inventory = Inventory(devices, [TaskDefinition("edge", ["sw00", "sw01", "ghost"])])
        scheduler = make_scheduler(inventory, DeviceFarm())
        scheduler.start()

        result = scheduler.run_task("edge")

        assert result.skipped_devices == ["sw01"]
        assert result.submitted_count == 1
        assert result.rejected_count == 1
        assert wait_until(lambda: len(reporter) == 1)

    def test_task_jobs_wait_for_start(self, make_scheduler, reporter):
        """Task jobs accepted while stopped stay queued until start."""
        scheduler = make_scheduler(make_inventory(3), DeviceFarm())

        result = scheduler.run_task("core-switches")
        time.sleep(0.2)

        assert result.submitted_count == 3
        assert len(reporter) == 0
        assert scheduler.status().job_counts["queued"] == 3

        scheduler.start()

        assert wait_until(lambda: len(reporter) == 3)
        assert scheduler.status().job_counts["succeeded"] == 3

    def test_rejected_after_shutdown(self, make_scheduler):
        scheduler = make_scheduler(make_inventory(1), DeviceFarm())
        scheduler.shutdown()

        result = scheduler.run_single_backup("sw00")

        assert result.rejection == FailureKind.SCHEDULER_NOT_RUNNING
        assert not scheduler.start().success


class TestConcurrency:
    """Test the bounded worker pool."""

    def test_pool_bounds_concurrent_sessions(self, make_scheduler, reporter):
        """50 devices on a pool of 10: never more than 10 open sessions."""
        farm = DeviceFarm(reply_delay=0.05)
        scheduler = make_scheduler(make_inventory(50), farm, pool_size=10)
        scheduler.start()

        result = scheduler.run_task("core-switches")

        assert result.submitted_count == 50
        assert wait_until(lambda: len(reporter) == 50, timeout=30)
        assert 1 < farm.max_active <= 10
        assert sorted(farm.opened) == sorted(f"sw{i:02d}" for i in range(50))

        status = scheduler.status()
        assert status.job_counts["succeeded"] == 50
        assert status.job_counts["running"] == 0
        assert all(len(reporter.outcomes_for(f"sw{i:02d}")) == 1 for i in range(50))

    def test_worker_busy_until_reported(self, make_scheduler):
        """A queued job is not started while the only worker is still reporting."""
        farm = DeviceFarm()
        reporter = SlowReporter(delay=0.5)
        scheduler = make_scheduler(make_inventory(2), farm, pool_size=1, reporter=reporter)
        scheduler.start()

        scheduler.run_task("core-switches")
        assert wait_until(lambda: scheduler.status().job_counts["succeeded"] == 1)

        status = scheduler.status()
        assert status.job_counts["running"] == 0
        assert status.job_counts["queued"] == 1
        assert status.running_devices == []
        assert len(farm.opened) == 1

        assert wait_until(lambda: len(reporter) == 2)
        assert len(farm.opened) == 2


class TestLifecycle:
    """Test start, stop and restart."""

    def test_start_is_idempotent(self, make_scheduler):
        scheduler = make_scheduler(make_inventory(1), DeviceFarm())

        first = scheduler.start()
        second = scheduler.start()

        assert first.changed
        assert second.success
        assert not second.changed
        assert scheduler.state == SchedulerState.RUNNING

    def test_stop_when_stopped(self, make_scheduler):
        scheduler = make_scheduler(make_inventory(1), DeviceFarm())

        result = scheduler.stop()

        assert result.success
        assert not result.changed

    def test_stop_aborts_running_jobs(self, make_scheduler, reporter):
        """stop returns only after every running job was cancelled and reported."""
        farm = DeviceFarm(reply_delay=1.0)
        scheduler = make_scheduler(make_inventory(3), farm)
        scheduler.start()
        scheduler.run_task("core-switches")
        assert wait_until(lambda: len(farm.opened) == 3)

        result = scheduler.stop()

        assert result.state == SchedulerState.STOPPED
        assert scheduler.state == SchedulerState.STOPPED
        assert len(reporter) == 3
        assert all(o.failure_kind == FailureKind.CANCELLED for _, o in reporter.calls)
        assert scheduler.active_jobs() == []
        assert scheduler.status().job_counts["running"] == 0

    def test_stop_drains_running_jobs(self, make_scheduler, reporter):
        farm = DeviceFarm(reply_delay=0.3)
        scheduler = make_scheduler(make_inventory(2), farm, stop_mode=StopMode.DRAIN)
        scheduler.start()
        scheduler.run_task("core-switches")
        assert wait_until(lambda: len(farm.opened) == 2)

        scheduler.stop()

        assert len(reporter) == 2
        assert all(o.success for _, o in reporter.calls)

    def test_stop_cancels_queued_jobs(self, make_scheduler, reporter):
        farm = DeviceFarm(reply_delay=0.3)
        scheduler = make_scheduler(make_inventory(3), farm, pool_size=1)
        scheduler.start()
        scheduler.run_task("core-switches")
        assert wait_until(lambda: len(farm.opened) == 1)

        scheduler.stop()

        assert len(reporter) == 3
        assert len(farm.opened) == 1
        assert scheduler.status().job_counts["cancelled"] == 3

    def test_requests_rejected_while_stopping(self, make_scheduler):
        farm = DeviceFarm(reply_delay=0.5)
        scheduler = make_scheduler(make_inventory(2), farm, stop_mode=StopMode.DRAIN)
        scheduler.start()
        scheduler.run_single_backup("sw00", wait=False)
        assert wait_until(lambda: len(farm.opened) == 1)

        stopper = threading.Thread(target=scheduler.stop)
        stopper.start()
        assert wait_until(lambda: scheduler.state == SchedulerState.STOPPING)

        single = scheduler.run_single_backup("sw01", wait=False)
        task = scheduler.run_task("core-switches")
        stopper.join()

        assert single.rejection == FailureKind.SCHEDULER_NOT_RUNNING
        assert task.rejection == FailureKind.SCHEDULER_NOT_RUNNING
        assert scheduler.state == SchedulerState.STOPPED

    def test_restart(self, make_scheduler, reporter):
        scheduler = make_scheduler(make_inventory(1), DeviceFarm())
        scheduler.start()

        result = scheduler.restart()

        assert result.success
        assert scheduler.state == SchedulerState.RUNNING
        assert scheduler.run_single_backup("sw00", wait=True, timeout=5).job.state == JobState.SUCCEEDED

    def test_restart_is_one_transition(self, make_scheduler, reporter):
        """During a restart callers see a running scheduler and requests are queued."""
        farm = DeviceFarm(reply_delay=0.5)
        scheduler = make_scheduler(make_inventory(2), farm, stop_mode=StopMode.DRAIN)
        scheduler.start()
        scheduler.run_single_backup("sw00", wait=False)
        assert wait_until(lambda: len(farm.opened) == 1)

        restarter = threading.Thread(target=scheduler.restart)
        restarter.start()
        time.sleep(0.1)
        during = scheduler.run_single_backup("sw01", wait=False)
        states = set()
        while restarter.is_alive():
            states.add(scheduler.state)
            states.add(scheduler.status().state)
            time.sleep(0.01)
        restarter.join()

        assert states == {SchedulerState.RUNNING}
        assert during.accepted
        assert wait_until(lambda: len(reporter) == 2)
        assert all(o.success for _, o in reporter.calls)
        assert scheduler.state == SchedulerState.RUNNING

    def test_scheduled_task_next_run(self, make_scheduler):
        inventory = make_inventory(2)
        inventory.add_task(TaskDefinition("nightly", ["sw00", "sw01"], schedule="0 2 * * *"))
        scheduler = make_scheduler(inventory, DeviceFarm())

        scheduler.start()
        tasks = scheduler.status().scheduled_tasks

        assert [t.task_name for t in tasks] == ["nightly"]
        assert tasks[0].next_run_time is not None
        assert tasks[0].device_count == 2


class TestJobExecution:
    """Test retries, timeouts and reporting."""

    def test_job_timeout(self, make_scheduler, reporter):
        """A device that never answers is cut off by the job timeout."""
        scheduler = make_scheduler(make_inventory(1), lambda device: ScriptedTransport(), job_timeout=0.3)

        start_time = time.monotonic()
        result = scheduler.run_single_backup("sw00", wait=True, timeout=5)

        assert result.job.state == JobState.TIMED_OUT
        assert result.job.failure_kind == FailureKind.JOB_TIMEOUT
        assert time.monotonic() - start_time < 2
        assert reporter.outcomes_for("sw00")[0].failure_kind == FailureKind.JOB_TIMEOUT

    def test_error_after_timeout_close_is_timeout(self, make_scheduler, reporter):
        """A transport failing oddly once the watchdog closed it still ends as a timeout."""
        scheduler = make_scheduler(make_inventory(1), lambda device: HungTransport(), job_timeout=0.3)

        result = scheduler.run_single_backup("sw00", wait=True, timeout=5)

        assert result.job.state == JobState.TIMED_OUT
        assert reporter.outcomes_for("sw00")[0].failure_kind == FailureKind.JOB_TIMEOUT

    def test_connect_error_retried(self, make_scheduler, reporter):
        farm = DeviceFarm()
        calls = []

        def flaky(device):
            calls.append(device.device_id)
            if len(calls) == 1:
                raise TransportConnectError("connection refused")
            return farm(device)

        scheduler = make_scheduler(make_inventory(1), flaky,
                                   retry_config=RetryConfig(max_attempts=2, base_delay=0.01, jitter=False))

        result = scheduler.run_single_backup("sw00", wait=True, timeout=5)

        assert result.job.state == JobState.SUCCEEDED
        assert result.job.attempts == 2
        assert reporter.outcomes_for("sw00")[0].attempts == 2

    def test_auth_failure_not_retried(self, make_scheduler, reporter):
        def denied(device):
            raise TransportConnectError("bad password", FailureKind.AUTHENTICATION_FAILED)

        scheduler = make_scheduler(make_inventory(1), denied,
                                   retry_config=RetryConfig(max_attempts=3, base_delay=0.01, jitter=False))

        result = scheduler.run_single_backup("sw00", wait=True, timeout=5)

        assert result.job.state == JobState.FAILED
        assert result.job.attempts == 1
        assert result.job.failure_kind == FailureKind.AUTHENTICATION_FAILED
        assert scheduler.status().failure_statistics["kind_breakdown"] == {"authentication_failed": 1}

    def test_session_failure_carries_buffer(self, make_scheduler, reporter):
        def wrong_prompt(device):
            return ScriptedTransport().feed("login incorrect\n")

        scheduler = make_scheduler(make_inventory(1), wrong_prompt)

        result = scheduler.run_single_backup("sw00", wait=True, timeout=10)

        outcome = reporter.outcomes_for("sw00")[0]
        assert result.job.state == JobState.FAILED
        assert outcome.failure_kind == FailureKind.EXPECT_TIMEOUT
        assert outcome.diagnostic_buffer == "login incorrect\n"
        assert "prompt" in outcome.message

    def test_reporter_error_does_not_block(self, make_scheduler):
        class BrokenReporter:
            def report_result(self, device_id, outcome):
                raise RuntimeError("API down")

            def close(self):
                pass

        scheduler = make_scheduler(make_inventory(1), DeviceFarm(), reporter=BrokenReporter())

        first = scheduler.run_single_backup("sw00", wait=True, timeout=5)
        second = scheduler.run_single_backup("sw00", wait=True, timeout=5)

        assert first.job.state == JobState.SUCCEEDED
        assert first.job.report_success is False
        assert second.accepted

    def test_job_history(self, make_scheduler):
        scheduler = make_scheduler(make_inventory(2), DeviceFarm())

        first = scheduler.run_single_backup("sw00", wait=True, timeout=5)
        second = scheduler.run_single_backup("sw01", wait=True, timeout=5)

        recent = scheduler.recent_jobs(10)
        assert [j.job_id for j in recent] == [second.job_id, first.job_id]
        assert scheduler.get_job(first.job_id).state == JobState.SUCCEEDED
        assert scheduler.get_job("missing") is None
        assert recent[0].artifact_sha256 is not None
