"""Tests for remote task polling."""

import asyncio

import pytest

from notion_migrate.api.poller import GenerationTask, TaskPoller, TaskStatus
from notion_migrate.utils.timing import sleep_unless_aborted

from fakes import RecordingSleep, ScriptedImages, StalledSleep


class TestTaskPoller:
    """Test the generation task state machine."""

    def setup_method(self):
        """Set up test fixtures."""
        self.sleep = RecordingSleep()

    async def test_times_out_after_max_attempts(self):
        """Test that a task never finishing stops after exactly N checks."""
        images = ScriptedImages(statuses=['running'])
        poller = TaskPoller(images, interval=2.0, max_attempts=3, sleep=self.sleep)

        task = await poller.wait(await poller.create('a lighthouse'))

        assert task.status == TaskStatus.TIMED_OUT
        assert task.attempts == 3
        assert images.polls == ['task-1'] * 3
        # No sleep after the final check
        assert self.sleep.delays == [2.0, 2.0]

    async def test_succeeds_with_result(self):
        """Test that a succeeded task carries its result reference."""
        images = ScriptedImages(statuses=['pending', 'running', 'succeeded'])
        poller = TaskPoller(images, interval=1.0, max_attempts=5, sleep=self.sleep)

        task = await poller.wait(await poller.create('a lighthouse'))

        assert task.status == TaskStatus.SUCCEEDED
        assert task.result_ref == 'https://img.example.com/task-1.png'
        assert task.attempts == 3

    async def test_remote_failure_is_terminal(self):
        """Test that a failed remote job fails the task immediately."""
        images = ScriptedImages(statuses=['failed'])
        poller = TaskPoller(images, interval=1.0, max_attempts=5, sleep=self.sleep)

        task = await poller.wait(await poller.create('a lighthouse'))

        assert task.status == TaskStatus.FAILED
        assert task.error == 'content policy'
        assert self.sleep.delays == []

    async def test_poll_is_a_single_check(self):
        """Test that poll makes one remote call and moves to polling."""
        images = ScriptedImages(statuses=['running'])
        poller = TaskPoller(images, max_attempts=3, sleep=self.sleep)
        task = GenerationTask(task_id='task-9')

        await poller.poll(task)

        assert task.status == TaskStatus.POLLING
        assert images.polls == ['task-9']

    async def test_terminal_task_is_not_polled(self):
        """Test that polling a finished task makes no remote call."""
        images = ScriptedImages()
        poller = TaskPoller(images, sleep=self.sleep)
        task = GenerationTask(task_id='task-1', status=TaskStatus.SUCCEEDED)

        await poller.poll(task)

        assert images.polls == []

    async def test_before_request_runs_for_every_call(self):
        """Test that the throttle hook precedes create and each poll."""
        calls = []

        async def throttle():
            calls.append('token')

        images = ScriptedImages(statuses=['running', 'succeeded'])
        poller = TaskPoller(images, max_attempts=5, sleep=self.sleep, before_request=throttle)

        await poller.wait(await poller.create('a lighthouse'))

        assert calls == ['token'] * 3

    def test_invalid_max_attempts(self):
        """Test that a poller needs at least one check."""
        with pytest.raises(ValueError):
            TaskPoller(ScriptedImages(), max_attempts=0)

    async def test_abort_stops_waiting_between_checks(self):
        """Test that an abort during the interval ends the wait with the task in progress."""
        images = ScriptedImages(statuses=['running'])
        sleep = StalledSleep()
        abort = asyncio.Event()
        poller = TaskPoller(images, interval=30.0, max_attempts=5, sleep=sleep, abort=abort)
        asyncio.get_running_loop().call_later(0.05, abort.set)

        task = await asyncio.wait_for(poller.wait(await poller.create('a lighthouse')), 5)

        assert task.status == TaskStatus.POLLING
        assert task.attempts == 1
        assert sleep.delays == [30.0]

    async def test_already_aborted_wait_makes_no_check(self):
        """Test that a wait started after an abort does not call the provider."""
        images = ScriptedImages(statuses=['running'])
        abort = asyncio.Event()
        abort.set()
        poller = TaskPoller(images, sleep=self.sleep, abort=abort)

        task = await poller.wait(GenerationTask(task_id='task-9'))

        assert task.status == TaskStatus.CREATED
        assert images.polls == []


class TestSleepUnlessAborted:
    """Test abortable waits."""

    async def test_full_sleep_without_abort_event(self):
        """Test that no abort event means a plain sleep."""
        sleep = RecordingSleep()

        assert await sleep_unless_aborted(sleep, 3.0) is True
        assert sleep.delays == [3.0]

    async def test_full_sleep_when_not_aborted(self):
        """Test that an unset event lets the sleep finish."""
        sleep = RecordingSleep()

        assert await sleep_unless_aborted(sleep, 2.0, asyncio.Event()) is True
        assert sleep.delays == [2.0]

    async def test_set_event_skips_sleep(self):
        """Test that nothing sleeps once the abort is already set."""
        sleep = RecordingSleep()
        abort = asyncio.Event()
        abort.set()

        assert await sleep_unless_aborted(sleep, 2.0, abort) is False
        assert sleep.delays == []

    async def test_abort_interrupts_long_sleep(self):
        """Test that setting the event wakes a sleeper that would never finish."""
        sleep = StalledSleep()
        abort = asyncio.Event()
        asyncio.get_running_loop().call_later(0.05, abort.set)

        result = await asyncio.wait_for(sleep_unless_aborted(sleep, 3600.0, abort), 5)

        assert result is False
        assert sleep.delays == [3600.0]

    async def test_sleep_errors_propagate(self):
        """Test that a failing sleep is not mistaken for an abort."""

        async def broken_sleep(seconds):
            raise RuntimeError('clock gone')

        with pytest.raises(RuntimeError):
            await sleep_unless_aborted(broken_sleep, 1.0, asyncio.Event())
