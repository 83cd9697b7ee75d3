"""Tests for the process registry."""

import subprocess
import sys

import pytest

from video_archiver.core.registry import ProcessRegistry, terminate_process


@pytest.fixture
def sleeper():
    process = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])
    yield process
    if process.poll() is None:
        process.kill()
        process.wait()


class TestProcessRegistry:
    """Tests for ProcessRegistry."""

    def test_register_and_unregister(self, sleeper):
        registry = ProcessRegistry()
        registry.register("a", sleeper)

        assert registry.get("a") is sleeper
        assert registry.active_ids() == ["a"]
        assert len(registry) == 1

        registry.unregister("a")
        registry.unregister("a")
        assert len(registry) == 0

    def test_terminate_marks_cancelled(self, sleeper):
        registry = ProcessRegistry()
        registry.register("a", sleeper)

        assert registry.terminate("a") is True
        assert sleeper.poll() is not None
        assert registry.consume_cancelled("a") is True
        assert registry.consume_cancelled("a") is False

    def test_terminate_unknown_item(self):
        registry = ProcessRegistry()
        assert registry.terminate("missing") is False

    def test_terminate_unknown_item_leaves_no_mark(self):
        registry = ProcessRegistry()
        for n in range(10):
            registry.terminate(f"elsewhere-{n}")

        assert registry._cancelled == set()
        assert registry.consume_cancelled("elsewhere-0") is False

    def test_register_clears_stale_cancellation(self, sleeper):
        registry = ProcessRegistry()
        registry.terminate("a")
        registry.register("a", sleeper)

        assert registry.consume_cancelled("a") is False

    def test_terminate_all_is_not_a_cancellation(self, sleeper):
        registry = ProcessRegistry()
        registry.register("a", sleeper)

        assert registry.terminate_all() == 1
        assert sleeper.poll() is not None
        assert registry.consume_cancelled("a") is False


class TestTerminateProcess:
    """Tests for terminate_process helper."""

    def test_already_exited(self):
        process = subprocess.Popen([sys.executable, "-c", "pass"])
        process.wait()
        terminate_process(process)
        assert process.returncode == 0

    def test_terminates_running_process(self, sleeper):
        terminate_process(sleeper, grace_period=5.0)
        assert sleeper.poll() is not None
