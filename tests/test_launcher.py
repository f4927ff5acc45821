"""
Tests for launching the monitored process and detecting readiness.

The monitored process is a short Python script run with ``-u`` so every
print reaches the pipe immediately.
"""

import asyncio
import sys

import pytest

from coverage_harness.launcher import launch, write_pid_file
from coverage_harness.error_handling import LaunchFailure, ProcessExitedBeforeReady


def script_args(source):
    return ['-u', '-c', source]


LONG_RUNNING = 'import time\n{before}\nwhile True:\n    time.sleep(0.05)\n'


def long_running(before):
    return script_args(LONG_RUNNING.format(before=before))


class TestReadiness:
    """The ready continuation fires once, after the first matching line."""

    def test_ready_after_delayed_output(self, tmp_path):
        pid_file = tmp_path / 'child.pid'

        async def scenario():
            loop = asyncio.get_running_loop()
            ready_at = []
            started = loop.time()
            handle = await launch(
                sys.executable,
                long_running('time.sleep(0.2)\nprint("Server started on port 8080", flush=True)'),
                'Server started',
                lambda line: ready_at.append((loop.time(), line)),
                pid_file=str(pid_file),
            )
            try:
                line = await handle.wait_ready(timeout=5)
                await asyncio.sleep(0)
            finally:
                handle.terminate()
                await handle.close()
            return handle, line, ready_at, started

        handle, line, ready_at, started = asyncio.run(scenario())

        assert line == 'Server started on port 8080'
        assert len(ready_at) == 1
        assert ready_at[0][0] - started < 1.0
        assert ready_at[0][1] == 'Server started on port 8080'
        assert handle.pid_file_written is True
        assert pid_file.read_text() == f'{handle.pid}\n'

    def test_ready_fires_once_for_repeated_matches(self):
        async def scenario():
            calls = []
            handle = await launch(
                sys.executable,
                script_args('for _ in range(3):\n    print("Server started")\n'),
                'Server started',
                calls.append,
            )
            await handle.wait()
            await asyncio.sleep(0)
            return handle, calls

        handle, calls = asyncio.run(scenario())

        assert calls == ['Server started']
        assert handle.returncode == 0

    def test_line_split_across_writes(self):
        source = (
            'import sys, time\n'
            'sys.stdout.write("Server sta"); sys.stdout.flush()\n'
            'time.sleep(0.1)\n'
            'sys.stdout.write("rted\\n"); sys.stdout.flush()\n'
        )

        async def scenario():
            calls = []
            handle = await launch(sys.executable, script_args(source), '^Server started$', calls.append)
            await handle.wait()
            await asyncio.sleep(0)
            return calls

        assert asyncio.run(scenario()) == ['Server started']

    def test_pattern_matches_trimmed_line(self):
        async def scenario():
            handle = await launch(sys.executable,
                                  script_args('print("   Server started   ")'),
                                  '^Server started$')
            line = await handle.wait_ready(timeout=5)
            await handle.wait()
            return line

        assert asyncio.run(scenario()).strip() == 'Server started'

    def test_wait_ready_timeout(self):
        async def scenario():
            handle = await launch(sys.executable, long_running('print("booting")'), 'Server started')
            try:
                with pytest.raises(asyncio.TimeoutError):
                    await handle.wait_ready(timeout=0.2)
            finally:
                handle.terminate()
                await handle.close()

        asyncio.run(scenario())


class TestExitBeforeReady:
    """A process that ends without matching is reported, never ready."""

    def test_exit_code_reported(self):
        async def scenario():
            calls = []
            handle = await launch(sys.executable,
                                  script_args('import sys\nprint("booting")\nsys.exit(3)'),
                                  'Server started', calls.append)
            with pytest.raises(ProcessExitedBeforeReady) as exc_info:
                await handle.wait_ready(timeout=5)
            await handle.wait()
            return calls, exc_info.value

        calls, error = asyncio.run(scenario())

        assert calls == []
        assert error.returncode == 3
        assert 'exited with code 3' in str(error)

    def test_stderr_is_not_matched(self):
        source = 'import sys\nsys.stderr.write("Server started\\n")\n'

        async def scenario():
            calls = []
            handle = await launch(sys.executable, script_args(source), 'Server started', calls.append)
            with pytest.raises(ProcessExitedBeforeReady):
                await handle.wait_ready(timeout=5)
            await handle.wait()
            return calls

        assert asyncio.run(scenario()) == []

    def test_terminated_before_ready(self):
        async def scenario():
            calls = []
            handle = await launch(sys.executable, long_running('pass'), 'Server started', calls.append)
            await asyncio.sleep(0.1)
            handle.terminate()
            await handle.wait()
            await asyncio.sleep(0)
            return calls, handle

        calls, handle = asyncio.run(scenario())

        assert calls == []
        assert handle.returncode != 0
        assert isinstance(handle.ready.exception(), ProcessExitedBeforeReady)


class TestLaunchFailure:
    """Spawn errors surface as LaunchFailure with the OS error attached."""

    def test_missing_executable(self, tmp_path):
        missing = str(tmp_path / 'no-such-binary')

        with pytest.raises(LaunchFailure) as exc_info:
            asyncio.run(launch(missing, ['run'], 'ready'))

        assert isinstance(exc_info.value.os_error, FileNotFoundError)
        assert exc_info.value.command == missing
        assert exc_info.value.args_list == ['run']

    def test_non_executable_file(self, tmp_path):
        script = tmp_path / 'server.sh'
        script.write_text('#!/bin/sh\necho ready\n')
        script.chmod(0o644)

        with pytest.raises(LaunchFailure) as exc_info:
            asyncio.run(launch(str(script), [], 'ready'))

        assert isinstance(exc_info.value.os_error, PermissionError)


class TestPidFile:
    """Recording the pid never stops the run."""

    def test_write_pid_file(self, tmp_path):
        pid_file = tmp_path / 'child.pid'

        assert write_pid_file(4242, str(pid_file)) is True
        assert pid_file.read_text() == '4242\n'

    def test_write_pid_file_failure_returns_none(self, tmp_path):
        pid_file = tmp_path / 'missing-dir' / 'child.pid'

        assert write_pid_file(4242, str(pid_file)) is None
        assert not pid_file.exists()

    def test_unwritable_pid_file_is_not_fatal(self, tmp_path):
        pid_file = tmp_path / 'missing-dir' / 'child.pid'

        async def scenario():
            handle = await launch(sys.executable, script_args('print("Server started")'),
                                  'Server started', pid_file=str(pid_file))
            line = await handle.wait_ready(timeout=5)
            await handle.wait()
            return handle, line

        handle, line = asyncio.run(scenario())

        assert line == 'Server started'
        assert handle.pid_file_written is False
        assert not pid_file.exists()


class TestOversizedOutput:
    """Lines longer than the stream limit never stall the readers."""

    def test_long_line_then_exit(self):
        source = 'import sys\nsys.stdout.write("x" * (2 * 1024 * 1024) + "\\n")\n'

        async def scenario():
            calls = []
            handle = await launch(sys.executable, script_args(source), 'Server started', calls.append)
            with pytest.raises(ProcessExitedBeforeReady) as exc_info:
                await handle.wait_ready(timeout=10)
            await handle.wait()
            return calls, exc_info.value

        calls, error = asyncio.run(scenario())

        assert calls == []
        assert error.returncode == 0

    def test_ready_line_after_long_line(self):
        source = (
            'import sys\n'
            'sys.stdout.write("x" * (2 * 1024 * 1024) + "\\n")\n'
            'print("Server started")\n'
        )

        async def scenario():
            handle = await launch(sys.executable, script_args(source), '^Server started$')
            line = await handle.wait_ready(timeout=10)
            await handle.wait()
            return line

        assert asyncio.run(scenario()) == 'Server started'

    def test_long_line_tail_is_not_matched(self):
        source = 'print("x" * (2 * 1024 * 1024) + "Server started")\n'

        async def scenario():
            handle = await launch(sys.executable, script_args(source), 'Server started')
            with pytest.raises(ProcessExitedBeforeReady):
                await handle.wait_ready(timeout=10)
            await handle.wait()

        asyncio.run(scenario())

    def test_long_stderr_line_does_not_block_the_process(self):
        source = (
            'import sys\n'
            'sys.stderr.write("e" * (2 * 1024 * 1024) + "\\n")\n'
            'sys.stderr.flush()\n'
            'print("Server started")\n'
        )

        async def scenario():
            handle = await launch(sys.executable, script_args(source), 'Server started')
            line = await handle.wait_ready(timeout=10)
            returncode = await handle.wait()
            return line, returncode

        assert asyncio.run(scenario()) == ('Server started', 0)
