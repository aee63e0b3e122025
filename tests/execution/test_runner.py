import pytest

from imagecache.errors import BuildTimeoutError, CommandError
from imagecache.execution.runner import CommandRunner
from imagecache.utils.polling import Deadline


def test_run_captures_output():
    result = CommandRunner().run(["echo", "hello"], check=True)
    assert result.returncode == 0
    assert result.stdout == "hello\n"


def test_check_raises_command_error():
    with pytest.raises(CommandError) as ei:
        CommandRunner().run(["sh", "-c", "echo nope >&2; exit 3"], check=True)
    assert ei.value.returncode == 3
    assert "nope" in str(ei.value)


def test_missing_binary_is_exit_127():
    with pytest.raises(CommandError) as ei:
        CommandRunner().run(["imagecache-no-such-binary"])
    assert ei.value.returncode == 127


def test_hung_command_is_killed_at_the_deadline():
    runner = CommandRunner(deadline=Deadline(0.5))
    with pytest.raises(BuildTimeoutError) as ei:
        runner.run(["sleep", "30"])
    assert "sleep 30" in str(ei.value)


def test_expired_deadline_runs_nothing(tmp_path):
    clock = iter([0.0, 120.0, 120.0])
    runner = CommandRunner(deadline=Deadline(60, clock=lambda: next(clock)))
    marker = tmp_path / "ran"
    with pytest.raises(BuildTimeoutError):
        runner.run(["touch", str(marker)])
    assert not marker.exists()


def test_secrets_are_redacted_in_logs(caplog):
    caplog.set_level("DEBUG", logger="imagecache")
    CommandRunner().run(["true", "user:hunter2"], redact=["hunter2"])
    assert "hunter2" not in caplog.text
    assert "user:***" in caplog.text
