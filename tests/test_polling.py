import pytest

from src.common.errors import CommandError, ReadinessTimeoutError
from src.common.polling import FatalProbeError, NotReady, attempts_for, poll_until, retry_call


def test_attempts_derived_from_timeout() -> None:
    assert attempts_for(300, 5) == 60
    assert attempts_for(1, 5) == 1


def test_poll_until_returns_after_transient_failures() -> None:
    calls = []
    sleeps = []

    def probe() -> str:
        calls.append(1)
        if len(calls) < 3:
            raise NotReady("not yet")
        return "done"

    assert poll_until(probe, description="thing", timeout=50, interval=5, sleep=sleeps.append) == "done"
    assert len(calls) == 3
    assert sleeps == [5, 5]


def test_poll_until_times_out_with_last_error() -> None:
    def probe() -> None:
        raise CommandError(["kubectl", "get", "nodes"], 1, "refused")

    with pytest.raises(ReadinessTimeoutError) as excinfo:
        poll_until(probe, description="nodes ready", timeout=20, interval=5, sleep=lambda _: None)
    assert excinfo.value.attempts == 4
    assert "refused" in str(excinfo.value)


def test_poll_until_stops_on_fatal() -> None:
    calls = []

    def probe() -> None:
        calls.append(1)
        raise FatalProbeError("gone")

    with pytest.raises(FatalProbeError):
        poll_until(probe, description="x", timeout=60, interval=5, sleep=lambda _: None)
    assert len(calls) == 1


def test_retry_call_runs_cleanup_between_attempts() -> None:
    attempts = []
    cleanups = []

    def flaky() -> int:
        attempts.append(1)
        if len(attempts) < 3:
            raise RuntimeError("flaky")
        return 7

    result = retry_call(flaky, attempts=3, backoff=10, description="create", on_failure=cleanups.append, sleep=lambda _: None)
    assert result == 7
    assert len(cleanups) == 2


def test_retry_call_reraises_after_exhaustion() -> None:
    def broken() -> None:
        raise RuntimeError("nope")

    with pytest.raises(RuntimeError):
        retry_call(broken, attempts=2, backoff=0, description="create", sleep=lambda _: None)
