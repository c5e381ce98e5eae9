"""
Unit tests for the ChatStream facade.

Tests send/resume/disconnect against the scripted backend:
- Submission outcomes (success, quota, busy, unauthenticated)
- Cancel-and-replace between concurrent loops
- Background resume and the duplicate-observer guard
- Busy auto-retry, active job resume, subscriptions, close
"""

import asyncio

import httpx
import pytest

from chatstream.core.exceptions import (
    DailyLimitExceededError,
    NetworkError,
    ServerBusyError,
)
from chatstream.models import ModelConfig
from chatstream.services.chat_stream import ChatStream
from fakes import chunk, complete, poll


async def wait_until(predicate, timeout=1.0):
    """Yield to the loop until predicate() holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


def gated(gate, result):
    """Poll script item that blocks until the gate opens."""

    async def respond(request):
        await gate.wait()
        return result

    return respond


# ===== send_message Tests =====


class TestSendMessage:
    """Test submit then poll"""

    @pytest.mark.asyncio
    async def test_send_streams_to_completion(self, stream, backend):
        """Test a successful send ends with the full response"""
        backend.on_submit({"job_id": "job_1", "session_id": "sess_1"})
        backend.on_poll(
            "job_1",
            poll([chunk("1", "Apple ")], last_id="1"),
            poll(
                [chunk("2", "grew"), complete("3", full_response="Apple grew 8%")],
                last_id="3",
                status="completed",
            ),
        )
        streaming_seen = []
        stream.subscribe(lambda state: streaming_seen.append(state.is_streaming))

        await stream.send_message(
            "Compare AAPL and MSFT revenue growth",
            ModelConfig(model="claude-sonnet-4-5-20250929"),
        )

        assert stream.state.response == "Apple grew 8%"
        assert stream.state.current_job.job_id == "job_1"
        assert stream.state.error is None
        assert stream.is_streaming is False
        assert streaming_seen[0] is True
        assert streaming_seen[-1] is False

    @pytest.mark.asyncio
    async def test_send_resets_previous_response(self, stream, backend):
        """Test a new send starts from an empty response"""
        backend.on_submit({"job_id": "job_2", "session_id": "sess_1"})
        backend.on_poll(
            "job_2",
            poll([complete("1", full_response="new")], last_id="1", status="completed"),
        )
        stream.state.response = "old answer"
        stream.state.visualization = {"t": "old"}

        await stream.send_message("next question", session_id="sess_1")

        assert stream.state.response == "new"
        assert stream.state.visualization is None

    @pytest.mark.asyncio
    async def test_daily_limit(self, stream, backend):
        """Test 429 records a message naming the limit and stops streaming"""
        backend.on_submit(httpx.Response(429, json={"error": "limit"}))

        with pytest.raises(DailyLimitExceededError):
            await stream.send_message("hi")

        assert "5" in stream.state.error
        assert stream.is_streaming is False
        assert backend.poll_requests() == []

    @pytest.mark.asyncio
    async def test_server_busy_is_flagged(self, stream, backend):
        """Test 503 surfaces an error flagged as server busy"""
        backend.on_submit(httpx.Response(503, json={"code": "SERVER_BUSY"}))

        with pytest.raises(ServerBusyError) as exc_info:
            await stream.send_message("hi")

        assert exc_info.value.is_server_busy is True
        assert stream.state.error == ServerBusyError().message
        assert stream.is_streaming is False

    @pytest.mark.asyncio
    async def test_unauthenticated_submit(self, stream, backend, navigations):
        """Test 401 on submit navigates to login without an error"""
        backend.on_submit(httpx.Response(401))

        await stream.send_message("hi")

        assert navigations == ["/"]
        assert stream.state.error is None
        assert stream.is_streaming is False

    @pytest.mark.asyncio
    async def test_polling_failure_recorded(self, stream, backend):
        """Test a failed job leaves the error and stops streaming"""
        backend.on_submit({"job_id": "job_1", "session_id": "sess_1"})
        backend.on_poll("job_1", httpx.Response(500))

        with pytest.raises(NetworkError):
            await stream.send_message("hi")

        assert stream.state.error == "Polling error: 500"
        assert stream.is_streaming is False


# ===== Disconnect / Supersession Tests =====


class TestCancelAndReplace:
    """Test only the newest loop mutates state"""

    @pytest.mark.asyncio
    async def test_disconnect_during_sleep(self, settings, stream, backend):
        """Test disconnect ends a sleeping loop without further mutation"""
        settings.poll_interval_seconds = 10
        backend.on_submit({"job_id": "job_1", "session_id": "sess_1"})
        backend.on_poll("job_1", poll([chunk("1", "never")], last_id="1"))

        task = asyncio.create_task(stream.send_message("hi"))
        await wait_until(lambda: stream.state.current_job is not None)

        stream.disconnect()
        await asyncio.wait_for(task, timeout=1.0)

        assert stream.state.response == ""
        assert stream.state.error is None
        assert stream.is_streaming is False
        assert backend.poll_requests() == []

    @pytest.mark.asyncio
    async def test_disconnect_aborts_inflight_poll(self, stream, backend):
        """Test disconnect cancels the pending request"""
        gate = asyncio.Event()
        backend.on_submit({"job_id": "job_1", "session_id": "sess_1"})
        backend.on_poll("job_1", gated(gate, poll([chunk("1", "late")], last_id="1")))

        task = asyncio.create_task(stream.send_message("hi"))
        await wait_until(lambda: len(backend.poll_requests("job_1")) == 1)

        stream.disconnect()
        await asyncio.wait_for(task, timeout=1.0)
        gate.set()

        assert stream.state.response == ""
        assert stream.is_streaming is False

    @pytest.mark.asyncio
    async def test_newer_loop_supersedes_older(self, stream, backend):
        """Test a stale loop never applies its pending response"""
        gate = asyncio.Event()
        backend.on_poll(
            "job_1", gated(gate, poll([chunk("1", "STALE")], last_id="1"))
        )
        backend.on_poll(
            "job_2",
            poll([complete("1", full_response="fresh")], last_id="1", status="completed"),
        )

        first = asyncio.create_task(stream.poller.poll_for_events("job_1"))
        await wait_until(lambda: len(backend.poll_requests("job_1")) == 1)

        await stream.poller.poll_for_events("job_2")
        gate.set()
        await asyncio.wait_for(first, timeout=1.0)

        assert stream.state.response == "fresh"
        assert "STALE" not in stream.state.response
        assert len(backend.poll_requests("job_1")) == 1

    @pytest.mark.asyncio
    async def test_resend_while_streaming(self, stream, backend):
        """Test sending again replaces the running stream"""
        gate = asyncio.Event()
        backend.on_submit(
            {"job_id": "job_1", "session_id": "sess_1"},
            {"job_id": "job_2", "session_id": "sess_1"},
        )
        backend.on_poll("job_1", gated(gate, poll([chunk("1", "old")], last_id="1")))
        backend.on_poll(
            "job_2",
            poll([complete("1", full_response="second")], last_id="1", status="completed"),
        )

        first = asyncio.create_task(stream.send_message("first"))
        await wait_until(lambda: len(backend.poll_requests("job_1")) == 1)

        await stream.send_message("second", session_id="sess_1")
        gate.set()
        await asyncio.wait_for(first, timeout=1.0)

        assert stream.state.response == "second"
        assert stream.state.current_job.job_id == "job_2"
        assert stream.is_streaming is False


# ===== resume_polling Tests =====


class TestResumePolling:
    """Test background resume"""

    @pytest.mark.asyncio
    async def test_resume_runs_in_background(self, stream, backend):
        """Test resume returns a task that streams the job"""
        backend.on_poll(
            "job_7",
            poll([complete("4", full_response="resumed")], last_id="4", status="completed"),
        )

        task = stream.resume_polling("job_7", "sess_7")
        assert stream.is_streaming is True

        await task

        assert stream.state.response == "resumed"
        assert stream.is_streaming is False
        assert stream.background_task is task

    @pytest.mark.asyncio
    async def test_resume_guard(self, settings, stream, backend):
        """Test a second resume while polling starts nothing"""
        settings.poll_interval_seconds = 10
        backend.on_poll("job_7", poll([], last_id="0"))

        task = stream.resume_polling("job_7")

        assert task is not None
        assert stream.resume_polling("job_7") is None
        assert stream.controller.generation == 1

        stream.disconnect()
        await asyncio.wait_for(task, timeout=1.0)

    @pytest.mark.asyncio
    async def test_resume_records_failure(self, stream, backend):
        """Test resume failures end in the state and in the task"""
        backend.on_poll("job_7", httpx.Response(500))

        task = stream.resume_polling("job_7")

        with pytest.raises(NetworkError):
            await task
        assert stream.state.error == "Polling error: 500"
        assert stream.is_streaming is False

    @pytest.mark.asyncio
    async def test_resume_falls_back_with_known_session(self, stream, backend):
        """Test session passed to resume is used for history recovery"""
        backend.on_poll("job_7", poll([], last_id="3", status="completed"))
        backend.on_history(
            {"data": {"messages": [{"role": "assistant", "content": "from history"}]}}
        )

        await stream.resume_polling("job_7", "sess_7")

        assert stream.state.response == "from history"
        assert backend.requests[-1].url.path == "/api/chat/history/sess_7"


# ===== send_message_with_retry Tests =====


class TestServerBusyRetry:
    """Test automatic resubmission while the server is busy"""

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self, stream, backend):
        """Test busy responses are retried and the flag is cleared"""
        backend.on_submit(
            httpx.Response(503),
            {"job_id": "job_1", "session_id": "sess_1"},
        )
        backend.on_poll(
            "job_1",
            poll([complete("1", full_response="ok")], last_id="1", status="completed"),
        )
        busy_seen = []
        stream.subscribe(lambda state: busy_seen.append(state.server_busy))

        await stream.send_message_with_retry("hi")

        assert len(backend.submit_requests()) == 2
        assert True in busy_seen
        assert stream.state.server_busy is False
        assert stream.state.error is None
        assert stream.state.response == "ok"

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self, stream, backend):
        """Test the busy error surfaces once retries are exhausted"""
        backend.on_submit(httpx.Response(503))

        with pytest.raises(ServerBusyError):
            await stream.send_message_with_retry("hi")

        assert len(backend.submit_requests()) == 3
        assert stream.state.server_busy is False
        assert stream.state.error == ServerBusyError().message

    @pytest.mark.asyncio
    async def test_other_errors_not_retried(self, stream, backend):
        """Test quota errors are raised immediately"""
        backend.on_submit(httpx.Response(429))

        with pytest.raises(DailyLimitExceededError):
            await stream.send_message_with_retry("hi")

        assert len(backend.submit_requests()) == 1

    @pytest.mark.asyncio
    async def test_busy_not_reported_as_error_while_retrying(self, stream, backend):
        """Test listeners only see the busy indicator during a pending retry"""
        backend.on_submit(
            httpx.Response(503),
            {"job_id": "job_1", "session_id": "sess_1"},
        )
        backend.on_poll(
            "job_1",
            poll([complete("1", full_response="ok")], last_id="1", status="completed"),
        )
        errors_seen = []
        stream.subscribe(lambda state: errors_seen.append(state.error))

        await stream.send_message_with_retry("hi")

        assert errors_seen
        assert ServerBusyError().message not in errors_seen

    @pytest.mark.asyncio
    async def test_close_during_retry_wait(self, settings, stream, backend):
        """Test closing the stream stops a pending retry"""
        settings.server_busy_retry_delay_seconds = 10
        backend.on_submit(
            httpx.Response(503),
            {"job_id": "job_1", "session_id": "sess_1"},
        )
        backend.on_poll(
            "job_1",
            poll([complete("1", full_response="late")], last_id="1", status="completed"),
        )

        task = asyncio.create_task(stream.send_message_with_retry("hi"))
        await wait_until(lambda: stream.state.server_busy)

        await stream.close()
        await asyncio.wait_for(task, timeout=1.0)

        assert len(backend.submit_requests()) == 1
        assert backend.poll_requests() == []
        assert stream.state.response == ""
        assert stream.state.server_busy is False

    @pytest.mark.asyncio
    async def test_disconnect_during_retry_wait(self, settings, stream, backend):
        """Test disconnecting stops a pending retry and clears the indicator"""
        settings.server_busy_retry_delay_seconds = 10
        backend.on_submit(
            httpx.Response(503),
            {"job_id": "job_1", "session_id": "sess_1"},
        )

        task = asyncio.create_task(stream.send_message_with_retry("hi"))
        await wait_until(lambda: stream.state.server_busy)

        stream.disconnect()
        await asyncio.wait_for(task, timeout=1.0)

        assert len(backend.submit_requests()) == 1
        assert stream.state.server_busy is False
        assert stream.state.error is None
        assert stream.is_streaming is False


# ===== resume_active_job Tests =====


class TestResumeActiveJob:
    """Test resuming the user's running job"""

    @pytest.mark.asyncio
    async def test_resumes_first_active_job(self, stream, backend):
        """Test the first active job is observed"""
        backend.on_active({"jobs": [{"job_id": "job_3", "session_id": "sess_3"}]})
        backend.on_poll(
            "job_3",
            poll([complete("2", full_response="still here")], last_id="2", status="completed"),
        )

        job = await stream.resume_active_job()
        await stream.background_task

        assert job.job_id == "job_3"
        assert stream.state.current_job.session_id == "sess_3"
        assert stream.state.response == "still here"

    @pytest.mark.asyncio
    async def test_skipped_while_loop_active(self, settings, stream, backend):
        """Test a running loop keeps its job as the current one"""
        settings.poll_interval_seconds = 10
        backend.on_poll("job_A", poll([], last_id="0"))
        backend.on_active({"jobs": [{"job_id": "job_B", "session_id": "sess_B"}]})
        running = stream.resume_polling("job_A")

        assert await stream.resume_active_job() is None
        assert stream.state.current_job is None
        assert stream.background_task is running
        assert stream.controller.generation == 1

        stream.disconnect()
        await asyncio.wait_for(running, timeout=1.0)
        assert backend.poll_requests("job_B") == []

    @pytest.mark.asyncio
    async def test_no_active_jobs(self, stream, backend):
        """Test nothing starts without active jobs"""
        backend.on_active({"jobs": []})

        assert await stream.resume_active_job() is None
        assert stream.controller.generation == 0

    @pytest.mark.asyncio
    async def test_listing_failure(self, stream, backend):
        """Test listing errors are logged and yield None"""
        backend.on_active(httpx.Response(500))

        assert await stream.resume_active_job() is None
        assert stream.state.error is None

    @pytest.mark.asyncio
    async def test_listing_unauthenticated(self, stream, backend, navigations):
        """Test 401 navigates to login"""
        backend.on_active(httpx.Response(401))

        assert await stream.resume_active_job() is None
        assert navigations == ["/"]


# ===== Subscription / Lifecycle Tests =====


class TestLifecycle:
    """Test subscriptions and close"""

    @pytest.mark.asyncio
    async def test_unsubscribe(self, stream):
        """Test unsubscribed listeners are no longer called"""
        calls = []
        unsubscribe = stream.subscribe(lambda state: calls.append(state.error))

        stream.disconnect()
        unsubscribe()
        stream.disconnect()

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_failing_listener_isolated(self, stream):
        """Test a raising listener does not break others"""
        calls = []

        def broken(state):
            raise RuntimeError("render failed")

        stream.subscribe(broken)
        stream.subscribe(lambda state: calls.append(True))

        stream.disconnect()

        assert calls == [True]

    @pytest.mark.asyncio
    async def test_close_stops_and_resets(self, settings, stream, backend):
        """Test close stops polling and clears state"""
        settings.poll_interval_seconds = 10
        backend.on_poll("job_1", poll([], last_id="0"))
        task = stream.resume_polling("job_1")
        stream.state.response = "partial"

        await stream.close()
        await asyncio.wait_for(task, timeout=1.0)

        assert stream.controller.polling is False
        assert stream.state.response == ""
        assert stream.is_streaming is False
        assert stream._listeners == []

    @pytest.mark.asyncio
    async def test_context_manager_closes(self, settings):
        """Test leaving the context closes the stream"""
        async with ChatStream(settings) as stream:
            await stream.api._get_client()

        assert stream.api._client is None
        assert stream.controller.cancelled is True
