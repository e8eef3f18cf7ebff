import asyncio
from pathlib import Path
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from aiohttp.test_utils import unused_port
from processing_server import ProcessingServer
from media_job_client.api_session import ApiSession
from media_job_client.errors import (
    FetchError,
    JobFailedError,
    JobTimeoutError,
    ProtocolError,
    TransientError,
    UploadError,
)
from media_job_client.job_client import JobClient
from media_job_client.models import JobState, PollResult
from media_job_client.progress import CallbackProgressSink
from media_job_client.settings import ClientSettings
from media_job_client.status_source import HttpStatusSource
from media_job_client.transfers import HttpResultsFetcher, HttpUploader

BASE_URL_TEMPLATE = "http://localhost:{}"
API_KEY = "test-key"
NON_UTF8_BODY = b"{\"data\": \"\xff\xfe\"}"


@pytest_asyncio.fixture
async def server() -> AsyncGenerator[tuple, None]:
    """Start and yield a test ProcessingServer instance on a free port."""
    port = unused_port()
    server_instance = ProcessingServer(completion_time=0.3, error_rate=0.0, api_key=API_KEY)
    await server_instance.start(port=port)
    try:
        yield server_instance, port
    finally:
        await server_instance.stop()


@pytest.fixture
def video_file(tmp_path):
    path = tmp_path / "clip.mp4"
    path.write_bytes(b"\x00\x00\x00\x18ftypmp42" + b"\x00" * 64)
    return path


def make_settings(port: int, **overrides) -> ClientSettings:
    values = dict(
        api_key=API_KEY,
        api_url=BASE_URL_TEMPLATE.format(port),
        poll_interval=0.05,
        poll_timeout=10.0,
        request_timeout=5.0,
    )
    values.update(overrides)
    return ClientSettings(_env_file=None, **values)


@pytest.mark.asyncio
async def test_successful_completion(server, video_file):
    """Upload, poll to completion and fetch results over HTTP."""
    snapshots = []
    server_instance, port = server

    async with JobClient.connect(
        make_settings(port), progress_sink=CallbackProgressSink(snapshots.append)
    ) as client:
        results = await client.run(video_file, {"shorts": True, "subtitle": True})

    assert results["mainVideo"]["url"].endswith("/clip.mp4")
    assert [s["filename"] for s in results["shorts"]] == ["clip_short_1.mp4", "clip_short_2.mp4"]
    assert results["subtitles"]["url"].endswith("/clip.srt")
    assert snapshots[0].state == JobState.running
    assert snapshots[-1].state == JobState.completed
    assert server_instance.results_requests == 1


@pytest.mark.asyncio
async def test_configuration_string_is_passed_through(server, video_file):
    server_instance, port = server

    async with ApiSession(BASE_URL_TEMPLATE.format(port), API_KEY) as session:
        job_id = await HttpUploader(session).submit(video_file, '{"shorts": false}')

    assert server_instance.projects[job_id]["configuration"] == {"shorts": False}
    assert server_instance.projects[job_id]["filename"] == "clip.mp4"


@pytest.mark.asyncio
async def test_job_failure_skips_results(server, video_file):
    """A Failed status surfaces the server's message and never fetches results."""
    server_instance, port = server
    server_instance.fail_with = "decode error"

    async with JobClient.connect(make_settings(port)) as client:
        with pytest.raises(JobFailedError) as exc_info:
            await client.run(video_file)

    assert str(exc_info.value) == "decode error"
    assert server_instance.results_requests == 0


@pytest.mark.asyncio
async def test_transient_errors_are_absorbed(server, video_file):
    """Flaky status responses delay completion but never surface."""
    server_instance, port = server
    server_instance.error_rate = 0.5

    async with JobClient.connect(make_settings(port, poll_interval=0.02)) as client:
        results = await client.run(video_file)

    assert "mainVideo" in results


@pytest.mark.asyncio
async def test_timeout_scenario(server, video_file):
    """Test timeout handling."""
    server_instance, port = server
    server_instance.completion_time = 30.0

    async with JobClient.connect(make_settings(port, poll_timeout=0.5)) as client:
        with pytest.raises(JobTimeoutError):
            await client.run(video_file)


@pytest.mark.asyncio
async def test_unparsable_status_exhausts_budget(server, video_file):
    server_instance, port = server
    server_instance.override_response = (200, b"<html>maintenance</html>")

    async with JobClient.connect(make_settings(port, poll_interval=0.01, max_protocol_errors=3)) as client:
        with pytest.raises(ProtocolError):
            await client.run(video_file)

    assert server_instance.status_requests == 3


@pytest.mark.asyncio
async def test_bad_api_key_rejects_upload(server, video_file):
    server_instance, port = server

    async with JobClient.connect(make_settings(port, api_key="wrong")) as client:
        with pytest.raises(UploadError) as exc_info:
            await client.run(video_file)

    assert exc_info.value.server_payload == {"error": {"message": "Invalid API key"}}
    assert server_instance.projects == {}


@pytest.mark.asyncio
async def test_missing_file_fails_before_request(server, tmp_path):
    server_instance, port = server

    async with JobClient.connect(make_settings(port)) as client:
        with pytest.raises(UploadError, match="file not found"):
            await client.run(tmp_path / "missing.mp4")


@pytest.mark.asyncio
async def test_unreadable_file_raises_upload_error(server, video_file, monkeypatch):
    server_instance, port = server

    def deny(self, *args, **kwargs):
        raise PermissionError(13, "Permission denied", str(self))

    monkeypatch.setattr(Path, "open", deny)

    async with JobClient.connect(make_settings(port)) as client:
        with pytest.raises(UploadError, match="could not read") as exc_info:
            await client.run(video_file)

    assert isinstance(exc_info.value.__cause__, PermissionError)
    assert server_instance.projects == {}


@pytest.mark.asyncio
async def test_non_utf8_status_body_is_protocol_error(server, video_file):
    server_instance, port = server

    async with ApiSession(BASE_URL_TEMPLATE.format(port), API_KEY) as session:
        job_id = await HttpUploader(session).submit(video_file)
        server_instance.override_response = (200, NON_UTF8_BODY)
        with pytest.raises(ProtocolError):
            await HttpStatusSource(session).fetch(job_id)


@pytest.mark.asyncio
async def test_non_utf8_error_body_is_absorbed_while_polling(server, video_file):
    """A 503 with an undecodable body is a transient fault, not the end of polling."""
    server_instance, port = server

    async with JobClient.connect(make_settings(port, poll_interval=0.01, max_poll_attempts=3)) as client:
        job_id = await client.uploader.submit(video_file)
        server_instance.override_response = (503, NON_UTF8_BODY)
        outcome = await client.wait_for_job(job_id)

    assert outcome.result == PollResult.timed_out
    assert outcome.attempts == 3
    assert server_instance.status_requests == 3


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [200, 503])
async def test_non_utf8_results_body_raises_fetch_error(server, video_file, status):
    server_instance, port = server

    async with ApiSession(BASE_URL_TEMPLATE.format(port), API_KEY) as session:
        job_id = await HttpUploader(session).submit(video_file)
        server_instance.override_response = (status, NON_UTF8_BODY)
        with pytest.raises(FetchError):
            await HttpResultsFetcher(session).fetch(job_id)


@pytest.mark.asyncio
async def test_status_source_maps_http_errors(server):
    server_instance, port = server

    async with ApiSession(BASE_URL_TEMPLATE.format(port), API_KEY) as session:
        with pytest.raises(TransientError) as exc_info:
            await HttpStatusSource(session).fetch("no-such-project")

    assert exc_info.value.status == 404


@pytest.mark.asyncio
async def test_results_for_unfinished_job_raise_fetch_error(server, video_file):
    server_instance, port = server
    server_instance.completion_time = 30.0

    async with ApiSession(BASE_URL_TEMPLATE.format(port), API_KEY) as session:
        job_id = await HttpUploader(session).submit(video_file)
        with pytest.raises(FetchError) as exc_info:
            await HttpResultsFetcher(session).fetch(job_id)

    assert exc_info.value.server_payload == {"error": {"message": "Results not available"}}


@pytest.mark.asyncio
async def test_server_unavailable(video_file):
    """Test behavior when server is not available."""
    settings = make_settings(unused_port())

    async with JobClient.connect(settings) as client:
        with pytest.raises(UploadError):
            await client.run(video_file)


@pytest.mark.asyncio
async def test_polling_survives_unreachable_status_endpoint():
    """Connection errors during polling are retried until the deadline."""
    async with ApiSession(BASE_URL_TEMPLATE.format(unused_port()), API_KEY) as session:
        client = JobClient(
            HttpUploader(session),
            HttpStatusSource(session),
            HttpResultsFetcher(session),
            config=make_settings(0, poll_interval=0.02, poll_timeout=0.3).polling_config(),
        )
        outcome = await client.wait_for_job("proj-offline")

    assert outcome.result == PollResult.timed_out
    assert outcome.attempts > 1


@pytest.mark.asyncio
async def test_multiple_clients(server, tmp_path):
    """Test multiple jobs polled simultaneously over one session."""
    server_instance, port = server
    paths = []
    for i in range(3):
        path = tmp_path / f"video_{i}.mp4"
        path.write_bytes(b"data")
        paths.append(path)

    async with JobClient.connect(make_settings(port)) as client:
        results = await asyncio.gather(*[client.run(path) for path in paths])

    assert sorted(r["mainVideo"]["url"].rsplit("/", 1)[1] for r in results) == [
        "video_0.mp4",
        "video_1.mp4",
        "video_2.mp4",
    ]
    assert len(server_instance.projects) == 3
