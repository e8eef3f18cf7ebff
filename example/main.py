import asyncio
from pathlib import Path

from processing_server import ProcessingServer
from media_job_client.errors import JobTimeoutError, MediaJobError
from media_job_client.job_client import JobClient
from media_job_client.progress import CallbackProgressSink
from media_job_client.settings import ClientSettings


def status_changed(snapshot):
    print(f"Status: {snapshot.state.value} {snapshot.progress_percent:.0f}% ({snapshot.progress_stage})")


async def main():
    PORT = 8000
    server = ProcessingServer(completion_time=20.0, error_rate=0.1, api_key="demo-key")
    await server.start(port=PORT)
    print(f"Server started on http://localhost:{PORT}")

    video = Path("test.mp4")
    if not video.exists():
        video.write_bytes(b"dummy content")

    settings = ClientSettings(
        api_key="demo-key",
        api_url=f"http://localhost:{PORT}",
        poll_interval=2.0,
        poll_timeout=60.0,
    )

    try:
        async with JobClient.connect(settings, progress_sink=CallbackProgressSink(status_changed)) as client:
            results = await client.run(video, {"shorts": True, "subtitle": True})
        print(f"Workflow finished! {results}")
    except JobTimeoutError as e:
        print(f"Polling timed out: {e}")
    except MediaJobError as e:
        print(f"Error occurred: {e}")
    finally:
        await server.stop()


if __name__ == "__main__":
    asyncio.run(main())
