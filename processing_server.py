import json
import random
import uuid
from datetime import datetime
from typing import Optional

from aiohttp import web
from loguru import logger


class ProcessingServer:
    """Local stand-in for the media-processing API.

    Each uploaded project runs for `completion_time` seconds, then reports
    Completed, or Failed with `fail_with` as the error message. A fraction
    `error_rate` of status requests answer 503 to simulate a flaky network.
    """

    def __init__(
        self,
        completion_time: float = 10.0,
        error_rate: float = 0.1,
        fail_with: Optional[str] = None,
        api_key: Optional[str] = None,
    ):
        self.completion_time = completion_time
        self.error_rate = error_rate
        self.fail_with = fail_with
        self.api_key = api_key
        # (status, raw body bytes) served by the status and results endpoints when set
        self.override_response = None
        self.projects = {}
        self.status_requests = 0
        self.results_requests = 0
        self.app = web.Application(middlewares=[self.check_api_key])
        self.app.router.add_post("/api/v1/projects/upload", self.handle_upload)
        self.app.router.add_get("/api/v1/projects/{project_id}/status", self.handle_status)
        self.app.router.add_get("/api/v1/projects/{project_id}/results", self.handle_results)
        self.runner = None
        self.logger = logger

    @web.middleware
    async def check_api_key(self, request, handler):
        if self.api_key is not None and request.headers.get("X-API-Key") != self.api_key:
            self.logger.info("Rejecting request with bad API key")
            return web.json_response({"error": {"message": "Invalid API key"}}, status=401)
        return await handler(request)

    async def handle_upload(self, request):
        reader = await request.multipart()
        filename = None
        size = 0
        configuration = None
        async for part in reader:
            if part.name == "file":
                filename = part.filename
                size = len(await part.read())
            elif part.name == "configuration":
                configuration = json.loads(await part.text())

        if filename is None:
            return web.json_response({"error": {"message": "No file provided"}}, status=400)

        project_id = f"proj-{uuid.uuid4().hex[:8]}"
        self.projects[project_id] = {
            "filename": filename,
            "size": size,
            "configuration": configuration,
            "start_time": datetime.now(),
        }
        self.logger.info(f"Created project {project_id} for {filename} ({size} bytes)")
        return web.json_response({"data": {"projectId": project_id}})

    async def handle_status(self, request):
        self.status_requests += 1
        project = self.projects.get(request.match_info["project_id"])
        if project is None:
            return web.json_response({"error": {"message": "Project not found"}}, status=404)

        if random.random() < self.error_rate:
            self.logger.info("Returning transient error")
            return web.json_response({"error": {"message": "Service unavailable"}}, status=503)

        if self.override_response is not None:
            return self._raw_response()

        elapsed = (datetime.now() - project["start_time"]).total_seconds()
        if elapsed >= self.completion_time:
            if self.fail_with is not None:
                self.logger.info("Returning failed status")
                return web.json_response(
                    {"data": {"status": "Failed", "error": {"message": self.fail_with}}}
                )
            self.logger.info("Returning completed status")
            return web.json_response(
                {"data": {"status": "Completed", "progress": {"percentage": 100, "stage": "Done"}}}
            )

        percentage = int(elapsed / self.completion_time * 100)
        self.logger.info(f"Returning running status (elapsed: {elapsed:.1f}s)")
        return web.json_response(
            {"data": {"status": "Running", "progress": {"percentage": percentage, "stage": "Encoding"}}}
        )

    async def handle_results(self, request):
        self.results_requests += 1
        if self.override_response is not None:
            return self._raw_response()

        project_id = request.match_info["project_id"]
        project = self.projects.get(project_id)
        if project is None:
            return web.json_response({"error": {"message": "Project not found"}}, status=404)

        elapsed = (datetime.now() - project["start_time"]).total_seconds()
        if elapsed < self.completion_time or self.fail_with is not None:
            return web.json_response({"error": {"message": "Results not available"}}, status=409)

        configuration = project["configuration"] or {}
        stem = project["filename"].rsplit(".", 1)[0]
        base = f"https://cdn.example.test/{project_id}"
        shorts = []
        if configuration.get("shorts"):
            shorts = [{"filename": f"{stem}_short_{i}.mp4", "url": f"{base}/short_{i}.mp4"} for i in (1, 2)]
        subtitles = {"url": f"{base}/{stem}.srt"} if configuration.get("subtitle") else None
        return web.json_response(
            {
                "data": {
                    "mainVideo": {"url": f"{base}/{project['filename']}"},
                    "shorts": shorts,
                    "subtitles": subtitles,
                }
            }
        )

    def _raw_response(self):
        status, body = self.override_response
        return web.Response(status=status, body=body, content_type="application/json")

    async def start(self, port: int = 8080):
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, "localhost", port)
        await site.start()
        self.logger.info(f"Server started on port {port}")
        return site

    async def stop(self):
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None
