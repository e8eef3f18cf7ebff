import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Optional, Sequence

from loguru import logger
from pydantic import ValidationError
from rich.console import Console

from media_job_client.errors import MediaJobError
from media_job_client.job_client import JobClient
from media_job_client.logging_config import configure_logging
from media_job_client.progress import ConsoleProgressSink, NullProgressSink
from media_job_client.settings import ClientSettings
from media_job_client.transfers import Configuration

console = Console()


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="media-job",
        description="Upload a media file, wait for processing to finish and print the results.",
    )
    p.add_argument("file", nargs="?", default="example_video.mp4", help="Path to the media file to upload.")
    p.add_argument(
        "--config",
        default=None,
        help="Processing configuration as JSON text or a path to a JSON file (e.g. '{\"shorts\": true}').",
    )
    p.add_argument("--no-progress", action="store_true", help="Do not render a progress bar.")
    p.add_argument("--poll-interval", type=float, default=None, help="Seconds between status requests.")
    p.add_argument("--timeout", type=float, default=None, help="Give up after this many seconds of polling.")
    p.add_argument("--log-level", default=None, help="Log level (default from SHORTCUT_LOG_LEVEL or INFO).")
    return p


def load_configuration(value: Optional[str]) -> Optional[Configuration]:
    if value is None:
        return None
    path = Path(value)
    text = path.read_text(encoding="utf-8") if path.is_file() else value
    parsed = json.loads(text)
    if not isinstance(parsed, dict):
        raise ValueError("configuration JSON must be an object")
    return parsed


def format_results(results: Any) -> str:
    lines = ["", "=" * 50, "RESULTS", "=" * 50]
    if isinstance(results, dict):
        main_video = results.get("mainVideo")
        if main_video:
            lines.append(f"\nMain Video: {main_video.get('url')}")

        shorts = results.get("shorts") or []
        if shorts:
            lines.append(f"\nShorts ({len(shorts)} generated):")
            lines.extend(f"- {short.get('filename')}: {short.get('url')}" for short in shorts)

        subtitles = results.get("subtitles")
        if subtitles:
            lines.append(f"\nSubtitles: {subtitles.get('url')}")
    else:
        lines.append(f"\n{results}")
    lines.extend(["", "=" * 50])
    return "\n".join(lines)


async def process_file(
    settings: ClientSettings,
    file_path: Path,
    configuration: Optional[Configuration] = None,
    show_progress: bool = True,
) -> Any:
    sink = ConsoleProgressSink(console) if show_progress else NullProgressSink()
    async with JobClient.connect(settings, progress_sink=sink) as client:
        return await client.run(file_path, configuration)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    overrides = {}
    if args.poll_interval is not None:
        overrides["poll_interval"] = args.poll_interval
    if args.timeout is not None:
        overrides["poll_timeout"] = args.timeout
    if args.log_level is not None:
        overrides["log_level"] = args.log_level
    try:
        settings = ClientSettings(**overrides)
    except ValidationError as e:
        configure_logging()
        logger.error(f"Invalid settings: {e}")
        return 1
    configure_logging(settings.log_level)

    if settings.api_key is None:
        logger.error("SHORTCUT_API_KEY environment variable not set.")
        logger.error("Please set your API key in a .env file or environment variable.")
        return 1

    file_path = Path(args.file)
    if not file_path.is_file():
        logger.error(f"File not found at {file_path}")
        logger.error("Usage: media-job <path_to_video_file>")
        return 1

    try:
        configuration = load_configuration(args.config)
    except (OSError, ValueError) as e:
        logger.error(f"Invalid --config: {e}")
        return 1

    try:
        results = asyncio.run(process_file(settings, file_path, configuration, not args.no_progress))
    except MediaJobError as e:
        logger.error(f"{type(e).__name__}: {e.message}")
        if e.server_payload is not None:
            logger.error(f"Server response: {json.dumps(e.server_payload, default=str)}")
        return 1
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return 130

    console.print(format_results(results), markup=False, highlight=False)
    return 0


if __name__ == "__main__":
    sys.exit(main())
