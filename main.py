"""
Main entry point for the dlqueue application.

This script parses the command line, initializes the configuration, sets up
logging, and runs the download controller on the asyncio event loop.
"""

import sys
import logging
import asyncio
import argparse
from types import TracebackType
from typing import Any, Dict, List, Optional, Type

from dlqueue._version import __version__
from dlqueue.logging_config import setup_logging
from dlqueue.config import ConfigManager, Settings
from dlqueue.constants import CONFIG_FILE
from dlqueue.controller import AppController

def handle_exception(exc_type: Type[BaseException], exc_value: BaseException, exc_traceback: TracebackType):
    """Logs unhandled exceptions from synchronous code."""
    logger = logging.getLogger()
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return
    logger.critical("Unhandled exception:", exc_info=(exc_type, exc_value, exc_traceback))

def handle_async_exception(loop, context):
    """Logs unhandled exceptions from asyncio tasks."""
    logger = logging.getLogger()
    msg = context.get("exception", context["message"])
    logger.critical(f"Caught exception from asyncio task: {msg}")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog='dlqueue',
        description="Queue and download media with yt-dlp, several at a time."
    )
    parser.add_argument('urls', nargs='*', help="Media or playlist URLs to download.")
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    parser.add_argument('-a', '--audio', action='store_true', help="Download audio only.")
    parser.add_argument('-f', '--format', dest='format_selector', help="yt-dlp format id or selector.")
    parser.add_argument('--audio-format', help="Audio format id or selector to pair with the video.")
    parser.add_argument('--start-time', help="Start of the section to download (e.g. 1:30).")
    parser.add_argument('--end-time', help="End of the section to download.")
    parser.add_argument('-o', '--output', help="Destination directory (defaults to the configured download path).")
    parser.add_argument('-t', '--template', help="Filename template for this run.")
    parser.add_argument('-j', '--max-concurrent', type=int, help="Maximum simultaneous downloads; saved to the config.")
    parser.add_argument('-p', '--playlist', action='store_true', help="Treat the URLs as playlists or channels.")
    parser.add_argument('--start', type=int, help="First playlist entry to download (1-based).")
    parser.add_argument('--end', type=int, help="Last playlist entry to download (1-based).")
    parser.add_argument('--no-restore', action='store_true', help="Do not resume downloads left from the last run.")
    parser.add_argument('--log-level', help="File log level (overrides the config).")
    return parser.parse_args(argv)


def build_request_fields(args: argparse.Namespace) -> Dict[str, Any]:
    """Maps command line options onto `JobRequest` fields."""
    fields: Dict[str, Any] = {'type': 'audio' if args.audio else 'video'}
    if args.format_selector:
        fields['format'] = args.format_selector
    if args.audio_format:
        fields['audio_format'] = args.audio_format
    if args.start_time:
        fields['start_time'] = args.start_time
    if args.end_time:
        fields['end_time'] = args.end_time
    if args.output:
        fields['custom_download_path'] = args.output
    if args.template:
        fields['custom_filename_template'] = args.template
    return fields


async def run(config_manager: ConfigManager, config: Settings, args: argparse.Namespace) -> int:
    """Runs one CLI session on the current loop; returns the process exit code."""
    try:
        loop = asyncio.get_running_loop()
        loop.set_exception_handler(handle_async_exception)
    except RuntimeError:
        logging.error("Could not get running loop to set exception handler.")

    # The controller's asyncio primitives must belong to the running loop
    controller = AppController(config_manager, config)

    try:
        if not await controller.run_startup_checks(restore_session=not args.no_restore):
            return 1

        if args.max_concurrent is not None:
            success, message = controller.save_settings({'max_concurrent_downloads': args.max_concurrent})
            if not success:
                logging.error(message)
                return 2

        if args.playlist:
            for url in args.urls:
                await controller.start_playlist(
                    url,
                    media_type='audio' if args.audio else 'video',
                    format_selector=args.format_selector,
                    start_index=args.start,
                    end_index=args.end,
                    custom_download_path=args.output
                )
        elif args.urls:
            accepted = controller.start_downloads(args.urls, build_request_fields(args))
            logging.info(f"Queued {len(accepted)} of {len(args.urls)} URL(s).")

        await controller.wait_until_idle()
    finally:
        await controller.on_app_closing()

    return 1 if controller.failed_ids else 0


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    # 1. Load configuration before setting up logging
    config_manager = ConfigManager(CONFIG_FILE)
    config = config_manager.load()

    # 2. Use the configured log level for file logging
    setup_logging(args.log_level or config.log_level)

    # 3. Set up global exception handlers
    sys.excepthook = handle_exception

    try:
        return asyncio.run(run(config_manager, config, args))
    except KeyboardInterrupt:
        logging.info("Application interrupted by user.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
