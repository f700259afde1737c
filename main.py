"""Collaborative Sync Core Entry Point.

Command-line entry point for the sync core. It loads configuration, sets up
logging, builds the dispatcher and the resource URL cache, and runs one
command against the collaboration server.
"""

import sys
import json
import argparse
import logging
import asyncio
from logging.handlers import RotatingFileHandler
from pathlib import Path

import yaml

from config.config_manager import ConfigManager
from core.dispatcher import HybridDispatcher, create_dispatcher
from core.error_handler import SyncCoreError, get_error_handler
from core.feature_flags import FeatureFlags
from core.proxy_url import build_thumbnail_url
from core.resource_api import HttpResourceResolver
from core.resource_cache import ResourceLocationCache
from core.streaming_channel import StreamingChannel
from models.operations import OperationBatch
from models.resources import ResourceCoordinates, Variant


def setup_logging(log_level: str, log_path: Path, max_bytes: int = 10485760, backup_count: int = 5):
    """
    Configure logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_path: Path to log file
        max_bytes: Size at which the log file rotates
        backup_count: Number of rotated files kept
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)

    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            RotatingFileHandler(log_path, maxBytes=max_bytes, backupCount=backup_count, encoding='utf-8'),
            logging.StreamHandler(sys.stderr)
        ]
    )

    logger = logging.getLogger(__name__)
    logger.info(f"Logging initialized at level {log_level}")
    logger.info(f"Log file: {log_path}")


def parse_arguments(argv=None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        description='Collaborative sync core - operation transport and media URL resolution',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Send a batch of operations described in a YAML or JSON file
  python main.py push batch.yaml

  # Pull operations recorded after version 41
  python main.py pull project-1 --since 41

  # Resolve the optimized variant of a media resource
  python main.py resolve team-1 project-1 entity-7 portrait --variant optimized

  # Build a thumbnail proxy URL
  python main.py thumbnail-url team-1 project-1 entity-7 portrait --path a/b/thumb_17.webp
        """
    )

    parser.add_argument('--config', type=str, default=None, metavar='PATH',
                        help='Path to configuration file')
    parser.add_argument('--log-level', type=str, default=None,
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        help='Override logging level from config')
    parser.add_argument('--no-streaming', action='store_true',
                        help='Do not open the streaming connection')

    subparsers = parser.add_subparsers(dest='command', required=True)

    push = subparsers.add_parser('push', help='Send an operation batch')
    push.add_argument('batch_file', type=str, help='YAML or JSON file with the batch')

    pull = subparsers.add_parser('pull', help='Pull operations since a version')
    pull.add_argument('project_id', type=str)
    pull.add_argument('--since', type=int, default=0)

    for name, help_text in (('resolve', 'Resolve a media access URL'),
                            ('thumbnail-url', 'Build a thumbnail proxy URL')):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument('owner_id')
        sub.add_argument('container_id')
        sub.add_argument('resource_id')
        sub.add_argument('slot_id')
        if name == 'resolve':
            sub.add_argument('--variant', choices=[v.value for v in Variant], default='optimized')
        else:
            sub.add_argument('--path', type=str, default=None, help='Storage path of the thumbnail')
            sub.add_argument('--token', type=str, default=None)

    subparsers.add_parser('flags', help='Show feature flags')

    return parser.parse_args(argv)


def load_batch(path: Path) -> OperationBatch:
    """Load an operation batch from a YAML or JSON file."""
    with open(path, 'r', encoding='utf-8') as f:
        if path.suffix == '.json':
            data = json.load(f)
        else:
            data = yaml.safe_load(f)
    return OperationBatch.from_dict(data)


async def open_dispatcher(config_manager: ConfigManager, flags: FeatureFlags, use_streaming: bool) -> HybridDispatcher:
    """
    Build the dispatcher and try to open the streaming connection.

    A failed connection is logged and the dispatcher keeps working on the
    persistent channel alone.
    """
    logger = logging.getLogger(__name__)
    transport = config_manager.get_transport_config()

    streaming = None
    if use_streaming:
        streaming = StreamingChannel(send_timeout=transport.streaming_send_timeout)
        try:
            await streaming.connect(transport.streaming_host, transport.streaming_port, timeout=5.0)
        except SyncCoreError as e:
            logger.warning(f"Streaming connection unavailable, using persistent channel only: {e}")
            streaming = None

    dispatcher = create_dispatcher(
        transport.api_base_url,
        flags,
        streaming_channel=streaming,
        request_timeout=transport.request_timeout
    )
    if not transport.prefer_streaming:
        dispatcher.set_streaming_preference(False)
    return dispatcher


async def close_dispatcher(dispatcher: HybridDispatcher) -> None:
    if isinstance(dispatcher.streaming_channel, StreamingChannel):
        await dispatcher.streaming_channel.disconnect()
    await dispatcher.persistent_channel.aclose()


async def run_command(args: argparse.Namespace, config_manager: ConfigManager, flags: FeatureFlags) -> int:
    """
    Run the selected command.

    Returns:
        Process exit code
    """
    if args.command == 'flags':
        print(json.dumps(flags.get_all_flags(), indent=2))
        return 0

    if args.command == 'thumbnail-url':
        coords = ResourceCoordinates(args.owner_id, args.container_id, args.resource_id, args.slot_id)
        proxy = config_manager.get_proxy_config()
        print(build_thumbnail_url(proxy.base_url, coords, storage_path=args.path, token=args.token))
        return 0

    if args.command == 'resolve':
        transport = config_manager.get_transport_config()
        cache_config = config_manager.get_cache_config()
        resolver = HttpResourceResolver(transport.api_base_url, timeout=transport.request_timeout)
        cache = ResourceLocationCache(
            resolver,
            ttl=cache_config.ttl_seconds,
            eviction_interval=cache_config.eviction_interval
        )
        coords = ResourceCoordinates(args.owner_id, args.container_id, args.resource_id, args.slot_id)
        try:
            async with cache:
                print(await cache.resolve_one(coords, Variant(args.variant)))
        finally:
            await resolver.aclose()
        return 0

    dispatcher = await open_dispatcher(config_manager, flags, use_streaming=not args.no_streaming)
    try:
        if args.command == 'push':
            result = await dispatcher.send_operations(load_batch(Path(args.batch_file)))
        else:
            result = await dispatcher.get_operations(args.project_id, args.since)
        output = result.to_dict()
        output['transport'] = result.transport
        output['fallbackReason'] = result.fallback_reason
        print(json.dumps(output, indent=2))
        return 0 if result.success else 1
    finally:
        await close_dispatcher(dispatcher)


def main(argv=None) -> int:
    """
    Main entry point.

    Loads configuration, sets up logging and runs one command.
    """
    args = parse_arguments(argv)

    config_path = Path(args.config) if args.config else None
    config_manager = ConfigManager(config_path)

    logging_config = config_manager.get_logging_config()
    if args.log_level:
        logging_config.level = args.log_level

    log_path = config_manager.expand_path(logging_config.log_path)
    setup_logging(
        logging_config.level,
        log_path,
        max_bytes=logging_config.max_log_size,
        backup_count=logging_config.backup_count
    )

    logger = logging.getLogger(__name__)
    flags = FeatureFlags.from_config(config_manager.get_config('feature_flags'))

    try:
        return asyncio.run(run_command(args, config_manager, flags))
    except SyncCoreError as e:
        get_error_handler().handle_error(e, args.command, show_notification=False)
        print(f"error: {e}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130


if __name__ == '__main__':
    sys.exit(main())
