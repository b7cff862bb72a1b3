"""
Main entry point for the media relay service.

Wires configuration, sinks, relay components and the HTTP server together.
"""

import asyncio
import signal
import sys
from typing import Dict, List, Optional

import aiohttp
import click

from .relay.mover import MoveOperator, create_move_operator
from .relay.orchestrator import RelayOrchestrator, create_orchestrator
from .relay.origin import DEFAULT_URL_TEMPLATE, OriginClient
from .relay.raw_upload import RawUploader, create_raw_uploader
from .server.app import RelayServer
from .state.models import Partition
from .storage import ObjectSink, TokenCache, create_partition_sinks
from .utils.config import Config, load_config
from .utils.exceptions import ConfigurationError, RelayError
from .utils.logger import get_logger, setup_from_config


logger = None  # Initialize after config


class Service:
    """
    Relay service lifecycle.

    Owns the shared HTTP session and token cache, builds every sink once and
    hands them to the orchestrator, move operator and raw uploader.
    """

    def __init__(self, config: Config):
        """
        Initialize service with configuration.

        Args:
            config: Service configuration
        """
        self.config = config

        global logger
        setup_from_config(config.get_logging_config(), secrets=config.get_secrets())
        logger = get_logger(__name__)

        self.session: Optional[aiohttp.ClientSession] = None
        self.token_cache = TokenCache(
            validity_margin=config.get_token_config().get('cache_seconds', 50 * 60)
        )
        self.sinks: Dict[Partition, List[ObjectSink]] = {}
        self.orchestrator: Optional[RelayOrchestrator] = None
        self.mover: Optional[MoveOperator] = None
        self.raw_uploader: Optional[RawUploader] = None
        self.server: Optional[RelayServer] = None

        self._running = False

    def _setup_signals(self) -> None:
        """Set up signal handlers for graceful shutdown."""
        def signal_handler(signum, frame):
            signame = signal.Signals(signum).name
            logger.info(f"Received {signame}, shutting down gracefully...")
            self._running = False

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    async def build(self) -> None:
        """Create the HTTP session, sinks and relay components."""
        origin_config = self.config.get_origin_config()
        timeout = aiohttp.ClientTimeout(
            total=None,
            sock_connect=origin_config.get('connect_timeout', 30),
            sock_read=origin_config.get('read_timeout', 300)
        )
        self.session = aiohttp.ClientSession(timeout=timeout)

        self.sinks = create_partition_sinks(self.config, self.session, self.token_cache)
        for partition, sinks in self.sinks.items():
            logger.info(f"Partition '{partition.value}': {', '.join(str(s.descriptor) for s in sinks)}")

        self.orchestrator = create_orchestrator(
            self.sinks,
            queue_size=self.config.get('relay.queue_size', 8)
        )
        self.mover = create_move_operator(self.sinks, self.config.get_move_config())
        self.raw_uploader = create_raw_uploader(self.orchestrator, self.config)

        origin = OriginClient(
            self.session,
            url_template=origin_config.get('url_template', DEFAULT_URL_TEMPLATE),
            chunk_size=self.config.get('relay.chunk_size', 64 * 1024)
        )
        self.server = RelayServer(
            self.config,
            self.orchestrator,
            origin,
            self.mover,
            self.raw_uploader
        )

    async def prepare_sinks(self) -> bool:
        """
        Run every sink's startup check.

        Returns:
            True if all sinks are usable
        """
        ok = True
        for sink in (s for sinks in self.sinks.values() for s in sinks):
            try:
                await sink.prepare()
                logger.info(f"Sink {sink.name} ready")
            except (RelayError, aiohttp.ClientError, OSError) as e:
                logger.error(f"Sink {sink.name} not usable: {e}")
                ok = False
        return ok

    async def close(self) -> None:
        """Stop the server and release the HTTP session."""
        if self.server:
            await self.server.stop()

        if self.session:
            await self.session.close()
            self.session = None

        logger.info("Service stopped")

    async def check(self) -> bool:
        """Build everything, run the sink checks and shut down."""
        await self.build()
        try:
            return await self.prepare_sinks()
        finally:
            await self.close()

    async def run(self) -> None:
        """Main run loop."""
        await self.build()

        if self.config.get('startup.prepare_sinks', True):
            await self.prepare_sinks()

        self._setup_signals()
        await self.server.start()
        self._running = True

        try:
            # Main loop - just wait for shutdown signal
            while self._running:
                await asyncio.sleep(1)
        finally:
            await self.close()


@click.command()
@click.option(
    '--config', '-c',
    default='config.yaml',
    help='Path to configuration file'
)
@click.option(
    '--check',
    is_flag=True,
    help='Check every storage sink and exit'
)
def main(config: str, check: bool):
    """
    Media relay service

    Copies videos from the content origin into durable object storage.
    """
    # Missing credentials abort startup
    try:
        cfg = load_config(config)
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)

    service = Service(cfg)

    if check:
        success = asyncio.run(service.check())
        sys.exit(0 if success else 1)

    try:
        asyncio.run(service.run())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.exception(f"Service error: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
