"""
HTTP API of the media relay service.

Routes relay, raw upload, HLS and move requests to the relay components and
maps their errors onto HTTP statuses.
"""

import hmac
import json
from typing import Optional

import aiohttp
from aiohttp import web

from ..relay.mover import MoveOperator
from ..relay.orchestrator import RelayOrchestrator
from ..relay.origin import OriginClient
from ..relay.raw_upload import RawUploader
from ..state.models import (
    Partition,
    RelayRequest,
    parse_flag,
    parse_metadata,
    video_key,
)
from ..utils.config import Config
from ..utils.exceptions import (
    AuthError,
    MoveError,
    ObjectNotFoundError,
    OriginFetchError,
    RelayError,
    RelayFailedError,
    RequestValidationError,
    RetryExhaustedError,
    SinkError,
)
from ..utils.logger import get_logger


logger = get_logger(__name__)


INTERNAL_ERROR = "Internal server error. Check server logs."
STORAGE_ERROR = "Storage operation failed. Check server logs."


def error_response(error: Exception) -> web.Response:
    """
    Map an error onto a status and a short message.

    Details stay in the log; callers only ever see the generic message.
    """
    if isinstance(error, RequestValidationError):
        status, message = 400, str(error)
    elif isinstance(error, OriginFetchError):
        if error.status == 404:
            status, message = 404, "The video doesn't exist on the origin"
        else:
            status, message = 400, "The video couldn't be fetched from the origin. Check server logs."
    elif isinstance(error, ObjectNotFoundError):
        status, message = 404, "Object not found in source storage"
    elif isinstance(error, (RelayFailedError, MoveError, RetryExhaustedError, SinkError)):
        status, message = 500, STORAGE_ERROR
    else:
        status, message = 500, INTERNAL_ERROR

    return web.json_response({'message': message}, status=status)


class RelayServer:
    """
    Async HTTP server for the relay API.

    All routes but /health require the shared-secret bearer token.
    """

    PUBLIC_PATHS = frozenset({'/health'})

    def __init__(
        self,
        config: Config,
        orchestrator: RelayOrchestrator,
        origin: OriginClient,
        mover: MoveOperator,
        raw_uploader: RawUploader
    ):
        """
        Initialize relay server.

        Args:
            config: Service configuration
            orchestrator: Relay orchestrator
            origin: Content origin client
            mover: Move operator
            raw_uploader: Two-phase raw uploader
        """
        self.config = config
        self.orchestrator = orchestrator
        self.origin = origin
        self.mover = mover
        self.raw_uploader = raw_uploader

        server_config = config.get_server_config()
        self.host = server_config.get('host', '0.0.0.0')
        self.port = server_config.get('port', 3000)
        self.chunk_size = config.get('relay.chunk_size', 64 * 1024)

        self._expected_auth = f"Bearer {config.service_token}"

        # Server state
        self._app: Optional[web.Application] = None
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    def create_app(self) -> web.Application:
        """Create the aiohttp application."""
        app = web.Application(middlewares=[self._error_middleware, self._auth_middleware])

        app.router.add_get('/health', self._handle_health)
        app.router.add_post('/duplicate', self._handle_duplicate)
        app.router.add_post('/duplicate_raw/upload', self._handle_raw_upload)
        app.router.add_post('/duplicate_raw/finalize', self._handle_raw_finalize)
        app.router.add_post('/hls/duplicate', self._handle_hls_duplicate)
        app.router.add_post('/move-to-nsfw', self._handle_move_to_nsfw)

        return app

    @web.middleware
    async def _error_middleware(self, request: web.Request, handler):
        """Turn relay errors into JSON responses."""
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except (RelayError, aiohttp.ClientError, OSError) as e:
            if isinstance(e, (RequestValidationError, OriginFetchError, ObjectNotFoundError)):
                logger.warning(f"{request.method} {request.path}: {e}")
            elif isinstance(e, AuthError):
                logger.error(f"{request.method} {request.path}: storage authentication failed: {e}")
            else:
                logger.error(f"{request.method} {request.path}: {type(e).__name__}: {e}")
            return error_response(e)

    @web.middleware
    async def _auth_middleware(self, request: web.Request, handler):
        """Check the shared-secret bearer token."""
        if request.path in self.PUBLIC_PATHS:
            return await handler(request)

        auth = request.headers.get('Authorization')
        if auth is None:
            return web.json_response({'message': 'Unauthorized'}, status=401)
        if not auth.isascii() or not auth.isprintable():
            return web.json_response({'message': 'Malformed Authorization header'}, status=400)
        if not hmac.compare_digest(auth, self._expected_auth):
            return web.json_response({'message': 'Unauthorized'}, status=401)

        return await handler(request)

    async def _read_json(self, request: web.Request, default=None):
        """Parse a JSON body, optionally allowing it to be empty."""
        if default is not None and not request.can_read_body:
            return default
        try:
            return await request.json()
        except ValueError as e:
            raise RequestValidationError(f"Invalid JSON body: {e}")

    def _query(self, request: web.Request, name: str) -> str:
        value = request.query.get(name)
        if not value:
            raise RequestValidationError(f"Missing query parameter '{name}'")
        if '/' in value or value in ('.', '..'):
            raise RequestValidationError(f"'{name}' must not contain path separators")
        return value

    async def _handle_health(self, request: web.Request) -> web.Response:
        """Liveness probe."""
        return web.Response(text='alive')

    async def _handle_duplicate(self, request: web.Request) -> web.Response:
        """Relay a video from the origin to the sinks of its partition."""
        relay_request = RelayRequest.from_payload(await self._read_json(request))

        async with self.origin.open(relay_request.object_id) as stream:
            await self.orchestrator.relay(relay_request, stream)

        return web.json_response({'message': 'duplicated', 'key': relay_request.object_key})

    async def _handle_raw_upload(self, request: web.Request) -> web.Response:
        """Phase one of a raw upload: store the body as a pending object."""
        owner_id = self._query(request, 'publisher_user_id')
        video_id = self._query(request, 'video_id')
        sensitive = parse_flag(request.query.get('is_nsfw'), 'is_nsfw')

        ttl_hours = self.raw_uploader.default_ttl_hours
        if 'ttl_hours' in request.query:
            try:
                ttl_hours = int(request.query['ttl_hours'])
            except ValueError:
                raise RequestValidationError("'ttl_hours' must be an integer")
            if ttl_hours < 1:
                raise RequestValidationError("'ttl_hours' must be at least 1")

        await self.raw_uploader.stage(
            owner_id,
            video_id,
            sensitive,
            request.content.iter_chunked(self.chunk_size),
            ttl_hours=ttl_hours
        )

        return web.json_response({
            'status': 'pending',
            'expires_in_hours': ttl_hours,
            'message': 'Video uploaded successfully. Call /duplicate_raw/finalize to complete the upload.'
        })

    async def _handle_raw_finalize(self, request: web.Request) -> web.Response:
        """Phase two of a raw upload: rewrite with final metadata and no TTL."""
        owner_id = self._query(request, 'publisher_user_id')
        video_id = self._query(request, 'video_id')
        sensitive = parse_flag(request.query.get('is_nsfw'), 'is_nsfw')

        body = await self._read_json(request, default={})
        if not isinstance(body, dict):
            raise RequestValidationError("Request body must be a JSON object")
        metadata = parse_metadata(body.get('metadata', {}))

        await self.raw_uploader.finalize(owner_id, video_id, sensitive, metadata)

        return web.json_response({
            'status': 'completed',
            'message': 'Video finalized successfully with metadata.'
        })

    async def _handle_hls_duplicate(self, request: web.Request) -> web.Response:
        """Store one HLS playlist or segment under <video_id>/hls/<name>."""
        video_id = self._query(request, 'video_id')
        file_name = self._query(request, 'hls_file_name')
        sensitive = parse_flag(request.query.get('is_nsfw'), 'is_nsfw')

        metadata = {}
        if 'metadata' in request.query:
            try:
                metadata = parse_metadata(json.loads(request.query['metadata']))
            except ValueError:
                raise RequestValidationError("'metadata' must be a JSON object")

        key = f"{video_id}/hls/{file_name}"
        await self.orchestrator.fan_out(
            Partition.for_sensitive(sensitive),
            key,
            metadata,
            request.content.iter_chunked(self.chunk_size)
        )

        return web.json_response({'message': 'stored', 'key': key})

    async def _handle_move_to_nsfw(self, request: web.Request) -> web.Response:
        """Move a video from the general to the restricted partition."""
        body = await self._read_json(request)
        if not isinstance(body, dict):
            raise RequestValidationError("Request body must be a JSON object")

        owner_id = body.get('publisher_user_id')
        video_id = body.get('video_id')
        for name, value in (('publisher_user_id', owner_id), ('video_id', video_id)):
            if not isinstance(value, str) or not value or '/' in value:
                raise RequestValidationError(f"'{name}' must be a non-empty string")

        key = video_key(owner_id, video_id)
        await self.mover.move(Partition.GENERAL, Partition.RESTRICTED, key)

        return web.json_response({'message': 'moved', 'key': key})

    async def start(self) -> None:
        """Start the HTTP server."""
        self._app = self.create_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()

        self._site = web.TCPSite(self._runner, self.host, self.port)
        await self._site.start()

        logger.info(f"Relay server listening on http://{self.host}:{self.port}")

    async def stop(self) -> None:
        """Stop accepting connections and shut the server down."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            self._site = None
            self._app = None
            logger.info("Relay server stopped")
