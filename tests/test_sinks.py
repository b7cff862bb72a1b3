"""
Tests for the object sinks.
"""

import io
import json
import sys
import warnings
from urllib.parse import unquote

import aiohttp
import pytest
from aiohttp import web
from botocore.exceptions import ClientError

from media_relay.storage import (
    RenterdSink,
    S3Sink,
    TokenCache,
    UplinkSink,
    content_type_for,
    create_partition_sinks,
    create_sink,
)
from media_relay.state.models import Partition, SinkKind
from media_relay.utils.config import Config
from media_relay.utils.exceptions import (
    AuthError,
    ConfigurationError,
    ObjectNotFoundError,
    SinkApiError,
    TransferToolError,
)

from conftest import chunks_of


def client_error(code, status, operation='PutObject'):
    return ClientError(
        {
            'Error': {'Code': code, 'Message': f"{code} message"},
            'ResponseMetadata': {'HTTPStatusCode': status},
        },
        operation
    )


class FakeS3Client:
    """In-memory stand-in for a boto3 S3 client."""

    def __init__(self):
        self.objects = {}
        self.put_calls = []
        self.error = None

    def put_object(self, **kwargs):
        if self.error:
            raise self.error
        self.put_calls.append(kwargs)
        self.objects[(kwargs['Bucket'], kwargs['Key'])] = kwargs['Body']

    def get_object(self, Bucket, Key):
        if (Bucket, Key) not in self.objects:
            raise client_error('NoSuchKey', 404, 'GetObject')
        return {'Body': io.BytesIO(self.objects[(Bucket, Key)])}

    def delete_object(self, Bucket, Key):
        if self.error:
            raise self.error
        self.objects.pop((Bucket, Key), None)

    def list_objects_v2(self, Bucket, MaxKeys):
        if self.error:
            raise self.error
        return {'KeyCount': 0}


class TestContentType:

    @pytest.mark.parametrize('key,expected', [
        ('u1/v1.mp4', 'video/mp4'),
        ('v1/hls/index.m3u8', 'application/vnd.apple.mpegurl'),
        ('v1/hls/seg_001.ts', 'video/mp2t'),
        ('v1/thumb.jpg', 'application/octet-stream'),
    ])
    def test_content_type_for(self, key, expected):
        assert content_type_for(key) == expected


class TestS3Sink:
    """Test the SDK-backed sink against a fake client."""

    @pytest.fixture
    def client(self):
        return FakeS3Client()

    @pytest.fixture
    def sink(self, client):
        return S3Sink('hetzner', 'videos', 'AKIA', 'SECRET', read_chunk_size=4, client=client)

    async def test_write(self, sink, client):
        """Test the whole body is sent in one put_object."""
        await sink.write('u1/v1.mp4', {'lang': 'en'}, chunks_of(b'0123456789', 3))

        call = client.put_calls[0]
        assert call['Bucket'] == 'videos'
        assert call['Key'] == 'u1/v1.mp4'
        assert call['Body'] == b'0123456789'
        assert call['ContentType'] == 'video/mp4'
        assert call['Metadata'] == {'lang': 'en'}

    async def test_read(self, sink, client):
        client.objects[('videos', 'u1/v1.mp4')] = b'0123456789'

        chunks = [chunk async for chunk in sink.read('u1/v1.mp4')]

        assert chunks == [b'0123', b'4567', b'89']

    async def test_read_missing(self, sink):
        with pytest.raises(ObjectNotFoundError):
            await sink.read_bytes('u1/missing.mp4')

    async def test_write_error_translated(self, sink, client):
        client.error = client_error('InternalError', 500)

        with pytest.raises(SinkApiError) as exc_info:
            await sink.write('u1/v1.mp4', {}, chunks_of(b'x'))

        assert exc_info.value.status == 500
        assert 'InternalError' in str(exc_info.value)

    async def test_delete(self, sink, client):
        client.objects[('videos', 'u1/v1.mp4')] = b'x'

        await sink.delete('u1/v1.mp4')

        assert client.objects == {}

    async def test_prepare_access_denied(self, sink, client):
        client.error = client_error('AccessDenied', 403, 'ListObjectsV2')

        with pytest.raises(SinkApiError) as exc_info:
            await sink.prepare()

        assert exc_info.value.status == 403

    async def test_prepare(self, sink):
        await sink.prepare()

    def test_descriptor(self, sink):
        assert sink.descriptor.kind is SinkKind.SDK
        assert sink.descriptor.destination_root == 's3://videos'
        assert 'SECRET' not in repr(sink)


FAKE_UPLINK = """#!/bin/sh
# Minimal uplink stand-in storing objects under $FAKE_UPLINK_ROOT
if [ -n "$FAKE_UPLINK_FAIL" ]; then
  echo "uplink: access denied" >&2
  exit 1
fi
cmd="$1"; shift
meta=""; expires=""; args=""
while [ $# -gt 0 ]; do
  case "$1" in
    --metadata=*) meta="${1#--metadata=}" ;;
    --interactive=*|--analytics=*|--progress=*) ;;
    --access) shift ;;
    --expires) shift; expires="$1" ;;
    *) args="$args $1" ;;
  esac
  shift
done
set -- $args
path() { echo "$FAKE_UPLINK_ROOT/${1#sj://}"; }
case "$cmd" in
  cp)
    if [ "$1" = "-" ]; then
      p=$(path "$2"); mkdir -p "$(dirname "$p")"
      cat > "$p"; printf '%s' "$meta" > "$p.meta"; printf '%s' "$expires" > "$p.expires"
    else
      p=$(path "$1")
      [ -f "$p" ] || { echo "uplink: object not found" >&2; exit 1; }
      cat "$p"
    fi ;;
  rm)
    p=$(path "$1")
    [ -f "$p" ] || { echo "uplink: object not found" >&2; exit 1; }
    rm -f "$p" "$p.meta" "$p.expires" ;;
  *)
    echo "unknown command $cmd" >&2; exit 2 ;;
esac
"""


class TestUplinkCommands:
    """Test uplink command lines."""

    @pytest.fixture
    def sink(self):
        return UplinkSink('storj', 'videos', 'grant-123')

    def test_copy_in(self, sink):
        cmd = sink.build_copy_in_command('u1/v1.mp4', {'lang': 'en', 'a': 'b'})

        assert cmd[:2] == ['uplink', 'cp']
        assert '--metadata={"a": "b", "lang": "en"}' in cmd
        assert '--expires' not in cmd
        assert cmd[-4:] == ['--access', 'grant-123', '-', 'sj://videos/u1/v1.mp4']

    def test_copy_in_with_ttl(self, sink):
        cmd = sink.build_copy_in_command('u1/v1.mp4', {}, expires=1)

        assert cmd[cmd.index('--expires') + 1] == '+1h'

    def test_copy_out(self, sink):
        cmd = sink.build_copy_out_command('u1/v1.mp4')

        assert cmd[-2:] == ['sj://videos/u1/v1.mp4', '-']

    def test_remove(self, sink):
        assert sink.build_remove_command('u1/v1.mp4') == [
            'uplink', 'rm', '--access', 'grant-123', 'sj://videos/u1/v1.mp4'
        ]

    def test_grant_masked_in_logs(self, sink):
        safe = sink._safe(sink.build_remove_command('u1/v1.mp4'))

        assert 'grant-123' not in safe
        assert '****' in safe


@pytest.mark.skipif(sys.platform == 'win32', reason="needs a POSIX shell")
class TestUplinkProcess:
    """Test the process-backed sink against a fake uplink script."""

    @pytest.fixture
    def root(self, tmp_path, monkeypatch):
        root = tmp_path / 'storj'
        root.mkdir()
        monkeypatch.setenv('FAKE_UPLINK_ROOT', str(root))
        monkeypatch.delenv('FAKE_UPLINK_FAIL', raising=False)
        return root

    @pytest.fixture
    def sink(self, tmp_path, root):
        script = tmp_path / 'uplink'
        script.write_text(FAKE_UPLINK)
        script.chmod(0o755)
        return UplinkSink('storj', 'videos', 'grant-123', binary=str(script), read_chunk_size=8)

    async def test_write_and_read(self, sink, root):
        data = bytes(range(256)) * 8

        await sink.write('u1/v1.mp4', {'lang': 'en'}, chunks_of(data, 100), expires=2)

        stored = root / 'videos' / 'u1' / 'v1.mp4'
        assert stored.read_bytes() == data
        assert json.loads((root / 'videos' / 'u1' / 'v1.mp4.meta').read_text()) == {'lang': 'en'}
        assert (root / 'videos' / 'u1' / 'v1.mp4.expires').read_text() == '+2h'
        assert await sink.read_bytes('u1/v1.mp4') == data

    async def test_read_missing(self, sink, root):
        with pytest.raises(ObjectNotFoundError):
            await sink.read_bytes('u1/missing.mp4')

    async def test_delete(self, sink, root):
        await sink.write('u1/v1.mp4', {}, chunks_of(b'data'))

        await sink.delete('u1/v1.mp4')

        assert not (root / 'videos' / 'u1' / 'v1.mp4').exists()
        with pytest.raises(ObjectNotFoundError):
            await sink.delete('u1/v1.mp4')

    async def test_write_failure(self, sink, root, monkeypatch):
        """Test a non-zero exit becomes TransferToolError."""
        monkeypatch.setenv('FAKE_UPLINK_FAIL', '1')

        with pytest.raises(TransferToolError):
            await sink.write('u1/v1.mp4', {}, chunks_of(b'data'))

    async def test_missing_binary(self):
        sink = UplinkSink('storj', 'videos', 'grant', binary='/nonexistent/uplink')

        with pytest.raises(TransferToolError):
            await sink.write('u1/v1.mp4', {}, chunks_of(b'data'))
        with pytest.raises(ConfigurationError):
            await sink.prepare()

    async def test_prepare(self, sink):
        await sink.prepare()


def make_renterd_app(state, password='sia-pass'):
    """Fake renterd exposing the auth, worker object and bus bucket routes."""
    expected = aiohttp.BasicAuth('', password).encode()

    async def auth(request):
        state['auth_calls'] += 1
        if request.headers.get('Authorization') != expected:
            return web.Response(status=401, text='wrong password')
        assert request.query['validity'] == '3600000'
        token = f"token-{state['auth_calls']}"
        state['tokens'].add(token)
        return web.json_response({'token': token})

    def authorized(request):
        return request.cookies.get('renterd_auth') in state['tokens']

    def object_id(request):
        return request.query['bucket'], unquote(request.match_info['key'])

    async def put_object(request):
        if not authorized(request):
            return web.Response(status=401)
        state['objects'][object_id(request)] = (
            await request.read(),
            json.loads(request.headers['X-Metadata']),
            request.headers['Content-Type'],
        )
        return web.Response()

    async def get_object(request):
        if not authorized(request):
            return web.Response(status=401)
        stored = state['objects'].get(object_id(request))
        if stored is None:
            return web.Response(status=404, text='object not found')
        return web.Response(body=stored[0])

    async def delete_object(request):
        if not authorized(request):
            return web.Response(status=401)
        if state['objects'].pop(object_id(request), None) is None:
            return web.Response(status=404)
        return web.Response()

    async def get_bucket(request):
        if request.match_info['name'] in state['buckets']:
            return web.json_response({'name': request.match_info['name']})
        return web.Response(status=404)

    async def create_bucket(request):
        body = await request.json()
        state['buckets'].add(body['name'])
        return web.Response()

    app = web.Application()
    app.router.add_post('/api/auth', auth)
    app.router.add_put('/api/worker/object/{key:.+}', put_object)
    app.router.add_get('/api/worker/object/{key:.+}', get_object)
    app.router.add_delete('/api/worker/object/{key:.+}', delete_object)
    app.router.add_get('/api/bus/bucket/{name}', get_bucket)
    app.router.add_post('/api/bus/buckets', create_bucket)
    return app


class TestRenterdSink:
    """Test the HTTP-backed sink against a fake renterd."""

    @pytest.fixture
    def state(self):
        return {'objects': {}, 'buckets': set(), 'tokens': set(), 'auth_calls': 0}

    @pytest.fixture
    async def renterd(self, aiohttp_server, state):
        return await aiohttp_server(make_renterd_app(state))

    @pytest.fixture
    async def session(self):
        async with aiohttp.ClientSession() as session:
            yield session

    @pytest.fixture
    def make_sink(self, renterd, session):
        def make(password='sia-pass', cache=None):
            return RenterdSink(
                'sia',
                'videos',
                str(renterd.make_url('/')),
                password,
                session,
                cache or TokenCache(),
                read_chunk_size=4,
            )
        return make

    async def test_write_read_delete(self, make_sink, state):
        """Test a round of operations authenticates once."""
        sink = make_sink()

        await sink.write('u1/v1.mp4', {'lang': 'en'}, chunks_of(b'sia-bytes'))
        assert state['objects'][('videos', 'u1/v1.mp4')] == (b'sia-bytes', {'lang': 'en'}, 'video/mp4')

        assert await sink.read_bytes('u1/v1.mp4') == b'sia-bytes'

        await sink.delete('u1/v1.mp4')
        assert state['objects'] == {}
        assert state['auth_calls'] == 1

    async def test_read_missing(self, make_sink):
        with pytest.raises(ObjectNotFoundError):
            await make_sink().read_bytes('u1/missing.mp4')

    async def test_wrong_password(self, make_sink):
        with pytest.raises(AuthError):
            await make_sink(password='nope').write('u1/v1.mp4', {}, chunks_of(b'x'))

    async def test_rejected_token_is_dropped(self, make_sink, state):
        """Test a 401 forces a new token on the next request."""
        sink = make_sink()
        await sink.write('u1/v1.mp4', {}, chunks_of(b'one'))

        state['tokens'].clear()
        with pytest.raises(SinkApiError) as exc_info:
            await sink.write('u1/v1.mp4', {}, chunks_of(b'two'))
        assert exc_info.value.status == 401

        await sink.write('u1/v1.mp4', {}, chunks_of(b'three'))
        assert state['auth_calls'] == 2
        assert state['objects'][('videos', 'u1/v1.mp4')][0] == b'three'

    async def test_prepare_creates_bucket(self, make_sink, state):
        sink = make_sink()

        await sink.prepare()
        await sink.prepare()

        assert state['buckets'] == {'videos'}

    async def test_auth_sends_explicit_header(self, renterd, session):
        """Test authentication builds the Basic header itself without deprecated client options."""
        sink = RenterdSink('sia', 'videos', str(renterd.make_url('/')), 'sia-pass', session, TokenCache())

        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter('always')
            token = await sink.authenticate()

        assert token == 'token-1'
        assert not [w for w in caught if 'BasicAuth' in str(w.message) or 'auth=' in str(w.message)]


class TestSinkFactory:
    """Test building sinks from configuration."""

    def test_create_sink_kinds(self):
        uplink = create_sink({'name': 'storj', 'kind': 'process', 'bucket': 'b', 'access_grant': 'g'})
        s3 = create_sink({
            'name': 'hetzner',
            'kind': 'sdk',
            'bucket': 'b',
            'access_key': 'k',
            'secret_key': 's',
            'endpoint_url': 'https://fsn1.your-objectstorage.com',
        })

        assert isinstance(uplink, UplinkSink)
        assert isinstance(s3, S3Sink)

    def test_http_sink_needs_session(self):
        with pytest.raises(ConfigurationError):
            create_sink({'name': 'sia', 'kind': 'http', 'bucket': 'b', 'base_url': 'http://x', 'password': 'p'})

    def test_partition_sinks(self):
        config = Config({'partitions': {
            'general': {'sinks': [
                {'name': 'a', 'kind': 'process', 'bucket': 'b', 'access_grant': 'g'},
                {'name': 'b', 'kind': 'process', 'bucket': 'b', 'access_grant': 'g'},
            ]},
            'restricted': {'sinks': [
                {'name': 'c', 'kind': 'process', 'bucket': 'r', 'access_grant': 'g'},
            ]},
        }})

        sinks = create_partition_sinks(config)

        assert [s.name for s in sinks[Partition.GENERAL]] == ['a', 'b']
        assert [s.name for s in sinks[Partition.RESTRICTED]] == ['c']

    def test_duplicate_sink_names(self):
        config = Config({'partitions': {
            'general': {'sinks': [{'name': 'a', 'kind': 'process', 'bucket': 'b', 'access_grant': 'g'}]},
            'restricted': {'sinks': [{'name': 'a', 'kind': 'process', 'bucket': 'r', 'access_grant': 'g'}]},
        }})

        with pytest.raises(ConfigurationError):
            create_partition_sinks(config)

    async def test_token_settings_reach_renterd_sinks(self):
        """Test tokens.validity_ms is the lifetime renterd sinks request."""
        config = Config({
            'partitions': {
                'general': {'sinks': [{'name': 'a', 'kind': 'process', 'bucket': 'b', 'access_grant': 'g'}]},
                'restricted': {'sinks': [
                    {'name': 'sia', 'kind': 'http', 'bucket': 'r', 'base_url': 'http://x', 'password': 'p'},
                ]},
            },
            'tokens': {'validity_ms': 60000},
        })

        async with aiohttp.ClientSession() as session:
            sinks = create_partition_sinks(config, session, TokenCache())

        assert sinks[Partition.RESTRICTED][0].token_validity_ms == 60000
