"""
Storj sink driven by the uplink CLI.

Each call spawns one uplink process; bodies are streamed through its
stdin/stdout pipes.
"""

import asyncio
import json
import shutil
from typing import AsyncIterator, List, Mapping, Optional

from ..state.models import SinkDescriptor, SinkKind
from ..utils.exceptions import ConfigurationError, ObjectNotFoundError, TransferToolError
from ..utils.logger import get_logger
from .base import ByteStream, ObjectSink


logger = get_logger(__name__)


# Flags that keep uplink quiet and non-interactive
_COMMON_FLAGS = ['--interactive=false', '--analytics=false', '--progress=false']

_NOT_FOUND_MARKERS = ('object not found',)


class UplinkSink(ObjectSink):
    """
    Process-backed sink writing to sj://<bucket>/<key>.
    """

    def __init__(
        self,
        name: str,
        bucket: str,
        access_grant: str,
        binary: str = 'uplink',
        read_chunk_size: int = 64 * 1024
    ):
        """
        Initialize uplink sink.

        Args:
            name: Sink name used in logs and outcomes
            bucket: Storj bucket
            access_grant: Serialized access grant passed with --access
            binary: uplink executable name or path
            read_chunk_size: Bytes read from stdout per chunk
        """
        super().__init__(SinkDescriptor(
            name=name,
            kind=SinkKind.PROCESS,
            destination_root=f"sj://{bucket}",
            credential=access_grant,
        ))
        self.bucket = bucket
        self.access_grant = access_grant
        self.binary = binary
        self.read_chunk_size = read_chunk_size

    def _url(self, key: str) -> str:
        return f"sj://{self.bucket}/{key}"

    def build_copy_in_command(
        self,
        key: str,
        metadata: Mapping[str, str],
        expires: Optional[int] = None
    ) -> List[str]:
        """Build 'uplink cp - sj://...' reading the body from stdin."""
        cmd = [self.binary, 'cp', *_COMMON_FLAGS]
        cmd.append(f"--metadata={json.dumps(dict(metadata), sort_keys=True)}")
        if expires is not None:
            cmd.extend(['--expires', f"+{expires}h"])
        cmd.extend(['--access', self.access_grant, '-', self._url(key)])
        return cmd

    def build_copy_out_command(self, key: str) -> List[str]:
        """Build 'uplink cp sj://... -' writing the body to stdout."""
        return [self.binary, 'cp', *_COMMON_FLAGS, '--access', self.access_grant, self._url(key), '-']

    def build_remove_command(self, key: str) -> List[str]:
        return [self.binary, 'rm', '--access', self.access_grant, self._url(key)]

    def _safe(self, cmd: List[str]) -> str:
        """Command line with the access grant masked, for logs."""
        return ' '.join(cmd).replace(self.access_grant, '****')

    def _failure(self, key: str, action: str, returncode: Optional[int], stderr: str) -> Exception:
        if any(marker in stderr.lower() for marker in _NOT_FOUND_MARKERS):
            return ObjectNotFoundError(key, self.name)
        return TransferToolError(
            f"uplink {action} failed for {self._url(key)} (exit code: {returncode})",
            returncode=returncode,
            stderr=stderr,
        )

    async def _spawn(self, cmd: List[str], stdin: int, stdout: int) -> asyncio.subprocess.Process:
        logger.debug(f"Starting uplink: {self._safe(cmd)}")
        try:
            return await asyncio.create_subprocess_exec(
                *cmd,
                stdin=stdin,
                stdout=stdout,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            raise TransferToolError(f"{self.binary} not found")

    async def write(
        self,
        key: str,
        metadata: Mapping[str, str],
        stream: ByteStream,
        expires: Optional[int] = None
    ) -> None:
        cmd = self.build_copy_in_command(key, metadata, expires)
        process = await self._spawn(cmd, asyncio.subprocess.PIPE, asyncio.subprocess.DEVNULL)

        # Drain stderr while writing so a chatty uplink cannot block on a full pipe
        stderr_task = asyncio.ensure_future(process.stderr.read())

        try:
            async for chunk in stream:
                process.stdin.write(chunk)
                await process.stdin.drain()
            process.stdin.close()
            await process.stdin.wait_closed()
        except (BrokenPipeError, ConnectionResetError) as e:
            returncode = await process.wait()
            stderr = (await stderr_task).decode('utf-8', errors='replace')
            raise TransferToolError(
                f"uplink stdin closed early for {self._url(key)}: {e}",
                returncode=returncode,
                stderr=stderr,
            )
        except BaseException:
            # Source or caller failed; do not leave a half-written upload running
            if process.returncode is None:
                process.kill()
            await process.wait()
            stderr_task.cancel()
            raise

        returncode = await process.wait()
        stderr = (await stderr_task).decode('utf-8', errors='replace')

        if returncode != 0:
            raise self._failure(key, 'upload', returncode, stderr)

        logger.info(f"Uploaded {self._url(key)}")

    async def read(self, key: str) -> AsyncIterator[bytes]:
        cmd = self.build_copy_out_command(key)
        process = await self._spawn(cmd, asyncio.subprocess.DEVNULL, asyncio.subprocess.PIPE)
        stderr_task = asyncio.ensure_future(process.stderr.read())

        completed = False
        try:
            while True:
                chunk = await process.stdout.read(self.read_chunk_size)
                if not chunk:
                    break
                yield chunk
            completed = True
        finally:
            if not completed:
                # Consumer stopped early or failed
                if process.returncode is None:
                    process.kill()
                await process.wait()
                stderr_task.cancel()

        returncode = await process.wait()
        stderr = (await stderr_task).decode('utf-8', errors='replace')

        if returncode != 0:
            raise self._failure(key, 'download', returncode, stderr)

    async def delete(self, key: str) -> None:
        cmd = self.build_remove_command(key)
        process = await self._spawn(cmd, asyncio.subprocess.DEVNULL, asyncio.subprocess.DEVNULL)
        _, stderr = await process.communicate()

        if process.returncode != 0:
            raise self._failure(key, 'remove', process.returncode, stderr.decode('utf-8', errors='replace'))

        logger.info(f"Removed {self._url(key)}")

    async def prepare(self) -> None:
        """
        Verify the uplink binary is available.

        Raises:
            ConfigurationError: If uplink is not on PATH
        """
        if not shutil.which(self.binary):
            raise ConfigurationError(f"{self.binary} not found in PATH")
