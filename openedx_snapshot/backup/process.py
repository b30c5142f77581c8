"""Subprocess helpers for dump and restore clients.

Every helper waits for the child to exit and raises CommandError on a
non-zero status. Streams are copied in fixed-size chunks; writes to a child's
stdin are followed by drain() so a slow consumer throttles the producer.
"""

import asyncio
import gzip
import os
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Sequence

from .._utils import logger
from ..exceptions import CommandError

CHUNK_SIZE = 1024 * 1024
STDERR_TAIL = 2000


@dataclass
class CommandResult:
    """Exit status and captured output of a finished command."""
    returncode: int
    stdout: bytes
    stderr: bytes

    @property
    def text(self) -> str:
        return self.stdout.decode("utf-8", errors="replace")


def format_command(args: Sequence[str], redact: Sequence[str] = ()) -> str:
    """Render a command line for logs and dry-run output.

    Args:
        args: Command arguments
        redact: Substrings (passwords) replaced with ***
    """
    rendered = shlex.join(args)
    for secret in redact:
        if secret:
            rendered = rendered.replace(secret, "***")
    return rendered


def _child_env(env: Optional[Dict[str, str]]) -> Optional[Dict[str, str]]:
    if not env:
        return None
    return {**os.environ, **env}


def _tail(stderr: bytes) -> str:
    return stderr.decode("utf-8", errors="replace")[-STDERR_TAIL:].strip()


async def _terminate(proc: asyncio.subprocess.Process, *readers: Optional[asyncio.Future]) -> None:
    """Kill a child that is still running, reap it and drop its output readers."""
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
    await proc.wait()
    pending = [reader for reader in readers if reader is not None]
    for reader in pending:
        reader.cancel()
    await asyncio.gather(*pending, return_exceptions=True)


async def run_command(
    args: Sequence[str],
    *,
    env: Optional[Dict[str, str]] = None,
    check: bool = True,
    redact: Sequence[str] = (),
) -> CommandResult:
    """Run a command and capture stdout and stderr.

    Args:
        args: Command arguments
        env: Extra environment variables for the child only
        check: Raise CommandError on non-zero exit
        redact: Secrets hidden from logs and errors

    Returns:
        CommandResult
    """
    command = format_command(args, redact)
    logger.debug(f"Running: {command}")

    proc = await asyncio.create_subprocess_exec(
        *args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=_child_env(env),
    )
    stdout, stderr = await proc.communicate()

    if check and proc.returncode != 0:
        raise CommandError(command, proc.returncode, _tail(stderr))

    return CommandResult(proc.returncode, stdout, stderr)


async def stream_command_to_file(
    args: Sequence[str],
    output_path: Path,
    *,
    compress: bool = False,
    env: Optional[Dict[str, str]] = None,
    stderr_path: Optional[Path] = None,
    redact: Sequence[str] = (),
) -> int:
    """Write a command's stdout to a file, gzip-compressing it if asked.

    If writing fails or the caller is cancelled, the child is killed and the
    partial output file is removed.

    Returns:
        Number of uncompressed bytes read from the command
    """
    command = format_command(args, redact)
    logger.debug(f"Running: {command} > {output_path}")

    stderr_file = open(stderr_path, "ab") if stderr_path else None
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=stderr_file or asyncio.subprocess.PIPE,
            env=_child_env(env),
        )
        stderr_task = asyncio.ensure_future(proc.stderr.read()) if proc.stderr else None

        total = 0
        opener = gzip.open if compress else open
        try:
            with opener(output_path, "wb") as out:
                while True:
                    chunk = await proc.stdout.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    out.write(chunk)
                    total += len(chunk)
        except BaseException:
            await _terminate(proc, stderr_task)
            output_path.unlink(missing_ok=True)
            raise

        stderr = await stderr_task if stderr_task else b""
        returncode = await proc.wait()
    finally:
        if stderr_file:
            stderr_file.close()

    if returncode != 0:
        raise CommandError(command, returncode, _tail(stderr) or None)

    return total


async def stream_file_to_command(
    input_path: Path,
    args: Sequence[str],
    *,
    decompress: bool = False,
    decompressor: Optional[Sequence[str]] = None,
    env: Optional[Dict[str, str]] = None,
    redact: Sequence[str] = (),
) -> CommandResult:
    """Feed a file into a command's stdin.

    The whole input is consumed and stdin closed before the exit status is
    checked.

    Args:
        input_path: File to send
        args: Consumer command
        decompress: Gunzip the file in-process while sending
        decompressor: External decompression command (e.g. pigz -dc); its
            stdout is sent instead of the raw file
        env: Extra environment variables for the consumer only
        redact: Secrets hidden from logs and errors

    Returns:
        CommandResult of the consumer (stdout captured)
    """
    command = format_command(args, redact)
    logger.debug(f"Running: {command} < {input_path}")

    proc = await asyncio.create_subprocess_exec(
        *args,
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=_child_env(env),
    )
    # Drain output concurrently so a chatty consumer cannot block on a full pipe.
    stdout_task = asyncio.ensure_future(proc.stdout.read())
    stderr_task = asyncio.ensure_future(proc.stderr.read())

    try:
        if decompressor:
            await _pipe_from_command([*decompressor, str(input_path)], proc.stdin)
        else:
            opener = gzip.open if decompress else open
            with opener(input_path, "rb") as source:
                for chunk in iter(lambda: source.read(CHUNK_SIZE), b""):
                    proc.stdin.write(chunk)
                    await proc.stdin.drain()
    except (BrokenPipeError, ConnectionResetError):
        logger.warning(f"Consumer closed its input early: {command}")
    except BaseException:
        await _terminate(proc, stdout_task, stderr_task)
        raise
    finally:
        if not proc.stdin.is_closing():
            proc.stdin.close()

    stdout = await stdout_task
    stderr = await stderr_task
    returncode = await proc.wait()

    if returncode != 0:
        raise CommandError(command, returncode, _tail(stderr) or None)

    return CommandResult(returncode, stdout, stderr)


async def _pipe_from_command(args: Sequence[str], sink: asyncio.StreamWriter) -> None:
    """Copy a producer command's stdout into a stream writer."""
    command = format_command(args)
    producer = await asyncio.create_subprocess_exec(
        *args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stderr_task = asyncio.ensure_future(producer.stderr.read())

    try:
        while True:
            chunk = await producer.stdout.read(CHUNK_SIZE)
            if not chunk:
                break
            sink.write(chunk)
            await sink.drain()
    except BaseException:
        await _terminate(producer, stderr_task)
        raise

    stderr = await stderr_task
    returncode = await producer.wait()
    if returncode != 0:
        raise CommandError(command, returncode, _tail(stderr) or None)
