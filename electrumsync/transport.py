"""Newline-delimited JSON transport over one TCP or TLS socket."""

from __future__ import annotations

import asyncio
import ssl
from typing import Any
from collections.abc import Callable

from loguru import logger

from electrumsync.core.errors import ConnectError, ProtocolError, WriteError
from electrumsync.core.serialization import decode_line, encode_message

MessageCallback = Callable[[Any], None]
CloseCallback = Callable[[BaseException | None], None]

DEFAULT_MAX_LINE_BYTES = 8 * 1024 * 1024


def build_ssl_context(verify: bool = False) -> ssl.SSLContext:
    """TLS context for Electrum servers.

    Most public servers use self-signed certificates, so verification is opt-in.
    """
    context = ssl.create_default_context()
    if not verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


class Transport:
    """Owns exactly one socket; speaks messages in, messages out."""

    def __init__(
        self,
        *,
        on_message: MessageCallback,
        on_close: CloseCallback,
        connect_timeout: float = 10.0,
        verify_tls: bool = False,
        max_line_bytes: int = DEFAULT_MAX_LINE_BYTES,
    ):
        self._on_message = on_message
        self._on_close = on_close
        self.connect_timeout = connect_timeout
        self.verify_tls = verify_tls
        self.max_line_bytes = max_line_bytes
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._read_task: asyncio.Task[None] | None = None
        self._closed = False
        self._close_reported = False
        self.endpoint: str | None = None

    @property
    def is_open(self) -> bool:
        return self._writer is not None and not self._closed

    async def connect(self, host: str, port: int, secure: bool = False) -> None:
        if self._writer is not None:
            raise ConnectError(host, port, "transport already connected")
        ssl_context = build_ssl_context(self.verify_tls) if secure else None
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(
                    host,
                    port,
                    ssl=ssl_context,
                    server_hostname=host if secure else None,
                    limit=self.max_line_bytes,
                ),
                timeout=self.connect_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ConnectError(host, port, f"timed out after {self.connect_timeout}s") from exc
        except OSError as exc:
            raise ConnectError(host, port, str(exc) or exc.__class__.__name__) from exc
        self._reader = reader
        self._writer = writer
        self._closed = False
        self.endpoint = f"{host}:{port}"
        self._read_task = asyncio.create_task(self._read_loop(), name=f"electrum-read-{self.endpoint}")
        logger.debug("Transport open to {} (tls={})", self.endpoint, secure)

    async def send(self, message: Any) -> None:
        """Write one message as a JSON line."""
        writer = self._writer
        if writer is None or self._closed or writer.is_closing():
            raise WriteError()
        try:
            writer.write(encode_message(message))
            await writer.drain()
        except (OSError, RuntimeError) as exc:
            raise WriteError(f"write failed: {exc}") from exc

    async def _read_loop(self) -> None:
        reader = self._reader
        assert reader is not None
        error: BaseException | None = None
        try:
            while True:
                try:
                    line = await reader.readline()
                except ValueError:
                    logger.warning("Dropping oversized frame from {} (limit {} bytes)", self.endpoint, self.max_line_bytes)
                    continue
                if not line:
                    break
                if not line.strip():
                    continue
                try:
                    payload = decode_line(line)
                except ProtocolError as exc:
                    logger.warning("Dropping malformed frame from {}: {} ({!r})", self.endpoint, exc.message, line[:200])
                    continue
                try:
                    self._on_message(payload)
                except Exception:
                    logger.exception("Message handler failed for frame from {}", self.endpoint)
        except asyncio.CancelledError:
            raise
        except (OSError, asyncio.IncompleteReadError) as exc:
            error = exc
        self._report_closed(error)

    def _report_closed(self, error: BaseException | None) -> None:
        was_closed = self._closed
        self._closed = True
        if self._writer is not None:
            self._writer.close()
        if was_closed or self._close_reported:
            return
        self._close_reported = True
        if error is not None:
            logger.info("Transport to {} failed: {}", self.endpoint, error)
        else:
            logger.info("Transport to {} closed by peer", self.endpoint)
        self._on_close(error)

    async def close(self) -> None:
        """Terminate the socket. Idempotent; does not report to on_close."""
        if self._closed and self._read_task is None:
            return
        self._closed = True
        task, self._read_task = self._read_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        writer = self._writer
        if writer is not None:
            writer.close()
            try:
                await writer.wait_closed()
            except (OSError, ssl.SSLError):
                pass
        logger.debug("Transport to {} closed", self.endpoint)
