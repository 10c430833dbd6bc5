"""Incremental Server-Sent Events frame decoder.

Turns arbitrarily split byte chunks from an upstream response body into
complete ``data:`` payload strings. Frames are delimited by a blank line;
the incomplete tail of the buffer is retained between reads.
"""

import codecs
from collections.abc import AsyncIterable, AsyncIterator, Iterable

from chat_relay.relay.errors import MalformedUpstream

DATA_PREFIX = "data: "
EVENT_DELIMITER = "\n\n"
HTML_MARKERS = ("<!doctype", "<html")


def looks_like_html(text: str) -> bool:
    """Check whether text starts with an HTML document marker."""
    return text.lstrip().lower().startswith(HTML_MARKERS)


class SSEFrameDecoder:
    """Stateful SSE decoder for a single response stream.

    Not safe for concurrent use: buffers must be fed in arrival order.

    Example:
        decoder = SSEFrameDecoder()
        for chunk in chunks:
            for payload in decoder.feed(chunk):
                handle(payload)
        for payload in decoder.close():
            handle(payload)
    """

    def __init__(self, request_id: str | None = None) -> None:
        self.request_id = request_id
        self.buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._seen_text = False
        self._seen_payload = False
        self._closed = False

    def feed(self, chunk: bytes) -> list[str]:
        """Add a byte chunk and return the payloads it completed.

        Args:
            chunk: Raw bytes as read from the network.

        Returns:
            Payload strings of every event completed by this chunk.

        Raises:
            MalformedUpstream: If the stream turns out to be an HTML page.
        """
        if self._closed:
            raise RuntimeError("decoder already closed")
        return self._push(self._decoder.decode(chunk))

    def close(self) -> list[str]:
        """Signal end of stream and flush any trailing event.

        Upstream may omit the final delimiter, so a retained tail that is
        itself a ``data:`` block is emitted as the last event.
        """
        if self._closed:
            return []
        payloads = self._push(self._decoder.decode(b"", final=True))
        self._closed = True

        tail = self.buffer.lstrip("\n")
        self.buffer = ""
        if tail.startswith(DATA_PREFIX):
            payload = self._parse_block(tail)
            if payload is not None:
                payloads.append(payload)
        return payloads

    def _push(self, text: str) -> list[str]:
        self.buffer = (self.buffer + text).replace("\r\n", "\n")
        if not self._seen_text:
            self._sniff_document()
        *blocks, self.buffer = self.buffer.split(EVENT_DELIMITER)
        if blocks:
            self._seen_text = True

        payloads: list[str] = []
        for block in blocks:
            payload = self._parse_block(block.lstrip("\n"))
            if payload is not None:
                payloads.append(payload)
        return payloads

    def _parse_block(self, block: str) -> str | None:
        # Heartbeats, comments and non-data fields are dropped.
        if not block.startswith(DATA_PREFIX):
            return None

        lines = [
            line[len(DATA_PREFIX):] if line.startswith(DATA_PREFIX) else line[5:]
            for line in block.split("\n")
            if line.startswith("data:")
        ]
        payload = "\n".join(lines)

        if not self._seen_payload:
            self._check_html(payload)
            self._seen_payload = True
        return payload

    def _sniff_document(self) -> None:
        head = self.buffer.lstrip()
        if not head:
            return
        self._check_html(head)
        # Enough text to rule out a partially received marker.
        if len(head) >= max(len(marker) for marker in HTML_MARKERS):
            self._seen_text = True

    def _check_html(self, text: str) -> None:
        if looks_like_html(text):
            raise MalformedUpstream(
                "Upstream returned an HTML page instead of an event stream",
                request_id=self.request_id,
                body=text[:500],
            )


async def iter_sse_payloads(
    chunks: AsyncIterable[bytes],
    request_id: str | None = None,
) -> AsyncIterator[str]:
    """Decode an async byte stream into SSE payload strings.

    Args:
        chunks: Async iterable of raw body chunks (e.g. ``response.aiter_bytes()``).
        request_id: Request id attached to decoding errors.

    Yields:
        str: Event payloads in arrival order.
    """
    decoder = SSEFrameDecoder(request_id=request_id)
    async for chunk in chunks:
        for payload in decoder.feed(chunk):
            yield payload
    for payload in decoder.close():
        yield payload


def decode_sse(chunks: Iterable[bytes]) -> list[str]:
    """Decode a complete, already-buffered byte stream into payloads."""
    decoder = SSEFrameDecoder()
    payloads: list[str] = []
    for chunk in chunks:
        payloads.extend(decoder.feed(chunk))
    payloads.extend(decoder.close())
    return payloads
