"""Bulk retrieval of the newest messages in an open folder.

The IMAP client streams one bulk FETCH as a sequence of events: each message
starts, reports its attributes, delivers its raw body in chunks and ends; the
whole fetch then ends. Every ended message is parsed in its own task, and those
tasks can still be running after the fetch-level end arrives, so the engine
joins on a CompletionBarrier that only opens once the fetch has ended *and*
no parse is in flight.
"""

import asyncio
import datetime
import inspect
from dataclasses import dataclass, field

from errors import FetchError, ParseFailure
from rendering import ParsedContent, parse_message
from utils import debug_print


# --- Fetch stream events ---

@dataclass(frozen=True)
class ServerAttributes:
    """Per-message attributes reported by the server.

    The Gmail extension identifiers are optional: they are absent on servers
    without X-GM-EXT-1 and then fall back as described in normalizer.py.
    """

    uid: int
    flags: tuple[str, ...] = ()
    gmail_message_id: str | None = None
    gmail_thread_id: str | None = None


@dataclass(frozen=True)
class MessageStarted:
    sequence_number: int


@dataclass(frozen=True)
class MessageAttributes:
    sequence_number: int
    attributes: ServerAttributes


@dataclass(frozen=True)
class BodyChunk:
    sequence_number: int
    data: bytes


@dataclass(frozen=True)
class MessageEnded:
    sequence_number: int


@dataclass(frozen=True)
class FetchEnded:
    pass


# --- Results ---

@dataclass(frozen=True)
class FetchedMessage:
    sequence_number: int
    uid: int
    server_message_id: str | None
    server_thread_id: str | None
    raw_bytes: bytes
    flags: tuple[str, ...]


@dataclass(frozen=True)
class ParsedMessage:
    fetched: FetchedMessage
    content: ParsedContent

    @property
    def received_at(self) -> datetime.datetime:
        return self.content.received_at


@dataclass
class _MessageBuffer:
    sequence_number: int
    attributes: ServerAttributes | None = None
    chunks: list = field(default_factory=list)


def compute_fetch_window(total: int, limit: int):
    """1-based inclusive sequence range holding the newest `limit` messages, or None if empty."""
    if total <= 0:
        return None
    if limit < 1:
        raise ValueError(f"limit must be positive, got {limit}")
    return max(1, total - limit + 1), total


class CompletionBarrier:
    """Opens once the fetch has ended and every started message has been processed.

    Only ever touched from the event loop thread, so the "last parse finished"
    and "fetch ended" paths are serialized through `_check`.
    """

    def __init__(self):
        self._in_flight: set[int] = set()
        self._fetch_ended = False
        self._cancelled = False
        self._done = asyncio.Event()

    @property
    def in_flight(self) -> frozenset:
        return frozenset(self._in_flight)

    @property
    def fetch_ended(self) -> bool:
        return self._fetch_ended

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def add(self, sequence_number: int):
        if self._cancelled:
            return
        self._in_flight.add(sequence_number)

    def discard(self, sequence_number: int):
        if self._cancelled:
            return
        self._in_flight.discard(sequence_number)
        self._check()

    def mark_fetch_ended(self):
        if self._cancelled:
            return
        self._fetch_ended = True
        self._check()

    def cancel(self):
        self._cancelled = True

    def is_complete(self) -> bool:
        return self._done.is_set()

    def _check(self):
        if self._fetch_ended and not self._in_flight:
            self._done.set()

    async def wait(self):
        await self._done.wait()


class BulkFetcher:
    def __init__(self, client, parser=parse_message):
        """
        Args:
            client: An open session exposing `stream_fetch(sequence_set)`.
            parser: Turns raw message bytes into ParsedContent. Plain functions run
                    in the default executor, coroutine functions are awaited.
        """
        self.client = client
        self.parser = parser

    async def fetch_newest(self, folder, limit: int) -> list[ParsedMessage]:
        """Fetch and parse the newest `limit` messages of `folder`, newest first."""
        window = compute_fetch_window(folder.total, limit)
        if window is None:
            debug_print(f"Folder {folder.name} is empty, nothing to fetch.")
            return []

        start, end = window
        debug_print(f"Fetching sequence range {start}:{end} of {folder.total} in {folder.name}")

        barrier = CompletionBarrier()
        results: list[ParsedMessage] = []
        buffers: dict[int, _MessageBuffer] = {}
        tasks: set[asyncio.Task] = set()

        try:
            async for event in self.client.stream_fetch(f"{start}:{end}"):
                if isinstance(event, MessageStarted):
                    barrier.add(event.sequence_number)
                    buffers[event.sequence_number] = _MessageBuffer(event.sequence_number)
                elif isinstance(event, MessageAttributes):
                    self._buffer_for(buffers, barrier, event.sequence_number).attributes = event.attributes
                elif isinstance(event, BodyChunk):
                    self._buffer_for(buffers, barrier, event.sequence_number).chunks.append(event.data)
                elif isinstance(event, MessageEnded):
                    buffered = buffers.pop(event.sequence_number, None)
                    if buffered is None:
                        continue
                    task = asyncio.create_task(self._parse_one(buffered, barrier, results))
                    tasks.add(task)
                    task.add_done_callback(tasks.discard)
                elif isinstance(event, FetchEnded):
                    # Messages that never ended will not get a parse task
                    for seq in list(buffers):
                        print(f"[WARN] Message {seq} was still open when the fetch ended, dropping it.")
                        buffers.pop(seq)
                        barrier.discard(seq)
                    barrier.mark_fetch_ended()

            if not barrier.fetch_ended:
                raise FetchError("Fetch stream closed before the server finished the fetch")

            await barrier.wait()
        except BaseException:
            barrier.cancel()
            for task in list(tasks):
                task.cancel()
            raise

        results.sort(key=lambda parsed: parsed.received_at, reverse=True)
        debug_print(f"Fetched {len(results)} of {end - start + 1} messages from {folder.name}")
        return results

    @staticmethod
    def _buffer_for(buffers, barrier, sequence_number):
        buffered = buffers.get(sequence_number)
        if buffered is None:
            barrier.add(sequence_number)
            buffered = buffers[sequence_number] = _MessageBuffer(sequence_number)
        return buffered

    async def _run_parser(self, raw_bytes: bytes) -> ParsedContent:
        if inspect.iscoroutinefunction(self.parser):
            return await self.parser(raw_bytes)
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.parser, raw_bytes)

    async def _parse_one(self, buffered: _MessageBuffer, barrier: CompletionBarrier, results: list):
        seq = buffered.sequence_number
        try:
            attributes = buffered.attributes
            if attributes is None:
                raise ParseFailure("no attributes received", seq)
            raw_bytes = b''.join(buffered.chunks)
            content = await self._run_parser(raw_bytes)
            if barrier.cancelled:
                return
            results.append(ParsedMessage(
                fetched=FetchedMessage(
                    sequence_number=seq,
                    uid=attributes.uid,
                    server_message_id=attributes.gmail_message_id,
                    server_thread_id=attributes.gmail_thread_id,
                    raw_bytes=raw_bytes,
                    flags=attributes.flags,
                ),
                content=content,
            ))
        except ParseFailure as e:
            print(f"[WARN] Skipping message {seq}, could not parse it: {e}")
        except Exception as e:
            print(f"[WARN] Skipping message {seq}, parser failed: {type(e).__name__}: {e}")
        finally:
            barrier.discard(seq)
