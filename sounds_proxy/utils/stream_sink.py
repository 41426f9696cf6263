"""Fan-out of one frame stream to several consumers with backpressure"""

import asyncio
import logging
from typing import AsyncIterator, Optional, Set

from sounds_proxy.configs import settings

logger = logging.getLogger(__name__)

_END = object()


class _Failure:
    def __init__(self, error: BaseException):
        self.error = error


class StreamConsumer:
    """One consumer of a ``StreamSink``: a bounded queue of frames."""

    def __init__(self, sink: "StreamSink", maxsize: int):
        self.sink = sink
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False
        self.bytes_received = 0

    async def iter_chunks(self) -> AsyncIterator[bytes]:
        """
        Yield the stream as chunks, each joining every frame queued at the time.

        Ends normally after the last frame; re-raises the producer's error if
        the stream failed. Leaving the iteration early detaches the consumer.
        """
        try:
            while True:
                item = await self.queue.get()
                pending = [item]
                while not self.queue.empty() and isinstance(pending[-1], bytes):
                    pending.append(self.queue.get_nowait())

                marker = None
                if not isinstance(pending[-1], bytes):
                    marker = pending.pop()
                if pending:
                    chunk = b"".join(pending)
                    self.bytes_received += len(chunk)
                    yield chunk

                if marker is _END:
                    return
                if isinstance(marker, _Failure):
                    raise marker.error
        finally:
            self.close()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        # Drain so a producer blocked on this queue can move on
        while not self.queue.empty():
            self.queue.get_nowait()
        self.sink._discard(self)


class StreamSink:
    """
    Broadcasts the frames of one producer to any number of consumers.

    Every consumer has its own bounded queue and the producer waits for room
    in each of them, so the slowest consumer sets the pace. Consumers that
    detach are dropped without affecting the others. With ``stop_when_idle``
    the producer is cancelled once the last consumer has gone.
    """

    def __init__(
        self,
        source: AsyncIterator[bytes],
        name: str = "",
        queue_size: Optional[int] = None,
        stop_when_idle: bool = True,
    ):
        self.source = source
        self.name = name
        self.queue_size = queue_size or settings.sink_queue_size
        self.stop_when_idle = stop_when_idle
        self.consumers: Set[StreamConsumer] = set()
        self.frames_produced = 0
        self.bytes_produced = 0
        self.error: Optional[BaseException] = None
        self.task: Optional[asyncio.Task] = None

    @property
    def finished(self) -> bool:
        return self.task is not None and self.task.done()

    def subscribe(self) -> StreamConsumer:
        """Attach a consumer. It receives every frame produced from now on."""
        consumer = StreamConsumer(self, self.queue_size)
        self.consumers.add(consumer)
        logger.debug(f"Consumer attached to {self.name} (total: {len(self.consumers)})")
        return consumer

    def start(self) -> asyncio.Task:
        if self.task is None:
            self.task = asyncio.create_task(self._produce())
        return self.task

    async def wait(self) -> None:
        """Wait until the producer has stopped, however it stopped."""
        if self.task is not None:
            await asyncio.wait({self.task})

    def _discard(self, consumer: StreamConsumer) -> None:
        self.consumers.discard(consumer)
        logger.debug(f"Consumer detached from {self.name} (remaining: {len(self.consumers)})")
        if not self.consumers and self.stop_when_idle and self.task is not None and not self.task.done():
            logger.info(f"No consumers left for {self.name}, stopping after {self.frames_produced} frames")
            self.task.cancel()

    async def _publish(self, item) -> None:
        for consumer in list(self.consumers):
            if not consumer.closed:
                await consumer.queue.put(item)

    async def _produce(self) -> None:
        try:
            async for frame in self.source:
                self.frames_produced += 1
                self.bytes_produced += len(frame)
                await self._publish(frame)
            await self._publish(_END)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.error = e
            await self._publish(_Failure(e))
        finally:
            aclose = getattr(self.source, "aclose", None)
            if aclose is not None:
                await aclose()
