"""
Async streaming bridge for ModelSession.process_text

process_text is blocking and delivers fragments through a callback on
the calling thread. This module runs it in a worker thread and hands
each fragment to the event loop through a bounded asyncio.Queue, so the
consumer sees fragments in generation order and backpressure reaches
the generation loop. The last item always has is_final=True and carries
the GenerationResult.
"""

import asyncio
import concurrent.futures
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from .cancellation import CancellationToken
from .session import GenerationResult, ModelSession

logger = logging.getLogger(__name__)


@dataclass
class StreamItem:
    fragment: str
    is_final: bool = False
    result: Optional[GenerationResult] = None


async def stream_process_text(
    session: ModelSession,
    text: str,
    cancellation: Optional[CancellationToken] = None,
    queue_size: Optional[int] = None,
    put_timeout_s: Optional[float] = None,
) -> AsyncIterator[StreamItem]:
    """
    Stream process_text fragments as an async iterator

    Leaving the iteration early (break, exception, aclose) cancels the
    generation and waits for the worker thread to finish.

    Args:
        session: READY model session
        text: Input text
        cancellation: Optional caller-owned token (one is created otherwise)
        queue_size: Queue bound (defaults to python_bridge.stream_queue_size)
        put_timeout_s: Producer wait for queue space before it gives up and
            cancels (defaults to python_bridge.queue_put_timeout_s)
    """
    config = session.config
    size = queue_size if queue_size is not None else config.stream_queue_size
    timeout = put_timeout_s if put_timeout_s is not None else config.queue_put_timeout_s

    token = cancellation or CancellationToken()
    loop = asyncio.get_running_loop()
    queue: "asyncio.Queue[StreamItem]" = asyncio.Queue(maxsize=size)
    consumer_gone = False
    finished = False

    def put(item: StreamItem) -> None:
        nonlocal consumer_gone
        if consumer_gone:
            return
        future = asyncio.run_coroutine_threadsafe(queue.put(item), loop)
        try:
            future.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            # Consumer stalled or went away; stop generating
            future.cancel()
            consumer_gone = True
            token.cancel()
            logger.warning("Stream queue put timed out after %.1fs, cancelling generation", timeout)

    def on_token(fragment: str, is_final: bool) -> None:
        # The terminal item is queued with the result once process_text returns
        if not is_final:
            put(StreamItem(fragment))

    def producer() -> None:
        result = session.process_text(text, on_token, token)
        put(StreamItem("", is_final=True, result=result))

    producer_task = asyncio.create_task(asyncio.to_thread(producer))

    try:
        while True:
            get_task = asyncio.ensure_future(queue.get())
            done, _ = await asyncio.wait(
                {get_task, producer_task}, return_when=asyncio.FIRST_COMPLETED
            )
            if get_task not in done:
                get_task.cancel()
                # Producer ended without a terminal item (it raised or timed out)
                if queue.empty():
                    exc = producer_task.exception()
                    if exc is not None:
                        raise exc
                    yield StreamItem("", is_final=True, result=None)
                    return
                continue

            item = get_task.result()
            if item.is_final:
                finished = True
            yield item
            if finished:
                return
    finally:
        if not producer_task.done():
            if not finished:
                token.cancel()
            consumer_gone = True
            while not producer_task.done():
                while not queue.empty():
                    queue.get_nowait()
                await asyncio.wait({producer_task}, timeout=0.05)
        if not producer_task.cancelled() and producer_task.exception() is not None:
            logger.error("Stream producer failed: %s", producer_task.exception())
