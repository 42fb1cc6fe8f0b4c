"""
Batch ingester - Feeds a tokenized prompt to the engine in chunks

Chunks never exceed the engine batch size. Every token carries its
absolute position; only the last token of the last chunk asks for
logits, since sampling starts from there.
"""

import logging
from typing import Iterator, List, Optional, Sequence

from ..errors import InferenceFailed
from .engine import InferenceEngine, RuntimeContext, TokenBatch

logger = logging.getLogger(__name__)


def make_batches(tokens: Sequence[int], batch_size: int, start_pos: int = 0) -> Iterator[TokenBatch]:
    """Split tokens into position-tagged batches of at most batch_size"""
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")

    total = len(tokens)
    for offset in range(0, total, batch_size):
        chunk: List[int] = list(tokens[offset:offset + batch_size])
        positions = [start_pos + offset + i for i in range(len(chunk))]
        logits = [False] * len(chunk)
        if offset + len(chunk) == total:
            logits[-1] = True
        yield TokenBatch(tokens=chunk, positions=positions, logits=logits)


class BatchIngester:
    def __init__(self, engine: InferenceEngine, batch_size: int):
        self.engine = engine
        self.batch_size = batch_size

    def ingest(
        self, context: RuntimeContext, tokens: Sequence[int], model_path: Optional[str] = None
    ) -> int:
        """
        Decode the whole prompt starting at position 0

        Returns:
            Position of the next token to be generated

        Raises:
            InferenceFailed: If any chunk fails to decode (partial state is discarded)
        """
        if not tokens:
            raise InferenceFailed(model_path, "empty prompt")

        self.engine.reset_context(context)
        for index, batch in enumerate(make_batches(tokens, self.batch_size)):
            if not self.engine.decode(context, batch):
                self.engine.reset_context(context)
                raise InferenceFailed(
                    model_path,
                    f"prompt decode failed at chunk {index} (positions {batch.positions[0]}-{batch.positions[-1]})",
                )
        context.n_past = len(tokens)
        logger.debug("Ingested %d prompt tokens in batches of %d", len(tokens), self.batch_size)
        return context.n_past
