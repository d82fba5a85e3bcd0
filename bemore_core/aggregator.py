"""
Multimodal VAD aggregation for BeMore Core.

This module combines per-modality VAD samples (facial, voice, text) into a
single integrated score using confidence-weighted averaging. The pure
``aggregate`` function does the arithmetic; ``MultimodalAggregator`` keeps the
live sample set and serializes updates coming from concurrent analyzer
callbacks through a single queue consumer.
"""

import asyncio
import logging
from collections import deque
from collections.abc import AsyncGenerator, Iterable, Mapping
from contextlib import asynccontextmanager, suppress

from .models import AggregateResult, Modality, ModalitySample, VADScore

logger = logging.getLogger(__name__)

# Relative reliability of each channel. Not user-configurable.
MODALITY_WEIGHTS: dict[Modality, float] = {
    Modality.FACIAL: 0.40,
    Modality.VOICE: 0.35,
    Modality.TEXT: 0.25,
}

DEFAULT_HISTORY_SIZE = 10


def latest_per_modality(
    samples: Iterable[ModalitySample],
) -> dict[Modality, ModalitySample]:
    """Keep only the last sample seen for each modality."""
    latest: dict[Modality, ModalitySample] = {}
    for sample in samples:
        latest.pop(sample.modality, None)
        latest[sample.modality] = sample
    return latest


def aggregate(
    samples: Iterable[ModalitySample],
    weights: Mapping[Modality, float] = MODALITY_WEIGHTS,
) -> AggregateResult:
    """
    Combine modality samples into one integrated VAD score.

    Samples are expected to be clamped by their producer. Each sample is
    weighted by ``weights[modality] * confidence``; the overall confidence is
    the plain mean of the sample confidences.

    Args:
        samples: Samples captured within the same time window
        weights: Per-modality weights

    Returns:
        The integrated result, or the neutral score with confidence 0 when
        there is nothing to weigh
    """
    active = latest_per_modality(samples)
    if not active:
        return AggregateResult()

    weighted_valence = 0.0
    weighted_arousal = 0.0
    weighted_dominance = 0.0
    total_weight = 0.0
    total_confidence = 0.0

    for modality, sample in active.items():
        weight = weights.get(modality, 0.0) * sample.confidence
        weighted_valence += sample.vad.valence * weight
        weighted_arousal += sample.vad.arousal * weight
        weighted_dominance += sample.vad.dominance * weight
        total_weight += weight
        total_confidence += sample.confidence

    if total_weight <= 0:
        return AggregateResult()

    return AggregateResult(
        vad=VADScore(
            valence=weighted_valence / total_weight,
            arousal=weighted_arousal / total_weight,
            dominance=weighted_dominance / total_weight,
        ),
        confidence=total_confidence / len(active),
        modalities=list(active),
    )


_RESET = object()


class MultimodalAggregator:
    """
    Live sample set with a single writer.

    Analyzer callbacks call ``submit`` from wherever they run on the event
    loop; the samples are applied in submission order by one consumer task,
    so the sample set is never mutated from two places at once. Subscribers
    follow integrated results through ``stream``.
    """

    def __init__(
        self,
        weights: Mapping[Modality, float] = MODALITY_WEIGHTS,
        history_size: int = DEFAULT_HISTORY_SIZE,
    ) -> None:
        self._weights = dict(weights)
        self._samples: dict[Modality, ModalitySample] = {}
        self._result = AggregateResult()
        self._history: deque[VADScore] = deque(maxlen=history_size)
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._condition = asyncio.Condition()
        self._update_counter = 0
        self._consumer: asyncio.Task[None] | None = None

    async def __aenter__(self) -> "MultimodalAggregator":
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    @property
    def result(self) -> AggregateResult:
        return self._result

    @property
    def samples(self) -> dict[Modality, ModalitySample]:
        return dict(self._samples)

    @property
    def active_modalities(self) -> set[Modality]:
        return set(self._samples)

    @property
    def history(self) -> list[VADScore]:
        return list(self._history)

    @property
    def running(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    def start(self) -> None:
        """Start the consumer task on the running loop."""
        if self.running:
            return
        self._consumer = asyncio.create_task(self._consume())

    async def close(self) -> None:
        """Cancel the consumer task. Pending samples are dropped."""
        if self._consumer is None:
            return
        self._consumer.cancel()
        with suppress(asyncio.CancelledError):
            await self._consumer
        self._consumer = None

    def submit(self, sample: ModalitySample) -> None:
        """Queue a sample; a newer sample replaces the modality's older one."""
        self._queue.put_nowait(sample)

    def reset(self) -> None:
        """Queue removal of every active sample."""
        self._queue.put_nowait(_RESET)

    async def drain(self) -> None:
        """Wait until every queued update has been applied."""
        await self._queue.join()

    async def _consume(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                async with self._condition:
                    if item is _RESET:
                        self._samples.clear()
                    elif isinstance(item, ModalitySample):
                        self._samples.pop(item.modality, None)
                        self._samples[item.modality] = item

                    self._result = aggregate(self._samples.values(), self._weights)
                    self._history.append(self._result.vad)
                    self._update_counter += 1
                    self._condition.notify_all()
            finally:
                self._queue.task_done()

            logger.debug(
                "Integrated VAD %s from %s",
                self._result.vad,
                [m.value for m in self._result.modalities],
            )

    @asynccontextmanager
    async def stream(
        self,
    ) -> AsyncGenerator[AsyncGenerator[AggregateResult, None], None]:
        """
        Stream integrated results to a subscriber.

        Yields:
            An async generator producing the current result first, then one
            result per applied update
        """

        async def result_generator() -> AsyncGenerator[AggregateResult, None]:
            async with self._condition:
                last_seen_counter = self._update_counter
                result = self._result
            yield result

            try:
                while True:
                    # Yield outside the lock
                    async with self._condition:
                        await self._condition.wait_for(
                            lambda: self._update_counter > last_seen_counter
                        )
                        last_seen_counter = self._update_counter
                        result = self._result
                    yield result
            except (asyncio.CancelledError, GeneratorExit):
                return

        yield result_generator()
