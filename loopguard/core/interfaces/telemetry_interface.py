from __future__ import annotations

import abc

from loopguard.core.domain.loop_events import LoopDetectedEvent


class ILoopTelemetrySink(abc.ABC):
    """
    Receives loop-detected events. Implementations are fire-and-forget: they
    must not block, and the detector discards anything they raise.
    """

    @abc.abstractmethod
    def log_loop_detected(self, event: LoopDetectedEvent) -> None:
        raise NotImplementedError
