"""Streaming output channel for step bodies."""

import asyncio
from typing import Any

from stepflow.runtime.emitter import Emitter, EventName, WatchEventType


class StepWriter:
    """
    Lets a running step publish intermediate output.

    Every chunk is emitted on ``watch-v2`` as ``workflow-step-output`` and,
    when the caller supplied one, pushed onto an ``asyncio.Queue`` so it can
    be consumed as a stream while the run is still going.
    """

    def __init__(
        self,
        emitter: Emitter,
        run_id: str,
        step_id: str,
        call_id: str,
        output_stream: asyncio.Queue | None = None,
    ):
        self.emitter = emitter
        self.run_id = run_id
        self.step_id = step_id
        self.call_id = call_id
        self.output_stream = output_stream

    async def write(self, data: Any) -> None:
        chunk = {
            "type": WatchEventType.STEP_OUTPUT.value,
            "run_id": self.run_id,
            "from": "workflow-step",
            "payload": {
                "step_id": self.step_id,
                "call_id": self.call_id,
                "output": data,
            },
        }
        if self.output_stream is not None:
            await self.output_stream.put(chunk)
        await self.emitter.emit(EventName.WATCH_V2, chunk)
