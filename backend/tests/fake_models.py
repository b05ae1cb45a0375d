from __future__ import annotations

import asyncio
from typing import List, Optional

from intake_ai import ModelCompletion, ProviderError

SUMMARY_CHUNKS = [
    "## Summary\n41-year-old female presenting with chest pain and dyspnea.\n",
    "## Key Findings\n- Chest pain since this morning\n",
    "- Exertional shortness of breath\n",
    "## Red Flags\n[RED FLAG] Chest pain with dyspnea requires urgent cardiac evaluation\n",
    "[RED FLAG] Anticoagulation with warfarin, review bleeding risk\n",
    "## Medications Review\n- Warfarin 5mg daily\n- Metformin 500mg twice daily\n",
    "## Considerations\n- Family history of early MI\n",
]


class FakeSummaryModel:
    """In-process stand-in for a provider, with call and stream bookkeeping."""

    name = "fake:summary-model"

    def __init__(
        self,
        chunks: Optional[List[str]] = None,
        *,
        fail_times: int = 0,
        stream_fail_after: Optional[int] = None,
        delay_seconds: float = 0.0,
    ) -> None:
        self.chunks = list(SUMMARY_CHUNKS if chunks is None else chunks)
        self.fail_times = fail_times
        self.stream_fail_after = stream_fail_after
        self.delay_seconds = delay_seconds
        self.prompts: List[str] = []
        self.complete_calls = 0
        self.streams_opened = 0
        self.streams_closed = 0
        self.chunks_sent = 0

    @property
    def text(self) -> str:
        return "".join(self.chunks)

    async def complete(self, prompt: str) -> ModelCompletion:
        self.prompts.append(prompt)
        self.complete_calls += 1
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if self.fail_times > 0:
            self.fail_times -= 1
            raise ProviderError("upstream unavailable")
        return ModelCompletion(text=self.text, model="fake-model-1", tokens_used=321)

    async def stream(self, prompt: str):
        self.prompts.append(prompt)
        self.streams_opened += 1
        try:
            for index, chunk in enumerate(self.chunks):
                if self.stream_fail_after is not None and index == self.stream_fail_after:
                    raise ProviderError("stream dropped")
                if self.delay_seconds:
                    await asyncio.sleep(self.delay_seconds)
                self.chunks_sent += 1
                yield chunk
        finally:
            self.streams_closed += 1
