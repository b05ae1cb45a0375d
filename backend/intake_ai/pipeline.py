from __future__ import annotations

import asyncio
import re
import uuid
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, AsyncIterator, Union

import httpx

from intake_core.errors import GenerationFailed, IntakeError, InvalidInput, NotFound
from intake_core.models import SEVERITIES, DoctorEdits, Intake, RedFlag, Summary
from intake_core.red_flags import sort_by_severity
from intake_core.time_utils import utc_now
from logging_config import get_logger

from .prompt import RED_FLAG_MARKER, build_summary_prompt
from .providers import ProviderError, SummaryModel
from .structured import structured_fields

if TYPE_CHECKING:
    from intake_records import AuditLog, IntakeStore, SummaryStore

logger = get_logger(__name__)

_URGENT_WORDS_RE = re.compile(r"\b(urgent|urgently|emergency|emergent|immediate|immediately|critical)\b", re.IGNORECASE)
_MAX_AI_FLAG_CHARS = 240
_UPSTREAM_ERRORS = (ProviderError, httpx.HTTPError, asyncio.TimeoutError)


@dataclass(frozen=True)
class ChunkEvent:
    text: str


@dataclass(frozen=True)
class CompletedEvent:
    summary: Summary


SummaryEvent = Union[ChunkEvent, CompletedEvent]


def parse_ai_red_flags(text: str) -> list[RedFlag]:
    flags: list[RedFlag] = []
    for line in text.splitlines():
        index = line.find(RED_FLAG_MARKER)
        if index < 0:
            continue
        body = line[index + len(RED_FLAG_MARKER) :].strip(" \t-:*_")
        if not body:
            continue
        severity = "high" if _URGENT_WORDS_RE.search(body) else "medium"
        flags.append(
            RedFlag(
                flag=body[:_MAX_AI_FLAG_CHARS],
                severity=severity,
                source="ai",
                category="ai_review",
            )
        )
    return flags


def merge_red_flags(keyword_flags: list[RedFlag], ai_flags: list[RedFlag]) -> list[RedFlag]:
    """Keyword flags always survive; AI flags are added only when new."""
    merged = list(keyword_flags)
    seen = {flag.identity for flag in merged}
    for flag in ai_flags:
        if flag.identity in seen:
            continue
        seen.add(flag.identity)
        merged.append(flag)
    return sort_by_severity(merged)


class SummaryPipeline:
    def __init__(
        self,
        *,
        intakes: "IntakeStore",
        summaries: "SummaryStore",
        audit: "AuditLog",
        model: SummaryModel | None,
        timeout_seconds: float = 60.0,
        retries: int = 1,
    ) -> None:
        self.intakes = intakes
        self.summaries = summaries
        self.audit = audit
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.retries = max(0, retries)

    def _load_intake(self, intake_id: str, provider_id: str | None) -> Intake:
        if provider_id is None:
            intake = self.intakes.get(intake_id)
        else:
            intake = self.intakes.get_for_provider(intake_id, provider_id)
        if intake is None:
            raise NotFound("Intake not found.")
        return intake

    def _require_model(self) -> SummaryModel:
        if self.model is None:
            raise GenerationFailed("No summary model is configured.")
        return self.model

    def _fail(self, intake_id: str, actor: str | None, exc: BaseException | None) -> GenerationFailed:
        if exc is None:
            reason = "empty completion"
        else:
            reason = str(exc) or type(exc).__name__
        self.audit.record(
            actor=actor,
            action="GENERATION_FAILED",
            entity_type="intake",
            entity_id=intake_id,
            details={"reason": reason[:500]},
        )
        logger.warning("Summary generation failed", intake_id=intake_id, reason=reason)
        return GenerationFailed()

    def _persist(
        self,
        intake: Intake,
        *,
        text: str,
        model_name: str,
        tokens_used: int | None,
        actor: str | None,
    ) -> Summary:
        keyword_flags = self.intakes.red_flags_for(intake.id)
        red_flags = merge_red_flags(keyword_flags, parse_ai_red_flags(text))
        summary = Summary(
            id=f"sum_{uuid.uuid4().hex}",
            intake_id=intake.id,
            red_flags=tuple(red_flags),
            content=text,
            model=model_name,
            tokens_used=tokens_used,
            created_at=utc_now(),
            **structured_fields(intake.responses),
        )
        stored, created = self.summaries.insert(summary)
        if not created:
            logger.info("Summary already existed for intake", intake_id=intake.id, summary_id=stored.id)
            return stored
        self.audit.record(
            actor=actor,
            action="SUMMARY_GENERATED",
            entity_type="summary",
            entity_id=stored.id,
            details={
                "intake_id": intake.id,
                "model": model_name,
                "tokens_used": tokens_used,
                "red_flag_count": stored.red_flag_count,
            },
        )
        logger.info(
            "Summary generated",
            intake_id=intake.id,
            summary_id=stored.id,
            model=model_name,
            red_flag_count=stored.red_flag_count,
        )
        return stored

    async def generate(self, intake_id: str, *, provider_id: str | None = None) -> Summary:
        intake = await asyncio.to_thread(self._load_intake, intake_id, provider_id)
        existing = await asyncio.to_thread(self.summaries.get_by_intake, intake.id)
        if existing is not None:
            return existing
        model = self._require_model()
        prompt = build_summary_prompt(intake)

        last_error: BaseException | None = None
        for attempt in range(self.retries + 1):
            try:
                completion = await asyncio.wait_for(model.complete(prompt), self.timeout_seconds)
            except _UPSTREAM_ERRORS as exc:
                last_error = exc
                logger.warning(
                    "Summary model attempt failed",
                    intake_id=intake.id,
                    attempt=attempt + 1,
                    error=str(exc) or type(exc).__name__,
                )
                continue
            text = completion.text.strip()
            if not text:
                last_error = ProviderError("empty completion")
                continue
            return await asyncio.to_thread(
                self._persist,
                intake,
                text=text,
                model_name=completion.model,
                tokens_used=completion.tokens_used,
                actor=provider_id,
            )
        raise await asyncio.to_thread(self._fail, intake.id, provider_id, last_error) from last_error

    async def generate_streaming(
        self,
        intake_id: str,
        *,
        provider_id: str | None = None,
    ) -> AsyncIterator[SummaryEvent]:
        """Forward model chunks as they arrive, then persist and complete.

        Nothing is stored until the upstream stream is exhausted. Closing this
        iterator early closes the upstream stream and leaves no summary behind.
        Store access runs in worker threads so open streams never wait on a
        sqlite write lock.
        """
        intake = await asyncio.to_thread(self._load_intake, intake_id, provider_id)
        existing = await asyncio.to_thread(self.summaries.get_by_intake, intake.id)
        if existing is not None:
            yield CompletedEvent(summary=existing)
            return
        model = self._require_model()
        upstream = model.stream(build_summary_prompt(intake))

        parts: list[str] = []
        try:
            while True:
                try:
                    chunk = await asyncio.wait_for(upstream.__anext__(), self.timeout_seconds)
                except StopAsyncIteration:
                    break
                parts.append(chunk)
                yield ChunkEvent(text=chunk)
        except _UPSTREAM_ERRORS as exc:
            raise await asyncio.to_thread(self._fail, intake.id, provider_id, exc) from exc
        finally:
            await upstream.aclose()

        text = "".join(parts).strip()
        if not text:
            raise await asyncio.to_thread(self._fail, intake.id, provider_id, None)
        summary = await asyncio.to_thread(
            self._persist,
            intake,
            text=text,
            model_name=model.name,
            tokens_used=None,
            actor=provider_id,
        )
        yield CompletedEvent(summary=summary)

    async def generate_in_background(self, intake_id: str) -> None:
        try:
            await self.generate(intake_id)
        except IntakeError as exc:
            # Failures are already audited; the provider can retry on demand.
            logger.warning("Background summary not generated", intake_id=intake_id, code=exc.code)

    def get_summary(self, summary_id: str, provider_id: str) -> Summary:
        summary = self.summaries.get_for_provider(summary_id, provider_id)
        if summary is None:
            raise NotFound("Summary not found.")
        return summary

    def apply_doctor_edits(self, summary_id: str, provider_id: str, edits: DoctorEdits) -> Summary:
        summary = self.get_summary(summary_id, provider_id)
        added = []
        for flag in edits.added_red_flags:
            if flag.severity not in SEVERITIES:
                raise InvalidInput(f"Unknown red flag severity '{flag.severity}'.")
            if not flag.flag.strip():
                raise InvalidInput("Added red flags need a description.")
            added.append(replace(flag, source="manual"))
        overlay = replace(edits, added_red_flags=tuple(added))

        self.summaries.append_edits(summary_id=summary.id, provider_id=provider_id, edits=overlay, now=utc_now())
        self.audit.record(
            actor=provider_id,
            action="SUMMARY_EDITED",
            entity_type="summary",
            entity_id=summary.id,
            details={
                "dismissed": list(overlay.dismissed_red_flags),
                "added": len(overlay.added_red_flags),
            },
        )
        logger.info("Summary edited", summary_id=summary.id, provider_id=provider_id)
        return self.get_summary(summary.id, provider_id)
