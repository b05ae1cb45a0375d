from __future__ import annotations

import hashlib
import json
import os
import re
import uuid
from datetime import date
from pathlib import Path
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, Header, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field, JsonValue
from pydantic.alias_generators import to_camel

from intake_ai import ChunkEvent, SummaryPipeline, build_summary_model
from intake_core import (
    DoctorEdits,
    IntakeError,
    IntakeSubmissionGate,
    InvalidInput,
    LinkVerifier,
    NotFound,
    RedFlag,
    RedFlagScanner,
    TokenIssuer,
    token_fingerprint,
)
from intake_core.time_utils import to_iso
from intake_core.tokens import DEFAULT_LINK_TTL_SECONDS
from intake_core.verifier import normalize_date_of_birth
from intake_records import AuditLog, IntakeLinkStore, IntakeStore, PatientStore, SQLiteIntakeDB, SummaryStore
from logging_config import configure_logging, get_logger, log_request_context

_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _load_local_env_file(path: Path) -> None:
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not _ENV_KEY_RE.fullmatch(key):
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        os.environ.setdefault(key, value)


def _bootstrap_local_env() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    for candidate in (repo_root / ".env", repo_root / "backend/.env"):
        if candidate.exists():
            _load_local_env_file(candidate)


_bootstrap_local_env()
configure_logging()
logger = get_logger("intake.api")


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    return int(raw) if raw else default


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    return float(raw) if raw else default


class IntakeApp:
    def __init__(self) -> None:
        db_path = os.getenv(
            "INTAKE_DB_PATH",
            str((Path(__file__).resolve().parent / "intake.sqlite")),
        )
        self.db = SQLiteIntakeDB(db_path)
        self.patients = PatientStore(self.db)
        self.links = IntakeLinkStore(self.db)
        self.intakes = IntakeStore(self.db)
        self.summaries = SummaryStore(self.db)
        self.audit = AuditLog(self.db)
        self.scanner = RedFlagScanner()

        self.issuer = TokenIssuer(
            links=self.links,
            patients=self.patients,
            audit=self.audit,
            public_base_url=os.getenv("INTAKE_PUBLIC_BASE_URL", "https://intakeai.app"),
            default_ttl_seconds=_env_int("INTAKE_LINK_TTL_SECONDS", DEFAULT_LINK_TTL_SECONDS),
        )
        self.verifier = LinkVerifier(
            links=self.links,
            patients=self.patients,
            audit=self.audit,
            verification_max_age_seconds=_env_int("INTAKE_VERIFICATION_MAX_AGE_SECONDS", 0),
        )
        self.gate = IntakeSubmissionGate(
            links=self.links,
            intakes=self.intakes,
            verifier=self.verifier,
            scanner=self.scanner,
            audit=self.audit,
        )

        timeout_seconds = _env_float("INTAKE_SUMMARY_TIMEOUT_SECONDS", 60.0)
        self.summary_pipeline = SummaryPipeline(
            intakes=self.intakes,
            summaries=self.summaries,
            audit=self.audit,
            model=build_summary_model(timeout_seconds),
            timeout_seconds=timeout_seconds,
            retries=_env_int("INTAKE_SUMMARY_RETRIES", 1),
        )
        self.auto_summary = _env_flag("INTAKE_AUTO_SUMMARY", True)

    @property
    def summary_model_name(self) -> str | None:
        model = self.summary_pipeline.model
        return model.name if model is not None else None


_LINK_PATH_RE = re.compile(r"(/intake-links/)([^/]+)")
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


def _masked_path(path: str) -> str:
    return _LINK_PATH_RE.sub(lambda match: f"{match.group(1)}fp:{token_fingerprint(match.group(2))}", path)


def get_container(request: Request) -> IntakeApp:
    return request.app.state.container


_TRUSTED_USER_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:@-]{1,63}$")


def _validated_trusted_user_id(x_user_id: str) -> str:
    candidate = x_user_id.strip()
    if not candidate or not _TRUSTED_USER_ID_RE.fullmatch(candidate):
        raise HTTPException(status_code=400, detail="Invalid X-User-Id")
    return candidate


def get_provider_id(auth_header: str | None) -> str:
    raw = (auth_header or "").replace("Bearer", "", 1).strip()
    if not raw:
        if os.getenv("ALLOW_ANON", "false").lower() == "true":
            return "demo-provider"
        raise HTTPException(status_code=401, detail="Missing Authorization")
    # Bearer tokens are opaque identities; nothing here trusts unverified claims.
    if len(raw) > 96:
        return f"token_{hashlib.sha256(raw.encode('utf-8')).hexdigest()[:24]}"
    return raw


def resolve_provider_id(authorization: str | None, x_user_id: str | None) -> str:
    if x_user_id is not None:
        return _validated_trusted_user_id(x_user_id)
    return get_provider_id(authorization)


def _emit_sse(data: dict[str, Any]) -> str:
    return f"data: {json.dumps(data)}\n\n"


def _invalid_input_message(exc: RequestValidationError) -> str:
    fields = []
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part not in {"body", "query", "path", "header"}]
        if location:
            fields.append(".".join(location))
    if not fields:
        return InvalidInput.default_message
    return f"Invalid value for: {', '.join(dict.fromkeys(fields))}."


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PatientCreateRequest(CamelModel):
    first_name: str = Field(min_length=1, max_length=120)
    last_name: str = Field(min_length=1, max_length=120)
    date_of_birth: str | None = None


class IntakeLinkCreateRequest(CamelModel):
    patient_id: str
    ttl: int | None = None
    requires_verification: bool = True


class VerifyRequest(CamelModel):
    shared_secret: str = ""


class SubmitRequest(CamelModel):
    responses: JsonValue = Field(default_factory=dict)
    consent: bool = False


class GenerateSummaryRequest(CamelModel):
    intake_id: str


class RedFlagPayload(CamelModel):
    flag: str
    severity: str
    category: str | None = None
    details: str | None = None
    recommendation: str | None = None


class DoctorEditsRequest(CamelModel):
    chief_complaint: str | None = None
    relevant_history: str | None = None
    additional_notes: str | None = None
    dismissed_red_flags: list[str] = Field(default_factory=list)
    added_red_flags: list[RedFlagPayload] = Field(default_factory=list)

    def to_edits(self) -> DoctorEdits:
        return DoctorEdits(
            chief_complaint=self.chief_complaint,
            relevant_history=self.relevant_history,
            additional_notes=self.additional_notes,
            dismissed_red_flags=tuple(self.dismissed_red_flags),
            added_red_flags=tuple(
                RedFlag(
                    flag=item.flag,
                    severity=item.severity,
                    source="manual",
                    category=item.category,
                    details=item.details,
                    recommendation=item.recommendation,
                )
                for item in self.added_red_flags
            ),
        )


def _normalized_dob(value: str | None) -> str | None:
    if value is None or not value.strip():
        return None
    normalized = normalize_date_of_birth(value)
    try:
        date.fromisoformat(normalized)
    except ValueError:
        raise InvalidInput("dateOfBirth must be a valid date (YYYY-MM-DD).") from None
    return normalized



router = APIRouter()


@router.get("/health")
def health(container: IntakeApp = Depends(get_container)):
    return {"status": "ok", "summaryModel": container.summary_model_name}


@router.post("/patients", status_code=201)
def create_patient(
    payload: PatientCreateRequest,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
    container: IntakeApp = Depends(get_container),
):
    provider_id = resolve_provider_id(authorization, x_user_id)
    patient = container.patients.register(
        provider_id=provider_id,
        first_name=payload.first_name,
        last_name=payload.last_name,
        date_of_birth=_normalized_dob(payload.date_of_birth),
    )
    return {"patientId": patient["id"]}


@router.post("/intake-links", status_code=201)
def create_intake_link(
    payload: IntakeLinkCreateRequest,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
    container: IntakeApp = Depends(get_container),
):
    provider_id = resolve_provider_id(authorization, x_user_id)
    link = container.issuer.issue_link(
        provider_id=provider_id,
        patient_id=payload.patient_id,
        ttl_seconds=payload.ttl,
        requires_verification=payload.requires_verification,
    )
    return {
        "id": link.id,
        "token": link.token,
        "url": container.issuer.link_url(link.token),
        "expiresAt": to_iso(link.expires_at),
        "requiresVerification": link.requires_verification,
    }


@router.get("/intake-links/{token}")
def get_intake_link(token: str, container: IntakeApp = Depends(get_container)):
    link, display = container.verifier.describe(token)
    return {
        "patient": display.as_payload(),
        "expiresAt": to_iso(link.expires_at),
        "requiresVerification": link.requires_verification,
        "attemptsRemaining": link.attempts_remaining,
    }


@router.post("/intake-links/{token}/verify")
def verify_intake_link(token: str, payload: VerifyRequest, container: IntakeApp = Depends(get_container)):
    result = container.verifier.verify(token, payload.shared_secret)
    return result.as_payload()


@router.post("/intake-links/{token}/submit", status_code=201)
def submit_intake(
    token: str,
    payload: SubmitRequest,
    background_tasks: BackgroundTasks,
    container: IntakeApp = Depends(get_container),
):
    result = container.gate.submit(token, payload.responses, payload.consent)
    if container.auto_summary and container.summary_pipeline.model is not None:
        background_tasks.add_task(container.summary_pipeline.generate_in_background, result.intake.id)
    return {"intakeId": result.intake.id}


@router.get("/intakes/{intake_id}")
def get_intake(
    intake_id: str,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
    container: IntakeApp = Depends(get_container),
):
    provider_id = resolve_provider_id(authorization, x_user_id)
    intake = container.intakes.get_for_provider(intake_id, provider_id)
    if intake is None:
        raise NotFound("Intake not found.")
    summary = container.summaries.get_by_intake(intake.id)
    return {
        "intake": intake.as_payload(),
        "redFlags": [flag.as_payload() for flag in container.intakes.red_flags_for(intake.id)],
        "summaryId": summary.id if summary else None,
    }


@router.post("/summaries/generate")
async def generate_summary(
    payload: GenerateSummaryRequest,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
    container: IntakeApp = Depends(get_container),
):
    provider_id = resolve_provider_id(authorization, x_user_id)
    summary = await container.summary_pipeline.generate(payload.intake_id, provider_id=provider_id)
    return {"summary": summary.as_payload()}


@router.post("/summaries/generate/stream")
async def generate_summary_stream(
    payload: GenerateSummaryRequest,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
    container: IntakeApp = Depends(get_container),
):
    provider_id = resolve_provider_id(authorization, x_user_id)
    intake = await run_in_threadpool(container.intakes.get_for_provider, payload.intake_id, provider_id)
    if intake is None:
        raise NotFound("Intake not found.")

    async def event_stream():
        events = container.summary_pipeline.generate_streaming(payload.intake_id, provider_id=provider_id)
        try:
            async for event in events:
                if isinstance(event, ChunkEvent):
                    yield _emit_sse({"chunk": event.text, "done": False})
                else:
                    yield _emit_sse({"done": True, "summaryId": event.summary.id})
        except IntakeError as exc:
            yield _emit_sse({"error": exc.message, "code": exc.code, "done": True})
        except Exception:
            logger.exception("Summary stream error", intake_id=payload.intake_id)
            yield _emit_sse({"error": "Summary pipeline error.", "code": "INTERNAL_ERROR", "done": True})
        finally:
            await events.aclose()

    return StreamingResponse(event_stream(), media_type="text/event-stream")


@router.get("/summaries/{summary_id}")
def get_summary(
    summary_id: str,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
    container: IntakeApp = Depends(get_container),
):
    provider_id = resolve_provider_id(authorization, x_user_id)
    summary = container.summary_pipeline.get_summary(summary_id, provider_id)
    return {"summary": summary.as_payload()}


@router.patch("/summaries/{summary_id}/edits")
def edit_summary(
    summary_id: str,
    payload: DoctorEditsRequest,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
    container: IntakeApp = Depends(get_container),
):
    provider_id = resolve_provider_id(authorization, x_user_id)
    summary = container.summary_pipeline.apply_doctor_edits(summary_id, provider_id, payload.to_edits())
    return {"summary": summary.as_payload()}


@router.get("/summaries/{summary_id}/edits")
def summary_edit_history(
    summary_id: str,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
    container: IntakeApp = Depends(get_container),
):
    provider_id = resolve_provider_id(authorization, x_user_id)
    summary = container.summary_pipeline.get_summary(summary_id, provider_id)
    return {"summaryId": summary.id, "edits": container.summaries.edit_history(summary.id)}


def create_app(container: IntakeApp | None = None) -> FastAPI:
    """Build the API around one IntakeApp, reachable from handlers via app.state."""
    app = FastAPI(title="Patient Intake Backend")
    app.state.container = container or IntakeApp()

    allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[origin.strip() for origin in allowed_origins],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def bind_request_context(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or ""
        if not _REQUEST_ID_RE.fullmatch(request_id):
            request_id = uuid.uuid4().hex
        log_request_context(request_id, request.method, _masked_path(request.url.path))
        response = await call_next(request)
        response.headers["X-Request-Id"] = request_id
        return response

    @app.exception_handler(IntakeError)
    async def intake_error_handler(request: Request, exc: IntakeError) -> JSONResponse:
        logger.info("Request rejected", code=exc.code, status_code=exc.status_code)
        return JSONResponse(status_code=exc.status_code, content=exc.as_payload())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        # Submitted values stay out of both the response and the logs.
        error = InvalidInput(_invalid_input_message(exc))
        logger.info("Request rejected", code=error.code, status_code=error.status_code)
        return JSONResponse(status_code=error.status_code, content=error.as_payload())

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error", exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={"error": {"code": "INTERNAL_ERROR", "message": "Internal server error."}},
        )

    app.include_router(router)
    return app


app = create_app()
