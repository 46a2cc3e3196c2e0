"""Chunked asynchronous exchange with the external document classifier.

Outbound, a document's HTML is split at its top-level headings and each
chunk is posted as an independent request sharing one remote job id.
Inbound, the classifier calls back once per chunk; each callback is applied
to the import job as a single atomic read-modify-write.
"""
from __future__ import annotations

import asyncio
import base64
import html
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

import httpx

from selfstudy_ingest.core.config import Settings, get_settings
from selfstudy_ingest.core.telemetry import import_span
from selfstudy_ingest.schemas.callbacks import DocumentMatcherCallback, SectionMatch
from selfstudy_ingest.services import reconciler
from selfstudy_ingest.services.errors import ExternalServiceError
from selfstudy_ingest.services.mapper import MappingSuggestion
from selfstudy_ingest.services.records import ExtractedSection, ImportJob, utcnow

logger = logging.getLogger(__name__)

AUTH_TYPES = ("none", "api_key", "bearer")
NOT_RETURNED_REASON = "Not returned by external classifier"
NO_MATCH_REASON = "No matching standard found"
SECTION_ERROR_REASON = "Error processing section"
DEFAULT_ERROR_MESSAGE = "External classifier reported an error"

_HEADING_TAG_RE = re.compile(r"<h([1-6])>")


@dataclass(frozen=True, slots=True)
class ClassifierConfig:
    url: str
    callback_url: str
    taxonomy_name: str
    auth_type: str = "none"
    api_key: str | None = None
    bearer_token: str | None = None
    extra_headers: dict[str, str] = field(default_factory=dict)
    timeout_seconds: float = 30.0
    chunk_delay_seconds: float = 0.5
    confidence_threshold: int = 50

    @property
    def acceptance_threshold(self) -> float:
        return self.confidence_threshold / 100

    def request_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", **self.extra_headers}
        if self.auth_type == "api_key" and self.api_key:
            headers["X-API-Key"] = self.api_key
        elif self.auth_type == "bearer" and self.bearer_token:
            headers["Authorization"] = f"Bearer {self.bearer_token}"
        return headers

    @classmethod
    def from_settings(cls, settings: Settings) -> ClassifierConfig | None:
        if not settings.classifier_enabled:
            return None
        if not settings.classifier_url or not settings.callback_base_url:
            logger.warning("classifier enabled but SSI_CLASSIFIER_URL or SSI_CALLBACK_BASE_URL is missing")
            return None
        auth_type = settings.classifier_auth_type if settings.classifier_auth_type in AUTH_TYPES else "none"
        return cls(
            url=settings.classifier_url,
            callback_url=f"{settings.callback_base_url.rstrip('/')}{settings.callback_path}",
            taxonomy_name=settings.default_taxonomy_name,
            auth_type=auth_type,
            api_key=settings.classifier_api_key,
            bearer_token=settings.classifier_bearer_token,
            extra_headers=_parse_extra_headers(settings.classifier_headers_json),
            timeout_seconds=settings.classifier_timeout_seconds,
            chunk_delay_seconds=settings.classifier_chunk_delay_seconds,
            confidence_threshold=settings.classifier_confidence_threshold,
        )


def get_classifier_config() -> ClassifierConfig | None:
    return ClassifierConfig.from_settings(get_settings())


@dataclass(frozen=True, slots=True)
class HtmlChunk:
    index: int
    heading: str | None
    html: str


@dataclass(frozen=True, slots=True)
class CallbackOutcome:
    status: str
    action: str


@dataclass(frozen=True, slots=True)
class ConnectionProbe:
    success: bool
    status_code: int | None
    latency_ms: float | None
    error: str | None = None


def split_html_chunks(html_content: str) -> list[HtmlChunk]:
    """Split rendered HTML at the highest-ranking heading level present."""
    levels = [int(level) for level in _HEADING_TAG_RE.findall(html_content)]
    if not levels:
        return [HtmlChunk(index=0, heading=None, html=html_content.strip())]

    top = min(levels)
    matches = list(re.finditer(rf"<h{top}>(.*?)</h{top}>", html_content, re.DOTALL))
    pieces: list[tuple[str | None, str]] = []
    preamble = html_content[: matches[0].start()].strip()
    if preamble:
        pieces.append((None, preamble))
    for position, match in enumerate(matches):
        end = matches[position + 1].start() if position + 1 < len(matches) else len(html_content)
        pieces.append((html.unescape(match.group(1)).strip(), html_content[match.start() : end].strip()))
    return [HtmlChunk(index=index, heading=heading, html=body) for index, (heading, body) in enumerate(pieces)]


def build_chunk_payload(
    config: ClassifierConfig,
    *,
    import_id: str,
    remote_job_id: str,
    chunk: HtmlChunk,
    total: int,
) -> dict[str, Any]:
    return {
        "callbackUrl": config.callback_url,
        "taxonomyName": config.taxonomy_name,
        "documentId": import_id,
        "jobId": remote_job_id,
        "sectionIndex": chunk.index,
        "totalSections": total,
        "sectionHeading": chunk.heading or f"Section {chunk.index + 1}",
        "encodedHtml": base64.b64encode(chunk.html.encode("utf-8")).decode("ascii"),
        "encoding": "base64",
        "moreDataFollows": chunk.index < total - 1,
        "options": {"confidenceThreshold": config.confidence_threshold},
    }


class ExternalMappingGateway:
    def __init__(self, repository: Any, config: ClassifierConfig) -> None:
        self.repository = repository
        self.config = config

    async def send_document(
        self,
        import_id: str,
        html_content: str,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> str:
        chunks = split_html_chunks(html_content)
        remote_job_id = str(uuid4())

        def record_send(job: ImportJob) -> None:
            job.sent_at = utcnow()
            job.external_job_id = remote_job_id
            job.total_chunks = len(chunks)
            job.received_chunks = 0
            job.received_indices = []

        await self.repository.mutate_job(import_id, record_send)
        logger.info(
            "classifier send started import_id=%s job_id=%s chunks=%s",
            import_id,
            remote_job_id,
            len(chunks),
        )

        if client is not None:
            await self._send_chunks(client, import_id, remote_job_id, chunks)
        else:
            async with httpx.AsyncClient(timeout=self.config.timeout_seconds) as temp_client:
                await self._send_chunks(temp_client, import_id, remote_job_id, chunks)
        return remote_job_id

    async def _send_chunks(
        self,
        client: httpx.AsyncClient,
        import_id: str,
        remote_job_id: str,
        chunks: list[HtmlChunk],
    ) -> None:
        total = len(chunks)
        headers = self.config.request_headers()
        for chunk in chunks:
            if chunk.index > 0 and self.config.chunk_delay_seconds > 0:
                await asyncio.sleep(self.config.chunk_delay_seconds)
            payload = build_chunk_payload(
                self.config,
                import_id=import_id,
                remote_job_id=remote_job_id,
                chunk=chunk,
                total=total,
            )
            attributes = {"classifier.chunk_index": chunk.index, "classifier.total_chunks": total}
            with import_span("classifier.send_chunk", import_id=import_id, attributes=attributes) as span:
                try:
                    response = await client.post(
                        self.config.url,
                        json=payload,
                        headers=headers,
                        timeout=self.config.timeout_seconds,
                    )
                except httpx.TimeoutException as exc:
                    raise ExternalServiceError(
                        f"classifier request timed out on chunk {chunk.index + 1}/{total}"
                    ) from exc
                except httpx.HTTPError as exc:
                    raise ExternalServiceError(
                        f"classifier request failed on chunk {chunk.index + 1}/{total}: {exc}"
                    ) from exc
                span.set_attribute("http.status_code", response.status_code)

            if not response.is_success:
                raise ExternalServiceError(
                    f"classifier rejected chunk {chunk.index + 1}/{total} with HTTP {response.status_code}"
                )
            logger.info(
                "classifier chunk sent import_id=%s index=%s total=%s status=%s",
                import_id,
                chunk.index,
                total,
                response.status_code,
            )

    async def handle_callback(self, payload: DocumentMatcherCallback) -> CallbackOutcome:
        outcome = await self.repository.mutate_job(
            payload.document_id,
            lambda job: apply_callback(job, payload, self.config.acceptance_threshold),
        )
        logger.info(
            "classifier callback import_id=%s job_id=%s index=%s type=%s action=%s status=%s",
            payload.document_id,
            payload.job_id,
            payload.section_index,
            payload.type,
            outcome.action,
            outcome.status,
        )
        return outcome

    async def test_connection(self, *, client: httpx.AsyncClient | None = None) -> ConnectionProbe:
        if client is None:
            async with httpx.AsyncClient(timeout=self.config.timeout_seconds) as temp_client:
                return await self._probe(temp_client)
        return await self._probe(client)

    async def _probe(self, client: httpx.AsyncClient) -> ConnectionProbe:
        started_at = time.perf_counter()
        try:
            response = await client.post(
                self.config.url,
                json={"test": True, "timestamp": utcnow().isoformat()},
                headers=self.config.request_headers(),
                timeout=self.config.timeout_seconds,
            )
        except httpx.HTTPError as exc:
            logger.warning("classifier connection test failed url=%s error=%s", self.config.url, exc)
            return ConnectionProbe(success=False, status_code=None, latency_ms=None, error=str(exc) or type(exc).__name__)
        latency_ms = round((time.perf_counter() - started_at) * 1000.0, 2)
        return ConnectionProbe(
            success=response.is_success,
            status_code=response.status_code,
            latency_ms=latency_ms,
            error=None if response.is_success else f"HTTP {response.status_code}",
        )


def apply_callback(job: ImportJob, payload: DocumentMatcherCallback, threshold: float) -> CallbackOutcome:
    if job.is_terminal:
        return CallbackOutcome(status=job.status, action="ignored")

    if payload.type == "error" or payload.error:
        job.mark_failed(payload.error or DEFAULT_ERROR_MESSAGE)
        return CallbackOutcome(status=job.status, action="failed")

    if payload.job_id and payload.job_id != job.callback_job_id:
        _restart_results(job, payload)

    action = "acknowledged"
    if payload.type == "section_result":
        if payload.section is not None:
            action = "recorded" if _record_section(job, payload, threshold) else "duplicate"
        if payload.section_index not in job.received_indices:
            job.received_indices.append(payload.section_index)
        job.received_chunks = len(job.received_indices)
        job.total_chunks = max(job.total_chunks, job.received_chunks)

    if payload.type == "complete" or not payload.more_data:
        reconciler.sweep_unaccounted(job, NOT_RETURNED_REASON)
        job.mark_completed()
        action = "completed"
    return CallbackOutcome(status=job.status, action=action)


def _restart_results(job: ImportJob, payload: DocumentMatcherCallback) -> None:
    reconciler.clear_automatic(job)
    job.sections = [
        section
        for section in job.sections
        if section.origin != "callback"
        or job.mapping_for(section.id) is not None
        or job.unmapped_for(section.id) is not None
    ]
    job.callback_job_id = payload.job_id
    if payload.total_sections:
        job.total_chunks = payload.total_sections
    job.received_chunks = 0
    job.received_indices = []


def _record_section(job: ImportJob, payload: DocumentMatcherCallback, threshold: float) -> bool:
    external_key = f"{payload.job_id or job.callback_job_id}:{payload.section_index}"
    if any(section.external_key == external_key for section in job.sections):
        return False

    section_payload = payload.section
    match = section_payload.match
    confidence = _normalized_confidence(match)
    heading = section_payload.heading or f"Section {payload.section_index + 1}"
    content = f"<h2>{heading}</h2>\n{section_payload.rich_text_content}"
    section = ExtractedSection(
        id=str(uuid4()),
        page_number=payload.section_index + 1,
        start_offset=0,
        end_offset=len(content),
        section_type="narrative",
        content=content,
        confidence=confidence,
        heading=heading,
        origin="callback",
        external_key=external_key,
    )
    job.sections.append(section)
    reconciler.apply_suggestion(job, _suggestion_from_match(section.id, match, confidence), threshold)
    return True


def _suggestion_from_match(section_id: str, match: SectionMatch | None, confidence: float) -> MappingSuggestion:
    if match is None or match.status == "unmatched":
        reason = (match.rationale if match is not None else None) or NO_MATCH_REASON
        return MappingSuggestion(section_id=section_id, standard_code=None, spec_code=None, confidence=confidence, reason=reason)
    if match.status == "error":
        return MappingSuggestion(
            section_id=section_id,
            standard_code=None,
            spec_code=None,
            confidence=confidence,
            reason=match.error or SECTION_ERROR_REASON,
        )

    standard_code = match.standard.code.strip() if match.standard is not None else ""
    spec_code = match.subspecification.code.strip() if match.subspecification is not None else ""
    if not standard_code or not spec_code:
        return MappingSuggestion(
            section_id=section_id,
            standard_code=None,
            spec_code=None,
            confidence=confidence,
            reason=match.rationale or NO_MATCH_REASON,
        )
    return MappingSuggestion(
        section_id=section_id,
        standard_code=standard_code,
        spec_code=spec_code,
        confidence=confidence,
        reason=match.rationale,
    )


def _normalized_confidence(match: SectionMatch | None) -> float:
    if match is None:
        return 0.0
    return round(min(max(match.confidence / 100, 0.0), 1.0), 4)


def _parse_extra_headers(raw: str | None) -> dict[str, str]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("SSI_CLASSIFIER_HEADERS_JSON is not valid JSON; ignoring extra headers")
        return {}
    if not isinstance(parsed, dict):
        logger.warning("SSI_CLASSIFIER_HEADERS_JSON must be an object; ignoring extra headers")
        return {}
    return {str(key): str(value) for key, value in parsed.items()}
