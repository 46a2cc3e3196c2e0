from __future__ import annotations

import asyncio
import os
from typing import Any

import pytest
from fastapi.testclient import TestClient

import selfstudy_ingest.core.security as security
from documents import docx_bytes
from selfstudy_ingest.core.config import get_settings
from selfstudy_ingest.main import app
from selfstudy_ingest.services.gateway import ClassifierConfig, get_classifier_config
from selfstudy_ingest.services.records import ImportJob, SubmissionRecord
from selfstudy_ingest.services.repository import get_repository
from selfstudy_ingest.services.store import InMemoryImportRepository

DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
AUTH = {"Authorization": "Bearer token"}


@pytest.fixture
def repository() -> InMemoryImportRepository:
    repo = InMemoryImportRepository()
    asyncio.run(repo.save_submission(SubmissionRecord(id="submission-1")))
    return repo


@pytest.fixture
def api_client(repository: InMemoryImportRepository) -> TestClient:
    os.environ["SSI_IDENTITY_URL"] = "https://identity.example.org"
    os.environ["SSI_IDENTITY_ANON_KEY"] = "anon-key"
    get_settings.cache_clear()

    app.dependency_overrides[get_repository] = lambda: repository
    app.dependency_overrides[get_classifier_config] = lambda: None

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()
    os.environ.pop("SSI_IDENTITY_URL", None)
    os.environ.pop("SSI_IDENTITY_ANON_KEY", None)
    get_settings.cache_clear()


def _mock_identity_user(monkeypatch: pytest.MonkeyPatch, role: str) -> None:
    async def _fake_fetch(**_: Any) -> dict[str, Any]:
        return {"id": f"{role}-1", "app_metadata": {"role": role}}

    monkeypatch.setattr(security, "_fetch_identity_user", _fake_fetch)


def _narrative_docx() -> bytes:
    return docx_bytes(
        [
            ("heading1", "Standard 3"),
            ("paragraph", "Faculty credentials include a terminal degree."),
            ("heading1", "Weather Notes"),
            ("paragraph", "The weather was pleasant."),
        ]
    )


def _upload(
    client: TestClient,
    data: bytes,
    filename: str = "narrative.docx",
    submission_id: str | None = "submission-1",
):
    form = {"submission_id": submission_id} if submission_id is not None else {}
    return client.post(
        "/imports/upload",
        files={"file": (filename, data, DOCX_MIME)},
        data=form,
        headers=AUTH,
    )


def test_upload_requires_bearer_token(api_client: TestClient) -> None:
    response = api_client.post("/imports/upload", files={"file": ("narrative.docx", b"x", DOCX_MIME)})
    assert response.status_code == 401


def test_upload_processes_document_and_reports_status(
    api_client: TestClient, monkeypatch: pytest.MonkeyPatch
) -> None:
    _mock_identity_user(monkeypatch, "user")

    response = _upload(api_client, _narrative_docx())

    assert response.status_code == 202
    body = response.json()
    assert body["status"] == "processing"
    import_id = body["importId"]

    summary = api_client.get(f"/imports/{import_id}", headers=AUTH)
    assert summary.status_code == 200
    summary_body = summary.json()
    assert summary_body["status"] == "completed"
    assert summary_body["uploadedBy"] == "user-1"
    assert summary_body["mappedCount"] == 1
    assert summary_body["unmappedCount"] == 1
    assert summary_body["extractedContent"]["sectionCount"] == 2

    progress = api_client.get(f"/imports/{import_id}/status", headers=AUTH)
    assert progress.status_code == 200
    progress_body = progress.json()
    assert progress_body["phase"] == "completed"
    assert progress_body["recentMappings"][0]["standardCode"] == "3"

    sections = api_client.get(f"/imports/{import_id}/sections", headers=AUTH)
    assert sections.status_code == 200
    previews = sections.json()
    assert [preview["heading"] for preview in previews] == ["Standard 3", "Weather Notes"]
    assert previews[0]["mapping"]["specCode"] == "a"
    assert previews[1]["unmapped"]["reason"] == "No pattern found"


@pytest.mark.parametrize(
    ("filename", "submission_id", "expected"),
    [
        ("notes.txt", "submission-1", 400),
        ("narrative.docx", None, 400),
        ("narrative.docx", "submission-404", 404),
    ],
)
def test_upload_rejects_bad_requests(
    api_client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
    filename: str,
    submission_id: str | None,
    expected: int,
) -> None:
    _mock_identity_user(monkeypatch, "user")

    response = _upload(api_client, _narrative_docx(), filename=filename, submission_id=submission_id)

    assert response.status_code == expected


def test_upload_conflicts_with_active_import(
    api_client: TestClient,
    repository: InMemoryImportRepository,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _mock_identity_user(monkeypatch, "user")
    asyncio.run(
        repository.create_job(
            ImportJob(
                id="import-active",
                submission_id="submission-1",
                original_filename="earlier.docx",
                file_type="docx",
                uploaded_by="user-1",
            )
        )
    )

    response = _upload(api_client, _narrative_docx())

    assert response.status_code == 409


def test_unknown_import_is_not_found(api_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    _mock_identity_user(monkeypatch, "user")

    assert api_client.get("/imports/missing", headers=AUTH).status_code == 404
    assert api_client.get("/imports/missing/status", headers=AUTH).status_code == 404
    assert api_client.delete("/imports/missing", headers=AUTH).status_code == 404


def test_review_routes_require_reviewer_role(api_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    _mock_identity_user(monkeypatch, "user")
    import_id = _upload(api_client, _narrative_docx()).json()["importId"]
    section_id = api_client.get(f"/imports/{import_id}/sections", headers=AUTH).json()[1]["id"]

    mapped = api_client.post(
        f"/imports/{import_id}/map",
        json={"extractedSectionId": section_id, "standardCode": "1", "specCode": "b"},
        headers=AUTH,
    )
    reviewed = api_client.put(
        f"/imports/{import_id}/unmapped/{section_id}",
        json={"action": "discard"},
        headers=AUTH,
    )
    applied = api_client.post(f"/imports/{import_id}/apply", headers=AUTH)

    assert mapped.status_code == 403
    assert reviewed.status_code == 403
    assert applied.status_code == 403


def test_review_and_apply_flow(
    api_client: TestClient,
    repository: InMemoryImportRepository,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _mock_identity_user(monkeypatch, "reviewer")
    import_id = _upload(api_client, _narrative_docx()).json()["importId"]

    unmapped = api_client.get(f"/imports/{import_id}/unmapped", headers=AUTH)
    assert unmapped.status_code == 200
    items = unmapped.json()
    assert len(items) == 1
    assert items[0]["heading"] == "Weather Notes"
    assert items[0]["reviewAction"] == "pending"
    section_id = items[0]["extractedSectionId"]

    missing_code = api_client.put(
        f"/imports/{import_id}/unmapped/{section_id}",
        json={"action": "assign"},
        headers=AUTH,
    )
    assert missing_code.status_code == 400

    assigned = api_client.put(
        f"/imports/{import_id}/unmapped/{section_id}",
        json={"action": "assign", "standardCode": "1", "specCode": "b"},
        headers=AUTH,
    )
    assert assigned.status_code == 200
    assert assigned.json()["reviewAction"] == "assigned"
    assert assigned.json()["reviewer"] == "reviewer-1"
    assert api_client.get(f"/imports/{import_id}/unmapped", headers=AUTH).json() == []

    first = api_client.post(f"/imports/{import_id}/apply", headers=AUTH)
    second = api_client.post(f"/imports/{import_id}/apply", headers=AUTH)

    assert first.status_code == 200
    assert (first.json()["applied"], first.json()["alreadyApplied"]) == (2, 0)
    assert (second.json()["applied"], second.json()["alreadyApplied"]) == (0, 2)

    submission = asyncio.run(repository.get_submission("submission-1"))
    assert "Faculty credentials include a terminal degree." in submission.narratives["3"]["a"].content
    assert submission.narratives["1"]["b"].content.startswith("Weather Notes")
    assert submission.import_ids == [import_id]

    assert api_client.delete(f"/imports/{import_id}", headers=AUTH).status_code == 409


def test_manual_map_route(api_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    _mock_identity_user(monkeypatch, "admin")
    import_id = _upload(api_client, _narrative_docx()).json()["importId"]
    section_id = api_client.get(f"/imports/{import_id}/sections", headers=AUTH).json()[0]["id"]

    response = api_client.post(
        f"/imports/{import_id}/map",
        json={"extractedSectionId": section_id, "standardCode": "6", "specCode": "c", "fieldType": "evidence"},
        headers=AUTH,
    )
    unknown = api_client.post(
        f"/imports/{import_id}/map",
        json={"extractedSectionId": "missing", "standardCode": "6", "specCode": "c"},
        headers=AUTH,
    )

    assert response.status_code == 200
    body = response.json()
    assert (body["standardCode"], body["specCode"], body["fieldType"]) == ("6", "c", "evidence")
    assert body["provenance"] == "manual"
    assert body["mappedBy"] == "admin-1"
    assert unknown.status_code == 404


def test_apply_requires_completed_import(
    api_client: TestClient,
    repository: InMemoryImportRepository,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _mock_identity_user(monkeypatch, "reviewer")
    asyncio.run(
        repository.create_job(
            ImportJob(
                id="import-pending",
                submission_id="submission-1",
                original_filename="narrative.docx",
                file_type="docx",
                uploaded_by="user-1",
            )
        )
    )

    response = api_client.post("/imports/import-pending/apply", headers=AUTH)
    cancelled = api_client.delete("/imports/import-pending", headers=AUTH)

    assert response.status_code == 409
    assert cancelled.status_code == 200
    assert cancelled.json() == {"importId": "import-pending", "status": "cancelled"}
    assert "import-pending" not in repository.jobs


def _callback_payload(document_id: str) -> dict[str, Any]:
    return {
        "type": "section_result",
        "jobId": "remote-1",
        "documentId": document_id,
        "moreData": False,
        "sectionIndex": 0,
        "totalSections": 1,
        "section": {
            "heading": "Standard 6",
            "richTextContent": "<p>Faculty</p>",
            "match": {
                "status": "matched",
                "standard": {"code": "6", "title": "Faculty"},
                "subspecification": {"code": "a"},
                "confidence": 88,
            },
        },
    }


def test_document_matcher_callback_route(
    api_client: TestClient,
    repository: InMemoryImportRepository,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("SSI_CALLBACK_SECRET", "shared-secret")
    get_settings.cache_clear()
    app.dependency_overrides[get_classifier_config] = lambda: ClassifierConfig(
        url="https://matcher.example.org/api/match",
        callback_url="https://ingest.example.org/webhooks/document-matcher/callback",
        taxonomy_name="CSHSE Standards",
        chunk_delay_seconds=0,
    )

    async def seed() -> None:
        await repository.create_job(
            ImportJob(
                id="import-external",
                submission_id="submission-1",
                original_filename="narrative.docx",
                file_type="docx",
                uploaded_by="user-1",
            )
        )
        await repository.mutate_job(
            "import-external",
            lambda job: job.mark_processing(taxonomy_name="CSHSE Standards"),
        )

    asyncio.run(seed())
    secret = {"X-Webhook-Secret": "shared-secret"}

    unauthorized = api_client.post(
        "/webhooks/document-matcher/callback",
        json=_callback_payload("import-external"),
    )
    unknown = api_client.post(
        "/webhooks/document-matcher/callback",
        json=_callback_payload("import-missing"),
        headers=secret,
    )
    accepted = api_client.post(
        "/webhooks/document-matcher/callback",
        json=_callback_payload("import-external"),
        headers=secret,
    )

    assert unauthorized.status_code == 401
    assert unknown.status_code == 404
    assert accepted.status_code == 200
    assert accepted.json() == {"received": True, "status": "completed", "action": "completed"}

    job = asyncio.run(repository.get_job("import-external"))
    assert job.mappings[0].standard_code == "6"
    assert job.mappings[0].confidence == pytest.approx(0.88)


def test_callback_rejected_when_classifier_disabled(api_client: TestClient) -> None:
    response = api_client.post(
        "/webhooks/document-matcher/callback",
        json=_callback_payload("import-external"),
    )
    assert response.status_code == 503


def test_connection_probe_requires_reviewer_and_configuration(
    api_client: TestClient, monkeypatch: pytest.MonkeyPatch
) -> None:
    _mock_identity_user(monkeypatch, "user")
    assert api_client.post("/webhooks/document-matcher/test", headers=AUTH).status_code == 403

    _mock_identity_user(monkeypatch, "reviewer")
    assert api_client.post("/webhooks/document-matcher/test", headers=AUTH).status_code == 503
