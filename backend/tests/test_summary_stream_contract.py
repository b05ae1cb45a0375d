from __future__ import annotations

import asyncio

from fastapi.testclient import TestClient

from fake_models import FakeSummaryModel
from intake_helpers import create_patient, submitted_intake
from sse_utils import sse_payloads


def _payloads(response) -> list[dict]:
    return sse_payloads(response.text)


def test_stream_emits_chunks_then_done_with_summary_id(client, auth_headers, container):
    model = FakeSummaryModel()
    container.summary_pipeline.model = model
    headers = auth_headers("dr-a")
    intake_id = submitted_intake(client, headers)

    response = client.post("/summaries/generate/stream", headers=headers, json={"intakeId": intake_id})
    assert response.status_code == 200
    assert "text/event-stream" in response.headers.get("content-type", "")

    payloads = _payloads(response)
    chunks = payloads[:-1]
    assert all(payload["done"] is False for payload in chunks)
    assert "".join(payload["chunk"] for payload in chunks) == model.text
    final = payloads[-1]
    assert final["done"] is True
    assert "error" not in final

    summary = client.get(f"/summaries/{final['summaryId']}", headers=headers)
    assert summary.status_code == 200
    assert summary.json()["summary"]["intakeId"] == intake_id


def test_stream_for_existing_summary_completes_immediately(client, auth_headers, container):
    container.summary_pipeline.model = FakeSummaryModel()
    headers = auth_headers("dr-a")
    intake_id = submitted_intake(client, headers)
    generated = client.post("/summaries/generate", headers=headers, json={"intakeId": intake_id}).json()

    response = client.post("/summaries/generate/stream", headers=headers, json={"intakeId": intake_id})
    assert _payloads(response) == [{"done": True, "summaryId": generated["summary"]["id"]}]


def test_stream_upstream_failure_is_reported_as_terminal_error(client, auth_headers, container):
    container.summary_pipeline.model = FakeSummaryModel(stream_fail_after=2)
    headers = auth_headers("dr-a")
    intake_id = submitted_intake(client, headers)

    payloads = _payloads(client.post("/summaries/generate/stream", headers=headers, json={"intakeId": intake_id}))
    assert [payload["done"] for payload in payloads] == [False, False, True]
    assert payloads[-1]["code"] == "GENERATION_FAILED"
    assert payloads[-1]["error"]
    assert container.summaries.count_for_intake(intake_id) == 0


def test_stream_for_unknown_intake_is_not_found(client, auth_headers, container):
    container.summary_pipeline.model = FakeSummaryModel()
    response = client.post(
        "/summaries/generate/stream",
        headers=auth_headers("dr-a"),
        json={"intakeId": "int_missing"},
    )
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"


def test_generate_endpoint_reports_generation_failure(client, auth_headers, container):
    container.summary_pipeline.model = FakeSummaryModel(fail_times=10)
    headers = auth_headers("dr-a")
    intake_id = submitted_intake(client, headers)
    response = client.post("/summaries/generate", headers=headers, json={"intakeId": intake_id})
    assert response.status_code == 502
    assert response.json()["error"]["code"] == "GENERATION_FAILED"

    intake = client.get(f"/intakes/{intake_id}", headers=headers).json()
    assert intake["redFlags"]
    assert intake["summaryId"] is None


def test_auto_summary_runs_after_submission(client, auth_headers, container):
    container.summary_pipeline.model = FakeSummaryModel()
    container.auto_summary = True
    headers = auth_headers("dr-a")
    intake_id = submitted_intake(client, headers)

    intake = client.get(f"/intakes/{intake_id}", headers=headers).json()
    assert intake["summaryId"] is not None


def test_health_reports_model(client, container):
    assert client.get("/health").json() == {"status": "ok", "summaryModel": None}
    container.summary_pipeline.model = FakeSummaryModel()
    assert client.get("/health").json()["summaryModel"] == "fake:summary-model"


def test_client_disconnect_mid_stream_closes_upstream_and_stores_nothing(
    client, auth_headers, container, backend_module
):
    model = FakeSummaryModel()
    container.summary_pipeline.model = model
    intake_id = submitted_intake(client, auth_headers("dr-a"))

    async def read_two_events_then_disconnect():
        response = await backend_module.generate_summary_stream(
            backend_module.GenerateSummaryRequest(intake_id=intake_id),
            authorization="Bearer dr-a",
            x_user_id=None,
            container=container,
        )
        body = response.body_iterator
        received = [await body.__anext__(), await body.__anext__()]
        await body.aclose()
        return received

    received = asyncio.run(read_two_events_then_disconnect())
    assert [payload["done"] for payload in sse_payloads("".join(received))] == [False, False]
    assert model.chunks_sent == 2
    assert model.streams_closed == 1
    assert container.summaries.count_for_intake(intake_id) == 0

    intake = client.get(f"/intakes/{intake_id}", headers=auth_headers("dr-a")).json()
    assert intake["summaryId"] is None


def test_each_app_serves_its_own_container(backend_module, tmp_path, monkeypatch, auth_headers):
    headers = auth_headers("dr-a")
    monkeypatch.setenv("INTAKE_DB_PATH", str(tmp_path / "first.sqlite"))
    first = backend_module.create_app(backend_module.IntakeApp())
    monkeypatch.setenv("INTAKE_DB_PATH", str(tmp_path / "second.sqlite"))
    second = backend_module.create_app(backend_module.IntakeApp())
    assert first.state.container is not second.state.container

    with TestClient(first) as first_client, TestClient(second) as second_client:
        patient_id = create_patient(first_client, headers)
        assert first_client.post("/intake-links", headers=headers, json={"patientId": patient_id}).status_code == 201
        response = second_client.post("/intake-links", headers=headers, json={"patientId": patient_id})
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"
