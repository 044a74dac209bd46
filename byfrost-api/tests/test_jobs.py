from types import SimpleNamespace
from unittest.mock import MagicMock, patch
from uuid import uuid4

import pytest

from app.models import Case, WaInstance
from app.services import job_processor_service, job_service
from app.services.job_processor_service import (
    JobError,
    format_pendency_list,
    extract_fields_from_text,
    handle_ask_pendencies,
    handle_extract_fields,
    handle_ocr_image,
    handle_validate_fields,
    process_job_batch,
    run_ocr,
)
from app.services.result import Result

PROCESSOR = "app.services.job_processor_service"
TENANT_ID = uuid4()


def _job(job_type="VALIDATE_FIELDS", attempts=1, **payload):
    return {
        "id": uuid4(),
        "tenant_id": TENANT_ID,
        "type": job_type,
        "idempotency_key": f"{job_type}:x",
        "payload_json": payload,
        "attempts": attempts,
    }


def _case(**overrides):
    values = {
        "id": uuid4(),
        "tenant_id": TENANT_ID,
        "journey_id": uuid4(),
        "state": "new",
        "assigned_vendor_id": None,
        "counterpart_phone": "+5511987654321",
        "meta_json": {"instance_id": str(uuid4())},
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def _db_with(rows):
    """Mock session whose ``query(Model).filter(...).first()`` returns ``rows[Model]``."""
    db = MagicMock()

    def _query(model):
        query = MagicMock()
        query.filter.return_value.first.return_value = rows.get(model)
        return query

    db.query.side_effect = _query
    return db


class TestJobQueue:
    def test_job_key(self):
        assert job_service.build_job_key("OCR_IMAGE", "c1") == "OCR_IMAGE:c1"
        assert job_service.build_job_key("OCR_IMAGE", "c1", "3EB0") == "OCR_IMAGE:c1:3EB0"

    def test_enqueue_is_idempotent(self):
        db = MagicMock()
        db.execute.return_value.rowcount = 0
        inserted = job_service.enqueue_job(
            db, tenant_id=TENANT_ID, job_type="OCR_IMAGE", idempotency_key="OCR_IMAGE:c1", payload_json={}
        )
        assert inserted is False

    def test_claim_commits_and_returns_dicts(self):
        db = MagicMock()
        row = {"id": uuid4(), "tenant_id": TENANT_ID, "type": "OCR_IMAGE", "payload_json": {}, "attempts": 1}
        db.execute.return_value.mappings.return_value.all.return_value = [row]
        jobs = job_service.claim_pending_jobs(db, limit=5)
        assert jobs == [row]
        assert db.execute.call_args.args[1] == {"limit": 5}
        db.commit.assert_called_once()

    def test_retry_schedules_run_after(self):
        db = MagicMock()
        job_service.mark_job_status(db, job_id="j1", status="pending", last_error="boom", retry_in_seconds=30)
        params = db.execute.call_args.args[1]
        assert params["status"] == "pending"
        assert params["run_after"] is not None

    def test_release_stale_jobs(self):
        db = MagicMock()
        db.execute.side_effect = [SimpleNamespace(rowcount=1), SimpleNamespace(rowcount=2)]
        assert job_service.release_stale_jobs(db, stale_seconds=300, max_attempts=5) == {"released": 2, "failed": 1}
        db.commit.assert_called_once()


class TestProcessJobBatch:
    def _run(self, jobs, handler, **kwargs):
        with patch(f"{PROCESSOR}.job_service.claim_pending_jobs", return_value=jobs), patch(
            f"{PROCESSOR}.job_service.mark_job_status"
        ) as mark, patch.dict(job_processor_service.HANDLERS, {"VALIDATE_FIELDS": handler}):
            results = process_job_batch(MagicMock(), **kwargs)
        return results, mark

    def test_done(self):
        job = _job()
        results, mark = self._run([job], lambda db, job: "done")
        assert results == {"claimed": 1, "done": 1, "skipped": 0, "failed": 0, "retry_scheduled": 0}
        assert mark.call_args.kwargs == {"job_id": job["id"], "status": "done", "last_error": None}

    def test_skipped(self):
        results, mark = self._run([_job()], lambda db, job: "skipped")
        assert results["skipped"] == 1
        assert mark.call_args.kwargs["last_error"] == "skipped"

    def test_error_is_retried_with_backoff(self):
        handler = MagicMock(side_effect=JobError("case not ready"))
        results, mark = self._run([_job(attempts=2)], handler, retry_backoff_seconds=30)
        assert results["retry_scheduled"] == 1
        assert mark.call_args.kwargs["status"] == "pending"
        assert mark.call_args.kwargs["retry_in_seconds"] == 60
        assert "case not ready" in mark.call_args.kwargs["last_error"]

    def test_error_at_max_attempts_fails(self):
        handler = MagicMock(side_effect=RuntimeError("boom"))
        results, mark = self._run([_job(attempts=5)], handler, max_attempts=5)
        assert results["failed"] == 1
        assert mark.call_args.kwargs["status"] == "failed"

    def test_unknown_type_fails(self):
        results, mark = self._run([_job(job_type="SEND_FAX")], lambda db, job: "done")
        assert results["failed"] == 1
        assert "unknown type" in mark.call_args.kwargs["last_error"]


class TestOcr:
    def test_skipped_without_vision_key(self, monkeypatch):
        monkeypatch.setattr(job_processor_service.settings, "google_vision_api_key", None)
        db = _db_with({Case: _case()})
        job = _job("OCR_IMAGE", case_id="c1", media_url="https://cdn.example/p.jpg")
        assert handle_ocr_image(db, job) == "skipped"

    def test_stores_ocr_text(self, monkeypatch):
        monkeypatch.setattr(job_processor_service.settings, "google_vision_api_key", "key")
        case = _case()
        db = _db_with({Case: case})
        job = _job("OCR_IMAGE", case_id=str(case.id), media_url="https://cdn.example/p.jpg")
        with patch(f"{PROCESSOR}.run_ocr", return_value="PEDIDO 123") as ocr, patch(
            f"{PROCESSOR}.upsert_case_field"
        ) as field, patch(f"{PROCESSOR}.add_timeline_event") as timeline, patch(
            f"{PROCESSOR}.job_service.enqueue_job", return_value=True
        ) as enqueue:
            assert handle_ocr_image(db, job) == "done"
        ocr.assert_called_once_with("https://cdn.example/p.jpg")
        assert field.call_args.kwargs["value_text"] == "PEDIDO 123"
        assert field.call_args.kwargs["confidence"] == 0.85
        assert timeline.call_args.kwargs["event_type"] == "ocr_done"
        assert enqueue.call_args.kwargs["job_type"] == "EXTRACT_FIELDS"
        assert enqueue.call_args.kwargs["idempotency_key"] == f"EXTRACT_FIELDS:{case.id}:{job['id']}"

    def test_missing_case_raises(self):
        with pytest.raises(JobError):
            handle_ocr_image(_db_with({}), _job("OCR_IMAGE", case_id="c1"))

    def test_run_ocr_reads_full_text(self, monkeypatch):
        monkeypatch.setattr(job_processor_service.settings, "google_vision_api_key", "key")
        with patch(f"{PROCESSOR}.httpx.Client") as client_cls:
            client = client_cls.return_value.__enter__.return_value
            client.get.return_value = MagicMock(content=b"jpeg-bytes")
            client.post.return_value.json.return_value = {"responses": [{"fullTextAnnotation": {"text": "ABC"}}]}
            assert run_ocr("https://cdn.example/p.jpg") == "ABC"
        body = client.post.call_args.kwargs["json"]
        assert body["requests"][0]["features"] == [{"type": "DOCUMENT_TEXT_DETECTION"}]
        assert client.post.call_args.kwargs["params"] == {"key": "key"}


ORDER_TEXT = """PEDIDO DE VENDA
Nome: Maria Aparecida da Silva
CPF: 123.456.789-09
RG: 12345678
Nascimento: 15/03/1985
Telefone: (11) 98765-4321
Semente de milho 2 sc R$ 180,00
TOTAL R$ 1.250,00
Assinatura do cliente: ____
"""


class TestExtractFields:
    def test_order_form(self):
        fields = extract_fields_from_text(ORDER_TEXT)
        assert fields["name"] == ("Maria Aparecida da Silva", 0.7)
        assert fields["cpf"] == ("12345678909", 0.8)
        assert fields["rg"] == ("12345678", 0.7)
        assert fields["birth_date_text"] == ("15/03/1985", 0.65)
        assert fields["phone"] == ("(11) 98765-4321", 0.65)
        assert fields["total_raw"] == ("R$ 180,00", 0.6)
        assert fields["signature_present"] == ("yes", 0.5)

    def test_short_rg_has_low_confidence(self):
        assert extract_fields_from_text("RG: 123456")["rg"] == ("123456", 0.4)

    def test_nothing_found_still_reports_signature(self):
        assert extract_fields_from_text("foto borrada") == {"signature_present": ("no", 0.5)}

    def test_handler_upserts_fields_and_chains_validation(self):
        case = _case()
        job = _job("EXTRACT_FIELDS", case_id=str(case.id), correlation_id="3EB0")
        ocr = SimpleNamespace(value_text="Nome: Joao\nsem total")
        with patch(f"{PROCESSOR}.get_case_field", return_value=ocr), patch(
            f"{PROCESSOR}.upsert_case_field"
        ) as field, patch(f"{PROCESSOR}.add_timeline_event") as timeline, patch(
            f"{PROCESSOR}.job_service.enqueue_job", return_value=True
        ) as enqueue:
            assert handle_extract_fields(_db_with({Case: case}), job) == "done"

        stored = {call.kwargs["key"]: call.kwargs for call in field.call_args_list}
        assert stored["name"]["value_text"] == "Joao"
        assert stored["name"]["source"] == "ocr"
        assert stored["name"]["updated_by"] == "extract"
        assert stored["signature_present"]["value_text"] == "no"
        assert "total_raw" not in stored
        assert timeline.call_args.kwargs["event_type"] == "fields_extracted"
        assert enqueue.call_args.kwargs["job_type"] == "VALIDATE_FIELDS"
        assert enqueue.call_args.kwargs["payload_json"] == {"case_id": str(case.id), "correlation_id": "3EB0"}

    def test_without_ocr_text_is_skipped(self):
        case = _case()
        with patch(f"{PROCESSOR}.get_case_field", return_value=None), patch(
            f"{PROCESSOR}.upsert_case_field"
        ) as field:
            assert handle_extract_fields(_db_with({Case: case}), _job("EXTRACT_FIELDS", case_id=str(case.id))) == "skipped"
        field.assert_not_called()


class TestValidateFields:
    def test_missing_fields_open_pendencies(self):
        case = _case()
        journey = SimpleNamespace(
            id=case.journey_id, key="sales_order", default_state_machine_json={"states": ["new", "pending_vendor"]}
        )
        with patch(f"{PROCESSOR}.get_journey", return_value=journey), patch(
            f"{PROCESSOR}.get_tenant_journey_config", return_value={"automation": {"required_fields": ["nome"]}}
        ), patch(f"{PROCESSOR}.get_case_field", return_value=None), patch(
            f"{PROCESSOR}.upsert_pendency"
        ) as upsert, patch(
            f"{PROCESSOR}.set_case_state"
        ) as set_state, patch(
            f"{PROCESSOR}.add_timeline_event"
        ) as timeline:
            assert handle_validate_fields(_db_with({Case: case}), _job(case_id=str(case.id))) == "done"

        assert [call.kwargs["pendency_type"] for call in upsert.call_args_list] == ["need_location", "missing_field:nome"]
        assert set_state.call_args.args[3] == "pending_vendor"
        assert timeline.call_args.kwargs["meta"] == {"missing": ["location", "nome"]}

    def test_ocr_case_without_total_raises_leader_followup(self):
        case = _case()
        journey = SimpleNamespace(
            id=case.journey_id,
            key="sales_order",
            default_state_machine_json={"states": ["new", "pending_vendor", "ready_for_review"]},
        )
        fields = {
            "location": SimpleNamespace(value_text=None, value_json={"lat": -23.5, "lng": -46.6}),
            "ocr_text": SimpleNamespace(value_text="Nome: Joao", value_json=None),
            "signature_present": SimpleNamespace(value_text="yes", value_json=None),
        }
        with patch(f"{PROCESSOR}.get_journey", return_value=journey), patch(
            f"{PROCESSOR}.get_tenant_journey_config", return_value={}
        ), patch(f"{PROCESSOR}.get_case_field", side_effect=lambda db, case_id, key: fields.get(key)), patch(
            f"{PROCESSOR}.upsert_pendency"
        ) as upsert, patch(
            f"{PROCESSOR}.set_case_state"
        ) as set_state, patch(
            f"{PROCESSOR}.add_timeline_event"
        ):
            handle_validate_fields(_db_with({Case: case}), _job(case_id=str(case.id)))

        followup = upsert.call_args.kwargs
        assert upsert.call_count == 1
        assert followup["pendency_type"] == "leader_followup"
        assert followup["required"] is False
        assert followup["assigned_to_role"] == "leader"
        assert set_state.call_args.args[3] == "ready_for_review"

    def test_unsigned_order_is_missing_signature(self):
        case = _case()
        fields = {
            "location": SimpleNamespace(value_text="-23.5,-46.6", value_json=None),
            "ocr_text": SimpleNamespace(value_text="...", value_json=None),
            "signature_present": SimpleNamespace(value_text="no", value_json=None),
            "total_raw": SimpleNamespace(value_text="R$ 10,00", value_json=None),
        }
        with patch(f"{PROCESSOR}.get_journey", return_value=None), patch(
            f"{PROCESSOR}.get_case_field", side_effect=lambda db, case_id, key: fields.get(key)
        ), patch(f"{PROCESSOR}.upsert_pendency") as upsert, patch(f"{PROCESSOR}.add_timeline_event") as timeline:
            handle_validate_fields(_db_with({Case: case}), _job(case_id=str(case.id)))

        assert [call.kwargs["pendency_type"] for call in upsert.call_args_list] == ["missing_field:signature"]
        assert timeline.call_args.kwargs["meta"] == {"missing": ["signature"]}


class TestAskPendencies:
    def test_format(self):
        pendencies = [
            SimpleNamespace(question_text="Envie a localização.", required=True),
            SimpleNamespace(question_text="Mais páginas?", required=False),
        ]
        assert format_pendency_list(pendencies) == (
            "Byfrost.ia — Pendências do pedido:\n\n1) Envie a localização.\n2) Mais páginas? (opcional)"
        )

    def test_sends_list_to_counterpart(self):
        case = _case()
        instance = SimpleNamespace(id=uuid4(), tenant_id=TENANT_ID)
        job = _job("ASK_PENDENCIES", case_id=str(case.id))
        pendencies = [SimpleNamespace(question_text="Envie a localização.", required=True)]
        with patch(f"{PROCESSOR}.list_open_pendencies", return_value=pendencies), patch(
            f"{PROCESSOR}.send_message", return_value=Result.success(MagicMock())
        ) as send:
            assert handle_ask_pendencies(_db_with({Case: case, WaInstance: instance}), job) == "done"
        kwargs = send.call_args.kwargs
        assert kwargs["to"] == "+5511987654321"
        assert kwargs["correlation_id"] == f"job:{job['id']}"

    def test_send_failure_is_retried(self):
        case = _case()
        instance = SimpleNamespace(id=uuid4(), tenant_id=TENANT_ID)
        pendencies = [SimpleNamespace(question_text="?", required=True)]
        with patch(f"{PROCESSOR}.list_open_pendencies", return_value=pendencies), patch(
            f"{PROCESSOR}.send_message", return_value=Result.failure("Invalid recipient", "invalid_recipient")
        ):
            with pytest.raises(JobError):
                handle_ask_pendencies(_db_with({Case: case, WaInstance: instance}), _job("ASK_PENDENCIES", case_id="c"))

    def test_nothing_open_is_skipped(self):
        with patch(f"{PROCESSOR}.list_open_pendencies", return_value=[]):
            assert handle_ask_pendencies(_db_with({Case: _case()}), _job("ASK_PENDENCIES", case_id="c")) == "skipped"
