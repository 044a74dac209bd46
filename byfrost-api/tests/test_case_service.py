from types import SimpleNamespace
from unittest.mock import MagicMock, patch
from uuid import uuid4

import httpx
from sqlalchemy.exc import IntegrityError

from app.models import Case, CaseAttachment
from app.services import case_service
from app.services.case_service import (
    apply_inbound_event,
    can_create_case,
    ensure_case,
    fire_transition_actions,
    link_outbound_message,
    set_case_state,
    upsert_pendency,
)
from app.services.identity_service import SenderIdentity
from app.services.journey_service import JourneyChoice
from app.services.normalize_service import Location, NormalizedMessage

SERVICE = "app.services.case_service"
TENANT_ID = uuid4()
PHONE = "+5511987654321"
STATES = ["new", "awaiting_ocr", "pending_vendor", "ready_for_review"]


def _journey(key="support", *, is_crm=False, transitions=None):
    return SimpleNamespace(
        id=uuid4(),
        key=key,
        is_crm=is_crm,
        default_state_machine_json={"states": STATES, "transitions": transitions or {}},
    )


def _choice(journey=None, config=None):
    return JourneyChoice(journey=journey or _journey(), reason="first_enabled", config=config or {})


def _case(state="new"):
    return SimpleNamespace(
        id=uuid4(),
        tenant_id=TENANT_ID,
        state=state,
        status="open",
        deleted_at=None,
        updated_at=None,
        counterpart_phone=PHONE,
        meta_json={},
    )


def _ensure(db, choice, *, sender=None, chat_id=PHONE, message_type="text"):
    return ensure_case(
        db,
        tenant_id=TENANT_ID,
        instance=SimpleNamespace(id=uuid4(), assigned_user_id=None),
        choice=choice,
        sender=sender or SenderIdentity(phone=PHONE),
        chat_id=chat_id,
        message_type=message_type,
    )


class TestEnsureCase:
    def test_reuses_open_case(self):
        existing = _case()
        with patch(f"{SERVICE}.find_matching_case", return_value=existing):
            result = _ensure(MagicMock(), _choice())
        assert result.value.case is existing
        assert result.value.created is False

    def test_reactivates_deleted_case(self):
        deleted = _case()
        deleted.deleted_at = "2024-01-01"
        deleted.status = "closed"
        with patch(f"{SERVICE}.find_matching_case", side_effect=[None, deleted]), patch(
            f"{SERVICE}.add_timeline_event"
        ) as timeline:
            result = _ensure(MagicMock(), _choice())
        assert result.value.reactivated is True
        assert deleted.deleted_at is None
        assert deleted.status == "open"
        assert timeline.call_args.kwargs["event_type"] == "lead_reactivated"

    def test_opens_new_case(self):
        db = MagicMock()
        with patch(f"{SERVICE}.find_matching_case", return_value=None), patch(f"{SERVICE}.add_timeline_event"):
            result = _ensure(db, _choice(), chat_id="+551187654321")
        case = result.value.case
        assert result.value.created is True
        assert isinstance(case, Case)
        assert case.state == "new"
        assert case.counterpart_phone == "+5511987654321"
        assert case.meta_json["routing_reason"] == "first_enabled"
        db.add.assert_called_once_with(case)

    def test_location_does_not_open_case_by_default(self):
        with patch(f"{SERVICE}.find_matching_case", return_value=None):
            result = _ensure(MagicMock(), _choice(), message_type="location")
        assert result.ok is False
        assert result.error_code == "case_creation_disabled"

    def test_concurrent_open_converges(self):
        db = MagicMock()
        db.flush.side_effect = IntegrityError("INSERT INTO cases", {}, Exception("duplicate key"))
        winner = _case()
        with patch(f"{SERVICE}.find_matching_case", return_value=None), patch(
            f"{SERVICE}._find_open_by_counterpart", return_value=winner
        ):
            result = _ensure(db, _choice())
        assert result.value.case is winner
        assert result.value.created is False

    def test_unidentified_sender(self):
        result = _ensure(MagicMock(), _choice(), sender=SenderIdentity(phone=None))
        assert result.error_code == "no_identifiable_sender"

    def test_case_creation_flags(self):
        assert can_create_case({}, "text") is True
        assert can_create_case({"automation": {"create_case_on_location": True}}, "location") is True
        assert can_create_case({"automation": {"create_case_on_text": False}}, "text") is False


class TestApplyInboundEvent:
    def test_image_adds_attachment_pendencies_jobs_and_state(self):
        db = MagicMock()
        case = _case()
        message = SimpleNamespace(id=uuid4(), media_url="https://cdn.example/p1.jpg", case_id=None)
        normalized = NormalizedMessage(type="image", media_url=message.media_url)
        with patch(f"{SERVICE}.upsert_pendency", return_value=(MagicMock(), True)) as upsert, patch(
            f"{SERVICE}.job_service.enqueue_job", return_value=True
        ) as enqueue, patch(f"{SERVICE}.add_timeline_event"):
            outcome = apply_inbound_event(
                db,
                case=case,
                choice=_choice(),
                message=message,
                normalized=normalized,
                sender=SenderIdentity(phone=PHONE),
                correlation_id="3EB0",
            )

        assert message.case_id == case.id
        assert isinstance(db.add.call_args_list[0].args[0], CaseAttachment)
        assert [call.kwargs["pendency_type"] for call in upsert.call_args_list] == ["need_location", "need_more_pages"]
        assert [call.kwargs["job_type"] for call in enqueue.call_args_list] == [
            "OCR_IMAGE",
            "VALIDATE_FIELDS",
            "ASK_PENDENCIES",
        ]
        assert [call.kwargs["idempotency_key"] for call in enqueue.call_args_list] == [
            f"OCR_IMAGE:{case.id}",
            f"VALIDATE_FIELDS:{case.id}",
            f"ASK_PENDENCIES:{case.id}:3EB0",
        ]
        assert case.state == "awaiting_ocr"
        assert "attachment_added" in outcome.events
        assert "state:awaiting_ocr" in outcome.events

    def test_location_answers_pendency_and_advances(self):
        case = _case("awaiting_ocr")
        pendency = SimpleNamespace(id=uuid4(), type="need_location")
        normalized = NormalizedMessage(type="location", location=Location(latitude=-23.5, longitude=-46.6))
        with patch(f"{SERVICE}.upsert_case_field") as field, patch(
            f"{SERVICE}.list_open_pendencies", return_value=[pendency]
        ), patch(f"{SERVICE}.answer_pendency") as answer, patch(f"{SERVICE}.add_timeline_event"):
            outcome = apply_inbound_event(
                MagicMock(),
                case=case,
                choice=_choice(),
                message=SimpleNamespace(id=uuid4(), media_url=None, case_id=None),
                normalized=normalized,
                sender=SenderIdentity(phone=PHONE),
                correlation_id="3EB1",
            )

        assert field.call_args.kwargs["value_json"] == {"lat": -23.5, "lng": -46.6}
        answer.assert_called_once()
        assert outcome.answered_pendency_id == pendency.id
        assert case.state == "ready_for_review"

    def test_text_answers_oldest_pendency_for_sender_role(self):
        pendency = SimpleNamespace(id=uuid4(), type="missing_field:nome")
        normalized = NormalizedMessage(type="text", text="João da Silva")
        with patch(f"{SERVICE}.list_open_pendencies", return_value=[pendency]) as pending, patch(
            f"{SERVICE}.answer_pendency"
        ) as answer, patch(f"{SERVICE}.job_service.enqueue_job", return_value=False):
            outcome = apply_inbound_event(
                MagicMock(),
                case=_case(),
                choice=_choice(),
                message=SimpleNamespace(id=uuid4(), media_url=None, case_id=None),
                normalized=normalized,
                sender=SenderIdentity(phone=PHONE),
                correlation_id="3EB2",
            )
        assert pending.call_args.kwargs["role"] == "customer"
        assert answer.call_args.kwargs["answered_text"] == "João da Silva"
        assert outcome.events == ["pendency_answered:missing_field:nome"]


class TestStateChanges:
    def test_unknown_state_rejected(self):
        result = set_case_state(MagicMock(), _case(), _journey(), "shipped")
        assert result.error_code == "invalid_state"
        assert result.details["allowed_states"] == STATES

    def test_webhook_action_runs_on_transition(self):
        journey = _journey(transitions={"new->ready_for_review": [{"type": "webhook", "params": {"url": "https://hook"}}]})
        case = _case()
        with patch(f"{SERVICE}.httpx.Client") as client_cls, patch(f"{SERVICE}.add_timeline_event") as timeline:
            client_cls.return_value.__enter__.return_value.post.return_value = MagicMock(status_code=204)
            result = set_case_state(MagicMock(), case, journey, "ready_for_review")
        assert result.ok is True
        posted = client_cls.return_value.__enter__.return_value.post.call_args
        assert posted.kwargs["json"]["to"] == "ready_for_review"
        assert [call.kwargs["event_type"] for call in timeline.call_args_list] == [
            "state_changed",
            "automation_executed",
        ]

    def test_failed_action_is_recorded_not_raised(self):
        journey = _journey(transitions={"->pending_vendor": [{"type": "webhook", "params": {"url": "https://hook"}}]})
        with patch(f"{SERVICE}.httpx.Client") as client_cls, patch(f"{SERVICE}.add_timeline_event") as timeline:
            client_cls.return_value.__enter__.return_value.post.side_effect = httpx.ConnectError("refused")
            count = fire_transition_actions(MagicMock(), _case(), journey, "new", "pending_vendor")
        assert count == 1
        assert timeline.call_args.kwargs["event_type"] == "automation_failed"

    def test_send_whatsapp_action_without_instance_is_skipped(self):
        journey = _journey(transitions={"->pending_vendor": [{"type": "send_whatsapp", "params": {"text": "Olá"}}]})
        with patch(f"{SERVICE}.add_timeline_event") as timeline:
            fire_transition_actions(MagicMock(), _case(), journey, "new", "pending_vendor")
        assert timeline.call_args.kwargs["meta"]["delivery_status"] == "skipped"


class TestPendencies:
    def test_upsert_returns_open_pendency_of_same_type(self):
        db = MagicMock()
        existing = SimpleNamespace(id=uuid4())
        db.query.return_value.filter.return_value.first.return_value = existing
        pendency, created = upsert_pendency(db, case=_case(), pendency_type="need_location", question_text="?")
        assert pendency is existing
        assert created is False
        db.add.assert_not_called()

    def test_resolve_refuses_closed_pendency(self):
        db = MagicMock()
        db.query.return_value.filter.return_value.first.return_value = SimpleNamespace(status="answered")
        result = case_service.resolve_pendency(
            db, tenant_id=TENANT_ID, pendency_id=uuid4(), status="waived", note=None, actor_id=uuid4()
        )
        assert result.error_code == "pendency_not_open"


class TestLinkOutbound:
    def test_already_linked(self):
        message = SimpleNamespace(case_id=uuid4())
        assert link_outbound_message(MagicMock(), tenant_id=TENANT_ID, message=message, chat_id=PHONE) == "linked"

    def test_links_to_open_case(self):
        db = MagicMock()
        case = _case()
        db.query.return_value.filter.return_value.order_by.return_value.first.return_value = case
        message = SimpleNamespace(case_id=None)
        assert link_outbound_message(db, tenant_id=TENANT_ID, message=message, chat_id=PHONE) == "linked"
        assert message.case_id == case.id

    def test_no_case_is_unlinked(self):
        db = MagicMock()
        db.query.return_value.filter.return_value.order_by.return_value.first.return_value = None
        message = SimpleNamespace(case_id=None)
        assert link_outbound_message(db, tenant_id=TENANT_ID, message=message, chat_id=PHONE) == "unlinked"
