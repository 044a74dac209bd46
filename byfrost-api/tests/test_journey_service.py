from types import SimpleNamespace
from unittest.mock import MagicMock, patch
from uuid import uuid4

from app.services.identity_service import SenderIdentity
from app.services.journey_service import (
    choose_journey,
    config_get,
    journey_default_state,
    resolve_initial_state,
    select_journey,
)


def _journey(key, *, is_crm=False, states=None, default=None):
    machine = {"states": states or ["new", "awaiting_ocr", "ready_for_review"]}
    if default:
        machine["default"] = default
    return SimpleNamespace(id=uuid4(), key=key, is_crm=is_crm, default_state_machine_json=machine)


class TestChooseJourney:
    def test_instance_default_wins(self):
        default = _journey("support")
        journey, reason = choose_journey(
            instance_default=default,
            enabled=[_journey("crm", is_crm=True)],
            fallback=None,
            vendor_journey=None,
            sender_is_vendor=False,
        )
        assert journey is default
        assert reason == "instance_default"

    def test_first_enabled_then_fallback(self):
        first = _journey("crm", is_crm=True)
        journey, reason = choose_journey(
            instance_default=None, enabled=[first], fallback=None, vendor_journey=None, sender_is_vendor=False
        )
        assert (journey, reason) == (first, "first_enabled")

        fallback = _journey("sales_order")
        journey, reason = choose_journey(
            instance_default=None, enabled=[], fallback=fallback, vendor_journey=None, sender_is_vendor=False
        )
        assert (journey, reason) == (fallback, "fallback")

    def test_vendor_sender_is_routed_to_vendor_journey(self):
        vendor_journey = _journey("sales_order")
        journey, reason = choose_journey(
            instance_default=_journey("crm", is_crm=True),
            enabled=[],
            fallback=None,
            vendor_journey=vendor_journey,
            sender_is_vendor=True,
        )
        assert journey is vendor_journey
        assert reason == "vendor_override"

    def test_customer_on_vendor_journey_is_rerouted_to_crm(self):
        vendor_journey = _journey("sales_order")
        crm = _journey("crm", is_crm=True)
        journey, reason = choose_journey(
            instance_default=vendor_journey,
            enabled=[_journey("other"), crm],
            fallback=None,
            vendor_journey=vendor_journey,
            sender_is_vendor=False,
        )
        assert journey is crm
        assert reason == "crm_reroute"

    def test_customer_stays_on_vendor_journey_without_crm(self):
        vendor_journey = _journey("sales_order")
        journey, reason = choose_journey(
            instance_default=vendor_journey,
            enabled=[],
            fallback=None,
            vendor_journey=vendor_journey,
            sender_is_vendor=False,
        )
        assert journey is vendor_journey
        assert reason == "instance_default"

    def test_nothing_configured(self):
        journey, _ = choose_journey(
            instance_default=None, enabled=[], fallback=None, vendor_journey=None, sender_is_vendor=False
        )
        assert journey is None


class TestSelectJourney:
    def test_no_journey_is_a_failure(self):
        db = MagicMock()
        instance = SimpleNamespace(id=uuid4(), default_journey_id=None)
        with patch("app.services.journey_service.list_enabled_journeys", return_value=[]), patch(
            "app.services.journey_service.get_journey", return_value=None
        ), patch("app.services.journey_service.get_journey_by_key", return_value=None):
            result = select_journey(db, uuid4(), instance, SenderIdentity(phone="+5511987654321"))
        assert result.ok is False
        assert result.error_code == "no_journey_configured"

    def test_presence_journey_never_chosen_for_messages(self):
        db = MagicMock()
        presence = _journey("presence")
        crm = _journey("crm", is_crm=True)
        rows = [
            (presence, SimpleNamespace(config_json={})),
            (crm, SimpleNamespace(config_json={"automation": {"required_fields": ["nome"]}})),
        ]
        instance = SimpleNamespace(id=uuid4(), default_journey_id=None)
        with patch("app.services.journey_service.list_enabled_journeys", return_value=rows), patch(
            "app.services.journey_service.get_journey", return_value=None
        ), patch("app.services.journey_service.get_journey_by_key", return_value=None):
            result = select_journey(db, uuid4(), instance, SenderIdentity(phone="+5511987654321"))
        assert result.ok is True
        assert result.value.journey is crm
        assert result.value.config["automation"]["required_fields"] == ["nome"]


class TestJourneyConfig:
    def test_config_get_nested(self):
        config = {"automation": {"initial_state_by_type": {"image": "awaiting_ocr"}}}
        assert config_get(config, "automation.initial_state_by_type.image") == "awaiting_ocr"
        assert config_get(config, "automation.missing", "x") == "x"
        assert config_get(None, "a.b") is None

    def test_default_state(self):
        assert journey_default_state(_journey("j", default="ready_for_review")) == "ready_for_review"
        assert journey_default_state(_journey("j", default="unknown")) == "new"

    def test_initial_state_hint_must_be_valid(self):
        journey = _journey("j")
        good = {"automation": {"initial_state_by_type": {"image": "awaiting_ocr"}}}
        bad = {"automation": {"initial_state_by_type": {"image": "shipped"}}}
        assert resolve_initial_state(journey, good, "image") == "awaiting_ocr"
        assert resolve_initial_state(journey, bad, "image") == "new"
