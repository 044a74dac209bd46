from unittest.mock import MagicMock, patch
from uuid import uuid4

from app.services.identity_service import (
    INBOUND,
    OUTBOUND,
    direction_from_keywords,
    normalize_forced_direction,
    resolve_direction,
    resolve_endpoints,
    resolve_sender_identity,
)
from app.services.normalize_service import NormalizedMessage

INSTANCE_PHONE = "+5511999990000"
CUSTOMER_PHONE = "+5511987654321"


class TestForcedDirection:
    def test_aliases(self):
        assert normalize_forced_direction("OUT") == OUTBOUND
        assert normalize_forced_direction("incoming") == INBOUND

    def test_unknown_is_ignored(self):
        assert normalize_forced_direction("sideways") is None
        assert normalize_forced_direction(None) is None


class TestDirectionKeywords:
    def test_camel_case_event(self):
        assert direction_from_keywords({"type": "SentCallback"}) == OUTBOUND

    def test_received_event(self):
        assert direction_from_keywords({"type": "ReceivedCallback"}) == INBOUND

    def test_ambiguous_value_is_skipped(self):
        assert direction_from_keywords({"direction": "in/out"}) is None


class TestResolveDirection:
    def test_from_me_forces_outbound_even_on_inbound_endpoint(self):
        normalized = NormalizedMessage(from_id=CUSTOMER_PHONE, from_me=True)
        decision = resolve_direction({}, normalized, INSTANCE_PHONE, forced="inbound")
        assert decision.direction == OUTBOUND
        assert decision.source == "from_me_flag"
        assert decision.forced_overridden is True

    def test_from_me_false_is_inbound(self):
        normalized = NormalizedMessage(from_id=CUSTOMER_PHONE, from_me=False)
        assert resolve_direction({}, normalized, INSTANCE_PHONE).direction == INBOUND

    def test_forced_used_without_payload_evidence(self):
        normalized = NormalizedMessage(from_id=CUSTOMER_PHONE)
        decision = resolve_direction({}, normalized, INSTANCE_PHONE, forced="out")
        assert decision.direction == OUTBOUND
        assert decision.source == "forced"

    def test_sender_is_instance_number(self):
        normalized = NormalizedMessage(from_id="+551199990000")
        decision = resolve_direction({}, normalized, INSTANCE_PHONE)
        assert decision.direction == OUTBOUND
        assert decision.source == "phone_match"

    def test_defaults_to_inbound(self):
        decision = resolve_direction({}, NormalizedMessage(from_id=CUSTOMER_PHONE), INSTANCE_PHONE)
        assert decision.direction == INBOUND
        assert decision.source == "default"


class TestResolveEndpoints:
    def test_inbound_direct(self):
        normalized = NormalizedMessage(from_id=CUSTOMER_PHONE)
        endpoints = resolve_endpoints(normalized, INBOUND, INSTANCE_PHONE)
        assert endpoints.sender_phone == CUSTOMER_PHONE
        assert endpoints.to_phone == INSTANCE_PHONE
        assert endpoints.chat_id == CUSTOMER_PHONE

    def test_inbound_group_sender_is_participant(self):
        normalized = NormalizedMessage(
            from_id="120363025550000000@g.us", participant_phone=CUSTOMER_PHONE, is_group=True
        )
        endpoints = resolve_endpoints(normalized, INBOUND, INSTANCE_PHONE)
        assert endpoints.sender_phone == CUSTOMER_PHONE
        assert endpoints.chat_id == "120363025550000000@g.us"

    def test_self_sent_chat_is_reported_in_phone(self):
        normalized = NormalizedMessage(from_id=CUSTOMER_PHONE, to_id=INSTANCE_PHONE, from_me=True)
        endpoints = resolve_endpoints(normalized, OUTBOUND, INSTANCE_PHONE)
        assert endpoints.chat_id == CUSTOMER_PHONE
        assert endpoints.to_phone == CUSTOMER_PHONE
        assert endpoints.from_phone == INSTANCE_PHONE


class TestSenderIdentity:
    def test_vendor_profile_makes_vendor(self):
        db = MagicMock()
        profile = MagicMock(role="vendor")
        with patch("app.services.identity_service.find_vendor_user", return_value=profile), patch(
            "app.services.identity_service.find_vendor", return_value=None
        ):
            identity = resolve_sender_identity(db, uuid4(), CUSTOMER_PHONE)
        assert identity.is_vendor is True
        assert identity.role == "vendor"
        assert identity.user_profile is profile

    def test_unknown_sender_looks_up_customer(self):
        db = MagicMock()
        customer = MagicMock()
        with patch("app.services.identity_service.find_vendor_user", return_value=None), patch(
            "app.services.identity_service.find_vendor", return_value=None
        ), patch("app.services.identity_service.find_customer", return_value=customer):
            identity = resolve_sender_identity(db, uuid4(), CUSTOMER_PHONE)
        assert identity.kind == "unknown"
        assert identity.role == "customer"
        assert identity.customer is customer

    def test_missing_phone(self):
        identity = resolve_sender_identity(MagicMock(), uuid4(), None)
        assert identity.phone is None
        assert identity.kind == "unknown"
