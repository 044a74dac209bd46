from types import SimpleNamespace
from unittest.mock import MagicMock, patch
from uuid import uuid4

import httpx

from app.models import WaMessage
from app.services.outbound_service import build_send_body, build_send_url, send_message

SERVICE = "app.services.outbound_service"


def _instance(**overrides):
    values = {
        "id": uuid4(),
        "tenant_id": uuid4(),
        "zapi_instance_id": "3C0FFEE",
        "zapi_token": "tok",
        "phone_number": "+5511999990000",
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def _mock_client(mock_client_cls, *, status_code=200, json_data=None, error=None):
    client = mock_client_cls.return_value.__enter__.return_value
    if error is not None:
        client.post.side_effect = error
        return client
    response = MagicMock(status_code=status_code, text="")
    response.json.return_value = json_data or {}
    client.post.return_value = response
    return client


class TestBuildRequest:
    def test_url_uses_instance_credentials(self):
        url = build_send_url(_instance(), "text")
        assert url == "https://api.z-api.io/instances/3C0FFEE/token/tok/send-text"

    def test_no_url_without_token(self):
        assert build_send_url(_instance(zapi_token=None), "text") is None

    def test_location_body(self):
        body = build_send_body("location", "5511987654321", location={"lat": -23.5, "lng": -46.6, "name": "Loja"})
        assert body == {"phone": "5511987654321", "latitude": -23.5, "longitude": -46.6, "title": "Loja", "address": ""}

    def test_image_caption(self):
        body = build_send_body("image", "5511987654321", text="Pedido", media_url="https://cdn.example/a.jpg")
        assert body == {"phone": "5511987654321", "image": "https://cdn.example/a.jpg", "caption": "Pedido"}


class TestSendMessage:
    def test_prepared_when_credentials_missing(self):
        db = MagicMock()
        with patch(f"{SERVICE}.httpx.Client") as client_cls:
            result = send_message(db, instance=_instance(zapi_token=None), to="+55 11 98765-4321", text="Olá")

        assert result.ok is True
        message = result.value
        assert isinstance(message, WaMessage)
        assert message.delivery_status == "prepared"
        assert message.delivery_error == "missing_credentials"
        assert message.to_phone == "+5511987654321"
        db.add.assert_called_once_with(message)
        client_cls.assert_not_called()

    def test_sent_records_provider_id(self):
        db = MagicMock()
        with patch(f"{SERVICE}.httpx.Client") as client_cls:
            client = _mock_client(client_cls, json_data={"messageId": "3EB0FF"})
            result = send_message(db, instance=_instance(), to="5511987654321", text="Olá")

        assert result.value.delivery_status == "sent"
        assert result.value.payload_json["delivery"]["provider_message_id"] == "3EB0FF"
        assert client.post.call_args.kwargs["json"] == {"phone": "5511987654321", "message": "Olá"}

    def test_network_error_keeps_row_as_failed(self):
        db = MagicMock()
        with patch(f"{SERVICE}.httpx.Client") as client_cls:
            _mock_client(client_cls, error=httpx.ConnectError("refused"))
            result = send_message(db, instance=_instance(), to="5511987654321", text="Olá")

        assert result.ok is True
        assert result.value.delivery_status == "failed"
        db.add.assert_called_once()

    def test_provider_rejection_is_failed(self):
        with patch(f"{SERVICE}.httpx.Client") as client_cls:
            _mock_client(client_cls, status_code=400)
            result = send_message(MagicMock(), instance=_instance(), to="5511987654321", text="Olá")
        assert result.value.delivery_status == "failed"
        assert result.value.payload_json["delivery"]["http_status"] == 400

    def test_case_gets_timeline_event(self):
        case_id = uuid4()
        with patch(f"{SERVICE}.add_timeline_event") as timeline:
            send_message(MagicMock(), instance=_instance(zapi_token=None), to="5511987654321", text="Olá", case_id=case_id)
        assert timeline.call_args.kwargs["case_id"] == case_id
        assert timeline.call_args.kwargs["event_type"] == "message_sent"

    def test_validation(self):
        db = MagicMock()
        assert send_message(db, instance=_instance(), to="5511987654321", text="  ").error_code == "missing_text"
        assert (
            send_message(db, instance=_instance(), to="5511987654321", message_type="image").error_code
            == "missing_media_url"
        )
        assert send_message(db, instance=_instance(), to="abc", text="Olá").error_code == "invalid_recipient"
        assert send_message(db, instance=_instance(), to="5511987654321", message_type="sticker").error_code == (
            "unsupported_type"
        )
        db.add.assert_not_called()
