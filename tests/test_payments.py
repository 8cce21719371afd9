import json
from datetime import datetime, timezone

import httpx
import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from tutorportal.config import Settings, get_settings
from tutorportal.core.security import compute_webhook_signature
from tutorportal.db import models
from tutorportal.services import payment_service
from tutorportal.services.notification_service import HttpNotificationSender, LogSender, get_sender
from tutorportal.services.payments import (
    GatewayError,
    HttpCheckoutGateway,
    StubGateway,
    WebhookSignatureError,
    get_gateway,
)


def settings_with(**overrides):
    return get_settings().model_copy(update=overrides)


@pytest.fixture()
def mock_http(monkeypatch):
    """Route every httpx.Client through a MockTransport; returns the captured requests."""

    requests = []
    responses = {"status": 200, "body": {}}
    real_client = httpx.Client

    def handler(request):
        requests.append(request)
        return httpx.Response(responses["status"], json=responses["body"])

    def client_factory(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(httpx, "Client", client_factory)
    return requests, responses


def test_get_gateway_by_provider():
    assert isinstance(get_gateway(settings_with(payment_provider="stub")), StubGateway)
    assert isinstance(get_gateway(settings_with(payment_provider="http")), HttpCheckoutGateway)
    with pytest.raises(ValueError):
        get_gateway(settings_with(payment_provider="unknown"))


def test_stub_gateway_reports_success():
    gateway = StubGateway(get_settings())

    response = gateway.create_charge(
        order_id="order-1",
        amount=120.0,
        currency="CAD",
        line_items=[],
        success_url="http://portal/success",
        cancel_url="http://portal/cancel",
        metadata={},
    )

    assert response["status"] == "succeeded"
    assert response["redirect_url"] == "http://portal/success"
    assert gateway.parse_webhook({"order_id": "order-1"}) == {
        "order_id": "order-1",
        "status": "succeeded",
        "provider_payment_id": None,
    }


def test_http_checkout_creates_session(mock_http):
    requests, responses = mock_http
    responses["body"] = {"id": "cs_123", "url": "https://pay.example/cs_123"}
    gateway = HttpCheckoutGateway(
        settings_with(payment_api_url="https://api.pay.example/v1/", payment_api_key="sk_test")
    )

    response = gateway.create_charge(
        order_id="order-2",
        amount=240.0,
        currency="CAD",
        line_items=[{"name": "Algebra I", "amount": 120.0, "quantity": 2}],
        success_url="http://portal/success",
        cancel_url="http://portal/cancel",
        metadata={"student_id": 4},
    )

    assert response["status"] == "pending"
    assert response["redirect_url"] == "https://pay.example/cs_123"
    assert response["provider_payment_id"] == "cs_123"
    request = requests[0]
    assert str(request.url) == "https://api.pay.example/v1/checkout/sessions"
    assert request.headers["Authorization"] == "Bearer sk_test"
    payload = json.loads(request.content)
    assert payload["client_reference_id"] == "order-2"
    assert payload["metadata"] == {"student_id": 4, "order_id": "order-2"}
    assert payload["currency"] == "cad"


def test_http_checkout_errors_become_gateway_errors(mock_http):
    _, responses = mock_http
    responses["status"] = 503
    gateway = HttpCheckoutGateway(settings_with(payment_api_url="https://api.pay.example"))

    with pytest.raises(GatewayError):
        gateway.create_charge("order-3", 10.0, "CAD", [], "s", "c", {})
    with pytest.raises(GatewayError):
        HttpCheckoutGateway(settings_with(payment_api_url="")).create_charge(
            "order-4", 10.0, "CAD", [], "s", "c", {}
        )


@pytest.mark.parametrize(
    "raw, expected",
    [("paid", "succeeded"), ("complete", "succeeded"), ("expired", "canceled"), ("unpaid", "unpaid")],
)
def test_http_checkout_webhook_statuses(raw, expected):
    gateway = HttpCheckoutGateway(get_settings())
    event = {
        "type": "checkout.session.completed",
        "data": {"object": {"id": "cs_9", "payment_status": raw, "metadata": {"order_id": "order-9"}}},
    }

    parsed = gateway.parse_webhook(event)

    assert parsed == {"order_id": "order-9", "status": expected, "provider_payment_id": "cs_9"}


def test_status_from_gateway():
    assert payment_service.status_from_gateway("succeeded") == models.PaymentStatus.paid
    assert payment_service.status_from_gateway("CANCELLED") == models.PaymentStatus.canceled
    assert payment_service.status_from_gateway("unpaid") is None
    assert payment_service.status_from_gateway(None) is None


def test_start_checkout_records_pending_payment(db_session, factory):
    term = factory.term()
    classes = [factory.tutoring_class(term, price=120), factory.tutoring_class(term, name="Physics 11", price=95)]
    student = factory.student()

    class PendingGateway(StubGateway):
        def create_charge(self, order_id, amount, currency, line_items, success_url, cancel_url, metadata):
            return {"status": "pending", "redirect_url": f"https://pay.example/{order_id}", "provider_payment_id": "cs_1"}

    payment, response = payment_service.start_checkout(
        db_session, student, classes, gateway=PendingGateway(get_settings())
    )

    assert payment.status == models.PaymentStatus.pending
    assert float(payment.amount) == 215.0
    assert payment.class_ids == [item.id for item in classes]
    assert payment.confirmation_url == response["redirect_url"]
    assert payment.provider_payment_id == "cs_1"
    assert payment_service.get_payment_by_order(db_session, payment.order_id).id == payment.id


def test_start_checkout_failure_marks_payment_failed(db_session, factory):
    term = factory.term()
    classes = [factory.tutoring_class(term)]
    student = factory.student()

    class BrokenGateway(StubGateway):
        def create_charge(self, *args, **kwargs):
            raise GatewayError("connection refused")

    with pytest.raises(payment_service.PaymentGatewayError):
        payment_service.start_checkout(db_session, student, classes, gateway=BrokenGateway(get_settings()))

    payment = db_session.execute(select(models.Payment)).scalar_one()
    assert payment.status == models.PaymentStatus.failed


def test_paid_payment_is_final(db_session, factory):
    student = factory.student()
    payment = models.Payment(
        student_id=student.id,
        class_ids=[],
        amount=100,
        provider=models.PaymentProvider.stub,
        order_id="order-final",
    )
    db_session.add(payment)
    db_session.commit()

    payment_service.apply_payment(db_session, payment, models.PaymentStatus.paid, provider_payment_id="pi_1")
    payment_service.apply_payment(db_session, payment, models.PaymentStatus.paid)
    payment_service.apply_payment(db_session, payment, models.PaymentStatus.failed)

    db_session.refresh(payment)
    assert payment.status == models.PaymentStatus.paid
    assert payment.provider_payment_id == "pi_1"


def test_notification_senders(mock_http):
    requests, _ = mock_http
    assert isinstance(get_sender(settings_with(notification_provider="log")), LogSender)
    with pytest.raises(ValueError):
        get_sender(settings_with(notification_provider="pigeon"))

    sender = get_sender(
        settings_with(
            notification_provider="http",
            notification_api_url="https://mail.example/send",
            notification_api_key="mk",
        )
    )
    result = sender.send("student@example.com", "enrollment_confirmed", {"batch_token": "b1"})

    assert isinstance(sender, HttpNotificationSender)
    assert result.ok
    assert json.loads(requests[0].content) == {
        "to": "student@example.com",
        "template": "enrollment_confirmed",
        "params": {"batch_token": "b1"},
    }
    assert requests[0].headers["Authorization"] == "Bearer mk"
    assert not HttpNotificationSender(settings_with(notification_api_url="")).send("a@b.c", "x", {}).ok


def test_http_sender_failure_is_reported(mock_http):
    _, responses = mock_http
    responses["status"] = 500
    sender = HttpNotificationSender(settings_with(notification_api_url="https://mail.example/send"))

    result = sender.send("student@example.com", "enrollment_confirmed", {})

    assert not result.ok
    assert result.error


def test_http_checkout_verifies_webhook_signature():
    body = b'{"data": {"object": {"client_reference_id": "order-7", "payment_status": "paid"}}}'
    timestamp = int(datetime.now(timezone.utc).timestamp())
    signature = compute_webhook_signature("whsec_live", timestamp, body)
    stale = timestamp - 600
    gateway = HttpCheckoutGateway(settings_with(payment_webhook_secret="whsec_live"))

    gateway.verify_webhook(body, {"Payment-Signature": f"t={timestamp},v0=abc,v1={signature}"})

    for headers in (
        {},
        {"Payment-Signature": f"v1={signature}"},
        {"Payment-Signature": f"t={timestamp}"},
        {"Payment-Signature": f"t={timestamp},v1={signature}0"},
        {"Payment-Signature": f"t={stale},v1={compute_webhook_signature('whsec_live', stale, body)}"},
    ):
        with pytest.raises(WebhookSignatureError):
            gateway.verify_webhook(body, headers)


def test_http_checkout_without_secret_rejects_every_webhook():
    body = b"{}"
    timestamp = int(datetime.now(timezone.utc).timestamp())
    header = f"t={timestamp},v1={compute_webhook_signature('', timestamp, body)}"
    gateway = HttpCheckoutGateway(settings_with(payment_webhook_secret=""))

    with pytest.raises(WebhookSignatureError):
        gateway.verify_webhook(body, {"Payment-Signature": header})


def test_stub_gateway_accepts_unsigned_webhooks():
    assert StubGateway(get_settings()).verify_webhook(b"{}", {}) is None


def test_outbound_http_timeout_defaults_short():
    assert Settings().http_timeout_seconds == 5.0


def test_order_id_is_unique(db_session, factory):
    student = factory.student()
    for _ in range(2):
        db_session.add(
            models.Payment(
                student_id=student.id,
                class_ids=[],
                amount=10,
                provider=models.PaymentProvider.stub,
                order_id="order-twice",
            )
        )

    with pytest.raises(IntegrityError):
        db_session.commit()
    db_session.rollback()
