"""
Unit tests for settlement_engine/services/poller.py and the Bakong gateway client.

Gateway and panel calls are mocked; the Bakong client itself is exercised
against httpx.MockTransport.
"""
import httpx
import pytest
from datetime import timedelta
from unittest.mock import patch

from settlement_engine import models
from settlement_engine.errors import ExpiredFingerprint, GatewayError, PaymentNotReceived, RecordNotFound
from settlement_engine.processors.bakong import BakongGateway
from settlement_engine.services.poller import PollMode, poll_settlement
from settlement_engine.services.settlement import SettlementOutcome
from tests.conftest import BASE_TIME, issue, make_invoice, make_order, mock_gateway, mock_provisioner

NOW = BASE_TIME + timedelta(minutes=1)


# ---------------------------------------------------------------------------
# poll_settlement()
# ---------------------------------------------------------------------------
class TestPollSettled:
    async def test_paid_applies_settlement(self, db):
        order = make_order(db)
        record = issue(db, make_invoice(db, order))
        gateway = mock_gateway(settled=True)
        provisioner = mock_provisioner()

        result = await poll_settlement(db, record.fingerprint, gateway, provisioner, now=NOW)

        assert result.status == "paid"
        assert result.outcome == SettlementOutcome.SETTLED
        assert result.order_status == models.OrderStatus.ACTIVE
        assert result.invoice_status == models.InvoiceStatus.PAID
        gateway.check_transaction.assert_awaited_once_with(record.fingerprint)
        provisioner.create.assert_awaited_once()

    async def test_already_settled_skips_gateway(self, db):
        record = issue(db, make_invoice(db, make_order(db)))
        provisioner = mock_provisioner()
        await poll_settlement(db, record.fingerprint, mock_gateway(settled=True), provisioner, now=NOW)

        gateway = mock_gateway(settled=True)
        result = await poll_settlement(db, record.fingerprint, gateway, provisioner, now=NOW)

        assert result.status == "paid"
        assert result.outcome == SettlementOutcome.ALREADY_SETTLED
        gateway.check_transaction.assert_not_awaited()
        provisioner.create.assert_awaited_once()

    async def test_provisioning_failure_still_reports_paid(self, db):
        record = issue(db, make_invoice(db, make_order(db)))
        result = await poll_settlement(
            db, record.fingerprint, mock_gateway(settled=True),
            mock_provisioner(fail_on={"create"}), mode=PollMode.MANUAL, now=NOW,
        )
        assert result.status == "paid"
        assert result.outcome == SettlementOutcome.PROVISIONING_FAILED
        assert result.order_status == models.OrderStatus.PAID


class TestPollNotSettled:
    async def test_silent_not_paid_is_pending(self, db):
        record = issue(db, make_invoice(db, make_order(db)))
        result = await poll_settlement(db, record.fingerprint, mock_gateway(settled=False), mock_provisioner(), now=NOW)
        assert result.status == "pending"
        assert db.query(models.SettlementRecord).first().status == models.SettlementStatus.PENDING

    async def test_manual_not_paid_raises(self, db):
        record = issue(db, make_invoice(db, make_order(db)))
        with pytest.raises(PaymentNotReceived):
            await poll_settlement(db, record.fingerprint, mock_gateway(settled=False),
                                  mock_provisioner(), mode=PollMode.MANUAL, now=NOW)

    async def test_silent_gateway_error_is_pending(self, db):
        record = issue(db, make_invoice(db, make_order(db)))
        gateway = mock_gateway(error=GatewayError("Bakong: HTTP 503"))
        result = await poll_settlement(db, record.fingerprint, gateway, mock_provisioner(), now=NOW)
        assert result.status == "pending"
        assert "503" in result.detail

    async def test_manual_gateway_error_raises(self, db):
        record = issue(db, make_invoice(db, make_order(db)))
        gateway = mock_gateway(error=GatewayError("Bakong: HTTP 503"))
        with pytest.raises(GatewayError):
            await poll_settlement(db, record.fingerprint, gateway, mock_provisioner(), mode=PollMode.MANUAL, now=NOW)


class TestPollClosed:
    async def test_expired_window_skips_gateway(self, db):
        record = issue(db, make_invoice(db, make_order(db)))
        gateway = mock_gateway(settled=True)
        late = BASE_TIME + timedelta(minutes=20)

        result = await poll_settlement(db, record.fingerprint, gateway, mock_provisioner(), now=late)

        assert result.status == "expired"
        gateway.check_transaction.assert_not_awaited()
        db.refresh(record)
        assert record.status == models.SettlementStatus.FAILED
        assert record.failure_reason == "expired"

    async def test_manual_expired_raises(self, db):
        record = issue(db, make_invoice(db, make_order(db)))
        with pytest.raises(ExpiredFingerprint):
            await poll_settlement(db, record.fingerprint, mock_gateway(), mock_provisioner(),
                                  mode=PollMode.MANUAL, now=BASE_TIME + timedelta(hours=1))

    async def test_duplicate_record_reports_failed(self, db):
        record = issue(db, make_invoice(db, make_order(db)))
        record.status = models.SettlementStatus.FAILED
        record.failure_reason = "duplicate_payment"
        db.commit()
        result = await poll_settlement(db, record.fingerprint, mock_gateway(), mock_provisioner(), now=NOW)
        assert result.status == "failed"
        assert result.detail == "duplicate_payment"

    async def test_unknown_fingerprint(self, db):
        with pytest.raises(RecordNotFound):
            await poll_settlement(db, "0" * 32, mock_gateway(), mock_provisioner(), now=NOW)


# ---------------------------------------------------------------------------
# BakongGateway
# ---------------------------------------------------------------------------
def patched_client(handler):
    real = httpx.AsyncClient

    def factory(*args, **kwargs):
        kwargs["transport"] = httpx.MockTransport(handler)
        return real(*args, **kwargs)

    return patch("settlement_engine.processors.bakong.httpx.AsyncClient", side_effect=factory)


class TestBakongGateway:
    async def test_response_code_zero_is_settled(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            return httpx.Response(200, json={"responseCode": 0, "data": {"hash": "h"}})

        with patched_client(handler):
            status = await BakongGateway("https://bakong.test/", "tok").check_transaction("abc")

        assert status.settled
        assert status.evidence["data"] == {"hash": "h"}
        assert seen["url"] == "https://bakong.test/v1/check_transaction_by_md5"
        assert seen["auth"] == "Bearer tok"

    async def test_other_response_code_is_not_settled(self):
        with patched_client(lambda r: httpx.Response(200, json={"responseCode": 1})):
            status = await BakongGateway("https://bakong.test", "tok").check_transaction("abc")
        assert not status.settled

    async def test_http_error(self):
        with patched_client(lambda r: httpx.Response(503)):
            with pytest.raises(GatewayError, match="503"):
                await BakongGateway("https://bakong.test", "tok").check_transaction("abc")

    async def test_non_json(self):
        with patched_client(lambda r: httpx.Response(200, text="<html>")):
            with pytest.raises(GatewayError, match="non-JSON"):
                await BakongGateway("https://bakong.test", "tok").check_transaction("abc")

    async def test_missing_token(self):
        with pytest.raises(GatewayError, match="BAKONG_TOKEN"):
            await BakongGateway("https://bakong.test", None).check_transaction("abc")
