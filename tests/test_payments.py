import base64
import hashlib
import hmac
import json
import os
from unittest import mock

from support import TempDatabaseTestCase, fake_response, seed_user

from achei import credits, payments, storage
from achei.payments import AbacatePayClient, WebhookRejected
from achei.providers import ProviderResponseError


def _seed_packages() -> None:
    storage.upsert_package({"id": "pro", "name": "Pro", "price_brl": 50.0, "credits": 200, "bonus_credits": 30, "position": 1})


class CheckoutTests(TempDatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        _seed_packages()
        self.user = seed_user("u1")
        self.client = AbacatePayClient(api_key="abc", base_url="https://abacate.test")

    def _create(self):
        body = {
            "data": {
                "id": "pix_char_1",
                "status": "PENDING",
                "brCode": "000201...",
                "brCodeBase64": "data:image/png;base64,AAA",
                "expiresAt": "2026-10-18T13:00:00Z",
            },
            "error": None,
        }
        with mock.patch.object(self.client.session, "request", return_value=fake_response(200, body)) as req:
            result = payments.create_checkout(self.user, "pro", self.client)
        return result, req

    def test_create_checkout_stores_intent(self) -> None:
        result, req = self._create()
        sent = req.call_args.kwargs["json"]
        self.assertEqual(sent["amount"], 5000)
        self.assertEqual(sent["metadata"]["bonusCredits"], 30)
        self.assertEqual(req.call_args.kwargs["headers"]["Authorization"], "Bearer abc")

        self.assertEqual(result["pixId"], "pix_char_1")
        self.assertEqual(result["totalCredits"], 230)
        self.assertEqual(result["packageName"], "Pro")
        stored = storage.get_pix_payment("pix_char_1")
        self.assertEqual(stored["external_id"], sent["metadata"]["externalId"])

    def test_unknown_package(self) -> None:
        with self.assertRaises(LookupError):
            payments.create_checkout(self.user, "gold", self.client)

    def test_paid_status_credits_once(self) -> None:
        result, req = self._create()
        external_id = req.call_args.kwargs["json"]["metadata"]["externalId"]
        paid = {
            "data": {
                "status": "PAID",
                "metadata": {"credits": 200, "bonusCredits": 30, "packageId": "pro", "externalId": external_id},
            }
        }
        with mock.patch.object(self.client.session, "request", return_value=fake_response(200, paid)):
            first = payments.check_pix_status(self.user, result["pixId"], self.client)
            second = payments.check_pix_status(self.user, result["pixId"], self.client)

        self.assertEqual(first, {"success": True, "status": "PAID", "isPaid": True})
        self.assertTrue(second["isPaid"])
        self.assertEqual(credits.get_balance(self.user), 230)
        purchases = [tx for tx in credits.list_transactions(self.user) if tx["type"] == "purchase"]
        self.assertEqual(len(purchases), 1)
        self.assertEqual(purchases[0]["description"], "Compra de pacote - 200 créditos + 30 bônus")
        self.assertEqual(storage.get_pix_payment(result["pixId"])["status"], "PAID")

    def test_pending_status_adds_nothing(self) -> None:
        with mock.patch.object(self.client.session, "request", return_value=fake_response(200, {"data": {}})):
            status = payments.check_pix_status(self.user, "pix_x", self.client)
        self.assertEqual(status, {"success": True, "status": "PENDING", "isPaid": False})
        self.assertEqual(credits.get_balance(self.user), 0)

    def test_upstream_failure(self) -> None:
        with mock.patch.object(self.client.session, "request", return_value=fake_response(500, "oops", "text/plain")):
            with self.assertRaises(ProviderResponseError) as ctx:
                payments.check_pix_status(self.user, "pix_x", self.client)
        self.assertEqual(str(ctx.exception), "Erro ao verificar status do pagamento")


class WebhookTests(TempDatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        _seed_packages()
        self.user = seed_user("u1", email="cliente@alfa.com.br")

    def _event(self, event="billing.paid", billing_id="bill_1"):
        return json.dumps(
            {
                "event": event,
                "data": {
                    "billing": {
                        "id": billing_id,
                        "products": [{"externalId": "pro"}],
                        "customer": {"metadata": {"email": "cliente@alfa.com.br"}},
                    }
                },
            }
        ).encode("utf-8")

    def test_paid_event_is_idempotent(self) -> None:
        body = self._event()
        with mock.patch.dict(os.environ, {"ABACATEPAY_WEBHOOK_SECRET": "s3cret"}):
            first = payments.handle_webhook(body, query_secret="s3cret")
            second = payments.handle_webhook(body, query_secret="s3cret")

        self.assertEqual(first, {"received": True, "processed": True, "credits": 230})
        self.assertEqual(second["reason"], "already_processed")
        self.assertEqual(credits.get_balance(self.user), 230)
        bonus = [tx for tx in credits.list_transactions(self.user) if tx["type"] == "bonus"]
        self.assertEqual(bonus[0]["referenceId"], "bill_1_bonus")

    def test_wrong_secret(self) -> None:
        with mock.patch.dict(os.environ, {"ABACATEPAY_WEBHOOK_SECRET": "s3cret"}):
            with self.assertRaises(WebhookRejected) as ctx:
                payments.handle_webhook(self._event(), query_secret="nope")
        self.assertEqual(ctx.exception.status_code, 401)

    def test_signature_checked_when_present(self) -> None:
        body = self._event()
        digest = hmac.new(b"pub", body, hashlib.sha256).digest()
        good = base64.b64encode(digest).decode("ascii")
        with mock.patch.dict(os.environ, {"ABACATEPAY_WEBHOOK_SECRET": "", "ABACATEPAY_PUBLIC_KEY": "pub"}):
            with self.assertRaises(WebhookRejected):
                payments.handle_webhook(body, signature="bad")
            self.assertTrue(payments.handle_webhook(body, signature=good)["processed"])

    def test_other_events_ignored(self) -> None:
        with mock.patch.dict(os.environ, {"ABACATEPAY_WEBHOOK_SECRET": ""}):
            result = payments.handle_webhook(self._event(event="billing.created"))
        self.assertEqual(result, {"received": True, "processed": False})
        self.assertEqual(credits.get_balance(self.user), 0)
