import threading
import unittest
from unittest import mock

from support import fake_response

from achei.client import AcheiApiError, AcheiClient, PixStatusPoller


class FakeClient:
    def __init__(self, statuses):
        self.statuses = list(statuses)
        self.calls = 0

    def check_pix_status(self, pix_id):
        self.calls += 1
        status = self.statuses.pop(0) if self.statuses else "PENDING"
        if isinstance(status, Exception):
            raise status
        return {"success": True, "status": status, "isPaid": status == "PAID"}


class PixStatusPollerTests(unittest.TestCase):
    def test_stops_when_paid(self) -> None:
        paid = threading.Event()
        seen = []

        def on_paid(result):
            seen.append(result)
            paid.set()

        client = FakeClient(["PENDING", AcheiApiError("HTTP 502", 502), "PAID"])
        poller = PixStatusPoller(client, "pix_1", interval=0.01, on_paid=on_paid).start()

        self.assertTrue(paid.wait(2))
        poller.stop(timeout=1)
        self.assertTrue(poller.paid)
        self.assertEqual(poller.last_status, "PAID")
        self.assertFalse(poller.is_active)
        self.assertEqual(client.calls, 3)
        self.assertEqual(seen[0]["status"], "PAID")

    def test_stop_cancels_polling(self) -> None:
        client = FakeClient([])
        poller = PixStatusPoller(client, "pix_1", interval=0.01).start()
        self.assertTrue(poller.is_active)
        poller.stop(timeout=1)
        self.assertFalse(poller.is_active)
        calls = client.calls
        threading.Event().wait(0.05)
        self.assertEqual(client.calls, calls)
        self.assertFalse(poller.paid)

    def test_expires_after_max_duration(self) -> None:
        expired = threading.Event()
        client = FakeClient([])
        poller = PixStatusPoller(client, "pix_1", interval=0.01, max_duration=0.05, on_expired=expired.set).start()
        self.assertTrue(expired.wait(2))
        poller.stop(timeout=1)
        self.assertFalse(poller.paid)
        self.assertFalse(poller.is_active)


class AcheiClientTests(unittest.TestCase):
    def setUp(self) -> None:
        self.client = AcheiClient(token="tok", base_url="http://api.test/")

    def test_error_body_becomes_exception(self) -> None:
        resp = fake_response(402, {"error": "Créditos insuficientes", "required": 1, "balance": 0})
        with mock.patch.object(self.client.session, "request", return_value=resp):
            with self.assertRaises(AcheiApiError) as ctx:
                self.client.enrich_company("c1")
        self.assertEqual(ctx.exception.status_code, 402)
        self.assertEqual(str(ctx.exception), "Créditos insuficientes")
        self.assertEqual(ctx.exception.payload["balance"], 0)

    def test_invoke_posts_to_function(self) -> None:
        resp = fake_response(200, {"company": {}, "success": True})
        with mock.patch.object(self.client.session, "request", return_value=resp) as req:
            self.client.search_cnpja("11222333000181")
        args, kwargs = req.call_args
        self.assertEqual(args, ("POST", "http://api.test/functions/v1/search-cnpja"))
        self.assertEqual(kwargs["json"], {"cnpj": "11222333000181"})
        self.assertEqual(self.client.session.headers["Authorization"], "Bearer tok")


if __name__ == "__main__":
    unittest.main()
