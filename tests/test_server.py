import json
import os
import unittest
from unittest import mock

from support import TempDatabaseTestCase, seed_company, seed_user

from fastapi.testclient import TestClient

import server
from achei import credits, storage
from achei.providers import ProviderResponseError


class ServerTestCase(TempDatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.user = seed_user("u1", balance=5)
        self.token = server.issue_token(self.user)
        self.client = TestClient(server.app)
        self.headers = {"Authorization": f"Bearer {self.token}"}

    def tearDown(self) -> None:
        server.app.dependency_overrides.clear()
        super().tearDown()

    def override(self, dependency, value) -> None:
        server.app.dependency_overrides[dependency] = lambda: value


class AuthTests(ServerTestCase):
    def test_health_is_public(self) -> None:
        self.assertEqual(self.client.get("/health").json(), {"status": "ok"})

    def test_missing_token(self) -> None:
        resp = self.client.post("/functions/v1/search-cnpja", json={"cnpj": "11222333000181"})
        self.assertEqual(resp.status_code, 401)
        self.assertIn("error", resp.json())

    def test_unknown_token(self) -> None:
        resp = self.client.get("/api/companies", headers={"Authorization": "Bearer nope"})
        self.assertEqual(resp.status_code, 401)


class EdgeFunctionTests(ServerTestCase):
    def test_rate_limit_blocks_before_upstream(self) -> None:
        lookup = mock.Mock()
        lookup.lookup.return_value = {"cnpj": "11222333000181", "name": "ALFA LTDA"}
        self.override(server.get_cnpja_client, lookup)

        with mock.patch.dict(os.environ, {"RATE_LIMIT_MAX_REQUESTS": "2", "RATE_LIMIT_WINDOW_SECONDS": "60"}):
            codes = [
                self.client.post("/functions/v1/search-cnpja", json={"cnpj": "11222333000181"}, headers=self.headers)
                for _ in range(3)
            ]

        self.assertEqual([resp.status_code for resp in codes], [200, 200, 429])
        self.assertEqual(lookup.lookup.call_count, 2)
        self.assertEqual(codes[2].headers["Retry-After"], "60")
        self.assertIn("error", codes[2].json())
        self.assertEqual(codes[0].json(), {"company": lookup.lookup.return_value, "success": True})

    def test_invalid_cnpj_is_rejected_without_upstream_call(self) -> None:
        lookup = mock.Mock()
        self.override(server.get_cnpja_client, lookup)
        resp = self.client.post("/functions/v1/search-cnpja", json={"cnpj": "123"}, headers=self.headers)
        self.assertEqual(resp.status_code, 400)
        lookup.lookup.assert_not_called()

    def test_cnae_requires_five_digits(self) -> None:
        self.override(server.get_lista_cnae_client, mock.Mock())
        resp = self.client.post(
            "/functions/v1/search-by-cnae",
            json={"cnae": "561", "municipio": 4106902},
            headers=self.headers,
        )
        self.assertEqual(resp.status_code, 400)

    def test_provider_error_body(self) -> None:
        lista = mock.Mock()
        lista.search.side_effect = ProviderResponseError(
            "A API Lista CNAE não está disponível no momento.",
            status_code=503,
            payload={"companies": [], "total": 0},
        )
        self.override(server.get_lista_cnae_client, lista)
        resp = self.client.post(
            "/functions/v1/search-by-cnae",
            json={"cnae": "5611201", "municipio": 4106902},
            headers=self.headers,
        )
        self.assertEqual(resp.status_code, 503)
        self.assertEqual(resp.json()["companies"], [])
        self.assertEqual(resp.json()["total"], 0)

    def test_search_preview_is_masked(self) -> None:
        lista = mock.Mock()
        lista.search.return_value = [
            {"cnpj": "11222333000181", "name": "Alfa Comercio", "fantasyName": "", "phone1": "41999990001", "phone2": "", "email": "contato@alfa.com.br"}
        ]
        self.override(server.get_lista_cnae_client, lista)
        resp = self.client.post(
            "/functions/v1/search-by-cnae",
            json={"cnae": "5611201", "municipio": 4106902, "preview": True},
            headers=self.headers,
        )
        company = resp.json()["companies"][0]
        self.assertEqual(company["phone1"], "(XX) XXXXX-XXXX")
        self.assertEqual(company["name"], "Alf* ********")

    def test_calls_are_audited(self) -> None:
        self.override(server.get_cnpja_client, mock.Mock(**{"lookup.return_value": {}}))
        self.client.post("/functions/v1/search-cnpja", json={"cnpj": "11222333000181"}, headers=self.headers)
        actions = [row["action"] for row in storage.fetch_audit_logs(self.user)]
        self.assertIn("search-cnpja", actions)

    def test_enrich_without_credits(self) -> None:
        user = seed_user("broke")
        token = server.issue_token(user)
        company = seed_company(user, "Alfa")
        self.override(server.get_enricher, mock.Mock())
        resp = self.client.post(
            "/functions/v1/enrich-company",
            json={"companyId": company["id"]},
            headers={"Authorization": f"Bearer {token}"},
        )
        self.assertEqual(resp.status_code, 402)
        self.assertEqual(resp.json()["balance"], 0)

    def test_webhook_route(self) -> None:
        storage.upsert_package({"id": "pro", "name": "Pro", "price_brl": 50.0, "credits": 200, "bonus_credits": 30})
        body = json.dumps(
            {
                "event": "billing.paid",
                "data": {
                    "billing": {
                        "id": "bill_9",
                        "products": [{"externalId": "pro"}],
                        "customer": {"metadata": {"email": "u1@example.com"}},
                    }
                },
            }
        )
        with mock.patch.dict(os.environ, {"ABACATEPAY_WEBHOOK_SECRET": "abc"}):
            denied = self.client.post("/functions/v1/abacatepay-webhook", content=body)
            accepted = self.client.post("/functions/v1/abacatepay-webhook?webhookSecret=abc", content=body)
        self.assertEqual(denied.status_code, 401)
        self.assertEqual(accepted.json()["credits"], 230)
        self.assertEqual(credits.get_balance(self.user), 235)


class DataApiTests(ServerTestCase):
    def test_import_then_export(self) -> None:
        results = [
            {"cnpj": f"1122233300018{i}", "name": f"Empresa {i}, Ltda", "phone1": f"4199999000{i}", "city": "Curitiba", "state": "PR"}
            for i in range(1, 4)
        ]
        resp = self.client.post("/api/companies/import", json={"companies": results}, headers=self.headers)
        self.assertEqual(resp.json()["succeeded"], 3)
        self.assertEqual(resp.json()["balance"], 2)

        phone_ids = [c["phones"][0]["id"] for c in self.client.get("/api/companies", headers=self.headers).json()]
        storage.update_phone_status(phone_ids[0], "valid")

        resp = self.client.get(
            "/api/companies/export.csv",
            params={"fields": "name,phone", "mode": "per_phone", "only_valid": "true"},
            headers=self.headers,
        )
        self.assertEqual(resp.status_code, 200)
        self.assertIn("attachment; filename=empresas_", resp.headers["content-disposition"])
        lines = resp.content.decode("utf-8").lstrip("\ufeff").strip("\n").split("\n")
        self.assertEqual(len(lines), 2)
        self.assertTrue(lines[1].startswith('"Empresa '))

    def test_export_without_rows(self) -> None:
        resp = self.client.get("/api/companies/export.csv", params={"fields": "name"}, headers=self.headers)
        self.assertEqual(resp.status_code, 400)

    def test_kanban_flow(self) -> None:
        stages = self.client.post("/api/crm/stages/defaults", headers=self.headers).json()
        company = seed_company(self.user, "Alfa")
        move = self.client.post(
            f"/api/crm/companies/{company['id']}/move",
            json={"stageId": stages[1]["id"]},
            headers=self.headers,
        )
        self.assertEqual(move.status_code, 200)
        board = self.client.get("/api/crm/kanban", headers=self.headers).json()
        self.assertEqual(board["stages"][1]["count"], 1)

        self.client.delete(f"/api/crm/stages/{stages[1]['id']}", headers=self.headers)
        board = self.client.get("/api/crm/kanban", headers=self.headers).json()
        self.assertEqual(board["unassigned"]["count"], 1)

    def test_missing_company_is_404(self) -> None:
        resp = self.client.get("/api/companies/nope", headers=self.headers)
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json(), {"error": "Empresa não encontrada"})

    def test_credit_summary(self) -> None:
        resp = self.client.get("/api/credits/summary", headers=self.headers)
        self.assertEqual(resp.json(), {"balance": 5, "hasCredits": True, "isLow": False, "isCritical": True})

    def test_stage_update_ignores_unknown_keys(self) -> None:
        stages = self.client.post("/api/crm/stages/defaults", headers=self.headers).json()
        stage_id = stages[0]["id"]
        resp = self.client.patch(
            f"/api/crm/stages/{stage_id}",
            json={"name": "Leads", "position": "7", "user_id": "outro", "stage_id": "x"},
            headers=self.headers,
        )
        self.assertEqual(resp.status_code, 200)
        stored = {stage["id"]: stage for stage in self.client.get("/api/crm/stages", headers=self.headers).json()}
        self.assertEqual(stored[stage_id]["name"], "Leads")
        self.assertEqual(stored[stage_id]["position"], 7)

        resp = self.client.patch(f"/api/crm/stages/{stage_id}", json={"position": "primeiro"}, headers=self.headers)
        self.assertEqual(resp.status_code, 400)

    def test_malformed_reorder_is_rejected(self) -> None:
        stages = self.client.post("/api/crm/stages/defaults", headers=self.headers).json()
        resp = self.client.post(
            "/api/crm/stages/reorder",
            json={"stages": [{"id": stages[0]["id"], "position": 3}, {"position": 0}]},
            headers=self.headers,
        )
        self.assertEqual(resp.status_code, 400)
        names = [stage["name"] for stage in self.client.get("/api/crm/stages", headers=self.headers).json()]
        self.assertEqual(names[0], "Prospecção")

    def test_profile(self) -> None:
        resp = self.client.get("/api/profile", headers=self.headers)
        body = resp.json()
        self.assertEqual(body["email"], "u1@example.com")
        self.assertEqual(body["fullName"], "Teste")
        self.assertEqual(body["credits"]["balance"], 5)

    def test_cnpjws_account_route(self) -> None:
        cnpjws = mock.Mock()
        cnpjws.account.return_value = {"plano": "Premium"}
        self.override(server.get_cnpjws_client, cnpjws)
        resp = self.client.post("/functions/v1/check-cnpjws-account", json={}, headers=self.headers)
        self.assertEqual(resp.json(), {"success": True, "account": {"plano": "Premium"}})


if __name__ == "__main__":
    unittest.main()
