import unittest

from support import TempDatabaseTestCase, seed_user

from achei import credits, imports, storage
from achei.credits import InsufficientCredits


def _result(index: int, **extra):
    data = {
        "cnpj": f"{index:014d}",
        "name": f"Empresa {index} LTDA",
        "fantasyName": f"Empresa {index}",
        "cnae": "5611201",
        "city": "Curitiba",
        "state": "PR",
        "phone1": "(41) 99999-000" + str(index % 10),
        "phone2": "",
    }
    data.update(extra)
    return data


class CreditLedgerTests(TempDatabaseTestCase):
    def test_balance_defaults_to_zero(self) -> None:
        self.assertEqual(credits.get_balance("nobody"), 0)
        self.assertEqual(credits.summary("nobody"), {"balance": 0, "hasCredits": False, "isLow": False, "isCritical": True})

    def test_consume_never_goes_negative(self) -> None:
        seed_user("u1", balance=2)
        self.assertTrue(credits.consume("u1", 1, "Teste"))
        self.assertTrue(credits.consume("u1", 1, "Teste"))
        self.assertFalse(credits.consume("u1", 1, "Teste"))
        self.assertEqual(credits.get_balance("u1"), 0)
        consumed = [tx for tx in credits.list_transactions("u1") if tx["type"] == "consumption"]
        self.assertEqual(len(consumed), 2)
        self.assertTrue(all(tx["amount"] == -1 for tx in consumed))

    def test_balance_flags(self) -> None:
        self.assertEqual(credits.balance_flags(21), {"hasCredits": True, "isLow": False, "isCritical": False})
        self.assertEqual(credits.balance_flags(20), {"hasCredits": True, "isLow": True, "isCritical": False})
        self.assertEqual(credits.balance_flags(5), {"hasCredits": True, "isLow": False, "isCritical": True})

    def test_require_raises_with_balance(self) -> None:
        seed_user("u1", balance=1)
        with self.assertRaises(InsufficientCredits) as ctx:
            credits.require("u1", 3)
        self.assertEqual(ctx.exception.balance, 1)
        self.assertEqual(ctx.exception.required, 3)

    def test_consumption_type_is_not_a_purchase(self) -> None:
        with self.assertRaises(ValueError):
            credits.add_credits("u1", 5, "consumption")


class ImportTests(TempDatabaseTestCase):
    def test_import_limited_by_balance(self) -> None:
        seed_user("u1", balance=3)
        batch = imports.import_search_results("u1", [_result(i) for i in range(1, 6)])

        self.assertEqual(batch.succeeded, 3)
        self.assertEqual(batch.failed, 2)
        self.assertEqual(credits.get_balance("u1"), 0)
        self.assertEqual(len(storage.fetch_companies("u1")), 3)
        errors = [item["error"] for item in batch.results if not item["ok"]]
        self.assertTrue(all("insuficientes" in error for error in errors))

    def test_duplicate_cnpj_is_not_charged(self) -> None:
        seed_user("u1", balance=5)
        imports.import_search_results("u1", [_result(1)])
        batch = imports.import_search_results("u1", [_result(1)])

        self.assertEqual(batch.failed, 1)
        self.assertIn("já importada", batch.results[0]["error"])
        self.assertEqual(credits.get_balance("u1"), 4)

    def test_phones_are_normalised_and_deduplicated(self) -> None:
        seed_user("u1", balance=1)
        imports.import_search_results(
            "u1",
            [_result(1, phone1="+55 (41) 99999-0001", phone2="41999990001", phones=["4133334444", "123"])],
        )
        company = storage.fetch_companies("u1")[0]
        numbers = sorted(phone["phone_number"] for phone in company["company_phones"])
        self.assertEqual(numbers, ["4133334444", "41999990001"])
        self.assertTrue(all(phone["status"] == "pending" for phone in company["company_phones"]))

    def test_address_is_composed(self) -> None:
        seed_user("u1", balance=1)
        imports.import_search_results(
            "u1",
            [_result(1, address="Rua XV de Novembro", number="100", neighborhood="Centro")],
        )
        company = storage.fetch_companies("u1")[0]
        self.assertEqual(company["address"], "Rua XV de Novembro, 100 - Centro")

    def test_bulk_delete_tallies_missing(self) -> None:
        seed_user("u1", balance=1)
        imports.import_search_results("u1", [_result(1)])
        company_id = storage.fetch_companies("u1")[0]["id"]

        batch = imports.bulk_delete("u1", [company_id, "missing"])
        self.assertEqual((batch.succeeded, batch.failed), (1, 1))
        self.assertEqual(storage.fetch_companies("u1"), [])


if __name__ == "__main__":
    unittest.main()
