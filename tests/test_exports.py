import unittest

from achei import exports


def _company(name, phones, city="Curitiba"):
    return {
        "id": name,
        "name": name,
        "cnae": "5611201",
        "city": city,
        "state": "PR",
        "phones": [{"id": f"{name}-{i}", "number": n, "type": "mobile", "status": s} for i, (n, s) in enumerate(phones)],
    }


def _lines(data: bytes):
    text = data.decode("utf-8")
    return text.lstrip("\ufeff").rstrip("\n").split("\n")


class ExportTests(unittest.TestCase):
    def test_per_phone_rows_and_quoting(self) -> None:
        companies = [
            _company("Restaurante Sabor, Arte", [("41999990001", "valid"), ("41999990002", "valid")]),
            _company("Academia Fit", [("41999990003", "invalid")]),
        ]
        data = exports.build_csv(companies, ["name", "phone"], mode="per_phone", only_valid_phones=True)

        self.assertTrue(data.startswith("\ufeff".encode("utf-8")))
        self.assertNotIn(b"\r\n", data)
        lines = _lines(data)
        self.assertEqual(lines[0], "Nome da Empresa,Telefone")
        self.assertEqual(
            lines[1:],
            [
                '"Restaurante Sabor, Arte",41999990001',
                '"Restaurante Sabor, Arte",41999990002',
            ],
        )

    def test_per_company_joins_phones(self) -> None:
        companies = [_company("Padaria", [("41999990001", "valid"), ("4133334444", "pending")])]
        data = exports.build_csv(companies, ["name", "phone", "phoneStatus"], mode="per_company", only_valid_phones=False)
        lines = _lines(data)
        self.assertEqual(len(lines), 2)
        self.assertEqual(lines[1], "Padaria,41999990001; 4133334444,valid; pending")

    def test_company_fields_only_ignore_phone_filter(self) -> None:
        companies = [_company("Sem Telefone", [])]
        data = exports.build_csv(companies, ["name", "city"], mode="per_phone", only_valid_phones=True)
        self.assertEqual(_lines(data)[1], "Sem Telefone,Curitiba")

    def test_quotes_are_doubled(self) -> None:
        companies = [_company('Bar "do Zé"', [("41999990001", "valid")])]
        data = exports.build_csv(companies, ["name"])
        self.assertEqual(_lines(data)[1], '"Bar ""do Zé"""')

    def test_no_fields_rejected(self) -> None:
        with self.assertRaises(ValueError):
            exports.build_csv([_company("A", [])], [])

    def test_no_rows_rejected(self) -> None:
        companies = [_company("A", [("41999990001", "invalid")])]
        with self.assertRaises(ValueError):
            exports.build_csv(companies, ["name", "phone"], only_valid_phones=True)

    def test_unknown_mode_rejected(self) -> None:
        with self.assertRaises(ValueError):
            exports.build_csv([_company("A", [])], ["name"], mode="sideways")

    def test_catalogue_groups_fields(self) -> None:
        catalogue = exports.field_catalogue()
        self.assertEqual(set(catalogue), {"empresa", "contato", "redes", "ia", "telefone"})
        self.assertIn({"key": "phone", "label": "Telefone"}, catalogue["telefone"])


if __name__ == "__main__":
    unittest.main()
