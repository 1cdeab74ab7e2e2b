import asyncio
import unittest

from achei.providers import ProviderResponseError, SearchProvider, search_businesses


class ScriptedProvider(SearchProvider):
    """Answers each search with the next scripted batch; exceptions are raised."""

    name = "scripted"

    def __init__(self, *batches):
        self.batches = list(batches)
        self.calls = []

    async def search(self, session, query, limit=10, **options):
        self.calls.append({"query": query, "limit": limit, **options})
        batch = self.batches.pop(0)
        if isinstance(batch, BaseException):
            raise batch
        return batch


def _hit(title, url="https://exemplo.com.br", markdown=""):
    return {"title": title, "url": url, "markdown": markdown}


class SearchBusinessesTests(unittest.TestCase):
    def test_generic_and_duplicate_names_dropped(self) -> None:
        provider = ScriptedProvider(
            [
                _hit("Padaria Central - Curitiba", markdown="Telefone: (41) 3333-4444"),
                _hit("Google Maps"),
                _hit("PADARIA CENTRAL | Home"),
                _hit("Mercado Bom - Curitiba"),
            ],
            asyncio.TimeoutError(),
        )

        result = asyncio.run(search_businesses(provider, "padaria curitiba"))

        self.assertTrue(result["success"])
        self.assertEqual([c["name"] for c in result["companies"]], ["Padaria Central", "Mercado Bom"])
        self.assertEqual(result["companies"][0]["phone1"], "4133334444")
        self.assertEqual(result["total"], 2)
        self.assertEqual(result["query"], "padaria curitiba")

    def test_failed_sub_search_skipped(self) -> None:
        provider = ScriptedProvider(
            ProviderResponseError("Firecrawl HTTP 500", status_code=500),
            [_hit("Mercado Bom - Curitiba")],
        )
        result = asyncio.run(search_businesses(provider, "mercado"))
        self.assertEqual([c["name"] for c in result["companies"]], ["Mercado Bom"])
        self.assertEqual(len(provider.calls), 2)

    def test_queries_and_limit(self) -> None:
        provider = ScriptedProvider(
            [_hit("Alfa"), _hit("Beta")],
            [_hit("Gama"), _hit("Delta")],
        )
        result = asyncio.run(search_businesses(provider, "oficina", limit=3))

        self.assertEqual(
            [call["query"] for call in provider.calls],
            ["oficina telefone contato endereço", "oficina site oficial"],
        )
        self.assertEqual([call["limit"] for call in provider.calls], [2, 2])
        self.assertEqual(provider.calls[0]["country"], "BR")
        self.assertEqual(len(result["companies"]), 3)
        self.assertEqual(result["total"], 4)


if __name__ == "__main__":
    unittest.main()
