"""
Bulk flows over companies: import search results, enrich and delete.
"""

import logging
from typing import Any, Dict, List

from achei import credits, storage
from achei.batch import BatchExecutor, BatchResult
from achei.cleaning import digits, normalize_phone, phone_type
from achei.credits import InsufficientCredits
from achei.enrichment import CompanyEnricher, enrich_company

logger = logging.getLogger("achei_leads")


class AlreadyImported(ValueError):
    pass


def _display_name(result: Dict[str, Any]) -> str:
    return result.get("fantasyName") or result.get("name") or "Empresa"


def _compose_address(result: Dict[str, Any]) -> str:
    address = result.get("address") or ""
    if address and result.get("number"):
        address = f"{address}, {result['number']}"
    if result.get("neighborhood"):
        address = f"{address} - {result['neighborhood']}" if address else result["neighborhood"]
    return address


def import_result(user_id: str, result: Dict[str, Any]) -> Dict[str, Any]:
    """Persist one search result as a company with its phones, charging one credit."""
    name = _display_name(result)
    cnpj = digits(result.get("cnpj"))
    if cnpj and storage.find_company_by_cnpj(user_id, cnpj):
        raise AlreadyImported(f"Empresa já importada: {name}")
    if not credits.consume(user_id, 1, f"Importação: {name}", cnpj or None):
        raise InsufficientCredits("Créditos insuficientes")

    company = storage.insert_company(
        user_id,
        {
            "name": name,
            "cnpj": cnpj or None,
            "cnae": result.get("cnae") or "",
            "cnae_description": result.get("cnaeDescription") or "",
            "city": result.get("city") or "",
            "state": result.get("state") or "",
            "address": _compose_address(result) or None,
            "cep": digits(result.get("cep")) or None,
            "segment": result.get("segment") or None,
            "email": result.get("email") or None,
            "website": result.get("website") or None,
        },
    )

    seen = set()
    for raw in (result.get("phone1"), result.get("phone2"), *(result.get("phones") or [])):
        number = normalize_phone(raw or "")
        if not number or number in seen:
            continue
        seen.add(number)
        storage.insert_phone(company["id"], number, phone_type(number), "pending")
    return {"id": company["id"], "name": company["name"], "phones": len(seen)}


def import_search_results(user_id: str, results: List[Dict[str, Any]]) -> BatchResult:
    state = {"exhausted": False}

    def _import(result: Dict[str, Any]) -> Dict[str, Any]:
        if state["exhausted"]:
            raise InsufficientCredits("Créditos insuficientes")
        try:
            return import_result(user_id, result)
        except InsufficientCredits:
            state["exhausted"] = True
            raise

    executor = BatchExecutor("importacao", item_key=lambda item: item.get("cnpj") or item.get("name"))
    batch = executor.run(results, _import)
    storage.record_audit(
        user_id,
        "companies_imported",
        {"succeeded": batch.succeeded, "failed": batch.failed},
    )
    return batch


async def bulk_enrich(user_id: str, company_ids: List[str], enricher: CompanyEnricher) -> BatchResult:
    async def _enrich(company_id: str) -> Dict[str, Any]:
        company = storage.get_company(user_id, company_id)
        if not company:
            raise LookupError("Empresa não encontrada")
        return await enrich_company(user_id, company, enricher)

    executor = BatchExecutor("enriquecimento em massa")
    return await executor.arun(company_ids, _enrich)


def bulk_delete(user_id: str, company_ids: List[str]) -> BatchResult:
    def _delete(company_id: str) -> bool:
        if not storage.delete_company(user_id, company_id):
            raise LookupError("Empresa não encontrada")
        return True

    executor = BatchExecutor("exclusao em massa")
    batch = executor.run(company_ids, _delete)
    storage.record_audit(user_id, "companies_deleted", {"ids": company_ids, "succeeded": batch.succeeded})
    return batch
