"""AI enrichment pipeline: web search, LLM extraction and output validation."""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import aiohttp

from achei import credits, storage
from achei.cleaning import digits, format_cnpj
from achei.config import env_int
from achei.credits import InsufficientCredits
from achei.llm import ExtractionClient, extract_json
from achei.providers import ProviderResponseError, SearchProvider

logger = logging.getLogger("achei_leads")

MASK_MARKERS = ("*",)
FALLBACK_SUMMARY = "Não foi possível extrair informações estruturadas desta empresa."
MAX_LINKS_PER_RESULT = 15
MAX_MARKDOWN_CHARS = 2500

SYSTEM_PROMPT = (
    "Você é um especialista em extração de dados empresariais. Sua tarefa é analisar resultados de busca "
    "e extrair informações precisas e verificadas sobre empresas brasileiras. Sempre valide que os dados "
    "correspondem à empresa correta usando o CNPJ quando disponível. Retorne apenas JSON válido."
)

USER_PROMPT = """Analise os resultados de busca abaixo sobre a empresa com os seguintes dados:
- Nome cadastrado: "{name}"
- CNPJ: {cnpj}
- Cidade: {city}
- Estado: {state}

TAREFA: Extraia as informações REAIS desta empresa específica a partir dos resultados de busca.

INFORMAÇÕES A EXTRAIR:
1. RAZÃO SOCIAL da empresa (nome jurídico oficial completo registrado, sem asteriscos)
2. NOME FANTASIA da empresa (nome comercial/marca que a empresa usa, diferente da razão social)
3. Website oficial (URL completa começando com https://)
4. Email de contato (email completo e válido, sem asteriscos)
5. Instagram oficial (@usuario ou URL completa)
6. Facebook oficial (URL completa)
7. LinkedIn da empresa (URL completa)
8. Resumo sobre a empresa (máximo 150 palavras descrevendo o que a empresa faz)

REGRAS CRÍTICAS:
- Retorne APENAS um JSON válido, sem markdown, sem código, sem texto adicional
- Se não encontrar uma informação com certeza, use null
- VALIDE que as informações são realmente DESTA empresa (confira o CNPJ {cnpj_check} se disponível)
- IGNORE emails mascarados com asteriscos (***) e retorne null
- IGNORE informações de outras empresas que aparecem nos resultados
- Para redes sociais, retorne apenas perfis oficiais verificados da empresa
- O website deve ser o site oficial da empresa, não diretórios ou listas

Formato EXATO de resposta (apenas o JSON):
{{
  "razaoSocial": "RAZAO SOCIAL COMPLETA LTDA" ou null,
  "nomeFantasia": "Nome Fantasia da Empresa" ou null,
  "website": "https://www.empresa.com.br" ou null,
  "email": "contato@empresa.com.br" ou null,
  "instagram": "https://instagram.com/empresa" ou null,
  "facebook": "https://facebook.com/empresa" ou null,
  "linkedin": "https://linkedin.com/company/empresa" ou null,
  "summary": "Descrição do que a empresa faz..." ou null
}}

RESULTADOS DA BUSCA:
{content}"""


def build_queries(company: Dict[str, Any]) -> Dict[str, str]:
    cnpj = digits(company.get("cnpj"))
    name = company.get("name", "")
    city = company.get("city", "")
    state = company.get("state", "")
    if len(cnpj) == 14:
        formatted = format_cnpj(cnpj)
        return {
            "primary": f'CNPJ {formatted} OR "{formatted}" empresa site oficial',
            "contact": f"CNPJ {cnpj} contato email telefone endereço",
            "social": f"CNPJ {cnpj} instagram facebook linkedin",
        }
    return {
        "primary": f'"{name}" {city} {state} empresa site oficial contato',
        "contact": f'"{name}" {city} contato email telefone',
        "social": f'"{name}" {city} instagram facebook linkedin',
    }


def build_search_content(results: List[Dict[str, Any]]) -> str:
    blocks = []
    for result in results:
        links = "\n".join(str(link) for link in (result.get("links") or [])[:MAX_LINKS_PER_RESULT])
        markdown = result.get("markdown")
        body = markdown[:MAX_MARKDOWN_CHARS] if markdown else (result.get("description") or "N/A")
        blocks.append(
            f"URL: {result.get('url')}\n"
            f"Título: {result.get('title') or 'N/A'}\n"
            f"Links encontrados:\n{links}\n"
            f"Conteúdo: {body}"
        )
    return "\n\n---\n\n".join(blocks) or "Nenhum resultado encontrado"


def build_messages(company: Dict[str, Any], content: str) -> List[Dict[str, str]]:
    cnpj = company.get("cnpj") or ""
    prompt = USER_PROMPT.format(
        name=company.get("name", ""),
        cnpj=cnpj or "Não informado",
        cnpj_check=cnpj,
        city=company.get("city", ""),
        state=company.get("state", ""),
        content=content,
    )
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": prompt},
    ]


def _clean(value: Any, markers: Iterable[str]) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip()
    if not value or value.lower() == "null":
        return None
    if any(marker in value for marker in markers):
        return None
    return value


def validate_enrichment(parsed: Dict[str, Any], markers: Iterable[str] = MASK_MARKERS) -> Dict[str, Any]:
    """Keep only extracted values that pass the masking and shape checks."""
    markers = tuple(markers)
    razao = _clean(parsed.get("razaoSocial"), markers)
    fantasia = _clean(parsed.get("nomeFantasia"), markers)
    website = _clean(parsed.get("website"), markers)
    email = _clean(parsed.get("email"), markers)
    instagram = _clean(parsed.get("instagram"), markers)
    facebook = _clean(parsed.get("facebook"), markers)
    linkedin = _clean(parsed.get("linkedin"), markers)
    summary = parsed.get("summary") if isinstance(parsed.get("summary"), str) else None

    if razao and fantasia and razao != fantasia:
        name = f"{razao} | {fantasia}"
    else:
        name = razao or fantasia

    result = {
        "name": name,
        "razaoSocial": razao,
        "nomeFantasia": fantasia,
        "website": website if website and website.startswith("http") else None,
        "email": email if email and "@" in email else None,
        "instagram": instagram if instagram and ("instagram.com" in instagram or instagram.startswith("@")) else None,
        "facebook": facebook if facebook and "facebook.com" in facebook else None,
        "linkedin": linkedin if linkedin and "linkedin.com" in linkedin else None,
        "aiSummary": summary or None,
    }
    return {key: value for key, value in result.items() if value}


def update_fields(data: Dict[str, Any]) -> Dict[str, Any]:
    mapping = {
        "name": "name",
        "website": "website",
        "email": "email",
        "instagram": "instagram",
        "facebook": "facebook",
        "linkedin": "linkedin",
        "aiSummary": "ai_summary",
    }
    fields = {column: data[key] for key, column in mapping.items() if data.get(key)}
    fields["enriched_at"] = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
    return fields


class CompanyEnricher:
    def __init__(self, provider: SearchProvider, llm: ExtractionClient, timeout: Optional[int] = None):
        self.provider = provider
        self.llm = llm
        self.timeout = timeout or env_int("HTTP_TIMEOUT", 30)

    async def _optional_search(self, session: aiohttp.ClientSession, query: str, limit: int) -> List[Dict[str, Any]]:
        try:
            return await self.provider.search(session, query, limit=limit)
        except (ProviderResponseError, aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning(
                "Busca secundaria falhou",
                extra={"event_type": "enrich", "query": query, "error": str(exc)[:200]},
            )
            return []

    async def research(self, company: Dict[str, Any]) -> Dict[str, Any]:
        queries = build_queries(company)
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            try:
                primary = await self.provider.search(session, queries["primary"], limit=10)
            except (ProviderResponseError, aiohttp.ClientError, asyncio.TimeoutError) as exc:
                logger.error(
                    "Busca principal falhou",
                    extra={"event_type": "error", "company": company.get("name"), "error": str(exc)[:200]},
                )
                raise ProviderResponseError("Erro na busca Firecrawl", status_code=500)
            contact = await self._optional_search(session, queries["contact"], 5)
            social = await self._optional_search(session, queries["social"], 5)

        content = build_search_content([*primary, *contact, *social])
        reply = await self.llm.complete(build_messages(company, content))
        parsed = extract_json(reply)
        if parsed is None:
            logger.warning("Resposta da IA sem JSON", extra={"event_type": "enrich", "company": company.get("name")})
            return {"aiSummary": FALLBACK_SUMMARY}
        return validate_enrichment(parsed)


async def enrich_company(user_id: str, company: Dict[str, Any], enricher: CompanyEnricher) -> Dict[str, Any]:
    """Research one company, charge one credit and persist the validated fields when it is stored."""
    if not company or not company.get("name"):
        raise ValueError("Dados da empresa são obrigatórios")
    credits.require(user_id, 1)

    logger.info("Enriquecendo empresa", extra={"event_type": "enrich", "company": company.get("name")})
    data = await enricher.research(company)

    company_id = company.get("id")
    # Concurrent calls can pass require() on the same last credit.
    if not credits.consume(user_id, 1, f"Enriquecimento: {company.get('name')}", company_id):
        raise InsufficientCredits(balance=credits.get_balance(user_id))
    if company_id:
        storage.update_company(user_id, company_id, **update_fields(data))
    storage.log_event("info", "company_enriched", {"company_id": company_id, "fields": sorted(data.keys())})
    return {"success": True, "companyId": company_id, "data": data}
