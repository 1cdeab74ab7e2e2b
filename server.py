from __future__ import annotations

import hashlib
import io
import os
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from fastapi import Body, Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse

try:
    from dotenv import load_dotenv

    load_dotenv()
except Exception:
    pass

from achei import credits, crm, exports, imports, messages, payments, storage
from achei.cleaning import (
    map_company_row,
    mask_search_result,
    normalize_cep,
    normalize_cnae,
    normalize_cnpj,
    normalize_phone,
    phone_type,
)
from achei.config import env_int
from achei.credits import InsufficientCredits
from achei.data_sources import CnpjaClient, CnpjWsClient, ListaCnaeClient
from achei.enrichment import CompanyEnricher, enrich_company
from achei.llm import ExtractionClient
from achei.messages import WhatsAppValidator
from achei.payments import AbacatePayClient, WebhookRejected
from achei.providers import FirecrawlProvider, ProviderResponseError, SearchProvider, search_businesses, select_provider
from achei.rate_limit import RateLimitExceeded, get_limiter
from achei.reference_data import ReferenceDataService
from achei.telemetry import current_user_id, logger

app = FastAPI(title="Achei Leads", version="1.0.0")

storage.init_db()


class AuthError(RuntimeError):
    pass


def _is_checked(value: Any) -> bool:
    return str(value or "").lower() in {"on", "true", "1", "yes"}


def _parse_csv(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _to_int(value: Any, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


# Error mapping


def _error(status_code: int, body: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=body, headers=headers)


@app.exception_handler(ProviderResponseError)
async def _provider_error(request: Request, exc: ProviderResponseError) -> JSONResponse:
    logger.error(str(exc), extra={"event_type": "error", "status": exc.status_code, "path": request.url.path})
    return _error(exc.status_code or 500, exc.to_body())


@app.exception_handler(RateLimitExceeded)
async def _rate_limited(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return _error(429, {"error": str(exc)}, headers={"Retry-After": str(exc.retry_after)})


@app.exception_handler(InsufficientCredits)
async def _no_credits(request: Request, exc: InsufficientCredits) -> JSONResponse:
    return _error(402, {"error": str(exc), "required": exc.required, "balance": exc.balance})


@app.exception_handler(AuthError)
async def _unauthorized(request: Request, exc: AuthError) -> JSONResponse:
    return _error(401, {"error": str(exc)})


@app.exception_handler(WebhookRejected)
async def _webhook_rejected(request: Request, exc: WebhookRejected) -> JSONResponse:
    return _error(exc.status_code, {"error": str(exc)})


@app.exception_handler(ValueError)
async def _bad_request(request: Request, exc: ValueError) -> JSONResponse:
    return _error(400, {"error": str(exc)})


@app.exception_handler(LookupError)
async def _not_found(request: Request, exc: LookupError) -> JSONResponse:
    return _error(404, {"error": str(exc).strip("'\"")})


# Auth


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def issue_token(user_id: str, ttl_days: Optional[int] = None) -> str:
    """Create a bearer token for ``user_id``; only its hash is stored."""
    token = secrets.token_urlsafe(32)
    expires_at = None
    if ttl_days:
        expires_at = (datetime.now(timezone.utc) + timedelta(days=ttl_days)).strftime("%Y-%m-%d %H:%M:%S")
    storage.insert_token(hash_token(token), user_id, expires_at)
    return token


async def require_user(authorization: Optional[str] = Header(None)) -> str:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise AuthError("Não autorizado")
    token = authorization.split(" ", 1)[1].strip()
    user_id = storage.get_token_user(hash_token(token)) if token else None
    if not user_id:
        logger.warning("Token invalido", extra={"event_type": "auth"})
        raise AuthError("Usuário não autenticado")
    current_user_id.set(user_id)
    return user_id


def _edge(endpoint: str):
    """Auth, then rate limit, then audit: the guard every edge function runs first."""

    async def guard(user_id: str = Depends(require_user)) -> str:
        get_limiter().check(user_id, endpoint)
        storage.record_audit(user_id, endpoint, {"endpoint": endpoint})
        return user_id

    return guard


# Provider factories, overridable in tests


def get_lista_cnae_client() -> ListaCnaeClient:
    return ListaCnaeClient()


def get_cnpja_client() -> CnpjaClient:
    return CnpjaClient()


def get_cnpjws_client() -> CnpjWsClient:
    return CnpjWsClient()


def get_search_provider() -> Optional[SearchProvider]:
    key = os.getenv("FIRECRAWL_API_KEY")
    return FirecrawlProvider(key) if key else None


def get_enricher(provider: Optional[SearchProvider] = Depends(get_search_provider)) -> Optional[CompanyEnricher]:
    if provider is None:
        return None
    return CompanyEnricher(provider, ExtractionClient(), timeout=env_int("HTTP_TIMEOUT", 30))


def get_payments_client() -> AbacatePayClient:
    return AbacatePayClient()


def get_phone_validator() -> WhatsAppValidator:
    return WhatsAppValidator()


_reference_service: Optional[ReferenceDataService] = None


def get_reference_service() -> ReferenceDataService:
    global _reference_service
    if _reference_service is None:
        _reference_service = ReferenceDataService()
    return _reference_service


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


# Edge functions


def _maybe_masked(companies: List[Dict[str, Any]], payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    if _is_checked(payload.get("preview")):
        return [mask_search_result(company) for company in companies]
    return companies


@app.post("/functions/v1/search-by-cnae")
def search_by_cnae(
    payload: Dict[str, Any] = Body(default={}),
    user_id: str = Depends(_edge("search-by-cnae")),
    client: ListaCnaeClient = Depends(get_lista_cnae_client),
) -> Dict[str, Any]:
    cnae = normalize_cnae(str(payload.get("cnae") or ""))
    if not cnae:
        raise ValueError("CNAE inválido. Informe pelo menos 5 dígitos.")
    municipio = payload.get("municipio")
    if not municipio:
        raise ValueError("Município é obrigatório")
    companies = client.search(
        cnae,
        municipio,
        quantidade=_to_int(payload.get("quantidade"), 50),
        inicio=_to_int(payload.get("inicio"), 0),
        telefone_obrigatorio=bool(payload.get("telefoneObrigatorio")),
        email_obrigatorio=bool(payload.get("emailObrigatorio")),
    )
    logger.info("Busca por CNAE", extra={"event_type": "search", "cnae": cnae, "total": len(companies)})
    return {"companies": _maybe_masked(companies, payload), "total": len(companies), "success": True}


@app.post("/functions/v1/search-cnpja")
def search_cnpja(
    payload: Dict[str, Any] = Body(default={}),
    user_id: str = Depends(_edge("search-cnpja")),
    client: CnpjaClient = Depends(get_cnpja_client),
) -> Dict[str, Any]:
    cnpj = normalize_cnpj(str(payload.get("cnpj") or ""))
    if not cnpj:
        raise ValueError("CNPJ inválido. Deve conter 14 dígitos.")
    company = client.lookup(cnpj)
    logger.info("Busca por CNPJ", extra={"event_type": "search"})
    return {"company": company, "success": True}


@app.post("/functions/v1/search-by-cep")
def search_by_cep(
    payload: Dict[str, Any] = Body(default={}),
    user_id: str = Depends(_edge("search-by-cep")),
    client: CnpjWsClient = Depends(get_cnpjws_client),
) -> Dict[str, Any]:
    cep = normalize_cep(str(payload.get("cep") or ""))
    if not cep:
        raise ValueError("CEP inválido. Deve conter 8 dígitos.")
    page = _to_int(payload.get("pagina"), 1)
    companies = client.search_by_cep(cep, pagina=page)
    logger.info("Busca por CEP", extra={"event_type": "search", "total": len(companies)})
    return {"companies": _maybe_masked(companies, payload), "total": len(companies), "page": page, "success": True}


@app.post("/functions/v1/check-cnpjws-account")
def check_cnpjws_account(
    user_id: str = Depends(_edge("check-cnpjws-account")),
    client: CnpjWsClient = Depends(get_cnpjws_client),
) -> Dict[str, Any]:
    return {"success": True, "account": client.account()}


@app.post("/functions/v1/search-google-maps")
async def search_google_maps(
    payload: Dict[str, Any] = Body(default={}),
    user_id: str = Depends(_edge("search-google-maps")),
    provider: Optional[SearchProvider] = Depends(get_search_provider),
) -> Dict[str, Any]:
    query = str(payload.get("query") or "").strip()
    if not query:
        raise ValueError("Query is required")
    provider = provider or select_provider("firecrawl")
    return await search_businesses(
        provider,
        query,
        limit=_to_int(payload.get("limit"), 20),
        timeout=env_int("HTTP_TIMEOUT", 30),
    )


@app.post("/functions/v1/enrich-company")
async def enrich_company_endpoint(
    payload: Dict[str, Any] = Body(default={}),
    user_id: str = Depends(_edge("enrich-company")),
    enricher: Optional[CompanyEnricher] = Depends(get_enricher),
) -> Dict[str, Any]:
    company = payload.get("company") or {}
    company_id = payload.get("companyId") or company.get("id")
    if company_id:
        stored = storage.get_company(user_id, company_id)
        if not stored:
            raise LookupError("Empresa não encontrada")
        company = stored
    if not company or not company.get("name"):
        raise ValueError("Dados da empresa são obrigatórios")
    if enricher is None:
        enricher = CompanyEnricher(select_provider("firecrawl"), ExtractionClient())
    return await enrich_company(user_id, company, enricher)


@app.post("/functions/v1/validate-phones")
async def validate_phones(
    payload: Dict[str, Any] = Body(default={}),
    user_id: str = Depends(_edge("validate-phones")),
    validator: WhatsAppValidator = Depends(get_phone_validator),
) -> Dict[str, Any]:
    phone_ids = payload.get("phoneIds") or []
    return await messages.validate_phones(user_id, phone_ids, validator)


@app.post("/functions/v1/create-checkout")
def create_checkout(
    payload: Dict[str, Any] = Body(default={}),
    user_id: str = Depends(_edge("create-checkout")),
    client: AbacatePayClient = Depends(get_payments_client),
) -> Dict[str, Any]:
    return payments.create_checkout(user_id, payload.get("packageId"), client)


@app.post("/functions/v1/check-pix-status")
def check_pix_status(
    payload: Dict[str, Any] = Body(default={}),
    user_id: str = Depends(_edge("check-pix-status")),
    client: AbacatePayClient = Depends(get_payments_client),
) -> Dict[str, Any]:
    return payments.check_pix_status(user_id, payload.get("pixId"), client)


@app.post("/functions/v1/abacatepay-webhook")
async def abacatepay_webhook(
    request: Request,
    webhook_secret: Optional[str] = Query(None, alias="webhookSecret"),
    signature: Optional[str] = Header(None, alias="X-Webhook-Signature"),
) -> Dict[str, Any]:
    raw_body = await request.body()
    return payments.handle_webhook(raw_body, query_secret=webhook_secret, signature=signature)


@app.post("/functions/v1/lista-cnae-cnaes")
def lista_cnae_cnaes(
    refresh: bool = Query(False),
    user_id: str = Depends(_edge("lista-cnae-cnaes")),
    service: ReferenceDataService = Depends(get_reference_service),
) -> Dict[str, Any]:
    return {"cnaes": service.cnaes(refresh=refresh), "success": True}


@app.post("/functions/v1/lista-cnae-municipios")
def lista_cnae_municipios(
    refresh: bool = Query(False),
    user_id: str = Depends(_edge("lista-cnae-municipios")),
    service: ReferenceDataService = Depends(get_reference_service),
) -> Dict[str, Any]:
    return {"municipios": service.municipios(refresh=refresh), "success": True}


# Companies


COMPANY_FIELDS = {
    "name": "name",
    "cnpj": "cnpj",
    "cnae": "cnae",
    "cnaeDescription": "cnae_description",
    "city": "city",
    "state": "state",
    "address": "address",
    "cep": "cep",
    "segment": "segment",
    "website": "website",
    "email": "email",
    "instagram": "instagram",
    "facebook": "facebook",
    "linkedin": "linkedin",
    "aiSummary": "ai_summary",
}


def _company_fields(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {column: payload[key] for key, column in COMPANY_FIELDS.items() if key in payload}


def _company_or_404(user_id: str, company_id: str) -> Dict[str, Any]:
    company = storage.get_company(user_id, company_id)
    if not company:
        raise LookupError("Empresa não encontrada")
    return company


@app.get("/api/companies")
def list_companies(user_id: str = Depends(require_user)) -> List[Dict[str, Any]]:
    return [map_company_row(row) for row in storage.fetch_companies(user_id)]


@app.post("/api/companies", status_code=201)
def create_company(payload: Dict[str, Any] = Body(default={}), user_id: str = Depends(require_user)) -> Dict[str, Any]:
    fields = _company_fields(payload)
    if not (fields.get("name") or "").strip():
        raise ValueError("Nome da empresa é obrigatório")
    row = storage.insert_company(user_id, fields)
    for raw in payload.get("phones") or []:
        number = normalize_phone(str(raw))
        if number:
            storage.insert_phone(row["id"], number, phone_type(number))
    return map_company_row(_company_or_404(user_id, row["id"]))


@app.post("/api/companies/import")
def import_companies(payload: Dict[str, Any] = Body(default={}), user_id: str = Depends(require_user)) -> Dict[str, Any]:
    results = payload.get("companies") or []
    if not results:
        raise ValueError("Nenhuma empresa selecionada")
    batch = imports.import_search_results(user_id, results)
    return {**batch.as_dict(), "balance": credits.get_balance(user_id)}


@app.post("/api/companies/bulk-enrich")
async def bulk_enrich(
    payload: Dict[str, Any] = Body(default={}),
    user_id: str = Depends(require_user),
    enricher: Optional[CompanyEnricher] = Depends(get_enricher),
) -> Dict[str, Any]:
    ids = payload.get("ids") or []
    if not ids:
        raise ValueError("Nenhuma empresa selecionada")
    if enricher is None:
        enricher = CompanyEnricher(select_provider("firecrawl"), ExtractionClient())
    batch = await imports.bulk_enrich(user_id, ids, enricher)
    return {**batch.as_dict(), "balance": credits.get_balance(user_id)}


@app.post("/api/companies/bulk-delete")
def bulk_delete(payload: Dict[str, Any] = Body(default={}), user_id: str = Depends(require_user)) -> Dict[str, Any]:
    ids = payload.get("ids") or []
    if not ids:
        raise ValueError("Nenhuma empresa selecionada")
    return imports.bulk_delete(user_id, ids).as_dict()


@app.get("/api/companies/export.csv")
def export_companies(
    fields: Optional[str] = Query(None),
    mode: str = Query("per_phone"),
    only_valid: str = Query("true"),
    ids: Optional[str] = Query(None),
    user_id: str = Depends(require_user),
) -> StreamingResponse:
    rows = storage.fetch_companies(user_id, _parse_csv(ids) or None)
    companies = [map_company_row(row) for row in rows]
    csv_data = exports.build_csv(
        companies,
        _parse_csv(fields) if fields is not None else None,
        mode=mode,
        only_valid_phones=_is_checked(only_valid),
    )
    storage.record_audit(user_id, "companies_exported", {"companies": len(companies), "mode": mode})
    headers = {"Content-Disposition": f"attachment; filename={exports.export_filename()}"}
    return StreamingResponse(io.BytesIO(csv_data), media_type="text/csv; charset=utf-8", headers=headers)


@app.get("/api/export/fields")
def export_fields(user_id: str = Depends(require_user)) -> Dict[str, Any]:
    return {"fields": exports.field_catalogue(), "defaults": exports.DEFAULT_FIELDS}


@app.get("/api/companies/{company_id}")
def get_company(company_id: str, user_id: str = Depends(require_user)) -> Dict[str, Any]:
    return map_company_row(_company_or_404(user_id, company_id))


@app.patch("/api/companies/{company_id}")
def update_company(
    company_id: str,
    payload: Dict[str, Any] = Body(default={}),
    user_id: str = Depends(require_user),
) -> Dict[str, Any]:
    _company_or_404(user_id, company_id)
    fields = _company_fields(payload)
    if fields:
        storage.update_company(user_id, company_id, **fields)
    return map_company_row(_company_or_404(user_id, company_id))


@app.delete("/api/companies/{company_id}")
def delete_company(company_id: str, user_id: str = Depends(require_user)) -> Dict[str, Any]:
    if not storage.delete_company(user_id, company_id):
        raise LookupError("Empresa não encontrada")
    return {"success": True}


@app.post("/api/companies/{company_id}/phones", status_code=201)
def add_phone(
    company_id: str,
    payload: Dict[str, Any] = Body(default={}),
    user_id: str = Depends(require_user),
) -> Dict[str, Any]:
    _company_or_404(user_id, company_id)
    number = normalize_phone(str(payload.get("number") or ""))
    if not number:
        raise ValueError("Telefone inválido")
    row = storage.insert_phone(company_id, number, payload.get("type") or phone_type(number))
    return {"id": row["id"], "number": row["phone_number"], "type": row["phone_type"], "status": row["status"]}


@app.delete("/api/phones/{phone_id}")
def delete_phone(phone_id: str, user_id: str = Depends(require_user)) -> Dict[str, Any]:
    if not storage.delete_phone(user_id, phone_id):
        raise LookupError("Telefone não encontrado")
    return {"success": True}


# CRM


@app.get("/api/crm/stages")
def list_stages(user_id: str = Depends(require_user)) -> List[Dict[str, Any]]:
    return crm.list_stages(user_id)


@app.post("/api/crm/stages", status_code=201)
def create_stage(payload: Dict[str, Any] = Body(default={}), user_id: str = Depends(require_user)) -> Dict[str, Any]:
    position = payload.get("position")
    return crm.create_stage(
        user_id,
        payload.get("name") or "",
        payload.get("color"),
        int(position) if position is not None else None,
    )


@app.post("/api/crm/stages/defaults")
def default_stages(user_id: str = Depends(require_user)) -> List[Dict[str, Any]]:
    return crm.ensure_default_stages(user_id)


@app.post("/api/crm/stages/reorder")
def reorder_stages(payload: Dict[str, Any] = Body(default={}), user_id: str = Depends(require_user)) -> List[Dict[str, Any]]:
    crm.reorder_stages(user_id, payload.get("stages") or [])
    return crm.list_stages(user_id)


@app.patch("/api/crm/stages/{stage_id}")
def update_stage(
    stage_id: str,
    payload: Dict[str, Any] = Body(default={}),
    user_id: str = Depends(require_user),
) -> Dict[str, Any]:
    updated = crm.update_stage(
        user_id,
        stage_id,
        name=payload.get("name"),
        color=payload.get("color"),
        position=payload.get("position"),
    )
    if not updated:
        raise LookupError("Estágio não encontrado")
    return {"success": True}


@app.delete("/api/crm/stages/{stage_id}")
def delete_stage(stage_id: str, user_id: str = Depends(require_user)) -> Dict[str, Any]:
    if not crm.delete_stage(user_id, stage_id):
        raise LookupError("Estágio não encontrado")
    return {"success": True}


@app.get("/api/crm/kanban")
def kanban(user_id: str = Depends(require_user)) -> Dict[str, Any]:
    return crm.kanban_board(user_id)


@app.post("/api/crm/companies/{company_id}/move")
def move_company(
    company_id: str,
    payload: Dict[str, Any] = Body(default={}),
    user_id: str = Depends(require_user),
) -> Dict[str, Any]:
    return crm.move_company(user_id, company_id, payload.get("stageId"), payload.get("notes"))


@app.patch("/api/crm/companies/{company_id}/deal")
def update_deal(
    company_id: str,
    payload: Dict[str, Any] = Body(default={}),
    user_id: str = Depends(require_user),
) -> Dict[str, Any]:
    updated = crm.update_deal(
        user_id,
        company_id,
        deal_value=payload.get("dealValue"),
        expected_close_date=payload.get("expectedCloseDate"),
        crm_notes=payload.get("crmNotes"),
        clear=payload.get("clear"),
    )
    if not updated:
        raise LookupError("Empresa não encontrada")
    return map_company_row(_company_or_404(user_id, company_id))


@app.get("/api/crm/companies/{company_id}/history")
def company_history(company_id: str, user_id: str = Depends(require_user)) -> List[Dict[str, Any]]:
    return crm.stage_history(user_id, company_id)


@app.get("/api/crm/activities")
def list_activities(company_id: Optional[str] = Query(None, alias="companyId"), user_id: str = Depends(require_user)) -> List[Dict[str, Any]]:
    return crm.list_activities(user_id, company_id)


@app.get("/api/crm/activities/overdue")
def overdue_activities(user_id: str = Depends(require_user)) -> List[Dict[str, Any]]:
    return crm.overdue_tasks(user_id)


@app.post("/api/crm/activities", status_code=201)
def create_activity(payload: Dict[str, Any] = Body(default={}), user_id: str = Depends(require_user)) -> Dict[str, Any]:
    return crm.create_activity(user_id, payload)


@app.patch("/api/crm/activities/{activity_id}")
def update_activity(
    activity_id: str,
    payload: Dict[str, Any] = Body(default={}),
    user_id: str = Depends(require_user),
) -> Dict[str, Any]:
    if not crm.update_activity(user_id, activity_id, payload):
        raise LookupError("Atividade não encontrada")
    return {"success": True}


@app.delete("/api/crm/activities/{activity_id}")
def delete_activity(activity_id: str, user_id: str = Depends(require_user)) -> Dict[str, Any]:
    if not crm.delete_activity(user_id, activity_id):
        raise LookupError("Atividade não encontrada")
    return {"success": True}


@app.get("/api/crm/metrics")
def crm_metrics(user_id: str = Depends(require_user)) -> Dict[str, Any]:
    return crm.crm_metrics(user_id)


@app.get("/api/dashboard")
def dashboard(user_id: str = Depends(require_user)) -> Dict[str, Any]:
    return crm.dashboard_metrics(user_id)


# Credits


@app.get("/api/profile")
def profile(user_id: str = Depends(require_user)) -> Dict[str, Any]:
    row = storage.get_profile(user_id)
    if not row:
        raise LookupError("Perfil não encontrado")
    return {
        "id": row["id"],
        "email": row.get("email"),
        "fullName": row.get("full_name"),
        "phone": row.get("phone"),
        "avatarUrl": row.get("avatar_url"),
        "credits": credits.summary(user_id),
    }


@app.get("/api/credits/summary")
def credits_summary(user_id: str = Depends(require_user)) -> Dict[str, Any]:
    return credits.summary(user_id)


@app.get("/api/credits/packages")
def credit_packages(user_id: str = Depends(require_user)) -> List[Dict[str, Any]]:
    return credits.list_packages()


@app.get("/api/credits/transactions")
def credit_transactions(limit: int = Query(50), user_id: str = Depends(require_user)) -> List[Dict[str, Any]]:
    return credits.list_transactions(user_id, max(1, min(limit, 500)))


# Messages


@app.get("/api/templates")
def list_templates(user_id: str = Depends(require_user)) -> List[Dict[str, Any]]:
    return messages.list_templates(user_id)


@app.post("/api/templates", status_code=201)
def create_template(payload: Dict[str, Any] = Body(default={}), user_id: str = Depends(require_user)) -> Dict[str, Any]:
    return messages.create_template(user_id, payload.get("name") or "", payload.get("content") or "")


@app.patch("/api/templates/{template_id}")
def update_template(
    template_id: str,
    payload: Dict[str, Any] = Body(default={}),
    user_id: str = Depends(require_user),
) -> Dict[str, Any]:
    if not messages.update_template(user_id, template_id, payload.get("name"), payload.get("content")):
        raise LookupError("Template não encontrado")
    return {"success": True}


@app.delete("/api/templates/{template_id}")
def delete_template(template_id: str, user_id: str = Depends(require_user)) -> Dict[str, Any]:
    if not messages.delete_template(user_id, template_id):
        raise LookupError("Template não encontrado")
    return {"success": True}


@app.post("/api/messages", status_code=201)
def send_message(payload: Dict[str, Any] = Body(default={}), user_id: str = Depends(require_user)) -> Dict[str, Any]:
    return messages.send_message(
        user_id,
        payload.get("companyId") or "",
        payload.get("phoneId") or "",
        payload.get("channel") or "whatsapp",
        content=payload.get("content"),
        template_id=payload.get("templateId"),
    )


@app.get("/api/messages/history")
def message_history(limit: int = Query(200), user_id: str = Depends(require_user)) -> List[Dict[str, Any]]:
    return messages.message_history(user_id, max(1, min(limit, 1000)))


if __name__ == "__main__":
    import uvicorn

    logger.info("Achei Leads iniciando", extra={"event_type": "startup"})
    uvicorn.run("server:app", host="0.0.0.0", port=env_int("PORT", 8000))
