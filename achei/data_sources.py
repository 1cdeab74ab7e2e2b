"""
Company search providers: Lista CNAE, CNPJá and CNPJ.ws.
"""

import json
import logging
import os
import time
from typing import Any, Dict, List, Optional

import backoff
import requests

from achei.cleaning import company_result, digits
from achei.config import env_int
from achei.providers import ProviderResponseError, _redact_api_key

logger = logging.getLogger("achei_leads")

LISTA_CNAE_BASE_URL = os.getenv("LISTA_CNAE_BASE_URL", "https://listacnae.com.br")
CNPJA_BASE_URL = os.getenv("CNPJA_BASE_URL", "https://api.cnpja.com")
CNPJWS_BASE_URL = os.getenv("CNPJWS_BASE_URL", "https://comercial.cnpj.ws")


def _is_html(text: str) -> bool:
    return (text or "").strip().startswith("<")


def _response_excerpt(resp: requests.Response, limit: int = 200) -> str:
    text = (resp.text or "").strip().replace("\n", " ")
    return _redact_api_key(text)[:limit] if text else ""


def _response_json(resp: requests.Response) -> Dict[str, Any]:
    try:
        payload = resp.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


class CompanySearchClient:
    name = "base"
    api_key_env = ""
    missing_key_message = "API key not configured"
    default_error = "Erro ao buscar empresas na API"
    error_messages: Dict[int, str] = {}

    def __init__(self, api_key: Optional[str] = None, timeout: Optional[int] = None):
        self.api_key = api_key or (os.getenv(self.api_key_env) if self.api_key_env else None)
        self.timeout = timeout or env_int("HTTP_TIMEOUT", 30)
        self.session = requests.Session()
        self.session.headers.update(
            {
                "Accept": "application/json",
                "User-Agent": "AcheiLeads/1.0",
            }
        )

    def _require_key(self) -> str:
        if not self.api_key:
            logger.error(self.missing_key_message, extra={"event_type": "error", "provider": self.name})
            raise ProviderResponseError(self.missing_key_message, status_code=500)
        return self.api_key

    @backoff.on_exception(
        backoff.expo,
        (requests.ConnectionError, requests.Timeout),
        max_tries=3,
        jitter=backoff.full_jitter,
    )
    def _request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        start = time.time()
        resp = self.session.request(method, url, timeout=self.timeout, **kwargs)
        duration_ms = int((time.time() - start) * 1000)
        logger.info(
            f"{self.name} {method} {resp.status_code}",
            extra={
                "event_type": "api",
                "provider": self.name,
                "url": _redact_api_key(url),
                "status": resp.status_code,
                "duration_ms": duration_ms,
            },
        )
        return resp

    def _raise_for_status(self, resp: requests.Response) -> None:
        if resp.ok:
            return
        message = self.error_messages.get(resp.status_code)
        if message:
            raise ProviderResponseError(message, status_code=resp.status_code)
        raise ProviderResponseError(
            self.default_error,
            status_code=resp.status_code,
            payload={"details": _response_excerpt(resp)},
        )


class ListaCnaeClient(CompanySearchClient):
    name = "lista_cnae"
    api_key_env = "LISTA_CNAE_TOKEN"
    missing_key_message = "Token da Lista CNAE não configurado"
    default_error = "Erro ao buscar empresas na API Lista CNAE"
    error_messages = {
        401: "Token inválido ou expirado. Verifique o token da Lista CNAE.",
        402: "Créditos insuficientes na Lista CNAE.",
        429: "Limite de requisições excedido. Aguarde um momento.",
    }

    def __init__(self, api_key: Optional[str] = None, timeout: Optional[int] = None, base_url: Optional[str] = None):
        super().__init__(api_key=api_key, timeout=timeout)
        self.base_url = (base_url or os.getenv("LISTA_CNAE_BASE_URL", LISTA_CNAE_BASE_URL)).rstrip("/")

    def search(
        self,
        cnae: str,
        municipio: Any,
        quantidade: int = 50,
        inicio: int = 0,
        telefone_obrigatorio: bool = False,
        email_obrigatorio: bool = False,
    ) -> List[Dict[str, Any]]:
        token = self._require_key()
        clean_cnae = digits(cnae)
        params: Dict[str, Any] = {
            "inicio": str(inicio),
            "quantidade": str(quantidade),
            "cnaes": clean_cnae,
            "municipios": str(municipio),
            "token": token,
        }
        if telefone_obrigatorio:
            params["telefone_obrigatorio"] = "true"
        if email_obrigatorio:
            params["email_obrigatorio"] = "true"

        resp = self._request("GET", f"{self.base_url}/buscar", params=params)
        text = resp.text or ""
        if _is_html(text):
            raise ProviderResponseError(
                "A API Lista CNAE não está disponível no momento. A API requer autenticação via sessão do navegador.",
                status_code=503,
                payload={
                    "details": "Entre em contato com o suporte da Lista CNAE para obter acesso à API REST.",
                    "companies": [],
                    "total": 0,
                },
            )
        self._raise_for_status(resp)
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            raise ProviderResponseError(
                "Resposta inválida da API Lista CNAE",
                status_code=502,
                payload={"details": text[:100], "companies": [], "total": 0},
            )

        if isinstance(data, dict):
            items = data.get("empresas") or data.get("data") or []
        else:
            items = data or []
        return [self._to_company(item, clean_cnae) for item in items if isinstance(item, dict)]

    @staticmethod
    def _to_company(item: Dict[str, Any], cnae: str) -> Dict[str, Any]:
        return company_result(
            cnpj=item.get("cnpj") or "",
            name=item.get("razao_social") or item.get("nome_fantasia") or "Empresa sem nome",
            fantasy_name=item.get("nome_fantasia") or "",
            cnae=cnae,
            cnae_description=item.get("cnae_descricao") or item.get("atividade_principal") or "",
            city=item.get("municipio") or item.get("cidade") or "",
            state=item.get("uf") or item.get("estado") or "",
            phone1=item.get("telefone_primario") or item.get("telefone1") or item.get("telefone") or "",
            phone2=item.get("telefone_secundario") or item.get("telefone2") or "",
            email=item.get("email") or "",
            address=item.get("logradouro") or item.get("endereco") or "",
            number=item.get("numero") or "",
            neighborhood=item.get("bairro") or "",
            cep=item.get("cep") or "",
            naturezaJuridica=item.get("natureza_juridica") or "",
            situacao=item.get("situacao") or "ATIVA",
        )

    def fetch_reference(self, resource: str, label: str) -> List[Dict[str, Any]]:
        """Fetch a full reference list, trying each known URL/auth variant in turn."""
        token = self._require_key()
        attempts = [
            ("GET", f"{self.base_url}/{resource}", {"params": {"token": token}}),
            ("GET", f"{self.base_url}/{resource}", {"headers": {"Authorization": token}}),
            ("GET", f"{self.base_url}/{resource}", {"headers": {"Authorization": f"Bearer {token}"}}),
            ("POST", f"{self.base_url}/{resource}", {"json": {"token": token}}),
            ("GET", f"{self.base_url}/app/api/{resource}", {"params": {"token": token}}),
        ]

        last_error = ""
        for method, url, options in attempts:
            try:
                resp = self._request(method, url, **options)
            except requests.RequestException as exc:
                last_error = str(exc)
                continue
            text = resp.text or ""
            if _is_html(text):
                last_error = "API retornou HTML"
                continue
            if not resp.ok:
                last_error = f"{resp.status_code} - {text[:100]}"
                continue
            try:
                data = json.loads(text)
            except json.JSONDecodeError as exc:
                last_error = str(exc)
                continue
            if isinstance(data, dict):
                key = "cnaes" if "Cnaes" in resource else "municipios"
                data = data.get(key) or []
            return [item for item in data if isinstance(item, dict)]

        logger.error(
            f"Lista CNAE {resource} indisponivel",
            extra={"event_type": "error", "provider": self.name, "details": last_error},
        )
        raise ProviderResponseError(
            f"Erro ao buscar {label}. A API Lista CNAE pode não estar disponível como endpoint REST.",
            status_code=500,
            payload={"details": last_error},
        )


class CnpjaClient(CompanySearchClient):
    name = "cnpja"
    api_key_env = "CNPJA_API_KEY"
    missing_key_message = "API key da CNPJá não configurada"
    error_messages = {
        401: "Chave de API inválida. Verifique sua chave da CNPJá.",
        404: "CNPJ não encontrado na base da Receita Federal.",
    }

    def __init__(self, api_key: Optional[str] = None, timeout: Optional[int] = None, base_url: Optional[str] = None):
        super().__init__(api_key=api_key, timeout=timeout)
        self.base_url = (base_url or os.getenv("CNPJA_BASE_URL", CNPJA_BASE_URL)).rstrip("/")

    def _raise_for_status(self, resp: requests.Response) -> None:
        if resp.status_code == 429:
            error_data = _response_json(resp)
            message = str(error_data.get("message") or "Limite de requisições excedido")
            if "not enough credits" in message:
                raise ProviderResponseError(
                    "Créditos insuficientes na CNPJá.",
                    status_code=429,
                    payload={"required": error_data.get("required"), "remaining": error_data.get("remaining")},
                )
            raise ProviderResponseError("Limite de requisições excedido. Aguarde um momento.", status_code=429)
        if not resp.ok and resp.status_code not in self.error_messages:
            message = _response_json(resp).get("message") or "Erro ao buscar empresa na API"
            raise ProviderResponseError(str(message), status_code=resp.status_code)
        super()._raise_for_status(resp)

    def lookup(self, cnpj: str) -> Dict[str, Any]:
        api_key = self._require_key()
        clean_cnpj = digits(cnpj)
        resp = self._request(
            "GET",
            f"{self.base_url}/office/{clean_cnpj}",
            headers={"Authorization": api_key},
        )
        self._raise_for_status(resp)
        try:
            data = resp.json()
        except ValueError:
            raise ProviderResponseError(
                "Resposta inválida da API CNPJá",
                status_code=502,
                payload={"details": _response_excerpt(resp, 100)},
            )
        return self._to_company(data, clean_cnpj)

    @staticmethod
    def _to_company(data: Dict[str, Any], cnpj: str) -> Dict[str, Any]:
        phones = data.get("phones") or []
        activity = data.get("mainActivity") or {}
        address = data.get("address") or {}
        company = data.get("company") or {}
        emails = data.get("emails") or []

        def _phone(index: int) -> str:
            if len(phones) <= index:
                return ""
            phone = phones[index] or {}
            if phone.get("area") and phone.get("number"):
                return f"{phone['area']}{phone['number']}"
            return ""

        return company_result(
            cnpj=data.get("taxId") or cnpj,
            name=company.get("name") or data.get("alias") or "Empresa sem nome",
            fantasy_name=data.get("alias") or "",
            cnae=str(activity.get("id")) if activity.get("id") is not None else "",
            cnae_description=activity.get("text") or "",
            city=address.get("city") or "",
            state=address.get("state") or "",
            phone1=_phone(0),
            phone2=_phone(1),
            email=(emails[0] or {}).get("address", "") if emails else "",
            address=address.get("street") or "",
            number=address.get("number") or "",
            neighborhood=address.get("district") or "",
            cep=address.get("zip") or "",
            capitalSocial=company.get("equity") or "",
            naturezaJuridica=(company.get("nature") or {}).get("text") or "",
            porte=(company.get("size") or {}).get("text") or "",
            situacao=(data.get("status") or {}).get("text") or "",
            dataAbertura=data.get("founded") or "",
            simples="Sim" if (company.get("simples") or {}).get("optant") else "Não",
            mei="Sim" if (company.get("simei") or {}).get("optant") else "Não",
        )


class CnpjWsClient(CompanySearchClient):
    name = "cnpjws"
    api_key_env = "CNPJWS_API_KEY"
    missing_key_message = "API key not configured"
    error_messages = {
        401: "API key inválida. Verifique sua chave do CNPJ.ws",
        402: "Créditos insuficientes na API CNPJ.ws",
        403: "Acesso negado. Esta funcionalidade requer plano Premium do CNPJ.ws",
        404: "Nenhuma empresa encontrada neste CEP",
    }

    def __init__(self, api_key: Optional[str] = None, timeout: Optional[int] = None, base_url: Optional[str] = None):
        super().__init__(api_key=api_key, timeout=timeout)
        self.base_url = (base_url or os.getenv("CNPJWS_BASE_URL", CNPJWS_BASE_URL)).rstrip("/")

    def search_by_cep(self, cep: str, pagina: int = 1) -> List[Dict[str, Any]]:
        api_key = self._require_key()
        clean_cep = digits(cep)
        resp = self._request(
            "GET",
            f"{self.base_url}/cep/{clean_cep}",
            params={"pagina": pagina},
            headers={"x_api_token": api_key},
        )
        self._raise_for_status(resp)
        try:
            data = resp.json()
        except ValueError:
            raise ProviderResponseError(
                "Resposta inválida da API CNPJ.ws",
                status_code=502,
                payload={"details": _response_excerpt(resp, 100), "companies": [], "total": 0},
            )
        if not isinstance(data, list):
            return []
        return [self._to_company(item, clean_cep) for item in data if isinstance(item, dict)]

    def account(self) -> Dict[str, Any]:
        """Plan usage for the configured key."""
        api_key = self._require_key()
        resp = self._request("GET", f"{self.base_url}/consumo", headers={"x_api_token": api_key})
        if not resp.ok:
            raise ProviderResponseError(
                "Erro ao verificar conta",
                status_code=resp.status_code,
                payload={"details": _response_excerpt(resp)},
            )
        try:
            data = resp.json()
        except ValueError:
            raise ProviderResponseError(
                "Resposta inválida da API CNPJ.ws",
                status_code=502,
                payload={"details": _response_excerpt(resp, 100)},
            )
        return data if isinstance(data, dict) else {"data": data}

    @staticmethod
    def _to_company(item: Dict[str, Any], cep: str) -> Dict[str, Any]:
        est = item.get("estabelecimento") or item
        activity = est.get("atividade_principal") or {}
        phone1 = f"{est['ddd1']}{est['telefone1']}" if est.get("ddd1") and est.get("telefone1") else ""
        phone2 = f"{est['ddd2']}{est['telefone2']}" if est.get("ddd2") and est.get("telefone2") else ""
        return company_result(
            cnpj=est.get("cnpj") or item.get("cnpj") or "",
            name=item.get("razao_social") or est.get("razao_social") or "Empresa sem nome",
            fantasy_name=est.get("nome_fantasia") or "",
            cnae=activity.get("id") or activity.get("subclasse") or "",
            cnae_description=activity.get("descricao") or "",
            city=(est.get("cidade") or {}).get("nome") or est.get("municipio") or "",
            state=(est.get("estado") or {}).get("sigla") or est.get("uf") or "",
            phone1=phone1,
            phone2=phone2,
            email=est.get("email") or "",
            address=est.get("logradouro") or "",
            number=est.get("numero") or "",
            neighborhood=est.get("bairro") or "",
            cep=est.get("cep") or cep,
        )
