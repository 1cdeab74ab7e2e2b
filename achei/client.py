"""
HTTP client for the Achei Leads API and the PIX payment status poller.
"""

import logging
import os
import threading
import time
from typing import Any, Callable, Dict, List, Optional

import backoff
import requests

logger = logging.getLogger("achei_leads")

DEFAULT_API_URL = "http://localhost:8000"


class AcheiApiError(RuntimeError):
    def __init__(self, message: str, status_code: int = 500, payload: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload or {}


class AcheiClient:
    def __init__(self, token: Optional[str] = None, base_url: Optional[str] = None, timeout: int = 60):
        self.base_url = (base_url or os.getenv("ACHEI_API_URL") or DEFAULT_API_URL).rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update({"Accept": "application/json"})
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    @backoff.on_exception(
        backoff.expo,
        (requests.ConnectionError, requests.Timeout),
        max_tries=3,
        jitter=backoff.full_jitter,
    )
    def _request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        return self.session.request(method, f"{self.base_url}{path}", timeout=self.timeout, **kwargs)

    def _call(self, method: str, path: str, **kwargs: Any) -> Any:
        resp = self._request(method, path, **kwargs)
        try:
            data = resp.json()
        except ValueError:
            data = None
        if not resp.ok:
            body = data if isinstance(data, dict) else {}
            message = body.get("error") or f"HTTP {resp.status_code}"
            raise AcheiApiError(str(message), status_code=resp.status_code, payload=body)
        return data

    def invoke(self, function_name: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self._call("POST", f"/functions/v1/{function_name}", json=body or {})

    # Edge functions

    def search_by_cnae(self, cnae: str, municipio: Any, **options: Any) -> Dict[str, Any]:
        return self.invoke("search-by-cnae", {"cnae": cnae, "municipio": municipio, **options})

    def search_cnpja(self, cnpj: str) -> Dict[str, Any]:
        return self.invoke("search-cnpja", {"cnpj": cnpj})

    def search_by_cep(self, cep: str, pagina: int = 1) -> Dict[str, Any]:
        return self.invoke("search-by-cep", {"cep": cep, "pagina": pagina})

    def check_cnpjws_account(self) -> Dict[str, Any]:
        return self.invoke("check-cnpjws-account")

    def search_google_maps(self, query: str, limit: int = 20) -> Dict[str, Any]:
        return self.invoke("search-google-maps", {"query": query, "limit": limit})

    def enrich_company(self, company_id: str) -> Dict[str, Any]:
        return self.invoke("enrich-company", {"companyId": company_id})

    def validate_phones(self, phone_ids: List[str]) -> Dict[str, Any]:
        return self.invoke("validate-phones", {"phoneIds": phone_ids})

    def create_checkout(self, package_id: str) -> Dict[str, Any]:
        return self.invoke("create-checkout", {"packageId": package_id})

    def check_pix_status(self, pix_id: str) -> Dict[str, Any]:
        return self.invoke("check-pix-status", {"pixId": pix_id})

    def list_cnaes(self) -> List[Dict[str, Any]]:
        return self.invoke("lista-cnae-cnaes").get("cnaes", [])

    def list_municipios(self) -> List[Dict[str, Any]]:
        return self.invoke("lista-cnae-municipios").get("municipios", [])

    # Data API

    def credits_summary(self) -> Dict[str, Any]:
        return self._call("GET", "/api/credits/summary")

    def companies(self) -> List[Dict[str, Any]]:
        return self._call("GET", "/api/companies")

    def import_companies(self, results: List[Dict[str, Any]]) -> Dict[str, Any]:
        return self._call("POST", "/api/companies/import", json={"companies": results})

    def export_csv(self, fields: Optional[List[str]] = None, mode: str = "per_phone", only_valid: bool = True) -> bytes:
        params: Dict[str, Any] = {"mode": mode, "only_valid": str(only_valid).lower()}
        if fields:
            params["fields"] = ",".join(fields)
        resp = self._request("GET", "/api/companies/export.csv", params=params)
        if not resp.ok:
            raise AcheiApiError(f"HTTP {resp.status_code}", status_code=resp.status_code)
        return resp.content


class PixStatusPoller:
    """
    Polls ``check-pix-status`` on a background thread until the payment is
    paid, ``stop()`` is called, or ``max_duration`` seconds have elapsed.
    """

    def __init__(
        self,
        client: AcheiClient,
        pix_id: str,
        interval: float = 3.0,
        max_duration: float = 3600.0,
        on_paid: Optional[Callable[[Dict[str, Any]], None]] = None,
        on_expired: Optional[Callable[[], None]] = None,
    ) -> None:
        self.client = client
        self.pix_id = pix_id
        self.interval = interval
        self.max_duration = max_duration
        self.on_paid = on_paid
        self.on_expired = on_expired
        self.last_status: Optional[str] = None
        self.paid = False
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_active(self) -> bool:
        return bool(self._thread and self._thread.is_alive() and not self._stop_event.is_set())

    def start(self) -> "PixStatusPoller":
        if self.is_active:
            return self
        self._stop_event = threading.Event()
        self._thread = threading.Thread(target=self._run, name=f"pix-poller-{self.pix_id}", daemon=True)
        self._thread.start()
        return self

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread and thread is not threading.current_thread():
            thread.join(timeout)

    def poll_once(self) -> Dict[str, Any]:
        result = self.client.check_pix_status(self.pix_id)
        self.last_status = result.get("status")
        return result

    def _run(self) -> None:
        deadline = time.monotonic() + self.max_duration
        while not self._stop_event.wait(self.interval):
            if time.monotonic() >= deadline:
                logger.info("PIX expirado", extra={"event_type": "payment", "pix_id": self.pix_id})
                self._stop_event.set()
                if self.on_expired:
                    self.on_expired()
                return
            try:
                result = self.poll_once()
            except (AcheiApiError, requests.RequestException) as exc:
                logger.warning(
                    "Falha ao consultar PIX",
                    extra={"event_type": "payment", "pix_id": self.pix_id, "error": str(exc)[:200]},
                )
                continue
            if result.get("isPaid"):
                self.paid = True
                self._stop_event.set()
                if self.on_paid:
                    self.on_paid(result)
                return
