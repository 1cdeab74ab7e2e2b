"""
AbacatePay PIX payments: checkout intents, status settlement and the webhook.
"""

import base64
import hashlib
import hmac
import json
import logging
import os
from typing import Any, Dict, Optional
from uuid import uuid4

from achei import credits, storage
from achei.data_sources import CompanySearchClient, _response_excerpt
from achei.providers import ProviderResponseError

logger = logging.getLogger("achei_leads")

ABACATEPAY_BASE_URL = "https://api.abacatepay.com"
# Published by AbacatePay for webhook HMAC verification.
ABACATEPAY_PUBLIC_KEY = (
    "t9dXRhHHo3yDEj5pVDYz0frf7q6bMKyMRmxxCPIPp3RCplBfXRxqlC6ZpiWmOqj4L63qEaeUOtrCI8P0VMUgo6iIga2ri9og"
    "aHFs0WIIywSMg0q7RmBfybe1E5XJcfC4IW3alNqym0tXoAKkzvfEjZxV6bE0oG2zJrNNYmUCKZyV0KZ3JS8Votf9EAWWYdiDk"
    "MkpbMdPggfh1EqHlVkMiTady6jOR3hyzGEHrIz2Ret0xHKMbiqkr9HS1JhNHDX9"
)
PIX_EXPIRES_IN = 3600
PAID = "PAID"


class WebhookRejected(RuntimeError):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


class AbacatePayClient(CompanySearchClient):
    name = "abacatepay"
    api_key_env = "ABACATEPAY_API_KEY"
    missing_key_message = "Chave da AbacatePay não configurada"
    default_error = "Erro na API de pagamentos"

    def __init__(self, api_key: Optional[str] = None, timeout: Optional[int] = None, base_url: Optional[str] = None):
        super().__init__(api_key=api_key, timeout=timeout)
        self.base_url = (base_url or os.getenv("ABACATEPAY_BASE_URL", ABACATEPAY_BASE_URL)).rstrip("/")

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self._require_key()}", "Content-Type": "application/json"}

    @staticmethod
    def _data(resp) -> Dict[str, Any]:
        try:
            payload = resp.json()
        except ValueError:
            raise ProviderResponseError(
                "Resposta inválida da AbacatePay",
                status_code=502,
                payload={"details": _response_excerpt(resp, 100)},
            )
        data = payload.get("data") if isinstance(payload, dict) else None
        return data if isinstance(data, dict) else {}

    def create_pix(self, amount_cents: int, description: str, metadata: Dict[str, Any]) -> Dict[str, Any]:
        resp = self._request(
            "POST",
            f"{self.base_url}/v1/pixQrCode/create",
            headers=self._headers(),
            json={
                "amount": amount_cents,
                "expiresIn": PIX_EXPIRES_IN,
                "description": description[:37],
                "metadata": metadata,
            },
        )
        if not resp.ok:
            logger.error(
                "AbacatePay create erro",
                extra={"event_type": "payment", "status": resp.status_code, "details": _response_excerpt(resp)},
            )
            raise ProviderResponseError("Erro ao criar pagamento PIX", status_code=500)
        data = self._data(resp)
        if not data.get("id"):
            raise ProviderResponseError("Erro ao criar pagamento PIX", status_code=500)
        return data

    def check_pix(self, pix_id: str) -> Dict[str, Any]:
        resp = self._request(
            "GET",
            f"{self.base_url}/v1/pixQrCode/check",
            params={"id": pix_id},
            headers=self._headers(),
        )
        if not resp.ok:
            logger.error(
                "AbacatePay check erro",
                extra={"event_type": "payment", "status": resp.status_code, "details": _response_excerpt(resp)},
            )
            raise ProviderResponseError("Erro ao verificar status do pagamento", status_code=500)
        return self._data(resp)


def _purchase_description(credit_count: int, bonus: int) -> str:
    description = f"Compra de pacote - {credit_count} créditos"
    if bonus > 0:
        description += f" + {bonus} bônus"
    return description


def create_checkout(user_id: str, package_id: str, client: AbacatePayClient) -> Dict[str, Any]:
    if not package_id:
        raise ValueError("Pacote não informado")
    package = storage.get_package(package_id)
    if not package:
        raise LookupError("Pacote não encontrado")

    amount_cents = int(round(float(package["price_brl"]) * 100))
    bonus = int(package.get("bonus_credits") or 0)
    external_id = f"{user_id}-{package_id}-{uuid4().hex[:12]}"
    data = client.create_pix(
        amount_cents,
        f"Achei Leads - {package['name']}",
        {
            "userId": user_id,
            "packageId": package_id,
            "credits": package["credits"],
            "bonusCredits": bonus,
            "externalId": external_id,
        },
    )
    storage.insert_pix_payment(
        {
            "id": data["id"],
            "user_id": user_id,
            "package_id": package_id,
            "external_id": external_id,
            "amount_cents": amount_cents,
            "credits": package["credits"],
            "bonus_credits": bonus,
            "status": data.get("status") or "PENDING",
            "br_code": data.get("brCode"),
            "br_code_base64": data.get("brCodeBase64"),
            "expires_at": data.get("expiresAt"),
        }
    )
    logger.info(
        "PIX criado",
        extra={"event_type": "payment", "pix_id": data["id"], "amount_cents": amount_cents},
    )
    return {
        "success": True,
        "pixId": data["id"],
        "brCode": data.get("brCode"),
        "brCodeBase64": data.get("brCodeBase64"),
        "amount": amount_cents,
        "expiresAt": data.get("expiresAt"),
        "packageName": package["name"],
        "totalCredits": package["credits"] + bonus,
    }


def check_pix_status(user_id: str, pix_id: str, client: AbacatePayClient) -> Dict[str, Any]:
    """Poll AbacatePay; a paid intent credits the buyer exactly once."""
    if not pix_id:
        raise ValueError("ID do PIX não informado")
    data = client.check_pix(pix_id)
    status = data.get("status") or "PENDING"
    is_paid = status == PAID

    local = storage.get_pix_payment(pix_id)
    if local and local["user_id"] != user_id:
        raise LookupError("Pagamento não encontrado")
    if local and local["status"] != status:
        storage.update_pix_payment(pix_id, status=status, paid_at=storage._utcnow() if is_paid else None)

    if is_paid:
        metadata = data.get("metadata") or {}
        credit_count = int(metadata.get("credits") or (local or {}).get("credits") or 0)
        bonus = int(metadata.get("bonusCredits") or (local or {}).get("bonus_credits") or 0)
        reference = metadata.get("externalId") or (local or {}).get("external_id") or pix_id
        if credits.has_reference(reference, "purchase"):
            logger.info("Pagamento ja processado", extra={"event_type": "payment", "pix_id": pix_id})
        elif credit_count + bonus > 0:
            credits.add_credits(
                user_id,
                credit_count + bonus,
                "purchase",
                _purchase_description(credit_count, bonus),
                reference,
            )
    return {"success": True, "status": status, "isPaid": is_paid}


def verify_signature(raw_body: bytes, signature: str, key: Optional[str] = None) -> bool:
    key = key or os.getenv("ABACATEPAY_PUBLIC_KEY") or ABACATEPAY_PUBLIC_KEY
    digest = hmac.new(key.encode("utf-8"), raw_body, hashlib.sha256).digest()
    expected = base64.b64encode(digest).decode("ascii")
    return hmac.compare_digest(expected, signature or "")


def handle_webhook(
    raw_body: bytes,
    query_secret: Optional[str] = None,
    signature: Optional[str] = None,
) -> Dict[str, Any]:
    secret = os.getenv("ABACATEPAY_WEBHOOK_SECRET")
    if secret and query_secret != secret:
        logger.warning("Webhook secret invalido", extra={"event_type": "payment"})
        raise WebhookRejected("Invalid webhook secret", status_code=401)
    if signature and not verify_signature(raw_body, signature):
        logger.warning("Assinatura HMAC invalida", extra={"event_type": "payment"})
        raise WebhookRejected("Invalid signature", status_code=401)

    try:
        event = json.loads(raw_body.decode("utf-8") or "{}")
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise WebhookRejected("Invalid payload")
    if event.get("event") != "billing.paid":
        return {"received": True, "processed": False}

    billing = (event.get("data") or {}).get("billing")
    if not billing:
        raise WebhookRejected("No billing data")
    products = billing.get("products") or [{}]
    package_id = (products[0] or {}).get("externalId")
    email = ((billing.get("customer") or {}).get("metadata") or {}).get("email")
    if not email:
        raise WebhookRejected("No customer email")
    profile = storage.find_profile_by_email(email)
    if not profile:
        raise WebhookRejected("User not found")
    package = storage.get_package(package_id, active_only=False) if package_id else None
    if not package:
        raise WebhookRejected("Package not found")

    billing_id = billing.get("id")
    if credits.has_reference(billing_id):
        return {"received": True, "processed": False, "reason": "already_processed"}

    user_id = profile["id"]
    bonus = int(package.get("bonus_credits") or 0)
    total = int(package["credits"]) + bonus
    storage.add_to_balance(user_id, total)
    storage.insert_transaction(
        user_id,
        total,
        "purchase",
        f"Compra do pacote {package['name']} - R$ {package['price_brl']}",
        billing_id,
    )
    if bonus > 0:
        storage.insert_transaction(
            user_id,
            bonus,
            "bonus",
            f"Bônus do pacote {package['name']}",
            f"{billing_id}_bonus",
        )
    storage.log_event("info", "billing_paid", {"billing_id": billing_id, "credits": total})
    logger.info("Creditos adicionados via webhook", extra={"event_type": "payment", "credits": total})
    return {"received": True, "processed": True, "credits": total}
