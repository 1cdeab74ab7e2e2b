"""
Message templates, send log and WhatsApp number validation.
"""

import asyncio
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import aiohttp

from achei import storage
from achei.cleaning import digits
from achei.providers import ProviderResponseError

logger = logging.getLogger("achei_leads")

CHANNELS = {"whatsapp", "sms"}
PLACEHOLDERS = {
    "{empresa}": "name",
    "{cidade}": "city",
    "{estado}": "state",
    "{cnae}": "cnae",
}


def _map_template(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "name": row["name"],
        "content": row["content"],
        "createdAt": row["created_at"],
    }


def list_templates(user_id: str) -> List[Dict[str, Any]]:
    return [_map_template(row) for row in storage.list_templates(user_id)]


def create_template(user_id: str, name: str, content: str) -> Dict[str, Any]:
    if not (name or "").strip() or not (content or "").strip():
        raise ValueError("Nome e conteúdo são obrigatórios")
    return _map_template(storage.insert_template(user_id, name.strip(), content))


def update_template(user_id: str, template_id: str, name: Optional[str] = None, content: Optional[str] = None) -> bool:
    fields = {}
    if name is not None:
        fields["name"] = name
    if content is not None:
        fields["content"] = content
    if not fields:
        return storage.get_template(user_id, template_id) is not None
    return storage.update_template(user_id, template_id, **fields)


def delete_template(user_id: str, template_id: str) -> bool:
    return storage.delete_template(user_id, template_id)


def render_template(content: str, company: Dict[str, Any]) -> str:
    rendered = content or ""
    for placeholder, key in PLACEHOLDERS.items():
        rendered = rendered.replace(placeholder, str(company.get(key) or ""))
    return rendered


def send_message(
    user_id: str,
    company_id: str,
    phone_id: str,
    channel: str,
    content: Optional[str] = None,
    template_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Record an outbound message; delivery happens outside this service."""
    if channel not in CHANNELS:
        raise ValueError(f"Canal inválido: {channel}")
    company = storage.get_company(user_id, company_id)
    if not company:
        raise LookupError("Empresa não encontrada")
    if phone_id not in {phone["id"] for phone in company["company_phones"]}:
        raise LookupError("Telefone não encontrado")

    if not content and template_id:
        template = storage.get_template(user_id, template_id)
        if not template:
            raise LookupError("Template não encontrado")
        content = render_template(template["content"], company)
    if not content:
        raise ValueError("Mensagem vazia")

    row = storage.insert_message(
        user_id,
        {
            "company_id": company_id,
            "phone_id": phone_id,
            "template_id": template_id,
            "channel": channel,
            "message_content": content,
            "status": "sent",
            "sent_at": datetime.now(timezone.utc).isoformat(),
        },
    )
    logger.info("Mensagem registrada", extra={"event_type": "message", "channel": channel})
    return {
        "id": row["id"],
        "companyId": company_id,
        "phoneId": phone_id,
        "channel": channel,
        "messageContent": content,
        "status": row["status"],
        "sentAt": row["sent_at"],
    }


def message_history(user_id: str, limit: int = 200) -> List[Dict[str, Any]]:
    return [
        {
            "id": row["id"],
            "companyId": row["company_id"],
            "companyName": row.get("company_name"),
            "phoneId": row["phone_id"],
            "phoneNumber": row.get("phone_number"),
            "templateId": row.get("template_id"),
            "templateName": row.get("template_name"),
            "channel": row["channel"],
            "messageContent": row["message_content"],
            "status": row["status"],
            "sentAt": row.get("sent_at"),
            "createdAt": row["created_at"],
        }
        for row in storage.list_messages(user_id, limit)
    ]


class WhatsAppValidator:
    """Checks numbers against an Evolution API instance."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        instance_name: Optional[str] = None,
        timeout: int = 15,
    ) -> None:
        base_url = base_url or os.getenv("EVOLUTION_API_URL") or ""
        base_url = base_url.rstrip("/")
        if base_url.endswith("/manager"):
            base_url = base_url[: -len("/manager")]
        self.base_url = base_url
        self.api_key = api_key or os.getenv("EVOLUTION_API_KEY") or ""
        self.instance_name = instance_name or os.getenv("EVOLUTION_INSTANCE_NAME") or ""
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.api_key and self.instance_name)

    async def check(self, session: aiohttp.ClientSession, number: str) -> Dict[str, Any]:
        """Return ``{status, whatsappName}``; API trouble maps to ``uncertain``."""
        clean = digits(number)
        if not clean.startswith("55"):
            clean = f"55{clean}"
        url = f"{self.base_url}/chat/whatsappNumbers/{self.instance_name}"
        headers = {"Content-Type": "application/json", "apikey": self.api_key}
        try:
            async with session.post(url, headers=headers, json={"numbers": [clean]}) as resp:
                if resp.status >= 400:
                    text = await resp.text()
                    logger.warning(
                        "Evolution API erro",
                        extra={"event_type": "message", "status": resp.status, "details": text[:200]},
                    )
                    return {"status": "uncertain"}
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            logger.warning("Evolution API indisponivel", extra={"event_type": "message", "error": str(exc)[:200]})
            return {"status": "uncertain"}

        if isinstance(data, list) and data and isinstance(data[0], dict) and data[0].get("exists"):
            return {"status": "valid", "whatsappName": data[0].get("name")}
        return {"status": "invalid"}


async def validate_phones(
    user_id: str,
    phone_ids: List[str],
    validator: WhatsAppValidator,
    delay: float = 0.5,
) -> Dict[str, Any]:
    if not phone_ids:
        raise ValueError("Nenhum telefone para validar")
    if not validator.configured:
        raise ProviderResponseError("Evolution API não configurada", status_code=500)
    phones = storage.fetch_phones(user_id, phone_ids)
    if not phones:
        raise LookupError("Telefones não encontrados")

    results: List[Dict[str, Any]] = []
    timeout = aiohttp.ClientTimeout(total=validator.timeout)
    async with aiohttp.ClientSession(timeout=timeout) as session:
        for index, phone in enumerate(phones):
            outcome = await validator.check(session, phone["phone_number"])
            if outcome["status"] != "uncertain":
                storage.update_phone_status(phone["id"], outcome["status"])
            entry = {"id": phone["id"], "status": outcome["status"]}
            if outcome.get("whatsappName"):
                entry["whatsappName"] = outcome["whatsappName"]
            results.append(entry)
            if delay and index < len(phones) - 1:
                await asyncio.sleep(delay)

    summary = {
        "total": len(results),
        "valid": sum(1 for item in results if item["status"] == "valid"),
        "invalid": sum(1 for item in results if item["status"] == "invalid"),
        "uncertain": sum(1 for item in results if item["status"] == "uncertain"),
    }
    storage.log_event("info", "phones_validated", summary)
    return {"success": True, "results": results, "summary": summary}
