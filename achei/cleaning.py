"""
Normalisation, masking and result shaping for Achei Leads.
"""

import re
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import phonenumbers

GENERIC_RESULT_TERMS = (
    "results",
    "map tools",
    "map type",
    "google maps",
    "sign in",
    "get the most out",
    "pesquisa",
    "busca",
    "home",
    "menu",
    "collapse",
    "expand",
    "rating",
    "hours",
    "filters",
)

PHONE_PATTERNS = [
    re.compile(r"\(?\d{2}\)?\s*\d{4,5}[-.\s]?\d{4}"),
    re.compile(r"\+55\s*\d{2}\s*\d{4,5}[-.\s]?\d{4}"),
]
ADDRESS_PATTERNS = [
    re.compile(r"(?:Endereço|Localização|End\.?):\s*([^\n]+)", re.IGNORECASE),
    re.compile(
        r"(?:R\.|Rua|Av\.|Avenida|Al\.|Alameda|Pça\.|Praça|Travessa|Tv\.)[^,\n]+"
        r"(?:,\s*\d+)?(?:\s*-\s*[^,\n]+)?(?:,\s*[^,\n]+)?",
        re.IGNORECASE,
    ),
]
RATING_REGEX = re.compile(r"(\d[,.]\d)\s*(?:estrelas?|⭐|/\s*5)", re.IGNORECASE)
REVIEWS_REGEX = re.compile(r"\((\d+(?:\.\d+)?(?:k|K)?)\s*(?:avaliações?|reviews?|opiniões?)\)", re.IGNORECASE)


def digits(value: Any) -> str:
    return re.sub(r"\D", "", str(value or ""))


def normalize_cnpj(cnpj: str) -> Optional[str]:
    value = digits(cnpj)
    return value if len(value) == 14 else None


def format_cnpj(cnpj: str) -> str:
    value = digits(cnpj)
    if len(value) != 14:
        return cnpj or ""
    return f"{value[:2]}.{value[2:5]}.{value[5:8]}/{value[8:12]}-{value[12:]}"


def normalize_cep(cep: str) -> Optional[str]:
    value = digits(cep)
    return value if len(value) == 8 else None


def normalize_cnae(cnae: str, min_digits: int = 5) -> Optional[str]:
    value = digits(cnae)
    return value if len(value) >= min_digits else None


def normalize_phone(phone: str) -> Optional[str]:
    value = digits(phone)
    if value.startswith("55") and len(value) > 11:
        value = value[2:]
    if len(value) in {10, 11}:
        return value
    return None


def phone_type(phone: str) -> str:
    """Classify a Brazilian number as ``mobile`` or ``landline``."""
    value = normalize_phone(phone) or digits(phone)
    try:
        parsed = phonenumbers.parse(value, "BR")
        kind = phonenumbers.number_type(parsed)
        if kind == phonenumbers.PhoneNumberType.MOBILE:
            return "mobile"
        if kind == phonenumbers.PhoneNumberType.FIXED_LINE:
            return "landline"
    except phonenumbers.NumberParseException:
        pass
    return "mobile" if len(value) == 11 else "landline"


def mask_name(name: str) -> str:
    if not name:
        return ""
    words = name.split(" ")
    masked = []
    for index, word in enumerate(words):
        if index == 0:
            masked.append(word[:3] + "*" * max(0, len(word) - 3))
        else:
            masked.append("*" * len(word))
    return " ".join(masked)


def mask_cnpj(cnpj: str) -> str:
    if not cnpj:
        return ""
    value = digits(cnpj)
    if len(value) < 14:
        return cnpj
    return f"{value[:2]}.{value[2:4]}*.***/****-**"


def mask_phone(phone: str) -> str:
    if not phone:
        return ""
    value = digits(phone)
    if len(value) == 11:
        return "(XX) XXXXX-XXXX"
    if len(value) == 10:
        return "(XX) XXXX-XXXX"
    return "XX XXXX-XXXX"


def mask_email(email: str) -> str:
    if not email:
        return ""
    parts = email.split("@")
    if len(parts) != 2:
        return "***@***.***"
    local = parts[0][:2] + "*" * max(3, len(parts[0]) - 2)
    return f"{local}@*****.***"


def mask_search_result(company: Dict[str, Any]) -> Dict[str, Any]:
    masked = dict(company)
    masked["name"] = mask_name(company.get("name", ""))
    masked["fantasyName"] = mask_name(company.get("fantasyName", ""))
    masked["cnpj"] = mask_cnpj(company.get("cnpj", ""))
    masked["phone1"] = mask_phone(company.get("phone1", ""))
    masked["phone2"] = mask_phone(company.get("phone2", ""))
    masked["email"] = mask_email(company.get("email", ""))
    return masked


def company_result(
    cnpj: str = "",
    name: str = "",
    fantasy_name: str = "",
    cnae: str = "",
    cnae_description: str = "",
    city: str = "",
    state: str = "",
    phone1: str = "",
    phone2: str = "",
    email: str = "",
    address: str = "",
    number: str = "",
    neighborhood: str = "",
    cep: str = "",
    **extras: Any,
) -> Dict[str, Any]:
    result = {
        "cnpj": str(cnpj or ""),
        "name": name or "Empresa sem nome",
        "fantasyName": fantasy_name or "",
        "cnae": str(cnae or ""),
        "cnaeDescription": cnae_description or "",
        "city": city or "",
        "state": state or "",
        "phone1": str(phone1 or ""),
        "phone2": str(phone2 or ""),
        "email": email or "",
        "address": address or "",
        "number": str(number or ""),
        "neighborhood": neighborhood or "",
        "cep": str(cep or ""),
    }
    result.update(extras)
    return result


def is_generic_result(name: str) -> bool:
    lower = (name or "").lower()
    return any(term in lower for term in GENERIC_RESULT_TERMS)


def parse_search_result(result: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Turn one web-search hit into a business listing."""
    if not result:
        return None

    url = result.get("url") or ""
    company = {
        "name": "",
        "phone1": "",
        "address": "",
        "website": "",
        "rating": "",
        "reviews": "",
        "source": url,
    }

    title = result.get("title")
    if title:
        name = re.sub(r" - Google Maps$", "", title)
        name = re.sub(r" \| .*$", "", name)
        name = re.sub(r" - .*$", "", name)
        name = re.sub(r" · .*$", "", name).strip()
        if len(name) > 80:
            name = re.split(r"[,\-|]", name)[0].strip()
        company["name"] = name

    content = result.get("markdown") or result.get("description") or ""

    for pattern in PHONE_PATTERNS:
        match = pattern.search(content)
        if match:
            phone = digits(match.group(0))
            if phone.startswith("55") and len(phone) > 11:
                phone = phone[2:]
            company["phone1"] = phone
            break

    for pattern in ADDRESS_PATTERNS:
        match = pattern.search(content)
        if match:
            found = match.group(1) if match.groups() else match.group(0)
            company["address"] = found.strip()[:200]
            break

    if url and "google.com" not in url and "facebook.com" not in url:
        parsed = urlparse(url)
        if parsed.scheme and parsed.netloc:
            company["website"] = f"{parsed.scheme}://{parsed.netloc}"

    rating = RATING_REGEX.search(content)
    if rating:
        company["rating"] = rating.group(1)

    reviews = REVIEWS_REGEX.search(content)
    if reviews:
        company["reviews"] = reviews.group(1)

    return company


def _deal_value(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def map_phone_row(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "number": row["phone_number"],
        "type": row.get("phone_type") or "mobile",
        "status": row.get("status") or "pending",
    }


def map_company_row(row: Dict[str, Any], phones: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    if phones is None:
        phones = row.get("company_phones") or []
    return {
        "id": row["id"],
        "name": row.get("name") or "",
        "cnpj": row.get("cnpj"),
        "cnae": row.get("cnae") or "",
        "cnaeDescription": row.get("cnae_description") or "",
        "city": row.get("city") or "",
        "state": row.get("state") or "",
        "address": row.get("address"),
        "cep": row.get("cep"),
        "segment": row.get("segment") or "",
        "website": row.get("website"),
        "email": row.get("email"),
        "instagram": row.get("instagram"),
        "facebook": row.get("facebook"),
        "linkedin": row.get("linkedin"),
        "aiSummary": row.get("ai_summary"),
        "enrichedAt": row.get("enriched_at"),
        "crmStageId": row.get("crm_stage_id"),
        "dealValue": _deal_value(row.get("deal_value")),
        "expectedCloseDate": row.get("expected_close_date"),
        "crmNotes": row.get("crm_notes"),
        "createdAt": row.get("created_at"),
        "phones": [map_phone_row(phone) for phone in phones],
    }
