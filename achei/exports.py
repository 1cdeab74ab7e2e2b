"""CSV export of stored companies."""

import logging
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import pandas as pd

logger = logging.getLogger("achei_leads")

DEFAULT_FIELDS = ["name", "cnae", "city", "state", "phone", "phoneStatus"]
MODES = {"per_company", "per_phone"}


def _company_value(key: str) -> Callable[[Dict[str, Any], Optional[Dict[str, Any]]], str]:
    return lambda company, phone: str(company.get(key) or "")


def _phone_value(key: str) -> Callable[[Dict[str, Any], Optional[Dict[str, Any]]], str]:
    return lambda company, phone: str((phone or {}).get(key) or "")


# key -> (label, category, getter)
FIELDS: Dict[str, Tuple[str, str, Callable[[Dict[str, Any], Optional[Dict[str, Any]]], str]]] = {
    "name": ("Nome da Empresa", "empresa", _company_value("name")),
    "cnpj": ("CNPJ", "empresa", _company_value("cnpj")),
    "cnae": ("CNAE", "empresa", _company_value("cnae")),
    "cnaeDescription": ("Descrição do CNAE", "empresa", _company_value("cnaeDescription")),
    "city": ("Cidade", "empresa", _company_value("city")),
    "state": ("Estado", "empresa", _company_value("state")),
    "address": ("Endereço", "empresa", _company_value("address")),
    "cep": ("CEP", "empresa", _company_value("cep")),
    "segment": ("Segmento", "empresa", _company_value("segment")),
    "email": ("Email", "contato", _company_value("email")),
    "website": ("Website", "contato", _company_value("website")),
    "instagram": ("Instagram", "redes", _company_value("instagram")),
    "facebook": ("Facebook", "redes", _company_value("facebook")),
    "linkedin": ("LinkedIn", "redes", _company_value("linkedin")),
    "aiSummary": ("Resumo IA", "ia", _company_value("aiSummary")),
    "enrichedAt": ("Enriquecido em", "ia", _company_value("enrichedAt")),
    "phone": ("Telefone", "telefone", _phone_value("number")),
    "phoneType": ("Tipo de Telefone", "telefone", _phone_value("type")),
    "phoneStatus": ("Status do Telefone", "telefone", _phone_value("status")),
}


def field_catalogue() -> Dict[str, List[Dict[str, str]]]:
    catalogue: Dict[str, List[Dict[str, str]]] = {}
    for key, (label, category, _) in FIELDS.items():
        catalogue.setdefault(category, []).append({"key": key, "label": label})
    return catalogue


def export_filename(today: Optional[date] = None) -> str:
    return f"empresas_{(today or date.today()).isoformat()}.csv"


def build_rows(
    companies: Sequence[Dict[str, Any]],
    fields: Sequence[str],
    mode: str = "per_phone",
    only_valid_phones: bool = True,
) -> List[List[str]]:
    selected = [key for key in FIELDS if key in set(fields)]
    has_phone_fields = any(FIELDS[key][1] == "telefone" for key in selected)
    rows: List[List[str]] = []
    for company in companies:
        phones = company.get("phones") or []
        if has_phone_fields:
            phones = [phone for phone in phones if not only_valid_phones or phone.get("status") == "valid"]
            if not phones and only_valid_phones:
                continue

        if mode == "per_phone" and has_phone_fields:
            for phone in phones:
                rows.append([FIELDS[key][2](company, phone) for key in selected])
            continue

        row = []
        for key in selected:
            label, category, getter = FIELDS[key]
            if category == "telefone":
                values = [getter(company, phone) for phone in phones]
                row.append("; ".join(value for value in values if value))
            else:
                row.append(getter(company, None))
        rows.append(row)
    return rows


def build_csv(
    companies: Sequence[Dict[str, Any]],
    fields: Optional[Sequence[str]] = None,
    mode: str = "per_phone",
    only_valid_phones: bool = True,
) -> bytes:
    """Render companies (application records with ``phones``) as a UTF-8 CSV with BOM."""
    fields = list(DEFAULT_FIELDS if fields is None else fields)
    if mode not in MODES:
        raise ValueError(f"Modo de exportação inválido: {mode}")
    unknown = [key for key in fields if key not in FIELDS]
    if unknown:
        raise ValueError(f"Campos desconhecidos: {', '.join(unknown)}")
    if not fields:
        raise ValueError("Selecione pelo menos um campo para exportar")

    rows = build_rows(companies, fields, mode, only_valid_phones)
    if not rows:
        raise ValueError("Nenhum dado para exportar com os filtros selecionados")

    columns = [FIELDS[key][0] for key in FIELDS if key in set(fields)]
    df = pd.DataFrame(rows, columns=columns)
    csv_text = df.to_csv(index=False, lineterminator="\n")
    logger.info("CSV exportado", extra={"event_type": "export", "rows": len(rows), "mode": mode})
    return ("\ufeff" + csv_text).encode("utf-8")
