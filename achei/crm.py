"""
CRM pipeline: stages, kanban board, stage history, activities and metrics.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from achei import storage
from achei.cleaning import map_company_row

logger = logging.getLogger("achei_leads")

ACTIVITY_TYPES = {"note", "call", "email", "meeting", "task"}
DEFAULT_STAGE_COLOR = "#6366f1"
DEFAULT_STAGES = [
    ("Prospecção", "#6366f1"),
    ("Contato", "#f59e0b"),
    ("Proposta", "#8b5cf6"),
    ("Fechado", "#10b981"),
]


def _now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")


def _map_stage(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "name": row["name"],
        "color": row["color"],
        "position": row["position"],
    }


def _map_activity(row: Dict[str, Any]) -> Dict[str, Any]:
    activity = {
        "id": row["id"],
        "companyId": row["company_id"],
        "activityType": row["activity_type"],
        "title": row["title"],
        "description": row.get("description"),
        "isCompleted": bool(row.get("is_completed")),
        "dueDate": row.get("due_date"),
        "completedAt": row.get("completed_at"),
        "createdAt": row.get("created_at"),
    }
    if row.get("company_name") is not None:
        activity["company"] = {
            "id": row["company_id"],
            "name": row["company_name"],
            "city": row.get("company_city"),
            "state": row.get("company_state"),
        }
    return activity


# Stages


def list_stages(user_id: str) -> List[Dict[str, Any]]:
    return [_map_stage(row) for row in storage.list_stages(user_id)]


def create_stage(user_id: str, name: str, color: Optional[str] = None, position: Optional[int] = None) -> Dict[str, Any]:
    name = (name or "").strip()
    if not name:
        raise ValueError("Nome do estágio é obrigatório")
    if position is None:
        position = storage.max_stage_position(user_id) + 1
    row = storage.insert_stage(user_id, name, color or DEFAULT_STAGE_COLOR, int(position))
    return _map_stage(row)


def ensure_default_stages(user_id: str) -> List[Dict[str, Any]]:
    if not storage.list_stages(user_id):
        for index, (name, color) in enumerate(DEFAULT_STAGES):
            storage.insert_stage(user_id, name, color, index)
    return list_stages(user_id)


def update_stage(
    user_id: str,
    stage_id: str,
    name: Optional[str] = None,
    color: Optional[str] = None,
    position: Any = None,
) -> bool:
    fields: Dict[str, Any] = {"name": name, "color": color}
    if position is not None:
        try:
            fields["position"] = int(position)
        except (TypeError, ValueError):
            raise ValueError("Posição do estágio inválida")
    fields = {key: value for key, value in fields.items() if value is not None}
    if not fields:
        return storage.get_stage(user_id, stage_id) is not None
    return storage.update_stage(user_id, stage_id, **fields)


def delete_stage(user_id: str, stage_id: str) -> bool:
    """Remove a stage; its companies go back to the unassigned column first."""
    if not storage.get_stage(user_id, stage_id):
        return False
    moved = storage.clear_stage_from_companies(user_id, stage_id)
    deleted = storage.delete_stage(user_id, stage_id)
    logger.info("Estagio removido", extra={"event_type": "crm", "stage_id": stage_id, "companies_unassigned": moved})
    return deleted


def reorder_stages(user_id: str, positions: List[Dict[str, Any]]) -> None:
    updates = []
    for entry in positions:
        try:
            updates.append((str(entry["id"]), int(entry["position"])))
        except (KeyError, TypeError, ValueError):
            raise ValueError("Ordem de estágios inválida")
    for stage_id, position in updates:
        storage.update_stage(user_id, stage_id, position=position)


# Companies on the board


def move_company(user_id: str, company_id: str, stage_id: Optional[str], notes: Optional[str] = None) -> Dict[str, Any]:
    company = storage.get_company(user_id, company_id)
    if not company:
        raise LookupError("Empresa não encontrada")
    target = None
    if stage_id:
        target = storage.get_stage(user_id, stage_id)
        if not target:
            raise LookupError("Estágio não encontrado")
    previous_id = company.get("crm_stage_id")
    previous = storage.get_stage(user_id, previous_id) if previous_id else None

    storage.update_company(user_id, company_id, crm_stage_id=stage_id or None)
    storage.insert_stage_history(
        user_id,
        company_id,
        {
            "from_stage_id": previous_id,
            "from_stage_name": previous["name"] if previous else None,
            "to_stage_id": stage_id or None,
            "to_stage_name": target["name"] if target else None,
            "notes": notes,
        },
    )
    return {"companyId": company_id, "fromStageId": previous_id, "toStageId": stage_id or None}


def stage_history(user_id: str, company_id: str) -> List[Dict[str, Any]]:
    return [
        {
            "id": row["id"],
            "fromStageId": row["from_stage_id"],
            "fromStageName": row["from_stage_name"],
            "toStageId": row["to_stage_id"],
            "toStageName": row["to_stage_name"],
            "notes": row["notes"],
            "changedAt": row["changed_at"],
        }
        for row in storage.list_stage_history(user_id, company_id)
    ]


def update_deal(
    user_id: str,
    company_id: str,
    deal_value: Any = None,
    expected_close_date: Any = None,
    crm_notes: Any = None,
    clear: Optional[List[str]] = None,
) -> bool:
    fields: Dict[str, Any] = {}
    if deal_value is not None:
        fields["deal_value"] = float(deal_value)
    if expected_close_date is not None:
        fields["expected_close_date"] = expected_close_date
    if crm_notes is not None:
        fields["crm_notes"] = crm_notes
    for column in clear or []:
        if column in {"deal_value", "expected_close_date", "crm_notes"}:
            fields[column] = None
    if not fields:
        return storage.get_company(user_id, company_id) is not None
    return storage.update_company(user_id, company_id, **fields)


def kanban_board(user_id: str) -> Dict[str, Any]:
    companies = [map_company_row(row) for row in storage.fetch_companies(user_id)]
    stages = list_stages(user_id)
    stage_ids = {stage["id"] for stage in stages}

    columns = []
    for stage in stages:
        members = [company for company in companies if company["crmStageId"] == stage["id"]]
        columns.append(
            {
                "stage": stage,
                "count": len(members),
                "totalValue": sum(company["dealValue"] or 0 for company in members),
                "companies": members,
            }
        )
    unassigned = [company for company in companies if company["crmStageId"] not in stage_ids]
    return {
        "unassigned": {"count": len(unassigned), "companies": unassigned},
        "stages": columns,
    }


# Activities


def list_activities(user_id: str, company_id: Optional[str] = None) -> List[Dict[str, Any]]:
    return [_map_activity(row) for row in storage.list_activities(user_id, company_id=company_id)]


def create_activity(user_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    activity_type = data.get("activityType") or data.get("activity_type")
    if activity_type not in ACTIVITY_TYPES:
        raise ValueError(f"Tipo de atividade inválido: {activity_type}")
    title = (data.get("title") or "").strip()
    if not title:
        raise ValueError("Título é obrigatório")
    company_id = data.get("companyId") or data.get("company_id")
    if not company_id or not storage.get_company(user_id, company_id):
        raise LookupError("Empresa não encontrada")
    is_completed = bool(data.get("isCompleted"))
    row = storage.insert_activity(
        user_id,
        {
            "company_id": company_id,
            "activity_type": activity_type,
            "title": title,
            "description": data.get("description"),
            "is_completed": is_completed,
            "due_date": data.get("dueDate"),
            "completed_at": _now_iso() if is_completed else None,
        },
    )
    return _map_activity(row)


def update_activity(user_id: str, activity_id: str, updates: Dict[str, Any]) -> bool:
    fields: Dict[str, Any] = {}
    if "title" in updates:
        fields["title"] = updates["title"]
    if "description" in updates:
        fields["description"] = updates["description"]
    if "dueDate" in updates:
        fields["due_date"] = updates["dueDate"]
    if "isCompleted" in updates:
        fields["is_completed"] = int(bool(updates["isCompleted"]))
        if updates["isCompleted"]:
            fields["completed_at"] = _now_iso()
    if not fields:
        return False
    return storage.update_activity(user_id, activity_id, **fields)


def delete_activity(user_id: str, activity_id: str) -> bool:
    return storage.delete_activity(user_id, activity_id)


def overdue_tasks(user_id: str, now: Optional[str] = None) -> List[Dict[str, Any]]:
    now = now or _now_iso()
    rows = storage.list_activities(user_id, only_open=True, due_before=now)
    return [
        {
            "id": row["id"],
            "companyId": row["company_id"],
            "activityType": row["activity_type"],
            "title": row["title"],
            "description": row.get("description"),
            "dueDate": row["due_date"],
            "companyName": row.get("company_name"),
        }
        for row in rows
    ]


# Metrics


def crm_metrics(user_id: str) -> Dict[str, Any]:
    companies = [map_company_row(row, phones=[]) for row in storage.fetch_companies(user_id)]
    stages = list_stages(user_id)
    activities = storage.list_activities(user_id)

    distribution = []
    for stage in stages:
        members = [company for company in companies if company["crmStageId"] == stage["id"]]
        distribution.append(
            {
                "stageId": stage["id"],
                "stageName": stage["name"],
                "count": len(members),
                "value": sum(company["dealValue"] or 0 for company in members),
            }
        )
    return {
        "totalLeads": sum(1 for company in companies if company["crmStageId"]),
        "totalDealValue": sum(company["dealValue"] or 0 for company in companies),
        "pendingTasks": sum(
            1 for row in activities if row["activity_type"] == "task" and not row["is_completed"]
        ),
        "stageDistribution": distribution,
    }


def dashboard_metrics(user_id: str) -> Dict[str, Any]:
    counts = storage.dashboard_counts(user_id)
    total = counts["total_companies"]
    enriched = counts["enriched_companies"]
    return {
        "totalCompanies": total,
        "validPhones": counts["valid_phones"],
        "messagesSent": counts["messages_sent"],
        "pendingMessages": counts["pending_messages"],
        "enrichedCompanies": enriched,
        "enrichmentRate": round(enriched * 100.0 / total, 1) if total else 0.0,
    }
