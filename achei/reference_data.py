"""Cached reference lists (CNAE codes and municipalities) from Lista CNAE."""

import logging
import os
from typing import Any, Dict, List, Optional

from achei import storage
from achei.data_sources import ListaCnaeClient

logger = logging.getLogger("achei_leads")


def _map_cnae(item: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(item.get("id") or item.get("codigo") or ""),
        "descricao": item.get("descricao") or item.get("nome") or "",
    }


def _map_municipio(item: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": item.get("id") or item.get("codigo"),
        "nome": item.get("nome") or item.get("municipio") or "",
        "uf": item.get("uf") or item.get("estado") or "",
    }


DATASETS = {
    "cnaes": ("todosCnaes", "CNAEs", _map_cnae),
    "municipios": ("todosMunicipios", "municípios", _map_municipio),
}


class ReferenceDataService:
    def __init__(self, client: Optional[ListaCnaeClient] = None, ttl_hours: Optional[float] = None):
        self.client = client or ListaCnaeClient()
        if ttl_hours is None:
            ttl_hours = float(os.getenv("REFERENCE_CACHE_TTL_HOURS", "24"))
        self.ttl_hours = ttl_hours

    @staticmethod
    def _cache_key(dataset: str) -> str:
        return f"reference:{dataset}"

    def get(self, dataset: str, refresh: bool = False) -> List[Dict[str, Any]]:
        if dataset not in DATASETS:
            raise ValueError(f"Lista de referencia desconhecida: {dataset}")
        key = self._cache_key(dataset)
        if refresh:
            self.refresh(dataset)
        else:
            cached = storage.cache_get(key)
            if cached is not None:
                return cached

        resource, label, mapper = DATASETS[dataset]
        items = [mapper(item) for item in self.client.fetch_reference(resource, label)]
        storage.cache_set(key, items, ttl_hours=self.ttl_hours)
        logger.info(
            f"Lista {dataset} atualizada",
            extra={"event_type": "api", "dataset": dataset, "count": len(items)},
        )
        return items

    def cnaes(self, refresh: bool = False) -> List[Dict[str, Any]]:
        return self.get("cnaes", refresh=refresh)

    def municipios(self, refresh: bool = False) -> List[Dict[str, Any]]:
        return self.get("municipios", refresh=refresh)

    def refresh(self, dataset: Optional[str] = None) -> None:
        names = [dataset] if dataset else list(DATASETS)
        for name in names:
            storage.cache_delete(self._cache_key(name))
