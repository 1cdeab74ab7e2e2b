import json
import os
import shutil
import tempfile
import unittest
from typing import Any, Dict, Optional
from unittest import mock

import requests

# Keep any module-level init_db() away from the working tree.
os.environ.setdefault("ACHEI_DB_PATH", os.path.join(tempfile.mkdtemp(prefix="achei-import-"), "achei.db"))

from achei import credits, storage  # noqa: E402


class TempDatabaseTestCase(unittest.TestCase):
    """Gives each test its own SQLite file."""

    def setUp(self) -> None:
        self._tmpdir = tempfile.mkdtemp(prefix="achei-test-")
        self._env = mock.patch.dict(os.environ, {"ACHEI_DB_PATH": os.path.join(self._tmpdir, "test.db")})
        self._env.start()
        storage.init_db()

    def tearDown(self) -> None:
        self._env.stop()
        shutil.rmtree(self._tmpdir, ignore_errors=True)


def seed_user(user_id: str = "user-1", balance: int = 0, email: Optional[str] = None) -> str:
    storage.upsert_profile(user_id, email=email or f"{user_id}@example.com", full_name="Teste")
    if balance:
        credits.add_credits(user_id, balance, "bonus", "Saldo inicial")
    return user_id


def seed_company(user_id: str, name: str = "Padaria Central", phones: Any = (), **fields: Any) -> Dict[str, Any]:
    data = {"name": name, "cnae": "1091102", "city": "Curitiba", "state": "PR"}
    data.update(fields)
    company = storage.insert_company(user_id, data)
    for number, status in phones:
        storage.insert_phone(company["id"], number, "mobile", status)
    return storage.get_company(user_id, company["id"])


def fake_response(status: int, body: Any = None, content_type: str = "application/json") -> requests.Response:
    resp = requests.Response()
    resp.status_code = status
    if isinstance(body, (dict, list)):
        text = json.dumps(body)
    else:
        text = body or ""
    resp._content = text.encode("utf-8")
    resp.headers["Content-Type"] = content_type
    resp.encoding = "utf-8"
    resp.url = "https://provider.test/endpoint"
    return resp
