#!/usr/bin/env python3
import argparse
import json
from typing import Any, Dict, List

from achei import credits, crm, storage
from server import issue_token

PACKAGES: List[Dict[str, Any]] = [
    {"id": "starter", "name": "Starter", "price_brl": 25.0, "credits": 100, "bonus_credits": 0, "position": 0},
    {"id": "pro", "name": "Pro", "price_brl": 50.0, "credits": 200, "bonus_credits": 30, "position": 1},
    {"id": "business", "name": "Business", "price_brl": 100.0, "credits": 400, "bonus_credits": 100, "position": 2},
    {"id": "agency", "name": "Agency", "price_brl": 300.0, "credits": 1200, "bonus_credits": 500, "position": 3},
]


def seed(user_id: str, email: str, name: str, initial_credits: int, ttl_days: int) -> Dict[str, Any]:
    storage.init_db()
    for package in PACKAGES:
        storage.upsert_package(package)
    storage.upsert_profile(user_id, email=email, full_name=name)
    stages = crm.ensure_default_stages(user_id)
    if initial_credits > 0 and not credits.has_reference(f"seed:{user_id}", "bonus"):
        credits.add_credits(user_id, initial_credits, "bonus", "Créditos de boas-vindas", f"seed:{user_id}")
    token = issue_token(user_id, ttl_days=ttl_days or None)
    return {
        "user_id": user_id,
        "token": token,
        "balance": credits.get_balance(user_id),
        "stages": [stage["name"] for stage in stages],
        "packages": [package["id"] for package in PACKAGES],
    }


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed a demo user, API token, CRM stages and credit packages.")
    parser.add_argument("--user-id", type=str, default="demo-user", help="Profile id to create or update.")
    parser.add_argument("--email", type=str, default="demo@acheileads.com.br", help="Profile e-mail.")
    parser.add_argument("--name", type=str, default="Usuário Demo", help="Profile full name.")
    parser.add_argument("--credits", type=int, default=10, help="Welcome credits granted once.")
    parser.add_argument("--ttl-days", type=int, default=0, help="Token lifetime in days (0 = no expiry).")
    args = parser.parse_args()

    result = seed(args.user_id, args.email, args.name, args.credits, args.ttl_days)
    print(json.dumps(result, ensure_ascii=False, indent=2))


if __name__ == "__main__":
    main()
