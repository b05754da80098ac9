# craft_ledger/demo/seed_demo_data.py

from decimal import Decimal
from typing import Dict

from craft_ledger.core.adapters import normalize_usage
from craft_ledger.core.ai_billing import bill_ai_usage
from craft_ledger.core.ledger import Ledger
from craft_ledger.core.topups import record_topup
from craft_ledger.storage.db import DEFAULT_DB_PATH
from craft_ledger.storage.models import ResourceKind
from craft_ledger.storage.repository import AccountRepository, ResourceRepository, initialize_schema

DEMO_USERS = [
    # email, plan, top-up
    ("alice@example.com", "PRO", Decimal("25.00")),
    ("bob@example.com", "FREE", Decimal("0.50")),
]


def seed_demo_data(db_path: str = DEFAULT_DB_PATH) -> Dict[str, str]:
    """Create demo accounts, resources and a billed AI call.

    Safe to run twice: existing demo users are reused and the top-ups and
    AI call are keyed, so nothing is charged or credited again.

    Returns:
        Mapping of demo email to user id
    """
    initialize_schema(db_path)
    accounts = AccountRepository(db_path)
    resources = ResourceRepository(db_path)
    ledger = Ledger(db_path)

    user_ids = {}
    new_users = set()
    for email, plan, topup in DEMO_USERS:
        user = accounts.get_user_by_email(email)
        created = user is None
        if created:
            user = accounts.create_user(email, plan=plan)
            new_users.add(email)
        user_ids[email] = user.id

        record_topup(ledger, accounts, user.id, topup, checkout_id=f"demo-{email}")

        if created:
            resources.add_resource(user.id, ResourceKind.SANDBOX, f"{email.split('@')[0]}-sandbox")

    alice = user_ids["alice@example.com"]
    if "alice@example.com" in new_users:
        resources.add_resource(
            alice,
            ResourceKind.DATABASE,
            "alice-db",
            database_storage_gb=Decimal("1.2"),
            file_storage_gb=Decimal("0.3"),
        )
        resources.add_resource(alice, ResourceKind.DEPLOYMENT, "alice-app")

    usage = normalize_usage("anthropic", {
        "input_tokens": 6000,
        "cache_read_input_tokens": 4000,
        "output_tokens": 1500,
    })
    bill_ai_usage(
        ledger,
        alice,
        "anthropic/claude-sonnet-4.5",
        usage,
        request_id="demo-request-1",
        project_id="demo-project",
    )

    return user_ids


if __name__ == "__main__":
    seed_demo_data()
    print("Demo ledger data inserted")
