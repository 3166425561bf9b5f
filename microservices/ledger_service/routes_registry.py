"""
Ledger Service Routes Registry
Defines all API routes exposed by the ledger service.
Served by the /api/v1/ledger/info endpoint for gateway route discovery.
"""
from typing import List, Dict, Any

BASE_PATH = "/api/v1/ledger"

SERVICE_ROUTES: List[Dict[str, Any]] = [
    # Health and Service Info
    {
        "path": "/health",
        "methods": ["GET"],
        "auth_required": False,
        "description": "Basic health check endpoint"
    },
    {
        "path": "/api/v1/ledger/health",
        "methods": ["GET"],
        "auth_required": False,
        "description": "Service health check (API v1)"
    },
    {
        "path": "/api/v1/ledger/info",
        "methods": ["GET"],
        "auth_required": False,
        "description": "Service metadata and route map"
    },
    # Accounts
    {
        "path": "/api/v1/ledger/accounts",
        "methods": ["POST"],
        "auth_required": True,
        "description": "Open a credit account (idempotent)"
    },
    {
        "path": "/api/v1/ledger/accounts/{user_id}/balance",
        "methods": ["GET"],
        "auth_required": True,
        "description": "Balance by source (free, subscription, unallocated)"
    },
    {
        "path": "/api/v1/ledger/accounts/{user_id}/statements",
        "methods": ["GET"],
        "auth_required": True,
        "description": "Statement history, newest first"
    },
    {
        "path": "/api/v1/ledger/accounts/{user_id}/reconcile",
        "methods": ["GET"],
        "auth_required": True,
        "description": "Compare cached balance with statement log"
    },
    # Crediting
    {
        "path": "/api/v1/ledger/top-up",
        "methods": ["POST"],
        "auth_required": True,
        "description": "Credit paid funds (idempotent per order)"
    },
    {
        "path": "/api/v1/ledger/free-credits",
        "methods": ["POST"],
        "auth_required": True,
        "description": "Issue a free credit grant"
    },
    # Consumption and refund
    {
        "path": "/api/v1/ledger/consume",
        "methods": ["POST"],
        "auth_required": True,
        "description": "Consume credits (free -> subscription -> unallocated)"
    },
    {
        "path": "/api/v1/ledger/refund",
        "methods": ["POST"],
        "auth_required": True,
        "description": "Refund a consumption to its sources"
    },
    # Subscriptions
    {
        "path": "/api/v1/ledger/subscriptions",
        "methods": ["PUT"],
        "auth_required": True,
        "description": "Create or update a subscription and its credit schedule"
    },
    {
        "path": "/api/v1/ledger/subscriptions/{subscription_id}",
        "methods": ["DELETE"],
        "auth_required": True,
        "description": "Cancel a subscription and drop its unissued grants"
    },
    # Lifecycle sweeps
    {
        "path": "/api/v1/ledger/sweeps/issue",
        "methods": ["POST"],
        "auth_required": True,
        "description": "Run the issuance pass"
    },
    {
        "path": "/api/v1/ledger/sweeps/expire",
        "methods": ["POST"],
        "auth_required": True,
        "description": "Run the expiration pass"
    },
    {
        "path": "/api/v1/ledger/sweeps/run",
        "methods": ["POST"],
        "auth_required": True,
        "description": "Run expiration then issuance"
    },
]


def get_route_metadata() -> Dict[str, Any]:
    """
    Generate compact route metadata.

    Returns:
        Dict with route paths grouped by category
    """
    health_routes = []
    account_routes = []
    operation_routes = []
    subscription_routes = []
    sweep_routes = []
    for route in SERVICE_ROUTES:
        path = route["path"]
        compact_path = path.replace(f"{BASE_PATH}/", "")
        if path.startswith("/health") or compact_path in ("health", "info"):
            health_routes.append(compact_path)
        elif "accounts" in path:
            account_routes.append(compact_path)
        elif "subscriptions" in path:
            subscription_routes.append(compact_path)
        elif "sweeps" in path:
            sweep_routes.append(compact_path)
        elif path.startswith(BASE_PATH):
            operation_routes.append(compact_path)
    return {
        "route_count": str(len(SERVICE_ROUTES)),
        "base_path": BASE_PATH,
        "health": ",".join(health_routes),
        "accounts": ",".join(account_routes),
        "operations": ",".join(operation_routes),
        "subscriptions": ",".join(subscription_routes),
        "sweeps": ",".join(sweep_routes),
        "methods": "GET,POST,PUT,DELETE",
        "public_count": str(sum(1 for r in SERVICE_ROUTES if not r["auth_required"])),
        "protected_count": str(sum(1 for r in SERVICE_ROUTES if r["auth_required"])),
    }


# Service metadata
SERVICE_METADATA = {
    "service_name": "ledger_service",
    "version": "1.0.0",
    "tags": ["v1", "ledger", "credits", "subscription"],
    "capabilities": [
        "credit_accounts",
        "credit_top_up",
        "free_credit_grants",
        "subscription_credit_schedule",
        "credit_consumption",
        "source_aware_refund",
        "credit_expiration",
        "event_driven"
    ]
}
