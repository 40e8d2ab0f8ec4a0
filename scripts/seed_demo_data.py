#!/usr/bin/env python3
"""Drive demo traffic through a running communication core.

Usage:
    # Start the backend first:
    uvicorn comms.web.app:create_app --factory --port 8080

    # Seed demo data:
    python3 scripts/seed_demo_data.py

    # Seed against a different host:
    python3 scripts/seed_demo_data.py --base-url http://localhost:9000

Everything goes through the public API, so enrollments, messages and inbox
entries are produced by the same validation and orchestration a real event
stream would trigger. Preferences are not seeded: the in-memory preference
provider returns restrictive defaults, so most non-critical sends land in the
inbox.

Data created:
    - 3 registrations (onboarding enrollments)
    - 1 vaccination date update (health reminder enrollment)
    - 1 completed order (order follow-up, onboarding exit)
    - 2 direct sends, one critical
    - 1 scheduler tick
"""

from __future__ import annotations

import argparse
import sys
from datetime import date, datetime, timedelta, timezone

import httpx

DEFAULT_BASE_URL = "http://localhost:8080"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def api(
    client: httpx.Client,
    method: str,
    path: str,
    *,
    json: dict | None = None,
    params: dict | None = None,
) -> dict | list | None:
    """Make an API call and return parsed JSON, or None on failure."""
    resp = client.request(method, path, json=json, params=params)
    if resp.status_code >= 400:
        print(f"  FAILED {method} {path} -> {resp.status_code}: {resp.text[:200]}")
        return None
    if resp.headers.get("content-type", "").startswith("application/json"):
        return resp.json()
    return None


def section(title: str) -> None:
    print(f"\n{'='*60}")
    print(f"  {title}")
    print(f"{'='*60}")


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

DEMO_USERS = [
    {"user_id": "demo_anna", "first_name": "Anna", "dog_name": "Luna"},
    {"user_id": "demo_marco", "first_name": "Marco", "dog_name": "Rocky"},
    {"user_id": "demo_sara", "first_name": "Sara"},
]


def seed_registrations(client: httpx.Client) -> None:
    section("Registrations")
    for user in DEMO_USERS:
        data = {k: v for k, v in user.items() if k != "user_id"}
        result = api(client, "POST", "/api/events", json={
            "user_id": user["user_id"],
            "event_type": "user.registered",
            "event_data": data,
        })
        if result:
            print(f"  {user['user_id']}: enrolled {result['enrolled']}")


def seed_health_update(client: httpx.Client) -> None:
    section("Health reminder")
    due = (date.today() + timedelta(days=21)).isoformat()
    result = api(client, "POST", "/api/events", json={
        "user_id": "demo_anna",
        "event_type": "dog.health_updated",
        "event_data": {"dog_name": "Luna", "next_vaccination_date": due},
        "related_entity_id": "dog_luna",
    })
    if result:
        print(f"  Vaccination due {due}: enrolled {result['enrolled']}")


def seed_order(client: httpx.Client) -> None:
    section("Order")
    result = api(client, "POST", "/api/events", json={
        "user_id": "demo_marco",
        "event_type": "order.completed",
        "event_data": {
            "first_name": "Marco",
            "order_id": "A-1042",
            "total": 48.9,
            "item_count": 3,
        },
        "related_entity_id": "order_A-1042",
    })
    if result:
        print(f"  exited {result['exited']}, enrolled {result['enrolled']}")


def seed_direct_sends(client: httpx.Client) -> None:
    section("Direct sends")
    sends = [
        {
            "user_id": "demo_sara",
            "template_id": "template_first_order_offer",
            "variables": {"first_name": "Sara", "discount_code": "DEMO10", "discount_percent": 10},
        },
        {
            "user_id": "demo_anna",
            "template_id": "template_vaccination_reminder",
            "priority": "critical",
            "variables": {"dog_name": "Luna", "next_vaccination_date": date.today().isoformat()},
        },
    ]
    for body in sends:
        result = api(client, "POST", "/api/messages/send", json=body)
        if result:
            print(f"  {body['template_id']} -> {result['channel']} ({result['status']})")


def verify_data(client: httpx.Client) -> None:
    section("Verification")
    tick = api(client, "POST", "/api/scheduler/tick")
    if tick:
        print(f"  Tick: {tick['journeys']['executed']} steps executed")
    for user in DEMO_USERS:
        inbox = api(client, "GET", f"/api/users/{user['user_id']}/inbox") or []
        messages = api(client, "GET", f"/api/users/{user['user_id']}/messages") or []
        print(f"  {user['user_id']}: {len(messages)} messages, {len(inbox)} inbox entries")


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Drive demo traffic through a running communication core"
    )
    parser.add_argument(
        "--base-url",
        default=DEFAULT_BASE_URL,
        help=f"Backend base URL (default: {DEFAULT_BASE_URL})",
    )
    args = parser.parse_args()

    print("Communication Core Demo Seeder")
    print(f"Target: {args.base_url}")
    print(f"Time:   {datetime.now(timezone.utc).isoformat()}")

    with httpx.Client(base_url=args.base_url, timeout=30.0) as client:
        try:
            health = api(client, "GET", "/health")
        except httpx.ConnectError:
            print(f"\nERROR: Cannot connect to {args.base_url}")
            print("Start the backend first:")
            print("  uvicorn comms.web.app:create_app --factory --port 8080")
            sys.exit(1)
        if not health:
            print("\nERROR: Backend is not responding.")
            sys.exit(1)
        print(f"Backend: {health.get('status', 'unknown')} (v{health.get('version', '?')})")

        seed_registrations(client)
        seed_health_update(client)
        seed_order(client)
        seed_direct_sends(client)
        verify_data(client)


if __name__ == "__main__":
    main()
