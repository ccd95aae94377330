"""End-to-end smoke run against a live RCM deployment.

Configures the sandbox gateway, runs one intent through
create -> confirm -> settle -> refund and checks the dashboard moves with it.
Also probes the auth boundary (401 without a token).
"""

import argparse
import sys
from uuid import uuid4

import httpx


def check(label: str, condition: bool, detail: str = "") -> bool:
    print(f"{'PASS' if condition else 'FAIL'} {label}{f' ({detail})' if detail and not condition else ''}")
    return condition


def net_revenue(client: httpx.Client, timeframe: str) -> int:
    resp = client.get("/api/rcm/dashboard", params={"timeframe": timeframe})
    resp.raise_for_status()
    return int(resp.json()["data"]["metrics"]["net_revenue"])


def run(base_url: str, token: str, amount: int) -> bool:
    """Return True when every step passed."""

    results = []
    with httpx.Client(base_url=base_url, timeout=15.0) as anonymous:
        resp = anonymous.get("/api/rcm/dashboard")
        results.append(check("dashboard without token is 401", resp.status_code == 401, str(resp.status_code)))

    headers = {"Authorization": f"Bearer {token}", "x-trace-id": f"smoke-{uuid4()}"}
    with httpx.Client(base_url=base_url, headers=headers, timeout=15.0) as client:
        resp = client.post(
            "/api/rcm/gateways/configure",
            json={"provider_id": "sandbox", "is_default": True, "is_sandbox": True},
        )
        results.append(check("configure sandbox gateway", resp.status_code == 200, resp.text))

        before = net_revenue(client, "30d")
        resp = client.post(
            "/api/rcm/paymentIntents",
            json={"amount": amount, "currency": "USD", "idempotency_key": f"smoke-{uuid4()}"},
        )
        results.append(check("create payment intent", resp.status_code == 200, resp.text))
        if resp.status_code != 200:
            return False
        intent_id = resp.json()["data"]["id"]

        resp = client.post(f"/api/rcm/paymentIntents/{intent_id}/confirm", json={})
        results.append(check("confirm payment intent", resp.status_code == 200, resp.text))
        resp = client.post(f"/api/rcm/paymentIntents/{intent_id}/settle")
        settled = resp.status_code == 200 and resp.json()["data"]["status"] == "settled"
        results.append(check("intent settled", settled, resp.text))

        after_settle = net_revenue(client, "30d")
        results.append(check("dashboard gained the settled amount", after_settle - before == amount))

        resp = client.post(f"/api/rcm/paymentIntents/{intent_id}/refund", json={})
        refunded = resp.status_code == 200 and resp.json()["data"]["status"] == "refunded"
        results.append(check("intent refunded", refunded, resp.text))
        results.append(check("dashboard lost the refunded amount", net_revenue(client, "30d") == before))

        resp = client.get("/api/rcm/paymentHistory", params={"limit": 5})
        results.append(check("payment history lists intents", resp.status_code == 200 and resp.json()["data"]))
    return all(results)


def main() -> None:
    parser = argparse.ArgumentParser(description="Smoke-test the RCM HTTP surface.")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--token", required=True, help="Bearer token (see scripts/mint_dev_token.py)")
    parser.add_argument("--amount", type=int, default=5000)
    args = parser.parse_args()
    if not run(args.base_url, args.token, args.amount):
        sys.exit(1)


if __name__ == "__main__":
    main()
