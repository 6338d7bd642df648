# shopify_setup.py - one-off store setup: fetch an access token, register the orders/paid webhook
#
#   python shopify_setup.py access-token
#   python shopify_setup.py register-webhook
import argparse
import json
import os
import sys
from typing import List, Optional

import requests
from dotenv import load_dotenv

DEFAULT_API_VERSION = "2026-01"

WEBHOOK_MUTATION = """
  mutation webhookSubscriptionCreate($topic: WebhookSubscriptionTopic!, $webhookSubscription: WebhookSubscriptionInput!) {
    webhookSubscriptionCreate(topic: $topic, webhookSubscription: $webhookSubscription) {
      webhookSubscription {
        id
      }
      userErrors {
        field
        message
      }
    }
  }
"""


class SetupError(Exception):
    pass


def _require(*names: str) -> List[str]:
    values = [os.getenv(n, "") for n in names]
    missing = [n for n, v in zip(names, values) if not v]
    if missing:
        raise SetupError(f"Missing {', '.join(missing)} in .env")
    return values


def get_access_token(timeout: int = 30) -> str:
    shop, client_id, client_secret = _require("SHOPIFY_SHOP", "SHOPIFY_API_KEY", "SHOPIFY_API_SECRET")
    response = requests.post(
        f"https://{shop}/admin/oauth/access_token",
        json={
            "client_id": client_id,
            "client_secret": client_secret,
            "grant_type": "client_credentials",
            "scope": os.getenv("SHOPIFY_SCOPES", "read_orders"),
        },
        timeout=timeout,
    )
    if not response.ok:
        raise SetupError(f"Failed to get access token {response.status_code} {response.text}")
    return response.json()["access_token"]


def register_webhook(timeout: int = 30) -> dict:
    shop, token, base_url = _require("SHOPIFY_SHOP", "SHOPIFY_ACCESS_TOKEN", "BASE_URL")
    api_version = os.getenv("SHOPIFY_API_VERSION", DEFAULT_API_VERSION)
    response = requests.post(
        f"https://{shop}/admin/api/{api_version}/graphql.json",
        headers={"Content-Type": "application/json", "X-Shopify-Access-Token": token},
        json={
            "query": WEBHOOK_MUTATION,
            "variables": {
                "topic": "ORDERS_PAID",
                "webhookSubscription": {
                    "callbackUrl": f"{base_url.rstrip('/')}/webhooks/orders_paid",
                    "format": "JSON",
                },
            },
        },
        timeout=timeout,
    )
    if not response.ok:
        raise SetupError(f"Webhook registration failed {response.status_code} {response.text}")
    return response.json()


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    parser = argparse.ArgumentParser(description="Shopify setup helpers for ebook delivery")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("access-token", help="exchange app credentials for an Admin API access token")
    sub.add_parser("register-webhook", help="subscribe BASE_URL/webhooks/orders_paid to ORDERS_PAID")
    args = parser.parse_args(argv)

    try:
        if args.command == "access-token":
            print("Access token:", get_access_token())
        else:
            print(json.dumps(register_webhook(), indent=2))
    except (SetupError, requests.RequestException) as e:
        print(e, file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
