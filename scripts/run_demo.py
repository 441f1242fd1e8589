#!/usr/bin/env python3
"""
run_demo.py - End-to-end demo for the settlement service
- Mints buyer & seller tokens with the shared JWT secret
- Buyer checks out a two-seller cart (one order per seller, one payment session)
- Simulates the provider's signed checkout.session.completed webhook (PAYMENT_GATEWAY=fake)
- Seller attaches a tracking number, courier pushes a delivery update
- Prints the tracking snapshot and the receipt emails from MailHog (if available)

Expects the demo rows from scripts/seed.py.
"""

import hashlib
import hmac
import json
import os
import time
from typing import Any, Dict, List, Optional

import jwt
import requests


class DemoRunner:
    def __init__(self):
        self.base_url = os.getenv("BASE_URL", "http://localhost:8000")
        self.mailhog_api = "http://localhost:8025/api/v2/messages"

        self.jwt_secret = os.getenv("JWT_SECRET", "devsecret")
        self.webhook_secret = os.getenv("STRIPE_WEBHOOK_SECRET", "whsec_dev")

        self.buyer = {"uid": 1, "sub": "buyer@student.example.edu"}
        self.seller = {"uid": 2, "sub": "seller@student.example.edu"}

    # ---------- helpers ----------
    def show_step(self, title: str):
        print(f"\n=== {title} ===")

    def token_for(self, who: Dict[str, Any]) -> str:
        claims = dict(who, type="access", exp=int(time.time()) + 900)
        return jwt.encode(claims, self.jwt_secret, algorithm="HS256")

    def auth(self, who: Dict[str, Any]) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token_for(who)}"}

    def call_api(
        self,
        method: str,
        url: str,
        headers: Optional[Dict] = None,
        data: Optional[Any] = None,
        raw: Optional[bytes] = None,
        params: Optional[Dict] = None,
        expected_status: List[int] = [200, 201, 202, 204],
        timeout: int = 30,
    ):
        print(f"\n-> {method} {url}")
        if data is not None:
            print(f"   Body: {json.dumps(data, indent=2)}")
        try:
            resp = requests.request(
                method=method,
                url=url,
                headers=headers,
                params=params,
                json=data if raw is None else None,
                data=raw,
                timeout=timeout,
            )
        except requests.exceptions.RequestException as e:
            print(f"   Error: \033[91m{e}\033[0m")
            return {"status": None, "data": None, "error": str(e)}

        status_color = "\033[92m" if resp.status_code in expected_status else "\033[93m"
        print(f"   Status: {status_color}{resp.status_code}\033[0m")
        try:
            js = resp.json()
            print(json.dumps(js, indent=2))
            return {"status": resp.status_code, "data": js}
        except json.JSONDecodeError:
            print(resp.text)
            return {"status": resp.status_code, "data": None}

    def signed_event(self, event_type: str, obj: Dict[str, Any]) -> Dict[str, Any]:
        payload = json.dumps({
            "id": f"evt_demo_{int(time.time())}",
            "type": event_type,
            "data": {"object": obj},
        }).encode("utf-8")
        sig = hmac.new(self.webhook_secret.encode(), payload, hashlib.sha256).hexdigest()
        return {"raw": payload, "headers": {"Stripe-Signature": sig, "Content-Type": "application/json"}}

    # ---------- flow ----------
    def run_demo(self):
        print("Starting settlement demo")
        print("=" * 50)

        self.show_step("Preflight: health")
        self.call_api("GET", f"{self.base_url}/health", expected_status=[200])

        self.show_step("Buyer: checkout two-seller cart")
        co = self.call_api(
            "POST",
            f"{self.base_url}/v1/checkout",
            headers=self.auth(self.buyer),
            data={"address_id": 1, "items": [{"product_id": 1, "quantity": 2}, {"product_id": 2, "quantity": 1}]},
        )
        body = co.get("data") or {}
        order_ids = body.get("order_ids") or []
        session_id = body.get("session_id")
        if not order_ids:
            print("\033[91mCheckout failed; did you run scripts/seed.py?\033[0m")
            return

        self.show_step("Provider: checkout.session.completed (sent twice)")
        event = self.signed_event("checkout.session.completed", {
            "id": session_id,
            "payment_status": "paid",
            "metadata": {"orderIds": ",".join(str(i) for i in order_ids), "userId": str(self.buyer["uid"])},
        })
        for _ in range(2):
            self.call_api("POST", f"{self.base_url}/v1/webhooks/stripe", headers=event["headers"], raw=event["raw"])

        first = order_ids[0]
        tracking_number = f"DEMO{first:06d}MY"

        self.show_step("Seller: attach tracking")
        self.call_api(
            "PATCH",
            f"{self.base_url}/v1/seller/orders/{first}/tracking",
            headers=self.auth(self.seller),
            data={"tracking_number": tracking_number, "courier_code": "poslaju"},
        )

        self.show_step("Courier: push delivery update")
        self.call_api(
            "POST",
            f"{self.base_url}/v1/webhooks/tracking",
            data={
                "event": "trackings/checkpoint_update",
                "data": {"tracking": {
                    "tracking_number": tracking_number,
                    "courier": "poslaju",
                    "status": "delivered",
                    "checkpoints": [
                        {"time": "2026-10-19T09:00:00+08:00", "content": "Item dispatched", "location": "Shah Alam"},
                        {"time": "2026-10-20T15:30:00+08:00", "content": "Delivered", "location": "Kolej Mawar"},
                    ],
                }},
            },
        )

        self.show_step("Buyer: tracking snapshot")
        self.call_api(
            "GET",
            f"{self.base_url}/v1/tracking",
            headers=self.auth(self.buyer),
            params={"tracking_number": tracking_number, "order_id": first},
        )

        self.show_step("Buyer: order status")
        for oid in order_ids:
            self.call_api("GET", f"{self.base_url}/v1/orders/{oid}", headers=self.auth(self.buyer))

        self.show_step("Notifications: receipts in MailHog (optional)")
        try:
            r = requests.get(self.mailhog_api + "?limit=5", timeout=5)
            if r.status_code == 200:
                for i, m in enumerate(r.json().get("items", []), 1):
                    subj = m.get("Content", {}).get("Headers", {}).get("Subject", [""])
                    print(f"  {i}. Subject: {subj[0] if isinstance(subj, list) and subj else subj}")
            else:
                print("MailHog not reachable or returned non-200.")
        except requests.exceptions.RequestException:
            print("MailHog not reachable. Skipping.")

        print("\n\033[92m=== DEMO COMPLETE ===\033[0m")


if __name__ == "__main__":
    DemoRunner().run_demo()
