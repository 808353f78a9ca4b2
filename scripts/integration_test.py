#!/usr/bin/env python3
"""
Integration Test Suite for the PIX Storefront

Usage:
    1. Start MongoDB and the storefront:
         ADMIN_PASSWORD_HASH=... uvicorn storefront.main:app --port 8000
    2. Install dependencies: pip install -e .[test]
    3. Run the script:
         ADMIN_PASSWORD=... python scripts/integration_test.py

This script tests the full flow against a running deployment:
    - Admin login and store settings (PIX key)
    - Product management
    - Shopping cart
    - Checkout (sale creation, QR code, WhatsApp link)
    - Sale settlement
    - Security/Negative tests

Output:
    - Console logs with pass/fail status
    - integration_test_results.json report
"""
import requests
import json
import os
import time
import sys
import uuid
from datetime import datetime
from typing import Dict, Any
from urllib.parse import unquote

# Configuration
BASE_URL = os.getenv("STOREFRONT_URL", "http://localhost:8000")
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@example.com")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "")
RESULTS_FILE = "integration_test_results.json"

# Colors
class Colors:
    HEADER = '\033[95m'
    BLUE = '\033[94m'
    GREEN = '\033[92m'
    FAIL = '\033[91m'
    ENDC = '\033[0m'

class TestRunner:
    def __init__(self):
        self.results = []
        self.session = requests.Session()
        self.session.headers["X-Session-ID"] = f"it-{uuid.uuid4().hex}"
        self.store: Dict[str, Any] = {}
        self.start_time = time.time()

    def log(self, message: str, color: str = Colors.ENDC):
        print(f"{color}{message}{Colors.ENDC}")

    def save_result(self, name: str, status: str, duration: float, error: str = None):
        self.results.append({
            "test_name": name,
            "status": status,
            "duration": duration,
            "error": error,
            "timestamp": datetime.utcnow().isoformat()
        })
        color = Colors.GREEN if status == "PASS" else Colors.FAIL
        self.log(f"[{status}] {name} ({duration:.4f}s)", color)
        if error:
            self.log(f"  Error: {error}", Colors.FAIL)

    def run_test(self, name: str, func, *args, **kwargs):
        start = time.time()
        try:
            func(*args, **kwargs)
            duration = time.time() - start
            self.save_result(name, "PASS", duration)
        except AssertionError as e:
            duration = time.time() - start
            self.save_result(name, "FAIL", duration, str(e))
        except Exception as e:
            duration = time.time() - start
            self.save_result(name, "ERROR", duration, str(e))

    def assert_status(self, response, expected: int):
        if response.status_code != expected:
            raise AssertionError(f"Expected status {expected}, got {response.status_code}. Body: {response.text}")

    def admin_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.store['admin_token']}"}

    def save_report(self):
        with open(RESULTS_FILE, "w") as f:
            json.dump({
                "summary": {
                    "total": len(self.results),
                    "passed": len([r for r in self.results if r["status"] == "PASS"]),
                    "failed": len([r for r in self.results if r["status"] != "PASS"]),
                    "total_duration": time.time() - self.start_time
                },
                "results": self.results
            }, f, indent=2)
        self.log(f"\nTest results saved to {RESULTS_FILE}", Colors.BLUE)

# --- Checks ---

def check_health(runner: TestRunner):
    resp = runner.session.get(f"{BASE_URL}/health")
    runner.assert_status(resp, 200)
    if resp.json()["status"] != "healthy":
        raise AssertionError("System is not healthy")

# Phase 1: Admin

def admin_login(runner: TestRunner):
    resp = runner.session.post(f"{BASE_URL}/admin/login", json={
        "email": ADMIN_EMAIL,
        "password": ADMIN_PASSWORD
    })
    runner.assert_status(resp, 200)
    runner.store["admin_token"] = resp.json()["data"]["access_token"]

def configure_pix_key(runner: TestRunner):
    resp = runner.session.put(f"{BASE_URL}/admin/settings", json={
        "pix_key": "integration-test@pix.example",
        "primary_color": "#16a34a"
    }, headers=runner.admin_headers())
    runner.assert_status(resp, 200)

# Phase 2: Products

def create_products(runner: TestRunner):
    ids = []
    for name, price in (("Integration A", "10.00"), ("Integration B", "5.50")):
        resp = runner.session.post(f"{BASE_URL}/admin/products", json={
            "name": name,
            "description": "Created by the integration run",
            "price": price,
            "category": "integration"
        }, headers=runner.admin_headers())
        runner.assert_status(resp, 200)
        ids.append(resp.json()["data"]["id"])
    runner.store["product_ids"] = ids

def list_products(runner: TestRunner):
    resp = runner.session.get(f"{BASE_URL}/products", params={"category": "integration", "limit": 100})
    runner.assert_status(resp, 200)
    listed = {p["id"] for p in resp.json()["data"]["products"]}
    if not set(runner.store["product_ids"]) <= listed:
        raise AssertionError("Created products not found in list")

# Phase 3: Cart

def fill_cart(runner: TestRunner):
    first, second = runner.store["product_ids"]
    resp = runner.session.post(f"{BASE_URL}/cart/items", json={"product_id": first, "quantity": 2})
    runner.assert_status(resp, 200)
    resp = runner.session.post(f"{BASE_URL}/cart/items", json={"product_id": second, "quantity": 1})
    runner.assert_status(resp, 200)
    if float(resp.json()["data"]["total"]) != 25.5:
        raise AssertionError(f"Cart total mismatch: {resp.json()['data']['total']}")

# Phase 4: Checkout

def checkout(runner: TestRunner):
    resp = runner.session.post(f"{BASE_URL}/checkout", json={"customer_name": "Integration"})
    runner.assert_status(resp, 200)
    view = resp.json()["data"]
    if view["state"] != "payment_pending":
        raise AssertionError(f"Unexpected checkout state {view['state']}")
    if not (view["qr_code_url"] or "").startswith("data:image/png;base64,"):
        raise AssertionError("QR code missing")
    if "Total: R$ 25.50" not in unquote(view["whatsapp_link"]):
        raise AssertionError("WhatsApp message does not carry the order total")
    runner.store["sale_id"] = view["sale_id"]

def verify_cart_cleared(runner: TestRunner):
    resp = runner.session.get(f"{BASE_URL}/cart")
    runner.assert_status(resp, 200)
    if resp.json()["data"]["items"]:
        raise AssertionError("Cart not cleared after checkout")

# Phase 5: Settlement

def settle_sale(runner: TestRunner):
    sid = runner.store["sale_id"]
    resp = runner.session.put(f"{BASE_URL}/admin/sales/{sid}/status", json={"status": "paid"},
                              headers=runner.admin_headers())
    runner.assert_status(resp, 200)
    if resp.json()["data"]["status"] != "paid":
        raise AssertionError("Sale status not updated")

def close_checkout(runner: TestRunner):
    resp = runner.session.delete(f"{BASE_URL}/checkout")
    runner.assert_status(resp, 200)
    if resp.json()["data"]["state"] != "editing":
        raise AssertionError("Checkout did not reset")

def cleanup_products(runner: TestRunner):
    for pid in runner.store.get("product_ids", []):
        resp = runner.session.delete(f"{BASE_URL}/admin/products/{pid}", headers=runner.admin_headers())
        runner.assert_status(resp, 200)

# Phase 6: Negative Tests

def negative_tests(runner: TestRunner):
    # Invalid Token
    resp = runner.session.get(f"{BASE_URL}/admin/sales", headers={"Authorization": "Bearer invalid_token"})
    if resp.status_code != 401:
        raise AssertionError(f"Expected 401 for invalid token, got {resp.status_code}")

    # Empty cart checkout
    resp = runner.session.post(f"{BASE_URL}/checkout", json={})
    if resp.status_code != 400:
        raise AssertionError(f"Expected 400 for empty cart, got {resp.status_code}")

    # Bad Data (negative price)
    resp = runner.session.post(f"{BASE_URL}/admin/products", json={"name": "Bad", "price": -10},
                               headers=runner.admin_headers())
    if resp.status_code != 422:
        raise AssertionError(f"Expected 422 for negative price, got {resp.status_code}")


def main():
    runner = TestRunner()
    runner.log("Starting Integration Tests...\n", Colors.HEADER)

    runner.run_test("Health Check", check_health, runner)

    runner.run_test("Admin Login", admin_login, runner)
    runner.run_test("Configure PIX Key", configure_pix_key, runner)

    runner.run_test("Create Products", create_products, runner)
    runner.run_test("List Products", list_products, runner)

    runner.run_test("Fill Cart", fill_cart, runner)

    runner.run_test("Checkout", checkout, runner)
    runner.run_test("Verify Cart Cleared", verify_cart_cleared, runner)

    runner.run_test("Settle Sale", settle_sale, runner)
    runner.run_test("Close Checkout", close_checkout, runner)

    runner.run_test("Negative Tests", negative_tests, runner)
    runner.run_test("Cleanup Products", cleanup_products, runner)

    runner.save_report()

    # Exit code
    if any(r["status"] != "PASS" for r in runner.results):
        sys.exit(1)

if __name__ == "__main__":
    main()
