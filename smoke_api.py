#!/usr/bin/env python3
"""
Smoke checks for a running Takeaway server.
Walks the speaker and attendee flows against a live instance and reports
each endpoint's result.
"""

import os
import sys
from io import BytesIO

import requests

BASE_URL = os.environ.get("TAKEAWAY_BASE_URL", "http://localhost:3001")
USERNAME = os.environ.get("TAKEAWAY_SMOKE_USERNAME", "speaker")
PASSWORD = os.environ.get("TAKEAWAY_SMOKE_PASSWORD", "takeaway")
check_results = []


class CheckResult:
    def __init__(self, endpoint, method, status, message, severity="info"):
        self.endpoint = endpoint
        self.method = method
        self.status = status
        self.message = message
        self.severity = severity

    def __str__(self):
        status_symbol = "✓" if self.status == "PASS" else "✗" if self.status == "FAIL" else "!"
        return f"[{status_symbol}] {self.method} {self.endpoint}: {self.message}"


def log_check(endpoint, method, status, message, severity="info"):
    result = CheckResult(endpoint, method, status, message, severity)
    check_results.append(result)
    print(result)


def auth_headers(token):
    return {"Authorization": f"Bearer {token}"}


def check_health_endpoint():
    """Check /api/health"""
    print("\n=== Checking Health Endpoint ===")
    try:
        response = requests.get(f"{BASE_URL}/api/health", timeout=5)
        data = response.json()
        if response.status_code == 200 and data.get("status") == "healthy":
            log_check("/api/health", "GET", "PASS", f"Healthy, event {data['checks'].get('event_status')}")
        else:
            log_check("/api/health", "GET", "WARN", f"Unhealthy status: {data}", "warning")
    except requests.RequestException as e:
        log_check("/api/health", "GET", "FAIL", f"Exception: {str(e)}", "error")


def check_login():
    """Check /api/auth/login and /api/auth/verify"""
    print("\n=== Checking Login ===")
    try:
        response = requests.post(
            f"{BASE_URL}/api/auth/login",
            json={"username": USERNAME, "password": PASSWORD},
            timeout=10,
        )
        if response.status_code != 200:
            log_check("/api/auth/login", "POST", "FAIL", f"Status: {response.status_code}, Response: {response.text}", "error")
            return None
        token = response.json()["token"]
        log_check("/api/auth/login", "POST", "PASS", "Logged in")

        verify = requests.post(f"{BASE_URL}/api/auth/verify", headers=auth_headers(token), timeout=10)
        if verify.status_code == 200 and verify.json().get("valid"):
            log_check("/api/auth/verify", "POST", "PASS", "Token verified")
        else:
            log_check("/api/auth/verify", "POST", "FAIL", f"Status: {verify.status_code}", "error")
        return token
    except requests.RequestException as e:
        log_check("/api/auth/login", "POST", "FAIL", f"Exception: {str(e)}", "error")
        return None


def check_bad_login():
    print("\n=== Checking Rejected Login ===")
    try:
        response = requests.post(
            f"{BASE_URL}/api/auth/login",
            json={"username": USERNAME, "password": PASSWORD + "-wrong"},
            timeout=10,
        )
        if response.status_code == 401:
            log_check("/api/auth/login", "POST", "PASS", "Wrong password rejected")
        elif response.status_code == 429:
            log_check("/api/auth/login", "POST", "WARN", "Rate limited", "warning")
        else:
            log_check("/api/auth/login", "POST", "FAIL", f"Wrong password accepted: {response.status_code}", "critical")
    except requests.RequestException as e:
        log_check("/api/auth/login", "POST", "FAIL", f"Exception: {str(e)}", "error")


def check_event_status():
    print("\n=== Checking Event Status ===")
    try:
        response = requests.get(f"{BASE_URL}/api/event/status", timeout=5)
        event = response.json().get("event", {})
        if "shareableLinkToken" in event:
            log_check("/api/event/status", "GET", "FAIL", "Link token exposed publicly", "critical")
        elif response.status_code == 200:
            log_check("/api/event/status", "GET", "PASS", f"Event is {event.get('status')}")
        else:
            log_check("/api/event/status", "GET", "FAIL", f"Status: {response.status_code}", "error")
    except requests.RequestException as e:
        log_check("/api/event/status", "GET", "FAIL", f"Exception: {str(e)}", "error")


def check_generate_link(token):
    print("\n=== Checking Shareable Link ===")
    if not token:
        log_check("/api/event/generate-link", "POST", "SKIP", "No token from login check")
        return None
    try:
        response = requests.post(f"{BASE_URL}/api/event/generate-link", headers=auth_headers(token), timeout=10)
        if response.status_code == 200:
            data = response.json()
            log_check("/api/event/generate-link", "POST", "PASS", f"Link: {data['url']}")
            return data["token"]
        log_check("/api/event/generate-link", "POST", "FAIL", f"Status: {response.status_code}", "error")
    except requests.RequestException as e:
        log_check("/api/event/generate-link", "POST", "FAIL", f"Exception: {str(e)}", "error")
    return None


def check_upload(token):
    """Check /api/upload with a small PDF"""
    print("\n=== Checking Upload ===")
    if not token:
        log_check("/api/upload", "POST", "SKIP", "No token from login check")
        return None
    try:
        files = {"file": ("smoke-check.pdf", BytesIO(b"%PDF-1.4\n%smoke\n"), "application/pdf")}
        response = requests.post(f"{BASE_URL}/api/upload", files=files, headers=auth_headers(token), timeout=10)
        if response.status_code == 201:
            record = response.json()["file"]
            log_check("/api/upload", "POST", "PASS", f"Stored as {record['storageName']}")
            return record["storageName"]
        log_check("/api/upload", "POST", "FAIL", f"Status: {response.status_code}, Response: {response.text}", "error")
    except requests.RequestException as e:
        log_check("/api/upload", "POST", "FAIL", f"Exception: {str(e)}", "error")
    return None


def check_rejected_upload(token):
    print("\n=== Checking Upload Type Filter ===")
    if not token:
        return
    try:
        files = {"file": ("image.png", BytesIO(b"\x89PNG"), "image/png")}
        response = requests.post(f"{BASE_URL}/api/upload", files=files, headers=auth_headers(token), timeout=10)
        if response.status_code == 400:
            log_check("/api/upload", "POST", "PASS", "PNG rejected")
        else:
            log_check("/api/upload", "POST", "FAIL", f"PNG accepted: {response.status_code}", "critical")
    except requests.RequestException as e:
        log_check("/api/upload", "POST", "FAIL", f"Exception: {str(e)}", "error")


def check_attendee_reads(link, storage_name):
    print("\n=== Checking Attendee Reads ===")
    if not link:
        log_check("/api/files", "GET", "SKIP", "No shareable link")
        return
    try:
        listing = requests.get(f"{BASE_URL}/api/files", params={"link": link}, timeout=10)
        if listing.status_code == 200:
            log_check("/api/files", "GET", "PASS", f"{len(listing.json())} file(s) listed")
        elif listing.status_code == 403:
            log_check("/api/files", "GET", "WARN", listing.json().get("error", "denied"), "warning")
            return
        else:
            log_check("/api/files", "GET", "FAIL", f"Status: {listing.status_code}", "error")

        if storage_name:
            download = requests.get(f"{BASE_URL}/api/files/{storage_name}", params={"link": link}, timeout=10)
            if download.status_code == 200 and download.content.startswith(b"%PDF"):
                log_check("/api/files/<filename>", "GET", "PASS", "Downloaded uploaded PDF")
            else:
                log_check("/api/files/<filename>", "GET", "FAIL", f"Status: {download.status_code}", "error")

        anonymous = requests.get(f"{BASE_URL}/api/files", timeout=10)
        if anonymous.status_code == 401:
            log_check("/api/files", "GET", "PASS", "Anonymous listing refused")
        else:
            log_check("/api/files", "GET", "FAIL", f"Anonymous listing allowed: {anonymous.status_code}", "critical")
    except requests.RequestException as e:
        log_check("/api/files", "GET", "FAIL", f"Exception: {str(e)}", "error")


def check_path_traversal(token):
    print("\n=== Checking Filename Guard ===")
    if not token:
        return
    try:
        response = requests.get(f"{BASE_URL}/api/files/..%5Csecret", headers=auth_headers(token), timeout=10)
        if response.status_code in (400, 404):
            log_check("/api/files/<filename>", "GET", "PASS", "Traversal name refused")
        else:
            log_check("/api/files/<filename>", "GET", "FAIL", f"Traversal name served: {response.status_code}", "critical")
    except requests.RequestException as e:
        log_check("/api/files/<filename>", "GET", "FAIL", f"Exception: {str(e)}", "error")


def print_summary():
    """Print check summary"""
    print("\n" + "=" * 80)
    print("SMOKE CHECK SUMMARY")
    print("=" * 80)

    passed = sum(1 for r in check_results if r.status == "PASS")
    failed = sum(1 for r in check_results if r.status == "FAIL")
    warned = sum(1 for r in check_results if r.status == "WARN")
    skipped = sum(1 for r in check_results if r.status == "SKIP")

    print(f"\nTotal Checks: {len(check_results)}")
    print(f"Passed: {passed}")
    print(f"Failed: {failed}")
    print(f"Warnings: {warned}")
    print(f"Skipped: {skipped}")

    critical = [r for r in check_results if r.severity == "critical"]
    if critical:
        print("\nCRITICAL ISSUES FOUND:")
        for r in critical:
            print(f"  - {r.method} {r.endpoint}: {r.message}")

    errors = [r for r in check_results if r.status == "FAIL"]
    if errors:
        print("\nFAILED CHECKS:")
        for r in errors:
            print(f"  - {r.method} {r.endpoint}: {r.message}")


def main():
    print(f"Base URL: {BASE_URL}")
    print("=" * 80)

    check_health_endpoint()
    check_event_status()
    token = check_login()
    check_bad_login()
    link = check_generate_link(token)
    storage_name = check_upload(token)
    check_rejected_upload(token)
    check_attendee_reads(link, storage_name)
    check_path_traversal(token)

    print_summary()

    failed = sum(1 for r in check_results if r.status == "FAIL")
    critical = sum(1 for r in check_results if r.severity == "critical")
    if critical > 0:
        return 2
    if failed > 0:
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
