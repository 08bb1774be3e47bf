#!/usr/bin/env python3
"""
Smoke checks for a running imagebucket server.
Uploads a file, lists it back through the filter and exercises the error paths.
"""

import sys
import time
import uuid
from io import BytesIO

import requests

BASE_URL = "http://localhost:8000"
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


def check_health_endpoint():
    """Check /health"""
    print("\n=== Checking Health Endpoint ===")
    try:
        response = requests.get(f"{BASE_URL}/health", timeout=5)
        if response.status_code == 200:
            log_check("/health", "GET", "PASS", "Bucket reachable")
        else:
            log_check("/health", "GET", "FAIL", f"Unhealthy: {response.text}", "error")
    except requests.RequestException as e:
        log_check("/health", "GET", "FAIL", f"Exception: {str(e)}", "error")


def check_upload(file_name, tags):
    """Check POST /upload"""
    print("\n=== Checking Upload ===")
    try:
        files = {"file": (file_name, BytesIO(b"smoke test image"), "image/png")}
        data = {"fileName": file_name, "tags": tags}
        response = requests.post(f"{BASE_URL}/upload", files=files, data=data, timeout=10)

        if response.status_code == 200 and response.text == "Image Uploaded":
            log_check("/upload", "POST", "PASS", f"Uploaded {file_name}")
            return True
        log_check("/upload", "POST", "FAIL", f"Status: {response.status_code}, Response: {response.text}", "error")
    except requests.RequestException as e:
        log_check("/upload", "POST", "FAIL", f"Exception: {str(e)}", "error")
    return False


def check_contents(file_name, tag):
    """Check GET /contents with and without a filter"""
    print("\n=== Checking Contents ===")
    try:
        response = requests.get(f"{BASE_URL}/contents", params={"filter": tag}, timeout=30)
        if response.status_code != 200:
            log_check("/contents", "GET", "FAIL", f"Status: {response.status_code}, Response: {response.text}", "error")
            return

        entries = response.json().get("data", [])
        match = next((entry for entry in entries if entry.get("fileName") == file_name), None)
        if match is None:
            log_check("/contents", "GET", "FAIL", f"{file_name} missing for filter {tag!r}", "error")
        elif not match.get("presignedUrl"):
            log_check("/contents", "GET", "FAIL", "Entry has no presigned URL", "error")
        else:
            log_check("/contents", "GET", "PASS", f"Found {file_name} among {len(entries)} entries")

        downloaded = requests.get(match["presignedUrl"], timeout=30) if match else None
        if downloaded is not None:
            if downloaded.status_code == 200:
                log_check("presignedUrl", "GET", "PASS", "Presigned URL serves the object")
            else:
                log_check("presignedUrl", "GET", "FAIL", f"Status: {downloaded.status_code}", "error")

        miss = requests.get(f"{BASE_URL}/contents", params={"filter": uuid.uuid4().hex}, timeout=30)
        leaked = [entry for entry in miss.json().get("data", []) if entry.get("fileName") == file_name]
        if leaked:
            log_check("/contents", "GET", "FAIL", "Filtered entry leaked into results", "critical")
        else:
            log_check("/contents", "GET", "PASS", "Non-matching filter hides the entry")
    except requests.RequestException as e:
        log_check("/contents", "GET", "FAIL", f"Exception: {str(e)}", "error")


def check_invalid_uploads():
    """Check request validation on POST /upload"""
    print("\n=== Checking Invalid Uploads ===")
    try:
        response = requests.post(f"{BASE_URL}/upload", json={"fileName": "x"}, timeout=10)
        status = "PASS" if response.status_code == 400 else "FAIL"
        log_check("/upload", "POST", status, f"JSON body -> {response.status_code}")

        response = requests.post(
            f"{BASE_URL}/upload",
            data=b"raw",
            headers={"Content-Type": "multipart/form-data"},
            timeout=10,
        )
        status = "PASS" if response.status_code == 400 else "FAIL"
        log_check("/upload", "POST", status, f"Missing boundary -> {response.status_code}")
    except requests.RequestException as e:
        log_check("/upload", "POST", "FAIL", f"Exception: {str(e)}", "error")


def check_cors_preflight():
    """Check OPTIONS handling"""
    print("\n=== Checking CORS Preflight ===")
    try:
        response = requests.options(f"{BASE_URL}/contents", timeout=5)
        if response.headers.get("Access-Control-Allow-Methods") == "GET, POST, OPTIONS" and response.text == "":
            log_check("/contents", "OPTIONS", "PASS", f"Origin {response.headers.get('Access-Control-Allow-Origin')}")
        else:
            log_check("/contents", "OPTIONS", "FAIL", f"Headers: {dict(response.headers)}", "error")
    except requests.RequestException as e:
        log_check("/contents", "OPTIONS", "FAIL", f"Exception: {str(e)}", "error")


def print_summary():
    print("\n" + "=" * 80)
    passed = sum(1 for r in check_results if r.status == "PASS")
    print(f"SUMMARY: {passed}/{len(check_results)} checks passed")
    for r in check_results:
        if r.status == "FAIL":
            print(f"  - {r.method} {r.endpoint}: {r.message}")


def main():
    print(f"Base URL: {BASE_URL}")
    print("=" * 80)

    file_name = f"smoke-{int(time.time())}.png"
    tag = f"smoke{uuid.uuid4().hex[:8]}"

    check_health_endpoint()
    if check_upload(file_name, f"{tag},check"):
        check_contents(file_name, tag)
    check_invalid_uploads()
    check_cors_preflight()

    print_summary()

    failed = sum(1 for r in check_results if r.status == "FAIL")
    critical = sum(1 for r in check_results if r.severity == "critical")
    if critical > 0:
        return 2
    if failed > 0:
        return 1
    return 0


if __name__ == "__main__":
    if len(sys.argv) > 1:
        BASE_URL = sys.argv[1].rstrip("/")
    sys.exit(main())
