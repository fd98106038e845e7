"""
Acceptance smoke checks for genflow.

Usage:
  DATABASE_URL=sqlite:///./data/acceptance_genflow.db PYTHONPATH=src .venv/bin/python scripts/acceptance_smoke.py
  DATABASE_URL=sqlite:///./data/acceptance_genflow.db PYTHONPATH=src .venv/bin/python scripts/acceptance_smoke.py --with-external
"""

from __future__ import annotations

import argparse
import json
import os
import sys
import uuid
from dataclasses import dataclass
from typing import Callable

from fastapi.testclient import TestClient


@dataclass
class CheckResult:
    name: str
    passed: bool
    detail: str


def _ok(name: str, detail: str) -> CheckResult:
    return CheckResult(name=name, passed=True, detail=detail)


def _fail(name: str, detail: str) -> CheckResult:
    return CheckResult(name=name, passed=False, detail=detail)


def run_check(name: str, fn: Callable[[], CheckResult]) -> CheckResult:
    try:
        return fn()
    except Exception as exc:  # pragma: no cover - smoke tool
        return _fail(name, f"exception: {exc}")


def run_checks(client: TestClient, with_external: bool = False) -> list[CheckResult]:
    headers = {"X-User-Id": f"smoke-{uuid.uuid4().hex[:8]}"}
    state: dict = {}
    results: list[CheckResult] = []

    def check_root() -> CheckResult:
        resp = client.get("/")
        if resp.status_code != 200:
            return _fail("GET /", f"status={resp.status_code}, body={resp.text[:200]}")
        return _ok("GET /", "healthy")

    def check_webhook_health() -> CheckResult:
        resp = client.get("/api/webhooks/worker")
        if resp.status_code != 200 or resp.json().get("status") != "ok":
            return _fail("GET /api/webhooks/worker", f"status={resp.status_code}, body={resp.text[:200]}")
        return _ok("GET /api/webhooks/worker", "healthy")

    def check_create_and_clarify() -> CheckResult:
        payload = {
            "conversation_id": str(uuid.uuid4()),
            "message_id": str(uuid.uuid4()),
            "type": "video",
            "provider": "veo3",
            "model": "veo3-v1.0",
            "prompt": "acceptance smoke: a paper boat drifting in the rain",
        }
        resp = client.post("/api/generations", json=payload, headers=headers)
        if resp.status_code != 201:
            return _fail("POST /api/generations", f"status={resp.status_code}, body={resp.text[:300]}")
        created = resp.json()
        if created.get("status") != "pending_clarification":
            return _fail("POST /api/generations", f"unexpected response: {json.dumps(created)[:300]}")

        resp = client.post(
            f"/api/generations/{created['id']}/clarify",
            json={"responses": {"duration": "10s"}, "version": created["version"]},
            headers=headers,
        )
        if resp.status_code != 200:
            return _fail("POST /clarify", f"status={resp.status_code}, body={resp.text[:300]}")
        generation = resp.json()["generation"]
        state["generation"] = generation
        return _ok("create + clarify", f"id={generation['id']}, status={generation['status']}")

    def check_confirm_external() -> CheckResult:
        generation = state.get("generation")
        if not generation:
            return _fail("POST /confirm", "no generation from previous check")
        resp = client.post(
            f"/api/generations/{generation['id']}/confirm",
            json={"version": generation["version"]},
            headers=headers,
        )
        if resp.status_code != 200:
            return _fail("POST /confirm", f"status={resp.status_code}, body={resp.text[:300]}")
        data = resp.json()
        return _ok("POST /confirm", f"job_id={data.get('job_id')}, status={data.get('status')}")

    # Always-run checks.
    results.append(run_check("GET /", check_root))
    results.append(run_check("GET /api/webhooks/worker", check_webhook_health))
    results.append(run_check("create + clarify", check_create_and_clarify))

    # Optional external checks.
    if with_external:
        results.append(run_check("POST /confirm", check_confirm_external))

    return results


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run acceptance smoke checks.")
    parser.add_argument(
        "--with-external",
        action="store_true",
        help="Run checks that dispatch to the configured generation worker.",
    )
    args = parser.parse_args(argv)

    database_url = os.getenv("DATABASE_URL", "sqlite:///./data/acceptance_genflow.db")
    os.environ["DATABASE_URL"] = database_url
    os.environ.setdefault("NO_PROXY", "*")

    from genflow.main import app

    # with 块负责执行 lifespan：启动时建表，退出时走关闭流程
    with TestClient(app) as client:
        results = run_checks(client, args.with_external)

    passed = sum(1 for item in results if item.passed)
    failed = len(results) - passed

    print("\nAcceptance Smoke Report")
    print("=" * 24)
    for item in results:
        status = "PASS" if item.passed else "FAIL"
        print(f"[{status}] {item.name}: {item.detail}")

    print("-" * 24)
    print(f"passed={passed}, failed={failed}, total={len(results)}")
    return 0 if failed == 0 else 1


if __name__ == "__main__":
    sys.exit(main())
