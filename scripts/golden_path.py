#!/usr/bin/env python3
"""Golden path demo for BuildGate: submit a prompt and wait for the generated app."""

from __future__ import annotations

import json
import os
import sys
import time
from typing import Any
from urllib.error import HTTPError
from urllib.request import Request, urlopen


def _env(name: str, default: str | None = None) -> str | None:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return value


class HttpClient:
    def __init__(self, base_url: str, api_key: str | None = None, principal_id: str | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers: dict[str, str] = {"Content-Type": "application/json"}
        if api_key:
            self.headers["Authorization"] = f"Bearer {api_key}"
        if principal_id:
            self.headers["X-Principal-ID"] = principal_id

    def request_json(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
        timeout: float = 10.0,
    ) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        data = None
        if payload is not None:
            data = json.dumps(payload, default=str).encode("utf-8")

        req = Request(url, data=data, method=method)
        for key, value in self.headers.items():
            req.add_header(key, value)

        try:
            with urlopen(req, timeout=timeout) as response:
                raw = response.read()
        except HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            raise RuntimeError(f"{method} {url} failed: {exc.code} {exc.reason}: {detail}") from None

        if not raw:
            return {}
        return json.loads(raw.decode("utf-8"))


def main() -> int:
    buildgate_url = _env("BUILDGATE_URL", "http://localhost:8080")
    api_key = _env("BUILDGATE_API_KEY")
    principal_id = _env("BUILDGATE_PRINCIPAL_ID", "principal-demo")
    prompt = _env("BUILDGATE_PROMPT", "A todo list app with add, complete and delete.")
    deadline = time.monotonic() + float(_env("BUILDGATE_WAIT_SECONDS", "1900"))

    client = HttpClient(buildgate_url, api_key=api_key, principal_id=principal_id)

    print("Checking health...")
    health = client.request_json("GET", "/v1/health")
    if health.get("status") != "healthy":
        raise RuntimeError(f"Unexpected health response: {health}")

    quota = client.request_json("GET", f"/v1/quota/{principal_id}")
    print(f"Quota: plan={quota.get('plan')} remaining={quota.get('remaining')}")
    if not quota.get("allowed"):
        raise RuntimeError("No generation credits left for this principal.")

    print("Submitting request...")
    created = client.request_json("POST", "/v1/requests", payload={"prompt_text": prompt})
    job_id = str(created.get("job_id"))
    print(f"Job created: {job_id}")

    seen_steps = 0
    while True:
        job = client.request_json("GET", f"/v1/jobs/{job_id}")
        trace = client.request_json("GET", f"/v1/jobs/{job_id}/trace")
        for step in trace.get("steps", [])[seen_steps:]:
            print(f"  step {step['seq']}: {step.get('tool_invoked') or step['outcome']} ({step['outcome']})")
        seen_steps = len(trace.get("steps", []))

        if job.get("status") in ("succeeded", "failed"):
            break
        if time.monotonic() > deadline:
            raise RuntimeError(f"Job still {job.get('status')} after waiting")
        time.sleep(5)

    result = client.request_json("GET", f"/v1/jobs/{job_id}/result")
    if result.get("status") != "succeeded":
        raise RuntimeError(
            f"Job failed: {result.get('failure_reason')}: {result.get('error_message')}"
        )

    print(f"Golden path complete: {result.get('title')}")
    print(f"Preview: {result.get('sandbox_endpoint')}")
    print(f"Files: {', '.join(sorted(result.get('files', {})))}")
    return 0


if __name__ == "__main__":
    try:
        raise SystemExit(main())
    except Exception as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        raise
