from __future__ import annotations

import argparse
import hashlib
import hmac
import json
import sys
import urllib.error
import urllib.request

EVENT_TYPES = [
    "job_created",
    "job_updated",
    "candidate_created",
    "candidate_updated",
    "application_submitted",
    "application_updated",
    "interview_scheduled",
    "offer_extended",
    "hire_completed",
]


def sign_payload(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def post_json(url: str, body: bytes, headers: dict[str, str]) -> tuple[int, str]:
    request = urllib.request.Request(url, data=body, method="POST")
    request.add_header("Content-Type", "application/json")
    for key, value in headers.items():
        request.add_header(key, value)
    try:
        with urllib.request.urlopen(request, timeout=15) as response:
            content = response.read().decode("utf-8")
            return response.status, content
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode("utf-8")


def build_event(event_type: str, index: int) -> dict:
    job_id = f"job_mock_{index}"
    candidate_id = f"cand_mock_{index}"
    application_id = f"app_mock_{index}"
    if event_type.startswith("job_"):
        return {
            "job": {
                "id": job_id,
                "title": f"Mock Role {index}",
                "location": "Remote",
                "employment_type": "full-time",
                "status": "open",
            }
        }
    if event_type.startswith("candidate_"):
        return {
            "candidate": {
                "id": candidate_id,
                "first_name": "Mock",
                "last_name": f"Candidate {index}",
                "email": f"candidate{index}@example.com",
            }
        }
    if event_type.startswith("application_"):
        return {
            "application": {
                "id": application_id,
                "job_id": job_id,
                "candidate_id": candidate_id,
                "status": "submitted",
            }
        }
    if event_type == "interview_scheduled":
        return {
            "application_id": application_id,
            "interview_date": "2026-01-15T10:00:00Z",
            "interview_type": "video",
            "notes": "Panel with hiring manager",
        }
    if event_type == "offer_extended":
        return {
            "application_id": application_id,
            "offered_salary": 95000,
            "offer_details": "Standard package",
        }
    return {"application_id": application_id, "start_date": "2026-02-01", "final_salary": 95000}


def main() -> int:
    parser = argparse.ArgumentParser(description="Send mock ATS webhook events to local API.")
    parser.add_argument("--base-url", default="http://127.0.0.1:8000")
    parser.add_argument("--connection-id", type=int, required=True)
    parser.add_argument("--event-type", choices=EVENT_TYPES, default="job_created")
    parser.add_argument("--count", type=int, default=5)
    parser.add_argument("--start-index", type=int, default=1)
    parser.add_argument("--secret", default="")
    parser.add_argument("--token", default="")
    args = parser.parse_args()

    endpoint = f"{args.base_url.rstrip('/')}/ats/webhooks/{args.connection_id}"
    for index in range(args.start_index, args.start_index + args.count):
        webhook_id = f"wh_mock_{args.event_type}_{index}"
        payload = {"webhook_id": webhook_id, "event_type": args.event_type}
        payload.update(build_event(args.event_type, index))
        body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        headers: dict[str, str] = {}
        if args.secret:
            headers["X-ATS-Signature"] = sign_payload(args.secret, body)
        if args.token:
            headers["Authorization"] = f"Bearer {args.token}"
        status_code, response = post_json(endpoint, body, headers)
        print(f"{status_code} {webhook_id} {response}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
