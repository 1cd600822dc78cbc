#!/usr/bin/env python3
"""
Sign a webhook payload file and optionally deliver it.

The signature covers the file bytes exactly as stored, which is what an
HTTP client sending the file will transmit.

Usage:
    # Print the signature header for a payload
    python scripts/sign_payload.py payloads/payment_captured.json

    # Sign with an explicit secret and POST it to a running listener
    python scripts/sign_payload.py payloads/payment_captured.json --secret test_secret \\
        --send http://localhost:8000/webhook/payments

Environment:
    WEBHOOK_SECRET: Shared secret used when --secret is not given
"""

import argparse
import json
import os
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import httpx

from app.core.errors import ConfigurationError
from app.core.signature import DEFAULT_PREFIX, SignatureVerifier


def main() -> int:
    parser = argparse.ArgumentParser(description="Sign a webhook payload with HMAC-SHA256")
    parser.add_argument("payload", type=Path, help="Path to the JSON payload file")
    parser.add_argument("--secret", default=os.getenv("WEBHOOK_SECRET"), help="Shared webhook secret")
    parser.add_argument("--prefix", default=DEFAULT_PREFIX, help="Signature scheme prefix (use '' for none)")
    parser.add_argument("--header", default="X-Webhook-Signature", help="Header name used with --send")
    parser.add_argument("--send", metavar="URL", default=None, help="POST the signed payload to this URL")
    args = parser.parse_args()

    try:
        verifier = SignatureVerifier(args.secret)
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    body = args.payload.read_bytes()
    signature = verifier.signature_header(body, prefix=args.prefix)

    try:
        payload = json.loads(body)
    except ValueError:
        payload = {}

    print(f"File:       {args.payload}")
    print(f"Signature:  {signature}")
    if isinstance(payload, dict):
        print(f"Event ID:   {payload.get('event_id')}")
        print(f"Event Type: {payload.get('event_type')}")
        print(f"Payment ID: {payload.get('payment_id')}")

    if not args.send:
        return 0

    response = httpx.post(
        args.send,
        content=body,
        headers={args.header: signature, "Content-Type": "application/json"},
        timeout=20,
    )
    print(f"Status:     {response.status_code}")
    print(f"Response:   {response.text}")
    return 0 if response.is_success else 1


if __name__ == "__main__":
    sys.exit(main())
