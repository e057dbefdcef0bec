"""Send an encrypted test webhook to a running PledgeMatch service.

Encrypts a sample event with the configured AES key/IV the way the payment
provider does, then posts it to /webhooks/tgb.

Usage:
    python scripts/send_test_webhook.py --pledge-id pledge-123 --amount 100
"""

import argparse
import asyncio
import sys
import time
import uuid
from pathlib import Path

import httpx

sys.path.insert(0, str(Path(__file__).parent.parent))

from src.config import config
from src.models import DEPOSIT_TRANSACTION, TRANSACTION_CONVERTED
from src.pledgematch.decryption import encrypt_payload


def build_event(args: argparse.Namespace) -> dict:
    now_ms = int(time.time() * 1000)
    event = {
        "eid": args.eid or f"evt-{uuid.uuid4().hex[:12]}",
        "pledgeId": args.pledge_id,
        "eventTimestamp": now_ms,
        "timestampms": str(now_ms),
        "status": "completed",
        "currency": args.currency,
        "amount": args.amount,
        "valueAtDonationTimeUSD": args.amount,
        "payoutCurrency": "USD",
    }
    if args.event_type == TRANSACTION_CONVERTED:
        event.update(
            {
                "convertedAt": str(now_ms),
                "netValueAmount": args.amount,
                "grossAmount": args.amount,
                "netValueCurrency": "USD",
            }
        )
    else:
        event["paymentMethod"] = "crypto"
    return event


async def send(args: argparse.Namespace) -> None:
    event = build_event(args)
    ciphertext = encrypt_payload(
        event,
        config.webhook_aes_key.get_secret_value(),
        config.webhook_aes_iv.get_secret_value(),
    )

    print(f"Sending {args.event_type} eid={event['eid']} pledgeId={event['pledgeId']}")
    async with httpx.AsyncClient(timeout=10.0) as client:
        response = await client.post(
            f"{args.url.rstrip('/')}/webhooks/tgb",
            json={"eventType": args.event_type, "payload": ciphertext},
        )

    print(f"Status: {response.status_code}")
    print(f"Response: {response.text}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Send an encrypted test webhook.")
    parser.add_argument("--url", default=f"http://localhost:{config.service_port}")
    parser.add_argument(
        "--event-type",
        default=DEPOSIT_TRANSACTION,
        choices=[DEPOSIT_TRANSACTION, TRANSACTION_CONVERTED],
    )
    parser.add_argument("--pledge-id", required=True)
    parser.add_argument("--eid", default=None)
    parser.add_argument("--amount", default="100")
    parser.add_argument("--currency", default="USD")
    asyncio.run(send(parser.parse_args()))


if __name__ == "__main__":
    main()
