"""x402 payment gate.

The gate only checks that a payment proof is *present*. Whether the proof is
valid is decided by a ``PaymentVerifier`` supplied by the deployment.
"""

import logging
import os
import time
from dataclasses import dataclass
from typing import Mapping, Optional

from .models import Challenge, PaymentRequirements

BASE_URL = os.environ.get("SCHEDOPUTER_BASE_URL", "http://localhost:8000").rstrip("/")
RESOURCE_PATH = "/x402/solana/schedoputer"
RESOURCE_HEADER = "x402-resource"

NETWORK = os.environ.get("X402_NETWORK", "solana")
ASSET = os.environ.get("X402_ASSET", "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v")
PAY_TO = os.environ.get("X402_PAY_TO", "")
PRICE_MINOR = os.environ.get("X402_PRICE_MINOR", "10000")  # 0.01 USDC
MAX_TIMEOUT_SEC = int(os.environ.get("X402_MAX_TIMEOUT_SEC", "60"))

PROOF_HEADERS = ("authorization", "x-payment", "x-payment-signature")

_OUTPUT_SCHEMA = {
    "input": {
        "type": "http",
        "method": "POST",
        "bodyType": "json",
        "bodyFields": {
            "prompt": {"type": "string", "required": True, "description": "Workflow input"},
            "schedule_hhmm": {
                "type": "string",
                "required": True,
                "description": "Delay before the job starts, as HH:MM",
            },
        },
    },
    "output": {
        "success": {"type": "boolean"},
        "jobId": {"type": "string"},
        "scheduledFor": {"type": "string", "format": "date-time"},
        "statusUrl": {"type": "string"},
    },
}


def resource_url() -> str:
    return f"{BASE_URL}{RESOURCE_PATH}"


def _minor_to_amount(minor: str) -> float:
    # USDC has 6 decimals
    return int(minor) / 1_000_000


def build_challenge(resource: Optional[str] = None) -> Challenge:
    resource = resource or resource_url()
    return Challenge(
        x402Version=1,
        accepts=[
            PaymentRequirements(
                network=NETWORK,
                asset=ASSET,
                maxAmountRequired=PRICE_MINOR,
                payTo=PAY_TO,
                resource=resource,
                maxTimeoutSeconds=MAX_TIMEOUT_SEC,
                description="Schedoputer AI Workflow",
                outputSchema=_OUTPUT_SCHEMA,
                extra={
                    "pricing": {
                        "amount": _minor_to_amount(PRICE_MINOR),
                        "currency": "USDC",
                        "network": NETWORK.capitalize(),
                    },
                    "serviceName": "Schedoputer",
                },
            )
        ],
    )


@dataclass(frozen=True)
class Authorized:
    proof: str
    header: str


@dataclass(frozen=True)
class PaymentRequired:
    challenge: Challenge
    resource: str


class PaymentVerifier:
    """Decides whether a presented proof is acceptable."""

    def verify(self, proof: str, resource: str) -> bool:
        return bool(proof.strip())


def find_proof(headers: Mapping[str, str]) -> Optional[Authorized]:
    lowered = {k.lower(): v for k, v in headers.items()}
    for name in PROOF_HEADERS:
        value = lowered.get(name)
        if value:
            return Authorized(proof=value, header=name)
    return None


class PaymentGate:
    def __init__(self, verifier: Optional[PaymentVerifier] = None, resource: Optional[str] = None):
        self.verifier = verifier or PaymentVerifier()
        self.resource = resource or resource_url()

    def challenge(self) -> PaymentRequired:
        return PaymentRequired(challenge=build_challenge(self.resource), resource=self.resource)

    def evaluate(self, headers: Mapping[str, str]):
        """Return ``Authorized`` or ``PaymentRequired`` for the request headers."""
        authorized = find_proof(headers)
        if authorized is None:
            logging.info("payment: no proof header at=%d resource=%s", int(time.time()), self.resource)
            return self.challenge()

        if not self.verifier.verify(authorized.proof, self.resource):
            logging.info(
                "payment: proof in %s rejected at=%d resource=%s",
                authorized.header,
                int(time.time()),
                self.resource,
            )
            return self.challenge()

        logging.info(
            "payment: proof in %s accepted at=%d resource=%s",
            authorized.header,
            int(time.time()),
            self.resource,
        )
        return authorized
