#!/usr/bin/env python3
"""Admission and validation of invoice requests submitted through the home page.

A submission passes through a fixed sequence: the process-wide cooldown is
checked and consumed, the amount is parsed and bounded, the node to talk to
is chosen, and finally the node is asked for an invoice. The first failing
step decides the outcome; no step raises past `InvoiceRequestHandler.submit`.
"""
import logging
import math
import re
import threading
import time
from collections import namedtuple
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional

from lnd_client import ATOMS_PER_COIN, DEFAULT_TIMEOUT, LndClient, LndError, format_atoms, normalize_endpoint

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN = 60  # seconds between invoice generation attempts
DEFAULT_MAX_AMOUNT = 0.2  # DCR

AMOUNT_PATTERN = re.compile(
    r"[+-]?(?:(?:[0-9]+\.?[0-9]*|\.[0-9]+)(?:[eE][+-]?[0-9]+)?|inf|infinity|nan)\Z",
    re.IGNORECASE,
)


class SubmissionError(Enum):
    RATE_LIMITED = "rate_limited"
    AMOUNT_NOT_NUMBER = "amount_not_number"
    AMOUNT_NEGATIVE = "amount_negative"
    AMOUNT_TOO_HIGH = "amount_too_high"
    NODE_NOT_ALLOWED = "node_not_allowed"
    INVOICE_GENERATION_FAILED = "invoice_generation_failed"
    MALFORMED_UPLOAD = "malformed_upload"


class NodeNotAllowed(Exception):
    """Raised when a user supplied node is not on the allow-list"""


@dataclass
class InvoiceRequest:
    amount: str
    description: str = ""
    node_url: Optional[str] = None
    tls_cert: Optional[bytes] = None
    macaroon: Optional[bytes] = None
    remote_addr: str = "-"

    def form_fields(self) -> Dict[str, str]:
        """Submitted text fields, keyed by their form input names"""
        return {
            "amt": self.amount or "",
            "description": self.description or "",
            "nodeurl": self.node_url or "",
        }


@dataclass
class SubmissionOutcome:
    payment_request: Optional[str] = None
    error: Optional[SubmissionError] = None
    form_fields: Dict[str, str] = field(default_factory=dict)
    add_index: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.error is None and bool(self.payment_request)

    @classmethod
    def failed(cls, error, form_fields):
        return cls(error=error, form_fields=dict(form_fields))


Attempt = namedtuple("Attempt", ["started_at", "previous"])


class RateLimitState:
    """Cooldown shared by every invoice generation attempt in the process.

    The check and the update of `last_attempt_at` happen under one lock so
    two concurrent submissions can never both be admitted inside the same
    cooldown window.
    """

    def __init__(self, cooldown=DEFAULT_COOLDOWN, clock=time.monotonic):
        self.cooldown = cooldown
        self.clock = clock
        # Monotonic readings may start near zero, the first attempt must still pass
        self.last_attempt_at = -float(cooldown)
        self._lock = threading.Lock()

    def try_acquire(self):
        """Record a new attempt and return it, or None while cooling down"""
        with self._lock:
            now = self.clock()
            if now - self.last_attempt_at < self.cooldown:
                return None
            attempt = Attempt(started_at=now, previous=self.last_attempt_at)
            self.last_attempt_at = now
            return attempt

    def refund(self, attempt):
        """Give back a failed attempt unless a newer one was recorded since"""
        with self._lock:
            if self.last_attempt_at == attempt.started_at:
                self.last_attempt_at = attempt.previous

    def seconds_remaining(self):
        with self._lock:
            return max(0.0, self.cooldown - (self.clock() - self.last_attempt_at))


class UserNodeBinder:
    """Connects to a node chosen by the visitor, restricted to an allow-list.

    An empty allow-list accepts any node.
    """

    def __init__(self, allowed_nodes=(), timeout=DEFAULT_TIMEOUT, client_factory=None):
        self.allowed_nodes = {normalize_endpoint(n).lower() for n in allowed_nodes if n}
        self.timeout = timeout
        self.client_factory = client_factory or LndClient.from_credentials

    def is_allowed(self, node_url):
        if not self.allowed_nodes:
            return True
        return normalize_endpoint(node_url).lower() in self.allowed_nodes

    def bind(self, node_url, tls_cert, macaroon):
        if not self.is_allowed(node_url):
            raise NodeNotAllowed(normalize_endpoint(node_url))
        return self.client_factory(node_url, tls_cert, macaroon, timeout=self.timeout)


def parse_amount(amount):
    """Parse a DCR amount, returning None for anything that is not a number.

    Only plain ASCII decimal or exponent notation is accepted, plus the
    special values inf/infinity. Whitespace, digit separators and non-ASCII
    digits are rejected even though float() would take them.
    """
    if not isinstance(amount, str) or not AMOUNT_PATTERN.match(amount):
        return None
    value = float(amount)
    if math.isnan(value):
        return None
    return value


def to_atoms(amount):
    """Convert DCR to atoms, truncating toward zero"""
    return int(amount * ATOMS_PER_COIN)


class InvoiceRequestHandler:
    """Decides whether a submitted form leads to an invoice and creates it.

    `lnd` is the shared client for the operator's node. When `node_binder`
    is given, every request instead brings its own node credentials and a
    fresh client is built for it; the shared client is never replaced.
    """

    def __init__(self, lnd=None, rate_limit=None, max_amount=DEFAULT_MAX_AMOUNT,
                 node_binder=None, charge_failed_attempts=True, clock=time.time):
        if lnd is None and node_binder is None:
            raise ValueError("Either a node client or a node binder is required")
        self.lnd = lnd
        self.rate_limit = rate_limit if rate_limit is not None else RateLimitState()
        self.max_amount = max_amount
        self.node_binder = node_binder
        self.charge_failed_attempts = charge_failed_attempts
        self.clock = clock

    def submit(self, request):
        form_fields = request.form_fields()

        attempt = self.rate_limit.try_acquire()
        if attempt is None:
            logger.info(f"Invoice request from {request.remote_addr} rejected, cooldown has "
                        f"{self.rate_limit.seconds_remaining():.0f}s left")
            return SubmissionOutcome.failed(SubmissionError.RATE_LIMITED, form_fields)

        outcome = self._generate(request, form_fields)
        if outcome.error is not None and not self.charge_failed_attempts:
            self.rate_limit.refund(attempt)
        return outcome

    def _generate(self, request, form_fields):
        amount = parse_amount(request.amount)
        if amount is None:
            return SubmissionOutcome.failed(SubmissionError.AMOUNT_NOT_NUMBER, form_fields)
        if amount < 0:
            return SubmissionOutcome.failed(SubmissionError.AMOUNT_NEGATIVE, form_fields)
        if amount > self.max_amount:
            logger.warning(f"Attempt to generate high value invoice ({amount:f}) from {request.remote_addr}")
            return SubmissionOutcome.failed(SubmissionError.AMOUNT_TOO_HIGH, form_fields)
        atoms = to_atoms(amount)

        client = self.lnd
        if self.node_binder is not None:
            try:
                client = self.node_binder.bind(request.node_url, request.tls_cert, request.macaroon)
            except NodeNotAllowed as e:
                logger.warning(f"Node {e} requested by {request.remote_addr} is not allowed")
                return SubmissionOutcome.failed(SubmissionError.NODE_NOT_ALLOWED, form_fields)
            except LndError as e:
                logger.error(f"Generate invoice failed: {e}")
                return SubmissionOutcome.failed(SubmissionError.INVOICE_GENERATION_FAILED, form_fields)

        try:
            invoice = client.add_invoice(
                creation_date=int(self.clock()),
                value=atoms,
                memo=request.description or "",
            )
        except LndError as e:
            logger.error(f"Generate invoice failed: {e}")
            return SubmissionOutcome.failed(SubmissionError.INVOICE_GENERATION_FAILED, form_fields)
        finally:
            if client is not self.lnd:
                client.close()

        logger.info(f"Generated invoice #{invoice.add_index} for {format_atoms(atoms)} rhash={invoice.r_hash}")
        return SubmissionOutcome(
            payment_request=invoice.payment_request,
            form_fields=dict(form_fields),
            add_index=invoice.add_index,
        )
