#!/usr/bin/env python3
import base64
import binascii
import logging
import os
import ssl
import tempfile
from collections import namedtuple

import requests

logger = logging.getLogger(__name__)

ATOMS_PER_COIN = 1e8
DEFAULT_TIMEOUT = 30  # seconds

PEM_CERT_MARKER = b"-----BEGIN CERTIFICATE-----"

AddInvoiceResponse = namedtuple("AddInvoiceResponse", ["payment_request", "add_index", "r_hash"])


class LndError(Exception):
    """Raised when the node cannot be reached or refuses to create an invoice"""


def load_macaroon(path):
    """Read a macaroon file and return it hex encoded"""
    with open(path, 'rb') as f:
        macaroon_bytes = f.read()
    if not macaroon_bytes:
        raise LndError(f"Macaroon file is empty: {path}")
    return macaroon_bytes.hex().upper()


def normalize_endpoint(node):
    """Strip scheme and trailing slashes so 'https://host:port/' becomes 'host:port'"""
    node = (node or "").strip()
    for scheme in ("https://", "http://"):
        if node.lower().startswith(scheme):
            node = node[len(scheme):]
    return node.rstrip("/")


def format_atoms(atoms):
    """Human readable amount, e.g. 10000000 -> '0.1 DCR'"""
    coins = f"{atoms / ATOMS_PER_COIN:.8f}".rstrip("0").rstrip(".")
    return f"{coins} DCR"


def _rhash_hex(r_hash):
    # The REST gateway encodes bytes fields as base64
    if not r_hash:
        return ""
    try:
        return base64.b64decode(r_hash).hex()
    except (binascii.Error, ValueError):
        return str(r_hash)


class LndClient:
    """Minimal client for the dcrlnd REST gateway"""

    def __init__(self, endpoint, macaroon_hex, verify=True, timeout=DEFAULT_TIMEOUT,
                 proxy=None, cert_file=None):
        self.endpoint = normalize_endpoint(endpoint)
        self.macaroon_hex = macaroon_hex
        self.verify = verify
        self.timeout = timeout
        self.proxies = {"https": proxy} if proxy else None
        # Temporary certificate written by from_credentials, removed on close()
        self._cert_file = cert_file

    @classmethod
    def from_credentials(cls, endpoint, tls_cert, macaroon, timeout=DEFAULT_TIMEOUT):
        """Build a client from an uploaded PEM certificate and raw macaroon bytes.

        Raises LndError when either credential cannot be used. Nothing is
        written to disk unless both are valid.
        """
        if not normalize_endpoint(endpoint):
            raise LndError("Node address is required")
        if not tls_cert or PEM_CERT_MARKER not in tls_cert:
            raise LndError("TLS certificate is not a PEM certificate")
        try:
            ssl.create_default_context(cadata=tls_cert.decode("ascii"))
        except (UnicodeDecodeError, ValueError, ssl.SSLError) as e:
            raise LndError(f"Unable to load TLS certificate: {e}") from e
        if not macaroon:
            raise LndError("Macaroon is empty")

        try:
            fd, cert_path = tempfile.mkstemp(prefix="dcrtippin-", suffix=".pem")
        except OSError as e:
            raise LndError(f"Unable to store TLS certificate: {e}") from e
        try:
            with os.fdopen(fd, 'wb') as f:
                f.write(tls_cert)
        except OSError as e:
            os.unlink(cert_path)
            raise LndError(f"Unable to store TLS certificate: {e}") from e
        return cls(endpoint, macaroon.hex().upper(), verify=cert_path,
                   timeout=timeout, cert_file=cert_path)

    @classmethod
    def from_config(cls, lnd_cfg, proxy=None):
        """Build the shared client from the 'lnd' config section"""
        verify = lnd_cfg.get("tls_cert_path") or lnd_cfg.get("verify_ssl", True)
        return cls(
            lnd_cfg["node"],
            load_macaroon(lnd_cfg["macaroon_path"]),
            verify=verify,
            timeout=lnd_cfg.get("timeout", DEFAULT_TIMEOUT),
            proxy=proxy,
        )

    def add_invoice(self, creation_date, value, memo=""):
        """Create an invoice for `value` atoms and return an AddInvoiceResponse"""
        url = f"https://{self.endpoint}/v1/invoices"
        try:
            response = requests.post(
                url,
                headers={"Grpc-Metadata-macaroon": self.macaroon_hex},
                json={
                    "value": value,
                    "memo": memo,
                    "creation_date": creation_date,
                },
                proxies=self.proxies,
                verify=self.verify,
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            raise LndError(f"Request to {self.endpoint} timed out") from e
        except requests.exceptions.ConnectionError as e:
            raise LndError(f"Failed to connect to {self.endpoint}: {e}") from e
        except requests.exceptions.RequestException as e:
            raise LndError(f"Request to {self.endpoint} failed: {e}") from e

        if response.status_code != 200:
            raise LndError(f"Node returned error: {response.status_code} - {response.text}")

        try:
            invoice = response.json()
        except ValueError as e:
            raise LndError(f"Invalid JSON from node: {e}") from e

        if not isinstance(invoice, dict) or not invoice.get("payment_request"):
            raise LndError(f"Invalid invoice response: {invoice}")

        try:
            add_index = int(invoice.get("add_index", 0))
        except (TypeError, ValueError):
            add_index = 0

        return AddInvoiceResponse(
            payment_request=invoice["payment_request"],
            add_index=add_index,
            r_hash=_rhash_hex(invoice.get("r_hash")),
        )

    def close(self):
        if self._cert_file:
            try:
                os.unlink(self._cert_file)
            except FileNotFoundError:
                pass
            self._cert_file = None
