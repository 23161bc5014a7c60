#!/usr/bin/env python3
import argparse
import json
import logging
import signal
import sys
import threading
import urllib.parse
import uuid
from datetime import datetime
from email import policy
from email.parser import BytesParser
from email.utils import collapse_rfc2231_value
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from threading import Lock

import urllib3

from config import DEFAULT_CONFIG_PATH, ConfigError, load_config, validate_config
from invoice_request import (
    InvoiceRequest,
    InvoiceRequestHandler,
    RateLimitState,
    SubmissionError,
    SubmissionOutcome,
    UserNodeBinder,
)
from lnd_client import LndClient, LndError
from pages import GENERATE_INVOICE_ACTION, Pages

# Configure logging (file handler is added once the config is loaded)
LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'
logging.basicConfig(
    level=logging.INFO,
    format=LOG_FORMAT,
    handlers=[
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)

DEFAULT_MAX_BODY_BYTES = 64 * 1024
# Rejected bodies up to this size are read and dropped so the reply is not lost to a reset
DISCARD_LIMIT = 1024 * 1024

# Global statistics
stats = {
    'requests_total': 0,
    'invoices_created': 0,
    'errors_total': 0,
    'rate_limited': 0,
    'start_time': None
}
stats_lock = Lock()


class MalformedUpload(Exception):
    """Raised when a submitted form cannot be decoded"""

    def __init__(self, message, form_fields=None):
        super().__init__(message)
        self.form_fields = form_fields or {}


def increment_stat(stat_name):
    """Thread-safe statistics increment"""
    with stats_lock:
        stats[stat_name] = stats.get(stat_name, 0) + 1


def stats_snapshot():
    with stats_lock:
        snapshot = stats.copy()
    if snapshot.get('start_time'):
        snapshot['start_time'] = snapshot['start_time'].isoformat()
    return snapshot


def configure_file_logging(log_file):
    """Add a file handler to the root logger, falling back to console only"""
    if not log_file:
        return None
    try:
        file_handler = logging.FileHandler(log_file)
    except PermissionError:
        logger.warning(f"Cannot write to {log_file}, using console logging only")
        return None
    except OSError as e:
        logger.warning(f"Failed to configure file logging: {e}, using console logging only")
        return None
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger().addHandler(file_handler)
    logger.info(f"Logging to {log_file}")
    return file_handler


def _parse_multipart(content_type, body):
    header = f"Content-Type: {content_type}\r\nMIME-Version: 1.0\r\n\r\n".encode("latin-1")
    message = BytesParser(policy=policy.HTTP).parsebytes(header + body)
    if not message.is_multipart():
        raise MalformedUpload("Multipart body has no parts")

    fields, files = {}, {}
    for part in message.iter_parts():
        name = part.get_param("name", header="content-disposition")
        if isinstance(name, tuple):
            name = collapse_rfc2231_value(name)
        if not name:
            continue
        payload = part.get_payload(decode=True) or b""
        if part.get_filename() is not None:
            files[name] = payload
            continue
        try:
            fields[name] = payload.decode(part.get_content_charset() or "utf-8")
        except (LookupError, UnicodeDecodeError) as e:
            raise MalformedUpload(f"Field {name} could not be decoded: {e}") from e
    return fields, files


def parse_form(content_type, body):
    """Split a POST body into text fields and uploaded files"""
    mime_type = (content_type or "").split(";", 1)[0].strip().lower()
    if mime_type == "application/x-www-form-urlencoded":
        try:
            qs = urllib.parse.parse_qs(body.decode("utf-8"), keep_blank_values=True)
        except UnicodeDecodeError as e:
            raise MalformedUpload(f"Form is not UTF-8: {e}") from e
        return {k: v[0] for k, v in qs.items()}, {}
    if mime_type == "multipart/form-data":
        return _parse_multipart(content_type, body)
    raise MalformedUpload(f"Unsupported content type: {content_type or 'none'}")


def build_submission(fields, files, user_nodes=False, remote_addr="-"):
    """Turn decoded form data into an InvoiceRequest"""
    request = InvoiceRequest(
        amount=fields.get("amt", ""),
        description=fields.get("description", ""),
        remote_addr=remote_addr,
    )
    if user_nodes:
        request.node_url = fields.get("nodeurl", "")
        request.tls_cert = files.get("tlscert")
        request.macaroon = files.get("adminmacaroon")
        if not request.tls_cert or not request.macaroon:
            raise MalformedUpload("TLS certificate and macaroon uploads are required",
                                  form_fields=request.form_fields())
    return request


class Handler(BaseHTTPRequestHandler):

    protocol_version = "HTTP/1.1"

    def __init__(self, *args, **kwargs):
        self.request_id = str(uuid.uuid4())[:8]
        super().__init__(*args, **kwargs)

    def log_message(self, format, *args):
        """Override to use custom logger instead of stderr"""
        logger.info(f"[{self.request_id}] {self.address_string()} - {format % args}")

    def do_HEAD(self):
        # Respond with the same headers as GET, but no body
        if urllib.parse.urlparse(self.path).path == "/":
            self.send_response(200)
            self.send_header("Content-Type", "text/html; charset=utf-8")
            self.send_header("Content-Length", str(len(self.server.pages.render_home())))
            self.end_headers()
        else:
            self.send_error(404)

    def do_GET(self):
        increment_stat('requests_total')
        try:
            parsed = urllib.parse.urlparse(self.path)

            # Health check endpoint
            if parsed.path == "/health":
                uptime = 0
                if stats['start_time']:
                    uptime = (datetime.now() - stats['start_time']).total_seconds()
                logger.debug(f"[{self.request_id}] Health check requested")
                self.respond_json({
                    "status": "healthy",
                    "uptime_seconds": uptime,
                    "stats": stats_snapshot()
                })
                return

            if parsed.path == "/":
                self.respond_html(200, self.server.pages.render_home())
                return

            logger.warning(f"[{self.request_id}] Unknown endpoint requested: {parsed.path}")
            increment_stat('errors_total')
            self.send_error(404)

        except Exception as e:
            logger.error(f"[{self.request_id}] Unhandled error in do_GET: {e}", exc_info=True)
            increment_stat('errors_total')
            self.respond_internal_error()

    def do_POST(self):
        increment_stat('requests_total')
        try:
            parsed = urllib.parse.urlparse(self.path)
            if parsed.path != "/":
                logger.warning(f"[{self.request_id}] Unknown endpoint requested: {parsed.path}")
                increment_stat('errors_total')
                self.discard_body()
                self.send_error(404)
                return

            action = urllib.parse.parse_qs(parsed.query).get("action", [""])[0]
            if action != GENERATE_INVOICE_ACTION:
                logger.warning(f"[{self.request_id}] Unknown form action: {action!r}")
                increment_stat('errors_total')
                self.discard_body()
                self.send_error(400, "Unknown action")
                return

            outcome = self.generate_invoice()
            if outcome.ok:
                increment_stat('invoices_created')
            elif outcome.error is SubmissionError.RATE_LIMITED:
                increment_stat('rate_limited')
            else:
                increment_stat('errors_total')

            status = 429 if outcome.error is SubmissionError.RATE_LIMITED else 200
            self.respond_html(status, self.server.pages.render_home(outcome))

        except Exception as e:
            logger.error(f"[{self.request_id}] Unhandled error in do_POST: {e}", exc_info=True)
            increment_stat('errors_total')
            self.respond_internal_error()

    def generate_invoice(self):
        """Decode the submitted form and pass it to the invoice request handler"""
        try:
            request = self.read_submission()
        except MalformedUpload as e:
            logger.warning(f"[{self.request_id}] Malformed submission: {e}")
            return SubmissionOutcome.failed(SubmissionError.MALFORMED_UPLOAD, e.form_fields)

        logger.info(f"[{self.request_id}] Invoice requested for {request.amount!r} DCR")
        return self.server.invoice_handler.submit(request)

    def content_length(self):
        """Declared body size, or None when missing or invalid"""
        try:
            content_length = int(self.headers.get("Content-Length"))
        except (TypeError, ValueError):
            return None
        return content_length if content_length >= 0 else None

    def discard_body(self, content_length=None):
        """Read and drop the request body, or give up the connection if it is too large"""
        if content_length is None:
            content_length = self.content_length()
        if content_length is None or content_length > DISCARD_LIMIT:
            self.close_connection = True
            return
        while content_length > 0:
            chunk = self.rfile.read(min(content_length, 64 * 1024))
            if not chunk:
                break
            content_length -= len(chunk)

    def read_submission(self):
        content_length = self.content_length()
        if content_length is None:
            # Body length unknown, so the connection cannot be reused
            self.close_connection = True
            raise MalformedUpload("Content-Length is missing or invalid")

        if content_length > self.server.max_body_bytes:
            self.discard_body(content_length)
            raise MalformedUpload(f"Body of {content_length} bytes exceeds {self.server.max_body_bytes} bytes")

        body = self.rfile.read(content_length)
        fields, files = parse_form(self.headers.get("Content-Type"), body)
        return build_submission(fields, files, self.server.user_nodes, self.client_address[0])

    def respond_html(self, status, body):
        """Send an HTML page"""
        try:
            self.send_response(status)
            self.send_header("Content-Type", "text/html; charset=utf-8")
            self.send_header("Content-Length", str(len(body)))
            self.send_header("Cache-Control", "no-cache, no-store, must-revalidate")
            if self.close_connection:
                self.send_header("Connection", "close")
            self.end_headers()
            self.wfile.write(body)
        except OSError as e:
            logger.error(f"[{self.request_id}] Error writing response: {e}")

    def respond_json(self, body):
        """Send successful JSON response"""
        try:
            response_body = json.dumps(body).encode('utf-8')
            self.send_response(200)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(response_body)))
            self.send_header("Cache-Control", "no-cache, no-store, must-revalidate")
            self.end_headers()
            self.wfile.write(response_body)
        except OSError as e:
            logger.error(f"[{self.request_id}] Error writing response: {e}")

    def respond_internal_error(self):
        try:
            self.send_error(500)
        except OSError as e:
            logger.error(f"[{self.request_id}] Error writing error response: {e}")


class TippinHTTPServer(ThreadingHTTPServer):
    daemon_threads = True
    allow_reuse_address = True

    def __init__(self, server_address, invoice_handler, pages,
                 max_body_bytes=DEFAULT_MAX_BODY_BYTES, user_nodes=False):
        self.invoice_handler = invoice_handler
        self.pages = pages
        self.max_body_bytes = max_body_bytes
        self.user_nodes = user_nodes
        super().__init__(server_address, Handler)


def build_invoice_handler(cfg):
    """Create the invoice request handler described by the config"""
    invoice_cfg = cfg["invoice"]
    rate_limit = RateLimitState(cooldown=invoice_cfg["cooldown_seconds"])

    if cfg["user_nodes"]["enabled"]:
        binder = UserNodeBinder(
            allowed_nodes=cfg["user_nodes"]["allowed_nodes"],
            timeout=cfg["lnd"]["timeout"],
        )
        return InvoiceRequestHandler(
            rate_limit=rate_limit,
            max_amount=invoice_cfg["max_amount"],
            node_binder=binder,
            charge_failed_attempts=invoice_cfg["charge_failed_attempts"],
        )

    lnd = LndClient.from_config(cfg["lnd"], proxy=cfg["tor"].get("proxy") or None)
    return InvoiceRequestHandler(
        lnd=lnd,
        rate_limit=rate_limit,
        max_amount=invoice_cfg["max_amount"],
        charge_failed_attempts=invoice_cfg["charge_failed_attempts"],
    )


def build_server(cfg, invoice_handler=None, pages=None):
    if invoice_handler is None:
        invoice_handler = build_invoice_handler(cfg)
    if pages is None:
        pages = Pages(
            node_addr=cfg["lnd"].get("node_addr", ""),
            user_nodes=cfg["user_nodes"]["enabled"],
            max_amount=cfg["invoice"]["max_amount"],
            cooldown=cfg["invoice"]["cooldown_seconds"],
        )
    return TippinHTTPServer(
        (cfg["server"]["host"], cfg["server"]["port"]),
        invoice_handler,
        pages,
        max_body_bytes=cfg["server"]["max_body_bytes"],
        user_nodes=cfg["user_nodes"]["enabled"],
    )


def log_security_warnings(cfg):
    lnd = cfg["lnd"]
    if cfg["user_nodes"]["enabled"]:
        if cfg["user_nodes"]["allowed_nodes"]:
            logger.info(f"Visitors may use their own node, limited to: {', '.join(cfg['user_nodes']['allowed_nodes'])}")
        else:
            logger.warning("Visitors may use their own node and no allow-list is configured!")
            logger.warning("The server will dial any address submitted through the form")
        return

    if not lnd.get("tls_cert_path") and not lnd.get("verify_ssl", True):
        if '.onion' in lnd["node"]:
            logger.info("SSL certificate verification disabled for .onion address")
            # Tor already authenticates the onion service
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
        else:
            logger.warning("SSL certificate verification is DISABLED for clearnet node connection!")
            logger.warning("Set 'lnd.tls_cert_path' in the config to verify the node certificate")


def install_signal_handlers(httpd):
    def signal_handler(sig, frame):
        """Handle shutdown signals gracefully"""
        logger.info(f"Received signal {sig}, shutting down gracefully...")
        # shutdown() blocks until serve_forever returns, so it cannot run on the serving thread
        shutdown_thread = threading.Thread(target=httpd.shutdown)
        shutdown_thread.start()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Decred Lightning invoice tip jar")
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH,
                        help="path to the JSON config file (default: %(default)s)")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        logger.error(str(e))
        logger.info("Please copy config.json.example to config.json and configure it")
        return 1
    logger.info("Configuration loaded successfully")

    validation_errors = validate_config(cfg)
    if validation_errors:
        logger.error("Configuration validation failed:")
        for error in validation_errors:
            logger.error(f"  - {error}")
        return 1

    configure_file_logging(cfg["server"].get("log_file"))

    try:
        httpd = build_server(cfg)
    except (LndError, OSError) as e:
        logger.error(f"Failed to start server: {e}")
        return 1

    log_security_warnings(cfg)
    install_signal_handlers(httpd)
    stats['start_time'] = datetime.now()

    host, port = cfg["server"]["host"], cfg["server"]["port"]
    logger.info(f"Starting invoice server on {host}:{port}")
    logger.info(f"Maximum invoice amount: {cfg['invoice']['max_amount']} DCR")
    logger.info(f"One invoice attempt every {cfg['invoice']['cooldown_seconds']} seconds")
    logger.info(f"Health check available at: http://{host}:{port}/health")

    try:
        httpd.serve_forever()
    except KeyboardInterrupt:
        logger.info("Server stopped by user")
    finally:
        httpd.server_close()
        lnd = httpd.invoice_handler.lnd
        if lnd is not None:
            lnd.close()
        logger.info("Shutdown complete")
    return 0


if __name__ == "__main__":
    sys.exit(main())
