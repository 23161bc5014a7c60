#!/usr/bin/env python3
import os

from jinja2 import Environment, FileSystemLoader, StrictUndefined, select_autoescape

from invoice_request import SubmissionError

TEMPLATE_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "templates")
HOME_TEMPLATE = "index.html"

GENERATE_INVOICE_ACTION = "generateinvoice"

ERROR_MESSAGES = {
    SubmissionError.RATE_LIMITED: "Please wait until you can generate a new invoice",
    SubmissionError.AMOUNT_NOT_NUMBER: "Amount must be a number",
    SubmissionError.AMOUNT_NEGATIVE: "Amount must not be negative",
    SubmissionError.AMOUNT_TOO_HIGH: "Invoice amount too high",
    SubmissionError.NODE_NOT_ALLOWED: "This node is not allowed",
    SubmissionError.INVOICE_GENERATION_FAILED: "Error generating invoice",
    SubmissionError.MALFORMED_UPLOAD: "Uploaded form data could not be read",
}

# Form input the error is shown next to; anything else goes above the form
ERROR_FIELDS = {
    SubmissionError.AMOUNT_NOT_NUMBER: "amt",
    SubmissionError.AMOUNT_NEGATIVE: "amt",
    SubmissionError.AMOUNT_TOO_HIGH: "amt",
    SubmissionError.NODE_NOT_ALLOWED: "nodeurl",
}

_missing = set(SubmissionError) - set(ERROR_MESSAGES)
if _missing:
    raise RuntimeError(f"No message for submission errors: {sorted(e.name for e in _missing)}")


def error_message(error):
    if error is None:
        return ""
    return ERROR_MESSAGES[error]


class Pages:
    """Renders the home page for every submission outcome"""

    def __init__(self, template_dir=TEMPLATE_DIR, node_addr="", user_nodes=False,
                 max_amount=None, cooldown=None):
        self.env = Environment(
            loader=FileSystemLoader(template_dir),
            autoescape=select_autoescape(["html"]),
            undefined=StrictUndefined,
        )
        # Compile now so a broken template stops the server at startup
        self.home = self.env.get_template(HOME_TEMPLATE)
        self.node_addr = node_addr
        self.user_nodes = user_nodes
        self.max_amount = max_amount
        self.cooldown = cooldown

    def home_context(self, outcome=None):
        error = outcome.error if outcome is not None else None
        return {
            "node_addr": self.node_addr,
            "user_nodes": self.user_nodes,
            "max_amount": self.max_amount,
            "cooldown": self.cooldown,
            "action": GENERATE_INVOICE_ACTION,
            "form_fields": dict(outcome.form_fields) if outcome is not None else {},
            "error": error.value if error is not None else "",
            "error_message": error_message(error),
            "error_field": ERROR_FIELDS.get(error, "") if error is not None else "",
            "payment_request": (outcome.payment_request or "") if outcome is not None else "",
        }

    def render_home(self, outcome=None):
        """Render the home page, optionally with a submission outcome, as UTF-8"""
        return self.home.render(**self.home_context(outcome)).encode("utf-8")
