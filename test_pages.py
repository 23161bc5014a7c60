#!/usr/bin/env python3
"""
Unit tests for home page rendering
Run with: python -m pytest test_pages.py -v
"""

import os
import sys
import unittest

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from invoice_request import SubmissionError, SubmissionOutcome
from pages import ERROR_MESSAGES, GENERATE_INVOICE_ACTION, Pages, error_message


class TestErrorMessages(unittest.TestCase):

    def test_every_error_has_message(self):
        for error in SubmissionError:
            with self.subTest(error=error):
                self.assertTrue(error_message(error))

    def test_no_error_has_empty_message(self):
        self.assertEqual(error_message(None), "")


class TestRenderHome(unittest.TestCase):
    """Test the home page for each kind of outcome"""

    def setUp(self):
        self.pages = Pages(node_addr="02abc@node.example.com:9735", max_amount=0.2, cooldown=60)

    def test_empty_form(self):
        html = self.pages.render_home().decode("utf-8")
        self.assertIn(f'action="/?action={GENERATE_INVOICE_ACTION}"', html)
        self.assertIn('name="amt"', html)
        self.assertIn('name="description"', html)
        self.assertIn("02abc@node.example.com:9735", html)
        self.assertNotIn('name="nodeurl"', html)
        self.assertNotIn('class="error"', html)

    def test_payment_request_shown(self):
        outcome = SubmissionOutcome(payment_request="lntdcr1invoice",
                                    form_fields={"amt": "0.1", "description": "tip"})
        html = self.pages.render_home(outcome).decode("utf-8")
        self.assertIn("lntdcr1invoice", html)
        self.assertIn('value="0.1"', html)
        self.assertIn('value="tip"', html)

    def test_amount_error_next_to_field(self):
        outcome = SubmissionOutcome.failed(SubmissionError.AMOUNT_TOO_HIGH, {"amt": "5", "description": ""})
        html = self.pages.render_home(outcome).decode("utf-8")
        self.assertIn(ERROR_MESSAGES[SubmissionError.AMOUNT_TOO_HIGH], html)
        self.assertIn('data-error="amount_too_high"', html)
        self.assertIn('value="5"', html)
        self.assertNotIn('id="submission-error"', html)

    def test_general_error_above_form(self):
        for error in [SubmissionError.RATE_LIMITED, SubmissionError.INVOICE_GENERATION_FAILED,
                      SubmissionError.MALFORMED_UPLOAD]:
            with self.subTest(error=error):
                outcome = SubmissionOutcome.failed(error, {"amt": "0.1"})
                html = self.pages.render_home(outcome).decode("utf-8")
                self.assertIn('id="submission-error"', html)
                self.assertIn(ERROR_MESSAGES[error], html)
                self.assertIn('value="0.1"', html)

    def test_submitted_values_escaped(self):
        outcome = SubmissionOutcome.failed(SubmissionError.AMOUNT_NOT_NUMBER,
                                           {"amt": '"><script>', "description": "<b>hi</b>"})
        html = self.pages.render_home(outcome).decode("utf-8")
        self.assertNotIn("<script>", html)
        self.assertNotIn("<b>hi</b>", html)
        self.assertIn("&lt;b&gt;hi&lt;/b&gt;", html)

    def test_user_node_inputs(self):
        pages = Pages(user_nodes=True)
        outcome = SubmissionOutcome.failed(SubmissionError.NODE_NOT_ALLOWED, {"nodeurl": "evil:1"})
        html = pages.render_home(outcome).decode("utf-8")
        self.assertIn('name="nodeurl"', html)
        self.assertIn('name="tlscert"', html)
        self.assertIn('name="adminmacaroon"', html)
        self.assertIn('value="evil:1"', html)
        self.assertIn(ERROR_MESSAGES[SubmissionError.NODE_NOT_ALLOWED], html)


def run_tests():
    """Run all tests"""
    loader = unittest.TestLoader()
    suite = loader.loadTestsFromModule(sys.modules[__name__])
    runner = unittest.TextTestRunner(verbosity=2)
    result = runner.run(suite)

    return 0 if result.wasSuccessful() else 1


if __name__ == '__main__':
    sys.exit(run_tests())
