"""Tests for the investigator logger helpers."""

import logging
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from investigator.logger import SecretFilter, get_logger, mask_secrets, register_secret, truncate


class TestTruncate:
    def test_short_text_kept_on_one_line(self):
        assert truncate("a\nb") == "a\\nb"

    def test_long_text_reports_length(self):
        assert truncate("x" * 50, max_len=10) == "x" * 10 + "...[50 chars]"

    def test_empty(self):
        assert truncate("") == "(empty)"


class TestSecrets:
    def test_mask_explicit_secrets(self):
        assert mask_secrets("Authorization: abc123xyz", ["abc123xyz"]) == "Authorization: ***"

    def test_filter_masks_registered_values(self):
        register_secret("pat-0123456789", None, "")
        record = logging.LogRecord("investigator.test", logging.INFO, __file__, 1,
                                   "env dump: ADO_PAT=%s", ("pat-0123456789",), None)
        assert SecretFilter().filter(record)
        assert record.getMessage() == "env dump: ADO_PAT=***"

    def test_short_values_are_not_registered(self):
        register_secret("ab")
        assert mask_secrets("abc") == "abc"


class TestGetLogger:
    def test_names_are_namespaced(self):
        assert get_logger("agent").name == "investigator.agent"
        assert get_logger("investigator.mcp_client").name == "investigator.mcp_client"
