"""Test logging configuration and the JSON formatter."""

import json
import logging

from reconcile_engine.core.logging_setup import (
    MASK,
    JsonFormatter,
    SecretRedactionFilter,
    configure_logging,
    redact,
    register_secrets,
)


class TestLogging:
    """Test redaction wiring on the root logger."""

    def test_configure_installs_filter_once(self):
        """Test every root handler gets exactly one redaction filter."""
        configure_logging("debug")
        configure_logging("debug")

        for handler in logging.getLogger().handlers:
            filters = [f for f in handler.filters if isinstance(f, SecretRedactionFilter)]
            assert len(filters) == 1

    def test_longest_secret_masked_first(self):
        """Test overlapping secrets never leave a partial value behind."""
        register_secrets(["abcd", "abcdefgh"])
        assert redact("k=abcdefgh") == f"k={MASK}"

    def test_short_secret_masked_as_token(self):
        """Test values under the length floor are masked only where they stand alone."""
        register_secrets(["x9", "abcdefgh"])
        assert redact("PIN=x9 key=abcdefgh") == f"PIN={MASK} key={MASK}"
        assert redact("image box9x9z:1") == "image box9x9z:1"
        assert redact("'x9'") == f"'{MASK}'"

    def test_json_formatter(self):
        """Test JSON lines carry level, logger and the message."""
        record = logging.LogRecord("reconcile", logging.WARNING, __file__, 1, "drift on %s", ("node-1",), None)
        entry = json.loads(JsonFormatter().format(record))
        assert entry["level"] == "warning"
        assert entry["logger"] == "reconcile"
        assert entry["message"] == "drift on node-1"
