"""
Unit tests for logging configuration.
"""

import logging

from shared.logging import ROOT_LOGGER, configure_logging


class TestConfigureLogging:
    """Test cases for configure_logging."""

    def test_level_applies_to_component_loggers(self):
        configure_logging("client-sync", "warning")
        try:
            assert logging.getLogger(ROOT_LOGGER).level == logging.WARNING
            assert logging.getLogger("sync.coalescer").getEffectiveLevel() == logging.WARNING
        finally:
            configure_logging("client-sync", "info")

        assert logging.getLogger("sync.cache.store").getEffectiveLevel() == logging.INFO
