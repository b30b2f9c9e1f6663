import logging
import tempfile
import unittest
from pathlib import Path

from forex_backend.logging_config import ROOT_LOGGER_NAME, setup_logging


class LoggingConfigTests(unittest.TestCase):
    def setUp(self) -> None:
        self.root_logger = logging.getLogger(ROOT_LOGGER_NAME)
        self.saved_handlers = list(self.root_logger.handlers)
        self.saved_level = self.root_logger.level
        self.root_logger.handlers.clear()

    def tearDown(self) -> None:
        for handler in self.root_logger.handlers:
            handler.close()
        self.root_logger.handlers[:] = self.saved_handlers
        self.root_logger.setLevel(self.saved_level)

    def test_console_handler_attached(self) -> None:
        setup_logging(level="DEBUG", log_file="")

        stream_handlers = [
            handler
            for handler in self.root_logger.handlers
            if isinstance(handler, logging.StreamHandler)
            and not isinstance(handler, logging.FileHandler)
        ]
        self.assertEqual(len(stream_handlers), 1)
        self.assertEqual(self.root_logger.level, logging.DEBUG)

    def test_repeated_setup_does_not_duplicate_handlers(self) -> None:
        setup_logging(level="INFO", log_file="")
        setup_logging(level="INFO", log_file="")

        self.assertEqual(len(self.root_logger.handlers), 1)

    def test_file_handler_captures_child_loggers(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            log_path = Path(tmp) / "logs" / "forex.log"
            setup_logging(level="INFO", log_file=log_path)

            logging.getLogger("forex_backend.rates").warning("Failed to fetch rates for USD")
            for handler in self.root_logger.handlers:
                handler.flush()

            self.assertTrue(log_path.exists())
            content = log_path.read_text(encoding="utf-8")
            self.assertIn("forex_backend.rates", content)
            self.assertIn("Failed to fetch rates for USD", content)
            for handler in self.root_logger.handlers:
                handler.close()
            self.root_logger.handlers.clear()

    def test_unknown_level_name_defaults_to_info(self) -> None:
        setup_logging(level="CHATTY", log_file="")

        self.assertEqual(self.root_logger.level, logging.INFO)


if __name__ == "__main__":
    unittest.main()
