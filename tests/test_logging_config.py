import json
import logging
import unittest

from calhook.logging_config import configure_logging


class LoggingConfigTests(unittest.TestCase):
    def setUp(self) -> None:
        root = logging.getLogger()
        self._saved = (root.level, list(root.handlers))

    def tearDown(self) -> None:
        root = logging.getLogger()
        for handler in list(root.handlers):
            root.removeHandler(handler)
        level, handlers = self._saved
        root.setLevel(level)
        for handler in handlers:
            root.addHandler(handler)

    def test_invalid_level_rejected(self) -> None:
        with self.assertRaises(ValueError):
            configure_logging("LOUD")

    def test_json_records_use_renamed_fields(self) -> None:
        configure_logging("debug")
        root = logging.getLogger()
        self.assertEqual(len(root.handlers), 1)
        record = logging.LogRecord("calhook.test", logging.INFO, __file__, 1, "watch renewed", None, None)
        data = json.loads(root.handlers[0].format(record))
        self.assertEqual(data["level"], "INFO")
        self.assertEqual(data["logger"], "calhook.test")
        self.assertEqual(data["message"], "watch renewed")


if __name__ == "__main__":
    unittest.main()
