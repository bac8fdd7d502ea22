import logging
import tempfile
import unittest
from pathlib import Path

import orjson

from coinflip.core.logger import JsonFormatter, LineFormatter, get_logger, init_logging


def make_record(**extra):
    record = logging.LogRecord("coinflip.solo", logging.WARNING, __file__, 1, "payout %s", ("failed",), None)
    record.__dict__.update(extra)
    return record


class TestFormatters(unittest.TestCase):
    def test_plain_line_has_no_color_codes(self):
        line = LineFormatter(color=False).format(make_record())
        self.assertNotIn("\033[", line)
        self.assertTrue(line.endswith("| WARNING  | coinflip.solo | payout failed"))

    def test_colored_line_wraps_level(self):
        line = LineFormatter().format(make_record())
        self.assertIn("\033[93mWARNING", line)

    def test_json_carries_extra_fields(self):
        payload = orjson.loads(JsonFormatter().format(make_record(round_id="r1", amount=object())))
        self.assertEqual(payload["message"], "payout failed")
        self.assertEqual(payload["level"], "WARNING")
        self.assertEqual(payload["round_id"], "r1")
        self.assertIsInstance(payload["amount"], str)
        self.assertNotIn("args", payload)


class TestInitLogging(unittest.TestCase):
    def tearDown(self):
        init_logging()

    def test_reinit_replaces_handlers(self):
        get_logger("store")
        init_logging(formatter="json")
        root = init_logging(level="DEBUG", formatter="json")

        self.assertEqual(len(root.handlers), 1)
        self.assertIsInstance(root.handlers[0].formatter, JsonFormatter)
        self.assertEqual(root.level, logging.DEBUG)
        self.assertIs(get_logger("store").parent, root)

    def test_file_handler_writes_plain_lines(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "logs" / "app.log"
            root = init_logging(log_to_file=True, log_file_path=path)
            get_logger("payout").info("sent")
            for handler in root.handlers:
                handler.flush()

            text = path.read_text()
            self.assertIn("| coinflip.payout | sent", text)
            self.assertNotIn("\033[", text)
            init_logging()


if __name__ == "__main__":
    unittest.main()
