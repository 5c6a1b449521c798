from __future__ import annotations

import contextlib
import importlib.util
import io
import unittest
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import MagicMock, patch

SCRIPT_PATH = Path(__file__).resolve().parents[1] / "scripts" / "run_email_tick.py"
NOW = datetime(2026, 10, 19, 12, 30, tzinfo=timezone.utc)


def _load_script():  # type: ignore[no-untyped-def]
    spec = importlib.util.spec_from_file_location("run_email_tick", SCRIPT_PATH)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class RunEmailTickScriptTests(unittest.TestCase):
    def setUp(self) -> None:
        self.script = _load_script()
        self.run_tick = MagicMock(return_value=[])
        patcher = patch.object(self.script, "setup_json_logging")
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_future_instant_is_refused_before_any_claim(self) -> None:
        stderr = io.StringIO()
        with contextlib.redirect_stderr(stderr), self.assertRaises(SystemExit) as ctx:
            self.script.main(["--at", "2026-10-26T12:30:00Z"], run_tick=self.run_tick, clock=lambda: NOW)

        self.assertEqual(ctx.exception.code, 2)
        self.assertIn("later than the current time", stderr.getvalue())
        self.run_tick.assert_not_called()

    def test_past_instant_is_replayed(self) -> None:
        with contextlib.redirect_stdout(io.StringIO()):
            code = self.script.main(["--at", "2026-10-19T12:30:00Z"], run_tick=self.run_tick, clock=lambda: NOW)

        self.assertEqual(code, 0)
        self.run_tick.assert_called_once_with(NOW)

    def test_without_instant_uses_the_current_time(self) -> None:
        with contextlib.redirect_stdout(io.StringIO()):
            self.script.main([], run_tick=self.run_tick, clock=lambda: NOW)

        self.run_tick.assert_called_once_with(None)


if __name__ == "__main__":
    unittest.main()
