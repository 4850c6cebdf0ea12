import argparse
import asyncio
import json
import os
import signal
import sys
import tempfile
import unittest
from pathlib import Path

from tokentrack import cli


@unittest.skipIf(sys.platform == "win32", "signal handlers need a Unix event loop")
class RunTrackerTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        root = Path(self._tmp.name)
        self.state_path = root / ".claude.json"
        self.state_path.write_text(json.dumps({"projects": {"/work/alpha": {"lastSessionId": "s1"}}}))
        self.args = argparse.Namespace(
            state=str(self.state_path),
            db=str(root / "tokens.db"),
            delta_policy=None,
            seed_from_store=False,
            debug=False,
        )

    def tearDown(self) -> None:
        self._tmp.cleanup()

    async def test_repeated_sigterm_stops_once_and_exits_cleanly(self) -> None:
        runner = asyncio.create_task(cli._run_tracker(self.args))
        await asyncio.sleep(0.3)
        self.assertFalse(runner.done())

        os.kill(os.getpid(), signal.SIGTERM)
        os.kill(os.getpid(), signal.SIGTERM)

        exit_code = await asyncio.wait_for(runner, timeout=5)
        self.assertEqual(exit_code, 0)

    def test_parser_rejects_unknown_delta_policy(self) -> None:
        with self.assertRaises(SystemExit):
            cli.main(["start", "--delta-policy", "signed"])


if __name__ == "__main__":
    unittest.main()
