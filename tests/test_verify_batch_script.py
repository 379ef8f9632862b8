import importlib.util
import io
import json
import os
import shutil
import tempfile
import unittest
from contextlib import redirect_stdout
from agritrace.fingerprint import ZERO_FINGERPRINT, fingerprint

SCRIPT = os.path.join(os.path.dirname(__file__), os.pardir, "scripts", "verify_batch.py")


def load_script():
    spec = importlib.util.spec_from_file_location("verify_batch", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class TestVerifyBatchScript(unittest.TestCase):
    def setUp(self):
        self.script = load_script()
        self.test_dir = tempfile.mkdtemp()
        self.record = {
            "batch_id": "B1",
            "product": "rajma",
            "village": {"name": "X"},
            "farmers": [{"farmer_name": "A", "age": None}],
        }
        self.path = os.path.join(self.test_dir, "batch.json")
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(self.record, f)

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def run_script(self, *args):
        out = io.StringIO()
        with redirect_stdout(out):
            code = self.script.main(["--record", self.path, *args])
        return code, out.getvalue()

    def test_prints_fingerprint(self):
        code, out = self.run_script("--canonical")
        self.assertEqual(code, 0)
        self.assertIn(fingerprint(self.record), out)
        self.assertIn('{"batch_id":"B1","farmers":[{"farmer_name":"A"}]', out)

    def test_verified(self):
        code, out = self.run_script("--expected", fingerprint(self.record))
        self.assertEqual(code, 0)
        self.assertIn("VERIFIED", out)

    def test_tampered(self):
        code, out = self.run_script("--expected", "0x" + "ab" * 32)
        self.assertEqual(code, 1)
        self.assertIn("TAMPERED", out)

    def test_not_registered(self):
        code, out = self.run_script("--expected", ZERO_FINGERPRINT)
        self.assertEqual(code, 1)
        self.assertIn("NOT REGISTERED", out)

    def test_unreadable_record(self):
        out = io.StringIO()
        with redirect_stdout(out):
            code = self.script.main(["--record", os.path.join(self.test_dir, "missing.json")])
        self.assertEqual(code, 1)
        self.assertIn("Error loading record", out.getvalue())


if __name__ == '__main__':
    unittest.main()
