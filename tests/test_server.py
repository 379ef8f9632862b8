import os
import shutil
import tempfile
import unittest
from unittest import mock
from fastapi.testclient import TestClient
from agritrace import server
from agritrace.ledger import InMemoryLedger, LedgerError
from agritrace.registry import BatchRegistry
from agritrace.store import BatchStore

PASSWORD = "s3cret-harvest"
AUTH = {"Authorization": f"Bearer {PASSWORD}"}


class UnavailableLedger:
    def register(self, batch_id, fingerprint):
        raise LedgerError("connection refused")

    def read_fingerprint(self, batch_id):
        raise LedgerError("timed out")


def make_payload(batch_id="B1"):
    return {
        "batch_id": batch_id,
        "product": "rajma",
        "village": {"name": "Sarmoli", "district": "Pithoragarh", "state": "Uttarakhand"},
        "farmers": [{"farmer_name": "A", "age": None}],
    }


class ServerTestCase(unittest.TestCase):
    ledger_factory = InMemoryLedger

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        self.store = BatchStore(os.path.join(self.test_dir, "test_batches.db"))
        self.ledger = self.ledger_factory()
        self.registry = BatchRegistry(self.store, self.ledger)
        self.client = TestClient(server.create_app(self.registry))
        patcher = mock.patch.object(server, "ADMIN_PASSWORD", PASSWORD)
        patcher.start()
        self.addCleanup(patcher.stop)

    def tearDown(self):
        shutil.rmtree(self.test_dir)


class TestAdmin(ServerTestCase):
    def test_verify_password(self):
        self.assertEqual(
            self.client.post("/api/admin/verify-password", json={"password": PASSWORD}).json(),
            {"valid": True}
        )
        resp = self.client.post("/api/admin/verify-password", json={"password": "nope"})
        self.assertEqual(resp.status_code, 401)

    def test_create_requires_auth(self):
        resp = self.client.post("/api/admin/batches", json=make_payload())
        self.assertEqual(resp.status_code, 401)
        resp = self.client.post("/api/admin/batches", json=make_payload(),
                                headers={"Authorization": "Bearer wrong"})
        self.assertEqual(resp.status_code, 403)
        self.assertIsNone(self.store.get("B1"))

    def test_create_batch(self):
        resp = self.client.post("/api/admin/batches", json=make_payload(), headers=AUTH)
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertTrue(body["success"])
        self.assertEqual(body["state"], "anchored")
        self.assertRegex(body["batchHash"], r"^0x[0-9a-f]{64}$")
        self.assertEqual(body["batch"]["batch_hash"], body["batchHash"])
        self.assertEqual(body["blockchain"]["txHash"], body["batch"]["blockchain_tx_hash"])
        self.assertNotIn("warning", body)

    def test_create_validation_error(self):
        payload = make_payload()
        del payload["product"]
        resp = self.client.post("/api/admin/batches", json=payload, headers=AUTH)
        self.assertEqual(resp.status_code, 400)
        self.assertIn("product", resp.json()["detail"])

    def test_create_non_string_batch_id(self):
        resp = self.client.post("/api/admin/batches", json=make_payload(batch_id=["x"]), headers=AUTH)
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(self.store.all_records(), [])

    def test_create_nan_rejected(self):
        body = (
            '{"batch_id": "B1", "product": "rajma", "village": {"name": "Sarmoli"}, '
            '"farmers": [{"farmer_name": "A", "age": NaN}]}'
        )
        headers = dict(AUTH, **{"Content-Type": "application/json"})
        resp = self.client.post("/api/admin/batches", content=body, headers=headers)
        self.assertEqual(resp.status_code, 400)
        self.assertIsNone(self.store.get("B1"))

    def test_create_duplicate(self):
        self.client.post("/api/admin/batches", json=make_payload(), headers=AUTH)
        resp = self.client.post("/api/admin/batches", json=make_payload(), headers=AUTH)
        self.assertEqual(resp.status_code, 409)

    def test_anchor_unknown(self):
        resp = self.client.post("/api/admin/batches/nope/anchor", headers=AUTH)
        self.assertEqual(resp.status_code, 404)


class TestLedgerDown(ServerTestCase):
    ledger_factory = UnavailableLedger

    def test_create_returns_warning(self):
        resp = self.client.post("/api/admin/batches", json=make_payload(), headers=AUTH)
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertTrue(body["success"])
        self.assertEqual(body["state"], "registered_local")
        self.assertEqual(body["warning"], "Batch created but blockchain registration failed")
        self.assertEqual(body["blockchainError"], "connection refused")
        self.assertNotIn("blockchain", body)
        self.assertIsNotNone(self.store.get("B1"))

    def test_verify_reports_failure(self):
        self.client.post("/api/admin/batches", json=make_payload(), headers=AUTH)
        body = self.client.post("/api/verify/B1").json()
        self.assertFalse(body["verified"])
        self.assertEqual(body["status"], "verification_failed")
        self.assertEqual(body["reason"], "timed out")


class TestPublic(ServerTestCase):
    def setUp(self):
        super().setUp()
        self.created = self.client.post(
            "/api/admin/batches", json=make_payload(), headers=AUTH
        ).json()

    def test_get_batch_verified(self):
        body = self.client.get("/api/batches/B1").json()
        self.assertEqual(body["batch"]["batch_id"], "B1")
        self.assertEqual(body["verification"], {
            "status": "verified",
            "blockchain_hash": self.created["batchHash"],
            "current_hash": self.created["batchHash"],
        })

    def test_get_batch_tampered(self):
        record = self.store.get("B1")
        record["farmers"][0]["farmer_name"] = "B"
        self.store.put("B1", record)

        verification = self.client.get("/api/batches/B1").json()["verification"]
        self.assertEqual(verification["status"], "tampered")
        self.assertEqual(verification["blockchain_hash"], self.created["batchHash"])
        self.assertNotEqual(verification["current_hash"], self.created["batchHash"])

        body = self.client.post("/api/verify/B1").json()
        self.assertFalse(body["verified"])
        self.assertEqual(body["status"], "tampered")

    def test_get_batch_missing(self):
        self.assertEqual(self.client.get("/api/batches/nope").status_code, 404)
        self.assertEqual(self.client.post("/api/verify/nope").status_code, 404)

    def test_verify(self):
        body = self.client.post("/api/verify/B1").json()
        self.assertTrue(body["verified"])
        self.assertEqual(body["status"], "verified")
        self.assertEqual(body["registrar"], self.ledger.submitter_address)

    def test_list(self):
        body = self.client.get("/api/batches").json()
        self.assertEqual(body["count"], 1)
        self.assertEqual(body["batches"][0]["batch_id"], "B1")

    def test_search(self):
        self.assertEqual(self.client.get("/api/search", params={"q": "  "}).status_code, 400)
        body = self.client.get("/api/search", params={"q": "sarmoli"}).json()
        self.assertEqual(body["count"], 1)
        self.assertEqual(body["results"][0]["batch_id"], "B1")

    def test_stats(self):
        body = self.client.get("/api/stats").json()
        self.assertEqual(body["dashboard"]["total_batches"], 1)
        self.assertEqual(body["dashboard"]["verified_batches"], 1)

    def test_health(self):
        body = self.client.get("/health").json()
        self.assertEqual(body["status"], "healthy")
        self.assertEqual(body["database"], "connected")
        self.assertEqual(body["blockchain"], "configured")


class TestBuildLedger(unittest.TestCase):
    def test_memory_backend(self):
        with mock.patch.object(server, "LEDGER_BACKEND", "memory"):
            self.assertIsInstance(server.build_ledger(), InMemoryLedger)

    def test_disabled(self):
        with mock.patch.object(server, "LEDGER_BACKEND", "none"):
            self.assertIsNone(server.build_ledger())
        with mock.patch.object(server, "LEDGER_BACKEND", "web3"), \
                mock.patch.object(server, "CONTRACT_ADDRESS", None):
            self.assertIsNone(server.build_ledger())

    def test_unknown_backend(self):
        with mock.patch.object(server, "LEDGER_BACKEND", "carrier-pigeon"), \
                mock.patch.object(server, "CONTRACT_ADDRESS", "0x" + "12" * 20):
            with self.assertRaises(ValueError):
                server.build_ledger()


if __name__ == '__main__':
    unittest.main()
