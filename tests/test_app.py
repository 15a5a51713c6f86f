"""HTTP API, driven through FastAPI's TestClient with the lifespan running."""

import os
import time
from unittest import TestCase, mock

from fastapi.testclient import TestClient
from xrpl.wallet import Wallet

from disperse.app import app
from disperse.credentials import SEED_ENV
from disperse.session import SessionSettings

from fakes import FakeNode, addresses, factory

LOCAL = "http://127.0.0.1:5005"


class TestApi(TestCase):
    def setUp(self):
        patcher = mock.patch.dict(os.environ, {}, clear=False)
        patcher.start()
        self.addCleanup(patcher.stop)
        os.environ.pop(SEED_ENV, None)

        self.client = TestClient(app)
        self.client.__enter__()
        self.addCleanup(self.client.__exit__, None, None, None)

        self.node = FakeNode(LOCAL, sequence=20)
        app.state.client_factory = factory(self.node)
        app.state.settings = SessionSettings(base_delay=0)

    def wait_for(self, session_id: str) -> dict:
        for _ in range(200):
            body = self.client.get(f"/sessions/{session_id}").json()
            if body["state"] != "running":
                return body
            time.sleep(0.01)
        self.fail("session did not finish")

    def test_health_without_wallet(self):
        self.assertEqual(self.client.get("/health").json(), {"status": "ok", "wallet": None})

    def test_chains(self):
        names = [c["name"] for c in self.client.get("/chains").json()]
        self.assertIn("XRPL Testnet", names)
        self.assertIn("Local rippled", names)

    def test_no_wallet_is_unavailable(self):
        r = self.client.post("/sessions", json={"chain": "Local rippled", "recipients": addresses(1), "amount": "1"})
        self.assertEqual(r.status_code, 503)

    def test_request_validation(self):
        app.state.wallet = Wallet.create()
        recipients = addresses(2)
        cases = [
            ({"chain": "Local rippled", "recipients": recipients}, 400),
            ({"chain": "Local rippled", "recipients": recipients, "amount": "1", "split": True}, 400),
            ({"chain": "Local rippled", "recipients": recipients, "split": True}, 400),
            ({"chain": "Nowhere", "recipients": recipients, "amount": "1"}, 404),
            ({"chain": "Local rippled", "recipients": ["junk"], "amount": "1"}, 400),
            ({"chain": "Local rippled", "recipients": recipients, "amount": "1", "token": "USD"}, 400),
            ({"chain": "Local rippled", "recipients": recipients, "amount": "-1"}, 422),
        ]
        for body, status in cases:
            with self.subTest(body=body):
                self.assertEqual(self.client.post("/sessions", json=body).status_code, status)
        self.assertEqual(self.node.submitted, [])

    def test_session_runs_to_completion(self):
        app.state.wallet = Wallet.create()
        recipients = addresses(7)
        r = self.client.post("/sessions", json={"chain": "Local rippled", "recipients": recipients, "amount": "2"})
        self.assertEqual(r.status_code, 202)
        body = self.wait_for(r.json()["id"])

        self.assertEqual(body["state"], "done")
        self.assertEqual(body["recipients"], 7)
        summary = body["summary"]
        self.assertEqual(summary["successes"], 7)
        self.assertEqual(summary["total_committed"], "14")
        self.assertEqual(summary["success_rate"], 100.0)
        self.assertEqual([tx["Sequence"] for tx in self.node.sent()], list(range(20, 27)))

    def test_split_with_confirmation(self):
        app.state.wallet = Wallet.create()
        self.node.balance_drops = "4000000"
        r = self.client.post("/sessions", json={
            "chain": "Local rippled", "recipients": addresses(3), "split": True, "confirm": True,
        })
        body = self.wait_for(r.json()["id"])
        self.assertEqual(body["summary"]["amount"], "0.999988")

    def test_failed_session_reports_error(self):
        app.state.wallet = Wallet.create()
        self.node.balance_drops = "1000000"
        r = self.client.post("/sessions", json={"chain": "Local rippled", "recipients": addresses(2), "amount": "5"})
        body = self.wait_for(r.json()["id"])
        self.assertEqual(body["state"], "failed")
        self.assertIn("Insufficient", body["error"])
        self.assertEqual(self.node.submitted, [])

    def test_unknown_session(self):
        self.assertEqual(self.client.get("/sessions/nope").status_code, 404)
        self.assertEqual(self.client.post("/sessions/nope/stop").status_code, 404)
