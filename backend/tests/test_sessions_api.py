import asyncio
import unittest
import uuid
from decimal import Decimal

from fastapi.testclient import TestClient

from conftest import FakeBillStorage, make_session_factory
from huanale.api.deps import get_bill_storage
from huanale.core.auth import CurrentUser, get_current_user
from huanale.core.config import get_settings
from huanale.core.dependencies import get_db
from huanale.main import app
from huanale.models.ledger import Base
from huanale.services.ledger_store import LedgerStore


class SessionsApiTests(unittest.TestCase):
    def setUp(self):
        get_settings.cache_clear()
        self.engine, self.SessionLocal = make_session_factory()
        self.user = CurrentUser(id=str(uuid.uuid4()))
        self.storage = FakeBillStorage(self.user.id)

        def override_get_db():
            db = self.SessionLocal()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = override_get_db
        app.dependency_overrides[get_current_user] = lambda: self.user
        app.dependency_overrides[get_bill_storage] = lambda: self.storage
        self.client = TestClient(app)

    def tearDown(self):
        self.client.close()
        app.dependency_overrides.clear()
        Base.metadata.drop_all(self.engine)
        self.engine.dispose()

    def _seed(self, user_id: str, *, source="text", amounts=(5,)):
        async def run():
            db = self.SessionLocal()
            try:
                store = LedgerStore(db, user_id)
                session = await store.insert_session(
                    {
                        "source": source,
                        "raw_input": "seed",
                        "record_count": len(amounts),
                        "total_amount": Decimal(sum(amounts)),
                        "currency": "¥",
                    }
                )
                await store.insert_transactions(
                    [
                        {
                            "session_id": session["id"],
                            "title": f"Item {i}",
                            "amount": Decimal(amount),
                            "currency": "¥",
                            "category": "Other",
                            "type": "expense",
                            "source": source,
                        }
                        for i, amount in enumerate(amounts)
                    ]
                )
                return session["id"]
            finally:
                db.close()

        return asyncio.run(run())

    def test_list_sessions_pages_and_scopes_to_caller(self):
        mine = [self._seed(self.user.id) for _ in range(3)]
        self._seed(str(uuid.uuid4()))

        first = self.client.get("/api/v1/sessions", params={"page": 0, "page_size": 2})
        second = self.client.get("/api/v1/sessions", params={"page": 1, "page_size": 2})

        self.assertEqual(first.status_code, 200)
        self.assertEqual(len(first.json()["sessions"]), 2)
        self.assertTrue(first.json()["has_more"])
        self.assertEqual(len(second.json()["sessions"]), 1)
        self.assertFalse(second.json()["has_more"])
        listed = {s["id"] for s in first.json()["sessions"] + second.json()["sessions"]}
        self.assertEqual(listed, set(mine))

    def test_list_sessions_rejects_bad_paging(self):
        resp = self.client.get("/api/v1/sessions", params={"page_size": 0})
        self.assertEqual(resp.status_code, 422)

    def test_session_detail_includes_transactions(self):
        session_id = self._seed(self.user.id, source="voice", amounts=(2, 8))

        resp = self.client.get(f"/api/v1/sessions/{session_id}")

        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(data["id"], session_id)
        self.assertEqual(data["source"], "voice")
        self.assertEqual(data["record_count"], 2)
        self.assertEqual(data["total_amount"], 10)
        self.assertEqual(sorted(t["amount"] for t in data["transactions"]), [2, 8])
        self.assertTrue(all(t["session_id"] == session_id for t in data["transactions"]))

    def test_session_detail_of_other_user_is_not_found(self):
        other = self._seed(str(uuid.uuid4()))

        self.assertEqual(self.client.get(f"/api/v1/sessions/{other}").status_code, 404)
        self.assertEqual(self.client.get("/api/v1/sessions/not-a-uuid").status_code, 404)

    def test_signed_url_for_own_bill(self):
        resp = self.client.post(
            "/api/v1/storage/bills/signed-url",
            json={"storage_path": f"{self.user.id}/receipt.jpg"},
        )

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["expires_in"], 300)
        self.assertIn("receipt.jpg", resp.json()["signed_url"])

    def test_signed_url_rejects_foreign_or_missing_path(self):
        foreign = self.client.post(
            "/api/v1/storage/bills/signed-url",
            json={"storage_path": "someone-else/receipt.jpg"},
        )
        traversal = self.client.post(
            "/api/v1/storage/bills/signed-url",
            json={"storage_path": f"{self.user.id}/../other/receipt.jpg"},
        )
        missing = self.client.post("/api/v1/storage/bills/signed-url", json={})

        self.assertEqual(foreign.status_code, 400)
        self.assertEqual(traversal.status_code, 400)
        self.assertEqual(missing.status_code, 400)

    def test_signed_url_storage_failure_hides_detail(self):
        self.storage.fail = True

        resp = self.client.post(
            "/api/v1/storage/bills/signed-url",
            json={"storage_path": f"{self.user.id}/receipt.jpg"},
        )

        self.assertEqual(resp.status_code, 502)
        self.assertEqual(resp.json()["detail"], "Internal server error")


if __name__ == "__main__":
    unittest.main()
