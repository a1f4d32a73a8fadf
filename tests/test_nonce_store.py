from models.request_nonce import RequestNonce
from security.nonce_store import DatabaseNonceStore, MemoryNonceStore, NonceResult


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestMemoryNonceStore:
    def test_second_use_is_duplicate(self):
        store = MemoryNonceStore()
        assert store.check_and_store("n-1", "user:1") is NonceResult.ACCEPTED
        assert store.check_and_store("n-1", "user:2") is NonceResult.DUPLICATE
        assert store.check_and_store("n-2", "user:1") is NonceResult.ACCEPTED

    def test_nonce_reusable_after_ttl(self):
        fake_clock = FakeClock()
        store = MemoryNonceStore(ttl_seconds=300, clock_fn=fake_clock)
        store.check_and_store("n-1")
        fake_clock.now = 299
        assert store.check_and_store("n-1") is NonceResult.DUPLICATE
        fake_clock.now = 300
        assert store.check_and_store("n-1") is NonceResult.ACCEPTED

    def test_bounded_size_evicts_oldest(self):
        store = MemoryNonceStore(max_entries=3)
        for nonce in ("a", "b", "c", "d"):
            store.check_and_store(nonce)
        assert len(store) == 3
        # "a" was evicted, so it is accepted again
        assert store.check_and_store("a") is NonceResult.ACCEPTED
        assert store.check_and_store("d") is NonceResult.DUPLICATE

    def test_full_store_drops_expired_before_live(self):
        fake_clock = FakeClock()
        store = MemoryNonceStore(ttl_seconds=10, max_entries=2, clock_fn=fake_clock)
        store.check_and_store("old")
        fake_clock.now = 5
        store.check_and_store("live")
        fake_clock.now = 11
        store.check_and_store("new")
        assert store.check_and_store("live") is NonceResult.DUPLICATE

    def test_cleanup(self):
        fake_clock = FakeClock()
        store = MemoryNonceStore(ttl_seconds=10, clock_fn=fake_clock)
        store.check_and_store("a")
        store.check_and_store("b")
        fake_clock.now = 10
        assert store.cleanup() == 2
        assert len(store) == 0


class TestDatabaseNonceStore:
    def test_check_and_store(self, app):
        store = DatabaseNonceStore(ttl_seconds=300)
        assert store.check_and_store("n-1", "ip:10.0.0.1") is NonceResult.ACCEPTED
        assert store.check_and_store("n-1", "ip:10.0.0.2") is NonceResult.DUPLICATE
        assert RequestNonce.query.count() == 1

    def test_expired_row_does_not_block(self, app, frozen_clock):
        store = DatabaseNonceStore(ttl_seconds=300)
        store.check_and_store("n-1")
        frozen_clock.advance(seconds=301)
        assert store.check_and_store("n-1") is NonceResult.ACCEPTED

    def test_cleanup(self, app, frozen_clock):
        store = DatabaseNonceStore(ttl_seconds=60)
        store.check_and_store("a")
        frozen_clock.advance(seconds=30)
        store.check_and_store("b")
        frozen_clock.advance(seconds=31)
        assert store.cleanup() == 1
        assert [r.nonce for r in RequestNonce.query.all()] == ["b"]


class TestNonceHeader:
    def test_replayed_nonce_is_rejected(self, customer, business, slot, login):
        client = login(customer)
        body = {
            "business_id": business.id,
            "slot_id": slot.id,
            "customer_name": "Asha",
            "customer_phone": "+919800000001",
        }
        first = client.post("/bookings", json=body, headers={"X-Request-Nonce": "abc-123"})
        assert first.status_code == 201

        replay = client.post("/bookings", json=body, headers={"X-Request-Nonce": "abc-123"})
        assert replay.status_code == 409
        assert replay.get_json()["error"] == "Duplicate request"

    def test_oversized_nonce(self, customer, business, slot, login):
        resp = login(customer).post("/bookings", json={}, headers={"X-Request-Nonce": "x" * 200})
        assert resp.status_code == 400
