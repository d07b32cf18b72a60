"""
Tests for storage backends.

Tests:
- Conditional inserts and compare-and-swap in MemoryStorage
- Cursor pagination
- JSONFileStorage persistence, atomic writes and bank account encryption
- In-memory state restored when a file write fails
- Backend selection from the environment
"""

import json
import os
import sys
import threading
from datetime import date, timedelta
from decimal import Decimal

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from encryption import FieldCipher, is_encrypted
from profit_errors import ValidationError
from profit_models import (
    ClaimStatus,
    CompletedState,
    DistributionStatus,
    Holding,
    PaymentDetails,
    Period,
    ProcessingState,
    ProfitClaim,
    ProfitDistribution,
    make_claim_id,
    utc_now,
)
from storage import StorageError, get_storage_backend
from storage.base import StorageReadError, StorageWriteError, decode_cursor, encode_cursor
from storage.json_file import JSONFileStorage
from storage.memory import MemoryStorage

BASE_TIME = utc_now()


def make_distribution(distribution_id="dist_a", project_id="proj-1", quarter=1, offset=0):
    return ProfitDistribution(
        distribution_id=distribution_id,
        project_id=project_id,
        period=Period(date(2024, 1, 1), date(2024, 3, 31), quarter, 2024),
        total_profit=1_000_000,
        platform_fee=50_000,
        distributed_profit=950_000,
        profit_per_token=Decimal("4.75"),
        total_circulating_tokens=2000,
        admin_id="admin-1",
        holder_snapshot=(Holding("user-1", 1000), Holding("user-2", 1000)),
        created_at=BASE_TIME + timedelta(seconds=offset),
    )


def make_claim(distribution_id="dist_a", user_id="user-1", offset=0):
    return ProfitClaim(
        claim_id=make_claim_id(distribution_id, user_id),
        user_id=user_id,
        project_id="proj-1",
        distribution_id=distribution_id,
        token_amount=1000,
        claimable_amount=475_000,
        created_at=BASE_TIME + timedelta(seconds=offset),
    )


def processing(claim, payment_id="PAY-1", account="1234567890"):
    return claim.with_state(
        ProcessingState(
            started_at=utc_now(),
            payment=PaymentDetails(payment_id, account, utc_now()),
        )
    )


class TestDistributionWrites:
    """Insert-if-absent and conditional update."""

    def test_insert_if_absent(self):
        store = MemoryStorage()
        first = make_distribution("dist_a")

        assert store.insert_distribution_if_absent(first) is None
        existing = store.insert_distribution_if_absent(make_distribution("dist_b"))

        assert existing.distribution_id == "dist_a"
        assert store.get_distribution("dist_b") is None
        assert store.find_distribution_by_period("proj-1", 1, 2024).distribution_id == "dist_a"

    def test_concurrent_inserts_single_winner(self):
        store = MemoryStorage()
        winners = []
        barrier = threading.Barrier(10)

        def attempt(i):
            barrier.wait()
            if store.insert_distribution_if_absent(make_distribution(f"dist_{i}")) is None:
                winners.append(i)

        threads = [threading.Thread(target=attempt, args=(i,)) for i in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(winners) == 1
        assert len(store.list_distributions().items) == 1

    def test_update_if_matches(self):
        store = MemoryStorage()
        distribution = make_distribution()
        store.insert_distribution_if_absent(distribution)
        settled = distribution.with_settlement("TRX-1")

        assert store.update_distribution_if(distribution, settled) is True
        assert store.update_distribution_if(distribution, distribution.with_settlement("TRX-2")) is False
        assert store.get_distribution("dist_a").settlement_reference == "TRX-1"


class TestClaimWrites:
    """Upsert and compare-and-swap."""

    def test_upsert_returns_existing(self):
        store = MemoryStorage()
        claim = make_claim()

        assert store.upsert_claim(claim) is claim
        again = make_claim()
        assert store.upsert_claim(again) is claim

    def test_cas_requires_status_and_payment(self):
        store = MemoryStorage()
        claim = store.upsert_claim(make_claim())
        in_flight = processing(claim, "PAY-1")

        assert store.compare_and_swap_claim(claim, in_flight) is True
        # Stale expectation: still thinks the claim is pending
        assert store.compare_and_swap_claim(claim, processing(claim, "PAY-2")) is False

        wrong_payment = processing(claim, "PAY-9")
        completed = in_flight.with_state(CompletedState(475_000, utc_now(), in_flight.payment))
        assert store.compare_and_swap_claim(wrong_payment, completed) is False
        assert store.compare_and_swap_claim(in_flight, completed) is True
        assert store.get_claim(claim.claim_id).status == ClaimStatus.COMPLETED

    def test_cas_unknown_claim(self):
        store = MemoryStorage()
        claim = make_claim()

        assert store.compare_and_swap_claim(claim, processing(claim)) is False

    def test_find_by_payment_id(self):
        store = MemoryStorage()
        claim = store.upsert_claim(make_claim())
        store.compare_and_swap_claim(claim, processing(claim, "PAY-42"))

        assert store.find_claim_by_payment_id("PAY-42").claim_id == claim.claim_id
        assert store.find_claim_by_payment_id("PAY-0") is None


class TestPagination:
    """Cursor pagination ordered by (created_at, id)."""

    def test_pages_cover_everything_once(self):
        store = MemoryStorage()
        for i in range(7):
            store.upsert_claim(make_claim(user_id=f"user-{i}", offset=i))

        seen, cursor = [], None
        while True:
            page = store.list_claims(limit=3, cursor=cursor)
            seen.extend(c.user_id for c in page.items)
            cursor = page.next_cursor
            if cursor is None:
                break

        assert seen == [f"user-{i}" for i in range(7)]

    def test_ties_on_created_at_ordered_by_id(self):
        store = MemoryStorage()
        for user in ("user-c", "user-a", "user-b"):
            store.upsert_claim(make_claim(user_id=user))

        first = store.list_claims(limit=2)
        second = store.list_claims(limit=2, cursor=first.next_cursor)

        assert [c.user_id for c in first.items] == ["user-a", "user-b"]
        assert [c.user_id for c in second.items] == ["user-c"]

    def test_exact_page_has_no_cursor(self):
        store = MemoryStorage()
        for i in range(3):
            store.upsert_claim(make_claim(user_id=f"user-{i}", offset=i))

        assert store.list_claims(limit=3).next_cursor is None

    def test_filters(self):
        store = MemoryStorage()
        store.upsert_claim(make_claim("dist_a", "user-1"))
        store.upsert_claim(make_claim("dist_b", "user-1"))
        store.upsert_claim(make_claim("dist_b", "user-2"))

        assert len(store.list_claims(user_id="user-1").items) == 2
        assert len(store.list_claims(distribution_id="dist_b").items) == 2
        assert store.list_claims(status=ClaimStatus.COMPLETED).items == []

    def test_cursor_round_trip(self):
        created_at, record_id = decode_cursor(encode_cursor(BASE_TIME, "dist_x"))

        assert created_at == BASE_TIME
        assert record_id == "dist_x"

    @pytest.mark.parametrize("cursor", ["not-base64!", "W10=", "WyJ4IiwgInkiXQ=="])
    def test_invalid_cursor(self, cursor):
        with pytest.raises(ValidationError):
            decode_cursor(cursor)


class TestAuditRecords:
    def test_append_and_filter(self):
        store = MemoryStorage()
        store.append_audit({"record_id": "A1", "entity_id": "e1", "action": "claim_created"})
        store.append_audit({"record_id": "A2", "entity_id": "e2", "action": "claim_transition"})

        assert [r["record_id"] for r in store.list_audit(entity_id="e1")] == ["A1"]
        assert [r["record_id"] for r in store.list_audit(action="claim_transition")] == ["A2"]

    def test_records_are_copied(self):
        store = MemoryStorage()
        record = {"record_id": "A1", "entity_id": "e1", "action": "x", "after_state": {"a": 1}}
        store.append_audit(record)
        record["after_state"]["a"] = 2

        assert store.list_audit()[0]["after_state"] == {"a": 1}


class TestJSONFileStorage:
    """File-backed persistence."""

    @pytest.fixture
    def data_file(self, tmp_path):
        return str(tmp_path / "profit_data.json")

    def test_round_trip(self, data_file):
        store = JSONFileStorage(data_file)
        distribution = make_distribution()
        store.insert_distribution_if_absent(distribution)
        claim = store.upsert_claim(make_claim())
        store.compare_and_swap_claim(claim, processing(claim, "PAY-7"))
        store.update_distribution_if(distribution, distribution.with_settlement("TRX-1"))

        reloaded = JSONFileStorage(data_file)

        loaded = reloaded.get_distribution("dist_a")
        assert loaded.settlement_reference == "TRX-1"
        assert loaded.status == DistributionStatus.DISTRIBUTED
        assert loaded.holder_snapshot == distribution.holder_snapshot
        assert loaded.profit_per_token == Decimal("4.75")
        assert reloaded.find_distribution_by_period("proj-1", 1, 2024) is not None

        loaded_claim = reloaded.get_claim(claim.claim_id)
        assert loaded_claim.status == ClaimStatus.PROCESSING
        assert loaded_claim.payment_id == "PAY-7"
        assert loaded_claim.claimable_amount == 475_000

    def test_period_uniqueness_survives_reload(self, data_file):
        JSONFileStorage(data_file).insert_distribution_if_absent(make_distribution("dist_a"))

        reloaded = JSONFileStorage(data_file)
        existing = reloaded.insert_distribution_if_absent(make_distribution("dist_b"))

        assert existing.distribution_id == "dist_a"

    def test_amounts_persisted_as_decimal_strings(self, data_file):
        store = JSONFileStorage(data_file)
        store.insert_distribution_if_absent(make_distribution())

        with open(data_file, encoding="utf-8") as f:
            data = json.load(f)

        assert data["distributions"][0]["totalProfit"] == "10000.00"
        assert data["distributions"][0]["period"]["quarter"] == 1
        assert not os.path.exists(f"{data_file}.tmp")

    def test_bank_account_encrypted_at_rest(self, data_file):
        cipher = FieldCipher("test-passphrase", iterations=1000)
        store = JSONFileStorage(data_file, cipher=cipher)
        claim = store.upsert_claim(make_claim())
        store.compare_and_swap_claim(claim, processing(claim, account="9988776655"))

        with open(data_file, encoding="utf-8") as f:
            raw = f.read()
        assert "9988776655" not in raw
        stored_account = json.loads(raw)["claims"][0]["paymentDetails"]["bankAccount"]
        assert is_encrypted(stored_account)

        reloaded = JSONFileStorage(data_file, cipher=FieldCipher("test-passphrase", iterations=1000))
        assert reloaded.get_claim(claim.claim_id).payment.bank_account == "9988776655"

    def test_encrypted_file_without_key(self, data_file):
        store = JSONFileStorage(data_file, cipher=FieldCipher("k", iterations=1000))
        claim = store.upsert_claim(make_claim())
        store.compare_and_swap_claim(claim, processing(claim))

        with pytest.raises(StorageReadError):
            JSONFileStorage(data_file)

    def test_corrupt_file(self, data_file):
        with open(data_file, "w", encoding="utf-8") as f:
            f.write("{not json")

        with pytest.raises(StorageReadError):
            JSONFileStorage(data_file)

    def test_empty_file(self, data_file):
        open(data_file, "w").close()

        assert JSONFileStorage(data_file).list_distributions().items == []

    def test_info(self, data_file):
        store = JSONFileStorage(data_file)
        store.insert_distribution_if_absent(make_distribution())

        info = store.get_info()
        assert info["backend_type"] == "JSONFileStorage"
        assert info["distribution_count"] == 1
        assert info["encryption_enabled"] is False
        assert store.is_available() is True


class TestJSONWriteFailure:
    """A failed file write leaves the in-memory state unchanged."""

    @pytest.fixture
    def store(self, tmp_path):
        store = JSONFileStorage(str(tmp_path / "profit_data.json"))
        store.insert_distribution_if_absent(make_distribution())
        store.upsert_claim(make_claim())
        return store

    @pytest.fixture
    def disk_full(self, store, monkeypatch):
        def failing_save():
            raise StorageWriteError("No space left on device")

        monkeypatch.setattr(store, "_save", failing_save)

    def test_failed_cas_keeps_claim_pending(self, store, disk_full):
        claim = store.get_claim(make_claim_id("dist_a", "user-1"))

        with pytest.raises(StorageWriteError):
            store.compare_and_swap_claim(claim, processing(claim))

        assert store.get_claim(claim.claim_id).status == ClaimStatus.PENDING
        assert store.find_claim_by_payment_id("PAY-1") is None

    def test_failed_insert_leaves_period_free(self, store, disk_full, monkeypatch):
        with pytest.raises(StorageWriteError):
            store.insert_distribution_if_absent(make_distribution("dist_q2", quarter=2))

        assert store.get_distribution("dist_q2") is None
        assert store.find_distribution_by_period("proj-1", 2, 2024) is None

        monkeypatch.undo()
        assert store.insert_distribution_if_absent(make_distribution("dist_q2", quarter=2)) is None

    def test_failed_upsert_not_visible(self, store, disk_full):
        with pytest.raises(StorageWriteError):
            store.upsert_claim(make_claim(user_id="user-2"))

        assert store.get_claim(make_claim_id("dist_a", "user-2")) is None

    def test_failed_audit_append_discarded(self, store, disk_full):
        with pytest.raises(StorageWriteError):
            store.append_audit({"entity_id": "dist_a", "action": "distribution_created"})

        assert store.list_audit("dist_a") == []

    def test_file_matches_memory_after_failure(self, store, disk_full):
        claim = store.get_claim(make_claim_id("dist_a", "user-1"))
        with pytest.raises(StorageWriteError):
            store.compare_and_swap_claim(claim, processing(claim))

        reloaded = JSONFileStorage(store.file_path)
        assert reloaded.get_claim(claim.claim_id).status == ClaimStatus.PENDING


class TestBackendSelection:
    """get_storage_backend reads the environment."""

    def test_memory(self, monkeypatch):
        monkeypatch.setenv("STORAGE_BACKEND", "memory")
        assert isinstance(get_storage_backend(), MemoryStorage)

    def test_json(self, monkeypatch, tmp_path):
        monkeypatch.setenv("STORAGE_BACKEND", "json")
        monkeypatch.setenv("PROFIT_DATA_FILE", str(tmp_path / "data.json"))
        store = get_storage_backend()

        assert isinstance(store, JSONFileStorage)
        assert store.file_path == str(tmp_path / "data.json")

    def test_postgres_requires_url(self, monkeypatch):
        monkeypatch.setenv("STORAGE_BACKEND", "postgresql")
        monkeypatch.delenv("DATABASE_URL", raising=False)

        with pytest.raises(StorageError):
            get_storage_backend()

    def test_unknown(self, monkeypatch):
        monkeypatch.setenv("STORAGE_BACKEND", "cassandra")

        with pytest.raises(StorageError):
            get_storage_backend()
