import threading
from datetime import date, datetime, timedelta, timezone

import pytest

from parley.service.quota import (
    PERSONAL,
    SHARED,
    QuotaLedger,
    start_of_utc_day,
)
from parley.storage.memory import MemoryStore


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def ledger(store):
    return QuotaLedger(store, default_limit=3)


class TestUtcDay:
    def test_aware_moment_is_converted(self):
        moment = datetime(2024, 3, 1, 23, 30, tzinfo=timezone(timedelta(hours=-5)))
        assert start_of_utc_day(moment) == date(2024, 3, 2)


class TestCounters:
    def test_missing_row_reads_as_zero(self, store, ledger):
        user = store.create_user("a@example.com")
        usage = ledger.get_usage(user.id)
        assert (usage.responses, usage.shared_responses, usage.personal_responses) == (0, 0, 0)

    def test_total_is_sum_of_sources(self, store, ledger):
        user = store.create_user("a@example.com")
        ledger.increment_and_get_total(user.id, SHARED)
        ledger.increment_and_get_total(user.id, PERSONAL)
        total = ledger.increment_and_get_total(user.id, SHARED)

        usage = ledger.get_usage(user.id)
        assert total == 3
        assert usage.shared_responses == 2
        assert usage.personal_responses == 1
        assert usage.responses == usage.shared_responses + usage.personal_responses

    def test_days_are_counted_separately(self, store, ledger):
        user = store.create_user("a@example.com")
        ledger.increment_and_get_total(user.id, SHARED, day=date(2024, 1, 1))

        assert ledger.get_usage(user.id, date(2024, 1, 1)).responses == 1
        assert ledger.get_usage(user.id, date(2024, 1, 2)).responses == 0

    def test_unknown_source_rejected(self, store, ledger):
        user = store.create_user("a@example.com")
        with pytest.raises(ValueError):
            ledger.increment_and_get_total(user.id, "borrowed")

    def test_concurrent_increments_are_not_lost(self, store, ledger):
        user = store.create_user("a@example.com")
        day = date(2024, 5, 1)
        workers = 8
        per_worker = 10
        barrier = threading.Barrier(workers)

        def bump():
            barrier.wait()
            for _ in range(per_worker):
                ledger.increment_and_get_total(user.id, SHARED, day=day)

        threads = [threading.Thread(target=bump) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert ledger.get_usage(user.id, day).responses == workers * per_worker


class TestLimits:
    def test_default_limit_applies(self, store, ledger):
        user = store.create_user("a@example.com")
        assert ledger.effective_limit(user) == 3

    def test_per_user_override(self, store, ledger):
        user = store.create_user("a@example.com", daily_limit=7)
        assert ledger.effective_limit(user) == 7

    def test_personal_key_is_unbounded(self, store, ledger):
        user = store.create_user("a@example.com")
        assert ledger.effective_limit(user, has_personal_key=True) is None
        assert ledger.source_for(user, has_personal_key=True) == PERSONAL

    def test_undecryptable_key_counts_as_shared(self, store, ledger):
        user = store.create_user("a@example.com")
        store.set_user_model_key(user.id, "garbage")
        assert ledger.effective_limit(user, has_personal_key=False) == 3
        assert ledger.source_for(user, has_personal_key=False) == SHARED

    def test_admin_is_unbounded(self, store, ledger):
        admin = store.create_user("root@example.com", role="admin")
        assert ledger.effective_limit(admin) is None

    def test_over_limit(self, store, ledger):
        user = store.create_user("a@example.com")
        for _ in range(3):
            ledger.increment_and_get_total(user.id, SHARED)
        assert ledger.is_over_limit(user.id, 3)
        assert not ledger.is_over_limit(user.id, None)
        assert not ledger.is_over_limit(user.id, 3, used=2)

    def test_snapshot(self, store, ledger):
        user = store.create_user("a@example.com")
        ledger.increment_and_get_total(user.id, SHARED)

        snapshot = ledger.snapshot(user).as_dict()

        assert snapshot["used_total"] == 1
        assert snapshot["limit"] == 3
        assert snapshot["remaining"] == 2
        assert snapshot["has_personal_key"] is False

    def test_snapshot_remaining_never_negative(self, store, ledger):
        user = store.create_user("a@example.com", daily_limit=1)
        for _ in range(2):
            ledger.increment_and_get_total(user.id, SHARED)
        assert ledger.snapshot(user).remaining == 0
