"""
Concurrent posting, close and obligation creation on one org+period.

Covers:
- Parallel posts into the same ledgers lose no update
- A close racing with posts: every post either lands before the close or
  is rejected; closed totals equal the sum of accepted posts
- Parallel create_obligation calls yield a single obligation
- Different periods do not block each other's totals

Runs against SQLite (writes serialized in-process) or, with DATABASE_URL,
against PostgreSQL advisory locks.
"""

from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from threading import Barrier

import pytest

from fiscal_kernel.db.locks import LocalLockRegistry, PostgresAdvisoryLocks, lock_key_to_int
from fiscal_kernel.domain.dtos import TaxCalculationRequest
from fiscal_kernel.domain.values import LedgerStatus, Operation, TaxPeriod
from fiscal_kernel.exceptions import LedgerClosedError, LockTimeoutError
from fiscal_services import period_lock_key

JAN = TaxPeriod(2024, 1)
THREADS = 8

pytestmark = pytest.mark.slow_locks


@pytest.fixture
def sale_result(engine, make_rule, company_setting, org_id):
    make_rule("ICMS", rate=Decimal("10"))
    return engine.calculate_tax(
        TaxCalculationRequest(org_id=org_id, operation=Operation.VENDA, amount=Decimal("100.00"))
    )


def _icms(engine, org_id, period=JAN):
    return {l.tax_type_code: l for l in engine.get_ledgers(org_id, period)}["ICMS"]


class TestPeriodLockKey:

    def test_key_is_org_month_year(self, org_id):
        assert period_lock_key(org_id, JAN) == ("period", str(org_id), 1, 2024)

    def test_keys_differ_by_period(self, org_id):
        assert period_lock_key(org_id, JAN) != period_lock_key(org_id, TaxPeriod(2024, 2))

    def test_keys_map_to_bigint(self, org_id):
        key = lock_key_to_int(period_lock_key(org_id, JAN))
        assert -(2 ** 63) <= key < 2 ** 63
        assert key == lock_key_to_int(period_lock_key(org_id, JAN))


class TestLocalLockRegistry:

    def test_sqlite_engine_serializes_writes(self, engine):
        if not engine.settings.is_sqlite:
            pytest.skip("SQLite only")
        assert isinstance(engine._locks, LocalLockRegistry)

    def test_held_key_times_out(self, org_id):
        locks = LocalLockRegistry(timeout_seconds=0.05)
        key = period_lock_key(org_id, JAN)
        barrier = Barrier(2)

        def contend():
            barrier.wait()
            with pytest.raises(LockTimeoutError):
                with locks.hold([key]):
                    pass

        with locks.hold([key]):
            with ThreadPoolExecutor(max_workers=1) as pool:
                future = pool.submit(contend)
                barrier.wait()
                future.result()

    def test_released_after_block(self, org_id):
        locks = LocalLockRegistry(timeout_seconds=0.05)
        key = period_lock_key(org_id, JAN)
        with locks.hold([key]):
            pass
        with locks.hold([key]):
            pass


class TestConcurrentPosting:

    def test_parallel_posts_accumulate(self, engine, sale_result, org_id, actor):
        barrier = Barrier(THREADS)

        def post(_):
            barrier.wait()
            return engine.post_calculation(org_id, sale_result, JAN, actor)

        with ThreadPoolExecutor(max_workers=THREADS) as pool:
            records = list(pool.map(post, range(THREADS)))

        assert len({r.id for r in records}) == THREADS
        icms = _icms(engine, org_id)
        assert icms.total_debits == Decimal("10.00") * THREADS
        assert icms.balance_due == Decimal("80.00")
        assert icms.version == 1 + THREADS
        assert len(engine.get_tax_calculations(org_id, JAN)) == THREADS

    def test_posts_to_different_periods(self, engine, sale_result, org_id, actor):
        periods = [TaxPeriod(2024, m) for m in range(1, 5)]
        barrier = Barrier(len(periods) * 2)

        def post(period):
            barrier.wait()
            return engine.post_calculation(org_id, sale_result, period, actor)

        with ThreadPoolExecutor(max_workers=len(periods) * 2) as pool:
            list(pool.map(post, periods * 2))

        for period in periods:
            assert _icms(engine, org_id, period).balance_due == Decimal("20.00")


class TestCloseRacingPosts:

    def test_close_and_posts_serialize(self, engine, sale_result, org_id, actor):
        engine.post_calculation(org_id, sale_result, JAN, actor)
        barrier = Barrier(THREADS + 1)

        def post(_):
            barrier.wait()
            try:
                engine.post_calculation(org_id, sale_result, JAN, actor)
                return "posted"
            except LedgerClosedError:
                return "rejected"

        def close():
            barrier.wait()
            return engine.close_tax_period(org_id, JAN, actor)

        with ThreadPoolExecutor(max_workers=THREADS + 1) as pool:
            post_futures = [pool.submit(post, i) for i in range(THREADS)]
            close_future = pool.submit(close)
            outcomes = [f.result() for f in post_futures]
            closed = close_future.result()

        assert closed.success
        accepted = outcomes.count("posted")
        icms = _icms(engine, org_id)
        assert icms.status is LedgerStatus.FECHADO
        assert icms.balance_due == Decimal("10.00") * (1 + accepted)
        assert len(engine.get_tax_calculations(org_id, JAN)) == 1 + accepted

    def test_only_one_of_parallel_closes_succeeds(self, engine, sale_result, org_id, actor):
        engine.post_calculation(org_id, sale_result, JAN, actor)
        barrier = Barrier(4)

        def close(_):
            barrier.wait()
            return engine.close_tax_period(org_id, JAN, actor)

        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(close, range(4)))

        assert sum(r.success for r in results) == 1
        assert {r.error_code for r in results if not r.success} == {"LEDGER_CLOSED"}


class TestConcurrentObligations:

    def test_parallel_create_is_idempotent(self, engine, catalog, org_id, actor):
        kind = catalog["obligation_kinds"]["SPED_FISCAL"]
        barrier = Barrier(THREADS)

        def create(_):
            barrier.wait()
            return engine.create_obligation(org_id, kind.id, JAN, actor)

        with ThreadPoolExecutor(max_workers=THREADS) as pool:
            infos = list(pool.map(create, range(THREADS)))

        assert len({i.id for i in infos}) == 1
        assert len(engine.list_obligations(org_id)) == 1


@pytest.mark.postgres
class TestAdvisoryLocks:

    def test_postgres_engine_uses_advisory_locks(self, engine):
        assert isinstance(engine._locks, PostgresAdvisoryLocks)
