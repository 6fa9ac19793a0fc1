"""
Runner Pool — Instance Transition Engine Tests

Covers:
  1. Creation and must-be-new soft failure
  2. Compare-and-swap transition success and each failing sub-condition
  3. CAS exclusivity under concurrent claimants
  4. Expiry, termination and the threshold-gated sweep query
  5. Bulk delete with run isolation

Every class runs against the in-memory and the SQLite store.
"""

import os
import sys
import threading
import unittest
import warnings

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))
from support import CONFIG, FakeClock, seed_record

from pool.errors import TransitionConflict
from pool.queues import SQLitePoolQueue
from pool.runtime import PoolRuntime
from pool.store import SQLiteDatabase, SQLiteRecordStore
from pool.types import InstanceState, parse_isoz


class RuntimeMixin:
    """Builds self.runtime on the backend chosen by the subclass."""

    backend = "memory"

    def setUp(self):
        self.clock = FakeClock()
        if self.backend == "sqlite":
            self.db = SQLiteDatabase(":memory:")
            self.runtime = PoolRuntime(SQLiteRecordStore(self.db), SQLitePoolQueue(self.db),
                                       CONFIG, clock=self.clock)
        else:
            self.runtime = PoolRuntime.in_memory(CONFIG, clock=self.clock)
        self.engine = self.runtime.transitions

    def tearDown(self):
        if self.backend == "sqlite":
            self.db.close()


# ═══════════════════════════════════════════════════════════════════
# 1. CREATION
# ═══════════════════════════════════════════════════════════════════

class CreateTestMixin(RuntimeMixin):

    def test_create_sets_created_state(self):
        self.assertTrue(self.engine.create("i-1", {"run_id": "r1", "resource_class": "large"}))
        record = self.engine.get("i-1")
        self.assertEqual(record.state, InstanceState.CREATED)
        self.assertEqual(record.run_id, "r1")
        self.assertEqual(record.updated_at, "2025-04-24T18:31:04Z")

    def test_must_be_new_conflict_is_soft(self):
        self.assertTrue(self.engine.create("i-1", {"run_id": "r1"}, must_be_new=True))
        with self.assertLogs("runner_pool.transitions", level="WARNING") as logs:
            self.assertFalse(self.engine.create("i-1", {"run_id": "r2"}, must_be_new=True))
        self.assertTrue(any("Run id mismatch" in line for line in logs.output))
        self.assertEqual(self.engine.get("i-1").run_id, "r1")

    def test_create_without_must_be_new_overwrites(self):
        self.engine.create("i-1", {"run_id": "r1"})
        self.assertTrue(self.engine.create("i-1", {"run_id": "r2"}))
        self.assertEqual(self.engine.get("i-1").run_id, "r2")

    def test_register_created_normalizes_threshold(self):
        self.engine.register_created("i-1", "r1", "2025-04-24T18:40:00.123+00:00",
                                     "large", "c6i.large")
        self.assertEqual(self.engine.get("i-1").threshold, "2025-04-24T18:40:00Z")

    def test_register_running(self):
        self.engine.register_created("i-1", "r1", self.clock.iso(120), "large", "c6i.large")
        self.engine.register_running("i-1", "r1", self.clock.iso(1800))
        record = self.engine.get("i-1")
        self.assertEqual(record.state, InstanceState.RUNNING)
        self.assertEqual(record.threshold, self.clock.iso(1800))


class TestCreateMemory(CreateTestMixin, unittest.TestCase):
    backend = "memory"


class TestCreateSQLite(CreateTestMixin, unittest.TestCase):
    backend = "sqlite"


# ═══════════════════════════════════════════════════════════════════
# 2. COMPARE-AND-SWAP
# ═══════════════════════════════════════════════════════════════════

class TransitionTestMixin(RuntimeMixin):

    def _claim(self, run_id="r1", expected_run_id="", selects_unexpired=True):
        return self.engine.transition(
            "i-1", expected_run_id=expected_run_id, new_run_id=run_id,
            expected_state=InstanceState.IDLE, new_state=InstanceState.CLAIMED,
            new_threshold=self.clock.iso(300), selects_unexpired=selects_unexpired,
        )

    def test_claim_succeeds(self):
        seed_record(self.runtime, "i-1", InstanceState.IDLE)
        record = self._claim()
        self.assertEqual(record.state, InstanceState.CLAIMED)
        self.assertEqual(record.run_id, "r1")
        stored = self.engine.get("i-1")
        self.assertEqual(stored.state, InstanceState.CLAIMED)
        self.assertEqual(stored.run_id, "r1")
        self.assertEqual(stored.threshold, self.clock.iso(300))

    def test_state_mismatch(self):
        seed_record(self.runtime, "i-1", InstanceState.RUNNING)
        with self.assertRaises(TransitionConflict) as ctx:
            self._claim()
        self.assertIn("state mismatch", ctx.exception.reason)

    def test_expired_threshold(self):
        seed_record(self.runtime, "i-1", InstanceState.IDLE, threshold_offset=-10)
        with self.assertRaises(TransitionConflict) as ctx:
            self._claim()
        self.assertIn("threshold expired", ctx.exception.reason)

    def test_threshold_equal_to_now_is_expired(self):
        seed_record(self.runtime, "i-1", InstanceState.IDLE, threshold_offset=0)
        with self.assertRaises(TransitionConflict):
            self._claim()

    def test_owner_mismatch(self):
        seed_record(self.runtime, "i-1", InstanceState.IDLE, run_id="other")
        with self.assertRaises(TransitionConflict) as ctx:
            self._claim()
        self.assertIn("runId mismatch", ctx.exception.reason)

    def test_conflict_is_logged_with_ids(self):
        seed_record(self.runtime, "i-1", InstanceState.IDLE, run_id="other")
        with self.assertLogs("runner_pool.transitions", level="WARNING") as logs:
            with self.assertRaises(TransitionConflict):
                self._claim(run_id="r1", expected_run_id="r0")
        [event] = [r.structured for r in logs.records if hasattr(r, "structured")]
        self.assertEqual(event["action"], "transition_conflict")
        self.assertEqual(event["instance_id"], "i-1")
        self.assertEqual(event["run_id"], "r0")
        self.assertIn("runId mismatch", event["reason"])

    def test_empty_threshold_never_matches(self):
        seed_record(self.runtime, "i-1", InstanceState.IDLE, threshold="")
        with self.assertRaises(TransitionConflict):
            self._claim(selects_unexpired=True)
        with self.assertRaises(TransitionConflict):
            self._claim(selects_unexpired=False)

    def test_unparseable_threshold_is_a_conflict(self):
        seed_record(self.runtime, "i-1", InstanceState.IDLE, threshold="garbage")
        with self.assertRaises(TransitionConflict) as ctx:
            self._claim()
        self.assertIn("threshold unparseable", ctx.exception.reason)
        self.assertEqual(self.engine.get("i-1").threshold, "garbage")

    def test_missing_record(self):
        with self.assertRaises(TransitionConflict) as ctx:
            self._claim()
        self.assertEqual(ctx.exception.reason, "record not found")

    def test_selects_expired(self):
        seed_record(self.runtime, "i-1", InstanceState.IDLE, threshold_offset=-60)
        record = self._claim(selects_unexpired=False)
        self.assertEqual(record.state, InstanceState.CLAIMED)

    def test_conflict_leaves_record_untouched(self):
        before = seed_record(self.runtime, "i-1", InstanceState.IDLE, run_id="other")
        with self.assertRaises(TransitionConflict):
            self._claim()
        self.assertEqual(self.engine.get("i-1"), before)

    def test_cas_exclusivity(self):
        seed_record(self.runtime, "i-1", InstanceState.IDLE)
        barrier = threading.Barrier(2)
        winners, losers = [], []

        def contend(run_id):
            barrier.wait()
            try:
                self._claim(run_id=run_id)
                winners.append(run_id)
            except TransitionConflict:
                losers.append(run_id)

        threads = [threading.Thread(target=contend, args=(r,)) for r in ("run-a", "run-b")]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(len(winners), 1)
        self.assertEqual(len(losers), 1)
        stored = self.engine.get("i-1")
        self.assertEqual(stored.state, InstanceState.CLAIMED)
        self.assertEqual(stored.run_id, winners[0])


class TestTransitionMemory(TransitionTestMixin, unittest.TestCase):
    backend = "memory"


class TestTransitionSQLite(TransitionTestMixin, unittest.TestCase):
    backend = "sqlite"


# ═══════════════════════════════════════════════════════════════════
# 3. EXPIRY, TERMINATION, SWEEP QUERY
# ═══════════════════════════════════════════════════════════════════

class ExpiryTestMixin(RuntimeMixin):

    def test_expire_keeps_state_and_owner(self):
        seed_record(self.runtime, "i-1", InstanceState.RUNNING, run_id="r1")
        self.engine.expire("i-1", "r1", InstanceState.RUNNING)
        record = self.engine.get("i-1")
        self.assertEqual(record.state, InstanceState.RUNNING)
        self.assertEqual(record.run_id, "r1")
        self.assertEqual(record.threshold, self.clock.iso(-300))

    def test_expire_reads_state_when_omitted(self):
        seed_record(self.runtime, "i-1", InstanceState.CLAIMED, run_id="r1")
        self.engine.expire("i-1", "r1")
        record = self.engine.get("i-1")
        self.assertEqual(record.state, InstanceState.CLAIMED)
        self.assertLess(parse_isoz(record.threshold), self.clock())

    def test_expire_missing_record(self):
        with self.assertRaises(TransitionConflict):
            self.engine.expire("ghost", "r1")

    def test_expire_wrong_owner(self):
        seed_record(self.runtime, "i-1", InstanceState.RUNNING, run_id="r1")
        with self.assertRaises(TransitionConflict):
            self.engine.expire("i-1", "r2", InstanceState.RUNNING)

    def test_terminate_requires_expired(self):
        seed_record(self.runtime, "i-1", InstanceState.RUNNING, run_id="r1")
        with self.assertRaises(TransitionConflict):
            self.engine.terminate("i-1", "r1", InstanceState.RUNNING)
        self.engine.expire("i-1", "r1", InstanceState.RUNNING)
        record = self.engine.terminate("i-1", "r1", InstanceState.RUNNING)
        self.assertEqual(record.state, InstanceState.TERMINATED)
        self.assertEqual(record.run_id, "")

    def test_query_expired_by_states(self):
        seed_record(self.runtime, "past", InstanceState.RUNNING, threshold_offset=-1)
        seed_record(self.runtime, "future", InstanceState.RUNNING, threshold_offset=60)
        seed_record(self.runtime, "blank", InstanceState.RUNNING, threshold="")
        seed_record(self.runtime, "idle-past", InstanceState.IDLE, threshold_offset=-60)
        seed_record(self.runtime, "done", InstanceState.TERMINATED, threshold_offset=-60)

        running = self.engine.query_expired_by_states([InstanceState.RUNNING])
        self.assertEqual([r.id for r in running], ["past"])

        live = self.engine.query_expired_by_states(["idle", "claimed", "running"])
        self.assertEqual(sorted(r.id for r in live), ["idle-past", "past"])

    def test_expire_unparseable_threshold(self):
        seed_record(self.runtime, "bad", InstanceState.IDLE, threshold="garbage")
        with self.assertRaises(TransitionConflict) as ctx:
            self.engine.expire("bad", "", InstanceState.IDLE)
        self.assertIn("threshold unparseable", ctx.exception.reason)

    def test_query_skips_unparseable_threshold(self):
        seed_record(self.runtime, "past", InstanceState.IDLE, threshold_offset=-60)
        seed_record(self.runtime, "bad", InstanceState.IDLE, threshold="not-a-date")
        with self.assertLogs("runner_pool.transitions", level="WARNING") as logs:
            expired = self.engine.query_expired_by_states([InstanceState.IDLE])
        self.assertEqual([r.id for r in expired], ["past"])
        self.assertTrue(any("threshold unparseable" in line for line in logs.output))

    def test_get_by_run_id(self):
        seed_record(self.runtime, "a", InstanceState.RUNNING, run_id="r1")
        seed_record(self.runtime, "b", InstanceState.CLAIMED, run_id="r1")
        seed_record(self.runtime, "c", InstanceState.RUNNING, run_id="r2")
        self.assertEqual(sorted(r.id for r in self.engine.get_by_run_id("r1")), ["a", "b"])


class TestExpiryMemory(ExpiryTestMixin, unittest.TestCase):
    backend = "memory"


class TestExpirySQLite(ExpiryTestMixin, unittest.TestCase):
    backend = "sqlite"


# ═══════════════════════════════════════════════════════════════════
# 4. BULK DELETE
# ═══════════════════════════════════════════════════════════════════

class BulkDeleteTestMixin(RuntimeMixin):

    def test_delete_without_run_id(self):
        seed_record(self.runtime, "a", InstanceState.RUNNING, run_id="r1")
        seed_record(self.runtime, "b", InstanceState.RUNNING, run_id="r2")
        outcomes = self.engine.bulk_delete_with_isolation(["a", "b"])
        self.assertTrue(all(o.ok for o in outcomes))
        self.assertIsNone(self.engine.get("a"))
        self.assertIsNone(self.engine.get("b"))

    def test_isolation_partial_failure(self):
        seed_record(self.runtime, "a", InstanceState.RUNNING, run_id="r1")
        seed_record(self.runtime, "b", InstanceState.RUNNING, run_id="r2")
        seed_record(self.runtime, "c", InstanceState.RUNNING, run_id="r1")
        outcomes = self.engine.bulk_delete_with_isolation(["a", "b", "c", "ghost"], run_id="r1")
        self.assertEqual([(o.instance_id, o.ok) for o in outcomes],
                         [("a", True), ("b", False), ("c", True), ("ghost", False)])
        self.assertIsNotNone(self.engine.get("b"))
        self.assertIsNone(self.engine.get("c"))


class TestBulkDeleteMemory(BulkDeleteTestMixin, unittest.TestCase):
    backend = "memory"


class TestBulkDeleteSQLite(BulkDeleteTestMixin, unittest.TestCase):
    backend = "sqlite"


class TestModuleSource(unittest.TestCase):

    def test_compiles_without_escape_warnings(self):
        import pool.transitions
        with open(pool.transitions.__file__, encoding="utf-8") as fh:
            source = fh.read()
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            compile(source, pool.transitions.__file__, "exec")


if __name__ == "__main__":
    unittest.main()
