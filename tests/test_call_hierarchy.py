#!/usr/bin/env python3
"""
Unit tests for CallHierarchyDriver with a scripted session.
"""

import asyncio
import unittest
from pathlib import Path

from benchmark_config import BenchmarkConfig
from benchmark_report import Outcome
from call_hierarchy import CallHierarchyDriver
from errors import FramingError, ProtocolError, RequestTimeout, ServerCrash
from tests.mocks import HANG, MockRpcSession, make_item, make_symbol


class DriverTestCase(unittest.IsolatedAsyncioTestCase):
    """Base class wiring a driver to a mock session."""

    def setUp(self):
        self.session = MockRpcSession()
        self.records = []
        self.config = BenchmarkConfig(max_concurrency=4, request_timeout=1.0)

    def make_driver(self, cancel_event=None) -> CallHierarchyDriver:
        return CallHierarchyDriver(self.session, self.config, self.records.append, cancel_event)


class TestProbeSequence(DriverTestCase):
    """Test the prepare → incoming/outgoing sequence."""

    async def test_success_counts_and_timings(self):
        symbol = make_symbol("alpha", 3)
        self.session.incoming["sym3"] = [{"from": 1}, {"from": 2}]

        record = await self.make_driver().probe(symbol)

        self.assertEqual(record.outcome, Outcome.SUCCESS)
        self.assertEqual(record.item_count, 1)
        self.assertEqual(record.incoming_count, 2)
        self.assertEqual(record.outgoing_count, 1)
        self.assertIsNotNone(record.timings.prepare_ms)
        self.assertGreaterEqual(record.timings.incoming_ms, 0.0)
        self.assertGreaterEqual(record.timings.outgoing_ms, 0.0)
        self.assertIsNone(record.error)

    async def test_prepare_at_symbol_position(self):
        symbol = make_symbol("alpha", 7, character=9)

        await self.make_driver().probe(symbol)

        self.assertEqual(self.session.prepare_calls, [(symbol.uri, 7, 9)])

    async def test_empty_prepare_is_success_without_follow_up(self):
        self.session.prepare[2] = []

        record = await self.make_driver().probe(make_symbol("nothing", 2))

        self.assertEqual(record.outcome, Outcome.SUCCESS)
        self.assertEqual(record.item_count, 0)
        self.assertIsNone(record.timings.incoming_ms)
        self.assertIsNone(record.timings.outgoing_ms)
        self.assertEqual(self.session.incoming_items, [])

    async def test_items_passed_back_unchanged(self):
        items = [make_item("first", 1), make_item("second", 1)]
        self.session.prepare[1] = items

        record = await self.make_driver().probe(make_symbol("overloaded", 1))

        self.assertEqual(record.item_count, 2)
        self.assertEqual(record.incoming_count, 2)
        self.assertEqual(record.outgoing_count, 2)
        for sent, original in zip(self.session.incoming_items, items, strict=True):
            self.assertIs(sent, original)
        for sent, original in zip(self.session.outgoing_items, items, strict=True):
            self.assertIs(sent, original)

    async def test_incoming_and_outgoing_run_concurrently(self):
        self.session.request_delay = 0.05

        await self.make_driver().probe(make_symbol("alpha", 1))

        self.assertEqual(self.session.max_in_flight, 2)


class TestOutcomeMapping(DriverTestCase):
    """Test error to outcome mapping."""

    async def test_protocol_error(self):
        self.session.prepare[1] = ProtocolError("no such symbol", code=-32603)

        record = await self.make_driver().probe(make_symbol("alpha", 1))

        self.assertEqual(record.outcome, Outcome.PROTOCOL_ERROR)
        self.assertIn("no such symbol", record.error)

    async def test_rejected_item_is_protocol_error(self):
        self.session.incoming["sym1"] = ProtocolError(
            "call hierarchy item data was not preserved", code=-32602
        )

        record = await self.make_driver().probe(make_symbol("alpha", 1))

        self.assertEqual(record.outcome, Outcome.PROTOCOL_ERROR)
        self.assertIn("-32602", record.error)
        self.assertEqual(record.item_count, 1)
        self.assertIsNotNone(record.timings.prepare_ms)

    async def test_timeout_in_follow_up_keeps_prepare_timing(self):
        self.session.outgoing["sym1"] = RequestTimeout("too slow")

        record = await self.make_driver().probe(make_symbol("alpha", 1))

        self.assertEqual(record.outcome, Outcome.TIMEOUT)
        self.assertIsNotNone(record.timings.prepare_ms)

    async def test_server_crash(self):
        self.session.prepare[1] = ServerCrash("gone")

        record = await self.make_driver().probe(make_symbol("alpha", 1))

        self.assertEqual(record.outcome, Outcome.SERVER_CRASH)

    async def test_framing_error_is_server_crash(self):
        self.session.prepare[1] = FramingError("bad frame")

        record = await self.make_driver().probe(make_symbol("alpha", 1))

        self.assertEqual(record.outcome, Outcome.SERVER_CRASH)

    async def test_dead_session_records_without_sending(self):
        self.session.fatal_error = ServerCrash("exited")

        record = await self.make_driver().probe(make_symbol("alpha", 1))

        self.assertEqual(record.outcome, Outcome.SERVER_CRASH)
        self.assertEqual(self.session.prepare_calls, [])
        self.assertEqual(self.session.did_open, [])


class TestRun(DriverTestCase):
    """Test running many probes."""

    async def test_one_record_per_symbol_delivered_to_sink(self):
        symbols = [make_symbol(f"f{i}", i) for i in range(10)]
        for line in (2, 5, 8):
            self.session.prepare[line] = []

        records = await self.make_driver().run(symbols)

        self.assertEqual(len(records), 10)
        self.assertEqual(records, self.records)
        self.assertEqual({r.symbol.name for r in records}, {s.name for s in symbols})
        self.assertTrue(all(r.outcome == Outcome.SUCCESS for r in records))
        self.assertEqual(sum(1 for r in records if r.item_count == 0), 3)

    async def test_concurrency_is_bounded(self):
        self.config = BenchmarkConfig(max_concurrency=2)
        self.session.request_delay = 0.01
        symbols = [make_symbol(f"f{i}", i, path=Path(f"/project/m{i}.py")) for i in range(8)]

        await self.make_driver().run(symbols)

        # Each probe may have incoming and outgoing in flight at once
        self.assertLessEqual(self.session.max_in_flight, 4)

    async def test_single_did_open_per_file(self):
        self.session.open_delay = 0.01
        path = Path("/project/shared.py")
        symbols = [make_symbol(f"f{i}", i, path=path) for i in range(6)]

        await self.make_driver().run(symbols)

        self.assertEqual(self.session.did_open, [path])

    async def test_documents_closed_at_end(self):
        symbols = [
            make_symbol("a", 1, path=Path("/project/a.py")),
            make_symbol("b", 1, path=Path("/project/b.py")),
        ]

        await self.make_driver().run(symbols)

        self.assertEqual(self.session.closed_documents, 2)

    async def test_documents_kept_open_when_disabled(self):
        self.config = BenchmarkConfig(close_documents=False)

        await self.make_driver().run([make_symbol("a", 1)])

        self.assertEqual(self.session.closed_documents, 0)

    async def test_symbols_after_crash_are_not_sent(self):
        self.config = BenchmarkConfig(max_concurrency=1)
        crash = ServerCrash("exited")

        async def crash_once(uri, line, character, timeout):
            self.session.prepare_calls.append((uri, line, character))
            self.session.fatal_error = crash
            raise crash

        self.session.prepare_call_hierarchy = crash_once
        symbols = [make_symbol(f"f{i}", i) for i in range(4)]

        records = await self.make_driver().run(symbols)

        self.assertEqual(len(self.session.prepare_calls), 1)
        self.assertTrue(all(r.outcome == Outcome.SERVER_CRASH for r in records))
        self.assertEqual(len(records), 4)

    async def test_cancellation_records_cancelled(self):
        self.config = BenchmarkConfig(max_concurrency=2)
        for line in range(5):
            self.session.prepare[line] = HANG
        cancel_event = asyncio.Event()
        symbols = [make_symbol(f"f{i}", i) for i in range(5)]

        run = asyncio.create_task(self.make_driver(cancel_event).run(symbols))
        await asyncio.sleep(0.05)
        cancel_event.set()
        records = await asyncio.wait_for(run, timeout=2.0)

        self.assertEqual(len(records), 5)
        self.assertTrue(all(r.outcome == Outcome.CANCELLED for r in records))
        self.assertEqual(self.session.cancel_reasons, ["Run cancelled"])
        # Only the probes that held a slot ever reached the server
        self.assertEqual(len(self.session.prepare_calls), 2)

    async def test_cancel_during_did_open_sends_nothing_more(self):
        self.session.open_delay = 0.2
        self.session.prepare[0] = HANG
        cancel_event = asyncio.Event()

        run = asyncio.create_task(self.make_driver(cancel_event).run([make_symbol("f0", 0)]))
        await asyncio.sleep(0.05)
        cancel_event.set()
        records = await asyncio.wait_for(run, timeout=2.0)

        self.assertEqual([r.outcome for r in records], [Outcome.CANCELLED])
        self.assertEqual(self.session.prepare_calls, [])

    async def test_cancelled_session_refuses_follow_up(self):
        async def cancel_after_prepare(uri, line, character, timeout):
            self.session.prepare_calls.append((uri, line, character))
            self.session.cancel_all("Stopped")
            return [make_item("sym1", 1)]

        self.session.prepare_call_hierarchy = cancel_after_prepare

        record = await self.make_driver().probe(make_symbol("alpha", 1))

        self.assertEqual(record.outcome, Outcome.CANCELLED)
        self.assertIn("Stopped", record.error)
        self.assertEqual(self.session.incoming_items, [])
        self.assertEqual(self.session.outgoing_items, [])

    async def test_task_cancellation_records_cancelled(self):
        self.config = BenchmarkConfig(max_concurrency=2)
        for line in range(4):
            self.session.prepare[line] = HANG
        symbols = [make_symbol(f"f{i}", i) for i in range(4)]

        run = asyncio.create_task(self.make_driver().run(symbols))
        await asyncio.sleep(0.05)
        run.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await run

        self.assertEqual(len(self.records), 4)
        self.assertEqual({r.symbol.name for r in self.records}, {s.name for s in symbols})
        self.assertTrue(all(r.outcome == Outcome.CANCELLED for r in self.records))
        self.assertEqual(len(self.session.prepare_calls), 2)


if __name__ == "__main__":
    unittest.main()
