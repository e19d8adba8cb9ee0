"""
Agent Runtime - Approval Gate Tests

Suspension, decisions, expiry, and the decision/timeout race. A decision
and the timer for the same ticket must resolve the execution exactly once;
the loser and any redelivered event change nothing. A decision that was
missed (before suspension, or lost in transit) is replayed by suspend(),
the timer or the periodic sweep.
"""

import os
import sys
import threading
import time
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from engine.actions import ActionType
from engine.db import SQLiteBackend
from engine.history import ActionRecord, ApprovalOutcomeType
from orchestrator.approvals import (
    InMemoryApprovalStore,
    RequestApprovalTool,
    SQLApprovalStore,
    TicketStatus,
)
from orchestrator.channel import DecisionEvent, InlineDecisionChannel, QueueDecisionChannel
from orchestrator.gate import ApprovalGate
from orchestrator.store import ExecutionStore
from orchestrator.types import AgentConfig, Execution, ExecutionStatus, Goal

S = ExecutionStatus
T0 = 1_000_000.0


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class GateFixture(unittest.TestCase):
    """One execution suspended on one ticket, with a clock that only moves when told."""

    timeout_seconds = 3600

    def setUp(self):
        self.store = ExecutionStore(SQLiteBackend(":memory:"))
        self.channel = InlineDecisionChannel()
        self.approvals = InMemoryApprovalStore(self.channel)
        self.resumed = []
        self.now = T0
        self.gate = ApprovalGate(self.store, self.approvals, self.channel,
                                 on_resume=self.resumed.append, clock=lambda: self.now)
        self.execution, self.ticket_id = self.suspended_execution()
        self.eid = self.execution.execution_id

    def tearDown(self):
        self.gate.shutdown()

    def suspended_execution(self):
        execution = Execution.create(
            "TEST_GENERATOR",
            Goal(goal_type="GENERATE_TEST", parameters={"jira_key": "QA-12"}),
            AgentConfig(approval_timeout_seconds=self.timeout_seconds),
        )
        self.store.create_execution(execution)
        ticket_id = self.approvals.create_ticket(execution.execution_id, "Publish tests?",
                                                 {"kind": "publish_tests"})
        self.store.append_action(ActionRecord(
            execution_id=execution.execution_id,
            iteration=0,
            action_type=ActionType.REQUEST_APPROVAL,
            input={"content": "Publish tests?"},
            output={"ticket_id": ticket_id},
            success=True,
        ))
        self.assertTrue(self.gate.suspend(execution, ticket_id))
        return execution, ticket_id

    def status(self, eid=None):
        return self.store.get_execution(eid or self.eid).status


class TestSuspension(GateFixture):
    def test_suspend_persists_ticket_and_deadline(self):
        row = self.store.get_execution(self.eid)
        self.assertEqual(row.status, S.WAITING_FOR_APPROVAL)
        self.assertEqual(row.approval_ticket_id, self.ticket_id)
        self.assertEqual(row.approval_deadline, T0 + 3600)
        self.assertEqual(self.gate.armed(), [self.ticket_id])

    def test_suspend_refused_after_cancel(self):
        execution = Execution.create("TEST_GENERATOR",
                                     Goal(goal_type="GENERATE_TEST", parameters={"jira_key": "X"}),
                                     AgentConfig())
        self.store.create_execution(execution)
        self.store.request_cancel(execution.execution_id)
        self.assertFalse(self.gate.suspend(execution, "apr_late"))
        self.assertNotIn("apr_late", self.gate.armed())

    def test_decision_before_suspension_is_replayed(self):
        execution = Execution.create("TEST_GENERATOR",
                                     Goal(goal_type="GENERATE_TEST", parameters={"jira_key": "X"}),
                                     AgentConfig())
        self.store.create_execution(execution)
        ticket_id = self.approvals.create_ticket(execution.execution_id, "Publish tests?")
        # Lands while the execution is still RUNNING and is ignored
        self.approvals.decide(ticket_id, False, reviewer="lead")
        self.assertEqual(self.status(execution.execution_id), S.RUNNING)
        self.store.append_action(ActionRecord(
            execution_id=execution.execution_id, iteration=0,
            action_type=ActionType.REQUEST_APPROVAL, input={},
            output={"ticket_id": ticket_id}, success=True,
        ))

        self.assertTrue(self.gate.suspend(execution, ticket_id))
        row = self.store.get_execution(execution.execution_id)
        self.assertEqual(row.status, S.FAILED)
        self.assertEqual(row.error_message, "Approval rejected by lead")
        self.assertNotIn(ticket_id, self.gate.armed())


class TestDecisions(GateFixture):
    def test_approve_resumes(self):
        self.assertTrue(self.approvals.decide(self.ticket_id, True, reviewer="lead"))
        self.assertEqual(self.status(), S.RUNNING)
        self.assertEqual(self.resumed, [self.eid])
        self.assertEqual(self.gate.armed(), [])
        outcome = self.store.load_history(self.eid).outcomes[0]
        self.assertEqual(outcome.iteration, 0)
        self.assertEqual(outcome.outcome, ApprovalOutcomeType.APPROVED)
        self.assertEqual(outcome.reviewer, "lead")

    def test_reject_fails_and_later_timer_is_noop(self):
        self.approvals.decide(self.ticket_id, False, reviewer="lead", notes="flaky selectors")
        row = self.store.get_execution(self.eid)
        self.assertEqual(row.status, S.FAILED)
        self.assertEqual(row.error_message, "Approval rejected by lead: flaky selectors")
        self.assertEqual(self.resumed, [])

        transitions = len(self.store.list_transitions(self.eid))
        self.gate._on_timeout(self.eid, self.ticket_id)
        self.assertEqual(self.status(), S.FAILED)
        self.assertEqual(len(self.store.list_transitions(self.eid)), transitions)
        self.assertEqual(len(self.store.list_outcomes(self.eid)), 1)

    def test_timeout_then_late_decision_is_noop(self):
        self.gate._on_timeout(self.eid, self.ticket_id)
        row = self.store.get_execution(self.eid)
        self.assertEqual(row.status, S.TIMEOUT)
        self.assertIn("3600s", row.error_message)
        self.assertEqual(self.approvals.get_ticket(self.ticket_id).status, TicketStatus.EXPIRED)

        self.assertFalse(self.approvals.decide(self.ticket_id, True, reviewer="late"))
        self.assertEqual(self.status(), S.TIMEOUT)
        self.assertEqual(self.resumed, [])

    def test_redelivery_is_idempotent(self):
        self.approvals.decide(self.ticket_id, True, reviewer="lead")
        event = self.approvals.get_ticket(self.ticket_id).to_event()
        self.assertFalse(self.gate.handle(event))
        self.assertEqual(self.resumed, [self.eid])
        self.assertEqual(len(self.store.list_outcomes(self.eid)), 1)

    def test_event_for_other_ticket_ignored(self):
        stale = DecisionEvent(ticket_id="apr_old", execution_id=self.eid,
                              outcome=ApprovalOutcomeType.APPROVED)
        self.assertFalse(self.gate.handle(stale))
        self.assertEqual(self.status(), S.WAITING_FOR_APPROVAL)

    def test_event_for_unknown_execution_ignored(self):
        ghost = DecisionEvent(ticket_id="apr_x", execution_id="exe_ghost",
                              outcome=ApprovalOutcomeType.REJECTED)
        self.assertFalse(self.gate.handle(ghost))

    def test_expiry_of_ticket_unknown_to_store(self):
        self.assertTrue(self.gate._expire(self.eid, "apr_not_in_store"))
        self.assertEqual(self.status(), S.WAITING_FOR_APPROVAL)
        self.store.transition(self.eid, S.WAITING_FOR_APPROVAL, S.RUNNING, actor="test")
        execution = self.store.get_execution(self.eid)
        self.gate.suspend(execution, "apr_external")
        self.gate._on_timeout(self.eid, "apr_external")
        self.assertEqual(self.status(), S.TIMEOUT)

    def test_cancel_while_waiting_beats_decision(self):
        self.assertEqual(self.store.request_cancel(self.eid), S.STOPPED)
        self.approvals.decide(self.ticket_id, True)
        self.assertEqual(self.status(), S.STOPPED)
        self.assertEqual(self.resumed, [])


class TestDecisionTimeoutRace(unittest.TestCase):
    """Many executions, each with a decision and its timer fired concurrently."""

    def test_exactly_one_winner_per_execution(self):
        store = ExecutionStore(SQLiteBackend(":memory:"))
        channel = InlineDecisionChannel()
        approvals = SQLApprovalStore(store.db, channel)
        resumed = []
        gate = ApprovalGate(store, approvals, channel, on_resume=resumed.append)
        try:
            cases = []
            for i in range(20):
                execution = Execution.create(
                    "TEST_GENERATOR",
                    Goal(goal_type="GENERATE_TEST", parameters={"jira_key": f"QA-{i}"}),
                    AgentConfig(),
                )
                store.create_execution(execution)
                ticket_id = approvals.create_ticket(execution.execution_id, "ok?")
                gate.suspend(execution, ticket_id)
                cases.append((execution.execution_id, ticket_id))

            barrier = threading.Barrier(2 * len(cases))

            def decide(ticket_id):
                barrier.wait()
                approvals.decide(ticket_id, True, reviewer="lead")

            def expire(eid, ticket_id):
                barrier.wait()
                gate._on_timeout(eid, ticket_id)

            threads = []
            for eid, ticket_id in cases:
                threads.append(threading.Thread(target=decide, args=(ticket_id,)))
                threads.append(threading.Thread(target=expire, args=(eid, ticket_id)))
            for t in threads:
                t.start()
            for t in threads:
                t.join()

            for eid, ticket_id in cases:
                status = store.get_execution(eid).status
                self.assertIn(status, (S.RUNNING, S.TIMEOUT))
                outcomes = store.list_outcomes(eid)
                self.assertEqual(len(outcomes), 1)
                expected = (ApprovalOutcomeType.APPROVED if status == S.RUNNING
                            else ApprovalOutcomeType.EXPIRED)
                self.assertEqual(outcomes[0].outcome, expected)
                self.assertEqual(len(store.list_transitions(eid)), 2)
                self.assertEqual(resumed.count(eid), 1 if status == S.RUNNING else 0)
        finally:
            gate.shutdown()


class TestRecovery(GateFixture):
    def test_sweep_expires_overdue(self):
        self.assertEqual(self.gate.sweep(now=T0 + 10), 0)
        self.assertEqual(self.gate.sweep(now=T0 + 3601), 1)
        self.assertEqual(self.status(), S.TIMEOUT)
        self.assertEqual(self.gate.armed(), [])

    def test_sweep_republishes_lost_decision(self):
        self.approvals.channel = None
        self.approvals.decide(self.ticket_id, True, reviewer="lead")
        self.approvals.channel = self.channel
        self.assertEqual(self.status(), S.WAITING_FOR_APPROVAL)

        self.assertEqual(self.gate.sweep(now=T0 + 3601), 1)
        self.assertEqual(self.status(), S.RUNNING)
        self.assertEqual(self.resumed, [self.eid])

    def test_timer_replays_decision_missed_while_waiting(self):
        self.approvals.channel = None
        self.approvals.decide(self.ticket_id, False, reviewer="lead")
        self.approvals.channel = self.channel
        self.assertEqual(self.status(), S.WAITING_FOR_APPROVAL)

        self.gate._on_timeout(self.eid, self.ticket_id)
        self.assertEqual(self.status(), S.FAILED)
        self.assertEqual(self.store.list_outcomes(self.eid)[0].outcome,
                         ApprovalOutcomeType.REJECTED)

    def test_rearm_after_restart(self):
        self.gate.shutdown()
        self.assertEqual(self.gate.armed(), [])
        fresh = ApprovalGate(self.store, self.approvals, InlineDecisionChannel(),
                             clock=lambda: T0)
        try:
            self.assertEqual(fresh.rearm_waiting(), 1)
            self.assertEqual(fresh.armed(), [self.ticket_id])
        finally:
            fresh.shutdown()

class TestPeriodicSweep(GateFixture):
    def test_sweeper_expires_execution_whose_timer_was_lost(self):
        self.gate.disarm(self.ticket_id)
        self.now = T0 + 3601
        self.assertTrue(self.gate.start_sweeper(0.02))
        self.assertFalse(self.gate.start_sweeper(0.02))
        self.assertTrue(wait_for(lambda: self.status() == S.TIMEOUT))

    def test_sweeper_replays_lost_decision(self):
        self.gate.disarm(self.ticket_id)
        self.approvals.channel = None
        self.approvals.decide(self.ticket_id, True, reviewer="lead")
        self.approvals.channel = self.channel
        self.now = T0 + 3601

        self.gate.start_sweeper(0.02)
        self.assertTrue(wait_for(lambda: self.status() == S.RUNNING))
        self.assertEqual(self.resumed, [self.eid])

    def test_shutdown_stops_sweeper(self):
        self.assertFalse(self.gate.start_sweeper(0))
        self.assertTrue(self.gate.start_sweeper(60))
        self.gate.shutdown()
        self.assertIsNone(self.gate._sweeper)
        self.assertTrue(self.gate.start_sweeper(60))



class TestTimerFires(GateFixture):
    timeout_seconds = 0.05

    def test_real_timer_expires_execution(self):
        self.assertTrue(wait_for(lambda: self.status() == S.TIMEOUT))
        self.assertEqual(self.gate.armed(), [])


class TestApprovalStores(unittest.TestCase):
    def _exercise(self, approvals):
        published = []
        channel = InlineDecisionChannel()
        channel.subscribe(published.append)
        approvals.channel = channel

        ticket_id = approvals.create_ticket("exe_1", "Merge fix?", {"kind": "publish_fix"})
        pending = approvals.list_pending()
        self.assertEqual([t.ticket_id for t in pending], [ticket_id])
        self.assertEqual(pending[0].metadata, {"kind": "publish_fix"})

        self.assertTrue(approvals.decide(ticket_id, False, reviewer="qa", notes="no"))
        self.assertFalse(approvals.decide(ticket_id, True, reviewer="other"))
        self.assertFalse(approvals.expire(ticket_id))
        self.assertEqual(len(published), 1)
        self.assertEqual(published[0].outcome, ApprovalOutcomeType.REJECTED)
        self.assertEqual(published[0].reviewer, "qa")
        self.assertEqual(approvals.list_pending(), [])

        other = approvals.create_ticket("exe_2", "Delete file?")
        self.assertTrue(approvals.cancel(other, "stopped"))
        self.assertEqual(approvals.get_ticket(other).status, TicketStatus.CANCELLED)
        self.assertIsNone(approvals.get_ticket(other).to_event())
        self.assertFalse(approvals.republish(other))
        self.assertEqual(len(published), 1)
        self.assertEqual([t.execution_id for t in approvals.list_tickets(execution_id="exe_2")],
                         ["exe_2"])

    def test_in_memory(self):
        self._exercise(InMemoryApprovalStore())

    def test_sql(self):
        self._exercise(SQLApprovalStore(SQLiteBackend(":memory:")))

    def test_unknown_ticket(self):
        self.assertFalse(InMemoryApprovalStore().decide("apr_nope", True))

    def test_request_approval_tool(self):
        approvals = InMemoryApprovalStore()
        result = RequestApprovalTool(approvals).execute({
            "execution_id": "exe_1", "content": "Publish?", "kind": "publish_tests",
        })
        self.assertTrue(result.success)
        ticket = approvals.get_ticket(result.output["ticket_id"])
        self.assertEqual(ticket.execution_id, "exe_1")
        self.assertEqual(ticket.metadata, {"kind": "publish_tests"})


class TestQueueDecisionChannel(unittest.TestCase):
    def test_delivers_in_background(self):
        channel = QueueDecisionChannel()
        seen = []
        channel.subscribe(seen.append)
        try:
            event = DecisionEvent("apr_1", "exe_1", ApprovalOutcomeType.APPROVED)
            channel.publish(event)
            self.assertTrue(channel.join(timeout=5))
            self.assertEqual(seen, [event])
        finally:
            channel.close()

    def test_failed_handler_gets_redelivery(self):
        channel = QueueDecisionChannel(max_deliveries=3, retry_delay=0.01)
        attempts = []

        def flaky(event):
            attempts.append(event.event_id)
            if len(attempts) < 2:
                raise RuntimeError("store unavailable")

        channel.subscribe(flaky)
        try:
            channel.publish(DecisionEvent("apr_1", "exe_1", ApprovalOutcomeType.EXPIRED))
            self.assertTrue(wait_for(lambda: len(attempts) >= 2))
            self.assertEqual(len(set(attempts)), 1)
        finally:
            channel.close()

    def test_join_waits_for_pending_redelivery(self):
        channel = QueueDecisionChannel(max_deliveries=3, retry_delay=0.2)
        attempts = []

        def fails_once(event):
            attempts.append(event.event_id)
            if len(attempts) == 1:
                raise RuntimeError("store unavailable")

        channel.subscribe(fails_once)
        try:
            channel.publish(DecisionEvent("apr_1", "exe_1", ApprovalOutcomeType.APPROVED))
            self.assertTrue(channel.join(timeout=5))
            self.assertEqual(len(attempts), 2)
        finally:
            channel.close()


if __name__ == "__main__":
    unittest.main()
