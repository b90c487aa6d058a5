"""Tests for the approval engine state machine."""

import asyncio

import pytest

from signroute.collaborators import InMemoryDocumentStore, StaticRoleDirectory
from signroute.config import EngineConfig
from signroute.constants import EVENTS_TOPIC
from signroute.contracts import (
    ApprovalStatus,
    ConnectionCondition,
    NodeType,
    TemplateMode,
    WorkflowConnection,
    WorkflowStatus,
    WorkflowStep,
    WorkflowTemplate,
)
from signroute.engine import ApprovalEngine
from signroute.exceptions import (
    AmbiguousStepError,
    ConcurrentModificationError,
    DocumentStoreError,
    PersistenceError,
    StepAlreadyResolvedError,
    StepNotActiveError,
    UnauthorizedSignerError,
    WorkflowAlreadyTerminalError,
    WorkflowNotFoundError,
)
from signroute.instantiate import WorkflowInstantiator
from signroute.persistence import InMemoryWorkflowRepository
from signroute.transports.inmemory import InMemoryTransport


def _step(step_id, level, node_type=NodeType.SIGN, role=None):
    return WorkflowStep(id=step_id, level=level, role=role or step_id, node_type=node_type)


def _conn(src, dst, **kwargs):
    return WorkflowConnection(source_step_id=src, target_step_id=dst, **kwargs)


def _sequential():
    return WorkflowTemplate(
        name="three levels",
        document_type_id="invoice",
        mode=TemplateMode.SEQUENTIAL,
        steps=[
            _step("clerk", 1, role="clerk"),
            _step("manager", 2, role="manager"),
            _step("cfo", 3, role="cfo"),
        ],
    )


def _parallel():
    return WorkflowTemplate(
        name="fan out",
        document_type_id="contract",
        steps=[
            _step("s", 1, NodeType.START, role="author"),
            _step("p", 2, NodeType.PARALLEL, role="coordinator"),
            _step("legal", 3, role="legal"),
            _step("finance", 3, role="finance"),
            _step("ceo", 4, NodeType.END, role="ceo"),
        ],
        connections=[
            _conn("s", "p"),
            _conn("p", "legal"),
            _conn("p", "finance"),
            _conn("legal", "ceo"),
            _conn("finance", "ceo"),
        ],
    )


async def _start(template, document_id="doc-1", **engine_kwargs):
    repo = InMemoryWorkflowRepository()
    await repo.save_templates([template])
    wf = await WorkflowInstantiator(repo).create(document_id, template.id)
    engine = ApprovalEngine(repo, **engine_kwargs)
    return repo, engine, wf


@pytest.mark.asyncio
async def test_sequential_workflow_completes_after_each_level():
    store = InMemoryDocumentStore()
    repo, engine, wf = await _start(_sequential(), document_store=store)
    assert wf.status == WorkflowStatus.PENDING

    statuses = []
    for user in ("u1", "u2", "u3"):
        snapshot = await engine.approve_step(wf.id, user, f"sig-{user}")
        statuses.append(snapshot.status)

    assert statuses == [
        WorkflowStatus.IN_PROGRESS,
        WorkflowStatus.IN_PROGRESS,
        WorkflowStatus.COMPLETED,
    ]
    assert snapshot.completed_at is not None
    assert snapshot.active_step_ids == []
    assert [e.actor_id for e in snapshot.history] == ["u1", "u2", "u3"]
    assert all(e.status == ApprovalStatus.APPROVED for e in snapshot.history)
    assert store.is_signed("doc-1")


@pytest.mark.asyncio
async def test_step_is_approved_exactly_once():
    repo, engine, wf = await _start(_sequential())
    await engine.approve_step(wf.id, "u1", "sig", step_id="clerk")
    before = await repo.get_workflow(wf.id)

    with pytest.raises(StepAlreadyResolvedError):
        await engine.approve_step(wf.id, "u1", "sig-again", step_id="clerk")

    after = await repo.get_workflow(wf.id)
    assert after == before
    assert after.workflow.active_step_ids == ("manager",)
    assert after.workflow.version == 2
    assert after.row_for("clerk").evidence_ref == "sig"


@pytest.mark.asyncio
async def test_explicit_step_must_be_active():
    repo, engine, wf = await _start(_sequential())
    with pytest.raises(StepNotActiveError):
        await engine.approve_step(wf.id, "u1", "sig", step_id="cfo")


@pytest.mark.asyncio
async def test_terminal_workflow_rejects_further_actions():
    repo, engine, wf = await _start(_sequential())
    await engine.reject_step(wf.id, "u1", "wrong amount")
    before = await repo.get_workflow(wf.id)

    with pytest.raises(WorkflowAlreadyTerminalError):
        await engine.approve_step(wf.id, "u2", "sig")
    with pytest.raises(WorkflowAlreadyTerminalError):
        await engine.reject_step(wf.id, "u2", "again")

    assert await repo.get_workflow(wf.id) == before


@pytest.mark.asyncio
async def test_rejection_halts_workflow_and_publishes_events():
    transport = InMemoryTransport()
    store = InMemoryDocumentStore()
    repo, engine, wf = await _start(_sequential(), transport=transport, document_store=store)
    await engine.approve_step(wf.id, "u1", "sig")

    snapshot = await engine.reject_step(wf.id, "u2", "missing annex")

    assert snapshot.status == WorkflowStatus.REJECTED
    assert snapshot.active_step_ids == []
    assert snapshot.completed_at is not None
    manager = next(e for e in snapshot.history if e.step_id == "manager")
    assert manager.status == ApprovalStatus.REJECTED
    assert manager.note == "missing annex"
    cfo = next(e for e in snapshot.history if e.step_id == "cfo")
    assert cfo.status == ApprovalStatus.PENDING
    assert not store.is_signed("doc-1")

    events = transport.pending(EVENTS_TOPIC)
    assert [e.event_type for e in events] == [
        "step.approved",
        "step.rejected",
        "workflow.rejected",
    ]
    assert events[1].payload == {"reason": "missing annex"}


@pytest.mark.asyncio
async def test_completion_publishes_workflow_completed():
    transport = InMemoryTransport()
    repo, engine, wf = await _start(_sequential(), transport=transport)
    for user in ("u1", "u2", "u3"):
        await engine.approve_step(wf.id, user, "sig")

    events = transport.pending(EVENTS_TOPIC)
    assert events[-1].event_type == "workflow.completed"
    assert events[-1].status == WorkflowStatus.COMPLETED


@pytest.mark.asyncio
async def test_highest_priority_target_is_activated():
    template = WorkflowTemplate(
        name="priority",
        document_type_id="memo",
        steps=[
            _step("s", 1, NodeType.START),
            _step("t1", 2, NodeType.END),
            _step("t2", 2, NodeType.END),
        ],
        connections=[_conn("s", "t1", priority=2), _conn("s", "t2", priority=1)],
    )
    repo, engine, wf = await _start(template)

    snapshot = await engine.approve_step(wf.id, "u1", "sig")
    assert snapshot.active_step_ids == ["t2"]

    snapshot = await engine.approve_step(wf.id, "u2", "sig")
    assert snapshot.status == WorkflowStatus.COMPLETED


@pytest.mark.asyncio
async def test_parallel_branches_join_before_final_step():
    repo, engine, wf = await _start(_parallel())
    await engine.approve_step(wf.id, "author", "sig")
    snapshot = await engine.approve_step(wf.id, "coordinator", "sig")
    assert snapshot.active_step_ids == ["legal", "finance"]

    snapshot = await engine.approve_step(wf.id, "lawyer", "sig", step_id="legal")
    assert snapshot.active_step_ids == ["finance"]
    record = await repo.get_workflow(wf.id)
    assert record.workflow.waiting_step_ids == ("ceo",)

    snapshot = await engine.approve_step(wf.id, "accountant", "sig", step_id="finance")
    assert snapshot.active_step_ids == ["ceo"]
    assert snapshot.status == WorkflowStatus.IN_PROGRESS

    snapshot = await engine.approve_step(wf.id, "boss", "sig")
    assert snapshot.status == WorkflowStatus.COMPLETED


@pytest.mark.asyncio
async def test_step_selection_with_several_active_steps():
    roles = StaticRoleDirectory({"lawyer": ["legal"]})
    repo, engine, wf = await _start(_parallel(), role_directory=roles)
    await engine.approve_step(wf.id, "author", "sig")
    await engine.approve_step(wf.id, "coordinator", "sig")

    with pytest.raises(AmbiguousStepError):
        await engine.approve_step(wf.id, "stranger", "sig")

    snapshot = await engine.approve_step(wf.id, "lawyer", "sig")
    legal = next(e for e in snapshot.history if e.step_id == "legal")
    assert legal.actor_id == "lawyer"


@pytest.mark.asyncio
async def test_follow_rejected_edges_policy():
    template = WorkflowTemplate(
        name="rework",
        document_type_id="memo",
        steps=[
            _step("review", 1, NodeType.START),
            _step("rework", 2),
            _step("sign", 3, NodeType.END),
        ],
        connections=[
            _conn("review", "sign", condition=ConnectionCondition.APPROVED),
            _conn("review", "rework", condition=ConnectionCondition.REJECTED),
            _conn("rework", "sign"),
        ],
    )
    config = EngineConfig(rejection_policy="follow_rejected_edges")
    repo, engine, wf = await _start(template, config=config)

    snapshot = await engine.reject_step(wf.id, "u1", "needs changes")
    assert snapshot.status == WorkflowStatus.IN_PROGRESS
    assert snapshot.active_step_ids == ["rework"]

    await engine.approve_step(wf.id, "u2", "sig")
    snapshot = await engine.approve_step(wf.id, "u3", "sig")
    assert snapshot.status == WorkflowStatus.COMPLETED

    # same template under the default policy stops at the first rejection
    _, default_engine, other = await _start(template, document_id="doc-2")
    snapshot = await default_engine.reject_step(other.id, "u1", "needs changes")
    assert snapshot.status == WorkflowStatus.REJECTED


@pytest.mark.asyncio
async def test_role_enforcement():
    roles = StaticRoleDirectory({"alice": ["clerk"]})
    config = EngineConfig(enforce_roles=True)
    repo, engine, wf = await _start(_sequential(), role_directory=roles, config=config)

    with pytest.raises(UnauthorizedSignerError):
        await engine.approve_step(wf.id, "bob", "sig")

    await engine.approve_step(wf.id, "alice", "sig")
    # a role may also name the signer directly
    snapshot = await engine.approve_step(wf.id, "manager", "sig")
    assert snapshot.active_step_ids == ["cfo"]


@pytest.mark.asyncio
async def test_list_pending_for_user():
    roles = StaticRoleDirectory({"alice": ["clerk"], "carol": ["manager"]})
    repo = InMemoryWorkflowRepository()
    template = _sequential()
    await repo.save_templates([template])
    instantiator = WorkflowInstantiator(repo)
    first = await instantiator.create("doc-1", template.id)
    second = await instantiator.create("doc-2", template.id)
    engine = ApprovalEngine(repo, role_directory=roles)

    await engine.approve_step(second.id, "alice", "sig")

    assert [s.workflow_id for s in await engine.list_pending_for_user("alice")] == [first.id]
    assert [s.workflow_id for s in await engine.list_pending_for_user("carol")] == [second.id]
    assert await engine.list_pending_for_user("nobody") == []


@pytest.mark.asyncio
async def test_concurrent_approvals_resolve_step_once():
    repo, engine, wf = await _start(_sequential())

    results = await asyncio.gather(
        engine.approve_step(wf.id, "u1", "sig-a", step_id="clerk"),
        engine.approve_step(wf.id, "u2", "sig-b", step_id="clerk"),
        return_exceptions=True,
    )

    errors = [r for r in results if isinstance(r, Exception)]
    assert len(errors) == 1
    assert isinstance(errors[0], StepAlreadyResolvedError)
    record = await repo.get_workflow(wf.id)
    assert record.workflow.version == 2
    assert record.row_for("clerk").status == ApprovalStatus.APPROVED


@pytest.mark.asyncio
async def test_get_status_returns_latest_workflow_for_document():
    repo, engine, wf = await _start(_sequential())
    await engine.reject_step(wf.id, "u1", "restart")

    retry = await WorkflowInstantiator(repo).create("doc-1", wf.template_id)
    snapshot = await engine.get_status("doc-1")
    assert snapshot.workflow_id == retry.id
    assert snapshot.status == WorkflowStatus.PENDING

    with pytest.raises(WorkflowNotFoundError):
        await engine.get_status("unknown-doc")
    with pytest.raises(WorkflowNotFoundError):
        await engine.approve_step("missing", "u1", "sig")


class FailingCommitRepository(InMemoryWorkflowRepository):
    def __init__(self, error):
        super().__init__()
        self.error = error

    async def commit_transition(self, workflow, history, expected_version):
        raise self.error


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [PersistenceError("disk full"), ConcurrentModificationError("wf", 1)],
)
async def test_failed_commit_leaves_workflow_untouched(error):
    repo = FailingCommitRepository(error)
    template = _sequential()
    await repo.save_templates([template])
    wf = await WorkflowInstantiator(repo).create("doc-1", template.id)
    before = await repo.get_workflow(wf.id)
    engine = ApprovalEngine(repo)

    with pytest.raises(PersistenceError) as excinfo:
        await engine.approve_step(wf.id, "u1", "sig")

    assert excinfo.value.retryable
    assert await repo.get_workflow(wf.id) == before


class FlakyDocumentStore(InMemoryDocumentStore):
    def __init__(self, failures=1):
        super().__init__()
        self.failures = failures

    async def mark_signed(self, document_id, signed_at):
        if self.failures:
            self.failures -= 1
            raise ConnectionError("store down")
        await super().mark_signed(document_id, signed_at)


@pytest.mark.asyncio
async def test_document_store_failure_keeps_workflow_open_for_retry():
    template = WorkflowTemplate(
        name="single",
        document_type_id="memo",
        mode=TemplateMode.SEQUENTIAL,
        steps=[_step("only", 1)],
    )
    store = FlakyDocumentStore()
    repo, engine, wf = await _start(template, document_store=store)

    with pytest.raises(DocumentStoreError) as excinfo:
        await engine.approve_step(wf.id, "u1", "sig")
    assert excinfo.value.retryable

    record = await repo.get_workflow(wf.id)
    assert record.workflow.status == WorkflowStatus.PENDING
    assert record.row_for("only").status == ApprovalStatus.PENDING
    assert not store.is_signed("doc-1")

    snapshot = await engine.approve_step(wf.id, "u1", "sig")
    assert snapshot.status == WorkflowStatus.COMPLETED
    assert store.is_signed("doc-1")


class BrokenTransport(InMemoryTransport):
    async def publish(self, topic, event):
        raise ConnectionError("broker unreachable")


@pytest.mark.asyncio
async def test_publish_failure_does_not_fail_committed_transition():
    repo, engine, wf = await _start(_sequential(), transport=BrokenTransport())

    snapshot = await engine.approve_step(wf.id, "u1", "sig")
    assert snapshot.status == WorkflowStatus.IN_PROGRESS

    snapshot = await engine.reject_step(wf.id, "u2", "no budget")
    assert snapshot.status == WorkflowStatus.REJECTED
    assert (await repo.get_workflow(wf.id)).workflow.status == WorkflowStatus.REJECTED
