import pytest

from signroute.collaborators import InMemoryDocumentStore, StaticRoleDirectory
from signroute.constants import EVENTS_TOPIC
from signroute.contracts import (
    ApprovalStatus,
    NodeType,
    WorkflowConnection,
    WorkflowStatus,
    WorkflowStep,
)
from signroute.engine import ApprovalEngine
from signroute.exceptions import WorkflowAlreadyTerminalError
from signroute.instantiate import WorkflowInstantiator
from signroute.persistence import SQLiteWorkflowRepository
from signroute.templates import TemplateService
from signroute.transports.inmemory import InMemoryTransport


@pytest.mark.asyncio
async def test_contract_approval_survives_restart(tmp_path):
    db_path = tmp_path / "signroute.db"
    repo = SQLiteWorkflowRepository(db_path)
    transport = InMemoryTransport()
    store = InMemoryDocumentStore()
    roles = StaticRoleDirectory({"lena": ["legal"], "finn": ["finance"], "cora": ["ceo"]})

    template = await TemplateService(repo).create(
        "Supplier contract",
        "contract",
        steps=[
            WorkflowStep(id="draft", level=1, role="author", node_type=NodeType.START),
            WorkflowStep(id="review", level=2, role="office", node_type=NodeType.PARALLEL),
            WorkflowStep(id="legal", level=3, role="legal"),
            WorkflowStep(id="finance", level=3, role="finance"),
            WorkflowStep(id="ceo", level=4, role="ceo", node_type=NodeType.END),
        ],
        connections=[
            WorkflowConnection(source_step_id="draft", target_step_id="review"),
            WorkflowConnection(source_step_id="review", target_step_id="legal"),
            WorkflowConnection(source_step_id="review", target_step_id="finance"),
            WorkflowConnection(source_step_id="legal", target_step_id="ceo"),
            WorkflowConnection(source_step_id="finance", target_step_id="ceo"),
        ],
    )
    wf = await WorkflowInstantiator(repo, transport=transport).create(
        "contract-7", template.id, initiator_id="author"
    )

    engine = ApprovalEngine(repo, store, roles, transport)
    await engine.approve_step(wf.id, "author", "sig-draft")
    await engine.approve_step(wf.id, "office", "sig-review")
    await engine.approve_step(wf.id, "lena", "sig-legal")

    # a fresh process sees the join still waiting on finance
    repo = SQLiteWorkflowRepository(db_path)
    engine = ApprovalEngine(repo, store, roles, transport)
    record = await repo.get_workflow(wf.id)
    assert record.workflow.active_step_ids == ("finance",)
    assert record.workflow.waiting_step_ids == ("ceo",)

    await engine.approve_step(wf.id, "finn", "sig-finance")
    snapshot = await engine.approve_step(wf.id, "cora", "sig-ceo", note="approved")

    assert snapshot.status == WorkflowStatus.COMPLETED
    assert [e.step_id for e in snapshot.history] == ["draft", "review", "legal", "finance", "ceo"]
    assert all(e.status == ApprovalStatus.APPROVED for e in snapshot.history)
    assert store.is_signed("contract-7")

    types = [e.event_type for e in transport.pending(EVENTS_TOPIC)]
    assert types[0] == "workflow.created"
    assert types.count("step.approved") == 5
    assert types[-1] == "workflow.completed"

    with pytest.raises(WorkflowAlreadyTerminalError):
        await engine.reject_step(wf.id, "cora", "changed my mind")

    status = await engine.get_status("contract-7")
    assert status.workflow_id == wf.id
    assert status.status == WorkflowStatus.COMPLETED
