"""signroute: document approval routing over template graphs."""

from .contracts import (
    ApprovalHistory,
    ApprovalStatus,
    ConnectionCondition,
    DocumentWorkflow,
    NodeType,
    SignatureType,
    TemplateMode,
    WorkflowConnection,
    WorkflowSnapshot,
    WorkflowStatus,
    WorkflowStep,
    WorkflowTemplate,
)
from .engine import ApprovalEngine
from .instantiate import WorkflowInstantiator
from .persistence import get_repository
from .templates import TemplateService
from .transports import get_transport
from .validation import GraphValidator, ValidationReport

__version__ = "0.1.0"
__all__ = [
    "ApprovalEngine",
    "ApprovalHistory",
    "ApprovalStatus",
    "ConnectionCondition",
    "DocumentWorkflow",
    "GraphValidator",
    "NodeType",
    "SignatureType",
    "TemplateMode",
    "TemplateService",
    "ValidationReport",
    "WorkflowConnection",
    "WorkflowInstantiator",
    "WorkflowSnapshot",
    "WorkflowStatus",
    "WorkflowStep",
    "WorkflowTemplate",
    "get_repository",
    "get_transport",
]
