"""Typed exceptions raised by signroute.

Every exception carries a machine-readable ``code`` and a ``retryable``
flag. Only persistence failures are retryable; state conflicts would fail
the same way again.
"""

from __future__ import annotations

from typing import List, Sequence


class SignrouteError(Exception):
    """Base exception for all signroute errors."""

    code: str = "SignrouteError"
    retryable: bool = False


# Templates


class TemplateNotFoundError(SignrouteError):
    code = "TemplateNotFound"

    def __init__(self, template_id: str):
        self.template_id = template_id
        super().__init__(f"Workflow template {template_id} not found")


class TemplateInactiveError(SignrouteError):
    code = "TemplateInactive"

    def __init__(self, template_id: str):
        self.template_id = template_id
        super().__init__(f"Workflow template {template_id} is inactive")


class TemplateInvalidError(SignrouteError):
    code = "TemplateInvalid"

    def __init__(self, template_id: str, violations: Sequence[str]):
        self.template_id = template_id
        self.violations: List[str] = list(violations)
        super().__init__(
            f"Workflow template {template_id} is invalid: " + "; ".join(self.violations)
        )


# Workflow instances


class WorkflowNotFoundError(SignrouteError):
    code = "NotFound"

    def __init__(self, reference: str, kind: str = "workflow"):
        self.reference = reference
        self.kind = kind
        super().__init__(f"No workflow found for {kind} {reference}")


class WorkflowExistsError(SignrouteError):
    code = "WorkflowExists"

    def __init__(self, document_id: str, workflow_id: str):
        self.document_id = document_id
        self.workflow_id = workflow_id
        super().__init__(
            f"Document {document_id} already has workflow {workflow_id} in progress"
        )


class WorkflowAlreadyTerminalError(SignrouteError):
    code = "NotTerminalAllowed"

    def __init__(self, workflow_id: str, status: str):
        self.workflow_id = workflow_id
        self.status = status
        super().__init__(f"Workflow {workflow_id} is already {status}")


class StepAlreadyResolvedError(SignrouteError):
    code = "StepAlreadyResolved"

    def __init__(self, workflow_id: str, step_id: str, status: str):
        self.workflow_id = workflow_id
        self.step_id = step_id
        self.status = status
        super().__init__(
            f"Step {step_id} of workflow {workflow_id} is already {status}"
        )


class StepNotActiveError(SignrouteError):
    code = "StepNotActive"

    def __init__(self, workflow_id: str, step_id: str):
        self.workflow_id = workflow_id
        self.step_id = step_id
        super().__init__(f"Step {step_id} is not active in workflow {workflow_id}")


class AmbiguousStepError(SignrouteError):
    code = "AmbiguousStep"

    def __init__(self, workflow_id: str, candidates: Sequence[str]):
        self.workflow_id = workflow_id
        self.candidates = list(candidates)
        super().__init__(
            f"Workflow {workflow_id} has {len(self.candidates)} candidate steps; "
            "pass step_id explicitly"
        )


class NoActiveStepError(SignrouteError):
    """A non-terminal workflow without active steps; indicates corrupted state."""

    code = "NoActiveStep"

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow {workflow_id} has no active step")


class UnauthorizedSignerError(SignrouteError):
    code = "UnauthorizedSigner"

    def __init__(self, user_id: str, step_id: str, role: str):
        self.user_id = user_id
        self.step_id = step_id
        self.role = role
        super().__init__(f"User {user_id} does not hold role {role!r} for step {step_id}")


# Persistence


class PersistenceError(SignrouteError):
    """Storage failed; the transition was rolled back and may be retried."""

    code = "PersistenceError"
    retryable = True


class ConcurrentModificationError(PersistenceError):
    code = "ConcurrentModification"

    def __init__(self, workflow_id: str, expected_version: int):
        self.workflow_id = workflow_id
        self.expected_version = expected_version
        super().__init__(
            f"Workflow {workflow_id} was modified concurrently "
            f"(expected version {expected_version})"
        )


# Collaborators


class DocumentStoreError(SignrouteError):
    """The document store could not record the signature; nothing was committed."""

    code = "DocumentStoreError"
    retryable = True

    def __init__(self, document_id: str, reason: str):
        self.document_id = document_id
        super().__init__(f"Could not mark document {document_id} signed: {reason}")
