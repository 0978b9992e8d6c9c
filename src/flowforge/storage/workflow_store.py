"""Workflow definition lookup used by the scheduler and execution service."""
import threading
from abc import ABC, abstractmethod

from flowforge.errors import NotFoundError
from workflow_runtime.models import WorkflowGraph


class WorkflowSource(ABC):
    """Read access to saved workflow graphs."""

    @abstractmethod
    def get_workflow(self, workflow_id: str) -> WorkflowGraph | None:
        """Workflow by id."""

    def exists(self, workflow_id: str) -> bool:
        return self.get_workflow(workflow_id) is not None

    def require(self, workflow_id: str) -> WorkflowGraph:
        """
        Workflow by id.

        Raises:
            NotFoundError: Unknown workflow
        """
        workflow = self.get_workflow(workflow_id)
        if workflow is None:
            raise NotFoundError(f"Workflow not found: {workflow_id}", {"workflow_id": workflow_id})
        return workflow


class InMemoryWorkflowStore(WorkflowSource):
    """Process-local workflow store."""

    def __init__(self, workflows: list[WorkflowGraph] | None = None) -> None:
        self._workflows: dict[str, WorkflowGraph] = {}
        self._lock = threading.Lock()
        for workflow in workflows or []:
            self.save(workflow)

    def save(self, workflow: WorkflowGraph) -> None:
        with self._lock:
            self._workflows[workflow.id] = workflow.model_copy(deep=True)

    def get_workflow(self, workflow_id: str) -> WorkflowGraph | None:
        with self._lock:
            workflow = self._workflows.get(workflow_id)
            return workflow.model_copy(deep=True) if workflow else None

    def delete(self, workflow_id: str) -> bool:
        with self._lock:
            return self._workflows.pop(workflow_id, None) is not None

    def list_workflows(self) -> list[WorkflowGraph]:
        with self._lock:
            return [w.model_copy(deep=True) for w in self._workflows.values()]
