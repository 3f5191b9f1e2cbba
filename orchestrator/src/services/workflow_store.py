"""Redis-based store of workflow graphs."""

from redis import Redis

from models.graph import WorkflowGraph


class WorkflowNotFoundError(Exception):
    """Raised when workflow is not found."""

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow not found: {workflow_id}")


class RedisWorkflowStore:
    """Stores the node/edge graph of each workflow by id."""

    def __init__(self, redis_client: Redis):
        if redis_client is None:
            raise ValueError("redis_client is required")
        self._redis = redis_client

    def _graph_key(self, workflow_id: str) -> str:
        return f"workflow_graph:{workflow_id}"

    def save_graph(self, workflow_id: str, graph: WorkflowGraph) -> None:
        """Create or replace a workflow's graph. Unknown node types are rejected."""
        if not workflow_id:
            raise ValueError("workflow_id is required")
        if graph is None:
            raise ValueError("graph is required")

        graph.validate_node_types()
        self._redis.set(self._graph_key(workflow_id), graph.model_dump_json(by_alias=True))

    def get_graph(self, workflow_id: str) -> WorkflowGraph:
        if not workflow_id:
            raise ValueError("workflow_id is required")

        data = self._redis.get(self._graph_key(workflow_id))
        if data is None:
            raise WorkflowNotFoundError(workflow_id)
        return WorkflowGraph.model_validate_json(data)

    def exists(self, workflow_id: str) -> bool:
        if not workflow_id:
            raise ValueError("workflow_id is required")
        return bool(self._redis.exists(self._graph_key(workflow_id)))
