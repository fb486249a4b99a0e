from fastapi import APIRouter, HTTPException

from wfsched.core.graph import GraphError, validate
from wfsched.core.matrix import expand
from wfsched.models.graph import WorkflowDefinition

from .runs import graph_error_detail

router = APIRouter(tags=["graphs"])


@router.post("/validate")
async def validate_definition(body: WorkflowDefinition):
    try:
        graph = validate(body)
    except GraphError as exc:
        raise HTTPException(status_code=422, detail=graph_error_detail(exc))
    instances = expand(graph)
    return {
        "valid": True,
        "order": graph.order,
        "instances": {job_id: len(insts) for job_id, insts in instances.items()},
    }
