"""FastAPI dependencies: runtime access and identity/role checks."""

from fastapi import Depends, HTTPException, Request

from identity import Identity, Role, identity_from_headers
from problems.problem_service import ProblemService
from runtime import WorkerRuntime


def get_runtime(request: Request) -> WorkerRuntime:
    return request.app.state.runtime


def get_problem_service(runtime: WorkerRuntime = Depends(get_runtime)) -> ProblemService:
    return runtime.problem_service


def get_identity(request: Request) -> Identity:
    identity = identity_from_headers(request.headers)
    if identity is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return identity


def require_role(*roles: Role):
    def dependency(identity: Identity = Depends(get_identity)) -> Identity:
        if identity.role not in roles:
            raise HTTPException(status_code=403, detail="Forbidden: insufficient permissions")
        return identity

    return dependency
