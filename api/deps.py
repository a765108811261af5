"""FastAPI dependencies."""

from fastapi import Request

from tenantlens.runtime import TenantLensRuntime


def get_runtime(request: Request) -> TenantLensRuntime:
    """The runtime opened by the app's lifespan handler."""
    return request.app.state.runtime
