import anyio
import pytest
import sse_starlette
from packaging import version

from mcpgate.server.settings import LimitSettings
from mcpgate.shared.limits import LimitPolicy

NEEDS_SSE_RESET = version.parse(sse_starlette.__version__) < version.parse("3.0.0")


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def reset_sse_app_status():
    """Give every test a fresh sse-starlette exit event.

    Before 3.0.0 sse-starlette kept a module-level event bound to the first
    event loop that used it.
    """
    if not NEEDS_SSE_RESET:
        yield
        return

    from sse_starlette.sse import AppStatus

    AppStatus.should_exit_event = anyio.Event()  # type: ignore[attr-defined]
    yield
    AppStatus.should_exit_event = anyio.Event()  # type: ignore[attr-defined]


@pytest.fixture
def limits() -> LimitPolicy:
    return LimitPolicy(LimitSettings())
