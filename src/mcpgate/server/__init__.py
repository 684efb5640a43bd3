from .context import ToolContext
from .gateway import Gateway
from .registry import Page, PageRequest, ToolDescriptor, ToolRegistry
from .settings import GatewaySettings, LimitSettings

__all__: list[str] = [
    "Gateway",
    "GatewaySettings",
    "LimitSettings",
    "Page",
    "PageRequest",
    "ToolContext",
    "ToolDescriptor",
    "ToolRegistry",
]
