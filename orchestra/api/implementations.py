"""Static implementation table: impl_key -> host function.

Read-only after import; agents can only reference keys listed here.
"""

from types import MappingProxyType

from orchestra.api import builtin_tools, collection_tools, llm_tools
from orchestra.api.tools import ToolFunc

IMPLEMENTATIONS: MappingProxyType[str, ToolFunc] = MappingProxyType(
    {
        **builtin_tools.TOOLS,
        **collection_tools.TOOLS,
        **llm_tools.TOOLS,
    }
)


def is_available(impl_key: str) -> bool:
    return impl_key in IMPLEMENTATIONS
