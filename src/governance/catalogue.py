"""Known tool names and wildcard expansion of tool patterns."""

from __future__ import annotations

import re
from typing import Iterable

KNOWN_TOOLS = (
    "get-datasets",
    "get-dataset-output",
    "get-dataset-targetfields",
    "get-accounts",
    "get-workspaces",
    "get-queries",
    "get-ai-context",
    "execute-ai-query",
    "create-dataset",
    "update-dataset",
    "delete-dataset",
    "upload-dataset-rows",
    "update-dataset-rows",
    "delete-dataset-rows",
    "update-dataset-targetfields",
    "start-procedure",
    "list-procedures",
    "resume-procedure",
)


class ToolCatalogue:
    """The set of tool names wildcard patterns are expanded against.

    Starts from KNOWN_TOOLS. Tools added later through register() become
    reachable by patterns such as ``get-*`` only once registered, so a loose
    pattern never silently widens to a tool nobody declared to the gate.
    """

    def __init__(self, tools: Iterable[str] = KNOWN_TOOLS) -> None:
        self._tools: set[str] = set(tools)

    def register(self, *tool_names: str) -> None:
        self._tools.update(tool_names)

    def __contains__(self, tool_name: object) -> bool:
        return tool_name in self._tools

    @property
    def tools(self) -> frozenset[str]:
        return frozenset(self._tools)

    def expand(self, patterns: Iterable[str]) -> set[str]:
        """Expand tool patterns into concrete tool names.

        Plain names pass through unchanged, whether or not they are in the
        catalogue. Patterns containing ``*`` match catalogue entries, with
        ``*`` standing for any run of characters.

        Args:
            patterns: Tool names and wildcard patterns.

        Returns:
            The set of concrete tool names.
        """
        expanded: set[str] = set()
        for pattern in patterns:
            if "*" not in pattern:
                expanded.add(pattern)
                continue
            regex = pattern_to_regex(pattern)
            expanded.update(tool for tool in self._tools if regex.match(tool))
        return expanded


def pattern_to_regex(pattern: str) -> re.Pattern[str]:
    """Compile a ``*`` wildcard pattern into an anchored regex."""
    parts = (re.escape(part) for part in pattern.split("*"))
    return re.compile("^" + ".*".join(parts) + "$")
