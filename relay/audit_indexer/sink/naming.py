"""
Destination container (index) naming.

The rule is pure: the same configuration, stream name and instant always
produce the same index name.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

# Characters Elasticsearch rejects in index names
_INVALID_CHARS = re.compile(r'[\\/*?"<>| ,#:]+')


@dataclass(frozen=True)
class ContainerNaming:
    """Index naming rule.

    Attributes:
        prefix: Leading part of every index name
        append_stream_name: Append "-<stream>" to the name
        date_suffix_format: strftime format appended as "-<date>"

    Example:
        >>> naming = ContainerNaming("audit", True, "%Y.%m")
        >>> naming.container_for("Users", datetime(2024, 5, 1))
        'audit-users-2024.05'
    """

    prefix: str
    append_stream_name: bool = False
    date_suffix_format: str | None = None

    @classmethod
    def from_config(cls, config) -> ContainerNaming:
        return cls(
            prefix=config.index_prefix,
            append_stream_name=config.index_append_table_name,
            date_suffix_format=config.index_date_suffix_format,
        )

    def container_for(self, stream_name: str, now: datetime) -> str:
        """Index name for a stream at an instant."""
        parts = [self.prefix]
        if self.append_stream_name:
            parts.append(stream_name)
        if self.date_suffix_format:
            parts.append(now.strftime(self.date_suffix_format))
        return _INVALID_CHARS.sub("_", "-".join(parts).lower())

    def containers_for(self, stream_names: Iterable[str], now: datetime) -> list[str]:
        """Distinct index names for several streams, in first-seen order."""
        names: list[str] = []
        for stream_name in stream_names:
            name = self.container_for(stream_name, now)
            if name not in names:
                names.append(name)
        return names

    @property
    def search_pattern(self) -> str:
        """Pattern matching every index this rule can produce."""
        pattern = _INVALID_CHARS.sub("_", self.prefix.lower())
        if self.append_stream_name or self.date_suffix_format:
            pattern += "-*"
        return pattern
