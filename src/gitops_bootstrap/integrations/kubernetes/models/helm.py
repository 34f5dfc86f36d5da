"""Data models for Helm release queries."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any


@dataclass
class HelmRelease:
    """One entry of ``helm list --output json``."""

    name: str
    namespace: str
    revision: int
    status: str
    chart: str
    app_version: str

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> HelmRelease:
        """Create a HelmRelease from a ``helm list`` entry."""
        return cls(
            name=str(data.get("name", "")),
            namespace=str(data.get("namespace", "")),
            revision=int(data.get("revision", 0) or 0),
            status=str(data.get("status", "")),
            chart=str(data.get("chart", "")),
            app_version=str(data.get("app_version", "")),
        )

    @property
    def deployed(self) -> bool:
        return self.status == "deployed"


@dataclass
class HelmReleaseStatus:
    """Detailed status of a Helm release from ``helm status --output json``."""

    name: str
    namespace: str
    revision: int
    status: str
    description: str
    raw: str = ""

    @classmethod
    def from_json(cls, data: dict[str, Any], raw: str = "") -> HelmReleaseStatus:
        info = data.get("info", {}) or {}
        return cls(
            name=str(data.get("name", "")),
            namespace=str(data.get("namespace", "")),
            revision=int(data.get("version", 0) or 0),
            status=str(info.get("status", "")),
            description=str(info.get("description", "")),
            raw=raw,
        )


def extract_json(output: str, opening: str = "[") -> Any:
    """Decode JSON from tool output that may carry leading warning lines.

    Output from tools run through a shell wrapper has stderr folded into
    stdout, so warnings can precede the JSON document.
    """
    text = output.strip()
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        closing = "]" if opening == "[" else "}"
        start, end = text.find(opening), text.rfind(closing)
        if start == -1 or end < start:
            raise
        return json.loads(text[start : end + 1])
