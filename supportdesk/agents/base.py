"""Base agent interfaces and shared result types."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from supportdesk.schemas import StepLog


@dataclass
class AgentResult:
    """Standard output returned by all domain agents."""

    response: str
    steps: list[StepLog]
    payload: dict[str, Any] = field(default_factory=dict)  # Structured output for API endpoints


class Agent:
    """Minimal interface every triage agent implements."""

    name: str

    def run(self, prompt: str, context: dict[str, object] | None = None) -> AgentResult:
        """Execute an agent with prompt and optional structured context."""

        raise NotImplementedError
