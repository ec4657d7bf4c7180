"""Compare command - regenerate and print the comparison report."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import CliPositionalArg

from forkcat.command.base import Command
from forkcat.exploration.comparator import ResultComparator


class CompareCommand(Command):
    """Compare the attempts of an exploration side by side."""

    exploration_id: CliPositionalArg[str]
    markdown: bool = Field(default=False, description="Print Markdown instead of a table")

    async def execute(self, state) -> int:
        orchestrator = self.orchestrator(state)
        report = orchestrator.compare(self.exploration_id)
        comparator = ResultComparator(orchestrator.state)
        if self.markdown:
            print(comparator.to_markdown(report))
            return 0
        print(comparator.generate_comparison_table(report.metrics))
        print()
        print(report.summary)
        print()
        print(report.recommendation)
        return 0
