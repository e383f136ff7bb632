"""reviewgate: human review gate for agent-generated plans and git changesets."""

__version__ = "0.1.0"
