"""Default prompt templates bundled with the cardflow package.

Templates use ``{{name}}`` placeholders. Available names:
- botName: configured bot display name
- cardContent: the rendered card document
- urlPolicy: URL access policy block (empty when no allow-list is configured)
- baseBranch / baseRemote: git base the agent should assume
"""
from pathlib import Path


def get_default_prompts_path() -> Path:
    """Get the path to bundled prompt templates."""
    return Path(__file__).parent
