"""
CLI runner module.

Provides commands:
- init-config: Write a default config file
- seed-categories: Insert the system categories
- import: Create and run an import batch
- process-item: Run the per-item job entry point
- status / cancel: Inspect or stop a batch
- detect-mapping: Detect a spreadsheet's column mapping
- providers: List the LLM provider chain
"""

from .main import create_cli, main

__all__ = [
    "create_cli",
    "main",
]
