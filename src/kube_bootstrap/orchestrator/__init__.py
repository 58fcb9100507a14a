"""Bootstrap orchestrator components.

Provides:
- Settings loaded from .env (replacing interactive prompts)
- Structured logging
- The workflow engine (steps, graph, executor, gate, state store)
- Role-specific cluster step catalogs
- A small CLI surface
"""
