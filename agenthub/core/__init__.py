"""Core orchestration package.

Architectural role:
    Exposes the generation layer that sits between API/CLI entrypoints and the
    lower-level subsystems (agent registry, prompting, memory, usage and LLM
    adapters).

Composition:
    - `types`: generation options, results and stream chunks.
    - `dispatcher`: agent resolution, context merge, upstream call, persistence.
    - `multiplexer`: cancellable streaming state machine.
    - `services`: one-time service construction behind a readiness gate.

Determinism and side effects:
    Package import itself is deterministic and side-effect free.
"""
