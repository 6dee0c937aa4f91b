"""Usage accounting package (per-agent call and cost counters)."""
