"""Agent persona package.

Architectural role:
    Holds the read-only agent registry. Agents are loaded once during startup and
    shared by every request without synchronization.
"""
